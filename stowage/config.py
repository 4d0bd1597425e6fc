# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Client configuration.

A ``ClientConfig`` is an immutable value validated once at construction.
Build one in code with ``ClientConfigBuilder`` or load it from YAML with
``ClientConfig.from_yaml``.  The default file location follows the XDG
Base Directory Specification:

    ``$XDG_CONFIG_HOME/stowage/stowage.yaml``
    (typically ``~/.config/stowage/stowage.yaml``)

``!env`` tags resolve values from environment variables, so credentials
never need to be written into the file::

    endpoint: https://s3.eu-west-1.amazonaws.com
    region: eu-west-1
    credentials:
      access_key: !env AWS_ACCESS_KEY_ID
      secret_key: !env AWS_SECRET_ACCESS_KEY
      session_token: !env AWS_SESSION_TOKEN
    retry:
      max_attempts: 5
    transfer:
      part_size: 16777216
      concurrency: 8
"""

import logging
import os
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Self, TypeVar, overload

import yaml
from platformdirs import user_config_path

from stowage.credentials import CredentialSource, StaticCredentials
from stowage.dotenv_loader import load_dotenv_once
from stowage.errors import ValidationError
from stowage.models import ALGORITHM_SIGV4, ALGORITHM_SIGV4A
from stowage.multipart import (
    DEFAULT_PART_SIZE,
    MAX_PART_SIZE,
    MIN_PART_SIZE,
    check_part_size,
)
from stowage.retry import RetryPolicy
from stowage.signing import DEFAULT_CHUNK_SIZE, MAX_PRESIGN_EXPIRES


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "stowage"

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})

#: Single PUT limit of the service; larger objects must use multipart.
DEFAULT_MULTIPART_THRESHOLD = MAX_PART_SIZE

#: Window size for ranged parallel downloads.
DEFAULT_DOWNLOAD_RANGE_SIZE = 8 * 1024 * 1024


def get_config_dir() -> Path:
    """Return the XDG config directory (``~/.config/stowage``)."""
    return user_config_path(_APP_NAME)


def get_config_path() -> Path:
    """Return the default config file path.

    Uses XDG: ``$XDG_CONFIG_HOME/stowage/stowage.yaml`` (typically
    ``~/.config/stowage/stowage.yaml``).

    Returns:
        Path to the config file.
    """
    return get_config_dir() / "stowage.yaml"


class ConfigError(Exception):
    """Base exception for configuration errors."""


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is not set.
    Returns empty string if the env var is set to empty string.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name)
    if value is None:
        return None
    return str(value)


_MISSING = object()

T = TypeVar("T")


@overload
def _resolve(value: object, coerce: type[T], *, default: T) -> T: ...


@overload
def _resolve(
    value: object,
    coerce: type[T],
    *,
    required: str,
) -> T: ...


@overload
def _resolve(value: object, coerce: type[T]) -> T | None: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    required: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    This is the single entry point for reading any config value.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int``, ``float``, ``bool``).
        default: Default when value is absent.  Not allowed together
            with *required*.
        required: Human-readable field name.  When set, raises
            ``ConfigError`` if the value is absent.

    Returns:
        The resolved, coerced value, or None when optional and absent.
    """
    if not isinstance(value, _EnvVar) and value is not None:
        if coerce is bool:
            return _coerce_bool(value)
        if isinstance(value, coerce) and not (
            coerce is int and isinstance(value, bool)
        ):
            return value

    resolved = _raw_resolve(value)

    if resolved is None or (resolved == "" and isinstance(value, _EnvVar)):
        if required:
            if isinstance(value, _EnvVar):
                raise ConfigError(
                    f"Required config '{required}': environment variable "
                    f"'{value.var_name}' is not set"
                )
            raise ConfigError(f"Required config '{required}' is missing")
        if default is not _MISSING:
            return default
        return None

    if coerce is bool:
        return _coerce_bool(resolved)
    try:
        return coerce(resolved)
    except ValueError as e:
        raise ConfigError(
            f"Cannot convert {resolved!r} to {coerce.__name__}"
        ) from e


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a YAML mapping")
    return value


# ---------------------------------------------------------------------------
# Config value
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClientConfig:
    """Complete client configuration.

    Attributes:
        endpoint: Service URL.  The scheme decides TLS unless ``secure``
            is given; a bare host name means https.
        credentials: Credential source used for every request.
        region: Signing region.
        secure: Force TLS on (True) or off (False).
        retry: Retry policy for the request executor.
        part_size: Starting multipart part size (doubled when needed).
        multipart_threshold: Uploads above this size use multipart.
        concurrency: Parts or ranges in flight per transfer.
        download_range_size: Window size for ranged parallel downloads.
        request_timeout: Per-request timeout in seconds.
        abort_on_failure: Abort the multipart upload when a part fails.
            When False the session is left for caller-driven cleanup and
            keeps consuming storage until aborted.
        virtual_host_style: Address buckets as ``bucket.host``.
        streaming_signature: Sign sized streams with aws-chunked.
        checksum_trailer: Append a signed CRC32 trailer to aws-chunked
            bodies.
        signing_algorithm: ``AWS4-HMAC-SHA256`` or
            ``AWS4-ECDSA-P256-SHA256``.
        chunk_size: aws-chunked frame size.
        max_presign_expiry: Longest presigned URL lifetime in seconds.
    """

    endpoint: str
    credentials: CredentialSource
    region: str = "us-east-1"
    secure: bool | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    part_size: int = DEFAULT_PART_SIZE
    multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD
    concurrency: int = 4
    download_range_size: int = DEFAULT_DOWNLOAD_RANGE_SIZE
    request_timeout: float = 60.0
    abort_on_failure: bool = True
    virtual_host_style: bool = False
    streaming_signature: bool = True
    checksum_trailer: bool = False
    signing_algorithm: str = ALGORITHM_SIGV4
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_presign_expiry: int = MAX_PRESIGN_EXPIRES

    def __post_init__(self) -> None:
        """Validate configuration.

        Raises:
            ValidationError: If a value violates protocol constraints.
        """
        parts = self._split_endpoint()
        if not parts.hostname:
            raise ValidationError(f"Invalid endpoint: {self.endpoint!r}")
        if parts.path not in ("", "/"):
            raise ValidationError(
                f"Endpoint must not contain a path: {self.endpoint!r}"
            )
        if not self.region:
            raise ValidationError("Region cannot be empty")
        check_part_size(self.part_size)
        if not MIN_PART_SIZE <= self.multipart_threshold <= MAX_PART_SIZE:
            raise ValidationError(
                f"Multipart threshold must be between {MIN_PART_SIZE} and "
                f"{MAX_PART_SIZE}: {self.multipart_threshold}"
            )
        if self.concurrency < 1:
            raise ValidationError(
                f"Concurrency must be >= 1: {self.concurrency}"
            )
        if self.download_range_size < 1:
            raise ValidationError(
                f"Download range size must be >= 1: "
                f"{self.download_range_size}"
            )
        if self.request_timeout <= 0:
            raise ValidationError(
                f"Request timeout must be > 0: {self.request_timeout}"
            )
        if self.signing_algorithm not in (ALGORITHM_SIGV4, ALGORITHM_SIGV4A):
            raise ValidationError(
                f"Unsupported signing algorithm: {self.signing_algorithm}"
            )
        if not 1 <= self.max_presign_expiry <= MAX_PRESIGN_EXPIRES:
            raise ValidationError(
                f"Presign expiry must be between 1 and "
                f"{MAX_PRESIGN_EXPIRES}: {self.max_presign_expiry}"
            )

        logger.debug(
            "Client config: endpoint=%s region=%s part_size=%d "
            "concurrency=%d",
            self.base_url,
            self.region,
            self.part_size,
            self.concurrency,
        )

    def _split_endpoint(self) -> urllib.parse.SplitResult:
        endpoint = self.endpoint.strip()
        if "://" not in endpoint:
            endpoint = "https://" + endpoint
        return urllib.parse.urlsplit(endpoint)

    @property
    def is_secure(self) -> bool:
        if self.secure is not None:
            return self.secure
        return self._split_endpoint().scheme == "https"

    @property
    def scheme(self) -> str:
        return "https" if self.is_secure else "http"

    @property
    def host(self) -> str:
        """Host and, when present, port of the endpoint."""
        return self._split_endpoint().netloc

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}"

    @classmethod
    def builder(cls) -> "ClientConfigBuilder":
        return ClientConfigBuilder()

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "ClientConfig":
        """Load configuration from a YAML file.

        Values tagged with ``!env VAR_NAME`` are resolved from the
        environment at load time.  A ``.env`` file is loaded first if
        present.

        Args:
            config_path: Path to YAML config file.  Defaults to
                ``~/.config/stowage/stowage.yaml`` (XDG).

        Returns:
            ClientConfig instance.

        Raises:
            ConfigError: If the file is missing or required values are
                absent.
            ValidationError: If a value violates protocol constraints.
        """
        if config_path is None:
            config_path = get_config_path()

        load_dotenv_once(config_path.parent)

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            raw = yaml.load(f, Loader=_make_loader())

        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        return cls._from_raw(raw)

    @classmethod
    def _from_raw(cls, raw: dict) -> "ClientConfig":
        """Build config from parsed (but unresolved) YAML dict."""
        creds = _section(raw, "credentials")
        retry = _section(raw, "retry")
        transfer = _section(raw, "transfer")
        signing = _section(raw, "signing")

        builder = (
            ClientConfigBuilder()
            .endpoint(_resolve(raw.get("endpoint"), str, required="endpoint"))
            .region(_resolve(raw.get("region"), str, default="us-east-1"))
            .credentials(
                StaticCredentials(
                    _resolve(
                        creds.get("access_key"),
                        str,
                        required="credentials.access_key",
                    ),
                    _resolve(
                        creds.get("secret_key"),
                        str,
                        required="credentials.secret_key",
                    ),
                    _resolve(creds.get("session_token"), str),
                )
            )
            .retry(
                RetryPolicy(
                    max_attempts=_resolve(
                        retry.get("max_attempts"), int, default=3
                    ),
                    base_delay=_resolve(
                        retry.get("base_delay"), float, default=0.2
                    ),
                    max_delay=_resolve(
                        retry.get("max_delay"), float, default=20.0
                    ),
                    jitter=(
                        _resolve(retry.get("jitter_min"), float, default=0.5),
                        _resolve(retry.get("jitter_max"), float, default=1.0),
                    ),
                    retry_non_idempotent=_resolve(
                        retry.get("retry_non_idempotent"), bool, default=False
                    ),
                    retry_complete_multipart=_resolve(
                        retry.get("retry_complete_multipart"),
                        bool,
                        default=False,
                    ),
                )
            )
            .part_size(
                _resolve(
                    transfer.get("part_size"), int, default=DEFAULT_PART_SIZE
                )
            )
            .multipart_threshold(
                _resolve(
                    transfer.get("multipart_threshold"),
                    int,
                    default=DEFAULT_MULTIPART_THRESHOLD,
                )
            )
            .concurrency(_resolve(transfer.get("concurrency"), int, default=4))
            .download_range_size(
                _resolve(
                    transfer.get("download_range_size"),
                    int,
                    default=DEFAULT_DOWNLOAD_RANGE_SIZE,
                )
            )
            .abort_on_failure(
                _resolve(transfer.get("abort_on_failure"), bool, default=True)
            )
            .request_timeout(
                _resolve(raw.get("request_timeout"), float, default=60.0)
            )
            .virtual_host_style(
                _resolve(raw.get("virtual_host_style"), bool, default=False)
            )
            .streaming_signature(
                _resolve(signing.get("streaming"), bool, default=True)
            )
            .checksum_trailer(
                _resolve(signing.get("checksum_trailer"), bool, default=False)
            )
            .signing_algorithm(
                _resolve(
                    signing.get("algorithm"), str, default=ALGORITHM_SIGV4
                )
            )
            .max_presign_expiry(
                _resolve(
                    raw.get("max_presign_expiry"),
                    int,
                    default=MAX_PRESIGN_EXPIRES,
                )
            )
        )
        secure = _resolve(raw.get("secure"), bool)
        if secure is not None:
            builder.secure(secure)
        return builder.build()


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class ClientConfigBuilder:
    """Fluent builder for ``ClientConfig``.

    Setters only record values; all validation happens in ``build()``.

    Example:
        config = (
            ClientConfigBuilder()
            .endpoint("https://s3.amazonaws.com")
            .credentials(StaticCredentials(access_key, secret_key))
            .concurrency(8)
            .build()
        )
    """

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    def _set(self, name: str, value: Any) -> Self:
        self._values[name] = value
        return self

    def endpoint(self, url: str) -> Self:
        return self._set("endpoint", url)

    def credentials(self, source: CredentialSource) -> Self:
        return self._set("credentials", source)

    def region(self, region: str) -> Self:
        return self._set("region", region)

    def secure(self, secure: bool) -> Self:
        return self._set("secure", secure)

    def retry(self, policy: RetryPolicy) -> Self:
        return self._set("retry", policy)

    def part_size(self, size: int) -> Self:
        return self._set("part_size", size)

    def multipart_threshold(self, size: int) -> Self:
        return self._set("multipart_threshold", size)

    def concurrency(self, workers: int) -> Self:
        return self._set("concurrency", workers)

    def download_range_size(self, size: int) -> Self:
        return self._set("download_range_size", size)

    def request_timeout(self, seconds: float) -> Self:
        return self._set("request_timeout", seconds)

    def abort_on_failure(self, enabled: bool) -> Self:
        return self._set("abort_on_failure", enabled)

    def virtual_host_style(self, enabled: bool) -> Self:
        return self._set("virtual_host_style", enabled)

    def streaming_signature(self, enabled: bool) -> Self:
        return self._set("streaming_signature", enabled)

    def checksum_trailer(self, enabled: bool) -> Self:
        return self._set("checksum_trailer", enabled)

    def signing_algorithm(self, algorithm: str) -> Self:
        return self._set("signing_algorithm", algorithm)

    def chunk_size(self, size: int) -> Self:
        return self._set("chunk_size", size)

    def max_presign_expiry(self, seconds: int) -> Self:
        return self._set("max_presign_expiry", seconds)

    def build(self) -> ClientConfig:
        """Validate and produce the immutable config.

        Raises:
            ConfigError: If the endpoint or credentials are missing.
            ValidationError: If a value violates protocol constraints.
        """
        if not self._values.get("endpoint"):
            raise ConfigError("Required config 'endpoint' is missing")
        if self._values.get("credentials") is None:
            raise ConfigError("Required config 'credentials' is missing")
        return ClientConfig(**self._values)
