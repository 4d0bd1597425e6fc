# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Client library for S3-compatible object storage.

Provides request signing (SigV4, SigV4A, presigned URLs, aws-chunked
streaming), a retrying request executor, streaming XML response decoding,
and multipart upload / ranged download orchestration:

- Credentials (static, refreshing, chained)
- Client configuration (builder and YAML file)
- ``Client`` with single-request and transfer operations
- Exception hierarchy rooted at ``StowageError``
"""

from stowage.cancel import CancelToken
from stowage.client import Client, ListObjectsPaginator
from stowage.config import ClientConfig, ClientConfigBuilder, ConfigError
from stowage.credentials import (
    ChainCredentials,
    Credentials,
    CredentialSource,
    RefreshingCredentials,
    StaticCredentials,
)
from stowage.errors import (
    CancellationError,
    ChecksumMismatchError,
    CredentialError,
    ProtocolError,
    RequestTimeoutError,
    S3ServiceError,
    SessionStateError,
    SignatureError,
    StowageError,
    TransferProgress,
    TransportError,
    ValidationError,
)
from stowage.logging import SecretFilter, configure_logging
from stowage.models import (
    CompletedPart,
    DownloadResult,
    ObjectInfo,
    ObjectStat,
    Payload,
    UploadResult,
)
from stowage.multipart import (
    MultipartUploadSession,
    SessionRegistry,
    SessionState,
    plan_parts,
)
from stowage.retry import RetryPolicy
from stowage.signing import Signer
from stowage.transfer import TransferOrchestrator
from stowage.transport import HttpxTransport, RawResponse, Transport


__all__ = [
    # client
    "Client",
    "ListObjectsPaginator",
    # config
    "ClientConfig",
    "ClientConfigBuilder",
    "ConfigError",
    # credentials
    "ChainCredentials",
    "Credentials",
    "CredentialSource",
    "RefreshingCredentials",
    "StaticCredentials",
    # errors
    "CancellationError",
    "ChecksumMismatchError",
    "CredentialError",
    "ProtocolError",
    "RequestTimeoutError",
    "S3ServiceError",
    "SessionStateError",
    "SignatureError",
    "StowageError",
    "TransferProgress",
    "TransportError",
    "ValidationError",
    # cancel
    "CancelToken",
    # logging
    "SecretFilter",
    "configure_logging",
    # models
    "CompletedPart",
    "DownloadResult",
    "ObjectInfo",
    "ObjectStat",
    "Payload",
    "UploadResult",
    # multipart
    "MultipartUploadSession",
    "SessionRegistry",
    "SessionState",
    "plan_parts",
    # retry
    "RetryPolicy",
    # signing
    "Signer",
    # transfer
    "TransferOrchestrator",
    # transport
    "HttpxTransport",
    "RawResponse",
    "Transport",
]
