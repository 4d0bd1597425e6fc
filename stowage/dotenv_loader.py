# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Idempotent .env loading for client configuration.

The loader reads environment variables from two locations (in order):

1. ``~/.config/stowage/.env`` (XDG config directory), next to the
   ``stowage.yaml`` config file
2. ``.env`` in the current working directory, for per-invocation
   overrides

Variables set by the first file are **not** overwritten by the second
(``python-dotenv`` respects existing env vars by default).
"""

import logging
from pathlib import Path

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

_dotenv_loaded = False


def load_dotenv_once(config_dir: Path | None = None) -> None:
    """Load .env files once, if not already loaded.

    Calling it again after the first load has no effect.

    Args:
        config_dir: Directory holding the config file.  Defaults to the
            XDG config directory.
    """
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    from stowage.config import get_config_dir

    # 1. Config directory (.env next to stowage.yaml)
    xdg_env = (config_dir or get_config_dir()) / ".env"
    if xdg_env.exists():
        load_dotenv(xdg_env)
        logger.debug("Loaded .env from %s", xdg_env)

    # 2. Current working directory (override / development use)
    cwd_env = Path.cwd() / ".env"
    if cwd_env.exists():
        load_dotenv(cwd_env)
        logger.debug("Loaded .env from %s", cwd_env)

    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False
