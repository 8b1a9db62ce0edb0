"""
sealcall - Configuration
Settings come from environment variables, with defaults for local use.

    SEALCALL_KEY_DIR       directory holding client.private / counterparty.public
    SEALCALL_BASE_URL      base URL of the counterparty
    SEALCALL_TIMEOUT       transport timeout in seconds
    SEALCALL_SUCCESS_CODE  business code that means success
    SEALCALL_REPLAY_DB     SQLite path for response nonce tracking (unset = off)
    SEALCALL_LOG_LEVEL     logging level name
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional, Union

from .crypto_engine import KeyManager
from .exchange import SecureHttpClient
from .models import DEFAULT_SUCCESS_CODE
from .replay import ReplayProtector

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_KEY_DIR = "data/security"
DEFAULT_TIMEOUT = 30.0
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _parse_code(value: str) -> Union[int, str]:
    try:
        return int(value)
    except ValueError:
        return value


@dataclass(frozen=True)
class Settings:
    key_dir: str = DEFAULT_KEY_DIR
    base_url: str = ""
    timeout: float = DEFAULT_TIMEOUT
    success_code: Union[int, str] = DEFAULT_SUCCESS_CODE
    replay_db: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from SEALCALL_* environment variables."""
        timeout = os.environ.get("SEALCALL_TIMEOUT")
        success_code = os.environ.get("SEALCALL_SUCCESS_CODE")
        return cls(
            key_dir=os.environ.get("SEALCALL_KEY_DIR", DEFAULT_KEY_DIR),
            base_url=os.environ.get("SEALCALL_BASE_URL", ""),
            timeout=float(timeout) if timeout else DEFAULT_TIMEOUT,
            success_code=_parse_code(success_code) if success_code else DEFAULT_SUCCESS_CODE,
            replay_db=os.environ.get("SEALCALL_REPLAY_DB") or None,
            log_level=os.environ.get("SEALCALL_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Send sealcall logs to stdout."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    return logging.getLogger("sealcall")


def build_client(settings: Optional[Settings] = None) -> SecureHttpClient:
    """
    Wire a SecureHttpClient from settings.

    Keys are loaded once here; the returned client shares them read-only
    across all exchanges.
    """
    settings = settings or Settings.from_env()
    key_material = KeyManager(settings.key_dir).load_key_material()
    replay_guard = ReplayProtector(settings.replay_db) if settings.replay_db else None

    return SecureHttpClient(
        key_material,
        replay_guard=replay_guard,
        base_url=settings.base_url,
        timeout=settings.timeout,
        success_code=settings.success_code,
    )
