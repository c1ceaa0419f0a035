"""
Application Configuration.

Pydantic Settings model for the Dentalization session core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Backend API ---
    API_BASE_URL: str = "http://localhost:3001"
    REQUEST_TIMEOUT_S: float = 30.0
    LOGOUT_TIMEOUT_S: float = 5.0
    APP_VERSION: str = "1.0.0"
    DEBUG_MODE: bool = False

    # --- Credential Store ---
    CREDENTIAL_DB_PATH: str = "dentalization_local.db"
    CREDENTIAL_SALT_PATH: str = "~/.dentalization_session_salt"
    CREDENTIAL_KDF_ITERATIONS: int = 600_000

    # --- Biometric login (feature flag, off in the current deployment) ---
    BIOMETRIC_LOGIN_ENABLED: bool = False

    # --- Registration retries (transport errors and 5xx only) ---
    REGISTRATION_MAX_RETRIES: int = 3
    REGISTRATION_RETRY_BASE_DELAY_S: float = 0.5

    # --- Session verification backoff ---
    VERIFY_MIN_INTERVAL_S: float = 1.0
    VERIFY_MAX_BACKOFF_S: float = 30.0

    # --- Logging ---
    LOG_FILE: str = "dentalization.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @field_validator("API_BASE_URL")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when configuration looks unintended.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        so operators get a log line instead of a silent localhost backend.
        """
        _log = logging.getLogger("dentalization.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if self.API_BASE_URL.startswith("http://") and not self.DEBUG_MODE:
            _log.warning(
                "API_BASE_URL uses plain HTTP outside debug mode; bearer "
                "tokens will travel unencrypted."
            )

        return self

    @property
    def salt_path(self) -> Path:
        """Expanded location of the per-installation key-derivation salt."""
        return Path(self.CREDENTIAL_SALT_PATH).expanduser()


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    Uses a check-lock-check pattern so the fast path skips the lock while
    first initialisation stays thread-safe.  Prefer constructor injection of
    ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
