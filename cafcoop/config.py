"""
Application Configuration.

Pydantic Settings model for the CAFCOOP session bootstrap layer.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Literal, Optional

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings

from cafcoop.errors import ConfigurationError


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")  # Server-side only

    # --- Datastore ---
    PROFILE_TABLE: str = "utilisateurs"
    AUDIT_TABLE: str = "audit_logs"
    DEFAULT_PROFILE_ROLE: str = "agriculteur"

    # --- Provisioning ---
    PROVISIONING_MODE: Literal["direct", "endpoint", "edge_function"] = "endpoint"
    PROVISIONING_ENDPOINT_URL: str = "http://localhost:3000/api/auth/link-profile"
    EDGE_FUNCTION_NAME: str = "create-user-profile"

    # --- Timeouts & retry policy (seconds) ---
    SESSION_TIMEOUT_S: float = 5.0
    PROFILE_QUERY_TIMEOUT_S: float = 10.0
    PROVISION_TIMEOUT_S: float = 8.0
    PROFILE_MAX_RETRIES: int = 2
    PROFILE_RETRY_DELAY_S: float = 1.0
    DEDUP_WINDOW_S: float = 5.0
    INIT_SAFETY_TIMEOUT_S: float = 15.0

    # --- Polling fallback ---
    POLL_INTERVAL_S: float = 2.0
    POLL_MAX_ATTEMPTS: int = 10

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "cafcoop.log"
    LOG_MAX_BYTES: int = 10_485_760  # 10 MB
    LOG_BACKUP_COUNT: int = 3
    TELEMETRY_BUFFER_SIZE: int = 1000
    SLOW_OPERATION_THRESHOLD_S: float = 1.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing.
        The warning lets operators see that the process runs without a
        provider connection before the first session pull fails.
        """
        _log = logging.getLogger("cafcoop.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.SUPABASE_URL or not self.SUPABASE_ANON_KEY.get_secret_value():
            _log.warning(
                "SUPABASE_URL or SUPABASE_ANON_KEY is empty; the provider "
                "gateway will refuse to build a client."
            )

        return self

    # --- Credential validation ---
    def require_client_credentials(self) -> tuple[str, str]:
        """Return ``(url, anon_key)`` for the client-side gateway.

        Raises:
            ConfigurationError: If either value is missing.
        """
        key = self.SUPABASE_ANON_KEY.get_secret_value()
        if not self.SUPABASE_URL or not key:
            raise ConfigurationError("SUPABASE_URL ou SUPABASE_ANON_KEY manquant")
        return self.SUPABASE_URL, key

    def require_service_credentials(self) -> tuple[str, str]:
        """Return ``(url, service_role_key)`` for server-side provisioning.

        The service-role key bypasses row-level security and must never
        reach the client boundary.

        Raises:
            ConfigurationError: If either value is missing.
        """
        key = self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value()
        if not self.SUPABASE_URL or not key:
            raise ConfigurationError(
                "SUPABASE_URL ou SUPABASE_SERVICE_ROLE_KEY manquant (serveur)"
            )
        return self.SUPABASE_URL, key

    @property
    def edge_function_url(self) -> str:
        """Full URL of the provisioning edge function."""
        return f"{self.SUPABASE_URL.rstrip('/')}/functions/v1/{self.EDGE_FUNCTION_NAME}"


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Uses a check-lock-check
    pattern so the fast path never takes the lock.

    Prefer direct constructor injection of ``AppConfig``; this factory
    exists for the logger and the composition root.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
