"""Environment-driven configuration, logging and the audit sink.

Settings are read from the process environment. The CLI loads a
project-level ``.env`` first (see ``load_env_file``); library modules never
read configuration as an import side effect.

Logging goes to stderr: stdout carries the MCP JSON-RPC stream. Audit events
are written as JSON lines to ``<log dir>/audit.log``.
"""

import logging
import os
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from pythonjsonlogger.json import JsonFormatter

from dbx_mcp.auth.secret_store import SecretStore
from dbx_mcp.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "dbx_mcp.audit"
AUDIT_LOG_MAX_BYTES = 5 * 1024 * 1024
AUDIT_LOG_BACKUPS = 5

REQUIRED_OAUTH_VARS = [
    "DROPBOX_APP_KEY",
    "DROPBOX_APP_SECRET",
    "DROPBOX_REDIRECT_URI",
    "TOKEN_ENCRYPTION_KEY",
]

# Safety variables: (primary name, legacy alias, default)
SAFETY_VARS = {
    "recycle_bin_path": ("DROPBOX_RECYCLE_BIN_PATH", "DBX_RECYCLE_BIN_PATH", "/.recycle_bin"),
    "max_deletes_per_day": ("DROPBOX_MAX_DELETES_PER_DAY", "DBX_MAX_DELETES_PER_DAY", "100"),
    "retention_days": ("DROPBOX_RETENTION_DAYS", "DBX_RETENTION_DAYS", "30"),
    "allowed_paths": ("DROPBOX_ALLOWED_PATHS", "DBX_ALLOWED_PATHS", "/"),
    "blocked_paths": ("DROPBOX_BLOCKED_PATHS", "DBX_BLOCKED_PATHS", "/.recycle_bin,/.system"),
}


class DropboxSettings(BaseModel):
    """Dropbox app registration and API access."""

    app_key: str | None = None
    app_secret: str | None = Field(default=None, repr=False)
    redirect_uri: str = "http://localhost"
    access_token: str | None = Field(default=None, repr=False)
    request_timeout: float = Field(default=30.0, gt=0)


class TokenSettings(BaseModel):
    """Token storage and refresh behaviour."""

    encryption_key: str | None = Field(default=None, repr=False)
    store_path: Path = Field(default_factory=lambda: Path.cwd() / ".tokens.json")
    threshold_minutes: int = Field(default=5, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)


class SafetySettings(BaseModel):
    """Deletion guard rails."""

    recycle_bin_path: str = "/.recycle_bin"
    max_deletes_per_day: int = Field(default=100, ge=0)
    retention_days: int = Field(default=30, ge=0)
    allowed_paths: list[str] = Field(default_factory=lambda: ["/"])
    blocked_paths: list[str] = Field(default_factory=lambda: ["/.recycle_bin", "/.system"])

    @field_validator("allowed_paths", "blocked_paths", mode="before")
    @classmethod
    def split_comma_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        return value


class LogSettings(BaseModel):
    """Operational and audit logging."""

    level: str = "INFO"
    log_dir: Path = Field(default_factory=lambda: Path.cwd() / "logs")


class Settings(BaseModel):
    """Complete server configuration."""

    dropbox: DropboxSettings = Field(default_factory=DropboxSettings)
    tokens: TokenSettings = Field(default_factory=TokenSettings)
    safety: SafetySettings = Field(default_factory=SafetySettings)
    log: LogSettings = Field(default_factory=LogSettings)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables.

        Raises:
            ConfigurationError: If a value is malformed, or an encrypted
                DROPBOX_APP_SECRET cannot be decrypted.
        """
        env = os.environ if environ is None else environ

        safety: dict[str, str] = {}
        for field, (name, alias, default) in SAFETY_VARS.items():
            value = env.get(name) or env.get(alias)
            if not value:
                logger.warning(f"Using default value for {name}: {default}")
                value = default
            safety[field] = value

        encryption_key = env.get("TOKEN_ENCRYPTION_KEY") or None
        app_secret = env.get("DROPBOX_APP_SECRET") or None
        if app_secret and SecretStore.looks_encrypted(app_secret):
            app_secret = _decrypt_app_secret(app_secret, encryption_key)

        raw: dict[str, Any] = {
            "dropbox": {
                "app_key": env.get("DROPBOX_APP_KEY") or None,
                "app_secret": app_secret,
                "redirect_uri": env.get("DROPBOX_REDIRECT_URI") or "http://localhost",
                "access_token": env.get("DROPBOX_ACCESS_TOKEN") or None,
                "request_timeout": env.get("DROPBOX_REQUEST_TIMEOUT_SECONDS") or 30.0,
            },
            "tokens": {
                "encryption_key": encryption_key,
                "threshold_minutes": env.get("TOKEN_REFRESH_THRESHOLD_MINUTES") or 5,
                "max_retries": env.get("MAX_TOKEN_REFRESH_RETRIES") or 3,
                "retry_delay_ms": env.get("TOKEN_REFRESH_RETRY_DELAY_MS") or 1000,
            },
            "safety": safety,
            "log": {"level": (env.get("LOG_LEVEL") or "INFO").upper()},
        }
        if env.get("TOKEN_STORE_PATH"):
            raw["tokens"]["store_path"] = env["TOKEN_STORE_PATH"]
        if env.get("DBX_MCP_LOG_DIR"):
            raw["log"]["log_dir"] = env["DBX_MCP_LOG_DIR"]

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def require_oauth(self) -> None:
        """Verify everything needed to serve requests is configured.

        Raises:
            ConfigurationError: Naming the first missing variable.
        """
        present = {
            "DROPBOX_APP_KEY": self.dropbox.app_key,
            "DROPBOX_APP_SECRET": self.dropbox.app_secret,
            "DROPBOX_REDIRECT_URI": self.dropbox.redirect_uri,
            "TOKEN_ENCRYPTION_KEY": self.tokens.encryption_key,
        }
        # A static access token needs no OAuth app or token file
        if self.dropbox.access_token:
            return
        for name in REQUIRED_OAUTH_VARS:
            if not present[name]:
                raise ConfigurationError(f"Missing required environment variable: {name}")
        self.secret_store()

    def secret_store(self) -> SecretStore:
        """Create the SecretStore for this configuration.

        Raises:
            ConfigurationError: If the encryption key is missing or too short.
        """
        return SecretStore(self.tokens.encryption_key or "")


def _decrypt_app_secret(value: str, encryption_key: str | None) -> str:
    try:
        secret = SecretStore(encryption_key or "").decrypt_json(value)
    except DecryptionError as e:
        raise ConfigurationError(
            "Failed to decrypt DROPBOX_APP_SECRET. You may need to run 'dbx-mcp setup' again."
        ) from e
    return str(secret)


def load_env_file(path: Path | None = None) -> bool:
    """Load a .env file into the process environment without overriding it.

    Returns:
        True if a file was found and loaded.
    """
    env_path = path or Path.cwd() / ".env"
    if not env_path.exists():
        return False
    return load_dotenv(dotenv_path=env_path, override=False)


# =============================================================================
# Logging
# =============================================================================

_RESERVED_RECORD_KEYS = set(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


class AuditLog:
    """Structured audit sink.

    Every event carries ``timestamp`` (ISO-8601, UTC) plus the caller's
    fields, at minimum ``path``, ``userId`` and ``operation``.
    """

    def __init__(self, audit_logger: logging.Logger | None = None) -> None:
        self._logger = audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def _log(self, level: int, event: str, fields: dict[str, Any]) -> None:
        fields.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        extra = {
            (f"audit_{key}" if key in _RESERVED_RECORD_KEYS else key): value
            for key, value in fields.items()
        }
        self._logger.log(level, event, extra=extra)

    def info(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, fields)

    def error(self, event: str, **fields: Any) -> None:
        self._log(logging.ERROR, event, fields)


def configure_logging(settings: Settings) -> AuditLog:
    """Install the stderr handler and the JSON audit file handler.

    Returns:
        The AuditLog bound to the configured audit logger.
    """
    logging.basicConfig(
        level=settings.log.level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

    if not audit_logger.handlers:
        try:
            settings.log.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Failed to create logs directory at {settings.log.log_dir}: {e}"
            ) from e
        handler = RotatingFileHandler(
            settings.log.log_dir / "audit.log",
            maxBytes=AUDIT_LOG_MAX_BYTES,
            backupCount=AUDIT_LOG_BACKUPS,
        )
        handler.setFormatter(
            JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                static_fields={"service": "dbx-mcp-audit"},
            )
        )
        audit_logger.addHandler(handler)

    return AuditLog(audit_logger)
