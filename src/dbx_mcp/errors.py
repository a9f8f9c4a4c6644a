"""Error types shared by the token manager, deletion engine and dispatcher.

Every failure that reaches the tool dispatcher is a ``DbxMcpError`` carrying
a stable ``kind``, a ``retryable`` flag and a human-readable message, so
callers can branch on ``error.kind`` instead of the concrete subclass.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable error categories surfaced to MCP clients."""

    # Startup / configuration
    CONFIGURATION = "configuration"
    DECRYPTION = "decryption"

    # OAuth
    EXCHANGE_FAILED = "exchange_failed"
    AUTH_REQUIRED = "auth_required"
    NO_REFRESH_TOKEN = "no_refresh_token"
    INVALID_GRANT = "invalid_grant"
    RATE_LIMIT = "rate_limit"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    UNKNOWN_ERROR = "unknown_error"
    REFRESH_FAILED = "refresh_failed"

    # Deletion policy
    PATH_BLOCKED = "path_blocked"
    PATH_NOT_ALLOWED = "path_not_allowed"
    DELETE_RATE_LIMIT = "delete_rate_limit"

    # Storage provider
    NOT_FOUND = "path_not_found"
    MALFORMED_PATH = "path_malformed"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    INVALID_ACCESS_TOKEN = "invalid_access_token"
    PROVIDER_RATE_LIMIT = "provider_rate_limit"
    PROVIDER_SERVER_ERROR = "provider_server_error"
    PROVIDER_NETWORK_ERROR = "provider_network_error"
    PROVIDER_ERROR = "provider_error"
    INVALID_ARGUMENT = "invalid_argument"


class DbxMcpError(Exception):
    """Base class for all structured dbx-mcp failures.

    Attributes:
        kind: Stable error category.
        message: Human-readable description.
        retryable: Whether the same call may succeed if retried later.
    """

    default_kind = ErrorKind.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        kind: ErrorKind | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a tool result payload."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class ConfigurationError(DbxMcpError):
    """Missing or invalid configuration. Fatal at startup."""

    default_kind = ErrorKind.CONFIGURATION


class DecryptionError(DbxMcpError):
    """Encrypted data could not be authenticated or parsed."""

    default_kind = ErrorKind.DECRYPTION


class TokenExchangeError(DbxMcpError):
    """Authorization code exchange failed. Never retried: codes are single-use."""

    default_kind = ErrorKind.EXCHANGE_FAILED


class AuthenticationRequiredError(DbxMcpError):
    """No usable credential; the user has to run the authorization flow."""

    default_kind = ErrorKind.AUTH_REQUIRED


class TokenRefreshError(DbxMcpError):
    """A refresh attempt failed. ``retryable`` drives the retry loop."""

    default_kind = ErrorKind.UNKNOWN_ERROR


class PathPolicyError(DbxMcpError):
    """Path rejected by the allow/block lists."""

    default_kind = ErrorKind.PATH_NOT_ALLOWED


class RateLimitError(DbxMcpError):
    """Per-user delete quota exhausted."""

    default_kind = ErrorKind.DELETE_RATE_LIMIT


class ProviderError(DbxMcpError):
    """Dropbox API failure mapped onto a stable category."""

    default_kind = ErrorKind.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        kind: ErrorKind | None = None,
        retryable: bool = False,
        status_code: int | None = None,
        error_summary: str | None = None,
    ) -> None:
        super().__init__(message, kind=kind, retryable=retryable)
        self.status_code = status_code
        self.error_summary = error_summary

    @property
    def is_client_error(self) -> bool:
        """True when the caller's input was at fault (bad or missing path)."""
        return self.kind in (ErrorKind.NOT_FOUND, ErrorKind.MALFORMED_PATH)


__all__ = [
    "ErrorKind",
    "DbxMcpError",
    "ConfigurationError",
    "DecryptionError",
    "TokenExchangeError",
    "AuthenticationRequiredError",
    "TokenRefreshError",
    "PathPolicyError",
    "RateLimitError",
    "ProviderError",
]
