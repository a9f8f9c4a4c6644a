"""Data models for Dropbox OAuth credentials.

The credential is serialized with camelCase keys (``accessToken``,
``expiresAt`` ...) so token files written by earlier releases of the server
keep loading. Timestamps are epoch milliseconds.
"""

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class TokenStatus(str, Enum):
    """Status of the persisted credential, as reported by the CLI."""

    VALID = "valid"
    EXPIRED = "expired"
    MISSING = "missing"
    INVALID = "invalid"


class TokenState(str, Enum):
    """Lifecycle state of the in-memory credential.

    UNAUTHENTICATED -> VALID via code exchange; VALID -> EXPIRING once inside
    the refresh threshold; EXPIRING -> REFRESHING -> VALID | FAILED.
    """

    UNAUTHENTICATED = "unauthenticated"
    VALID = "valid"
    EXPIRING = "expiring"
    REFRESHING = "refreshing"
    FAILED = "failed"


class Credential(BaseModel):
    """The single authoritative OAuth credential of the process.

    Attributes:
        access_token: Current bearer token.
        refresh_token: Long-lived refresh token. Empty only in static-token mode.
        expires_at: Absolute expiry, epoch milliseconds.
        scope: Granted permission scopes.
        code_verifier: PKCE verifier kept from the initial code exchange.
        last_refresh_attempt: Set on every refresh attempt, cleared on success.
        refresh_attempts: Consecutive failed refreshes since the last success.
    """

    access_token: str = Field(..., min_length=1, alias="accessToken")
    refresh_token: str = Field(default="", alias="refreshToken")
    expires_at: int = Field(..., alias="expiresAt", description="Expiry (epoch ms)")
    scope: list[str] = Field(default_factory=list)
    code_verifier: str | None = Field(default=None, alias="codeVerifier")
    last_refresh_attempt: int | None = Field(default=None, alias="lastRefreshAttempt")
    refresh_attempts: int = Field(default=0, ge=0, alias="refreshAttempts")

    model_config = {"populate_by_name": True}

    @property
    def can_refresh(self) -> bool:
        """True if a refresh-token grant is possible."""
        return bool(self.refresh_token)

    def needs_refresh(self, now: int, threshold_ms: int) -> bool:
        """Check whether the token is inside the refresh window.

        Args:
            now: Current time in epoch milliseconds.
            threshold_ms: How long before expiry a refresh is triggered.
        """
        return now >= self.expires_at - threshold_ms

    def to_storage_dict(self) -> dict[str, Any]:
        """Serialize with the on-disk camelCase keys."""
        return self.model_dump(by_alias=True, exclude_none=True)


class EncryptedBlob(BaseModel):
    """AES-GCM output: hex IV plus hex ciphertext with the auth tag appended."""

    iv: str = Field(..., description="Hex-encoded nonce")
    encrypted_data: str = Field(
        ..., alias="encryptedData", description="Hex ciphertext followed by 16-byte tag"
    )

    model_config = {"populate_by_name": True}


class PKCEPair(BaseModel):
    """PKCE verifier and its S256 challenge."""

    code_verifier: str
    code_challenge: str
