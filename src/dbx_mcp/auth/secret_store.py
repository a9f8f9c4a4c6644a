"""Symmetric encryption of JSON values for secrets at rest.

Uses AES-256-GCM from ``cryptography``. Each call to ``encrypt`` draws a
fresh 16-byte nonce; the 16-byte authentication tag is appended to the
ciphertext, matching the ``{"iv": ..., "encryptedData": ...}`` token files.

Environment Variables:
    TOKEN_ENCRYPTION_KEY: Encryption secret, at least 32 bytes. Only the first
        32 bytes are used as the AES key.
"""

import base64
import json
import logging
import os
import secrets
from collections.abc import Mapping
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from dbx_mcp.auth.models import EncryptedBlob
from dbx_mcp.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

KEY_ENV_VAR = "TOKEN_ENCRYPTION_KEY"
KEY_LENGTH = 32
NONCE_LENGTH = 16
TAG_LENGTH = 16


def generate_encryption_key() -> str:
    """Generate a new base64 encryption secret suitable for TOKEN_ENCRYPTION_KEY."""
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


class SecretStore:
    """Encrypt and decrypt JSON-serializable values.

    Example:
        ```python
        store = SecretStore.from_env()
        blob = store.encrypt({"accessToken": "abc"})
        assert store.decrypt(blob) == {"accessToken": "abc"}
        ```
    """

    def __init__(self, key: str | bytes) -> None:
        """Initialize with a provisioned secret.

        Args:
            key: Raw or base64 secret of at least 32 bytes.

        Raises:
            ConfigurationError: If the key is missing or too short.
        """
        raw = key.encode("utf-8") if isinstance(key, str) else bytes(key or b"")
        if len(raw) < KEY_LENGTH:
            raise ConfigurationError(
                f"{KEY_ENV_VAR} must be set and be at least {KEY_LENGTH} characters long"
            )
        self._aesgcm = AESGCM(raw[:KEY_LENGTH])

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SecretStore":
        """Build a store from TOKEN_ENCRYPTION_KEY.

        Raises:
            ConfigurationError: If the variable is unset or too short.
        """
        env = os.environ if environ is None else environ
        return cls(env.get(KEY_ENV_VAR, ""))

    def encrypt(self, data: Any) -> EncryptedBlob:
        """Encrypt a JSON-serializable value.

        Raises:
            TypeError: If the value is not JSON-serializable.
        """
        plaintext = json.dumps(data).encode("utf-8")
        nonce = secrets.token_bytes(NONCE_LENGTH)
        sealed = self._aesgcm.encrypt(nonce, plaintext, None)
        return EncryptedBlob(iv=nonce.hex(), encrypted_data=sealed.hex())

    def decrypt(self, blob: EncryptedBlob | Mapping[str, Any]) -> Any:
        """Authenticate and decrypt a blob produced by ``encrypt``.

        Raises:
            DecryptionError: On tag mismatch, truncated or malformed data,
                or a different key. Never returns partial data.
        """
        try:
            if not isinstance(blob, EncryptedBlob):
                blob = EncryptedBlob.model_validate(blob)
            nonce = bytes.fromhex(blob.iv)
            sealed = bytes.fromhex(blob.encrypted_data)
            if len(sealed) <= TAG_LENGTH:
                raise ValueError("ciphertext is truncated")
            plaintext = self._aesgcm.decrypt(nonce, sealed, None)
            return json.loads(plaintext.decode("utf-8"))
        except (InvalidTag, ValidationError, ValueError, TypeError) as e:
            # JSONDecodeError and UnicodeDecodeError are ValueError subclasses
            logger.error(f"Decryption failed: {type(e).__name__}")
            raise DecryptionError(
                "Failed to decrypt data. The data may be corrupted or the "
                "encryption key may be invalid."
            ) from e

    @staticmethod
    def looks_encrypted(value: str) -> bool:
        """Check whether a string is a JSON-encoded EncryptedBlob."""
        try:
            parsed = json.loads(value)
        except (TypeError, ValueError):
            return False
        return isinstance(parsed, dict) and "iv" in parsed and "encryptedData" in parsed

    def decrypt_json(self, value: str) -> Any:
        """Decrypt a JSON-encoded EncryptedBlob string (e.g. from .env)."""
        try:
            parsed = json.loads(value)
        except ValueError as e:
            raise DecryptionError("Encrypted value is not valid JSON") from e
        return self.decrypt(parsed)
