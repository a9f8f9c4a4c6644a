"""Encrypted file storage for the Dropbox OAuth credential.

The credential is serialized to JSON, encrypted through the SecretStore and
written as ``{"iv": "<hex>", "encryptedData": "<hex>"}``.

Storage Location: ./.tokens.json (override with TOKEN_STORE_PATH)

A file that exists but cannot be decrypted or parsed is never treated as
"no token": loading raises DecryptionError so the user is told to reset and
re-authenticate instead of hitting confusing 401s later.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from dbx_mcp.auth.models import Credential, TokenStatus, now_ms
from dbx_mcp.auth.secret_store import SecretStore
from dbx_mcp.errors import DecryptionError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_FILE = ".tokens.json"


def get_token_path() -> Path:
    """Get the token storage path.

    Returns:
        TOKEN_STORE_PATH if set, otherwise ./.tokens.json.
    """
    return Path(os.environ.get("TOKEN_STORE_PATH") or Path.cwd() / DEFAULT_TOKEN_FILE)


class TokenStorage:
    """Persist a single Credential encrypted at rest.

    Attributes:
        token_path: Path to the encrypted token file.

    Example:
        ```python
        storage = TokenStorage(SecretStore.from_env())
        storage.save(credential)
        credential = storage.load()
        ```
    """

    def __init__(self, secret_store: SecretStore, token_path: Path | None = None) -> None:
        """Initialize token storage.

        Args:
            secret_store: Store used for every encrypt/decrypt.
            token_path: Custom token file path. Defaults to get_token_path().
        """
        self.secret_store = secret_store
        self.token_path = Path(token_path) if token_path else get_token_path()

    def exists(self) -> bool:
        """Check whether a token file is present."""
        return self.token_path.exists()

    def load(self) -> Credential | None:
        """Load and decrypt the stored credential.

        Returns:
            The credential, or None if no token file exists.

        Raises:
            DecryptionError: If the file is unreadable, tampered with,
                encrypted under another key, or holds an invalid credential.
        """
        if not self.exists():
            logger.debug(f"No token file at {self.token_path}")
            return None

        try:
            with open(self.token_path) as f:
                blob = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Token file {self.token_path} is unreadable: {e}")
            raise DecryptionError(
                "Failed to load token data. The token file may be corrupted. "
                "Run 'dbx-mcp reset-tokens' and re-authenticate."
            ) from e

        data = self.secret_store.decrypt(blob)

        try:
            credential = Credential.model_validate(data)
        except ValidationError as e:
            logger.error(f"Token file {self.token_path} holds an invalid credential")
            raise DecryptionError(
                "Stored token data is invalid. "
                "Run 'dbx-mcp reset-tokens' and re-authenticate."
            ) from e

        logger.debug("Token data decrypted successfully")
        return credential

    def save(self, credential: Credential) -> None:
        """Encrypt and write the credential, replacing any previous file.

        The write goes to a temporary file in the same directory and is moved
        into place, so a crash never leaves a half-written token file.
        """
        blob = self.secret_store.encrypt(credential.to_storage_dict())
        payload = json.dumps(blob.model_dump(by_alias=True), indent=2)

        directory = self.token_path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=".tokens-", dir=directory)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            # Owner read/write only (600)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.token_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get_status(self, threshold_ms: int = 0) -> TokenStatus:
        """Get the status of the stored credential.

        Args:
            threshold_ms: Refresh threshold; a token inside it counts as expired.
        """
        try:
            credential = self.load()
        except DecryptionError:
            return TokenStatus.INVALID

        if credential is None:
            return TokenStatus.MISSING

        if credential.needs_refresh(now_ms(), threshold_ms):
            return TokenStatus.EXPIRED

        return TokenStatus.VALID

    def backup_and_clear(self) -> Path | None:
        """Move the current token file to ``<path>.bak.<epoch-ms>``.

        Returns:
            The backup path, or None if there was nothing to back up.
        """
        if not self.exists():
            return None
        backup = self.token_path.with_name(
            f"{self.token_path.name}.bak.{now_ms()}"
        )
        os.replace(self.token_path, backup)
        logger.info(f"Backed up token file to {backup}")
        return backup
