"""Unit tests for TokenStorage class.

Tests cover encrypted persistence, status reporting, corruption handling,
and backups.
"""

import json
import os
import stat
from pathlib import Path

import pytest

from dbx_mcp.auth.models import Credential, TokenStatus
from dbx_mcp.auth.secret_store import SecretStore
from dbx_mcp.auth.token_storage import TokenStorage, get_token_path
from dbx_mcp.errors import DecryptionError


@pytest.mark.unit
class TestTokenStorageInit:
    """Tests for TokenStorage initialization."""

    def test_should_use_custom_path(
        self, secret_store: SecretStore, temp_token_path: Path
    ) -> None:
        """Verify storage accepts a custom token path."""
        storage = TokenStorage(secret_store, token_path=temp_token_path)
        assert storage.token_path == temp_token_path

    def test_should_default_to_env_path(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        """Verify TOKEN_STORE_PATH overrides the default location."""
        monkeypatch.setenv("TOKEN_STORE_PATH", str(tmp_path / "custom.json"))
        assert get_token_path() == tmp_path / "custom.json"

    def test_should_default_to_working_directory(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        """Verify the default is .tokens.json in the working directory."""
        monkeypatch.delenv("TOKEN_STORE_PATH", raising=False)
        monkeypatch.chdir(tmp_path)
        assert get_token_path() == tmp_path / ".tokens.json"


@pytest.mark.unit
class TestTokenStorageSaveLoad:
    """Tests for save() and load()."""

    def test_should_round_trip_credential(
        self, token_storage: TokenStorage, valid_credential: Credential
    ) -> None:
        """Verify a saved credential loads back unchanged."""
        token_storage.save(valid_credential)

        assert token_storage.load() == valid_credential

    def test_should_return_none_when_missing(self, token_storage: TokenStorage) -> None:
        """Verify load returns None when no file exists."""
        assert token_storage.exists() is False
        assert token_storage.load() is None

    def test_should_write_encrypted_blob(
        self, token_storage: TokenStorage, valid_credential: Credential
    ) -> None:
        """Verify the file holds only iv and encryptedData, no plaintext."""
        token_storage.save(valid_credential)

        raw = token_storage.token_path.read_text()
        assert json.loads(raw).keys() == {"iv", "encryptedData"}
        assert "test_access_token_abc123" not in raw

    def test_should_write_owner_only_file(
        self, token_storage: TokenStorage, valid_credential: Credential
    ) -> None:
        """Verify the token file has 0600 permissions."""
        token_storage.save(valid_credential)

        mode = stat.S_IMODE(os.stat(token_storage.token_path).st_mode)
        assert mode == 0o600

    def test_should_leave_no_temp_files(
        self, token_storage: TokenStorage, valid_credential: Credential
    ) -> None:
        """Verify atomic writes clean up after themselves."""
        token_storage.save(valid_credential)
        token_storage.save(valid_credential)

        assert [p.name for p in token_storage.token_path.parent.iterdir()] == [".tokens.json"]

    def test_should_create_parent_directory(
        self, secret_store: SecretStore, tmp_path: Path, valid_credential: Credential
    ) -> None:
        """Verify save creates missing directories."""
        storage = TokenStorage(secret_store, tmp_path / "nested" / "dir" / "tokens.json")
        storage.save(valid_credential)

        assert storage.load() == valid_credential

    def test_should_raise_on_corrupted_json(self, token_storage: TokenStorage) -> None:
        """Verify a non-JSON file is a decryption failure, not 'no token'."""
        token_storage.token_path.write_text("{not json")

        with pytest.raises(DecryptionError, match="reset-tokens"):
            token_storage.load()

    def test_should_raise_on_wrong_key(
        self, temp_token_path: Path, valid_credential: Credential
    ) -> None:
        """Verify a file encrypted under another key fails closed."""
        TokenStorage(SecretStore("a" * 32), temp_token_path).save(valid_credential)

        with pytest.raises(DecryptionError):
            TokenStorage(SecretStore("b" * 32), temp_token_path).load()

    def test_should_raise_on_invalid_credential_payload(
        self, token_storage: TokenStorage, secret_store: SecretStore
    ) -> None:
        """Verify decryptable but invalid data is rejected."""
        blob = secret_store.encrypt({"accessToken": "", "expiresAt": 0})
        token_storage.token_path.write_text(json.dumps(blob.model_dump(by_alias=True)))

        with pytest.raises(DecryptionError, match="invalid"):
            token_storage.load()


@pytest.mark.unit
class TestTokenStorageStatus:
    """Tests for get_status()."""

    def test_should_report_missing(self, token_storage: TokenStorage) -> None:
        """Verify MISSING when no file exists."""
        assert token_storage.get_status() == TokenStatus.MISSING

    def test_should_report_invalid(self, token_storage: TokenStorage) -> None:
        """Verify INVALID when the file cannot be decrypted."""
        token_storage.token_path.write_text('{"iv": "00", "encryptedData": "00"}')
        assert token_storage.get_status() == TokenStatus.INVALID

    def test_should_report_valid(self, token_storage: TokenStorage) -> None:
        """Verify VALID for a token far from expiry."""
        token_storage.save(Credential(access_token="t", expires_at=2**62))
        assert token_storage.get_status() == TokenStatus.VALID

    def test_should_report_expired(self, token_storage: TokenStorage) -> None:
        """Verify EXPIRED for a token past its expiry."""
        token_storage.save(Credential(access_token="t", expires_at=1))
        assert token_storage.get_status() == TokenStatus.EXPIRED


@pytest.mark.unit
class TestTokenStorageClear:
    """Tests for backup_and_clear()."""

    def test_should_back_up_before_clearing(
        self, token_storage: TokenStorage, valid_credential: Credential
    ) -> None:
        """Verify backup_and_clear keeps the old file as .bak.<ms>."""
        token_storage.save(valid_credential)
        original = token_storage.token_path.read_text()

        backup = token_storage.backup_and_clear()

        assert backup is not None
        assert backup.name.startswith(".tokens.json.bak.")
        assert backup.name.rsplit(".", 1)[-1].isdigit()
        assert backup.read_text() == original
        assert token_storage.exists() is False

    def test_should_skip_backup_when_missing(self, token_storage: TokenStorage) -> None:
        """Verify nothing happens when there is no file."""
        assert token_storage.backup_and_clear() is None
