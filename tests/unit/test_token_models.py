"""Unit tests for credential models."""

import pytest
from pydantic import ValidationError

from dbx_mcp.auth.models import Credential, EncryptedBlob, TokenState, TokenStatus


@pytest.mark.unit
class TestCredential:
    """Tests for Credential model."""

    def test_should_create_valid_credential(self, valid_credential: Credential) -> None:
        """Verify credential creation with valid data."""
        assert valid_credential.access_token == "test_access_token_abc123"
        assert valid_credential.refresh_token == "test_refresh_token_xyz789"
        assert valid_credential.refresh_attempts == 0
        assert valid_credential.last_refresh_attempt is None

    def test_should_reject_empty_access_token(self) -> None:
        """Verify an empty access token is invalid."""
        with pytest.raises(ValidationError):
            Credential(access_token="", expires_at=0)

    def test_should_reject_negative_attempt_counter(self) -> None:
        """Verify refresh_attempts cannot go below zero."""
        with pytest.raises(ValidationError):
            Credential(access_token="t", expires_at=0, refresh_attempts=-1)

    def test_should_allow_empty_refresh_token(self) -> None:
        """Verify static-token credentials have no refresh token."""
        credential = Credential(access_token="t", expires_at=0)

        assert credential.refresh_token == ""
        assert credential.can_refresh is False

    def test_should_respect_refresh_threshold(self) -> None:
        """Verify needs_refresh compares now against expiry minus threshold."""
        credential = Credential(access_token="t", expires_at=10_000)

        assert credential.needs_refresh(now=4_999, threshold_ms=5_000) is False
        assert credential.needs_refresh(now=5_000, threshold_ms=5_000) is True
        assert credential.needs_refresh(now=10_000, threshold_ms=0) is True

    def test_should_serialize_with_camel_case_keys(self, valid_credential: Credential) -> None:
        """Verify the on-disk representation uses camelCase."""
        data = valid_credential.to_storage_dict()

        assert data["accessToken"] == "test_access_token_abc123"
        assert data["refreshToken"] == "test_refresh_token_xyz789"
        assert data["codeVerifier"] == "test_verifier"
        assert data["refreshAttempts"] == 0
        assert "lastRefreshAttempt" not in data
        assert "access_token" not in data

    def test_should_load_camel_case_payload(self) -> None:
        """Verify token files written by earlier releases still parse."""
        credential = Credential.model_validate(
            {
                "accessToken": "AT",
                "refreshToken": "RT",
                "expiresAt": 123,
                "scope": ["files.content.read"],
                "codeVerifier": "",
            }
        )

        assert credential.access_token == "AT"
        assert credential.expires_at == 123
        assert credential.scope == ["files.content.read"]


@pytest.mark.unit
class TestEncryptedBlob:
    """Tests for EncryptedBlob model."""

    def test_should_accept_alias_and_field_names(self) -> None:
        """Verify both encryptedData and encrypted_data populate the field."""
        by_alias = EncryptedBlob.model_validate({"iv": "00", "encryptedData": "ff"})
        by_name = EncryptedBlob(iv="00", encrypted_data="ff")

        assert by_alias == by_name
        assert by_alias.model_dump(by_alias=True) == {"iv": "00", "encryptedData": "ff"}


@pytest.mark.unit
class TestEnums:
    """Tests for status and state enums."""

    def test_should_have_all_status_values(self) -> None:
        """Verify TokenStatus members."""
        assert {s.value for s in TokenStatus} == {"valid", "expired", "missing", "invalid"}

    def test_should_have_all_state_values(self) -> None:
        """Verify TokenState members."""
        assert {s.value for s in TokenState} == {
            "unauthenticated",
            "valid",
            "expiring",
            "refreshing",
            "failed",
        }
