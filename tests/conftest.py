"""Shared pytest fixtures for dbx-mcp tests.

This module provides reusable fixtures for the secret store, token storage,
a controllable clock, and httpx mock transports standing in for Dropbox.
"""

from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock
from urllib.parse import parse_qs

import httpx
import pytest

from dbx_mcp.auth.models import Credential
from dbx_mcp.auth.secret_store import SecretStore
from dbx_mcp.auth.token_storage import TokenStorage
from dbx_mcp.config import AuditLog, Settings

TEST_ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"  # pragma: allowlist secret
START_MS = 1_700_000_000_000

# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now = start_ms
        self.sleeps: list[float] = []

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(int(seconds * 1000))

    def as_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now / 1000, tz=timezone.utc)


@pytest.fixture
def clock() -> FakeClock:
    """Create a controllable clock starting at a fixed instant."""
    return FakeClock()


# =============================================================================
# Secret Store and Token Storage
# =============================================================================


@pytest.fixture
def secret_store() -> SecretStore:
    """Create a SecretStore with a fixed 32-byte key."""
    return SecretStore(TEST_ENCRYPTION_KEY)


@pytest.fixture
def temp_token_path(tmp_path: Path) -> Path:
    """Get the path for a temporary .tokens.json file."""
    return tmp_path / ".tokens.json"


@pytest.fixture
def token_storage(secret_store: SecretStore, temp_token_path: Path) -> TokenStorage:
    """Create a TokenStorage instance with temporary storage."""
    return TokenStorage(secret_store, token_path=temp_token_path)


# =============================================================================
# Credentials
# =============================================================================


@pytest.fixture
def valid_credential(clock: FakeClock) -> Credential:
    """Create a credential that expires in one hour."""
    return Credential(
        access_token="test_access_token_abc123",
        refresh_token="test_refresh_token_xyz789",
        expires_at=clock.now + 60 * 60 * 1000,
        scope=["files.content.read", "files.content.write"],
        code_verifier="test_verifier",
    )


@pytest.fixture
def expiring_credential(clock: FakeClock) -> Credential:
    """Create a credential inside the default 5 minute refresh threshold."""
    return Credential(
        access_token="old_access_token",
        refresh_token="test_refresh_token_xyz789",
        expires_at=clock.now + 60 * 1000,
        scope=["files.content.read", "files.content.write"],
    )


# =============================================================================
# HTTP Mocks
# =============================================================================


class MockEndpoint:
    """Queue of canned responses served through httpx.MockTransport.

    Each queued item is either an httpx.Response or an exception to raise.
    Every request is recorded for assertions.
    """

    def __init__(self) -> None:
        self.queue: list[httpx.Response | Exception] = []
        self.requests: list[httpx.Request] = []

    def add(self, status_code: int = 200, json: Any = None, **kwargs: Any) -> None:
        self.queue.append(httpx.Response(status_code, json=json, **kwargs))

    def add_error(self, error: Exception) -> None:
        self.queue.append(error)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.queue:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def form(self, index: int = -1) -> dict[str, str]:
        """Decoded form body of a recorded request."""
        parsed = parse_qs(self.requests[index].content.decode())
        return {key: values[0] for key, values in parsed.items()}


@pytest.fixture
def endpoint() -> MockEndpoint:
    """Create a mock HTTP endpoint."""
    return MockEndpoint()


# =============================================================================
# Configuration and Audit
# =============================================================================


@pytest.fixture
def base_env(tmp_path: Path) -> dict[str, str]:
    """Environment with every required variable set."""
    return {
        "DROPBOX_APP_KEY": "test_app_key",
        "DROPBOX_APP_SECRET": "test_app_secret",  # pragma: allowlist secret
        "DROPBOX_REDIRECT_URI": "http://localhost",
        "TOKEN_ENCRYPTION_KEY": TEST_ENCRYPTION_KEY,
        "TOKEN_STORE_PATH": str(tmp_path / ".tokens.json"),
        "DBX_MCP_LOG_DIR": str(tmp_path / "logs"),
    }


@pytest.fixture
def settings(base_env: dict[str, str]) -> Settings:
    """Create validated settings from base_env."""
    return Settings.from_env(base_env)


@pytest.fixture
def mock_audit() -> MagicMock:
    """Create a mock audit sink."""
    return MagicMock(spec=AuditLog)


@pytest.fixture
def make_env_file(tmp_path: Path) -> Callable[[dict[str, str]], Path]:
    """Write a .env file from a mapping and return its path."""

    def _make(values: dict[str, str]) -> Path:
        env_path = tmp_path / ".env"
        env_path.write_text("".join(f"{key}={value}\n" for key, value in values.items()))
        return env_path

    return _make


# =============================================================================
# CLI Test Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()
