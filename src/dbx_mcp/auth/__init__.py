"""OAuth authentication for the Dropbox MCP server.

This package keeps a single Dropbox credential valid across restarts:
PKCE authorization, encrypted token persistence and classified refresh.

Quick Start:
    ```python
    from dbx_mcp.auth import SecretStore, TokenManager, TokenStorage

    storage = TokenStorage(SecretStore.from_env())
    manager = TokenManager(storage, app_key="...", app_secret="...")

    url, verifier = manager.generate_auth_url()
    await manager.exchange_code_for_tokens(code, verifier)

    token = await manager.get_valid_access_token()
    ```
"""

from dbx_mcp.auth.models import (
    Credential,
    EncryptedBlob,
    PKCEPair,
    TokenState,
    TokenStatus,
)
from dbx_mcp.auth.secret_store import SecretStore, generate_encryption_key
from dbx_mcp.auth.token_manager import DEFAULT_SCOPES, TokenManager, generate_pkce
from dbx_mcp.auth.token_storage import TokenStorage

__all__ = [
    "TokenManager",
    "TokenStorage",
    "SecretStore",
    "Credential",
    "EncryptedBlob",
    "PKCEPair",
    "TokenState",
    "TokenStatus",
    "DEFAULT_SCOPES",
    "generate_pkce",
    "generate_encryption_key",
]
