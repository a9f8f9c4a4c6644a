"""OAuth2 (authorization code + PKCE) token manager for Dropbox.

Owns the single in-memory Credential, persists it through TokenStorage and
drives the refresh state machine:

    UNAUTHENTICATED --exchange--> VALID --threshold--> EXPIRING
    EXPIRING --refresh--> REFRESHING --> VALID | FAILED

Refresh failures are classified by the token endpoint's response and only
the retryable ones are retried, with ``retry_delay_ms`` between attempts and
at most ``max_retries`` attempts per credential lifetime.

Environment Variables (see dbx_mcp.config):
    DROPBOX_APP_KEY, DROPBOX_APP_SECRET, DROPBOX_REDIRECT_URI
    TOKEN_REFRESH_THRESHOLD_MINUTES (default 5)
    MAX_TOKEN_REFRESH_RETRIES (default 3)
    TOKEN_REFRESH_RETRY_DELAY_MS (default 1000)
"""

import asyncio
import base64
import hashlib
import logging
import secrets
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from dbx_mcp.auth.models import Credential, PKCEPair, TokenState, TokenStatus, now_ms
from dbx_mcp.auth.token_storage import TokenStorage
from dbx_mcp.errors import (
    AuthenticationRequiredError,
    ConfigurationError,
    ErrorKind,
    TokenExchangeError,
    TokenRefreshError,
)

if TYPE_CHECKING:
    from dbx_mcp.config import Settings

logger = logging.getLogger(__name__)

DROPBOX_AUTHORIZE_URL = "https://www.dropbox.com/oauth2/authorize"
DROPBOX_TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"  # nosec B105 - public endpoint

DEFAULT_REDIRECT_URI = "http://localhost"
DEFAULT_SCOPES = ["files.content.read", "files.content.write"]
TOKEN_REQUEST_TIMEOUT = 10.0
STATIC_TOKEN_LIFETIME_MS = 4 * 60 * 60 * 1000

ERROR_MESSAGES = {
    "TOKEN_EXPIRED": "Access token has expired. Attempting to refresh...",
    "REFRESH_FAILED": "Failed to refresh access token after multiple attempts.",
    "NO_REFRESH_TOKEN": (
        "No refresh token available. Please authenticate first by visiting "
        "the authorization URL."
    ),
    "COOLDOWN": "Too many refresh attempts. Please wait before trying again.",
    "INVALID_GRANT": "The refresh token is invalid or has been revoked. Please re-authenticate.",
    "NETWORK_ERROR": "Network error occurred while refreshing token. Will retry...",
    "RATE_LIMIT": "Rate limit exceeded. Please try again later.",
    "SERVER_ERROR": "Dropbox server error occurred. Will retry...",
    "NOT_AUTHENTICATED": (
        "No token data available. Please authenticate first by running "
        "'dbx-mcp setup' or 'dbx-mcp auth-url'."
    ),
}

# Legal state transitions; exchange and reset are allowed from any state.
_TRANSITIONS: dict[TokenState, set[TokenState]] = {
    TokenState.UNAUTHENTICATED: {TokenState.VALID},
    TokenState.VALID: {
        TokenState.VALID,
        TokenState.EXPIRING,
        TokenState.REFRESHING,
        TokenState.FAILED,
    },
    TokenState.EXPIRING: {TokenState.REFRESHING, TokenState.FAILED},
    TokenState.REFRESHING: {TokenState.VALID, TokenState.FAILED},
    TokenState.FAILED: {
        TokenState.VALID,
        TokenState.EXPIRING,
        TokenState.REFRESHING,
        TokenState.FAILED,
    },
}


def generate_pkce() -> PKCEPair:
    """Generate a PKCE code verifier and its S256 challenge."""
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return PKCEPair(code_verifier=verifier, code_challenge=challenge)


def _error_body(response: httpx.Response) -> dict[str, Any]:
    """Best-effort decode of an OAuth error response."""
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class TokenManager:
    """Keeps one Dropbox credential valid across restarts.

    Attributes:
        storage: Encrypted token storage, or None in static-token mode.
        threshold_ms: Refresh this long before expiry.
        max_retries: Refresh attempt bound.
        retry_delay_ms: Cooldown between refresh attempts.

    Example:
        ```python
        manager = TokenManager.from_settings(settings, storage)
        url, verifier = manager.generate_auth_url()
        await manager.exchange_code_for_tokens(code, verifier)
        token = await manager.get_valid_access_token()
        ```
    """

    def __init__(
        self,
        storage: TokenStorage | None,
        app_key: str | None = None,
        app_secret: str | None = None,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        threshold_minutes: int = 5,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        static_access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the token manager.

        Args:
            storage: Token storage. May be None only with static_access_token.
            app_key: Dropbox app key (OAuth client_id).
            app_secret: Dropbox app secret (OAuth client_secret).
            redirect_uri: Redirect URI registered with the Dropbox app.
            threshold_minutes: Refresh window before expiry.
            max_retries: Maximum refresh attempts.
            retry_delay_ms: Delay between refresh attempts, also the cooldown.
            static_access_token: Long-lived token; disables refresh and storage.
            http_client: Client for the token endpoint. Created lazily if omitted.
            clock: Returns the current time in epoch milliseconds.
            sleep: Awaitable sleep taking seconds.
        """
        if storage is None and not static_access_token:
            raise ConfigurationError("Token storage is required unless a static token is set")

        self.storage = storage
        self.app_key = app_key
        self.app_secret = app_secret
        self.redirect_uri = redirect_uri
        self.threshold_ms = threshold_minutes * 60 * 1000
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self._clock = clock
        self._sleep = sleep
        self._http_client = http_client
        self._owns_client = http_client is None
        self._refresh_lock = asyncio.Lock()
        self._state = TokenState.UNAUTHENTICATED
        self._last_error: TokenRefreshError | None = None
        self._loaded = False
        self._credential: Credential | None = None
        self._static = bool(static_access_token)

        if static_access_token:
            self._credential = Credential(
                access_token=static_access_token,
                refresh_token="",
                expires_at=self._clock() + STATIC_TOKEN_LIFETIME_MS,
                scope=list(DEFAULT_SCOPES),
            )
            self._loaded = True
            self._state = TokenState.VALID

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        storage: TokenStorage | None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "TokenManager":
        """Build a manager from validated settings."""
        return cls(
            storage=storage,
            app_key=settings.dropbox.app_key,
            app_secret=settings.dropbox.app_secret,
            redirect_uri=settings.dropbox.redirect_uri,
            threshold_minutes=settings.tokens.threshold_minutes,
            max_retries=settings.tokens.max_retries,
            retry_delay_ms=settings.tokens.retry_delay_ms,
            static_access_token=settings.dropbox.access_token,
            http_client=http_client,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> TokenState:
        """Current lifecycle state."""
        return self._state

    @property
    def last_error(self) -> TokenRefreshError | None:
        """The failure that moved the manager into FAILED, if any."""
        return self._last_error

    @property
    def credential(self) -> Credential | None:
        """The in-memory credential (loaded lazily)."""
        return self._credential

    @property
    def is_static(self) -> bool:
        """True when running on a long-lived token with no refresh."""
        return self._static

    def _transition(self, new_state: TokenState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Illegal token state transition {self._state.value} -> {new_state.value}"
            )
        logger.debug(f"Token state {self._state.value} -> {new_state.value}")
        self._state = new_state

    def _fail(self, error: TokenRefreshError) -> TokenRefreshError:
        self._last_error = error
        self._transition(TokenState.FAILED)
        return error

    def _replace_credential(self, credential: Credential) -> None:
        """Persist, then swap in the new authoritative credential."""
        if self.storage is not None and not self._static:
            self.storage.save(credential)
        self._credential = credential

    def load(self) -> Credential | None:
        """Load the persisted credential into memory.

        Raises:
            DecryptionError: If the token file exists but cannot be decrypted.
        """
        if self._loaded or self.storage is None:
            return self._credential

        credential = self.storage.load()
        self._loaded = True
        if credential is not None:
            self._credential = credential
            self._transition(TokenState.VALID)
            logger.info(f"Loaded Dropbox credential from {self.storage.token_path}")
        return credential

    def status(self) -> TokenStatus:
        """Report the stored credential status for diagnostics."""
        if self._static:
            return TokenStatus.VALID
        if self.storage is None:
            return TokenStatus.MISSING
        return self.storage.get_status(self.threshold_ms)

    def reset(self) -> None:
        """Forget the in-memory credential and back up the token file."""
        if self.storage is not None and not self._static:
            self.storage.backup_and_clear()
        self._credential = None
        self._loaded = not self._static
        self._last_error = None
        self._state = TokenState.UNAUTHENTICATED

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(TOKEN_REQUEST_TIMEOUT))
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _require_app_credentials(self) -> tuple[str, str]:
        if not self.app_key or not self.app_secret:
            raise ConfigurationError(
                "Missing required configuration: DROPBOX_APP_KEY and "
                "DROPBOX_APP_SECRET must be set."
            )
        return self.app_key, self.app_secret

    async def _post_token_endpoint(self, data: dict[str, str]) -> dict[str, Any]:
        response = await self._get_http_client().post(
            DROPBOX_TOKEN_URL,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=TOKEN_REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        payload: dict[str, Any] = response.json()
        return payload

    # ------------------------------------------------------------------
    # Authorization code flow
    # ------------------------------------------------------------------

    def generate_auth_url(self) -> tuple[str, str]:
        """Build the Dropbox authorization URL.

        Returns:
            Tuple of (authorization URL, PKCE code verifier). The verifier has
            to be passed to exchange_code_for_tokens.
        """
        if not self.app_key:
            raise ConfigurationError("Missing required configuration: DROPBOX_APP_KEY")

        pkce = generate_pkce()
        params = {
            "client_id": self.app_key,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": "S256",
            "token_access_type": "offline",
        }
        return f"{DROPBOX_AUTHORIZE_URL}?{urlencode(params)}", pkce.code_verifier

    async def exchange_code_for_tokens(self, code: str, code_verifier: str) -> Credential:
        """Exchange an authorization code for a new credential.

        Not retried: an authorization code can only be used once.

        Raises:
            ConfigurationError: If app key/secret are missing.
            TokenExchangeError: If Dropbox rejects the exchange.
        """
        client_id, client_secret = self._require_app_credentials()
        data = {
            "code": code,
            "grant_type": "authorization_code",
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
        }

        try:
            payload = await self._post_token_endpoint(data)
        except httpx.HTTPStatusError as e:
            body = _error_body(e.response)
            detail = body.get("error_description") or str(e)
            logger.error(f"Error exchanging code for tokens: {body or e}")
            raise TokenExchangeError(
                f"Failed to exchange authorization code for tokens: {detail}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error exchanging code for tokens: {e}")
            raise TokenExchangeError(
                f"Failed to exchange authorization code for tokens: {e}"
            ) from e

        try:
            credential = Credential(
                access_token=payload["access_token"],
                refresh_token=payload.get("refresh_token") or "",
                expires_at=self._clock() + int(payload["expires_in"]) * 1000,
                scope=str(payload.get("scope", "")).split(),
                code_verifier=code_verifier,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TokenExchangeError(
                f"Failed to exchange authorization code for tokens: malformed response ({e})"
            ) from e

        self._replace_credential(credential)
        self._loaded = True
        self._last_error = None
        self._state = TokenState.VALID
        logger.info("Authorization code exchanged; credential stored")
        return credential

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_access_token(self) -> str:
        """Perform a single refresh attempt.

        Returns:
            The new access token.

        Raises:
            TokenRefreshError: Classified failure; check ``retryable``.
        """
        credential = self._credential
        if credential is None or not credential.can_refresh:
            error = TokenRefreshError(
                ERROR_MESSAGES["NO_REFRESH_TOKEN"],
                kind=ErrorKind.NO_REFRESH_TOKEN,
                retryable=False,
            )
            raise error if credential is None else self._fail(error)

        client_id, client_secret = self._require_app_credentials()
        now = self._clock()
        last = credential.last_refresh_attempt
        if last is not None and now - last < self.retry_delay_ms:
            raise self._fail(
                TokenRefreshError(
                    ERROR_MESSAGES["COOLDOWN"], kind=ErrorKind.RATE_LIMIT, retryable=True
                )
            )

        attempts = credential.refresh_attempts + 1
        credential = credential.model_copy(
            update={"last_refresh_attempt": now, "refresh_attempts": attempts}
        )
        self._credential = credential

        if attempts > self.max_retries:
            raise self._fail(
                TokenRefreshError(
                    ERROR_MESSAGES["REFRESH_FAILED"],
                    kind=ErrorKind.MAX_RETRIES_EXCEEDED,
                    retryable=False,
                )
            )

        self._transition(TokenState.REFRESHING)
        data = {
            "refresh_token": credential.refresh_token,
            "grant_type": "refresh_token",
            "client_id": client_id,
            "client_secret": client_secret,
        }

        try:
            payload = await self._post_token_endpoint(data)
            access_token = payload["access_token"]
            expires_in = int(payload["expires_in"])
        except httpx.HTTPStatusError as e:
            raise self._fail(self._classify_http_error(e)) from e
        except httpx.TransportError as e:
            logger.warning(f"Token refresh network failure: {e}")
            raise self._fail(
                TokenRefreshError(
                    ERROR_MESSAGES["NETWORK_ERROR"], kind=ErrorKind.NETWORK_ERROR, retryable=True
                )
            ) from e
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise self._fail(
                TokenRefreshError(
                    f"Token refresh failed: {e}", kind=ErrorKind.UNKNOWN_ERROR, retryable=True
                )
            ) from e
        except BaseException:
            self._state = TokenState.FAILED
            raise

        refreshed = credential.model_copy(
            update={
                "access_token": access_token,
                "expires_at": self._clock() + expires_in * 1000,
                "refresh_attempts": 0,
                "last_refresh_attempt": None,
            }
        )
        try:
            self._replace_credential(refreshed)
        except Exception:
            self._state = TokenState.FAILED
            raise

        self._last_error = None
        self._transition(TokenState.VALID)
        logger.info("Access token refreshed")
        return refreshed.access_token

    def _classify_http_error(self, error: httpx.HTTPStatusError) -> TokenRefreshError:
        """Map a token endpoint HTTP error to a classified refresh error."""
        status_code = error.response.status_code
        body = _error_body(error.response)
        logger.warning(f"Token refresh failed with HTTP {status_code}: {body.get('error')}")

        if status_code == 401 and body.get("error") == "invalid_grant":
            return TokenRefreshError(
                ERROR_MESSAGES["INVALID_GRANT"], kind=ErrorKind.INVALID_GRANT, retryable=False
            )
        if status_code == 429:
            return TokenRefreshError(
                ERROR_MESSAGES["RATE_LIMIT"], kind=ErrorKind.RATE_LIMIT, retryable=True
            )
        if status_code >= 500:
            return TokenRefreshError(
                ERROR_MESSAGES["SERVER_ERROR"], kind=ErrorKind.SERVER_ERROR, retryable=True
            )
        return TokenRefreshError(
            f"Token refresh failed: {error}", kind=ErrorKind.UNKNOWN_ERROR, retryable=True
        )

    async def get_valid_access_token(self) -> str:
        """Return an access token, refreshing it when inside the threshold.

        Concurrent callers share one refresh: the loop runs under a lock and
        re-checks expiry after acquiring it.

        Raises:
            AuthenticationRequiredError: If no credential is stored.
            DecryptionError: If the token file cannot be decrypted.
            TokenRefreshError: If refresh fails non-retryably or retries run out.
        """
        credential = self._credential
        if self._static and credential is not None:
            return credential.access_token

        if credential is None:
            credential = self.load()
        if credential is None:
            raise AuthenticationRequiredError(ERROR_MESSAGES["NOT_AUTHENTICATED"])

        if not credential.needs_refresh(self._clock(), self.threshold_ms):
            return credential.access_token

        async with self._refresh_lock:
            credential = self._credential
            if credential is None:
                raise AuthenticationRequiredError(ERROR_MESSAGES["NOT_AUTHENTICATED"])
            if not credential.needs_refresh(self._clock(), self.threshold_ms):
                return credential.access_token

            self._transition(TokenState.EXPIRING)
            logger.info(ERROR_MESSAGES["TOKEN_EXPIRED"])
            try:
                return await self._refresh_with_retries()
            except BaseException:
                # Cancellation and configuration errors skip _fail().
                if self._state in (TokenState.EXPIRING, TokenState.REFRESHING):
                    logger.warning(f"Token refresh interrupted in state {self._state.value}")
                    self._state = TokenState.FAILED
                raise

    async def _refresh_with_retries(self) -> str:
        retry_count = 0
        while retry_count < self.max_retries:
            try:
                return await self.refresh_access_token()
            except TokenRefreshError as e:
                if not e.retryable:
                    raise
                retry_count += 1
                if retry_count >= self.max_retries:
                    raise TokenRefreshError(
                        f"Token refresh failed after {retry_count} attempts: {e.message}",
                        kind=ErrorKind.REFRESH_FAILED,
                        retryable=False,
                    ) from e
                logger.warning(
                    f"Token refresh attempt {retry_count} failed ({e.kind.value}), "
                    f"retrying in {self.retry_delay_ms} ms"
                )
                await self._sleep(self.retry_delay_ms / 1000)

        raise TokenRefreshError(
            ERROR_MESSAGES["REFRESH_FAILED"], kind=ErrorKind.REFRESH_FAILED, retryable=False
        )
