"""OAuth authorization and token handling for Home Connect."""

import asyncio
import base64
import enum
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import urlencode

import aiohttp

from .const import (
    OAUTH_AUTHORIZATION_URL,
    OAUTH_SCOPE,
    OAUTH_TOKEN_URL,
    STATE_MAX_AGE,
    TOKEN_REFRESH_MARGIN,
    TOKEN_REQUEST_TIMEOUT,
)
from .util import mask_token

_LOGGER: logging.Logger = logging.getLogger(__package__)

DEFAULT_EXPIRES_IN = 86400  # seconds, used when the token endpoint omits it
PERMANENT_TOKEN_ERRORS = ["invalid_grant", "invalid_client", "unauthorized_client"]


class RefreshFailure(enum.Enum):
    """Why the last token refresh did not produce a new access token."""

    NO_REFRESH_TOKEN = "no_refresh_token"
    REJECTED = "refresh_rejected"
    TRANSIENT = "transient"


class TokenRefreshError(Exception):
    """Token refresh failed."""

    def __init__(self, message: str, failure: RefreshFailure) -> None:
        super().__init__(message)
        self.failure = failure

    @property
    def requires_reauth(self) -> bool:
        """Return True when only a new authorization can recover."""
        return self.failure is not RefreshFailure.TRANSIENT


@dataclass
class Credentials:
    """OAuth credential record."""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float = 0
    last_error: str | None = None

    def clear(self) -> None:
        """Forget all tokens and the last error."""
        self.access_token = None
        self.refresh_token = None
        self.expires_at = 0
        self.last_error = None


@dataclass
class TokenResponse:
    """Outcome of a call to the token endpoint."""

    data: dict[str, Any] | None = None
    error: str | None = None
    status: int | None = None
    error_code: str | None = None

    @property
    def success(self) -> bool:
        """Return True if the endpoint issued an access token."""
        return self.data is not None

    @property
    def rejected(self) -> bool:
        """Return True if the grant itself was refused."""
        if self.error_code and self.error_code in PERMANENT_TOKEN_ERRORS:
            return True
        return self.status in (400, 401, 403)


@dataclass
class CallbackResult:
    """Outcome of an authorization callback."""

    success: bool
    error: str | None = None


def _state_digest(issued_at: str, client_id: str, client_secret: str) -> str:
    message = f"{issued_at}:{client_id}:{client_secret}"
    return hmac.new(
        client_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def generate_state(
    client_id: str, client_secret: str, issued_at_ms: int | None = None
) -> str:
    """Return a self-verifying authorization state token."""
    if issued_at_ms is None:
        issued_at_ms = int(time.time() * 1000)
    issued_at = str(issued_at_ms)
    digest = _state_digest(issued_at, client_id, client_secret)
    raw = f"{issued_at}:{digest}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def validate_state(
    state: str | None,
    client_id: str,
    client_secret: str,
    max_age: int = STATE_MAX_AGE,
) -> bool:
    """Validate a state token produced by generate_state."""
    if not state:
        return False
    try:
        decoded = base64.urlsafe_b64decode(state.encode("ascii")).decode("utf-8")
    except ValueError:
        _LOGGER.debug("Authorization state is not valid base64")
        return False

    parts = decoded.split(":")
    if len(parts) != 2 or not parts[0].isdigit():
        _LOGGER.debug("Authorization state has an unexpected format")
        return False
    issued_at, received = parts

    age_ms = int(time.time() * 1000) - int(issued_at)
    if age_ms < 0 or age_ms > max_age * 1000:
        _LOGGER.debug("Authorization state expired (age %d ms)", age_ms)
        return False

    expected = _state_digest(issued_at, client_id, client_secret)
    if not hmac.compare_digest(expected, received):
        _LOGGER.debug("Authorization state digest mismatch")
        return False
    return True


class TokenStore:
    """Owns the credential record and is the only client of the token endpoint."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        client_id: str,
        client_secret: str,
        credentials: Credentials | None = None,
    ) -> None:
        """Initialize the token store."""
        self._session = session
        self.client_id = client_id
        self.client_secret = client_secret
        self.credentials = credentials or Credentials()
        self._refresh_lock = asyncio.Lock()
        self._on_token_update: Callable[[Credentials], None] | None = None
        self._on_auth_error: Callable[[str], Awaitable[None]] | None = None
        self.last_refresh_failure: RefreshFailure | None = None
        self.refresh_count = 0

    def set_token_update_callback(
        self, callback: Callable[[Credentials], None]
    ) -> None:
        """Set callback fired whenever new tokens are stored."""
        self._on_token_update = callback

    def set_auth_error_callback(
        self, callback: Callable[[str], Awaitable[None]]
    ) -> None:
        """Set callback fired when only re-authorization can recover."""
        self._on_auth_error = callback

    def needs_refresh(self, now: float | None = None) -> bool:
        """Return True when the access token is inside the safety margin."""
        if now is None:
            now = time.time()
        return now >= self.credentials.expires_at - TOKEN_REFRESH_MARGIN

    def clear(self) -> None:
        """Clear the credential record before a new code exchange."""
        self.credentials.clear()
        self.last_refresh_failure = None

    async def request_tokens(self, body: dict[str, str]) -> TokenResponse:
        """POST a grant to the token endpoint and store the issued tokens.

        Shared by the authorization-code exchange and the refresh grant.
        Network, 4xx and 5xx failures are returned, never raised.
        """
        grant_type = body.get("grant_type")
        _LOGGER.debug(
            "Token request %s to %s (client_id: %s)",
            grant_type,
            OAUTH_TOKEN_URL,
            mask_token(self.client_id),
        )
        try:
            async with self._session.post(
                OAUTH_TOKEN_URL,
                data=body,
                timeout=aiohttp.ClientTimeout(total=TOKEN_REQUEST_TIMEOUT),
            ) as response:
                status = response.status
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as ex:
            message = str(ex) or type(ex).__name__
            _LOGGER.warning("Token request %s failed: %s", grant_type, message)
            self.credentials.last_error = message
            return TokenResponse(error=message)

        try:
            payload = json.loads(text) if text else None
        except ValueError:
            payload = None

        if status >= 400 or not isinstance(payload, dict) or not payload.get(
            "access_token"
        ):
            error_code = None
            if isinstance(payload, dict) and payload.get("error"):
                error_code = str(payload.get("error"))
                message = f"{error_code}: {payload.get('error_description')}"
            elif status >= 400:
                message = f"HTTP {status}: {text}"
            else:
                message = "Token response unsuccessful"
            _LOGGER.error("Token request %s failed: %s", grant_type, message)
            self.credentials.last_error = message
            return TokenResponse(
                error=message, status=status, error_code=error_code
            )

        expires_in = payload.get("expires_in") or DEFAULT_EXPIRES_IN
        self.credentials.access_token = payload["access_token"]
        # Refresh responses may omit a rotated refresh token
        if payload.get("refresh_token"):
            self.credentials.refresh_token = payload["refresh_token"]
        self.credentials.expires_at = time.time() + int(expires_in)
        self.credentials.last_error = None
        _LOGGER.info(
            "OAuth token acquired successfully, expires in %ss", int(expires_in)
        )
        if self._on_token_update:
            try:
                self._on_token_update(self.credentials)
            except Exception:
                _LOGGER.exception("Token update callback failed")
        return TokenResponse(data=payload, status=status)

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        """Exchange an authorization code for tokens."""
        return await self.request_tokens(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
            }
        )

    async def async_refresh(self, force: bool = False) -> bool:
        """Refresh the access token.

        Acquires the refresh lock, so concurrent callers trigger at most one
        request. Without force the freshness is re-checked after the lock is
        taken because another task may have just refreshed.
        """
        generation = self.refresh_count
        async with self._refresh_lock:
            if generation != self.refresh_count and self.credentials.access_token:
                _LOGGER.debug("Token refreshed by another task while waiting")
                return True
            if not force and not self.needs_refresh():
                return True

            refresh_token = self.credentials.refresh_token
            if not refresh_token:
                await self._report_failure(
                    "No refresh token available - authorization required",
                    RefreshFailure.NO_REFRESH_TOKEN,
                )
                return False

            _LOGGER.debug(
                "Refreshing OAuth token (refresh token %s)", mask_token(refresh_token)
            )
            result = await self.request_tokens(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_secret": self.client_secret,
                }
            )
            if result.success:
                self.refresh_count += 1
                self.last_refresh_failure = None
                return True

            if result.rejected:
                await self._report_failure(
                    f"Token refresh rejected: {result.error}", RefreshFailure.REJECTED
                )
            else:
                self.last_refresh_failure = RefreshFailure.TRANSIENT
                _LOGGER.warning(
                    "Token refresh failed, will retry on next use: %s", result.error
                )
            return False

    async def _report_failure(self, message: str, failure: RefreshFailure) -> None:
        self.last_refresh_failure = failure
        self.credentials.last_error = message
        _LOGGER.error("TokenStore: %s", message)
        if self._on_auth_error:
            try:
                await self._on_auth_error(message)
            except Exception:
                _LOGGER.exception("Auth error callback failed")

    async def get_valid_token(self) -> str | None:
        """Return an access token valid for at least the safety margin.

        Returns None when no usable token could be obtained; callers treat
        that as offline rather than raising.
        """
        if not self.needs_refresh():
            return self.credentials.access_token
        _LOGGER.debug("Access token expired or expiring soon, refreshing")
        if await self.async_refresh():
            return self.credentials.access_token
        return None

    async def force_refresh_and_retry(self) -> bool:
        """Unconditionally refresh after a 401 and report whether it worked."""
        _LOGGER.info("Forcing OAuth token refresh due to 401 error")
        return await self.async_refresh(force=True)

    def raise_for_failure(self) -> None:
        """Raise TokenRefreshError describing the last refresh failure."""
        failure = self.last_refresh_failure or RefreshFailure.TRANSIENT
        raise TokenRefreshError(
            self.credentials.last_error or "Token refresh failed", failure
        )


class AuthorizationFlowHandler:
    """Drives the authorization-code flow for one install."""

    def __init__(
        self,
        token_store: TokenStore,
        redirect_uri_factory: Callable[[], str],
        redirect_uri: str | None = None,
    ) -> None:
        """Initialize the handler."""
        self.token_store = token_store
        self._redirect_uri_factory = redirect_uri_factory
        self._redirect_uri = redirect_uri

    @property
    def redirect_uri(self) -> str:
        """Return the callback URL, creating it once for the install."""
        if not self._redirect_uri:
            self._redirect_uri = self._redirect_uri_factory()
            _LOGGER.debug("Created OAuth callback URL %s", self._redirect_uri)
        return self._redirect_uri

    def build_authorization_url(self) -> str:
        """Return the provider authorization URL with a fresh state token."""
        query = urlencode(
            {
                "client_id": self.token_store.client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": OAUTH_SCOPE,
                "state": generate_state(
                    self.token_store.client_id, self.token_store.client_secret
                ),
            }
        )
        return f"{OAUTH_AUTHORIZATION_URL}?{query}"

    async def handle_callback(self, query: Mapping[str, str]) -> CallbackResult:
        """Validate the provider redirect and exchange the code for tokens."""
        error = query.get("error")
        if error:
            message = f"{error}: {query.get('error_description')}"
            _LOGGER.error("OAuth error from Home Connect: %s", message)
            return self._fail(message)

        code = query.get("code")
        if not code:
            _LOGGER.error("No authorization code in OAuth callback")
            return self._fail("No authorization code received")

        if not validate_state(
            query.get("state"),
            self.token_store.client_id,
            self.token_store.client_secret,
        ):
            _LOGGER.error("Invalid OAuth state in callback")
            return self._fail("Invalid state parameter")

        self.token_store.clear()
        result = await self.token_store.exchange_code(code, self.redirect_uri)
        if not result.success or not self.token_store.credentials.access_token:
            return CallbackResult(
                False, result.error or "Failed to exchange code for token"
            )

        _LOGGER.info("OAuth authentication successful")
        return CallbackResult(True)

    def _fail(self, message: str) -> CallbackResult:
        self.token_store.credentials.last_error = message
        return CallbackResult(False, message)
