from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging
import time
from typing import Any

import aiohttp
from aiohttp import ClientError

from .const import (
    AUTH_CONNECT_TIMEOUT,
    AUTH_TOTAL_TIMEOUT,
    IDENTITY_BASE_URL,
    SECURE_TOKEN_URL,
    TOKEN_DEFAULT_EXPIRES_IN,
    TOKEN_EARLY_RENEW_SKEW,
    TOKEN_MAX_REFRESH_ATTEMPTS,
    TOKEN_REFRESH_RETRY_BASE_DELAY,
)
from .exceptions import AuthError

_LOGGER = logging.getLogger(__name__)

# provider error code -> (stable code, user-facing message)
_ERROR_MESSAGES: dict[str, tuple[str, str]] = {
    "EMAIL_NOT_FOUND": ("user_not_found", "No account exists for this email"),
    "INVALID_PASSWORD": ("wrong_password", "The password is incorrect"),
    "INVALID_LOGIN_CREDENTIALS": ("invalid_credential", "The sign-in details are not valid"),
    "EMAIL_EXISTS": ("email_already_in_use", "This email is already in use"),
    "WEAK_PASSWORD": ("weak_password", "The password is too weak, choose a stronger one"),
    "INVALID_EMAIL": ("invalid_email", "The email address is not valid"),
    "MISSING_PASSWORD": ("missing_password", "A password is required"),
    "USER_DISABLED": ("user_disabled", "This account has been disabled"),
    "TOO_MANY_ATTEMPTS_TRY_LATER": (
        "too_many_requests",
        "Too many attempts, please try again later",
    ),
    "OPERATION_NOT_ALLOWED": (
        "operation_not_allowed",
        "This sign-in method is not enabled",
    ),
    "TOKEN_EXPIRED": ("session_expired", "The session has expired, please sign in again"),
    "INVALID_REFRESH_TOKEN": ("session_expired", "The session has expired, please sign in again"),
    "USER_NOT_FOUND": ("user_not_found", "No account exists for this email"),
}


def network_error() -> AuthError:
    return AuthError(
        "network_request_failed", "Network error, check the connection and try again"
    )


async def _read_body(response: aiohttp.ClientResponse) -> dict[str, Any] | None:
    """Parsed JSON object body, or None for proxy pages and other non-JSON replies."""
    try:
        body = await response.json(content_type=None)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _error_message(body: Mapping[str, Any] | None) -> str | None:
    error = (body or {}).get("error")
    if isinstance(error, Mapping):
        return error.get("message")
    return error if isinstance(error, str) else None


def map_provider_error(raw: str | None) -> AuthError:
    """Translate an identity provider error string into an AuthError."""
    # Provider strings look like "WEAK_PASSWORD : Password should be at least 6 characters"
    key = (raw or "").split(":", 1)[0].strip().upper()
    code, message = _ERROR_MESSAGES.get(key, ("unknown", raw or "An unknown error occurred"))
    return AuthError(code, message)


@dataclass(frozen=True)
class User:
    uid: str
    email: str | None = None
    display_name: str | None = None


@dataclass(frozen=True)
class AuthResult:
    success: bool
    user: User | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def failed(cls, err: AuthError) -> AuthResult:
        return cls(success=False, error=err.message, error_code=err.code)


AuthStateListener = Callable[[User | None], None]


class IdentityClient:
    """Email/password sessions against the hosted identity provider."""

    def __init__(
        self,
        api_key: str,
        session: aiohttp.ClientSession,
        *,
        email: str | None = None,
        password: str | None = None,
        tokens: Mapping[str, Any] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._api_key = api_key
        self._session = session
        self._timeout = aiohttp.ClientTimeout(
            connect=AUTH_CONNECT_TIMEOUT, total=AUTH_TOTAL_TIMEOUT
        )
        self._clock = clock
        self.email = email
        self._password = password

        tokens = tokens or {}
        self.id_token: str | None = tokens.get("id_token")
        self.refresh_token: str | None = tokens.get("refresh_token")
        self.token_expires_at: float | None = None
        self._user: User | None = (
            User(uid=str(tokens["uid"]), email=email) if tokens.get("uid") else None
        )

        self.max_refresh_attempts = TOKEN_MAX_REFRESH_ATTEMPTS
        self._early_renew_skew = TOKEN_EARLY_RENEW_SKEW
        self._refresh_lock = asyncio.Lock()
        self._listeners: list[AuthStateListener] = []

        _LOGGER.debug("IdentityClient initialized (email: %s)", self.email)

    # ---- session state ----
    @property
    def current_user(self) -> User | None:
        return self._user

    @property
    def tokens(self) -> dict[str, Any]:
        """Token bundle suitable for persisting in the config entry."""
        return {
            "id_token": self.id_token,
            "refresh_token": self.refresh_token,
            "uid": self._user.uid if self._user else None,
        }

    def on_auth_state_changed(self, callback: AuthStateListener) -> Callable[[], None]:
        """Register a listener for sign-in, sign-out and token refresh."""
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _notify(self) -> None:
        for cb in list(self._listeners):
            try:
                cb(self._user)
            except Exception:
                _LOGGER.exception("Auth state listener raised")

    def _store_session(self, body: Mapping[str, Any], *, refreshed: bool = False) -> User:
        if refreshed:
            # securetoken endpoint uses snake_case
            self.id_token = body.get("id_token")
            self.refresh_token = body.get("refresh_token") or self.refresh_token
            uid = body.get("user_id") or (self._user.uid if self._user else None)
            expires_in = body.get("expires_in", TOKEN_DEFAULT_EXPIRES_IN)
            user = User(
                uid=str(uid),
                email=self._user.email if self._user else self.email,
                display_name=self._user.display_name if self._user else None,
            )
        else:
            self.id_token = body.get("idToken")
            self.refresh_token = body.get("refreshToken")
            expires_in = body.get("expiresIn", TOKEN_DEFAULT_EXPIRES_IN)
            user = User(
                uid=str(body.get("localId")),
                email=body.get("email") or self.email,
                display_name=body.get("displayName") or None,
            )
        try:
            ttl = int(expires_in)
        except (TypeError, ValueError):
            ttl = TOKEN_DEFAULT_EXPIRES_IN
        self.token_expires_at = self._clock() + ttl
        self._user = user
        self.email = user.email
        return user

    # ---- HTTP ----
    async def _identity_post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{IDENTITY_BASE_URL}/accounts:{endpoint}"
        try:
            async with self._session.post(
                url, params={"key": self._api_key}, json=payload, timeout=self._timeout
            ) as response:
                body = await _read_body(response)
                if response.status != 200:
                    raw = _error_message(body)
                    _LOGGER.debug("Identity %s failed: status=%s", endpoint, response.status)
                    if raw is None and response.status >= 500:
                        raise network_error()
                    raise map_provider_error(raw)
                if body is None:
                    _LOGGER.error("Identity %s returned an unreadable body", endpoint)
                    raise network_error()
                return body
        except (TimeoutError, ClientError) as err:
            _LOGGER.error("Network error during %s: %s", endpoint, err)
            raise network_error() from err

    # ---- public operations ----
    async def sign_in(self, email: str, password: str) -> AuthResult:
        """Sign in with email/password."""
        _LOGGER.info("Signing in %s", email)
        try:
            body = await self._identity_post(
                "signInWithPassword",
                {"email": email, "password": password, "returnSecureToken": True},
            )
        except AuthError as err:
            _LOGGER.warning("Sign-in failed for %s: %s", email, err.code)
            return AuthResult.failed(err)
        self._password = password
        user = self._store_session(body)
        _LOGGER.info("Sign-in succeeded; token validity window established")
        self._notify()
        return AuthResult(success=True, user=user)

    async def sign_up(
        self, email: str, password: str, display_name: str | None = None
    ) -> AuthResult:
        """Create an account and sign it in."""
        try:
            body = await self._identity_post(
                "signUp", {"email": email, "password": password, "returnSecureToken": True}
            )
            self._password = password
            self._store_session(body)
            if display_name:
                body = await self._identity_post(
                    "update",
                    {
                        "idToken": self.id_token,
                        "displayName": display_name,
                        "returnSecureToken": True,
                    },
                )
                if body.get("idToken"):
                    self._store_session(body)
                elif self._user:
                    self._user = User(self._user.uid, self._user.email, display_name)
        except AuthError as err:
            _LOGGER.warning("Sign-up failed for %s: %s", email, err.code)
            return AuthResult.failed(err)
        self._notify()
        return AuthResult(success=True, user=self._user)

    async def reset_password(self, email: str) -> AuthResult:
        try:
            await self._identity_post(
                "sendOobCode", {"requestType": "PASSWORD_RESET", "email": email}
            )
        except AuthError as err:
            return AuthResult.failed(err)
        return AuthResult(success=True)

    async def sign_out(self) -> AuthResult:
        """Forget the local session; server-side tokens simply expire."""
        self.id_token = None
        self.refresh_token = None
        self.token_expires_at = None
        self._password = None
        self._user = None
        _LOGGER.info("Signed out")
        self._notify()
        return AuthResult(success=True)

    async def _refresh_token(self) -> None:
        """Refresh the id token, falling back to a password sign-in."""
        if not self.refresh_token:
            if self.email and self._password:
                _LOGGER.warning("No refresh_token available; signing in again")
                result = await self.sign_in(self.email, self._password)
                if result.success:
                    return
                raise AuthError(result.error_code or "unknown", result.error)
            raise AuthError("no_session", "Not signed in")

        payload = {"grant_type": "refresh_token", "refresh_token": self.refresh_token}

        for attempt in range(self.max_refresh_attempts):
            try:
                async with self._session.post(
                    SECURE_TOKEN_URL,
                    params={"key": self._api_key},
                    data=payload,
                    timeout=self._timeout,
                ) as response:
                    body = await _read_body(response)
                    if response.status == 200 and (body or {}).get("id_token"):
                        self._store_session(body, refreshed=True)
                        _LOGGER.info("Id token refreshed; new validity window established")
                        self._notify()
                        return
                    raw = _error_message(body)
                    err = map_provider_error(raw)
                    if err.code in ("session_expired", "user_disabled", "user_not_found"):
                        raise err
                    _LOGGER.error("Failed to refresh token (status %s)", response.status)
            except (TimeoutError, ClientError) as err:
                _LOGGER.error(
                    "Exception during token refresh attempt %d: %s",
                    attempt + 1,
                    err,
                )
            await asyncio.sleep(TOKEN_REFRESH_RETRY_BASE_DELAY * (attempt + 1))

        _LOGGER.error("Failed to refresh id token after maximum attempts")
        raise AuthError("network_request_failed", "Unable to refresh the session")

    async def ensure_token_valid(self) -> None:
        """Ensure the id token is valid, refreshing if necessary."""
        async with self._refresh_lock:
            now = self._clock()
            if (
                not self.id_token
                or not self.token_expires_at
                or now >= (self.token_expires_at - self._early_renew_skew)
            ):
                _LOGGER.debug("Id token missing/expired or near expiry; refreshing")
                await self._refresh_token()

    def invalidate_token(self) -> None:
        """Force a refresh on the next token request (e.g. server revoked it)."""
        self.token_expires_at = None

    async def get_id_token(self) -> str:
        """Bearer token for one request; never served past its expiry."""
        await self.ensure_token_valid()
        if not self.id_token:
            raise AuthError("no_session", "Not signed in")
        return self.id_token
