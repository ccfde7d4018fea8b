"""
Authenticated-session manager.

Owns the single Credential and identity for the process:
- login / logout / refresh state machine
- persistence through the secure store
- proactive renewal before expiry
- single-flight refresh shared by every concurrent caller
- credential injection into the request client
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from chatsync.api.client import RequestClient, RequestContext, RequestOptions
from chatsync.api.models import ApiResponse, DeviceInfo, LoginRequest, LogoutRequest, RefreshTokenRequest, TokenResponse
from chatsync.errors import (
    ApiError,
    AuthError,
    AuthErrorKind,
    NetworkError,
    ProtocolError,
    RequestError,
    ValidationError,
)
from chatsync.events import EventBus, EventHandler, Subscription
from chatsync.scheduling import Scheduler

from .models import AuthEvent, AuthSnapshot, Credential, LoginInput, SessionState
from .secure_store import SecureStore, get_or_create_device_id

if TYPE_CHECKING:
    from chatsync.config import AuthConfig

logger = logging.getLogger(__name__)

TOKENS_KEY = "auth_tokens"
IDENTITY_KEY = "auth_identity"
RENEWAL_TIMER = "auth.renewal"

LOGIN_PATH = "/auth/login"
REFRESH_PATH = "/auth/refresh"
LOGOUT_PATH = "/auth/logout"


def to_auth_error(error: ApiError) -> AuthError:
    """Classify a failed login/refresh exchange for the caller to render."""
    if isinstance(error, AuthError):
        return error
    if isinstance(error, NetworkError):
        kind = AuthErrorKind.NETWORK
    elif isinstance(error, RequestError):
        kind = AuthErrorKind.INVALID_CREDENTIALS
    else:
        kind = AuthErrorKind.SERVER
    return AuthError(
        error.message,
        auth_kind=kind,
        code=error.code,
        details=error.details,
        request_id=error.request_id,
        timestamp=error.timestamp,
        status_code=error.status_code,
    )


class AuthSessionManager:
    """
    Auth session state machine.

    UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED <-> REFRESHING,
    falling back to UNAUTHENTICATED on logout or a terminal refresh failure.
    """

    def __init__(
        self,
        client: RequestClient,
        secure_store: SecureStore,
        scheduler: Scheduler,
        config: AuthConfig | None = None,
        device_id: str | None = None,
        device_info: DeviceInfo | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if config is None:
            from chatsync.config import AuthConfig

            config = AuthConfig()
        self.config = config
        self.events = EventBus("auth")

        self._client = client
        self._secure_store = secure_store
        self._scheduler = scheduler
        self._device_id = device_id
        self._device_info = device_info or DeviceInfo()
        self._clock = clock

        self._state = SessionState.UNAUTHENTICATED
        self._credential: Credential | None = None
        self._identity: dict[str, Any] | None = None
        self._last_refresh_at: datetime | None = None
        self._renewal_failures = 0

        # Single-flight refresh: at most one exchange in flight, shared by all callers
        self._refresh_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task[bool] | None = None
        # Bumped whenever the session is replaced or cleared; stale refresh results are dropped
        self._generation = 0

        client.add_request_interceptor(self._inject_credential)
        client.add_error_interceptor(self._on_request_error)

    # Read-side

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current_identity(self) -> dict[str, Any] | None:
        return self._identity

    @property
    def has_refresh_token(self) -> bool:
        return self._credential is not None and bool(self._credential.refresh_token)

    def is_authenticated(self) -> bool:
        """True iff a credential is held and it is not within the expiry buffer."""
        return self._credential is not None and self._credential.is_usable(
            self._clock(), self.config.expiry_buffer_seconds
        )

    def get_access_token(self) -> str | None:
        """Current access token, or None when missing or too close to expiry."""
        if not self.is_authenticated():
            return None
        return self._credential.access_token

    def token_remaining_seconds(self) -> int:
        if self._credential is None:
            return 0
        return self._credential.remaining_seconds(self._clock())

    def snapshot(self) -> AuthSnapshot:
        return AuthSnapshot(
            state=self._state,
            is_authenticated=self.is_authenticated(),
            identity=dict(self._identity) if self._identity else None,
            credential=self._credential,
            last_refresh_at=self._last_refresh_at,
        )

    def subscribe(self, event: AuthEvent, handler: EventHandler) -> Subscription:
        return self.events.subscribe(event, handler)

    async def device_id(self) -> str:
        if self._device_id is None:
            self._device_id = await get_or_create_device_id(self._secure_store)
        return self._device_id

    # Lifecycle

    async def initialize(self) -> None:
        """Hydrate the session from the secure store (cold start)."""
        self._set_state(SessionState.UNAUTHENTICATED)
        raw_tokens = await self._secure_store.get(TOKENS_KEY)
        if not raw_tokens:
            logger.info("No persisted session")
            return

        try:
            credential = Credential.from_dict(json.loads(raw_tokens))
            raw_identity = await self._secure_store.get(IDENTITY_KEY)
            identity = json.loads(raw_identity) if raw_identity else None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Persisted session is unreadable, clearing it: %s", e)
            await self._clear()
            return

        self._credential = credential
        self._identity = identity
        self._set_state(SessionState.AUTHENTICATED)

        if credential.is_usable(self._clock(), self.config.expiry_buffer_seconds):
            logger.info("Session restored from secure storage")
            self._schedule_renewal()
        else:
            logger.info("Persisted token is stale, attempting refresh")
            await self.refresh()

    async def close(self) -> None:
        """Cancel timers and drop listeners. Does not touch persisted state."""
        self._scheduler.cancel_group("auth.")
        self.events.clear()

    # Operations

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """
        Sign in and start a session.

        Returns:
            The identity record returned by the remote authority.

        Raises:
            ValidationError: Input failed local checks; no request was sent.
            AuthError: The exchange failed (kind: network, invalid_credentials, server).
        """
        try:
            credentials = LoginInput(email=email, password=password)
        except PydanticValidationError as e:
            error = ValidationError(
                _validation_message(e),
                details=[{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()],
            )
            self.events.publish(AuthEvent.LOGIN_FAILED, {"error": error})
            raise error from e

        logger.info("Attempting login for %s", credentials.email)
        self._set_state(SessionState.AUTHENTICATING)
        try:
            request = LoginRequest(
                email=credentials.email,
                password=credentials.password,
                device_id=await self.device_id(),
                device_info=self._device_info,
            )
            response = await self._client.post(LOGIN_PATH, request.to_wire())
            tokens = _parse_tokens(response)
        except ApiError as e:
            error = to_auth_error(e)
            logger.error("Login failed: %s (%s)", error.message, error.auth_kind.value)
            self._set_state(SessionState.AUTHENTICATED if self._credential else SessionState.UNAUTHENTICATED)
            self.events.publish(AuthEvent.LOGIN_FAILED, {"error": error})
            raise error from e

        self._generation += 1
        await self._apply_tokens(tokens)
        logger.info("Login successful for user %s", (self._identity or {}).get("id", "<unknown>"))
        self.events.publish(AuthEvent.LOGIN_SUCCEEDED, {"user": self._identity})
        return self._identity or {}

    async def logout(self) -> None:
        """
        End the session. Idempotent; never raises.

        The remote authority is notified best-effort; local cleanup always completes.
        """
        had_session = self._credential is not None
        if had_session:
            try:
                request = LogoutRequest(device_id=await self.device_id())
                await self._client.post(LOGOUT_PATH, request.to_wire(), RequestOptions(max_retries=0))
            except Exception as e:
                logger.warning("Logout notification failed, continuing local cleanup: %s", e)

        await self._clear()
        if had_session:
            logger.info("Logout completed")
            self.events.publish(AuthEvent.LOGOUT)

    async def refresh(self) -> bool:
        """
        Renew the access token.

        Concurrent callers share one in-flight exchange and its outcome.

        Returns:
            True if a new credential is in place.
        """
        async with self._refresh_lock:
            task = self._refresh_task
            if task is None or task.done():
                task = asyncio.get_running_loop().create_task(self._perform_refresh())
                self._refresh_task = task
        # Shield so one caller's cancellation does not cancel the shared exchange
        return await asyncio.shield(task)

    async def force_refresh(self) -> bool:
        """Start a fresh refresh after any in-flight one has settled."""
        task = self._refresh_task
        if task is not None and not task.done():
            await asyncio.shield(task)
        return await self.refresh()

    async def _perform_refresh(self) -> bool:
        credential = self._credential
        if credential is None or not credential.refresh_token:
            logger.warning("No refresh token available")
            return False

        generation = self._generation
        self._set_state(SessionState.REFRESHING)
        logger.info("Refreshing access token")
        try:
            request = RefreshTokenRequest(refresh_token=credential.refresh_token)
            response = await self._client.post(REFRESH_PATH, request.to_wire())
            tokens = _parse_tokens(response)
        except AuthError as e:
            logger.error("Refresh token rejected, authentication required: %s", e.message)
            if generation == self._generation:
                await self._clear()
                self.events.publish(AuthEvent.AUTHENTICATION_REQUIRED, {"error": e})
            return False
        except ApiError as e:
            logger.warning("Token refresh failed, keeping current credential: %s", e.message)
            if generation == self._generation:
                self._set_state(SessionState.AUTHENTICATED)
                self.events.publish(AuthEvent.REFRESH_FAILED, {"error": e})
            return False

        if generation != self._generation:
            logger.info("Session changed during refresh, discarding result")
            return False

        await self._apply_tokens(tokens)
        logger.info("Token refreshed successfully")
        self.events.publish(AuthEvent.TOKEN_REFRESHED, {"expires_at": self._credential.expires_at})
        return True

    # Internals

    async def _apply_tokens(self, tokens: TokenResponse) -> None:
        now = self._clock()
        self._credential = Credential.issued(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            now=now,
            token_type=tokens.token_type or self.config.token_type,
        )
        if tokens.user is not None:
            self._identity = tokens.user
        self._last_refresh_at = now
        self._renewal_failures = 0
        self._set_state(SessionState.AUTHENTICATED)

        await self._secure_store.set(TOKENS_KEY, json.dumps(self._credential.to_dict()))
        if self._identity is not None:
            await self._secure_store.set(IDENTITY_KEY, json.dumps(self._identity))

        self._schedule_renewal()

    async def _clear(self) -> None:
        """Drop in-memory and persisted session together."""
        self._scheduler.cancel(RENEWAL_TIMER)
        self._generation += 1
        self._credential = None
        self._identity = None
        self._last_refresh_at = None
        self._renewal_failures = 0
        self._set_state(SessionState.UNAUTHENTICATED)

        for key in (TOKENS_KEY, IDENTITY_KEY):
            try:
                await self._secure_store.delete(key)
            except Exception as e:
                logger.error("Failed to delete %s from secure storage: %s", key, e)

    def _schedule_renewal(self) -> None:
        self._scheduler.cancel(RENEWAL_TIMER)
        if self._credential is None:
            return

        now = self._clock()
        delay = (self._credential.expires_at - now).total_seconds() - self.config.renewal_lead_seconds
        if delay > 0:
            logger.debug("Token renewal scheduled in %.0fs", delay)
            self._scheduler.schedule(RENEWAL_TIMER, delay, self._silent_refresh)
        else:
            logger.debug("Token is close to expiry, renewing now")
            self._scheduler.schedule(RENEWAL_TIMER, 0, self._silent_refresh)

    async def _silent_refresh(self) -> None:
        if await self.refresh():
            return
        logger.warning("Silent token refresh did not renew the credential")
        if self._credential is None or not self._credential.refresh_token:
            # Nothing left to retry with; authentication_required covers a rejected token
            return

        remaining = (self._credential.expires_at - self._clock()).total_seconds()
        if remaining <= 0:
            logger.error("Access token expired before it could be renewed")
            return
        self._renewal_failures += 1
        delay = min(
            self.config.renewal_retry_seconds * (2 ** (self._renewal_failures - 1)),
            self.config.renewal_retry_max_seconds,
            remaining,
        )
        logger.info("Retrying token renewal in %.0fs (attempt %d)", delay, self._renewal_failures + 1)
        self._scheduler.schedule(RENEWAL_TIMER, delay, self._silent_refresh)

    def _inject_credential(self, context: RequestContext) -> RequestContext:
        token = self.get_access_token()
        if token and "Authorization" not in context.headers:
            context.headers["Authorization"] = f"{self._credential.token_type} {token}"
        return context

    async def _on_request_error(self, error: ApiError, context: RequestContext) -> ApiError:
        # Auth endpoints report their own failures; refreshing from them would recurse
        if error.is_auth_failure and not context.path.startswith("/auth/") and self._credential is not None:
            logger.info("Request to %s was not authorized, refreshing token", context.path)
            await self.refresh()
        return error

    def _set_state(self, state: SessionState) -> None:
        if state != self._state:
            logger.debug("Auth state %s -> %s", self._state.value, state.value)
            self._state = state


def _parse_tokens(response: ApiResponse) -> TokenResponse:
    try:
        return TokenResponse.model_validate(response.data)
    except PydanticValidationError as e:
        raise ProtocolError("Token response is invalid", details=[err["msg"] for err in e.errors()]) from e


def _validation_message(error: PydanticValidationError) -> str:
    fields = {str(err["loc"][0]) for err in error.errors() if err["loc"]}
    if "email" in fields:
        return "Invalid email format"
    if "password" in fields:
        return "Password must be at least 6 characters long"
    return "Email and password are required"
