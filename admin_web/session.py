"""
Session controller: the state machine behind "is the user signed in".
Owns the refresh timer (renew REFRESH_THRESHOLD before expiry) and the inactivity timer
(end the session after INACTIVITY_TIMEOUT without interaction). One instance per running
application, created at bootstrap and started/disposed with it.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable

from admin_web.api import Credentials, LoginResult
from admin_web.claims import SessionUser, decode_user
from admin_web.config import ACTIVITY_EVENTS, INACTIVITY_TIMEOUT, LOGIN_PATH, REFRESH_THRESHOLD
from admin_web.errors import LoginError, RefreshError
from admin_web.interactions import InteractionSource
from admin_web.navigation import Navigate
from admin_web.scheduler import Scheduler, TimerHandle
from admin_web.token_store import TokenStore, parse_instant

logger = logging.getLogger(__name__)

LoginCall = Callable[[Credentials], Awaitable[LoginResult]]
RenewCall = Callable[[str], Awaitable[LoginResult | None]]

REASON_LOGOUT = "logout"
REASON_INACTIVITY = "inactivity"
REASON_REFRESH_FAILED = "refresh_failed"


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    REFRESH_DUE = "refresh_due"
    EXPIRED = "expired"


class SessionController:
    """
    login() persists the Session Record and arms both timers; logout() and expire() cancel
    them, clear the store and navigate to the login view (navigation always last).
    Concurrent renewals collapse into one: a refreshing flag plus one shared future that
    every caller awaits. A renewal that finishes after the session changed is discarded.
    Without a renew call the refresh timer is never armed and tokens are used until expiry.
    """

    def __init__(
        self,
        store: TokenStore,
        login_call: LoginCall,
        navigate: Navigate,
        scheduler: Scheduler,
        interactions: InteractionSource | None = None,
        *,
        renew_call: RenewCall | None = None,
        login_path: str = LOGIN_PATH,
        refresh_threshold: float = REFRESH_THRESHOLD,
        inactivity_timeout: float = INACTIVITY_TIMEOUT,
        activity_events: Iterable[str] = ACTIVITY_EVENTS,
    ):
        self._store = store
        self._login_call = login_call
        self._renew_call = renew_call
        self._navigate = navigate
        self._scheduler = scheduler
        self._interactions = interactions
        self.login_path = login_path
        self.refresh_threshold = refresh_threshold
        self.inactivity_timeout = inactivity_timeout
        self.activity_events = tuple(activity_events)

        self._refresh_timer: TimerHandle | None = None
        self._inactivity_timer: TimerHandle | None = None
        self._refreshing = False
        self._pending_refresh: asyncio.Future | None = None
        # Bumped whenever a session starts or ends; stale renewals compare against it
        self._generation = 0
        self._listening = False
        self._started = False
        self._expired_notice = False
        self.last_termination: str | None = None

    # --- lifecycle ---

    def start(self) -> None:
        """Attach the interaction listener and pick up a session persisted by a previous run."""
        if self._started:
            return
        self._started = True
        self._attach_listeners()
        self._restore()

    def dispose(self) -> None:
        """Cancel timers and detach the listener. The stored record is left as is."""
        self._cancel_timers()
        self._detach_listeners()
        self._started = False

    def _attach_listeners(self) -> None:
        if self._listening or self._interactions is None:
            return
        for event_type in self.activity_events:
            self._interactions.add_listener(event_type, self.notify_interaction)
        self._listening = True

    def _detach_listeners(self) -> None:
        if not self._listening or self._interactions is None:
            return
        for event_type in self.activity_events:
            self._interactions.remove_listener(event_type, self.notify_interaction)
        self._listening = False

    def _restore(self) -> None:
        record = self._store.load()
        if record is None:
            if self._store.read() is not None:
                logger.warning("stored token has no readable expiration; clearing")
                self._store.clear()
            return
        now = self._now()
        if record.expired(now):
            logger.info("stored session already expired; clearing")
            self._store.clear()
            return
        self._generation += 1
        last_activity = record.last_activity_at
        if last_activity is None:
            self._store.record_activity()
            last_activity = now
        remaining = last_activity + self.inactivity_timeout - now
        if remaining <= 0:
            self.expire(REASON_INACTIVITY)
            return
        self._schedule_refresh(record.expires_at)
        self._arm_inactivity(remaining)
        logger.info("restored stored session (expires in %.0fs)", record.expires_at - now)

    # --- queries ---

    def _now(self) -> float:
        return self._scheduler.now()

    def is_authenticated(self) -> bool:
        """Token present and now strictly before its expiration. No side effects."""
        if not self._store.read():
            return False
        expires_at = self._store.read_expiration()
        return expires_at is not None and self._now() < expires_at

    def state(self) -> SessionState:
        if not self._store.read():
            return SessionState.ANONYMOUS
        expires_at = self._store.read_expiration()
        now = self._now()
        if expires_at is None or now >= expires_at:
            return SessionState.EXPIRED
        if now >= expires_at - self.refresh_threshold:
            return SessionState.REFRESH_DUE
        return SessionState.AUTHENTICATED

    def _refresh_due(self) -> bool:
        record = self._store.load()
        return record is not None and record.expired_or_soon(self._now(), self.refresh_threshold)

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    def user(self) -> SessionUser | None:
        if not self.is_authenticated():
            return None
        return decode_user(self._store.read())

    def time_until_expiration(self) -> float | None:
        expires_at = self._store.read_expiration()
        if expires_at is None:
            return None
        return max(0.0, expires_at - self._now())

    def inactivity_time(self) -> float | None:
        last_activity = self._store.read_last_activity()
        if last_activity is None:
            return None
        return max(0.0, self._now() - last_activity)

    def is_expiring_soon(self, threshold: float | None = None) -> bool:
        expires_at = self._store.read_expiration()
        if expires_at is None:
            return True
        window = self.refresh_threshold if threshold is None else threshold
        return expires_at - self._now() < window

    def consume_expired_notice(self) -> bool:
        """True once after the session ended on its own (expiry, inactivity, 401)."""
        notice, self._expired_notice = self._expired_notice, False
        return notice

    # --- transitions ---

    async def login(self, credentials: Credentials) -> LoginResult:
        """
        Call the external login; on success persist the record and arm both timers.
        On failure the store is cleared and the error propagates unchanged.
        """
        try:
            result = await self._login_call(credentials)
            expires_at = parse_instant(result.expires_at)
            if expires_at is None:
                raise LoginError(f"Unreadable expires_at in login response: {result.expires_at!r}")
            self._begin_session(result, expires_at)
        except Exception:
            self._clear_session()
            raise
        logger.info("login ok; session expires at %s", result.expires_at)
        return result

    def _begin_session(self, result: LoginResult, expires_at: float) -> None:
        self._cancel_timers()
        self._generation += 1
        self._refreshing = False
        self._pending_refresh = None
        self._store.save(result.access_token, result.expires_at)
        self._store.record_activity()
        self._expired_notice = False
        self.last_termination = None
        self._attach_listeners()
        self._schedule_refresh(expires_at)
        self._arm_inactivity(self.inactivity_timeout)

    def _clear_session(self) -> None:
        self._cancel_timers()
        self._generation += 1
        # An in-flight renewal keeps running but can no longer be joined or applied
        self._refreshing = False
        self._pending_refresh = None
        self._store.clear()

    def logout(self, redirect_to: str | None = None) -> None:
        """End the session and navigate to redirect_to (default: the login view)."""
        target = redirect_to or self.login_path
        self._clear_session()
        self.last_termination = REASON_LOGOUT
        self._expired_notice = False
        logger.info("logout; redirecting to %s", target)
        self._navigate(target)

    def expire(self, reason: str) -> None:
        """The "session is gone" path: clear everything and send the user to the login view."""
        had_session = self._store.read() is not None
        self._clear_session()
        self.last_termination = reason
        # Only consume_expired_notice, login and logout reset a pending notice
        if had_session:
            self._expired_notice = True
        logger.info("session ended (%s); redirecting to %s", reason, self.login_path)
        self._navigate(self.login_path)

    # --- tokens and renewal ---

    async def get_auth_token(self) -> str | None:
        """
        Current token, renewed first when inside the refresh window.
        None when not authenticated or when renewal failed (the session is cleared then).
        """
        if not self.is_authenticated():
            return None
        if self._refresh_due():
            try:
                await self.refresh()
            except RefreshError:
                return None
        if not self.is_authenticated():
            return None
        return self._store.read()

    async def refresh(self) -> str | None:
        """Renew now, or join the renewal already in flight. Raises RefreshError on failure."""
        if self._renew_call is None:
            return self._store.read() if self.is_authenticated() else None
        if not (self._refreshing and self._pending_refresh is not None):
            self._refreshing = True
            self._pending_refresh = asyncio.ensure_future(self._run_refresh(self._generation))
        return await asyncio.shield(self._pending_refresh)

    async def _run_refresh(self, generation: int) -> str | None:
        task = asyncio.current_task()
        token = self._store.read()
        try:
            if not token or generation != self._generation:
                return None
            try:
                result = await self._renew_call(token)
            except RefreshError:
                self._renewal_failed(generation)
                raise
            except Exception as e:
                self._renewal_failed(generation)
                raise RefreshError(f"Token renewal failed: {e}") from e

            if generation != self._generation:
                logger.info("discarding token renewal: session changed while it was in flight")
                return None
            if result is None:
                # No new token available; keep using the current one until it expires
                return token
            expires_at = parse_instant(result.expires_at)
            if expires_at is None:
                self._renewal_failed(generation)
                raise RefreshError(f"Unreadable expires_at in renewal response: {result.expires_at!r}")
            self._store.save(result.access_token, result.expires_at)
            self._schedule_refresh(expires_at)
            logger.info("token renewed; session now expires at %s", result.expires_at)
            return result.access_token
        finally:
            if self._pending_refresh is task:
                self._refreshing = False
                self._pending_refresh = None

    def _renewal_failed(self, generation: int) -> None:
        logger.warning("token renewal failed")
        if generation == self._generation:
            self.expire(REASON_REFRESH_FAILED)

    # --- timers ---

    def _cancel_timers(self) -> None:
        for timer in (self._refresh_timer, self._inactivity_timer):
            if timer is not None:
                timer.cancel()
        self._refresh_timer = None
        self._inactivity_timer = None

    def _schedule_refresh(self, expires_at: float) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
        if self._renew_call is None:
            return
        delay = expires_at - self.refresh_threshold - self._now()
        # Already inside the window: the next get_auth_token() renews lazily
        if delay > 0:
            self._refresh_timer = self._scheduler.call_later(delay, self._on_refresh_timer)
            logger.debug("refresh timer armed for %.0fs", delay)

    def _on_refresh_timer(self) -> None:
        self._refresh_timer = None
        if not self.is_authenticated():
            return
        asyncio.get_running_loop().create_task(self._refresh_in_background())

    async def _refresh_in_background(self) -> None:
        try:
            await self.refresh()
        except RefreshError as e:
            logger.debug("scheduled renewal ended the session: %s", e)

    def _arm_inactivity(self, delay: float) -> None:
        if self._inactivity_timer is not None:
            self._inactivity_timer.cancel()
        self._inactivity_timer = self._scheduler.call_later(delay, self._on_inactivity_timeout)

    def _on_inactivity_timeout(self) -> None:
        self._inactivity_timer = None
        if self._store.read() is None:
            return
        logger.info("no interaction for %.0fs; ending session", self.inactivity_timeout)
        self.expire(REASON_INACTIVITY)

    # --- activity ---

    def notify_interaction(self, event_type: str) -> None:
        """Listener for interaction signals: restart the inactivity countdown."""
        if event_type not in self.activity_events:
            return
        if not self.is_authenticated():
            return
        self._arm_inactivity(self.inactivity_timeout)
        self._store.record_activity()

    def record_activity(self) -> None:
        """Stamp activity after an authenticated call (no timer reset)."""
        if self._store.read() is not None:
            self._store.record_activity()
