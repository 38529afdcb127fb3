"""Tests for the session controller: login/logout, validity, renewal, inactivity, restore."""
import asyncio
from datetime import datetime, timezone

import pytest

from admin_web.api import Credentials, LoginResult
from admin_web.errors import LoginError, RefreshError
from admin_web.session import SessionController, SessionState

CREDENTIALS = Credentials(email="admin@example.org", password="s3cret")


def iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


async def drain():
    for _ in range(10):
        await asyncio.sleep(0)


class FakeLogin:
    def __init__(self, scheduler, token="tok-1", lifetime=1800.0, error=None):
        self.scheduler = scheduler
        self.token = token
        self.lifetime = lifetime
        self.error = error
        self.calls = []

    async def __call__(self, credentials):
        self.calls.append(credentials)
        if self.error is not None:
            raise self.error
        return LoginResult(
            access_token=self.token,
            expires_at=iso(self.scheduler.now() + self.lifetime),
            expires_in=int(self.lifetime),
        )


class FakeRenew:
    def __init__(self, scheduler, token="renewed", lifetime=1800.0, error=None, gate=None, result=True):
        self.scheduler = scheduler
        self.token = token
        self.lifetime = lifetime
        self.error = error
        self.gate = gate
        self.result = result
        self.calls = []

    async def __call__(self, token):
        self.calls.append(token)
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if not self.result:
            return None
        return LoginResult(access_token=self.token, expires_at=iso(self.scheduler.now() + self.lifetime))


@pytest.fixture
def login(scheduler):
    return FakeLogin(scheduler)


@pytest.fixture
def make_controller(store, navigator, scheduler, interactions, login):
    def factory(renew_call=None, login_call=None):
        return SessionController(
            store,
            login_call or login,
            navigator,
            scheduler,
            interactions,
            renew_call=renew_call,
        )
    return factory


# --- validity ---


def test_not_authenticated_without_token(make_controller):
    controller = make_controller()
    assert controller.is_authenticated() is False
    assert controller.state() is SessionState.ANONYMOUS


@pytest.mark.parametrize(
    "offset,expected",
    [(0.0, False), (-0.001, False), (0.001, True)],
)
def test_validity_boundary(make_controller, store, scheduler, offset, expected):
    """Authenticated strictly before expiration; equality counts as expired."""
    controller = make_controller()
    store.save("tok", scheduler.now() + offset)
    assert controller.is_authenticated() is expected


def test_is_authenticated_has_no_side_effects(make_controller, store, scheduler, navigator):
    controller = make_controller()
    store.save("tok", scheduler.now() - 10)
    assert controller.is_authenticated() is False
    assert store.read() == "tok"
    assert navigator.history == []


def test_state_reports_refresh_window_and_expiry(make_controller, store, scheduler):
    controller = make_controller()
    store.save("tok", scheduler.now() + 1800)
    assert controller.state() is SessionState.AUTHENTICATED
    store.save("tok", scheduler.now() + 200)
    assert controller.state() is SessionState.REFRESH_DUE
    store.save("tok", scheduler.now())
    assert controller.state() is SessionState.EXPIRED


# --- login ---


@pytest.mark.asyncio
async def test_login_persists_record_and_arms_timers(make_controller, store, scheduler, navigator, interactions):
    controller = make_controller()
    result = await controller.login(CREDENTIALS)
    assert result.access_token == "tok-1"
    assert store.read() == "tok-1"
    assert store.read_expiration() == scheduler.now() + 1800
    assert store.read_last_activity() == scheduler.now()
    assert controller.is_authenticated() is True
    # Inactivity only: renewal is not configured
    assert scheduler.pending() == 1
    assert interactions.listener_count("mousedown") == 1
    assert navigator.history == []


@pytest.mark.asyncio
async def test_login_with_renewal_arms_refresh_timer(make_controller, scheduler):
    controller = make_controller(renew_call=FakeRenew(scheduler))
    await controller.login(CREDENTIALS)
    assert scheduler.pending() == 2


@pytest.mark.asyncio
async def test_second_login_replaces_timers(make_controller, scheduler):
    controller = make_controller(renew_call=FakeRenew(scheduler))
    await controller.login(CREDENTIALS)
    await controller.login(CREDENTIALS)
    assert scheduler.pending() == 2


@pytest.mark.asyncio
async def test_login_failure_clears_store_and_propagates(store, navigator, scheduler, interactions):
    store.save("stale", scheduler.now() + 600)
    error = LoginError("Invalid credentials", status_code=401)
    controller = SessionController(store, FakeLogin(scheduler, error=error), navigator, scheduler, interactions)
    with pytest.raises(LoginError) as exc_info:
        await controller.login(CREDENTIALS)
    assert exc_info.value is error
    assert store.read() is None
    assert store.read_expiration() is None
    assert scheduler.pending() == 0
    assert navigator.history == []


@pytest.mark.asyncio
async def test_login_with_unreadable_expiration_fails(store, navigator, scheduler):
    async def bad_login(credentials):
        return LoginResult(access_token="tok", expires_at="whenever")

    controller = SessionController(store, bad_login, navigator, scheduler)
    with pytest.raises(LoginError):
        await controller.login(CREDENTIALS)
    assert store.read() is None
    assert controller.is_authenticated() is False


@pytest.mark.asyncio
async def test_user_decoded_from_token(store, navigator, scheduler, make_token):
    token = make_token(sub="7", email="mod@example.org", role="MODERATOR")
    controller = SessionController(store, FakeLogin(scheduler, token=token), navigator, scheduler)
    assert controller.user() is None
    await controller.login(CREDENTIALS)
    user = controller.user()
    assert user.id == "7"
    assert user.email == "mod@example.org"
    assert user.role == "MODERATOR"
    assert user.is_admin is False


# --- logout ---


@pytest.mark.asyncio
async def test_logout_completeness(make_controller, store, scheduler, navigator):
    controller = make_controller(renew_call=FakeRenew(scheduler))
    await controller.login(CREDENTIALS)
    controller.logout()
    assert controller.is_authenticated() is False
    assert store.read() is None
    assert store.read_last_activity() is None
    assert navigator.history == ["/auth"]
    assert scheduler.pending() == 0
    assert controller.last_termination == "logout"
    assert controller.consume_expired_notice() is False


@pytest.mark.asyncio
async def test_logout_custom_target(make_controller, navigator):
    controller = make_controller()
    await controller.login(CREDENTIALS)
    controller.logout(redirect_to="/goodbye")
    assert navigator.history == ["/goodbye"]


def test_logout_without_session_does_not_raise(make_controller, navigator):
    controller = make_controller()
    controller.logout()
    controller.logout()
    assert navigator.history == ["/auth", "/auth"]


# --- inactivity ---


@pytest.mark.asyncio
async def test_inactivity_ends_session_after_fifteen_minutes(make_controller, store, scheduler, navigator):
    controller = make_controller()
    await controller.login(CREDENTIALS)
    scheduler.advance(15 * 60 - 1)
    assert controller.is_authenticated() is True
    assert navigator.history == []
    scheduler.advance(2)
    assert store.read() is None
    assert controller.is_authenticated() is False
    assert navigator.history == ["/auth"]
    assert controller.last_termination == "inactivity"
    assert controller.consume_expired_notice() is True
    assert controller.consume_expired_notice() is False


@pytest.mark.asyncio
async def test_interaction_pushes_inactivity_deadline(make_controller, store, scheduler, navigator, interactions):
    controller = make_controller()
    await controller.login(CREDENTIALS)
    scheduler.advance(10 * 60)
    assert interactions.emit("mousedown") == 1
    assert store.read_last_activity() == scheduler.now()
    # The login + 15 min deadline has passed; the new one is interaction + 15 min
    scheduler.advance(15 * 60 - 1)
    assert controller.is_authenticated() is True
    assert navigator.history == []
    scheduler.advance(2)
    assert controller.is_authenticated() is False
    assert navigator.history == ["/auth"]


@pytest.mark.asyncio
async def test_non_qualifying_events_are_ignored(make_controller, scheduler, navigator, store):
    controller = make_controller()
    await controller.login(CREDENTIALS)
    scheduler.advance(600)
    controller.notify_interaction("mousemove")
    assert store.read_last_activity() == scheduler.now() - 600
    scheduler.advance(301)
    assert navigator.history == ["/auth"]


@pytest.mark.asyncio
async def test_interaction_after_session_end_is_ignored(make_controller, store, scheduler, interactions):
    controller = make_controller()
    await controller.login(CREDENTIALS)
    controller.logout()
    interactions.emit("keydown")
    assert store.read_last_activity() is None
    assert scheduler.pending() == 0


def test_record_activity_only_with_session(make_controller, store, scheduler):
    controller = make_controller()
    controller.record_activity()
    assert store.read_last_activity() is None
    store.save("tok", scheduler.now() + 600)
    controller.record_activity()
    assert store.read_last_activity() == scheduler.now()


# --- tokens and renewal ---


@pytest.mark.asyncio
async def test_get_auth_token_outside_window_does_not_renew(make_controller, scheduler):
    renew = FakeRenew(scheduler)
    controller = make_controller(renew_call=renew)
    await controller.login(CREDENTIALS)
    assert await controller.get_auth_token() == "tok-1"
    assert renew.calls == []


@pytest.mark.asyncio
async def test_renewal_triggered_inside_refresh_window(make_controller, store, scheduler, interactions):
    """Login with a 30 min token; at 26 min the token is inside the 5 min window."""
    renew = FakeRenew(scheduler)
    controller = make_controller(renew_call=renew)
    await controller.login(CREDENTIALS)
    assert await controller.get_auth_token() == "tok-1"
    assert renew.calls == []

    # Keep the session active so inactivity does not end it first
    scheduler.advance(10 * 60)
    interactions.emit("keydown")
    scheduler.advance(10 * 60)
    interactions.emit("scroll")
    scheduler.advance(6 * 60)

    token = await controller.get_auth_token()
    await drain()
    assert token == "renewed"
    assert renew.calls == ["tok-1"]
    assert store.read() == "renewed"
    assert store.read_expiration() == scheduler.now() + 1800
    assert controller.state() is SessionState.AUTHENTICATED


@pytest.mark.asyncio
async def test_refresh_timer_renews_in_background(make_controller, store, scheduler, interactions):
    renew = FakeRenew(scheduler)
    controller = make_controller(renew_call=renew)
    await controller.login(CREDENTIALS)
    scheduler.advance(12 * 60)
    interactions.emit("touchstart")
    scheduler.advance(13 * 60)
    await drain()
    assert renew.calls == ["tok-1"]
    assert store.read() == "renewed"
    assert controller.refreshing is False


@pytest.mark.asyncio
async def test_concurrent_get_auth_token_share_one_renewal(store, navigator, scheduler):
    renew = FakeRenew(scheduler)
    controller = SessionController(store, FakeLogin(scheduler, lifetime=200), navigator, scheduler, renew_call=renew)
    await controller.login(CREDENTIALS)
    tokens = await asyncio.gather(*(controller.get_auth_token() for _ in range(5)))
    assert tokens == ["renewed"] * 5
    assert len(renew.calls) == 1
    assert controller.refreshing is False


@pytest.mark.asyncio
async def test_renewal_returning_nothing_keeps_current_token(store, navigator, scheduler):
    renew = FakeRenew(scheduler, result=False)
    controller = SessionController(store, FakeLogin(scheduler, lifetime=200), navigator, scheduler, renew_call=renew)
    await controller.login(CREDENTIALS)
    assert await controller.get_auth_token() == "tok-1"
    assert renew.calls == ["tok-1"]
    assert store.read() == "tok-1"


@pytest.mark.asyncio
async def test_renewal_failure_ends_session(store, navigator, scheduler):
    renew = FakeRenew(scheduler, error=RefreshError("Renewal rejected"))
    controller = SessionController(store, FakeLogin(scheduler, lifetime=200), navigator, scheduler, renew_call=renew)
    await controller.login(CREDENTIALS)
    assert await controller.get_auth_token() is None
    assert store.read() is None
    assert navigator.history == ["/auth"]
    assert controller.last_termination == "refresh_failed"
    assert controller.consume_expired_notice() is True


@pytest.mark.asyncio
async def test_explicit_refresh_raises_on_failure(store, navigator, scheduler):
    renew = FakeRenew(scheduler, error=ConnectionError("api down"))
    controller = SessionController(store, FakeLogin(scheduler, lifetime=200), navigator, scheduler, renew_call=renew)
    await controller.login(CREDENTIALS)
    with pytest.raises(RefreshError):
        await controller.refresh()
    assert store.read() is None
    assert navigator.history == ["/auth"]


@pytest.mark.asyncio
async def test_renewal_finishing_after_logout_is_discarded(store, navigator, scheduler):
    gate = asyncio.Event()
    renew = FakeRenew(scheduler, gate=gate)
    controller = SessionController(store, FakeLogin(scheduler, lifetime=200), navigator, scheduler, renew_call=renew)
    await controller.login(CREDENTIALS)
    pending = asyncio.ensure_future(controller.refresh())
    await drain()
    assert renew.calls == ["tok-1"]

    controller.logout()
    gate.set()
    assert await pending is None
    assert store.read() is None
    assert controller.is_authenticated() is False
    assert navigator.history == ["/auth"]


@pytest.mark.asyncio
async def test_stale_renewal_does_not_overwrite_new_login(store, navigator, scheduler):
    gate = asyncio.Event()
    renew = FakeRenew(scheduler, gate=gate)
    login = FakeLogin(scheduler, lifetime=200)
    controller = SessionController(store, login, navigator, scheduler, renew_call=renew)
    await controller.login(CREDENTIALS)
    pending = asyncio.ensure_future(controller.refresh())
    await drain()

    controller.logout()
    login.token = "tok-2"
    login.lifetime = 1800
    await controller.login(CREDENTIALS)
    gate.set()
    assert await pending is None
    assert store.read() == "tok-2"
    assert controller.is_authenticated() is True


@pytest.mark.asyncio
async def test_get_auth_token_without_renewal_uses_token_until_expiry(store, navigator, scheduler):
    controller = SessionController(store, FakeLogin(scheduler, lifetime=200), navigator, scheduler)
    await controller.login(CREDENTIALS)
    assert controller.state() is SessionState.REFRESH_DUE
    assert await controller.get_auth_token() == "tok-1"
    scheduler.advance(200)
    assert await controller.get_auth_token() is None


# --- timing helpers ---


@pytest.mark.asyncio
async def test_timing_helpers(make_controller, scheduler):
    controller = make_controller()
    assert controller.time_until_expiration() is None
    assert controller.inactivity_time() is None
    assert controller.is_expiring_soon() is True
    await controller.login(CREDENTIALS)
    scheduler.advance(120)
    assert controller.time_until_expiration() == 1680
    assert controller.inactivity_time() == 120
    assert controller.is_expiring_soon() is False
    assert controller.is_expiring_soon(threshold=1700) is True


# --- lifecycle ---


def test_start_restores_stored_session(make_controller, store, scheduler, navigator):
    store.save("persisted", scheduler.now() + 1800)
    store.record_activity()
    scheduler.advance(300)
    controller = make_controller()
    controller.start()
    assert controller.is_authenticated() is True
    # Deadline is last activity + 15 min, not start + 15 min
    scheduler.advance(599)
    assert navigator.history == []
    scheduler.advance(2)
    assert store.read() is None
    assert navigator.history == ["/auth"]
    assert controller.last_termination == "inactivity"


def test_start_ends_session_idle_past_timeout(make_controller, store, scheduler, navigator):
    store.save("persisted", scheduler.now() + 1800)
    store.record_activity()
    scheduler.advance(1000)
    controller = make_controller()
    controller.start()
    assert store.read() is None
    assert navigator.history == ["/auth"]


def test_start_clears_expired_record_silently(make_controller, store, scheduler, navigator):
    store.save("old", scheduler.now() - 1)
    controller = make_controller()
    controller.start()
    assert store.read() is None
    assert navigator.history == []
    assert controller.consume_expired_notice() is False


def test_start_clears_token_without_expiration(make_controller, store, navigator):
    store._storage.update({"authToken": "orphan"})
    controller = make_controller()
    controller.start()
    assert store.read() is None
    assert navigator.history == []


def test_start_without_activity_stamp_counts_from_now(make_controller, store, scheduler, navigator):
    store.save("persisted", scheduler.now() + 1800)
    controller = make_controller()
    controller.start()
    assert store.read_last_activity() == scheduler.now()
    scheduler.advance(899)
    assert controller.is_authenticated() is True
    scheduler.advance(2)
    assert navigator.history == ["/auth"]


def test_start_is_idempotent_and_dispose_detaches(make_controller, store, scheduler, interactions):
    store.save("persisted", scheduler.now() + 1800)
    controller = make_controller()
    controller.start()
    controller.start()
    assert interactions.listener_count("mousedown") == 1
    assert scheduler.pending() == 1
    controller.dispose()
    assert interactions.listener_count("mousedown") == 0
    assert scheduler.pending() == 0
    # Disposal keeps the stored record for the next start
    assert store.read() == "persisted"


@pytest.mark.asyncio
async def test_expire_without_session_keeps_pending_notice(make_controller, scheduler):
    controller = make_controller()
    await controller.login(CREDENTIALS)
    scheduler.advance(15 * 60 + 1)
    controller.expire("unauthenticated")
    controller.expire("no_session")
    assert controller.last_termination == "no_session"
    assert controller.consume_expired_notice() is True


@pytest.mark.asyncio
async def test_login_and_logout_reset_pending_notice(make_controller, scheduler):
    controller = make_controller()
    await controller.login(CREDENTIALS)
    scheduler.advance(15 * 60 + 1)
    await controller.login(CREDENTIALS)
    assert controller.consume_expired_notice() is False
    scheduler.advance(15 * 60 + 1)
    controller.logout()
    assert controller.consume_expired_notice() is False
