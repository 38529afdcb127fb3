"""
Access guard for protected views.
require_auth() checks the session once; mount() keeps checking every GUARD_INTERVAL
seconds while the view is open, so a session that expires or goes idle under an open
view still ends in a redirect to the login view.
"""
import logging
from typing import Iterable

from admin_web.config import DEFAULT_REDIRECT, GUARD_INTERVAL
from admin_web.navigation import Navigate
from admin_web.scheduler import Scheduler, TimerHandle
from admin_web.session import SessionController

logger = logging.getLogger(__name__)


class GuardMount:
    """Periodic re-check owned by one view. unmount() (or leaving the with-block) stops it."""

    def __init__(self, guard: "AccessGuard", required_roles: tuple[str, ...]):
        self._guard = guard
        self._required_roles = required_roles
        self._timer: TimerHandle | None = None
        self.active = False

    def _start(self, scheduler: Scheduler, interval: float) -> bool:
        if not self._guard.require_auth(self._required_roles):
            return False
        self.active = True
        self._timer = scheduler.call_every(interval, self._tick)
        return True

    def _tick(self) -> None:
        if not self._guard.require_auth(self._required_roles):
            # The view is gone after the redirect
            self.unmount()

    def unmount(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.active = False

    def __enter__(self) -> "GuardMount":
        return self

    def __exit__(self, *exc_info) -> None:
        self.unmount()


class AccessGuard:
    def __init__(
        self,
        session: SessionController,
        navigate: Navigate,
        scheduler: Scheduler,
        *,
        interval: float = GUARD_INTERVAL,
        forbidden_redirect: str = DEFAULT_REDIRECT,
    ):
        self.session = session
        self._navigate = navigate
        self._scheduler = scheduler
        self.interval = interval
        self.forbidden_redirect = forbidden_redirect

    def require_auth(self, required_roles: Iterable[str] = ()) -> bool:
        """
        True if the view may render. An invalid session is ended and redirected to the login
        view; a valid session whose role is not in required_roles is sent to forbidden_redirect.
        Never raises: the redirect is how failure is reported.
        """
        roles = tuple(required_roles)
        try:
            if not self.session.is_authenticated():
                self.session.expire("unauthenticated")
                return False
            if roles:
                user = self.session.user()
                if user is None or not user.has_role(*roles):
                    logger.info("access denied: role %s not in %s", user.role if user else None, roles)
                    self._navigate(self.forbidden_redirect)
                    return False
            return True
        except Exception:
            logger.exception("access check failed; sending user to login")
            self._navigate(self.session.login_path)
            return False

    def mount(self, required_roles: Iterable[str] = ()) -> GuardMount:
        """Check now, then every interval until the returned mount is unmounted."""
        mount = GuardMount(self, tuple(required_roles))
        mount._start(self._scheduler, self.interval)
        return mount
