"""
Pytest configuration for admin_web. Session storage stays in memory and renewal is off
so the shell never touches the filesystem or arms real refresh timers.
"""
import os

os.environ["ADMIN_SESSION_STORE"] = ":memory:"
os.environ["ADMIN_API_BASE_URL"] = "http://api.test/api"
os.environ["ADMIN_API_REFRESH_PATH"] = ""

import time

import jwt
import pytest

from admin_web.interactions import InteractionSource
from admin_web.navigation import RedirectNavigator
from admin_web.scheduler import ManualScheduler
from admin_web.token_store import MemoryStorage, TokenStore

T0 = 1_700_000_000.0
SIGNING_KEY = "admin-web-tests-signing-key-0123456789"


def _make_token(sub="42", email="admin@example.org", role="ADMIN", **extra) -> str:
    claims = {"email": email, "role": role, "iat": int(time.time())}
    if sub is not None:
        claims["sub"] = sub
    claims.update(extra)
    return jwt.encode(claims, SIGNING_KEY, algorithm="HS256")


@pytest.fixture
def scheduler():
    return ManualScheduler(start=T0)


@pytest.fixture
def store(scheduler):
    return TokenStore(MemoryStorage(), clock=scheduler.now)


class RecordingNavigator(RedirectNavigator):
    """RedirectNavigator that also keeps every target it was sent to."""

    def __init__(self) -> None:
        super().__init__()
        self.history: list[str] = []

    def __call__(self, path: str) -> None:
        super().__call__(path)
        self.history.append(path)


@pytest.fixture
def navigator():
    return RecordingNavigator()


@pytest.fixture
def interactions():
    return InteractionSource()


@pytest.fixture
def make_token():
    """HS256 JWT carrying sub/email/role claims; the client only reads them."""
    return _make_token
