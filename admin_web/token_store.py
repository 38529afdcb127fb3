"""
Durable single-slot store for the Session Record: token, expiration, last activity.
Three scalar entries under fixed keys so a restarted client can rebuild the record.
Only the session controller writes here.
"""
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

TOKEN_KEY = "authToken"
EXPIRES_KEY = "authTokenExpiresAt"
ACTIVITY_KEY = "authLastActivity"


@dataclass
class SessionRecord:
    token: str
    expires_at: float
    last_activity_at: float | None = None

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    def expired_or_soon(self, now: float, buffer_seconds: float) -> bool:
        """True if expired or within buffer_seconds of expiry (renewal window)."""
        return now >= self.expires_at - buffer_seconds


class MemoryStorage:
    """Key/value storage held in process."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def update(self, values: dict[str, str | None]) -> None:
        """Set or (value None) remove several keys in one step."""
        data = dict(self._data)
        for key, value in values.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self._data = data


class FileStorage:
    """
    Key/value storage in one JSON file. Every update rewrites the file through a temp
    file and os.replace, so readers see either the old or the new key set, never a mix.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def update(self, values: dict[str, str | None]) -> None:
        data = self._load()
        for key, value in values.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


def storage_from_setting(setting: str) -> MemoryStorage | FileStorage:
    """":memory:" -> MemoryStorage, anything else is a file path."""
    if setting == ":memory:":
        return MemoryStorage()
    return FileStorage(setting)


def _to_iso(expires_at: str | datetime | float | int) -> str:
    if isinstance(expires_at, str):
        return expires_at
    if isinstance(expires_at, datetime):
        dt = expires_at if expires_at.tzinfo else expires_at.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat()
    return datetime.fromtimestamp(float(expires_at), tz=timezone.utc).isoformat()


def parse_instant(value: str) -> float | None:
    """ISO-8601 string (trailing Z allowed, naive = UTC) -> epoch seconds; None if unparseable."""
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class TokenStore:
    def __init__(self, storage: MemoryStorage | FileStorage, clock: Callable[[], float] = time.time):
        self._storage = storage
        self._clock = clock

    def _get(self, key: str) -> str | None:
        try:
            return self._storage.get(key)
        except (OSError, ValueError) as e:
            # Unreadable storage counts as no session
            logger.warning("session storage read failed for %s: %s", key, e)
            return None

    def save(self, token: str, expires_at: str | datetime | float | int) -> None:
        """Write token and expiration together. Expiration is kept as an ISO string."""
        self._storage.update({TOKEN_KEY: token, EXPIRES_KEY: _to_iso(expires_at)})

    def read(self) -> str | None:
        return self._get(TOKEN_KEY)

    def read_expiration(self) -> float | None:
        raw = self._get(EXPIRES_KEY)
        if raw is None:
            return None
        return parse_instant(raw)

    def record_activity(self) -> None:
        now = self._clock()
        previous = self.read_last_activity()
        if previous is not None and previous > now:
            now = previous
        try:
            self._storage.update({ACTIVITY_KEY: str(round(now * 1000))})
        except (OSError, ValueError) as e:
            logger.warning("session storage write failed for %s: %s", ACTIVITY_KEY, e)

    def read_last_activity(self) -> float | None:
        raw = self._get(ACTIVITY_KEY)
        if raw is None:
            return None
        try:
            return int(raw) / 1000
        except ValueError:
            return None

    def clear(self) -> None:
        try:
            self._storage.update({TOKEN_KEY: None, EXPIRES_KEY: None, ACTIVITY_KEY: None})
        except (OSError, ValueError) as e:
            logger.warning("session storage clear failed: %s", e)

    def load(self) -> SessionRecord | None:
        """Snapshot of the record; None unless token and expiration are both present."""
        token = self.read()
        expires_at = self.read_expiration()
        if not token or expires_at is None:
            return None
        return SessionRecord(token=token, expires_at=expires_at, last_activity_at=self.read_last_activity())
