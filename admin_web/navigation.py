"""
Navigation primitive: a single-argument "go to this path" effect.
In the HTTP shell the effect is deferred: the navigator remembers the target and the
route that handles the current (or next) request answers with a redirect to it.
"""
import logging
from typing import Callable

logger = logging.getLogger(__name__)

Navigate = Callable[[str], None]


class RedirectNavigator:
    def __init__(self) -> None:
        self.pending: str | None = None

    def __call__(self, path: str) -> None:
        logger.debug("navigate -> %s", path)
        self.pending = path

    def take(self, default: str | None = None) -> str | None:
        """Return the pending target (or default) and forget it."""
        path, self.pending = self.pending, None
        return path if path is not None else default
