"""
Interaction signals (pointer press, key press, scroll, touch start) delivered by the UI.
The session controller attaches one listener per signal type on start() and detaches on dispose().
"""
import logging
from typing import Callable

logger = logging.getLogger(__name__)

Listener = Callable[[str], None]


class InteractionSource:
    """Process-wide hub: UI code calls emit(); listeners get the signal type."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def add_listener(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.setdefault(event_type, [])
        if listener not in listeners:
            listeners.append(listener)

    def remove_listener(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, []))

    def emit(self, event_type: str) -> int:
        """Deliver one signal. Returns how many listeners received it."""
        listeners = list(self._listeners.get(event_type, []))
        if not listeners:
            logger.debug("interaction %s: no listeners", event_type)
        for listener in listeners:
            listener(event_type)
        return len(listeners)
