"""
Event bus used for hot reload and save notifications.

Events published by gravekeeper:

- ``EventType.HOTLOAD``: entity classes were redefined. A PersistenceSession
  rebuilds its registry and restarts autosaving.
- ``EventType.SAVE_COMPLETED``: payload ``path``, ``autosave``, ``entities``.
- ``EventType.AUTOSAVE_FAILED``: payload ``path``, ``error``.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, DefaultDict, Dict, List

logger = logging.getLogger(__name__)


class EventType:
    HOTLOAD = "hotload"
    SAVE_COMPLETED = "save_completed"
    AUTOSAVE_FAILED = "autosave_failed"


@dataclass(frozen=True)
class Event:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[Event], None]


class EventBus:
    """Thread-safe publish/subscribe.

    Subscribers run synchronously on the publishing thread in registration
    order. Saves publish from the autosave thread, so a subscriber must not
    assume it runs on the game loop. A failing subscriber is logged and does
    not stop delivery to the rest.
    """

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Subscriber]] = defaultdict(list)
        self._lock = RLock()

    def subscribe(self, event_name: str, callback: Subscriber) -> None:
        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._lock:
            self._subscribers[event_name].append(callback)
        logger.debug("Subscribed %s to '%s'", getattr(callback, "__qualname__", callback), event_name)

    def unsubscribe(self, event_name: str, callback: Subscriber) -> bool:
        """Remove ``callback``; returns False if it was not subscribed."""
        with self._lock:
            subscribers = self._subscribers.get(event_name)
            if not subscribers or callback not in subscribers:
                return False
            subscribers.remove(callback)
        logger.debug("Unsubscribed %s from '%s'", getattr(callback, "__qualname__", callback), event_name)
        return True

    def subscriber_count(self, event_name: str) -> int:
        with self._lock:
            return len(self._subscribers.get(event_name, ()))

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        event = Event(name=event_name, payload=payload)
        with self._lock:
            subscribers = list(self._subscribers.get(event_name, ()))
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r failed handling '%s'", callback, event_name)
