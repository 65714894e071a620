import threading
from collections import deque
from typing import Callable

from casehub.logging_config import get_logger

logger = get_logger(__name__)


class LiveFeedNotifier:
    """
    In-process live feed: keeps the most recent opening events and forwards
    each one to registered subscribers. A failing subscriber is logged and
    does not affect the others.
    """

    def __init__(self, size: int = 50):
        self._recent: deque = deque(maxlen=size)
        self._subscribers: list[Callable[[dict], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[dict], None]):
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event: dict):
        with self._lock:
            self._recent.appendleft(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("Live feed subscriber failed openingId=%s", event.get("id"))

    def recent(self, limit: int = 20) -> list[dict]:
        with self._lock:
            return list(self._recent)[:limit]
