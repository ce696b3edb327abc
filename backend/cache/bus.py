from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable

from engine.types import BroadcastBus, Handler

log = logging.getLogger(__name__)


class LocalBus(BroadcastBus):
    """
    In-process broadcast bus shared by several engine contexts.

    Delivery is synchronous and in subscription order. Publishers also receive
    their own messages; handlers filter on the `origin` field.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.RLock()

    def publish(self, topic: str, message: dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(topic, ()))
        for h in handlers:
            try:
                h(dict(message))
            except Exception:
                log.exception("Bus handler failed for topic %s", topic)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                try:
                    self._handlers[topic].remove(handler)
                except ValueError:
                    pass

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._handlers.get(topic, ()))
