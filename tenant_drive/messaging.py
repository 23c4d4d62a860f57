"""Synchronous in-process fan-out for audit, notification, upload and share topics."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from .config import MessageBusConfig

logger = logging.getLogger(__name__)

Handler = Callable[["MessageEnvelope"], None]


@dataclass(frozen=True)
class MessageEnvelope:
    topic: str
    payload: Dict[str, Any]


class InMemoryBus:
    """Delivers each envelope to the topic's handlers on the publishing thread.

    When ``topics`` is given, publishing or subscribing to any other topic is a
    programming error and raises ``ValueError``. A failing handler is logged and
    counted in ``delivery_failures``; the remaining handlers still run.
    """

    def __init__(self, topics: Optional[Iterable[str]] = None) -> None:
        self.topics: Optional[FrozenSet[str]] = frozenset(topics) if topics is not None else None
        self.delivery_failures = 0
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        self._check_topic(topic)
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, envelope: MessageEnvelope) -> int:
        """Deliver ``envelope``; returns how many handlers accepted it."""
        self._check_topic(envelope.topic)
        with self._lock:
            handlers = list(self._handlers.get(envelope.topic, ()))
        delivered = 0
        for handler in handlers:
            try:
                handler(envelope)
            except Exception:  # handlers are sinks; publishers never see their failures
                logger.exception("Handler %r failed for topic %s", handler, envelope.topic)
                with self._lock:
                    self.delivery_failures += 1
                continue
            delivered += 1
        return delivered

    def _check_topic(self, topic: str) -> None:
        if self.topics is not None and topic not in self.topics:
            raise ValueError(f"Unknown topic {topic!r}")


def build_bus(config: MessageBusConfig) -> InMemoryBus:
    if config.backend != "in-memory":
        raise NotImplementedError(f"Message bus backend {config.backend!r} is not available")
    return InMemoryBus(config.topics)
