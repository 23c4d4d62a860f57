"""In-process metric and event capture, plus root logging setup.

Transfer workers emit from pool threads, so every mutation happens under a
lock. Samples are kept in bounded deques sized by
``ObservabilityConfig.max_samples``; the oldest samples fall off first.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from .config import ObservabilityConfig
from .models import ObservabilityEvent

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s %(message)s"


@dataclass(frozen=True)
class MetricSample:
    name: str
    value: float
    labels: Dict[str, str] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TelemetryCollector:
    def __init__(self, config: ObservabilityConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self.metrics: Deque[MetricSample] = deque(maxlen=config.max_samples)
        self.events: Deque[ObservabilityEvent] = deque(maxlen=config.max_samples)

    def emit_metric(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        sample = MetricSample(name=name, value=value, labels={k: str(v) for k, v in (labels or {}).items()})
        with self._lock:
            self.metrics.append(sample)

    def emit_event(self, message: str, attributes: Optional[Dict[str, str]] = None) -> None:
        event = ObservabilityEvent(event_type="custom", message=message, attributes=dict(attributes or {}))
        with self._lock:
            self.events.append(event)

    def count_events(self, message: str) -> int:
        with self._lock:
            return sum(1 for event in self.events if event.message == message)

    def samples(self, name: str) -> List[MetricSample]:
        with self._lock:
            return [sample for sample in self.metrics if sample.name == name]

    def metric_total(self, name: str, **labels: str) -> float:
        """Sum of ``name`` samples whose labels include every given label."""
        return sum(
            sample.value
            for sample in self.samples(name)
            if all(sample.labels.get(key) == str(value) for key, value in labels.items())
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
