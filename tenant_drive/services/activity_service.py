"""Audit trail sink fed from the message bus."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from ..messaging import InMemoryBus, MessageEnvelope
from ..models import AuditEvent
from ..telemetry import TelemetryCollector
from .metadata_service import MetadataService

logger = logging.getLogger(__name__)


@dataclass
class ActivityService:
    bus: InMemoryBus
    telemetry: TelemetryCollector
    metadata_service: Optional[MetadataService] = None
    events: Deque[AuditEvent] = field(default_factory=lambda: deque(maxlen=200))

    def __post_init__(self) -> None:
        self.bus.subscribe("audit.events", self._handle_audit)
        self.bus.subscribe("shares.transitions", self._handle_transition)

    def recent(self, *, tenant_id: Optional[str] = None, limit: int = 50) -> List[AuditEvent]:
        events = [event for event in self.events if tenant_id is None or event.tenant_id == tenant_id]
        return list(reversed(events))[: max(0, limit)]

    def _handle_audit(self, envelope: MessageEnvelope) -> None:
        payload = envelope.payload
        event = AuditEvent(
            user_id=payload.get("user_id"),
            action=str(payload.get("action", "UNKNOWN")),
            resource=str(payload.get("resource", "")),
            status=str(payload.get("status", "SUCCESS")),
            resource_id=payload.get("resource_id"),
            tenant_id=payload.get("tenant_id"),
            details=dict(payload.get("details") or {}),
            ip_address=payload.get("ip_address"),
        )
        self.events.append(event)
        self.telemetry.emit_event(f"audit_{event.action.lower()}", {"status": event.status})
        if self.metadata_service is None:
            return
        try:
            self.metadata_service.append_audit(event)
        except Exception:  # audit is best-effort
            logger.exception("Failed to persist audit event %s", event.action)

    def _handle_transition(self, envelope: MessageEnvelope) -> None:
        self.telemetry.emit_event(f"activity_{envelope.topic}", envelope.payload)
