"""Base class for control-plane services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config import TenantDriveConfig
from ..messaging import InMemoryBus, MessageEnvelope
from ..telemetry import TelemetryCollector


@dataclass
class BaseService:
    config: TenantDriveConfig
    telemetry: TelemetryCollector

    def emit_metric(self, name: str, value: float, **labels: str) -> None:
        self.telemetry.emit_metric(name, value, labels)

    def emit_event(self, message: str, **attrs: str) -> None:
        self.telemetry.emit_event(message, attrs)

    def record_audit(
        self,
        bus: Optional[InMemoryBus],
        *,
        user_id: Optional[str],
        action: str,
        resource: str,
        status: str = "SUCCESS",
        resource_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if bus is None:
            return
        bus.publish(
            MessageEnvelope(
                topic="audit.events",
                payload={
                    "user_id": user_id,
                    "action": action,
                    "resource": resource,
                    "status": status,
                    "resource_id": resource_id,
                    "tenant_id": tenant_id,
                    "ip_address": ip_address,
                    "details": details or {},
                },
            )
        )
