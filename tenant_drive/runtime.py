"""Runtime wiring for the Tenant Drive control plane."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import TenantDriveConfig
from .messaging import InMemoryBus, build_bus
from .models import Role, UserRecord
from .services.activity_service import ActivityService
from .services.directory_service import DirectoryService
from .services.identity_service import IdentityService
from .services.metadata_service import MetadataService
from .services.notification_service import NotificationService
from .services.presign_service import PresignService
from .services.sharing_service import SharingService
from .storage import LocalObjectStore, ObjectStore
from .telemetry import TelemetryCollector, configure_logging


@dataclass
class TenantDriveRuntime:
    config: TenantDriveConfig
    bus: InMemoryBus
    telemetry: TelemetryCollector
    metadata_service: MetadataService
    object_store: ObjectStore
    identity_service: IdentityService
    presign_service: PresignService
    sharing_service: SharingService
    notification_service: NotificationService
    directory_service: DirectoryService
    activity_service: ActivityService

    @classmethod
    def bootstrap(
        cls,
        config: Optional[TenantDriveConfig] = None,
        *,
        object_store: Optional[ObjectStore] = None,
        http_client: object = None,
    ) -> "TenantDriveRuntime":
        cfg = config or TenantDriveConfig.default()
        configure_logging(cfg.observability.log_level)
        bus = build_bus(cfg.message_bus)
        telemetry = TelemetryCollector(cfg.observability)

        metadata_service = MetadataService(config=cfg, telemetry=telemetry)
        store = object_store or LocalObjectStore(
            cfg.storage.object_store_path,
            signing_secret=cfg.storage.signing_secret,
            public_endpoint=cfg.storage.public_endpoint,
        )
        notification_service = NotificationService(config=cfg, telemetry=telemetry, bus=bus)
        if http_client is not None:
            notification_service.http_client = http_client
        identity_service = IdentityService(config=cfg, telemetry=telemetry, metadata_service=metadata_service)
        presign_service = PresignService(
            config=cfg,
            telemetry=telemetry,
            metadata_service=metadata_service,
            object_store=store,
            bus=bus,
        )
        sharing_service = SharingService(
            config=cfg,
            telemetry=telemetry,
            metadata_service=metadata_service,
            object_store=store,
            notification_service=notification_service,
            bus=bus,
        )
        directory_service = DirectoryService(config=cfg, telemetry=telemetry, metadata_service=metadata_service, bus=bus)
        activity_service = ActivityService(bus=bus, telemetry=telemetry, metadata_service=metadata_service)

        return cls(
            config=cfg,
            bus=bus,
            telemetry=telemetry,
            metadata_service=metadata_service,
            object_store=store,
            identity_service=identity_service,
            presign_service=presign_service,
            sharing_service=sharing_service,
            notification_service=notification_service,
            directory_service=directory_service,
            activity_service=activity_service,
        )

    def provision_user(self, user_id: str, email: str, tenant_id: Optional[str], role: Role = Role.TEAMMATE) -> UserRecord:
        """Create or overwrite a directory user; used by seeding scripts and tests."""
        return self.metadata_service.save_user(UserRecord(user_id=user_id, email=email, tenant_id=tenant_id, role=role))
