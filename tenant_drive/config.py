"""Configuration primitives for the Tenant Drive control plane."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

MIB = 1024 * 1024


@dataclass
class DatabaseConfig:
    state_path: Optional[str] = None
    state_encryption_key: Optional[str] = None


@dataclass
class MessageBusConfig:
    backend: str = "in-memory"
    topics: List[str] = field(default_factory=lambda: [
        "audit.events",
        "notifications.email",
        "shares.transitions",
        "uploads.completed",
        "uploads.aborted",
    ])


@dataclass
class AuthConfig:
    token_secret: str
    magic_link_ttl_seconds: int = 15 * 60
    share_session_ttl_seconds: int = 24 * 60 * 60


@dataclass
class StorageConfig:
    object_store_path: str = field(default_factory=lambda: str(Path.cwd() / "data" / "objects"))
    signing_secret: str = "local-object-store-secret"
    public_endpoint: str = "http://localhost:8000"
    presign_ttl_seconds: int = 3600
    list_page_size: int = 1000


@dataclass
class TransferConfig:
    part_size: int = 20 * MIB
    multipart_threshold: int = 100 * MIB
    concurrency: int = 3
    request_timeout: float = 30.0
    retain_finished_jobs: int = 1000


@dataclass
class SharingConfig:
    default_download_limit: int = 3
    public_base_url: Optional[str] = None
    download_url_ttl_seconds: int = 3600
    single_use_magic_links: bool = True


@dataclass
class NotificationConfig:
    webhook_url: Optional[str] = None
    sender: str = "no-reply@tenant-drive.local"
    timeout: float = 5.0


@dataclass
class ObservabilityConfig:
    log_level: str = "INFO"
    max_samples: int = 10_000


@dataclass
class TenantDriveConfig:
    database: DatabaseConfig
    message_bus: MessageBusConfig
    auth: AuthConfig
    storage: StorageConfig
    transfer: TransferConfig
    sharing: SharingConfig
    notifications: NotificationConfig
    observability: ObservabilityConfig

    @staticmethod
    def default() -> "TenantDriveConfig":
        return TenantDriveConfig(
            database=DatabaseConfig(),
            message_bus=MessageBusConfig(),
            auth=AuthConfig(token_secret="development-secret-change-me"),
            storage=StorageConfig(),
            transfer=TransferConfig(),
            sharing=SharingConfig(),
            notifications=NotificationConfig(),
            observability=ObservabilityConfig(),
        )

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "TenantDriveConfig":
        env = os.environ if environ is None else environ
        cfg = TenantDriveConfig.default()
        cfg.database.state_path = env.get("TENANT_DRIVE_STATE_PATH", cfg.database.state_path)
        cfg.database.state_encryption_key = env.get("TENANT_DRIVE_STATE_KEY", cfg.database.state_encryption_key)
        cfg.auth.token_secret = env.get("TENANT_DRIVE_TOKEN_SECRET", cfg.auth.token_secret)
        cfg.storage.object_store_path = env.get("TENANT_DRIVE_OBJECT_STORE_DIR", cfg.storage.object_store_path)
        cfg.storage.signing_secret = env.get("TENANT_DRIVE_SIGNING_SECRET", cfg.storage.signing_secret)
        cfg.storage.public_endpoint = env.get("TENANT_DRIVE_PUBLIC_ENDPOINT", cfg.storage.public_endpoint)
        cfg.sharing.public_base_url = env.get("TENANT_DRIVE_SHARE_BASE_URL", cfg.sharing.public_base_url)
        single_use = env.get("TENANT_DRIVE_SINGLE_USE_MAGIC_LINKS")
        if single_use is not None:
            cfg.sharing.single_use_magic_links = single_use.strip().lower() not in {"0", "false", "off", "no"}
        cfg.notifications.webhook_url = env.get("TENANT_DRIVE_NOTIFY_WEBHOOK", cfg.notifications.webhook_url)
        cfg.observability.log_level = env.get("TENANT_DRIVE_LOG_LEVEL", cfg.observability.log_level).upper()
        return cfg
