"""ASGI entrypoint configured from ``TENANT_DRIVE_*`` environment variables."""

from __future__ import annotations

from ..config import TenantDriveConfig
from ..runtime import TenantDriveRuntime
from .server import create_app

app = create_app(TenantDriveRuntime.bootstrap(TenantDriveConfig.from_env()))
