from __future__ import annotations

from types import SimpleNamespace

import pytest

from tenant_drive.config import TenantDriveConfig
from tenant_drive.models import Role
from tenant_drive.runtime import TenantDriveRuntime


@pytest.fixture
def config(tmp_path):
    cfg = TenantDriveConfig.default()
    cfg.storage.object_store_path = str(tmp_path / "objects")
    cfg.storage.public_endpoint = "http://testserver"
    cfg.auth.token_secret = "test-secret"
    return cfg


@pytest.fixture
def runtime(config):
    return TenantDriveRuntime.bootstrap(config)


@pytest.fixture
def tenant(runtime):
    """Tenant ``t1`` with an admin, a teammate and one bucket; tenant ``t2`` with its own admin."""
    runtime.provision_user("admin-1", "admin@t1.example", "t1", Role.TENANT_ADMIN)
    runtime.provision_user("mate-1", "mate@t1.example", "t1", Role.TEAMMATE)
    runtime.provision_user("admin-2", "admin@t2.example", "t2", Role.TENANT_ADMIN)
    admin = runtime.metadata_service.principal_snapshot("admin-1")
    bucket = runtime.presign_service.create_bucket(admin, name="t1-docs").unwrap()
    return SimpleNamespace(
        runtime=runtime,
        bucket=bucket,
        admin=lambda: runtime.metadata_service.principal_snapshot("admin-1"),
        mate=lambda: runtime.metadata_service.principal_snapshot("mate-1"),
        other_admin=lambda: runtime.metadata_service.principal_snapshot("admin-2"),
    )
