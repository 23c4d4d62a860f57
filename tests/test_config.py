from __future__ import annotations

import pytest

from tenant_drive.config import TenantDriveConfig


def test_empty_environment_keeps_defaults():
    defaults = TenantDriveConfig.default()
    cfg = TenantDriveConfig.from_env({})
    assert cfg.database.state_path == defaults.database.state_path
    assert cfg.auth.token_secret == defaults.auth.token_secret
    assert cfg.sharing.single_use_magic_links == defaults.sharing.single_use_magic_links
    assert cfg.observability.log_level == defaults.observability.log_level.upper()


def test_environment_overrides_are_applied():
    cfg = TenantDriveConfig.from_env(
        {
            "TENANT_DRIVE_STATE_PATH": "/var/lib/drive/state.json",
            "TENANT_DRIVE_TOKEN_SECRET": "s3cret",
            "TENANT_DRIVE_OBJECT_STORE_DIR": "/srv/objects",
            "TENANT_DRIVE_PUBLIC_ENDPOINT": "https://files.example.com",
            "TENANT_DRIVE_SHARE_BASE_URL": "https://share.example.com",
            "TENANT_DRIVE_NOTIFY_WEBHOOK": "https://hooks.example.com/drive",
            "TENANT_DRIVE_LOG_LEVEL": "debug",
        }
    )
    assert cfg.database.state_path == "/var/lib/drive/state.json"
    assert cfg.auth.token_secret == "s3cret"
    assert cfg.storage.object_store_path == "/srv/objects"
    assert cfg.storage.public_endpoint == "https://files.example.com"
    assert cfg.sharing.public_base_url == "https://share.example.com"
    assert cfg.notifications.webhook_url == "https://hooks.example.com/drive"
    assert cfg.observability.log_level == "DEBUG"


@pytest.mark.parametrize(
    "raw, expected",
    [("0", False), ("false", False), (" Off ", False), ("NO", False), ("1", True), ("yes", True)],
)
def test_single_use_magic_link_flag_parsing(raw, expected):
    cfg = TenantDriveConfig.from_env({"TENANT_DRIVE_SINGLE_USE_MAGIC_LINKS": raw})
    assert cfg.sharing.single_use_magic_links is expected
