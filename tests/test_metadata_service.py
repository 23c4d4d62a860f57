from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from tenant_drive.errors import ConflictError, MetadataStoreError
from tenant_drive.models import Action, Role, Share, ShareStatus, UserRecord
from tenant_drive.services.metadata_service import MetadataService
from tenant_drive.telemetry import TelemetryCollector


def _service(config, **kwargs):
    return MetadataService(config=config, telemetry=TelemetryCollector(config.observability), **kwargs)


def _share(limit=3, expiry_days=1):
    now = datetime.now(timezone.utc)
    return Share(
        share_id="s1",
        file_id="f1",
        tenant_id="t1",
        bucket_id="b1",
        to_email="guest@example.com",
        expiry=now + timedelta(days=expiry_days),
        download_limit=limit,
        created_by="u1",
    )


def test_ensure_user_creates_teammate_once(config):
    service = _service(config)
    user, created = service.ensure_user("u1", " Guest@Example.com ", "t1")
    assert created and user.role == Role.TEAMMATE and user.email == "guest@example.com"
    service.save_user(UserRecord(user_id="u1", email="guest@example.com", tenant_id="t1", role=Role.TENANT_ADMIN))
    again, created = service.ensure_user("u1", "guest@example.com", "t1")
    assert not created and again.role == Role.TENANT_ADMIN


def test_principal_snapshot_collects_direct_and_team_policies(config):
    service = _service(config)
    service.ensure_user("u1", "u1@example.com", "t1")
    team = service.create_team("t1", "design", ["10.0.0.0/8"])
    service.add_membership(team.team_id, "u1")
    service.add_policy("user", "u1", "bucket", "b1", [Action.READ])
    service.add_policy("team", team.team_id, "bucket", None, [Action.UPLOAD, Action.UPLOAD])
    principal = service.principal_snapshot("u1")
    assert [p.actions for p in principal.direct_policies] == [frozenset({Action.READ})]
    membership = principal.team_memberships[0]
    assert membership.active and membership.team.allowed_ips == ("10.0.0.0/8",)
    assert membership.team.policies[0].actions == frozenset({Action.UPLOAD})
    with pytest.raises(ConflictError):
        service.add_membership(team.team_id, "u1")


def test_transition_share_is_compare_and_swap(config):
    service = _service(config)
    service.insert_share(_share())
    assert service.transition_share("s1", ShareStatus.ACTIVE, ShareStatus.REVOKED)
    assert not service.transition_share("s1", ShareStatus.ACTIVE, ShareStatus.EXPIRED)
    assert service.get_share("s1").status == ShareStatus.REVOKED


def test_increment_flips_to_expired_at_limit(config):
    service = _service(config)
    service.insert_share(_share(limit=2))
    now = datetime.now(timezone.utc)
    assert service.increment_share_downloads("s1", now).status == ShareStatus.ACTIVE
    last = service.increment_share_downloads("s1", now)
    assert last.downloads == 2 and last.status == ShareStatus.EXPIRED
    assert service.increment_share_downloads("s1", now) is None


def test_concurrent_increments_never_exceed_limit(config):
    service = _service(config)
    service.insert_share(_share(limit=3))
    now = datetime.now(timezone.utc)
    results = []
    barrier = threading.Barrier(10)

    def worker():
        barrier.wait()
        results.append(service.increment_share_downloads("s1", now))

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sum(1 for result in results if result is not None) == 3
    assert service.get_share("s1").downloads == 3


def test_consume_token_is_single_use(config):
    service = _service(config)
    expires = datetime.now(timezone.utc) + timedelta(minutes=15)
    assert service.consume_token("jti-1", expires)
    assert not service.consume_token("jti-1", expires)


def test_encrypted_snapshot_round_trip(config, tmp_path):
    config.database.state_path = str(tmp_path / "state" / "metadata.bin")
    config.database.state_encryption_key = "correct horse battery staple"
    service = _service(config)
    service.ensure_user("u1", "u1@example.com", "t1")
    service.insert_share(_share())
    raw = (tmp_path / "state" / "metadata.bin").read_bytes()
    assert b"u1@example.com" not in raw
    restored = _service(config)
    assert restored.get_user("u1").email == "u1@example.com"
    assert restored.get_share("s1").download_limit == 3


def test_snapshot_with_wrong_key_fails_loudly(config, tmp_path):
    config.database.state_path = str(tmp_path / "metadata.bin")
    config.database.state_encryption_key = "key-one"
    _service(config).ensure_user("u1", "u1@example.com", "t1")
    config.database.state_encryption_key = "key-two"
    with pytest.raises(MetadataStoreError):
        _service(config)
