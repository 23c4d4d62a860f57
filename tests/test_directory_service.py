from tenant_drive.errors import ErrorKind
from tenant_drive.models import Action, ResourceDescriptor, ResourceType, Role
from tenant_drive.services.policy_engine import evaluate


def _bucket_descriptor(tenant):
    return ResourceDescriptor("t1", ResourceType.BUCKET, tenant.bucket.bucket_id)


def test_team_policy_reaches_active_members_only(tenant):
    directory = tenant.runtime.directory_service
    team = directory.create_team(tenant.admin(), name=" Finance ").unwrap()
    assert team.name == "Finance" and team.tenant_id == "t1"
    directory.add_member(tenant.admin(), team.team_id, "mate-1").unwrap()
    directory.grant_policy(
        tenant.admin(),
        owner_type="team",
        owner_id=team.team_id,
        resource_type="bucket",
        resource_id=tenant.bucket.bucket_id,
        actions=["read", "LIST"],
    ).unwrap()
    assert evaluate(tenant.mate(), Action.READ, _bucket_descriptor(tenant))
    assert not evaluate(tenant.mate(), Action.DELETE, _bucket_descriptor(tenant))

    directory.remove_member(tenant.admin(), team.team_id, "mate-1").unwrap()
    assert not evaluate(tenant.mate(), Action.READ, _bucket_descriptor(tenant))
    assert directory.remove_member(tenant.admin(), team.team_id, "mate-1").kind == ErrorKind.NOT_FOUND


def test_duplicate_membership_is_a_conflict(tenant):
    directory = tenant.runtime.directory_service
    team = directory.create_team(tenant.admin(), name="Ops").unwrap()
    directory.add_member(tenant.admin(), team.team_id, "mate-1").unwrap()
    assert directory.add_member(tenant.admin(), team.team_id, "mate-1").kind == ErrorKind.CONFLICT


def test_directory_changes_require_same_tenant_admin(tenant):
    directory = tenant.runtime.directory_service
    assert directory.create_team(tenant.mate(), name="Nope").kind == ErrorKind.AUTHORIZATION
    team = directory.create_team(tenant.admin(), name="Legal").unwrap()
    assert directory.add_member(tenant.other_admin(), team.team_id, "mate-1").kind == ErrorKind.AUTHORIZATION
    assert directory.add_member(tenant.admin(), team.team_id, "admin-2").kind == ErrorKind.VALIDATION
    assert directory.add_member(tenant.admin(), "missing", "mate-1").kind == ErrorKind.NOT_FOUND


def test_grant_policy_validates_input(tenant):
    directory = tenant.runtime.directory_service
    base = dict(owner_id="mate-1", resource_type="bucket", resource_id=None)
    assert directory.grant_policy(tenant.admin(), owner_type="group", actions=["READ"], **base).kind == ErrorKind.VALIDATION
    assert directory.grant_policy(tenant.admin(), owner_type="user", actions=["FLY"], **base).kind == ErrorKind.VALIDATION
    assert directory.grant_policy(tenant.admin(), owner_type="user", actions=[], **base).kind == ErrorKind.VALIDATION
    bad_type = directory.grant_policy(
        tenant.admin(), owner_type="user", owner_id="mate-1", resource_type="galaxy", resource_id=None, actions=["READ"]
    )
    assert bad_type.kind == ErrorKind.VALIDATION


def test_revoke_policy_removes_access(tenant):
    directory = tenant.runtime.directory_service
    record = directory.grant_policy(
        tenant.admin(), owner_type="user", owner_id="mate-1", resource_type="bucket", resource_id=None, actions=["WRITE"]
    ).unwrap()
    assert evaluate(tenant.mate(), Action.WRITE, _bucket_descriptor(tenant))
    assert [p.policy_id for p in directory.list_policies(tenant.admin(), "user", "mate-1").unwrap()] == [record.policy_id]
    directory.revoke_policy(tenant.admin(), record.policy_id).unwrap()
    assert not evaluate(tenant.mate(), Action.WRITE, _bucket_descriptor(tenant))
    assert directory.revoke_policy(tenant.admin(), record.policy_id).kind == ErrorKind.NOT_FOUND


def test_only_platform_admin_grants_platform_admin(tenant):
    runtime = tenant.runtime
    directory = runtime.directory_service
    assert directory.set_role(tenant.admin(), "mate-1", "PLATFORM_ADMIN").kind == ErrorKind.AUTHORIZATION
    assert directory.set_role(tenant.admin(), "mate-1", "EMPEROR").kind == ErrorKind.VALIDATION
    assert directory.set_role(tenant.admin(), "mate-1", "TENANT_ADMIN").unwrap().role == Role.TENANT_ADMIN
    runtime.provision_user("root", "root@platform.example", None, Role.PLATFORM_ADMIN)
    root = runtime.metadata_service.principal_snapshot("root")
    assert directory.set_role(root, "admin-2", "PLATFORM_ADMIN").unwrap().role == Role.PLATFORM_ADMIN


def test_audit_log_is_tenant_scoped(tenant):
    directory = tenant.runtime.directory_service
    directory.create_team(tenant.admin(), name="Audit me").unwrap()
    actions = [event.action for event in directory.list_audit(tenant.admin()).unwrap()]
    assert actions[0] == "TEAM_CREATE"
    assert "BUCKET_CREATE" in actions
    assert directory.list_audit(tenant.other_admin()).unwrap() == []
    assert directory.list_audit(tenant.mate()).kind == ErrorKind.AUTHORIZATION
