"""Tenant directory administration: teams, memberships, policies and roles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..errors import AuthorizationError, NotFoundError, ValidationError, returns_result
from ..messaging import InMemoryBus
from ..models import (
    Action,
    AuditEvent,
    MembershipRecord,
    PolicyRecord,
    Principal,
    ResourceType,
    Role,
    TeamRecord,
    UserRecord,
)
from .base import BaseService
from .metadata_service import MetadataService

POLICY_OWNER_TYPES = ("user", "team")


@dataclass
class DirectoryService(BaseService):
    metadata_service: MetadataService
    bus: Optional[InMemoryBus] = None

    @returns_result
    def create_team(
        self,
        principal: Principal,
        *,
        name: str,
        allowed_ips: Iterable[str] = (),
        tenant_id: Optional[str] = None,
    ) -> TeamRecord:
        if not name or not name.strip():
            raise ValidationError("Team name is required")
        owner_tenant = tenant_id if principal.role == Role.PLATFORM_ADMIN and tenant_id else principal.tenant_id
        if not owner_tenant:
            raise ValidationError("tenantId is required")
        _require_admin(principal, owner_tenant)
        team = self.metadata_service.create_team(owner_tenant, name.strip(), allowed_ips)
        self._audit(principal, "TEAM_CREATE", "team", team.team_id, owner_tenant, {"name": team.name})
        return team

    @returns_result
    def add_member(self, principal: Principal, team_id: str, user_id: str) -> MembershipRecord:
        team = self._require_team(team_id)
        _require_admin(principal, team.tenant_id)
        user = self.metadata_service.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.tenant_id != team.tenant_id:
            raise ValidationError("User belongs to a different tenant")
        membership = self.metadata_service.add_membership(team_id, user_id)
        self._audit(principal, "TEAM_MEMBER_ADD", "team", team_id, team.tenant_id, {"userId": user_id})
        return membership

    @returns_result
    def remove_member(self, principal: Principal, team_id: str, user_id: str) -> None:
        team = self._require_team(team_id)
        _require_admin(principal, team.tenant_id)
        if not self.metadata_service.deactivate_membership(team_id, user_id):
            raise NotFoundError("Active membership not found")
        self._audit(principal, "TEAM_MEMBER_REMOVE", "team", team_id, team.tenant_id, {"userId": user_id})

    @returns_result
    def grant_policy(
        self,
        principal: Principal,
        *,
        owner_type: str,
        owner_id: str,
        resource_type: str,
        resource_id: Optional[str],
        actions: Iterable[str],
    ) -> PolicyRecord:
        if owner_type not in POLICY_OWNER_TYPES:
            raise ValidationError("ownerType must be 'user' or 'team'")
        try:
            parsed_type = ResourceType(resource_type)
            parsed_actions = [Action(str(action).upper()) for action in actions]
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if not parsed_actions:
            raise ValidationError("At least one action is required")
        owner_tenant = self._owner_tenant(owner_type, owner_id)
        _require_admin(principal, owner_tenant)
        record = self.metadata_service.add_policy(owner_type, owner_id, parsed_type.value, resource_id, parsed_actions)
        self._audit(
            principal,
            "POLICY_GRANT",
            "policy",
            record.policy_id,
            owner_tenant,
            {"ownerType": owner_type, "ownerId": owner_id, "actions": [a.value for a in parsed_actions]},
        )
        return record

    @returns_result
    def revoke_policy(self, principal: Principal, policy_id: str) -> None:
        record = self.metadata_service.get_policy(policy_id)
        if record is None:
            raise NotFoundError("Policy not found")
        owner_tenant = self._owner_tenant(record.owner_type, record.owner_id)
        _require_admin(principal, owner_tenant)
        self.metadata_service.delete_policy(policy_id)
        self._audit(principal, "POLICY_REVOKE", "policy", policy_id, owner_tenant, {})

    @returns_result
    def list_policies(self, principal: Principal, owner_type: str, owner_id: str) -> List[PolicyRecord]:
        _require_admin(principal, self._owner_tenant(owner_type, owner_id))
        return self.metadata_service.policies_for(owner_type, owner_id)

    @returns_result
    def set_role(self, principal: Principal, user_id: str, role: str) -> UserRecord:
        try:
            new_role = Role(role)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        user = self.metadata_service.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if new_role == Role.PLATFORM_ADMIN and principal.role != Role.PLATFORM_ADMIN:
            raise AuthorizationError("Only platform admins can grant platform admin")
        _require_admin(principal, user.tenant_id)
        user.role = new_role
        saved = self.metadata_service.save_user(user)
        self._audit(principal, "ROLE_CHANGE", "user", user_id, user.tenant_id, {"role": new_role.value})
        return saved

    @returns_result
    def list_audit(self, principal: Principal, *, limit: int = 100) -> List[AuditEvent]:
        _require_admin(principal, principal.tenant_id)
        tenant_filter = None if principal.role == Role.PLATFORM_ADMIN else principal.tenant_id
        return self.metadata_service.list_audit(tenant_id=tenant_filter, limit=limit)

    def _require_team(self, team_id: str) -> TeamRecord:
        team = self.metadata_service.get_team(team_id)
        if team is None:
            raise NotFoundError("Team not found")
        return team

    def _owner_tenant(self, owner_type: str, owner_id: str) -> Optional[str]:
        if owner_type == "team":
            return self._require_team(owner_id).tenant_id
        user = self.metadata_service.get_user(owner_id)
        if user is None:
            raise NotFoundError("User not found")
        return user.tenant_id

    def _audit(self, principal: Principal, action: str, resource: str, resource_id: str, tenant_id: Optional[str], details: dict) -> None:
        self.record_audit(
            self.bus,
            user_id=principal.id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            tenant_id=tenant_id,
            details=details,
        )


def _require_admin(principal: Principal, tenant_id: Optional[str]) -> None:
    if principal.role == Role.PLATFORM_ADMIN:
        return
    if principal.role == Role.TENANT_ADMIN and tenant_id is not None and principal.tenant_id == tenant_id:
        return
    raise AuthorizationError("Tenant admin rights required")
