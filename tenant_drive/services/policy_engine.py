"""Tenant-scoped permission evaluation.

``evaluate`` is a pure predicate over an immutable :class:`Principal`
snapshot. Rules short-circuit in this order:

1. platform admins are allowed everything;
2. a resource in another tenant is denied;
3. tenant admins are allowed everything in their own tenant;
4. any direct policy that matches allows;
5. any policy of an active team membership that matches allows;
6. everything else is denied.

There is no explicit deny and no ranking between matching policies. A
wildcard policy (``resource_id is None``) and a specific one are equivalent
once either matches.
"""

from __future__ import annotations

import ipaddress
from typing import Iterable, Optional

from ..errors import AuthorizationError, Result
from ..models import Action, Policy, Principal, ResourceDescriptor, Role


def evaluate(principal: Principal, action: Action, resource: ResourceDescriptor) -> bool:
    if principal.role == Role.PLATFORM_ADMIN:
        return True
    if resource.tenant_id != principal.tenant_id:
        return False
    if principal.role == Role.TENANT_ADMIN:
        return True
    if _any_match(principal.direct_policies, action, resource):
        return True
    for membership in principal.team_memberships:
        if membership.active and _any_match(membership.team.policies, action, resource):
            return True
    return False


def authorize(principal: Principal, action: Action, resource: ResourceDescriptor) -> Result[None]:
    if evaluate(principal, action, resource):
        return Result.success(None)
    return Result.failure(
        AuthorizationError(f"{action.value} denied on {resource.resource_type}:{resource.resource_id or '*'}")
    )


def ip_allowed(principal: Principal, ip: Optional[str]) -> bool:
    """Check the team IP allow-lists that apply to a teammate.

    Admins are exempt. A teammate is allowed when none of their active teams
    restricts addresses, or when ``ip`` matches an entry of any team that does.
    """
    if principal.role in (Role.PLATFORM_ADMIN, Role.TENANT_ADMIN):
        return True
    restricted = [m.team.allowed_ips for m in principal.team_memberships if m.active and m.team.allowed_ips]
    if not restricted:
        return True
    if not ip:
        return False
    return any(_ip_in_allowlist(ip, allowed) for allowed in restricted)


def _any_match(policies: Iterable[Policy], action: Action, resource: ResourceDescriptor) -> bool:
    return any(policy.matches(action, resource) for policy in policies)


def _ip_in_allowlist(ip: str, allowed: Iterable[str]) -> bool:
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    for entry in allowed:
        entry = entry.strip()
        if not entry:
            continue
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False
