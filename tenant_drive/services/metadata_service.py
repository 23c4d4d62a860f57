"""In-memory metadata store for users, teams, policies, files, shares and audit records."""

from __future__ import annotations

import base64
import hashlib
import pickle
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from ..errors import ConflictError, MetadataStoreError
from ..models import (
    Action,
    AuditEvent,
    Bucket,
    FileObject,
    MembershipRecord,
    Principal,
    PolicyRecord,
    Role,
    Share,
    ShareStatus,
    Team,
    TeamMembership,
    TeamRecord,
    UserRecord,
)
from .base import BaseService

AUDIT_RETENTION = 10_000


@dataclass
class MetadataService(BaseService):
    """Thread-safe store; every share mutation is a conditional update under one lock."""

    state_path: Optional[str] = None
    _users: Dict[str, UserRecord] = field(default_factory=dict, repr=False)
    _teams: Dict[str, TeamRecord] = field(default_factory=dict, repr=False)
    _memberships: List[MembershipRecord] = field(default_factory=list, repr=False)
    _policies: Dict[str, PolicyRecord] = field(default_factory=dict, repr=False)
    _buckets: Dict[str, Bucket] = field(default_factory=dict, repr=False)
    _files: Dict[str, FileObject] = field(default_factory=dict, repr=False)
    _shares: Dict[str, Share] = field(default_factory=dict, repr=False)
    _consumed_tokens: Dict[str, datetime] = field(default_factory=dict, repr=False)
    _audit: Deque[AuditEvent] = field(default_factory=lambda: deque(maxlen=AUDIT_RETENTION), repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _state_file: Optional[Path] = field(default=None, init=False, repr=False)
    _cipher: Optional[Fernet] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.state_path = self.state_path or self.config.database.state_path
        key = self.config.database.state_encryption_key
        if key:
            self._cipher = Fernet(_normalize_fernet_key(key))
        if self.state_path:
            self._state_file = Path(self.state_path).expanduser()
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # Users -----------------------------------------------------------------

    def save_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            self._users[user.user_id] = replace(user, email=user.email.strip().lower())
            self._persist_state()
            return replace(self._users[user.user_id])

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            return replace(user) if user else None

    def ensure_user(self, user_id: str, email: str, tenant_id: Optional[str]) -> Tuple[UserRecord, bool]:
        """Return the stored user, creating a teammate record on first sight."""
        with self._lock:
            existing = self._users.get(user_id)
            if existing is not None:
                return replace(existing), False
            user = UserRecord(user_id=user_id, email=email.strip().lower(), tenant_id=tenant_id, role=Role.TEAMMATE)
            self._users[user_id] = user
            self._persist_state()
        self.emit_event("user_created", user_id=user_id)
        return replace(user), True

    # Teams & policies ------------------------------------------------------

    def create_team(self, tenant_id: str, name: str, allowed_ips: Iterable[str] = ()) -> TeamRecord:
        team = TeamRecord(
            team_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            name=name,
            allowed_ips=[ip.strip() for ip in allowed_ips if ip and ip.strip()],
        )
        with self._lock:
            self._teams[team.team_id] = team
            self._persist_state()
        return replace(team)

    def get_team(self, team_id: str) -> Optional[TeamRecord]:
        with self._lock:
            team = self._teams.get(team_id)
            return replace(team) if team else None

    def add_membership(self, team_id: str, user_id: str) -> MembershipRecord:
        with self._lock:
            for membership in self._memberships:
                if membership.team_id == team_id and membership.user_id == user_id:
                    if membership.active:
                        raise ConflictError("User is already in this team")
                    membership.active = True
                    self._persist_state()
                    return replace(membership)
            membership = MembershipRecord(team_id=team_id, user_id=user_id)
            self._memberships.append(membership)
            self._persist_state()
            return replace(membership)

    def deactivate_membership(self, team_id: str, user_id: str) -> bool:
        with self._lock:
            for membership in self._memberships:
                if membership.team_id == team_id and membership.user_id == user_id and membership.active:
                    membership.active = False
                    self._persist_state()
                    return True
        return False

    def add_policy(
        self,
        owner_type: str,
        owner_id: str,
        resource_type: str,
        resource_id: Optional[str],
        actions: Iterable[Action],
    ) -> PolicyRecord:
        record = PolicyRecord(
            policy_id=str(uuid.uuid4()),
            owner_type=owner_type,
            owner_id=owner_id,
            resource_type=resource_type,
            resource_id=resource_id,
            actions=list(dict.fromkeys(actions)),
        )
        with self._lock:
            self._policies[record.policy_id] = record
            self._persist_state()
        return replace(record)

    def get_policy(self, policy_id: str) -> Optional[PolicyRecord]:
        with self._lock:
            record = self._policies.get(policy_id)
            return replace(record) if record else None

    def delete_policy(self, policy_id: str) -> bool:
        with self._lock:
            removed = self._policies.pop(policy_id, None)
            if removed is not None:
                self._persist_state()
        return removed is not None

    def policies_for(self, owner_type: str, owner_id: str) -> List[PolicyRecord]:
        with self._lock:
            return [
                replace(record)
                for record in self._policies.values()
                if record.owner_type == owner_type and record.owner_id == owner_id
            ]

    def principal_snapshot(self, user_id: str) -> Optional[Principal]:
        """Build an immutable principal with its direct and team policies."""
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            direct = tuple(record.to_policy() for record in self.policies_for("user", user_id))
            memberships = []
            for membership in self._memberships:
                if membership.user_id != user_id:
                    continue
                team = self._teams.get(membership.team_id)
                if team is None:
                    continue
                snapshot = Team(
                    team_id=team.team_id,
                    tenant_id=team.tenant_id,
                    name=team.name,
                    policies=tuple(record.to_policy() for record in self.policies_for("team", team.team_id)),
                    allowed_ips=tuple(team.allowed_ips),
                )
                memberships.append(TeamMembership(team=snapshot, active=membership.active))
            return Principal(
                id=user.user_id,
                tenant_id=user.tenant_id,
                role=user.role,
                email=user.email,
                direct_policies=direct,
                team_memberships=tuple(memberships),
            )

    # Buckets & files -------------------------------------------------------

    def create_bucket(self, tenant_id: str, name: str, region: str, created_by: str) -> Bucket:
        bucket = Bucket(bucket_id=str(uuid.uuid4()), tenant_id=tenant_id, name=name, region=region, created_by=created_by)
        with self._lock:
            if any(existing.name == name for existing in self._buckets.values()):
                raise ConflictError(f"Bucket {name} already exists")
            self._buckets[bucket.bucket_id] = bucket
            self._persist_state()
        return replace(bucket)

    def get_bucket(self, bucket_id: str) -> Optional[Bucket]:
        with self._lock:
            bucket = self._buckets.get(bucket_id)
            return replace(bucket) if bucket else None

    def upsert_file(
        self,
        *,
        tenant_id: str,
        bucket_id: str,
        key: str,
        name: str,
        size: int,
        mime_type: str,
        parent_id: Optional[str],
        actor: str,
        is_folder: bool = False,
    ) -> FileObject:
        now = datetime.now(timezone.utc)
        with self._lock:
            existing = next(
                (f for f in self._files.values() if f.bucket_id == bucket_id and f.key == key and not f.is_folder),
                None,
            )
            if existing is not None and not is_folder:
                existing.size = size
                existing.mime_type = mime_type
                existing.updated_by = actor
                existing.updated_at = now
                entry = existing
            else:
                entry = FileObject(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    bucket_id=bucket_id,
                    key=key,
                    name=name,
                    size=size,
                    mime_type=mime_type,
                    parent_id=parent_id,
                    is_folder=is_folder,
                    created_by=actor,
                    updated_by=actor,
                    created_at=now,
                    updated_at=now,
                )
                self._files[entry.id] = entry
            self._persist_state()
            return replace(entry)

    def get_file(self, file_id: str) -> Optional[FileObject]:
        with self._lock:
            entry = self._files.get(file_id)
            return replace(entry) if entry else None

    def find_file_by_key(self, bucket_id: str, key: str) -> Optional[FileObject]:
        with self._lock:
            for entry in self._files.values():
                if entry.bucket_id == bucket_id and entry.key == key:
                    return replace(entry)
        return None

    def delete_file(self, file_id: str) -> bool:
        with self._lock:
            removed = self._files.pop(file_id, None)
            if removed is not None:
                self._persist_state()
        return removed is not None

    # Shares ----------------------------------------------------------------

    def insert_share(self, share: Share) -> Share:
        with self._lock:
            if share.share_id in self._shares:
                raise ConflictError(f"Share {share.share_id} already exists")
            self._shares[share.share_id] = replace(share)
            self._persist_state()
        return replace(share)

    def get_share(self, share_id: str) -> Optional[Share]:
        with self._lock:
            share = self._shares.get(share_id)
            return replace(share) if share else None

    def list_shares(self, *, tenant_id: Optional[str] = None, file_id: Optional[str] = None) -> List[Share]:
        with self._lock:
            shares = [
                replace(share)
                for share in self._shares.values()
                if (tenant_id is None or share.tenant_id == tenant_id)
                and (file_id is None or share.file_id == file_id)
            ]
        shares.sort(key=lambda share: share.created_at, reverse=True)
        return shares

    def transition_share(self, share_id: str, expected: ShareStatus, new_status: ShareStatus) -> bool:
        """Compare-and-swap the share status; ``True`` only for the caller that moved it."""
        with self._lock:
            share = self._shares.get(share_id)
            if share is None or share.status != expected:
                return False
            share.status = new_status
            share.updated_at = datetime.now(timezone.utc)
            self._persist_state()
            return True

    def increment_share_downloads(self, share_id: str, now: datetime) -> Optional[Share]:
        """Atomically count one download.

        Equivalent to ``downloads = downloads + 1 WHERE status = 'ACTIVE' AND
        downloads < download_limit AND now <= expiry``; the status flips to
        EXPIRED in the same step when the limit is reached. Returns ``None``
        when the condition does not hold.
        """
        with self._lock:
            share = self._shares.get(share_id)
            if share is None or share.status != ShareStatus.ACTIVE:
                return None
            if share.downloads >= share.download_limit or now > share.expiry:
                return None
            share.downloads += 1
            if share.downloads >= share.download_limit:
                share.status = ShareStatus.EXPIRED
            share.updated_at = now
            self._persist_state()
            return replace(share)

    def consume_token(self, token_id: str, expires_at: datetime) -> bool:
        """Record a single-use token id; ``False`` when it was already consumed."""
        now = datetime.now(timezone.utc)
        with self._lock:
            for stale in [jti for jti, expiry in self._consumed_tokens.items() if expiry < now]:
                self._consumed_tokens.pop(stale, None)
            if token_id in self._consumed_tokens:
                return False
            self._consumed_tokens[token_id] = expires_at
            self._persist_state()
            return True

    # Audit -----------------------------------------------------------------

    def append_audit(self, event: AuditEvent) -> None:
        with self._lock:
            self._audit.append(event)
            self._persist_state()

    def list_audit(self, *, tenant_id: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
        with self._lock:
            events = [event for event in self._audit if tenant_id is None or event.tenant_id == tenant_id]
        return list(reversed(events))[: max(0, limit)]

    # Persistence -----------------------------------------------------------

    def _snapshot(self) -> dict:
        return {
            "users": self._users,
            "teams": self._teams,
            "memberships": self._memberships,
            "policies": self._policies,
            "buckets": self._buckets,
            "files": self._files,
            "shares": self._shares,
            "consumed_tokens": self._consumed_tokens,
            "audit": list(self._audit),
        }

    def _persist_state(self) -> None:
        if not self._state_file:
            return
        try:
            raw = pickle.dumps(self._snapshot())
            if self._cipher:
                raw = self._cipher.encrypt(raw)
            tmp_path = self._state_file.with_suffix(".tmp")
            tmp_path.write_bytes(raw)
            tmp_path.replace(self._state_file)
        except (OSError, pickle.PicklingError) as exc:
            raise MetadataStoreError(f"unable to persist metadata state: {exc}") from exc

    def _load_state(self) -> None:
        if not self._state_file or not self._state_file.exists():
            return
        try:
            raw = self._state_file.read_bytes()
            if self._cipher:
                raw = self._cipher.decrypt(raw)
            payload = pickle.loads(raw)
        except (OSError, InvalidToken, pickle.UnpicklingError, EOFError) as exc:
            raise MetadataStoreError(f"unable to load metadata state: {exc}") from exc
        self._users = payload.get("users", {})
        self._teams = payload.get("teams", {})
        self._memberships = payload.get("memberships", [])
        self._policies = payload.get("policies", {})
        self._buckets = payload.get("buckets", {})
        self._files = payload.get("files", {})
        self._shares = payload.get("shares", {})
        self._consumed_tokens = payload.get("consumed_tokens", {})
        self._audit = deque(payload.get("audit", []), maxlen=AUDIT_RETENTION)


def _normalize_fernet_key(secret: str) -> bytes:
    try:
        if len(base64.urlsafe_b64decode(secret)) == 32:
            return secret.encode()
    except ValueError:
        pass
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)
