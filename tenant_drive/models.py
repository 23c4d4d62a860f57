"""Data models shared across control-plane services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union


class Role(str, Enum):
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    TENANT_ADMIN = "TENANT_ADMIN"
    TEAMMATE = "TEAMMATE"


class Action(str, Enum):
    READ = "READ"
    WRITE = "WRITE"
    DELETE = "DELETE"
    LIST = "LIST"
    CREATE = "CREATE"
    UPLOAD = "UPLOAD"
    DOWNLOAD = "DOWNLOAD"
    SHARE = "SHARE"
    CREATE_BUCKET = "CREATE_BUCKET"


class ResourceType(str, Enum):
    BUCKET = "bucket"
    FOLDER = "folder"
    OBJECT = "object"
    ACCOUNT = "account"
    TENANT = "tenant"


class ShareStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class TransferStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.COMPLETE, TransferStatus.ERROR, TransferStatus.ABORTED)


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class Policy:
    resource_type: str
    resource_id: Optional[str]
    actions: FrozenSet[Action]
    policy_id: str = field(default="", compare=False)

    def matches(self, action: Action, resource: "ResourceDescriptor") -> bool:
        if self.resource_type != resource.resource_type:
            return False
        if self.resource_id is not None and self.resource_id != resource.resource_id:
            return False
        return action in self.actions


@dataclass(frozen=True)
class Team:
    team_id: str
    tenant_id: str
    name: str
    policies: Tuple[Policy, ...] = ()
    allowed_ips: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TeamMembership:
    team: Team
    active: bool = True


@dataclass(frozen=True)
class Principal:
    id: str
    tenant_id: Optional[str]
    role: Role
    email: str = ""
    direct_policies: Tuple[Policy, ...] = ()
    team_memberships: Tuple[TeamMembership, ...] = ()


@dataclass(frozen=True)
class ResourceDescriptor:
    tenant_id: Optional[str]
    resource_type: str
    resource_id: Optional[str] = None


@dataclass
class UserRecord:
    user_id: str
    email: str
    tenant_id: Optional[str]
    role: Role
    name: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TeamRecord:
    team_id: str
    tenant_id: str
    name: str
    allowed_ips: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class MembershipRecord:
    team_id: str
    user_id: str
    active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PolicyRecord:
    policy_id: str
    owner_type: str
    owner_id: str
    resource_type: str
    resource_id: Optional[str]
    actions: List[Action]

    def to_policy(self) -> Policy:
        return Policy(
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            actions=frozenset(self.actions),
            policy_id=self.policy_id,
        )


@dataclass
class Bucket:
    bucket_id: str
    tenant_id: str
    name: str
    region: str
    created_by: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class FileObject:
    id: str
    tenant_id: str
    bucket_id: str
    key: str
    name: str
    size: int
    mime_type: str
    parent_id: Optional[str]
    is_folder: bool
    created_by: str
    updated_by: str
    created_at: datetime
    updated_at: datetime


@dataclass
class Share:
    share_id: str
    file_id: str
    tenant_id: str
    bucket_id: str
    to_email: str
    expiry: datetime
    download_limit: int
    created_by: str
    downloads: int = 0
    password_hash: Optional[str] = None
    status: ShareStatus = ShareStatus.ACTIVE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def password_protected(self) -> bool:
        return self.password_hash is not None


@dataclass(frozen=True)
class PartRange:
    part_number: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class TransferPart:
    part_number: int
    etag: str


@dataclass(frozen=True)
class TransferDestination:
    bucket_id: str
    key: Optional[str] = None
    parent_id: Optional[str] = None


@dataclass
class TransferJob:
    job_id: str
    direction: TransferDirection
    source: Union[Path, bytes, str]
    destination: TransferDestination
    name: str
    total_size: int
    content_type: str = "application/octet-stream"
    status: TransferStatus = TransferStatus.PENDING
    parts: List[TransferPart] = field(default_factory=list)
    progress_percent: int = 0
    upload_id: Optional[str] = None
    key: Optional[str] = None
    error: Optional[str] = None
    target: Optional[Path] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AuditEvent:
    user_id: Optional[str]
    action: str
    resource: str
    status: str
    resource_id: Optional[str] = None
    tenant_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ObservabilityEvent:
    event_type: str
    message: str
    attributes: Optional[dict] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
