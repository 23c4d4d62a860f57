"""External link sharing: creation, magic-link authentication, downloads and revocation.

A share is ACTIVE until it expires (time or download quota) or is revoked;
both EXPIRED and REVOKED are terminal. Every status change goes through the
metadata store's compare-and-swap so concurrent requests observe one winner.
"""

from __future__ import annotations

import base64
import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ..errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    ExpiredError,
    LimitReachedError,
    NotFoundError,
    RevokedError,
    TenantDriveError,
    ValidationError,
    returns_result,
)
from ..messaging import InMemoryBus, MessageEnvelope
from ..models import Action, Principal, ResourceDescriptor, ResourceType, Role, Share, ShareStatus
from ..storage import ObjectStore
from ..tokens import TokenError, decode_token, encode_token
from .base import BaseService
from .metadata_service import MetadataService
from .notification_service import NotificationService
from .policy_engine import authorize, evaluate, ip_allowed

logger = logging.getLogger(__name__)

MAGIC_LINK_PURPOSE = "magic_link"
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_MASK_PATTERN = re.compile(r"(.{2})(.*)(?=@)")


@dataclass(frozen=True)
class ShareLink:
    share: Share
    share_url: str


@dataclass(frozen=True)
class PublicShareMetadata:
    share_id: str
    file_name: str
    size: int
    mime_type: str
    requires_password: bool
    expires_at: datetime
    masked_email: str


@dataclass(frozen=True)
class MagicLink:
    share_id: str
    token: str
    link: str


@dataclass(frozen=True)
class ShareSession:
    share_id: str
    token: str
    max_age: int


@dataclass(frozen=True)
class ShareDownload:
    url: str
    share: Share


@dataclass
class SharingService(BaseService):
    metadata_service: MetadataService
    object_store: ObjectStore
    notification_service: Optional[NotificationService] = None
    bus: Optional[InMemoryBus] = None

    @returns_result
    def create_share(
        self,
        principal: Principal,
        *,
        file_id: str,
        to_email: str,
        expiry_days: Any,
        download_limit: Any = None,
        password: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ShareLink:
        if not file_id or not to_email or expiry_days in (None, ""):
            raise ValidationError("fileId, toEmail and expiryDays are required")
        days = _parse_expiry_days(expiry_days)
        email = to_email.strip().lower()
        if "@" not in email:
            raise ValidationError("toEmail must be an email address")
        entry = self.metadata_service.get_file(file_id)
        if entry is None:
            raise NotFoundError("File not found")
        if not ip_allowed(principal, ip_address):
            self.record_audit(
                self.bus,
                user_id=principal.id,
                action="IP_ACCESS_DENIED",
                resource="file",
                status="FAILED",
                resource_id=file_id,
                tenant_id=principal.tenant_id,
                ip_address=ip_address,
            )
            raise AuthorizationError("Access from this IP address is not allowed")
        authorize(
            principal,
            Action.SHARE,
            ResourceDescriptor(tenant_id=entry.tenant_id, resource_type=ResourceType.BUCKET, resource_id=entry.bucket_id),
        ).unwrap()

        now = _utcnow()
        share = Share(
            share_id=str(uuid.uuid4()),
            file_id=entry.id,
            tenant_id=entry.tenant_id,
            bucket_id=entry.bucket_id,
            to_email=email,
            expiry=now + timedelta(days=days),
            download_limit=_parse_download_limit(download_limit, self.config.sharing.default_download_limit),
            created_by=principal.id,
            password_hash=hash_password(password) if password else None,
            created_at=now,
            updated_at=now,
        )
        share = self.metadata_service.insert_share(share)
        share_url = f"{self._base_url()}/file/share/{share.share_id}"
        if self.notification_service is not None:
            self.notification_service.send_share_notification(
                email, share_url, entry.name, principal.email or principal.id
            )
        self.record_audit(
            self.bus,
            user_id=principal.id,
            action="FILE_SHARED",
            resource="file",
            resource_id=entry.id,
            tenant_id=entry.tenant_id,
            ip_address=ip_address,
            details={"shareId": share.share_id, "toEmail": email, "downloadLimit": share.download_limit},
        )
        self.emit_event("share_created", share_id=share.share_id, file_id=entry.id)
        return ShareLink(share=share, share_url=share_url)

    @returns_result
    def get_public_metadata(self, share_id: str) -> PublicShareMetadata:
        share = self._ensure_accessible(share_id)
        entry = self.metadata_service.get_file(share.file_id)
        if entry is None:
            raise NotFoundError("Shared file no longer exists")
        return PublicShareMetadata(
            share_id=share.share_id,
            file_name=entry.name,
            size=entry.size,
            mime_type=entry.mime_type,
            requires_password=share.password_protected,
            expires_at=share.expiry,
            masked_email=mask_email(share.to_email),
        )

    @returns_result
    def authenticate(self, share_id: str, *, email: str, password: Optional[str] = None) -> MagicLink:
        share = self._ensure_accessible(share_id)
        if not email or email.strip().lower() != share.to_email:
            raise AuthorizationError("Email does not match this share")
        if share.password_protected:
            if not password:
                raise ValidationError("Password required")
            if not verify_password(password, share.password_hash or ""):
                raise AuthenticationError("Invalid password")
        token = encode_token(
            {"shareId": share.share_id, "email": share.to_email, "purpose": MAGIC_LINK_PURPOSE},
            self.config.auth.token_secret,
            ttl_seconds=self.config.auth.magic_link_ttl_seconds,
        )
        link = f"{self._base_url()}/api/shares/verify?token={token}"
        if self.notification_service is not None:
            entry = self.metadata_service.get_file(share.file_id)
            self.notification_service.send_magic_link(share.to_email, link, entry.name if entry else "shared file")
        self.emit_event("share_magic_link_sent", share_id=share.share_id)
        return MagicLink(share_id=share.share_id, token=token, link=link)

    @returns_result
    def verify(self, token: str) -> ShareSession:
        if not token:
            raise AuthenticationError("Token is required")
        try:
            claims = decode_token(token, self.config.auth.token_secret)
        except TokenError as exc:
            raise AuthenticationError(f"Invalid or expired link: {exc}") from exc
        share_id = claims.get("shareId")
        if claims.get("purpose") != MAGIC_LINK_PURPOSE or not share_id:
            raise AuthenticationError("Token is not a share access link")
        if self.config.sharing.single_use_magic_links:
            expires_at = datetime.fromtimestamp(float(claims.get("exp", 0)), tz=timezone.utc)
            if not self.metadata_service.consume_token(str(claims.get("jti", token)), expires_at):
                raise AuthenticationError("This link has already been used")
        ttl = self.config.auth.share_session_ttl_seconds
        session = encode_token({"shareId": share_id, "access": True}, self.config.auth.token_secret, ttl_seconds=ttl)
        self.emit_event("share_session_issued", share_id=str(share_id))
        return ShareSession(share_id=str(share_id), token=session, max_age=ttl)

    @returns_result
    def download(self, share_id: str, session_token: Optional[str], *, ip_address: Optional[str] = None) -> ShareDownload:
        if not session_token:
            raise AuthenticationError("Share session required")
        try:
            claims = decode_token(session_token, self.config.auth.token_secret)
        except TokenError as exc:
            raise AuthenticationError("Share session is invalid or expired") from exc
        if claims.get("shareId") != share_id or claims.get("access") is not True:
            raise AuthenticationError("Share session does not grant access to this share")

        now = _utcnow()
        share = self._ensure_accessible(share_id, now)
        entry = self.metadata_service.get_file(share.file_id)
        if entry is None:
            raise NotFoundError("Shared file no longer exists")
        bucket = self.metadata_service.get_bucket(share.bucket_id)
        if bucket is None:
            raise NotFoundError("Bucket not found")
        url = self.object_store.presign(
            "GET",
            bucket.name,
            entry.key,
            expires_in=self.config.sharing.download_url_ttl_seconds,
            filename=entry.name,
        )
        updated = self.metadata_service.increment_share_downloads(share_id, now)
        if updated is None:
            # Lost the increment race; report the share's current state.
            self._ensure_accessible(share_id, now)
            raise ConflictError("Share changed while the download was being authorized")
        if updated.status == ShareStatus.EXPIRED:
            self._announce_transition(updated, ShareStatus.EXPIRED, "limit_reached")
        self.record_audit(
            self.bus,
            user_id=None,
            action="FILE_DOWNLOAD",
            resource="file",
            resource_id=entry.id,
            tenant_id=share.tenant_id,
            ip_address=ip_address,
            details={"shareId": share_id, "downloads": updated.downloads, "downloadLimit": updated.download_limit},
        )
        self.emit_metric("share.download", 1, share_id=share_id)
        return ShareDownload(url=url, share=updated)

    @returns_result
    def revoke(self, share_id: str, principal: Principal) -> Share:
        share = self.metadata_service.get_share(share_id)
        if share is None:
            raise NotFoundError("Share not found")
        if not _may_revoke(principal, share):
            raise AuthorizationError("Only the share creator or an admin can revoke it")
        if share.status != ShareStatus.ACTIVE:
            return share
        if self.metadata_service.transition_share(share_id, ShareStatus.ACTIVE, ShareStatus.REVOKED):
            self._announce_transition(share, ShareStatus.REVOKED, "revoked")
            self.record_audit(
                self.bus,
                user_id=principal.id,
                action="SHARE_REVOKED",
                resource="share",
                resource_id=share_id,
                tenant_id=share.tenant_id,
            )
        return self.metadata_service.get_share(share_id) or share

    @returns_result
    def list_shares(self, principal: Principal, *, file_id: Optional[str] = None) -> List[Share]:
        if principal.role == Role.PLATFORM_ADMIN:
            return self.metadata_service.list_shares(file_id=file_id)
        shares = self.metadata_service.list_shares(tenant_id=principal.tenant_id, file_id=file_id)
        if principal.role == Role.TENANT_ADMIN:
            return shares
        return [
            share
            for share in shares
            if share.created_by == principal.id
            or evaluate(
                principal,
                Action.SHARE,
                ResourceDescriptor(share.tenant_id, ResourceType.BUCKET, share.bucket_id),
            )
        ]

    # State checks ----------------------------------------------------------

    def _ensure_accessible(self, share_id: str, now: Optional[datetime] = None) -> Share:
        now = now or _utcnow()
        share = self.metadata_service.get_share(share_id)
        if share is None:
            raise NotFoundError("Share not found")
        if share.status != ShareStatus.ACTIVE:
            raise _terminal_reason(share, now)
        if now > share.expiry:
            self._expire(share, "expired")
            raise ExpiredError("This share has expired")
        if share.downloads >= share.download_limit:
            self._expire(share, "limit_reached")
            raise LimitReachedError("Download limit reached")
        return share

    def _expire(self, share: Share, reason: str) -> None:
        if self.metadata_service.transition_share(share.share_id, ShareStatus.ACTIVE, ShareStatus.EXPIRED):
            self._announce_transition(share, ShareStatus.EXPIRED, reason)

    def _announce_transition(self, share: Share, status: ShareStatus, reason: str) -> None:
        event = "share_revoked" if status == ShareStatus.REVOKED else "share_expired"
        logger.info("Share %s moved to %s (%s)", share.share_id, status.value, reason)
        self.emit_event(event, share_id=share.share_id, reason=reason)
        if self.bus is not None:
            self.bus.publish(
                MessageEnvelope(
                    topic="shares.transitions",
                    payload={"share_id": share.share_id, "status": status.value, "reason": reason},
                )
            )

    def _base_url(self) -> str:
        return (self.config.sharing.public_base_url or self.config.storage.public_endpoint).rstrip("/")


def _terminal_reason(share: Share, now: datetime) -> TenantDriveError:
    if share.status == ShareStatus.REVOKED:
        return RevokedError("This share has been revoked")
    if now > share.expiry:
        return ExpiredError("This share has expired")
    if share.downloads >= share.download_limit:
        return LimitReachedError("Download limit reached")
    return ExpiredError("This share has expired")


def _may_revoke(principal: Principal, share: Share) -> bool:
    if principal.role == Role.PLATFORM_ADMIN:
        return True
    if principal.role == Role.TENANT_ADMIN and principal.tenant_id == share.tenant_id:
        return True
    return principal.id == share.created_by


def _parse_expiry_days(value: Any) -> float:
    try:
        days = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("expiryDays must be a number") from exc
    if days <= 0:
        raise ValidationError("expiryDays must be positive")
    return days


def _parse_download_limit(value: Any, default: int) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    return limit if limit > 0 else default


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mask_email(email: str) -> str:
    """Keep the first two characters of the local part, mask the rest."""
    return _MASK_PATTERN.sub(lambda match: match.group(1) + "*" * len(match.group(2)), email, count=1)


def hash_password(password: str) -> str:
    salt = os.urandom(16)
    kdf = Scrypt(salt=salt, length=32, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    digest = kdf.derive(password.encode("utf-8"))
    return "scrypt${}${}${}${}${}".format(
        _SCRYPT_N,
        _SCRYPT_R,
        _SCRYPT_P,
        base64.b64encode(salt).decode(),
        base64.b64encode(digest).decode(),
    )


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, n, r, p, salt_b64, digest_b64 = encoded.split("$")
        if scheme != "scrypt":
            return False
        kdf = Scrypt(salt=base64.b64decode(salt_b64), length=32, n=int(n), r=int(r), p=int(p))
        kdf.verify(password.encode("utf-8"), base64.b64decode(digest_b64))
    except (ValueError, InvalidKey):
        return False
    return True
