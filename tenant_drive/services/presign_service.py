"""Authorization-gated signed URLs and multipart session control."""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Optional, Sequence

from ..errors import (
    AuthorizationError,
    NotFoundError,
    ValidationError,
    returns_result,
)
from ..messaging import InMemoryBus, MessageEnvelope
from ..models import (
    Action,
    Bucket,
    FileObject,
    Principal,
    ResourceDescriptor,
    ResourceType,
    Role,
    TransferPart,
)
from ..storage import InvalidPart, NoSuchUpload, ObjectListing, ObjectStore
from .base import BaseService
from .metadata_service import MetadataService
from .policy_engine import authorize, ip_allowed

logger = logging.getLogger(__name__)

PRESIGN_ACTIONS = {
    "upload": Action.UPLOAD,
    "download": Action.DOWNLOAD,
    "read": Action.READ,
}
MAX_PART_NUMBER = 10_000


@dataclass(frozen=True)
class PresignedURL:
    url: str
    key: str
    expires_in: int


@dataclass(frozen=True)
class MultipartSession:
    upload_id: str
    key: str


@dataclass
class PresignService(BaseService):
    """Issues object-store credentials only after the policy engine allows the action."""

    metadata_service: MetadataService
    object_store: ObjectStore
    bus: Optional[InMemoryBus] = None

    @returns_result
    def presign(
        self,
        principal: Principal,
        *,
        bucket_id: str,
        action: str,
        name: Optional[str] = None,
        key: Optional[str] = None,
        parent_id: Optional[str] = None,
        content_type: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> PresignedURL:
        mapped = PRESIGN_ACTIONS.get((action or "").lower())
        if mapped is None:
            raise ValidationError("action must be one of upload, download, read")
        bucket = self._require_bucket(bucket_id)
        self._guard(principal, mapped, bucket, ip_address)
        ttl = self.config.storage.presign_ttl_seconds
        if mapped == Action.UPLOAD:
            if not name:
                raise ValidationError("name is required for uploads")
            object_key = self._object_key(bucket, name, parent_id)
            url = self.object_store.presign("PUT", bucket.name, object_key, expires_in=ttl)
        else:
            object_key = key or (self._object_key(bucket, name, parent_id) if name else "")
            if not object_key:
                raise ValidationError("key or name is required")
            filename = posixpath.basename(object_key) if mapped == Action.DOWNLOAD else None
            url = self.object_store.presign("GET", bucket.name, object_key, expires_in=ttl, filename=filename)
        self.emit_metric("presign.issued", 1, action=mapped.value)
        return PresignedURL(url=url, key=object_key, expires_in=ttl)

    @returns_result
    def initiate_multipart(
        self,
        principal: Principal,
        *,
        bucket_id: str,
        name: str,
        content_type: Optional[str] = None,
        parent_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> MultipartSession:
        if not bucket_id or not name:
            raise ValidationError("bucketId and name are required")
        bucket = self._require_bucket(bucket_id)
        self._guard(principal, Action.UPLOAD, bucket, ip_address)
        object_key = self._object_key(bucket, name, parent_id)
        upload_id = self.object_store.create_multipart_upload(bucket.name, object_key, content_type)
        logger.info("Initiated multipart upload %s for %s/%s", upload_id, bucket.name, object_key)
        self.emit_event("multipart_initiated", upload_id=upload_id, bucket_id=bucket.bucket_id)
        return MultipartSession(upload_id=upload_id, key=object_key)

    @returns_result
    def sign_part(
        self,
        principal: Principal,
        *,
        bucket_id: str,
        key: str,
        upload_id: str,
        part_number: int,
        ip_address: Optional[str] = None,
    ) -> str:
        if not key or not upload_id:
            raise ValidationError("key and uploadId are required")
        if not isinstance(part_number, int) or not 1 <= part_number <= MAX_PART_NUMBER:
            raise ValidationError(f"partNumber must be between 1 and {MAX_PART_NUMBER}")
        bucket = self._require_bucket(bucket_id)
        self._guard(principal, Action.UPLOAD, bucket, ip_address)
        return self.object_store.presign(
            "PUT",
            bucket.name,
            key,
            expires_in=self.config.storage.presign_ttl_seconds,
            upload_id=upload_id,
            part_number=part_number,
        )

    @returns_result
    def complete_multipart(
        self,
        principal: Principal,
        *,
        bucket_id: str,
        key: str,
        upload_id: str,
        parts: Sequence[TransferPart],
        name: Optional[str] = None,
        size: int = 0,
        mime_type: Optional[str] = None,
        parent_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> FileObject:
        if not key or not upload_id:
            raise ValidationError("key and uploadId are required")
        if not parts:
            raise ValidationError("parts must not be empty")
        bucket = self._require_bucket(bucket_id)
        self._guard(principal, Action.UPLOAD, bucket, ip_address)
        try:
            self.object_store.complete_multipart_upload(bucket.name, key, upload_id, list(parts))
        except NoSuchUpload as exc:
            raise NotFoundError(f"Upload {upload_id} not found") from exc
        except InvalidPart as exc:
            raise ValidationError(str(exc)) from exc
        entry = self.metadata_service.upsert_file(
            tenant_id=bucket.tenant_id,
            bucket_id=bucket.bucket_id,
            key=key,
            name=name or posixpath.basename(key),
            size=int(size or 0),
            mime_type=mime_type or "application/octet-stream",
            parent_id=parent_id,
            actor=principal.id,
        )
        self._publish("uploads.completed", {"file_id": entry.id, "bucket_id": bucket.bucket_id, "key": key})
        self.record_audit(
            self.bus,
            user_id=principal.id,
            action="FILE_UPLOAD",
            resource="file",
            resource_id=entry.id,
            tenant_id=bucket.tenant_id,
            ip_address=ip_address,
            details={"name": entry.name, "size": entry.size, "multipart": True, "parts": len(parts)},
        )
        self.emit_metric("upload.completed", 1, strategy="multipart")
        return entry

    @returns_result
    def abort_multipart(
        self,
        principal: Principal,
        *,
        bucket_id: str,
        key: str,
        upload_id: str,
        ip_address: Optional[str] = None,
    ) -> None:
        if not key or not upload_id:
            raise ValidationError("key and uploadId are required")
        bucket = self._require_bucket(bucket_id)
        self._guard(principal, Action.UPLOAD, bucket, ip_address)
        try:
            self.object_store.abort_multipart_upload(bucket.name, key, upload_id)
        except NoSuchUpload:
            # Unknown upload: already aborted or completed.
            logger.info("Abort for unknown upload %s ignored", upload_id)
            return None
        self._publish("uploads.aborted", {"upload_id": upload_id, "bucket_id": bucket.bucket_id, "key": key})
        self.emit_event("multipart_aborted", upload_id=upload_id)
        return None

    @returns_result
    def register_file(
        self,
        principal: Principal,
        *,
        bucket_id: str,
        name: str,
        size: int,
        key: Optional[str] = None,
        mime_type: Optional[str] = None,
        parent_id: Optional[str] = None,
        is_folder: bool = False,
        ip_address: Optional[str] = None,
    ) -> FileObject:
        if not bucket_id or not name:
            raise ValidationError("bucketId and name are required")
        if size is None or int(size) < 0:
            raise ValidationError("size must be a non-negative integer")
        bucket = self._require_bucket(bucket_id)
        self._guard(principal, Action.UPLOAD, bucket, ip_address)
        object_key = key or self._object_key(bucket, name, parent_id)
        if is_folder and not object_key.endswith("/"):
            object_key += "/"
        entry = self.metadata_service.upsert_file(
            tenant_id=bucket.tenant_id,
            bucket_id=bucket.bucket_id,
            key=object_key,
            name=name,
            size=int(size),
            mime_type=mime_type or ("folder" if is_folder else "application/octet-stream"),
            parent_id=parent_id,
            actor=principal.id,
            is_folder=is_folder,
        )
        if not is_folder:
            self._publish("uploads.completed", {"file_id": entry.id, "bucket_id": bucket.bucket_id, "key": object_key})
            self.emit_metric("upload.completed", 1, strategy="single")
        self.record_audit(
            self.bus,
            user_id=principal.id,
            action="FOLDER_CREATE" if is_folder else "FILE_UPLOAD",
            resource="folder" if is_folder else "file",
            resource_id=entry.id,
            tenant_id=bucket.tenant_id,
            ip_address=ip_address,
            details={"name": entry.name, "size": entry.size},
        )
        return entry

    @returns_result
    def delete_file(self, principal: Principal, file_id: str, *, ip_address: Optional[str] = None) -> FileObject:
        entry = self.metadata_service.get_file(file_id)
        if entry is None:
            raise NotFoundError("File not found")
        bucket = self._require_bucket(entry.bucket_id)
        self._guard(principal, Action.DELETE, bucket, ip_address)
        if not entry.is_folder:
            self.object_store.delete_object(bucket.name, entry.key)
        self.metadata_service.delete_file(file_id)
        self.record_audit(
            self.bus,
            user_id=principal.id,
            action="FILE_DELETE",
            resource="file",
            resource_id=file_id,
            tenant_id=bucket.tenant_id,
            ip_address=ip_address,
            details={"name": entry.name},
        )
        return entry

    @returns_result
    def list_objects(
        self,
        principal: Principal,
        *,
        bucket_id: str,
        prefix: str = "",
        continuation_token: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ObjectListing:
        bucket = self._require_bucket(bucket_id)
        self._guard(principal, Action.LIST, bucket, ip_address)
        try:
            return self.object_store.list_objects(
                bucket.name,
                prefix=prefix or "",
                continuation_token=continuation_token,
                max_keys=self.config.storage.list_page_size,
            )
        except InvalidPart as exc:
            raise ValidationError(str(exc)) from exc

    @returns_result
    def create_bucket(
        self,
        principal: Principal,
        *,
        name: str,
        region: str = "local",
        tenant_id: Optional[str] = None,
    ) -> Bucket:
        if not name or "/" in name:
            raise ValidationError("bucket name is required and must not contain '/'")
        owner_tenant = tenant_id if principal.role == Role.PLATFORM_ADMIN and tenant_id else principal.tenant_id
        if not owner_tenant:
            raise ValidationError("tenantId is required")
        decision = authorize(
            principal,
            Action.CREATE_BUCKET,
            ResourceDescriptor(tenant_id=owner_tenant, resource_type=ResourceType.TENANT, resource_id=owner_tenant),
        )
        decision.unwrap()
        bucket = self.metadata_service.create_bucket(owner_tenant, name, region, principal.id)
        self.record_audit(
            self.bus,
            user_id=principal.id,
            action="BUCKET_CREATE",
            resource="bucket",
            resource_id=bucket.bucket_id,
            tenant_id=owner_tenant,
            details={"name": name, "region": region},
        )
        return bucket

    # Helpers ---------------------------------------------------------------

    def _guard(self, principal: Principal, action: Action, bucket: Bucket, ip_address: Optional[str]) -> None:
        if not ip_allowed(principal, ip_address):
            self.record_audit(
                self.bus,
                user_id=principal.id,
                action="IP_ACCESS_DENIED",
                resource="bucket",
                status="FAILED",
                resource_id=bucket.bucket_id,
                tenant_id=principal.tenant_id,
                ip_address=ip_address,
            )
            raise AuthorizationError("Access from this IP address is not allowed")
        resource = ResourceDescriptor(
            tenant_id=bucket.tenant_id,
            resource_type=ResourceType.BUCKET,
            resource_id=bucket.bucket_id,
        )
        decision = authorize(principal, action, resource)
        if not decision.ok:
            self.emit_metric("presign.denied", 1, action=action.value)
        decision.unwrap()

    def _require_bucket(self, bucket_id: str) -> Bucket:
        if not bucket_id:
            raise ValidationError("bucketId is required")
        bucket = self.metadata_service.get_bucket(bucket_id)
        if bucket is None:
            raise NotFoundError("Bucket not found")
        return bucket

    def _object_key(self, bucket: Bucket, name: str, parent_id: Optional[str]) -> str:
        clean = name.strip().lstrip("/")
        if not clean or any(part in ("", ".", "..") for part in clean.rstrip("/").split("/")):
            raise ValidationError("name must be a relative object name")
        if not parent_id:
            return clean
        parent = self.metadata_service.get_file(parent_id)
        if parent is None or parent.bucket_id != bucket.bucket_id:
            raise NotFoundError("Parent folder not found")
        if not parent.is_folder:
            raise ValidationError("parentId must reference a folder")
        return f"{parent.key.rstrip('/')}/{clean}"

    def _publish(self, topic: str, payload: dict) -> None:
        if self.bus is not None:
            self.bus.publish(MessageEnvelope(topic=topic, payload=payload))
