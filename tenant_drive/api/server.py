"""FastAPI gateway: presign, multipart, file, share, directory and object data-plane routes."""

from __future__ import annotations

import logging
import os
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from ..errors import (
    AuthorizationError,
    NotFoundError,
    Result,
    TenantDriveError,
    ValidationError,
)
from ..models import Bucket, FileObject, PolicyRecord, Principal, Share, TeamRecord, TransferPart
from ..runtime import TenantDriveRuntime
from ..storage import InvalidPart, NoSuchKey, NoSuchUpload

logger = logging.getLogger(__name__)

SHARE_COOKIE_PREFIX = "share_session_"

router = APIRouter()


def get_runtime(request: Request) -> TenantDriveRuntime:
    return request.app.state.runtime


def get_principal(request: Request, runtime: TenantDriveRuntime = Depends(get_runtime)) -> Principal:
    return _unwrap(runtime.identity_service.authenticate(request.headers.get("authorization")))


def _unwrap(result: Result) -> Any:
    return result.unwrap()


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class _CamelAliasModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MultipartInitiateRequest(_CamelAliasModel):
    bucket_id: str = Field(alias="bucketId")
    name: str
    content_type: Optional[str] = Field(default=None, alias="type")
    parent_id: Optional[str] = Field(default=None, alias="parentId")


class SignPartRequest(_CamelAliasModel):
    bucket_id: str = Field(alias="bucketId")
    key: str
    upload_id: str = Field(alias="uploadId")
    part_number: int = Field(alias="partNumber")


class CompletedPart(_CamelAliasModel):
    part_number: int = Field(alias="PartNumber")
    etag: str = Field(alias="ETag")


class MultipartCompleteRequest(_CamelAliasModel):
    bucket_id: str = Field(alias="bucketId")
    key: str
    upload_id: str = Field(alias="uploadId")
    parts: List[CompletedPart]
    name: Optional[str] = None
    size: int = Field(default=0, ge=0)
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    parent_id: Optional[str] = Field(default=None, alias="parentId")


class MultipartAbortRequest(_CamelAliasModel):
    bucket_id: str = Field(alias="bucketId")
    key: str
    upload_id: str = Field(alias="uploadId")


class FileRegisterRequest(_CamelAliasModel):
    bucket_id: str = Field(alias="bucketId")
    name: str
    size: int = Field(default=0, ge=0)
    key: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    is_folder: bool = Field(default=False, alias="isFolder")


class BucketCreateRequest(_CamelAliasModel):
    name: str
    region: str = "local"
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")


class ShareCreateRequest(_CamelAliasModel):
    file_id: Optional[str] = Field(default=None, alias="fileId")
    to_email: Optional[str] = Field(default=None, alias="toEmail")
    expiry_days: Optional[Any] = Field(default=None, alias="expiryDays")
    download_limit: Optional[Any] = Field(default=None, alias="downloadLimit")
    password: Optional[str] = None


class ShareAuthRequest(BaseModel):
    email: str
    password: Optional[str] = None


class TeamCreateRequest(_CamelAliasModel):
    name: str
    allowed_ips: List[str] = Field(default_factory=list, alias="allowedIps")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")


class MemberAddRequest(_CamelAliasModel):
    user_id: str = Field(alias="userId")


class PolicyCreateRequest(_CamelAliasModel):
    owner_type: str = Field(alias="ownerType")
    owner_id: str = Field(alias="ownerId")
    resource_type: str = Field(alias="resourceType")
    resource_id: Optional[str] = Field(default=None, alias="resourceId")
    actions: List[str]


class RoleUpdateRequest(BaseModel):
    role: str


# Files & transfers -----------------------------------------------------------


@router.get("/api/files/presigned")
async def presign(
    request: Request,
    bucket_id: str = Query(alias="bucketId"),
    action: str = Query(default="upload"),
    name: Optional[str] = None,
    key: Optional[str] = None,
    parent_id: Optional[str] = Query(default=None, alias="parentId"),
    content_type: Optional[str] = Query(default=None, alias="contentType"),
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    presigned = _unwrap(
        runtime.presign_service.presign(
            principal,
            bucket_id=bucket_id,
            action=action,
            name=name,
            key=key,
            parent_id=parent_id,
            content_type=content_type,
            ip_address=_client_ip(request),
        )
    )
    return {"url": presigned.url, "key": presigned.key, "expiresIn": presigned.expires_in}


@router.post("/api/files/multipart/initiate")
async def initiate_multipart(
    payload: MultipartInitiateRequest,
    request: Request,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    session = _unwrap(
        runtime.presign_service.initiate_multipart(
            principal,
            bucket_id=payload.bucket_id,
            name=payload.name,
            content_type=payload.content_type,
            parent_id=payload.parent_id,
            ip_address=_client_ip(request),
        )
    )
    return {"uploadId": session.upload_id, "key": session.key}


@router.post("/api/files/multipart/sign-part")
async def sign_part(
    payload: SignPartRequest,
    request: Request,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    url = _unwrap(
        runtime.presign_service.sign_part(
            principal,
            bucket_id=payload.bucket_id,
            key=payload.key,
            upload_id=payload.upload_id,
            part_number=payload.part_number,
            ip_address=_client_ip(request),
        )
    )
    return {"url": url}


@router.post("/api/files/multipart/complete")
async def complete_multipart(
    payload: MultipartCompleteRequest,
    request: Request,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    entry = _unwrap(
        runtime.presign_service.complete_multipart(
            principal,
            bucket_id=payload.bucket_id,
            key=payload.key,
            upload_id=payload.upload_id,
            parts=[TransferPart(part_number=part.part_number, etag=part.etag) for part in payload.parts],
            name=payload.name,
            size=payload.size,
            mime_type=payload.mime_type,
            parent_id=payload.parent_id,
            ip_address=_client_ip(request),
        )
    )
    return {"status": "completed", "file": _serialize_file(entry)}


@router.post("/api/files/multipart/abort")
async def abort_multipart(
    payload: MultipartAbortRequest,
    request: Request,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    _unwrap(
        runtime.presign_service.abort_multipart(
            principal,
            bucket_id=payload.bucket_id,
            key=payload.key,
            upload_id=payload.upload_id,
            ip_address=_client_ip(request),
        )
    )
    return {"status": "aborted"}


@router.post("/api/files", status_code=201)
async def register_file(
    payload: FileRegisterRequest,
    request: Request,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    entry = _unwrap(
        runtime.presign_service.register_file(
            principal,
            bucket_id=payload.bucket_id,
            name=payload.name,
            size=payload.size,
            key=payload.key,
            mime_type=payload.mime_type,
            parent_id=payload.parent_id,
            is_folder=payload.is_folder,
            ip_address=_client_ip(request),
        )
    )
    return _serialize_file(entry)


@router.delete("/api/files/{file_id}")
async def delete_file(
    file_id: str,
    request: Request,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    entry = _unwrap(runtime.presign_service.delete_file(principal, file_id, ip_address=_client_ip(request)))
    return {"status": "deleted", "file": _serialize_file(entry)}


@router.post("/api/buckets", status_code=201)
async def create_bucket(
    payload: BucketCreateRequest,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    bucket = _unwrap(
        runtime.presign_service.create_bucket(
            principal,
            name=payload.name,
            region=payload.region,
            tenant_id=payload.tenant_id,
        )
    )
    return _serialize_bucket(bucket)


@router.get("/api/buckets/{bucket_id}/objects")
async def list_objects(
    bucket_id: str,
    request: Request,
    prefix: str = "",
    continuation_token: Optional[str] = Query(default=None, alias="continuationToken"),
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    listing = _unwrap(
        runtime.presign_service.list_objects(
            principal,
            bucket_id=bucket_id,
            prefix=prefix,
            continuation_token=continuation_token,
            ip_address=_client_ip(request),
        )
    )
    return {
        "objects": [
            {
                "key": item.key,
                "size": item.size,
                "etag": item.etag,
                "contentType": item.content_type,
                "lastModified": item.last_modified,
            }
            for item in listing.objects
        ],
        "nextContinuationToken": listing.next_continuation_token,
        "isTruncated": listing.is_truncated,
    }


# Shares ------------------------------------------------------------------------


@router.post("/api/shares", status_code=201)
async def create_share(
    payload: ShareCreateRequest,
    request: Request,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    link = _unwrap(
        runtime.sharing_service.create_share(
            principal,
            file_id=payload.file_id or "",
            to_email=payload.to_email or "",
            expiry_days=payload.expiry_days,
            download_limit=payload.download_limit,
            password=payload.password,
            ip_address=_client_ip(request),
        )
    )
    return {"share": _serialize_share(link.share), "shareUrl": link.share_url}


@router.get("/api/shares")
async def list_shares(
    file_id: Optional[str] = Query(default=None, alias="fileId"),
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    shares = _unwrap(runtime.sharing_service.list_shares(principal, file_id=file_id))
    return {"shares": [_serialize_share(share) for share in shares]}


@router.get("/api/shares/verify")
async def verify_share(token: str = "", runtime: TenantDriveRuntime = Depends(get_runtime)):
    session = _unwrap(runtime.sharing_service.verify(token))
    response = RedirectResponse(url=f"/file/share/{session.share_id}", status_code=307)
    response.set_cookie(
        key=f"{SHARE_COOKIE_PREFIX}{session.share_id}",
        value=session.token,
        max_age=session.max_age,
        httponly=True,
        samesite="lax",
        secure=runtime.config.storage.public_endpoint.startswith("https://"),
    )
    return response


@router.get("/api/shares/{share_id}")
async def get_share(share_id: str, runtime: TenantDriveRuntime = Depends(get_runtime)):
    metadata = _unwrap(runtime.sharing_service.get_public_metadata(share_id))
    return {
        "id": metadata.share_id,
        "fileName": metadata.file_name,
        "fileSize": metadata.size,
        "mimeType": metadata.mime_type,
        "requiresPassword": metadata.requires_password,
        "expiresAt": metadata.expires_at.isoformat(),
        "toEmail": metadata.masked_email,
    }


@router.post("/api/shares/{share_id}/auth")
async def authenticate_share(
    share_id: str,
    payload: ShareAuthRequest,
    runtime: TenantDriveRuntime = Depends(get_runtime),
):
    _unwrap(runtime.sharing_service.authenticate(share_id, email=payload.email, password=payload.password))
    return {"message": "Magic link sent to your email"}


@router.get("/api/shares/{share_id}/download")
async def download_share(
    share_id: str,
    request: Request,
    runtime: TenantDriveRuntime = Depends(get_runtime),
):
    session = request.cookies.get(f"{SHARE_COOKIE_PREFIX}{share_id}")
    download = _unwrap(runtime.sharing_service.download(share_id, session, ip_address=_client_ip(request)))
    return RedirectResponse(url=download.url, status_code=307)


@router.delete("/api/shares/{share_id}")
async def revoke_share(
    share_id: str,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    share = _unwrap(runtime.sharing_service.revoke(share_id, principal))
    return {"share": _serialize_share(share)}


# Directory -----------------------------------------------------------------------


@router.post("/api/tenant/teams", status_code=201)
async def create_team(
    payload: TeamCreateRequest,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    team = _unwrap(
        runtime.directory_service.create_team(
            principal,
            name=payload.name,
            allowed_ips=payload.allowed_ips,
            tenant_id=payload.tenant_id,
        )
    )
    return _serialize_team(team)


@router.post("/api/tenant/teams/{team_id}/members", status_code=201)
async def add_team_member(
    team_id: str,
    payload: MemberAddRequest,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    membership = _unwrap(runtime.directory_service.add_member(principal, team_id, payload.user_id))
    return {"teamId": membership.team_id, "userId": membership.user_id, "active": membership.active}


@router.delete("/api/tenant/teams/{team_id}/members/{user_id}")
async def remove_team_member(
    team_id: str,
    user_id: str,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    _unwrap(runtime.directory_service.remove_member(principal, team_id, user_id))
    return {"status": "removed"}


@router.put("/api/tenant/users/{user_id}/role")
async def update_role(
    user_id: str,
    payload: RoleUpdateRequest,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    user = _unwrap(runtime.directory_service.set_role(principal, user_id, payload.role))
    return {"id": user.user_id, "email": user.email, "tenantId": user.tenant_id, "role": user.role.value}


@router.post("/api/policies", status_code=201)
async def create_policy(
    payload: PolicyCreateRequest,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    record = _unwrap(
        runtime.directory_service.grant_policy(
            principal,
            owner_type=payload.owner_type,
            owner_id=payload.owner_id,
            resource_type=payload.resource_type,
            resource_id=payload.resource_id,
            actions=payload.actions,
        )
    )
    return _serialize_policy(record)


@router.delete("/api/policies/{policy_id}")
async def delete_policy(
    policy_id: str,
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    _unwrap(runtime.directory_service.revoke_policy(principal, policy_id))
    return {"status": "deleted"}


@router.get("/api/audit")
async def list_audit(
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: TenantDriveRuntime = Depends(get_runtime),
    principal: Principal = Depends(get_principal),
):
    events = _unwrap(runtime.directory_service.list_audit(principal, limit=limit))
    return {
        "events": [
            {
                "userId": event.user_id,
                "action": event.action,
                "resource": event.resource,
                "resourceId": event.resource_id,
                "status": event.status,
                "details": event.details,
                "ipAddress": event.ip_address,
                "timestamp": event.timestamp.isoformat(),
            }
            for event in events
        ]
    }


# Object data plane ---------------------------------------------------------------


@router.put("/objects/{bucket}/{key:path}")
async def put_object(bucket: str, key: str, request: Request, runtime: TenantDriveRuntime = Depends(get_runtime)):
    params = dict(request.query_params)
    if not runtime.object_store.verify_signature("PUT", bucket, key, params):
        raise AuthorizationError("Signature mismatch or URL expired")
    body = await request.body()
    try:
        if params.get("uploadId"):
            etag = runtime.object_store.upload_part(bucket, key, params["uploadId"], int(params.get("partNumber", "0")), body)
        else:
            etag = runtime.object_store.put_object(bucket, key, body, request.headers.get("content-type"))
    except NoSuchUpload as exc:
        raise NotFoundError("Upload not found") from exc
    except InvalidPart as exc:
        raise ValidationError(str(exc)) from exc
    return Response(status_code=200, headers={"ETag": f'"{etag}"'})


@router.get("/objects/{bucket}/{key:path}")
async def get_object(bucket: str, key: str, request: Request, runtime: TenantDriveRuntime = Depends(get_runtime)):
    params = dict(request.query_params)
    if not runtime.object_store.verify_signature("GET", bucket, key, params):
        raise AuthorizationError("Signature mismatch or URL expired")
    try:
        data, summary = runtime.object_store.get_object(bucket, key)
    except NoSuchKey as exc:
        raise NotFoundError("Object not found") from exc
    headers = {"ETag": f'"{summary.etag}"'}
    if params.get("filename"):
        headers["Content-Disposition"] = f'attachment; filename="{params["filename"]}"'
    return Response(content=data, media_type=summary.content_type, headers=headers)


@router.get("/healthz")
async def healthz():
    return {"status": "ok"}


# Serialization -------------------------------------------------------------------


def _serialize_file(entry: FileObject) -> dict:
    return {
        "id": entry.id,
        "tenantId": entry.tenant_id,
        "bucketId": entry.bucket_id,
        "key": entry.key,
        "name": entry.name,
        "size": entry.size,
        "mimeType": entry.mime_type,
        "parentId": entry.parent_id,
        "isFolder": entry.is_folder,
        "createdBy": entry.created_by,
        "updatedBy": entry.updated_by,
        "createdAt": entry.created_at.isoformat(),
        "updatedAt": entry.updated_at.isoformat(),
    }


def _serialize_share(share: Share) -> dict:
    return {
        "id": share.share_id,
        "fileId": share.file_id,
        "tenantId": share.tenant_id,
        "bucketId": share.bucket_id,
        "toEmail": share.to_email,
        "expiry": share.expiry.isoformat(),
        "downloadLimit": share.download_limit,
        "downloads": share.downloads,
        "passwordProtected": share.password_protected,
        "status": share.status.value,
        "createdBy": share.created_by,
        "createdAt": share.created_at.isoformat(),
    }


def _serialize_bucket(bucket: Bucket) -> dict:
    return {
        "id": bucket.bucket_id,
        "tenantId": bucket.tenant_id,
        "name": bucket.name,
        "region": bucket.region,
        "createdBy": bucket.created_by,
        "createdAt": bucket.created_at.isoformat(),
    }


def _serialize_team(team: TeamRecord) -> dict:
    return {"id": team.team_id, "tenantId": team.tenant_id, "name": team.name, "allowedIps": list(team.allowed_ips)}


def _serialize_policy(record: PolicyRecord) -> dict:
    return {
        "id": record.policy_id,
        "ownerType": record.owner_type,
        "ownerId": record.owner_id,
        "resourceType": record.resource_type,
        "resourceId": record.resource_id,
        "actions": [action.value for action in record.actions],
    }


# Application factory -------------------------------------------------------------


async def _handle_domain_error(request: Request, exc: TenantDriveError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.kind.value})


def create_app(runtime: Optional[TenantDriveRuntime] = None) -> FastAPI:
    app = FastAPI(title="Tenant Drive API", version="0.1.0")
    app.state.runtime = runtime or TenantDriveRuntime.bootstrap()
    cors_origins = [
        origin.strip() for origin in os.environ.get("TENANT_DRIVE_CORS_ORIGINS", "*").split(",") if origin.strip()
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TenantDriveError, _handle_domain_error)
    app.include_router(router)
    return app
