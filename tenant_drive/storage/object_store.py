"""Object store contract and a disk-backed S3-style implementation for local deployments."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote, urlencode

from ..errors import ObjectStoreError
from ..models import TransferPart

logger = logging.getLogger(__name__)


class NoSuchKey(ObjectStoreError):
    pass


class NoSuchUpload(ObjectStoreError):
    pass


class InvalidPart(ObjectStoreError):
    pass


@dataclass(frozen=True)
class ObjectSummary:
    key: str
    size: int
    etag: str
    content_type: str
    last_modified: float


@dataclass
class ObjectListing:
    objects: List[ObjectSummary] = field(default_factory=list)
    next_continuation_token: Optional[str] = None

    @property
    def is_truncated(self) -> bool:
        return self.next_continuation_token is not None


class ObjectStore(Protocol):
    def create_multipart_upload(self, bucket: str, key: str, content_type: Optional[str] = None) -> str:
        ...

    def upload_part(self, bucket: str, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        ...

    def complete_multipart_upload(self, bucket: str, key: str, upload_id: str, parts: Sequence[TransferPart]) -> str:
        ...

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        ...

    def put_object(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        ...

    def get_object(self, bucket: str, key: str) -> Tuple[bytes, ObjectSummary]:
        ...

    def delete_object(self, bucket: str, key: str) -> None:
        ...

    def list_objects(
        self,
        bucket: str,
        *,
        prefix: str = "",
        continuation_token: Optional[str] = None,
        max_keys: int = 1000,
    ) -> ObjectListing:
        ...

    def presign(
        self,
        method: str,
        bucket: str,
        key: str,
        *,
        expires_in: int,
        upload_id: Optional[str] = None,
        part_number: Optional[int] = None,
        filename: Optional[str] = None,
    ) -> str:
        ...

    def verify_signature(self, method: str, bucket: str, key: str, params: Mapping[str, str]) -> bool:
        ...


class LocalObjectStore:
    """Disk-backed blob store speaking a subset of the S3 object and multipart API.

    Signed URLs point at ``{public_endpoint}/objects/{bucket}/{key}`` and carry
    an HMAC-SHA256 signature over the method, object, expiry and multipart
    coordinates.
    """

    def __init__(self, base_path: str, *, signing_secret: str, public_endpoint: str):
        self.base_path = Path(base_path).expanduser().resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.signing_secret = signing_secret
        self.public_endpoint = public_endpoint.rstrip("/")
        self._blob_dir = self.base_path / "blobs"
        self._multipart_dir = self.base_path / "multipart"
        self._blob_dir.mkdir(exist_ok=True)
        self._multipart_dir.mkdir(exist_ok=True)
        self._index_path = self.base_path / "index.json"
        self._entries: Dict[str, Dict[str, object]] = {}
        self._uploads: Dict[str, Dict[str, object]] = {}
        self._lock = threading.RLock()
        self._load_index()

    # Object API ------------------------------------------------------------

    def put_object(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        etag = hashlib.md5(data).hexdigest()
        self._store_blob(bucket, key, data, etag, content_type)
        return etag

    def get_object(self, bucket: str, key: str) -> Tuple[bytes, ObjectSummary]:
        with self._lock:
            entry = self._entries.get(self._object_id(bucket, key))
        if entry is None:
            raise NoSuchKey(f"{bucket}/{key}")
        try:
            data = Path(str(entry["path"])).read_bytes()
        except OSError as exc:
            raise ObjectStoreError(f"unable to read {bucket}/{key}: {exc}") from exc
        return data, self._summary(key, entry)

    def delete_object(self, bucket: str, key: str) -> None:
        with self._lock:
            entry = self._entries.pop(self._object_id(bucket, key), None)
            if entry is None:
                return
            self._persist_index()
        Path(str(entry["path"])).unlink(missing_ok=True)

    def list_objects(
        self,
        bucket: str,
        *,
        prefix: str = "",
        continuation_token: Optional[str] = None,
        max_keys: int = 1000,
    ) -> ObjectListing:
        start_after = _decode_continuation(continuation_token) if continuation_token else None
        bucket_prefix = f"{bucket}/"
        with self._lock:
            candidates = sorted(
                (object_id[len(bucket_prefix):], entry)
                for object_id, entry in self._entries.items()
                if object_id.startswith(bucket_prefix)
            )
        matching = [
            (key, entry)
            for key, entry in candidates
            if key.startswith(prefix) and (start_after is None or key > start_after)
        ]
        page = matching[: max(1, max_keys)]
        next_token = _encode_continuation(page[-1][0]) if len(matching) > len(page) else None
        return ObjectListing(objects=[self._summary(key, entry) for key, entry in page], next_continuation_token=next_token)

    # Multipart API ---------------------------------------------------------

    def create_multipart_upload(self, bucket: str, key: str, content_type: Optional[str] = None) -> str:
        upload_id = uuid.uuid4().hex
        (self._multipart_dir / upload_id).mkdir(parents=True, exist_ok=False)
        with self._lock:
            self._uploads[upload_id] = {
                "bucket": bucket,
                "key": key,
                "content_type": content_type or "application/octet-stream",
                "parts": {},
            }
        return upload_id

    def upload_part(self, bucket: str, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        if part_number < 1 or part_number > 10_000:
            raise InvalidPart(f"part number {part_number} out of range")
        upload = self._require_upload(bucket, key, upload_id)
        etag = hashlib.md5(data).hexdigest()
        part_path = self._multipart_dir / upload_id / f"part-{part_number:05d}"
        part_path.write_bytes(data)
        with self._lock:
            upload["parts"][part_number] = etag  # type: ignore[index]
        return etag

    def complete_multipart_upload(self, bucket: str, key: str, upload_id: str, parts: Sequence[TransferPart]) -> str:
        upload = self._require_upload(bucket, key, upload_id)
        if not parts:
            raise InvalidPart("at least one part is required")
        numbers = [part.part_number for part in parts]
        if numbers != sorted(set(numbers)):
            raise InvalidPart("parts must be listed in ascending order without duplicates")
        stored: Dict[int, str] = dict(upload["parts"])  # type: ignore[arg-type]
        digests = []
        chunks = []
        for part in parts:
            if stored.get(part.part_number) != part.etag.strip('"'):
                raise InvalidPart(f"part {part.part_number} is missing or its ETag does not match")
            part_path = self._multipart_dir / upload_id / f"part-{part.part_number:05d}"
            chunk = part_path.read_bytes()
            chunks.append(chunk)
            digests.append(hashlib.md5(chunk).digest())
        etag = f"{hashlib.md5(b''.join(digests)).hexdigest()}-{len(parts)}"
        self._store_blob(bucket, key, b"".join(chunks), etag, str(upload["content_type"]))
        self._discard_upload(upload_id)
        return etag

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        self._require_upload(bucket, key, upload_id)
        self._discard_upload(upload_id)

    def active_uploads(self) -> List[str]:
        with self._lock:
            return list(self._uploads.keys())

    # Signed URLs -----------------------------------------------------------

    def presign(
        self,
        method: str,
        bucket: str,
        key: str,
        *,
        expires_in: int,
        upload_id: Optional[str] = None,
        part_number: Optional[int] = None,
        filename: Optional[str] = None,
    ) -> str:
        expires = str(int(time.time()) + int(expires_in))
        params: Dict[str, str] = {"X-Method": method.upper(), "X-Expires": expires}
        if upload_id:
            params["uploadId"] = upload_id
        if part_number is not None:
            params["partNumber"] = str(part_number)
        if filename:
            params["filename"] = filename
        params["X-Signature"] = self._sign(bucket, key, params)
        return f"{self.public_endpoint}/objects/{quote(bucket)}/{quote(key)}?{urlencode(params)}"

    def verify_signature(self, method: str, bucket: str, key: str, params: Mapping[str, str]) -> bool:
        signature = params.get("X-Signature")
        if not signature or params.get("X-Method", "").upper() != method.upper():
            return False
        try:
            if int(params.get("X-Expires", "0")) < time.time():
                return False
        except ValueError:
            return False
        return hmac.compare_digest(signature, self._sign(bucket, key, params))

    # Internal helpers ------------------------------------------------------

    def _sign(self, bucket: str, key: str, params: Mapping[str, str]) -> str:
        canonical = "\n".join(
            [
                params.get("X-Method", ""),
                bucket,
                key,
                params.get("X-Expires", ""),
                params.get("uploadId", ""),
                params.get("partNumber", ""),
                params.get("filename", ""),
            ]
        )
        return hmac.new(self.signing_secret.encode(), canonical.encode(), hashlib.sha256).hexdigest()

    def _require_upload(self, bucket: str, key: str, upload_id: str) -> Dict[str, object]:
        with self._lock:
            upload = self._uploads.get(upload_id)
        if upload is None or upload["bucket"] != bucket or upload["key"] != key:
            raise NoSuchUpload(upload_id)
        return upload

    def _discard_upload(self, upload_id: str) -> None:
        with self._lock:
            self._uploads.pop(upload_id, None)
        shutil.rmtree(self._multipart_dir / upload_id, ignore_errors=True)

    def _store_blob(self, bucket: str, key: str, data: bytes, etag: str, content_type: Optional[str]) -> None:
        target_path = self._blob_dir / uuid.uuid4().hex
        try:
            target_path.write_bytes(data)
        except OSError as exc:
            raise ObjectStoreError(f"unable to write {bucket}/{key}: {exc}") from exc
        with self._lock:
            previous = self._entries.get(self._object_id(bucket, key))
            self._entries[self._object_id(bucket, key)] = {
                "path": str(target_path),
                "size": len(data),
                "etag": etag,
                "content_type": content_type or "application/octet-stream",
                "last_modified": time.time(),
            }
            self._persist_index()
        if previous:
            Path(str(previous["path"])).unlink(missing_ok=True)

    def _load_index(self) -> None:
        if not self._index_path.exists():
            return
        try:
            data = json.loads(self._index_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable object index %s: %s", self._index_path, exc)
            data = {}
        if isinstance(data, dict):
            self._entries = data

    def _persist_index(self) -> None:
        temp_path = self._index_path.with_suffix(".tmp")
        try:
            temp_path.write_text(json.dumps(self._entries, indent=2), encoding="utf-8")
            temp_path.replace(self._index_path)
        except OSError as exc:
            raise ObjectStoreError(f"unable to persist object index: {exc}") from exc

    @staticmethod
    def _object_id(bucket: str, key: str) -> str:
        return f"{bucket}/{key}"

    @staticmethod
    def _summary(key: str, entry: Mapping[str, object]) -> ObjectSummary:
        return ObjectSummary(
            key=key,
            size=int(entry.get("size", 0)),  # type: ignore[arg-type]
            etag=str(entry.get("etag", "")),
            content_type=str(entry.get("content_type", "application/octet-stream")),
            last_modified=float(entry.get("last_modified", 0.0)),  # type: ignore[arg-type]
        )


def _encode_continuation(key: str) -> str:
    return base64.urlsafe_b64encode(key.encode()).decode()


def _decode_continuation(token: str) -> str:
    try:
        return base64.urlsafe_b64decode(token.encode()).decode()
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidPart("invalid continuation token") from exc
