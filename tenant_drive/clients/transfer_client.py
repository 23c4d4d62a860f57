"""HTTP client for the presign and multipart wire contract."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests

from ..errors import TransferError
from ..models import TransferPart


@dataclass
class TransferAPIClient:
    base_url: str
    token: str
    timeout: float = 30.0
    http_client: Any = requests

    def _url(self, suffix: str) -> str:
        base = self.base_url.rstrip("/")
        return f"{base}{suffix}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    # Control plane ---------------------------------------------------------

    def presign(
        self,
        bucket_id: str,
        action: str,
        *,
        name: Optional[str] = None,
        key: Optional[str] = None,
        parent_id: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {"bucketId": bucket_id, "action": action}
        for field_name, value in (("name", name), ("key", key), ("parentId", parent_id), ("contentType", content_type)):
            if value:
                params[field_name] = value
        body = self._call("get", "/api/files/presigned", params=params)
        return _require_fields(body, "/api/files/presigned", "url", "key")

    def initiate(
        self,
        bucket_id: str,
        name: str,
        content_type: str,
        parent_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {"bucketId": bucket_id, "name": name, "type": content_type, "parentId": parent_id}
        body = self._call("post", "/api/files/multipart/initiate", json=payload)
        return _require_fields(body, "/api/files/multipart/initiate", "uploadId", "key")

    def sign_part(self, bucket_id: str, key: str, upload_id: str, part_number: int) -> str:
        payload = {"bucketId": bucket_id, "key": key, "uploadId": upload_id, "partNumber": part_number}
        body = self._call("post", "/api/files/multipart/sign-part", json=payload)
        url = body.get("url")
        if not url:
            raise TransferError(f"No signed URL returned for part {part_number}")
        return url

    def complete(
        self,
        bucket_id: str,
        key: str,
        upload_id: str,
        parts: Sequence[TransferPart],
        *,
        name: str,
        size: int,
        mime_type: str,
        parent_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "bucketId": bucket_id,
            "key": key,
            "uploadId": upload_id,
            "parts": part_payload(parts),
            "name": name,
            "size": size,
            "mimeType": mime_type,
            "parentId": parent_id,
        }
        return self._call("post", "/api/files/multipart/complete", json=payload)

    def abort(self, bucket_id: str, key: str, upload_id: str) -> None:
        payload = {"bucketId": bucket_id, "key": key, "uploadId": upload_id}
        self._call("post", "/api/files/multipart/abort", json=payload)

    def register_file(
        self,
        bucket_id: str,
        name: str,
        size: int,
        *,
        key: Optional[str] = None,
        mime_type: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "bucketId": bucket_id,
            "name": name,
            "size": size,
            "key": key,
            "mimeType": mime_type,
            "parentId": parent_id,
        }
        return self._call("post", "/api/files", json=payload)

    # Data plane ------------------------------------------------------------

    def put_bytes(self, url: str, data: bytes, content_type: Optional[str] = None) -> str:
        headers = {"Content-Type": content_type} if content_type else {}
        response = self._send("put", url, data=data, headers=headers)
        etag = (response.headers.get("ETag") or "").strip().strip('"')
        if not etag:
            raise TransferError("Object store response did not include an ETag")
        return etag

    def get_bytes(self, url: str) -> bytes:
        response = self._send("get", url)
        return response.content

    # Internal helpers ------------------------------------------------------

    def _call(self, method: str, suffix: str, **kwargs: Any) -> Dict[str, Any]:
        response = self._send(method, self._url(suffix), headers=self._headers(), **kwargs)
        try:
            body = response.json()
        except ValueError as exc:
            raise TransferError(f"Malformed response from {suffix}") from exc
        if not isinstance(body, dict):
            raise TransferError(f"Malformed response from {suffix}: expected a JSON object")
        return body

    def _send(self, method: str, url: str, **kwargs: Any):
        if self.http_client is None:
            raise TransferError("HTTP client unavailable")
        try:
            response = getattr(self.http_client, method)(url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise TransferError(_describe_failure(exc)) from exc
        except requests.RequestException as exc:
            raise TransferError(f"Request to {url.split('?', 1)[0]} failed: {exc}") from exc
        return response


def _describe_failure(exc: requests.HTTPError) -> str:
    response = exc.response
    if response is None:
        return str(exc)
    try:
        body = response.json()
    except ValueError:
        body = {}
    detail = body.get("error") if isinstance(body, dict) else None
    return f"HTTP {response.status_code}: {detail or exc}"


def _require_fields(body: Dict[str, Any], suffix: str, *names: str) -> Dict[str, Any]:
    missing = [name for name in names if not body.get(name)]
    if missing:
        raise TransferError(f"Malformed response from {suffix}: missing {', '.join(missing)}")
    return body


def part_payload(parts: Sequence[TransferPart]) -> List[Dict[str, Any]]:
    return [{"PartNumber": part.part_number, "ETag": part.etag} for part in parts]
