"""FastAPI integration tests covering transfers and the external share lifecycle."""

from __future__ import annotations

import re

import pytest
import requests
from fastapi.testclient import TestClient

from tenant_drive.api import create_app
from tenant_drive.clients.launchers import run_cli
from tenant_drive.clients.transfer_client import TransferAPIClient
from tenant_drive.clients.transfer_queue import TransferQueue
from tenant_drive.config import TransferConfig
from tenant_drive.models import TransferDestination, TransferStatus


class _AdaptedResponse:
    """Gives an httpx response the ``requests`` error contract."""

    def __init__(self, response):
        self._response = response
        self.status_code = response.status_code
        self.headers = response.headers
        self.content = response.content

    def json(self):
        return self._response.json()

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class _TestClientHTTP:
    def __init__(self, client: TestClient):
        self.client = client

    def get(self, url, timeout=None, **kwargs):
        return _AdaptedResponse(self.client.get(url, **kwargs))

    def post(self, url, timeout=None, **kwargs):
        return _AdaptedResponse(self.client.post(url, **kwargs))

    def put(self, url, timeout=None, data=None, **kwargs):
        return _AdaptedResponse(self.client.put(url, content=data, **kwargs))


@pytest.fixture
def api(tenant):
    with TestClient(create_app(tenant.runtime)) as client:
        yield client


@pytest.fixture
def admin_token(tenant):
    return tenant.runtime.identity_service.issue_token("admin-1", "admin@t1.example", "t1")


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _upload(api, token, bucket_id, name, data):
    presigned = api.get(
        "/api/files/presigned",
        params={"bucketId": bucket_id, "action": "upload", "name": name},
        headers=_auth(token),
    )
    presigned.raise_for_status()
    put_resp = api.put(presigned.json()["url"], content=data)
    put_resp.raise_for_status()
    registered = api.post(
        "/api/files",
        json={"bucketId": bucket_id, "name": name, "size": len(data), "key": presigned.json()["key"]},
        headers=_auth(token),
    )
    assert registered.status_code == 201
    return registered.json()


def test_requests_without_bearer_token_are_rejected(api, tenant):
    response = api.get("/api/files/presigned", params={"bucketId": tenant.bucket.bucket_id})
    assert response.status_code == 401
    assert response.json()["code"] == "AUTHENTICATION"


def test_object_routes_reject_bad_signatures(api, tenant, admin_token):
    presigned = api.get(
        "/api/files/presigned",
        params={"bucketId": tenant.bucket.bucket_id, "action": "upload", "name": "a.txt"},
        headers=_auth(admin_token),
    ).json()
    tampered = presigned["url"].replace("X-Method=PUT", "X-Method=GET")
    assert api.put(tampered, content=b"x").status_code == 403
    assert api.get(presigned["url"]).status_code == 403


def test_external_share_lifecycle(api, tenant, admin_token):
    runtime = tenant.runtime
    entry = _upload(api, admin_token, tenant.bucket.bucket_id, "q3.pdf", b"quarterly numbers")

    created = api.post(
        "/api/shares",
        json={"fileId": entry["id"], "toEmail": "Guest@Example.com", "expiryDays": 2, "downloadLimit": 1},
        headers=_auth(admin_token),
    )
    assert created.status_code == 201
    share_id = created.json()["share"]["id"]
    assert created.json()["shareUrl"].endswith(f"/file/share/{share_id}")

    public = api.get(f"/api/shares/{share_id}").json()
    assert public["fileName"] == "q3.pdf"
    assert public["toEmail"] == "gu***@example.com"
    assert public["requiresPassword"] is False

    wrong = api.post(f"/api/shares/{share_id}/auth", json={"email": "intruder@example.com"})
    assert wrong.status_code == 403 and wrong.json()["code"] == "AUTHORIZATION"
    assert api.post(f"/api/shares/{share_id}/auth", json={"email": "guest@example.com"}).status_code == 200

    body = runtime.notification_service.messages_for("guest@example.com")[-1].body
    token = re.search(r"token=(\S+)", body).group(1)
    verified = api.get("/api/shares/verify", params={"token": token}, follow_redirects=False)
    assert verified.status_code == 307
    assert verified.headers["location"] == f"/file/share/{share_id}"
    assert f"share_session_{share_id}" in verified.headers["set-cookie"]
    replay = api.get("/api/shares/verify", params={"token": token}, follow_redirects=False)
    assert replay.status_code == 401

    download = api.get(f"/api/shares/{share_id}/download", follow_redirects=False)
    assert download.status_code == 307
    blob = api.get(download.headers["location"])
    assert blob.content == b"quarterly numbers"
    assert blob.headers["content-disposition"] == 'attachment; filename="q3.pdf"'

    again = api.get(f"/api/shares/{share_id}/download", follow_redirects=False)
    assert again.status_code == 403 and again.json()["code"] == "LIMIT_REACHED"
    listed = api.get("/api/shares", headers=_auth(admin_token)).json()["shares"]
    assert [(s["id"], s["status"], s["downloads"]) for s in listed] == [(share_id, "EXPIRED", 1)]


def test_revoked_share_is_gone_for_recipient(api, tenant, admin_token):
    entry = _upload(api, admin_token, tenant.bucket.bucket_id, "memo.txt", b"memo")
    share_id = api.post(
        "/api/shares",
        json={"fileId": entry["id"], "toEmail": "guest@example.com", "expiryDays": 1},
        headers=_auth(admin_token),
    ).json()["share"]["id"]
    revoked = api.delete(f"/api/shares/{share_id}", headers=_auth(admin_token))
    assert revoked.json()["share"]["status"] == "REVOKED"
    response = api.get(f"/api/shares/{share_id}")
    assert response.status_code == 403 and response.json()["code"] == "REVOKED"
    assert api.get(f"/api/shares/{share_id}/download").status_code == 401


def test_share_creation_validation(api, tenant, admin_token):
    missing = api.post("/api/shares", json={"toEmail": "guest@example.com"}, headers=_auth(admin_token))
    assert missing.status_code == 400 and missing.json()["code"] == "VALIDATION"


def test_transfer_queue_runs_against_api(api, tenant, admin_token, tmp_path):
    http = _TestClientHTTP(api)
    client = TransferAPIClient(base_url="http://testserver", token=admin_token, http_client=http)
    queue = TransferQueue(client, TransferConfig(part_size=4, multipart_threshold=10, concurrency=2))
    destination = TransferDestination(bucket_id=tenant.bucket.bucket_id)

    small = queue.enqueue(b"tiny", destination, name="tiny.txt")
    large_payload = b"0123456789abcdefghij!"
    large = queue.enqueue(large_payload, destination, name="large.bin")
    queue.run_pending()
    assert queue.get(small).status == TransferStatus.COMPLETE
    large_job = queue.get(large)
    assert large_job.status == TransferStatus.COMPLETE, large_job.error
    assert [part.part_number for part in large_job.parts] == [1, 2, 3, 4, 5, 6]

    data, summary = tenant.runtime.object_store.get_object("t1-docs", "large.bin")
    assert data == large_payload
    assert summary.etag.endswith("-6")
    metadata = tenant.runtime.metadata_service
    assert metadata.find_file_by_key(tenant.bucket.bucket_id, "tiny.txt").size == 4
    assert metadata.find_file_by_key(tenant.bucket.bucket_id, "large.bin").size == len(large_payload)

    target = tmp_path / "out" / "large.bin"
    download = queue.enqueue_download(tenant.bucket.bucket_id, "large.bin", target)
    queue.run_pending()
    assert queue.get(download).status == TransferStatus.COMPLETE
    assert target.read_bytes() == large_payload


def test_transfer_queue_reports_denied_upload(api, tenant):
    mate_token = tenant.runtime.identity_service.issue_token("mate-1", "mate@t1.example", "t1")
    http = _TestClientHTTP(api)
    client = TransferAPIClient(base_url="http://testserver", token=mate_token, http_client=http)
    queue = TransferQueue(client, TransferConfig(part_size=4, multipart_threshold=10))
    job_id = queue.enqueue(b"0123456789abcdef", TransferDestination(bucket_id=tenant.bucket.bucket_id), name="x.bin")
    queue.run_pending()
    job = queue.get(job_id)
    assert job.status == TransferStatus.ERROR
    assert job.error.startswith("HTTP 403")


def test_cli_upload_and_download(api, tenant, admin_token, tmp_path):
    source = tmp_path / "notes.txt"
    source.write_bytes(b"meeting notes")
    http = _TestClientHTTP(api)
    common = ["--base-url", "http://testserver", "--token", admin_token, "--bucket", tenant.bucket.bucket_id]
    assert run_cli(["upload", *common, str(source)], http_client=http) == 0
    target = tmp_path / "copy.txt"
    assert run_cli(["download", *common, "--key", "notes.txt", "--output", str(target)], http_client=http) == 0
    assert target.read_bytes() == b"meeting notes"
    assert run_cli(["download", *common, "--key", "missing.txt", "--output", str(target)], http_client=http) == 1
