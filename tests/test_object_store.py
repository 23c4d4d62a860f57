from __future__ import annotations

import hashlib
from urllib.parse import parse_qsl, urlsplit

import pytest

from tenant_drive.models import TransferPart
from tenant_drive.storage import InvalidPart, LocalObjectStore, NoSuchKey, NoSuchUpload


@pytest.fixture
def store(tmp_path):
    return LocalObjectStore(str(tmp_path / "store"), signing_secret="s3cret", public_endpoint="http://files.local/")


def _query(url):
    return dict(parse_qsl(urlsplit(url).query))


def test_put_get_delete(store):
    etag = store.put_object("docs", "a/b.txt", b"hello", "text/plain")
    assert etag == hashlib.md5(b"hello").hexdigest()
    data, summary = store.get_object("docs", "a/b.txt")
    assert data == b"hello"
    assert summary.content_type == "text/plain"
    store.delete_object("docs", "a/b.txt")
    store.delete_object("docs", "a/b.txt")
    with pytest.raises(NoSuchKey):
        store.get_object("docs", "a/b.txt")


def test_index_survives_reopen(store, tmp_path):
    store.put_object("docs", "keep.txt", b"persist")
    reopened = LocalObjectStore(str(tmp_path / "store"), signing_secret="s3cret", public_endpoint="http://files.local")
    assert reopened.get_object("docs", "keep.txt")[0] == b"persist"


def test_multipart_assembles_parts_in_order(store):
    upload_id = store.create_multipart_upload("docs", "big.bin", "application/zip")
    etag2 = store.upload_part("docs", "big.bin", upload_id, 2, b"world")
    etag1 = store.upload_part("docs", "big.bin", upload_id, 1, b"hello ")
    final = store.complete_multipart_upload(
        "docs", "big.bin", upload_id, [TransferPart(1, f'"{etag1}"'), TransferPart(2, etag2)]
    )
    assert final.endswith("-2")
    data, summary = store.get_object("docs", "big.bin")
    assert data == b"hello world"
    assert summary.content_type == "application/zip"
    assert store.active_uploads() == []


def test_complete_rejects_unordered_or_mismatched_parts(store):
    upload_id = store.create_multipart_upload("docs", "big.bin")
    etag1 = store.upload_part("docs", "big.bin", upload_id, 1, b"a")
    etag2 = store.upload_part("docs", "big.bin", upload_id, 2, b"b")
    with pytest.raises(InvalidPart):
        store.complete_multipart_upload("docs", "big.bin", upload_id, [TransferPart(2, etag2), TransferPart(1, etag1)])
    with pytest.raises(InvalidPart):
        store.complete_multipart_upload("docs", "big.bin", upload_id, [TransferPart(1, "bogus")])
    assert upload_id in store.active_uploads()


def test_abort_discards_session(store):
    upload_id = store.create_multipart_upload("docs", "big.bin")
    store.upload_part("docs", "big.bin", upload_id, 1, b"a")
    store.abort_multipart_upload("docs", "big.bin", upload_id)
    with pytest.raises(NoSuchUpload):
        store.upload_part("docs", "big.bin", upload_id, 2, b"b")
    with pytest.raises(NoSuchKey):
        store.get_object("docs", "big.bin")


def test_list_objects_paginates_with_prefix(store):
    for name in ("r/1", "r/2", "r/3", "other"):
        store.put_object("docs", name, name.encode())
    store.put_object("elsewhere", "r/9", b"x")
    first = store.list_objects("docs", prefix="r/", max_keys=2)
    assert [item.key for item in first.objects] == ["r/1", "r/2"]
    assert first.is_truncated
    second = store.list_objects("docs", prefix="r/", continuation_token=first.next_continuation_token, max_keys=2)
    assert [item.key for item in second.objects] == ["r/3"]
    assert second.next_continuation_token is None


def test_presigned_url_verifies_and_binds_coordinates(store):
    url = store.presign("PUT", "docs", "a.txt", expires_in=60, upload_id="u1", part_number=3)
    assert url.startswith("http://files.local/objects/docs/a.txt?")
    params = _query(url)
    assert store.verify_signature("PUT", "docs", "a.txt", params)
    assert not store.verify_signature("GET", "docs", "a.txt", params)
    assert not store.verify_signature("PUT", "docs", "b.txt", params)
    assert not store.verify_signature("PUT", "docs", "a.txt", dict(params, partNumber="4"))


def test_presigned_url_expires(store):
    params = _query(store.presign("GET", "docs", "a.txt", expires_in=-5))
    assert not store.verify_signature("GET", "docs", "a.txt", params)
