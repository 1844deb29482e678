import asyncio
import time
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from app.errors import (
    NotFoundError,
    StorageError,
    StorageReadError,
    StorageTimeoutError,
    StorageWriteError,
)
from app.services.storage import BlobStore, build_key, is_transient, sanitize_header_value


def client_error(code: str, status: int, operation: str = "PutObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


def mock_store(**overrides) -> BlobStore:
    return BlobStore(client=MagicMock(), bucket="test-bucket", write_base_delay=0, read_base_delay=0, **overrides)


def test_build_key_starts_with_owner():
    key = build_key("u1", "uploads", "Foto.PNG")
    assert key.startswith("u1/uploads/")
    assert key.endswith(".png")


def test_build_key_without_extension():
    assert build_key("u1", "uploads", "README").endswith(".bin")


def test_sanitize_header_value():
    assert sanitize_header_value('mi "foto"\r\n.png') == "mi foto.png"
    assert sanitize_header_value("canción.mp3") == "cancin.mp3"


def test_transient_errors():
    assert is_transient(client_error("SlowDown", 503))
    assert is_transient(client_error("Whatever", 100))
    assert is_transient(asyncio.TimeoutError())
    assert not is_transient(client_error("AccessDenied", 403))


@pytest.mark.asyncio
async def test_put_and_get_roundtrip(store):
    stored = await store.put(b"hello world", "u1/uploads/a.txt", "text/plain", metadata={"owner-id": "u1"})
    assert stored.key == "u1/uploads/a.txt"
    assert stored.size == 11
    assert stored.owner_id == "u1"
    assert await store.get("u1/uploads/a.txt") == b"hello world"


@pytest.mark.asyncio
async def test_put_retries_when_etag_missing():
    store = mock_store()
    store.client.put_object.side_effect = [
        {"ResponseMetadata": {"HTTPStatusCode": 200}},
        {"ResponseMetadata": {"HTTPStatusCode": 200}, "ETag": '"abc"'},
    ]
    stored = await store.put(b"data", "u1/uploads/x.bin")
    assert stored.size == 4
    assert store.client.put_object.call_count == 2


@pytest.mark.asyncio
async def test_put_gives_up_after_three_attempts():
    store = mock_store()
    store.client.put_object.side_effect = client_error("SlowDown", 503)
    with pytest.raises(StorageWriteError):
        await store.put(b"data", "u1/uploads/x.bin")
    assert store.client.put_object.call_count == 3


@pytest.mark.asyncio
async def test_put_does_not_retry_access_denied():
    store = mock_store()
    store.client.put_object.side_effect = client_error("AccessDenied", 403)
    with pytest.raises(StorageWriteError):
        await store.put(b"data", "u1/uploads/x.bin")
    assert store.client.put_object.call_count == 1


@pytest.mark.asyncio
async def test_get_retries_not_found_then_fails():
    store = mock_store()
    store.client.get_object.side_effect = client_error("NoSuchKey", 404, "GetObject")
    with pytest.raises(StorageReadError):
        await store.get("u1/uploads/missing.png")
    assert store.client.get_object.call_count == 5


@pytest.mark.asyncio
async def test_get_recovers_after_eventual_consistency():
    body = MagicMock()
    body.read.return_value = b"late"
    store = mock_store()
    store.client.get_object.side_effect = [client_error("NoSuchKey", 404, "GetObject"), {"Body": body}]
    assert await store.get("u1/uploads/late.png") == b"late"


@pytest.mark.asyncio
async def test_get_timeout_raises_timeout_error():
    store = mock_store(read_attempts=2, read_timeout=0.05)
    store.client.get_object.side_effect = lambda **kwargs: time.sleep(0.3)
    with pytest.raises(StorageTimeoutError):
        await store.get("u1/uploads/slow.png")


@pytest.mark.asyncio
async def test_head_missing_raises_not_found(store):
    with pytest.raises(NotFoundError):
        await store.head("u1/uploads/nope.png")


@pytest.mark.asyncio
async def test_exists(store):
    await store.put(b"x", "u1/uploads/here.png")
    assert await store.exists("u1/uploads/here.png") is True
    assert await store.exists("u1/uploads/missing.png") is False


@pytest.mark.asyncio
async def test_exists_falls_back_to_ranged_get_on_400():
    store = mock_store()
    store.client.head_object.side_effect = client_error("BadRequest", 400, "HeadObject")
    store.client.get_object.return_value = {"Body": MagicMock()}
    assert await store.exists("u1/uploads/odd.png") is True
    store.client.get_object.assert_called_once_with(
        Bucket="test-bucket", Key="u1/uploads/odd.png", Range="bytes=0-0"
    )


@pytest.mark.asyncio
async def test_exists_forbidden_is_false():
    store = mock_store()
    store.client.head_object.side_effect = client_error("AccessDenied", 403, "HeadObject")
    assert await store.exists("u1/uploads/secret.png") is False
    assert store.client.head_object.call_count == 1


@pytest.mark.asyncio
async def test_delete_batch_empty_is_noop():
    store = mock_store()
    await store.delete_batch([])
    store.client.delete_objects.assert_not_called()


@pytest.mark.asyncio
async def test_delete_batch_reports_failed_keys():
    store = mock_store()
    store.client.delete_objects.return_value = {"Errors": [{"Key": "u1/a", "Code": "AccessDenied"}]}
    with pytest.raises(StorageError) as excinfo:
        await store.delete_batch(["u1/a", "u1/b"])
    assert excinfo.value.extra["failedKeys"] == ["u1/a"]


@pytest.mark.asyncio
async def test_delete_batch_removes_objects(store):
    await store.put(b"1", "u1/converted/a.png")
    await store.put(b"2", "u1/converted/b.png")
    await store.delete_batch(["u1/converted/a.png", "u1/converted/b.png"])
    assert await store.exists("u1/converted/a.png") is False
    assert await store.exists("u1/converted/b.png") is False


@pytest.mark.asyncio
async def test_schedule_delete_failure_is_only_logged(caplog):
    store = mock_store()
    store.client.delete_objects.side_effect = client_error("InternalError", 500, "DeleteObjects")
    store.schedule_delete(["u1/a"], delay=0)
    await store.tasks.join()
    assert "Failed to cleanup files" in caplog.text


def test_signed_url(store):
    signed = store.signed_url("u1/converted/foto.webp", ttl=300)
    assert signed.expires_in == 300
    assert "u1/converted/foto.webp" in signed.url
    assert "response-content-disposition" in signed.url
