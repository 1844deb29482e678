import asyncio
import json

import httpx
import pytest

from app.client import ConvertorAPIError, ConvertorClient, RequestAbortedError


def make_client(handler) -> ConvertorClient:
    http = httpx.AsyncClient(base_url="http://convertor.test", transport=httpx.MockTransport(handler))
    return ConvertorClient("http://convertor.test", "token-123", http=http)


@pytest.mark.asyncio
async def test_convert_sends_job_id_and_token():
    seen = {}

    async def handler(request: httpx.Request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"jobId": seen["body"]["jobId"], "downloadUrl": "https://s3/x"})

    async with make_client(handler) as client:
        result = await client.convert("webp", file_path="u1/uploads/a.png", job_id="job-1")

    assert result["jobId"] == "job-1"
    assert seen["auth"] == "Bearer token-123"
    assert seen["body"] == {"format": "webp", "quality": "medium", "jobId": "job-1", "filePath": "u1/uploads/a.png"}


@pytest.mark.asyncio
async def test_error_response_is_raised():
    async def handler(request: httpx.Request):
        return httpx.Response(429, json={"detail": "Daily conversion limit reached.", "type": "daily_limit_reached"})

    async with make_client(handler) as client:
        with pytest.raises(ConvertorAPIError) as excinfo:
            await client.check_batch_limit(3)

    assert excinfo.value.status_code == 429
    assert excinfo.value.body["type"] == "daily_limit_reached"


@pytest.mark.asyncio
async def test_abort_cancels_local_request_then_notifies_server():
    calls = []
    never = asyncio.Event()

    async def handler(request: httpx.Request):
        calls.append(request.url.path)
        if request.url.path == "/api/convert":
            await never.wait()
        return httpx.Response(200, json={"success": True, "aborted": 1, "message": "Conversion aborted and cleaned up"})

    async with make_client(handler) as client:
        pending = asyncio.create_task(client.convert("mp4", file_path="u1/uploads/v.mov", job_id="job-9"))
        while "job-9" not in client.inflight:
            await asyncio.sleep(0)

        response = await client.abort("job-9", file_path="u1/uploads/v.mov", job_id="job-9")

        with pytest.raises(RequestAbortedError):
            await pending

    assert response["aborted"] == 1
    assert calls[-1] == "/api/abort/conversion"
    assert client.inflight == []


@pytest.mark.asyncio
async def test_abort_by_upload_id_uses_upload_endpoint():
    bodies = []

    async def handler(request: httpx.Request):
        bodies.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"success": True, "aborted": 0, "message": "Upload already finished"})

    async with make_client(handler) as client:
        await client.abort("video.mov", upload_id="123-abcd")

    assert bodies == [("/api/abort/upload", {"uploadId": "123-abcd"})]


@pytest.mark.asyncio
async def test_abort_without_server_reference_is_local_only():
    async def handler(request: httpx.Request):
        raise AssertionError("no request expected")

    async with make_client(handler) as client:
        result = await client.abort("nothing")

    assert result["message"] == "Aborted locally"
