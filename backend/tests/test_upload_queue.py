import asyncio
import os

import pytest

from app.errors import StorageWriteError, UploadFailedError
from app.services.storage import StoredFile
from app.services.tasks import BackgroundTaskSet
from app.services.upload_queue import UploadQueue, UploadState, new_upload_id


class FakeStore:
    """Store en memoria que cuenta los put() y puede bloquearlos o fallar."""

    def __init__(self, fail: bool = False, gate: asyncio.Event | None = None):
        self.fail = fail
        self.gate = gate
        self.puts: list[str] = []
        self.deleted: list[str] = []

    async def put(self, data, key, content_type="application/octet-stream", metadata=None):
        self.puts.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise StorageWriteError("Upload failed: boom")
        return StoredFile(key=key, size=len(data), content_type=content_type)

    def schedule_delete(self, keys, delay=0):
        self.deleted.extend(keys)


def make_queue(tmp_path, store=None, **kwargs) -> UploadQueue:
    return UploadQueue(store or FakeStore(), scratch_dir=str(tmp_path / "uploads"), tasks=BackgroundTaskSet(), **kwargs)


def test_upload_id_format():
    millis, _, suffix = new_upload_id().partition("-")
    assert millis.isdigit()
    assert len(suffix) == 8


@pytest.mark.asyncio
async def test_enqueue_completes_and_removes_local_file(tmp_path):
    queue = make_queue(tmp_path)
    item = await queue.enqueue(b"video bytes", "mi video.mp4", "u1", "video/mp4")
    assert item.state is UploadState.PENDING
    assert os.path.exists(item.local_path)

    await queue.tasks.join()

    assert item.state is UploadState.COMPLETED
    assert item.result.key.startswith("u1/uploads/")
    assert item.file_name == "mi_video.mp4"
    assert not os.path.exists(item.local_path)


@pytest.mark.asyncio
async def test_each_item_is_uploaded_once(tmp_path):
    store = FakeStore()
    queue = make_queue(tmp_path, store)
    first = await queue.enqueue(b"a", "a.mp4", "u1", "video/mp4")
    second = await queue.enqueue(b"b", "b.mp4", "u1", "video/mp4")

    claimed = await asyncio.gather(queue.drain(), queue.drain(), queue.drain())
    await queue.tasks.join()

    assert sum(claimed) <= 2
    assert len(store.puts) == 2
    assert first.state is second.state is UploadState.COMPLETED


@pytest.mark.asyncio
async def test_drain_follows_creation_order(tmp_path):
    ticks = iter(range(100))
    queue = make_queue(tmp_path, clock=lambda: next(ticks))
    order = []

    async def record(item):
        order.append(item.file_name)

    queue._process = record
    for name in ("first.mp4", "second.mp4", "third.mp4"):
        await queue.enqueue(b"x", name, "u1", "video/mp4")
    await queue.tasks.join()

    assert order == ["first.mp4", "second.mp4", "third.mp4"]


@pytest.mark.asyncio
async def test_storage_failure_marks_failed(tmp_path):
    queue = make_queue(tmp_path, FakeStore(fail=True))
    item = await queue.enqueue(b"x", "clip.mov", "u1", "video/quicktime")
    await queue.tasks.join()

    assert item.state is UploadState.FAILED
    assert "boom" in item.error
    assert not os.path.exists(item.local_path)


@pytest.mark.asyncio
async def test_abort_pending_never_uploads(tmp_path):
    store = FakeStore()
    queue = make_queue(tmp_path, store)
    item = await queue.enqueue(b"x", "clip.mov", "u1", "video/quicktime")

    queue.abort(item.id)
    await queue.tasks.join()

    assert item.state is UploadState.ABORTED
    assert store.puts == []
    assert not os.path.exists(item.local_path)


@pytest.mark.asyncio
async def test_abort_during_put_schedules_delete(tmp_path):
    gate = asyncio.Event()
    store = FakeStore(gate=gate)
    queue = make_queue(tmp_path, store)
    item = await queue.enqueue(b"x", "clip.mov", "u1", "video/quicktime")

    while not store.puts:
        await asyncio.sleep(0)
    assert item.state is UploadState.UPLOADING

    queue.abort(item.id)
    gate.set()
    await queue.tasks.join()

    assert item.state is UploadState.ABORTED
    assert store.deleted == store.puts


@pytest.mark.asyncio
async def test_abort_completed_is_noop(tmp_path):
    queue = make_queue(tmp_path)
    item = await queue.enqueue(b"x", "clip.mov", "u1", "video/quicktime")
    await queue.tasks.join()

    assert queue.abort(item.id) is item
    assert item.state is UploadState.COMPLETED
    assert queue.abort("unknown") is None


@pytest.mark.asyncio
async def test_sweep_removes_old_finished_items(tmp_path):
    now = [1000.0]
    queue = make_queue(tmp_path, retention=60, clock=lambda: now[0])
    item = await queue.enqueue(b"x", "clip.mov", "u1", "video/quicktime")
    await queue.tasks.join()

    assert queue.sweep() == 0
    now[0] += 61
    assert queue.sweep() == 1
    assert queue.status(item.id) is None


@pytest.mark.asyncio
async def test_active_for_only_lists_unfinished(tmp_path):
    gate = asyncio.Event()
    queue = make_queue(tmp_path, FakeStore(gate=gate))
    mine = await queue.enqueue(b"x", "a.mov", "u1", "video/quicktime")
    await queue.enqueue(b"x", "b.mov", "u2", "video/quicktime")

    assert queue.active_for("u1") == [mine]
    gate.set()
    await queue.tasks.join()
    assert queue.active_for("u1") == []


@pytest.mark.asyncio
async def test_enqueue_fails_when_scratch_is_not_writable(tmp_path):
    blocker = tmp_path / "uploads"
    blocker.write_text("not a directory")
    queue = make_queue(tmp_path)

    with pytest.raises(UploadFailedError):
        await queue.enqueue(b"x", "clip.mov", "u1", "video/quicktime")
    assert len(queue) == 0
