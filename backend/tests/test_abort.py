import pytest
import pytest_asyncio

from app.errors import UnauthorizedPathError
from app.services.abort import assert_owned, invalid_paths
from app.services.upload_queue import UploadState


@pytest_asyncio.fixture
async def pipeline_ctx(pipeline):
    yield pipeline
    await pipeline.shutdown()


def test_invalid_paths():
    paths = ["u1/converted/a.webp", "u2/converted/b.webp", "u1x/converted/c.webp", "u1/../u2/d.webp"]
    assert invalid_paths("u1", paths) == paths[1:]


def test_assert_owned_lists_offenders():
    with pytest.raises(UnauthorizedPathError) as excinfo:
        assert_owned("u1", ["u1/ok.png", "u2/nope.png"])
    assert excinfo.value.extra["invalidPaths"] == ["u2/nope.png"]


@pytest.mark.asyncio
async def test_delete_files_is_fail_closed(pipeline_ctx):
    store = pipeline_ctx.store
    await store.put(b"mine", "u1/converted/mine.webp")
    await store.put(b"theirs", "u2/converted/theirs.webp")

    with pytest.raises(UnauthorizedPathError):
        await pipeline_ctx.aborts.delete_files("u1", ["u1/converted/mine.webp", "u2/converted/theirs.webp"])

    assert await store.exists("u1/converted/mine.webp") is True
    assert await store.exists("u2/converted/theirs.webp") is True


@pytest.mark.asyncio
async def test_delete_files_reports_each_path(pipeline_ctx):
    store = pipeline_ctx.store
    await store.put(b"a", "u1/converted/a.webp")
    await store.put(b"b", "u1/converted/b.webp")

    outcomes = await pipeline_ctx.aborts.delete_files("u1", ["u1/converted/a.webp", "u1/converted/b.webp"])

    assert [outcome.success for outcome in outcomes] == [True, True]
    assert await store.exists("u1/converted/a.webp") is False


@pytest.mark.asyncio
async def test_abort_upload_is_idempotent(pipeline_ctx, png):
    aborts = pipeline_ctx.aborts
    item = await pipeline_ctx.queue.enqueue(png, "photo.png", "u1", "image/png")

    assert aborts.abort_upload("u1", item.id) is True
    assert item.state is UploadState.ABORTED
    assert aborts.abort_upload("u1", item.id) is False
    assert aborts.abort_upload("u1", "unknown-id") is False


@pytest.mark.asyncio
async def test_abort_completed_upload_changes_nothing(pipeline_ctx, png):
    item = await pipeline_ctx.queue.enqueue(png, "photo.png", "u1", "image/png")
    await pipeline_ctx.tasks.join()

    assert pipeline_ctx.aborts.abort_upload("u1", item.id) is False
    assert item.state is UploadState.COMPLETED


@pytest.mark.asyncio
async def test_abort_foreign_upload_is_rejected(pipeline_ctx, png):
    item = await pipeline_ctx.queue.enqueue(png, "photo.png", "u2", "image/png")
    with pytest.raises(UnauthorizedPathError):
        pipeline_ctx.aborts.abort_upload("u1", item.id)
    assert item.state is UploadState.PENDING


@pytest.mark.asyncio
async def test_abort_all_counts_only_own_items(pipeline_ctx, png):
    queue = pipeline_ctx.queue

    async def no_drain():
        return 0

    queue.drain = no_drain
    await queue.enqueue(png, "a.png", "u1", "image/png")
    await queue.enqueue(png, "b.png", "u1", "image/png")
    other = await queue.enqueue(png, "c.png", "u2", "image/png")

    assert pipeline_ctx.aborts.abort_all("u1") == 2
    assert queue.active_for("u1") == []
    assert other.state is not UploadState.ABORTED


@pytest.mark.asyncio
async def test_abort_conversion_deletes_source(pipeline_ctx, png):
    store = pipeline_ctx.store
    key = "u1/uploads/photo.png"
    await store.put(png, key, "image/png")

    await pipeline_ctx.aborts.abort_conversion("u1", file_path=key)

    assert await store.exists(key) is False


@pytest.mark.asyncio
async def test_abort_conversion_rejects_foreign_path(pipeline_ctx):
    with pytest.raises(UnauthorizedPathError):
        await pipeline_ctx.aborts.abort_conversion("u1", file_path="u2/uploads/photo.png")
