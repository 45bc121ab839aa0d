from __future__ import annotations

import asyncio
import io
import json
from pathlib import Path

from PIL import Image

from booru.errors import AssetUnavailableError, TransientNetworkError
from booru.models import Optimization, TagSets, WriteStatus
from booru.storage import AssetLayout, AssetWriter, MetadataSink
from conftest import StubSource, make_post


def _leftovers(root: Path) -> list[Path]:
    return [p for p in root.rglob("*.part")]


def test_layout_is_deterministic(tmp_path):
    layout = AssetLayout(tmp_path, captions=True)
    task = layout.task_for(make_post(42, provider="danbooru", file_ext="JPG"))

    assert task.asset_path == tmp_path / "danbooru" / "42.jpg"
    assert task.caption_path == tmp_path / "danbooru" / "42.txt"
    assert AssetLayout(tmp_path).task_for(make_post(1)).caption_path is None


def test_layout_webp_only_for_convertible_images(tmp_path):
    layout = AssetLayout(tmp_path, optimization=Optimization.WEBP)

    assert layout.task_for(make_post(1, file_ext="png")).asset_path.suffix == ".webp"
    assert layout.task_for(make_post(2, file_ext="mp4")).asset_path.suffix == ".mp4"


def test_write_downloads_and_promotes(tmp_path, fast_retry):
    source = StubSource(body=b"0123456789")
    writer = AssetWriter(source, fast_retry)
    task = AssetLayout(tmp_path).task_for(make_post(1))

    result = asyncio.run(writer.write(task))

    assert result.status is WriteStatus.WRITTEN
    assert task.asset_path.read_bytes() == b"0123456789"
    assert _leftovers(tmp_path) == []


def test_existing_asset_is_skipped_without_network(tmp_path, fast_retry):
    source = StubSource()
    writer = AssetWriter(source, fast_retry, overwrite=False)
    task = AssetLayout(tmp_path).task_for(make_post(1))
    task.asset_path.parent.mkdir(parents=True)
    task.asset_path.write_bytes(b"old")

    result = asyncio.run(writer.write(task))

    assert result.status is WriteStatus.SKIPPED
    assert source.calls == []
    assert task.asset_path.read_bytes() == b"old"


def test_overwrite_replaces_existing_asset(tmp_path, fast_retry):
    source = StubSource(body=b"new")
    writer = AssetWriter(source, fast_retry, overwrite=True)
    task = AssetLayout(tmp_path).task_for(make_post(1))
    task.asset_path.parent.mkdir(parents=True)
    task.asset_path.write_bytes(b"old")

    assert asyncio.run(writer.write(task)).status is WriteStatus.WRITTEN
    assert task.asset_path.read_bytes() == b"new"


def test_timeouts_are_retried_until_success(tmp_path, fast_retry):
    post = make_post(7)
    source = StubSource(failures={post.asset_url: [TimeoutError(), TimeoutError()]})
    writer = AssetWriter(source, fast_retry)
    task = AssetLayout(tmp_path).task_for(post)

    result = asyncio.run(writer.write(task))

    assert result.status is WriteStatus.WRITTEN
    assert len(source.calls) == 3
    assert task.asset_path.exists()


def test_retry_exhaustion_fails_and_cleans_up(tmp_path, fast_retry):
    post = make_post(8)
    source = StubSource(failures={post.asset_url: [TransientNetworkError("reset")] * 3})
    task = AssetLayout(tmp_path).task_for(post)

    result = asyncio.run(AssetWriter(source, fast_retry).write(task))

    assert result.status is WriteStatus.FAILED
    assert "reset" in result.reason
    assert not task.asset_path.exists()
    assert _leftovers(tmp_path) == []


def test_unavailable_asset_is_not_retried(tmp_path, fast_retry):
    post = make_post(9)
    source = StubSource(failures={post.asset_url: [AssetUnavailableError("404")]})
    task = AssetLayout(tmp_path).task_for(post)

    result = asyncio.run(AssetWriter(source, fast_retry).write(task))

    assert result.status is WriteStatus.FAILED
    assert len(source.calls) == 1


def test_disk_errors_fail_without_retry(tmp_path, fast_retry):
    blocker = tmp_path / "root"
    blocker.write_text("not a directory")
    source = StubSource()
    task = AssetLayout(blocker).task_for(make_post(1))

    result = asyncio.run(AssetWriter(source, fast_retry).write(task))

    assert result.status is WriteStatus.FAILED
    assert result.reason.startswith("cannot write")
    assert source.calls == []


def test_post_without_asset_url_is_unavailable(tmp_path, fast_retry):
    source = StubSource()
    task = AssetLayout(tmp_path).task_for(make_post(1, asset_url=None))

    result = asyncio.run(AssetWriter(source, fast_retry).write(task))

    assert result.status is WriteStatus.UNAVAILABLE
    assert source.calls == []


def test_write_concurrency_is_bounded(tmp_path, fast_retry):
    layout = AssetLayout(tmp_path)

    async def scenario():
        gate = asyncio.Event()
        source = StubSource(gate=gate)
        writer = AssetWriter(source, fast_retry, concurrency=2)
        writes = [asyncio.create_task(writer.write(layout.task_for(make_post(i)))) for i in range(6)]

        async def saturated():
            while source.in_flight < 2:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(saturated(), timeout=5)
        await asyncio.sleep(0.05)
        in_flight_while_blocked = source.in_flight
        gate.set()
        results = await asyncio.gather(*writes)
        return source, in_flight_while_blocked, results

    source, blocked, results = asyncio.run(scenario())

    assert blocked == 2
    assert source.max_in_flight == 2
    assert all(r.status is WriteStatus.WRITTEN for r in results)


def test_cancelled_write_leaves_no_partial_file(tmp_path, fast_retry):
    task = AssetLayout(tmp_path).task_for(make_post(1))

    async def scenario():
        source = StubSource(gate=asyncio.Event())
        write = asyncio.create_task(AssetWriter(source, fast_retry).write(task))
        while source.in_flight < 1:
            await asyncio.sleep(0.01)
        write.cancel()
        await asyncio.gather(write, return_exceptions=True)
        return write

    write = asyncio.run(scenario())

    assert write.cancelled()
    assert not task.asset_path.exists()
    assert _leftovers(tmp_path) == []


def test_caption_is_rendered_next_to_asset(tmp_path, fast_retry):
    post = make_post(
        3,
        tags=TagSets(general=("1girl", "cat_ears"), character=("hatsune_miku",), meta=("english_commentary",)),
    )
    task = AssetLayout(tmp_path, captions=True).task_for(post)
    writer = AssetWriter(StubSource(), fast_retry, template="{people}, {character}, {general}, {meta}")

    assert asyncio.run(writer.write(task)).status is WriteStatus.WRITTEN
    assert task.caption_path.read_text(encoding="utf-8") == "1girl, hatsune miku, cat ears"


def test_webp_optimization_reencodes(tmp_path, fast_retry):
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), "red").save(buf, format="PNG")
    task = AssetLayout(tmp_path, optimization=Optimization.WEBP).task_for(make_post(4))
    writer = AssetWriter(StubSource(body=buf.getvalue()), fast_retry, optimization=Optimization.WEBP)

    assert asyncio.run(writer.write(task)).status is WriteStatus.WRITTEN
    with Image.open(task.asset_path) as img:
        assert img.format == "WEBP"
        assert img.size == (8, 8)


def test_metadata_sink_promotes_on_commit_only(tmp_path):
    kept = MetadataSink(tmp_path / "danbooru-2024-01.jsonl")
    dropped = MetadataSink(tmp_path / "danbooru-2024-02.jsonl")

    async def scenario():
        for sink in (kept, dropped):
            await sink.open()
            await sink.add(make_post(1, raw={"id": 1, "tag_string": "a b"}))
            await sink.add(make_post(2, raw={"id": 2, "tag_string": "c"}))
        await kept.commit()
        await dropped.discard()

    asyncio.run(scenario())

    lines = kept.path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["id"] for line in lines] == [1, 2]
    assert not dropped.path.exists()
    assert _leftovers(tmp_path) == []


def test_unexpected_error_fails_only_that_write(tmp_path, fast_retry):
    post = make_post(5)
    source = StubSource(failures={post.asset_url: [ValueError("corrupt stream")]})
    task = AssetLayout(tmp_path).task_for(post)

    result = asyncio.run(AssetWriter(source, fast_retry).write(task))

    assert result.status is WriteStatus.FAILED
    assert result.reason == "ValueError: corrupt stream"
    assert len(source.calls) == 1
    assert _leftovers(tmp_path) == []
