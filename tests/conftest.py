from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import replace

import pytest

from booru.config import CrawlerConfig, RetryPolicy
from booru.errors import CursorMismatchError
from booru.models import PageCursor, PageResult, Partition, PostRecord, RateHint, TagSets
from booru.providers import PageFetcher


def make_post(post_id: int, provider: str = "A", **kwargs) -> PostRecord:
    defaults = dict(
        tags=TagSets(general=("1girl", "cat_ears"), character=("hatsune_miku",)),
        asset_url=f"https://cdn.test/{provider}/{post_id}.png",
        file_ext="png",
        rating="g",
        raw={"id": post_id, "file_ext": "png"},
    )
    defaults.update(kwargs)
    return PostRecord(provider=provider, id=post_id, **defaults)


class StubProvider(PageFetcher):
    """Serves scripted pages keyed by partition label.

    ``failures[(label, page)]`` is consumed before the page is served; each
    item is an exception to raise or a RateHint to answer with.
    """

    def __init__(self, name: str, pages: dict[str, list[list[PostRecord]]], failures=None) -> None:
        self.name = name
        self.pages = pages
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: list[tuple[str, int]] = []

    def initial_cursor(self, partition: Partition) -> PageCursor:
        return PageCursor(provider=self.name, partition=partition)

    async def fetch_page(self, partition: Partition, cursor: PageCursor) -> PageResult:
        if cursor.provider != self.name or cursor.partition != partition:
            raise CursorMismatchError("foreign cursor")
        self.calls.append((partition.label, cursor.page))
        await asyncio.sleep(0)

        pending = self.failures.get((partition.label, cursor.page))
        if pending:
            item = pending.pop(0)
            if isinstance(item, RateHint):
                return PageResult((), cursor, item)
            raise item

        script = self.pages.get(partition.label, [])
        index = cursor.page - 1
        if index >= len(script):
            return PageResult((), None)
        posts = tuple(script[index])
        last = index + 1 >= len(script)
        return PageResult(posts, None if last else replace(cursor, page=cursor.page + 1))


class StubSource:
    """Asset source that serves ``body`` for every URL.

    ``failures[url]`` holds exceptions raised by the first attempts; when
    ``gate`` is set, every download waits for it before sending data.
    """

    def __init__(self, body: bytes = b"\x89PNG fake", failures=None, gate: asyncio.Event | None = None) -> None:
        self.body = body
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.gate = gate
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def stream_asset(self, url: str) -> AsyncIterator[bytes]:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            pending = self.failures.get(url)
            if pending:
                raise pending.pop(0)
            yield self.body[: len(self.body) // 2]
            yield self.body[len(self.body) // 2:]
        finally:
            self.in_flight -= 1


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_base=0.0)


@pytest.fixture
def crawler_cfg(fast_retry: RetryPolicy) -> CrawlerConfig:
    return CrawlerConfig(retry=fast_retry, partition_concurrency=2, channel_size=8, show_progress=False)
