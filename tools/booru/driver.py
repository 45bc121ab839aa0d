"""Pagination driver – walks one partition page by page."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .config import RetryPolicy
from .errors import ProviderProtocolError, TransientNetworkError
from .models import PageCursor, Partition, PostRecord, RunOutcome
from .providers import PageFetcher

logger = logging.getLogger("booru.driver")


@dataclass(frozen=True)
class PartitionResult:
    partition: Partition
    exhausted: bool
    emitted: int = 0
    cursor: PageCursor | None = None  # first page not fetched, for resume
    reason: str | None = None


class PaginationDriver:
    """Runs ``Start -> Fetching -> Exhausted | Failed`` for a partition.

    Records are pushed onto ``channel`` as soon as their page arrives, so a
    full channel slows pagination down instead of buffering the partition.
    """

    def __init__(
        self,
        provider: PageFetcher,
        policy: RetryPolicy,
        outcome: RunOutcome,
        *,
        on_page: Callable[[Partition, int], None] | None = None,
    ) -> None:
        self.provider = provider
        self.policy = policy
        self.outcome = outcome
        self.on_page = on_page

    def _failed(self, partition: Partition, cursor: PageCursor, emitted: int, reason: str) -> PartitionResult:
        logger.error("Partition %s/%s failed at page %d: %s", partition.provider, partition.label, cursor.page, reason)
        return PartitionResult(partition, False, emitted, cursor, reason)

    async def run(
        self,
        partition: Partition,
        channel: asyncio.Queue[PostRecord | None],
        cursor: PageCursor | None = None,
    ) -> PartitionResult:
        """Drive ``partition`` to exhaustion, starting at ``cursor`` when resuming."""
        cursor = cursor or self.provider.initial_cursor(partition)
        max_attempts = self.policy.max_attempts
        emitted = 0
        attempt = 0

        while True:
            attempt += 1
            try:
                page = await self.provider.fetch_page(partition, cursor)
            except TransientNetworkError as exc:
                logger.warning("Attempt %d/%d failed for %s page %d: %s",
                               attempt, max_attempts, partition.label, cursor.page, exc)
                if attempt >= max_attempts:
                    return self._failed(partition, cursor, emitted, str(exc))
                await asyncio.sleep(max(self.policy.delay(attempt), exc.retry_after or 0.0))
                continue
            except ProviderProtocolError as exc:
                return self._failed(partition, cursor, emitted, str(exc))

            if page.rate_hint is not None and not page.posts:
                logger.warning("Attempt %d/%d for %s page %d rate limited, waiting %.1fs",
                               attempt, max_attempts, partition.label, cursor.page, page.rate_hint.delay)
                if attempt >= max_attempts:
                    return self._failed(partition, cursor, emitted, "rate limited")
                await asyncio.sleep(max(page.rate_hint.delay, self.policy.delay(attempt)))
                continue

            attempt = 0
            self.outcome.pages_fetched += 1
            posts = page.posts
            if partition.target is not None:
                # only downloadable posts count toward the target
                posts = tuple(p for p in posts if p.asset_url)[: partition.target - emitted]
            for post in posts:
                await channel.put(post)
            emitted += len(posts)
            if self.on_page:
                self.on_page(partition, len(posts))

            if page.next_cursor is None or (partition.target is not None and emitted >= partition.target):
                logger.info("Partition %s/%s exhausted: %d posts", partition.provider, partition.label, emitted)
                return PartitionResult(partition, True, emitted)

            cursor = page.next_cursor
            if page.rate_hint is not None:
                await asyncio.sleep(page.rate_hint.delay)
