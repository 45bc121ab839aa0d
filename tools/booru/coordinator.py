"""Core crawl logic – orchestrates Planner → Driver → Dedup → Writer."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterator, Mapping
from pathlib import Path

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from .config import CrawlerConfig
from .dedup import DedupSet, Fanout
from .driver import PaginationDriver, PartitionResult
from .errors import FilesystemError
from .models import (
    CrawlRequest,
    PageCursor,
    Partition,
    PartitionFailure,
    PostRecord,
    RunOutcome,
    WriteTask,
)
from .planner import plan
from .providers import PageFetcher
from .storage import AssetLayout, AssetSource, AssetWriter, MetadataSink

logger = logging.getLogger("booru.core")


class Coordinator:
    """Runs one crawl request to completion.

    Partitions are drained by a fixed pool of workers; asset writes are
    bounded separately by the writer's semaphore.  A failed partition or
    write is recorded in the outcome and never stops unrelated work;
    fatal errors cancel everything and propagate.
    """

    def __init__(
        self,
        request: CrawlRequest,
        provider: PageFetcher,
        source: AssetSource,
        cfg: CrawlerConfig | None = None,
    ) -> None:
        self.request = request
        self.provider = provider
        self.cfg = cfg or CrawlerConfig()
        self.layout = AssetLayout(
            request.output_root,
            optimization=request.optimization,
            captions=bool(request.caption_template),
        )
        self.writer = AssetWriter(
            source,
            self.cfg.retry,
            concurrency=request.write_concurrency,
            overwrite=request.overwrite,
            template=request.caption_template,
            optimization=request.optimization,
        )
        self.outcome = RunOutcome()
        self.seen = DedupSet()
        self._writes: set[asyncio.Task[None]] = set()
        self._pending: asyncio.Semaphore | None = None
        self._progress: Progress | None = None
        self._bars: dict[Partition, TaskID] = {}
        self._assets_bar: TaskID | None = None
        self._queued = 0

    # ── progress ─────────────────────────────────────────────────

    @contextlib.contextmanager
    def _progress_bars(self) -> Iterator[None]:
        if not self.cfg.show_progress:
            yield
            return
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
        ) as progress:
            self._progress = progress
            if self.request.download_assets:
                self._assets_bar = progress.add_task("assets", total=0)
            try:
                yield
            finally:
                self._progress = None

    def _on_page(self, partition: Partition, count: int) -> None:
        if self._progress is None:
            return
        if partition not in self._bars:
            self._bars[partition] = self._progress.add_task(
                f"{partition.provider} {partition.label}", total=partition.target
            )
        self._progress.advance(self._bars[partition], count)

    def _on_write_queued(self) -> None:
        self._queued += 1
        if self._progress is not None and self._assets_bar is not None:
            self._progress.update(self._assets_bar, total=self._queued)

    def _on_write_done(self) -> None:
        if self._progress is not None and self._assets_bar is not None:
            self._progress.advance(self._assets_bar)

    # ── writes ───────────────────────────────────────────────────

    async def _write(self, task: WriteTask) -> None:
        assert self._pending is not None
        try:
            result = await self.writer.write(task)
            self.outcome.record_write(result)
            self._on_write_done()
        finally:
            self._pending.release()

    async def _schedule_write(self, task: WriteTask) -> None:
        assert self._pending is not None
        # blocks the consumer, and through the channel the driver, when
        # too many writes are already waiting for a slot
        await self._pending.acquire()
        write = asyncio.create_task(self._write(task))
        self._writes.add(write)
        write.add_done_callback(self._writes.discard)
        self._on_write_queued()

    async def _drain_writes(self) -> None:
        while self._writes:
            await asyncio.gather(*list(self._writes))

    # ── partitions ───────────────────────────────────────────────

    def metadata_path(self, partition: Partition) -> Path:
        prefix = self.request.metadata_prefix
        if partition.year is not None and partition.month is not None:
            name = f"{prefix}-{partition.year}-{partition.month:02d}.jsonl"
        else:
            name = f"{prefix}-{partition.label}.jsonl"
        return self.request.output_root / name

    async def _produce(
        self,
        driver: PaginationDriver,
        partition: Partition,
        channel: asyncio.Queue[PostRecord | None],
        cursor: PageCursor | None,
    ) -> PartitionResult:
        try:
            result = await driver.run(partition, channel, cursor)
        except Exception:
            await channel.put(None)
            raise
        await channel.put(None)
        return result

    async def _consume(
        self,
        fanout: Fanout,
        channel: asyncio.Queue[PostRecord | None],
        sink: MetadataSink | None,
    ) -> None:
        while (post := await channel.get()) is not None:
            if sink is not None:
                await sink.add(post)
            task = fanout.observe(post)
            if task is not None and self.request.download_assets:
                await self._schedule_write(task)

    async def _run_partition(
        self,
        driver: PaginationDriver,
        fanout: Fanout,
        partition: Partition,
        cursor: PageCursor | None,
    ) -> None:
        sink: MetadataSink | None = None
        if self.request.save_metadata:
            sink = MetadataSink(self.metadata_path(partition))
            if sink.exists() and not self.request.overwrite:
                logger.info("%s already exists, skipping partition %s", sink.path, partition.label)
                self.outcome.partitions_skipped += 1
                return
            if cursor is not None:
                # the failed run's lines were discarded, so the month is fetched whole
                logger.info("Restarting partition %s from its first page for metadata", partition.label)
                cursor = None
            try:
                await sink.open()
            except FilesystemError as exc:
                logger.error("Partition %s failed: %s", partition.label, exc)
                self.outcome.failed_partitions.append(PartitionFailure(partition, str(exc), cursor))
                return

        channel: asyncio.Queue[PostRecord | None] = asyncio.Queue(maxsize=self.cfg.channel_size)
        producer = asyncio.create_task(self._produce(driver, partition, channel, cursor))
        try:
            await self._consume(fanout, channel, sink)
            result = await producer
        except FilesystemError as exc:
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
            result = PartitionResult(partition, False, cursor=cursor, reason=str(exc))
        except BaseException:
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
            if sink is not None:
                await sink.discard()
            raise

        if result.exhausted and sink is not None:
            try:
                await sink.commit()
            except FilesystemError as exc:
                result = PartitionResult(partition, False, result.emitted, reason=str(exc))

        if result.exhausted:
            self.outcome.partitions_completed += 1
            return
        if sink is not None:
            await sink.discard()
        self.outcome.failed_partitions.append(
            PartitionFailure(partition, result.reason or "unknown error", result.cursor)
        )

    async def _worker(
        self,
        driver: PaginationDriver,
        fanout: Fanout,
        queue: asyncio.Queue[Partition],
        resume: Mapping[Partition, PageCursor | None],
    ) -> None:
        while True:
            try:
                partition = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            logger.info("Starting partition %s/%s", partition.provider, partition.label)
            await self._run_partition(driver, fanout, partition, resume.get(partition))

    # ── run ──────────────────────────────────────────────────────

    async def run(self, resume: Mapping[Partition, PageCursor | None] | None = None) -> RunOutcome:
        """Crawl every planned partition and return the run's outcome.

        With ``resume``, only the given partitions are crawled, each from
        its cursor (or from the start when the cursor is None).  Use
        :meth:`RunOutcome.resume_points` of a previous outcome.
        """
        partitions = plan(self.request)
        if resume is not None:
            partitions = [p for p in partitions if p in resume]
        resume = resume or {}

        # state below lives exactly as long as this run
        self.outcome = RunOutcome()
        self.seen = DedupSet()
        self._pending = asyncio.Semaphore(max(1, self.request.write_concurrency) * 2)
        fanout = Fanout(self.seen, self.layout, self.outcome)
        driver = PaginationDriver(self.provider, self.cfg.retry, self.outcome, on_page=self._on_page)

        queue: asyncio.Queue[Partition] = asyncio.Queue()
        for partition in partitions:
            queue.put_nowait(partition)
        n_workers = max(1, min(self.cfg.partition_concurrency, len(partitions)))
        workers = [
            asyncio.create_task(self._worker(driver, fanout, queue, resume))
            for _ in range(n_workers)
        ]

        with self._progress_bars():
            try:
                await asyncio.gather(*workers)
                await self._drain_writes()
            except BaseException:
                pending = [*workers, *self._writes]
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                raise

        logger.info(
            "Run complete: %d/%d partitions, %d assets written, %d failed",
            self.outcome.partitions_completed, len(partitions),
            self.outcome.assets_written, self.outcome.assets_failed,
        )
        return self.outcome
