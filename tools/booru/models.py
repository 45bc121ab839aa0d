"""Records passed between the crawl stages."""

from __future__ import annotations

import calendar
import enum
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Any

# Donmai metatags whose values may be OR-ed with commas (``rating:s,q,e``).
METATAGS = frozenset({
    "age", "date", "favcount", "filesize", "filetype", "height", "id", "is",
    "has", "md5", "mpixels", "order", "parent", "pool", "rating", "ratio",
    "score", "source", "status", "tagcount", "user", "width",
})


@dataclass(frozen=True)
class TagFilter:
    """AND-ed search terms plus OR-ed metatag groups."""
    tags: tuple[str, ...] = ()
    groups: tuple[tuple[str, tuple[str, ...]], ...] = ()

    @classmethod
    def parse(cls, text: str) -> TagFilter:
        """Build a filter from search text like ``1girl rating:s,q,e``."""
        result = cls()
        for token in text.split():
            key, sep, value = token.partition(":")
            if sep and key.lower() in METATAGS and value:
                result = result.with_group(key.lower(), value.split(","))
            else:
                result = replace(result, tags=result.tags + (token,))
        return result

    def with_group(self, key: str, values: list[str] | tuple[str, ...]) -> TagFilter:
        """Return a copy with ``values`` appended to the ``key`` group."""
        groups = dict(self.groups)
        groups[key] = groups.get(key, ()) + tuple(v for v in values if v)
        return replace(self, groups=tuple(groups.items()))

    def without_group(self, key: str) -> TagFilter:
        return replace(self, groups=tuple((k, v) for k, v in self.groups if k != key))

    def group(self, key: str) -> tuple[str, ...]:
        return dict(self.groups).get(key, ())

    def terms(self) -> list[str]:
        out = list(self.tags)
        out.extend(f"{key}:{','.join(values)}" for key, values in self.groups if values)
        return out

    def __str__(self) -> str:
        return " ".join(self.terms())


@dataclass(frozen=True)
class TimeRange:
    year_start: int
    year_end: int
    month_start: int = 1
    month_end: int = 12


class Optimization(str, enum.Enum):
    NONE = "none"
    WEBP = "webp"


@dataclass(frozen=True)
class CrawlRequest:
    """One run's worth of work; never mutated once the run starts."""
    provider: str
    output_root: Path
    tag_filter: TagFilter = field(default_factory=TagFilter)
    time_range: TimeRange | None = None
    target: int | None = None
    write_concurrency: int = 4
    overwrite: bool = False
    caption_template: str | None = None
    save_metadata: bool = False
    download_assets: bool = True
    optimization: Optimization = Optimization.NONE
    prefix: str | None = None

    @property
    def metadata_prefix(self) -> str:
        return self.prefix or self.provider


@dataclass(frozen=True)
class Partition:
    provider: str
    tag_filter: TagFilter
    year: int | None = None
    month: int | None = None
    target: int | None = None

    @property
    def label(self) -> str:
        if self.year is not None and self.month is not None:
            return f"{self.year}-{self.month:02d}"
        return f"top-{self.target}"

    def date_range(self) -> tuple[date, date] | None:
        """Inclusive first and last day of the partition's month."""
        if self.year is None or self.month is None:
            return None
        last = calendar.monthrange(self.year, self.month)[1]
        return date(self.year, self.month, 1), date(self.year, self.month, last)


@dataclass(frozen=True)
class PageCursor:
    """Pagination state for one partition; only its provider interprets it."""
    provider: str
    partition: Partition
    page: int = 1
    token: str | None = None


@dataclass(frozen=True)
class RateHint:
    delay: float


@dataclass(frozen=True)
class DedupKey:
    provider: str
    post_id: int

    def __str__(self) -> str:
        return f"{self.provider}#{self.post_id}"


@dataclass(frozen=True)
class TagSets:
    artist: tuple[str, ...] = ()
    character: tuple[str, ...] = ()
    copyright: tuple[str, ...] = ()
    general: tuple[str, ...] = ()
    meta: tuple[str, ...] = ()


@dataclass(frozen=True)
class PostRecord:
    provider: str
    id: int
    tags: TagSets = field(default_factory=TagSets)
    asset_url: str | None = None
    file_ext: str | None = None
    rating: str | None = None
    score: int | None = None
    md5: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def key(self) -> DedupKey:
        return DedupKey(self.provider, self.id)


@dataclass(frozen=True)
class PageResult:
    posts: tuple[PostRecord, ...]
    next_cursor: PageCursor | None
    rate_hint: RateHint | None = None


@dataclass(frozen=True)
class WriteTask:
    post: PostRecord
    asset_path: Path
    caption_path: Path | None = None


class WriteStatus(str, enum.Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass(frozen=True)
class WriteResult:
    task: WriteTask
    status: WriteStatus
    reason: str | None = None


@dataclass(frozen=True)
class PartitionFailure:
    partition: Partition
    reason: str
    cursor: PageCursor | None = None


@dataclass(frozen=True)
class WriteFailure:
    key: DedupKey
    reason: str


@dataclass
class RunOutcome:
    """Aggregated counts for one run.  Drives the process exit status."""
    pages_fetched: int = 0
    posts_seen: int = 0
    posts_deduplicated: int = 0
    assets_written: int = 0
    assets_skipped: int = 0
    assets_unavailable: int = 0
    assets_failed: int = 0
    partitions_completed: int = 0
    partitions_skipped: int = 0
    failed_partitions: list[PartitionFailure] = field(default_factory=list)
    failed_writes: list[WriteFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_partitions and not self.failed_writes

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def resume_points(self) -> dict[Partition, PageCursor | None]:
        """Failed partitions mapped to the cursor they stopped at."""
        return {failure.partition: failure.cursor for failure in self.failed_partitions}

    def record_write(self, result: WriteResult) -> None:
        if result.status is WriteStatus.WRITTEN:
            self.assets_written += 1
        elif result.status is WriteStatus.SKIPPED:
            self.assets_skipped += 1
        elif result.status is WriteStatus.UNAVAILABLE:
            self.assets_unavailable += 1
        else:
            self.assets_failed += 1
            self.failed_writes.append(WriteFailure(result.task.post.key, result.reason or "unknown"))

    def counts(self) -> dict[str, int]:
        return {
            "pages fetched": self.pages_fetched,
            "posts seen": self.posts_seen,
            "deduplicated": self.posts_deduplicated,
            "assets written": self.assets_written,
            "assets skipped": self.assets_skipped,
            "assets unavailable": self.assets_unavailable,
            "assets failed": self.assets_failed,
            "partitions completed": self.partitions_completed,
            "partitions skipped": self.partitions_skipped,
            "partitions failed": len(self.failed_partitions),
        }
