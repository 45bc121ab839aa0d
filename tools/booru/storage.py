"""Local storage layer – download assets, write captions and metadata."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Protocol

import aiofiles
from PIL import Image

from .config import RetryPolicy
from .errors import (
    AssetUnavailableError,
    FilesystemError,
    ProviderProtocolError,
    TransientNetworkError,
)
from .models import Optimization, PostRecord, WriteResult, WriteStatus, WriteTask
from .tags import render

logger = logging.getLogger("booru.storage")

# extensions Pillow can re-encode to WebP
CONVERTIBLE = frozenset({"jpg", "jpeg", "png", "webp", "bmp"})


class AssetSource(Protocol):
    def stream_asset(self, url: str) -> AsyncIterator[bytes]:
        ...


def _part_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.part")


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)


class AssetLayout:
    """Deterministic output paths: ``<root>/<provider>/<id>.<ext>``."""

    def __init__(self, root: Path, *, optimization: Optimization = Optimization.NONE, captions: bool = False) -> None:
        self.root = Path(root)
        self.optimization = optimization
        self.captions = captions

    def extension(self, post: PostRecord) -> str:
        ext = (post.file_ext or "").lower()
        if not ext and post.asset_url:
            ext = Path(post.asset_url.split("?", 1)[0]).suffix.lstrip(".").lower()
        ext = ext or "bin"
        if self.optimization is Optimization.WEBP and ext in CONVERTIBLE:
            return "webp"
        return ext

    def task_for(self, post: PostRecord) -> WriteTask:
        base = self.root / post.provider
        return WriteTask(
            post=post,
            asset_path=base / f"{post.id}.{self.extension(post)}",
            caption_path=base / f"{post.id}.txt" if self.captions else None,
        )


def _to_webp(path: Path) -> None:
    """Re-encode the file at ``path`` to lossless WebP, in place."""
    out = path.with_name(path.name + ".webp")
    try:
        with Image.open(path) as img:
            img.save(out, format="WEBP", lossless=True)
        os.replace(out, path)
    finally:
        if out.exists():
            _unlink_quietly(out)


class AssetWriter:
    """Download and persist one post's asset under a global concurrency budget.

    Files are written to ``.<name>.part`` and promoted with ``os.replace``
    once complete, so the final path never holds a truncated file.
    """

    def __init__(
        self,
        source: AssetSource,
        policy: RetryPolicy,
        *,
        concurrency: int = 4,
        overwrite: bool = False,
        template: str | None = None,
        optimization: Optimization = Optimization.NONE,
    ) -> None:
        self.source = source
        self.policy = policy
        self.overwrite = overwrite
        self.template = template
        self.optimization = optimization
        self.concurrency = concurrency
        self._slots = asyncio.Semaphore(concurrency)

    # ── helpers ──────────────────────────────────────────────────

    async def _fetch_to(self, url: str, path: Path) -> None:
        part = _part_path(path)
        try:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(part, "wb") as fh:
                    async for chunk in self.source.stream_asset(url):
                        await fh.write(chunk)
            except TimeoutError as exc:
                raise TransientNetworkError(f"download of {url} timed out") from exc
            except OSError as exc:
                raise FilesystemError(f"cannot write {part}: {exc}") from exc

            if self.optimization is Optimization.WEBP and path.suffix == ".webp":
                try:
                    await asyncio.to_thread(_to_webp, part)
                except (Image.UnidentifiedImageError, Image.DecompressionBombError) as exc:
                    raise ProviderProtocolError(f"{url} is not a readable image: {exc}") from exc
                except OSError as exc:
                    raise FilesystemError(f"cannot convert {part}: {exc}") from exc

            try:
                os.replace(part, path)
            except OSError as exc:
                raise FilesystemError(f"cannot move {part} to {path}: {exc}") from exc
        finally:
            if part.exists():
                _unlink_quietly(part)

    async def _download(self, url: str, path: Path) -> None:
        max_attempts = self.policy.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                await self._fetch_to(url, path)
                return
            except TransientNetworkError as exc:
                logger.warning("Attempt %d/%d failed for %s: %s", attempt, max_attempts, url, exc)
                if attempt == max_attempts:
                    raise
                await asyncio.sleep(max(self.policy.delay(attempt), exc.retry_after or 0.0))

    async def _write_caption(self, post: PostRecord, path: Path) -> None:
        assert self.template is not None
        part = _part_path(path)
        try:
            async with aiofiles.open(part, "w", encoding="utf-8") as fh:
                await fh.write(render(self.template, post))
            os.replace(part, path)
        except OSError as exc:
            raise FilesystemError(f"cannot write caption {path}: {exc}") from exc
        finally:
            if part.exists():
                _unlink_quietly(part)

    # ── public API ───────────────────────────────────────────────

    async def write(self, task: WriteTask) -> WriteResult:
        post = task.post
        if not post.asset_url:
            logger.debug("Post %s has no asset url", post.key)
            return WriteResult(task, WriteStatus.UNAVAILABLE, "no asset url")
        if not self.overwrite and task.asset_path.exists():
            logger.debug("%s already exists, skipping", task.asset_path)
            return WriteResult(task, WriteStatus.SKIPPED)

        async with self._slots:
            try:
                await self._download(post.asset_url, task.asset_path)
                if self.template and task.caption_path is not None:
                    await self._write_caption(post, task.caption_path)
            except (TransientNetworkError, AssetUnavailableError, ProviderProtocolError, FilesystemError) as exc:
                logger.error("Failed to write post %s: %s", post.key, exc)
                return WriteResult(task, WriteStatus.FAILED, str(exc))
            except Exception as exc:
                logger.error("Error writing post %s: %r", post.key, exc)
                return WriteResult(task, WriteStatus.FAILED, f"{type(exc).__name__}: {exc}")

        logger.debug("Wrote %s", task.asset_path)
        return WriteResult(task, WriteStatus.WRITTEN)


class MetadataSink:
    """Per-partition JSONL dump of raw post metadata.

    Lines go to a ``.part`` file that is promoted by :meth:`commit` and
    removed by :meth:`discard`.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._part = _part_path(self.path)
        self._fh = None

    def exists(self) -> bool:
        return self.path.exists()

    async def open(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = await aiofiles.open(self._part, "w", encoding="utf-8")
        except OSError as exc:
            raise FilesystemError(f"cannot open {self._part}: {exc}") from exc

    async def add(self, post: PostRecord) -> None:
        assert self._fh is not None
        try:
            await self._fh.write(json.dumps(post.raw, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise FilesystemError(f"cannot write {self._part}: {exc}") from exc

    async def _close(self) -> None:
        if self._fh is not None:
            await self._fh.close()
            self._fh = None

    async def commit(self) -> None:
        await self._close()
        try:
            os.replace(self._part, self.path)
        except OSError as exc:
            raise FilesystemError(f"cannot move {self._part} to {self.path}: {exc}") from exc

    async def discard(self) -> None:
        await self._close()
        _unlink_quietly(self._part)
