"""Provider adapters – turn a page request into donmai API calls.

Every provider answers ``/posts.json`` with the same post shape, so
parsing is shared.  What differs is how the tag filter is serialized and
how pagination advances:

* safebooru walks numbered pages (``page=1``, ``page=2``, ...)
* danbooru follows a continuation token (``page=b<lowest id seen>``),
  which is not subject to the numbered-page depth limit
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any

from .api import BooruAPI, retry_after
from .errors import CursorMismatchError, FatalError, ProviderProtocolError, TransientNetworkError
from .models import PageCursor, PageResult, Partition, PostRecord, RateHint, TagFilter, TagSets

logger = logging.getLogger("booru.providers")

BACKOFF_STATUSES = (429, 503)


def _split(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if not isinstance(value, str):
        raise ProviderProtocolError(f"expected tag string, got {type(value).__name__}")
    return tuple(value.split())


def parse_post(provider: str, entry: Any) -> PostRecord:
    """Convert one entry of a ``/posts.json`` response into a PostRecord."""
    if not isinstance(entry, dict):
        raise ProviderProtocolError(f"post entry is {type(entry).__name__}, not an object")
    post_id = entry.get("id")
    if not isinstance(post_id, int) or isinstance(post_id, bool):
        raise ProviderProtocolError(f"post entry has no integer id: {post_id!r}")

    tags = TagSets(
        artist=_split(entry.get("tag_string_artist")),
        character=_split(entry.get("tag_string_character")),
        copyright=_split(entry.get("tag_string_copyright")),
        general=_split(entry.get("tag_string_general")),
        meta=_split(entry.get("tag_string_meta")),
    )
    score = entry.get("score")
    return PostRecord(
        provider=provider,
        id=post_id,
        tags=tags,
        # file_url is missing for banned posts
        asset_url=entry.get("file_url") or None,
        file_ext=entry.get("file_ext") or None,
        rating=entry.get("rating") or None,
        score=score if isinstance(score, int) else None,
        md5=entry.get("md5") or None,
        raw=entry,
    )


class PageFetcher(ABC):
    """Capability set every provider implements.  Callers stay provider-agnostic."""

    name: str

    @abstractmethod
    def initial_cursor(self, partition: Partition) -> PageCursor:
        ...

    @abstractmethod
    async def fetch_page(self, partition: Partition, cursor: PageCursor) -> PageResult:
        """Fetch one page.

        Returns an empty result with ``next_cursor=None`` once the
        partition is exhausted, and an empty result carrying the *same*
        cursor plus a :class:`RateHint` when the provider asks us to back
        off.  Never sleeps.
        """


class DonmaiProvider(PageFetcher):
    """Shared request building and parsing for donmai-hosted boards."""

    def __init__(self, api: BooruAPI) -> None:
        self.api = api
        self.name = api.cfg.name

    # ── hooks ────────────────────────────────────────────────────

    def serialize_filter(self, tag_filter: TagFilter) -> list[str]:
        return tag_filter.terms()

    @abstractmethod
    def page_param(self, cursor: PageCursor) -> str:
        ...

    @abstractmethod
    def advance(self, cursor: PageCursor, posts: tuple[PostRecord, ...]) -> PageCursor:
        ...

    # ── request building ─────────────────────────────────────────

    def search_tags(self, partition: Partition) -> str:
        terms = self.serialize_filter(partition.tag_filter)
        bounds = partition.date_range()
        if bounds:
            first, last = bounds
            terms.append(f"date:{first.isoformat()}..{last.isoformat()}")
        return " ".join(terms)

    def params(self, partition: Partition, cursor: PageCursor) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": self.api.cfg.page_limit, "page": self.page_param(cursor)}
        tags = self.search_tags(partition)
        if tags:
            params["tags"] = tags
        return params

    def _check_cursor(self, partition: Partition, cursor: PageCursor) -> None:
        if cursor.provider != self.name or cursor.partition != partition:
            raise CursorMismatchError(
                f"cursor for {cursor.provider}/{cursor.partition.label} "
                f"passed to {self.name}/{partition.label}"
            )

    def initial_cursor(self, partition: Partition) -> PageCursor:
        if partition.provider != self.name:
            raise FatalError(f"partition for {partition.provider} routed to {self.name}")
        return PageCursor(provider=self.name, partition=partition)

    # ── fetching ─────────────────────────────────────────────────

    async def fetch_page(self, partition: Partition, cursor: PageCursor) -> PageResult:
        self._check_cursor(partition, cursor)
        resp = await self.api.get("/posts.json", self.params(partition, cursor))

        if resp.status_code in BACKOFF_STATUSES:
            delay = retry_after(resp)
            logger.info("%s asked to back off (%d)", self.name, resp.status_code)
            return PageResult((), cursor, RateHint(delay if delay is not None else self.api.cfg.rate_limit_delay))
        if resp.status_code >= 500:
            raise TransientNetworkError(f"{self.name} answered {resp.status_code}")
        if resp.is_error:
            raise ProviderProtocolError(f"{self.name} answered {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderProtocolError(f"{self.name} returned a non-JSON page") from exc
        if not isinstance(data, list):
            raise ProviderProtocolError(f"{self.name} returned {type(data).__name__}, expected a list of posts")

        posts = tuple(parse_post(self.name, entry) for entry in data)
        if not posts:
            return PageResult((), None)
        return PageResult(posts, self.advance(cursor, posts))


class SafebooruProvider(DonmaiProvider):
    """Numbered pages.  Every safebooru post is general-rated."""

    def serialize_filter(self, tag_filter: TagFilter) -> list[str]:
        return tag_filter.without_group("rating").terms()

    def page_param(self, cursor: PageCursor) -> str:
        return str(cursor.page)

    def advance(self, cursor: PageCursor, posts: tuple[PostRecord, ...]) -> PageCursor:
        return replace(cursor, page=cursor.page + 1)


class DanbooruProvider(DonmaiProvider):
    """Continuation tokens: ``b<id>`` asks for posts older than ``id``."""

    def page_param(self, cursor: PageCursor) -> str:
        return cursor.token or "1"

    def advance(self, cursor: PageCursor, posts: tuple[PostRecord, ...]) -> PageCursor:
        lowest = min(post.id for post in posts)
        return replace(cursor, page=cursor.page + 1, token=f"b{lowest}")


PROVIDER_TYPES: dict[str, type[DonmaiProvider]] = {
    "danbooru": DanbooruProvider,
    "safebooru": SafebooruProvider,
}


def get_provider(api: BooruAPI) -> DonmaiProvider:
    """Select the adapter for ``api``'s board once, at run setup."""
    try:
        cls = PROVIDER_TYPES[api.cfg.name]
    except KeyError:
        raise FatalError(f"unknown provider {api.cfg.name!r}") from None
    return cls(api)
