"""Run-scoped deduplication and fan-out to the asset writer."""

from __future__ import annotations

import logging
import threading

from .models import DedupKey, PostRecord, RunOutcome, WriteTask
from .storage import AssetLayout

logger = logging.getLogger("booru.dedup")


class DedupSet:
    """Keys handled so far in one run.

    Created per run and passed by reference to every consumer.  ``add`` is
    a single check-and-insert step, so two observations of the same key
    can never both win.
    """

    def __init__(self) -> None:
        self._keys: set[DedupKey] = set()
        # add() stays atomic if a consumer ever calls it from a worker thread
        self._lock = threading.Lock()

    def add(self, key: DedupKey) -> bool:
        """Insert ``key``; True if it was not present."""
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)


class Fanout:
    def __init__(self, seen: DedupSet, layout: AssetLayout, outcome: RunOutcome) -> None:
        self.seen = seen
        self.layout = layout
        self.outcome = outcome

    def observe(self, post: PostRecord) -> WriteTask | None:
        """Return a WriteTask for the first sighting of a post, else None."""
        self.outcome.posts_seen += 1
        if not self.seen.add(post.key):
            self.outcome.posts_deduplicated += 1
            logger.debug("Post %s already seen, dropping", post.key)
            return None
        return self.layout.task_for(post)
