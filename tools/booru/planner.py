"""Split a crawl request into independently resumable partitions."""

from __future__ import annotations

import logging

from .errors import InvalidPartitionBounds
from .models import CrawlRequest, Partition

logger = logging.getLogger("booru.planner")


def plan(request: CrawlRequest) -> list[Partition]:
    """Return the request's partitions, oldest first.

    A time range yields one partition per (year, month) in
    ``[year_start, year_end] x [month_start, month_end]``; a flat target
    yields a single partition.
    """
    if (request.time_range is None) == (request.target is None):
        raise InvalidPartitionBounds("exactly one of time_range and target must be given")

    if request.target is not None:
        if request.target <= 0:
            raise InvalidPartitionBounds(f"target must be positive, got {request.target}")
        return [Partition(request.provider, request.tag_filter, target=request.target)]

    rng = request.time_range
    assert rng is not None
    month_start = max(1, rng.month_start)
    month_end = min(12, rng.month_end)
    if rng.year_start > rng.year_end:
        raise InvalidPartitionBounds(f"year range {rng.year_start}..{rng.year_end} is inverted")
    if month_start > month_end:
        raise InvalidPartitionBounds(f"month range {rng.month_start}..{rng.month_end} is empty")

    partitions = [
        Partition(request.provider, request.tag_filter, year=year, month=month)
        for year in range(rng.year_start, rng.year_end + 1)
        for month in range(month_start, month_end + 1)
    ]
    logger.debug("Planned %d partitions for %s", len(partitions), request.provider)
    return partitions
