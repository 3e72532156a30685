"""
Per-job progress bookkeeping: record dedup and the stuck-page counter.

Both operate on a ``Job`` in place; the controller persists afterwards.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Tuple

from .config import DEFAULT_STUCK_THRESHOLD
from .models import Job, Review

logger = logging.getLogger(__name__)


def merge_records(job: Job, incoming: Iterable[Review]) -> Tuple[List[Review], List[Review]]:
    """
    Append unseen records to ``job.records``.

    Records whose id is already in ``job.seen_ids`` are dropped. Records with
    no id cannot be deduplicated and are always kept.
    Returns (added, duplicates).
    """
    added: List[Review] = []
    duplicates: List[Review] = []

    for rec in incoming:
        if rec.id is not None and rec.id in job.seen_ids:
            duplicates.append(rec)
            continue
        if rec.id is not None:
            job.seen_ids.add(rec.id)
        job.records.append(rec)
        added.append(rec)

    return added, duplicates


class StuckDetector:
    """
    Counts consecutive non-progress signals on ``job.stuck_count``.

    Two signals feed the same counter: a page made only of already-seen
    records, and a page number that does not move forward.
    """

    def __init__(self, threshold: int = DEFAULT_STUCK_THRESHOLD) -> None:
        self.threshold = int(threshold)

    def tripped(self, job: Job) -> bool:
        return job.stuck_count >= self.threshold

    def record_merge(self, job: Job, incoming: int, added: int) -> bool:
        """Duplicate-only page. Returns True when the threshold is reached."""
        if incoming > 0 and added == 0:
            job.stuck_count += 1
            logger.info(
                "Job %s: page had only duplicates (stuck_count=%d)", job.id, job.stuck_count
            )
        return self.tripped(job)

    def record_page_number(self, job: Job, page: int) -> bool:
        """Non-advancing page number. Returns True when the threshold is reached."""
        if job.current_page is not None and page <= job.current_page:
            job.stuck_count += 1
            logger.info(
                "Job %s: page number did not advance (%s -> %s, stuck_count=%d)",
                job.id, job.current_page, page, job.stuck_count,
            )
        else:
            job.stuck_count = 0
        job.current_page = page
        return self.tripped(job)
