"""
Progress Notifier - fire-and-forget fan-out of job notices to observers.

Each observer gets its own bounded queue. Publishing never blocks and never
raises; a full queue drops the notice for that observer only.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator, List, Optional

from .models import DoneNotice, ErrorNotice, Notice, ProgressNotice

logger = logging.getLogger(__name__)

DEFAULT_EVENT_QUEUE_SIZE: int = 1000


class ProgressNotifier:
    def __init__(self, queue_size: int = DEFAULT_EVENT_QUEUE_SIZE) -> None:
        self._queue_size = int(queue_size)
        self._subscribers: List["asyncio.Queue[Notice]"] = []

    def subscribe(self) -> "asyncio.Queue[Notice]":
        q: "asyncio.Queue[Notice]" = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: "asyncio.Queue[Notice]") -> None:
        try:
            self._subscribers.remove(q)
        except ValueError:
            pass

    def publish(self, notice: Notice) -> None:
        for q in list(self._subscribers):
            try:
                q.put_nowait(notice)
            except asyncio.QueueFull:
                # drop under pressure
                logger.debug("Observer queue full; dropped %s for job %s", notice.type, notice.job_id)

    # Convenience wrappers used by the controller

    def progress(
        self,
        job_id: str,
        status: str,
        current: int,
        total: Optional[int],
        current_page: Optional[int],
        total_pages: Optional[int],
    ) -> None:
        self.publish(
            ProgressNotice(
                job_id=job_id,
                status=status,
                current=current,
                total=total,
                current_page=current_page,
                total_pages=total_pages,
            )
        )

    def done(self, job_id: str, total: int) -> None:
        self.publish(DoneNotice(job_id=job_id, total=total))

    def error(self, job_id: str, error: str) -> None:
        self.publish(ErrorNotice(job_id=job_id, error=error))

    async def stream(self, job_id: Optional[str] = None) -> AsyncGenerator[Notice, None]:
        """
        Yield notices as they arrive, optionally for one job only.
        When following a single job the stream ends at its done/error notice.
        """
        q = self.subscribe()
        try:
            while True:
                notice = await q.get()
                if job_id is not None and notice.job_id != job_id:
                    continue
                yield notice
                if job_id is not None and notice.type in ("done", "error"):
                    return
        finally:
            self.unsubscribe(q)
