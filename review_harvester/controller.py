"""
Job Controller - drives one extraction job per surface from the first reviews
page to final delivery.

State machine:
    starting -> running -> sending -> done
    starting/running/sending -> cancelled
    starting/running/sending -> error

Every state change is persisted through the job store before observers are
told about it. Mutations of one job are serialised by a per-job lock; the
slow parts (pacing delays, page loads, delivery) run outside it so a cancel
is never blocked behind them.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Coroutine, Dict, List, Optional, Set, assert_never

from . import errors
from .browser import TabDriver
from .config import (
    DEFAULT_CLEANUP_GRACE_S,
    DEFAULT_JOB_TTL_SECONDS,
    DEFAULT_MAX_PAGES,
    DEFAULT_PAGE_DELAY_S,
    DEFAULT_SETTLE_DELAY_S,
    DEFAULT_STUCK_THRESHOLD,
)
from .errors import SurfaceError
from .extractor import PageExtractor
from .models import (
    TERMINAL_STATUSES,
    ControllerEvent,
    Job,
    PageResult,
    PageScraped,
    QuickExtractResponse,
    SurfaceClosed,
    SurfaceNavigated,
)
from .normalizer import same_page
from .notifier import ProgressNotifier
from .pagination import StuckDetector, merge_records
from .store import JobStore, most_recent_active
from .submitter import BatchSubmitter

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = ("starting", "running", "sending")
CLEANUP_INTERVAL_S: float = 30.0


class JobController:
    def __init__(
        self,
        store: JobStore,
        driver: TabDriver,
        extractor: PageExtractor,
        submitter: BatchSubmitter,
        notifier: Optional[ProgressNotifier] = None,
        *,
        page_delay_s: float = DEFAULT_PAGE_DELAY_S,
        settle_delay_s: float = DEFAULT_SETTLE_DELAY_S,
        cleanup_grace_s: float = DEFAULT_CLEANUP_GRACE_S,
        max_pages: int = DEFAULT_MAX_PAGES,
        stuck_threshold: int = DEFAULT_STUCK_THRESHOLD,
        job_ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.driver = driver
        self.extractor = extractor
        self.submitter = submitter
        self.notifier = notifier or ProgressNotifier()

        self.page_delay_s = float(page_delay_s)
        self.settle_delay_s = float(settle_delay_s)
        self.cleanup_grace_s = float(cleanup_grace_s)
        self.max_pages = int(max_pages)
        self.job_ttl_seconds = int(job_ttl_seconds)
        self.stuck = StuckDetector(stuck_threshold)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._scraping: Set[str] = set()
        self._cleanup_task: Optional[asyncio.Task] = None

        self.driver.set_listener(self.dispatch)

    # -----------------------------
    # Plumbing
    # -----------------------------

    @asynccontextmanager
    async def _locked(self, job_id: str) -> AsyncIterator[None]:
        """Hold the job's lock. The lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[job_id] -= 1
            if not self._lock_users[job_id]:
                del self._lock_users[job_id]
                self._locks.pop(job_id, None)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    async def wait_idle(self) -> None:
        """Wait until no deferred action is pending (used by tests and shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def start_background(self) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_jobs_loop())

    async def aclose(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        for t in list(self._tasks):
            t.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _job_for_surface(self, surface: str) -> Optional[Job]:
        for job in await self.store.list():
            if job.surface_handle == surface:
                return job
        return None

    async def _save(self, job: Job) -> None:
        job.touch()
        await self.store.put(job)

    def _notify_progress(self, job: Job, status: str) -> None:
        self.notifier.progress(
            job.id,
            status,
            job.collected_count,
            job.total_count,
            job.current_page,
            job.total_pages,
        )

    async def _release_surface(self, job: Job) -> None:
        """Close the job's surface once; later calls are no-ops."""
        surface = job.surface_handle
        if not surface:
            return
        job.surface_handle = None
        await self._save(job)
        try:
            await self.driver.close(surface)
        except Exception as e:
            logger.warning("Job %s: closing surface %s failed: %s", job.id, surface, e)

    async def _fail_locked(self, job: Job, message: str) -> Job:
        job.status = "error"
        job.error = message
        await self._save(job)
        logger.warning("Job %s failed: %s", job.id, message)
        self.notifier.error(job.id, message)
        await self._release_surface(job)
        await self.store.delete(job.id)
        return job

    async def _fail(self, job_id: str, message: str) -> Optional[Job]:
        async with self._locked(job_id):
            job = await self.store.get(job_id)
            if job is None or job.status in TERMINAL_STATUSES:
                return job
            return await self._fail_locked(job, message)

    # -----------------------------
    # Inbound events
    # -----------------------------

    async def dispatch(self, event: ControllerEvent) -> None:
        if isinstance(event, SurfaceNavigated):
            await self.on_surface_navigation_complete(event.surface)
        elif isinstance(event, SurfaceClosed):
            await self.on_surface_closed_externally(event.surface)
        elif isinstance(event, PageScraped):
            await self.on_page_result(event.job_id, event.result)
        else:
            assert_never(event)

    # -----------------------------
    # Operations
    # -----------------------------

    async def start(self, source_url: str) -> str:
        job = Job(id=uuid.uuid4().hex, source_url=source_url)
        await self.store.put(job)
        logger.info("Job %s starting for %s", job.id, source_url)

        found = await self.extractor.discover_locator(source_url)
        if not found.locator:
            await self._fail(job.id, errors.MSG_LOCATOR_FAILED.format(reason=found.error or "unknown"))
            return job.id

        try:
            surface = await self.driver.open()
        except SurfaceError as e:
            await self._fail(job.id, errors.MSG_SURFACE_OPEN_FAILED.format(reason=e))
            return job.id

        async with self._locked(job.id):
            current = await self.store.get(job.id)
            if current is None or current.status != "starting":
                # cancelled while the surface was opening
                await self.driver.close(surface)
                return job.id
            current.surface_handle = surface
            current.status = "running"
            await self._save(current)
            logger.info("Job %s running on surface %s", job.id, surface)
            self._notify_progress(current, "Extraction started")

        try:
            await self.driver.navigate(surface, found.locator)
        except SurfaceError as e:
            await self._fail(job.id, errors.MSG_NAVIGATION_FAILED.format(reason=e))
        return job.id

    async def on_page_result(self, job_id: str, result: PageResult) -> Optional[Job]:
        next_locator: Optional[str] = None
        finalize = False

        async with self._locked(job_id):
            job = await self.store.get(job_id)
            if job is None:
                logger.debug("Page result for unknown job %s ignored", job_id)
                return None
            if job.status != "running":
                logger.info("Page result for job %s in status %s ignored", job_id, job.status)
                return job

            if result.challenge_detected:
                # surface stays open so a human can solve the challenge
                job.status = "error"
                job.error = errors.MSG_CHALLENGE
                await self._save(job)
                logger.warning("Job %s: challenge detected on page %s", job_id, result.current_page)
                self.notifier.error(job_id, errors.MSG_CHALLENGE)
                return job

            if result.error:
                return await self._fail_locked(job, result.error)

            added, duplicates = merge_records(job, result.records)
            logger.info(
                "Job %s: %d new reviews, %d duplicates (total %d)",
                job_id, len(added), len(duplicates), job.collected_count,
            )
            if self.stuck.record_merge(job, len(result.records), len(added)):
                return await self._fail_locked(job, errors.MSG_PAGINATION_STUCK)

            if result.total_count is not None and job.total_count is None:
                job.total_count = result.total_count

            if result.current_page is not None:
                if self.stuck.record_page_number(job, result.current_page):
                    return await self._fail_locked(job, errors.MSG_PAGINATION_STUCK)

            if result.total_pages is not None and job.total_pages is None:
                job.total_pages = result.total_pages

            await self._save(job)
            self._notify_progress(job, "Extracting reviews...")

            if result.next_locator and job.status == "running":
                if job.current_page is not None and job.current_page > self.max_pages:
                    return await self._fail_locked(
                        job, errors.MSG_SAFETY_LIMIT.format(max_pages=self.max_pages)
                    )
                if same_page(result.next_locator, job.last_locator):
                    return await self._fail_locked(job, errors.MSG_LOOP_DETECTED)
                job.last_locator = result.next_locator
                await self._save(job)
                next_locator = result.next_locator
            elif not result.next_locator:
                finalize = True

        if next_locator:
            self._spawn(self._navigate_after_delay(job_id, next_locator))
            return job
        if finalize:
            return await self.finalize(job_id)
        return job

    async def _navigate_after_delay(self, job_id: str, locator: str) -> None:
        await asyncio.sleep(self.page_delay_s)

        async with self._locked(job_id):
            job = await self.store.get(job_id)
            if job is None or job.status != "running" or not job.surface_handle:
                logger.info("Job %s no longer running; navigation to %s skipped", job_id, locator)
                return
            surface = job.surface_handle

        logger.info("Job %s: navigating to %s", job_id, locator)
        try:
            await self.driver.navigate(surface, locator)
        except SurfaceError as e:
            await self._fail(job_id, errors.MSG_NAVIGATION_FAILED.format(reason=e))

    async def finalize(self, job_id: str) -> Optional[Job]:
        async with self._locked(job_id):
            job = await self.store.get(job_id)
            if job is None or job.status != "running":
                return job
            job.status = "sending"
            await self._save(job)
            records = list(job.records)
            logger.info("Job %s: submitting %d reviews", job_id, len(records))
            self._notify_progress(job, f"Sending {len(records)} reviews to backend...")

        async def still_sending() -> bool:
            current = await self.store.get(job_id)
            return current is not None and current.status == "sending"

        outcome = await self.submitter.submit(records, should_continue=still_sending)

        async with self._locked(job_id):
            job = await self.store.get(job_id)
            if job is None or job.status != "sending":
                logger.info("Job %s left sending during submission; result discarded", job_id)
                return job

            if not outcome.ok:
                # TODO: collected reviews are dropped here; keep them for a retry once delivery can be resumed
                return await self._fail_locked(
                    job, errors.MSG_DELIVERY_FAILED.format(reason=outcome.error or "unknown")
                )

            job.status = "done"
            await self._save(job)
            logger.info(
                "Job %s done: %d reviews (%d delivered, %d failed)",
                job_id, job.collected_count, outcome.delivered, outcome.failed,
            )
            self.notifier.done(job_id, job.collected_count)
            await self._release_surface(job)

        self._spawn(self._remove_after_grace(job_id))
        return job

    async def _remove_after_grace(self, job_id: str) -> None:
        await asyncio.sleep(self.cleanup_grace_s)
        async with self._locked(job_id):
            job = await self.store.get(job_id)
            if job is not None and job.status == "done":
                await self.store.delete(job_id)

    async def cancel(self, job_id: str) -> bool:
        async with self._locked(job_id):
            job = await self.store.get(job_id)
            if job is None:
                return False
            if job.status == "error" and job.surface_handle:
                # challenge left the surface open; close it, the job stays failed
                await self._release_surface(job)
                logger.info("Job %s: surface of failed job released by user", job_id)
                return True
            if job.status not in CANCELLABLE_STATUSES:
                logger.info("Job %s is %s; cancel ignored", job_id, job.status)
                return False

            job.status = "cancelled"
            job.cancelled_at = time.time()
            await self._save(job)
            await self._release_surface(job)
            logger.info("Job %s cancelled by user", job_id)
            self.notifier.error(job_id, errors.MSG_USER_CANCELLED)
            await self.store.delete(job_id)
        return True

    async def on_surface_closed_externally(self, surface: str) -> None:
        owner = await self._job_for_surface(surface)
        if owner is None:
            return

        async with self._locked(owner.id):
            job = await self.store.get(owner.id)
            if job is None or job.surface_handle != surface:
                return
            # the surface is already gone; nothing to release
            job.surface_handle = None
            if job.status != "running":
                await self._save(job)
                return

            job.status = "cancelled"
            job.cancelled_at = time.time()
            await self._save(job)
            logger.warning("Job %s: surface %s closed externally", job.id, surface)
            self.notifier.error(job.id, errors.MSG_SURFACE_CLOSED)
            await self.store.delete(job.id)

    async def on_surface_navigation_complete(self, surface: str) -> None:
        job = await self._job_for_surface(surface)
        if job is None or job.status != "running":
            return

        url = await self.driver.current_url(surface)
        if not url or url == "about:blank":
            return
        if not self.extractor.is_paginated_source(url):
            await self._fail(job.id, errors.MSG_NAVIGATION_INTEGRITY)
            return
        if job.id in self._scraping:
            logger.debug("Job %s: scrape already outstanding; load event ignored", job.id)
            return

        self._scraping.add(job.id)
        self._spawn(self._scrape_after_settle(job.id, surface))

    async def _scrape_after_settle(self, job_id: str, surface: str) -> None:
        try:
            await asyncio.sleep(self.settle_delay_s)
            job = await self.store.get(job_id)
            if job is None or job.status != "running" or job.surface_handle != surface:
                return
            result = await self.extractor.scrape(surface)
            await self.dispatch(PageScraped(job_id=job_id, result=result))
        finally:
            self._scraping.discard(job_id)

    # -----------------------------
    # Quick extraction
    # -----------------------------

    async def quick_extract(self, source_url: str) -> QuickExtractResponse:
        """
        Scrape a single reviews page and deliver what it holds.

        ``source_url`` may be a reviews page or a product page (its first
        reviews page is used). No job or surface is created and there is no
        pagination.
        """
        locator = source_url
        if not self.extractor.is_paginated_source(source_url):
            found = await self.extractor.discover_locator(source_url)
            if not found.locator:
                return QuickExtractResponse(
                    ok=False, error=errors.MSG_LOCATOR_FAILED.format(reason=found.error or "unknown")
                )
            locator = found.locator

        result = await self.extractor.scrape_url(locator)
        if result.challenge_detected or result.error:
            logger.warning("Quick extraction of %s failed: %s", locator, result.error)
            return QuickExtractResponse(ok=False, locator=locator, error=result.error or errors.MSG_CHALLENGE)

        seen: Set[str] = set()
        records = []
        for rec in result.records:
            if rec.id is not None:
                if rec.id in seen:
                    continue
                seen.add(rec.id)
            records.append(rec)

        logger.info("Quick extraction of %s: submitting %d reviews", locator, len(records))
        outcome = await self.submitter.submit(records)
        if not outcome.ok:
            return QuickExtractResponse(
                ok=False,
                locator=locator,
                extracted=len(records),
                error=errors.MSG_DELIVERY_FAILED.format(reason=outcome.error or "unknown"),
            )
        return QuickExtractResponse(
            ok=True,
            locator=locator,
            extracted=len(records),
            delivered=outcome.delivered,
            failed=outcome.failed,
        )

    # -----------------------------
    # Queries
    # -----------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get(job_id)

    async def list_jobs(self) -> List[Job]:
        return await self.store.list()

    async def active_job(self) -> Optional[Job]:
        return most_recent_active(await self.store.list())

    # -----------------------------
    # Cleanup
    # -----------------------------

    async def purge_stale(self, now: Optional[float] = None) -> List[str]:
        """Drop terminal jobs untouched for longer than the TTL."""
        cutoff = (now if now is not None else time.time()) - self.job_ttl_seconds
        purged: List[str] = []
        for stale in await self.store.list():
            if stale.status not in TERMINAL_STATUSES or stale.updated_at >= cutoff:
                continue
            async with self._locked(stale.id):
                job = await self.store.get(stale.id)
                if job is None:
                    continue
                await self._release_surface(job)
                await self.store.delete(job.id)
            purged.append(stale.id)
        if purged:
            logger.info("Purged %d stale jobs", len(purged))
        return purged

    async def _cleanup_jobs_loop(self) -> None:
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL_S)
            try:
                await self.purge_stale()
            except Exception:
                logger.exception("Job cleanup failed")
