from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse

from .analyze import run_heuristics
from .browser import PlaywrightTabDriver
from .config import Settings, get_settings, setup_logging
from .controller import JobController
from .extractor import HtmlReviewExtractor
from .models import (
    AnalyzeRequest,
    AnalyzeResponse,
    CancelResponse,
    JobSnapshot,
    QuickExtractResponse,
    StartRequest,
    StartResponse,
)
from .notifier import ProgressNotifier
from .store import SqliteJobStore
from .submitter import BatchSubmitter, IngestionClient

logger = logging.getLogger(__name__)


def build_controller(settings: Settings) -> JobController:
    driver = PlaywrightTabDriver(headless=settings.headless)
    submitter = BatchSubmitter(
        IngestionClient(settings.ingest_url, timeout=settings.request_timeout_s),
        batch_size=settings.batch_size,
        batch_delay_s=settings.batch_delay_s,
    )
    return JobController(
        SqliteJobStore(settings.store_path),
        driver,
        HtmlReviewExtractor(driver),
        submitter,
        ProgressNotifier(),
        page_delay_s=settings.page_delay_s,
        settle_delay_s=settings.settle_delay_s,
        cleanup_grace_s=settings.cleanup_grace_s,
        max_pages=settings.max_pages,
        stuck_threshold=settings.stuck_threshold,
        job_ttl_seconds=settings.job_ttl_seconds,
    )


async def _shutdown(controller: JobController) -> None:
    await controller.aclose()
    deliverer = controller.submitter.deliverer
    if isinstance(deliverer, IngestionClient):
        await deliverer.aclose()
    if isinstance(controller.driver, PlaywrightTabDriver):
        await controller.driver.stop()
    if isinstance(controller.store, SqliteJobStore):
        controller.store.close()


def create_app(controller: Optional[JobController] = None) -> FastAPI:
    """
    Build the API. Without an explicit controller one is assembled from
    settings when the app starts (browser, sqlite store, ingestion client).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = controller is None
        if owned:
            settings = get_settings()
            setup_logging(settings.log_level)
            app.state.controller = build_controller(settings)
        else:
            app.state.controller = controller
        app.state.controller.start_background()
        yield
        if owned:
            await _shutdown(app.state.controller)
        else:
            await app.state.controller.aclose()

    app = FastAPI(title="review-harvester", lifespan=lifespan)

    def _controller() -> JobController:
        return app.state.controller

    # -----------------------
    # Basic endpoints
    # -----------------------

    @app.get("/")
    def home() -> dict:
        return {"status": "ok", "message": "Review harvester running"}

    # ----------------------------------------------------------
    # Extraction jobs
    # ----------------------------------------------------------

    @app.post("/api/extractions", response_model=StartResponse)
    async def start_extraction(payload: StartRequest) -> StartResponse:
        job_id = await _controller().start(payload.source_url)
        return StartResponse(job_id=job_id)

    @app.post("/api/extractions/quick", response_model=QuickExtractResponse)
    async def quick_extraction(payload: StartRequest) -> QuickExtractResponse:
        """Scrape and deliver one reviews page without starting a job."""
        outcome = await _controller().quick_extract(payload.source_url)
        if not outcome.ok:
            raise HTTPException(status_code=502, detail=outcome.error)
        return outcome

    @app.get("/api/extractions", response_model=List[JobSnapshot])
    async def list_extractions() -> List[JobSnapshot]:
        return [j.snapshot() for j in await _controller().list_jobs()]

    # declared before /{job_id} so "active" is not taken for an id
    @app.get("/api/extractions/active", response_model=JobSnapshot)
    async def active_extraction() -> JobSnapshot:
        job = await _controller().active_job()
        if job is None:
            raise HTTPException(status_code=404, detail="no running extraction")
        return job.snapshot()

    @app.get("/api/extractions/{job_id}", response_model=JobSnapshot)
    async def extraction_status(job_id: str) -> JobSnapshot:
        job = await _controller().get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job_id not found")
        return job.snapshot()

    @app.post("/api/extractions/{job_id}/cancel", response_model=CancelResponse)
    async def cancel_extraction(job_id: str) -> CancelResponse:
        ctl = _controller()
        if await ctl.get_job(job_id) is None:
            raise HTTPException(status_code=404, detail="job_id not found")
        cancelled = await ctl.cancel(job_id)
        return CancelResponse(job_id=job_id, cancelled=cancelled)

    @app.get("/api/events")
    async def events(job_id: Optional[str] = Query(default=None)) -> StreamingResponse:
        """NDJSON stream of progress/done/error notices."""

        async def body():
            async for notice in _controller().notifier.stream(job_id):
                yield notice.model_dump_json() + "\n"

        return StreamingResponse(body(), media_type="application/x-ndjson")

    # ----------------------------------------------------------
    # Local ingestion endpoint (development stand-in)
    # ----------------------------------------------------------

    @app.post("/api/analyze", response_model=AnalyzeResponse)
    async def analyze(payload: AnalyzeRequest) -> AnalyzeResponse:
        if not isinstance(payload.text, str):
            raise HTTPException(status_code=400, detail="`text` field (string) is required in the body")
        return AnalyzeResponse(ok=True, heuristics=run_heuristics(payload.text))

    return app


app = create_app()
