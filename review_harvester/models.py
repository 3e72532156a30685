from __future__ import annotations

import time
from typing import Annotated, Any, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field


JobStatus = Literal["starting", "running", "sending", "done", "error", "cancelled"]

ACTIVE_STATUSES = ("running", "sending")
TERMINAL_STATUSES = ("done", "error", "cancelled")


# -----------------------------
# Records / jobs
# -----------------------------

class Review(BaseModel):
    """One extracted review. ``id`` may be missing when the page omits it."""

    id: Optional[str] = None
    title: str = ""
    body: str = ""
    rating: Optional[float] = None
    author: str = ""
    date: str = ""
    section: str = "unknown"


class Job(BaseModel):
    id: str
    status: JobStatus = "starting"
    source_url: str
    surface_handle: Optional[str] = None

    total_count: Optional[int] = None
    total_pages: Optional[int] = None
    current_page: Optional[int] = None

    records: List[Review] = Field(default_factory=list)
    seen_ids: Set[str] = Field(default_factory=set)
    last_locator: Optional[str] = None
    stuck_count: int = 0

    error: Optional[str] = None
    started_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    cancelled_at: Optional[float] = None

    @property
    def collected_count(self) -> int:
        return len(self.records)

    def touch(self) -> None:
        self.updated_at = time.time()

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot(
            job_id=self.id,
            status=self.status,
            source_url=self.source_url,
            collected_count=self.collected_count,
            total_count=self.total_count,
            current_page=self.current_page,
            total_pages=self.total_pages,
            stuck_count=self.stuck_count,
            error=self.error,
            started_at=self.started_at,
            updated_at=self.updated_at,
            cancelled_at=self.cancelled_at,
        )


# -----------------------------
# Extractor contracts
# -----------------------------

class PageResult(BaseModel):
    """What the page extractor reports for one loaded reviews page."""

    records: List[Review] = Field(default_factory=list)
    total_count: Optional[int] = None
    current_page: Optional[int] = None
    total_pages: Optional[int] = None
    next_locator: Optional[str] = None
    challenge_detected: bool = False
    error: Optional[str] = None


class LocatorResult(BaseModel):
    locator: Optional[str] = None
    error: Optional[str] = None


# -----------------------------
# Inbound controller events
# -----------------------------

class SurfaceNavigated(BaseModel):
    type: Literal["surface_navigated"] = "surface_navigated"
    surface: str


class SurfaceClosed(BaseModel):
    type: Literal["surface_closed"] = "surface_closed"
    surface: str


class PageScraped(BaseModel):
    type: Literal["page_scraped"] = "page_scraped"
    job_id: str
    result: PageResult


ControllerEvent = Annotated[
    Union[SurfaceNavigated, SurfaceClosed, PageScraped],
    Field(discriminator="type"),
]


# -----------------------------
# Observer notifications
# -----------------------------

class ProgressNotice(BaseModel):
    type: Literal["progress"] = "progress"
    job_id: str
    status: str
    current: int
    total: Optional[int] = None
    current_page: Optional[int] = None
    total_pages: Optional[int] = None


class DoneNotice(BaseModel):
    type: Literal["done"] = "done"
    job_id: str
    total: int


class ErrorNotice(BaseModel):
    type: Literal["error"] = "error"
    job_id: str
    error: str


Notice = Annotated[
    Union[ProgressNotice, DoneNotice, ErrorNotice],
    Field(discriminator="type"),
]


# -----------------------
# HTTP request / response models
# -----------------------

class StartRequest(BaseModel):
    source_url: str


class StartResponse(BaseModel):
    job_id: str


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool


class QuickExtractResponse(BaseModel):
    """Outcome of a one-page extraction; no job is created."""

    ok: bool
    locator: Optional[str] = None
    extracted: int = 0
    delivered: int = 0
    failed: int = 0
    error: Optional[str] = None


class JobSnapshot(BaseModel):
    job_id: str
    status: JobStatus
    source_url: str
    collected_count: int
    total_count: Optional[int] = None
    current_page: Optional[int] = None
    total_pages: Optional[int] = None
    stuck_count: int = 0
    error: Optional[str] = None
    started_at: float
    updated_at: float
    cancelled_at: Optional[float] = None


class AnalyzeRequest(BaseModel):
    # Validated by hand in the route so a non-string text yields a 400
    text: Any = None
    metadata: Optional[dict] = None


class HeuristicResult(BaseModel):
    name: str
    score: float
    passed: bool
    details: Optional[str] = None


class AnalyzeResponse(BaseModel):
    ok: bool
    heuristics: List[HeuristicResult]
