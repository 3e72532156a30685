from typing import Dict, List, Optional

import pytest

from review_harvester.controller import JobController
from review_harvester.models import LocatorResult, PageResult, Review, SurfaceNavigated
from review_harvester.normalizer import is_reviews_page
from review_harvester.notifier import ProgressNotifier
from review_harvester.store import MemoryJobStore
from review_harvester.submitter import BatchSubmitter


PRODUCT_URL = "https://www.example.com/Some-Product/dp/B000000001"
FIRST_LOCATOR = (
    "https://www.example.com/product-reviews/B000000001"
    "/ref=cm_cr_dp_mb_show_all_top?ie=UTF8&reviewerType=all_reviews"
)


def page_locator(n: int, ref: str = "cm_cr_arp_d_paging_btm_next") -> str:
    return (
        f"https://www.example.com/product-reviews/B000000001/ref={ref}_{n}"
        f"?ie=UTF8&reviewerType=all_reviews&pageNumber={n}"
    )


def reviews(start: int, count: int) -> List[Review]:
    return [
        Review(id=f"customer_review-R{i:04d}", title=f"Title {i}", body=f"Review body number {i}")
        for i in range(start, start + count)
    ]


class FakeDriver:
    """Tab driver stand-in. With emit_events, navigation reports a page load inline."""

    def __init__(self, emit_events: bool = True) -> None:
        self.emit_events = emit_events
        self.listener = None
        self.urls: Dict[str, str] = {}
        self.opened: List[str] = []
        self.closed: List[str] = []
        self.navigations: List[str] = []

    def set_listener(self, listener) -> None:
        self.listener = listener

    async def open(self) -> str:
        surface = f"surface-{len(self.opened) + 1}"
        self.opened.append(surface)
        self.urls[surface] = "about:blank"
        return surface

    async def navigate(self, surface: str, url: str) -> None:
        self.navigations.append(url)
        self.urls[surface] = url
        if self.emit_events and self.listener is not None:
            await self.listener(SurfaceNavigated(surface=surface))

    async def close(self, surface: str) -> None:
        self.closed.append(surface)
        self.urls.pop(surface, None)

    async def current_url(self, surface: str) -> Optional[str]:
        return self.urls.get(surface)

    async def content(self, surface: str) -> str:
        return ""

    async def fetch_html(self, url: str) -> str:
        return ""


class ScriptedExtractor:
    """Returns queued page results in order."""

    def __init__(self, pages: Optional[List[PageResult]] = None, locator: Optional[LocatorResult] = None) -> None:
        self.pages = list(pages or [])
        self.locator = locator or LocatorResult(locator=FIRST_LOCATOR)
        self.scraped: List[str] = []
        self.fetched: List[str] = []
        self.discovered: List[str] = []

    def is_paginated_source(self, url: Optional[str]) -> bool:
        return is_reviews_page(url)

    async def discover_locator(self, source_url: str) -> LocatorResult:
        self.discovered.append(source_url)
        return self.locator

    async def scrape(self, surface: str) -> PageResult:
        self.scraped.append(surface)
        return self.pages.pop(0)

    async def scrape_url(self, url: str) -> PageResult:
        self.fetched.append(url)
        return self.pages.pop(0)


class RecordingDeliverer:
    def __init__(self, fail_ids=()) -> None:
        self.delivered: List[Review] = []
        self.fail_ids = set(fail_ids)

    async def deliver(self, record: Review) -> None:
        if record.id in self.fail_ids:
            raise RuntimeError("endpoint said no")
        self.delivered.append(record)


async def no_sleep(_seconds: float) -> None:
    return None


def make_controller(
    driver=None,
    extractor=None,
    deliverer=None,
    *,
    store=None,
    page_delay_s: float = 0.0,
    cleanup_grace_s: float = 0.0,
) -> JobController:
    submitter = BatchSubmitter(deliverer or RecordingDeliverer(), sleep=no_sleep)
    return JobController(
        store or MemoryJobStore(),
        driver or FakeDriver(emit_events=False),
        extractor or ScriptedExtractor(),
        submitter,
        ProgressNotifier(),
        page_delay_s=page_delay_s,
        settle_delay_s=0.0,
        cleanup_grace_s=cleanup_grace_s,
    )


def drain(q) -> list:
    out = []
    while not q.empty():
        out.append(q.get_nowait())
    return out


@pytest.fixture
def driver():
    return FakeDriver(emit_events=False)


@pytest.fixture
def deliverer():
    return RecordingDeliverer()
