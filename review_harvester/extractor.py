"""
Page Extractor for product-review pages.

Best-effort heuristics over the rendered HTML: the markup changes often and
nothing here is guaranteed to find every review.
"""

from __future__ import annotations

import logging
import math
import re
import urllib.parse
from typing import List, Optional, Protocol

from bs4 import BeautifulSoup

from .browser import TabDriver
from .errors import LocatorUnresolvable
from .models import LocatorResult, PageResult, Review
from .normalizer import PAGE_PARAM, is_reviews_page, product_id

logger = logging.getLogger(__name__)

REVIEWS_PER_PAGE_ESTIMATE: int = 10

_CHALLENGE_MARKERS = (
    re.compile(r"type the characters you see", re.IGNORECASE),
    re.compile(r"enter the characters", re.IGNORECASE),
)

_REVIEWS_LINK_SELECTORS = (
    'a[data-hook="see-all-reviews-link-foot"]',
    'a[href*="/product-reviews/"]',
    'a[data-hook="see-all-reviews-link"]',
)

_NEXT_SELECTORS = (
    ".a-pagination .a-last:not(.a-disabled) a",
    "ul.a-pagination li.a-last:not(.a-disabled) a",
    ".a-pagination li.a-last a",
    'a[aria-label="Next page"]',
)

_RATING_RE = re.compile(r"([0-9.]+) out of 5")
_TOTAL_RE = re.compile(r"([0-9,]+)\s+global ratings?", re.IGNORECASE)


class PageExtractor(Protocol):
    async def discover_locator(self, source_url: str) -> LocatorResult: ...

    async def scrape(self, surface: str) -> PageResult: ...

    async def scrape_url(self, url: str) -> PageResult: ...

    def is_paginated_source(self, url: Optional[str]) -> bool: ...


# -----------------------------
# Parsing helpers
# -----------------------------

def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


def _text(el) -> str:
    return el.get_text(" ", strip=True) if el is not None else ""


def is_product_page(url: str) -> bool:
    path = urllib.parse.urlsplit(url or "").path
    return "/dp/" in path or "/gp/product/" in path


def detect_challenge(soup: BeautifulSoup) -> bool:
    body_text = soup.get_text(" ", strip=True)
    if any(p.search(body_text) for p in _CHALLENGE_MARKERS):
        return True
    return soup.select_one('form[action*="/errors/validateCaptcha"]') is not None


_SECTION_MARKERS = (
    (re.compile(r"from other countries", re.IGNORECASE), "from_other_countries"),
    (re.compile(r"top reviews from", re.IGNORECASE), "from_your_country"),
)


def _review_section(el) -> str:
    # nearest enclosing block that carries a section heading wins
    node = el
    while node is not None and getattr(node, "name", None) != "[document]":
        text = node.get_text(" ")
        for marker, section in _SECTION_MARKERS:
            if marker.search(text):
                return section
        node = node.parent
    return "unknown"


def extract_reviews(soup: BeautifulSoup) -> List[Review]:
    reviews: List[Review] = []
    for el in soup.select("[id^='customer_review-'], [data-hook='review']"):
        title = _text(el.select_one(".review-title-content span, .review-title"))
        body = _text(el.select_one(".review-text-content span, .review-text"))
        if not body and not title:
            continue

        rating: Optional[float] = None
        m = _RATING_RE.search(_text(el.select_one("[data-hook='review-star-rating'] span, .a-icon-alt")))
        if m:
            try:
                rating = float(m.group(1))
            except ValueError:
                rating = None

        reviews.append(
            Review(
                id=el.get("id") or None,
                title=title,
                body=body,
                rating=rating,
                author=_text(el.select_one("[data-hook='review-author']")),
                date=_text(el.select_one("[data-hook='review-date']")),
                section=_review_section(el),
            )
        )
    return reviews


def _total_count(soup: BeautifulSoup) -> Optional[int]:
    m = _TOTAL_RE.search(_text(soup.select_one('[data-hook="cr-filter-info-review-rating-count"]')))
    return int(m.group(1).replace(",", "")) if m else None


def _current_page(soup: BeautifulSoup, url: str) -> int:
    # pagination UI wins over the URL (the site may redirect)
    selected = _text(soup.select_one(".a-pagination .a-selected"))
    if selected.isdigit():
        return int(selected)
    param = urllib.parse.parse_qs(urllib.parse.urlsplit(url).query).get(PAGE_PARAM)
    if param:
        try:
            return int(param[0])
        except ValueError:
            pass
    return 1


def _with_required_params(url: str) -> str:
    parts = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    keys = {k for k, _ in query}
    if "ie" not in keys:
        query.append(("ie", "UTF8"))
    if "reviewerType" not in keys:
        query.append(("reviewerType", "all_reviews"))
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


def _next_locator(soup: BeautifulSoup, url: str) -> Optional[str]:
    if soup.select_one(".a-pagination .a-last.a-disabled") is not None:
        return None

    for sel in _NEXT_SELECTORS:
        a = soup.select_one(sel)
        href = (a.get("href") or "").strip() if a is not None else ""
        if not href:
            continue
        if "pageNumber=" in href or "ref=cm_cr_arp_d_paging" in href:
            return _with_required_params(urllib.parse.urljoin(url, href))
        logger.debug("Next control %s does not look like pagination: %s", sel, href)
    return None


def _total_pages(soup: BeautifulSoup, total_count: Optional[int], has_reviews: bool) -> Optional[int]:
    total_pages: Optional[int] = None
    if total_count and has_reviews:
        total_pages = math.ceil(total_count / REVIEWS_PER_PAGE_ESTIMATE)

    numbers = [
        int(t) for t in (_text(a) for a in soup.select(".a-pagination li:not(.a-disabled) a")) if t.isdigit()
    ]
    if numbers and max(numbers) > 0:
        total_pages = max(numbers)
    return total_pages


def parse_review_page(html: str, url: str) -> PageResult:
    if not is_reviews_page(url):
        return PageResult(error="Not a reviews page")

    soup = _soup(html)
    if detect_challenge(soup):
        return PageResult(challenge_detected=True, error="CAPTCHA detected")

    reviews = extract_reviews(soup)
    total_count = _total_count(soup)
    return PageResult(
        records=reviews,
        total_count=total_count,
        current_page=_current_page(soup, url),
        total_pages=_total_pages(soup, total_count, bool(reviews)),
        next_locator=_next_locator(soup, url),
    )


def find_reviews_locator(html: str, url: str) -> str:
    """Build the first all-reviews page URL from a product page. Raises LocatorUnresolvable."""
    if not is_product_page(url):
        raise LocatorUnresolvable("Not a product page")

    soup = _soup(html)
    href = None
    for sel in _REVIEWS_LINK_SELECTORS:
        a = soup.select_one(sel)
        if a is not None and a.get("href"):
            href = urllib.parse.urljoin(url, a["href"])
            break
    if not href:
        raise LocatorUnresolvable("Could not find reviews link")

    pid = product_id(href)
    if not pid:
        raise LocatorUnresolvable("Could not extract product id from reviews URL")

    parts = urllib.parse.urlsplit(url)
    return (
        f"{parts.scheme}://{parts.netloc}/product-reviews/{pid}"
        "/ref=cm_cr_dp_mb_show_all_top?ie=UTF8&reviewerType=all_reviews"
    )


# -----------------------------
# Extractor
# -----------------------------

def _logged(result: PageResult) -> PageResult:
    logger.info(
        "Scraped %d reviews (page=%s/%s, next=%s)",
        len(result.records), result.current_page, result.total_pages, bool(result.next_locator),
    )
    return result


class HtmlReviewExtractor:
    def __init__(self, driver: TabDriver) -> None:
        self.driver = driver

    def is_paginated_source(self, url: Optional[str]) -> bool:
        return is_reviews_page(url)

    async def discover_locator(self, source_url: str) -> LocatorResult:
        try:
            if not is_product_page(source_url):
                raise LocatorUnresolvable("Not a product page")
            html = await self.driver.fetch_html(source_url)
            locator = find_reviews_locator(html, source_url)
        except Exception as e:
            logger.warning("Reviews locator lookup failed for %s: %s", source_url, e)
            return LocatorResult(error=str(e))
        logger.info("Reviews locator for %s: %s", source_url, locator)
        return LocatorResult(locator=locator)

    async def scrape(self, surface: str) -> PageResult:
        try:
            url = await self.driver.current_url(surface) or ""
            html = await self.driver.content(surface)
            result = parse_review_page(html, url)
        except Exception as e:
            logger.error("Error scraping surface %s: %s", surface, e)
            return PageResult(error=str(e))
        return _logged(result)

    async def scrape_url(self, url: str) -> PageResult:
        """One-off scrape of a single reviews page in a throwaway page."""
        try:
            html = await self.driver.fetch_html(url)
            result = parse_review_page(html, url)
        except Exception as e:
            logger.error("Error scraping %s: %s", url, e)
            return PageResult(error=str(e))
        return _logged(result)
