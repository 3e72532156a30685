from __future__ import annotations

import re
import urllib.parse
from typing import Optional


PAGE_PARAM = "pageNumber"
PRODUCT_ID_PATTERN = re.compile(r"/product-reviews/([A-Z0-9]{10})")


def product_id(url: str) -> Optional[str]:
    m = PRODUCT_ID_PATTERN.search(url or "")
    return m.group(1) if m else None


def normalize_locator(url: str) -> str:
    """
    Canonical comparison key for a reviews-page locator.

    Keeps origin, the product-reviews path and the page number; every other
    query parameter (ref, tracking, filters) is dropped. Only used to detect
    pagination loops, never stored as the locator of record. Input that does
    not parse as an absolute URL comes back unchanged.
    """
    try:
        parsed = urllib.parse.urlsplit(url)
        if not parsed.scheme or not parsed.netloc:
            return url
        query = urllib.parse.parse_qs(parsed.query)
        page = int(query.get(PAGE_PARAM, ["1"])[0])
    except (ValueError, TypeError, AttributeError):
        return url

    pid = product_id(parsed.path)
    path = f"/product-reviews/{pid}" if pid else (parsed.path or "/")
    origin = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
    return f"{origin}{path}?{PAGE_PARAM}={page}"


def same_page(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return normalize_locator(a) == normalize_locator(b)


def is_reviews_page(url: Optional[str]) -> bool:
    try:
        path = urllib.parse.urlsplit(url or "").path
    except ValueError:
        return False
    return "/product-reviews/" in path
