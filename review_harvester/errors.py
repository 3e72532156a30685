"""
Exceptions and the human-readable failure messages published to observers.
"""

from __future__ import annotations


class HarvesterError(Exception):
    """Base error for the harvester service."""


class LocatorUnresolvable(HarvesterError):
    """Raised when the first reviews-page locator cannot be found."""


class SurfaceError(HarvesterError):
    """Raised by the tab driver when a surface cannot be opened or driven."""


class SubmissionError(HarvesterError):
    """Raised when the submission process itself cannot run."""


# -----------------------------
# Observer-facing messages
# -----------------------------

MSG_CHALLENGE = "CAPTCHA detected. Please solve it manually in the open tab, then start again."
MSG_PAGINATION_STUCK = "Pagination stuck: no new reviews or page progress. Stopping."
MSG_LOOP_DETECTED = "Pagination stuck: next page points back to the same page. Stopping."
MSG_SAFETY_LIMIT = "Safety limit reached: more than {max_pages} pages. Stopping."
MSG_NAVIGATION_INTEGRITY = "Tab navigated away from the reviews pages. Stopping."
MSG_SURFACE_CLOSED = "Extraction tab was closed. Extraction cancelled."
MSG_USER_CANCELLED = "Extraction cancelled by user."
MSG_DELIVERY_FAILED = "Failed to send reviews to backend: {reason}"
MSG_LOCATOR_FAILED = "Could not find reviews page: {reason}"
MSG_SURFACE_OPEN_FAILED = "Could not open extraction tab: {reason}"
MSG_NAVIGATION_FAILED = "Navigation to the next reviews page failed: {reason}"
