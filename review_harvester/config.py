"""
Runtime settings for the harvester service.

Values come from environment variables prefixed with ``REVIEW_HARVESTER_``
(or a local ``.env`` file) and fall back to the defaults below.
"""

from __future__ import annotations

import logging
import sys
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# -----------------------------
# Tunables / defaults
# -----------------------------

DEFAULT_INGEST_URL: str = "http://localhost:8000/api/analyze"
DEFAULT_STORE_PATH: str = "data/jobs.sqlite3"

DEFAULT_BATCH_SIZE: int = 20
DEFAULT_BATCH_DELAY_S: float = 0.5

DEFAULT_PAGE_DELAY_S: float = 2.0      # pacing before cross-page navigation
DEFAULT_SETTLE_DELAY_S: float = 2.0    # wait after load before scraping
DEFAULT_CLEANUP_GRACE_S: float = 5.0   # done jobs stay visible this long

DEFAULT_MAX_PAGES: int = 100
DEFAULT_STUCK_THRESHOLD: int = 3
DEFAULT_JOB_TTL_SECONDS: int = 60 * 60
DEFAULT_REQUEST_TIMEOUT_S: float = 20.0

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="REVIEW_HARVESTER_",
        env_file=".env",
        extra="ignore",
    )

    # Ingestion endpoint
    ingest_url: str = Field(default=DEFAULT_INGEST_URL)
    request_timeout_s: float = Field(default=DEFAULT_REQUEST_TIMEOUT_S, gt=0)

    # Persistence
    store_path: str = Field(default=DEFAULT_STORE_PATH)
    job_ttl_seconds: int = Field(default=DEFAULT_JOB_TTL_SECONDS, ge=60)

    # Submission pacing
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    batch_delay_s: float = Field(default=DEFAULT_BATCH_DELAY_S, ge=0)

    # Pagination pacing / safety
    page_delay_s: float = Field(default=DEFAULT_PAGE_DELAY_S, ge=0)
    settle_delay_s: float = Field(default=DEFAULT_SETTLE_DELAY_S, ge=0)
    cleanup_grace_s: float = Field(default=DEFAULT_CLEANUP_GRACE_S, ge=0)
    max_pages: int = Field(default=DEFAULT_MAX_PAGES, ge=1)
    stuck_threshold: int = Field(default=DEFAULT_STUCK_THRESHOLD, ge=1)

    # Browser
    headless: bool = Field(
        default=False,
        description="Challenges need a visible window for a human to solve them.",
    )

    log_level: str = Field(default="INFO")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger(__name__).info("Logging initialized (level=%s)", level.upper())
