"""
Batch Submitter - hands the collected reviews to the ingestion endpoint.

Records go out in fixed-size chunks. Deliveries inside a chunk run
concurrently; chunks run one after another with a pause in between.
Delivery is best-effort: individual failures are logged and never retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence

import httpx

from .config import (
    DEFAULT_BATCH_DELAY_S,
    DEFAULT_BATCH_SIZE,
    DEFAULT_INGEST_URL,
    DEFAULT_REQUEST_TIMEOUT_S,
)
from .errors import SubmissionError
from .models import Review

logger = logging.getLogger(__name__)


class Deliverer(Protocol):
    async def deliver(self, record: Review) -> None: ...


# -----------------------------
# Ingestion endpoint client
# -----------------------------

class IngestionClient:
    """POSTs one review per call as ``{"text": body, "metadata": review}``."""

    def __init__(
        self,
        url: str = DEFAULT_INGEST_URL,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.timeout = float(timeout)
        self._client = client
        self._owns_client = client is None

    def ensure_ready(self) -> None:
        """Validate the endpoint and open the HTTP client. Raises SubmissionError."""
        try:
            parsed = httpx.URL(self.url)
        except (httpx.InvalidURL, TypeError) as e:
            raise SubmissionError(f"invalid ingestion URL {self.url!r}: {e}") from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise SubmissionError(f"invalid ingestion URL {self.url!r}")

        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=httpx.Timeout(timeout=self.timeout),
                follow_redirects=True,
            )
            self._owns_client = True

    async def deliver(self, record: Review) -> None:
        self.ensure_ready()
        assert self._client is not None

        body = {"text": record.body or "", "metadata": record.model_dump()}
        resp = await self._client.post(self.url, json=body)
        resp.raise_for_status()

        try:
            data: Any = resp.json()
        except ValueError:
            logger.warning(
                "Ingestion response for review %s was not JSON (status=%d)",
                record.id, resp.status_code,
            )
            return
        logger.debug("Ingestion response for review %s: %s", record.id, data)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()


# -----------------------------
# Submitter
# -----------------------------

@dataclass
class SubmitResult:
    ok: bool
    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    batches: List[int] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None


def chunked(records: Sequence[Review], size: int) -> List[Sequence[Review]]:
    size = max(1, int(size))
    return [records[i: i + size] for i in range(0, len(records), size)]


class BatchSubmitter:
    def __init__(
        self,
        deliverer: Deliverer,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay_s: float = DEFAULT_BATCH_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.deliverer = deliverer
        self.batch_size = int(batch_size)
        self.batch_delay_s = float(batch_delay_s)
        self._sleep = sleep

    async def _deliver_one(self, record: Review) -> bool:
        try:
            await self.deliverer.deliver(record)
            return True
        except Exception as e:
            logger.error("Error delivering review %s: %s", record.id, e)
            return False

    async def submit(
        self,
        records: Sequence[Review],
        *,
        should_continue: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> SubmitResult:
        """
        Attempt delivery of every record.

        ``ok`` is False only when submission could not run at all, or when
        ``should_continue`` reported a cancellation before a chunk.
        """
        result = SubmitResult(ok=True)
        try:
            ensure_ready = getattr(self.deliverer, "ensure_ready", None)
            if ensure_ready is not None:
                ensure_ready()

            chunks = chunked(records, self.batch_size)
            for idx, chunk in enumerate(chunks):
                if idx > 0:
                    await self._sleep(self.batch_delay_s)
                if should_continue is not None and not await should_continue():
                    logger.info("Submission cancelled before batch %d/%d", idx + 1, len(chunks))
                    result.ok = False
                    result.cancelled = True
                    return result

                outcomes = await asyncio.gather(*(self._deliver_one(r) for r in chunk))
                delivered = sum(1 for ok in outcomes if ok)
                result.batches.append(len(chunk))
                result.attempted += len(chunk)
                result.delivered += delivered
                result.failed += len(chunk) - delivered
                logger.info(
                    "Batch %d/%d sent: %d delivered, %d failed",
                    idx + 1, len(chunks), delivered, len(chunk) - delivered,
                )
        except SubmissionError as e:
            logger.error("Submission could not run: %s", e)
            return SubmitResult(ok=False, error=str(e))
        except Exception as e:
            logger.exception("Submission aborted")
            return SubmitResult(ok=False, error=f"{type(e).__name__}: {e}")

        return result
