import asyncio
import json
import logging

import httpx
import pytest

from review_harvester.errors import SubmissionError
from review_harvester.submitter import BatchSubmitter, IngestionClient, chunked

from conftest import RecordingDeliverer, reviews


class SleepRecorder:
    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def test_chunked_keeps_remainder():
    assert [len(c) for c in chunked(reviews(0, 45), 20)] == [20, 20, 5]
    assert chunked([], 20) == []


@pytest.mark.asyncio
async def test_submit_paces_fixed_size_batches():
    sleep = SleepRecorder()
    deliverer = RecordingDeliverer()
    submitter = BatchSubmitter(deliverer, batch_size=20, batch_delay_s=0.5, sleep=sleep)

    result = await submitter.submit(reviews(0, 45))

    assert result.ok
    assert result.batches == [20, 20, 5]
    assert result.delivered == 45
    assert sleep.calls == [0.5, 0.5]
    assert [r.id for r in deliverer.delivered] == [r.id for r in reviews(0, 45)]


@pytest.mark.asyncio
async def test_individual_failures_do_not_abort():
    deliverer = RecordingDeliverer(fail_ids={"customer_review-R0003", "customer_review-R0030"})
    submitter = BatchSubmitter(deliverer, sleep=SleepRecorder())

    result = await submitter.submit(reviews(0, 45))

    assert result.ok
    assert result.attempted == 45
    assert result.failed == 2
    assert len(deliverer.delivered) == 43


@pytest.mark.asyncio
async def test_deliveries_within_a_batch_run_concurrently():
    class Tracking:
        def __init__(self) -> None:
            self.in_flight = 0
            self.peak = 0

        async def deliver(self, record) -> None:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            await asyncio.sleep(0)
            self.in_flight -= 1

    deliverer = Tracking()
    submitter = BatchSubmitter(deliverer, batch_size=20, sleep=SleepRecorder())

    await submitter.submit(reviews(0, 25))

    assert deliverer.peak == 20


@pytest.mark.asyncio
async def test_should_continue_stops_between_batches():
    deliverer = RecordingDeliverer()
    submitter = BatchSubmitter(deliverer, batch_size=10, sleep=SleepRecorder())
    calls = []

    async def should_continue() -> bool:
        calls.append(1)
        return len(calls) < 2

    result = await submitter.submit(reviews(0, 30), should_continue=should_continue)

    assert not result.ok
    assert result.cancelled
    assert len(deliverer.delivered) == 10


@pytest.mark.asyncio
async def test_invalid_endpoint_is_fatal():
    submitter = BatchSubmitter(IngestionClient("not a url"), sleep=SleepRecorder())

    result = await submitter.submit(reviews(0, 3))

    assert not result.ok
    assert result.delivered == 0
    assert "invalid ingestion URL" in result.error


def test_ensure_ready_rejects_non_http_scheme():
    with pytest.raises(SubmissionError):
        IngestionClient("ftp://example.com/ingest").ensure_ready()


# -----------------------------
# IngestionClient over a mock transport
# -----------------------------

@pytest.mark.asyncio
async def test_client_posts_text_and_metadata():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    ingest = IngestionClient("http://ingest.local/api/analyze", client=client)

    record = reviews(0, 1)[0]
    await ingest.deliver(record)
    await client.aclose()

    assert seen[0]["text"] == record.body
    assert seen[0]["metadata"]["id"] == record.id
    assert seen[0]["metadata"]["title"] == record.title


@pytest.mark.asyncio
async def test_client_tolerates_non_json_response(caplog):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, text="accepted")))
    ingest = IngestionClient("http://ingest.local/api/analyze", client=client)

    with caplog.at_level(logging.WARNING, logger="review_harvester.submitter"):
        await ingest.deliver(reviews(0, 1)[0])
    await client.aclose()

    assert "was not JSON" in caplog.text


@pytest.mark.asyncio
async def test_client_raises_on_server_error():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    ingest = IngestionClient("http://ingest.local/api/analyze", client=client)

    with pytest.raises(httpx.HTTPStatusError):
        await ingest.deliver(reviews(0, 1)[0])
    await client.aclose()
