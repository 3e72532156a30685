import asyncio

import pytest

from review_harvester.models import Job
from review_harvester.store import MemoryJobStore, SqliteJobStore, most_recent_active

from conftest import PRODUCT_URL, reviews


def _job(job_id: str, status: str = "running", started_at: float = 1.0) -> Job:
    return Job(id=job_id, source_url=PRODUCT_URL, status=status, started_at=started_at)


@pytest.mark.asyncio
async def test_memory_store_returns_copies():
    store = MemoryJobStore()
    job = _job("a")
    await store.put(job)

    fetched = await store.get("a")
    fetched.status = "done"

    assert (await store.get("a")).status == "running"


@pytest.mark.asyncio
async def test_sqlite_store_rehydrates_after_restart(tmp_path):
    path = tmp_path / "jobs.sqlite3"
    store = SqliteJobStore(str(path))
    job = _job("a")
    job.records.extend(reviews(0, 3))
    job.seen_ids.update(r.id for r in job.records)
    await store.put(job)
    await store.put(_job("b", status="error"))
    await store.delete("b")
    store.close()

    reopened = SqliteJobStore(str(path))
    try:
        restored = await reopened.get("a")
        assert restored.collected_count == 3
        assert restored.seen_ids == {r.id for r in job.records}
        assert await reopened.get("b") is None
        assert [j.id for j in await reopened.list()] == ["a"]
    finally:
        reopened.close()


def test_most_recent_active_ignores_terminal_jobs():
    jobs = [
        _job("old", "running", 1.0),
        _job("newer", "sending", 5.0),
        _job("newest", "cancelled", 9.0),
    ]
    assert most_recent_active(jobs).id == "newer"
    assert most_recent_active([_job("x", "done")]) is None


@pytest.mark.asyncio
async def test_sqlite_store_concurrent_writes_all_commit(tmp_path):
    path = tmp_path / "jobs.sqlite3"
    store = SqliteJobStore(str(path))
    await asyncio.gather(*(store.put(_job(f"job-{i}")) for i in range(20)))
    await asyncio.gather(*(store.delete(f"job-{i}") for i in range(0, 20, 2)))
    store.close()

    reopened = SqliteJobStore(str(path))
    try:
        ids = sorted(j.id for j in await reopened.list())
        assert ids == sorted(f"job-{i}" for i in range(1, 20, 2))
    finally:
        reopened.close()
