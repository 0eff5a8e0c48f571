# tests/test_memory_store.py
"""Tests for the in-memory job store"""
from datetime import timedelta

import pytest

from dispatch_engine.core.dispatch.domain import AttemptStatus, DispatchAttempt, JobRecord, JobStatus
from dispatch_engine.core.dispatch.errors import StaleVersionError
from dispatch_engine.infra.memory_store import InMemoryDispatchStore

from helpers import START, make_job


def attempt(attempt_id="att-1", job_id="job-1", professional_id="pro-a", status=AttemptStatus.PENDING, created_at=START):
    return DispatchAttempt(
        id=attempt_id,
        job_id=job_id,
        professional_id=professional_id,
        status=status,
        created_at=created_at,
        step_index=0,
        attempt_number=1,
    )


class TestInMemoryDispatchStore:
    @pytest.mark.asyncio
    async def test_create_and_read(self):
        store = InMemoryDispatchStore()
        await store.create_job(make_job())

        record = await store.get_record("job-1")

        assert record.job.status == JobStatus.DRAFT
        assert record.attempts == []
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self):
        store = InMemoryDispatchStore()
        await store.create_job(make_job())
        with pytest.raises(ValueError):
            await store.create_job(make_job())

    @pytest.mark.asyncio
    async def test_missing_job(self):
        assert await InMemoryDispatchStore().get_record("nope") is None

    @pytest.mark.asyncio
    async def test_save_bumps_version_and_indexes_attempts(self):
        store = InMemoryDispatchStore()
        await store.create_job(make_job())
        record = await store.get_record("job-1")
        record.job.status = JobStatus.DISPATCHED
        record.attempts.append(attempt())

        saved = await store.save_record(record, expected_version=0)

        assert saved.version == 1
        assert await store.find_job_id_for_attempt("att-1") == "job-1"
        assert (await store.get_record("job-1")).job.status == JobStatus.DISPATCHED

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self):
        store = InMemoryDispatchStore()
        await store.create_job(make_job())
        first = await store.get_record("job-1")
        second = await store.get_record("job-1")

        await store.save_record(first, expected_version=0)

        with pytest.raises(StaleVersionError) as exc_info:
            await store.save_record(second, expected_version=0)
        assert exc_info.value.actual == 1

    @pytest.mark.asyncio
    async def test_readers_get_independent_copies(self):
        store = InMemoryDispatchStore()
        await store.create_job(make_job())

        record = await store.get_record("job-1")
        record.job.escalated = True
        record.attempts.append(attempt())

        fresh = await store.get_record("job-1")
        assert fresh.job.escalated is False
        assert fresh.attempts == []

    @pytest.mark.asyncio
    async def test_save_of_unknown_job(self):
        store = InMemoryDispatchStore()
        with pytest.raises(StaleVersionError):
            await store.save_record(JobRecord(job=make_job("ghost")), expected_version=0)


async def stored(store, job_id, *, attempts=(), **fields):
    """Create a job, then save it with ``fields`` set and ``attempts`` attached."""
    await store.create_job(make_job(job_id, created_at=fields.pop("created_at", START)))
    record = await store.get_record(job_id)
    for name, value in fields.items():
        setattr(record.job, name, value)
    record.attempts.extend(attempts)
    await store.save_record(record, expected_version=0)


class TestListings:
    @pytest.mark.asyncio
    async def test_list_jobs_filters(self):
        store = InMemoryDispatchStore()
        await stored(store, "job-1", status=JobStatus.DISPATCHED, escalated=True)
        await stored(store, "job-2", status=JobStatus.ACCEPTED, schedule_sla_breached=True)
        await stored(store, "job-3", status=JobStatus.COMPLETED)

        escalated = await store.list_jobs(escalated=True)
        breached = await store.list_jobs(sla_breached=True)
        active = await store.list_jobs(statuses=[JobStatus.DISPATCHED, JobStatus.ACCEPTED])

        assert [j.id for j in escalated] == ["job-1"]
        assert [j.id for j in breached] == ["job-2"]
        assert [j.id for j in active] == ["job-1", "job-2"]

    @pytest.mark.asyncio
    async def test_list_jobs_oldest_first_with_limit(self):
        store = InMemoryDispatchStore()
        await stored(store, "job-b", created_at=START + timedelta(minutes=5))
        await stored(store, "job-a", created_at=START + timedelta(minutes=10))
        await stored(store, "job-c", created_at=START)

        jobs = await store.list_jobs(limit=2)

        assert [j.id for j in jobs] == ["job-c", "job-b"]

    @pytest.mark.asyncio
    async def test_list_offers_only_pending_newest_first(self):
        store = InMemoryDispatchStore()
        await stored(store, "job-1", status=JobStatus.DISPATCHED, attempts=[
            attempt("att-1", "job-1"),
            attempt("att-2", "job-1", professional_id="pro-b"),
        ])
        await stored(store, "job-2", status=JobStatus.DISPATCHED, attempts=[
            attempt("att-3", "job-2", created_at=START + timedelta(minutes=3)),
        ])
        await stored(store, "job-3", status=JobStatus.DISPATCHED, attempts=[
            attempt("att-4", "job-3", status=AttemptStatus.TIMEOUT),
        ])

        offers = await store.list_offers("pro-a")

        assert [(job.id, a.id) for job, a in offers] == [("job-2", "att-3"), ("job-1", "att-1")]
        assert await store.list_offers("pro-z") == []
