# dispatch_engine/infra/memory_store.py
"""
In-memory job store with the same contract as the Postgres store.

Records are deep-copied on the way in and out, so callers never share
mutable state with the store or with each other.  Used by tests, the
simulation example and single-process dev runs without a database.
"""
from __future__ import annotations

import copy
from dataclasses import replace
from typing import Iterable, Optional

from dispatch_engine.core.dispatch.domain import DispatchAttempt, Job, JobRecord, JobStatus
from dispatch_engine.core.dispatch.errors import StaleVersionError
from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryDispatchStore:
    def __init__(self):
        self._records: dict[str, JobRecord] = {}
        self._attempt_index: dict[str, str] = {}
        self.saves = 0

    async def create_job(self, job: Job) -> Job:
        if job.id in self._records:
            raise ValueError(f"Job {job.id} already exists")
        self._records[job.id] = JobRecord(job=copy.deepcopy(job))
        return copy.deepcopy(job)

    async def get_record(self, job_id: str) -> Optional[JobRecord]:
        record = self._records.get(job_id)
        return copy.deepcopy(record) if record is not None else None

    async def find_job_id_for_attempt(self, attempt_id: str) -> Optional[str]:
        return self._attempt_index.get(attempt_id)

    async def list_jobs(
        self,
        *,
        statuses: Optional[Iterable[JobStatus]] = None,
        escalated: Optional[bool] = None,
        sla_breached: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [
            r.job for r in self._records.values()
            if (wanted is None or r.job.status in wanted)
            and (escalated is None or r.job.escalated == escalated)
            and (sla_breached is None or r.job.sla_breached == sla_breached)
        ]
        jobs.sort(key=lambda j: (j.created_at, j.id))
        return copy.deepcopy(jobs[:limit] if limit is not None else jobs)

    async def list_offers(self, professional_id: str) -> list[tuple[Job, DispatchAttempt]]:
        offers = [
            (r.job, a)
            for r in self._records.values()
            for a in r.attempts
            if a.professional_id == professional_id and a.is_pending
        ]
        offers.sort(key=lambda pair: pair[1].id)
        offers.sort(key=lambda pair: pair[1].created_at, reverse=True)
        return copy.deepcopy(offers)

    async def save_record(self, record: JobRecord, *, expected_version: int) -> Job:
        job_id = record.job.id
        current = self._records.get(job_id)
        actual = current.job.version if current is not None else None
        if actual != expected_version:
            raise StaleVersionError(job_id, expected_version, actual)

        stored = copy.deepcopy(record)
        stored.job = replace(stored.job, version=expected_version + 1)
        self._records[job_id] = stored
        for attempt in stored.attempts:
            self._attempt_index[attempt.id] = job_id
        self.saves += 1
        return copy.deepcopy(stored.job)

    def __len__(self) -> int:
        return len(self._records)
