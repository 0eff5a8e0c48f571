# dispatch_engine/infra/pg_dispatch_repo_async.py
"""
Async PostgreSQL store for dispatch jobs and attempts (asyncpg).

``save_record`` writes a job and all of its attempts in one transaction,
guarded by a compare-and-swap on ``dispatch_jobs.version``.
"""
from __future__ import annotations

import json
from dataclasses import replace
from typing import Any, Iterable, Optional

from dispatch_engine.core.dispatch.domain import (
    AttemptStatus,
    DispatchAttempt,
    Job,
    JobRecord,
    JobStatus,
    Location,
    ScopeType,
    context_from_dict,
    context_to_dict,
)
from dispatch_engine.core.dispatch.errors import StaleVersionError
from dispatch_engine.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from dispatch_engine.infra.logging_config import get_logger
from dispatch_engine.infra.metrics import inc_counter

logger = get_logger(__name__)


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job."""
    return Job(
        id=row["id"],
        reference_number=row["reference_number"],
        status=JobStatus(row["status"]),
        urgency=row["urgency"],
        service_category_id=row["service_category_id"],
        location=Location(lat=row["lat"], lng=row["lng"], address=row["address"]),
        region_id=row["region_id"],
        org_id=row["org_id"],
        created_at=row["created_at"],
        assigned_professional_id=row["assigned_professional_id"],
        current_step_index=row["current_step_index"],
        accept_deadline=row["accept_deadline"],
        schedule_deadline=row["schedule_deadline"],
        accepted_at=row["accepted_at"],
        escalated=row["escalated"],
        accept_sla_breached=row["accept_sla_breached"],
        schedule_sla_breached=row["schedule_sla_breached"],
        version=row["version"],
        escalation_context=context_from_dict(_json(row["escalation_context"])),
    )


def _row_to_attempt(row) -> DispatchAttempt:
    return DispatchAttempt(
        id=row["id"],
        job_id=row["job_id"],
        professional_id=row["professional_id"],
        status=AttemptStatus(row["status"]),
        created_at=row["created_at"],
        responded_at=row["responded_at"],
        decline_reason=row["decline_reason"],
        step_index=row["step_index"],
        attempt_number=row["attempt_number"],
        distance_km=row["distance_km"],
        score=row["score"],
    )


def _context_json(job: Job) -> Optional[str]:
    data = context_to_dict(job.escalation_context)
    return json.dumps(data) if data is not None else None


_UPSERT_ATTEMPT = """
    INSERT INTO dispatch_attempts (
        id, job_id, professional_id, status, created_at, responded_at,
        decline_reason, step_index, attempt_number, distance_km, score
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
    ON CONFLICT (id) DO UPDATE SET
        status = EXCLUDED.status,
        responded_at = EXCLUDED.responded_at,
        decline_reason = EXCLUDED.decline_reason
"""


class AsyncPostgresDispatchStore:
    """Job + attempt persistence with optimistic concurrency on the job row."""

    async def create_job(self, job: Job) -> Job:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO dispatch_jobs (
                    id, reference_number, status, urgency, service_category_id,
                    lat, lng, address, region_id, org_id, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                RETURNING *
                """,
                job.id,
                job.reference_number,
                job.status.value,
                job.urgency,
                job.service_category_id,
                job.location.lat,
                job.location.lng,
                job.location.address,
                job.region_id,
                job.org_id,
                job.created_at,
            )
        inc_counter("dispatch_jobs_created_total")
        return _row_to_job(row)

    async def get_record(self, job_id: str) -> Optional[JobRecord]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM dispatch_jobs WHERE id = $1", job_id)
            if row is None:
                return None
            attempt_rows = await conn.fetch(
                "SELECT * FROM dispatch_attempts WHERE job_id = $1 ORDER BY attempt_number",
                job_id,
            )
        return JobRecord(job=_row_to_job(row), attempts=[_row_to_attempt(r) for r in attempt_rows])

    async def find_job_id_for_attempt(self, attempt_id: str) -> Optional[str]:
        async with safe_db_conn() as conn:
            return await conn.fetchval("SELECT job_id FROM dispatch_attempts WHERE id = $1", attempt_id)

    async def list_jobs(
        self,
        *,
        statuses: Optional[Iterable[JobStatus]] = None,
        escalated: Optional[bool] = None,
        sla_breached: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        """Jobs matching every given filter, oldest first."""
        clauses: list[str] = []
        args: list[Any] = []
        if statuses is not None:
            args.append([s.value for s in statuses])
            clauses.append(f"status = ANY(${len(args)}::text[])")
        # Literal predicates so the partial indexes apply
        if escalated is not None:
            clauses.append("escalated" if escalated else "NOT escalated")
        if sla_breached is not None:
            clauses.append("sla_breached" if sla_breached else "NOT sla_breached")

        sql = f"SELECT * FROM dispatch_jobs WHERE {' AND '.join(clauses) or 'TRUE'} ORDER BY created_at, id"
        if limit is not None:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"

        async with safe_db_conn() as conn:
            rows = await conn.fetch(sql, *args)
        return [_row_to_job(r) for r in rows]

    async def list_offers(self, professional_id: str) -> list[tuple[Job, DispatchAttempt]]:
        """PENDING attempts for one professional with their jobs, newest first."""
        async with safe_db_conn() as conn:
            attempt_rows = await conn.fetch(
                """
                SELECT * FROM dispatch_attempts
                WHERE professional_id = $1 AND status = 'PENDING'
                ORDER BY created_at DESC, id
                """,
                professional_id,
            )
            if not attempt_rows:
                return []
            job_rows = await conn.fetch(
                "SELECT * FROM dispatch_jobs WHERE id = ANY($1::text[])",
                sorted({r["job_id"] for r in attempt_rows}),
            )
        jobs = {r["id"]: _row_to_job(r) for r in job_rows}
        return [
            (jobs[r["job_id"]], _row_to_attempt(r))
            for r in attempt_rows
            if r["job_id"] in jobs
        ]

    async def save_record(self, record: JobRecord, *, expected_version: int) -> Job:
        job = record.job

        async with safe_db_conn(autocommit=False) as conn:
            new_version = await conn.fetchval(
                """
                UPDATE dispatch_jobs SET
                    status = $3,
                    assigned_professional_id = $4,
                    current_step_index = $5,
                    accept_deadline = $6,
                    schedule_deadline = $7,
                    accepted_at = $8,
                    escalated = $9,
                    sla_breached = $10,
                    accept_sla_breached = $11,
                    schedule_sla_breached = $12,
                    escalation_context = $13::jsonb,
                    version = version + 1
                WHERE id = $1 AND version = $2
                RETURNING version
                """,
                job.id,
                expected_version,
                job.status.value,
                job.assigned_professional_id,
                job.current_step_index,
                job.accept_deadline,
                job.schedule_deadline,
                job.accepted_at,
                job.escalated,
                job.sla_breached,
                job.accept_sla_breached,
                job.schedule_sla_breached,
                _context_json(job),
            )

            if new_version is None:
                actual = await conn.fetchval("SELECT version FROM dispatch_jobs WHERE id = $1", job.id)
                inc_counter("dispatch_version_conflicts_total")
                raise StaleVersionError(job.id, expected_version, actual)

            if record.attempts:
                await conn.executemany(
                    _UPSERT_ATTEMPT,
                    [
                        (
                            a.id, a.job_id, a.professional_id, a.status.value, a.created_at,
                            a.responded_at, a.decline_reason, a.step_index, a.attempt_number,
                            a.distance_km, a.score,
                        )
                        for a in record.attempts
                    ],
                )

        logger.debug(
            f"Saved job v{new_version} with {len(record.attempts)} attempts",
            extra={"job_id": job.id},
        )
        return replace(job, version=new_version)


class AsyncPostgresPolicySource:
    """Reads one policy row per (key, scope); used behind CachedPolicyResolver."""

    @retry_on_transient_error(max_retries=2)
    async def fetch(self, key: str, scope_type: ScopeType, scope_id: Optional[str]) -> Any:
        async with safe_db_conn() as conn:
            value = await conn.fetchval(
                """
                SELECT value FROM dispatch_policies
                WHERE key = $1 AND scope_type = $2 AND scope_id IS NOT DISTINCT FROM $3
                LIMIT 1
                """,
                key,
                scope_type.value,
                scope_id,
            )
        return _json(value) if value is not None else None


# Global repository instances
_store: AsyncPostgresDispatchStore | None = None
_policy_source: AsyncPostgresPolicySource | None = None


def get_dispatch_store() -> AsyncPostgresDispatchStore:
    global _store
    if _store is None:
        _store = AsyncPostgresDispatchStore()
    return _store


def get_policy_source() -> AsyncPostgresPolicySource:
    global _policy_source
    if _policy_source is None:
        _policy_source = AsyncPostgresPolicySource()
    return _policy_source
