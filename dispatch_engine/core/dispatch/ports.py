# dispatch_engine/core/dispatch/ports.py
from __future__ import annotations
from typing import Any, Iterable, Optional, Protocol, Sequence

from dispatch_engine.core.dispatch.domain import (
    Candidate,
    DispatchAttempt,
    Job,
    JobRecord,
    JobStatus,
    Location,
    ScopeType,
)


# ============================================================================
# PERSISTENCE
# ============================================================================

class AsyncJobStore(Protocol):
    async def get_record(self, job_id: str) -> Optional[JobRecord]: ...

    async def find_job_id_for_attempt(self, attempt_id: str) -> Optional[str]: ...

    async def save_record(self, record: JobRecord, *, expected_version: int) -> Job:
        """
        Write the job and all its attempts atomically.

        Raises StaleVersionError if the stored version is not ``expected_version``.
        Returns the job with its version bumped.
        """
        ...

    async def create_job(self, job: Job) -> Job: ...

    async def list_jobs(
        self,
        *,
        statuses: Optional[Iterable[JobStatus]] = None,
        escalated: Optional[bool] = None,
        sla_breached: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        """Jobs matching every filter given (None = any), oldest first."""
        ...

    async def list_offers(self, professional_id: str) -> list[tuple[Job, DispatchAttempt]]:
        """The professional's PENDING attempts with their jobs, newest first."""
        ...


# ============================================================================
# EXTERNAL SERVICES
# ============================================================================

class CandidateSource(Protocol):
    async def list_eligible_professionals(
        self,
        category: str,
        center: Location,
        radius_km: float,
        exclude_ids: Iterable[str],
    ) -> list[Candidate]: ...


class NotificationGateway(Protocol):
    async def notify(
        self,
        recipients: Sequence[str],
        template: str,
        payload: dict[str, Any],
    ) -> None:
        """
        Fire-and-forget delivery (push / SMS / email).

        ``recipients`` is a list of role names or a single professional id
        wrapped in a list.  Raises on transport failure; callers retry.
        """
        ...


class EventSink(Protocol):
    async def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class PolicySource(Protocol):
    async def fetch(self, key: str, scope_type: ScopeType, scope_id: Optional[str]) -> Any:
        """
        Return the raw value stored for ``key`` at exactly this scope,
        or ``None`` if there is no row.
        """
        ...


class PolicyResolver(Protocol):
    async def resolve(
        self,
        key: str,
        scope_chain: Sequence[tuple[ScopeType, Optional[str]]],
    ) -> Any: ...
