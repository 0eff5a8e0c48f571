# dispatch_engine/core/dispatch/sequencer.py
"""
Attempt mechanics for one job's dispatch steps.

The sequencer mutates a loaded ``JobRecord`` in memory: it opens steps
(creating PENDING attempts that share one deadline), records responses
and expires steps.  It never changes job status and never writes to the
store; the escalation state machine decides what a response or an expiry
means for the job and commits the record.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from dispatch_engine.core.dispatch.domain import (
    AttemptStatus,
    DispatchAttempt,
    Job,
    JobRecord,
    JobStatus,
    RankedCandidate,
)
from dispatch_engine.core.dispatch.errors import InvalidTransitionError, NotFoundError
from dispatch_engine.core.dispatch.events import TEMPLATE_OFFER, TEMPLATE_OFFER_WITHDRAWN, Notifier, attempt_payload
from dispatch_engine.infra.logging_config import get_logger
from dispatch_engine.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


# Messages shown to professionals instead of internal errors
MSG_ACCEPTED_ELSEWHERE = "This job has already been accepted by another professional."
MSG_ALREADY_ACCEPTED = "You have already accepted this job."
MSG_OFFER_EXPIRED = "This offer has expired."
MSG_OFFER_WITHDRAWN = "This offer has been withdrawn."
MSG_ALREADY_DECLINED = "You have already declined this offer."


class ResponseKind(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CONFLICT = "conflict"


@dataclass
class ResponseResult:
    kind: ResponseKind
    attempt: DispatchAttempt
    message: str = ""
    withdrawn: list[DispatchAttempt] = field(default_factory=list)
    step_exhausted: bool = False


def _new_id() -> str:
    return uuid.uuid4().hex


class DispatchSequencer:
    def __init__(self, notifier: Notifier, *, id_factory: Callable[[], str] = _new_id):
        self._notifier = notifier
        self._new_id = id_factory

    # ------------------------------------------------------------------
    # Step bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def remaining_capacity(record: JobRecord) -> int:
        """Attempts still allowed under the job's max-attempts ceiling."""
        ctx = record.job.escalation_context
        if ctx is None:
            return 0
        return max(0, ctx.policy.max_attempts - len(record.attempts))

    def next_batch(self, record: JobRecord, batch_size: int) -> list[RankedCandidate]:
        """Next ``batch_size`` snapshot candidates not yet offered, capped by capacity."""
        ctx = record.job.escalation_context
        if ctx is None:
            return []
        limit = min(batch_size, self.remaining_capacity(record))
        offered = record.offered_ids()
        return [c for c in ctx.ranked if c.professional_id not in offered][:max(0, limit)]

    def open_step(
        self,
        record: JobRecord,
        step_index: int,
        candidates: Sequence[RankedCandidate],
        window_minutes: float,
        now: datetime,
    ) -> list[DispatchAttempt]:
        """
        Create one PENDING attempt per candidate and start the step window.

        Every attempt in the step shares one deadline.  Bumps the step
        sequence so timers armed for earlier steps become stale.
        """
        job = record.job
        ctx = job.escalation_context
        if job.status != JobStatus.DISPATCHED or ctx is None:
            raise InvalidTransitionError(
                f"Job {job.id} is {job.status.value}; attempts can only be created while DISPATCHED"
            )

        pending_for = {a.professional_id for a in record.pending()}
        created: list[DispatchAttempt] = []
        for candidate in candidates:
            if candidate.professional_id in pending_for:
                continue
            attempt = DispatchAttempt(
                id=self._new_id(),
                job_id=job.id,
                professional_id=candidate.professional_id,
                status=AttemptStatus.PENDING,
                created_at=now,
                step_index=step_index,
                attempt_number=len(record.attempts) + 1,
                distance_km=round(candidate.distance_km, 3),
                score=round(candidate.score, 4),
            )
            record.attempts.append(attempt)
            pending_for.add(candidate.professional_id)
            created.append(attempt)

        job.current_step_index = step_index
        ctx.step_seq += 1
        ctx.step_opened_at = now
        ctx.step_deadline = now + timedelta(minutes=window_minutes)

        DispatchMetrics.attempts_created(len(created), step_index)
        logger.info(
            f"Step {step_index} opened: {len(created)} offers, window {window_minutes:g}m",
            extra={"job_id": job.id},
        )
        return created

    @staticmethod
    def close_step(record: JobRecord) -> None:
        """No step window running (job waits for manual intervention)."""
        ctx = record.job.escalation_context
        if ctx is not None:
            ctx.step_deadline = None

    @staticmethod
    def step_exhausted(record: JobRecord) -> bool:
        """True when the current step has no PENDING attempts left."""
        job = record.job
        return not any(a.is_pending for a in record.step_attempts(job.current_step_index))

    # ------------------------------------------------------------------
    # Responses and expiry
    # ------------------------------------------------------------------

    def record_response(
        self,
        record: JobRecord,
        attempt_id: str,
        accepted: bool,
        reason: Optional[str],
        now: datetime,
    ) -> ResponseResult:
        attempt = record.find_attempt(attempt_id)
        if attempt is None:
            raise NotFoundError(f"Attempt {attempt_id} not found")

        winner = record.accepted()
        if winner is not None:
            message = MSG_ALREADY_ACCEPTED if winner.id == attempt.id else MSG_ACCEPTED_ELSEWHERE
            return ResponseResult(ResponseKind.CONFLICT, attempt, message)

        if not attempt.is_pending or record.job.status != JobStatus.DISPATCHED:
            return ResponseResult(ResponseKind.CONFLICT, attempt, self._closed_message(attempt))

        attempt.responded_at = now

        if accepted:
            attempt.status = AttemptStatus.ACCEPTED
            withdrawn = self.withdraw_pending(record, now)
            return ResponseResult(ResponseKind.ACCEPTED, attempt, withdrawn=withdrawn)

        attempt.status = AttemptStatus.DECLINED
        attempt.decline_reason = reason
        exhausted = attempt.step_index == record.job.current_step_index and self.step_exhausted(record)
        return ResponseResult(ResponseKind.DECLINED, attempt, step_exhausted=exhausted)

    @staticmethod
    def _closed_message(attempt: DispatchAttempt) -> str:
        if attempt.status == AttemptStatus.TIMEOUT:
            return MSG_OFFER_EXPIRED
        if attempt.status == AttemptStatus.DECLINED:
            return MSG_ALREADY_DECLINED
        return MSG_OFFER_WITHDRAWN

    @staticmethod
    def expire_step(record: JobRecord, now: datetime) -> list[DispatchAttempt]:
        """Mark every PENDING attempt TIMEOUT."""
        expired = record.pending()
        for attempt in expired:
            attempt.status = AttemptStatus.TIMEOUT
            attempt.responded_at = now
        return expired

    @staticmethod
    def withdraw_pending(record: JobRecord, now: datetime) -> list[DispatchAttempt]:
        """Mark every PENDING attempt CANCELLED."""
        withdrawn = record.pending()
        for attempt in withdrawn:
            attempt.status = AttemptStatus.CANCELLED
            attempt.responded_at = now
        return withdrawn

    # ------------------------------------------------------------------
    # Notifications (after commit)
    # ------------------------------------------------------------------

    async def notify_offers(self, job: Job, attempts: Iterable[DispatchAttempt]) -> list[DispatchAttempt]:
        """Send one offer per attempt. Returns the attempts whose offer could not be delivered."""
        failed: list[DispatchAttempt] = []
        for attempt in attempts:
            ctx = job.escalation_context
            payload = attempt_payload(
                job, attempt,
                urgency=job.urgency,
                distance_km=attempt.distance_km,
                respond_by=ctx.step_deadline.isoformat() if ctx and ctx.step_deadline else None,
            )
            if not await self._notifier.notify([attempt.professional_id], TEMPLATE_OFFER, payload):
                failed.append(attempt)
        if failed:
            logger.warning(
                f"{len(failed)} offer notifications undelivered",
                extra={"job_id": job.id},
            )
        return failed

    async def notify_withdrawn(self, job: Job, attempts: Iterable[DispatchAttempt]) -> None:
        for attempt in attempts:
            await self._notifier.notify(
                [attempt.professional_id],
                TEMPLATE_OFFER_WITHDRAWN,
                attempt_payload(job, attempt),
            )
