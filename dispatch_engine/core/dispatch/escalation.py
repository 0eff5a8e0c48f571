# dispatch_engine/core/dispatch/escalation.py
"""
Escalation state machine: the single writer of job status and escalation state.

Every command against a job runs inside ``serialize(job_id)`` (one
``asyncio.Lock`` per job, no global lock), loads the job record, mutates it
through this class and commits it with a version compare-and-swap.  The
side effects a transition needs after commit (offers to send, alerts,
timers to arm or disarm) are collected in ``TransitionEffects`` and left to
the caller; nothing here talks to the gateway or the event sink.

Step-advance on an exhausted step:

1. A next configured step exists: open it (NOTIFY offers from the ranked
   snapshot, REASSIGN from a fresh directory query).  A step with no
   candidates left is skipped.
2. Steps exhausted: run the last step's action again.  NOTIFY / REASSIGN
   open another batch while candidates remain and degrade to
   OPERATOR_ALERT otherwise.  Alerts leave the job DISPATCHED and
   escalated, waiting for an operator.
3. Max-attempts reached: no more offers, OPERATOR_ALERT.

An operator REASSIGN opens a fresh batch outside the configured ladder; it
does not consume a step.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Optional, Sequence

from dispatch_engine.core.dispatch.domain import (
    ALERT_ACTIONS,
    DispatchAttempt,
    DispatchPolicy,
    EscalationAction,
    EscalationContext,
    EscalationStep,
    Job,
    JobRecord,
    JobStatus,
    OverrideAction,
    RankedCandidate,
)
from dispatch_engine.core.dispatch.errors import (
    ConflictError,
    DirectoryUnavailableError,
    InvalidTransitionError,
    NotFoundError,
)
from dispatch_engine.core.dispatch.ports import AsyncJobStore
from dispatch_engine.core.dispatch.selector import CandidateSelector
from dispatch_engine.core.dispatch.sequencer import DispatchSequencer, ResponseKind, ResponseResult
from dispatch_engine.core.dispatch.sla_clock import SlaClock, SlaKind
from dispatch_engine.infra.logging_config import get_logger
from dispatch_engine.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


LEGAL_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.DRAFT: frozenset({JobStatus.DISPATCHED, JobStatus.CANCELLED}),
    JobStatus.DISPATCHED: frozenset({JobStatus.ACCEPTED, JobStatus.CANCELLED}),
    JobStatus.ACCEPTED: frozenset({JobStatus.SCHEDULED, JobStatus.CANCELLED}),
    JobStatus.SCHEDULED: frozenset({JobStatus.IN_PROGRESS, JobStatus.CANCELLED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

# Statuses update_status() may set; the rest belong to dispatch/response/cancel
LIFECYCLE_STATUSES = frozenset({JobStatus.SCHEDULED, JobStatus.IN_PROGRESS, JobStatus.COMPLETED})

# Alert reasons
REASON_NO_CANDIDATES = "no_candidates"
REASON_DIRECTORY_UNAVAILABLE = "directory_unavailable"
REASON_NO_STEPS = "no_escalation_steps"
REASON_STEP_ACTION = "escalation_step"
REASON_STEPS_EXHAUSTED = "steps_exhausted"
REASON_CANDIDATES_EXHAUSTED = "candidates_exhausted"
REASON_MAX_ATTEMPTS = "max_attempts_reached"
REASON_OPERATOR_ESCALATION = "operator_escalation"
REASON_REASSIGN_EMPTY = "reassign_no_candidates"
REASON_OFFER_UNDELIVERED = "offer_delivery_failed"
REASON_CONFIGURATION = "configuration_unavailable"


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in LEGAL_TRANSITIONS[current]


@dataclass(frozen=True)
class Alert:
    action: EscalationAction
    roles: tuple[str, ...]
    reason: str
    note: Optional[str] = None


@dataclass
class TransitionEffects:
    """What has to happen once a transition is committed."""
    offers: list[DispatchAttempt] = field(default_factory=list)
    withdrawn: list[DispatchAttempt] = field(default_factory=list)
    responses: list[DispatchAttempt] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    escalated_now: bool = False
    status_changed: bool = False
    refresh: bool = False
    arm_step: bool = False
    disarm_step: bool = False
    arm_sla: list[SlaKind] = field(default_factory=list)
    disarm_sla: list[SlaKind] = field(default_factory=list)
    disarm_all: bool = False


class EscalationStateMachine:
    def __init__(
        self,
        store: AsyncJobStore,
        sequencer: DispatchSequencer,
        selector: CandidateSelector,
        *,
        operator_roles: Sequence[str] = ("operator",),
        manager_roles: Sequence[str] = ("manager",),
    ):
        self._store = store
        self._sequencer = sequencer
        self._selector = selector
        self._operator_roles = tuple(operator_roles)
        self._manager_roles = tuple(manager_roles)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Serialization and persistence
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def serialize(self, job_id: str) -> AsyncIterator[None]:
        """Hold the job's lock; commands for one job apply in arrival order."""
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[job_id] -= 1
            if self._lock_users[job_id] == 0:
                del self._lock_users[job_id]
                del self._locks[job_id]

    def locked_jobs(self) -> int:
        return len(self._locks)

    async def load(self, job_id: str) -> JobRecord:
        record = await self._store.get_record(job_id)
        if record is None:
            raise NotFoundError(f"Job {job_id} not found")
        return record

    @staticmethod
    def check_version(job: Job, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != job.version:
            raise ConflictError(
                f"Job {job.id} has changed (version {job.version}, you had {expected_version}); "
                f"reload and retry"
            )

    async def commit(self, record: JobRecord) -> Job:
        saved = await self._store.save_record(record, expected_version=record.job.version)
        record.job.version = saved.version
        return record.job

    # ------------------------------------------------------------------
    # Status and flags
    # ------------------------------------------------------------------

    @staticmethod
    def transition(job: Job, target: JobStatus, fx: TransitionEffects) -> None:
        if not can_transition(job.status, target):
            raise InvalidTransitionError(
                f"Job {job.id} cannot move from {job.status.value} to {target.value}"
            )
        logger.info(f"Status {job.status.value} -> {target.value}", extra={"job_id": job.id})
        job.status = target
        fx.status_changed = True

    @staticmethod
    def mark_escalated(job: Job, fx: TransitionEffects) -> None:
        if not job.escalated:
            job.escalated = True
            fx.escalated_now = True

    def alert(
        self,
        job: Job,
        action: EscalationAction,
        reason: str,
        fx: TransitionEffects,
        roles: Sequence[str] = (),
        note: Optional[str] = None,
    ) -> Alert:
        """Queue an operator or manager alert and flag the job escalated."""
        if not roles:
            roles = self._manager_roles if action == EscalationAction.MANAGER_ALERT else self._operator_roles
        alert = Alert(action=action, roles=tuple(roles), reason=reason, note=note)
        fx.alerts.append(alert)
        self.mark_escalated(job, fx)
        if job.escalation_context is not None:
            job.escalation_context.last_action = action.value
        DispatchMetrics.escalation_fired(action.value)
        logger.warning(
            f"{action.value} raised ({reason}) to {', '.join(alert.roles)}",
            extra={"job_id": job.id},
        )
        return alert

    def _halt(self, record: JobRecord, fx: TransitionEffects) -> None:
        """Stop offering; the job waits for an operator."""
        self._sequencer.close_step(record)
        fx.disarm_step = True

    # ------------------------------------------------------------------
    # Dispatch start and step advance
    # ------------------------------------------------------------------

    async def begin_dispatch(
        self,
        record: JobRecord,
        policy: DispatchPolicy,
        ranked: Sequence[RankedCandidate],
        now: datetime,
        fx: TransitionEffects,
        *,
        directory_failed: bool = False,
    ) -> None:
        job = record.job
        if job.status == JobStatus.DRAFT:
            self.transition(job, JobStatus.DISPATCHED, fx)

        job.escalation_context = EscalationContext(policy=policy, ranked=list(ranked))
        job.current_step_index = 0
        job.accept_deadline = SlaClock.accept_deadline(now, policy)
        fx.arm_sla.append(SlaKind.ACCEPT)
        fx.refresh = True

        if directory_failed:
            self.alert(job, EscalationAction.OPERATOR_ALERT, REASON_DIRECTORY_UNAVAILABLE, fx)
            self._halt(record, fx)
            return
        if not ranked:
            self.alert(job, EscalationAction.OPERATOR_ALERT, REASON_NO_CANDIDATES, fx)
            self._halt(record, fx)
            return

        await self.enter_step(record, 0, now, fx)

    async def enter_step(self, record: JobRecord, index: int, now: datetime, fx: TransitionEffects) -> None:
        """Open step ``index``, skipping empty steps, or run the terminal action."""
        job = record.job
        ctx = job.escalation_context
        steps = ctx.policy.steps

        while True:
            if self._sequencer.remaining_capacity(record) <= 0:
                self.alert(job, EscalationAction.OPERATOR_ALERT, REASON_MAX_ATTEMPTS, fx)
                self._halt(record, fx)
                return

            if not steps:
                self.alert(job, EscalationAction.OPERATOR_ALERT, REASON_NO_STEPS, fx)
                self._halt(record, fx)
                return

            in_sequence = index < len(steps)
            is_last = index >= len(steps) - 1
            step = steps[index] if in_sequence else steps[-1]

            if step.action in ALERT_ACTIONS:
                if not in_sequence:
                    self.alert(job, step.action, REASON_STEPS_EXHAUSTED, fx, step.notify_roles)
                    self._halt(record, fx)
                    return
                self.alert(job, step.action, REASON_STEP_ACTION, fx, step.notify_roles)
                batch = self._sequencer.next_batch(record, step.batch_size) if step.batch_size else []
                if batch:
                    self._open(record, index, step, batch, now, fx)
                    return
                if is_last:
                    self._halt(record, fx)
                    return
                index += 1
                continue

            batch = await self._candidates_for(record, step, now)
            if batch:
                self._open(record, index, step, batch, now, fx)
                return

            if in_sequence and not is_last:
                logger.info(f"Step {index} has no candidates left, skipping", extra={"job_id": job.id})
                index += 1
                continue

            self.alert(job, EscalationAction.OPERATOR_ALERT, REASON_CANDIDATES_EXHAUSTED, fx)
            self._halt(record, fx)
            return

    async def _candidates_for(self, record: JobRecord, step: EscalationStep, now: datetime) -> list[RankedCandidate]:
        if step.action == EscalationAction.REASSIGN:
            limit = min(step.batch_size, self._sequencer.remaining_capacity(record))
            return await self.fresh_candidates(record, limit)
        return self._sequencer.next_batch(record, step.batch_size)

    async def fresh_candidates(self, record: JobRecord, limit: int) -> list[RankedCandidate]:
        """Re-run candidate selection, excluding everyone already offered this job."""
        job = record.job
        policy = job.escalation_context.policy
        try:
            result = await self._selector.select(
                job, policy.search_radius_km, policy.max_candidates,
                exclude_ids=record.offered_ids(),
            )
        except DirectoryUnavailableError as e:
            logger.error(f"Fresh candidate query failed: {e}", extra={"job_id": job.id})
            return []
        return list(result.ranked[:max(0, limit)])

    def _open(
        self,
        record: JobRecord,
        index: int,
        step: EscalationStep,
        batch: Sequence[RankedCandidate],
        now: datetime,
        fx: TransitionEffects,
    ) -> None:
        job = record.job
        ctx = job.escalation_context
        window = step.window_minutes(ctx.policy.accept_minutes)
        created = self._sequencer.open_step(record, index, batch, window, now)
        fx.offers.extend(created)
        fx.disarm_step = True
        fx.arm_step = True
        if step.action not in ALERT_ACTIONS:
            ctx.last_action = step.action.value
        if index > 0:
            self.mark_escalated(job, fx)

    async def expire_step(self, record: JobRecord, now: datetime, fx: TransitionEffects) -> None:
        job = record.job
        expired = self._sequencer.expire_step(record, now)
        fx.responses.extend(expired)
        DispatchMetrics.step_expired(job.current_step_index)
        logger.info(
            f"Step {job.current_step_index} expired ({len(expired)} offers timed out)",
            extra={"job_id": job.id},
        )
        await self.enter_step(record, job.current_step_index + 1, now, fx)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    async def apply_response(
        self,
        record: JobRecord,
        attempt_id: str,
        accepted: bool,
        reason: Optional[str],
        now: datetime,
        fx: TransitionEffects,
    ) -> ResponseResult:
        result = self._sequencer.record_response(record, attempt_id, accepted, reason, now)
        if result.kind == ResponseKind.CONFLICT:
            return result

        job = record.job
        fx.responses.append(result.attempt)

        if result.kind == ResponseKind.ACCEPTED:
            self.transition(job, JobStatus.ACCEPTED, fx)
            job.assigned_professional_id = result.attempt.professional_id
            job.accepted_at = now
            job.schedule_deadline = SlaClock.schedule_deadline(now, job.escalation_context.policy)
            fx.withdrawn.extend(result.withdrawn)
            self._sequencer.close_step(record)
            fx.disarm_step = True
            fx.disarm_sla.append(SlaKind.ACCEPT)
            fx.arm_sla.append(SlaKind.SCHEDULE)
        elif result.step_exhausted:
            await self.enter_step(record, job.current_step_index + 1, now, fx)

        return result

    # ------------------------------------------------------------------
    # Cancellation, lifecycle and overrides
    # ------------------------------------------------------------------

    def cancel(self, record: JobRecord, now: datetime, fx: TransitionEffects) -> None:
        """Cancel the job and every PENDING attempt in the same write."""
        self.transition(record.job, JobStatus.CANCELLED, fx)
        fx.withdrawn.extend(self._sequencer.withdraw_pending(record, now))
        self._sequencer.close_step(record)
        fx.disarm_all = True

    def update_status(self, record: JobRecord, target: JobStatus, now: datetime, fx: TransitionEffects) -> None:
        if target == JobStatus.CANCELLED:
            self.cancel(record, now, fx)
            return
        if target not in LIFECYCLE_STATUSES:
            raise InvalidTransitionError(
                f"{target.value} is set by dispatch, not by a status update"
            )
        self.transition(record.job, target, fx)
        if target == JobStatus.SCHEDULED:
            fx.disarm_sla.append(SlaKind.SCHEDULE)
        if record.job.is_terminal:
            fx.disarm_all = True

    async def override(
        self,
        record: JobRecord,
        action: OverrideAction,
        note: Optional[str],
        now: datetime,
        fx: TransitionEffects,
    ) -> Optional[str]:
        """
        Apply an operator override.

        Returns None when applied, or a conflict message when the override
        cannot apply to the job's current status.
        """
        job = record.job

        if action == OverrideAction.RESOLVE:
            job.escalated = False
            fx.refresh = True
            return None

        if action == OverrideAction.CANCEL:
            if job.is_terminal:
                return f"Job is already {job.status.value}"
            self.cancel(record, now, fx)
            return None

        if action == OverrideAction.ESCALATE_FURTHER:
            if job.is_terminal:
                return f"Job is already {job.status.value}"
            self.alert(job, EscalationAction.MANAGER_ALERT, REASON_OPERATOR_ESCALATION, fx, note=note)
            return None

        # REASSIGN
        if job.status != JobStatus.DISPATCHED or job.escalation_context is None:
            return f"Only DISPATCHED jobs can be reassigned (job is {job.status.value})"
        return await self._reassign(record, note, now, fx)

    async def _reassign(self, record: JobRecord, note: Optional[str], now: datetime, fx: TransitionEffects) -> None:
        job = record.job
        steps = job.escalation_context.policy.steps
        template = steps[-1] if steps else EscalationStep(batch_size=1)
        step = EscalationStep(
            batch_size=max(1, template.batch_size),
            action=EscalationAction.REASSIGN,
            timeout_minutes=template.timeout_minutes,
        )

        fx.withdrawn.extend(self._sequencer.withdraw_pending(record, now))
        batch = await self.fresh_candidates(record, step.batch_size)
        if not batch:
            self.alert(job, EscalationAction.OPERATOR_ALERT, REASON_REASSIGN_EMPTY, fx, note=note)
            self._halt(record, fx)
            return None

        # Runs under the current index: expiry or exhaustion resumes the ladder
        # at the first configured step that has not been opened yet
        self._open(record, job.current_step_index, step, batch, now, fx)
        self.mark_escalated(job, fx)
        return None
