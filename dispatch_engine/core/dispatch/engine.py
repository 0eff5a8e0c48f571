# dispatch_engine/core/dispatch/engine.py
"""
Dispatch engine: command entry points for one process.

Commands (dispatch start, professional response, operator override,
status update, cancel) and signals (step timeout, SLA warning / breach)
all follow the same shape:

    async with machine.serialize(job_id):
        record = load; check version / staleness
        mutate through the state machine
        commit (version compare-and-swap)
    apply effects: timers now, notifications and events in the background

Notification and event delivery never blocks or rolls back a commit.  It
runs in the background, one queue per job, in commit order.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from dispatch_engine.core.dispatch.domain import (
    CommandOutcome,
    CommandResult,
    EscalationAction,
    Job,
    JobRecord,
    JobStatus,
    OverrideAction,
    DispatchAttempt,
)
from dispatch_engine.core.dispatch.errors import (
    ConfigurationError,
    DirectoryUnavailableError,
    InvalidTransitionError,
    NotFoundError,
    StaleVersionError,
)
from dispatch_engine.core.dispatch.escalation import (
    REASON_CONFIGURATION,
    REASON_OFFER_UNDELIVERED,
    Alert,
    EscalationStateMachine,
    TransitionEffects,
)
from dispatch_engine.core.dispatch.events import (
    DISPATCH_ATTEMPT,
    DISPATCH_RESPONSE,
    JOB_ESCALATED,
    JOB_SLA_BREACH,
    JOB_SLA_WARNING,
    QUEUE_REFRESH,
    TEMPLATE_MANAGER_ALERT,
    TEMPLATE_OPERATOR_ALERT,
    EventBroadcaster,
    Notifier,
    attempt_payload,
    job_payload,
)
from dispatch_engine.core.dispatch.policy import load_dispatch_policy
from dispatch_engine.core.dispatch.ports import AsyncJobStore, PolicyResolver
from dispatch_engine.core.dispatch.selector import CandidateSelector, SelectionResult
from dispatch_engine.core.dispatch.sequencer import DispatchSequencer, ResponseKind
from dispatch_engine.core.dispatch.sla_clock import SlaClock, SlaKind, SlaPhase
from dispatch_engine.core.dispatch.timers import STEP_TIMER, TimerRegistry
from dispatch_engine.infra.logging_config import LogContext, get_logger
from dispatch_engine.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

# Internal signals re-read and retry this many times on a version race
_SIGNAL_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchEngine:
    def __init__(
        self,
        *,
        store: AsyncJobStore,
        resolver: PolicyResolver,
        selector: CandidateSelector,
        notifier: Notifier,
        broadcaster: EventBroadcaster,
        timers: Optional[TimerRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        operator_roles: tuple[str, ...] = ("operator",),
        manager_roles: tuple[str, ...] = ("manager",),
        sla_warning_minutes_remaining: float = 30.0,
        sla_warning_min_elapsed_ratio: float = 0.7,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._store = store
        self._resolver = resolver
        self._selector = selector
        self._notifier = notifier
        self._broadcaster = broadcaster
        self._timers = timers or TimerRegistry()
        self._clock = clock

        sequencer_kwargs = {"id_factory": id_factory} if id_factory else {}
        self._sequencer = DispatchSequencer(notifier, **sequencer_kwargs)
        self._machine = EscalationStateMachine(
            store, self._sequencer, selector,
            operator_roles=operator_roles,
            manager_roles=manager_roles,
        )
        self._sla = SlaClock(
            self._timers,
            clock=clock,
            warning_minutes_remaining=sla_warning_minutes_remaining,
            min_elapsed_ratio=sla_warning_min_elapsed_ratio,
        )
        self._background: set[asyncio.Task] = set()
        # Last queued delivery per job; the next one waits for it
        self._delivery_tails: dict[str, asyncio.Task] = {}

    @property
    def timers(self) -> TimerRegistry:
        return self._timers

    @property
    def sla(self) -> SlaClock:
        return self._sla

    # ==================================================================
    # Queries
    # ==================================================================

    async def get_record(self, job_id: str) -> JobRecord:
        return await self._machine.load(job_id)

    async def list_jobs(
        self,
        *,
        statuses: Optional[Sequence[JobStatus]] = None,
        escalated: Optional[bool] = None,
        sla_breached: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        """Operator listing; every filter left as None matches all jobs."""
        return await self._store.list_jobs(
            statuses=statuses, escalated=escalated, sla_breached=sla_breached, limit=limit,
        )

    async def list_offers(self, professional_id: str) -> list[tuple[Job, DispatchAttempt]]:
        """Offers the professional can still respond to, newest first."""
        offers = await self._store.list_offers(professional_id)
        return [(job, attempt) for job, attempt in offers if job.status == JobStatus.DISPATCHED]

    # ==================================================================
    # Commands
    # ==================================================================

    async def create_job(self, job: Job) -> Job:
        """Intake: store a new DRAFT job. Dispatch is a separate command."""
        if job.status != JobStatus.DRAFT:
            raise InvalidTransitionError(f"New jobs must be DRAFT, got {job.status.value}")
        created = await self._store.create_job(job)
        logger.info(
            f"Job {created.reference_number} created ({created.service_category_id})",
            extra={"job_id": created.id},
        )
        return created

    async def start_dispatch(self, job_id: str, expected_version: Optional[int] = None) -> CommandResult:
        """
        Resolve policy, rank candidates and open the first step.

        A job already DISPATCHED without an escalation context (created
        dispatched by intake) is started the same way as a DRAFT job.
        """
        log = LogContext(logger, job_id=job_id)

        async with self._machine.serialize(job_id):
            record = await self._machine.load(job_id)
            job = record.job
            self._machine.check_version(job, expected_version)

            if job.status == JobStatus.DISPATCHED and job.escalation_context is not None:
                DispatchMetrics.conflict("dispatch")
                return self._result(CommandOutcome.CONFLICT, job, "Dispatch already in progress")
            if job.status not in (JobStatus.DRAFT, JobStatus.DISPATCHED):
                raise InvalidTransitionError(f"Job {job_id} is {job.status.value} and cannot be dispatched")

            fx = TransitionEffects()
            now = self._clock()

            try:
                policy = await load_dispatch_policy(self._resolver, job)
            except ConfigurationError as e:
                log.error(f"Dispatch blocked, policy unavailable: {e.detail}")
                self._machine.alert(job, EscalationAction.OPERATOR_ALERT, REASON_CONFIGURATION, fx, note=e.detail)
                await self._machine.commit(record)
                self._after_commit(record, fx)
                return self._result(CommandOutcome.BLOCKED, job, "Dispatch configuration unavailable")

            directory_failed = False
            try:
                selection = await self._selector.select(job, policy.search_radius_km, policy.max_candidates)
            except DirectoryUnavailableError as e:
                log.error(f"Candidate directory unavailable: {e}")
                selection = SelectionResult()
                directory_failed = True

            await self._machine.begin_dispatch(
                record, policy, selection.ranked, now, fx,
                directory_failed=directory_failed,
            )
            await self._machine.commit(record)

        DispatchMetrics.dispatch_started(job.service_category_id)
        log.info(
            f"Dispatch started: {len(selection.ranked)} ranked, {len(fx.offers)} offered, "
            f"accept by {job.accept_deadline.isoformat()}"
        )
        self._after_commit(record, fx)
        return self._result(CommandOutcome.APPLIED, job, f"{len(fx.offers)} offers sent")

    async def record_response(
        self,
        attempt_id: str,
        accepted: bool,
        reason: Optional[str] = None,
    ) -> CommandResult:
        job_id = await self._store.find_job_id_for_attempt(attempt_id)
        if job_id is None:
            raise NotFoundError(f"Attempt {attempt_id} not found")

        async with self._machine.serialize(job_id):
            record = await self._machine.load(job_id)
            fx = TransitionEffects()
            result = await self._machine.apply_response(
                record, attempt_id, accepted, reason, self._clock(), fx,
            )
            job = record.job

            if result.kind == ResponseKind.CONFLICT:
                DispatchMetrics.conflict("response")
                logger.info(
                    f"Response rejected: {result.message}",
                    extra={"job_id": job_id, "attempt_id": attempt_id},
                )
                return self._result(CommandOutcome.CONFLICT, job, result.message, attempt_id=attempt_id)

            await self._machine.commit(record)

        DispatchMetrics.response_recorded(result.kind.value)
        logger.info(
            f"Attempt {result.kind.value} by {result.attempt.professional_id}",
            extra={"job_id": job_id, "attempt_id": attempt_id},
        )
        self._after_commit(record, fx)
        return self._result(CommandOutcome.APPLIED, job, result.kind.value, attempt_id=attempt_id)

    async def override_escalation(
        self,
        job_id: str,
        action: OverrideAction,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> CommandResult:
        action = OverrideAction(action)
        async with self._machine.serialize(job_id):
            record = await self._machine.load(job_id)
            job = record.job
            self._machine.check_version(job, expected_version)

            fx = TransitionEffects()
            conflict = await self._machine.override(record, action, note, self._clock(), fx)
            if conflict:
                DispatchMetrics.conflict("override")
                return self._result(CommandOutcome.CONFLICT, job, conflict)

            await self._machine.commit(record)

        DispatchMetrics.override_applied(action.value)
        logger.info(
            f"Override {action.value} applied" + (f": {note}" if note else ""),
            extra={"job_id": job_id},
        )
        self._after_commit(record, fx)
        return self._result(CommandOutcome.APPLIED, job, f"{action.value} applied")

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        expected_version: Optional[int] = None,
    ) -> CommandResult:
        status = JobStatus(status)
        async with self._machine.serialize(job_id):
            record = await self._machine.load(job_id)
            job = record.job
            self._machine.check_version(job, expected_version)

            fx = TransitionEffects()
            self._machine.update_status(record, status, self._clock(), fx)
            await self._machine.commit(record)

        self._after_commit(record, fx)
        return self._result(CommandOutcome.APPLIED, job, f"Status set to {status.value}")

    async def cancel_job(self, job_id: str, expected_version: Optional[int] = None) -> CommandResult:
        """Requester-side cancel; same effect as an operator CANCEL override."""
        return await self.update_status(job_id, JobStatus.CANCELLED, expected_version)

    # ==================================================================
    # Signals
    # ==================================================================

    async def handle_step_timeout(self, job_id: str, step_seq: int) -> CommandResult:
        """Step window elapsed. Discarded unless ``step_seq`` is still the open step."""
        for attempt in range(_SIGNAL_ATTEMPTS):
            try:
                return await self._step_timeout_once(job_id, step_seq)
            except StaleVersionError:
                if attempt + 1 == _SIGNAL_ATTEMPTS:
                    raise
                logger.info("Step timeout raced another writer, re-reading", extra={"job_id": job_id})
        raise AssertionError("unreachable")

    async def _step_timeout_once(self, job_id: str, step_seq: int) -> CommandResult:
        async with self._machine.serialize(job_id):
            record = await self._store.get_record(job_id)
            if record is None:
                return self._discard_missing(job_id, "step_timeout")
            job = record.job
            ctx = job.escalation_context

            if (
                job.status != JobStatus.DISPATCHED
                or ctx is None
                or ctx.step_seq != step_seq
                or ctx.step_deadline is None
                or self._sequencer.step_exhausted(record)
            ):
                return self._discard(job, "step_timeout", f"step token {step_seq} is stale")

            fx = TransitionEffects()
            await self._machine.expire_step(record, self._clock(), fx)
            await self._machine.commit(record)

        self._after_commit(record, fx)
        return self._result(CommandOutcome.APPLIED, job, "Step expired")

    async def handle_sla_signal(self, job_id: str, kind: SlaKind, phase: SlaPhase) -> CommandResult:
        """SLA warning or breach. Discarded once the job has left the watched status."""
        kind, phase = SlaKind(kind), SlaPhase(phase)
        for attempt in range(_SIGNAL_ATTEMPTS):
            try:
                return await self._sla_signal_once(job_id, kind, phase)
            except StaleVersionError:
                if attempt + 1 == _SIGNAL_ATTEMPTS:
                    raise
        raise AssertionError("unreachable")

    async def _sla_signal_once(self, job_id: str, kind: SlaKind, phase: SlaPhase) -> CommandResult:
        signal = f"sla_{kind.value}_{phase.value}"
        async with self._machine.serialize(job_id):
            record = await self._store.get_record(job_id)
            if record is None:
                return self._discard_missing(job_id, signal)
            job = record.job
            window = self._sla.window(job, kind)

            if not self._sla.is_watching(job, kind) or window is None:
                return self._discard(job, signal, f"job is {job.status.value}")
            if phase == SlaPhase.BREACH and self._sla.is_breached(job, kind):
                return self._discard(job, signal, f"{kind.value} breach already recorded")

            start, deadline = window
            now = self._clock()
            percent = self._sla.percent_elapsed(start, deadline, now)

            if phase == SlaPhase.BREACH:
                self._sla.mark_breached(job, kind)
                await self._machine.commit(record)

        payload = job_payload(
            job,
            sla=kind.value,
            deadline=deadline.isoformat(),
            percent_elapsed=percent,
            at=now.isoformat(),
        )
        if phase == SlaPhase.WARNING:
            DispatchMetrics.sla_warning(kind.value)
            logger.warning(f"{kind.value} SLA at {percent:g}%", extra={"job_id": job_id})
            self._enqueue(job_id, lambda: self._broadcaster.publish(JOB_SLA_WARNING, payload))
        else:
            DispatchMetrics.sla_breach(kind.value)
            logger.error(f"{kind.value} SLA breached", extra={"job_id": job_id})
            self._enqueue(job_id, lambda: self._broadcaster.publish(JOB_SLA_BREACH, payload))
        return self._result(CommandOutcome.APPLIED, job, f"{kind.value} {phase.value}")

    # ==================================================================
    # Startup recovery
    # ==================================================================

    async def recover(self) -> dict[str, int]:
        """
        Re-arm timers for every DISPATCHED or ACCEPTED job from its stored deadlines.

        Timers live in this process only, so a restart loses them.  Deadlines
        that passed while nothing was watching are handled immediately: an
        overdue step expires (opening the next one), an overdue SLA is
        recorded as breached.  A failure on one job is logged and the rest
        are still recovered.
        """
        summary = {"jobs": 0, "expired_steps": 0, "breaches": 0, "armed": 0}
        jobs = await self._store.list_jobs(statuses=(JobStatus.DISPATCHED, JobStatus.ACCEPTED))
        for job in jobs:
            summary["jobs"] += 1
            try:
                await self._recover_job(job, summary)
            except Exception as e:
                logger.error(f"Timer recovery failed: {e!r}", exc_info=True, extra={"job_id": job.id})

        logger.info(
            f"Recovered {summary['jobs']} active jobs: {summary['armed']} deadlines re-armed, "
            f"{summary['expired_steps']} overdue steps expired, {summary['breaches']} overdue SLAs breached"
        )
        return summary

    async def _recover_job(self, job: Job, summary: dict[str, int]) -> None:
        now = self._clock()
        ctx = job.escalation_context

        if job.status == JobStatus.DISPATCHED and ctx is not None and ctx.step_deadline is not None:
            if ctx.step_deadline <= now:
                result = await self.handle_step_timeout(job.id, ctx.step_seq)
                if result.outcome == CommandOutcome.APPLIED:
                    summary["expired_steps"] += 1
            else:
                self._arm_step_timer(job)
                summary["armed"] += 1

        kind = SlaKind.ACCEPT if job.status == JobStatus.DISPATCHED else SlaKind.SCHEDULE
        window = self._sla.window(job, kind)
        if window is None or self._sla.is_breached(job, kind):
            return
        if window[1] <= now:
            result = await self.handle_sla_signal(job.id, kind, SlaPhase.BREACH)
            if result.outcome == CommandOutcome.APPLIED:
                summary["breaches"] += 1
        elif self._sla.arm(job, kind, self.handle_sla_signal):
            summary["armed"] += 1

    async def _offers_undelivered(self, job_id: str, failed: list[DispatchAttempt]) -> None:
        note = f"{len(failed)} offer(s) could not be delivered"
        async with self._machine.serialize(job_id):
            record = await self._store.get_record(job_id)
            if record is None or record.job.status != JobStatus.DISPATCHED:
                return
            fx = TransitionEffects()
            self._machine.alert(record.job, EscalationAction.OPERATOR_ALERT, REASON_OFFER_UNDELIVERED, fx, note=note)
            try:
                await self._machine.commit(record)
            except StaleVersionError:
                logger.warning("Undelivered-offer alert lost a version race", extra={"job_id": job_id})
                return
        self._after_commit(record, fx, notify_offers=False)

    # ==================================================================
    # Effects
    # ==================================================================

    def _after_commit(self, record: JobRecord, fx: TransitionEffects, *, notify_offers: bool = True) -> None:
        job = record.job

        if fx.disarm_all:
            self._timers.cancel_all(job.id)
        else:
            if fx.disarm_step:
                self._timers.cancel(job.id, STEP_TIMER)
            for kind in fx.disarm_sla:
                self._sla.disarm(job.id, kind)
            if fx.arm_step:
                self._arm_step_timer(job)
            for kind in fx.arm_sla:
                self._sla.arm(job, kind, self.handle_sla_signal)

        self._enqueue(job.id, lambda: self._deliver(job, fx, notify_offers))

    def _arm_step_timer(self, job: Job) -> None:
        ctx = job.escalation_context
        if ctx is None or ctx.step_deadline is None:
            return
        seq = ctx.step_seq
        job_id = job.id

        async def fire():
            return await self.handle_step_timeout(job_id, seq)

        delay = (ctx.step_deadline - self._clock()).total_seconds()
        self._timers.schedule(job_id, STEP_TIMER, delay, fire)

    async def _deliver(self, job: Job, fx: TransitionEffects, notify_offers: bool) -> None:
        for attempt in fx.responses:
            await self._broadcaster.publish(DISPATCH_RESPONSE, attempt_payload(job, attempt))
        for attempt in fx.offers:
            await self._broadcaster.publish(DISPATCH_ATTEMPT, attempt_payload(job, attempt))

        if fx.escalated_now or fx.alerts:
            await self._broadcaster.publish(
                JOB_ESCALATED,
                job_payload(job, actions=[a.action.value for a in fx.alerts], reasons=[a.reason for a in fx.alerts]),
            )
        for alert in fx.alerts:
            await self._send_alert(job, alert)

        if fx.status_changed or fx.refresh:
            await self._broadcaster.publish(QUEUE_REFRESH, job_payload(job))

        if fx.withdrawn:
            await self._sequencer.notify_withdrawn(job, fx.withdrawn)

        if fx.offers and notify_offers:
            failed = await self._sequencer.notify_offers(job, fx.offers)
            if failed:
                await self._offers_undelivered(job.id, failed)

    async def _send_alert(self, job: Job, alert: Alert) -> None:
        template = (
            TEMPLATE_MANAGER_ALERT if alert.action == EscalationAction.MANAGER_ALERT
            else TEMPLATE_OPERATOR_ALERT
        )
        payload = job_payload(job, action=alert.action.value, reason=alert.reason, note=alert.note)
        await self._notifier.notify(alert.roles, template, payload)

    def _enqueue(self, job_id: str, factory: Callable[[], Awaitable[Any]]) -> None:
        """
        Run ``factory()`` in the background once every delivery already
        queued for ``job_id`` has finished, so events and notifications
        leave in commit order.  A failed predecessor does not block the
        queue.
        """
        previous = self._delivery_tails.get(job_id)

        async def run():
            if previous is not None:
                await asyncio.wait([previous])
            await factory()

        task = asyncio.ensure_future(run())
        self._delivery_tails[job_id] = task
        self._background.add(task)
        task.add_done_callback(self._background_done)
        task.add_done_callback(lambda t: self._release_tail(job_id, t))

    def _release_tail(self, job_id: str, task: asyncio.Task) -> None:
        if self._delivery_tails.get(job_id) is task:
            del self._delivery_tails[job_id]

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background delivery failed: {task.exception()!r}")

    async def drain(self) -> None:
        """Wait until every queued notification and event has been attempted."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        await self._timers.shutdown()
        await self.drain()

    # ==================================================================
    # Helpers
    # ==================================================================

    @staticmethod
    def _result(
        outcome: CommandOutcome,
        job: Job,
        message: str = "",
        attempt_id: Optional[str] = None,
    ) -> CommandResult:
        return CommandResult(
            outcome=outcome,
            job_id=job.id,
            status=job.status,
            message=message,
            attempt_id=attempt_id,
            version=job.version,
        )

    @staticmethod
    def _discard(job: Job, kind: str, why: str) -> CommandResult:
        DispatchMetrics.signal_discarded(kind)
        logger.debug(f"Discarded {kind} signal: {why}", extra={"job_id": job.id})
        return CommandResult(
            outcome=CommandOutcome.DISCARDED,
            job_id=job.id,
            status=job.status,
            message=why,
            version=job.version,
        )

    @staticmethod
    def _discard_missing(job_id: str, kind: str) -> CommandResult:
        DispatchMetrics.signal_discarded(kind)
        logger.debug(f"Discarded {kind} signal for unknown job", extra={"job_id": job_id})
        return CommandResult(outcome=CommandOutcome.DISCARDED, job_id=job_id, status=None, message="job not found")
