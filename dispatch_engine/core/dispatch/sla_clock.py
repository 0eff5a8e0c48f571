# dispatch_engine/core/dispatch/sla_clock.py
"""
SLA deadlines for acceptance and scheduling.

Two windows per job, independent of dispatch step timers:

* accept:   dispatch start .. dispatch start + SLA_ACCEPT_MINUTES
* schedule: acceptance     .. acceptance + SLA_SCHEDULE_HOURS

A warning fires when less than ``warning_minutes_remaining`` is left, but
never before ``min_elapsed_ratio`` of the window has passed.  The breach
fires at the deadline.  Both are advisory: the engine flags and publishes
them, job status is not touched.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from dispatch_engine.core.dispatch.domain import DispatchPolicy, Job, JobStatus
from dispatch_engine.core.dispatch.timers import (
    ACCEPT_SLA_BREACH,
    ACCEPT_SLA_WARNING,
    SCHEDULE_SLA_BREACH,
    SCHEDULE_SLA_WARNING,
    TimerRegistry,
)
from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)


class SlaKind(str, Enum):
    ACCEPT = "accept"
    SCHEDULE = "schedule"


class SlaPhase(str, Enum):
    WARNING = "warning"
    BREACH = "breach"


_TIMER_NAMES = {
    (SlaKind.ACCEPT, SlaPhase.WARNING): ACCEPT_SLA_WARNING,
    (SlaKind.ACCEPT, SlaPhase.BREACH): ACCEPT_SLA_BREACH,
    (SlaKind.SCHEDULE, SlaPhase.WARNING): SCHEDULE_SLA_WARNING,
    (SlaKind.SCHEDULE, SlaPhase.BREACH): SCHEDULE_SLA_BREACH,
}

# Status the job must still be in for a signal of this kind to matter
_WATCHED_STATUS = {
    SlaKind.ACCEPT: JobStatus.DISPATCHED,
    SlaKind.SCHEDULE: JobStatus.ACCEPTED,
}

# Each window records its own breach; Job.sla_breached is the OR of both
_BREACH_FLAGS = {
    SlaKind.ACCEPT: "accept_sla_breached",
    SlaKind.SCHEDULE: "schedule_sla_breached",
}

SignalHandler = Callable[[str, SlaKind, SlaPhase], Awaitable[object]]


class SlaClock:
    def __init__(
        self,
        timers: TimerRegistry,
        *,
        clock: Callable[[], datetime],
        warning_minutes_remaining: float = 30.0,
        min_elapsed_ratio: float = 0.7,
    ):
        self._timers = timers
        self._clock = clock
        self._warning_remaining = timedelta(minutes=warning_minutes_remaining)
        self._min_elapsed_ratio = min_elapsed_ratio

    # ------------------------------------------------------------------
    # Deadline arithmetic
    # ------------------------------------------------------------------

    @staticmethod
    def accept_deadline(started_at: datetime, policy: DispatchPolicy) -> datetime:
        return started_at + timedelta(minutes=policy.accept_minutes)

    @staticmethod
    def schedule_deadline(accepted_at: datetime, policy: DispatchPolicy) -> datetime:
        return accepted_at + timedelta(hours=policy.schedule_hours)

    def warning_at(self, start: datetime, deadline: datetime) -> datetime:
        """Deadline minus the warning lead, with the lead capped at (1 - ratio) of the window."""
        duration = deadline - start
        lead = min(self._warning_remaining, duration * (1 - self._min_elapsed_ratio))
        return deadline - lead

    @staticmethod
    def percent_elapsed(start: datetime, deadline: datetime, now: datetime) -> float:
        total = (deadline - start).total_seconds()
        if total <= 0:
            return 100.0
        elapsed = (now - start).total_seconds()
        return round(max(0.0, elapsed / total * 100), 1)

    @staticmethod
    def window(job: Job, kind: SlaKind) -> Optional[tuple[datetime, datetime]]:
        """(start, deadline) for ``kind``, or None when the window is not set."""
        if kind == SlaKind.ACCEPT:
            ctx = job.escalation_context
            if job.accept_deadline is None or ctx is None:
                return None
            return job.accept_deadline - timedelta(minutes=ctx.policy.accept_minutes), job.accept_deadline

        if job.schedule_deadline is None or job.accepted_at is None:
            return None
        return job.accepted_at, job.schedule_deadline

    @staticmethod
    def is_watching(job: Job, kind: SlaKind) -> bool:
        """True if a signal of ``kind`` still applies to the job's current status."""
        return job.status == _WATCHED_STATUS[kind]

    @staticmethod
    def is_breached(job: Job, kind: SlaKind) -> bool:
        return getattr(job, _BREACH_FLAGS[kind])

    @staticmethod
    def mark_breached(job: Job, kind: SlaKind) -> None:
        setattr(job, _BREACH_FLAGS[kind], True)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def arm(self, job: Job, kind: SlaKind, on_signal: SignalHandler) -> bool:
        window = self.window(job, kind)
        if window is None:
            return False
        start, deadline = window
        now = self._clock()

        for phase, fire_at in (
            (SlaPhase.WARNING, self.warning_at(start, deadline)),
            (SlaPhase.BREACH, deadline),
        ):
            self._timers.schedule(
                job.id,
                _TIMER_NAMES[(kind, phase)],
                (fire_at - now).total_seconds(),
                _bind(on_signal, job.id, kind, phase),
            )

        logger.debug(
            f"{kind.value} SLA armed, deadline {deadline.isoformat()}",
            extra={"job_id": job.id},
        )
        return True

    def disarm(self, job_id: str, kind: SlaKind) -> None:
        for phase in SlaPhase:
            self._timers.cancel(job_id, _TIMER_NAMES[(kind, phase)])


def _bind(handler: SignalHandler, job_id: str, kind: SlaKind, phase: SlaPhase):
    async def fire():
        return await handler(job_id, kind, phase)
    return fire
