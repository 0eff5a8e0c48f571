from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, Enum):
    DRAFT = "DRAFT"
    DISPATCHED = "DISPATCHED"
    ACCEPTED = "ACCEPTED"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})


class AttemptStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


class EscalationAction(str, Enum):
    NOTIFY = "NOTIFY"
    REASSIGN = "REASSIGN"
    OPERATOR_ALERT = "OPERATOR_ALERT"
    MANAGER_ALERT = "MANAGER_ALERT"


ALERT_ACTIONS = frozenset({EscalationAction.OPERATOR_ALERT, EscalationAction.MANAGER_ALERT})


class OverrideAction(str, Enum):
    RESOLVE = "RESOLVE"
    REASSIGN = "REASSIGN"
    CANCEL = "CANCEL"
    ESCALATE_FURTHER = "ESCALATE_FURTHER"


class ScopeType(str, Enum):
    """Policy scopes, least specific first."""
    GLOBAL = "GLOBAL"
    REGION = "REGION"
    ORGANIZATION = "ORGANIZATION"
    SERVICE_CATEGORY = "SERVICE_CATEGORY"


class CommandOutcome(str, Enum):
    APPLIED = "applied"
    CONFLICT = "conflict"      # safe to re-read and retry, or already done elsewhere
    DISCARDED = "discarded"    # stale signal, nothing to do
    BLOCKED = "blocked"        # could not start (e.g. configuration unavailable)


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    address: Optional[str] = None


@dataclass(frozen=True)
class Candidate:
    """Read-only projection of a professional from the directory."""
    id: str
    lat: float
    lng: float
    service_radius_km: float
    avg_response_minutes: Optional[float] = None
    completion_rate: Optional[float] = None
    total_completed: int = 0
    open_jobs: int = 0


@dataclass(frozen=True)
class RankedCandidate:
    professional_id: str
    distance_km: float
    score: float


@dataclass(frozen=True)
class EscalationStep:
    """
    One rung of the escalation ladder.

    ``batch_size`` professionals are offered the job when the step opens;
    the step window is ``timeout_minutes`` or, when unset, the job's
    accept window.  Alert actions also notify ``notify_roles``.
    """
    batch_size: int
    action: EscalationAction = EscalationAction.NOTIFY
    notify_roles: tuple[str, ...] = ()
    timeout_minutes: Optional[float] = None

    def window_minutes(self, default_minutes: float) -> float:
        return self.timeout_minutes if self.timeout_minutes is not None else default_minutes


@dataclass(frozen=True)
class DispatchPolicy:
    """Policy snapshot resolved once at dispatch start."""
    steps: tuple[EscalationStep, ...]
    accept_minutes: float
    schedule_hours: float
    max_attempts: int
    search_radius_km: float
    max_candidates: int


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass
class EscalationContext:
    """Per-job dispatch state frozen at dispatch start, advanced per step."""
    policy: DispatchPolicy
    ranked: list[RankedCandidate] = field(default_factory=list)
    step_seq: int = 0                       # bumps on every step opening; timers carry it
    step_opened_at: Optional[datetime] = None
    step_deadline: Optional[datetime] = None
    last_action: Optional[str] = None


@dataclass
class DispatchAttempt:
    id: str
    job_id: str
    professional_id: str
    status: AttemptStatus
    created_at: datetime
    step_index: int
    attempt_number: int
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    distance_km: Optional[float] = None
    score: Optional[float] = None

    @property
    def is_pending(self) -> bool:
        return self.status == AttemptStatus.PENDING


@dataclass
class Job:
    id: str
    reference_number: str
    status: JobStatus
    service_category_id: str
    location: Location
    created_at: datetime
    urgency: str = "standard"
    region_id: Optional[str] = None
    org_id: Optional[str] = None
    assigned_professional_id: Optional[str] = None
    current_step_index: int = 0
    accept_deadline: Optional[datetime] = None
    schedule_deadline: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    escalated: bool = False
    accept_sla_breached: bool = False
    schedule_sla_breached: bool = False
    version: int = 0
    escalation_context: Optional[EscalationContext] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def sla_breached(self) -> bool:
        return self.accept_sla_breached or self.schedule_sla_breached


@dataclass
class JobRecord:
    """One job and all of its attempts: the unit of read-modify-write."""
    job: Job
    attempts: list[DispatchAttempt] = field(default_factory=list)

    def find_attempt(self, attempt_id: str) -> Optional[DispatchAttempt]:
        return next((a for a in self.attempts if a.id == attempt_id), None)

    def pending(self) -> list[DispatchAttempt]:
        return [a for a in self.attempts if a.status == AttemptStatus.PENDING]

    def accepted(self) -> Optional[DispatchAttempt]:
        return next((a for a in self.attempts if a.status == AttemptStatus.ACCEPTED), None)

    def offered_ids(self) -> set[str]:
        return {a.professional_id for a in self.attempts}

    def step_attempts(self, step_index: int) -> list[DispatchAttempt]:
        return [a for a in self.attempts if a.step_index == step_index]


@dataclass(frozen=True)
class CommandResult:
    """What the caller of a command gets back (never raw internal errors)."""
    outcome: CommandOutcome
    job_id: str
    status: Optional[JobStatus]
    message: str = ""
    attempt_id: Optional[str] = None
    version: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome == CommandOutcome.APPLIED


# ============================================================================
# SERIALIZATION (store adapters, HTTP responses)
# ============================================================================

def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def policy_to_dict(policy: DispatchPolicy) -> dict[str, Any]:
    return {
        "steps": [
            {
                "batch_size": s.batch_size,
                "action": s.action.value,
                "notify_roles": list(s.notify_roles),
                "timeout_minutes": s.timeout_minutes,
            }
            for s in policy.steps
        ],
        "accept_minutes": policy.accept_minutes,
        "schedule_hours": policy.schedule_hours,
        "max_attempts": policy.max_attempts,
        "search_radius_km": policy.search_radius_km,
        "max_candidates": policy.max_candidates,
    }


def policy_from_dict(data: dict[str, Any]) -> DispatchPolicy:
    return DispatchPolicy(
        steps=tuple(
            EscalationStep(
                batch_size=int(s["batch_size"]),
                action=EscalationAction(s.get("action", "NOTIFY")),
                notify_roles=tuple(s.get("notify_roles") or ()),
                timeout_minutes=s.get("timeout_minutes"),
            )
            for s in data["steps"]
        ),
        accept_minutes=float(data["accept_minutes"]),
        schedule_hours=float(data["schedule_hours"]),
        max_attempts=int(data["max_attempts"]),
        search_radius_km=float(data["search_radius_km"]),
        max_candidates=int(data["max_candidates"]),
    )


def context_to_dict(ctx: Optional[EscalationContext]) -> Optional[dict[str, Any]]:
    if ctx is None:
        return None
    return {
        "policy": policy_to_dict(ctx.policy),
        "ranked": [
            {"professional_id": r.professional_id, "distance_km": r.distance_km, "score": r.score}
            for r in ctx.ranked
        ],
        "step_seq": ctx.step_seq,
        "step_opened_at": _iso(ctx.step_opened_at),
        "step_deadline": _iso(ctx.step_deadline),
        "last_action": ctx.last_action,
    }


def context_from_dict(data: Optional[dict[str, Any]]) -> Optional[EscalationContext]:
    if not data:
        return None
    return EscalationContext(
        policy=policy_from_dict(data["policy"]),
        ranked=[RankedCandidate(**r) for r in data.get("ranked", [])],
        step_seq=int(data.get("step_seq", 0)),
        step_opened_at=_dt(data.get("step_opened_at")),
        step_deadline=_dt(data.get("step_deadline")),
        last_action=data.get("last_action"),
    )


def attempt_to_dict(attempt: DispatchAttempt) -> dict[str, Any]:
    return {
        "id": attempt.id,
        "job_id": attempt.job_id,
        "professional_id": attempt.professional_id,
        "status": attempt.status.value,
        "created_at": _iso(attempt.created_at),
        "responded_at": _iso(attempt.responded_at),
        "decline_reason": attempt.decline_reason,
        "step_index": attempt.step_index,
        "attempt_number": attempt.attempt_number,
        "distance_km": attempt.distance_km,
        "score": attempt.score,
    }


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "reference_number": job.reference_number,
        "status": job.status.value,
        "urgency": job.urgency,
        "service_category_id": job.service_category_id,
        "location": {
            "lat": job.location.lat,
            "lng": job.location.lng,
            "address": job.location.address,
        },
        "region_id": job.region_id,
        "org_id": job.org_id,
        "created_at": _iso(job.created_at),
        "assigned_professional_id": job.assigned_professional_id,
        "current_step_index": job.current_step_index,
        "accept_deadline": _iso(job.accept_deadline),
        "schedule_deadline": _iso(job.schedule_deadline),
        "accepted_at": _iso(job.accepted_at),
        "escalated": job.escalated,
        "sla_breached": job.sla_breached,
        "accept_sla_breached": job.accept_sla_breached,
        "schedule_sla_breached": job.schedule_sla_breached,
        "version": job.version,
    }
