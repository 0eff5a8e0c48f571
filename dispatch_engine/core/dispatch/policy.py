"""
Policy keys consumed by dispatch and the per-job policy snapshot.

Values are resolved once, when a job's dispatch starts, and frozen on the
job's escalation context.  Later policy edits only reach new dispatches.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Sequence

from dispatch_engine.core.dispatch.domain import (
    ALERT_ACTIONS,
    DispatchPolicy,
    EscalationAction,
    EscalationStep,
    Job,
    ScopeType,
)
from dispatch_engine.core.dispatch.errors import ConfigurationError
from dispatch_engine.core.dispatch.ports import PolicyResolver
from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)


# Policy keys
SLA_ACCEPT_MINUTES = "SLA_ACCEPT_MINUTES"
SLA_SCHEDULE_HOURS = "SLA_SCHEDULE_HOURS"
DISPATCH_ESCALATION_STEPS = "DISPATCH_ESCALATION_STEPS"
MAX_DISPATCH_ATTEMPTS = "MAX_DISPATCH_ATTEMPTS"
DISPATCH_SEARCH_RADIUS_KM = "DISPATCH_SEARCH_RADIUS_KM"
DISPATCH_MAX_CANDIDATES = "DISPATCH_MAX_CANDIDATES"

POLICY_KEYS = (
    SLA_ACCEPT_MINUTES,
    SLA_SCHEDULE_HOURS,
    DISPATCH_ESCALATION_STEPS,
    MAX_DISPATCH_ATTEMPTS,
    DISPATCH_SEARCH_RADIUS_KM,
    DISPATCH_MAX_CANDIDATES,
)

ScopeChain = list[tuple[ScopeType, Optional[str]]]


def default_policies(settings) -> dict[str, Any]:
    """Fallback values used when no scope has a row for a key."""
    return {
        SLA_ACCEPT_MINUTES: settings.default_sla_accept_minutes,
        SLA_SCHEDULE_HOURS: settings.default_sla_schedule_hours,
        DISPATCH_ESCALATION_STEPS: list(settings.default_escalation_steps),
        MAX_DISPATCH_ATTEMPTS: settings.default_max_dispatch_attempts,
        DISPATCH_SEARCH_RADIUS_KM: settings.default_search_radius_km,
        DISPATCH_MAX_CANDIDATES: settings.default_max_candidates,
    }


def build_scope_chain(job: Job) -> ScopeChain:
    """Scopes to check for ``job``, least specific first."""
    chain: ScopeChain = [(ScopeType.GLOBAL, None)]
    if job.region_id:
        chain.append((ScopeType.REGION, job.region_id))
    if job.org_id:
        chain.append((ScopeType.ORGANIZATION, job.org_id))
    if job.service_category_id:
        chain.append((ScopeType.SERVICE_CATEGORY, job.service_category_id))
    return chain


def _first(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return None


def _parse_step(raw: Any) -> EscalationStep:
    if isinstance(raw, bool):
        raise ConfigurationError(f"Invalid escalation step: {raw!r}")

    # Plain count form: [1, 2, 5]
    if isinstance(raw, (int, float)):
        if raw < 1:
            raise ConfigurationError(f"Escalation step batch size must be >= 1, got {raw!r}")
        return EscalationStep(batch_size=int(raw))

    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Invalid escalation step: {raw!r}")

    try:
        action = EscalationAction(str(raw.get("action") or "NOTIFY").upper())
    except ValueError:
        raise ConfigurationError(f"Unknown escalation action: {raw.get('action')!r}")

    batch = _first(raw, "batch_size", "batchSize", "candidates")
    if batch is None:
        batch = 0 if action in ALERT_ACTIONS else 1
    batch = int(batch)
    if batch < 0 or (batch == 0 and action not in ALERT_ACTIONS):
        raise ConfigurationError(f"Escalation step batch size must be >= 1, got {batch}")

    timeout = _first(raw, "timeout_minutes", "timeoutMinutes", "afterMinutes")
    if timeout is not None:
        timeout = float(timeout)
        if timeout <= 0:
            raise ConfigurationError(f"Escalation step timeout must be positive, got {timeout}")

    roles = _first(raw, "notify_roles", "notifyRoles") or ()
    return EscalationStep(
        batch_size=batch,
        action=action,
        notify_roles=tuple(str(r) for r in roles),
        timeout_minutes=timeout,
    )


def parse_escalation_steps(raw: Any) -> tuple[EscalationStep, ...]:
    """
    Parse a ``DISPATCH_ESCALATION_STEPS`` value.

    Accepts either a list of batch sizes (``[1, 2, 5]``) or a list of step
    objects with ``batch_size``, ``action``, ``notify_roles`` and an optional
    ``timeout_minutes`` (``afterMinutes`` is read as the step timeout).
    An empty list is allowed: dispatch then goes straight to operator alert.
    """
    if raw is None:
        return ()
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
        raise ConfigurationError(f"{DISPATCH_ESCALATION_STEPS} must be a list, got {raw!r}")
    return tuple(_parse_step(item) for item in raw)


def _number(key: str, value: Any, minimum: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be numeric, got {value!r}")
    if number < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum:g}, got {number:g}")
    return number


async def load_dispatch_policy(resolver: PolicyResolver, job: Job) -> DispatchPolicy:
    """
    Resolve every dispatch policy key for ``job``.

    Raises ConfigurationError when a key cannot be resolved or holds an
    unusable value.
    """
    chain = build_scope_chain(job)
    values: dict[str, Any] = {}
    for key in POLICY_KEYS:
        values[key] = await resolver.resolve(key, chain)

    policy = DispatchPolicy(
        steps=parse_escalation_steps(values[DISPATCH_ESCALATION_STEPS]),
        accept_minutes=_number(SLA_ACCEPT_MINUTES, values[SLA_ACCEPT_MINUTES], 0.1),
        schedule_hours=_number(SLA_SCHEDULE_HOURS, values[SLA_SCHEDULE_HOURS], 0.1),
        max_attempts=int(_number(MAX_DISPATCH_ATTEMPTS, values[MAX_DISPATCH_ATTEMPTS], 1)),
        search_radius_km=_number(DISPATCH_SEARCH_RADIUS_KM, values[DISPATCH_SEARCH_RADIUS_KM], 0),
        max_candidates=int(_number(DISPATCH_MAX_CANDIDATES, values[DISPATCH_MAX_CANDIDATES], 1)),
    )
    logger.debug(
        f"Resolved dispatch policy for job {job.id}: steps={len(policy.steps)} "
        f"accept={policy.accept_minutes:g}m max_attempts={policy.max_attempts}"
    )
    return policy


def scope_chain_repr(chain: Sequence[tuple[ScopeType, Optional[str]]]) -> str:
    return " > ".join(f"{t.value}:{i}" if i else t.value for t, i in chain)
