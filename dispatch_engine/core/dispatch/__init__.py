# dispatch_engine/core/dispatch/__init__.py
"""
Dispatch and SLA escalation core.

- ``geo``: haversine distance and ranking score (pure)
- ``selector``: candidate directory query, radius filter, ranking
- ``sequencer``: attempts per escalation step, responses, expiry
- ``escalation``: job status rules, step advance, overrides (single writer)
- ``sla_clock``: accept / schedule deadlines, warning and breach timers
- ``timers``: cancellable timers keyed by (job id, name)
- ``events``: best-effort event and notification delivery
- ``engine``: command entry points wiring the above together

Adapters (store, directory, gateway, event relay, policy cache) live in
``dispatch_engine.infra`` and are passed in; this package imports none of them.

Canonical imports:
    from dispatch_engine.core.dispatch import DispatchEngine
    from dispatch_engine.core.dispatch.domain import Job, JobStatus
"""
from dispatch_engine.core.dispatch.domain import (  # noqa: F401
    AttemptStatus,
    CommandOutcome,
    CommandResult,
    DispatchAttempt,
    DispatchPolicy,
    EscalationAction,
    EscalationStep,
    Job,
    JobRecord,
    JobStatus,
    Location,
    OverrideAction,
    ScopeType,
)
from dispatch_engine.core.dispatch.engine import DispatchEngine  # noqa: F401
from dispatch_engine.core.dispatch.errors import (  # noqa: F401
    ConfigurationError,
    ConflictError,
    DispatchError,
    InvalidTransitionError,
    NotFoundError,
)
