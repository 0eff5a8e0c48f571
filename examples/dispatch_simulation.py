#!/usr/bin/env python3
"""
Dispatch Simulation

Runs one job through the escalation ladder with in-memory adapters:
the first offer times out, the second step offers two professionals,
one declines and the other accepts.

Run from project root:
    python examples/dispatch_simulation.py
"""
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dispatch_engine.config import settings
from dispatch_engine.core.dispatch import DispatchEngine, Job, JobStatus, Location
from dispatch_engine.core.dispatch.domain import Candidate
from dispatch_engine.core.dispatch.events import EventBroadcaster, Notifier
from dispatch_engine.core.dispatch.policy import (
    DISPATCH_ESCALATION_STEPS,
    SLA_ACCEPT_MINUTES,
    default_policies,
)
from dispatch_engine.core.dispatch.selector import CandidateSelector
from dispatch_engine.infra.event_relay import InMemoryEventSink
from dispatch_engine.infra.logging_config import setup_logging
from dispatch_engine.infra.memory_store import InMemoryDispatchStore
from dispatch_engine.infra.metrics import get_metrics_collector
from dispatch_engine.infra.notification_gateway import HttpNotificationGateway
from dispatch_engine.infra.policy_cache import CachedPolicyResolver, StaticPolicySource


# Downtown Toronto and a few plumbers around it
JOB_SITE = Location(lat=43.6532, lng=-79.3832, address="100 Queen St W")

PROFESSIONALS = [
    Candidate("pro-ana", 43.6550, -79.3800, 25.0, avg_response_minutes=4, completion_rate=0.97, total_completed=180),
    Candidate("pro-ben", 43.6700, -79.3900, 15.0, avg_response_minutes=12, completion_rate=0.90, total_completed=40),
    Candidate("pro-cho", 43.7000, -79.4200, 30.0, avg_response_minutes=8, completion_rate=0.85, total_completed=75),
    Candidate("pro-dev", 44.2300, -76.4800, 10.0, total_completed=3),  # Kingston, out of range
]


class StaticDirectory:
    async def list_eligible_professionals(self, category, center, radius_km, exclude_ids):
        excluded = set(exclude_ids)
        return [p for p in PROFESSIONALS if p.id not in excluded]


def banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


async def show(engine: DispatchEngine, job_id: str) -> None:
    record = await engine.get_record(job_id)
    job = record.job
    print(f"status={job.status.value} step={job.current_step_index} "
          f"escalated={job.escalated} version={job.version}")
    for a in record.attempts:
        print(f"  #{a.attempt_number} step {a.step_index}: {a.professional_id:<8} "
              f"{a.status.value:<9} score={a.score}")


async def main() -> None:
    setup_logging(level="WARNING")

    policies = StaticPolicySource()
    policies.set(SLA_ACCEPT_MINUTES, 0.5)
    policies.set(DISPATCH_ESCALATION_STEPS, [
        {"batch_size": 1, "timeout_minutes": 0.01},
        {"batch_size": 2, "timeout_minutes": 0.05},
        {"action": "OPERATOR_ALERT"},
    ])

    sink = InMemoryEventSink()
    engine = DispatchEngine(
        store=InMemoryDispatchStore(),
        resolver=CachedPolicyResolver(policies, defaults=default_policies(settings)),
        selector=CandidateSelector(StaticDirectory()),
        notifier=Notifier(HttpNotificationGateway(None)),
        broadcaster=EventBroadcaster(sink),
    )

    job = await engine.create_job(Job(
        id="job-1",
        reference_number="JOB-0001",
        status=JobStatus.DRAFT,
        service_category_id="plumbing",
        location=JOB_SITE,
        created_at=datetime.now(timezone.utc),
        region_id="toronto",
    ))

    banner("1. Dispatch: step 0 offers the best-ranked professional")
    result = await engine.start_dispatch(job.id)
    print(f"-> {result.outcome.value}: {result.message}")
    await show(engine, job.id)

    banner("2. Nobody answers: the step window closes, step 1 opens")
    await asyncio.sleep(1.0)
    await engine.drain()
    await show(engine, job.id)

    record = await engine.get_record(job.id)
    pending = record.pending()

    banner("3. One declines, the other accepts")
    first, second = pending[0], pending[1]
    result = await engine.record_response(first.id, accepted=False, reason="Too far")
    print(f"-> decline {first.professional_id}: {result.outcome.value}")
    result = await engine.record_response(second.id, accepted=True)
    print(f"-> accept {second.professional_id}: {result.outcome.value}")
    await show(engine, job.id)

    banner("4. A late accept on a closed offer is a conflict")
    timed_out = next(a for a in (await engine.get_record(job.id)).attempts if a.step_index == 0)
    result = await engine.record_response(timed_out.id, accepted=True)
    print(f"-> {result.outcome.value}: {result.message}")

    banner("5. Schedule it")
    result = await engine.update_status(job.id, JobStatus.SCHEDULED)
    print(f"-> {result.outcome.value}: {result.message}")

    await engine.shutdown()

    banner("Events")
    for event in sink.recent(limit=20):
        print(f"  {event['topic']:<18} {event['payload'].get('professional_id') or ''}")

    banner("Counters")
    for name, value in sorted(get_metrics_collector().get_metrics()["counters"].items()):
        print(f"  {name} = {value}")


if __name__ == "__main__":
    asyncio.run(main())
