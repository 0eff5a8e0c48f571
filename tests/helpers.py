# tests/helpers.py
"""Fakes for external collaborators and an engine harness shared by the tests"""
from datetime import datetime, timedelta, timezone

from dispatch_engine.core.dispatch.domain import (
    Candidate,
    Job,
    JobStatus,
    Location,
)
from dispatch_engine.core.dispatch.engine import DispatchEngine
from dispatch_engine.core.dispatch.events import EventBroadcaster, Notifier
from dispatch_engine.core.dispatch.policy import (
    DISPATCH_ESCALATION_STEPS,
    MAX_DISPATCH_ATTEMPTS,
    SLA_ACCEPT_MINUTES,
    SLA_SCHEDULE_HOURS,
)
from dispatch_engine.core.dispatch.selector import CandidateSelector
from dispatch_engine.infra.memory_store import InMemoryDispatchStore
from dispatch_engine.infra.policy_cache import CachedPolicyResolver, StaticPolicySource


# Downtown Toronto; 1 degree of latitude is ~111.2 km
CENTER = Location(lat=43.6532, lng=-79.3832, address="100 Queen St W")
KM_PER_DEGREE_LAT = 111.195

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def pro(pro_id: str, km_north: float = 1.0, *, service_radius_km: float = 50.0, **metrics) -> Candidate:
    """A professional ``km_north`` km due north of CENTER."""
    return Candidate(
        id=pro_id,
        lat=CENTER.lat + km_north / KM_PER_DEGREE_LAT,
        lng=CENTER.lng,
        service_radius_km=service_radius_km,
        **metrics,
    )


def make_job(job_id: str = "job-1", status: JobStatus = JobStatus.DRAFT, **kwargs) -> Job:
    defaults = dict(
        id=job_id,
        reference_number=f"REF-{job_id}",
        status=status,
        service_category_id="plumbing",
        location=CENTER,
        created_at=START,
        region_id="toronto",
    )
    defaults.update(kwargs)
    return Job(**defaults)


async def no_sleep(_delay: float) -> None:
    return None


# ============================================================================
# FAKES
# ============================================================================

class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeDirectory:
    """Candidate source returning a fixed pool; can fail the first N calls."""

    def __init__(self, candidates=(), fail_times: int = 0, error: Exception | None = None):
        self.candidates = list(candidates)
        self.fail_times = fail_times
        self.error = error or ConnectionError("directory unreachable")
        self.calls: list[dict] = []

    async def list_eligible_professionals(self, category, center, radius_km, exclude_ids):
        self.calls.append({
            "category": category,
            "radius_km": radius_km,
            "exclude_ids": list(exclude_ids),
        })
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        excluded = set(exclude_ids)
        return [c for c in self.candidates if c.id not in excluded]


class RecordingGateway:
    def __init__(self):
        self.sent: list[tuple[list[str], str, dict]] = []

    async def notify(self, recipients, template, payload):
        self.sent.append((list(recipients), template, payload))

    def templates(self) -> list[str]:
        return [template for _, template, _ in self.sent]

    def sent_to(self, recipient: str) -> list[tuple[str, dict]]:
        return [(t, p) for r, t, p in self.sent if recipient in r]


class FailingGateway(RecordingGateway):
    """Fails every delivery to the given recipients (all when none given)."""

    def __init__(self, recipients=()):
        super().__init__()
        self.failing = set(recipients)
        self.failures = 0

    async def notify(self, recipients, template, payload):
        if not self.failing or self.failing & set(recipients):
            self.failures += 1
            raise ConnectionError("gateway unavailable")
        await super().notify(recipients, template, payload)


class RecordingSink:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def publish(self, topic, payload):
        self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]

    def of(self, topic: str) -> list[dict]:
        return [p for t, p in self.events if t == topic]


# ============================================================================
# ENGINE HARNESS
# ============================================================================

class DispatchHarness:
    """An engine wired to in-memory store, static policies and recording fakes."""

    def __init__(
        self,
        candidates=(),
        *,
        steps=(1, 2, 5),
        accept_minutes: float = 5,
        schedule_hours: float = 24,
        max_attempts: int = 10,
        directory: FakeDirectory | None = None,
        gateway: RecordingGateway | None = None,
        sink: RecordingSink | None = None,
    ):
        self.clock = FakeClock()
        self.store = InMemoryDispatchStore()
        self.directory = directory or FakeDirectory(candidates)
        self.gateway = gateway or RecordingGateway()
        self.sink = sink or RecordingSink()

        self.policies = StaticPolicySource()
        self.policies.set(SLA_ACCEPT_MINUTES, accept_minutes)
        self.policies.set(SLA_SCHEDULE_HOURS, schedule_hours)
        self.policies.set(DISPATCH_ESCALATION_STEPS, list(steps))
        self.policies.set(MAX_DISPATCH_ATTEMPTS, max_attempts)

        self.resolver = CachedPolicyResolver(
            self.policies,
            defaults={
                "DISPATCH_SEARCH_RADIUS_KM": 50,
                "DISPATCH_MAX_CANDIDATES": 20,
            },
            sleep=no_sleep,
        )
        self.engine = self._build_engine()

    def _build_engine(self) -> DispatchEngine:
        retry = {"max_retries": 1, "base_delay": 0, "max_delay": 0, "sleep": no_sleep}
        return DispatchEngine(
            store=self.store,
            resolver=self.resolver,
            selector=CandidateSelector(self.directory, max_retries=2, sleep=no_sleep),
            notifier=Notifier(self.gateway, **retry),
            broadcaster=EventBroadcaster(self.sink, **retry),
            clock=self.clock,
        )

    async def restart(self) -> DispatchEngine:
        """Stop the engine (dropping its timers) and start a fresh one on the same store."""
        await self.engine.shutdown()
        self.engine = self._build_engine()
        return self.engine

    async def create(self, job_id: str = "job-1", **kwargs) -> Job:
        return await self.engine.create_job(make_job(job_id, **kwargs))

    async def record(self, job_id: str = "job-1"):
        return await self.engine.get_record(job_id)

    async def job(self, job_id: str = "job-1") -> Job:
        return (await self.record(job_id)).job

    async def pending(self, job_id: str = "job-1"):
        return (await self.record(job_id)).pending()

    async def expire_current_step(self, job_id: str = "job-1"):
        """Fire the step timer now (the real one sleeps for the step window)."""
        job = await self.job(job_id)
        return await self.engine.handle_step_timeout(job_id, job.escalation_context.step_seq)

    async def settle(self) -> None:
        await self.engine.drain()

    async def close(self) -> None:
        await self.engine.shutdown()

