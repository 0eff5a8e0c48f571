# dispatch_engine/transport/http_app.py
"""
HTTP surface of the dispatch engine.

Security layers:
1. Public: /health and /ready only
2. Protected: every job, attempt, metrics and admin route (Bearer admin token)
3. No information leakage in production (docs disabled, sanitized 500s)

Routes parse the request, call one engine command, map ``DispatchError``
to ``HTTPException`` and return JSON.  A command that ends in CONFLICT
comes back as 409 with the command result as the body.
"""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from dispatch_engine.config import settings, validate_or_warn
from dispatch_engine.core.dispatch.domain import (
    CommandOutcome,
    CommandResult,
    Job,
    JobStatus,
    Location,
    attempt_to_dict,
    job_to_dict,
)
from dispatch_engine.core.dispatch.engine import DispatchEngine
from dispatch_engine.core.dispatch.errors import DispatchError
from dispatch_engine.core.dispatch.events import EventBroadcaster, Notifier
from dispatch_engine.core.dispatch.policy import default_policies
from dispatch_engine.core.dispatch.selector import CandidateSelector
from dispatch_engine.infra.db_async import close_pool, init_pool, pool_status
from dispatch_engine.infra.directory_client import HttpDirectoryClient
from dispatch_engine.infra.event_relay import HttpEventRelay, InMemoryEventSink
from dispatch_engine.infra.http_client import close_all_sessions
from dispatch_engine.infra.logging_config import get_logger, setup_logging
from dispatch_engine.infra.memory_store import InMemoryDispatchStore
from dispatch_engine.infra.metrics import get_metrics_collector
from dispatch_engine.infra.notification_gateway import HttpNotificationGateway
from dispatch_engine.infra.policy_cache import CachedPolicyResolver, StaticPolicySource
from dispatch_engine.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from dispatch_engine.transport.schemas import (
    AttemptResponseIn,
    CommandOut,
    DispatchIn,
    JobCreateIn,
    OverrideIn,
    StatusIn,
)
from dispatch_engine.transport.security import (
    check_configured_tokens,
    require_admin_auth,
    sanitize_error_message,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_engine(request: Request) -> DispatchEngine:
    """Get engine from app state"""
    return request.app.state.engine


# ============================================================================
# MIDDLEWARE FOR SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


# ============================================================================
# WIRING
# ============================================================================

async def build_engine(fastapi_app: FastAPI) -> DispatchEngine:
    """
    Assemble the engine from settings.

    With DATABASE_URL: Postgres store and policy rows (migrations applied).
    Without: in-memory store and an empty policy table (defaults only).
    """
    if settings.database_url:
        from dispatch_engine.infra.migrations_async import apply_migrations
        from dispatch_engine.infra.pg_dispatch_repo_async import (
            get_dispatch_store,
            get_policy_source,
        )

        await init_pool()
        result = await apply_migrations()
        logger.info(f"Migrations applied: {result['count']}")
        store = get_dispatch_store()
        policy_source = get_policy_source()
    else:
        logger.warning("DATABASE_URL not set: using in-memory job store (single process, not durable)")
        store = InMemoryDispatchStore()
        policy_source = StaticPolicySource()

    resolver = CachedPolicyResolver(
        policy_source,
        ttl_seconds=settings.policy_cache_ttl_seconds,
        defaults=default_policies(settings),
        max_retries=settings.policy_resolve_retries,
        retry_base_delay=settings.policy_retry_base_delay,
    )

    retry_options = {
        "max_retries": settings.gateway_max_retries,
        "base_delay": settings.gateway_base_retry_delay,
        "max_delay": settings.gateway_max_retry_delay,
    }
    gateway = HttpNotificationGateway(settings.notification_gateway_url, settings.service_token)
    if settings.event_relay_url:
        sink = HttpEventRelay(settings.event_relay_url, settings.service_token)
    else:
        sink = InMemoryEventSink()

    selector = CandidateSelector(
        HttpDirectoryClient(settings.directory_url, settings.service_token),
        max_retries=settings.gateway_max_retries,
        retry_base_delay=settings.gateway_base_retry_delay,
        retry_max_delay=settings.gateway_max_retry_delay,
    )

    fastapi_app.state.resolver = resolver
    fastapi_app.state.event_sink = sink
    logger.info(f"Notification gateway: {gateway.name}, event sink: {type(sink).__name__}")

    return DispatchEngine(
        store=store,
        resolver=resolver,
        selector=selector,
        notifier=Notifier(gateway, **retry_options),
        broadcaster=EventBroadcaster(sink, **retry_options),
        operator_roles=tuple(settings.operator_roles),
        manager_roles=tuple(settings.manager_roles),
        sla_warning_minutes_remaining=settings.sla_warning_minutes_remaining,
        sla_warning_min_elapsed_ratio=settings.sla_warning_min_elapsed_ratio,
    )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifespan: startup and shutdown"""
    # STARTUP
    logger.info(f"Starting {settings.service_name} (env={settings.app_env})")

    validate_or_warn(settings)

    if settings.is_production and settings.log_level.upper() == "DEBUG":
        logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
        raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    # An engine already on app.state (tests, embedding) is used as-is
    if getattr(fastapi_app.state, "engine", None) is None:
        fastapi_app.state.engine = await build_engine(fastapi_app)

    # Timers are per process: re-arm them from the stored deadlines
    await fastapi_app.state.engine.recover()

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    # Pending step / SLA timers are dropped; queued deliveries are awaited
    await fastapi_app.state.engine.shutdown()

    await close_all_sessions()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Dispatch Engine",
    description="Job dispatch, escalation and SLA tracking for field-service professionals",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


_OUTCOME_STATUS = {
    CommandOutcome.APPLIED: 200,
    CommandOutcome.DISCARDED: 200,
    CommandOutcome.CONFLICT: 409,
    CommandOutcome.BLOCKED: 503,
}


def _command_response(result: CommandResult) -> JSONResponse:
    body = CommandOut(
        outcome=result.outcome.value,
        job_id=result.job_id,
        status=result.status.value if result.status else None,
        message=result.message,
        attempt_id=result.attempt_id,
        version=result.version,
    )
    return JSONResponse(status_code=_OUTCOME_STATUS[result.outcome], content=body.model_dump())


# ============================================================================
# PUBLIC ENDPOINTS (No authentication required)
# ============================================================================

@app.get("/health")
def health():
    """
    Basic health check - PUBLIC endpoint.
    Used by load balancers, monitoring, etc.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness check - PUBLIC endpoint. Unready until the pool is up (when a DB is configured)."""
    if not settings.database_url:
        return {"status": "healthy", "store": "memory"}
    pool = pool_status()
    if not pool["ready"]:
        return JSONResponse(status_code=503, content={"status": "unhealthy", "store": "postgres"})
    return {"status": "healthy", "store": "postgres", "pool": pool}


# ============================================================================
# JOB ENDPOINTS
# ============================================================================

@app.post("/jobs", status_code=201, dependencies=[Depends(require_admin_auth)])
async def create_job(body: JobCreateIn, engine: DispatchEngine = Depends(get_engine)):
    """Intake: create a DRAFT job, optionally dispatching it straight away."""
    job_id = uuid.uuid4().hex
    job = Job(
        id=job_id,
        reference_number=body.reference_number or f"JOB-{job_id[:8].upper()}",
        status=JobStatus.DRAFT,
        service_category_id=body.service_category_id,
        location=Location(lat=body.lat, lng=body.lng, address=body.address),
        created_at=datetime.now(timezone.utc),
        urgency=body.urgency,
        region_id=body.region_id,
        org_id=body.org_id,
    )
    try:
        created = await engine.create_job(job)
        if not body.dispatch:
            return {"job": job_to_dict(created)}
        result = await engine.start_dispatch(created.id)
        record = await engine.get_record(created.id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    return {
        "job": job_to_dict(record.job),
        "dispatch": CommandOut(
            outcome=result.outcome.value,
            job_id=result.job_id,
            status=result.status.value if result.status else None,
            message=result.message,
            version=result.version,
        ).model_dump(),
    }


@app.get("/jobs", dependencies=[Depends(require_admin_auth)])
async def list_jobs(
    escalated: bool | None = None,
    sla_breached: bool | None = None,
    status: JobStatus | None = None,
    limit: int = Query(100, ge=1, le=1000),
    engine: DispatchEngine = Depends(get_engine),
):
    """Operator queue: e.g. /jobs?escalated=true or /jobs?sla_breached=true, oldest first."""
    jobs = await engine.list_jobs(
        statuses=[status] if status else None,
        escalated=escalated,
        sla_breached=sla_breached,
        limit=limit,
    )
    return {"jobs": [job_to_dict(j) for j in jobs], "count": len(jobs)}


@app.get("/jobs/{job_id}", dependencies=[Depends(require_admin_auth)])
async def get_job(job_id: str, engine: DispatchEngine = Depends(get_engine)):
    try:
        record = await engine.get_record(job_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    return {
        "job": job_to_dict(record.job),
        "attempts": [attempt_to_dict(a) for a in record.attempts],
        "timers": engine.timers.active(job_id),
    }


@app.post("/jobs/{job_id}/dispatch", dependencies=[Depends(require_admin_auth)])
async def dispatch_job(
    job_id: str,
    body: DispatchIn | None = None,
    engine: DispatchEngine = Depends(get_engine),
):
    expected_version = body.expected_version if body else None
    try:
        result = await engine.start_dispatch(job_id, expected_version=expected_version)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _command_response(result)


@app.post("/attempts/{attempt_id}/response", dependencies=[Depends(require_admin_auth)])
async def respond_to_attempt(
    attempt_id: str,
    body: AttemptResponseIn,
    engine: DispatchEngine = Depends(get_engine),
):
    """Professional accepts or declines an offer."""
    try:
        result = await engine.record_response(attempt_id, body.accepted, body.reason)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _command_response(result)


@app.get("/professionals/{professional_id}/offers", dependencies=[Depends(require_admin_auth)])
async def list_offers(professional_id: str, engine: DispatchEngine = Depends(get_engine)):
    """Offers still awaiting this professional's answer, newest first."""
    offers = await engine.list_offers(professional_id)
    return {
        "offers": [
            {
                **attempt_to_dict(attempt),
                "job": {
                    "id": job.id,
                    "reference_number": job.reference_number,
                    "service_category_id": job.service_category_id,
                    "urgency": job.urgency,
                    "address": job.location.address,
                },
                "respond_by": (
                    job.escalation_context.step_deadline.isoformat()
                    if job.escalation_context and job.escalation_context.step_deadline
                    else None
                ),
            }
            for job, attempt in offers
        ],
    }


@app.post("/jobs/{job_id}/override", dependencies=[Depends(require_admin_auth)])
async def override_escalation(
    job_id: str,
    body: OverrideIn,
    engine: DispatchEngine = Depends(get_engine),
):
    """Operator override: RESOLVE, REASSIGN, CANCEL or ESCALATE_FURTHER."""
    try:
        result = await engine.override_escalation(
            job_id, body.action, note=body.note, expected_version=body.expected_version,
        )
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _command_response(result)


@app.post("/jobs/{job_id}/status", dependencies=[Depends(require_admin_auth)])
async def update_job_status(
    job_id: str,
    body: StatusIn,
    engine: DispatchEngine = Depends(get_engine),
):
    """Lifecycle updates after acceptance (SCHEDULED, IN_PROGRESS, COMPLETED) and CANCELLED."""
    try:
        result = await engine.update_status(job_id, body.status, expected_version=body.expected_version)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _command_response(result)


# ============================================================================
# MONITORING / ADMIN ENDPOINTS
# ============================================================================

@app.get("/metrics", dependencies=[Depends(require_admin_auth)])
def metrics():
    """Counters and histograms from the in-process collector."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


@app.post("/admin/metrics/reset", dependencies=[Depends(require_admin_auth)])
def admin_reset_metrics():
    logger.warning("Metrics reset triggered")
    get_metrics_collector().reset()
    return {"ok": True, "message": "Metrics reset"}


@app.post("/admin/policy/invalidate", dependencies=[Depends(require_admin_auth)])
def admin_invalidate_policy(request: Request, key: str | None = None):
    """Drop cached policy values so the next dispatch re-reads them."""
    resolver = getattr(request.app.state, "resolver", None)
    if resolver is None:
        raise HTTPException(status_code=404, detail="No policy cache")
    dropped = resolver.invalidate(key)
    logger.info(f"Policy cache invalidated: key={key or '*'} dropped={dropped}")
    return {"ok": True, "dropped": dropped}


@app.get("/events/recent", dependencies=[Depends(require_admin_auth)])
def recent_events(request: Request, limit: int = 50, topic: str | None = None):
    """Last published events (in-memory sink only)."""
    sink = getattr(request.app.state, "event_sink", None)
    if not isinstance(sink, InMemoryEventSink):
        raise HTTPException(status_code=404, detail="Event buffer not available")
    return {"events": sink.recent(limit=limit, topic=topic)}
