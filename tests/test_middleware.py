# tests/test_middleware.py
"""Tests for dispatch_engine/transport/middleware.py: request ID, logging, error handling."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from dispatch_engine.infra.metrics import get_metrics_collector
from dispatch_engine.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    path_context,
    route_template,
)


def _build_app(raise_for: set[str] | None = None, logging_enabled: bool = True):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    # Last added is outermost: RequestID, then RequestLogging, then ErrorHandling
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=logging_enabled)
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    @app.post("/attempts/{attempt_id}/response")
    def respond(attempt_id: str):
        if "/attempts" in raise_for:
            raise RuntimeError("store exploded")
        return {"attempt_id": attempt_id}

    return app


# ============================================================================
# Path helpers
# ============================================================================

class TestPathHelpers:
    def test_job_and_attempt_context(self):
        assert path_context("/jobs/job-7/dispatch") == {"job_id": "job-7"}
        assert path_context("/attempts/att-3/response") == {"attempt_id": "att-3"}
        assert path_context("/health") == {}

    def test_route_template_hides_ids(self):
        assert route_template("/jobs/job-7/override") == "/jobs/{id}/override"
        assert route_template("/attempts/att-3/response") == "/attempts/{id}/response"
        assert route_template("/metrics") == "/metrics"


# ============================================================================
# RequestIDMiddleware
# ============================================================================

class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test")
        assert resp.status_code == 200
        assert "X-Request-ID" in resp.headers
        # UUID has 36 chars with dashes
        assert len(resp.headers["X-Request-ID"]) >= 32

    def test_preserves_existing_request_id(self):
        client = TestClient(_build_app())
        custom_id = "my-custom-request-id-123"
        resp = client.get("/test", headers={"X-Request-ID": custom_id})
        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == custom_id


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================

class TestRequestLoggingMiddleware:
    def test_records_duration_per_method(self):
        client = TestClient(_build_app())
        client.get("/test")
        client.post("/attempts/a1/response")

        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert any("http_request_duration_ms" in key and "GET" in key for key in histograms)
        assert any("http_request_duration_ms" in key and "POST" in key for key in histograms)

    def test_disabled_records_nothing(self):
        client = TestClient(_build_app(logging_enabled=False))
        client.get("/test")

        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert not any("http_request_duration_ms" in key for key in histograms)

    def test_counts_requests_by_status_class(self):
        client = TestClient(_build_app(raise_for={"/test"}), raise_server_exceptions=False)
        client.post("/attempts/a1/response")
        client.get("/test")

        collector = get_metrics_collector()
        assert collector.get_counter("http_requests_total", method="POST", status="2xx") == 1
        assert collector.get_counter("http_requests_total", method="GET", status="5xx") == 1

    def test_duration_keyed_by_route_template(self):
        client = TestClient(_build_app())
        client.post("/attempts/a1/response")

        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert "http_request_duration_ms{method=POST,route=/attempts/{id}/response}" in histograms


# ============================================================================
# ErrorHandlingMiddleware
# ============================================================================

class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        client = TestClient(_build_app(), raise_server_exceptions=False)
        resp = client.post("/attempts/a1/response")
        assert resp.status_code == 200
        assert resp.json() == {"attempt_id": "a1"}

    def test_generic_error_returns_500(self):
        client = TestClient(_build_app(raise_for={"/test"}), raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 500
        data = resp.json()
        assert data["error"] == "Internal server error"
        assert "request_id" in data

    def test_error_keeps_caller_request_id(self):
        client = TestClient(_build_app(raise_for={"/attempts"}), raise_server_exceptions=False)
        resp = client.post("/attempts/a1/response", headers={"X-Request-ID": "trace-42"})
        assert resp.status_code == 500
        assert resp.json()["request_id"] == "trace-42"
        assert "store exploded" not in resp.text
