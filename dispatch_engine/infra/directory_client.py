# dispatch_engine/infra/directory_client.py
"""
Professional directory client (candidate source).

GET {directory_url}/professionals/eligible
    ?category=<id>&lat=<f>&lng=<f>&radius_km=<f>&exclude=<id>,<id>

Response: a JSON list (or ``{"professionals": [...]}``) of objects with
``id``, ``lat``, ``lng``, ``service_radius_km`` and optional
``avg_response_minutes``, ``completion_rate``, ``total_completed``,
``open_jobs``.  camelCase keys are accepted too.

Retries are the caller's job (the candidate selector retries with backoff).
"""
from __future__ import annotations

from typing import Any, Iterable

from dispatch_engine.core.dispatch.domain import Candidate, Location
from dispatch_engine.infra.http_client import get_directory_session, request_json
from dispatch_engine.infra.logging_config import get_logger, mask_coordinates
from dispatch_engine.infra.metrics import inc_counter

logger = get_logger(__name__)


def _pick(item: dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    value = item.get(snake)
    if value is None:
        value = item.get(camel, default)
    return default if value is None else value


def parse_candidate(item: dict[str, Any]) -> Candidate:
    """Build a Candidate from one directory record."""
    avg = _pick(item, "avg_response_minutes", "avgResponseMinutes")
    rate = _pick(item, "completion_rate", "completionRate")
    return Candidate(
        id=str(item["id"]),
        lat=float(item["lat"]),
        lng=float(item["lng"]),
        service_radius_km=float(_pick(item, "service_radius_km", "serviceRadiusKm", 0.0)),
        avg_response_minutes=float(avg) if avg is not None else None,
        completion_rate=float(rate) if rate is not None else None,
        total_completed=int(_pick(item, "total_completed", "totalCompleted", 0)),
        open_jobs=int(_pick(item, "open_jobs", "openJobs", 0)),
    )


class HttpDirectoryClient:
    def __init__(self, base_url: str | None, token: str | None = None):
        self._base_url = base_url.rstrip("/") if base_url else None
        self._token = token

    def is_configured(self) -> bool:
        return bool(self._base_url)

    async def list_eligible_professionals(
        self,
        category: str,
        center: Location,
        radius_km: float,
        exclude_ids: Iterable[str],
    ) -> list[Candidate]:
        if not self._base_url:
            logger.warning("Directory not configured; returning no candidates")
            return []

        params = {
            "category": category,
            "lat": center.lat,
            "lng": center.lng,
            "radius_km": radius_km,
        }
        excluded = list(exclude_ids)
        if excluded:
            params["exclude"] = ",".join(excluded)

        body = await request_json(
            get_directory_session(),
            "GET",
            f"{self._base_url}/professionals/eligible",
            service="directory",
            token=self._token,
            params=params,
        )
        items = body.get("professionals", []) if isinstance(body, dict) else (body or [])

        candidates = []
        for item in items:
            try:
                candidates.append(parse_candidate(item))
            except (KeyError, TypeError, ValueError) as e:
                inc_counter("directory_records_skipped_total")
                logger.warning(f"Skipping malformed directory record: {e}")

        logger.debug(
            f"Directory returned {len(candidates)} professionals for {category} "
            f"near {mask_coordinates(center.lat, center.lng)}"
        )
        return candidates
