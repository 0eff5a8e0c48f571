# dispatch_engine/infra/event_relay.py
"""
Event sinks for real-time subscribers.

``HttpEventRelay`` posts each event to the real-time bus relay:

    POST {event_relay_url}/events   {"topic": "...", "payload": {...}}

``InMemoryEventSink`` keeps published events in a bounded buffer (dev runs,
the simulation example, the ``/events/recent`` debug view).
"""
from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Any

from dispatch_engine.infra.http_client import get_gateway_session, request_json
from dispatch_engine.infra.logging_config import get_logger
from dispatch_engine.infra.metrics import inc_counter

logger = get_logger(__name__)


class HttpEventRelay:
    def __init__(self, base_url: str, token: str | None = None):
        self._base_url = base_url.rstrip("/")
        self._token = token

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        await request_json(
            get_gateway_session(),
            "POST",
            f"{self._base_url}/events",
            service="event_relay",
            token=self._token,
            json_body={"topic": topic, "payload": payload},
        )
        inc_counter("events_published_total", topic=topic)


class InMemoryEventSink:
    def __init__(self, maxlen: int = 500):
        self._events: deque[dict[str, Any]] = deque(maxlen=maxlen)

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self._events.append({
            "topic": topic,
            "payload": payload,
            "published_at": datetime.now(timezone.utc).isoformat(),
        })
        inc_counter("events_published_total", topic=topic)
        logger.debug(f"[event] {topic}", extra={"job_id": payload.get("job_id")})

    def recent(self, limit: int = 50, topic: str | None = None) -> list[dict[str, Any]]:
        events = [e for e in self._events if topic is None or e["topic"] == topic]
        return events[-limit:]
