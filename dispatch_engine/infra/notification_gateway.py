# dispatch_engine/infra/notification_gateway.py
"""
Notification gateway client (push / SMS / email fan-out).

POST {notification_gateway_url}/notifications
    {"recipients": [...], "template": "...", "payload": {...}}

Recipients are role names (``operator``, ``manager``) or a professional
id; the gateway resolves them to devices and channels.  When no URL is
configured the notification is only logged.
"""
from __future__ import annotations

from typing import Any, Sequence

from dispatch_engine.infra.http_client import get_gateway_session, request_json
from dispatch_engine.infra.logging_config import get_logger
from dispatch_engine.infra.metrics import inc_counter

logger = get_logger(__name__)


class HttpNotificationGateway:
    def __init__(self, base_url: str | None, token: str | None = None):
        self._base_url = base_url.rstrip("/") if base_url else None
        self._token = token

    @property
    def name(self) -> str:
        return "http" if self._base_url else "log"

    def is_configured(self) -> bool:
        return bool(self._base_url)

    async def notify(
        self,
        recipients: Sequence[str],
        template: str,
        payload: dict[str, Any],
    ) -> None:
        if not self._base_url:
            logger.info(
                f"[notify:log] {template} -> {', '.join(recipients)}",
                extra={"job_id": payload.get("job_id")},
            )
            inc_counter("notifications_total", template=template, channel="log")
            return

        await request_json(
            get_gateway_session(),
            "POST",
            f"{self._base_url}/notifications",
            service="notification_gateway",
            token=self._token,
            json_body={
                "recipients": list(recipients),
                "template": template,
                "payload": payload,
            },
        )
        inc_counter("notifications_total", template=template, channel="http")
