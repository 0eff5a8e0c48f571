# dispatch_engine/core/dispatch/events.py
"""
Best-effort delivery wrappers around the event sink and notification gateway.

Both retry with bounded backoff and report failure by return value.  A
failed delivery is logged and counted; it never rolls back a committed
state transition.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Sequence

from dispatch_engine.core.dispatch.domain import DispatchAttempt, Job
from dispatch_engine.core.dispatch.ports import EventSink, NotificationGateway
from dispatch_engine.infra.logging_config import get_logger
from dispatch_engine.infra.metrics import DispatchMetrics
from dispatch_engine.infra.retry import RetryExhaustedError, retry_async

logger = get_logger(__name__)


# Event topics
JOB_ESCALATED = "job:escalated"
JOB_SLA_WARNING = "job:sla_warning"
JOB_SLA_BREACH = "job:sla_breach"
DISPATCH_ATTEMPT = "dispatch:attempt"
DISPATCH_RESPONSE = "dispatch:response"
QUEUE_REFRESH = "queue:refresh"

# Notification templates
TEMPLATE_OFFER = "dispatch.offer"
TEMPLATE_OFFER_WITHDRAWN = "dispatch.offer_withdrawn"
TEMPLATE_OPERATOR_ALERT = "dispatch.operator_alert"
TEMPLATE_MANAGER_ALERT = "dispatch.manager_alert"


def job_payload(job: Job, **extra: Any) -> dict[str, Any]:
    payload = {
        "job_id": job.id,
        "reference_number": job.reference_number,
        "status": job.status.value,
        "step_index": job.current_step_index,
        "escalated": job.escalated,
        "version": job.version,
    }
    payload.update(extra)
    return payload


def attempt_payload(job: Job, attempt: DispatchAttempt, **extra: Any) -> dict[str, Any]:
    payload = {
        "job_id": job.id,
        "reference_number": job.reference_number,
        "attempt_id": attempt.id,
        "professional_id": attempt.professional_id,
        "status": attempt.status.value,
        "step_index": attempt.step_index,
        "created_at": attempt.created_at.isoformat(),
        "responded_at": attempt.responded_at.isoformat() if attempt.responded_at else None,
    }
    payload.update(extra)
    return payload


class _RetryingDelivery:
    channel = "delivery"

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    async def _deliver(self, func, *args, operation: str) -> bool:
        try:
            await retry_async(
                func, *args,
                max_retries=self._max_retries,
                initial_delay=self._base_delay,
                max_delay=self._max_delay,
                operation=operation,
                sleep=self._sleep,
            )
            return True
        except RetryExhaustedError as e:
            DispatchMetrics.delivery_failed(self.channel)
            logger.error(f"{self.channel} delivery gave up: {e}")
            return False
        except Exception as e:
            DispatchMetrics.delivery_failed(self.channel)
            logger.error(f"{self.channel} delivery rejected ({operation}): {e}")
            return False


class EventBroadcaster(_RetryingDelivery):
    """Publishes transition events to the real-time sink."""

    channel = "event"

    def __init__(self, sink: EventSink, **retry_options):
        super().__init__(**retry_options)
        self._sink = sink

    async def publish(self, topic: str, payload: dict[str, Any]) -> bool:
        return await self._deliver(self._sink.publish, topic, payload, operation=f"publish {topic}")


class Notifier(_RetryingDelivery):
    """Sends offers and alerts through the notification gateway."""

    channel = "notification"

    def __init__(self, gateway: NotificationGateway, **retry_options):
        super().__init__(**retry_options)
        self._gateway = gateway

    async def notify(self, recipients: Sequence[str], template: str, payload: dict[str, Any]) -> bool:
        return await self._deliver(
            self._gateway.notify, list(recipients), template, payload,
            operation=f"notify {template}",
        )
