# dispatch_engine/core/dispatch/timers.py
"""
Cancellable one-shot timers keyed by (job id, timer name).

Each timer is an asyncio task that sleeps and then awaits its callback.
Arming a key that is already armed replaces the old timer.  Callbacks are
expected to re-read state and discard themselves when stale; the registry
only guarantees that a cancelled timer never fires.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)

TimerKey = tuple[str, str]
TimerCallback = Callable[[], Awaitable[object]]

STEP_TIMER = "step"
ACCEPT_SLA_WARNING = "sla_accept_warning"
ACCEPT_SLA_BREACH = "sla_accept_breach"
SCHEDULE_SLA_WARNING = "sla_schedule_warning"
SCHEDULE_SLA_BREACH = "sla_schedule_breach"


class TimerRegistry:
    def __init__(self):
        self._tasks: dict[TimerKey, asyncio.Task] = {}

    def schedule(self, job_id: str, name: str, delay_seconds: float, callback: TimerCallback) -> None:
        """Arm (or re-arm) timer ``name`` for ``job_id``."""
        key = (job_id, name)
        self.cancel(job_id, name)
        task = asyncio.create_task(
            self._run(key, max(0.0, delay_seconds), callback),
            name=f"timer:{job_id}:{name}",
        )
        self._tasks[key] = task

    def cancel(self, job_id: str, name: str) -> bool:
        task = self._tasks.pop((job_id, name), None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self, job_id: str) -> int:
        keys = [k for k in self._tasks if k[0] == job_id]
        for _, name in keys:
            self.cancel(job_id, name)
        if keys:
            logger.debug(f"Disarmed {len(keys)} timers", extra={"job_id": job_id})
        return len(keys)

    def active(self, job_id: str) -> list[str]:
        return sorted(name for jid, name in self._tasks if jid == job_id)

    def __len__(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Cancel every timer and wait for the tasks to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Timer registry stopped ({len(tasks)} timers cancelled)")

    async def _run(self, key: TimerKey, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)

        # Fired: drop the entry first so the callback may re-arm the same key.
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]

        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Timer {key[1]} callback failed: {e}",
                exc_info=True,
                extra={"job_id": key[0]},
            )
