# dispatch_engine/core/dispatch/selector.py
"""
Candidate selection: directory query, radius filter, ranking.

The selector never raises for an empty pool; callers get
``SelectionResult(empty=True)`` and escalate.  Directory failures are
retried with backoff and surface as ``DirectoryUnavailableError`` once the
cap is reached (or at once, for errors marked not retryable).
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from dispatch_engine.core.dispatch.domain import Candidate, Job, Location, RankedCandidate
from dispatch_engine.core.dispatch.errors import DirectoryUnavailableError
from dispatch_engine.core.dispatch.geo import distance_km, ranking_score
from dispatch_engine.core.dispatch.ports import CandidateSource
from dispatch_engine.infra.logging_config import get_logger
from dispatch_engine.infra.metrics import DispatchMetrics
from dispatch_engine.infra.retry import RetryExhaustedError, retry_async

logger = get_logger(__name__)


@dataclass(frozen=True)
class SelectionResult:
    ranked: tuple[RankedCandidate, ...] = ()
    considered: int = 0     # candidates returned by the directory

    @property
    def empty(self) -> bool:
        return not self.ranked


def rank_candidates(
    center: Location,
    candidates: Iterable[Candidate],
    radius_km: float,
    exclude_ids: Iterable[str] = (),
) -> list[RankedCandidate]:
    """
    Score every eligible candidate and sort best first.

    Eligible means: not excluded, within ``radius_km`` of the job, and the
    job lies inside the candidate's own service radius.  Order is score
    descending, then distance ascending, then id ascending.
    """
    excluded = set(exclude_ids)
    seen: set[str] = set()
    ranked: list[RankedCandidate] = []

    for c in candidates:
        if c.id in excluded or c.id in seen:
            continue
        seen.add(c.id)

        d = distance_km(center.lat, center.lng, c.lat, c.lng)
        if d > radius_km or d > c.service_radius_km:
            continue

        ranked.append(RankedCandidate(
            professional_id=c.id,
            distance_km=d,
            score=ranking_score(d, c.avg_response_minutes, c.completion_rate, c.total_completed),
        ))

    ranked.sort(key=lambda r: (-r.score, r.distance_km, r.professional_id))
    return ranked


class CandidateSelector:
    def __init__(
        self,
        directory: CandidateSource,
        *,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._directory = directory
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._sleep = sleep

    async def select(
        self,
        job: Job,
        radius_km: float,
        max_candidates: int,
        exclude_ids: Iterable[str] = (),
    ) -> SelectionResult:
        excluded = sorted(set(exclude_ids))

        try:
            with DispatchMetrics.track_selection_time(job.service_category_id):
                candidates = await retry_async(
                    self._directory.list_eligible_professionals,
                    job.service_category_id, job.location, radius_km, excluded,
                    max_retries=self._max_retries,
                    initial_delay=self._retry_base_delay,
                    max_delay=self._retry_max_delay,
                    operation="list_eligible_professionals",
                    sleep=self._sleep,
                )
        except RetryExhaustedError as e:
            raise DirectoryUnavailableError(str(e)) from e
        except Exception as e:
            raise DirectoryUnavailableError(f"Candidate directory refused the query: {e}") from e

        ranked = rank_candidates(job.location, candidates, radius_km, excluded)[:max(0, max_candidates)]

        if not ranked:
            logger.info(
                f"No eligible candidates for job {job.id} "
                f"(category={job.service_category_id}, radius={radius_km:g}km, "
                f"returned={len(candidates)}, excluded={len(excluded)})",
                extra={"job_id": job.id},
            )
        else:
            logger.debug(
                f"Ranked {len(ranked)}/{len(candidates)} candidates for job {job.id}",
                extra={"job_id": job.id},
            )

        return SelectionResult(ranked=tuple(ranked), considered=len(candidates))
