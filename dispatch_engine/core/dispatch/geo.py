"""
Distance and suitability scoring for dispatch ranking.

Pure functions, no state.  The ranking weights and caps decide dispatch
order, so they are fixed constants rather than policy values.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from dispatch_engine.core.dispatch.domain import Location

__all__ = [
    "EARTH_RADIUS_KM",
    "DISTANCE_WEIGHT", "RESPONSE_WEIGHT", "COMPLETION_WEIGHT", "EXPERIENCE_WEIGHT",
    "MAX_DISTANCE_KM", "MAX_RESPONSE_MINUTES", "EXPERIENCE_CAP_JOBS", "NEUTRAL_COMPONENT",
    "RankingBreakdown",
    "distance_km", "within_radius", "ranking_score", "ranking_breakdown",
]


EARTH_RADIUS_KM = 6371.0

# ---------------------------------------------------------------------------
# Ranking weights (sum to 1.0)
# ---------------------------------------------------------------------------
DISTANCE_WEIGHT = 0.40
RESPONSE_WEIGHT = 0.30
COMPLETION_WEIGHT = 0.20
EXPERIENCE_WEIGHT = 0.10

MAX_DISTANCE_KM = 50.0        # distance component hits 0 here
MAX_RESPONSE_MINUTES = 30.0   # response component hits 0 here
EXPERIENCE_CAP_JOBS = 100     # experience component saturates here
NEUTRAL_COMPONENT = 0.5       # used when a metric is unknown


# ---------------------------------------------------------------------------
# Haversine distance
# ---------------------------------------------------------------------------

def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def within_radius(center: Location, point: Location, radius_km: float) -> bool:
    """True if ``point`` is at most ``radius_km`` from ``center`` (inclusive)."""
    return distance_km(center.lat, center.lng, point.lat, point.lng) <= radius_km


# ---------------------------------------------------------------------------
# Ranking score
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RankingBreakdown:
    """Weighted components of a ranking score, for operator display."""

    distance_score: float
    response_score: float
    completion_score: float
    experience_score: float

    @property
    def total(self) -> float:
        return (
            self.distance_score
            + self.response_score
            + self.completion_score
            + self.experience_score
        )


def ranking_breakdown(
    distance: float,
    avg_response_minutes: Optional[float],
    completion_rate: Optional[float],
    total_completed: int,
) -> RankingBreakdown:
    """Compute each weighted component of the ranking score."""
    distance_component = max(0.0, 1 - distance / MAX_DISTANCE_KM)

    if avg_response_minutes is None:
        response_component = NEUTRAL_COMPONENT
    else:
        response_component = max(0.0, 1 - avg_response_minutes / MAX_RESPONSE_MINUTES)

    completion_component = NEUTRAL_COMPONENT if completion_rate is None else completion_rate

    experience_component = min(1.0, (total_completed or 0) / EXPERIENCE_CAP_JOBS)

    return RankingBreakdown(
        distance_score=DISTANCE_WEIGHT * distance_component,
        response_score=RESPONSE_WEIGHT * response_component,
        completion_score=COMPLETION_WEIGHT * completion_component,
        experience_score=EXPERIENCE_WEIGHT * experience_component,
    )


def ranking_score(
    distance: float,
    avg_response_minutes: Optional[float],
    completion_rate: Optional[float],
    total_completed: int,
) -> float:
    """
    Composite suitability score in [0, 1]; higher is better.

    0.40 distance + 0.30 response time + 0.20 completion rate + 0.10 experience.
    Unknown response time or completion rate count as 0.5.
    """
    return ranking_breakdown(
        distance, avg_response_minutes, completion_rate, total_completed,
    ).total
