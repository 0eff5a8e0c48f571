# tests/test_selector.py
"""Tests for candidate ranking and the directory-backed selector"""
import pytest

from dispatch_engine.core.dispatch.errors import DirectoryUnavailableError
from dispatch_engine.core.dispatch.selector import CandidateSelector, rank_candidates
from dispatch_engine.infra.http_client import ServiceCallError
from dispatch_engine.infra.metrics import get_metrics_collector

from helpers import CENTER, FakeDirectory, make_job, no_sleep, pro


def ids(result) -> list[str]:
    return [c.professional_id for c in result.ranked]


# ============================================================================
# rank_candidates (pure)
# ============================================================================

class TestRankCandidates:
    def test_orders_by_score(self):
        ranked = rank_candidates(CENTER, [
            pro("far", 30),
            pro("near", 1),
            pro("mid", 10),
        ], radius_km=50)
        assert [r.professional_id for r in ranked] == ["near", "mid", "far"]

    def test_filters_outside_search_radius(self):
        ranked = rank_candidates(CENTER, [pro("a", 5), pro("b", 25)], radius_km=20)
        assert [r.professional_id for r in ranked] == ["a"]

    def test_filters_when_job_outside_service_radius(self):
        ranked = rank_candidates(CENTER, [
            pro("small-area", 8, service_radius_km=5),
            pro("big-area", 8, service_radius_km=40),
        ], radius_km=50)
        assert [r.professional_id for r in ranked] == ["big-area"]

    def test_radius_boundary_is_inclusive(self):
        candidate = pro("edge", 10)
        exact = rank_candidates(CENTER, [candidate], radius_km=100)[0].distance_km
        assert len(rank_candidates(CENTER, [candidate], radius_km=exact)) == 1

    def test_excludes_ids(self):
        ranked = rank_candidates(CENTER, [pro("a", 1), pro("b", 2)], radius_km=50, exclude_ids=["a"])
        assert [r.professional_id for r in ranked] == ["b"]

    def test_duplicates_counted_once(self):
        ranked = rank_candidates(CENTER, [pro("a", 1), pro("a", 1), pro("b", 2)], radius_km=50)
        assert [r.professional_id for r in ranked] == ["a", "b"]

    def test_ties_break_on_id(self):
        ranked = rank_candidates(CENTER, [pro("zed", 3), pro("amy", 3), pro("kim", 3)], radius_km=50)
        assert [r.professional_id for r in ranked] == ["amy", "kim", "zed"]

    def test_metrics_outweigh_small_distance_gap(self):
        ranked = rank_candidates(CENTER, [
            pro("slow", 1, avg_response_minutes=29, completion_rate=0.2, total_completed=0),
            pro("fast", 2, avg_response_minutes=2, completion_rate=0.99, total_completed=150),
        ], radius_km=50)
        assert ranked[0].professional_id == "fast"

    def test_deterministic(self):
        pool = [pro(f"p{i}", i % 7 + 1, avg_response_minutes=i) for i in range(12)]
        first = rank_candidates(CENTER, pool, radius_km=50)
        second = rank_candidates(CENTER, list(reversed(pool)), radius_km=50)
        assert first == second


# ============================================================================
# CandidateSelector
# ============================================================================

class TestCandidateSelector:
    @pytest.mark.asyncio
    async def test_select_ranks_and_truncates(self):
        directory = FakeDirectory([pro("a", 3), pro("b", 1), pro("c", 2)])
        selector = CandidateSelector(directory, sleep=no_sleep)

        result = await selector.select(make_job(), radius_km=50, max_candidates=2)

        assert ids(result) == ["b", "c"]
        assert result.considered == 3
        assert not result.empty

    @pytest.mark.asyncio
    async def test_passes_query_to_directory(self):
        directory = FakeDirectory([pro("a", 1)])
        selector = CandidateSelector(directory, sleep=no_sleep)

        await selector.select(make_job(), radius_km=25, max_candidates=5, exclude_ids={"x", "b"})

        call = directory.calls[0]
        assert call["category"] == "plumbing"
        assert call["radius_km"] == 25
        assert call["exclude_ids"] == ["b", "x"]

    @pytest.mark.asyncio
    async def test_empty_pool_is_not_an_error(self):
        selector = CandidateSelector(FakeDirectory([]), sleep=no_sleep)
        result = await selector.select(make_job(), radius_km=50, max_candidates=5)
        assert result.empty
        assert ids(result) == []

    @pytest.mark.asyncio
    async def test_retries_transient_directory_failure(self):
        directory = FakeDirectory([pro("a", 1)], fail_times=2)
        selector = CandidateSelector(directory, max_retries=3, sleep=no_sleep)

        result = await selector.select(make_job(), radius_km=50, max_candidates=5)

        assert ids(result) == ["a"]
        assert len(directory.calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_cap(self):
        directory = FakeDirectory([pro("a", 1)], fail_times=10)
        selector = CandidateSelector(directory, max_retries=2, sleep=no_sleep)

        with pytest.raises(DirectoryUnavailableError):
            await selector.select(make_job(), radius_km=50, max_candidates=5)

        assert len(directory.calls) == 3

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        error = ServiceCallError("directory", 400, "bad category", retryable=False)
        directory = FakeDirectory([pro("a", 1)], fail_times=5, error=error)
        selector = CandidateSelector(directory, max_retries=3, sleep=no_sleep)

        with pytest.raises(DirectoryUnavailableError):
            await selector.select(make_job(), radius_km=50, max_candidates=5)

        assert len(directory.calls) == 1

    @pytest.mark.asyncio
    async def test_records_selection_time(self):
        selector = CandidateSelector(FakeDirectory([pro("a", 1)]), sleep=no_sleep)
        await selector.select(make_job(), radius_km=50, max_candidates=5)

        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert "candidate_selection_seconds{category=plumbing}" in histograms
