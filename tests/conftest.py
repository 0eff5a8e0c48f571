# tests/conftest.py
"""Pytest configuration and fixtures"""
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root and this directory to Python path
tests_dir = Path(__file__).parent
project_root = tests_dir.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(tests_dir))

from dispatch_engine.infra.metrics import get_metrics_collector  # noqa: E402
from helpers import DispatchHarness, FakeClock  # noqa: E402


@pytest_asyncio.fixture
async def make_harness():
    """Factory for DispatchHarness; every harness is shut down after the test."""
    created: list[DispatchHarness] = []

    def factory(*args, **kwargs) -> DispatchHarness:
        harness = DispatchHarness(*args, **kwargs)
        created.append(harness)
        return harness

    yield factory

    for harness in created:
        await harness.close()


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def clock():
    return FakeClock()
