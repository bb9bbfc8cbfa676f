"""
Global pytest configuration and fixtures for CutBench tests.

All tests run against in-process fakes (see ``fakes.py``); no database or
``/proc`` access is required.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeBackend, FakeMetricSource  # noqa: E402

from cutbench.core.query_executor import QueryExecutor  # noqa: E402


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def executor(backend: FakeBackend) -> QueryExecutor:
    return QueryExecutor(backend, timeout_overhead_seconds=0.05)


@pytest.fixture
def metric_source() -> FakeMetricSource:
    return FakeMetricSource()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: tests that run a full timed orchestrator cycle"
    )
