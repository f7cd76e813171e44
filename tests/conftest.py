"""
BASTION Test Configuration
==========================

Fixtures for the pure unit tests under tests/unit. Database and HTTP
fixtures live in bastion/api/tests/conftest.py.
"""

from datetime import datetime, timezone

import pytest


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """A controllable monotonic clock."""
    return FakeClock()


@pytest.fixture
def fixed_now():
    """A fixed UTC timestamp."""
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

