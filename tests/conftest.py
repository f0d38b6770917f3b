"""Shared fixtures for the Progressor test suite."""

from datetime import datetime, timezone

import pytest

from progressor.clock import ManualClock
from progressor.config import TrackerConfig
from progressor.repository import InMemoryRepository
from progressor.service import TrackerService


@pytest.fixture
def clock():
    """A clock parked at 2024-03-10 09:00 UTC."""
    return ManualClock(datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def service(repo, clock):
    return TrackerService(repository=repo, config=TrackerConfig(), clock=clock)
