"""Pytest configuration for all tests."""

from datetime import datetime, timedelta, timezone

import pytest

from src.workflow.state.engine import TransitionEngine


class SteppingClock:
    """Deterministic clock that advances one second per reading."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        self.current = self.current + timedelta(seconds=1)
        return self.current


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def engine(clock: SteppingClock) -> TransitionEngine:
    return TransitionEngine(clock=clock)
