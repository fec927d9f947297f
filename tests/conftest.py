"""Shared fixtures for worktimer tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from worktimer.registry import TimerRegistry
from worktimer.registry_storage import RegistryStorage
from worktimer.service import TimerService
from worktimer.storage import TimeLogStorage

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def log_storage(tmp_path):
    return TimeLogStorage(tmp_path / "time_logs.db")


@pytest.fixture
def registry(tmp_path):
    return TimerRegistry(storage=RegistryStorage(tmp_path / "active_sessions"), lock_timeout=2.0)


@pytest.fixture
def service(registry, log_storage, clock):
    return TimerService(registry, log_storage, clock=clock, sleep=MagicMock())
