"""worktimer - Work timers with per-user session safety and time aggregation."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("worktimer")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from worktimer.activity import LiveActivityView
from worktimer.aggregation import aggregate
from worktimer.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    StoreUnavailableError,
    WorkTimerError,
)
from worktimer.registry import TimerRegistry
from worktimer.service import TimerService
from worktimer.storage import TimeLogStorage
from worktimer.types import AggregateSnapshot, SessionState, TimeLog, TimerSession

__all__ = [
    # Core
    "TimerService",
    "TimerRegistry",
    "TimeLogStorage",
    "LiveActivityView",
    "aggregate",
    # Types
    "TimerSession",
    "TimeLog",
    "SessionState",
    "AggregateSnapshot",
    # Errors
    "WorkTimerError",
    "ConflictError",
    "NotFoundError",
    "InvalidStateError",
    "StoreUnavailableError",
]
