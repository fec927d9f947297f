"""Error taxonomy for the timer engine.

State machine errors are raised synchronously to the caller. Callers that
receive ``NotFoundError`` from ``stop`` should treat it as "already stopped".
"""


class WorkTimerError(Exception):
    """Base class for all worktimer errors."""

    code = "error"


class ConflictError(WorkTimerError):
    """The user already has an active timer.

    Surfaced as "finish or stop your current timer first". Never retried
    automatically.
    """

    code = "conflict"

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.task_id = task_id


class NotFoundError(WorkTimerError):
    """The referenced session does not exist (including already stopped)."""

    code = "not_found"


class InvalidStateError(WorkTimerError):
    """The operation is not valid from the session's state, or the caller does not own it."""

    code = "invalid_state"


class StoreUnavailableError(WorkTimerError):
    """A durable-store call failed or timed out."""

    code = "store_unavailable"


class InvalidRangeError(WorkTimerError, ValueError):
    """A date range is malformed or cannot be resolved."""

    code = "invalid_range"


class AggregationError(WorkTimerError, ValueError):
    """Aggregation inputs were rejected before computation began."""

    code = "invalid_aggregation"


class ExportError(WorkTimerError):
    """An export stream failed part-way through.

    Attributes:
        rows_written: Number of data rows emitted before the failure.
    """

    code = "export_failed"

    def __init__(self, message: str, rows_written: int = 0) -> None:
        super().__init__(message)
        self.rows_written = rows_written
