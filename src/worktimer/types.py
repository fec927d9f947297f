"""Type definitions for the timer engine.

This module defines the Pydantic models used for timer sessions, completed
time logs, task directory records and derived aggregate snapshots.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from worktimer.clock import whole_seconds


class SessionState(str, Enum):
    """Lifecycle state of a timer session.

    Attributes:
        RUNNING: A segment is open and time is accruing.
        PAUSED: No segment is open; accumulated time is frozen.
        CLOSED: Terminal. Only visible while the session's time log
                write is pending retry.
    """

    RUNNING = "running"
    PAUSED = "paused"
    CLOSED = "closed"


class TimeLog(BaseModel):
    """Immutable record of one completed timer session.

    Attributes:
        log_id: Unique log identifier, derived from the session id.
        session_id: Session that produced this log.
        task_id: Task the time was spent on.
        user_id: User who tracked the time.
        start_time: When the session was started.
        end_time: When the session was stopped.
        duration_seconds: Whole seconds spent RUNNING (pauses excluded).
        description: Free-text note.
        is_billable: Whether the time counts toward billable totals.
    """

    model_config = ConfigDict(frozen=True)

    log_id: str = Field(..., description="Unique log identifier")
    session_id: str = Field(..., description="Originating session")
    task_id: str = Field(..., description="Task worked on")
    user_id: str = Field(..., description="Owner of the time")
    start_time: datetime = Field(..., description="Session start")
    end_time: datetime = Field(..., description="Session stop")
    duration_seconds: int = Field(..., ge=0, description="Running time in whole seconds")
    description: str | None = Field(default=None, description="Free-text note")
    is_billable: bool = Field(default=True, description="Counts toward billable totals")

    @model_validator(mode="after")
    def _check_interval(self) -> "TimeLog":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class TimerSession(BaseModel):
    """An in-progress timer owned by one user.

    Records are frozen: every transition publishes a new record rather than
    mutating fields in place, so concurrent readers never observe a
    half-applied update.

    Attributes:
        session_id: Unique session identifier.
        user_id: Owner of the session.
        task_id: Task being worked on.
        state: Current lifecycle state.
        created_at: When the session was started.
        segment_start: Start of the open RUNNING segment, None otherwise.
        accumulated_seconds: Sum of all closed segments.
        description: Free-text note.
        pending_log: Time log awaiting a successful write (CLOSED only).
    """

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., description="Unique session identifier")
    user_id: str = Field(..., description="Owner of the session")
    task_id: str = Field(..., description="Task being worked on")
    state: SessionState = Field(default=SessionState.RUNNING, description="Lifecycle state")
    created_at: datetime = Field(..., description="Session start")
    segment_start: datetime | None = Field(
        default=None,
        description="Start of the open segment while running",
    )
    accumulated_seconds: int = Field(
        default=0,
        ge=0,
        description="Whole seconds from closed segments",
    )
    description: str | None = Field(default=None, description="Free-text note")
    pending_log: TimeLog | None = Field(
        default=None,
        description="Time log still waiting to be persisted",
    )

    @property
    def is_active(self) -> bool:
        """Check if the session is running or paused."""
        return self.state != SessionState.CLOSED

    def elapsed_seconds(self, now: datetime) -> int:
        """Total running time as of ``now``.

        Args:
            now: Instant to measure against.

        Returns:
            Closed segments plus the open segment, in whole seconds.
        """
        if self.state == SessionState.RUNNING and self.segment_start is not None:
            return self.accumulated_seconds + whole_seconds(self.segment_start, now)
        return self.accumulated_seconds


class TaskInfo(BaseModel):
    """Task metadata resolved from the task directory.

    Attributes:
        task_id: Task identifier.
        title: Display title.
        task_type: Category such as FEATURE or BUG.
        priority: Priority label.
        status: Workflow status; DONE marks completion.
        project_id: Owning project.
        assignee_id: User the task is assigned to.
        completed_at: When the task reached DONE.
    """

    task_id: str = Field(..., description="Task identifier")
    title: str = Field(default="", description="Display title")
    task_type: str | None = Field(default=None, description="Task category")
    priority: str | None = Field(default=None, description="Priority label")
    status: str = Field(default="TODO", description="Workflow status")
    project_id: str | None = Field(default=None, description="Owning project")
    assignee_id: str | None = Field(default=None, description="Assigned user")
    completed_at: datetime | None = Field(default=None, description="Completion time")


class CompletedTask(BaseModel):
    """A task that reached its terminal state, as reported by the task directory."""

    task_id: str
    user_id: str | None = None
    completed_at: datetime
    project_id: str | None = None
    task_type: str | None = None


class AggregateScope(BaseModel):
    """Optional narrowing of an aggregation to one member, task or project."""

    member_id: str | None = None
    task_id: str | None = None
    project_id: str | None = None


class MemberBreakdown(BaseModel):
    """Per-member productivity numbers.

    Attributes:
        user_id: Member identifier.
        total_seconds: Tracked seconds.
        billable_seconds: Tracked seconds flagged billable.
        tasks_completed_count: Distinct tasks completed in range.
        avg_seconds_per_task: total_seconds / max(tasks_completed_count, 1).
        efficiency_score: Completed tasks per reference unit of time.
        log_count: Number of time logs contributing.
    """

    user_id: str
    total_seconds: int = 0
    billable_seconds: int = 0
    tasks_completed_count: int = 0
    avg_seconds_per_task: float = 0.0
    efficiency_score: float = 0.0
    log_count: int = 0


class AggregateSnapshot(BaseModel):
    """Dashboard statistics over a date range. Derived, never stored.

    Attributes:
        range_start: Inclusive lower bound.
        range_end: Exclusive upper bound.
        scope: Member/task/project narrowing applied.
        total_seconds: Tracked seconds.
        billable_seconds: Tracked billable seconds.
        tasks_completed_count: Distinct tasks completed in range.
        avg_seconds_per_task: total_seconds / max(tasks_completed_count, 1).
        active_member_count: Distinct members with time logs.
        members: Per-member breakdown in leaderboard order.
    """

    range_start: datetime
    range_end: datetime
    scope: AggregateScope = Field(default_factory=AggregateScope)
    total_seconds: int = 0
    billable_seconds: int = 0
    tasks_completed_count: int = 0
    avg_seconds_per_task: float = 0.0
    active_member_count: int = 0
    members: list[MemberBreakdown] = Field(default_factory=list)


class ActivityFilters(BaseModel):
    """Filters for the live activity view. Unset fields match everything."""

    task_type: str | None = None
    priority: str | None = None
    project_id: str | None = None
    user_id: str | None = None
    state: SessionState | None = None

    def needs_task_info(self) -> bool:
        """Check if any filter requires task directory metadata."""
        return any(v is not None for v in (self.task_type, self.priority, self.project_id))


class ActiveSessionView(BaseModel):
    """One row of the live "who is working on what" view."""

    session_id: str
    user_id: str
    task_id: str
    state: SessionState
    started_at: datetime
    segment_start: datetime | None = None
    accumulated_seconds: int = 0
    elapsed_seconds: int = 0
    task_title: str | None = None
    task_type: str | None = None
    task_priority: str | None = None
    project_id: str | None = None
