"""Endpoints: transport-agnostic timer API.

Each endpoint is a small async command with a name, a description and an
``execute`` method, so any transport (HTTP handler, bot command, CLI) can call
it. The timer core is synchronous; endpoints run it in a worker thread so an
event loop is never blocked on a store call. Export streams are the one
exception: their chunks read the store lazily, so async callers consume them
through ``iter_chunks``.

Example:
    registry = create_endpoint_registry(TimerContext.from_settings(settings))
    result = await registry.execute("timer_start", user_id="u1", task_id="T-1")
    if not result.success:
        print(result.error_code, result.error)
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from typing import Any, AsyncIterator, Iterator

from worktimer.activity import LiveActivityView
from worktimer.aggregation import aggregate, analytics_series
from worktimer.clock import Clock, format_duration, utc_now
from worktimer.config import DEFAULT_REFERENCE_SECONDS_PER_TASK, Settings
from worktimer.directory import InMemoryTaskDirectory
from worktimer.errors import NotFoundError, WorkTimerError
from worktimer.export import ExportFormat, stream_snapshot, stream_time_logs
from worktimer.ranges import DateRange, get_timezone, resolve_range
from worktimer.service import TimerService
from worktimer.types import ActivityFilters, AggregateScope, AggregateSnapshot, SessionState, TimeLog

logger = logging.getLogger(__name__)


@dataclass
class TimerContext:
    """Everything the endpoints need, wired once per process."""

    service: TimerService
    directory: InMemoryTaskDirectory = field(default_factory=InMemoryTaskDirectory)
    reference_seconds_per_task: int = DEFAULT_REFERENCE_SECONDS_PER_TASK
    tz: tzinfo = timezone.utc
    export_chunk_rows: int = 500
    clock: Clock = utc_now

    @classmethod
    def from_settings(cls, config: Settings, clock: Clock = utc_now) -> "TimerContext":
        """Build a context from application settings."""
        return cls(
            service=TimerService.from_settings(config, clock=clock),
            directory=InMemoryTaskDirectory.from_yaml(config.get_tasks_file()),
            reference_seconds_per_task=config.reference_seconds_per_task,
            tz=get_timezone(config.timezone),
            export_chunk_rows=config.export_chunk_rows,
            clock=clock,
        )

    @property
    def activity(self) -> LiveActivityView:
        return LiveActivityView(self.service.registry, self.directory, clock=self.clock)

    def resolve(self, range_name: str, start: str | None = None, end: str | None = None) -> DateRange:
        return resolve_range(range_name, self.clock(), tz=self.tz, start=start, end=end)

    def snapshot(
        self,
        date_range: DateRange,
        member_id: str | None = None,
        task_id: str | None = None,
        project_id: str | None = None,
    ) -> AggregateSnapshot:
        """Aggregate stored logs over a resolved range."""
        logs = self.service.log_storage.iter_logs(
            start=date_range.start,
            end=date_range.end,
            user_id=member_id,
            task_id=task_id,
            page_size=self.export_chunk_rows,
        )
        return aggregate(
            logs,
            date_range,
            completed_tasks=self.directory.completed_between(date_range.start, date_range.end),
            scope=AggregateScope(member_id=member_id, task_id=task_id, project_id=project_id),
            reference_seconds_per_task=self.reference_seconds_per_task,
            task_projects=self.directory.task_projects(),
        )


@dataclass
class EndpointResult:
    """Outcome of an endpoint call.

    Attributes:
        success: Whether the call succeeded.
        output: Endpoint output on success.
        error: Human-readable error on failure.
        error_code: Stable error code (conflict, not_found, ...).
        already_stopped: True when a stop found no session, which callers
            should treat as success rather than retry.
    """

    success: bool
    output: Any = None
    error: str | None = None
    error_code: str | None = None
    already_stopped: bool = False


class Endpoint(ABC):
    """Base class for timer endpoints."""

    def __init__(self, context: TimerContext) -> None:
        self.context = context

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique endpoint name."""

    @property
    @abstractmethod
    def description(self) -> str:
        """What the endpoint does."""

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Run the endpoint."""


class TimerStartEndpoint(Endpoint):
    """Start tracking time on a task."""

    @property
    def name(self) -> str:
        return "timer_start"

    @property
    def description(self) -> str:
        return (
            "Start a timer on a task. Fails with a conflict if the user already "
            "has a running or paused timer; finish or stop it first."
        )

    async def execute(self, user_id: str, task_id: str, description: str | None = None) -> dict[str, Any]:
        """Start a timer.

        Args:
            user_id: Caller.
            task_id: Task to track.
            description: Optional note.

        Returns:
            Dictionary with session_id, state and segment_start
        """
        session = await asyncio.to_thread(self.context.service.start, user_id, task_id, description)
        return {
            "session_id": session.session_id,
            "state": session.state.value,
            "segment_start": session.segment_start.isoformat(),
        }


class TimerPauseEndpoint(Endpoint):
    """Pause the caller's running timer."""

    @property
    def name(self) -> str:
        return "timer_pause"

    @property
    def description(self) -> str:
        return "Pause a running timer. Time stops accruing until it is resumed."

    async def execute(self, user_id: str, session_id: str) -> dict[str, Any]:
        session = await asyncio.to_thread(self.context.service.pause, session_id, user_id)
        return {
            "session_id": session.session_id,
            "state": session.state.value,
            "accumulated_seconds": session.accumulated_seconds,
        }


class TimerResumeEndpoint(Endpoint):
    """Resume the caller's paused timer."""

    @property
    def name(self) -> str:
        return "timer_resume"

    @property
    def description(self) -> str:
        return "Resume a paused timer."

    async def execute(self, user_id: str, session_id: str) -> dict[str, Any]:
        session = await asyncio.to_thread(self.context.service.resume, session_id, user_id)
        return {
            "session_id": session.session_id,
            "state": session.state.value,
            "segment_start": session.segment_start.isoformat(),
        }


class TimerStopEndpoint(Endpoint):
    """Stop the caller's timer and record the time log."""

    @property
    def name(self) -> str:
        return "timer_stop"

    @property
    def description(self) -> str:
        return (
            "Stop a timer and save its time log. A not_found result means the "
            "timer was already stopped."
        )

    async def execute(
        self,
        user_id: str,
        session_id: str,
        description: str | None = None,
        is_billable: bool = True,
    ) -> dict[str, Any]:
        log = await asyncio.to_thread(
            self.context.service.stop, session_id, user_id, description, is_billable
        )
        result = log.model_dump(mode="json")
        result["duration"] = format_duration(log.duration_seconds)
        return result


class TimerForceStopEndpoint(Endpoint):
    """Administrative stop of any user's timer."""

    @property
    def name(self) -> str:
        return "timer_force_stop"

    @property
    def description(self) -> str:
        return "Stop another user's timer on their behalf (administrators only)."

    async def execute(
        self,
        session_id: str,
        description: str | None = None,
        is_billable: bool = True,
    ) -> dict[str, Any]:
        log = await asyncio.to_thread(
            self.context.service.force_stop, session_id, description, is_billable
        )
        result = log.model_dump(mode="json")
        result["duration"] = format_duration(log.duration_seconds)
        return result


class ActiveSessionsEndpoint(Endpoint):
    """List who is working on what right now."""

    @property
    def name(self) -> str:
        return "active_sessions"

    @property
    def description(self) -> str:
        return "List running and paused timers with live elapsed time."

    async def execute(
        self,
        task_type: str | None = None,
        priority: str | None = None,
        project_id: str | None = None,
        user_id: str | None = None,
        state: str | None = None,
    ) -> dict[str, Any]:
        filters = ActivityFilters(
            task_type=task_type,
            priority=priority,
            project_id=project_id,
            user_id=user_id,
            state=SessionState(state) if state else None,
        )
        view = self.context.activity
        sessions = await asyncio.to_thread(view.list_active, filters)
        return {
            "sessions": [s.model_dump(mode="json") for s in sessions],
            "count": len(sessions),
        }


class AggregateEndpoint(Endpoint):
    """Totals, billable time and per-member performance for a period."""

    @property
    def name(self) -> str:
        return "aggregate"

    @property
    def description(self) -> str:
        return (
            "Aggregate tracked time for a range (today, yesterday, week, month, "
            "custom), optionally for one member, task or project."
        )

    async def execute(
        self,
        range: str = "today",
        start: str | None = None,
        end: str | None = None,
        member_id: str | None = None,
        task_id: str | None = None,
        project_id: str | None = None,
    ) -> dict[str, Any]:
        date_range = self.context.resolve(range, start, end)
        snapshot = await asyncio.to_thread(
            self.context.snapshot, date_range, member_id, task_id, project_id
        )
        return snapshot.model_dump(mode="json")


class AnalyticsEndpoint(Endpoint):
    """Chart series: daily trend, task type split, weekday/hour heatmap."""

    @property
    def name(self) -> str:
        return "analytics"

    @property
    def description(self) -> str:
        return "Daily totals, time per task type and an hour-of-week heatmap for a range."

    def _compute(self, date_range: DateRange) -> dict[str, Any]:
        logs = self.context.service.log_storage.iter_logs(
            start=date_range.start,
            end=date_range.end,
            page_size=self.context.export_chunk_rows,
        )
        return analytics_series(logs, date_range, self.context.directory.task_types(), self.context.tz)

    async def execute(self, range: str = "week", start: str | None = None, end: str | None = None) -> dict[str, Any]:
        date_range = self.context.resolve(range, start, end)
        return await asyncio.to_thread(self._compute, date_range)


MAX_PAGE_LIMIT = 500


class TimeLogsEndpoint(Endpoint):
    """Page through recorded time logs, newest first."""

    @property
    def name(self) -> str:
        return "time_logs"

    @property
    def description(self) -> str:
        return (
            "List recorded time logs for a range, newest first, filtered by "
            "member, project, task type or billable flag, one page at a time."
        )

    def _task_ids(self, project_id: str | None, task_type: str | None) -> set[str] | None:
        """Task ids matching the project and type filters, or None if unfiltered."""
        if not project_id and not task_type:
            return None
        directory = self.context.directory
        task_ids = set(directory.task_projects()) | set(directory.task_types())
        if project_id:
            projects = directory.task_projects()
            task_ids = {t for t in task_ids if projects.get(t) == project_id}
        if task_type:
            types = directory.task_types()
            task_ids = {t for t in task_ids if types.get(t) == task_type}
        return task_ids

    def _row(self, log: TimeLog) -> dict[str, Any]:
        row = log.model_dump(mode="json")
        task = self.context.directory.get(log.task_id)
        row.update({
            "duration": format_duration(log.duration_seconds),
            "task_title": task.title if task else None,
            "task_type": task.task_type if task else None,
            "task_priority": task.priority if task else None,
            "task_status": task.status if task else None,
            "project_id": task.project_id if task else None,
        })
        return row

    def _list(self, filters: dict[str, Any], page: int, limit: int) -> dict[str, Any]:
        storage = self.context.service.log_storage
        total = storage.count(**filters)
        logs = storage.query(
            limit=limit,
            offset=(page - 1) * limit,
            newest_first=True,
            **filters,
        )
        return {
            "data": [self._row(log) for log in logs],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "total_pages": math.ceil(total / limit),
            },
        }

    async def execute(
        self,
        range: str = "today",
        start: str | None = None,
        end: str | None = None,
        member_id: str | None = None,
        project_id: str | None = None,
        task_type: str | None = None,
        is_billable: bool | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict[str, Any]:
        """List one page of time logs.

        Args:
            range: Range shortcut, or custom with start and end.
            member_id: Only this member's logs.
            project_id: Only logs on tasks of this project.
            task_type: Only logs on tasks of this type.
            is_billable: Only billable (True) or non-billable (False) logs.
            page: 1-based page number.
            limit: Logs per page, at most MAX_PAGE_LIMIT.

        Returns:
            Dictionary with the page's rows under ``data`` and ``pagination``
            holding total, page, limit and total_pages
        """
        if page < 1:
            raise ValueError(f"page must be at least 1, got {page}")
        if not 1 <= limit <= MAX_PAGE_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_LIMIT}, got {limit}")

        date_range = self.context.resolve(range, start, end)
        filters = {
            "start": date_range.start,
            "end": date_range.end,
            "user_id": member_id,
            "task_ids": self._task_ids(project_id, task_type),
            "is_billable": is_billable,
        }
        return await asyncio.to_thread(self._list, filters, page, limit)


class ExportEndpoint(Endpoint):
    """Stream time logs or an aggregate snapshot.

    The returned ``chunks`` is a plain generator that reads the time log
    store as it is consumed. Iterate it in a worker thread, or through
    ``iter_chunks`` from async code, never directly on the event loop.
    """

    @property
    def name(self) -> str:
        return "export"

    @property
    def description(self) -> str:
        return "Export time logs or an aggregate for a range as tabular (CSV) or structured (JSON) text."

    async def execute(
        self,
        range: str = "week",
        format: str = "tabular",
        kind: str = "time_logs",
        start: str | None = None,
        end: str | None = None,
        member_id: str | None = None,
        with_task_details: bool = True,
    ) -> dict[str, Any]:
        fmt = ExportFormat(format)
        date_range = self.context.resolve(range, start, end)

        if kind == "aggregate":
            snapshot = await asyncio.to_thread(self.context.snapshot, date_range, member_id)
            chunks = stream_snapshot(snapshot, fmt)
        elif kind == "time_logs":
            logs = self.context.service.log_storage.iter_logs(
                start=date_range.start,
                end=date_range.end,
                user_id=member_id,
                page_size=self.context.export_chunk_rows,
            )
            directory = self.context.directory if with_task_details else None
            chunks = stream_time_logs(logs, fmt, directory)
        else:
            raise ValueError(f"Unknown export kind '{kind}', expected time_logs or aggregate")

        return {
            "format": fmt.value,
            "content_type": "text/csv" if fmt == ExportFormat.TABULAR else "application/json",
            "chunks": chunks,
        }


_EXHAUSTED = object()


async def iter_chunks(chunks: Iterator[str]) -> AsyncIterator[str]:
    """Consume an export stream from async code.

    Each chunk is pulled in a worker thread, since producing it may block on
    the time log store.

    Example:
        result = await registry.execute("export", range="month")
        async for chunk in iter_chunks(result.output["chunks"]):
            await response.write(chunk)
    """
    while True:
        chunk = await asyncio.to_thread(next, chunks, _EXHAUSTED)
        if chunk is _EXHAUSTED:
            return
        yield chunk


_STOP_ENDPOINTS = {"timer_stop", "timer_force_stop"}


class EndpointRegistry:
    """Registry of endpoints with uniform error reporting."""

    def __init__(self) -> None:
        self._endpoints: dict[str, Endpoint] = {}

    def register(self, endpoint: Endpoint) -> None:
        """Register an endpoint.

        Raises:
            ValueError: If an endpoint with the same name is registered.
        """
        if endpoint.name in self._endpoints:
            raise ValueError(f"Endpoint '{endpoint.name}' is already registered")
        self._endpoints[endpoint.name] = endpoint

    def get(self, name: str) -> Endpoint | None:
        return self._endpoints.get(name)

    def list_endpoints(self) -> list[Endpoint]:
        return list(self._endpoints.values())

    async def execute(self, name: str, **kwargs: Any) -> EndpointResult:
        """Execute an endpoint by name.

        Timer errors become a failed result with a stable error code; any
        other exception propagates.

        Args:
            name: Endpoint name.
            **kwargs: Endpoint arguments.

        Returns:
            The endpoint result.
        """
        endpoint = self._endpoints.get(name)
        if endpoint is None:
            return EndpointResult(success=False, error=f"Unknown endpoint: {name}", error_code="unknown_endpoint")

        try:
            output = await endpoint.execute(**kwargs)
        except WorkTimerError as e:
            logger.info(f"Endpoint {name} failed ({e.code}): {e}")
            result = EndpointResult(success=False, error=str(e), error_code=e.code)
            if name in _STOP_ENDPOINTS and isinstance(e, NotFoundError):
                result.already_stopped = True
            if getattr(e, "session_id", None):
                result.output = {"session_id": e.session_id, "task_id": e.task_id}
            return result
        except ValueError as e:
            return EndpointResult(success=False, error=str(e), error_code="invalid_argument")

        return EndpointResult(success=True, output=output)

    def __len__(self) -> int:
        return len(self._endpoints)


def create_endpoint_registry(context: TimerContext) -> EndpointRegistry:
    """Create a registry with every timer endpoint registered."""
    registry = EndpointRegistry()
    for endpoint_cls in (
        TimerStartEndpoint,
        TimerPauseEndpoint,
        TimerResumeEndpoint,
        TimerStopEndpoint,
        TimerForceStopEndpoint,
        ActiveSessionsEndpoint,
        AggregateEndpoint,
        AnalyticsEndpoint,
        TimeLogsEndpoint,
        ExportEndpoint,
    ):
        registry.register(endpoint_cls(context))
    return registry
