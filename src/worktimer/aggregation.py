"""Aggregation of time logs into dashboard statistics.

Every function here is pure: given the same logs, completions and range it
returns the same result, and it never reads the wall clock. Callers resolve
shortcuts like "today" with ``worktimer.ranges.resolve_range`` first.
"""

import logging
from collections import defaultdict
from datetime import timezone, tzinfo
from typing import Any, Iterable, Mapping

from worktimer.config import DEFAULT_REFERENCE_SECONDS_PER_TASK
from worktimer.errors import AggregationError
from worktimer.ranges import DateRange
from worktimer.types import (
    AggregateScope,
    AggregateSnapshot,
    CompletedTask,
    MemberBreakdown,
    TimeLog,
)

logger = logging.getLogger(__name__)

UNKNOWN_TASK_TYPE = "UNKNOWN"


def efficiency_score(
    tasks_completed: int,
    total_seconds: int,
    reference_seconds_per_task: int,
) -> float:
    """Completed tasks normalized against a reference unit of time.

    ``tasks_completed / (total_seconds / reference_seconds_per_task)``;
    0 when no time was tracked.
    """
    if total_seconds <= 0:
        return 0.0
    return round(tasks_completed * reference_seconds_per_task / total_seconds, 4)


def avg_seconds_per_task(total_seconds: int, tasks_completed: int) -> float:
    return round(total_seconds / max(tasks_completed, 1), 2)


def _validate(
    date_range: DateRange,
    scope: AggregateScope,
    reference_seconds_per_task: int,
    task_projects: Mapping[str, str] | None,
) -> None:
    if not isinstance(date_range, DateRange):
        raise AggregationError(f"Expected a resolved DateRange, got {type(date_range).__name__}")
    if reference_seconds_per_task <= 0:
        raise AggregationError("reference_seconds_per_task must be positive")
    if scope.project_id is not None and task_projects is None:
        raise AggregationError("Project scope requires a task-to-project mapping")


def _in_scope_log(
    log: TimeLog,
    date_range: DateRange,
    scope: AggregateScope,
    task_projects: Mapping[str, str] | None,
) -> bool:
    if not date_range.contains(log.start_time):
        return False
    if scope.member_id is not None and log.user_id != scope.member_id:
        return False
    if scope.task_id is not None and log.task_id != scope.task_id:
        return False
    if scope.project_id is not None and (task_projects or {}).get(log.task_id) != scope.project_id:
        return False
    return True


def _in_scope_completion(
    task: CompletedTask,
    date_range: DateRange,
    scope: AggregateScope,
    task_projects: Mapping[str, str] | None,
) -> bool:
    if not date_range.contains(task.completed_at):
        return False
    if scope.member_id is not None and task.user_id != scope.member_id:
        return False
    if scope.task_id is not None and task.task_id != scope.task_id:
        return False
    if scope.project_id is not None:
        project = task.project_id or (task_projects or {}).get(task.task_id)
        if project != scope.project_id:
            return False
    return True


def aggregate(
    logs: Iterable[TimeLog],
    date_range: DateRange,
    completed_tasks: Iterable[CompletedTask] = (),
    scope: AggregateScope | None = None,
    reference_seconds_per_task: int = DEFAULT_REFERENCE_SECONDS_PER_TASK,
    task_projects: Mapping[str, str] | None = None,
) -> AggregateSnapshot:
    """Compute an aggregate snapshot.

    Args:
        logs: Candidate time logs; those outside range or scope are ignored.
        date_range: Resolved ``[start, end)`` range, matched on log start time
            and task completion time.
        completed_tasks: Tasks that reached DONE, from the task directory.
        scope: Optional member/task/project narrowing.
        reference_seconds_per_task: Baseline for the efficiency score.
        task_projects: Task id to project id, required for project scope.

    Returns:
        The snapshot, with members in leaderboard order.

    Raises:
        AggregationError: If inputs are invalid; nothing is computed.
    """
    scope = scope or AggregateScope()
    _validate(date_range, scope, reference_seconds_per_task, task_projects)

    total = 0
    billable = 0
    member_totals: dict[str, int] = defaultdict(int)
    member_billable: dict[str, int] = defaultdict(int)
    member_logs: dict[str, int] = defaultdict(int)

    for log in logs:
        if not _in_scope_log(log, date_range, scope, task_projects):
            continue
        total += log.duration_seconds
        member_totals[log.user_id] += log.duration_seconds
        member_logs[log.user_id] += 1
        if log.is_billable:
            billable += log.duration_seconds
            member_billable[log.user_id] += log.duration_seconds

    completed: set[str] = set()
    member_completed: dict[str, set[str]] = defaultdict(set)
    for task in completed_tasks:
        if not _in_scope_completion(task, date_range, scope, task_projects):
            continue
        completed.add(task.task_id)
        if task.user_id is not None:
            member_completed[task.user_id].add(task.task_id)

    members = []
    for user_id in set(member_totals) | set(member_completed):
        member_total = member_totals.get(user_id, 0)
        done = len(member_completed.get(user_id, ()))
        members.append(MemberBreakdown(
            user_id=user_id,
            total_seconds=member_total,
            billable_seconds=member_billable.get(user_id, 0),
            tasks_completed_count=done,
            avg_seconds_per_task=avg_seconds_per_task(member_total, done),
            efficiency_score=efficiency_score(done, member_total, reference_seconds_per_task),
            log_count=member_logs.get(user_id, 0),
        ))

    snapshot = AggregateSnapshot(
        range_start=date_range.start,
        range_end=date_range.end,
        scope=scope,
        total_seconds=total,
        billable_seconds=billable,
        tasks_completed_count=len(completed),
        avg_seconds_per_task=avg_seconds_per_task(total, len(completed)),
        active_member_count=len(member_totals),
        members=rank_members(members),
    )
    logger.debug(
        f"Aggregated {sum(member_logs.values())} logs for {len(members)} members "
        f"in [{date_range.start.isoformat()}, {date_range.end.isoformat()})"
    )
    return snapshot


def rank_members(members: Iterable[MemberBreakdown]) -> list[MemberBreakdown]:
    """Order members for the leaderboard.

    Most tracked time first, then most tasks completed, then user id.
    """
    return sorted(
        members,
        key=lambda m: (-m.total_seconds, -m.tasks_completed_count, m.user_id),
    )


class _ChartSeries:
    """Accumulates every chart series in one pass over the logs."""

    def __init__(
        self,
        date_range: DateRange,
        tz: tzinfo = timezone.utc,
        task_types: Mapping[str, str] | None = None,
    ) -> None:
        self._range = date_range
        self._tz = tz
        self._task_types = task_types or {}
        self._days = {day: {"total": 0, "billable": 0} for day in date_range.days(tz)}
        self._by_type: dict[str, int] = defaultdict(int)
        self._grid = [[0] * 24 for _ in range(7)]

    def consume(self, logs: Iterable[TimeLog]) -> "_ChartSeries":
        for log in logs:
            if not self._range.contains(log.start_time):
                continue
            local = log.start_time.astimezone(self._tz)

            bucket = self._days.get(local.date())
            if bucket is not None:
                bucket["total"] += log.duration_seconds
                if log.is_billable:
                    bucket["billable"] += log.duration_seconds

            task_type = self._task_types.get(log.task_id) or UNKNOWN_TASK_TYPE
            self._by_type[task_type] += log.duration_seconds
            self._grid[local.weekday()][local.hour] += log.duration_seconds
        return self

    def daily(self) -> list[dict[str, Any]]:
        return [
            {
                "date": day.isoformat(),
                "total_seconds": stats["total"],
                "billable_seconds": stats["billable"],
                "non_billable_seconds": stats["total"] - stats["billable"],
            }
            for day, stats in self._days.items()
        ]

    def task_types(self) -> list[dict[str, Any]]:
        total = sum(self._by_type.values())
        rows = [
            {
                "type": task_type,
                "seconds": seconds,
                "percentage": round(seconds * 100 / total, 2) if total else 0.0,
            }
            for task_type, seconds in self._by_type.items()
        ]
        return sorted(rows, key=lambda r: (-r["seconds"], r["type"]))

    def heatmap(self) -> list[list[int]]:
        return [list(row) for row in self._grid]


def daily_breakdown(
    logs: Iterable[TimeLog],
    date_range: DateRange,
    tz: tzinfo = timezone.utc,
) -> list[dict[str, Any]]:
    """Per-day totals for a trend chart.

    Every calendar day in the range gets a row, including days with no logs.

    Args:
        logs: Time logs; those outside the range are ignored.
        date_range: Resolved range.
        tz: Timezone defining calendar days.

    Returns:
        Rows with date, total_seconds, billable_seconds and non_billable_seconds.
    """
    return _ChartSeries(date_range, tz).consume(logs).daily()


def task_type_distribution(
    logs: Iterable[TimeLog],
    date_range: DateRange,
    task_types: Mapping[str, str],
) -> list[dict[str, Any]]:
    """Tracked time per task type.

    Args:
        logs: Time logs; those outside the range are ignored.
        date_range: Resolved range.
        task_types: Task id to task type. Unmapped tasks count as UNKNOWN.

    Returns:
        Rows with type, seconds and percentage, largest first.
    """
    return _ChartSeries(date_range, task_types=task_types).consume(logs).task_types()


def hourly_heatmap(
    logs: Iterable[TimeLog],
    date_range: DateRange,
    tz: tzinfo = timezone.utc,
) -> list[list[int]]:
    """Tracked seconds by weekday and hour of the log's start.

    Args:
        logs: Time logs; those outside the range are ignored.
        date_range: Resolved range.
        tz: Timezone for weekday and hour.

    Returns:
        7x24 grid indexed ``[weekday][hour]`` with Monday as 0.
    """
    return _ChartSeries(date_range, tz).consume(logs).heatmap()


def analytics_series(
    logs: Iterable[TimeLog],
    date_range: DateRange,
    task_types: Mapping[str, str],
    tz: tzinfo = timezone.utc,
) -> dict[str, Any]:
    """Daily trend, task type split and heatmap from a single pass.

    ``logs`` is iterated once, so it may be a lazy page-by-page source such
    as ``TimeLogStorage.iter_logs``.

    Returns:
        Dictionary with ``daily``, ``task_types`` and ``heatmap``.
    """
    series = _ChartSeries(date_range, tz, task_types).consume(logs)
    return {
        "daily": series.daily(),
        "task_types": series.task_types(),
        "heatmap": series.heatmap(),
    }
