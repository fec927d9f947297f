"""Export of time logs and aggregate snapshots.

Two formats are supported:

- ``tabular``: CSV with a header row, for spreadsheets.
- ``structured``: a JSON document, for programmatic consumers. It ends with
  ``"row_count"`` and ``"complete": true``; a document without them was cut off.

Exports are generators of text chunks. Input rows are consumed one at a time,
so exporting months of fleet-wide logs holds a single row in memory. A failure
while producing rows raises ExportError to the consumer.
"""

import csv
import io
import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from worktimer.directory import TaskDirectory
from worktimer.errors import ExportError
from worktimer.types import AggregateScope, AggregateSnapshot, MemberBreakdown, TaskInfo, TimeLog

logger = logging.getLogger(__name__)


class ExportFormat(str, Enum):
    """Output format of an export.

    Attributes:
        TABULAR: CSV rows with a header.
        STRUCTURED: Streamed JSON document.
    """

    TABULAR = "tabular"
    STRUCTURED = "structured"


TIME_LOG_FIELDS = [
    "log_id",
    "session_id",
    "task_id",
    "user_id",
    "start_time",
    "end_time",
    "duration_seconds",
    "description",
    "is_billable",
]

# Appended to time log rows when a task directory is supplied
TASK_DETAIL_FIELDS = [
    "task_title",
    "task_type",
    "project_id",
]

SNAPSHOT_FIELDS = [
    "row_type",
    "user_id",
    "range_start",
    "range_end",
    "scope_member_id",
    "scope_task_id",
    "scope_project_id",
    "total_seconds",
    "billable_seconds",
    "tasks_completed_count",
    "avg_seconds_per_task",
    "efficiency_score",
    "log_count",
    "active_member_count",
]


def _time_log_row(log: TimeLog) -> dict[str, Any]:
    return {
        "log_id": log.log_id,
        "session_id": log.session_id,
        "task_id": log.task_id,
        "user_id": log.user_id,
        "start_time": log.start_time.isoformat(),
        "end_time": log.end_time.isoformat(),
        "duration_seconds": log.duration_seconds,
        "description": log.description or "",
        "is_billable": log.is_billable,
    }


def _task_details(task: TaskInfo | None) -> dict[str, Any]:
    if task is None:
        return {"task_title": "", "task_type": "", "project_id": ""}
    return {
        "task_title": task.title,
        "task_type": task.task_type or "",
        "project_id": task.project_id or "",
    }


def _snapshot_rows(snapshot: AggregateSnapshot) -> Iterator[dict[str, Any]]:
    yield {
        "row_type": "total",
        "user_id": "",
        "range_start": snapshot.range_start.isoformat(),
        "range_end": snapshot.range_end.isoformat(),
        "scope_member_id": snapshot.scope.member_id or "",
        "scope_task_id": snapshot.scope.task_id or "",
        "scope_project_id": snapshot.scope.project_id or "",
        "total_seconds": snapshot.total_seconds,
        "billable_seconds": snapshot.billable_seconds,
        "tasks_completed_count": snapshot.tasks_completed_count,
        "avg_seconds_per_task": snapshot.avg_seconds_per_task,
        "efficiency_score": "",
        "log_count": sum(m.log_count for m in snapshot.members),
        "active_member_count": snapshot.active_member_count,
    }
    for member in snapshot.members:
        yield {
            "row_type": "member",
            "user_id": member.user_id,
            "range_start": "",
            "range_end": "",
            "scope_member_id": "",
            "scope_task_id": "",
            "scope_project_id": "",
            "total_seconds": member.total_seconds,
            "billable_seconds": member.billable_seconds,
            "tasks_completed_count": member.tasks_completed_count,
            "avg_seconds_per_task": member.avg_seconds_per_task,
            "efficiency_score": member.efficiency_score,
            "log_count": member.log_count,
            "active_member_count": "",
        }


def _tabular_cell(value: Any) -> Any:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return value


def _stream_tabular(fields: list[str], rows: Iterator[dict[str, Any]]) -> Iterator[str]:
    buffer = io.StringIO()
    writer = csv.writer(buffer)

    def line(values: list[Any]) -> str:
        buffer.seek(0)
        buffer.truncate(0)
        writer.writerow(values)
        return buffer.getvalue()

    yield line(fields)
    for row in rows:
        yield line([_tabular_cell(row[f]) for f in fields])


def _stream_structured(kind: str, fields: list[str], rows: Iterator[dict[str, Any]]) -> Iterator[str]:
    yield f'{{"kind": {json.dumps(kind)}, "fields": {json.dumps(fields)}, "rows": ['
    count = 0
    for row in rows:
        prefix = ",\n" if count else "\n"
        yield prefix + json.dumps({f: row[f] for f in fields})
        count += 1
    yield f'\n], "row_count": {count}, "complete": true}}\n'


def _guarded(rows: Iterable[Any], to_row: Callable[[Any], dict[str, Any]], kind: str) -> Iterator[dict[str, Any]]:
    """Convert rows lazily, turning any failure into ExportError."""
    count = 0
    iterator = iter(rows)
    while True:
        try:
            item = next(iterator)
        except StopIteration:
            logger.info(f"Exported {count} {kind} rows")
            return
        except Exception as e:
            logger.error(f"{kind} export failed after {count} rows: {e}")
            raise ExportError(f"Export of {kind} failed after {count} rows: {e}", rows_written=count) from e
        yield to_row(item)
        count += 1


def _stream(kind: str, fields: list[str], rows: Iterator[dict[str, Any]], fmt: ExportFormat | str) -> Iterator[str]:
    fmt = ExportFormat(fmt)
    if fmt == ExportFormat.TABULAR:
        return _stream_tabular(fields, rows)
    return _stream_structured(kind, fields, rows)


def stream_time_logs(
    logs: Iterable[TimeLog],
    fmt: ExportFormat | str = ExportFormat.TABULAR,
    directory: TaskDirectory | None = None,
) -> Iterator[str]:
    """Stream time logs as text chunks.

    Args:
        logs: Time logs, consumed lazily (e.g. ``TimeLogStorage.iter_logs``).
        fmt: Output format.
        directory: When given, each row also carries the task's title, type
            and project. Tasks the directory does not know get empty cells.

    Returns:
        Generator of text chunks; tabular output yields one line per chunk.

    Raises:
        ValueError: If the format is unknown.
        ExportError: While iterating, if the log source fails.
    """
    if directory is None:
        return _stream("time_logs", TIME_LOG_FIELDS, _guarded(logs, _time_log_row, "time_logs"), fmt)

    def detailed_row(log: TimeLog) -> dict[str, Any]:
        return {**_time_log_row(log), **_task_details(directory.get(log.task_id))}

    return _stream(
        "time_logs",
        TIME_LOG_FIELDS + TASK_DETAIL_FIELDS,
        _guarded(logs, detailed_row, "time_logs"),
        fmt,
    )


def stream_snapshot(snapshot: AggregateSnapshot, fmt: ExportFormat | str = ExportFormat.TABULAR) -> Iterator[str]:
    """Stream an aggregate snapshot as text chunks.

    The first row holds the totals; one row per member follows in
    leaderboard order.
    """
    return _stream(
        "aggregate_snapshot",
        SNAPSHOT_FIELDS,
        _guarded(_snapshot_rows(snapshot), lambda row: row, "aggregate_snapshot"),
        fmt,
    )


def write_export(chunks: Iterable[str], path: str | Path) -> int:
    """Write an export stream to a file.

    Output goes to a temp file that is renamed into place only after the
    stream completes, so a failed export never leaves a file that looks whole.

    Args:
        chunks: Export stream.
        path: Destination file.

    Returns:
        Number of characters written.

    Raises:
        ExportError: If the stream fails; the temp file is removed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".partial")

    written = 0
    try:
        with open(tmp_path, "w", encoding="utf-8", newline="") as f:
            for chunk in chunks:
                f.write(chunk)
                written += len(chunk)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    tmp_path.replace(path)
    logger.info(f"Wrote export to {path} ({written} chars)")
    return written


def read_structured(text: str) -> dict[str, Any]:
    """Parse a structured export, rejecting truncated documents.

    Raises:
        ExportError: If the document is incomplete or malformed.
    """
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise ExportError(f"Structured export is truncated or malformed: {e}") from e

    if not document.get("complete") or document.get("row_count") != len(document.get("rows", [])):
        raise ExportError("Structured export is incomplete")
    return document


def _opt(value: str) -> str | None:
    return value or None


def parse_tabular_snapshot(lines: Iterable[str]) -> AggregateSnapshot:
    """Read a tabular snapshot export back into an AggregateSnapshot.

    Args:
        lines: CSV text lines, header first.

    Returns:
        The reconstructed snapshot.

    Raises:
        ExportError: If the header or rows are not a snapshot export.
    """
    reader = csv.DictReader(lines)
    if reader.fieldnames != SNAPSHOT_FIELDS:
        raise ExportError(f"Unexpected snapshot header: {reader.fieldnames}")

    total_row = None
    members = []
    try:
        for row in reader:
            if row["row_type"] == "total":
                total_row = row
            elif row["row_type"] == "member":
                members.append(MemberBreakdown(
                    user_id=row["user_id"],
                    total_seconds=int(row["total_seconds"]),
                    billable_seconds=int(row["billable_seconds"]),
                    tasks_completed_count=int(row["tasks_completed_count"]),
                    avg_seconds_per_task=float(row["avg_seconds_per_task"]),
                    efficiency_score=float(row["efficiency_score"]),
                    log_count=int(row["log_count"]),
                ))
            else:
                raise ExportError(f"Unknown row type: {row['row_type']!r}")

        if total_row is None:
            raise ExportError("Snapshot export has no totals row")

        return AggregateSnapshot(
            range_start=datetime.fromisoformat(total_row["range_start"]),
            range_end=datetime.fromisoformat(total_row["range_end"]),
            scope=AggregateScope(
                member_id=_opt(total_row["scope_member_id"]),
                task_id=_opt(total_row["scope_task_id"]),
                project_id=_opt(total_row["scope_project_id"]),
            ),
            total_seconds=int(total_row["total_seconds"]),
            billable_seconds=int(total_row["billable_seconds"]),
            tasks_completed_count=int(total_row["tasks_completed_count"]),
            avg_seconds_per_task=float(total_row["avg_seconds_per_task"]),
            active_member_count=int(total_row["active_member_count"]),
            members=members,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ExportError(f"Malformed snapshot export: {e}") from e
