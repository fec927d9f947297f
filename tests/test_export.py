"""Tests for tabular and structured export."""

import csv
import io
from datetime import timedelta

import pytest

from conftest import T0
from worktimer.aggregation import aggregate
from worktimer.directory import InMemoryTaskDirectory
from worktimer.errors import ExportError
from worktimer.export import (
    SNAPSHOT_FIELDS,
    TASK_DETAIL_FIELDS,
    TIME_LOG_FIELDS,
    ExportFormat,
    parse_tabular_snapshot,
    read_structured,
    stream_snapshot,
    stream_time_logs,
    write_export,
)
from worktimer.ranges import DateRange
from worktimer.types import AggregateScope, CompletedTask, TaskInfo, TimeLog

DAY = DateRange(T0.replace(hour=0), T0.replace(hour=0) + timedelta(days=1))


def make_log(i, description=None, billable=True, user_id="u1"):
    start = T0 + timedelta(minutes=i)
    return TimeLog(
        log_id=f"log_{i}",
        session_id=f"ses_{i}",
        task_id="T-1",
        user_id=user_id,
        start_time=start,
        end_time=start + timedelta(seconds=30),
        duration_seconds=30,
        description=description,
        is_billable=billable,
    )


def failing_source(good_rows):
    for i in range(good_rows):
        yield make_log(i)
    raise ConnectionError("store went away")


class TestTabular:
    """Tests for CSV output."""

    def test_header_and_rows(self):
        """Output starts with the header and has one line per log."""
        chunks = list(stream_time_logs([make_log(0), make_log(1, billable=False)]))

        rows = list(csv.reader(io.StringIO("".join(chunks))))
        assert rows[0] == TIME_LOG_FIELDS
        assert len(rows) == 3
        assert rows[1][TIME_LOG_FIELDS.index("is_billable")] == "yes"
        assert rows[2][TIME_LOG_FIELDS.index("is_billable")] == "no"

    def test_special_characters_are_quoted(self):
        """Commas, quotes and newlines in descriptions survive a CSV reader."""
        tricky = 'Fixed "rounding", then\nreviewed'
        text = "".join(stream_time_logs([make_log(0, description=tricky)]))

        rows = list(csv.reader(io.StringIO(text)))
        assert rows[1][TIME_LOG_FIELDS.index("description")] == tricky

    def test_empty_export_has_header(self):
        """An export with no rows is just the header."""
        rows = list(csv.reader(io.StringIO("".join(stream_time_logs([])))))
        assert rows == [TIME_LOG_FIELDS]

    def test_stream_is_lazy(self):
        """The header is produced before any log is read."""
        consumed = []

        def source():
            for i in range(3):
                consumed.append(i)
                yield make_log(i)

        chunks = stream_time_logs(source())
        next(chunks)
        assert consumed == []

        next(chunks)
        assert consumed == [0]

    def test_source_failure_raises_export_error(self):
        """A failing source surfaces ExportError with the rows written so far."""
        chunks = stream_time_logs(failing_source(2))

        produced = []
        with pytest.raises(ExportError) as exc_info:
            for chunk in chunks:
                produced.append(chunk)

        assert exc_info.value.rows_written == 2
        assert len(produced) == 3

    def test_unknown_format(self):
        """An unknown format is rejected before streaming."""
        with pytest.raises(ValueError):
            stream_time_logs([], "xml")


class TestTaskDetails:
    """Tests for time log rows enriched from the task directory."""

    @pytest.fixture
    def directory(self):
        return InMemoryTaskDirectory([
            TaskInfo(task_id="T-1", title="Checkout bug", task_type="BUG", project_id="shop"),
        ])

    def test_tabular_detail_columns(self, directory):
        """Task title, type and project follow the time log columns."""
        logs = [make_log(0), make_log(1).model_copy(update={"task_id": "T-gone"})]

        rows = list(csv.reader(io.StringIO("".join(stream_time_logs(logs, directory=directory)))))

        assert rows[0] == TIME_LOG_FIELDS + TASK_DETAIL_FIELDS
        assert rows[1][-3:] == ["Checkout bug", "BUG", "shop"]
        assert rows[2][-3:] == ["", "", ""]

    def test_structured_detail_fields(self, directory):
        """Structured rows carry the same task details."""
        text = "".join(stream_time_logs([make_log(0)], "structured", directory))

        doc = read_structured(text)
        assert doc["fields"] == TIME_LOG_FIELDS + TASK_DETAIL_FIELDS
        assert doc["rows"][0]["task_title"] == "Checkout bug"
        assert doc["rows"][0]["project_id"] == "shop"

    def test_without_directory_no_detail_columns(self):
        """Without a directory the layout is unchanged."""
        header = next(iter(stream_time_logs([make_log(0)])))

        assert "task_title" not in header


class TestStructured:
    """Tests for JSON output."""

    def test_document_is_complete(self):
        """The document carries its row count and completion marker."""
        logs = [make_log(i, description=f"note {i}") for i in range(3)]
        doc = read_structured("".join(stream_time_logs(logs, ExportFormat.STRUCTURED)))

        assert doc["kind"] == "time_logs"
        assert doc["fields"] == TIME_LOG_FIELDS
        assert doc["row_count"] == 3
        assert doc["complete"] is True
        assert doc["rows"][2]["description"] == "note 2"
        assert doc["rows"][0]["is_billable"] is True

    def test_empty_document(self):
        """An empty export is still a complete document."""
        doc = read_structured("".join(stream_time_logs([], "structured")))
        assert doc["rows"] == []
        assert doc["row_count"] == 0

    def test_truncated_document_rejected(self):
        """A document cut off mid-stream is detected."""
        chunks = stream_time_logs(failing_source(3), ExportFormat.STRUCTURED)
        partial = []
        with pytest.raises(ExportError):
            for chunk in chunks:
                partial.append(chunk)

        with pytest.raises(ExportError):
            read_structured("".join(partial))

    def test_row_count_mismatch_rejected(self):
        """A document whose rows do not match row_count is rejected."""
        with pytest.raises(ExportError):
            read_structured('{"rows": [], "row_count": 2, "complete": true}')


class TestSnapshotExport:
    """Tests for aggregate snapshot export."""

    @pytest.fixture
    def snapshot(self):
        logs = [make_log(i, user_id=f"u{i % 3}", billable=i % 2 == 0) for i in range(9)]
        completions = [CompletedTask(task_id="T-1", user_id="u1", completed_at=T0)]
        return aggregate(
            logs, DAY,
            completed_tasks=completions,
            scope=AggregateScope(task_id="T-1"),
        )

    def test_tabular_round_trip(self, snapshot):
        """A tabular snapshot export parses back to the same snapshot."""
        text = "".join(stream_snapshot(snapshot, ExportFormat.TABULAR))

        assert parse_tabular_snapshot(io.StringIO(text)) == snapshot

    def test_tabular_layout(self, snapshot):
        """The totals row comes first, then members in leaderboard order."""
        rows = list(csv.DictReader(io.StringIO("".join(stream_snapshot(snapshot)))))

        assert list(rows[0].keys()) == SNAPSHOT_FIELDS
        assert rows[0]["row_type"] == "total"
        assert [r["user_id"] for r in rows[1:]] == [m.user_id for m in snapshot.members]

    def test_structured_snapshot(self, snapshot):
        """The structured snapshot lists totals and every member."""
        doc = read_structured("".join(stream_snapshot(snapshot, "structured")))

        assert doc["kind"] == "aggregate_snapshot"
        assert doc["row_count"] == 1 + len(snapshot.members)
        assert doc["rows"][0]["total_seconds"] == snapshot.total_seconds

    def test_wrong_header_rejected(self):
        """Parsing a time log export as a snapshot fails."""
        text = "".join(stream_time_logs([make_log(0)]))
        with pytest.raises(ExportError):
            parse_tabular_snapshot(io.StringIO(text))


class TestWriteExport:
    """Tests for write_export()."""

    def test_writes_file(self, tmp_path):
        """A completed stream is written to the destination."""
        dest = tmp_path / "out" / "logs.csv"
        written = write_export(stream_time_logs([make_log(0)]), dest)

        text = dest.read_text()
        assert written == len(text)
        assert text.startswith("log_id,")

    def test_failed_stream_leaves_no_file(self, tmp_path):
        """A failing stream leaves neither the file nor its temp file."""
        dest = tmp_path / "logs.csv"

        with pytest.raises(ExportError):
            write_export(stream_time_logs(failing_source(2)), dest)

        assert not dest.exists()
        assert list(tmp_path.iterdir()) == []
