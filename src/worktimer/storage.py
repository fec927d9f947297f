"""SQLite storage for completed time logs.

Time logs are append-only: the store inserts and reads, it never updates or
deletes a row.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Collection, Iterator

from worktimer.errors import StoreUnavailableError
from worktimer.types import TimeLog

logger = logging.getLogger(__name__)


def _ts(value: datetime) -> str:
    """Serialize a timestamp so that string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class TimeLogStorage:
    """SQLite storage for time log data."""

    def __init__(self, db_path: Path | str | None = None, timeout: float = 5.0):
        """Initialize the time log database.

        Args:
            db_path: Path to SQLite database file. Defaults to ~/.worktimer/time_logs.db
            timeout: Seconds to wait on a locked database before failing
        """
        if db_path is None:
            db_path = Path.home() / ".worktimer" / "time_logs.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout

        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, translating driver errors to StoreUnavailableError."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open time log store {self.db_path}: {e}") from e
        try:
            with conn:
                conn.row_factory = sqlite3.Row
                yield conn
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Time log store error: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._connect() as conn:
            conn.executescript("""
                -- Completed time logs (append-only)
                CREATE TABLE IF NOT EXISTS time_logs (
                    log_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    task_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    duration_seconds INTEGER NOT NULL,
                    description TEXT,
                    is_billable INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                CREATE INDEX IF NOT EXISTS idx_time_logs_user ON time_logs(user_id, start_time);
                CREATE INDEX IF NOT EXISTS idx_time_logs_task ON time_logs(task_id, start_time);
                CREATE INDEX IF NOT EXISTS idx_time_logs_start ON time_logs(start_time, log_id);
            """)

    def append(self, log: TimeLog) -> bool:
        """Persist a time log.

        Inserting a log whose ``log_id`` is already stored is a no-op, so a
        write retried after a lost acknowledgement never duplicates a row.

        Args:
            log: The time log to store

        Returns:
            True if a new row was written, False if it already existed
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO time_logs
                   (log_id, session_id, task_id, user_id, start_time, end_time,
                    duration_seconds, description, is_billable)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    log.log_id,
                    log.session_id,
                    log.task_id,
                    log.user_id,
                    _ts(log.start_time),
                    _ts(log.end_time),
                    log.duration_seconds,
                    log.description,
                    1 if log.is_billable else 0,
                ),
            )
            inserted = cursor.rowcount == 1

        if inserted:
            logger.info(f"Stored time log {log.log_id} ({log.duration_seconds}s on {log.task_id})")
        else:
            logger.info(f"Time log {log.log_id} already stored, skipping")
        return inserted

    def get(self, log_id: str) -> TimeLog | None:
        """Get a time log by ID.

        Args:
            log_id: The log ID to look up

        Returns:
            The time log if found, None otherwise
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM time_logs WHERE log_id = ?", (log_id,)).fetchone()
            return self._row_to_log(row) if row else None

    def _where(
        self,
        start: datetime | None,
        end: datetime | None,
        user_id: str | None,
        task_id: str | None,
        task_ids: Collection[str] | None = None,
        is_billable: bool | None = None,
    ) -> tuple[str, list[Any]]:
        clauses = []
        params: list[Any] = []

        if start is not None:
            clauses.append("start_time >= ?")
            params.append(_ts(start))
        if end is not None:
            clauses.append("start_time < ?")
            params.append(_ts(end))
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if task_id:
            clauses.append("task_id = ?")
            params.append(task_id)
        if task_ids is not None:
            if task_ids:
                clauses.append(f"task_id IN ({', '.join('?' for _ in task_ids)})")
                params.extend(task_ids)
            else:
                # An empty task set matches nothing
                clauses.append("0")
        if is_billable is not None:
            clauses.append("is_billable = ?")
            params.append(1 if is_billable else 0)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def query(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: str | None = None,
        task_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        task_ids: Collection[str] | None = None,
        is_billable: bool | None = None,
        newest_first: bool = False,
    ) -> list[TimeLog]:
        """Get time logs whose start falls in ``[start, end)``.

        Args:
            start: Inclusive lower bound on start_time (optional)
            end: Exclusive upper bound on start_time (optional)
            user_id: Filter by user (optional)
            task_id: Filter by task (optional)
            limit: Maximum number of logs to return
            offset: Number of matching logs to skip
            task_ids: Only logs on one of these tasks (optional)
            is_billable: Filter by billable flag (optional)
            newest_first: Order by start_time descending instead

        Returns:
            List of time logs ordered by start_time
        """
        where, params = self._where(start, end, user_id, task_id, task_ids, is_billable)
        direction = "DESC" if newest_first else "ASC"
        query = (
            f"SELECT * FROM time_logs {where} "
            f"ORDER BY start_time {direction}, log_id {direction}"
        )
        if limit is not None or offset:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit if limit is not None else -1, offset])

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            logger.debug(f"Loaded {len(rows)} time logs from {self.db_path}")
            return [self._row_to_log(row) for row in rows]

    def iter_logs(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: str | None = None,
        task_id: str | None = None,
        page_size: int = 500,
        task_ids: Collection[str] | None = None,
        is_billable: bool | None = None,
    ) -> Iterator[TimeLog]:
        """Iterate time logs page by page.

        Pages are fetched with keyset pagination on ``(start_time, log_id)``
        so that at most ``page_size`` rows are held in memory at a time.

        Args:
            start: Inclusive lower bound on start_time (optional)
            end: Exclusive upper bound on start_time (optional)
            user_id: Filter by user (optional)
            task_id: Filter by task (optional)
            page_size: Rows per page
            task_ids: Only logs on one of these tasks (optional)
            is_billable: Filter by billable flag (optional)

        Yields:
            Time logs ordered by start_time ascending
        """
        where, params = self._where(start, end, user_id, task_id, task_ids, is_billable)
        cursor_key: tuple[str, str] | None = None

        while True:
            page_where = where
            page_params = list(params)
            if cursor_key is not None:
                keyset = "(start_time > ? OR (start_time = ? AND log_id > ?))"
                page_where = f"{where} AND {keyset}" if where else f"WHERE {keyset}"
                page_params.extend([cursor_key[0], cursor_key[0], cursor_key[1]])

            query = (
                f"SELECT * FROM time_logs {page_where} "
                "ORDER BY start_time ASC, log_id ASC LIMIT ?"
            )
            page_params.append(page_size)

            with self._connect() as conn:
                rows = conn.execute(query, page_params).fetchall()

            for row in rows:
                yield self._row_to_log(row)

            if len(rows) < page_size:
                return
            last = rows[-1]
            cursor_key = (last["start_time"], last["log_id"])

    def count(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: str | None = None,
        task_id: str | None = None,
        task_ids: Collection[str] | None = None,
        is_billable: bool | None = None,
    ) -> int:
        """Get the number of stored time logs matching the filters."""
        where, params = self._where(start, end, user_id, task_id, task_ids, is_billable)
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM time_logs {where}", params).fetchone()[0]

    @staticmethod
    def _row_to_log(row: sqlite3.Row) -> TimeLog:
        return TimeLog(
            log_id=row["log_id"],
            session_id=row["session_id"],
            task_id=row["task_id"],
            user_id=row["user_id"],
            start_time=datetime.fromisoformat(row["start_time"]),
            end_time=datetime.fromisoformat(row["end_time"]),
            duration_seconds=row["duration_seconds"],
            description=row["description"],
            is_billable=bool(row["is_billable"]),
        )
