"""Timer service: the start/pause/resume/stop state machine.

This module provides the TimerService class that validates transitions,
accumulates running time across pause cycles and emits exactly one time log
per session.

States::

    running -> paused -> running -> ... -> closed

Stopping is one logical transaction. The closed record (carrying the time log
to write) is published first, the log is written with retries, and only then
is the user's slot freed. If the write keeps failing the session stays
closed-pending-retry and the next ``stop``/``start``/``retry_pending`` call
finishes the job with the same log id.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable

from worktimer.clock import Clock, utc_now
from worktimer.config import Settings
from worktimer.errors import InvalidStateError, NotFoundError, StoreUnavailableError
from worktimer.registry import TimerRegistry
from worktimer.registry_storage import RegistryStorage
from worktimer.storage import TimeLogStorage
from worktimer.types import SessionState, TimeLog, TimerSession

logger = logging.getLogger(__name__)


class TimerService:
    """Service for tracking work timers.

    The TimerService handles:
    - One active timer per user, enforced atomically per user
    - Pause/resume with whole-second accumulation
    - Single emission of a time log on stop
    - Administrative force-stop

    Example:
        service = TimerService(TimerRegistry(), TimeLogStorage("logs.db"))

        session = service.start("u1", "task-42")
        service.pause(session.session_id, "u1")
        service.resume(session.session_id, "u1")
        log = service.stop(session.session_id, "u1", description="Reviewed PR")
    """

    def __init__(
        self,
        registry: TimerRegistry,
        log_storage: TimeLogStorage,
        clock: Clock = utc_now,
        retry_attempts: int = 3,
        retry_backoff: float = 0.2,
        retry_backoff_max: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the timer service.

        Args:
            registry: Index of active sessions.
            log_storage: Durable store for completed time logs.
            clock: Source of the current time.
            retry_attempts: Attempts for an unacknowledged time log write.
            retry_backoff: Initial delay between attempts in seconds.
            retry_backoff_max: Upper bound on the delay.
            sleep: Function used to wait between attempts.
        """
        self._registry = registry
        self._logs = log_storage
        self._clock = clock
        self._retry_attempts = max(retry_attempts, 1)
        self._retry_backoff = retry_backoff
        self._retry_backoff_max = retry_backoff_max
        self._sleep = sleep

    @classmethod
    def from_settings(cls, config: Settings, clock: Clock = utc_now) -> "TimerService":
        """Build a service backed by the configured stores.

        Args:
            config: Application settings.
            clock: Source of the current time.

        Returns:
            A service whose registry has been reloaded from disk.
        """
        log_storage = TimeLogStorage(
            config.get_database_path(),
            timeout=config.store_timeout_seconds,
        )
        registry = TimerRegistry(
            storage=RegistryStorage(
                config.get_registry_path(),
                timeout=config.store_timeout_seconds,
            ),
            lock_timeout=config.lock_timeout_seconds,
        )
        registry.load()
        return cls(
            registry,
            log_storage,
            clock=clock,
            retry_attempts=config.store_retry_attempts,
            retry_backoff=config.store_retry_backoff_seconds,
            retry_backoff_max=config.store_retry_backoff_max_seconds,
        )

    @property
    def registry(self) -> TimerRegistry:
        """Get the session registry."""
        return self._registry

    @property
    def log_storage(self) -> TimeLogStorage:
        """Get the time log store."""
        return self._logs

    def _generate_id(self) -> str:
        """Generate a unique session ID."""
        return f"ses_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _log_id(session_id: str) -> str:
        return f"log_{session_id.split('_', 1)[-1]}"

    def _locate(self, session_id: str) -> TimerSession:
        # Outside a user scope; may find sessions started by another worker
        session = self._registry.find_session(session_id)
        if session is None:
            raise NotFoundError(f"Timer session {session_id} not found")
        return session

    def _require(self, session_id: str) -> TimerSession:
        session = self._registry.lookup_by_session(session_id)
        if session is None:
            raise NotFoundError(f"Timer session {session_id} not found")
        return session

    @staticmethod
    def _check_owner(session: TimerSession, user_id: str) -> None:
        if session.user_id != user_id:
            raise InvalidStateError(
                f"Timer session {session.session_id} is not owned by user {user_id}"
            )

    # -- queries ----------------------------------------------------------

    def get_active(self, user_id: str) -> TimerSession | None:
        """Get the user's running or paused session, if any."""
        session = self._registry.lookup_by_user(user_id)
        if session is None or not session.is_active:
            return None
        return session

    def get_session(self, session_id: str) -> TimerSession | None:
        """Get a session by ID."""
        return self._registry.find_session(session_id)

    # -- transitions ------------------------------------------------------

    def start(self, user_id: str, task_id: str, description: str | None = None) -> TimerSession:
        """Start a timer for a user.

        Args:
            user_id: User starting the timer.
            task_id: Task to track time against.
            description: Optional note.

        Returns:
            The new RUNNING session.

        Raises:
            ConflictError: If the user already has a running or paused timer.
            StoreUnavailableError: If a pending stop for the user still cannot be written.
        """
        with self._registry.user_scope(user_id):
            existing = self._registry.lookup_by_user(user_id)
            if existing is not None and existing.state == SessionState.CLOSED:
                logger.info(f"Finishing pending stop of {existing.session_id} before new start")
                self._finish_stop(existing)

            now = self._clock()
            session = TimerSession(
                session_id=self._generate_id(),
                user_id=user_id,
                task_id=task_id,
                state=SessionState.RUNNING,
                created_at=now,
                segment_start=now,
                accumulated_seconds=0,
                description=description,
            )
            self._registry.register_start(session)

        logger.info(f"Started timer {session.session_id} for user {user_id} on task {task_id}")
        return session

    def pause(self, session_id: str, user_id: str) -> TimerSession:
        """Pause a running timer.

        Args:
            session_id: Session to pause.
            user_id: Caller; must own the session.

        Returns:
            The PAUSED session.

        Raises:
            NotFoundError: If the session does not exist.
            InvalidStateError: If the session is not running or not owned by the caller.
        """
        self._check_owner(self._locate(session_id), user_id)

        with self._registry.user_scope(user_id):
            session = self._require(session_id)
            if session.state != SessionState.RUNNING:
                raise InvalidStateError(
                    f"Cannot pause timer {session_id} in state '{session.state.value}'"
                )

            now = self._clock()
            paused = session.model_copy(update={
                "state": SessionState.PAUSED,
                "segment_start": None,
                "accumulated_seconds": session.elapsed_seconds(now),
            })
            self._registry.replace(paused)

        logger.info(f"Paused timer {session_id} at {paused.accumulated_seconds}s")
        return paused

    def resume(self, session_id: str, user_id: str) -> TimerSession:
        """Resume a paused timer.

        Args:
            session_id: Session to resume.
            user_id: Caller; must own the session.

        Returns:
            The RUNNING session.

        Raises:
            NotFoundError: If the session does not exist.
            InvalidStateError: If the session is not paused or not owned by the caller.
        """
        self._check_owner(self._locate(session_id), user_id)

        with self._registry.user_scope(user_id):
            session = self._require(session_id)
            if session.state != SessionState.PAUSED:
                raise InvalidStateError(
                    f"Cannot resume timer {session_id} in state '{session.state.value}'"
                )

            resumed = session.model_copy(update={
                "state": SessionState.RUNNING,
                "segment_start": self._clock(),
            })
            self._registry.replace(resumed)

        logger.info(f"Resumed timer {session_id}")
        return resumed

    def stop(
        self,
        session_id: str,
        user_id: str,
        description: str | None = None,
        is_billable: bool = True,
    ) -> TimeLog:
        """Stop a timer and emit its time log.

        A second stop of the same session raises NotFoundError; callers
        should read that as "already stopped".

        Args:
            session_id: Session to stop.
            user_id: Caller; must own the session.
            description: Optional note, replacing the one given at start.
            is_billable: Whether the time counts toward billable totals.

        Returns:
            The emitted time log.

        Raises:
            NotFoundError: If the session does not exist (already stopped).
            InvalidStateError: If the caller does not own the session.
            StoreUnavailableError: If the log could not be written; the
                session is kept closed-pending-retry.
        """
        self._check_owner(self._locate(session_id), user_id)
        return self._stop(session_id, description, is_billable)

    def force_stop(
        self,
        session_id: str,
        description: str | None = None,
        is_billable: bool = True,
    ) -> TimeLog:
        """Stop any user's timer without an ownership check.

        Args:
            session_id: Session to stop.
            description: Optional note.
            is_billable: Whether the time counts toward billable totals.

        Returns:
            The emitted time log.

        Raises:
            NotFoundError: If the session does not exist.
            StoreUnavailableError: If the log could not be written.
        """
        session = self._locate(session_id)
        logger.warning(f"Force-stopping timer {session_id} of user {session.user_id}")
        return self._stop(session_id, description, is_billable)

    def retry_pending(self) -> list[TimeLog]:
        """Finish every stop whose time log write is still pending.

        Returns:
            The time logs written by this sweep.
        """
        written = []
        for candidate in self._registry.active_sessions():
            if candidate.state != SessionState.CLOSED:
                continue
            try:
                with self._registry.user_scope(candidate.user_id):
                    session = self._registry.lookup_by_session(candidate.session_id)
                    if session is None or session.state != SessionState.CLOSED:
                        continue
                    written.append(self._finish_stop(session))
            except StoreUnavailableError as e:
                logger.warning(f"Pending stop of {candidate.session_id} still failing: {e}")
        return written

    # -- internals --------------------------------------------------------

    def _stop(self, session_id: str, description: str | None, is_billable: bool) -> TimeLog:
        owner = self._locate(session_id).user_id

        with self._registry.user_scope(owner):
            session = self._require(session_id)
            if session.state != SessionState.CLOSED:
                session = self._close(session, self._clock(), description, is_billable)
                self._registry.replace(session)
            log = self._finish_stop(session)

        logger.info(
            f"Stopped timer {session_id} for user {owner}: "
            f"{log.duration_seconds}s on {log.task_id}"
        )
        return log

    def _close(
        self,
        session: TimerSession,
        now: datetime,
        description: str | None,
        is_billable: bool,
    ) -> TimerSession:
        """Build the CLOSED record and its time log."""
        accumulated = session.elapsed_seconds(now)
        end_time = now if now > session.created_at else session.created_at + timedelta(seconds=1)

        log = TimeLog(
            log_id=self._log_id(session.session_id),
            session_id=session.session_id,
            task_id=session.task_id,
            user_id=session.user_id,
            start_time=session.created_at,
            end_time=end_time,
            duration_seconds=accumulated,
            description=description if description is not None else session.description,
            is_billable=is_billable,
        )
        return session.model_copy(update={
            "state": SessionState.CLOSED,
            "segment_start": None,
            "accumulated_seconds": accumulated,
            "pending_log": log,
        })

    def _finish_stop(self, session: TimerSession) -> TimeLog:
        """Write a closed session's log, then free its slot.

        Must be called inside the owner's user scope.
        """
        log = session.pending_log
        if log is None:
            raise InvalidStateError(f"Timer session {session.session_id} has no pending time log")

        self._write_with_retry(log)
        self._registry.remove(session.session_id)
        return log

    def _write_with_retry(self, log: TimeLog) -> None:
        """Append a time log, retrying with exponential backoff."""
        delay = self._retry_backoff
        for attempt in range(1, self._retry_attempts + 1):
            try:
                self._logs.append(log)
                return
            except StoreUnavailableError as e:
                if attempt == self._retry_attempts:
                    logger.error(
                        f"Giving up writing time log {log.log_id} after {attempt} attempts: {e}"
                    )
                    raise
                logger.warning(
                    f"Time log write failed (attempt {attempt}/{self._retry_attempts}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                delay = min(delay * 2, self._retry_backoff_max)
