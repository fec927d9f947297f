"""Registry of active timer sessions.

The registry maps each user to at most one active session and each session id
to its current record. Mutations happen inside a per-user scope so that the
one-timer-per-user check and the write that claims the slot are a single
atomic step. Different users never share a lock.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from worktimer.errors import ConflictError, InvalidStateError, NotFoundError, StoreUnavailableError
from worktimer.registry_storage import RegistryStorage
from worktimer.types import TimerSession

logger = logging.getLogger(__name__)


class _UserLock:
    """A user's lock and the number of scopes holding or waiting on it."""

    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class TimerRegistry:
    """Index of active sessions keyed by user and by session id.

    Records are immutable and are published by replacing the whole entry,
    so readers never need a lock to see a consistent session.

    Example:
        registry = TimerRegistry()
        with registry.user_scope("u1"):
            registry.register_start(session)
    """

    def __init__(
        self,
        storage: RegistryStorage | None = None,
        lock_timeout: float = 10.0,
    ) -> None:
        """Initialize the registry.

        Args:
            storage: Optional durable mirror of the registry.
            lock_timeout: Seconds to wait for a user's lock before failing.
        """
        self._storage = storage
        self._lock_timeout = lock_timeout

        # Guards the dicts below; never held across I/O
        self._guard = threading.Lock()
        self._user_locks: dict[str, _UserLock] = {}
        self._by_user: dict[str, str] = {}
        self._by_session: dict[str, TimerSession] = {}

    @property
    def storage(self) -> RegistryStorage | None:
        """Get the durable mirror, if any."""
        return self._storage

    def load(self) -> int:
        """Rebuild the in-memory index from the durable mirror.

        Returns:
            Number of sessions loaded.
        """
        if self._storage is None:
            return 0

        sessions = self._storage.load()
        with self._guard:
            self._by_user = {}
            self._by_session = {}
            for session in sessions:
                self._by_user[session.user_id] = session.session_id
                self._by_session[session.session_id] = session

        logger.info(f"Loaded {len(self._by_session)} active sessions")
        return len(self._by_session)

    def _checkout_lock(self, user_id: str) -> threading.Lock:
        with self._guard:
            entry = self._user_locks.get(user_id)
            if entry is None:
                entry = _UserLock()
                self._user_locks[user_id] = entry
            entry.holders += 1
            return entry.lock

    def _return_lock(self, user_id: str) -> None:
        with self._guard:
            entry = self._user_locks[user_id]
            entry.holders -= 1
            if entry.holders == 0:
                del self._user_locks[user_id]

    def _sync_user(self, user_id: str) -> None:
        """Replace the user's in-memory entry with the stored slot.

        Other workers sharing the storage directory may have changed the
        slot since this index last saw it.
        """
        stored = self._storage.get(user_id)
        with self._guard:
            current_id = self._by_user.pop(user_id, None)
            if current_id is not None:
                self._by_session.pop(current_id, None)
            if stored is not None:
                self._by_user[user_id] = stored.session_id
                self._by_session[stored.session_id] = stored

    @contextmanager
    def user_scope(self, user_id: str) -> Iterator[None]:
        """Hold the exclusive lock for one user's timer slot.

        On entry the user's entry is refreshed from the durable mirror, so
        lookups inside the scope see what other workers have written.

        Args:
            user_id: User whose slot is being mutated.

        Raises:
            StoreUnavailableError: If the lock is not acquired within the
                timeout or the stored slot cannot be read.
        """
        lock = self._checkout_lock(user_id)
        try:
            if not lock.acquire(timeout=self._lock_timeout):
                raise StoreUnavailableError(
                    f"Timed out after {self._lock_timeout}s waiting for timer lock of user {user_id}"
                )
            try:
                if self._storage is not None:
                    self._sync_user(user_id)
                yield
            finally:
                lock.release()
        finally:
            self._return_lock(user_id)

    def register_start(self, session: TimerSession) -> None:
        """Claim the user's slot for a new session.

        Must be called inside ``user_scope(session.user_id)``. The durable
        slot is claimed before the session is published in memory.

        Args:
            session: The newly started session.

        Raises:
            ConflictError: If the user already has a session, here or in
                another worker sharing the storage.
        """
        existing_id = self._by_user.get(session.user_id)
        if existing_id is not None:
            existing = self._by_session.get(existing_id)
            raise ConflictError(
                f"User {session.user_id} already has an active timer",
                session_id=existing_id,
                task_id=existing.task_id if existing else None,
            )

        if self._storage is not None:
            try:
                self._storage.claim(session)
            except ConflictError:
                self._sync_user(session.user_id)
                raise

        with self._guard:
            self._by_user[session.user_id] = session.session_id
            self._by_session[session.session_id] = session

    def replace(self, session: TimerSession) -> None:
        """Publish a new record for an existing session.

        Must be called inside ``user_scope(session.user_id)``.

        Args:
            session: The updated session.

        Raises:
            KeyError: If the session is not registered.
            NotFoundError: If another worker freed the stored slot.
            InvalidStateError: If another worker changed the stored record.
        """
        if self._by_user.get(session.user_id) != session.session_id:
            raise KeyError(session.session_id)

        if self._storage is not None:
            expected = self._by_session[session.session_id]
            try:
                self._storage.replace(expected, session)
            except (NotFoundError, InvalidStateError):
                self._sync_user(session.user_id)
                raise

        with self._guard:
            self._by_session[session.session_id] = session

    def remove(self, session_id: str) -> TimerSession | None:
        """Free the slot held by a session.

        This is the only way to free a user's slot. Must be called inside
        ``user_scope`` for the session's owner.

        Args:
            session_id: The session to remove.

        Returns:
            The removed session, or None if it was not registered.
        """
        session = self._by_session.get(session_id)
        if session is None:
            return None

        if self._storage is not None:
            self._storage.remove(session)

        with self._guard:
            self._by_session.pop(session_id, None)
            if self._by_user.get(session.user_id) == session_id:
                del self._by_user[session.user_id]
        return session

    def lookup_by_user(self, user_id: str) -> TimerSession | None:
        """Get the session holding a user's slot."""
        session_id = self._by_user.get(user_id)
        if session_id is None:
            return None
        return self._by_session.get(session_id)

    def lookup_by_session(self, session_id: str) -> TimerSession | None:
        """Get a session by id."""
        return self._by_session.get(session_id)

    def find_session(self, session_id: str) -> TimerSession | None:
        """Get a session by id, falling back to the durable mirror.

        The fallback finds sessions started by another worker. It does not
        publish them; the owner's ``user_scope`` does that.
        """
        session = self._by_session.get(session_id)
        if session is not None or self._storage is None:
            return session

        for stored in self._storage.load():
            if stored.session_id == session_id:
                return stored
        return None

    def active_sessions(self) -> list[TimerSession]:
        """Snapshot of every registered session."""
        with self._guard:
            return list(self._by_session.values())

    def __len__(self) -> int:
        return len(self._by_session)
