"""JSON file persistence for active timer sessions.

This module mirrors the in-memory timer registry to disk so active sessions
survive a restart. Each user's slot is one JSON file guarded by its own file
lock, so writers for different users never wait on each other.
"""

import hashlib
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from filelock import FileLock, Timeout
from pydantic import BaseModel, Field

from worktimer.errors import ConflictError, InvalidStateError, NotFoundError, StoreUnavailableError
from worktimer.types import TimerSession

logger = logging.getLogger(__name__)

# Storage format version for future migrations
STORAGE_VERSION = 1


class SlotData(BaseModel):
    """Structure of one user's slot file.

    Attributes:
        version: Storage format version.
        session: The session occupying the slot.
    """

    version: int = Field(default=STORAGE_VERSION, description="Storage format version")
    session: TimerSession = Field(..., description="Session holding the slot")


class RegistryStorage:
    """Directory of per-user JSON slot files.

    Writes go to a temp file that is renamed over the slot file, so a reader
    always sees a whole record.

    Example:
        storage = RegistryStorage("/path/to/active_sessions")
        sessions = storage.load()
        storage.claim(session)
    """

    def __init__(
        self,
        path: str | Path,
        timeout: float = 5.0,
    ) -> None:
        """Initialize the registry storage.

        Args:
            path: Directory holding the slot files.
            timeout: Seconds to wait for a slot's file lock.
        """
        self._path = Path(path)
        self._timeout = timeout

    @property
    def path(self) -> Path:
        """Get the storage directory path."""
        return self._path

    def _slot_name(self, user_id: str) -> str:
        # User ids are opaque; hash them into safe file names
        return hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]

    def _slot_path(self, user_id: str) -> Path:
        return self._path / f"{self._slot_name(user_id)}.json"

    def _slot_lock(self, user_id: str) -> FileLock:
        self._path.mkdir(parents=True, exist_ok=True)
        lock_path = self._path / f"{self._slot_name(user_id)}.lock"
        return FileLock(str(lock_path), timeout=self._timeout)

    def _read_slot(self, path: Path) -> TimerSession | None:
        """Read and parse one slot file.

        Returns:
            The stored session, or None if the file is missing or empty.
        """
        if not path.exists():
            return None

        content = path.read_text(encoding="utf-8")
        if not content.strip():
            return None

        data = json.loads(content)

        version = data.get("version", 1)
        if version != STORAGE_VERSION:
            data = self._migrate_data(data, version)

        return SlotData.model_validate(data).session

    def _write_slot(self, path: Path, session: TimerSession) -> None:
        """Write a slot file atomically.

        Args:
            path: Slot file path.
            session: Session to store.
        """
        self._path.mkdir(parents=True, exist_ok=True)
        content = json.dumps(SlotData(session=session).model_dump(mode="json"), indent=2)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(content, encoding="utf-8")
        tmp_path.replace(path)

    def _migrate_data(self, data: dict[str, Any], from_version: int) -> dict[str, Any]:
        """Migrate data from an older version.

        Args:
            data: Raw data from file.
            from_version: Version of the stored data.

        Returns:
            Migrated data at current version.
        """
        # Currently no migrations needed
        logger.info(f"Migrating registry slot from version {from_version} to {STORAGE_VERSION}")
        data["version"] = STORAGE_VERSION
        return data

    def load(self) -> list[TimerSession]:
        """Load every stored session.

        Returns:
            List of stored sessions.

        Raises:
            StoreUnavailableError: If a slot file cannot be read.
        """
        if not self._path.exists():
            return []

        sessions = []
        for path in sorted(self._path.glob("*.json")):
            try:
                session = self._read_slot(path)
            except (OSError, ValueError) as e:
                raise StoreUnavailableError(f"Cannot read registry slot {path}: {e}") from e
            if session is not None:
                sessions.append(session)

        logger.debug(f"Loaded {len(sessions)} active sessions from {self._path}")
        return sessions

    @contextmanager
    def _locked_slot(self, user_id: str, action: str) -> Iterator[Path]:
        """Hold a user's slot lock, translating I/O failures.

        Yields:
            The slot file path.

        Raises:
            StoreUnavailableError: If the lock times out or the slot cannot be read or written.
        """
        try:
            with self._slot_lock(user_id):
                yield self._slot_path(user_id)
        except Timeout as e:
            raise StoreUnavailableError(f"Timed out locking registry slot for {user_id}") from e
        except (OSError, ValueError) as e:
            raise StoreUnavailableError(f"Cannot {action} registry slot for {user_id}: {e}") from e

    def get(self, user_id: str) -> TimerSession | None:
        """Get the session stored in a user's slot.

        Raises:
            StoreUnavailableError: If the slot cannot be read.
        """
        with self._locked_slot(user_id, "read") as path:
            return self._read_slot(path)

    def claim(self, session: TimerSession) -> None:
        """Take an empty slot for a new session.

        The check and the write happen under the slot's file lock, so two
        workers sharing this directory cannot both claim the same user.

        Args:
            session: The newly started session.

        Raises:
            ConflictError: If another session holds the slot.
            StoreUnavailableError: If the lock cannot be taken or the write fails.
        """
        with self._locked_slot(session.user_id, "claim") as path:
            stored = self._read_slot(path)
            if stored is not None and stored.session_id != session.session_id:
                raise ConflictError(
                    f"User {session.user_id} already has an active timer",
                    session_id=stored.session_id,
                    task_id=stored.task_id,
                )
            self._write_slot(path, session)

        logger.debug(f"Claimed slot for {session.user_id} with {session.session_id}")

    def replace(self, expected: TimerSession, session: TimerSession) -> None:
        """Swap the record in a slot if it still holds ``expected``.

        Args:
            expected: The record this worker last saw.
            session: The updated record for the same session.

        Raises:
            NotFoundError: If the slot no longer holds the session.
            InvalidStateError: If another worker changed the session first.
            StoreUnavailableError: If the lock cannot be taken or the write fails.
        """
        with self._locked_slot(session.user_id, "update") as path:
            stored = self._read_slot(path)
            if stored is None or stored.session_id != session.session_id:
                raise NotFoundError(f"Timer session {session.session_id} not found")
            if stored.model_dump() != expected.model_dump():
                raise InvalidStateError(
                    f"Timer session {session.session_id} was changed by another worker"
                )
            self._write_slot(path, session)

        logger.debug(f"Saved session {session.session_id} ({session.state.value})")

    def remove(self, session: TimerSession) -> bool:
        """Clear a user's slot if it still holds ``session``.

        Args:
            session: The session to remove.

        Returns:
            True if the slot held the session and was cleared.

        Raises:
            StoreUnavailableError: If the lock cannot be taken or the delete fails.
        """
        with self._locked_slot(session.user_id, "clear") as path:
            stored = self._read_slot(path)
            if stored is None or stored.session_id != session.session_id:
                return False
            path.unlink()

        logger.debug(f"Removed session {session.session_id} from {self._path}")
        return True
