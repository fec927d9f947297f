"""Tests for the timer registry and its slot-file storage."""

import json
from datetime import timedelta

import pytest

from conftest import T0
from worktimer.errors import ConflictError, InvalidStateError, NotFoundError, StoreUnavailableError
from worktimer.registry import TimerRegistry
from worktimer.registry_storage import RegistryStorage
from worktimer.types import SessionState, TimeLog, TimerSession


def make_session(session_id="ses_1", user_id="u1", task_id="T-1", segment_start=T0, **kwargs):
    return TimerSession(
        session_id=session_id,
        user_id=user_id,
        task_id=task_id,
        created_at=T0,
        segment_start=segment_start,
        **kwargs,
    )


class TestTimerRegistry:
    """Tests for the in-memory registry."""

    def test_register_and_lookup(self):
        """A registered session is found by user and by id."""
        registry = TimerRegistry()
        session = make_session()
        with registry.user_scope("u1"):
            registry.register_start(session)

        assert registry.lookup_by_user("u1") == session
        assert registry.lookup_by_session("ses_1") == session
        assert len(registry) == 1

    def test_register_conflict(self):
        """A second session for the same user is rejected."""
        registry = TimerRegistry()
        with registry.user_scope("u1"):
            registry.register_start(make_session())
            with pytest.raises(ConflictError) as exc_info:
                registry.register_start(make_session(session_id="ses_2", task_id="T-9"))

        assert exc_info.value.session_id == "ses_1"
        assert exc_info.value.task_id == "T-1"
        assert registry.lookup_by_session("ses_2") is None

    def test_replace_publishes_new_record(self):
        """replace swaps the whole record."""
        registry = TimerRegistry()
        session = make_session()
        with registry.user_scope("u1"):
            registry.register_start(session)
            paused = session.model_copy(update={
                "state": SessionState.PAUSED,
                "segment_start": None,
                "accumulated_seconds": 40,
            })
            registry.replace(paused)

        assert registry.lookup_by_user("u1").state == SessionState.PAUSED
        assert session.state == SessionState.RUNNING

    def test_replace_unknown_session(self):
        """replace refuses a session that does not hold the slot."""
        registry = TimerRegistry()
        with pytest.raises(KeyError):
            registry.replace(make_session())

    def test_remove_frees_slot(self):
        """remove is the only way to free a user's slot."""
        registry = TimerRegistry()
        with registry.user_scope("u1"):
            registry.register_start(make_session())
            removed = registry.remove("ses_1")
            assert registry.remove("ses_1") is None

        assert removed.session_id == "ses_1"
        assert registry.lookup_by_user("u1") is None
        assert registry.active_sessions() == []

    def test_lock_timeout_raises(self):
        """Waiting too long for a user's lock raises StoreUnavailableError."""
        registry = TimerRegistry(lock_timeout=0.05)
        with registry.user_scope("u1"):
            with pytest.raises(StoreUnavailableError):
                with registry.user_scope("u1"):
                    pass

    def test_users_do_not_share_locks(self):
        """Holding one user's lock does not block another user."""
        registry = TimerRegistry(lock_timeout=0.05)
        with registry.user_scope("u1"):
            with registry.user_scope("u2"):
                registry.register_start(make_session(session_id="ses_2", user_id="u2"))

        assert registry.lookup_by_user("u2").session_id == "ses_2"

    def test_failed_storage_write_leaves_slot_free(self, tmp_path):
        """If the mirror cannot be reached the session is not published."""
        blocker = tmp_path / "slots"
        blocker.write_text("not a directory")
        registry = TimerRegistry(storage=RegistryStorage(blocker))

        with pytest.raises(StoreUnavailableError):
            with registry.user_scope("u1"):
                registry.register_start(make_session())

        assert registry.lookup_by_user("u1") is None

    def test_load_rebuilds_index(self, tmp_path):
        """load restores sessions written by another registry."""
        storage = RegistryStorage(tmp_path / "slots")
        writer = TimerRegistry(storage=storage)
        for i in range(3):
            with writer.user_scope(f"u{i}"):
                writer.register_start(make_session(session_id=f"ses_{i}", user_id=f"u{i}"))

        reader = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))

        assert reader.load() == 3
        assert reader.lookup_by_user("u2").session_id == "ses_2"

    def test_load_without_storage(self):
        """A registry without storage loads nothing."""
        assert TimerRegistry().load() == 0

    def test_user_locks_are_pruned(self):
        """A user's lock is dropped once no scope holds or waits on it."""
        registry = TimerRegistry()
        for i in range(50):
            with registry.user_scope(f"u{i}"):
                registry.register_start(make_session(session_id=f"ses_{i}", user_id=f"u{i}"))
            assert len(registry._user_locks) == 0

        with registry.user_scope("u1"):
            assert list(registry._user_locks) == ["u1"]
        assert registry._user_locks == {}

    def test_lock_released_after_timeout(self):
        """A timed-out waiter does not leave its lock entry behind."""
        registry = TimerRegistry(lock_timeout=0.05)
        with registry.user_scope("u1"):
            with pytest.raises(StoreUnavailableError):
                with registry.user_scope("u1"):
                    pass
            assert registry._user_locks["u1"].holders == 1

        assert registry._user_locks == {}


class TestSharedSlotDirectory:
    """Tests for several registries over one slot directory."""

    def test_second_registry_cannot_claim_taken_slot(self, tmp_path):
        """Two registries sharing storage still allow one session per user."""
        first = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))
        second = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))

        with first.user_scope("u1"):
            first.register_start(make_session())

        with second.user_scope("u1"):
            with pytest.raises(ConflictError) as exc_info:
                second.register_start(make_session(session_id="ses_2", task_id="T-9"))

        assert exc_info.value.session_id == "ses_1"
        assert exc_info.value.task_id == "T-1"
        assert second.lookup_by_user("u1").session_id == "ses_1"
        assert RegistryStorage(tmp_path / "slots").get("u1").session_id == "ses_1"

    def test_claim_conflict_without_scope_refresh(self, tmp_path):
        """The durable claim rejects a start the in-memory index did not see."""
        first = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))
        second = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))

        with second.user_scope("u1"):
            with first.user_scope("u1"):
                first.register_start(make_session())
            with pytest.raises(ConflictError):
                second.register_start(make_session(session_id="ses_2"))

        assert second.lookup_by_session("ses_2") is None
        assert second.lookup_by_user("u1").session_id == "ses_1"

    def test_scope_sees_slot_freed_elsewhere(self, tmp_path):
        """A slot freed by one registry is free in the other on next scope."""
        first = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))
        second = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))
        with first.user_scope("u1"):
            first.register_start(make_session())
        second.load()

        with first.user_scope("u1"):
            first.remove("ses_1")
        with second.user_scope("u1"):
            second.register_start(make_session(session_id="ses_2"))

        assert second.lookup_by_session("ses_1") is None
        assert RegistryStorage(tmp_path / "slots").get("u1").session_id == "ses_2"

    def test_stale_replace_is_rejected(self, tmp_path):
        """A worker cannot overwrite a record another worker changed."""
        first = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))
        second = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))
        session = make_session()
        with first.user_scope("u1"):
            first.register_start(session)
        second.load()

        with second.user_scope("u1"):
            with first.user_scope("u1"):
                first.replace(session.model_copy(update={"description": "first"}))
            with pytest.raises(InvalidStateError):
                second.replace(session.model_copy(update={"description": "second"}))

        assert second.lookup_by_session("ses_1").description == "first"

    def test_find_session_reads_storage(self, tmp_path):
        """find_session finds a session another registry started."""
        first = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))
        second = TimerRegistry(storage=RegistryStorage(tmp_path / "slots"))
        with first.user_scope("u1"):
            first.register_start(make_session())

        assert second.lookup_by_session("ses_1") is None
        assert second.find_session("ses_1").user_id == "u1"
        assert second.find_session("ses_missing") is None


class TestRegistryStorage:
    """Tests for per-user slot files."""

    def test_claim_and_get(self, tmp_path):
        """A stored session is read back intact."""
        storage = RegistryStorage(tmp_path / "slots")
        session = make_session(description="deep work")
        storage.claim(session)

        assert storage.get("u1") == session
        assert storage.get("nobody") is None

    def test_claim_taken_slot(self, tmp_path):
        """claim refuses a slot held by another session."""
        storage = RegistryStorage(tmp_path / "slots")
        storage.claim(make_session())

        with pytest.raises(ConflictError) as exc_info:
            RegistryStorage(tmp_path / "slots").claim(make_session(session_id="ses_2"))

        assert exc_info.value.session_id == "ses_1"
        assert storage.get("u1").session_id == "ses_1"

    def test_replace_swaps_slot(self, tmp_path):
        """Each user has a single slot file."""
        storage = RegistryStorage(tmp_path / "slots")
        session = make_session()
        storage.claim(session)
        storage.replace(session, make_session(accumulated_seconds=12))

        assert len(list((tmp_path / "slots").glob("*.json"))) == 1
        assert storage.get("u1").accumulated_seconds == 12

    def test_replace_checks_expected_record(self, tmp_path):
        """replace fails if the slot no longer holds the expected record."""
        storage = RegistryStorage(tmp_path / "slots")
        session = make_session()
        storage.claim(session)
        storage.replace(session, make_session(accumulated_seconds=12))

        with pytest.raises(InvalidStateError):
            storage.replace(session, make_session(accumulated_seconds=99))
        with pytest.raises(NotFoundError):
            storage.replace(session, make_session(session_id="ses_other"))

        assert storage.get("u1").accumulated_seconds == 12

    def test_replace_freed_slot(self, tmp_path):
        """replace on an empty slot is not found."""
        storage = RegistryStorage(tmp_path / "slots")
        session = make_session()

        with pytest.raises(NotFoundError):
            storage.replace(session, session)

    def test_write_is_atomic(self, tmp_path):
        """No temp files are left after a write."""
        storage = RegistryStorage(tmp_path / "slots")
        storage.claim(make_session())

        assert list((tmp_path / "slots").glob("*.tmp")) == []

    def test_remove_checks_session_id(self, tmp_path):
        """remove only clears a slot holding the same session."""
        storage = RegistryStorage(tmp_path / "slots")
        storage.claim(make_session())

        assert storage.remove(make_session(session_id="ses_other")) is False
        assert storage.get("u1") is not None
        assert storage.remove(make_session()) is True
        assert storage.get("u1") is None

    def test_load_missing_directory(self, tmp_path):
        """A missing directory loads as empty."""
        assert RegistryStorage(tmp_path / "missing").load() == []

    def test_load_corrupt_slot(self, tmp_path):
        """A corrupt slot file raises StoreUnavailableError."""
        slots = tmp_path / "slots"
        slots.mkdir()
        (slots / "broken.json").write_text("{not json")

        with pytest.raises(StoreUnavailableError):
            RegistryStorage(slots).load()

    def test_slot_file_format(self, tmp_path):
        """Slot files carry a version and the session record."""
        storage = RegistryStorage(tmp_path / "slots")
        storage.claim(make_session())

        data = json.loads(next((tmp_path / "slots").glob("*.json")).read_text())
        assert data["version"] == 1
        assert data["session"]["session_id"] == "ses_1"
        assert data["session"]["state"] == "running"

    def test_pending_log_round_trips(self, tmp_path):
        """A closed session keeps its pending log on disk."""
        log = TimeLog(
            log_id="log_1",
            session_id="ses_1",
            task_id="T-1",
            user_id="u1",
            start_time=T0,
            end_time=T0 + timedelta(seconds=60),
            duration_seconds=60,
        )
        storage = RegistryStorage(tmp_path / "slots")
        storage.claim(make_session(state=SessionState.CLOSED, segment_start=None, pending_log=log))

        assert storage.get("u1").pending_log == log
