"""Tests for the live activity view."""

from unittest.mock import patch

import pytest

from worktimer.activity import LiveActivityView
from worktimer.directory import InMemoryTaskDirectory
from worktimer.errors import StoreUnavailableError
from worktimer.types import ActivityFilters, SessionState, TaskInfo


@pytest.fixture
def directory():
    return InMemoryTaskDirectory([
        TaskInfo(task_id="T-1", title="Checkout bug", task_type="BUG", priority="HIGH", project_id="shop"),
        TaskInfo(task_id="T-2", title="New landing page", task_type="FEATURE", priority="LOW", project_id="web"),
    ])


@pytest.fixture
def view(service, directory, clock):
    return LiveActivityView(service.registry, directory, clock=clock)


class TestLiveActivityView:
    """Tests for LiveActivityView."""

    def test_empty(self, view):
        """Nobody tracking time yields an empty list."""
        assert view.list_active() == []

    def test_elapsed_is_derived_on_read(self, service, view, clock):
        """Elapsed time grows with the clock without any writes."""
        service.start("u1", "T-1")
        clock.advance(30)
        assert view.list_active()[0].elapsed_seconds == 30

        clock.advance(45)
        assert view.list_active()[0].elapsed_seconds == 75

    def test_paused_elapsed_is_frozen(self, service, view, clock):
        """A paused session shows its accumulated time."""
        session = service.start("u1", "T-1")
        clock.advance(20)
        service.pause(session.session_id, "u1")
        clock.advance(500)

        row = view.list_active()[0]
        assert row.state == SessionState.PAUSED
        assert row.elapsed_seconds == 20
        assert row.segment_start is None

    def test_rows_carry_task_metadata(self, service, view):
        """Rows are labelled from the task directory."""
        service.start("u1", "T-1")
        row = view.list_active()[0]

        assert row.task_title == "Checkout bug"
        assert row.task_type == "BUG"
        assert row.task_priority == "HIGH"
        assert row.project_id == "shop"

    def test_newest_first(self, service, view, clock):
        """Sessions are listed most recently started first."""
        service.start("u1", "T-1")
        clock.advance(10)
        service.start("u2", "T-2")
        clock.advance(10)
        service.start("u3", "T-1")

        assert [r.user_id for r in view.list_active()] == ["u3", "u2", "u1"]

    def test_filters(self, service, view):
        """Filters narrow by task metadata, user and state."""
        service.start("u1", "T-1")
        s2 = service.start("u2", "T-2")
        service.pause(s2.session_id, "u2")

        assert [r.user_id for r in view.list_active(ActivityFilters(task_type="BUG"))] == ["u1"]
        assert [r.user_id for r in view.list_active(ActivityFilters(priority="LOW"))] == ["u2"]
        assert [r.user_id for r in view.list_active(ActivityFilters(project_id="shop"))] == ["u1"]
        assert [r.user_id for r in view.list_active(ActivityFilters(user_id="u2"))] == ["u2"]
        assert [r.user_id for r in view.list_active(ActivityFilters(state=SessionState.PAUSED))] == ["u2"]

    def test_unknown_task_excluded_by_task_filters(self, service, view):
        """Sessions on tasks missing from the directory never match task filters."""
        service.start("u1", "T-404")

        assert len(view.list_active()) == 1
        assert view.list_active(ActivityFilters(task_type="BUG")) == []

    def test_closed_pending_sessions_hidden(self, service, view, log_storage, clock):
        """A stop awaiting its log write is not shown as active."""
        session = service.start("u1", "T-1")
        clock.advance(5)
        with patch.object(log_storage, "append", side_effect=StoreUnavailableError("down")):
            with pytest.raises(StoreUnavailableError):
                service.stop(session.session_id, "u1")

        assert view.list_active() == []

    def test_stopped_session_disappears(self, service, view):
        """A stopped session leaves the view."""
        session = service.start("u1", "T-1")
        service.stop(session.session_id, "u1")

        assert view.list_active() == []

    def test_summary(self, service, view, clock):
        """summary counts running and paused sessions."""
        service.start("u1", "T-1")
        s2 = service.start("u2", "T-2")
        clock.advance(60)
        service.pause(s2.session_id, "u2")
        clock.advance(60)

        assert view.summary() == {
            "running_count": 1,
            "paused_count": 1,
            "active_member_count": 2,
            "total_elapsed_seconds": 180,
        }

    def test_without_directory(self, service, clock):
        """The view works without a task directory."""
        service.start("u1", "T-1")
        row = LiveActivityView(service.registry, clock=clock).list_active()[0]

        assert row.task_title is None
        assert row.task_id == "T-1"
