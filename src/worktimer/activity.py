"""Live view of who is working on what right now.

Elapsed time is derived on every read from the registry's authoritative
``segment_start`` and ``accumulated_seconds``; nothing is cached or ticked.
"""

import logging
from datetime import datetime
from typing import Any

from worktimer.clock import Clock, utc_now
from worktimer.directory import TaskDirectory
from worktimer.registry import TimerRegistry
from worktimer.types import ActiveSessionView, ActivityFilters, SessionState, TimerSession

logger = logging.getLogger(__name__)


class LiveActivityView:
    """Read-only projection over the timer registry."""

    def __init__(
        self,
        registry: TimerRegistry,
        directory: TaskDirectory | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._clock = clock

    def _view(self, session: TimerSession, now: datetime) -> ActiveSessionView:
        task = self._directory.get(session.task_id) if self._directory else None
        return ActiveSessionView(
            session_id=session.session_id,
            user_id=session.user_id,
            task_id=session.task_id,
            state=session.state,
            started_at=session.created_at,
            segment_start=session.segment_start,
            accumulated_seconds=session.accumulated_seconds,
            elapsed_seconds=session.elapsed_seconds(now),
            task_title=task.title if task else None,
            task_type=task.task_type if task else None,
            task_priority=task.priority if task else None,
            project_id=task.project_id if task else None,
        )

    @staticmethod
    def _matches(view: ActiveSessionView, filters: ActivityFilters, task_known: bool) -> bool:
        if filters.user_id is not None and view.user_id != filters.user_id:
            return False
        if filters.state is not None and view.state != filters.state:
            return False
        if filters.needs_task_info() and not task_known:
            return False
        if filters.task_type is not None and view.task_type != filters.task_type:
            return False
        if filters.priority is not None and view.task_priority != filters.priority:
            return False
        if filters.project_id is not None and view.project_id != filters.project_id:
            return False
        return True

    def list_active(
        self,
        filters: ActivityFilters | None = None,
        now: datetime | None = None,
    ) -> list[ActiveSessionView]:
        """List running and paused sessions, most recently started first.

        Args:
            filters: Optional filters; task type, priority and project need
                the task directory, and sessions on unknown tasks never match them.
            now: Instant to measure elapsed time against (defaults to the clock).

        Returns:
            Matching sessions; empty when nobody is tracking time.
        """
        filters = filters or ActivityFilters()
        now = now or self._clock()

        views = []
        for session in self._registry.active_sessions():
            if not session.is_active:
                continue
            view = self._view(session, now)
            task_known = view.task_title is not None
            if self._matches(view, filters, task_known):
                views.append(view)

        views.sort(key=lambda v: (v.started_at, v.session_id), reverse=True)
        logger.debug(f"Live activity: {len(views)} sessions")
        return views

    def summary(self, now: datetime | None = None) -> dict[str, Any]:
        """Headline counts for the live dashboard."""
        views = self.list_active(now=now)
        return {
            "running_count": sum(1 for v in views if v.state == SessionState.RUNNING),
            "paused_count": sum(1 for v in views if v.state == SessionState.PAUSED),
            "active_member_count": len({v.user_id for v in views}),
            "total_elapsed_seconds": sum(v.elapsed_seconds for v in views),
        }
