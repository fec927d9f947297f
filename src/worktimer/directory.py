"""Task directory collaborator.

The timer engine does not own tasks. It asks a directory for task metadata
(to label and filter the live view) and for the set of tasks completed in a
period (to count completions in aggregates). ``InMemoryTaskDirectory`` is the
bundled implementation, loadable from a YAML file such as::

    tasks:
      - id: T-1
        title: Fix checkout rounding
        type: BUG
        priority: HIGH
        status: DONE
        project: shop
        assignee: alice
        completed_at: 2026-03-02T15:04:00+00:00
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml

from worktimer.types import CompletedTask, TaskInfo

logger = logging.getLogger(__name__)

DONE_STATUS = "DONE"


class TaskDirectory(Protocol):
    """Read-only view of the task system."""

    def get(self, task_id: str) -> TaskInfo | None:
        """Resolve a task's metadata."""
        ...

    def completed_between(self, start: datetime, end: datetime) -> list[CompletedTask]:
        """Tasks that reached DONE within ``[start, end)``."""
        ...


class InMemoryTaskDirectory:
    """Task directory held in memory."""

    def __init__(self, tasks: Iterable[TaskInfo] = ()) -> None:
        self._tasks: dict[str, TaskInfo] = {t.task_id: t for t in tasks}

    @classmethod
    def from_yaml(cls, path: str | Path) -> "InMemoryTaskDirectory":
        """Load tasks from a YAML file.

        A missing file yields an empty directory.

        Args:
            path: Path to the YAML file.

        Returns:
            The populated directory.

        Raises:
            ValueError: If the file is not valid YAML or has malformed entries.
        """
        path = Path(os.path.expanduser(str(path)))
        if not path.exists():
            logger.debug(f"No task file at {path}, using empty task directory")
            return cls()

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

        entries = data.get("tasks", []) if isinstance(data, dict) else []
        tasks = [cls._parse_entry(entry) for entry in entries]
        logger.info(f"Loaded {len(tasks)} tasks from {path}")
        return cls(tasks)

    @staticmethod
    def _parse_entry(entry: dict[str, Any]) -> TaskInfo:
        if not isinstance(entry, dict) or "id" not in entry:
            raise ValueError(f"Task entry must be a mapping with an 'id': {entry!r}")

        completed_at = entry.get("completed_at")
        if isinstance(completed_at, str):
            completed_at = datetime.fromisoformat(completed_at)
        if isinstance(completed_at, datetime) and completed_at.tzinfo is None:
            completed_at = completed_at.replace(tzinfo=timezone.utc)

        return TaskInfo(
            task_id=str(entry["id"]),
            title=str(entry.get("title", "")),
            task_type=entry.get("type"),
            priority=entry.get("priority"),
            status=str(entry.get("status", "TODO")).upper(),
            project_id=entry.get("project"),
            assignee_id=entry.get("assignee"),
            completed_at=completed_at,
        )

    def add(self, task: TaskInfo) -> None:
        """Add or replace a task."""
        self._tasks[task.task_id] = task

    def get(self, task_id: str) -> TaskInfo | None:
        return self._tasks.get(task_id)

    def completed_between(self, start: datetime, end: datetime) -> list[CompletedTask]:
        return [
            CompletedTask(
                task_id=task.task_id,
                user_id=task.assignee_id,
                completed_at=task.completed_at,
                project_id=task.project_id,
                task_type=task.task_type,
            )
            for task in self._tasks.values()
            if task.status == DONE_STATUS
            and task.completed_at is not None
            and start <= task.completed_at < end
        ]

    def task_projects(self) -> dict[str, str]:
        """Map of task id to project id for tasks that belong to a project."""
        return {t.task_id: t.project_id for t in self._tasks.values() if t.project_id}

    def task_types(self) -> dict[str, str]:
        """Map of task id to task type for tasks that have one."""
        return {t.task_id: t.task_type for t in self._tasks.values() if t.task_type}

    def __len__(self) -> int:
        return len(self._tasks)
