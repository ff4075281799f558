"""Task and project store interfaces, plus a JSON board file implementing both.

The engine only reads tasks and writes status/branch/merge/review metadata;
task authoring lives upstream.

Board file layout::

    {
      "projects": [{"id": "p1", "name": "...", "repo_url": "...", "requirements": "..."}],
      "tasks": [{"id": "t1", "project_id": "p1", "title": "...", "dependencies": []}]
    }
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from braid.io_utils import read_json, write_json_atomic
from braid.tasks.model import MergeStatus, Project, Task, TaskStatus


class TaskStore(ABC):
    @abstractmethod
    def list_tasks(self, project_id: str) -> list[Task]:
        ...

    @abstractmethod
    def get_task(self, task_id: str) -> Task | None:
        ...

    @abstractmethod
    def update_task(self, task_id: str, **fields: Any) -> Task:
        """Apply *fields* to the task and return the updated copy."""
        ...

    def tasks_with_status(self, project_id: str, status: TaskStatus) -> list[Task]:
        return [t for t in self.list_tasks(project_id) if t.status == status]


class ProjectStore(ABC):
    @abstractmethod
    def get_project(self, project_id: str) -> Project:
        ...


class InMemoryBoard(TaskStore, ProjectStore):
    """Dict-backed stores. Used directly in tests and as the base of :class:`JsonBoard`."""

    def __init__(self, projects: list[Project] | None = None, tasks: list[Task] | None = None) -> None:
        self._lock = threading.Lock()
        self._projects: dict[str, Project] = {p.id: p for p in projects or []}
        self._tasks: dict[str, Task] = {t.id: t for t in tasks or []}

    def list_tasks(self, project_id: str) -> list[Task]:
        with self._lock:
            return [Task.from_dict(t.to_dict()) for t in self._tasks.values() if t.project_id == project_id]

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return Task.from_dict(task.to_dict()) if task else None

    def update_task(self, task_id: str, **fields: Any) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(f"Unknown task: {task_id}")
            for key, value in fields.items():
                if not hasattr(task, key):
                    raise AttributeError(f"Task has no field {key!r}")
                setattr(task, key, value)
            task.status = TaskStatus(task.status)
            task.merge_status = MergeStatus(task.merge_status)
            self._persist()
            return Task.from_dict(task.to_dict())

    def get_project(self, project_id: str) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
        if project is None:
            raise KeyError(f"Unknown project: {project_id}")
        return project

    def add_task(self, task: Task) -> None:
        with self._lock:
            self._tasks[task.id] = task
            self._persist()

    def _persist(self) -> None:
        """Hook for file-backed subclasses. Called with the lock held."""


class JsonBoard(InMemoryBoard):
    """Board persisted to a single JSON file, rewritten atomically on every update."""

    def __init__(self, path: Path) -> None:
        self.path = path
        projects: list[Project] = []
        tasks: list[Task] = []
        if path.is_file():
            data = read_json(path)
            projects = [Project(**p) for p in data.get("projects", [])]
            tasks = [Task.from_dict(t) for t in data.get("tasks", [])]
        super().__init__(projects, tasks)

    def _persist(self) -> None:
        write_json_atomic(
            self.path,
            {
                "projects": [vars(p) for p in self._projects.values()],
                "tasks": [t.to_dict() for t in self._tasks.values()],
            },
        )
