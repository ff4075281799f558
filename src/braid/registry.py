"""Per-project execution contexts.

A context is the live, in-process view of one running execution: the abort
flag, the agent processes to kill on abort, batch counters and a per-task
view that is folded from the published events. The event bus reads it to
build the snapshot a late subscriber receives.
"""

from __future__ import annotations

import subprocess
import threading
from dataclasses import asdict, dataclass
from typing import Any

from braid import log
from braid.engines.base import EngineBase
from braid.errors import ExecutionAlreadyRunning
from braid.events import EventType, ExecutionEvent

MAX_VIEW_OUTPUT = 4000


@dataclass
class TaskView:
    task_id: str
    title: str = ""
    status: str = "todo"
    branch_name: str | None = None
    output: str = ""
    commit_url: str | None = None
    error: str | None = None
    quality_score: float | None = None
    merge_status: str = "none"


class ExecutionContext:
    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        self.abort_event = threading.Event()
        self.phase = "planning"
        self.batch_number = 0
        self.total_batches = 0
        self.group_id: str | None = None
        self.merge_in_progress = False
        self.views: dict[str, TaskView] = {}
        self._processes: dict[str, subprocess.Popen[str]] = {}
        self._lock = threading.Lock()

    # ── abort / processes ────────────────────────────────────────

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def register_process(self, task_id: str, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._processes[task_id] = proc

    def unregister_process(self, task_id: str) -> None:
        with self._lock:
            self._processes.pop(task_id, None)

    def live_processes(self) -> dict[str, subprocess.Popen[str]]:
        with self._lock:
            return dict(self._processes)

    def request_abort(self) -> None:
        self.abort_event.set()
        procs = self.live_processes()
        if procs:
            log.warn(f"Stopping {len(procs)} active agent(s)...")
        for proc in procs.values():
            EngineBase.terminate(proc)

    # ── event reducer ────────────────────────────────────────────

    def _view(self, task_id: str) -> TaskView:
        view = self.views.get(task_id)
        if view is None:
            view = self.views[task_id] = TaskView(task_id=task_id)
        return view

    def apply(self, event: ExecutionEvent) -> None:
        """Fold one published event into the live view."""
        data = event.data
        task_id = data.get("task_id")

        match event.type:
            case EventType.PLAN_READY:
                self.total_batches = int(data.get("total_batches", 0))
                for item in data.get("tasks", []):
                    view = self._view(item["id"])
                    view.title = item.get("title", "")
                self.phase = "planned"
            case EventType.BATCH_START:
                self.batch_number = int(data.get("batch_number", 0))
                self.total_batches = int(data.get("total_batches", self.total_batches))
                self.group_id = data.get("group_id")
                self.phase = "executing"
            case EventType.TASK_START:
                view = self._view(task_id)
                view.status = "wip"
                view.branch_name = data.get("branch_name")
                view.title = data.get("title", view.title)
            case EventType.TASK_OUTPUT:
                view = self._view(task_id)
                view.output = (view.output + data.get("output", ""))[-MAX_VIEW_OUTPUT:]
            case EventType.TASK_COMPLETE:
                self._view(task_id).status = "done"
            case EventType.TASK_ERROR:
                view = self._view(task_id)
                view.status = "failed"
                view.error = data.get("error")
            case EventType.MERGE_START:
                self.merge_in_progress = True
                self.phase = "merging"
                self._view(task_id).merge_status = "pending"
            case EventType.MERGE_COMPLETE:
                self.merge_in_progress = False
                view = self._view(task_id)
                view.status = "merged"
                view.merge_status = "merged"
                view.commit_url = data.get("commit_url")
            case EventType.MERGE_CONFLICT:
                self.merge_in_progress = False
                view = self._view(task_id)
                view.merge_status = "conflict"
                view.error = data.get("error")
            case EventType.REVIEW_START:
                self.phase = "reviewing"
            case EventType.REVIEW_FIX_COMPLETE:
                if data.get("commit_url"):
                    self._view(task_id).commit_url = data["commit_url"]
            case EventType.REVIEW_TASK_COMPLETE:
                view = self._view(task_id)
                view.status = "review_passed"
                view.quality_score = data.get("quality_score")
            case EventType.REVIEW_TASK_FAILED:
                view = self._view(task_id)
                view.status = "review_failed"
                view.quality_score = data.get("quality_score")
            case EventType.EXECUTION_COMPLETE:
                self.phase = "completed"
            case EventType.EXECUTION_ERROR:
                self.phase = "failed"
            case EventType.ABORTED:
                self.phase = "aborted"
            case _:
                pass

    def snapshot(self) -> dict[str, Any]:
        return {
            "live": True,
            "phase": self.phase,
            "batch_number": self.batch_number,
            "total_batches": self.total_batches,
            "group_id": self.group_id,
            "merge_in_progress": self.merge_in_progress,
            "aborted": self.aborted,
            "tasks": [asdict(v) for v in self.views.values()],
        }


class ExecutionRegistry:
    """Live contexts keyed by project id; one execution per project at a time."""

    def __init__(self) -> None:
        self._contexts: dict[str, ExecutionContext] = {}
        self._lock = threading.Lock()

    def start(self, project_id: str) -> ExecutionContext:
        with self._lock:
            if project_id in self._contexts:
                raise ExecutionAlreadyRunning(f"Project {project_id} already has a running execution")
            ctx = self._contexts[project_id] = ExecutionContext(project_id)
            return ctx

    def get(self, project_id: str) -> ExecutionContext | None:
        with self._lock:
            return self._contexts.get(project_id)

    def finish(self, project_id: str) -> None:
        with self._lock:
            self._contexts.pop(project_id, None)

    def abort(self, project_id: str) -> bool:
        """Set the abort flag and kill live agents. Returns ``False`` if nothing is running."""
        ctx = self.get(project_id)
        if ctx is None:
            return False
        ctx.request_abort()
        return True

    def running_projects(self) -> list[str]:
        with self._lock:
            return list(self._contexts)
