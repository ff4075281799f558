"""Batch executor: runs one batch of tasks with bounded parallelism in worktrees."""

from __future__ import annotations

import shutil
import subprocess
import tempfile
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator

from braid import git_ops, log
from braid.agent import CodeAgent
from braid.config import Config
from braid.engines.base import EngineBase
from braid.events import EventBus, EventType
from braid.io_utils import read_text
from braid.prompts import build_task_prompt
from braid.registry import ExecutionContext
from braid.tasks.model import Project, Task, TaskOutcome, TaskStatus
from braid.tasks.store import TaskStore

ABORTED_MESSAGE = "Execution aborted by user"


class SlotState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class BatchTracker:
    """Per-batch task states and the running-count high-water mark.

    Usage::

        tracker = BatchTracker(task_ids)
        tracker.start_task(tid)      # pending -> running
        tracker.complete_task(tid)   # running -> done
        tracker.fail_task(tid)       # running|pending -> failed
    """

    def __init__(self, task_ids: list[str]) -> None:
        self._state: dict[str, SlotState] = {tid: SlotState.PENDING for tid in task_ids}
        self.peak_running = 0

    def state(self, task_id: str) -> SlotState:
        return self._state.get(task_id, SlotState.PENDING)

    def count_pending(self) -> int:
        return sum(1 for s in self._state.values() if s == SlotState.PENDING)

    def count_running(self) -> int:
        return sum(1 for s in self._state.values() if s == SlotState.RUNNING)

    def count_done(self) -> int:
        return sum(1 for s in self._state.values() if s == SlotState.DONE)

    def count_failed(self) -> int:
        return sum(1 for s in self._state.values() if s == SlotState.FAILED)

    def start_task(self, task_id: str) -> None:
        self._state[task_id] = SlotState.RUNNING
        self.peak_running = max(self.peak_running, self.count_running())
        log.debug(f"Task {task_id}: pending -> running")

    def complete_task(self, task_id: str) -> None:
        self._state[task_id] = SlotState.DONE
        log.debug(f"Task {task_id}: running -> done")

    def fail_task(self, task_id: str) -> None:
        previous = self._state.get(task_id, SlotState.PENDING)
        self._state[task_id] = SlotState.FAILED
        log.debug(f"Task {task_id}: {previous.value} -> failed")


@dataclass
class AgentSlot:
    """Tracks a running agent subprocess."""

    task: Task
    proc: subprocess.Popen  # type: ignore[type-arg]
    worktree_dir: Path
    branch_name: str
    log_file: Path
    stream_file: Path
    started_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.time)
    output_offset: int = 0


def _extract_error_from_logs(log_file: Path, stream_file: Path | None = None) -> str:
    """Get the most relevant error line from stderr or stdout logs."""
    if log_file.is_file():
        lines = read_text(log_file, errors="replace").splitlines()
        non_debug = [l for l in lines if not l.startswith("[DEBUG]") and l.strip()]
        if non_debug:
            return non_debug[-1]

    if stream_file and stream_file.is_file():
        stream = read_text(stream_file, errors="replace")
        err = EngineBase._check_errors(stream)
        if err:
            return err
        for line in reversed(stream.splitlines()):
            lower = line.lower()
            if "error" in lower or "exception" in lower or "traceback" in lower:
                return line.strip()

    return ""


class BatchExecutor:
    """Runs a batch of independent tasks, at most ``max_parallel`` at a time.

    Every task gets its own worktree on a fresh feature branch cut from the
    integration branch. Outcomes are yielded as tasks finish; a failing task
    never stops its siblings.
    """

    def __init__(
        self,
        cfg: Config,
        agent: CodeAgent,
        task_store: TaskStore,
        *,
        project: Project | None = None,
        bus: EventBus | None = None,
        context: ExecutionContext | None = None,
    ) -> None:
        self.cfg = cfg
        self.agent = agent
        self.task_store = task_store
        self.project = project
        self.bus = bus
        self.context = context or ExecutionContext(project.id if project else "")
        self.tracker = BatchTracker([])

    @property
    def peak_running(self) -> int:
        return self.tracker.peak_running

    def _emit(self, event_type: EventType, **data: object) -> None:
        if self.bus is not None:
            self.bus.emit(self.context.project_id, event_type, **data)

    # ── main loop ────────────────────────────────────────────────

    def execute_batch(self, tasks: list[Task]) -> Iterator[TaskOutcome]:
        """Run *tasks* and yield one :class:`TaskOutcome` per task as it finishes."""
        self.tracker = BatchTracker([t.id for t in tasks])
        pending = deque(tasks)
        active: list[AgentSlot] = []

        own_base = not self.cfg.worktree_base
        worktree_base = Path(tempfile.mkdtemp(prefix="braid-")) if own_base else Path(self.cfg.worktree_base)

        log.debug(f"Executing batch of {len(tasks)} task(s) (max {self.cfg.max_parallel} parallel)")
        try:
            while pending or active:
                if self.context.aborted:
                    yield from self._abort_all(active, pending)
                    active = []
                    return

                # 1. Reap finished agents
                still_active: list[AgentSlot] = []
                for slot in active:
                    outcome = self._poll(slot)
                    if outcome is None:
                        still_active.append(slot)
                    else:
                        yield outcome
                active = still_active

                # 2. Launch while under the ceiling
                while (
                    pending
                    and self.tracker.count_running() < self.cfg.max_parallel
                    and not self.context.aborted
                ):
                    task = pending.popleft()
                    launched = self._launch(task, worktree_base)
                    if isinstance(launched, TaskOutcome):
                        yield launched
                    else:
                        active.append(launched)

                if active:
                    time.sleep(self.cfg.poll_interval)
        finally:
            # Consumer stopped early: do not leave agents behind.
            for slot in active:
                EngineBase.terminate(slot.proc)
                self.context.unregister_process(slot.task.id)
                git_ops.cleanup_task_worktree(slot.worktree_dir, repo_dir=self.cfg.workspace)
            if own_base:
                shutil.rmtree(worktree_base, ignore_errors=True)

    # ── launch ───────────────────────────────────────────────────

    def _dependency_tasks(self, task: Task) -> list[Task]:
        deps: list[Task] = []
        for dep_id in task.dependencies:
            dep = self.task_store.get_task(dep_id)
            if dep is not None:
                deps.append(dep)
        return deps

    def _launch(self, task: Task, worktree_base: Path) -> AgentSlot | TaskOutcome:
        branch_name = git_ops.feature_branch_name(task.id, task.title)
        self.task_store.update_task(task.id, branch_name=branch_name, status=TaskStatus.WIP, error=None)
        self.tracker.start_task(task.id)
        self._emit(EventType.TASK_START, task_id=task.id, title=task.title, branch_name=branch_name)

        try:
            wt_dir = git_ops.create_task_worktree(
                branch_name,
                base_branch=self.cfg.integration_branch,
                worktree_base=worktree_base,
                repo_dir=self.cfg.workspace,
            )
        except RuntimeError as e:
            log.error(f"Failed to create worktree for {task.id}: {e}")
            return self._record_failure(task, branch_name, str(e))

        logs_dir = worktree_base / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = logs_dir / f"{task.id}.log"
        stream_file = logs_dir / f"{task.id}.out"

        prompt = build_task_prompt(
            task,
            project=self.project,
            dependencies=self._dependency_tasks(task),
            branch_name=branch_name,
        )
        try:
            proc = self.agent.start(prompt, wt_dir, stdout_file=stream_file, stderr_file=log_file)
        except OSError as e:
            git_ops.cleanup_task_worktree(wt_dir, repo_dir=self.cfg.workspace)
            return self._record_failure(task, branch_name, f"Could not start agent: {e}")

        self.context.register_process(task.id, proc)
        return AgentSlot(
            task=task,
            proc=proc,
            worktree_dir=wt_dir,
            branch_name=branch_name,
            log_file=log_file,
            stream_file=stream_file,
        )

    # ── polling ──────────────────────────────────────────────────

    def _stream_new_output(self, slot: AgentSlot) -> None:
        if not slot.stream_file.is_file():
            return
        size = slot.stream_file.stat().st_size
        if size <= slot.output_offset:
            return
        with open(slot.stream_file, encoding="utf-8", errors="replace") as f:
            f.seek(slot.output_offset)
            chunk = f.read()
        slot.output_offset = size
        if chunk:
            self._emit(EventType.TASK_OUTPUT, task_id=slot.task.id, output=chunk)

    def _poll(self, slot: AgentSlot) -> TaskOutcome | None:
        """Return the outcome if the agent finished (or stalled), else ``None``."""
        if slot.proc.poll() is None:
            for f in (slot.log_file, slot.stream_file):
                if f.is_file():
                    slot.last_activity = max(slot.last_activity, f.stat().st_mtime)
            self._stream_new_output(slot)

            idle = time.time() - slot.last_activity
            if idle <= self.cfg.stalled_timeout:
                return None
            log.warn(f"Agent for {slot.task.id} stalled for {int(idle)}s. Killing…")
            EngineBase.terminate(slot.proc)
            return self._finish(slot, stalled=f"Agent stalled for {int(idle)}s without output")

        self._stream_new_output(slot)
        return self._finish(slot)

    def _finish(self, slot: AgentSlot, stalled: str = "") -> TaskOutcome:
        task = slot.task
        self.context.unregister_process(task.id)
        raw = read_text(slot.stream_file, errors="replace") if slot.stream_file.is_file() else ""
        self.agent.collect_usage(raw)

        try:
            rc = slot.proc.returncode
            error = stalled
            commit_ref = ""
            if not error:
                if rc == 0 and git_ops.has_dirty_worktree(cwd=slot.worktree_dir):
                    git_ops.add_and_commit("Auto-commit remaining changes", cwd=slot.worktree_dir)
                commits = git_ops.commit_count(self.cfg.integration_branch, cwd=slot.worktree_dir)
                if rc != 0:
                    error = _extract_error_from_logs(slot.log_file, slot.stream_file) or f"exit code {rc}"
                elif commits == 0:
                    error = "Agent exited without creating any commits"
                else:
                    commit_ref = git_ops.rev_parse(cwd=slot.worktree_dir)
                    pushed = git_ops.push(self.cfg.remote, slot.branch_name, cwd=slot.worktree_dir)
                    if pushed.returncode != 0:
                        error = f"Failed to push {slot.branch_name}: {git_ops.output_of(pushed)}"
        finally:
            git_ops.cleanup_task_worktree(slot.worktree_dir, repo_dir=self.cfg.workspace)

        if error:
            return self._record_failure(task, slot.branch_name, error, output=raw)

        self.tracker.complete_task(task.id)
        self.task_store.update_task(task.id, status=TaskStatus.DONE, error=None)
        self._emit(EventType.TASK_COMPLETE, task_id=task.id, title=task.title,
                   branch_name=slot.branch_name, commit_ref=commit_ref)
        return TaskOutcome(
            task_id=task.id,
            branch_name=slot.branch_name,
            success=True,
            commit_ref=commit_ref,
            output=raw,
        )

    def _record_failure(
        self,
        task: Task,
        branch_name: str,
        error: str,
        *,
        output: str = "",
        aborted: bool = False,
    ) -> TaskOutcome:
        self.tracker.fail_task(task.id)
        self.task_store.update_task(task.id, status=TaskStatus.FAILED, error=error)
        self._emit(EventType.TASK_ERROR, task_id=task.id, title=task.title, error=error, aborted=aborted)
        return TaskOutcome(
            task_id=task.id,
            branch_name=branch_name,
            success=False,
            output=output,
            error=error,
            aborted=aborted,
        )

    # ── abort ────────────────────────────────────────────────────

    def _abort_all(self, active: list[AgentSlot], pending: deque[Task]) -> Iterator[TaskOutcome]:
        """Kill in-flight agents; tasks never launched stay ``todo``."""
        if active:
            log.warn(f"Stopping {len(active)} active agent(s)...")
        for slot in active:
            EngineBase.terminate(slot.proc)
            self.context.unregister_process(slot.task.id)
            git_ops.cleanup_task_worktree(slot.worktree_dir, repo_dir=self.cfg.workspace)
            yield self._record_failure(slot.task, slot.branch_name, ABORTED_MESSAGE, aborted=True)
        active.clear()

        while pending:
            task = pending.popleft()
            self.tracker.fail_task(task.id)
            yield TaskOutcome(
                task_id=task.id,
                branch_name="",
                success=False,
                error=ABORTED_MESSAGE,
                aborted=True,
            )
