"""Integration tests for BatchExecutor with a scripted engine and real git worktrees.

The fake engine reads ``TASK ID:`` from the prompt and runs a tiny Python
script in the task worktree, so every git step (worktree, commit, push) is real.
"""

from __future__ import annotations

import re
import subprocess
import sys
import threading
from pathlib import Path

import pytest

from braid import git_ops
from braid.agent import CodeAgent
from braid.config import Config
from braid.engines.base import EngineBase, EngineResult
from braid.events import EventBus, EventType
from braid.executor import ABORTED_MESSAGE, BatchExecutor, BatchTracker, SlotState
from braid.registry import ExecutionRegistry
from braid.tasks.model import Task, TaskStatus
from braid.tasks.store import InMemoryBoard
from conftest import RecordingTransport, git


_COMMIT = (
    "import subprocess, sys, time\n"
    "from pathlib import Path\n"
    "tid, delay = sys.argv[1], float(sys.argv[2])\n"
    "print(f'working on {tid}', flush=True)\n"
    "time.sleep(delay)\n"
    "Path(f'{tid}.txt').write_text(tid + '\\n')\n"
    "subprocess.run(['git', 'add', '.'], check=True)\n"
    "subprocess.run(['git', 'commit', '-q', '-m', f'implement {tid}'], check=True)\n"
)

_SCRIPTS = {
    "fail": "import sys; sys.stderr.write('boom: compiler exploded\\n'); sys.exit(3)",
    "nocommit": "print('nothing to do')",
    "dirty": "from pathlib import Path; Path('left-over.txt').write_text('x')",
    "hang": "import time; time.sleep(30)",
}


class ScriptedEngine(EngineBase):
    """Engine whose per-task behavior is chosen by the test."""

    name = "scripted"

    def __init__(self, behaviors: dict[str, str]) -> None:
        self.behaviors = behaviors
        self.launched: list[str] = []
        self.peak_live = 0
        self._procs: list[subprocess.Popen[str]] = []

    def build_cmd(self, prompt: str, *, max_turns: int | None = None) -> list[str]:
        match = re.search(r"^TASK ID:\s*(\S+)", prompt, flags=re.MULTILINE)
        if not match:
            raise AssertionError("TASK ID missing from prompt")
        task_id = match.group(1)
        behavior = self.behaviors.get(task_id, "commit")
        self.launched.append(task_id)
        if behavior in ("commit", "sleep"):
            delay = "0.5" if behavior == "sleep" else "0"
            return [sys.executable, "-c", _COMMIT, task_id, delay]
        return [sys.executable, "-c", _SCRIPTS[behavior]]

    def parse_output(self, raw: str) -> EngineResult:
        return EngineResult(text=raw)

    def run_async(self, prompt, *, cwd=None, stdout_file=None, stderr_file=None):
        live = sum(1 for p in self._procs if p.poll() is None)
        self.peak_live = max(self.peak_live, live + 1)
        proc = super().run_async(prompt, cwd=cwd, stdout_file=stdout_file, stderr_file=stderr_file)
        self._procs.append(proc)
        return proc


# ── Helpers ─────────────────────────────────────────────────────────


def _setup(
    remote_repo: Path,
    tmp_path: Path,
    behaviors: dict[str, str],
    *,
    max_parallel: int = 2,
    stalled_timeout: int = 600,
):
    tasks = [Task(id=tid, title=f"Implement {tid}", project_id="p1") for tid in behaviors]
    board = InMemoryBoard(tasks=tasks)
    engine = ScriptedEngine(behaviors)
    cfg = Config(
        workspace_dir=str(remote_repo),
        worktree_base=str(tmp_path / "worktrees"),
        max_parallel=max_parallel,
        poll_interval=0.05,
        stalled_timeout=stalled_timeout,
    )
    registry = ExecutionRegistry()
    ctx = registry.start("p1")
    bus = EventBus(registry)
    transport = RecordingTransport()
    bus.attach("p1", transport)
    executor = BatchExecutor(cfg, CodeAgent(engine), board, bus=bus, context=ctx)
    return executor, engine, board, tasks, transport


def _by_id(outcomes):
    return {o.task_id: o for o in outcomes}


# ═══════════════════════════════════════════════════════════════════
#  Tracker
# ═══════════════════════════════════════════════════════════════════


class TestBatchTracker:
    def test_transitions_and_counts(self):
        tracker = BatchTracker(["a", "b", "c"])
        assert tracker.count_pending() == 3

        tracker.start_task("a")
        tracker.start_task("b")
        assert tracker.count_running() == 2
        assert tracker.peak_running == 2

        tracker.complete_task("a")
        tracker.fail_task("b")
        tracker.fail_task("c")
        assert tracker.state("a") == SlotState.DONE
        assert tracker.state("b") == SlotState.FAILED
        assert tracker.count_done() == 1
        assert tracker.count_failed() == 2
        assert tracker.count_running() == 0
        assert tracker.peak_running == 2


# ═══════════════════════════════════════════════════════════════════
#  Bounded concurrency
# ═══════════════════════════════════════════════════════════════════


class TestConcurrency:
    def test_five_tasks_never_exceed_two_running(self, remote_repo: Path, tmp_path: Path):
        behaviors = {f"T{i}": "sleep" for i in range(1, 6)}
        executor, engine, board, _, transport = _setup(remote_repo, tmp_path, behaviors, max_parallel=2)

        outcomes = list(executor.execute_batch([board.get_task(tid) for tid in behaviors]))

        assert sorted(o.task_id for o in outcomes) == sorted(behaviors)
        assert all(o.success for o in outcomes)
        assert executor.peak_running == 2
        assert engine.peak_live <= 2
        assert len(transport.of_type(EventType.TASK_START)) == 5
        assert len(transport.of_type(EventType.TASK_COMPLETE)) == 5

    def test_ceiling_of_one_runs_serially(self, remote_repo: Path, tmp_path: Path):
        behaviors = {"A": "commit", "B": "commit", "C": "commit"}
        executor, engine, board, tasks, _ = _setup(remote_repo, tmp_path, behaviors, max_parallel=1)

        list(executor.execute_batch(tasks))

        assert executor.peak_running == 1
        assert engine.peak_live == 1
        assert engine.launched == ["A", "B", "C"]


# ═══════════════════════════════════════════════════════════════════
#  Outcomes
# ═══════════════════════════════════════════════════════════════════


class TestOutcomes:
    def test_success_pushes_branch_and_marks_done(self, remote_repo: Path, tmp_path: Path):
        executor, _, board, tasks, transport = _setup(remote_repo, tmp_path, {"A1": "commit"})

        [outcome] = list(executor.execute_batch(tasks))

        assert outcome.success
        branch = git_ops.feature_branch_name("A1", "Implement A1")
        assert outcome.branch_name == branch
        assert outcome.commit_ref
        assert git_ops.remote_branch_exists("origin", branch, cwd=remote_repo)
        remote_head = git(remote_repo, "ls-remote", "origin", f"refs/heads/{branch}").split()[0]
        assert remote_head == outcome.commit_ref

        task = board.get_task("A1")
        assert task.status == TaskStatus.DONE
        assert task.branch_name == branch

        # Worktrees are removed once the task is finished.
        assert not any(p.name != "logs" for p in (tmp_path / "worktrees").iterdir())
        # The integration checkout is untouched.
        assert git_ops.current_branch(cwd=remote_repo) == "main"

        [complete] = transport.of_type(EventType.TASK_COMPLETE)
        assert complete.data["commit_ref"] == outcome.commit_ref

    def test_output_is_streamed_as_events(self, remote_repo: Path, tmp_path: Path):
        executor, _, _, tasks, transport = _setup(remote_repo, tmp_path, {"A1": "commit"})
        list(executor.execute_batch(tasks))

        streamed = "".join(e.data["output"] for e in transport.of_type(EventType.TASK_OUTPUT))
        assert "working on A1" in streamed

    def test_failure_does_not_stop_siblings(self, remote_repo: Path, tmp_path: Path):
        behaviors = {"OK1": "commit", "BAD": "fail", "OK2": "commit"}
        executor, _, board, tasks, transport = _setup(remote_repo, tmp_path, behaviors)

        outcomes = _by_id(executor.execute_batch(tasks))

        assert outcomes["OK1"].success and outcomes["OK2"].success
        bad = outcomes["BAD"]
        assert not bad.success
        assert "boom" in bad.error
        assert board.get_task("BAD").status == TaskStatus.FAILED
        assert board.get_task("BAD").error == bad.error

        [err] = transport.of_type(EventType.TASK_ERROR)
        assert err.data["task_id"] == "BAD"
        assert err.data["aborted"] is False

    def test_no_commits_is_a_failure(self, remote_repo: Path, tmp_path: Path):
        executor, _, board, tasks, _ = _setup(remote_repo, tmp_path, {"N": "nocommit"})

        [outcome] = list(executor.execute_batch(tasks))

        assert not outcome.success
        assert outcome.error == "Agent exited without creating any commits"
        branch = git_ops.feature_branch_name("N", "Implement N")
        assert not git_ops.remote_branch_exists("origin", branch, cwd=remote_repo)

    def test_uncommitted_leftovers_are_auto_committed(self, remote_repo: Path, tmp_path: Path):
        executor, _, _, tasks, _ = _setup(remote_repo, tmp_path, {"D": "dirty"})

        [outcome] = list(executor.execute_batch(tasks))

        assert outcome.success
        message = git(remote_repo, "log", "-1", "--format=%s", outcome.commit_ref)
        assert message == "Auto-commit remaining changes"

    def test_stalled_agent_is_killed(self, remote_repo: Path, tmp_path: Path):
        executor, _, board, tasks, _ = _setup(remote_repo, tmp_path, {"S": "hang"}, stalled_timeout=1)

        [outcome] = list(executor.execute_batch(tasks))

        assert not outcome.success
        assert "stalled" in outcome.error
        assert board.get_task("S").status == TaskStatus.FAILED

    def test_empty_batch(self, remote_repo: Path, tmp_path: Path):
        executor, _, _, _, _ = _setup(remote_repo, tmp_path, {})
        assert list(executor.execute_batch([])) == []


# ═══════════════════════════════════════════════════════════════════
#  Abort
# ═══════════════════════════════════════════════════════════════════


class TestAbort:
    def test_abort_kills_running_and_skips_pending(self, remote_repo: Path, tmp_path: Path):
        behaviors = {"H": "hang", "P1": "commit", "P2": "commit"}
        executor, engine, board, tasks, _ = _setup(remote_repo, tmp_path, behaviors, max_parallel=1)

        timer = threading.Timer(0.5, executor.context.request_abort)
        timer.start()
        try:
            outcomes = _by_id(executor.execute_batch(tasks))
        finally:
            timer.cancel()

        assert engine.launched == ["H"]
        assert not outcomes["H"].success
        assert board.get_task("H").status == TaskStatus.FAILED

        for tid in ("P1", "P2"):
            assert outcomes[tid].aborted
            assert outcomes[tid].error == ABORTED_MESSAGE
            # Never launched, so still available for the next run.
            assert board.get_task(tid).status == TaskStatus.TODO

        assert executor.context.live_processes() == {}

    @pytest.mark.parametrize("max_parallel", [1, 3])
    def test_abort_before_start_launches_nothing(self, remote_repo: Path, tmp_path: Path, max_parallel: int):
        executor, engine, board, tasks, _ = _setup(
            remote_repo, tmp_path, {"A": "commit", "B": "commit"}, max_parallel=max_parallel
        )
        executor.context.request_abort()

        outcomes = list(executor.execute_batch(tasks))

        assert engine.launched == []
        assert all(o.aborted for o in outcomes)
        assert {t.status for t in (board.get_task("A"), board.get_task("B"))} == {TaskStatus.TODO}
