"""Post-merge quality gate: review, fix, re-review, bounded by a retry budget.

Each task walks an explicit state machine::

    pending -> reviewing(1) -> passed
                            -> fixing(1) -> reviewing(2) -> ...
                                                         -> failed_exhausted

There is exactly one fix between two consecutive reviews, and none after
the last allowed review.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from braid import git_ops, log
from braid.agent import CodeAgent
from braid.config import Config
from braid.errors import AgentError, ReviewExhausted
from braid.events import EventBus, EventType
from braid.registry import ExecutionContext
from braid.tasks.model import FixResult, Project, ReviewResult, Task, TaskStatus
from braid.tasks.store import TaskStore


class ReviewPhase(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    FIXING = "fixing"
    PASSED = "passed"
    FAILED_EXHAUSTED = "failed_exhausted"


_TRANSITIONS: dict[ReviewPhase, frozenset[ReviewPhase]] = {
    ReviewPhase.PENDING: frozenset({ReviewPhase.REVIEWING}),
    ReviewPhase.REVIEWING: frozenset({ReviewPhase.PASSED, ReviewPhase.FIXING, ReviewPhase.FAILED_EXHAUSTED}),
    ReviewPhase.FIXING: frozenset({ReviewPhase.REVIEWING}),
    ReviewPhase.PASSED: frozenset(),
    ReviewPhase.FAILED_EXHAUSTED: frozenset(),
}


@dataclass
class ReviewState:
    task_id: str
    phase: ReviewPhase = ReviewPhase.PENDING
    attempt: int = 0
    fixes: int = 0
    last: ReviewResult | None = None

    def advance(self, phase: ReviewPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise ValueError(f"Illegal review transition {self.phase.value} -> {phase.value} for {self.task_id}")
        if phase == ReviewPhase.REVIEWING:
            self.attempt += 1
        elif phase == ReviewPhase.FIXING:
            self.fixes += 1
        log.debug(f"Review {self.task_id}: {self.phase.value} -> {phase.value}")
        self.phase = phase

    @property
    def done(self) -> bool:
        return self.phase in (ReviewPhase.PASSED, ReviewPhase.FAILED_EXHAUSTED)


class QualityGateLoop:
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
        self.states: dict[str, ReviewState] = {}

    @property
    def requirements(self) -> str:
        return self.project.requirements if self.project else ""

    def _emit(self, event_type: EventType, **data: object) -> None:
        if self.bus is not None:
            self.bus.emit(self.context.project_id, event_type, **data)

    # ── batch ────────────────────────────────────────────────────

    def review_batch(self, tasks: list[Task], *, batch_number: int = 0) -> dict[str, ReviewResult]:
        """Review merged *tasks* one at a time. Stops early on abort."""
        results: dict[str, ReviewResult] = {}
        self._emit(EventType.REVIEW_START, batch_number=batch_number, task_ids=[t.id for t in tasks])
        for task in tasks:
            if self.context.aborted:
                break
            results[task.id] = self.review_task(task)
        passed = sum(1 for r in results.values() if r.passed)
        self._emit(
            EventType.REVIEW_BATCH_COMPLETE,
            batch_number=batch_number,
            passed=passed,
            failed=len(results) - passed,
        )
        return results

    # ── single task ──────────────────────────────────────────────

    def review_task(self, task: Task) -> ReviewResult:
        """Drive one merged task to ``review_passed`` or ``review_failed``."""
        state = self.states[task.id] = ReviewState(task.id)
        max_attempts = self.cfg.max_review_retries

        while True:
            state.advance(ReviewPhase.REVIEWING)
            self._emit(EventType.REVIEW_TASK_START, task_id=task.id, title=task.title, attempt=state.attempt)
            result = self._review(task)
            result.attempts = state.attempt
            state.last = result

            if result.passed:
                state.advance(ReviewPhase.PASSED)
                self.task_store.update_task(
                    task.id,
                    status=TaskStatus.REVIEW_PASSED,
                    quality_score=result.quality_score,
                    review=result.to_dict(),
                    error=None,
                )
                self._emit(
                    EventType.REVIEW_TASK_COMPLETE,
                    task_id=task.id,
                    title=task.title,
                    quality_score=result.quality_score,
                    attempts=state.attempt,
                )
                return result

            if state.attempt >= max_attempts or self.context.aborted:
                state.advance(ReviewPhase.FAILED_EXHAUSTED)
                exhausted = ReviewExhausted(task.id, result.quality_score, state.attempt)
                log.warn(str(exhausted))
                self.task_store.update_task(
                    task.id,
                    status=TaskStatus.REVIEW_FAILED,
                    quality_score=result.quality_score,
                    review=result.to_dict(),
                    error=str(exhausted),
                )
                self._emit(
                    EventType.REVIEW_TASK_FAILED,
                    task_id=task.id,
                    title=task.title,
                    quality_score=result.quality_score,
                    attempts=state.attempt,
                    issues=result.issues,
                )
                return result

            state.advance(ReviewPhase.FIXING)
            self._emit(
                EventType.REVIEW_FIX_START,
                task_id=task.id,
                title=task.title,
                attempt=state.attempt,
                issues=result.issues,
            )
            fix = self._fix(task, result)
            commit_url = git_ops.commit_web_url(self._repo_url(), fix.commit_ref)
            if fix.success and commit_url:
                self.task_store.update_task(task.id, commit_url=commit_url)
            self._emit(
                EventType.REVIEW_FIX_COMPLETE,
                task_id=task.id,
                attempt=state.attempt,
                success=fix.success,
                commit_ref=fix.commit_ref,
                commit_url=commit_url,
                error=fix.error,
            )

    def _review(self, task: Task) -> ReviewResult:
        threshold = self.cfg.quality_threshold
        try:
            result = self.agent.review(task, self.requirements, self.cfg.workspace, threshold=threshold)
        except AgentError as e:
            log.warn(f"Review of {task.id} failed: {e}")
            result = ReviewResult(quality_score=0.0, issues=[str(e)], summary="Review could not be completed")
        result.passed = result.quality_score >= threshold
        return result

    def _fix(self, task: Task, review: ReviewResult) -> FixResult:
        base = self.cfg.integration_branch
        repo = self.cfg.workspace
        git_ops.ensure_clean_git_state(cwd=repo)
        git_ops.checkout(base, cwd=repo)
        git_ops.pull(self.cfg.remote, base, cwd=repo)

        fix = self.agent.fix(task, review.issues, review.suggestions, self.requirements, repo)

        remote = self.cfg.remote
        pushed = git_ops.push(remote, base, cwd=repo)
        if pushed.returncode != 0:
            log.warn(f"Could not push fixes for {task.id}: {git_ops.output_of(pushed)}")
            # Local base must not carry commits the remote refused.
            git_ops.fetch(remote, base, cwd=repo)
            git_ops.reset_hard(f"{remote}/{base}", cwd=repo)
            if fix.success:
                discarded = fix.commit_ref or "local fix commits"
                fix = FixResult(
                    success=False, commit_ref=fix.commit_ref, error=f"Push of fixes rejected; {discarded} discarded"
                )
        return fix

    def _repo_url(self) -> str:
        if self.project and self.project.repo_url:
            return self.project.repo_url
        return git_ops.remote_url(self.cfg.remote, cwd=self.cfg.workspace)
