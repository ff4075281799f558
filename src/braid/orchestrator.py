"""Top-level run loop: plan, then per batch execute, integrate and review."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from braid import git_ops, log
from braid.agent import CodeAgent
from braid.config import Config
from braid.errors import BraidError, CycleDetected
from braid.events import EventBus, EventType, Subscription
from braid.executor import ABORTED_MESSAGE, BatchExecutor
from braid.integrator import BranchIntegrator
from braid.planner import plan_execution, plannable_tasks
from braid.quality import QualityGateLoop
from braid.registry import ExecutionContext, ExecutionRegistry
from braid.store import StateStore
from braid.tasks.model import (
    ExecutionPlan,
    GroupStatus,
    MergeResult,
    Project,
    ReviewResult,
    Task,
    TaskOutcome,
    TaskStatus,
)
from braid.tasks.store import ProjectStore, TaskStore


@dataclass
class RunSummary:
    project_id: str
    total_batches: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    review_passed: list[str] = field(default_factory=list)
    review_failed: list[str] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)
    aborted: bool = False
    error: str = ""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def ok(self) -> bool:
        return not (self.aborted or self.error or self.failed or self.conflicts)


class _Phases:
    """The three per-batch phases bound to one project and execution context."""

    def __init__(self, orch: Orchestrator, project: Project, ctx: ExecutionContext) -> None:
        cfg, agent, store = orch.cfg, orch.agent, orch.task_store
        self.executor = BatchExecutor(cfg, agent, store, project=project, bus=orch.bus, context=ctx)
        self.integrator = BranchIntegrator(cfg, agent, store, project=project)
        self.gate = QualityGateLoop(cfg, agent, store, project=project, bus=orch.bus, context=ctx)


class Orchestrator:
    def __init__(
        self,
        cfg: Config,
        task_store: TaskStore,
        project_store: ProjectStore,
        agent: CodeAgent,
        *,
        registry: ExecutionRegistry | None = None,
        state_store: StateStore | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.cfg = cfg
        self.task_store = task_store
        self.project_store = project_store
        self.agent = agent
        self.registry = registry or ExecutionRegistry()
        self.state_store = state_store or StateStore(cfg.groups_dir)
        self.bus = bus or EventBus(self.registry, self.state_store)

    # ── public operations ────────────────────────────────────────

    def plan_execution(self, project_id: str) -> ExecutionPlan:
        return plan_execution(plannable_tasks(self.task_store.list_tasks(project_id)))

    def subscribe(self, project_id: str) -> Subscription:
        return self.bus.subscribe(project_id)

    def abort(self, project_id: str) -> bool:
        """Stop the live run of *project_id*. Returns ``False`` if none is running."""
        aborted = self.registry.abort(project_id)
        if aborted:
            log.warn(f"Abort requested for {project_id}")
        return aborted

    def execute_batch(self, project_id: str, task_ids: list[str]) -> list[TaskOutcome]:
        """Run one batch outside a full run (no integration, no review)."""
        ctx = self.registry.start(project_id)
        try:
            phases = _Phases(self, self.project_store.get_project(project_id), ctx)
            return list(phases.executor.execute_batch(self._load_tasks(task_ids)))
        finally:
            self.registry.finish(project_id)

    def integrate_and_review(
        self, task: Task, *, retry_conflict: bool = False
    ) -> tuple[MergeResult, ReviewResult | None]:
        """Merge one finished task and review it, outside a full run.

        Tasks whose last merge conflicted are only retried with *retry_conflict*.
        """
        project = self.project_store.get_project(task.project_id)
        ctx = self.registry.get(task.project_id) or ExecutionContext(task.project_id)
        phases = _Phases(self, project, ctx)
        return self._integrate_and_review(phases, task, retry_conflict=retry_conflict)

    def ensure_workspace(self, project: Project) -> Path:
        """Clone the project into the workspace if needed; sync the integration branch."""
        workspace = self.cfg.workspace
        if not (workspace / ".git").exists():
            if not project.repo_url:
                raise BraidError(f"{workspace} is not a git repository and project {project.id} has no repo_url")
            log.info(f"Cloning {project.repo_url} into {workspace}…")
            cloned = git_ops.clone(project.repo_url, workspace)
            if cloned.returncode != 0:
                raise BraidError(f"Clone failed: {git_ops.output_of(cloned)}")

        git_ops.ensure_clean_git_state(cwd=workspace)
        if not git_ops.checkout(self.cfg.integration_branch, cwd=workspace):
            raise BraidError(f"Integration branch {self.cfg.integration_branch} not found in {workspace}")
        pulled = git_ops.pull(self.cfg.remote, self.cfg.integration_branch, cwd=workspace)
        if pulled.returncode != 0:
            log.warn(f"Could not pull {self.cfg.integration_branch}: {git_ops.output_of(pulled)}")
        return workspace

    def run(self, project_id: str) -> RunSummary:
        """Plan and run every executable task of *project_id*.

        Raises :class:`CycleDetected` (after publishing ``execution_error``)
        when the dependency graph has a cycle, and
        :class:`~braid.errors.ExecutionAlreadyRunning` if a run is live.
        """
        ctx = self.registry.start(project_id)
        try:
            summary = self._run(project_id, ctx)
        finally:
            self.registry.finish(project_id)
            self.bus.close_project(project_id)
        summary.input_tokens = self.agent.total_input_tokens
        summary.output_tokens = self.agent.total_output_tokens
        return summary

    # ── run loop ─────────────────────────────────────────────────

    def _emit(self, project_id: str, event_type: EventType, **data: object) -> None:
        self.bus.emit(project_id, event_type, **data)

    def _load_tasks(self, task_ids: list[str]) -> list[Task]:
        tasks: list[Task] = []
        for tid in task_ids:
            task = self.task_store.get_task(tid)
            if task is None:
                raise BraidError(f"Unknown task: {tid}")
            tasks.append(task)
        return tasks

    def _run(self, project_id: str, ctx: ExecutionContext) -> RunSummary:
        summary = RunSummary(project_id=project_id)
        self.state_store.reconcile_interrupted(project_id)

        plan = self.plan_execution(project_id)
        if plan.has_cycles:
            error = CycleDetected(plan.cyclic_tasks)
            self._emit(project_id, EventType.EXECUTION_ERROR, error=str(error), cyclic_tasks=plan.cyclic_tasks)
            raise error

        project = self.project_store.get_project(project_id)
        try:
            self.ensure_workspace(project)
        except BraidError as e:
            summary.error = str(e)
            self._emit(project_id, EventType.EXECUTION_ERROR, error=str(e))
            return summary

        titles = {t.id: t.title for t in self.task_store.list_tasks(project_id)}
        summary.total_batches = len(plan.batches)
        self._emit(
            project_id,
            EventType.PLAN_READY,
            batches=plan.batches,
            total_batches=len(plan.batches),
            total_tasks=plan.total_tasks,
            tasks=[{"id": tid, "title": titles.get(tid, "")} for batch in plan.batches for tid in batch],
        )

        phases = _Phases(self, project, ctx)
        for number, batch_ids in enumerate(plan.batches, 1):
            if ctx.aborted:
                self._emit(project_id, EventType.ABORTED, message=ABORTED_MESSAGE)
                summary.aborted = True
                return summary

            group = self.state_store.create_group(project_id, batch_ids, number, len(plan.batches))
            summary.groups.append(group.id)
            self._emit(
                project_id,
                EventType.BATCH_START,
                batch_number=number,
                total_batches=len(plan.batches),
                task_ids=batch_ids,
                group_id=group.id,
            )
            self.state_store.update_status(group.id, GroupStatus.RUNNING)

            try:
                failed = self._run_batch(phases, number, batch_ids, summary, ctx)
            except Exception as e:
                log.error(f"Batch {number} failed unexpectedly: {e}")
                self._settle_unfinished(batch_ids, str(e))
                self.state_store.update_status(group.id, GroupStatus.FAILED, str(e))
                self._emit(project_id, EventType.EXECUTION_ERROR, error=str(e), group_id=group.id)
                summary.error = str(e)
                return summary

            if ctx.aborted:
                self.state_store.update_status(group.id, GroupStatus.ABORTED, ABORTED_MESSAGE)
                self._emit(project_id, EventType.ABORTED, message=ABORTED_MESSAGE, group_id=group.id)
                summary.aborted = True
                return summary

            if failed:
                self.state_store.update_status(group.id, GroupStatus.FAILED, f"{failed} task(s) failed")
            else:
                self.state_store.update_status(group.id, GroupStatus.COMPLETED)

        self._emit(
            project_id,
            EventType.EXECUTION_COMPLETE,
            total_batches=len(plan.batches),
            total_tasks=plan.total_tasks,
            completed=len(summary.completed),
            failed=len(summary.failed),
        )
        return summary

    def _settle_unfinished(self, batch_ids: list[str], error: str) -> None:
        """Fail every task a crashed batch left in ``wip``."""
        for tid in batch_ids:
            task = self.task_store.get_task(tid)
            if task is not None and task.status == TaskStatus.WIP:
                self.task_store.update_task(tid, status=TaskStatus.FAILED, error=error)
                log.warn(f"Task {tid} left unfinished: {error}")

    def _run_batch(
        self,
        phases: _Phases,
        number: int,
        batch_ids: list[str],
        summary: RunSummary,
        ctx: ExecutionContext,
    ) -> int:
        """Execute, integrate and review one batch. Returns the failed-task count."""
        project_id = ctx.project_id
        succeeded: list[str] = []
        failures: list[dict[str, str]] = []
        for outcome in phases.executor.execute_batch(self._load_tasks(batch_ids)):
            if outcome.success:
                succeeded.append(outcome.task_id)
            else:
                failures.append({"task_id": outcome.task_id, "error": outcome.error})

        summary.completed.extend(succeeded)
        summary.failed.extend(f["task_id"] for f in failures)
        self._emit(
            project_id,
            EventType.BATCH_COMPLETE,
            batch_number=number,
            succeeded=len(succeeded),
            failed=len(failures),
            completed_tasks=succeeded,
            failed_tasks=failures,
        )
        if ctx.aborted:
            return len(failures)

        merged: list[Task] = []
        for task in self._load_tasks([tid for tid in batch_ids if tid in succeeded]):
            if ctx.aborted:
                break
            result = self._integrate(phases, task)
            if result.success:
                summary.merged.append(task.id)
                merged.append(task)
            else:
                summary.conflicts.append(task.id)

        if merged and not self.cfg.skip_review and not ctx.aborted:
            reviews = phases.gate.review_batch(merged, batch_number=number)
            for tid, review in reviews.items():
                (summary.review_passed if review.passed else summary.review_failed).append(tid)

        return len(failures)

    def _integrate(self, phases: _Phases, task: Task, *, retry_conflict: bool = False) -> MergeResult:
        project_id = task.project_id
        self._emit(project_id, EventType.MERGE_START, task_id=task.id, title=task.title,
                   branch_name=task.branch_name or "")
        result = phases.integrator.integrate(task, retry_conflict=retry_conflict)
        if result.success:
            self._emit(
                project_id,
                EventType.MERGE_COMPLETE,
                task_id=task.id,
                title=task.title,
                commit_hash=result.commit_hash,
                commit_url=result.commit_url,
                resolved_by_agent=result.resolved_by_agent,
                skipped=result.skipped,
            )
        else:
            self._emit(
                project_id,
                EventType.MERGE_CONFLICT,
                task_id=task.id,
                title=task.title,
                conflict_files=result.conflict_files,
                error=result.error,
            )
        return result

    def _integrate_and_review(
        self, phases: _Phases, task: Task, *, retry_conflict: bool = False
    ) -> tuple[MergeResult, ReviewResult | None]:
        result = self._integrate(phases, task, retry_conflict=retry_conflict)
        if not result.success or self.cfg.skip_review:
            return result, None
        merged = self.task_store.get_task(task.id) or task
        return result, phases.gate.review_task(merged)
