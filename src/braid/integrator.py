"""Branch integration: rebase first, agent-assisted conflict resolution as fallback."""

from __future__ import annotations

import subprocess
from pathlib import Path

from braid import git_ops, log
from braid.agent import CodeAgent
from braid.config import Config
from braid.errors import (
    AgentError,
    MergeConflictUnresolved,
    looks_like_merge_conflict,
    looks_like_push_rejected,
)
from braid.io_utils import read_text, write_text
from braid.responses import has_conflict_markers
from braid.tasks.model import MergeResult, MergeStatus, Project, Task, TaskStatus
from braid.tasks.store import TaskStore

AGENT_RESOLVED_SUFFIX = " (conflicts resolved by agent)"


class BranchIntegrator:
    """Folds finished feature branches into the integration branch, one at a time.

    Works on the workspace checkout of the integration branch. Any failure
    leaves that checkout reset to the remote state and the feature branch
    in place for a later attempt.
    """

    def __init__(
        self,
        cfg: Config,
        agent: CodeAgent,
        task_store: TaskStore,
        *,
        project: Project | None = None,
    ) -> None:
        self.cfg = cfg
        self.agent = agent
        self.task_store = task_store
        self.project = project

    @property
    def repo(self) -> Path:
        return self.cfg.workspace

    def integrate(self, task: Task, *, retry_conflict: bool = False) -> MergeResult:
        """Merge *task*'s branch. Never raises for merge problems; see ``MergeResult.error``.

        A task whose last attempt ended in ``conflict`` is left alone and a
        skipped, unsuccessful result is returned. Pass ``retry_conflict=True``
        to move it back to ``pending`` and try again, e.g. after the branch
        was fixed by hand.
        """
        task = self.task_store.get_task(task.id) or task
        branch = task.branch_name or ""

        if task.merge_status == MergeStatus.MERGED:
            log.debug(f"Task {task.id} already merged; skipping")
            return MergeResult(
                success=True,
                task_id=task.id,
                branch_name=branch,
                commit_url=task.commit_url,
                skipped=True,
            )
        if not branch:
            return MergeResult(success=False, task_id=task.id, branch_name="", error="Task has no branch to merge")
        if task.merge_status == MergeStatus.CONFLICT and not retry_conflict:
            return MergeResult(
                success=False,
                task_id=task.id,
                branch_name=branch,
                skipped=True,
                error="Previous integration conflicted; retry it explicitly",
            )
        if task.merge_status == MergeStatus.CONFLICT:
            log.info(f"Retrying integration of {branch}")

        self.task_store.update_task(task.id, merge_status=MergeStatus.PENDING)
        try:
            result = self._integrate(task, branch)
        except MergeConflictUnresolved as e:
            log.error(f"Could not integrate {branch}: {e}")
            self._restore_integration_branch()
            self.task_store.update_task(task.id, merge_status=MergeStatus.CONFLICT, error=str(e))
            return MergeResult(
                success=False,
                task_id=task.id,
                branch_name=branch,
                conflict_files=e.conflict_files,
                error=str(e),
            )

        git_ops.delete_branch(branch, force=True, cwd=self.repo)
        if not git_ops.push_delete(self.cfg.remote, branch, cwd=self.repo):
            log.debug(f"Remote branch {branch} was not deleted")

        self.task_store.update_task(
            task.id,
            merge_status=MergeStatus.MERGED,
            status=TaskStatus.MERGED,
            commit_url=result.commit_url,
            error=None,
        )
        return result

    # ── steps ────────────────────────────────────────────────────

    def _sync_integration_branch(self) -> None:
        base = self.cfg.integration_branch
        git_ops.ensure_clean_git_state(cwd=self.repo)
        if git_ops.current_branch(cwd=self.repo) != base and not git_ops.checkout(base, cwd=self.repo):
            raise MergeConflictUnresolved(f"Could not check out {base}")
        pulled = git_ops.pull(self.cfg.remote, base, cwd=self.repo)
        if pulled.returncode != 0:
            raise MergeConflictUnresolved(f"Failed to pull {base}: {git_ops.output_of(pulled)}")

    def _integrate(self, task: Task, branch: str) -> MergeResult:
        base = self.cfg.integration_branch
        remote = self.cfg.remote
        self._sync_integration_branch()

        if not git_ops.remote_branch_exists(remote, branch, cwd=self.repo):
            raise MergeConflictUnresolved(f"Branch {branch} not found on {remote}")
        fetched = git_ops.fetch(remote, branch, cwd=self.repo)
        if fetched.returncode != 0:
            raise MergeConflictUnresolved(f"Failed to fetch {branch}: {git_ops.output_of(fetched)}")
        if not git_ops.checkout_from(branch, f"{remote}/{branch}", cwd=self.repo):
            raise MergeConflictUnresolved(f"Could not check out {branch}")

        resolved: list[str] = []
        rebased = git_ops.rebase(base, cwd=self.repo)
        if rebased.returncode == 0:
            log.debug(f"Rebased {branch} onto {base}")
            pushed = git_ops.push(remote, branch, force=True, cwd=self.repo)
            if pushed.returncode != 0:
                raise MergeConflictUnresolved(self._push_error(branch, pushed))
            git_ops.checkout(base, cwd=self.repo)
            merged = git_ops.merge_no_ff(branch, f"Merge {branch}: {task.title}", cwd=self.repo)
            if merged.returncode != 0:
                out = git_ops.output_of(merged)
                if not git_ops.merge_in_progress(cwd=self.repo) and not looks_like_merge_conflict(out):
                    raise MergeConflictUnresolved(f"Merge of {branch} failed: {out}")
                # The integration branch moved under the rebase.
                resolved = self._resolve_conflicts(task)
                self._commit_merge(branch, task, resolved)
        else:
            log.warn(f"Rebase of {branch} hit conflicts; falling back to merge")
            git_ops.rebase_abort(cwd=self.repo)
            git_ops.checkout(base, cwd=self.repo)
            merged = git_ops.merge_no_commit(branch, cwd=self.repo)
            if merged.returncode != 0 and not git_ops.merge_in_progress(cwd=self.repo):
                raise MergeConflictUnresolved(f"Merge of {branch} failed: {git_ops.output_of(merged)}")
            resolved = self._resolve_conflicts(task)
            self._commit_merge(branch, task, resolved)

        pushed = git_ops.push(remote, base, cwd=self.repo)
        if pushed.returncode != 0:
            raise MergeConflictUnresolved(self._push_error(base, pushed))

        commit_hash = git_ops.rev_parse(cwd=self.repo)
        return MergeResult(
            success=True,
            task_id=task.id,
            branch_name=branch,
            commit_hash=commit_hash,
            commit_url=git_ops.commit_web_url(self._repo_url(), commit_hash),
            conflict_files=resolved,
            resolved_by_agent=bool(resolved),
        )

    def _resolve_conflicts(self, task: Task) -> list[str]:
        """Have the agent rewrite each conflicted file; stage the results."""
        files = git_ops.conflicted_files(cwd=self.repo)
        if files:
            log.info(f"Resolving {len(files)} conflicted file(s) with the agent…")

        for rel in files:
            path = self.repo / rel
            if not path.is_file():
                raise MergeConflictUnresolved(
                    f"Cannot resolve {rel}: deleted on one side", conflict_files=files
                )
            content = read_text(path, errors="replace")
            try:
                resolved = self.agent.resolve_conflict(rel, content, task, self.repo)
            except AgentError as e:
                raise MergeConflictUnresolved(str(e), conflict_files=files) from e
            if has_conflict_markers(resolved):
                raise MergeConflictUnresolved(
                    f"Conflict markers remain in {rel} after resolution", conflict_files=files
                )
            write_text(path, resolved)
            git_ops.stage(rel, cwd=self.repo)

        remaining = git_ops.conflicted_files(cwd=self.repo)
        if remaining:
            raise MergeConflictUnresolved(
                f"Unresolved conflicts remain: {', '.join(remaining)}", conflict_files=remaining
            )
        if files:
            log.success(f"Agent resolved conflicts in {', '.join(files)}")
        return files

    def _commit_merge(self, branch: str, task: Task, resolved: list[str]) -> None:
        if not git_ops.merge_in_progress(cwd=self.repo):
            return
        message = f"Merge {branch}: {task.title}"
        if resolved:
            message += AGENT_RESOLVED_SUFFIX + "\n\nResolved files:\n" + "\n".join(f"- {f}" for f in resolved)
        if not git_ops.commit(message, cwd=self.repo):
            raise MergeConflictUnresolved(f"Could not commit merge of {branch}", conflict_files=resolved)

    def _push_error(self, branch: str, r: subprocess.CompletedProcess[str]) -> str:
        out = git_ops.output_of(r)
        if looks_like_push_rejected(out):
            return f"Push of {branch} rejected: {out}"
        return f"Failed to push {branch}: {out}"

    def _repo_url(self) -> str:
        if self.project and self.project.repo_url:
            return self.project.repo_url
        return git_ops.remote_url(self.cfg.remote, cwd=self.repo)

    def _restore_integration_branch(self) -> None:
        """Throw away local integration state and match the remote."""
        base = self.cfg.integration_branch
        git_ops.ensure_clean_git_state(cwd=self.repo)
        git_ops.checkout(base, cwd=self.repo)
        git_ops.fetch(self.cfg.remote, base, cwd=self.repo)
        git_ops.reset_hard(f"{self.cfg.remote}/{base}", cwd=self.repo)
