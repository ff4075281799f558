"""Code-agent facade over an engine adapter.

Every phase talks to the agent through :class:`CodeAgent`; the engine
adapter only knows how to build a command line and parse its output.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from braid import git_ops, log
from braid.engines.base import EngineBase, EngineResult
from braid.errors import AgentError
from braid.prompts import (
    build_conflict_prompt,
    build_fix_prompt,
    build_review_prompt,
)
from braid.responses import parse_review, resolved_file_content
from braid.tasks.model import FixResult, ReviewResult, Task


class CodeAgent:
    def __init__(self, engine: EngineBase, *, timeout: int | None = None) -> None:
        self.engine = engine
        self.timeout = timeout
        self.total_input_tokens = 0
        self.total_output_tokens = 0

    def _account(self, result: EngineResult) -> None:
        self.total_input_tokens += max(0, result.input_tokens)
        self.total_output_tokens += max(0, result.output_tokens)

    def run(self, prompt: str, cwd: Path, *, max_turns: int | None = None) -> EngineResult:
        """Run the agent to completion in *cwd*."""
        result = self.engine.run_sync(prompt, cwd=cwd, timeout=self.timeout, max_turns=max_turns)
        self._account(result)
        return result

    def start(
        self,
        prompt: str,
        cwd: Path,
        *,
        stdout_file: Path | None = None,
        stderr_file: Path | None = None,
    ) -> subprocess.Popen[str]:
        """Launch the agent without waiting; the caller polls the process."""
        return self.engine.run_async(prompt, cwd=cwd, stdout_file=stdout_file, stderr_file=stderr_file)

    def collect_usage(self, raw_output: str) -> None:
        """Add token usage from the captured output of a started agent."""
        if raw_output:
            self._account(self.engine.parse_output(raw_output))

    def resolve_conflict(self, path: str, content: str, task: Task, cwd: Path) -> str:
        """Return the resolved content for one conflicted file.

        Raises :class:`AgentError` when the agent fails or replies with nothing.
        """
        result = self.run(build_conflict_prompt(path, content, task), cwd, max_turns=1)
        if not result.ok:
            raise AgentError(f"Conflict resolution failed for {path}: {result.error}", task_id=task.id)
        if not result.text.strip():
            raise AgentError(f"Conflict resolution for {path} returned no content", task_id=task.id)
        return resolved_file_content(result.text, content)

    def review(self, task: Task, requirements: str, cwd: Path, *, threshold: float) -> ReviewResult:
        result = self.run(build_review_prompt(task, requirements), cwd)
        if not result.ok:
            raise AgentError(f"Review failed: {result.error}", task_id=task.id)
        return parse_review(result.text, threshold)

    def fix(
        self,
        task: Task,
        issues: list[str],
        suggestions: list[str],
        requirements: str,
        cwd: Path,
    ) -> FixResult:
        """Ask the agent to address review findings, committing whatever it leaves."""
        result = self.run(build_fix_prompt(task, issues, suggestions, requirements), cwd)
        if git_ops.has_dirty_worktree(cwd=cwd):
            git_ops.add_and_commit(f"fix: address review for {task.title}", cwd=cwd)
        if not result.ok:
            log.debug(f"Fix agent for {task.id} failed: {result.error}")
            return FixResult(success=False, commit_ref=git_ops.rev_parse(cwd=cwd), error=result.error)
        return FixResult(success=True, commit_ref=git_ops.rev_parse(cwd=cwd))
