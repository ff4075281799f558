"""Error taxonomy for the execution engine plus text classifiers for agent output."""

from __future__ import annotations


class BraidError(Exception):
    """Base class for all braid errors."""


class CycleDetected(BraidError):
    """The dependency graph has a cycle; nothing may run."""

    def __init__(self, cyclic_tasks: list[str]) -> None:
        self.cyclic_tasks = list(cyclic_tasks)
        super().__init__(
            f"Circular dependencies detected: {', '.join(self.cyclic_tasks)}"
        )


class AgentError(BraidError):
    """A code-agent invocation failed for one task."""

    def __init__(self, message: str, *, task_id: str = "") -> None:
        self.task_id = task_id
        super().__init__(message)


class MergeConflictUnresolved(BraidError):
    """A task branch could not be folded into the integration branch."""

    def __init__(self, message: str, *, conflict_files: list[str] | None = None) -> None:
        self.conflict_files = list(conflict_files or [])
        super().__init__(message)


class ReviewExhausted(BraidError):
    """All review attempts ran out without reaching the quality threshold."""

    def __init__(self, task_id: str, quality_score: float, attempts: int) -> None:
        self.task_id = task_id
        self.quality_score = quality_score
        self.attempts = attempts
        super().__init__(
            f"Quality {quality_score}/10 after {attempts} attempt(s) for task {task_id}"
        )


class TransportWriteError(BraidError):
    """Writing an event to one subscriber's transport failed."""


class ExecutionAlreadyRunning(BraidError):
    """A project already has a live execution in this registry."""


# ── Text classification of agent / git output ────────────────────────

RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "usage limit",
    "you've hit your limit",
    "quota",
    "429",
    "too many requests",
)

POLICY_BLOCK_PATTERNS: tuple[str, ...] = (
    "blocked by policy",
    "read-only sandbox",
    "approval_policy",
)

MERGE_CONFLICT_PATTERNS: tuple[str, ...] = (
    "automatic merge failed",
    "conflict (content)",
    "conflict (add/add)",
    "conflict in ",
    "merge conflict",
    "could not apply",
)

PUSH_REJECTED_PATTERNS: tuple[str, ...] = (
    "[rejected]",
    "failed to push",
    "non-fast-forward",
    "fetch first",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_rate_limit(text: str) -> bool:
    """Return ``True`` when text matches a rate/usage/quota limit."""
    if not text:
        return False
    return _contains_any(text, RATE_LIMIT_PATTERNS)


def looks_like_policy_block(text: str) -> bool:
    """Return ``True`` when text indicates policy/sandbox blocking."""
    if not text:
        return False
    return _contains_any(text, POLICY_BLOCK_PATTERNS)


def looks_like_merge_conflict(text: str) -> bool:
    """Return ``True`` for textual git merge or rebase conflict failures."""
    if not text:
        return False
    return _contains_any(text, MERGE_CONFLICT_PATTERNS)


def looks_like_push_rejected(text: str) -> bool:
    if not text:
        return False
    return _contains_any(text, PUSH_REJECTED_PATTERNS)
