"""Task, execution-group and result models shared by every phase."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    TODO = "todo"
    WIP = "wip"
    DONE = "done"
    MERGED = "merged"
    REVIEW_PASSED = "review_passed"
    REVIEW_FAILED = "review_failed"
    FAILED = "failed"


# A dependency in one of these states no longer blocks its dependents.
COMPLETED_STATUSES = frozenset(
    {
        TaskStatus.DONE,
        TaskStatus.MERGED,
        TaskStatus.REVIEW_PASSED,
        TaskStatus.REVIEW_FAILED,
    }
)


class MergeStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    MERGED = "merged"
    CONFLICT = "conflict"


class GroupStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_GROUP_STATUSES = frozenset(
    {GroupStatus.COMPLETED, GroupStatus.FAILED, GroupStatus.ABORTED}
)


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return out


@dataclass
class Task:
    id: str
    title: str = ""
    description: str = ""
    dependencies: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.TODO
    project_id: str = ""
    branch_name: str | None = None
    test_coverage: float | None = None
    quality_score: float | None = None
    merge_status: MergeStatus = MergeStatus.NONE
    commit_url: str | None = None
    error: str | None = None
    review: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        self.dependencies = _dedupe(list(self.dependencies))
        self.status = TaskStatus(self.status)
        self.merge_status = MergeStatus(self.merge_status)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["merge_status"] = self.merge_status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ExecutionGroup:
    """Persisted record of one batch's run."""

    id: str
    project_id: str
    task_ids: list[str]
    batch_number: int
    total_batches: int
    status: GroupStatus = GroupStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        self.status = GroupStatus(self.status)
        self.task_ids = list(self.task_ids)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_GROUP_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionGroup:
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ExecutionPlan:
    batches: list[list[str]] = field(default_factory=list)
    total_tasks: int = 0
    has_cycles: bool = False
    cyclic_tasks: list[str] = field(default_factory=list)

    def batch_index(self, task_id: str) -> int:
        """Return the 0-based batch holding *task_id*, or -1."""
        for i, batch in enumerate(self.batches):
            if task_id in batch:
                return i
        return -1


@dataclass
class DependencyCheck:
    valid: bool
    cycle_path: list[str] = field(default_factory=list)


@dataclass
class TaskOutcome:
    """Terminal result of one task in a batch."""

    task_id: str
    branch_name: str
    success: bool
    commit_ref: str = ""
    output: str = ""
    error: str = ""
    aborted: bool = False


@dataclass
class MergeResult:
    success: bool
    task_id: str
    branch_name: str
    commit_hash: str = ""
    commit_url: str | None = None
    conflict_files: list[str] = field(default_factory=list)
    resolved_by_agent: bool = False
    skipped: bool = False
    error: str = ""


@dataclass
class ReviewResult:
    quality_score: float = 0.0
    passed: bool = False
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    summary: str = ""
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FixResult:
    success: bool
    commit_ref: str = ""
    error: str = ""


@dataclass
class Project:
    id: str
    name: str = ""
    repo_url: str = ""
    requirements: str = ""
