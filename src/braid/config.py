"""Configuration defaults, env vars, and runtime options for braid."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path


DEFAULT_MAX_PARALLEL = 4
DEFAULT_QUALITY_THRESHOLD = 9.5
DEFAULT_MAX_REVIEW_RETRIES = 3
DEFAULT_STATE_DIR = ".braid"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class Config:
    """Runtime configuration shared by the planner, executor, integrator and gate.

    Zero / empty values mean "use the default or the environment override".
    """

    # AI engine
    ai_engine: str = "claude"

    # Execution
    max_parallel: int = 0
    poll_interval: float = 0.5
    stalled_timeout: int = 600

    # Quality gate
    quality_threshold: float = 0.0
    max_review_retries: int = 0
    skip_review: bool = False

    # Git
    integration_branch: str = "main"
    remote: str = "origin"
    workspace_dir: str = ""
    worktree_base: str = ""

    # Persistence
    state_dir: str = ""
    events_file: str = ""

    # Misc
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.max_parallel <= 0:
            self.max_parallel = _env_int("BRAID_MAX_PARALLEL", DEFAULT_MAX_PARALLEL)
        if self.max_parallel <= 0:
            self.max_parallel = 1
        if self.quality_threshold <= 0:
            self.quality_threshold = _env_float("BRAID_QUALITY_THRESHOLD", DEFAULT_QUALITY_THRESHOLD)
        if self.max_review_retries <= 0:
            self.max_review_retries = _env_int("BRAID_MAX_REVIEW_RETRIES", DEFAULT_MAX_REVIEW_RETRIES)
        if self.max_review_retries <= 0:
            self.max_review_retries = 1
        if not self.state_dir:
            self.state_dir = os.environ.get("BRAID_STATE_DIR") or DEFAULT_STATE_DIR
        if not self.workspace_dir:
            self.workspace_dir = str(resolve_repo_root())

    @property
    def workspace(self) -> Path:
        return Path(self.workspace_dir)

    @property
    def groups_dir(self) -> Path:
        root = Path(self.state_dir)
        if not root.is_absolute():
            root = self.workspace / root
        return root / "groups"


def resolve_repo_root() -> Path:
    """Return the git repository root, falling back to cwd."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path.cwd()
