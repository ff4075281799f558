"""Shared fixtures for braid tests.

Git handling in tests:
- ``git_repo`` is a standalone repository on ``main``.
- ``remote_repo`` is a working clone whose ``origin`` is a bare repository in
  the same tmp dir, so pull/fetch/push run for real without a network.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from braid.events import EventType, ExecutionEvent, Transport
from braid.io_utils import write_text
from braid.tasks.model import Project, Task, TaskStatus


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register opt-in switch for expensive end-to-end tests."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests marked with 'e2e'.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip e2e tests unless explicitly enabled."""
    if config.getoption("--run-e2e"):
        return

    skip_e2e = pytest.mark.skip(
        reason="E2E tests are skipped by default. Use --run-e2e to include them.",
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


def git(repo: Path, *args: str) -> str:
    """Run git in *repo*, failing the test on error."""
    r = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)
    return r.stdout.strip()


def _configure_user(repo: Path) -> None:
    git(repo, "config", "user.name", "Test")
    git(repo, "config", "user.email", "test@test")
    git(repo, "config", "commit.gpgsign", "false")


def commit_file(repo: Path, name: str, content: str, msg: str) -> str:
    """Write, stage and commit one file; return the new HEAD."""
    write_text(repo / name, content)
    git(repo, "add", name)
    git(repo, "commit", "-m", msg)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo on ``main`` for testing."""
    git(tmp_path, "init")
    git(tmp_path, "symbolic-ref", "HEAD", "refs/heads/main")
    _configure_user(tmp_path)
    commit_file(tmp_path, "README.md", "# Test\n", "Initial")
    return tmp_path


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """Working clone of a bare ``origin`` with ``main`` pushed. Returns the clone."""
    origin = tmp_path / "origin.git"
    origin.mkdir()
    git(origin, "init", "--bare")
    git(origin, "symbolic-ref", "HEAD", "refs/heads/main")

    work = tmp_path / "work"
    work.mkdir()
    git(work, "init")
    git(work, "symbolic-ref", "HEAD", "refs/heads/main")
    _configure_user(work)
    git(work, "remote", "add", "origin", str(origin))
    commit_file(work, "README.md", "# Test\n", "Initial")
    git(work, "push", "-u", "origin", "main")
    return work


@pytest.fixture
def other_clone(remote_repo: Path) -> Path:
    """A second clone of the same origin, standing in for another contributor."""
    origin = remote_repo.parent / "origin.git"
    other = remote_repo.parent / "other"
    subprocess.run(["git", "clone", str(origin), str(other)], capture_output=True, check=True)
    _configure_user(other)
    return other


class RecordingTransport(Transport):
    """Event transport that keeps everything it is sent."""

    def __init__(self) -> None:
        self.events: list[ExecutionEvent] = []

    def write(self, event: ExecutionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[ExecutionEvent]:
        return [e for e in self.events if e.type == event_type]


def _make_task(
    id: str,
    title: str = "",
    dependencies: list[str] | None = None,
    status: TaskStatus = TaskStatus.TODO,
    project_id: str = "p1",
    **fields: object,
) -> Task:
    return Task(
        id=id,
        title=title or f"Task {id}",
        dependencies=dependencies or [],
        status=status,
        project_id=project_id,
        **fields,  # type: ignore[arg-type]
    )


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def project() -> Project:
    return Project(id="p1", name="Demo", repo_url="git@github.com:acme/demo.git", requirements="Use Python.")
