"""Git operations: worktrees, branches, rebases, merges and remotes."""

from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path

from braid import log


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing output."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        cwd=cwd,
        check=check,
    )


def output_of(r: subprocess.CompletedProcess[str]) -> str:
    """Combined stdout/stderr of a git call, for error messages."""
    return "\n".join(s.strip() for s in (r.stdout, r.stderr) if s and s.strip())


# ── Naming ───────────────────────────────────────────────────────────

def slugify(text: str, max_len: int = 50) -> str:
    """Convert text to a URL/branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].strip("-")


def feature_branch_name(task_id: str, title: str) -> str:
    """Deterministic feature branch for a task: short id plus a title slug."""
    short_id = task_id[:8]
    slug = slugify(title, max_len=30)
    if not slug:
        return f"feature/task-{short_id}"
    return f"feature/task-{short_id}-{slug}"


# ── Branches ─────────────────────────────────────────────────────────

def current_branch(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else "main"


def branch_exists(name: str, cwd: Path | None = None) -> bool:
    r = _git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=cwd)
    return r.returncode == 0


def remote_branch_exists(remote: str, name: str, cwd: Path | None = None) -> bool:
    r = _git("ls-remote", "--exit-code", "--heads", remote, name, cwd=cwd)
    return r.returncode == 0


def checkout(branch: str, cwd: Path | None = None) -> bool:
    r = _git("checkout", branch, cwd=cwd)
    return r.returncode == 0


def checkout_from(name: str, start_point: str, cwd: Path | None = None) -> bool:
    """Create or reset *name* at *start_point* and check it out."""
    r = _git("checkout", "-B", name, start_point, cwd=cwd)
    return r.returncode == 0


def delete_branch(name: str, force: bool = False, cwd: Path | None = None) -> bool:
    flag = "-D" if force else "-d"
    r = _git("branch", flag, name, cwd=cwd)
    return r.returncode == 0


def rev_parse(ref: str = "HEAD", cwd: Path | None = None) -> str:
    r = _git("rev-parse", ref, cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def commit_count(base: str, cwd: Path | None = None) -> int:
    r = _git("rev-list", "--count", f"{base}..HEAD", cwd=cwd)
    if r.returncode != 0:
        return 0
    try:
        return int(r.stdout.strip())
    except ValueError:
        return 0


def has_dirty_worktree(cwd: Path | None = None) -> bool:
    r = _git("status", "--porcelain", cwd=cwd)
    return bool(r.stdout.strip())


def stage(path: str, cwd: Path | None = None) -> bool:
    r = _git("add", "--", path, cwd=cwd)
    return r.returncode == 0


def commit(message: str, cwd: Path | None = None) -> bool:
    r = _git("commit", "--no-verify", "-m", message, cwd=cwd)
    return r.returncode == 0


def add_and_commit(message: str, cwd: Path | None = None) -> bool:
    _git("add", "-A", cwd=cwd)
    return commit(message, cwd=cwd)


def reset_hard(ref: str, cwd: Path | None = None) -> bool:
    r = _git("reset", "--hard", ref, cwd=cwd)
    return r.returncode == 0


# ── Remotes ──────────────────────────────────────────────────────────

def clone(url: str, dest: Path) -> subprocess.CompletedProcess[str]:
    dest.parent.mkdir(parents=True, exist_ok=True)
    return _git("clone", url, str(dest))


def remote_url(remote: str = "origin", cwd: Path | None = None) -> str:
    r = _git("remote", "get-url", remote, cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def fetch(remote: str, branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("fetch", remote, f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}", cwd=cwd)


def pull(remote: str, branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("pull", "--ff-only", remote, branch, cwd=cwd)


def push(
    remote: str,
    branch: str,
    *,
    force: bool = False,
    cwd: Path | None = None,
) -> subprocess.CompletedProcess[str]:
    args = ["push", "-u", remote, branch]
    if force:
        args.insert(1, "--force")
    return _git(*args, cwd=cwd)


def push_delete(remote: str, branch: str, cwd: Path | None = None) -> bool:
    r = _git("push", remote, "--delete", branch, cwd=cwd)
    return r.returncode == 0


_SSH_REMOTE = re.compile(r"^git@([^:]+):")


def commit_web_url(repo_url: str, commit_hash: str) -> str | None:
    """Rewrite a remote URL into ``https://host/owner/repo/commit/<hash>``.

    SSH remotes (``git@host:owner/repo.git``) are converted; remotes that
    are neither SSH nor http(s) (local paths, ``file://``) have no web form.
    """
    if not repo_url or not commit_hash:
        return None
    base = _SSH_REMOTE.sub(r"https://\1/", repo_url.strip())
    if not base.startswith(("https://", "http://")):
        return None
    base = re.sub(r"\.git$", "", base.rstrip("/"))
    return f"{base}/commit/{commit_hash}"


# ── Rebase / merge ───────────────────────────────────────────────────

def rebase(onto: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("rebase", onto, cwd=cwd)


def rebase_abort(cwd: Path | None = None) -> None:
    _git("rebase", "--abort", cwd=cwd)


def merge_no_ff(branch: str, message: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("merge", "--no-ff", "-m", message, branch, cwd=cwd)


def merge_no_commit(branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Start a merge that stops before committing, leaving conflicts in place."""
    return _git("merge", "--no-commit", "--no-ff", branch, cwd=cwd)


def merge_abort(cwd: Path | None = None) -> None:
    _git("merge", "--abort", cwd=cwd)


def merge_in_progress(cwd: Path | None = None) -> bool:
    git_dir = _git_dir(cwd)
    return git_dir is not None and (git_dir / "MERGE_HEAD").exists()


def conflicted_files(cwd: Path | None = None) -> list[str]:
    r = _git("diff", "--name-only", "--diff-filter=U", cwd=cwd)
    if r.returncode != 0 or not r.stdout.strip():
        return []
    return [f.strip() for f in r.stdout.strip().splitlines() if f.strip()]


def _git_dir(cwd: Path | None) -> Path | None:
    r = _git("rev-parse", "--git-dir", cwd=cwd)
    if r.returncode != 0:
        return None
    git_dir = Path(r.stdout.strip())
    if not git_dir.is_absolute():
        git_dir = (cwd or Path.cwd()) / git_dir
    return git_dir


def ensure_clean_git_state(cwd: Path | None = None) -> None:
    """Abort any interrupted merge/rebase/cherry-pick."""
    git_dir = _git_dir(cwd)
    if git_dir is None:
        return

    if (git_dir / "MERGE_HEAD").exists():
        log.warn("Detected interrupted git merge. Aborting…")
        merge_abort(cwd=cwd)
    if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
        log.warn("Detected interrupted git rebase. Aborting…")
        rebase_abort(cwd=cwd)
    if (git_dir / "CHERRY_PICK_HEAD").exists():
        log.warn("Detected interrupted git cherry-pick. Aborting…")
        _git("cherry-pick", "--abort", cwd=cwd)


# ── Worktrees (isolated execution environments) ──────────────────────

def worktree_prune(cwd: Path | None = None) -> None:
    _git("worktree", "prune", cwd=cwd)


def worktree_remove(worktree_dir: Path, cwd: Path | None = None) -> bool:
    r = _git("worktree", "remove", "--force", str(worktree_dir), cwd=cwd)
    return r.returncode == 0


def create_task_worktree(
    branch_name: str,
    *,
    base_branch: str,
    worktree_base: Path,
    repo_dir: Path,
) -> Path:
    """Create an isolated worktree on a fresh *branch_name* cut from *base_branch*.

    The directory is keyed by the branch, so parallel tasks never share a
    checkout. Raises ``RuntimeError`` on failure.
    """
    worktree_dir = worktree_base / slugify(branch_name.replace("/", "-"), max_len=80)

    worktree_prune(cwd=repo_dir)
    if worktree_dir.exists():
        worktree_remove(worktree_dir, cwd=repo_dir)
        shutil.rmtree(worktree_dir, ignore_errors=True)
    if branch_exists(branch_name, cwd=repo_dir):
        log.debug(f"Replacing stale branch {branch_name}")
        delete_branch(branch_name, force=True, cwd=repo_dir)

    worktree_base.mkdir(parents=True, exist_ok=True)
    r = _git("worktree", "add", "-b", branch_name, str(worktree_dir), base_branch, cwd=repo_dir)
    if r.returncode != 0:
        raise RuntimeError(
            f"Failed to create worktree for {branch_name} from {base_branch}: {output_of(r)}"
        )
    return worktree_dir


def cleanup_task_worktree(worktree_dir: Path, *, repo_dir: Path) -> None:
    """Remove a task worktree. The branch itself is kept."""
    if worktree_dir.exists() and has_dirty_worktree(cwd=worktree_dir):
        log.debug(f"Worktree dirty, forcing cleanup: {worktree_dir}")
    worktree_remove(worktree_dir, cwd=repo_dir)
    shutil.rmtree(worktree_dir, ignore_errors=True)
    worktree_prune(cwd=repo_dir)
