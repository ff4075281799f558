"""BRAID CLI.

Installed as the ``braid`` console_script.
"""

from __future__ import annotations

import json
import signal
import sys
from pathlib import Path
from typing import Any, Callable

import click

from braid import __version__
from braid import log as blog
from braid.config import Config
from braid.engines.registry import ENGINE_NAMES

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])
DEFAULT_BOARD = "braid.json"


def _make_config(ctx: click.Context, **overrides: Any) -> Config:
    opts = ctx.obj or {}
    return Config(
        workspace_dir=opts.get("workspace", ""),
        state_dir=opts.get("state_dir", ""),
        verbose=opts.get("verbose", False),
        **overrides,
    )


def _load_board(ctx: click.Context) -> Any:
    from braid.tasks.store import JsonBoard

    path = Path((ctx.obj or {}).get("board") or DEFAULT_BOARD)
    if not path.is_file():
        blog.error(f"Board file not found: {path}")
        sys.exit(1)
    return JsonBoard(path)


def _install_signal_handlers(on_signal: Callable[[int], None]) -> dict[int, Any]:
    """Route Ctrl-C / SIGTERM to *on_signal*. Returns the previous handlers."""
    previous: dict[int, Any] = {}
    signals_to_handle = [signal.SIGINT]
    if hasattr(signal, "SIGBREAK"):
        signals_to_handle.append(signal.SIGBREAK)
    if hasattr(signal, "SIGTERM"):
        signals_to_handle.append(signal.SIGTERM)

    for sig in signals_to_handle:
        try:
            previous[sig] = signal.getsignal(sig)
            signal.signal(sig, lambda signum, _frame: on_signal(signum))
        except (OSError, RuntimeError, ValueError):
            continue
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for sig, handler in previous.items():
        try:
            signal.signal(sig, handler)
        except (OSError, RuntimeError, ValueError):
            continue


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("--board", default="", envvar="BRAID_BOARD", help=f"Task board JSON file (default: {DEFAULT_BOARD})")
@click.option("--workspace", default="", help="Git checkout of the integration branch (default: repo root)")
@click.option("--state-dir", default="", help="Directory for persisted execution groups")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="braid")
@click.pass_context
def main(ctx: click.Context, board: str, workspace: str, state_dir: str, verbose: bool) -> None:
    """BRAID - dependency-ordered parallel task execution with code agents.

    Plans the board's todo tasks into dependency batches, runs each batch in
    isolated git worktrees, merges every finished branch into the
    integration branch and gates it behind an automated review.

    \b
    EXAMPLES:
      braid plan my-project                   # Show batches without running
      braid run my-project --max-parallel 2   # Execute
      braid status my-project                 # Inspect execution groups
      braid check-deps my-project T3 T1 T2    # Validate a dependency edit
    """
    blog.set_verbose(verbose)
    ctx.ensure_object(dict)
    ctx.obj.update(board=board, workspace=workspace, state_dir=state_dir, verbose=verbose)


# ── run ──────────────────────────────────────────────────────────────


@main.command()
@click.argument("project_id")
@click.option("--engine", "ai_engine", type=click.Choice(ENGINE_NAMES), default="claude", help="Code agent engine")
@click.option("--max-parallel", type=int, default=0, help="Max concurrent tasks per batch (env BRAID_MAX_PARALLEL)")
@click.option("--quality-threshold", type=float, default=0.0, help="Minimum review score (env BRAID_QUALITY_THRESHOLD)")
@click.option("--max-review-retries", type=int, default=0, help="Review attempts per task (env BRAID_MAX_REVIEW_RETRIES)")
@click.option("--skip-review", is_flag=True, help="Merge without the quality gate")
@click.option("--stalled-timeout", type=int, default=600, help="Seconds before killing a stalled agent")
@click.option("--branch", "integration_branch", default="main", help="Integration branch")
@click.option("--remote", default="origin", help="Git remote to pull from and push to")
@click.option("--events-file", default="", help="Also append every event to this file as JSON lines")
@click.pass_context
def run(
    ctx: click.Context,
    project_id: str,
    ai_engine: str,
    max_parallel: int,
    quality_threshold: float,
    max_review_retries: int,
    skip_review: bool,
    stalled_timeout: int,
    integration_branch: str,
    remote: str,
    events_file: str,
) -> None:
    """Execute every todo task of PROJECT_ID."""
    from braid.agent import CodeAgent
    from braid.engines.registry import get_engine
    from braid.errors import CycleDetected, ExecutionAlreadyRunning
    from braid.events import ConsoleTransport, StreamTransport
    from braid.orchestrator import Orchestrator
    from braid.report import show_summary

    cfg = _make_config(
        ctx,
        ai_engine=ai_engine,
        max_parallel=max_parallel,
        quality_threshold=quality_threshold,
        max_review_retries=max_review_retries,
        skip_review=skip_review,
        stalled_timeout=stalled_timeout,
        integration_branch=integration_branch,
        remote=remote,
        events_file=events_file,
    )

    engine = get_engine(cfg.ai_engine)
    err = engine.check_available()
    if err:
        blog.error(err)
        sys.exit(1)

    board = _load_board(ctx)
    orch = Orchestrator(cfg, board, board, CodeAgent(engine, timeout=cfg.stalled_timeout))

    _show_banner(cfg, project_id)
    orch.bus.attach(project_id, ConsoleTransport())
    events_fh = None
    if cfg.events_file:
        events_path = Path(cfg.events_file)
        events_path.parent.mkdir(parents=True, exist_ok=True)
        events_fh = open(events_path, "a", encoding="utf-8")
        orch.bus.attach(project_id, StreamTransport(events_fh, fmt="jsonl"))

    interrupts = 0

    def _on_signal(signum: int) -> None:
        nonlocal interrupts
        interrupts += 1
        if interrupts == 1:
            blog.warn(f"Interrupt received (signal {signum}). Stopping agents...")
        else:
            blog.warn(f"Interrupt received again (signal {signum}). Forcing stop...")
        orch.abort(project_id)

    previous = _install_signal_handlers(_on_signal)
    try:
        summary = orch.run(project_id)
    except CycleDetected as e:
        blog.error(str(e))
        sys.exit(1)
    except ExecutionAlreadyRunning as e:
        blog.error(str(e))
        sys.exit(1)
    finally:
        _restore_signal_handlers(previous)
        if events_fh is not None:
            events_fh.close()

    show_summary(cfg, summary)
    if not summary.ok:
        sys.exit(1)


# ── plan / check-deps ────────────────────────────────────────────────


@main.command()
@click.argument("project_id")
@click.pass_context
def plan(ctx: click.Context, project_id: str) -> None:
    """Show the batches PROJECT_ID would run, without executing anything."""
    from braid.planner import executable_tasks, plan_execution, plannable_tasks
    from braid.report import show_plan

    board = _load_board(ctx)
    tasks = board.list_tasks(project_id)
    execution_plan = plan_execution(plannable_tasks(tasks))
    show_plan(execution_plan, tasks, ready=[t.id for t in executable_tasks(tasks)])
    if execution_plan.has_cycles:
        sys.exit(1)


@main.command("check-deps")
@click.argument("project_id")
@click.argument("task_id")
@click.argument("dependencies", nargs=-1)
@click.pass_context
def check_deps(ctx: click.Context, project_id: str, task_id: str, dependencies: tuple[str, ...]) -> None:
    """Check whether TASK_ID may depend on DEPENDENCIES without a cycle."""
    from braid.planner import validate_dependencies

    board = _load_board(ctx)
    tasks = board.list_tasks(project_id)
    if not any(t.id == task_id for t in tasks):
        blog.error(f"Unknown task: {task_id}")
        sys.exit(1)

    check = validate_dependencies(task_id, list(dependencies), tasks)
    if check.valid:
        blog.success(f"Dependencies of {task_id} are valid")
        return
    blog.error(f"Circular dependency: {' -> '.join(check.cycle_path)}")
    sys.exit(1)


# ── status / recover ─────────────────────────────────────────────────


@main.command()
@click.argument("project_id")
@click.option("--json", "as_json", is_flag=True, help="Print the reconnect snapshot as JSON")
@click.pass_context
def status(ctx: click.Context, project_id: str, as_json: bool) -> None:
    """Show persisted execution groups for PROJECT_ID."""
    from braid.report import show_groups
    from braid.store import StateStore

    cfg = _make_config(ctx)
    store = StateStore(cfg.groups_dir)
    if as_json:
        click.echo(json.dumps(store.snapshot(project_id), indent=2))
        return
    show_groups(store.list_groups(project_id))


@main.command()
@click.argument("project_id")
@click.pass_context
def recover(ctx: click.Context, project_id: str) -> None:
    """Mark groups left running by a dead process as failed."""
    from braid.store import StateStore

    cfg = _make_config(ctx)
    fixed = StateStore(cfg.groups_dir).reconcile_interrupted(project_id)
    if fixed:
        blog.success(f"Recovered {len(fixed)} interrupted group(s)")
    else:
        blog.info("No interrupted groups")


def _show_banner(cfg: Config, project_id: str) -> None:
    blog.console.print("[bold]============================================[/bold]")
    blog.console.print(f"[bold]BRAID[/bold] - Running project [cyan]{project_id}[/cyan]")
    blog.console.print(f"Engine: [magenta]{cfg.ai_engine}[/magenta]")
    parts = [
        f"parallel:{cfg.max_parallel}",
        f"branch:{cfg.integration_branch}",
        "no-review" if cfg.skip_review else f"quality:{cfg.quality_threshold}x{cfg.max_review_retries}",
    ]
    blog.console.print(f"Mode: [yellow]{' '.join(parts)}[/yellow]")
    blog.console.print("[bold]============================================[/bold]")
