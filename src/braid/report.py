"""Terminal reports: plan preview, run summary and execution-group status."""

from __future__ import annotations

from rich.markup import escape
from rich.table import Table

from braid import log
from braid.config import Config
from braid.orchestrator import RunSummary
from braid.tasks.model import ExecutionGroup, ExecutionPlan, Task

RULE = "[bold]============================================[/bold]"

# Per-token pricing (USD) by engine. Values are rough estimates.
_ENGINE_PRICING: dict[str, tuple[float, float]] = {
    "claude": (0.000003, 0.000015),
}

_GROUP_COLORS = {
    "pending": "dim",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "aborted": "yellow",
}


def estimate_cost(engine: str, input_tokens: int, output_tokens: int) -> float:
    """Rough USD cost estimate for the given engine and token counts."""
    inp_price, out_price = _ENGINE_PRICING.get(engine, (0.000003, 0.000015))
    return (max(0, input_tokens) * inp_price) + (max(0, output_tokens) * out_price)


def show_plan(plan: ExecutionPlan, tasks: list[Task], ready: list[str] | None = None) -> None:
    """Print the batches of *plan*; *ready* lists tasks that could start right now."""
    titles = {t.id: t.title for t in tasks}
    log.console.print("")
    log.console.print(RULE)
    log.console.print("[bold]BRAID[/bold] - Execution plan (no execution)")

    if plan.has_cycles:
        log.error(f"Circular dependencies: {', '.join(plan.cyclic_tasks)}")
        log.console.print(RULE)
        return
    if not plan.batches:
        log.success("No executable tasks.")
        log.console.print(RULE)
        return

    log.info(f"{plan.total_tasks} task(s) in {len(plan.batches)} batch(es)")
    for n, batch in enumerate(plan.batches, 1):
        log.console.print(f"[bold]Batch {n}[/bold]")
        for tid in batch:
            label = escape(f"[{tid}] {titles.get(tid, '')}".rstrip())
            log.console.print(f"  - {label}")
    if ready:
        log.info(f"Ready now: {escape(', '.join(ready))}")
    log.console.print(RULE)


def show_summary(cfg: Config, summary: RunSummary) -> None:
    """Print the final run summary."""
    log.console.print("")
    log.console.print(RULE)
    if summary.aborted:
        log.console.print("[yellow]Execution aborted.[/yellow]")
    elif summary.error:
        log.console.print(f"[red]Execution failed:[/red] {summary.error}")
    else:
        log.console.print(
            f"[green]Execution complete![/green] {len(summary.completed)} task(s) "
            f"in {summary.total_batches} batch(es)."
        )
    log.console.print(RULE)

    rows = [
        ("Executed", summary.completed, "green"),
        ("Failed", summary.failed, "red"),
        ("Merged", summary.merged, "green"),
        ("Merge conflicts", summary.conflicts, "red"),
        ("Review passed", summary.review_passed, "green"),
        ("Review failed", summary.review_failed, "yellow"),
    ]
    for label, ids, color in rows:
        if ids:
            log.console.print(f"[{color}]{label}:[/{color}] {len(ids)}  [dim]{' '.join(ids)}[/dim]")

    log.console.print("")
    log.console.print("[bold]>>> Cost Summary[/bold]")
    total = summary.input_tokens + summary.output_tokens
    log.console.print(f"Input tokens:  {summary.input_tokens}")
    log.console.print(f"Output tokens: {summary.output_tokens}")
    log.console.print(f"Total tokens:  {total}")
    cost = estimate_cost(cfg.ai_engine, summary.input_tokens, summary.output_tokens)
    log.console.print(f"Est. cost:     ${cost:.4f}")
    log.console.print(RULE)


def show_groups(groups: list[ExecutionGroup]) -> None:
    if not groups:
        log.info("No execution groups recorded.")
        return

    table = Table(title="Execution groups", show_lines=False)
    table.add_column("Group", style="dim")
    table.add_column("Batch")
    table.add_column("Status")
    table.add_column("Tasks")
    table.add_column("Started")
    table.add_column("Completed")
    table.add_column("Error")

    for g in groups:
        color = _GROUP_COLORS.get(g.status.value, "white")
        table.add_row(
            g.id[:8],
            f"{g.batch_number}/{g.total_batches}",
            f"[{color}]{g.status.value}[/{color}]",
            " ".join(g.task_ids),
            g.started_at or "-",
            g.completed_at or "-",
            g.error_message or "",
        )
    log.console.print(table)
