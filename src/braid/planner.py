"""Dependency planner: level-order topological batches with cycle detection."""

from __future__ import annotations

from collections import deque

from braid import log
from braid.tasks.model import (
    COMPLETED_STATUSES,
    DependencyCheck,
    ExecutionPlan,
    Task,
    TaskStatus,
)


class DependencyGraph:
    """Id-keyed adjacency and in-degree maps over one task set.

    Only edges between members of the set are kept; a dependency on a task
    outside the set counts as already satisfied.
    """

    def __init__(self, tasks: list[Task]) -> None:
        self.order: list[str] = [t.id for t in tasks]
        members = set(self.order)
        self.deps: dict[str, list[str]] = {}
        self.dependents: dict[str, list[str]] = {tid: [] for tid in self.order}

        for task in tasks:
            in_set = [d for d in task.dependencies if d in members]
            self.deps[task.id] = in_set
            for dep in in_set:
                self.dependents[dep].append(task.id)

    def in_degrees(self) -> dict[str, int]:
        return {tid: len(self.deps[tid]) for tid in self.order}

    def levels(self) -> tuple[list[list[str]], list[str]]:
        """Kahn's algorithm, one level at a time.

        Returns ``(batches, unresolved)``. ``unresolved`` is non-empty only
        when a cycle blocks progress; it holds every cycle member and every
        task downstream of one, in input order.
        """
        indegree = self.in_degrees()
        remaining = list(self.order)
        batches: list[list[str]] = []

        while remaining:
            batch = [tid for tid in remaining if indegree[tid] == 0]
            if not batch:
                break
            batches.append(batch)
            done = set(batch)
            remaining = [tid for tid in remaining if tid not in done]
            for tid in batch:
                for dependent in self.dependents[tid]:
                    indegree[dependent] -= 1

        return batches, remaining

    def find_path(self, start: str, goal: str) -> list[str]:
        """Shortest dependency path ``start -> ... -> goal`` (BFS), or ``[]``."""
        if start not in self.deps:
            return []
        parent: dict[str, str | None] = {start: None}
        queue = deque([start])
        while queue:
            cur = queue.popleft()
            if cur == goal:
                path = [cur]
                while parent[path[-1]] is not None:
                    path.append(parent[path[-1]])  # type: ignore[arg-type]
                return list(reversed(path))
            for nxt in self.deps.get(cur, []):
                if nxt not in parent:
                    parent[nxt] = cur
                    queue.append(nxt)
        return []


def plan_execution(tasks: list[Task]) -> ExecutionPlan:
    """Turn executable tasks into ordered batches that can each run in parallel.

    When the graph has a cycle no batch is returned at all, even for tasks
    outside the cycle; the caller must not execute anything.
    """
    graph = DependencyGraph(tasks)
    batches, unresolved = graph.levels()

    if unresolved:
        log.debug(f"Cycle detected; unresolved tasks: {' '.join(unresolved)}")
        return ExecutionPlan(
            batches=[],
            total_tasks=len(tasks),
            has_cycles=True,
            cyclic_tasks=unresolved,
        )

    return ExecutionPlan(batches=batches, total_tasks=len(tasks))


def executable_tasks(tasks: list[Task]) -> list[Task]:
    """``todo`` tasks whose dependencies are complete or not on the board."""
    by_id = {t.id: t for t in tasks}
    ready: list[Task] = []
    for task in tasks:
        if task.status != TaskStatus.TODO:
            continue
        blocked = False
        for dep in task.dependencies:
            other = by_id.get(dep)
            if other is not None and other.status not in COMPLETED_STATUSES:
                blocked = True
                break
        if not blocked:
            ready.append(task)
    return ready


def plannable_tasks(tasks: list[Task]) -> list[Task]:
    """The planner's input set: every ``todo`` task."""
    return [t for t in tasks if t.status == TaskStatus.TODO]


def validate_dependencies(
    task_id: str,
    new_dependencies: list[str],
    tasks: list[Task],
) -> DependencyCheck:
    """Check a proposed dependency edit for *task_id* before it is persisted."""
    candidate: list[Task] = []
    for task in tasks:
        if task.id == task_id:
            task = Task(id=task.id, title=task.title, dependencies=list(new_dependencies))
        candidate.append(task)

    graph = DependencyGraph(candidate)
    _, unresolved = graph.levels()
    if not unresolved:
        return DependencyCheck(valid=True)

    for dep in graph.deps.get(task_id, []):
        back = graph.find_path(dep, task_id)
        if back:
            return DependencyCheck(valid=False, cycle_path=[task_id, *back])

    return DependencyCheck(valid=False, cycle_path=unresolved)
