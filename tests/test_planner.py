"""Tests for braid.planner: level-order batches and cycle detection."""

from __future__ import annotations

import random

import pytest

from braid.planner import (
    DependencyGraph,
    executable_tasks,
    plan_execution,
    plannable_tasks,
    validate_dependencies,
)
from braid.tasks.model import Task, TaskStatus


# ── Helpers ─────────────────────────────────────────────────────────


def _t(id: str, deps: list[str] | None = None, status: TaskStatus = TaskStatus.TODO) -> Task:
    return Task(id=id, title=f"Task {id}", dependencies=deps or [], status=status)


# ═══════════════════════════════════════════════════════════════════
#  Batching
# ═══════════════════════════════════════════════════════════════════


class TestPlanBatches:
    """Level-order batching of acyclic graphs."""

    def test_fan_out_after_root(self):
        """A, then B and C together once A is done."""
        plan = plan_execution([_t("A"), _t("B", ["A"]), _t("C", ["A"])])
        assert plan.batches == [["A"], ["B", "C"]]
        assert plan.has_cycles is False
        assert plan.cyclic_tasks == []
        assert plan.total_tasks == 3

    def test_empty_input(self):
        plan = plan_execution([])
        assert plan.batches == []
        assert plan.has_cycles is False
        assert plan.total_tasks == 0

    def test_independent_tasks_share_one_batch_in_input_order(self):
        plan = plan_execution([_t("C"), _t("A"), _t("B")])
        assert plan.batches == [["C", "A", "B"]]

    def test_chain_gives_one_task_per_batch(self):
        plan = plan_execution([_t("C", ["B"]), _t("B", ["A"]), _t("A")])
        assert plan.batches == [["A"], ["B"], ["C"]]

    def test_diamond(self):
        tasks = [_t("A"), _t("B", ["A"]), _t("C", ["A"]), _t("D", ["B", "C"])]
        plan = plan_execution(tasks)
        assert plan.batches == [["A"], ["B", "C"], ["D"]]

    def test_dependency_outside_set_counts_as_satisfied(self):
        plan = plan_execution([_t("B", ["already-merged"]), _t("C", ["B"])])
        assert plan.batches == [["B"], ["C"]]

    def test_duplicate_dependencies_are_collapsed(self):
        task = _t("B", ["A", "A", "A"])
        assert task.dependencies == ["A"]
        plan = plan_execution([_t("A"), task])
        assert plan.batches == [["A"], ["B"]]

    def test_batch_index(self):
        plan = plan_execution([_t("A"), _t("B", ["A"])])
        assert plan.batch_index("A") == 0
        assert plan.batch_index("B") == 1
        assert plan.batch_index("missing") == -1


class TestPlanProperties:
    """Randomized DAGs: every task lands in exactly one batch after its deps."""

    @pytest.mark.parametrize("seed", range(20))
    def test_dependencies_always_in_earlier_batch(self, seed: int):
        rng = random.Random(seed)
        ids = [f"T{i}" for i in range(rng.randint(1, 25))]
        tasks = []
        for i, tid in enumerate(ids):
            # Only point backwards so the graph stays acyclic.
            deps = rng.sample(ids[:i], k=min(i, rng.randint(0, 3)))
            tasks.append(_t(tid, deps))
        rng.shuffle(tasks)

        plan = plan_execution(tasks)
        assert not plan.has_cycles

        flattened = [tid for batch in plan.batches for tid in batch]
        assert sorted(flattened) == sorted(ids)
        assert len(flattened) == len(set(flattened))

        for task in tasks:
            for dep in task.dependencies:
                assert plan.batch_index(task.id) > plan.batch_index(dep)


# ═══════════════════════════════════════════════════════════════════
#  Cycles
# ═══════════════════════════════════════════════════════════════════


class TestCycles:
    def test_two_node_cycle(self):
        plan = plan_execution([_t("X", ["Y"]), _t("Y", ["X"])])
        assert plan.has_cycles is True
        assert set(plan.cyclic_tasks) == {"X", "Y"}
        assert plan.batches == []

    def test_self_dependency_is_one_node_cycle(self):
        plan = plan_execution([_t("A"), _t("S", ["S"])])
        assert plan.has_cycles is True
        assert plan.cyclic_tasks == ["S"]
        assert plan.batches == []

    def test_downstream_of_cycle_is_reported(self):
        """Tasks blocked behind a cycle are unresolved too; nothing runs."""
        tasks = [_t("A"), _t("X", ["Y", "A"]), _t("Y", ["X"]), _t("Z", ["Y"])]
        plan = plan_execution(tasks)
        assert plan.has_cycles is True
        assert plan.cyclic_tasks == ["X", "Y", "Z"]
        assert plan.batches == []

    def test_graph_levels_report_unresolved(self):
        graph = DependencyGraph([_t("A"), _t("B", ["C"]), _t("C", ["B"])])
        batches, unresolved = graph.levels()
        assert batches == [["A"]]
        assert unresolved == ["B", "C"]


# ═══════════════════════════════════════════════════════════════════
#  Dependency edits
# ═══════════════════════════════════════════════════════════════════


class TestValidateDependencies:
    def test_valid_edit(self):
        tasks = [_t("A"), _t("B"), _t("C", ["A"])]
        check = validate_dependencies("B", ["A", "C"], tasks)
        assert check.valid is True
        assert check.cycle_path == []

    def test_edit_closing_a_cycle_reports_path(self):
        tasks = [_t("A"), _t("B", ["A"]), _t("C", ["B"])]
        check = validate_dependencies("A", ["C"], tasks)
        assert check.valid is False
        assert check.cycle_path == ["A", "C", "B", "A"]

    def test_self_dependency_rejected(self):
        check = validate_dependencies("A", ["A"], [_t("A")])
        assert check.valid is False
        assert check.cycle_path == ["A", "A"]

    def test_edit_removing_dependencies_is_valid(self):
        tasks = [_t("A", ["B"]), _t("B")]
        assert validate_dependencies("A", [], tasks).valid is True

    def test_existing_cycle_elsewhere_reported_as_unresolved_set(self):
        tasks = [_t("A"), _t("X", ["Y"]), _t("Y", ["X"])]
        check = validate_dependencies("A", [], tasks)
        assert check.valid is False
        assert set(check.cycle_path) == {"X", "Y"}

    def test_does_not_mutate_input(self):
        tasks = [_t("A"), _t("B", ["A"])]
        validate_dependencies("A", ["B"], tasks)
        assert tasks[0].dependencies == []


# ═══════════════════════════════════════════════════════════════════
#  Task selection
# ═══════════════════════════════════════════════════════════════════


class TestTaskSelection:
    def test_executable_tasks_waits_for_incomplete_dependencies(self):
        tasks = [
            _t("A", status=TaskStatus.MERGED),
            _t("B", ["A"]),
            _t("C", ["B"]),
            _t("D", ["gone"]),
        ]
        assert [t.id for t in executable_tasks(tasks)] == ["B", "D"]

    @pytest.mark.parametrize(
        "status",
        [TaskStatus.DONE, TaskStatus.MERGED, TaskStatus.REVIEW_PASSED, TaskStatus.REVIEW_FAILED],
    )
    def test_completed_statuses_unblock(self, status: TaskStatus):
        tasks = [_t("A", status=status), _t("B", ["A"])]
        assert [t.id for t in executable_tasks(tasks)] == ["B"]

    def test_failed_dependency_blocks(self):
        tasks = [_t("A", status=TaskStatus.FAILED), _t("B", ["A"])]
        assert executable_tasks(tasks) == []

    def test_plannable_tasks_only_todo(self):
        tasks = [_t("A", status=TaskStatus.WIP), _t("B"), _t("C", status=TaskStatus.DONE)]
        assert [t.id for t in plannable_tasks(tasks)] == ["B"]
