"""
Unit tests for dependency graph compilation and wave ordering.

Tests cover:
- Wave grouping and in-wave priority ordering
- Validation of duplicate, self and unknown dependencies
- Cycle detection with the offending path
- Dependencies satisfied by previously completed entities
"""

import pytest

from bulkmigrate.exceptions import DependencyCycleError, TaskValidationError
from bulkmigrate.graph import DependencyGraph, build_execution_plan
from bulkmigrate.models import MigrationTask, Priority


def _task(entity, deps=(), priority=Priority.MEDIUM, ids=(1, 2, 3)):
    return MigrationTask(entity, list(ids), priority=priority, dependencies=set(deps))


class TestExecutionPlan:
    """Tests for wave planning."""

    def test_dependency_waves(self):
        """Test that each task lands in the first wave after its dependencies."""
        plan = build_execution_plan(
            [
                _task("appointments", deps={"doctors", "patients"}),
                _task("doctors", deps={"offices"}),
                _task("offices"),
                _task("patients", deps={"offices"}),
            ]
        )

        waves = [[t.entity_type for t in wave] for wave in plan.waves]
        assert waves == [["offices"], ["doctors", "patients"], ["appointments"]]
        assert plan.task_count == 4

    def test_priority_orders_tasks_within_a_wave(self):
        """Test that priority outranks submission order inside a wave."""
        plan = build_execution_plan(
            [
                _task("low", priority=Priority.LOW),
                _task("medium"),
                _task("critical", priority=Priority.CRITICAL),
                _task("medium_2"),
            ]
        )

        assert plan.entity_order() == ["critical", "medium", "medium_2", "low"]

    def test_completed_entities_satisfy_dependencies(self):
        """Test that a dependency outside the list is accepted when already completed."""
        plan = build_execution_plan([_task("doctors", deps={"offices"})], {"offices"})

        assert plan.entity_order() == ["doctors"]
        assert plan.external_dependencies == {"doctors": frozenset({"offices"})}


class TestValidation:
    """Tests for task list validation."""

    def test_empty_list_rejected(self):
        with pytest.raises(TaskValidationError, match="At least one"):
            build_execution_plan([])

    def test_duplicate_entity_rejected(self):
        with pytest.raises(TaskValidationError) as exc_info:
            build_execution_plan([_task("offices"), _task("offices")])

        assert "duplicate entity type 'offices'" in exc_info.value.violations

    def test_duplicate_record_ids_rejected(self):
        with pytest.raises(TaskValidationError, match="duplicate record ids"):
            build_execution_plan([_task("offices", ids=(1, 2, 2))])

    def test_self_dependency_rejected(self):
        with pytest.raises(TaskValidationError, match="depends on itself"):
            build_execution_plan([_task("offices", deps={"offices"})])

    def test_unknown_dependency_rejected(self):
        """Test that a dependency neither submitted nor completed is rejected."""
        with pytest.raises(TaskValidationError, match="unknown entity 'offices'"):
            build_execution_plan([_task("doctors", deps={"offices"})])

    def test_all_violations_reported_together(self):
        with pytest.raises(TaskValidationError) as exc_info:
            build_execution_plan(
                [_task("a", deps={"a"}), _task("b", deps={"missing"}), _task("b")]
            )

        assert len(exc_info.value.violations) == 3


class TestCycleDetection:
    """Tests for dependency cycle detection."""

    def test_two_node_cycle(self):
        """Test that A -> B -> A is rejected with its path."""
        with pytest.raises(DependencyCycleError) as exc_info:
            build_execution_plan([_task("a", deps={"b"}), _task("b", deps={"a"})])

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b"}
        assert "Circular dependency detected" in str(exc_info.value)

    def test_longer_cycle_behind_valid_tasks(self):
        """Test that a cycle is found even when it hangs off an acyclic prefix."""
        with pytest.raises(DependencyCycleError) as exc_info:
            build_execution_plan(
                [
                    _task("root"),
                    _task("x", deps={"root", "z"}),
                    _task("y", deps={"x"}),
                    _task("z", deps={"y"}),
                ]
            )

        assert set(exc_info.value.cycle) == {"x", "y", "z"}
        assert len(exc_info.value.cycle) == 4

    def test_cycle_is_a_validation_error(self):
        assert issubclass(DependencyCycleError, TaskValidationError)

    def test_graph_exposes_tasks(self):
        tasks = [_task("offices"), _task("doctors", deps={"offices"})]
        graph = DependencyGraph(tasks)

        assert graph.tasks == tasks
