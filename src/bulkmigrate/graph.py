"""
Dependency graph compilation and wave ordering.

Tasks are compiled once per submission into a DAG over integer node
indices. Cycle detection uses DFS colouring; wave grouping is a layered
topological sort where every task lands in the first wave after all of its
in-batch dependencies.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from bulkmigrate.exceptions import DependencyCycleError, TaskValidationError
from bulkmigrate.models import MigrationTask

logger = logging.getLogger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Ordered waves of tasks for one submission.

    Attributes:
        waves: Waves in execution order. Within a wave, tasks are ordered
            by descending priority, then submission order.
        external_dependencies: Dependencies satisfied by entities completed
            before this submission, keyed by entity type.
    """

    waves: tuple[tuple[MigrationTask, ...], ...]
    external_dependencies: dict[str, frozenset[str]]

    @property
    def task_count(self) -> int:
        return sum(len(wave) for wave in self.waves)

    def entity_order(self) -> list[str]:
        """Entity types in the order they will be started."""
        return [task.entity_type for wave in self.waves for task in wave]


class DependencyGraph:
    """
    Integer-indexed DAG compiled from a task list.

    Args:
        tasks: Tasks in submission order.
        completed_entities: Entity types already completed, which satisfy
            dependencies without being part of the graph.

    Raises:
        TaskValidationError: On an empty list, duplicate entity types,
            duplicate record ids, self-dependencies or unknown dependencies.
        DependencyCycleError: If the dependencies form a cycle.

    Example:
        >>> graph = DependencyGraph(tasks)
        >>> plan = graph.plan()
        >>> plan.entity_order()
        ['offices', 'doctors']
    """

    def __init__(
        self,
        tasks: Sequence[MigrationTask],
        completed_entities: Iterable[str] = (),
    ) -> None:
        self._tasks = list(tasks)
        self._completed = frozenset(completed_entities)
        self._index: dict[str, int] = {}
        self._edges: list[list[int]] = []
        self._external: dict[str, frozenset[str]] = {}

        self._validate()
        self._compile()
        self._check_cycles()

    @property
    def tasks(self) -> list[MigrationTask]:
        return list(self._tasks)

    def _validate(self) -> None:
        if not self._tasks:
            raise TaskValidationError(
                "At least one migration task is required",
                violations=["empty task list"],
            )

        violations: list[str] = []
        seen: set[str] = set()
        for task in self._tasks:
            if task.entity_type in seen:
                violations.append(f"duplicate entity type '{task.entity_type}'")
            seen.add(task.entity_type)

            if len(set(task.record_ids)) != len(task.record_ids):
                violations.append(f"duplicate record ids in '{task.entity_type}'")

            if task.entity_type in task.dependencies:
                violations.append(f"'{task.entity_type}' depends on itself")

        for task in self._tasks:
            for dep in sorted(task.dependencies):
                if dep not in seen and dep not in self._completed:
                    violations.append(
                        f"'{task.entity_type}' depends on unknown entity '{dep}'"
                    )

        if violations:
            raise TaskValidationError(
                f"Task validation failed: {'; '.join(violations)}",
                violations=violations,
            )

    def _compile(self) -> None:
        self._index = {task.entity_type: i for i, task in enumerate(self._tasks)}
        # Edges point from a dependency to its dependents.
        self._edges = [[] for _ in self._tasks]
        for i, task in enumerate(self._tasks):
            external: set[str] = set()
            for dep in task.dependencies:
                j = self._index.get(dep)
                if j is None:
                    external.add(dep)
                else:
                    self._edges[j].append(i)
            if external:
                self._external[task.entity_type] = frozenset(external)
        for targets in self._edges:
            targets.sort()

    def _check_cycles(self) -> None:
        color = [_WHITE] * len(self._tasks)
        parent = [-1] * len(self._tasks)

        for root in range(len(self._tasks)):
            if color[root] != _WHITE:
                continue
            # Iterative DFS; each stack entry is (node, next edge offset).
            stack: list[tuple[int, int]] = [(root, 0)]
            color[root] = _GREY
            while stack:
                node, offset = stack[-1]
                edges = self._edges[node]
                if offset < len(edges):
                    stack[-1] = (node, offset + 1)
                    nxt = edges[offset]
                    if color[nxt] == _WHITE:
                        color[nxt] = _GREY
                        parent[nxt] = node
                        stack.append((nxt, 0))
                    elif color[nxt] == _GREY:
                        raise DependencyCycleError(self._cycle_path(node, nxt, parent))
                else:
                    color[node] = _BLACK
                    stack.pop()

    def _cycle_path(self, tail: int, head: int, parent: list[int]) -> list[str]:
        # Walk parents from tail back to head, then present in dependency order.
        path = [tail]
        while path[-1] != head:
            path.append(parent[path[-1]])
        path.reverse()
        names = [self._tasks[i].entity_type for i in path]
        names.append(names[0])
        return names

    def plan(self) -> ExecutionPlan:
        """
        Group tasks into waves.

        Returns:
            ExecutionPlan whose waves respect every in-batch dependency.
        """
        in_degree = [0] * len(self._tasks)
        for targets in self._edges:
            for t in targets:
                in_degree[t] += 1

        waves: list[tuple[MigrationTask, ...]] = []
        ready = [i for i, deg in enumerate(in_degree) if deg == 0]
        while ready:
            ready.sort(key=lambda i: (-self._tasks[i].priority.rank, i))
            waves.append(tuple(self._tasks[i] for i in ready))
            next_ready: list[int] = []
            for i in ready:
                for t in self._edges[i]:
                    in_degree[t] -= 1
                    if in_degree[t] == 0:
                        next_ready.append(t)
            ready = next_ready

        logger.debug(
            "Compiled %d tasks into %d waves",
            len(self._tasks),
            len(waves),
        )
        return ExecutionPlan(waves=tuple(waves), external_dependencies=dict(self._external))


def build_execution_plan(
    tasks: Sequence[MigrationTask],
    completed_entities: Iterable[str] = (),
) -> ExecutionPlan:
    """
    Validate tasks and compute their execution waves.

    Args:
        tasks: Tasks in submission order.
        completed_entities: Entity types already completed.

    Returns:
        ExecutionPlan for the tasks.

    Raises:
        TaskValidationError: If the task list is invalid.
        DependencyCycleError: If the dependencies form a cycle.
    """
    return DependencyGraph(tasks, completed_entities).plan()


__all__ = [
    "DependencyGraph",
    "ExecutionPlan",
    "build_execution_plan",
]
