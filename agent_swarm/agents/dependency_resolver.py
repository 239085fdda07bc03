"""Dependency resolution for subagent task sets.

Turns a flat list of SubagentTask records into parallel-safe batches:

    build graph -> detect cycles -> Kahn's sort (priority tie-break) -> level batches

A task's level is one more than the highest level among its dependencies,
so every task lands in a strictly later batch than anything it depends on.
The resolver keeps no state between calls; a graph is rebuilt on each one.
"""

from collections.abc import Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass, field

import structlog

from agent_swarm.agents.errors import (
    CircularDependencyError,
    DanglingDependencyError,
    DependencyError,
)
from agent_swarm.agents.types import SubagentTask

logger = structlog.get_logger()

TaskSet = Sequence[SubagentTask] | Mapping[str, SubagentTask]


@dataclass
class DependencyNode:
    """A task in the dependency graph.

    Attributes:
        task_id: Id of the task this node represents
        dependencies: Ids this task waits for (forward edges)
        dependents: Ids waiting for this task (reverse edges)
        level: Batch index, computed after sorting; -1 until then
    """

    task_id: str
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    level: int = -1


@dataclass
class DependencyGraph:
    """Full resolution result, including cycle diagnostics."""

    nodes: dict[str, DependencyNode]
    execution_order: list[list[str]]
    has_cycles: bool
    cycles: list[list[str]] = field(default_factory=list)


def _as_task_list(tasks: TaskSet) -> list[SubagentTask]:
    if isinstance(tasks, Mapping):
        return list(tasks.values())
    return list(tasks)


class DependencyResolver:
    """Computes execution order for a set of interdependent tasks.

    Usage:
        >>> resolver = DependencyResolver()
        >>> resolver.resolve_dependencies(tasks)
        [['scaffold'], ['api', 'ui'], ['integration-tests']]
    """

    def resolve_dependencies(self, tasks: Sequence[SubagentTask]) -> list[list[str]]:
        """Resolve tasks into ordered batches of ids.

        Tasks within a batch have no dependencies on each other and are
        sorted by descending priority.

        Args:
            tasks: The task set to order

        Returns:
            Batches of task ids; empty input yields an empty list

        Raises:
            DanglingDependencyError: A dependency id is not in the task set
            CircularDependencyError: The dependencies contain a cycle
        """
        if not tasks:
            return []

        graph = self._build_graph(tasks)

        cycles = self._find_cycles(graph)
        if cycles:
            involved = list(dict.fromkeys(task_id for cycle in cycles for task_id in cycle))
            logger.warning("circular_dependency_detected", task_ids=involved)
            raise CircularDependencyError(involved)

        priorities = {task.id: task.priority for task in tasks}
        order = self._topological_sort(graph, priorities)
        batches = self._group_into_batches(order, graph, priorities)

        logger.debug(
            "dependencies_resolved",
            task_count=len(tasks),
            batch_count=len(batches),
        )
        return batches

    def validate_dependencies(self, tasks: Sequence[SubagentTask]) -> bool:
        """Return True if the tasks have no dangling references and no cycles."""
        try:
            self.resolve_dependencies(tasks)
        except DependencyError:
            return False
        return True

    def get_dependency_graph(self, tasks: Sequence[SubagentTask]) -> DependencyGraph:
        """Build the graph and report cycles instead of raising on them.

        When cycles exist, ``execution_order`` is empty and ``cycles`` lists
        each detected cycle as a closed path (first id repeated at the end).
        Overlapping cycles may all be reported; the list is a diagnostic aid
        and not a minimal cycle basis.

        Raises:
            DanglingDependencyError: A dependency id is not in the task set
        """
        graph = self._build_graph(tasks)

        cycles = self._find_cycles(graph)
        if cycles:
            return DependencyGraph(
                nodes=graph,
                execution_order=[],
                has_cycles=True,
                cycles=cycles,
            )

        priorities = {task.id: task.priority for task in tasks}
        order = self._topological_sort(graph, priorities)
        return DependencyGraph(
            nodes=graph,
            execution_order=self._group_into_batches(order, graph, priorities),
            has_cycles=False,
        )

    def can_execute_task(
        self,
        task_id: str,
        completed: Collection[str],
        tasks: TaskSet,
    ) -> bool:
        """Return True if every dependency of ``task_id`` is in ``completed``.

        Unknown task ids are never executable.
        """
        task = next((t for t in _as_task_list(tasks) if t.id == task_id), None)
        if task is None:
            return False
        return all(dep in completed for dep in task.dependencies)

    def get_ready_tasks(
        self,
        tasks: TaskSet,
        completed: Collection[str],
    ) -> list[SubagentTask]:
        """Return tasks that are not completed and whose dependencies all are.

        The result is ordered by descending priority; ties keep input order.
        """
        ready = [
            task
            for task in _as_task_list(tasks)
            if task.id not in completed
            and all(dep in completed for dep in task.dependencies)
        ]
        return sorted(ready, key=lambda task: -task.priority)

    def get_task_level(self, task_id: str, tasks: Sequence[SubagentTask]) -> int:
        """Return the batch index of a task, or -1 if it is not in the set."""
        for level, batch in enumerate(self.resolve_dependencies(tasks)):
            if task_id in batch:
                return level
        return -1

    def get_parallel_tasks(self, task_id: str, tasks: Sequence[SubagentTask]) -> list[str]:
        """Return the other tasks that share a batch with ``task_id``."""
        for batch in self.resolve_dependencies(tasks):
            if task_id in batch:
                return [other for other in batch if other != task_id]
        return []

    def _build_graph(self, tasks: Iterable[SubagentTask]) -> dict[str, DependencyNode]:
        """Create nodes with forward and reverse edges.

        Raises:
            DependencyError: Two tasks share an id
            DanglingDependencyError: A dependency id is not in the task set
        """
        graph: dict[str, DependencyNode] = {}
        for task in tasks:
            if task.id in graph:
                raise DependencyError(f"Duplicate task id '{task.id}'")
            # Ordered set: keep first occurrence of each dependency
            graph[task.id] = DependencyNode(
                task_id=task.id,
                dependencies=list(dict.fromkeys(task.dependencies)),
            )

        for node in graph.values():
            for dep_id in node.dependencies:
                dep_node = graph.get(dep_id)
                if dep_node is None:
                    raise DanglingDependencyError(node.task_id, dep_id)
                dep_node.dependents.append(node.task_id)

        return graph

    def _find_cycles(self, graph: dict[str, DependencyNode]) -> list[list[str]]:
        """Find cycles with an iterative DFS over ``dependents`` edges.

        A back-edge to a node on the active path closes a cycle; the slice of
        the path from that node onward is recorded. Rotations of an already
        reported cycle are dropped.
        """
        cycles: list[list[str]] = []
        seen_keys: set[tuple[str, ...]] = set()
        visited: set[str] = set()

        for root_id in graph:
            if root_id in visited:
                continue

            visited.add(root_id)
            path = [root_id]
            on_path = {root_id}
            stack = [(root_id, iter(graph[root_id].dependents))]

            while stack:
                node_id, dependents = stack[-1]
                for dependent_id in dependents:
                    if dependent_id not in visited:
                        visited.add(dependent_id)
                        path.append(dependent_id)
                        on_path.add(dependent_id)
                        stack.append((dependent_id, iter(graph[dependent_id].dependents)))
                        break
                    if dependent_id in on_path:
                        members = path[path.index(dependent_id):]
                        pivot = members.index(min(members))
                        key = tuple(members[pivot:] + members[:pivot])
                        if key not in seen_keys:
                            seen_keys.add(key)
                            cycles.append(members + [dependent_id])
                else:
                    stack.pop()
                    path.pop()
                    on_path.discard(node_id)

        return cycles

    def _topological_sort(
        self,
        graph: dict[str, DependencyNode],
        priorities: dict[str, float],
    ) -> list[str]:
        """Kahn's algorithm with a descending-priority queue.

        The queue is re-sorted only after new nodes were enqueued, not on
        every pop.
        """
        in_degree = {node_id: len(node.dependencies) for node_id, node in graph.items()}
        queue = [node_id for node_id, degree in in_degree.items() if degree == 0]
        needs_resorting = True
        result: list[str] = []

        while queue:
            if needs_resorting:
                queue.sort(key=lambda node_id: -priorities.get(node_id, 0))
                needs_resorting = False

            node_id = queue.pop(0)
            result.append(node_id)

            for dependent_id in graph[node_id].dependents:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    queue.append(dependent_id)
                    needs_resorting = True

        if len(result) != len(graph):
            processed = set(result)
            unprocessed = [node_id for node_id in graph if node_id not in processed]
            raise CircularDependencyError(unprocessed)

        return result

    def _group_into_batches(
        self,
        order: list[str],
        graph: dict[str, DependencyNode],
        priorities: dict[str, float],
    ) -> list[list[str]]:
        """Assign levels along the sorted order and group by level."""
        batches: list[list[str]] = []
        for node_id in order:
            node = graph[node_id]
            node.level = 1 + max((graph[dep].level for dep in node.dependencies), default=-1)
            if node.level == len(batches):
                batches.append([])
            batches[node.level].append(node_id)

        for batch in batches:
            batch.sort(key=lambda node_id: -priorities.get(node_id, 0))
        return batches
