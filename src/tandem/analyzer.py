"""Dependency graph construction and topological leveling of tasks."""

from __future__ import annotations

from dataclasses import dataclass, field

from tandem import log
from tandem.tasks.model import Task


@dataclass
class TaskNode:
    task: Task
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)
    predicted_files: set[str] = field(default_factory=set)


@dataclass
class DependencyGraph:
    """Task nodes keyed by id plus the derived execution levels.

    Every task id appears in exactly one level. ``has_cycle`` is set when the
    last level holds the residue of a dependency cycle.
    """

    nodes: dict[str, TaskNode] = field(default_factory=dict)
    levels: list[list[str]] = field(default_factory=list)
    sequential_tasks: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    has_cycle: bool = False

    def task(self, task_id: str) -> Task:
        return self.nodes[task_id].task

    def tasks(self) -> list[Task]:
        return [node.task for node in self.nodes.values()]

    def level_of(self, task_id: str) -> int:
        for index, level in enumerate(self.levels):
            if task_id in level:
                return index
        raise KeyError(task_id)

    def dependencies_of(self, task_id: str) -> set[str]:
        return set(self.nodes[task_id].dependencies)


class TaskAnalyzer:
    """Builds a :class:`DependencyGraph` from declared task dependencies."""

    def build_graph(self, tasks: list[Task]) -> DependencyGraph:
        graph = DependencyGraph()

        for task in tasks:
            if task.id in graph.nodes:
                graph.warnings.append(f"Duplicate task id {task.id} ignored")
                log.warn(f"Duplicate task id {task.id}; keeping the first definition")
                continue
            graph.nodes[task.id] = TaskNode(task=task, predicted_files=set(task.declared_files))

        for task_id, node in graph.nodes.items():
            for dep in node.task.declared_dependencies:
                if dep not in graph.nodes:
                    message = f"Task {task_id} depends on unknown task {dep}; ignoring"
                    graph.warnings.append(message)
                    log.warn(message)
                    continue
                node.dependencies.add(dep)
                graph.nodes[dep].dependents.add(task_id)

        graph.levels = self._topological_levels(graph)
        graph.sequential_tasks = [
            task_id
            for task_id, node in graph.nodes.items()
            if node.dependencies and node.dependents
        ]
        return graph

    def _topological_levels(self, graph: DependencyGraph) -> list[list[str]]:
        """Kahn's algorithm, extracting every zero in-degree node per step."""
        in_degree = {task_id: len(node.dependencies) for task_id, node in graph.nodes.items()}
        remaining = list(graph.nodes)
        levels: list[list[str]] = []

        while remaining:
            level = [task_id for task_id in remaining if in_degree[task_id] == 0]
            if not level:
                message = f"Circular dependency detected among: {', '.join(remaining)}"
                graph.warnings.append(message)
                graph.has_cycle = True
                log.warn(message)
                levels.append(list(remaining))
                break

            for task_id in level:
                for dependent in graph.nodes[task_id].dependents:
                    in_degree[dependent] -= 1
            remaining = [task_id for task_id in remaining if task_id not in level]
            levels.append(level)

        return levels

    def generate_summary(self, graph: DependencyGraph) -> str:
        total = len(graph.nodes)
        lines = [
            "## Task Analysis Summary",
            "",
            f"Total tasks: {total}",
            f"Dependency levels: {len(graph.levels)}",
            f"Sequential (chain interior): {len(graph.sequential_tasks)}",
            "",
            "### Levels",
        ]
        for index, level in enumerate(graph.levels):
            lines.append(f"- level {index}: {', '.join(level)}")

        if graph.sequential_tasks:
            lines += ["", "### Sequential Tasks"]
            for task_id in graph.sequential_tasks:
                desc = graph.task(task_id).description
                short = desc[:50] + ("..." if len(desc) > 50 else "")
                lines.append(f"- {task_id}: {short}")

        if graph.warnings:
            lines += ["", "### Warnings"]
            lines += [f"- {w}" for w in graph.warnings]

        return "\n".join(lines)
