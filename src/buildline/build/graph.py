"""Deterministic package dependency graph for workspace build ordering."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence, Set
from heapq import heapify, heappop, heappush
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from buildline.domain.models import WorkspacePackage


class CycleError(ValueError):
    """Raised when workspace packages depend on each other cyclically."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "package graph contains at least one cycle"
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"package graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class UnknownDependencyError(ValueError):
    """Raised when a package depends on a package the workspace does not declare."""

    def __init__(self, package: str, dependency: str) -> None:
        self.package = package
        self.dependency = dependency
        super().__init__(f"package {package!r} depends on undeclared package {dependency!r}")


class PackageGraph:
    """Directed graph where an edge ``a -> b`` means ``b`` depends on ``a``."""

    __slots__ = ("_nodes", "_dependents", "_dependencies")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        self._nodes: set[str] = set()
        self._dependents: dict[str, set[str]] = {}
        self._dependencies: dict[str, set[str]] = {}

        for node in nodes or ():
            self.add_node(node)
        for dependency, dependent in edges or ():
            self.add_edge(dependency, dependent)

    @classmethod
    def from_packages(cls, packages: Iterable[WorkspacePackage]) -> PackageGraph:
        """Build the graph from package declarations, rejecting unknown dependencies."""

        materialized = tuple(packages)
        graph = cls(nodes=(package.name for package in materialized))
        for package in materialized:
            for dependency in package.depends_on:
                if dependency not in graph._nodes:
                    raise UnknownDependencyError(package.name, dependency)
                graph.add_edge(dependency, package.name)
        return graph

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._nodes))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All ``(dependency, dependent)`` pairs in deterministic order."""
        return tuple(
            (dependency, dependent)
            for dependency in sorted(self._nodes)
            for dependent in sorted(self._dependents[dependency])
        )

    def add_node(self, node: str) -> None:
        if not node:
            raise ValueError("package name must be non-empty")
        if node in self._nodes:
            return
        self._nodes.add(node)
        self._dependents[node] = set()
        self._dependencies[node] = set()

    def add_edge(self, dependency: str, dependent: str) -> None:
        """Record that ``dependent`` must build after ``dependency``."""
        self.add_node(dependency)
        self.add_node(dependent)
        self._dependents[dependency].add(dependent)
        self._dependencies[dependent].add(dependency)

    def topological_sort(self) -> tuple[str, ...]:
        """Return a deterministic build order or raise ``CycleError``."""
        indegree = {node: len(self._dependencies[node]) for node in self._nodes}
        ready = [node for node, degree in indegree.items() if degree == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            node = heappop(ready)
            order.append(node)
            for dependent in sorted(self._dependents[node]):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heappush(ready, dependent)

        if len(order) != len(self._nodes):
            raise CycleError(self.detect_cycles())
        return tuple(order)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect dependency cycles.

        Returns closed paths, e.g. ``("a", "b", "a")``.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in sorted(self._nodes):
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = 0
            frames: list[tuple[str, Iterator[str]]] = [
                (start, iter(sorted(self._dependents[start])))
            ]

            while frames:
                node, dependent_iter = frames[-1]
                try:
                    dependent = next(dependent_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                dependent_state = state.get(dependent, 0)
                if dependent_state == 0:
                    state[dependent] = 1
                    stack_index[dependent] = len(stack)
                    stack.append(dependent)
                    frames.append((dependent, iter(sorted(self._dependents[dependent]))))
                elif dependent_state == 1:
                    cycle = tuple(stack[stack_index[dependent] :] + [dependent])
                    cycles[_canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def dependencies_of(self, node: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_node_exists(node)
        if not transitive:
            return tuple(sorted(self._dependencies[node]))
        return self._closure(node, self._dependencies)

    def dependents_of(self, node: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_node_exists(node)
        if not transitive:
            return tuple(sorted(self._dependents[node]))
        return self._closure(node, self._dependents)

    def runnable(self, succeeded: Set[str], *, exclude: Set[str] = frozenset()) -> tuple[str, ...]:
        """Nodes not yet handled whose dependencies have all succeeded."""
        return tuple(
            node
            for node in sorted(self._nodes)
            if node not in succeeded
            and node not in exclude
            and self._dependencies[node].issubset(succeeded)
        )

    def serialize(self) -> dict[str, object]:
        return {
            "nodes": list(self.nodes),
            "edges": [list(edge) for edge in self.edges],
        }

    def _closure(self, node: str, adjacency: dict[str, set[str]]) -> tuple[str, ...]:
        visited: set[str] = set()
        pending = list(adjacency[node])
        while pending:
            current = pending.pop()
            if current in visited:
                continue
            visited.add(current)
            pending.extend(adjacency[current] - visited)
        return tuple(sorted(visited))

    def _assert_node_exists(self, node: str) -> None:
        if node not in self._nodes:
            raise KeyError(f"unknown package: {node}")


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])
    best = min(core[offset:] + core[:offset] for offset in range(len(core)))
    return best + (best[0],)


__all__ = ["CycleError", "PackageGraph", "UnknownDependencyError"]
