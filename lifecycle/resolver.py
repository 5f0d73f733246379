"""
Keystone - Dependency Resolver

Orders service descriptors so every dependency precedes its dependents.

Uses Kahn's algorithm with a FIFO queue seeded in input order, so services
without a dependency relation keep their original relative order and the
result is deterministic for a given input.
"""
from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional, Sequence

from core.errors import CircularDependencyError, DependencyError
from lifecycle.descriptors import ServiceDescriptor


class DependencyResolver:
    """Topological sorter for service descriptors."""

    def resolve(self, descriptors: Sequence[ServiceDescriptor]) -> List[ServiceDescriptor]:
        """
        Return ``descriptors`` in initialization order.

        Raises:
            DependencyError: a dependency names an undefined service
            CircularDependencyError: the graph contains a cycle
        """
        graph: Dict[str, ServiceDescriptor] = {}
        for descriptor in descriptors:
            graph[descriptor.name] = descriptor

        in_degree: Dict[str, int] = {name: 0 for name in graph}
        dependents: Dict[str, List[str]] = {name: [] for name in graph}

        for name, descriptor in graph.items():
            for dep in descriptor.dependencies:
                if dep not in graph:
                    raise DependencyError(
                        f"Service {name} depends on unknown service: {dep}",
                        service=name,
                        dependency=dep,
                    ).with_context(service=name, dependency=dep, phase="dependency-resolution")
                in_degree[name] += 1
                dependents[dep].append(name)

        queue: Deque[str] = deque(name for name, degree in in_degree.items() if degree == 0)
        result: List[ServiceDescriptor] = []

        while queue:
            current = queue.popleft()
            result.append(graph[current])

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(graph):
            resolved = {d.name for d in result}
            remaining = [name for name in graph if name not in resolved]
            cycle = find_cycle(descriptors) or []
            described = " -> ".join(cycle) if cycle else ", ".join(remaining)
            raise CircularDependencyError(
                f"Circular dependency detected in service definitions: {described}",
                sorted_services=[d.name for d in result],
                remaining_services=remaining,
                cycle=cycle,
            ).with_context(
                sorted_services=[d.name for d in result],
                remaining_services=remaining,
                phase="dependency-resolution",
            )

        return result


def topological_sort(descriptors: Sequence[ServiceDescriptor]) -> List[ServiceDescriptor]:
    """Module-level shortcut for ``DependencyResolver().resolve``."""
    return DependencyResolver().resolve(descriptors)


def find_cycle(descriptors: Sequence[ServiceDescriptor]) -> Optional[List[str]]:
    """
    Return one dependency cycle as a closed path, e.g. ``["x", "y", "x"]``.

    Unknown dependency names are ignored. Returns None for an acyclic graph.
    """
    graph: Dict[str, Sequence[str]] = {d.name: d.dependencies for d in descriptors}
    visiting: Dict[str, int] = {}
    done: set = set()
    path: List[str] = []

    def visit(name: str) -> Optional[List[str]]:
        visiting[name] = len(path)
        path.append(name)
        for dep in graph[name]:
            if dep not in graph or dep in done:
                continue
            if dep in visiting:
                return path[visiting[dep]:] + [dep]
            found = visit(dep)
            if found:
                return found
        path.pop()
        del visiting[name]
        done.add(name)
        return None

    for name in graph:
        if name not in done:
            found = visit(name)
            if found:
                return found
    return None
