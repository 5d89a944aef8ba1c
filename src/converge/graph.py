"""Resource graph construction and validation.

This module turns a declared-state document into a dependency graph:
1. One node per declared resource
2. Explicit edges from `dependsOn`
3. Inferred edges from `${<id>.<attribute>}` references
4. Cycle detection and topological ordering (Kahn's algorithm)

References are resolved to edges here, at build time, never at apply time.

EXAMPLE:
```yaml
resources:
  network:
    kind: Microsoft.Network/virtualNetworks
    attributes: {name: vnet-hub}
  firewall:
    kind: Microsoft.Network/azureFirewalls
    attributes:
      vnetId: ${network.id}    # inferred edge firewall -> network
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .config import ConfigurationError
from .models import Document, Reference, iter_references, parse_references

logger = logging.getLogger(__name__)


class CyclicDependencyError(ConfigurationError):
    """Raised when a dependency cycle is detected."""

    pass


class UnresolvedReferenceError(ConfigurationError):
    """Raised when a reference or dependsOn names an undeclared resource."""

    pass


@dataclass(frozen=True)
class ResourceNode:
    """A declared resource. Immutable for the duration of one pass."""

    logical_id: str
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)
    explicit_dependencies: frozenset[str] = frozenset()
    inferred_dependencies: frozenset[str] = frozenset()

    @property
    def dependencies(self) -> frozenset[str]:
        return self.explicit_dependencies | self.inferred_dependencies

    def references(self) -> list[Reference]:
        return list(iter_references(self.attributes))


@dataclass(frozen=True, order=True)
class DependencyEdge:
    """`source` is applied only after `target` reaches a terminal state."""

    source: str
    target: str


def topological_order(dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Order ids so that every id comes after the ids it depends on.

    Dependencies on ids missing from the mapping are ignored. Ties are broken
    alphabetically so the result is deterministic.

    Raises:
        CyclicDependencyError: If the dependencies contain a cycle.
    """
    deps: dict[str, set[str]] = {
        node: {dep for dep in node_deps if dep in dependencies}
        for node, node_deps in dependencies.items()
    }

    # Build adjacency list (reversed - edges point to dependents)
    dependents: dict[str, list[str]] = {node: [] for node in deps}
    in_degree: dict[str, int] = {node: len(node_deps) for node, node_deps in deps.items()}
    for node, node_deps in deps.items():
        for dep in node_deps:
            dependents[dep].append(node)

    result: list[str] = []
    queue = sorted(node for node, degree in in_degree.items() if degree == 0)

    while queue:
        current = queue.pop(0)
        result.append(current)

        released = False
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
                released = True
        if released:
            queue.sort()

    if len(result) != len(deps):
        remaining = {node for node, degree in in_degree.items() if degree > 0}
        cycle = _find_cycle(remaining, deps)
        raise CyclicDependencyError(
            f"Circular dependency detected: {' -> '.join(cycle)}"
        )

    return result


def _find_cycle(remaining: set[str], deps: Mapping[str, set[str]]) -> list[str]:
    """Walk dependencies among the unsorted nodes until a node repeats."""
    start = min(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    current = start
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        # Every unsorted node has at least one unsorted dependency
        current = min(dep for dep in deps[current] if dep in remaining)
    return path[seen[current]:] + [current]


@dataclass
class ResourceGraph:
    """Directed acyclic graph of declared resources."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)

    def __contains__(self, logical_id: object) -> bool:
        return logical_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def edges(self) -> list[DependencyEdge]:
        return sorted(
            DependencyEdge(source=node.logical_id, target=dep)
            for node in self.nodes.values()
            for dep in node.dependencies
        )

    def dependencies(self, logical_id: str) -> frozenset[str]:
        return self.nodes[logical_id].dependencies

    def dependents(self, logical_id: str) -> list[str]:
        """Ids of the nodes that depend directly on logical_id."""
        return sorted(
            node.logical_id
            for node in self.nodes.values()
            if logical_id in node.dependencies
        )

    def validate(self) -> None:
        """Validate that every edge is resolvable and the graph is acyclic.

        Raises:
            UnresolvedReferenceError: If an edge targets an undeclared node.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            for reference in node.references():
                if reference.target not in self.nodes:
                    raise UnresolvedReferenceError(
                        f"Resource '{node.logical_id}' references undeclared resource "
                        f"'{reference.target}' ({reference})"
                    )
            for dep in sorted(node.explicit_dependencies):
                if dep not in self.nodes:
                    raise UnresolvedReferenceError(
                        f"Resource '{node.logical_id}' depends on undeclared resource '{dep}'"
                    )

        self.topological_sort()

    def topological_sort(self) -> list[str]:
        """Return logical ids in dependency order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        return topological_order(
            {logical_id: node.dependencies for logical_id, node in self.nodes.items()}
        )


def build_graph(document: Document) -> ResourceGraph:
    """Build and validate the resource graph for a document.

    Args:
        document: Validated declared-state document.

    Returns:
        Validated ResourceGraph.

    Raises:
        UnresolvedReferenceError: If a reference targets an undeclared resource.
        CyclicDependencyError: If the dependencies contain a cycle.
    """
    graph = ResourceGraph()

    for logical_id, spec in document.resources.items():
        attributes = parse_references(spec.attributes)
        inferred = frozenset(ref.target for ref in iter_references(attributes))
        graph.nodes[logical_id] = ResourceNode(
            logical_id=logical_id,
            kind=spec.kind,
            attributes=attributes,
            explicit_dependencies=frozenset(spec.depends_on),
            inferred_dependencies=inferred,
        )

    graph.validate()

    logger.info(
        "Built resource graph",
        extra={"node_count": len(graph.nodes), "edge_count": len(graph.edges)},
    )
    return graph
