"""Tests for resource graph construction and ordering."""

from __future__ import annotations

import pytest

from converge.graph import (
    CyclicDependencyError,
    DependencyEdge,
    UnresolvedReferenceError,
    build_graph,
    topological_order,
)
from converge.spec_loader import parse_document

KIND = "Test.Fake/widgets"


def document(resources: dict):
    return parse_document({"resources": resources})


class TestTopologicalOrder:
    """Tests for topological_order."""

    def test_dependencies_first(self) -> None:
        """Test that dependencies precede dependents."""
        order = topological_order({"c": ["b"], "b": ["a"], "a": []})

        assert order == ["a", "b", "c"]

    def test_deterministic_tie_break(self) -> None:
        """Test that independent ids are ordered alphabetically."""
        assert topological_order({"z": [], "m": [], "a": []}) == ["a", "m", "z"]

    def test_unknown_dependencies_ignored(self) -> None:
        """Test that ids outside the mapping do not block ordering."""
        assert topological_order({"a": ["outside"]}) == ["a"]

    def test_cycle_detected(self) -> None:
        """Test that a cycle names its members."""
        with pytest.raises(CyclicDependencyError, match="Circular dependency") as exc_info:
            topological_order({"a": ["b"], "b": ["c"], "c": ["a"]})

        assert "a -> b -> c -> a" in str(exc_info.value)

    def test_self_dependency(self) -> None:
        """Test that a self-dependency is a cycle."""
        with pytest.raises(CyclicDependencyError, match="a -> a"):
            topological_order({"a": ["a"]})


class TestBuildGraph:
    """Tests for build_graph."""

    def test_explicit_and_inferred_edges(self) -> None:
        """Test that dependsOn and references both become edges."""
        graph = build_graph(
            document(
                {
                    "network": {"kind": KIND, "attributes": {"name": "vnet"}},
                    "logs": {"kind": KIND, "attributes": {"name": "logs"}},
                    "firewall": {
                        "kind": KIND,
                        "dependsOn": ["logs"],
                        "attributes": {"name": "fw", "vnetId": "${network.id}"},
                    },
                }
            )
        )

        firewall = graph.nodes["firewall"]
        assert firewall.explicit_dependencies == {"logs"}
        assert firewall.inferred_dependencies == {"network"}
        assert graph.edges == [
            DependencyEdge(source="firewall", target="logs"),
            DependencyEdge(source="firewall", target="network"),
        ]
        assert graph.dependents("network") == ["firewall"]
        assert graph.topological_sort()[-1] == "firewall"

    def test_unresolved_reference(self) -> None:
        """Test that a reference to an undeclared id is rejected."""
        with pytest.raises(UnresolvedReferenceError, match="ghost"):
            build_graph(
                document({"a": {"kind": KIND, "attributes": {"x": "${ghost.id}"}}})
            )

    def test_unresolved_depends_on(self) -> None:
        """Test that dependsOn on an undeclared id is rejected."""
        with pytest.raises(UnresolvedReferenceError, match="ghost"):
            build_graph(document({"a": {"kind": KIND, "dependsOn": ["ghost"]}}))

    def test_reference_cycle(self) -> None:
        """Test that a reference cycle is rejected at build time."""
        with pytest.raises(CyclicDependencyError):
            build_graph(
                document(
                    {
                        "a": {"kind": KIND, "attributes": {"x": "${b.id}"}},
                        "b": {"kind": KIND, "attributes": {"x": "${a.id}"}},
                    }
                )
            )

    def test_self_reference(self) -> None:
        """Test that a self-reference is rejected."""
        with pytest.raises(CyclicDependencyError):
            build_graph(document({"a": {"kind": KIND, "attributes": {"x": "${a.name}"}}}))
