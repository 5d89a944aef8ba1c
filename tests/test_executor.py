"""Tests for dependency-ordered execution."""

from __future__ import annotations

import asyncio

import pytest

from converge.diff import ActionType, ChangeSet, compute_changeset, compute_destroy_changeset
from converge.executor import Executor, NodeStatus, OutputNotFoundError
from converge.graph import build_graph
from converge.provider import ProviderError, ProviderRegistry, ProviderTimeoutError
from converge.spec_loader import parse_document
from converge.state import MemoryStateStore, StateRecord, StaleStateError
from provider_mock import FakeProvider

KIND = "Test.Fake/widgets"


def widget(name: str, depends_on: list[str] | None = None, **attributes) -> dict:
    declaration = {"kind": KIND, "attributes": {"name": name, **attributes}}
    if depends_on:
        declaration["dependsOn"] = depends_on
    return declaration


def plan(resources: dict, store: MemoryStateStore) -> ChangeSet:
    graph = build_graph(parse_document({"resources": resources}))
    return compute_changeset(graph, store.list_all())


def executor(store, registry, **kwargs) -> Executor:
    kwargs.setdefault("operation_timeout_seconds", 5)
    return Executor(store, registry, **kwargs)


CHAIN = {
    "network": widget("network"),
    "subnet": widget("subnet", networkId="${network.id}"),
    "app": widget("app", subnetName="${subnet.name}"),
    "logs": widget("logs"),
}


class TestOrdering:
    """Dependencies complete before dependents start."""

    @pytest.mark.asyncio
    async def test_creates_respect_edges(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that every dependency finishes before its dependent starts."""
        changeset = plan(CHAIN, store)

        result = await executor(store, registry).execute(changeset)

        assert result.exit_code == 0
        for dependent, dependency in (("subnet", "network"), ("app", "subnet")):
            assert (
                fake_provider.call("create", dependency).finished
                < fake_provider.call("create", dependent).started
            )

    @pytest.mark.asyncio
    async def test_references_resolved_from_outputs(
        self, store: MemoryStateStore, registry: ProviderRegistry
    ) -> None:
        """Test that references receive values produced earlier in the pass."""
        await executor(store, registry).execute(plan(CHAIN, store))

        subnet = store.get("subnet")
        assert subnet.applied["networkId"] == FakeProvider.handle(KIND, "network")
        assert subnet.dependencies == ["network"]
        assert store.get("app").applied["subnetName"] == "subnet"

    @pytest.mark.asyncio
    async def test_apply_then_plan_is_noop(
        self, store: MemoryStateStore, registry: ProviderRegistry
    ) -> None:
        """Test convergence: a second plan after a clean apply has no changes."""
        await executor(store, registry).execute(plan(CHAIN, store))

        assert not plan(CHAIN, store).has_changes

    @pytest.mark.asyncio
    async def test_deletes_dependents_first(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that a dependent is deleted before what it depends on."""
        await executor(store, registry).execute(plan(CHAIN, store))

        result = await executor(store, registry).execute(plan({}, store))

        assert result.exit_code == 0
        assert store.list_all() == []
        assert (
            fake_provider.call("delete", "app").finished
            < fake_provider.call("delete", "subnet").started
        )
        assert (
            fake_provider.call("delete", "subnet").finished
            < fake_provider.call("delete", "network").started
        )

    @pytest.mark.asyncio
    async def test_concurrency_bound(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that in-flight calls never exceed the concurrency limit."""
        resources = {f"w{i}": widget(f"w{i}") for i in range(6)}
        for i in range(6):
            fake_provider.set_latency(f"w{i}", 0.05)

        result = await executor(store, registry, concurrency=2).execute(plan(resources, store))

        assert result.exit_code == 0
        assert fake_provider.max_in_flight <= 2


class TestUpdatesAndDeletes:
    """Tests for update and delete actions."""

    @pytest.mark.asyncio
    async def test_update_in_place(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that an update keeps the handle and advances the version."""
        await executor(store, registry).execute(plan({"a": widget("a", size=1)}, store))
        before = store.get("a")

        result = await executor(store, registry).execute(plan({"a": widget("a", size=2)}, store))

        after = store.get("a")
        assert result.results["a"].action == ActionType.UPDATE
        assert result.results["a"].status == NodeStatus.APPLIED
        assert after.handle == before.handle
        assert after.version > before.version
        assert after.applied["size"] == 2
        assert fake_provider.resources[after.handle]["size"] == 2

    @pytest.mark.asyncio
    async def test_delete_of_missing_resource_succeeds(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that a resource already gone is simply forgotten."""
        await executor(store, registry).execute(plan({"a": widget("a")}, store))
        fake_provider.remove(store.get("a").handle)

        result = await executor(store, registry).execute(plan({}, store))

        assert result.results["a"].status == NodeStatus.APPLIED
        assert store.get("a") is None

    @pytest.mark.asyncio
    async def test_recorded_dependencies_follow_depends_on(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that reversing a dependsOn edge rewrites state without a remote call."""
        await executor(store, registry).execute(
            plan({"a": widget("a", depends_on=["b"]), "b": widget("b")}, store)
        )

        reversed_edge = {"a": widget("a"), "b": widget("b", depends_on=["a"], size=2)}

        result = await executor(store, registry).execute(plan(reversed_edge, store))

        assert result.exit_code == 0
        assert result.results["a"].action == ActionType.UPDATE
        assert store.get("a").dependencies == []
        assert store.get("b").dependencies == ["a"]
        assert fake_provider.names("update") == ["b"]
        assert not plan(reversed_edge, store).has_changes
        assert [c.logical_id for c in compute_destroy_changeset(store.list_all())] == ["b", "a"]


class TestFailures:
    """Failure containment and skip propagation."""

    @pytest.mark.asyncio
    async def test_failed_dependency_skips_dependents(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that A failing skips B while independent C still applies."""
        fake_provider.fail_on("create", "a", ProviderError("quota exceeded"))
        resources = {
            "a": widget("a"),
            "b": widget("b", aId="${a.id}"),
            "c": widget("c"),
        }

        result = await executor(store, registry).execute(plan(resources, store))

        assert result.results["a"].status == NodeStatus.FAILED
        assert isinstance(result.results["a"].error, ProviderError)
        assert result.results["b"].status == NodeStatus.SKIPPED
        assert result.results["b"].blocked_by == "a"
        assert result.results["c"].status == NodeStatus.APPLIED
        assert result.exit_code == 1
        assert sorted(fake_provider.names("create")) == ["a", "c"]
        assert [r.logical_id for r in store.list_all()] == ["c"]

    @pytest.mark.asyncio
    async def test_skips_cascade_transitively(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that a skip propagates down the chain."""
        fake_provider.fail_on("create", "network", ProviderError("denied"))

        result = await executor(store, registry).execute(plan(CHAIN, store))

        assert result.results["subnet"].status == NodeStatus.SKIPPED
        assert result.results["app"].status == NodeStatus.SKIPPED
        assert result.results["app"].blocked_by == "subnet"
        assert result.results["logs"].status == NodeStatus.APPLIED

    @pytest.mark.asyncio
    async def test_timeout_fails_node(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that a slow provider call fails with ProviderTimeoutError."""
        fake_provider.set_latency("a", 0.5)
        resources = {"a": widget("a"), "b": widget("b", depends_on=["a"])}

        result = await executor(store, registry, operation_timeout_seconds=0.05).execute(
            plan(resources, store)
        )

        assert result.results["a"].status == NodeStatus.FAILED
        assert isinstance(result.results["a"].error, ProviderTimeoutError)
        assert result.results["b"].status == NodeStatus.SKIPPED
        assert store.get("a") is None

    @pytest.mark.asyncio
    async def test_timeout_leaves_independent_nodes_running(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that an abandoned slow call does not starve an unrelated node."""
        fake_provider.set_latency("slow", 1.0)
        resources = {"slow": widget("slow"), "z": widget("z")}

        result = await executor(
            store, registry, concurrency=1, operation_timeout_seconds=0.2
        ).execute(plan(resources, store))

        assert result.results["slow"].status == NodeStatus.FAILED
        assert isinstance(result.results["slow"].error, ProviderTimeoutError)
        assert result.results["z"].status == NodeStatus.APPLIED
        assert store.get("z") is not None

    @pytest.mark.asyncio
    async def test_missing_output_fails_dependent(
        self, store: MemoryStateStore, registry: ProviderRegistry
    ) -> None:
        """Test that a reference to an output the provider never returned fails."""
        resources = {"a": widget("a"), "b": widget("b", x="${a.doesNotExist}")}

        result = await executor(store, registry).execute(plan(resources, store))

        assert result.results["a"].status == NodeStatus.APPLIED
        assert result.results["b"].status == NodeStatus.FAILED
        assert isinstance(result.results["b"].error, OutputNotFoundError)


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that nothing starts once cancellation is requested."""
        cancel = asyncio.Event()
        cancel.set()

        result = await executor(store, registry).execute(plan(CHAIN, store), cancel)

        assert {r.status for r in result.results.values()} == {NodeStatus.INTERRUPTED}
        assert fake_provider.calls == []
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_in_flight_call_completes(
        self, store: MemoryStateStore, registry: ProviderRegistry, fake_provider: FakeProvider
    ) -> None:
        """Test that a running node reports its real outcome and later nodes are interrupted."""
        fake_provider.set_latency("a", 0.2)
        resources = {"a": widget("a"), "b": widget("b", depends_on=["a"])}
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        result = await executor(store, registry).execute(plan(resources, store), cancel)

        assert result.results["a"].status == NodeStatus.APPLIED
        assert result.results["b"].status == NodeStatus.INTERRUPTED
        assert store.get("a") is not None


class RacingStore(MemoryStateStore):
    """Store where another writer sneaks in before the first conditional write."""

    def __init__(self, conflicts: int = 1) -> None:
        super().__init__()
        self.conflicts = conflicts

    def put(self, record: StateRecord, expected_version: int | None) -> StateRecord:
        if self.conflicts > 0:
            self.conflicts -= 1
            current = self.get(record.logical_id)
            super().put(
                record.model_copy(update={"applied": {"writer": "other"}}),
                current.version if current else None,
            )
        return super().put(record, expected_version)


class TestStateConflicts:
    """Tests for compare-and-swap retries during apply."""

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, registry: ProviderRegistry) -> None:
        """Test that a lost CAS race re-reads and retries."""
        store = RacingStore(conflicts=1)

        result = await executor(store, registry).execute(plan({"a": widget("a")}, store))

        assert result.results["a"].status == NodeStatus.APPLIED
        assert store.get("a").applied == {"name": "a"}

    @pytest.mark.asyncio
    async def test_conflict_retries_exhausted(self, registry: ProviderRegistry) -> None:
        """Test that persistent conflicts fail the node."""
        store = RacingStore(conflicts=10)

        result = await executor(store, registry, state_write_retries=1).execute(
            plan({"a": widget("a")}, store)
        )

        assert result.results["a"].status == NodeStatus.FAILED
        assert isinstance(result.results["a"].error, StaleStateError)
