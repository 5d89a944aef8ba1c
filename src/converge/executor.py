"""Dependency-ordered execution of a ChangeSet.

Scheduling model:
- one asyncio task per actionable change
- a task waits on the completion events of its prerequisites (non-busy)
- a semaphore bounds the number of in-flight provider calls
- blocking provider calls run in a thread pool with a per-call timeout; a
  timed-out call never holds up calls for other nodes

Ordering:
- creates and updates wait for their dependencies
- deletes wait for every changed node that depended on them, so dependents
  are removed (or updated away) before the resource they point at

Failure containment: a failed node marks everything waiting on it as skipped;
independent branches keep going. Nothing is rolled back.

Cancellation: once the cancel event is set, nodes that have not started are
reported as interrupted. In-flight provider calls finish and report their
real outcome so remote resources are never left half-applied and untracked.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import DEFAULT_CONCURRENCY, DEFAULT_OPERATION_TIMEOUT_SECONDS, DEFAULT_STATE_WRITE_RETRIES
from .diff import ActionType, ChangeSet, ResourceChange
from .graph import topological_order
from .models import HANDLE_ATTRIBUTE, Reference, resolve_references
from .provider import (
    CallPool,
    ProviderError,
    ProviderRegistry,
    ProviderTimeoutError,
    ResourceNotFoundError,
)
from .state import StateRecord, StateStore, StateStoreError, StaleStateError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NodeStatus(str, Enum):
    """Terminal state of one node after a pass."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    NO_OP = "no-op"
    INTERRUPTED = "interrupted"


# Statuses that prevent dependents from running
BLOCKING_STATUSES = frozenset({NodeStatus.FAILED, NodeStatus.SKIPPED, NodeStatus.INTERRUPTED})


class OutputNotFoundError(ProviderError):
    """A reference names an output attribute the target does not expose."""

    pass


@dataclass
class NodeResult:
    """Outcome for one logical resource."""

    logical_id: str
    action: ActionType
    status: NodeStatus
    error: Exception | None = None
    blocked_by: str | None = None
    duration_seconds: float = 0.0
    record: StateRecord | None = None


@dataclass
class ApplyResult:
    """Per-node results of one pass."""

    results: dict[str, NodeResult] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def by_status(self, status: NodeStatus) -> list[NodeResult]:
        return [result for result in self.results.values() if result.status == status]

    @property
    def success(self) -> bool:
        return not any(result.status in BLOCKING_STATUSES for result in self.results.values())

    @property
    def exit_code(self) -> int:
        """0 when every node applied or was a no-op, 1 on partial failure."""
        return 0 if self.success else 1


@dataclass
class _PassState:
    """Mutable bookkeeping for one execute() call."""

    results: dict[str, NodeResult]
    events: dict[str, asyncio.Event]
    outputs: dict[str, tuple[str, dict[str, Any]]]
    semaphore: asyncio.Semaphore
    cancel_event: asyncio.Event
    calls: CallPool


def _prerequisites(changeset: ChangeSet) -> dict[str, set[str]]:
    """Ids each actionable change must wait for."""
    actionable = {change.logical_id: change for change in changeset.actionable()}
    prerequisites: dict[str, set[str]] = {}

    for logical_id, change in actionable.items():
        if change.action == ActionType.DELETE:
            prerequisites[logical_id] = {
                other.logical_id
                for other in actionable.values()
                if other.logical_id != logical_id
                and other.action in (ActionType.UPDATE, ActionType.DELETE)
                and other.prior is not None
                and logical_id in other.prior.dependencies
            }
        else:
            prerequisites[logical_id] = {dep for dep in change.depends_on if dep in actionable}

    return prerequisites


class Executor:
    """Applies ChangeSets against providers in dependency order."""

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        state_write_retries: int = DEFAULT_STATE_WRITE_RETRIES,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._store = store
        self._providers = providers
        self._concurrency = concurrency
        self._timeout = operation_timeout_seconds
        self._state_write_retries = state_write_retries

    async def execute(
        self, changeset: ChangeSet, cancel_event: asyncio.Event | None = None
    ) -> ApplyResult:
        """Apply every change and return per-node results.

        Raises:
            CyclicDependencyError: If the prerequisites contain a cycle.
        """
        result = ApplyResult()
        prerequisites = _prerequisites(changeset)
        topological_order(prerequisites)

        state = _PassState(
            results=result.results,
            events={},
            outputs={},
            semaphore=asyncio.Semaphore(self._concurrency),
            cancel_event=cancel_event or asyncio.Event(),
            calls=CallPool(self._concurrency, thread_name_prefix="converge-provider"),
        )

        for change in changeset:
            if change.prior is not None and change.action != ActionType.CREATE:
                state.outputs[change.logical_id] = (change.prior.handle, change.prior.outputs)
            if not change.is_actionable:
                state.results[change.logical_id] = NodeResult(
                    logical_id=change.logical_id,
                    action=change.action,
                    status=NodeStatus.NO_OP,
                    record=change.prior,
                )
            else:
                state.events[change.logical_id] = asyncio.Event()

        logger.info(
            "Starting apply",
            extra={
                "actionable_count": len(state.events),
                "concurrency": self._concurrency,
                "timeout_seconds": self._timeout,
            },
        )

        try:
            await asyncio.gather(
                *(
                    self._run_node(change, prerequisites[change.logical_id], state)
                    for change in changeset.actionable()
                )
            )
        finally:
            state.calls.shutdown()

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _run_node(
        self, change: ResourceChange, prerequisites: set[str], state: _PassState
    ) -> None:
        try:
            for dep in sorted(prerequisites):
                await state.events[dep].wait()

            blocked_by = next(
                (
                    dep
                    for dep in sorted(prerequisites)
                    if state.results[dep].status in BLOCKING_STATUSES
                ),
                None,
            )

            if state.cancel_event.is_set():
                node_result = self._interrupted(change)
            elif blocked_by is not None:
                logger.warning(
                    "Skipping resource, dependency did not apply",
                    extra={
                        "logical_id": change.logical_id,
                        "action": change.action.value,
                        "blocked_by": blocked_by,
                    },
                )
                node_result = NodeResult(
                    logical_id=change.logical_id,
                    action=change.action,
                    status=NodeStatus.SKIPPED,
                    blocked_by=blocked_by,
                )
            else:
                async with state.semaphore:
                    if state.cancel_event.is_set():
                        node_result = self._interrupted(change)
                    else:
                        node_result = await self._apply(change, state)

            state.results[change.logical_id] = node_result
        finally:
            state.events[change.logical_id].set()

    def _interrupted(self, change: ResourceChange) -> NodeResult:
        logger.info(
            "Cancelled before start",
            extra={"logical_id": change.logical_id, "action": change.action.value},
        )
        return NodeResult(
            logical_id=change.logical_id, action=change.action, status=NodeStatus.INTERRUPTED
        )

    async def _apply(self, change: ResourceChange, state: _PassState) -> NodeResult:
        start = time.monotonic()
        provider = self._providers.resolve(change.kind)

        logger.info(
            "Applying resource",
            extra={
                "logical_id": change.logical_id,
                "kind": change.kind,
                "action": change.action.value,
            },
        )

        try:
            record: StateRecord | None = None
            match change.action:
                case ActionType.CREATE:
                    attributes = self._resolve(change, state)
                    created = await self._call(
                        state, change, "create", provider.create, change.kind, attributes
                    )
                    record = await self._write_record(
                        state,
                        StateRecord(
                            logical_id=change.logical_id,
                            kind=change.kind,
                            handle=created.handle,
                            applied=attributes,
                            observed=created.attributes,
                            outputs=created.attributes,
                            dependencies=sorted(change.depends_on),
                        ),
                        change.prior.version if change.prior is not None else None,
                    )
                    state.outputs[change.logical_id] = (record.handle, record.outputs)

                case ActionType.UPDATE if not change.changes:
                    # Only the dependency set moved, the remote resource is unchanged
                    assert change.prior is not None
                    record = await self._write_record(
                        state,
                        change.prior.model_copy(
                            update={"dependencies": sorted(change.depends_on)}
                        ),
                        change.prior.version,
                    )
                    state.outputs[change.logical_id] = (record.handle, record.outputs)

                case ActionType.UPDATE:
                    assert change.prior is not None
                    attributes = self._resolve(change, state)
                    updated = await self._call(
                        state,
                        change,
                        "update",
                        provider.update,
                        change.kind,
                        change.prior.handle,
                        attributes,
                    )
                    record = await self._write_record(
                        state,
                        change.prior.model_copy(
                            update={
                                "applied": attributes,
                                "observed": updated,
                                "outputs": updated,
                                "dependencies": sorted(change.depends_on),
                                "exists": True,
                                "reconciled_at": datetime.now(UTC),
                            }
                        ),
                        change.prior.version,
                    )
                    state.outputs[change.logical_id] = (record.handle, record.outputs)

                case ActionType.DELETE:
                    assert change.prior is not None
                    try:
                        await self._call(
                            state, change, "delete", provider.delete, change.kind, change.prior.handle
                        )
                    except ResourceNotFoundError:
                        logger.info(
                            "Resource already gone, removing state",
                            extra={"logical_id": change.logical_id, "handle": change.prior.handle},
                        )
                    await self._delete_record(state, change.prior)
                    state.outputs.pop(change.logical_id, None)

        except (ProviderError, StaleStateError, StateStoreError) as e:
            logger.error(
                "Failed to apply resource",
                extra={
                    "logical_id": change.logical_id,
                    "action": change.action.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return NodeResult(
                logical_id=change.logical_id,
                action=change.action,
                status=NodeStatus.FAILED,
                error=e,
                duration_seconds=time.monotonic() - start,
            )
        except Exception as e:
            logger.exception(
                "Unexpected error applying resource",
                extra={"logical_id": change.logical_id, "action": change.action.value},
            )
            return NodeResult(
                logical_id=change.logical_id,
                action=change.action,
                status=NodeStatus.FAILED,
                error=e,
                duration_seconds=time.monotonic() - start,
            )

        duration = time.monotonic() - start
        logger.info(
            "Applied resource",
            extra={
                "logical_id": change.logical_id,
                "action": change.action.value,
                "duration_seconds": duration,
            },
        )
        return NodeResult(
            logical_id=change.logical_id,
            action=change.action,
            status=NodeStatus.APPLIED,
            duration_seconds=duration,
            record=record,
        )

    def _resolve(self, change: ResourceChange, state: _PassState) -> dict[str, Any]:
        """Resolve references against outputs known at this point of the pass."""
        assert change.node is not None

        def lookup(reference: Reference) -> Any:
            known = state.outputs.get(reference.target)
            if known is None:
                raise OutputNotFoundError(
                    f"'{change.logical_id}' references '{reference.target}', which has no "
                    f"applied state",
                    kind=change.kind,
                )
            handle, outputs = known
            if reference.attribute == HANDLE_ATTRIBUTE and len(reference.path) == 1:
                return handle

            value: Any = outputs
            for part in reference.path:
                if not isinstance(value, dict) or part not in value:
                    raise OutputNotFoundError(
                        f"'{change.logical_id}' references {reference}, but "
                        f"'{reference.target}' exposes no such output",
                        kind=change.kind,
                    )
                value = value[part]
            return value

        return resolve_references(change.node.attributes, lookup)

    async def _call(
        self,
        state: _PassState,
        change: ResourceChange,
        operation: str,
        func: Callable[..., T],
        *args: Any,
    ) -> T:
        """Run a blocking provider call in the pool with the per-node timeout."""
        try:
            return await state.calls.run(func, *args, timeout=self._timeout)
        except ProviderError:
            raise
        except TimeoutError as e:
            logger.error(
                f"Provider {operation} timed out",
                extra={"logical_id": change.logical_id, "timeout_seconds": self._timeout},
            )
            raise ProviderTimeoutError(
                f"{operation} of '{change.logical_id}' timed out after {self._timeout}s",
                kind=change.kind,
            ) from e

    async def _blocking(self, state: _PassState, func: Callable[..., T], *args: Any) -> T:
        return await state.calls.run(func, *args)

    async def _write_record(
        self, state: _PassState, record: StateRecord, expected_version: int | None
    ) -> StateRecord:
        """Compare-and-swap write, re-reading and retrying after a conflict."""
        for attempt in range(self._state_write_retries + 1):
            try:
                return await self._blocking(state, self._store.put, record, expected_version)
            except StaleStateError as e:
                if attempt == self._state_write_retries:
                    raise
                current = await self._blocking(state, self._store.get, record.logical_id)
                expected_version = current.version if current is not None else None
                logger.warning(
                    "State write conflict, retrying against current version",
                    extra={
                        "logical_id": record.logical_id,
                        "attempt": attempt + 1,
                        "expected_version": e.expected,
                        "current_version": expected_version,
                    },
                )

        raise AssertionError("unreachable")

    async def _delete_record(self, state: _PassState, prior: StateRecord) -> None:
        expected_version: int | None = prior.version
        for attempt in range(self._state_write_retries + 1):
            try:
                await self._blocking(state, self._store.delete, prior.logical_id, expected_version)
                return
            except StaleStateError:
                if attempt == self._state_write_retries:
                    raise
                current = await self._blocking(state, self._store.get, prior.logical_id)
                if current is None:
                    # Another pass already removed it
                    return
                expected_version = current.version
                logger.warning(
                    "State delete conflict, retrying against current version",
                    extra={"logical_id": prior.logical_id, "attempt": attempt + 1},
                )

    def _log_result(self, result: ApplyResult) -> None:
        counts = {status.value: len(result.by_status(status)) for status in NodeStatus}
        if result.success:
            logger.info(
                "Apply complete",
                extra={**counts, "duration_seconds": result.duration_seconds},
            )
        else:
            logger.warning(
                "Apply finished with failures",
                extra={**counts, "duration_seconds": result.duration_seconds},
            )
