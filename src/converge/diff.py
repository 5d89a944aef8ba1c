"""Diff engine: declared graph + stored state -> ChangeSet.

Per node:
- no record (or a record refresh marked as gone) -> CREATE
- record with different last-applied attributes  -> UPDATE
- record with only different dependencies         -> UPDATE (state only, no
                                                     provider call)
- record whose node is no longer declared         -> DELETE
- otherwise                                        -> NO_OP

Comparison uses the last-applied attributes, never the last-observed ones,
so out-of-band drift does not trigger updates. Drift correction is an
explicit re-entry with correct_drift=True after a refresh.

The diff is pure: no I/O, no randomness, identical inputs give identical
ChangeSets.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .config import ConfigurationError
from .graph import ResourceGraph, ResourceNode, topological_order
from .models import HANDLE_ATTRIBUTE, Reference, resolve_references
from .normalizer import ABSENT, AttributeNormalizer, Marker
from .state import StateRecord

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Planned action for one node."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


class DependencyViolationError(ConfigurationError):
    """Raised when a delete would leave a dependent pointing at nothing."""

    pass


# Value not known until the referenced node has been applied
UNKNOWN = Marker("(known after apply)")


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


@dataclass(frozen=True)
class AttributeChange:
    """One top-level attribute that differs between baseline and desired."""

    attribute: str
    before: Any
    after: Any


@dataclass(frozen=True)
class ResourceChange:
    """Planned action for one logical resource."""

    logical_id: str
    action: ActionType
    kind: str
    node: ResourceNode | None = None
    prior: StateRecord | None = None
    changes: tuple[AttributeChange, ...] = ()
    depends_on: frozenset[str] = frozenset()

    @property
    def is_actionable(self) -> bool:
        return self.action != ActionType.NO_OP

    @property
    def changed_attributes(self) -> frozenset[str]:
        return frozenset(change.attribute for change in self.changes)

    @property
    def dependencies_changed(self) -> bool:
        """Whether the declared dependencies differ from the recorded ones."""
        return self.prior is not None and sorted(self.depends_on) != sorted(
            self.prior.dependencies
        )


@dataclass
class ChangeSet:
    """Ordered actions for one pass: applies first (dependency order), then deletes."""

    changes: list[ResourceChange] = field(default_factory=list)

    def __iter__(self) -> Iterator[ResourceChange]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    def get(self, logical_id: str) -> ResourceChange | None:
        for change in self.changes:
            if change.logical_id == logical_id:
                return change
        return None

    @property
    def has_changes(self) -> bool:
        return any(change.is_actionable for change in self.changes)

    def actionable(self) -> list[ResourceChange]:
        return [change for change in self.changes if change.is_actionable]

    def counts(self) -> dict[ActionType, int]:
        counter = Counter(change.action for change in self.changes)
        return {action: counter.get(action, 0) for action in ActionType}


def attribute_diff(
    before: Mapping[str, Any], after: Mapping[str, Any]
) -> tuple[AttributeChange, ...]:
    """Top-level attribute differences, ordered by attribute name."""
    changes = []
    for attribute in sorted(set(before) | set(after)):
        old = before.get(attribute, ABSENT)
        new = after.get(attribute, ABSENT)
        if contains_unknown(new) or old != new:
            changes.append(AttributeChange(attribute=attribute, before=old, after=new))
    return tuple(changes)


def _lookup_planned(
    reference: Reference, planned: Mapping[str, ResourceChange]
) -> Any:
    """Resolve a reference against stored outputs, or UNKNOWN if it will change."""
    target = planned[reference.target]

    if target.action == ActionType.CREATE or target.prior is None:
        return UNKNOWN

    if reference.attribute == HANDLE_ATTRIBUTE and len(reference.path) == 1:
        return target.prior.handle

    if target.action == ActionType.UPDATE and reference.attribute in target.changed_attributes:
        return UNKNOWN

    value: Any = target.prior.outputs
    for part in reference.path:
        if not isinstance(value, dict) or part not in value:
            return UNKNOWN
        value = value[part]
    return value


def _check_delete_violations(
    deleted: set[str], kept_dependencies: Mapping[str, Iterable[str]]
) -> None:
    for logical_id in sorted(kept_dependencies):
        blocked = sorted(set(kept_dependencies[logical_id]) & deleted)
        if blocked:
            raise DependencyViolationError(
                f"Cannot delete {blocked}: resource '{logical_id}' still depends on "
                f"{'it' if len(blocked) == 1 else 'them'} and is not being deleted"
            )


def _delete_changes(
    deleted: Iterable[str], records: Mapping[str, StateRecord]
) -> list[ResourceChange]:
    """Deletes ordered dependents-first using the recorded dependencies."""
    ids = set(deleted)
    order = topological_order(
        {logical_id: records[logical_id].dependencies for logical_id in ids}
    )
    return [
        ResourceChange(
            logical_id=logical_id,
            action=ActionType.DELETE,
            kind=records[logical_id].kind,
            prior=records[logical_id],
            depends_on=frozenset(records[logical_id].dependencies),
        )
        for logical_id in reversed(order)
    ]


def compute_changeset(
    graph: ResourceGraph,
    records: Iterable[StateRecord],
    *,
    correct_drift: bool = False,
    normalizer: AttributeNormalizer | None = None,
) -> ChangeSet:
    """Compare the declared graph to stored state.

    Args:
        graph: Validated resource graph.
        records: Current state records.
        correct_drift: Compare against the drifted observed values recorded by
            the last refresh instead of last-applied values.
        normalizer: Normalizer used to find drifted attributes when
            correct_drift is set.

    Returns:
        ChangeSet with applies in dependency order followed by deletes.

    Raises:
        ConfigurationError: If a logical id changed kind.
        DependencyViolationError: If a delete would orphan a kept dependent.
    """
    by_id = {record.logical_id: record for record in records}
    normalizer = normalizer or AttributeNormalizer()
    planned: dict[str, ResourceChange] = {}

    for logical_id in graph.topological_sort():
        node = graph.nodes[logical_id]
        prior = by_id.get(logical_id)

        if prior is not None and prior.kind != node.kind:
            raise ConfigurationError(
                f"Resource '{logical_id}' changed kind from '{prior.kind}' to '{node.kind}'. "
                f"Remove it and declare it under a new logical id instead."
            )

        desired = resolve_references(node.attributes, lambda ref: _lookup_planned(ref, planned))

        if prior is None or not prior.exists:
            action = ActionType.CREATE
            changes = attribute_diff({}, desired)
        else:
            baseline = dict(prior.applied)
            if correct_drift:
                for delta in normalizer.compare(node.kind, prior.applied, prior.observed):
                    baseline[delta.attribute] = delta.observed
            changes = attribute_diff(baseline, desired)
            action = ActionType.UPDATE if changes else ActionType.NO_OP

        change = ResourceChange(
            logical_id=logical_id,
            action=action,
            kind=node.kind,
            node=node,
            prior=prior,
            changes=changes,
            depends_on=node.dependencies,
        )
        if change.action == ActionType.NO_OP and change.dependencies_changed:
            # Recorded dependencies drive delete ordering
            change = replace(change, action=ActionType.UPDATE)
        planned[logical_id] = change

    deleted = {logical_id for logical_id in by_id if logical_id not in graph}

    # A node whose attributes are not re-applied may still carry values taken
    # from a node being removed
    kept_dependencies: dict[str, frozenset[str]] = {}
    for logical_id, change in planned.items():
        kept_dependencies[logical_id] = change.depends_on
        if change.action != ActionType.CREATE and not change.changes and change.prior is not None:
            kept_dependencies[logical_id] |= frozenset(change.prior.dependencies)
    _check_delete_violations(deleted, kept_dependencies)

    changeset = ChangeSet(changes=[*planned.values(), *_delete_changes(deleted, by_id)])

    logger.info(
        "Computed changeset",
        extra={action.value: count for action, count in changeset.counts().items()},
    )
    return changeset


def compute_destroy_changeset(
    records: Iterable[StateRecord], targets: Iterable[str] | None = None
) -> ChangeSet:
    """Plan deletion of every recorded resource, or only of targets.

    Raises:
        ConfigurationError: If a target has no state record.
        DependencyViolationError: If a target has dependents that are not targeted.
    """
    by_id = {record.logical_id: record for record in records}
    target_ids = set(targets) if targets else set(by_id)

    missing = sorted(target_ids - set(by_id))
    if missing:
        raise ConfigurationError(f"No state recorded for destroy targets: {missing}")

    kept_dependencies = {
        logical_id: record.dependencies
        for logical_id, record in by_id.items()
        if logical_id not in target_ids
    }
    _check_delete_violations(target_ids, kept_dependencies)

    changeset = ChangeSet(changes=_delete_changes(target_ids, by_id))

    logger.info("Computed destroy changeset", extra={"delete": len(changeset)})
    return changeset
