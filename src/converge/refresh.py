"""Refresh: read real-world state back and report drift.

A refresh reads every tracked resource through its provider, stores what it
saw as the record's observed attributes and reports which resources drifted
from their last-applied attributes. It never calls create, update or delete;
correcting drift is a separate, explicit apply.

A resource that is gone is recorded with exists=False so the next plan
recreates it. A resource that could not be read (provider error, timeout) is
reported as unknown and its record is left untouched.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_REFRESH_INTERVAL_SECONDS,
    DEFAULT_STATE_WRITE_RETRIES,
    ConfigurationError,
)
from .normalizer import AttributeDelta, AttributeNormalizer
from .provider import CallPool, ProviderError, ProviderRegistry, ResourceNotFoundError
from .state import StateRecord, StateStore, StateStoreError, StaleStateError

logger = logging.getLogger(__name__)


class DriftStatus(str, Enum):
    IN_SYNC = "in-sync"
    DRIFTED = "drifted"
    MISSING = "missing"
    UNKNOWN = "unknown"


@dataclass
class ResourceDrift:
    """Refresh outcome for one tracked resource."""

    logical_id: str
    kind: str
    status: DriftStatus
    deltas: list[AttributeDelta] = field(default_factory=list)
    error: str | None = None


@dataclass
class DriftReport:
    """Refresh outcome for the whole state."""

    resources: dict[str, ResourceDrift] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    def by_status(self, status: DriftStatus) -> list[ResourceDrift]:
        return [drift for drift in self.resources.values() if drift.status == status]

    @property
    def has_drift(self) -> bool:
        return any(
            drift.status in (DriftStatus.DRIFTED, DriftStatus.MISSING)
            for drift in self.resources.values()
        )

    @property
    def exit_code(self) -> int:
        """1 when any resource could not be read, otherwise 0.

        Drift alone is a successful refresh.
        """
        return 1 if self.by_status(DriftStatus.UNKNOWN) else 0


class DriftReconciler:
    """Refreshes stored state from providers."""

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        *,
        normalizer: AttributeNormalizer | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        state_write_retries: int = DEFAULT_STATE_WRITE_RETRIES,
    ) -> None:
        self._store = store
        self._providers = providers
        self._normalizer = normalizer or AttributeNormalizer()
        self._concurrency = concurrency
        self._timeout = operation_timeout_seconds
        self._state_write_retries = state_write_retries

    async def refresh(self, logical_ids: list[str] | None = None) -> DriftReport:
        """Refresh all tracked resources, or only logical_ids.

        Raises:
            ConfigurationError: If a requested id has no state record.
        """
        records = self._store.list_all()
        if logical_ids:
            by_id = {record.logical_id: record for record in records}
            missing = sorted(set(logical_ids) - set(by_id))
            if missing:
                raise ConfigurationError(f"No state recorded for: {missing}")
            records = [by_id[logical_id] for logical_id in sorted(set(logical_ids))]

        self._providers.validate_kinds(record.kind for record in records)

        report = DriftReport()
        semaphore = asyncio.Semaphore(self._concurrency)
        calls = CallPool(self._concurrency, thread_name_prefix="converge-refresh")

        async def refresh_one(record: StateRecord) -> None:
            async with semaphore:
                report.resources[record.logical_id] = await self._refresh_record(record, calls)

        logger.info("Starting refresh", extra={"resource_count": len(records)})
        try:
            await asyncio.gather(*(refresh_one(record) for record in records))
        finally:
            calls.shutdown()

        report.resources = dict(sorted(report.resources.items()))
        report.end_time = datetime.now(UTC)
        logger.info(
            "Refresh complete",
            extra={status.value: len(report.by_status(status)) for status in DriftStatus},
        )
        return report

    async def _refresh_record(self, record: StateRecord, calls: CallPool) -> ResourceDrift:
        provider = self._providers.resolve(record.kind)

        try:
            observed: dict[str, Any] | None = await calls.run(
                provider.read, record.kind, record.handle, timeout=self._timeout
            )
        except ResourceNotFoundError:
            observed = None
        except TimeoutError:
            logger.error(
                "Refresh read timed out",
                extra={"logical_id": record.logical_id, "timeout_seconds": self._timeout},
            )
            return ResourceDrift(
                logical_id=record.logical_id,
                kind=record.kind,
                status=DriftStatus.UNKNOWN,
                error=f"read timed out after {self._timeout}s",
            )
        except ProviderError as e:
            logger.error(
                "Refresh read failed",
                extra={"logical_id": record.logical_id, "error": str(e)},
            )
            return ResourceDrift(
                logical_id=record.logical_id,
                kind=record.kind,
                status=DriftStatus.UNKNOWN,
                error=str(e),
            )

        if observed is None:
            drift = ResourceDrift(
                logical_id=record.logical_id, kind=record.kind, status=DriftStatus.MISSING
            )
            update: dict[str, Any] = {"exists": False, "observed": {}}
        else:
            deltas = self._normalizer.compare(record.kind, record.applied, observed)
            drift = ResourceDrift(
                logical_id=record.logical_id,
                kind=record.kind,
                status=DriftStatus.DRIFTED if deltas else DriftStatus.IN_SYNC,
                deltas=deltas,
            )
            update = {"exists": True, "observed": observed}

        try:
            await calls.run(self._store_observation, record, update)
        except (StaleStateError, StateStoreError) as e:
            logger.error(
                "Failed to record refreshed state",
                extra={"logical_id": record.logical_id, "error": str(e)},
            )
            drift.status = DriftStatus.UNKNOWN
            drift.error = str(e)
            return drift

        if drift.status != DriftStatus.IN_SYNC:
            logger.warning(
                "Drift detected",
                extra={
                    "logical_id": record.logical_id,
                    "status": drift.status.value,
                    "attributes": [delta.attribute for delta in drift.deltas],
                },
            )
        return drift

    def _store_observation(self, record: StateRecord, update: dict[str, Any]) -> None:
        """Write observed attributes under compare-and-swap.

        A conflicting apply may have replaced the record meanwhile; the
        observation is then laid onto the current record unless it was deleted.
        """
        current: StateRecord | None = record
        for attempt in range(self._state_write_retries + 1):
            if current is None or current.handle != record.handle:
                logger.info(
                    "Record changed during refresh, dropping observation",
                    extra={"logical_id": record.logical_id},
                )
                return
            try:
                self._store.put(
                    current.model_copy(update={**update, "reconciled_at": datetime.now(UTC)}),
                    current.version,
                )
                return
            except StaleStateError:
                if attempt == self._state_write_retries:
                    raise
                current = self._store.get(record.logical_id)


class DriftWatcher:
    """Runs refreshes on an interval until shutdown.

    on_report, if given, receives each DriftReport as its cycle finishes.
    """

    def __init__(
        self,
        reconciler: DriftReconciler,
        interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        on_report: Callable[[DriftReport], None] | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._interval = interval_seconds
        self._on_report = on_report
        self._shutdown_event = asyncio.Event()
        self.last_report: DriftReport | None = None

    async def run(self) -> None:
        """Refresh every interval until shutdown() is called."""
        logger.info("Starting drift watch", extra={"interval_seconds": self._interval})

        while not self._shutdown_event.is_set():
            try:
                report = await self._reconciler.refresh()
            except ConfigurationError:
                raise
            except Exception as e:
                logger.exception("Refresh cycle failed", extra={"error": str(e)})
            else:
                self.last_report = report
                if self._on_report is not None:
                    self._on_report(report)

            # Wait for next cycle or shutdown
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

        logger.info("Drift watch stopped")

    def shutdown(self) -> None:
        """Signal the watcher to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
