"""Plan / apply / refresh / destroy orchestration.

The Engine wires the loader, graph builder, diff, executor and refresh
together around one state store and one provider registry. Every
configuration problem surfaces from plan() or plan_destroy() as a
ConfigurationError, before any provider is called.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .azure_provider import AZURE_KIND_PREFIX, AzureResourceProvider
from .config import Config
from .diff import ChangeSet, compute_changeset, compute_destroy_changeset
from .executor import ApplyResult, Executor
from .graph import ResourceGraph, build_graph
from .normalizer import AttributeNormalizer, NormalizationConfig
from .provider import ProviderRegistry, ResourceProvider, RetryingProvider
from .refresh import DriftReconciler, DriftReport, DriftWatcher
from .spec_loader import load_document
from .state import FileStateStore, StateStore

logger = logging.getLogger(__name__)


def build_registry(config: Config) -> ProviderRegistry:
    """Registry of the built-in providers enabled by config."""
    registry = ProviderRegistry()
    if config.subscription_id:
        registry.register(AZURE_KIND_PREFIX, AzureResourceProvider.from_config(config))
    return registry


class Engine:
    """Entry point for one declared document and one state store."""

    def __init__(
        self,
        config: Config,
        store: StateStore,
        providers: ProviderRegistry,
        normalizer: AttributeNormalizer | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._normalizer = normalizer or NormalizationConfig.from_env().build()

        def with_retries(provider: ResourceProvider) -> ResourceProvider:
            if isinstance(provider, RetryingProvider):
                return provider
            return RetryingProvider(
                provider,
                max_attempts=config.provider_max_attempts,
                backoff_base_seconds=config.provider_backoff_base_seconds,
            )

        self._providers = providers.wrap(with_retries)

    @classmethod
    def from_config(cls, config: Config, providers: ProviderRegistry | None = None) -> Engine:
        """Build an engine on the file state store at config.state_path."""
        return cls(
            config,
            FileStateStore(config.state_path),
            providers if providers is not None else build_registry(config),
        )

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    def load_graph(self) -> ResourceGraph:
        """Load, build and validate the declared graph.

        Raises:
            ConfigurationError: On any document, reference or cycle problem.
        """
        return build_graph(load_document(self._config.document_path))

    def plan(self, correct_drift: bool = False) -> ChangeSet:
        """Compute the changeset that converges state onto the document."""
        graph = self.load_graph()
        records = self._store.list_all()

        self._providers.validate_kinds(
            [node.kind for node in graph.nodes.values()] + [record.kind for record in records]
        )

        logger.info(
            "Planning",
            extra={
                "document": str(self._config.document_path),
                "declared_count": len(graph),
                "tracked_count": len(records),
                "correct_drift": correct_drift,
            },
        )
        return compute_changeset(
            graph, records, correct_drift=correct_drift, normalizer=self._normalizer
        )

    def plan_destroy(self, targets: list[str] | None = None) -> ChangeSet:
        """Compute deletes for every tracked resource, or only targets."""
        records = self._store.list_all()
        changeset = compute_destroy_changeset(records, targets)
        self._providers.validate_kinds(change.kind for change in changeset)
        return changeset

    async def apply(
        self, changeset: ChangeSet, cancel_event: asyncio.Event | None = None
    ) -> ApplyResult:
        executor = Executor(
            self._store,
            self._providers,
            concurrency=self._config.concurrency,
            operation_timeout_seconds=self._config.operation_timeout_seconds,
            state_write_retries=self._config.state_write_retries,
        )
        return await executor.execute(changeset, cancel_event)

    def drift_reconciler(self) -> DriftReconciler:
        return DriftReconciler(
            self._store,
            self._providers,
            normalizer=self._normalizer,
            concurrency=self._config.concurrency,
            operation_timeout_seconds=self._config.operation_timeout_seconds,
            state_write_retries=self._config.state_write_retries,
        )

    async def refresh(self, logical_ids: list[str] | None = None) -> DriftReport:
        return await self.drift_reconciler().refresh(logical_ids)

    def drift_watcher(
        self,
        interval_seconds: float | None = None,
        on_report: Callable[[DriftReport], None] | None = None,
    ) -> DriftWatcher:
        return DriftWatcher(
            self.drift_reconciler(),
            interval_seconds=interval_seconds or self._config.refresh_interval_seconds,
            on_report=on_report,
        )
