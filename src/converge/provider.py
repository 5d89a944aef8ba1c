"""Provider boundary: the Create/Read/Update/Delete capability set.

The core never talks to a cloud API directly. Each resource kind is served by
a ResourceProvider; the ProviderRegistry maps kinds to providers and
RetryingProvider hides transient failures (throttling, brief outages) behind
eventual success or failure. Provider methods are blocking; the executor and
refresh run them through a CallPool with a timeout.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .config import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderError(Exception):
    """Raised when a remote provider operation fails."""

    def __init__(self, message: str, *, kind: str | None = None, handle: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.handle = handle


class TransientProviderError(ProviderError):
    """Failure that may succeed on retry (throttling, 5xx, connection reset)."""

    pass


class ResourceNotFoundError(ProviderError):
    """The remote resource does not exist."""

    pass


class ProviderTimeoutError(ProviderError, TimeoutError):
    """A provider operation exceeded its timeout."""

    pass


class UnknownKindError(ConfigurationError):
    """No provider is registered for a resource kind."""

    pass


@dataclass(frozen=True)
class ProviderResult:
    """Result of a create: the provider handle plus observed attributes."""

    handle: str
    attributes: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """Capability set a provider exposes for the kinds it serves."""

    name: str = "provider"

    @abstractmethod
    def create(self, kind: str, attributes: dict[str, Any]) -> ProviderResult:
        """Create a resource and return its handle and attributes."""

    @abstractmethod
    def read(self, kind: str, handle: str) -> dict[str, Any]:
        """Return current attributes.

        Raises:
            ResourceNotFoundError: If the resource no longer exists.
        """

    @abstractmethod
    def update(self, kind: str, handle: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Update a resource in place and return its attributes."""

    @abstractmethod
    def delete(self, kind: str, handle: str) -> None:
        """Delete a resource."""


class RetryingProvider(ResourceProvider):
    """Wraps a provider with exponential backoff for transient errors."""

    def __init__(
        self,
        inner: ResourceProvider,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        max_backoff_seconds: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._inner = inner
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._max_backoff = max_backoff_seconds
        self._sleep = sleep
        self.name = inner.name

    @property
    def inner(self) -> ResourceProvider:
        return self._inner

    def _call(self, operation: str, kind: str, func: Callable[[], T]) -> T:
        last_error: TransientProviderError | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                return func()
            except TransientProviderError as e:
                last_error = e

                if attempt < self._max_attempts:
                    # Exponential backoff with jitter
                    backoff = min(self._backoff_base * (2 ** (attempt - 1)), self._max_backoff)
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Transient provider error, retrying",
                        extra={
                            "operation": operation,
                            "kind": kind,
                            "attempt": attempt,
                            "max_attempts": self._max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    self._sleep(wait_time)

        # Loop runs at least once, so last_error is set here
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    def create(self, kind: str, attributes: dict[str, Any]) -> ProviderResult:
        return self._call("create", kind, lambda: self._inner.create(kind, attributes))

    def read(self, kind: str, handle: str) -> dict[str, Any]:
        return self._call("read", kind, lambda: self._inner.read(kind, handle))

    def update(self, kind: str, handle: str, attributes: dict[str, Any]) -> dict[str, Any]:
        return self._call("update", kind, lambda: self._inner.update(kind, handle, attributes))

    def delete(self, kind: str, handle: str) -> None:
        self._call("delete", kind, lambda: self._inner.delete(kind, handle))


class ProviderRegistry:
    """Maps resource kinds to providers by prefix (longest prefix wins)."""

    def __init__(self, default: ResourceProvider | None = None) -> None:
        self._providers: dict[str, ResourceProvider] = {}
        self._default = default

    def register(self, kind_prefix: str, provider: ResourceProvider) -> None:
        if not kind_prefix:
            raise ValueError("kind_prefix cannot be empty, use the default provider instead")
        self._providers[kind_prefix] = provider

    def set_default(self, provider: ResourceProvider | None) -> None:
        self._default = provider

    def resolve(self, kind: str) -> ResourceProvider:
        """Return the provider serving kind.

        Raises:
            UnknownKindError: If no registered prefix matches and there is no default.
        """
        matches = [prefix for prefix in self._providers if kind.startswith(prefix)]
        if matches:
            return self._providers[max(matches, key=len)]
        if self._default is not None:
            return self._default
        raise UnknownKindError(
            f"No provider registered for resource kind '{kind}'. "
            f"Registered prefixes: {sorted(self._providers)}"
        )

    def validate_kinds(self, kinds: Iterable[str]) -> None:
        """Resolve every kind up front so unknown kinds fail before any remote call."""
        for kind in sorted(set(kinds)):
            self.resolve(kind)

    def wrap(self, wrapper: Callable[[ResourceProvider], ResourceProvider]) -> ProviderRegistry:
        """Return a registry with every provider passed through wrapper."""
        wrapped: dict[int, ResourceProvider] = {}

        def get(provider: ResourceProvider) -> ResourceProvider:
            key = id(provider)
            if key not in wrapped:
                wrapped[key] = wrapper(provider)
            return wrapped[key]

        registry = ProviderRegistry(default=get(self._default) if self._default else None)
        for prefix, provider in self._providers.items():
            registry.register(prefix, get(provider))
        return registry


class CallPool:
    """Worker threads for blocking provider calls, with a per-call timeout.

    A call that times out cannot be stopped and keeps its thread busy. The
    pool is then retired and a fresh one takes its place, so calls submitted
    afterwards never queue behind the abandoned one.
    """

    def __init__(self, max_workers: int, thread_name_prefix: str) -> None:
        self._max_workers = max_workers
        self._thread_name_prefix = thread_name_prefix
        self._pool = self._new_pool()
        self.retired = 0

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix=self._thread_name_prefix
        )

    async def run(self, func: Callable[..., T], *args: Any, timeout: float | None = None) -> T:
        """Run func(*args) in a worker thread.

        Raises:
            TimeoutError: If timeout elapses before func returns.
        """
        loop = asyncio.get_running_loop()
        pool = self._pool
        future = loop.run_in_executor(pool, functools.partial(func, *args))
        if timeout is None:
            return await future

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            # A TimeoutError raised by func itself leaves the future done, not cancelled
            if future.cancelled():
                self._retire(pool)
            raise

    def _retire(self, pool: ThreadPoolExecutor) -> None:
        if pool is not self._pool:
            return
        # Queued calls still run; the stuck thread exits when its call returns
        pool.shutdown(wait=False)
        self._pool = self._new_pool()
        self.retired += 1
        logger.warning(
            "Retired worker pool after a call timed out",
            extra={"thread_name_prefix": self._thread_name_prefix, "retired": self.retired},
        )

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
