"""Tests for the provider boundary."""

from __future__ import annotations

import threading

import pytest

from converge.config import ConfigurationError
from converge.provider import (
    CallPool,
    ProviderError,
    ProviderRegistry,
    ProviderTimeoutError,
    RetryingProvider,
    TransientProviderError,
    UnknownKindError,
)
from provider_mock import FakeProvider

KIND = "Test.Fake/widgets"


class TestRetryingProvider:
    """Tests for RetryingProvider."""

    def test_retries_transient_errors(self, fake_provider: FakeProvider) -> None:
        """Test that transient failures are retried until success."""
        sleeps: list[float] = []
        fake_provider.fail_on(
            "create", "a", TransientProviderError("throttled"), TransientProviderError("busy")
        )
        provider = RetryingProvider(fake_provider, max_attempts=3, backoff_base_seconds=1, sleep=sleeps.append)

        result = provider.create(KIND, {"name": "a"})

        assert result.handle == FakeProvider.handle(KIND, "a")
        assert len(fake_provider.calls_for("create")) == 3
        assert len(sleeps) == 2
        # Exponential backoff with up to 20% jitter
        assert 1 <= sleeps[0] <= 1.2
        assert 2 <= sleeps[1] <= 2.4

    def test_gives_up_after_max_attempts(self, fake_provider: FakeProvider) -> None:
        """Test that the last transient error is raised."""
        fake_provider.fail_on("read", "a", *(TransientProviderError(f"try {i}") for i in range(3)))
        provider = RetryingProvider(fake_provider, max_attempts=3, sleep=lambda _: None)

        with pytest.raises(TransientProviderError, match="try 2"):
            provider.read(KIND, FakeProvider.handle(KIND, "a"))

    def test_permanent_errors_not_retried(self, fake_provider: FakeProvider) -> None:
        """Test that non-transient errors surface immediately."""
        fake_provider.fail_on("create", "a", ProviderError("invalid sku"))
        provider = RetryingProvider(fake_provider, max_attempts=5, sleep=lambda _: None)

        with pytest.raises(ProviderError, match="invalid sku"):
            provider.create(KIND, {"name": "a"})

        assert len(fake_provider.calls_for("create")) == 1

    def test_invalid_attempts(self, fake_provider: FakeProvider) -> None:
        """Test that at least one attempt is required."""
        with pytest.raises(ValueError):
            RetryingProvider(fake_provider, max_attempts=0)


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_longest_prefix_wins(self) -> None:
        """Test prefix resolution."""
        general, network = FakeProvider(), FakeProvider()
        registry = ProviderRegistry()
        registry.register("Microsoft.", general)
        registry.register("Microsoft.Network/", network)

        assert registry.resolve("Microsoft.Network/virtualNetworks") is network
        assert registry.resolve("Microsoft.Storage/storageAccounts") is general

    def test_default_provider(self, fake_provider: FakeProvider) -> None:
        """Test fallback to the default provider."""
        registry = ProviderRegistry(default=fake_provider)

        assert registry.resolve(KIND) is fake_provider

    def test_unknown_kind(self) -> None:
        """Test that unknown kinds are configuration errors."""
        registry = ProviderRegistry()

        with pytest.raises(UnknownKindError, match="Unknown.Kind/x"):
            registry.validate_kinds(["Unknown.Kind/x"])

        assert issubclass(UnknownKindError, ConfigurationError)

    def test_wrap_shares_instances(self, fake_provider: FakeProvider) -> None:
        """Test that a provider registered twice is wrapped once."""
        registry = ProviderRegistry(default=fake_provider)
        registry.register("Test.", fake_provider)

        wrapped = registry.wrap(lambda p: RetryingProvider(p, sleep=lambda _: None))

        assert wrapped.resolve(KIND) is wrapped.resolve("Other.Kind/x")
        assert wrapped.resolve(KIND).inner is fake_provider


class TestErrorTaxonomy:
    """Tests for provider error types."""

    def test_timeout_is_provider_and_builtin_timeout(self) -> None:
        """Test ProviderTimeoutError subclasses."""
        error = ProviderTimeoutError("slow", kind=KIND)

        assert isinstance(error, ProviderError)
        assert isinstance(error, TimeoutError)
        assert error.kind == KIND


class TestCallPool:
    """Tests for CallPool timeouts."""

    @pytest.mark.asyncio
    async def test_timed_out_call_does_not_block_later_calls(self) -> None:
        """Test that a stuck call is abandoned and the next call still runs."""
        calls = CallPool(1, thread_name_prefix="test-calls")
        release = threading.Event()
        try:
            with pytest.raises(TimeoutError):
                await calls.run(release.wait, 5, timeout=0.05)

            assert await calls.run(lambda: "done", timeout=1) == "done"
            assert calls.retired == 1
        finally:
            release.set()
            calls.shutdown()

    @pytest.mark.asyncio
    async def test_timeout_raised_by_call_keeps_pool(self) -> None:
        """Test that a provider's own timeout error does not retire the pool."""
        calls = CallPool(1, thread_name_prefix="test-calls")

        def slow_upstream() -> None:
            raise ProviderTimeoutError("gateway timed out")

        try:
            with pytest.raises(ProviderTimeoutError):
                await calls.run(slow_upstream, timeout=1)
            assert calls.retired == 0
        finally:
            calls.shutdown()
