"""In-memory provider for engine tests.

Key Features:
- Resources kept in memory, keyed by handle
- Call log with start/end order for dependency assertions
- Failure, timeout and latency injection per logical name or operation
- Out-of-band mutation to simulate drift

Usage:
    from provider_mock import FakeProvider

    provider = FakeProvider()
    registry = ProviderRegistry(default=provider)
    provider.fail_on("create", "network", TransientProviderError("throttled"))
"""

from .provider import FakeProvider, ProviderCall

__all__ = ["FakeProvider", "ProviderCall"]
