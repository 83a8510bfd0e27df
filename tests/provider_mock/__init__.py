"""In-memory provider for engine tests.

This package provides a ResourceProvider implementation that keeps remote
resources in a dictionary, so the whole pipeline can be exercised without
Azure connectivity.

Key Features:
- Deterministic remote ids and outputs per resource
- Failure injection (transient N times, permanent, slow calls)
- Call log and concurrency tracking for assertions
- Out-of-band mutation to simulate drift and manual deletion

Usage:
    from provider_mock import InMemoryProvider

    provider = InMemoryProvider()
    provider.fail_permanently("Microsoft.Web/sites/fn-app")

    reconciler = Reconciler(config, provider)
    result = await reconciler.reconcile_once()

    assert provider.call_count("create_or_update") == 5
"""

from .provider import InMemoryProvider, ProviderCall, RemoteResource
from .templates import simple_resource, template_of

__all__ = [
    "InMemoryProvider",
    "ProviderCall",
    "RemoteResource",
    "simple_resource",
    "template_of",
]
