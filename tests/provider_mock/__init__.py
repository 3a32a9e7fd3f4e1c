"""In-memory provider for integration testing.

This package provides a Provider implementation that keeps remote objects
in memory, so full plan/apply/destroy cycles run without any cloud.

Key Features:
- Create/update/delete/read with realistic identity and mutability rules
- Fatal and transient error injection per operation and resource name
- Hidden dependents that refuse deletes, for teardown testing
- Drift simulation by editing or removing remote objects

Usage:
    from provider_mock import MockProvider

    provider = MockProvider()
    reconciler = Reconciler(config, provider=provider)
    result = await reconciler.apply()

    assert provider.find("Test/things", "shop-dev-a") is not None
"""

from .provider import MockObject, MockProvider

__all__ = ["MockObject", "MockProvider"]
