"""Provider selection by name."""

from __future__ import annotations

import logging
from collections.abc import Callable

from ..config import Config, ConfigurationError
from .base import Provider

logger = logging.getLogger(__name__)


def _azure(config: Config) -> Provider:
    # Imported lazily so that read-only commands do not load the Azure SDK
    from .azure import AzureResourceProvider

    return AzureResourceProvider.from_config(config)


PROVIDER_FACTORIES: dict[str, Callable[[Config], Provider]] = {
    "azure": _azure,
}


def create_provider(config: Config) -> Provider:
    """Build the provider named by config.provider.

    Raises:
        ConfigurationError: If the provider is unknown or misconfigured.
    """
    factory = PROVIDER_FACTORIES.get(config.provider)
    if factory is None:
        raise ConfigurationError(
            f"Unknown provider '{config.provider}'. Valid providers: {sorted(PROVIDER_FACTORIES)}"
        )
    provider = factory(config)
    logger.info("Initialized provider", extra={"provider": config.provider})
    return provider
