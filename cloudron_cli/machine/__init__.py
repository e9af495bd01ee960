"""Provider abstraction layer for the machine running a Cloudron."""

from __future__ import annotations

import typing as t

from .base import BaseProvider, ProviderType, Server, ServerSpec
from .digitalocean import DigitalOceanProvider
from .versions import VersionCatalog


def get_provider(provider_type: ProviderType | str, **kwargs: t.Any) -> BaseProvider:
    """Factory function to get a provider by type.

    Args:
        provider_type: Either a ProviderType enum or string ("digitalocean")
        **kwargs: Passed to the provider constructor

    Returns:
        An instance of the appropriate provider

    Raises:
        ValueError: If provider type is unknown
    """
    if isinstance(provider_type, str):
        provider_type = ProviderType(provider_type)

    match provider_type:
        case ProviderType.DIGITALOCEAN:
            return DigitalOceanProvider(**kwargs)

    raise ValueError(f"Unknown provider type: {provider_type}")


__all__ = [
    # Base classes
    "BaseProvider",
    "ProviderType",
    "Server",
    "ServerSpec",
    # DigitalOcean
    "DigitalOceanProvider",
    # Releases
    "VersionCatalog",
    # Factory
    "get_provider",
]
