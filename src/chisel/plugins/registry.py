"""
Provider Registry - Discovery and registration of resource providers.

This module provides the registry mapping resource type names to provider
instances. The registry is populated before execution begins and is only
read afterwards, so lookups are safe from concurrent worker threads.
"""

import logging
from importlib.metadata import entry_points
from typing import Dict, List, Optional

from chisel.errors import (
    ConfigurationError,
    DuplicateProviderError,
    ProviderNotFoundError,
)
from chisel.plugins.providers.base import Provider
from chisel.validation import validate_schema

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "chisel.providers"


class ProviderRegistry:
    """
    Registry of resource providers keyed by resource type.
    """

    def __init__(self):
        self._providers: Dict[str, Provider] = {}

    def register(self, provider: Provider) -> None:
        """
        Register a provider instance.

        Args:
            provider: The provider to register

        Raises:
            ConfigurationError: If the provider or its type is empty, or its
                schema is not a valid JSON Schema
            DuplicateProviderError: If the type is already registered
        """
        if provider is None:
            raise ConfigurationError("provider cannot be None")

        provider_type = provider.type
        if not provider_type:
            raise ConfigurationError("provider type cannot be empty")

        if provider_type in self._providers:
            raise DuplicateProviderError(
                f"provider for type {provider_type} already registered"
            )

        if provider.schema is not None:
            is_valid, error = validate_schema(provider.schema)
            if not is_valid:
                raise ConfigurationError(
                    f"provider {provider_type} has an invalid schema: {error}"
                )

        self._providers[provider_type] = provider
        logger.info(
            f"Registered provider: {provider_type} ({type(provider).__name__})"
        )

    def unregister(self, provider_type: str) -> Optional[Provider]:
        """Remove a provider, returning it if it was registered."""
        return self._providers.pop(provider_type, None)

    def get(self, provider_type: str) -> Provider:
        """
        Get the provider for a resource type.

        Raises:
            ProviderNotFoundError: If no provider handles the type
        """
        provider = self._providers.get(provider_type)
        if provider is None:
            raise ProviderNotFoundError(provider_type, self.types())
        return provider

    def has(self, provider_type: str) -> bool:
        return provider_type in self._providers

    def types(self) -> List[str]:
        """List registered resource types, sorted."""
        return sorted(self._providers.keys())

    def __len__(self) -> int:
        return len(self._providers)


# Global registry instance
_registry: Optional[ProviderRegistry] = None


def get_registry() -> ProviderRegistry:
    """Get the global provider registry singleton."""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_providers(
    registry: Optional[ProviderRegistry] = None,
) -> ProviderRegistry:
    """
    Register the built-in providers and discover third party providers via
    entry points.

    Entry points in the 'chisel.providers' group must load a Provider
    subclass constructible without arguments. Failures are logged and
    skipped so a broken plugin never prevents startup.
    """
    if registry is None:
        registry = get_registry()

    from chisel.plugins.providers.file import FileProvider
    from chisel.plugins.providers.shell import ShellProvider

    for provider_class in (FileProvider, ShellProvider):
        provider = provider_class()
        if not registry.has(provider.type):
            registry.register(provider)

    discovered = entry_points(group=ENTRY_POINT_GROUP)
    for ep in discovered:
        try:
            provider_class = ep.load()
            provider = provider_class()
            if registry.has(provider.type):
                logger.warning(
                    f"Skipping provider plugin {ep.name}: type "
                    f"'{provider.type}' already registered"
                )
                continue
            registry.register(provider)
        except Exception as e:
            logger.warning(f"Could not load provider plugin {ep.name}: {e}")

    return registry
