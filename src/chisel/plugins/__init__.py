"""
Plugin system for the Chisel engine.

Providers implement resource types; the registry maps type names to them.
"""

from chisel.plugins.base import OperationContext
from chisel.plugins.providers.base import Provider
from chisel.plugins.registry import (
    ProviderRegistry,
    get_registry,
    register_builtin_providers,
    reset_registry,
)

__all__ = [
    "OperationContext",
    "Provider",
    "ProviderRegistry",
    "get_registry",
    "register_builtin_providers",
    "reset_registry",
]
