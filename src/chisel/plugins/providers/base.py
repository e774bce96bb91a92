"""
Provider Base - Abstract interface for resource providers.

A provider owns one resource type: it reads the current state of a
resource on the target and applies diffs to it. Provider calls perform
blocking I/O and are always invoked on worker threads by the engine.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from chisel.diff import ResourceDiff
from chisel.errors import ModuleValidationError
from chisel.module import Resource
from chisel.plugins.base import OperationContext
from chisel.validation import validate_against_schema


class Provider(ABC):
    """
    Abstract base class for resource providers.

    Providers are registered in a ProviderRegistry under their ``type``.
    Third party providers are discovered via the 'chisel.providers' entry
    point group.
    """

    # Optional JSON Schema for resource properties, checked by validate()
    schema: Optional[Dict[str, Any]] = None

    @property
    @abstractmethod
    def type(self) -> str:
        """Resource type handled by this provider (e.g. 'file')."""
        pass

    def validate(self, resource: Resource) -> None:
        """
        Validate a resource before its state is read.

        The default implementation checks ``schema`` when one is declared.

        Raises:
            ModuleValidationError: If the resource is not valid for this provider.
        """
        if self.schema is None:
            return
        is_valid, error = validate_against_schema(resource.properties, self.schema)
        if not is_valid:
            raise ModuleValidationError(f"{resource.resource_id}: {error}")

    @abstractmethod
    def read(
        self, ctx: OperationContext, resource: Resource
    ) -> Optional[Dict[str, Any]]:
        """
        Read the current state of a resource.

        Must not change the target.

        Args:
            ctx: Operation context carrying the deadline and cancel signal
            resource: The declared resource

        Returns:
            Mapping of observed properties, or None if the resource is absent.
        """
        pass

    @abstractmethod
    def apply(
        self, ctx: OperationContext, resource: Resource, diff: ResourceDiff
    ) -> None:
        """
        Drive the target toward ``diff.after``.

        ``diff.after`` is None when the resource must be removed. The same
        call performs rollbacks, in which case ``diff.after`` is the state
        captured before the forward change.

        Raises:
            Exception: Any failure; the engine records it against the diff.
        """
        pass
