"""
Error types for the reconciliation engine.

Configuration errors are fatal and reported before anything is applied.
Read, apply and timeout errors are isolated to a single resource. An
ExecutionError aggregates everything that went wrong during one apply run,
including failures encountered while rolling back.
"""

from typing import List, Optional, Sequence


class ChiselError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ChiselError, ValueError):
    """Structural problem detected before execution starts."""


class ModuleValidationError(ConfigurationError):
    """A module document or its resources failed validation."""


class ProviderNotFoundError(ConfigurationError):
    """No provider is registered for a resource type."""

    def __init__(self, resource_type: str, available: Sequence[str] = ()):
        self.resource_type = resource_type
        self.available = list(available)
        known = ", ".join(self.available) or "none"
        super().__init__(
            f"No provider registered for resource type: {resource_type}. "
            f"Available providers: {known}"
        )


class DuplicateProviderError(ConfigurationError):
    """A provider for the same resource type is already registered."""


class DependencyCycleError(ConfigurationError):
    """The dependency graph between diffs contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class ReadError(ChiselError):
    """Reading the current state of a resource failed."""

    def __init__(self, resource_id: str, message: str):
        self.resource_id = resource_id
        super().__init__(f"Failed to read current state of {resource_id}: {message}")


class ApplyError(ChiselError):
    """A provider failed to apply a diff."""

    def __init__(self, resource_id: str, action: str, message: str):
        self.resource_id = resource_id
        self.action = action
        super().__init__(f"Failed to {action} {resource_id}: {message}")


class OperationTimeoutError(ChiselError, TimeoutError):
    """A single operation exceeded the per-operation timeout."""

    def __init__(self, resource_id: str, timeout: float):
        self.resource_id = resource_id
        self.timeout = timeout
        super().__init__(f"Operation on {resource_id} timed out after {timeout:g}s")


class NotificationError(ChiselError):
    """One or more notification channels failed to deliver."""


class ExecutionError(ChiselError):
    """
    Aggregate error for an apply run.

    Carries the failed forward operations, the resources that were rolled
    back and any rollback failures, so callers can inspect exactly what
    happened without parsing the message.
    """

    def __init__(
        self,
        failures: Optional[List] = None,
        rollback_failures: Optional[List] = None,
        rolled_back: Optional[List] = None,
        message: Optional[str] = None,
    ):
        self.failures = list(failures or [])
        self.rollback_failures = list(rollback_failures or [])
        self.rolled_back = list(rolled_back or [])
        super().__init__(message or self._build_message())

    def _build_message(self) -> str:
        parts = []
        for result in self.failures:
            parts.append(
                f"apply failed for {result.resource_id} "
                f"({result.action.value}): {result.error}"
            )
        if self.rolled_back:
            rolled = ", ".join(
                f"{r.resource_id} ({r.action.value})" for r in self.rolled_back
            )
            parts.append(f"rolled back: {rolled}")
        for result in self.rollback_failures:
            parts.append(
                f"rollback failed for {result.resource_id} "
                f"({result.action.value}): {result.error}"
            )
        return "; ".join(parts) or "execution failed"

    @property
    def resource_ids(self) -> List[str]:
        """ResourceIDs of every failed forward operation."""
        return [r.resource_id for r in self.failures]


class ExecutionCancelledError(ExecutionError):
    """
    The caller cancelled the run before all batches were dispatched.

    If operations had also failed, the completed ones were still rolled
    back and the outcome is carried here as on ExecutionError.
    """

    def __init__(
        self,
        failures: Optional[List] = None,
        pending: Sequence[str] = (),
        rollback_failures: Optional[List] = None,
        rolled_back: Optional[List] = None,
    ):
        self.pending = list(pending)
        self.failures = list(failures or [])
        self.rollback_failures = list(rollback_failures or [])
        self.rolled_back = list(rolled_back or [])
        message = (
            f"execution cancelled with {len(self.pending)} operation(s) not started"
        )
        if self.failures or self.rolled_back or self.rollback_failures:
            message = f"{message}; {self._build_message()}"
        super().__init__(
            failures=self.failures,
            rollback_failures=self.rollback_failures,
            rolled_back=self.rolled_back,
            message=message,
        )
