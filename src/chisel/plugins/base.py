"""
Core plugin types shared by providers and the engine.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from chisel.diff import OperationPhase


@dataclass
class OperationContext:
    """
    Context passed to provider calls.

    Providers run on worker threads and cannot be interrupted, so the engine
    signals timeouts and cancellation through ``cancelled`` and exposes the
    time left before the per-operation deadline. Long-running providers
    should pass ``remaining()`` on to their own blocking calls.
    """

    resource_id: str
    phase: OperationPhase = OperationPhase.APPLY
    deadline: Optional[float] = None
    cancelled: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def with_timeout(
        cls,
        resource_id: str,
        timeout: Optional[float],
        phase: OperationPhase = OperationPhase.APPLY,
    ) -> "OperationContext":
        deadline = time.monotonic() + timeout if timeout else None
        return cls(resource_id=resource_id, phase=phase, deadline=deadline)

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()
