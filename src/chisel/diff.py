"""
Diff model - value types for planned changes and their outcomes.

A ResourceDiff describes the change one resource needs, a Plan collects one
diff per declared resource, and OperationResult / ExecutionReport record
what happened when diffs were executed.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chisel.errors import ExecutionError
from chisel.module import Resource

State = Optional[Dict[str, Any]]


class Action(str, Enum):
    """Type of change needed for a resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "no-op"


class OperationPhase(str, Enum):
    """Whether an operation moved forward or compensated a previous one."""

    APPLY = "apply"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class ResourceDiff:
    """The change required to bring one resource to its declared state."""

    resource_id: str
    action: Action
    before: State = None
    after: State = None
    error: Optional[BaseException] = None
    resource: Optional[Resource] = field(default=None, compare=False)
    changes: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def resource_type(self) -> str:
        if self.resource is not None:
            return self.resource.type
        return self.resource_id.split(".", 1)[0]

    @property
    def depends_on(self) -> List[str]:
        return list(self.resource.depends_on) if self.resource is not None else []

    @property
    def has_changes(self) -> bool:
        """True when this diff should be executed."""
        return self.error is None and self.action != Action.NOOP

    def inverse(self, snapshot: State) -> "ResourceDiff":
        """
        Build the compensating diff that restores ``snapshot``.

        Create is undone by Delete, Update by re-applying the snapshot and
        Delete by re-creating the snapshot.
        """
        if self.action == Action.CREATE:
            return ResourceDiff(
                resource_id=self.resource_id,
                action=Action.DELETE,
                before=copy.deepcopy(self.after),
                after=None,
                resource=self.resource,
                changes={"state": {"from": "present", "to": "absent"}},
            )
        if self.action == Action.UPDATE:
            restored = copy.deepcopy(snapshot) or {}
            return ResourceDiff(
                resource_id=self.resource_id,
                action=Action.UPDATE,
                before=copy.deepcopy(self.after),
                after=restored,
                resource=self.resource,
                changes={
                    key: {"from": change["to"], "to": restored.get(key)}
                    for key, change in self.changes.items()
                },
            )
        if self.action == Action.DELETE:
            return ResourceDiff(
                resource_id=self.resource_id,
                action=Action.CREATE,
                before=None,
                after=copy.deepcopy(snapshot),
                resource=self.resource,
                changes={"state": {"from": "absent", "to": "present"}},
            )
        raise ValueError(f"{self.resource_id}: a {self.action.value} diff has no inverse")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "action": self.action.value,
            "before": self.before,
            "after": self.after,
            "changes": self.changes,
            "error": str(self.error) if self.error else None,
        }


def compute_diff(resource: Resource, current: State) -> ResourceDiff:
    """
    Compare a declared resource against its observed state.

    ``current`` is None when the resource does not exist. Keys reported by
    the provider but not declared on the resource are ignored.
    """
    desired = resource.desired_properties()

    if current is None:
        if resource.wants_absent:
            return ResourceDiff(resource.resource_id, Action.NOOP, resource=resource)
        return ResourceDiff(
            resource_id=resource.resource_id,
            action=Action.CREATE,
            before=None,
            after=desired,
            resource=resource,
            changes={"state": {"from": "absent", "to": resource.state.value}},
        )

    before = copy.deepcopy(dict(current))

    if resource.wants_absent:
        return ResourceDiff(
            resource_id=resource.resource_id,
            action=Action.DELETE,
            before=before,
            after=None,
            resource=resource,
            changes={"state": {"from": "present", "to": "absent"}},
        )

    changes = {
        key: {"from": before.get(key), "to": value}
        for key, value in desired.items()
        if before.get(key) != value
    }
    return ResourceDiff(
        resource_id=resource.resource_id,
        action=Action.UPDATE if changes else Action.NOOP,
        before=before,
        after=desired,
        resource=resource,
        changes=changes,
    )


def error_diff(resource: Resource, error: BaseException) -> ResourceDiff:
    """A diff that could not be computed; never executed."""
    return ResourceDiff(
        resource_id=resource.resource_id,
        action=Action.NOOP,
        error=error,
        resource=resource,
    )


@dataclass(frozen=True)
class PlanEntry:
    diff: ResourceDiff
    error: Optional[BaseException] = None


@dataclass
class PlanSummary:
    """Counts of planned actions."""

    to_create: int = 0
    to_update: int = 0
    to_delete: int = 0
    no_changes: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "to_create": self.to_create,
            "to_update": self.to_update,
            "to_delete": self.to_delete,
            "no_changes": self.no_changes,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class Plan:
    """Snapshot of the diffs for one module, in declaration order."""

    module_name: str
    entries: Tuple[PlanEntry, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        object.__setattr__(self, "entries", tuple(self.entries))

    @property
    def summary(self) -> PlanSummary:
        summary = PlanSummary()
        for entry in self.entries:
            if entry.error is not None:
                summary.errors += 1
            elif entry.diff.action == Action.CREATE:
                summary.to_create += 1
            elif entry.diff.action == Action.UPDATE:
                summary.to_update += 1
            elif entry.diff.action == Action.DELETE:
                summary.to_delete += 1
            else:
                summary.no_changes += 1
        return summary

    @property
    def diffs(self) -> List[ResourceDiff]:
        return [entry.diff for entry in self.entries]

    @property
    def changes(self) -> List[ResourceDiff]:
        """Diffs that need executing."""
        return [entry.diff for entry in self.entries if entry.diff.has_changes]

    @property
    def errors(self) -> List[PlanEntry]:
        return [entry for entry in self.entries if entry.error is not None]

    @property
    def has_changes(self) -> bool:
        return any(entry.diff.has_changes for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class OperationResult:
    """Outcome of one forward or rollback operation."""

    resource_id: str
    action: Action
    phase: OperationPhase = OperationPhase.APPLY
    success: bool = False
    error: Optional[BaseException] = None
    duration: float = 0.0
    snapshot: State = None
    batch: Optional[int] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "action": self.action.value,
            "phase": self.phase.value,
            "success": self.success,
            "error": str(self.error) if self.error else None,
            "duration": self.duration,
            "batch": self.batch,
        }


@dataclass(frozen=True)
class Batch:
    """Diffs that may run concurrently."""

    index: int
    diffs: Tuple[ResourceDiff, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "diffs", tuple(self.diffs))

    def resource_ids(self) -> List[str]:
        return [d.resource_id for d in self.diffs]

    def __len__(self) -> int:
        return len(self.diffs)


@dataclass(frozen=True)
class ExecutionPlan:
    """Batches in execution order; a valid topological order of the diffs."""

    batches: Tuple[Batch, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "batches", tuple(self.batches))

    @property
    def diffs(self) -> List[ResourceDiff]:
        return [diff for batch in self.batches for diff in batch.diffs]

    def resource_ids(self) -> List[List[str]]:
        return [batch.resource_ids() for batch in self.batches]

    @property
    def is_empty(self) -> bool:
        return not self.batches

    def __len__(self) -> int:
        return len(self.batches)


@dataclass
class ExecutionReport:
    """Every operation attempted during one run, plus the aggregate error."""

    results: List[OperationResult] = field(default_factory=list)
    error: Optional[ExecutionError] = None
    rolled_back: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.error is None

    def applied(self) -> List[OperationResult]:
        return [
            r for r in self.results if r.phase == OperationPhase.APPLY and r.success
        ]

    def failed(self) -> List[OperationResult]:
        return [r for r in self.results if not r.success]

    def rollbacks(self) -> List[OperationResult]:
        return [r for r in self.results if r.phase == OperationPhase.ROLLBACK]

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def summarize_results(results: Sequence[OperationResult]) -> Dict[str, int]:
    """Count operations by outcome for events and CLI output."""
    summary = {"total": 0, "succeeded": 0, "failed": 0, "rolled_back": 0}
    for result in results:
        if result.phase == OperationPhase.ROLLBACK:
            if result.success:
                summary["rolled_back"] += 1
            else:
                summary["failed"] += 1
            continue
        summary["total"] += 1
        if result.success:
            summary["succeeded"] += 1
        else:
            summary["failed"] += 1
    return summary
