"""
Drift Detection - compares live state against declared modules.

The detector reuses the Planner, so drift is exactly the set of diffs that
would be executed by an apply. It never applies anything. The scheduler
re-checks registered modules on an interval and hands reports to a
notifier.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from chisel.diff import Action, ResourceDiff
from chisel.errors import NotificationError
from chisel.events import EventEmitter
from chisel.module import Module
from chisel.notifications import DriftNotifier
from chisel.planner import Planner

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DriftResult:
    """Drift status of a single resource."""

    resource_id: str
    has_drift: bool = False
    changes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "has_drift": self.has_drift,
            "changes": self.changes,
            "error": self.error,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class DriftReport:
    """Outcome of one drift check over a module."""

    module_name: str
    timestamp: datetime = field(default_factory=_utcnow)
    total_checked: int = 0
    drift_detected: int = 0
    errors: int = 0
    results: List[DriftResult] = field(default_factory=list)
    duration: float = 0.0

    def drifted(self) -> List[DriftResult]:
        return [result for result in self.results if result.has_drift]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module_name": self.module_name,
            "timestamp": self.timestamp.isoformat(),
            "total_checked": self.total_checked,
            "drift_detected": self.drift_detected,
            "errors": self.errors,
            "duration": self.duration,
            "results": [result.to_dict() for result in self.results],
        }


def _drift_changes(diff: ResourceDiff) -> Dict[str, Dict[str, Any]]:
    if diff.action in (Action.CREATE, Action.DELETE):
        return dict(diff.changes) or {
            "state": {
                "from": "absent" if diff.action == Action.CREATE else "present",
                "to": "present" if diff.action == Action.CREATE else "absent",
            }
        }
    return dict(diff.changes)


class DriftDetector:
    """Runs read-only drift checks through the planner."""

    def __init__(self, planner: Planner, emitter: Optional[EventEmitter] = None):
        self.planner = planner
        self.emitter = emitter

    async def check_drift(self, module: Module) -> DriftReport:
        """
        Check every resource in the module for drift.

        Resources whose state could not be read are counted in ``errors``
        and never reported as drifted.
        """
        start = time.monotonic()
        plan = await self.planner.create_plan(module)

        report = DriftReport(module_name=module.name)
        for entry in plan.entries:
            diff = entry.diff
            result = DriftResult(resource_id=diff.resource_id)
            if entry.error is not None:
                result.error = str(entry.error)
                report.errors += 1
            elif diff.has_changes:
                result.has_drift = True
                result.changes = _drift_changes(diff)
                report.drift_detected += 1
            report.results.append(result)
        report.total_checked = len(report.results)
        report.duration = time.monotonic() - start

        for result in report.drifted():
            logger.warning(f"Drift detected in {module.name}: {result.resource_id}")
            if self.emitter:
                await self.emitter.emit_drift_detected(
                    module.name, result.resource_id, result.changes
                )

        logger.info(
            f"Drift check for {module.name}: {report.drift_detected} drifted, "
            f"{report.errors} errors, {report.total_checked} checked "
            f"({report.duration:.2f}s)"
        )
        return report


@dataclass
class ScheduledModule:
    """Bookkeeping for a module under periodic drift detection."""

    module: Module
    next_run: float = 0.0  # time.monotonic() value
    last_run: Optional[datetime] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.module.name


class DriftScheduler:
    """
    Periodically checks registered modules for drift.

    A module becomes due as soon as it is added and then once per
    ``interval``. Each check is retried up to ``max_retries`` times and
    bounded by ``timeout``.
    """

    def __init__(
        self,
        detector: DriftDetector,
        interval: float = 900.0,
        notifier: Optional[DriftNotifier] = None,
        max_retries: int = 3,
        retry_delay: float = 30.0,
        timeout: float = 300.0,
        max_reports: int = 100,
        check_interval: Optional[float] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if retry_delay < 0:
            raise ValueError("retry_delay cannot be negative")

        self.detector = detector
        self.interval = interval
        self.notifier = notifier
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.check_interval = check_interval or min(interval, 10.0)

        self._modules: Dict[str, ScheduledModule] = {}
        self._reports: Deque[DriftReport] = deque(maxlen=max_reports)
        self._shutdown_event = asyncio.Event()
        self.running = False

    def add_module(self, module: Module) -> None:
        """Schedule a module; replaces any module with the same name."""
        if module is None or not module.name:
            raise ValueError("module must have a name")
        self._modules[module.name] = ScheduledModule(
            module=module, next_run=time.monotonic()
        )
        logger.info(f"Scheduled drift detection for module {module.name}")

    def remove_module(self, module_name: str) -> None:
        if self._modules.pop(module_name, None) is None:
            raise KeyError(f"module {module_name} is not scheduled")
        logger.info(f"Removed module {module_name} from drift detection")

    def modules(self) -> List[ScheduledModule]:
        return list(self._modules.values())

    def recent_reports(self, limit: Optional[int] = None) -> List[DriftReport]:
        """Most recent reports, oldest first."""
        reports = list(self._reports)
        if limit is not None:
            reports = reports[-limit:] if limit > 0 else []
        return reports

    async def run_once(self) -> List[DriftReport]:
        """Check every module that is due and return the new reports."""
        now = time.monotonic()
        due = [m for m in self._modules.values() if m.next_run <= now]
        if not due:
            return []

        reports = await asyncio.gather(*(self._check_module(m) for m in due))
        return [report for report in reports if report is not None]

    async def start(self):
        """Run scheduled checks until ``stop()`` is called."""
        logger.info(f"Starting drift scheduler (interval={self.interval:g}s)")
        self.running = True
        self._shutdown_event.clear()

        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in drift scheduler loop: {e}", exc_info=True)
            await self._wait(self.check_interval)

    def request_stop(self) -> None:
        """Ask a running scheduler to finish; safe to call from a signal handler."""
        logger.info("Stopping drift scheduler")
        self.running = False
        self._shutdown_event.set()

    async def stop(self):
        self.request_stop()

    async def _wait(self, delay: float) -> None:
        """Sleep for ``delay`` seconds or until shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _check_module(self, scheduled: ScheduledModule) -> Optional[DriftReport]:
        report = None
        error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                report = await asyncio.wait_for(
                    self.detector.check_drift(scheduled.module), timeout=self.timeout
                )
                error = None
                break
            except Exception as e:
                error = e
                logger.warning(
                    f"Drift check for {scheduled.name} failed "
                    f"(attempt {attempt + 1}/{self.max_retries + 1}): {e!r}"
                )
            if attempt < self.max_retries:
                await self._wait(self.retry_delay)
                if self._shutdown_event.is_set():
                    break

        scheduled.last_run = _utcnow()
        scheduled.next_run = time.monotonic() + self.interval
        scheduled.run_count += 1
        if error is not None:
            scheduled.error_count += 1
            scheduled.last_error = str(error)
            logger.error(f"Drift check for {scheduled.name} gave up: {error!r}")
            return None

        scheduled.last_error = None
        self._reports.append(report)
        if self.notifier is not None:
            try:
                await self.notifier.notify_drift(report)
            except NotificationError as e:
                logger.error(f"Failed to send drift notification: {e}")
        return report
