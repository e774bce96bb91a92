"""
Reconciler - plans, orders and executes a module against its providers.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from chisel.config import Config, get_config
from chisel.diff import ExecutionPlan, ExecutionReport, Plan, ResourceDiff, summarize_results
from chisel.drift import DriftDetector, DriftReport
from chisel.errors import ConfigurationError
from chisel.events import EventEmitter
from chisel.executor import ParallelExecutor
from chisel.graph import PrecedenceStrategy
from chisel.module import Module
from chisel.planner import Planner
from chisel.plugins.base import OperationContext
from chisel.plugins.registry import ProviderRegistry, register_builtin_providers

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Everything that happened during one apply."""

    plan: Plan
    execution_plan: ExecutionPlan
    report: ExecutionReport
    skipped: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.report.success and not self.skipped


def skipped_resources(plan: Plan) -> List[str]:
    """
    ResourceIDs that cannot run: entries whose state could not be read and
    everything that depends on them, directly or transitively.
    """
    skipped: Set[str] = {entry.diff.resource_id for entry in plan.errors}
    changed = True
    while changed:
        changed = False
        for diff in plan.diffs:
            if diff.resource_id in skipped:
                continue
            if any(dep in skipped for dep in diff.depends_on):
                skipped.add(diff.resource_id)
                changed = True
    return [diff.resource_id for diff in plan.diffs if diff.resource_id in skipped]


class Reconciler:
    """
    Drives modules to their declared state.

    Providers are looked up in the registry on every call, so the provider
    backed ``apply``/``read`` callables can be handed straight to the
    executor.
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        config: Optional[Config] = None,
        emitter: Optional[EventEmitter] = None,
        precedence: Optional[PrecedenceStrategy] = None,
    ):
        self.registry = registry if registry is not None else register_builtin_providers()
        self.config = config or get_config()
        self.emitter = emitter
        self.precedence = precedence
        self.planner = Planner(
            self.registry,
            emitter=emitter,
            max_concurrency=self.config.engine.plan_concurrency,
            read_timeout=self.config.engine.read_timeout,
        )
        self.detector = DriftDetector(self.planner, emitter=emitter)

    async def plan(self, module: Module) -> Plan:
        """Validate the module and compute its plan."""
        if module is None:
            raise ConfigurationError("cannot plan without a module")
        module.validate()
        return await self.planner.create_plan(module)

    async def check_drift(self, module: Module) -> DriftReport:
        if module is None:
            raise ConfigurationError("cannot check drift without a module")
        module.validate()
        return await self.detector.check_drift(module)

    def create_executor(self) -> ParallelExecutor:
        engine = self.config.engine
        return ParallelExecutor(
            max_concurrency=engine.max_concurrency,
            timeout=engine.operation_timeout,
            enable_rollback=engine.enable_rollback,
            precedence=self.precedence,
            emitter=self.emitter,
        )

    async def apply(
        self,
        module: Module,
        cancel_event: Optional[asyncio.Event] = None,
        plan: Optional[Plan] = None,
    ) -> ApplyResult:
        """
        Plan and execute a module.

        A previously computed ``plan`` may be passed to skip re-planning.

        Raises:
            ConfigurationError: If the plan references unknown providers or
                invalid resources, or the dependencies form a cycle. Nothing
                has been executed when this is raised.
        """
        if plan is None:
            plan = await self.plan(module)

        for entry in plan.errors:
            if isinstance(entry.error, ConfigurationError):
                raise entry.error

        skipped = skipped_resources(plan)
        for resource_id in skipped:
            logger.warning(f"Skipping {resource_id}: its state or a dependency's could not be read")
        runnable = [d for d in plan.changes if d.resource_id not in skipped]

        start = time.monotonic()
        with self.create_executor() as executor:
            execution_plan = executor.create_execution_plan(runnable)

            if self.emitter:
                await self.emitter.emit_apply_started(plan.module_name, len(runnable))
            logger.info(
                f"Applying {plan.module_name}: {len(runnable)} change(s) in "
                f"{len(execution_plan)} batch(es)"
            )

            report = await executor.execute_with_rollback(
                execution_plan,
                apply=self.apply_diff,
                read=self.read_diff,
                cancel_event=cancel_event,
            )

        duration = time.monotonic() - start
        if report.success:
            logger.info(f"Apply of {plan.module_name} completed ({duration:.2f}s)")
            if self.emitter:
                summary: Dict[str, Any] = summarize_results(report.results)
                summary["skipped"] = len(skipped)
                await self.emitter.emit_apply_completed(
                    plan.module_name, summary, duration
                )
        else:
            logger.error(f"Apply of {plan.module_name} failed: {report.error}")
            if self.emitter:
                await self.emitter.emit_apply_failed(
                    plan.module_name, str(report.error), duration
                )

        return ApplyResult(
            plan=plan, execution_plan=execution_plan, report=report, skipped=skipped
        )

    def apply_diff(self, ctx: OperationContext, diff: ResourceDiff) -> None:
        provider = self.registry.get(diff.resource_type)
        provider.apply(ctx, diff.resource, diff)

    def read_diff(self, ctx: OperationContext, diff: ResourceDiff) -> Optional[Dict[str, Any]]:
        provider = self.registry.get(diff.resource_type)
        return provider.read(ctx, diff.resource)
