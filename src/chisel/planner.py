"""
Planner - computes one diff per declared resource.

The planner resolves each resource's provider, reads its current state on
a worker thread and compares it with the declared state. It never applies
anything, and a failure for one resource is recorded on that resource's
plan entry without affecting the others.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from chisel.diff import Plan, PlanEntry, compute_diff, error_diff
from chisel.errors import ChiselError, ConfigurationError, ReadError
from chisel.events import EventEmitter
from chisel.executor import release_when_done
from chisel.module import Module, Resource
from chisel.plugins.base import OperationContext
from chisel.plugins.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class Planner:
    """Creates Plans for modules."""

    def __init__(
        self,
        registry: ProviderRegistry,
        emitter: Optional[EventEmitter] = None,
        max_concurrency: int = 5,
        read_timeout: Optional[float] = None,
    ):
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self.registry = registry
        self.emitter = emitter
        self.max_concurrency = max_concurrency
        self.read_timeout = read_timeout

    async def create_plan(self, module: Module) -> Plan:
        """
        Create a plan for the module.

        The module is assumed to be validated. Entries are returned in
        declaration order, one per resource.

        Raises:
            ConfigurationError: If no module is given.
        """
        if module is None:
            raise ConfigurationError("cannot plan without a module")

        start_time = time.monotonic()
        if self.emitter:
            await self.emitter.emit_plan_started(module.name, len(module.resources))

        semaphore = asyncio.Semaphore(self.max_concurrency)
        pool = ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="chisel-read"
        )
        try:
            entries = await asyncio.gather(
                *(self._plan_resource(r, pool, semaphore) for r in module.resources)
            )
        finally:
            # Timed-out reads keep their thread; don't wait on them
            pool.shutdown(wait=False)
        plan = Plan(module_name=module.name, entries=entries)

        summary = plan.summary
        duration = time.monotonic() - start_time
        logger.info(
            f"Plan for {module.name}: {summary.to_create} to create, "
            f"{summary.to_update} to update, {summary.to_delete} to delete, "
            f"{summary.errors} errors ({duration:.2f}s)"
        )
        if self.emitter:
            await self.emitter.emit_plan_completed(
                module.name, summary.to_dict(), duration
            )
        return plan

    async def _plan_resource(
        self,
        resource: Resource,
        pool: ThreadPoolExecutor,
        semaphore: asyncio.Semaphore,
    ) -> PlanEntry:
        """Plan a single resource, converting failures into an errored entry."""
        try:
            provider = self.registry.get(resource.type)
            provider.validate(resource)
            current = await self._read(provider, resource, pool, semaphore)
        except ChiselError as e:
            logger.warning(f"Could not plan {resource.resource_id}: {e}")
            return PlanEntry(diff=error_diff(resource, e), error=e)
        except Exception as e:
            error = ReadError(resource.resource_id, str(e))
            error.__cause__ = e
            logger.warning(f"Could not plan {resource.resource_id}: {error}")
            return PlanEntry(diff=error_diff(resource, error), error=error)

        diff = compute_diff(resource, current)
        logger.debug(f"Planned {resource.resource_id}: {diff.action.value}")
        return PlanEntry(diff=diff)

    async def _read(
        self,
        provider,
        resource: Resource,
        pool: ThreadPoolExecutor,
        semaphore: asyncio.Semaphore,
    ):
        """
        Read on a worker thread. The slot is held until the thread returns,
        so a read that outlives its timeout still counts against the limit
        and a waiting read never starts its timeout without a free worker.
        """
        await semaphore.acquire()
        ctx = OperationContext.with_timeout(resource.resource_id, self.read_timeout)
        try:
            future = pool.submit(provider.read, ctx, resource)
        except BaseException:
            semaphore.release()
            raise
        release_when_done(future, semaphore.release)

        read = asyncio.wrap_future(future)
        if self.read_timeout is None:
            return await read
        try:
            return await asyncio.wait_for(read, timeout=self.read_timeout)
        except asyncio.TimeoutError:
            ctx.cancelled.set()
            raise ReadError(
                resource.resource_id, f"read timed out after {self.read_timeout:g}s"
            )
