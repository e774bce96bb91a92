"""
Parallel Executor - runs an ExecutionPlan batch by batch.

Batches run strictly in order. Inside a batch up to ``max_concurrency``
operations run at once on the executor's own thread pool, since provider
calls are blocking. A concurrency slot is held until the worker thread has
returned, even when the operation already timed out, so every call that
gets a slot also gets an idle worker and its timeout only counts time spent
running. Each successful forward operation is journaled together with the
state read before it changed anything; when a batch fails and rollback is
enabled, the journal is replayed in reverse through the inverse diffs.
Rollback calls each get a dedicated worker thread.
"""

import asyncio
import functools
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from chisel.diff import (
    Action,
    Batch,
    ExecutionPlan,
    ExecutionReport,
    OperationPhase,
    OperationResult,
    ResourceDiff,
)
from chisel.errors import (
    ApplyError,
    ChiselError,
    ExecutionCancelledError,
    ExecutionError,
    OperationTimeoutError,
)
from chisel.events import EventEmitter
from chisel.graph import PrecedenceStrategy, build_batches
from chisel.plugins.base import OperationContext

logger = logging.getLogger(__name__)

ApplyFunc = Callable[[OperationContext, ResourceDiff], None]
ReadFunc = Callable[[OperationContext, ResourceDiff], Optional[Dict[str, Any]]]


def release_when_done(future: Future, release: Callable[[], None]) -> None:
    """Run ``release`` on the current event loop once ``future`` finishes."""
    loop = asyncio.get_running_loop()

    def done(_: Future) -> None:
        # The run may have ended while an abandoned call was still going
        if not loop.is_closed():
            loop.call_soon_threadsafe(release)

    future.add_done_callback(done)


@dataclass
class JournalEntry:
    """A completed forward operation and the state it replaced."""

    diff: ResourceDiff
    snapshot: Optional[Dict[str, Any]]


class ParallelExecutor:
    """
    Executes batches of diffs with bounded concurrency and rollback.

    Configuration is fixed at construction. Each executor owns its
    semaphore and thread pool; call ``close()`` (or use it as a context
    manager) to release the pool.
    """

    def __init__(
        self,
        max_concurrency: int = 10,
        timeout: Optional[float] = 1800.0,
        enable_rollback: bool = True,
        precedence: Optional[PrecedenceStrategy] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")

        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self.enable_rollback = enable_rollback
        self.precedence = precedence
        self.emitter = emitter

        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._pool = ThreadPoolExecutor(
            max_workers=max_concurrency, thread_name_prefix="chisel-op"
        )

    def close(self) -> None:
        # Timed-out provider calls cannot be interrupted; don't wait on them
        self._pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ParallelExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def create_execution_plan(self, diffs: Sequence[ResourceDiff]) -> ExecutionPlan:
        """
        Order the diffs that need executing into batches.

        Raises:
            DependencyCycleError: If the dependencies form a cycle.
        """
        return ExecutionPlan(batches=build_batches(diffs, self.precedence))

    async def execute_with_rollback(
        self,
        plan: ExecutionPlan,
        apply: ApplyFunc,
        read: ReadFunc,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionReport:
        """
        Execute the plan.

        Never raises for operation failures; the returned report carries
        every attempted operation and, when anything went wrong, an
        ExecutionError describing it.
        """
        report = ExecutionReport()
        journal: List[JournalEntry] = []
        journal_lock = asyncio.Lock()
        failures: List[OperationResult] = []
        pending: List[str] = []

        for position, batch in enumerate(plan.batches):
            if cancel_event is not None and cancel_event.is_set():
                for later in plan.batches[position:]:
                    pending.extend(later.resource_ids())
                break

            logger.info(
                f"Executing batch {batch.index} with {len(batch)} operation(s)"
            )
            batch_results, not_started = await self._run_batch(
                batch, apply, read, journal, journal_lock, cancel_event
            )
            report.results.extend(batch_results)
            pending.extend(not_started)

            batch_failures = [r for r in batch_results if not r.success]
            failures.extend(batch_failures)

            if not_started:
                for later in plan.batches[position + 1:]:
                    pending.extend(later.resource_ids())
                break
            if batch_failures:
                skipped = sum(len(b) for b in plan.batches[position + 1:])
                if skipped:
                    logger.warning(
                        f"Batch {batch.index} failed, skipping {skipped} "
                        f"remaining operation(s)"
                    )
                break

        # Failures roll back whether or not the run was also cancelled
        rolled_back: List[OperationResult] = []
        rollback_failures: List[OperationResult] = []
        if failures and self.enable_rollback and journal:
            rollback_results = await self._rollback(journal, apply)
            report.results.extend(rollback_results)
            rolled_back = [r for r in rollback_results if r.success]
            rollback_failures = [r for r in rollback_results if not r.success]
            report.rolled_back = [r.resource_id for r in rolled_back]

        if pending:
            logger.warning(
                f"Execution cancelled with {len(pending)} operation(s) not started"
            )
            report.cancelled = True
            report.error = ExecutionCancelledError(
                failures=failures,
                pending=pending,
                rollback_failures=rollback_failures,
                rolled_back=rolled_back,
            )
            return report

        if not failures:
            return report

        report.error = ExecutionError(
            failures=failures,
            rollback_failures=rollback_failures,
            rolled_back=rolled_back,
        )
        return report

    async def _run_batch(
        self,
        batch: Batch,
        apply: ApplyFunc,
        read: ReadFunc,
        journal: List[JournalEntry],
        journal_lock: asyncio.Lock,
        cancel_event: Optional[asyncio.Event],
    ) -> Tuple[List[OperationResult], List[str]]:
        """Run one batch; waits for every sibling before returning."""
        outcomes = await asyncio.gather(
            *(
                self._run_operation(
                    diff, batch.index, apply, read, journal, journal_lock, cancel_event
                )
                for diff in batch.diffs
            )
        )
        results = [outcome for outcome in outcomes if outcome is not None]
        not_started = [
            diff.resource_id
            for diff, outcome in zip(batch.diffs, outcomes)
            if outcome is None
        ]
        return results, not_started

    async def _run_operation(
        self,
        diff: ResourceDiff,
        batch_index: int,
        apply: ApplyFunc,
        read: ReadFunc,
        journal: List[JournalEntry],
        journal_lock: asyncio.Lock,
        cancel_event: Optional[asyncio.Event],
    ) -> Optional[OperationResult]:
        """
        Snapshot and apply one diff. Returns None if the run was cancelled
        before the operation could start.
        """
        # Released by _call once the worker thread returns
        await self._semaphore.acquire()
        if cancel_event is not None and cancel_event.is_set():
            self._semaphore.release()
            return None

        result = OperationResult(
            resource_id=diff.resource_id, action=diff.action, batch=batch_index
        )
        if self.emitter:
            await self.emitter.emit_resource_started(
                diff.resource_id, diff.action.value
            )
        ctx = OperationContext.with_timeout(diff.resource_id, self.timeout)

        def snapshot_and_apply() -> Optional[Dict[str, Any]]:
            snapshot = None
            if diff.action != Action.CREATE:
                snapshot = read(ctx, diff)
            apply(ctx, diff)
            return snapshot

        start = time.monotonic()
        try:
            result.snapshot = await self._call(
                ctx, snapshot_and_apply, self._pool, release=self._semaphore.release
            )
            result.success = True
        except Exception as e:
            result.error = self._wrap_error(diff, e)
        result.duration = time.monotonic() - start

        if result.success:
            async with journal_lock:
                journal.append(JournalEntry(diff=diff, snapshot=result.snapshot))
            logger.info(
                f"{diff.action.value} {diff.resource_id} completed "
                f"({result.duration:.2f}s)"
            )
            if self.emitter:
                await self.emitter.emit_resource_completed(
                    diff.resource_id, diff.action.value, result.duration
                )
        else:
            logger.error(f"{diff.action.value} {diff.resource_id} failed: {result.error}")
            if self.emitter:
                await self.emitter.emit_resource_failed(
                    diff.resource_id, diff.action.value, str(result.error), result.duration
                )
        return result

    async def _rollback(
        self, journal: List[JournalEntry], apply: ApplyFunc
    ) -> List[OperationResult]:
        """
        Undo every journaled operation, most recent first.

        Each entry gets exactly one attempt and a failure never stops the
        sweep. The cancel event is not consulted here.
        """
        logger.warning(f"Rolling back {len(journal)} completed operation(s)")
        if self.emitter:
            await self.emitter.emit_rollback_started(len(journal))

        results: List[OperationResult] = []
        for entry in reversed(journal):
            diff = entry.diff
            result = OperationResult(
                resource_id=diff.resource_id,
                action=diff.action,
                phase=OperationPhase.ROLLBACK,
            )
            ctx = OperationContext.with_timeout(
                diff.resource_id, self.timeout, phase=OperationPhase.ROLLBACK
            )
            start = time.monotonic()
            # Forward workers may still be stuck in abandoned calls
            pool = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="chisel-rollback"
            )
            try:
                inverse = diff.inverse(entry.snapshot)
                await self._call(ctx, functools.partial(apply, ctx, inverse), pool)
                result.success = True
                logger.info(f"Rolled back {diff.action.value} of {diff.resource_id}")
            except Exception as e:
                result.error = self._wrap_error(diff, e, verb="roll back")
                logger.error(f"Rollback of {diff.resource_id} failed: {result.error}")
            finally:
                pool.shutdown(wait=False)
            result.duration = time.monotonic() - start
            results.append(result)

        succeeded = sum(1 for r in results if r.success)
        if self.emitter:
            await self.emitter.emit_rollback_completed(
                succeeded, len(results) - succeeded
            )
        return results

    async def _call(
        self,
        ctx: OperationContext,
        func: Callable[[], Any],
        pool: ThreadPoolExecutor,
        release: Optional[Callable[[], None]] = None,
    ) -> Any:
        """
        Run a blocking call on ``pool``, bounded by the operation timeout.

        The pool must have an idle worker, so the timeout starts when the
        call does. ``release`` runs once the worker thread returns, which
        can be well after a timeout was reported.
        """
        try:
            future = pool.submit(func)
        except BaseException:
            if release is not None:
                release()
            raise
        if release is not None:
            release_when_done(future, release)

        wrapped = asyncio.wrap_future(future)
        if self.timeout is None:
            return await wrapped
        try:
            return await asyncio.wait_for(wrapped, timeout=self.timeout)
        except OperationTimeoutError:
            raise
        except asyncio.TimeoutError:
            # The worker thread keeps running; tell the provider to give up
            ctx.cancelled.set()
            raise OperationTimeoutError(ctx.resource_id, self.timeout)

    @staticmethod
    def _wrap_error(
        diff: ResourceDiff, error: Exception, verb: Optional[str] = None
    ) -> ChiselError:
        if isinstance(error, ChiselError):
            return error
        wrapped = ApplyError(diff.resource_id, verb or diff.action.value, str(error))
        wrapped.__cause__ = error
        return wrapped
