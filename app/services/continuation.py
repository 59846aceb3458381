"""
Continuation of runs that ran out of execution budget.

A continuation is a pending SyncRun row pointing at its parent. The row and
the payload stored for the chain are everything a worker needs, so a lost
dispatch is picked up again by the sweeper.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional
import httpx

from app.models.sync_run import PENDING, SyncRun
from app.services.sync_runs import SyncRunStore

logger = logging.getLogger(__name__)


class ContinuationDispatcher:
    """Hands a pending continuation run to something that will execute it."""

    async def dispatch(self, run: SyncRun) -> None:
        raise NotImplementedError


class LocalDispatcher(ContinuationDispatcher):
    """Runs continuations as tasks on the current event loop."""

    def __init__(self, runner: Callable[[int], Awaitable[object]]):
        self.runner = runner
        self.tasks: set[asyncio.Task] = set()

    async def dispatch(self, run: SyncRun) -> None:
        task = asyncio.create_task(self.runner(run.id), name=f"sync-run-{run.id}")
        # The loop only keeps weak references to tasks
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def wait(self) -> None:
        """Wait until no dispatched task is left, including ones they dispatch."""
        while self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)


class HttpDispatcher(ContinuationDispatcher):
    """Posts continuations back to the service's own sync endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def dispatch(self, run: SyncRun) -> None:
        payload = {
            "type": run.kind,
            "syncId": run.id,
            "resumeFromBatch": run.current_batch_index,
            "resumeFromRecord": run.processed_records,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}/api/sync",
                json=payload,
                headers={"X-Owner-Id": run.owner},
            )
            response.raise_for_status()
        logger.info(f"Dispatched continuation run {run.id} to {self.base_url}")


class ContinuationScheduler:
    """Creates continuation rows and dispatches them."""

    def __init__(self, store: SyncRunStore, dispatcher: ContinuationDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def schedule(
        self,
        run: SyncRun,
        next_batch_index: int,
        processed: int,
        total: int,
        success: int = 0,
        failed: int = 0,
    ) -> Optional[SyncRun]:
        """
        Hand the rest of run over to a new run starting at next_batch_index.

        Returns the continuation row, or None when run was no longer
        processing (cancelled, or another writer already scheduled it).
        """
        message = (
            f"Execution budget reached at batch {next_batch_index}/{run.total_batches}, "
            f"{processed} of {total} records processed. Continuing in a new run"
        )
        moved = await self.store.mark_needs_continuation(
            run.id,
            message,
            current_batch_index=next_batch_index,
            processed_records=processed,
            total_records=total,
            success_count=success,
            failed_count=failed,
        )
        if not moved:
            return None

        parent = await self.store.get_run(run.id)
        return await self._spawn(parent)

    async def _spawn(self, parent: SyncRun) -> SyncRun:
        child = await self.store.create_continuation(
            parent,
            current_batch_index=parent.current_batch_index,
            processed_records=parent.processed_records,
            success_count=parent.success_count,
            failed_count=parent.failed_count,
            message=f"Continuation of sync run {parent.id}, resuming at batch {parent.current_batch_index + 1}",
        )
        await self.dispatch(child)
        return child

    async def dispatch(self, run: SyncRun) -> bool:
        """Dispatch a pending continuation. Failures are recorded on the row, never raised."""
        try:
            await self.dispatcher.dispatch(run)
            return True
        except Exception as e:
            logger.error(f"Failed to dispatch continuation run {run.id}: {e}")
            await self.store.annotate(run.id, f"Continuation dispatch failed ({e}), waiting for retry")
            return False

    async def resume_stranded(self, stale_after: timedelta) -> int:
        """
        Re-dispatch continuations that were never claimed.

        Also creates the missing child of parents left in needs_continuation
        without one. Returns how many runs were dispatched.
        """
        dispatched = 0
        for run in await self.store.stale_continuations(stale_after):
            # Touch the row so the next sweep leaves it alone while this dispatch runs
            if not await self.store.annotate(run.id, f"Re-dispatching continuation run {run.id}", (PENDING,)):
                continue
            logger.warning(f"Continuation run {run.id} was not claimed, re-dispatching")
            if await self.dispatch(run):
                dispatched += 1

        for parent in await self.store.orphaned_parents(stale_after):
            logger.warning(f"Sync run {parent.id} needs continuation but has none, creating it")
            await self._spawn(parent)
            dispatched += 1

        return dispatched
