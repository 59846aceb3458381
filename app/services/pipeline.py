"""Sync orchestration - fetches one SOC export and applies it in resumable batches."""

import logging
import time
import traceback
from datetime import timedelta
from functools import lru_cache
from typing import Callable, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import Settings, get_settings
from app.core.database import async_session_maker
from app.models.sync_run import (
    COMPLETED,
    COMPLETED_WITH_ERRORS,
    CONTINUES,
    ERROR,
    IN_PROGRESS,
    KINDS,
    NEEDS_CONTINUATION,
    PENDING,
    PROCESSING,
    SyncRun,
)
from app.services.continuation import (
    ContinuationDispatcher,
    ContinuationScheduler,
    HttpDispatcher,
    LocalDispatcher,
)
from app.services.credentials import CredentialProvider
from app.services.errors import (
    AlreadyRunningError,
    BadResponseError,
    ConfigurationError,
    NetworkError,
    RunNotFoundError,
    RunNotResumableError,
    SyncCancelledError,
    SyncError,
)
from app.services.executor import BatchExecutor, BatchResult
from app.services.soc import SocClient
from app.services.sync_runs import SyncRunStore
from app.services.transform import split_batches, total_batches

logger = logging.getLogger(__name__)


def final_status(success: int, failed: int) -> str:
    """Outcome of a run that processed every batch."""
    if failed == 0:
        return COMPLETED
    if success == 0:
        return ERROR
    return COMPLETED_WITH_ERRORS


def _percent(processed: int, total: int) -> int:
    return round(processed * 100 / total) if total else 100


class SyncPipeline:
    """
    Runs SOC syncs for every data kind.

    start() admits a request and creates (or picks) the pending SyncRun row;
    run() executes it. The two are split so HTTP handlers can answer before
    the work starts.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        soc: SocClient,
        credentials: CredentialProvider,
        settings: Settings,
        dispatcher: Optional[ContinuationDispatcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if settings.execution_budget_seconds <= settings.safety_margin_seconds:
            raise ValueError("execution_budget_seconds must exceed safety_margin_seconds")

        self.session_maker = session_maker
        self.soc = soc
        self.credentials = credentials
        self.settings = settings
        self.clock = clock
        self.store = SyncRunStore(session_maker)
        self.dispatcher = dispatcher or LocalDispatcher(self.run)
        self.continuations = ContinuationScheduler(self.store, self.dispatcher)

    def _guard_kind(self, kind: str) -> Optional[str]:
        return None if self.settings.sync_global_guard else kind

    async def start(
        self,
        owner: str,
        kind: str,
        sync_id: Optional[int] = None,
        resume_from_batch: Optional[int] = None,
        resume_from_record: Optional[int] = None,
        parallel: Optional[bool] = None,
        batch_size: Optional[int] = None,
        max_concurrent: Optional[int] = None,
    ) -> SyncRun:
        """
        Admit a sync request.

        Without sync_id a new pending run is created. With sync_id the given
        pending continuation (or the pending child of a needs_continuation
        run) is returned, optionally with overridden resume coordinates.

        Raises:
            ValueError: invalid kind or options.
            AlreadyRunningError: another run holds the (owner, kind) slot.
            RunNotFoundError: sync_id is unknown for this owner.
            RunNotResumableError: sync_id cannot be resumed.
        """
        if kind not in KINDS:
            raise ValueError(f"Unknown sync type {kind!r}, expected one of {', '.join(KINDS)}")

        if sync_id is not None:
            return await self._admit_resume(
                owner, kind, sync_id, resume_from_batch, resume_from_record
            )

        if resume_from_batch is not None or resume_from_record is not None:
            raise RunNotResumableError("Resume coordinates require syncId")

        batch_size = batch_size or self.settings.batch_size
        max_concurrent = max_concurrent or self.settings.max_concurrent
        if not 1 <= batch_size <= self.settings.max_batch_size:
            raise ValueError(f"batchSize must be between 1 and {self.settings.max_batch_size}")
        if not 1 <= max_concurrent <= self.settings.max_concurrent_limit:
            raise ValueError(f"maxConcurrent must be between 1 and {self.settings.max_concurrent_limit}")

        active = await self.store.find_active(owner, self._guard_kind(kind))
        if active is not None:
            raise AlreadyRunningError(
                f"A {active.kind} sync is already running (id {active.id}, status {active.status})",
                active.id,
            )

        return await self.store.create_run(
            kind,
            owner,
            batch_size=batch_size,
            max_concurrent=max_concurrent,
            parallel=bool(parallel),
            message=f"{kind.capitalize()} sync queued",
        )

    async def _admit_resume(
        self,
        owner: str,
        kind: str,
        sync_id: int,
        resume_from_batch: Optional[int],
        resume_from_record: Optional[int],
    ) -> SyncRun:
        run = await self.store.get_run(sync_id, owner)
        if run is None:
            raise RunNotFoundError(f"Sync run {sync_id} not found")
        if run.kind != kind:
            raise RunNotResumableError(f"Sync run {sync_id} is a {run.kind} sync, not {kind}")

        if run.status == NEEDS_CONTINUATION:
            child = await self.store.get_child(run.id)
            if child is None or child.status != PENDING:
                raise RunNotResumableError(f"Sync run {sync_id} was already continued")
            run = child

        if run.status != PENDING:
            raise RunNotResumableError(f"Sync run {run.id} is {run.status} and cannot be resumed")

        active = await self.store.find_active(owner, self._guard_kind(kind), exclude_root=run.root_run_id)
        if active is not None:
            raise AlreadyRunningError(
                f"A {active.kind} sync is already running (id {active.id}, status {active.status})",
                active.id,
            )

        if resume_from_batch is None and resume_from_record is not None:
            resume_from_batch = resume_from_record // run.batch_size
        if resume_from_batch is not None and resume_from_batch != run.current_batch_index:
            # Counters of already processed batches cannot be undone
            if resume_from_batch < run.current_batch_index:
                raise RunNotResumableError(
                    f"Sync run {run.id} already processed batch {resume_from_batch + 1}, "
                    f"it resumes at batch {run.current_batch_index + 1}"
                )
            logger.info(f"Sync run {run.id} resume point moved to batch {resume_from_batch}")
            values = {"current_batch_index": resume_from_batch}
            if run.total_records is not None:
                values["processed_records"] = min(resume_from_batch * run.batch_size, run.total_records)
            if not await self.store.annotate(
                run.id,
                f"Resuming at batch {resume_from_batch + 1}",
                **values,
            ):
                raise RunNotResumableError(f"Sync run {run.id} was claimed or cancelled meanwhile")
            run = await self.store.get_run(run.id)

        return run

    async def run(self, run_id: int) -> Optional[SyncRun]:
        """
        Execute a pending run to completion, continuation or failure.

        Never raises: whatever escapes is written to the row as an error.
        """
        started = self.clock()
        try:
            await self._execute(run_id, started)
        except SyncCancelledError:
            logger.info(f"Sync run {run_id} cancelled, stopping")
        except BadResponseError as e:
            await self._fail(run_id, f"Invalid SOC response: {e}", e.sample)
        except (ConfigurationError, NetworkError) as e:
            await self._fail(run_id, str(e), f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Sync run {run_id} crashed")
            await self._fail(run_id, f"Unexpected error: {e}", traceback.format_exc())

        return await self.store.get_run(run_id)

    async def _fail(self, run_id: int, message: str, detail: Optional[str]) -> None:
        logger.error(f"Sync run {run_id} failed: {message}")
        try:
            await self.store.finish(run_id, ERROR, message, error_detail=detail)
        except Exception:
            logger.exception(f"Could not record failure of sync run {run_id}")

    async def _check_cancelled(self, run_id: int) -> None:
        if await self.store.is_cancelled(run_id):
            raise SyncCancelledError(f"Sync run {run_id} was cancelled")

    def _budget_exhausted(self, started: float) -> bool:
        budget = self.settings.execution_budget_seconds - self.settings.safety_margin_seconds
        return self.clock() - started > budget

    async def _execute(self, run_id: int, started: float) -> None:
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Sync run {run_id} not found")

        is_continuation = run.parent_run_id is not None
        if is_continuation:
            claimed = await self.store.claim(
                run_id,
                (PENDING,),
                CONTINUES,
                f"Resuming at batch {run.current_batch_index + 1}/{run.total_batches}",
            )
        else:
            claimed = await self.store.claim(
                run_id, (PENDING,), IN_PROGRESS, f"Fetching {run.kind} data from SOC"
            )
        if not claimed:
            return

        if is_continuation:
            records = await self.store.load_payload(run.root_run_id)
            if records is None:
                raise SyncError(f"Stored records of sync chain {run.root_run_id} are missing")
        else:
            await self._check_cancelled(run_id)
            params = await self.credentials.get_params(run.kind, run.owner)
            records = await self.soc.fetch(run.kind, params)
            await self._check_cancelled(run_id)
            await self.store.save_payload(run.root_run_id, records)

        total = len(records)
        batches = split_batches(records, run.batch_size)
        start_index = min(run.current_batch_index, len(batches))
        # Skipped batches count as processed without an outcome
        processed = max(run.processed_records, min(start_index * run.batch_size, total))
        mode = f"parallel x{run.max_concurrent}" if run.parallel else "sequential"
        if not await self.store.claim(
            run_id,
            (IN_PROGRESS, CONTINUES),
            PROCESSING,
            f"Processing {total} {run.kind} records in {len(batches)} batches ({mode})",
            total_records=total,
            total_batches=total_batches(total, run.batch_size),
            current_batch_index=start_index,
            processed_records=processed,
        ):
            raise SyncCancelledError(f"Sync run {run_id} was cancelled")

        counters = {
            "processed": processed,
            "success": run.success_count,
            "failed": run.failed_count,
        }
        budget_hit = False

        async def should_stop(index: int) -> bool:
            nonlocal budget_hit
            await self._check_cancelled(run_id)
            budget_hit = self._budget_exhausted(started)
            return budget_hit

        async def on_progress(next_index: int, result: BatchResult, records_in_group: int) -> None:
            counters["processed"] += records_in_group
            counters["success"] += result.success
            counters["failed"] += result.failed
            message = (
                f"Batch {next_index}/{len(batches)}: {counters['processed']} of {total} records "
                f"({_percent(counters['processed'], total)}%). "
                f"Success: {counters['success']}, errors: {counters['failed']}"
            )
            logger.info(f"Sync run {run_id} {message}")
            if not await self.store.record_progress(
                run_id,
                message,
                current_batch_index=next_index,
                processed_records=counters["processed"],
                success_count=counters["success"],
                failed_count=counters["failed"],
            ):
                raise SyncCancelledError(f"Sync run {run_id} was cancelled")

        executor = BatchExecutor(self.session_maker, run.owner, self.settings.sub_batch_size)
        next_index, _ = await executor.run(
            batches,
            run.kind,
            start_index,
            parallel=run.parallel,
            max_concurrent=run.max_concurrent,
            on_progress=on_progress,
            should_stop=should_stop,
        )

        if budget_hit and next_index < len(batches):
            run = await self.store.get_run(run_id)
            child = await self.continuations.schedule(
                run,
                next_index,
                counters["processed"],
                total,
                success=counters["success"],
                failed=counters["failed"],
            )
            if child is None:
                await self._check_cancelled(run_id)
            return

        success, failed = counters["success"], counters["failed"]
        status = final_status(success, failed)
        message = f"{run.kind.capitalize()} sync finished: {success} succeeded, {failed} failed of {total} records"
        detail = f"{failed} record(s) could not be processed" if failed else None
        await self.store.finish(run_id, status, message, error_detail=detail)


def build_pipeline(settings: Settings, session_maker: async_sessionmaker) -> SyncPipeline:
    """Wire a pipeline from settings."""
    dispatcher = None
    if settings.continuation_mode == "http":
        dispatcher = HttpDispatcher(settings.self_base_url)
    elif settings.continuation_mode != "local":
        raise ValueError(f"Unknown continuation_mode {settings.continuation_mode!r}")

    return SyncPipeline(
        session_maker,
        SocClient(settings.soc_api_url, timeout=settings.soc_timeout_seconds),
        CredentialProvider(session_maker),
        settings,
        dispatcher=dispatcher,
    )


@lru_cache()
def get_pipeline() -> SyncPipeline:
    """Get the process-wide pipeline."""
    return build_pipeline(get_settings(), async_session_maker)


async def resume_stranded_continuations(pipeline: SyncPipeline, stale_seconds: int) -> int:
    """Sweeper entry point: re-dispatch continuations nobody picked up."""
    dispatched = await pipeline.continuations.resume_stranded(timedelta(seconds=stale_seconds))
    if dispatched:
        logger.info(f"Re-dispatched {dispatched} stranded continuation run(s)")
    return dispatched
