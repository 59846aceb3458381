"""Tests for the sync pipeline: admission, batch loop, continuation and failure handling."""

import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select

from app.models.database import Company, Employee
from app.models.sync_run import (
    CANCELLED,
    COMPLETED,
    COMPLETED_WITH_ERRORS,
    ERROR,
    NEEDS_CONTINUATION,
    PENDING,
    SyncRun,
)
from app.services.continuation import ContinuationDispatcher
from app.services.errors import AlreadyRunningError, RunNotFoundError, RunNotResumableError
from app.services.pipeline import final_status, resume_stranded_continuations
from conftest import OWNER, StepClock, run_to_end, soc_transport


def employees(n, malformed=()):
    records = []
    for i in range(n):
        record = {
            "CODIGO": str(1000 + i),
            "NOME": f"Funcionário {i}",
            "CODIGOEMPRESA": str(i % 4),
            "NOMEEMPRESA": f"Empresa {i % 4}",
            "MATRICULAFUNCIONARIO": f"M{i}",
            "SEXO": "1",
        }
        if i in malformed:
            del record["NOME"]
        records.append(record)
    return records


def companies(n):
    return [{"CODIGO": str(i), "NOMEABREVIADO": f"Empresa {i}"} for i in range(n)]


async def count(session_maker, model):
    async with session_maker() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def chain(session_maker, root_id):
    async with session_maker() as session:
        result = await session.execute(
            select(SyncRun).where(SyncRun.root_run_id == root_id).order_by(SyncRun.id)
        )
        return list(result.scalars().all())


class RecordingDispatcher(ContinuationDispatcher):
    """Collects continuations instead of running them."""

    def __init__(self, fail=False):
        self.dispatched = []
        self.fail = fail

    async def dispatch(self, run):
        if self.fail:
            raise httpx.ConnectError("self endpoint unreachable")
        self.dispatched.append(run.id)


class TestFinalStatus:

    def test_outcomes(self):
        assert final_status(10, 0) == COMPLETED
        assert final_status(0, 0) == COMPLETED
        assert final_status(8, 2) == COMPLETED_WITH_ERRORS
        assert final_status(0, 5) == ERROR


class TestAdmission:

    @pytest.mark.asyncio
    async def test_second_start_for_same_kind_is_rejected(self, make_pipeline):
        pipeline = make_pipeline(soc_transport([]))
        first = await pipeline.start(OWNER, "employee")

        with pytest.raises(AlreadyRunningError) as exc_info:
            await pipeline.start(OWNER, "employee")

        assert exc_info.value.active_run_id == first.id
        assert len(await pipeline.store.list_runs(OWNER)) == 1

    @pytest.mark.asyncio
    async def test_other_kind_allowed_unless_global_guard(self, make_pipeline):
        pipeline = make_pipeline(soc_transport([]))
        await pipeline.start(OWNER, "employee")
        assert (await pipeline.start(OWNER, "company")).kind == "company"

        guarded = make_pipeline(soc_transport([]), sync_global_guard=True)
        with pytest.raises(AlreadyRunningError):
            await guarded.start(OWNER, "absenteeism")

    @pytest.mark.asyncio
    async def test_other_owner_is_independent(self, make_pipeline):
        pipeline = make_pipeline(soc_transport([]))
        await pipeline.start(OWNER, "employee")
        assert (await pipeline.start("globex", "employee")).owner == "globex"

    @pytest.mark.asyncio
    async def test_options_are_validated(self, make_pipeline):
        pipeline = make_pipeline(soc_transport([]))
        with pytest.raises(ValueError):
            await pipeline.start(OWNER, "payroll")
        with pytest.raises(ValueError):
            await pipeline.start(OWNER, "employee", batch_size=10_000)
        with pytest.raises(ValueError):
            await pipeline.start(OWNER, "employee", max_concurrent=50)
        with pytest.raises(RunNotResumableError):
            await pipeline.start(OWNER, "employee", resume_from_batch=2)

    @pytest.mark.asyncio
    async def test_unknown_sync_id(self, make_pipeline):
        pipeline = make_pipeline(soc_transport([]))
        with pytest.raises(RunNotFoundError):
            await pipeline.start(OWNER, "employee", sync_id=42)

    @pytest.mark.asyncio
    async def test_budget_must_exceed_margin(self, make_pipeline):
        with pytest.raises(ValueError):
            make_pipeline(soc_transport([]), execution_budget_seconds=30.0, safety_margin_seconds=30.0)


class TestRun:

    @pytest.mark.asyncio
    async def test_130_records_with_two_malformed(self, make_pipeline, session_maker, credentials):
        records = employees(130, malformed={17, 99})
        pipeline = make_pipeline(soc_transport(records))

        run = await pipeline.start(OWNER, "employee", batch_size=50)
        final = await pipeline.run(run.id)

        assert final.status == COMPLETED_WITH_ERRORS
        assert final.total_records == 130
        assert final.total_batches == 3
        assert final.current_batch_index == 3
        assert final.processed_records == 130
        assert final.success_count == 128
        assert final.failed_count == 2
        assert final.completed_at is not None
        assert "2 record(s)" in final.error_detail
        assert await count(session_maker, Employee) == 128
        assert await count(session_maker, Company) == 4

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, make_pipeline, session_maker, credentials):
        pipeline = make_pipeline(soc_transport(companies(60)))

        for _ in range(2):
            run = await pipeline.start(OWNER, "company")
            final = await pipeline.run(run.id)
            assert final.status == COMPLETED

        assert await count(session_maker, Company) == 60

    @pytest.mark.asyncio
    async def test_empty_export_completes(self, make_pipeline, credentials):
        pipeline = make_pipeline(soc_transport([]))
        run = await pipeline.start(OWNER, "absenteeism")
        final = await pipeline.run(run.id)

        assert final.status == COMPLETED
        assert final.total_records == 0
        assert final.total_batches == 0

    @pytest.mark.asyncio
    async def test_parallel_mode(self, make_pipeline, session_maker, credentials):
        pipeline = make_pipeline(soc_transport(companies(175)))
        run = await pipeline.start(OWNER, "company", parallel=True, batch_size=25, max_concurrent=3)
        final = await pipeline.run(run.id)

        assert final.status == COMPLETED
        assert final.total_batches == 7
        assert final.processed_records == 175
        assert final.success_count == 175
        assert await count(session_maker, Company) == 175

    @pytest.mark.asyncio
    async def test_all_records_malformed_is_error(self, make_pipeline, credentials):
        pipeline = make_pipeline(soc_transport([{"NOMEABREVIADO": "sem código"}] * 3))
        run = await pipeline.start(OWNER, "company")
        final = await pipeline.run(run.id)

        assert final.status == ERROR
        assert final.failed_count == 3
        assert final.success_count == 0


class TestFetchFailures:

    @pytest.mark.asyncio
    async def test_missing_credentials(self, make_pipeline):
        pipeline = make_pipeline(soc_transport([]))
        run = await pipeline.start(OWNER, "company")
        final = await pipeline.run(run.id)

        assert final.status == ERROR
        assert "credentials" in final.message
        assert final.completed_at is not None

    @pytest.mark.asyncio
    async def test_remote_status_error(self, make_pipeline, credentials):
        pipeline = make_pipeline(soc_transport(status_code=500, body=b"erro interno"))
        run = await pipeline.start(OWNER, "company")
        final = await pipeline.run(run.id)

        assert final.status == ERROR
        assert "500" in final.message
        assert final.processed_records == 0

    @pytest.mark.asyncio
    async def test_bad_response_keeps_sample(self, make_pipeline, credentials):
        pipeline = make_pipeline(soc_transport(body="<html>Manutenção</html>".encode("latin-1")))
        run = await pipeline.start(OWNER, "company")
        final = await pipeline.run(run.id)

        assert final.status == ERROR
        assert final.error_detail == "<html>Manutenção</html>"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_recorded(self, make_pipeline, credentials, monkeypatch):
        pipeline = make_pipeline(soc_transport(companies(5)))

        async def explode(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(pipeline.store, "save_payload", explode)
        run = await pipeline.start(OWNER, "company")
        final = await pipeline.run(run.id)

        assert final.status == ERROR
        assert "disk full" in final.message
        assert "RuntimeError" in final.error_detail
        assert await pipeline.store.find_active(OWNER) is None


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_between_batches_freezes_progress(self, make_pipeline, session_maker, credentials):
        pipeline = make_pipeline(soc_transport(companies(100)))
        run = await pipeline.start(OWNER, "company", batch_size=10)

        original = pipeline.store.record_progress
        writes = []

        async def record_then_cancel(run_id, message, **values):
            ok = await original(run_id, message, **values)
            writes.append(values["current_batch_index"])
            if values["current_batch_index"] == 3:
                await pipeline.store.cancel_run(run_id, OWNER)
            return ok

        pipeline.store.record_progress = record_then_cancel
        final = await pipeline.run(run.id)

        assert final.status == CANCELLED
        assert writes == [1, 2, 3]
        assert final.current_batch_index == 3
        assert final.processed_records == 30
        assert await count(session_maker, Company) == 30

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, make_pipeline, credentials):
        calls = []
        pipeline = make_pipeline(soc_transport(companies(5), calls=calls))
        run = await pipeline.start(OWNER, "company")
        await pipeline.store.cancel_run(run.id, OWNER)

        final = await pipeline.run(run.id)

        assert final.status == CANCELLED
        assert calls == []


class TestContinuation:

    @pytest.mark.asyncio
    async def test_budget_hands_over_and_resumes_at_next_batch(self, make_pipeline, session_maker, credentials):
        calls = []
        # Every clock reading advances 50s: run start, then one reading per batch check.
        # The third check (150s) is past the 120s budget.
        pipeline = make_pipeline(
            soc_transport(employees(130, malformed={17, 99}), calls=calls),
            clock=StepClock(50.0),
        )
        run = await pipeline.start(OWNER, "employee", batch_size=50)
        await run_to_end(pipeline, run.id)

        runs = await chain(session_maker, run.id)
        assert len(runs) == 2
        parent, child = runs

        assert parent.status == NEEDS_CONTINUATION
        assert parent.current_batch_index == 2
        assert parent.processed_records == 100
        assert parent.completed_at is None

        assert child.parent_run_id == parent.id
        assert child.root_run_id == parent.id
        assert child.status == COMPLETED_WITH_ERRORS
        assert child.current_batch_index == 3
        assert child.processed_records == 130
        assert child.success_count == 128
        assert child.failed_count == 2

        # The continuation reads the stored payload instead of fetching again
        assert len(calls) == 1
        assert await count(session_maker, Employee) == 128
        assert await pipeline.store.find_active(OWNER) is None

    @pytest.mark.asyncio
    async def test_continuation_can_be_resumed_by_id(self, make_pipeline, session_maker, credentials):
        dispatcher = RecordingDispatcher()
        pipeline = make_pipeline(soc_transport(companies(130)), clock=StepClock(50.0))
        pipeline.continuations.dispatcher = dispatcher

        run = await pipeline.start(OWNER, "company", batch_size=50)
        await pipeline.run(run.id)
        parent, child = await chain(session_maker, run.id)
        assert dispatcher.dispatched == [child.id]
        assert child.status == PENDING

        # Another start for the kind is refused while the chain is pending
        with pytest.raises(AlreadyRunningError):
            await pipeline.start(OWNER, "company")

        # Resuming through the parent id picks its pending child
        admitted = await pipeline.start(OWNER, "company", sync_id=parent.id)
        assert admitted.id == child.id
        final = await pipeline.run(admitted.id)

        assert final.status == COMPLETED
        assert final.processed_records == 130
        assert await count(session_maker, Company) == 130

        with pytest.raises(RunNotResumableError):
            await pipeline.start(OWNER, "company", sync_id=child.id)

    @pytest.mark.asyncio
    async def test_resume_behind_checkpoint_is_refused(self, make_pipeline, session_maker, credentials):
        pipeline = make_pipeline(soc_transport(companies(130)), clock=StepClock(50.0))
        pipeline.continuations.dispatcher = RecordingDispatcher()

        run = await pipeline.start(OWNER, "company", batch_size=50)
        await pipeline.run(run.id)
        _, child = await chain(session_maker, run.id)
        assert child.current_batch_index == 2

        with pytest.raises(RunNotResumableError):
            await pipeline.start(OWNER, "company", sync_id=child.id, resume_from_record=60)

        # The checkpoint is untouched and the chain still finishes exactly once per record
        admitted = await pipeline.start(OWNER, "company", sync_id=child.id)
        assert admitted.current_batch_index == 2
        final = await pipeline.run(admitted.id)

        assert final.status == COMPLETED
        assert final.processed_records == 130
        assert final.success_count == 130
        assert final.failed_count == 0
        assert final.processed_records <= final.total_records

    @pytest.mark.asyncio
    async def test_resume_ahead_skips_batches(self, make_pipeline, session_maker, credentials):
        pipeline = make_pipeline(soc_transport(companies(250)), clock=StepClock(50.0))
        pipeline.continuations.dispatcher = RecordingDispatcher()

        run = await pipeline.start(OWNER, "company", batch_size=50)
        await pipeline.run(run.id)
        _, child = await chain(session_maker, run.id)
        assert child.processed_records == 100

        admitted = await pipeline.start(OWNER, "company", sync_id=child.id, resume_from_record=160)
        assert admitted.current_batch_index == 3
        assert admitted.processed_records == 150

        final = await pipeline.run(admitted.id)

        assert final.status == COMPLETED
        assert final.current_batch_index == 5
        assert final.processed_records == 250
        assert final.success_count == 200
        assert final.failed_count == 0
        assert await count(session_maker, Company) == 200

    @pytest.mark.asyncio
    async def test_resume_pending_root_from_batch(self, make_pipeline, session_maker, credentials):
        pipeline = make_pipeline(soc_transport(companies(130)))

        run = await pipeline.start(OWNER, "company", batch_size=50)
        admitted = await pipeline.start(OWNER, "company", sync_id=run.id, resume_from_batch=1)
        assert admitted.id == run.id
        assert admitted.current_batch_index == 1

        final = await pipeline.run(run.id)

        assert final.status == COMPLETED
        assert final.total_records == 130
        assert final.processed_records == 130
        assert final.success_count == 80
        assert await count(session_maker, Company) == 80

    @pytest.mark.asyncio
    async def test_failed_dispatch_leaves_pending_child_for_sweeper(self, make_pipeline, session_maker, credentials):
        pipeline = make_pipeline(soc_transport(companies(130)), clock=StepClock(50.0))
        pipeline.continuations.dispatcher = RecordingDispatcher(fail=True)

        run = await pipeline.start(OWNER, "company", batch_size=50)
        await pipeline.run(run.id)

        parent, child = await chain(session_maker, run.id)
        assert parent.status == NEEDS_CONTINUATION
        assert child.status == PENDING
        assert "dispatch failed" in child.message

        retry = RecordingDispatcher()
        pipeline.continuations.dispatcher = retry
        assert await resume_stranded_continuations(pipeline, stale_seconds=3600) == 0
        assert await pipeline.continuations.resume_stranded(timedelta(seconds=-1)) == 1
        assert retry.dispatched == [child.id]

    @pytest.mark.asyncio
    async def test_cancelled_continuation_does_not_run(self, make_pipeline, session_maker, credentials):
        pipeline = make_pipeline(soc_transport(companies(130)), clock=StepClock(50.0))
        pipeline.continuations.dispatcher = RecordingDispatcher()

        run = await pipeline.start(OWNER, "company", batch_size=50)
        await pipeline.run(run.id)
        _, child = await chain(session_maker, run.id)

        await pipeline.store.cancel_run(run.id, OWNER)
        final = await pipeline.run(child.id)

        assert final.status == CANCELLED
        assert final.processed_records == 100
        assert await count(session_maker, Company) == 100


class TestSocPayloadEncoding:

    @pytest.mark.asyncio
    async def test_latin1_names_are_stored_intact(self, make_pipeline, session_maker, credentials):
        body = json.dumps(
            [{"CODIGO": "1", "NOMEABREVIADO": "Ação & Saúde"}], ensure_ascii=False
        ).encode("latin-1")
        pipeline = make_pipeline(soc_transport(body=body))
        run = await pipeline.start(OWNER, "company")
        await pipeline.run(run.id)

        async with session_maker() as session:
            stored = (await session.execute(select(Company.short_name))).scalar_one()
        assert stored == "Ação & Saúde"
