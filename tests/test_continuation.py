"""Tests for continuation dispatchers and the stranded-continuation sweep."""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from app.models.sync_run import NEEDS_CONTINUATION, PENDING, PROCESSING
from app.services.continuation import ContinuationScheduler, HttpDispatcher, LocalDispatcher
from app.services.sync_runs import SyncRunStore
from conftest import OWNER


@pytest.fixture
def store(session_maker):
    return SyncRunStore(session_maker)


async def processing_run(store, kind="employee"):
    run = await store.create_run(kind, OWNER, batch_size=50, max_concurrent=3)
    await store.claim(run.id, (PENDING,), PROCESSING, "Processing", total_records=130, total_batches=3)
    return await store.get_run(run.id)


class CollectingDispatcher:

    def __init__(self):
        self.runs = []

    async def dispatch(self, run):
        self.runs.append(run)


class TestHttpDispatcher:

    @pytest.mark.asyncio
    async def test_posts_resume_request(self, store):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"success": True})

        parent = await processing_run(store)
        await store.mark_needs_continuation(parent.id, "budget", current_batch_index=2, processed_records=100)
        child = await store.create_continuation(
            await store.get_run(parent.id), current_batch_index=2, processed_records=100
        )

        dispatcher = HttpDispatcher("http://sync.internal/", transport=httpx.MockTransport(handler))
        await dispatcher.dispatch(child)

        assert len(requests) == 1
        request = requests[0]
        assert str(request.url) == "http://sync.internal/api/sync"
        assert request.headers["x-owner-id"] == OWNER
        assert json.loads(request.content) == {
            "type": "employee",
            "syncId": child.id,
            "resumeFromBatch": 2,
            "resumeFromRecord": 100,
        }

    @pytest.mark.asyncio
    async def test_error_status_raises(self, store):
        run = await processing_run(store)
        dispatcher = HttpDispatcher(
            "http://sync.internal",
            transport=httpx.MockTransport(lambda request: httpx.Response(409)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await dispatcher.dispatch(run)


class TestLocalDispatcher:

    @pytest.mark.asyncio
    async def test_runs_task_and_waits(self, store):
        ran = []

        async def runner(run_id):
            await asyncio.sleep(0)
            ran.append(run_id)

        dispatcher = LocalDispatcher(runner)
        run = await processing_run(store)
        await dispatcher.dispatch(run)
        await dispatcher.wait()

        assert ran == [run.id]
        assert dispatcher.tasks == set()


class TestContinuationScheduler:

    @pytest.mark.asyncio
    async def test_schedule_creates_single_child(self, store):
        dispatcher = CollectingDispatcher()
        scheduler = ContinuationScheduler(store, dispatcher)
        run = await processing_run(store)

        child = await scheduler.schedule(run, 2, 100, 130, success=98, failed=2)
        again = await scheduler.schedule(run, 2, 100, 130, success=98, failed=2)

        assert again is None
        assert [r.id for r in dispatcher.runs] == [child.id]
        assert child.status == PENDING
        assert child.current_batch_index == 2
        assert child.processed_records == 100
        assert child.success_count == 98
        assert child.failed_count == 2
        assert child.total_records == 130
        assert child.total_batches == 3
        assert child.batch_size == run.batch_size
        assert (await store.get_run(run.id)).status == NEEDS_CONTINUATION

    @pytest.mark.asyncio
    async def test_schedule_after_cancel_does_nothing(self, store):
        dispatcher = CollectingDispatcher()
        scheduler = ContinuationScheduler(store, dispatcher)
        run = await processing_run(store)
        await store.cancel_run(run.id, OWNER)

        assert await scheduler.schedule(run, 1, 50, 130) is None
        assert dispatcher.runs == []
        assert await store.get_child(run.id) is None

    @pytest.mark.asyncio
    async def test_sweep_respawns_orphaned_parent(self, store):
        dispatcher = CollectingDispatcher()
        scheduler = ContinuationScheduler(store, dispatcher)
        run = await processing_run(store)
        await store.mark_needs_continuation(run.id, "budget", current_batch_index=1, processed_records=50)

        dispatched = await scheduler.resume_stranded(timedelta(seconds=-1))

        child = await store.get_child(run.id)
        assert dispatched == 1
        assert child is not None
        assert child.current_batch_index == 1
        assert [r.id for r in dispatcher.runs] == [child.id]
