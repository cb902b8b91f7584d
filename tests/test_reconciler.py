"""
Tests for the lifecycle reconciler and its loop
"""

import asyncio

import pytest

from sora_studio.schemas.video import EventType, VideoJob, VideoStatus
from sora_studio.services.reconciler import MISSING_UPSTREAM_MESSAGE, is_forward
from sora_studio.utils.metrics import get_snapshot
from sora_studio.worker import reconciler_loop


async def _submit(services, fake_client, owner="user_a", prompt="a fox in the snow"):
    """Create a job upstream and record it locally, bypassing quota"""
    job = await fake_client.create(prompt)
    await services.store.create(job, owner)
    return job.id


def _events_of(events, event_type):
    return [e for e in events if e.event_type == event_type]


class TestIsForward:
    def _job(self, status, progress=0):
        return VideoJob(id="v", status=status, progress=progress, created_at=0)

    def test_status_advance(self):
        assert is_forward(self._job(VideoStatus.QUEUED), self._job(VideoStatus.IN_PROGRESS))

    def test_progress_advance(self):
        assert is_forward(self._job(VideoStatus.IN_PROGRESS, 10), self._job(VideoStatus.IN_PROGRESS, 20))

    def test_backward_or_equal_rejected(self):
        assert not is_forward(self._job(VideoStatus.IN_PROGRESS, 20), self._job(VideoStatus.IN_PROGRESS, 20))
        assert not is_forward(self._job(VideoStatus.IN_PROGRESS, 20), self._job(VideoStatus.IN_PROGRESS, 10))
        assert not is_forward(self._job(VideoStatus.IN_PROGRESS, 20), self._job(VideoStatus.QUEUED))

    def test_terminal_never_moves(self):
        assert not is_forward(self._job(VideoStatus.COMPLETED, 100), self._job(VideoStatus.FAILED))


class TestRunOnce:
    """One reconciliation tick"""

    @pytest.mark.asyncio
    async def test_progress_reaches_store_and_cache(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        fake_client.advance(video_id, VideoStatus.IN_PROGRESS, 30)

        summary = await services.reconciler.run_once()

        assert summary == {"checked": 1, "updated": 1, "unchanged": 0, "failed": 0}
        assert (await services.store.get_by_id(video_id)).progress == 30
        assert (await services.cache.get_cached(video_id)).progress == 30
        assert get_snapshot()["gauges"]["jobs.pending"] == 1

    @pytest.mark.asyncio
    async def test_second_tick_is_idempotent(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        fake_client.advance(video_id, VideoStatus.IN_PROGRESS, 30)

        await services.reconciler.run_once()
        summary = await services.reconciler.run_once()

        assert summary["updated"] == 0
        assert summary["unchanged"] == 1
        events = await services.events.get_by_job(video_id)
        assert len(_events_of(events, EventType.STATUS_CHANGED)) == 1

    @pytest.mark.asyncio
    async def test_progress_only_change_is_recorded(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        fake_client.advance(video_id, VideoStatus.IN_PROGRESS, 30)
        await services.reconciler.run_once()
        fake_client.advance(video_id, VideoStatus.IN_PROGRESS, 60)

        summary = await services.reconciler.run_once()

        assert summary["updated"] == 1
        changes = _events_of(await services.events.get_by_job(video_id), EventType.STATUS_CHANGED)
        assert [e.event_data for e in changes] == [
            {"old_status": "in_progress", "new_status": "in_progress", "progress": 60},
            {"old_status": "queued", "new_status": "in_progress", "progress": 30},
        ]

    @pytest.mark.asyncio
    async def test_upstream_regression_ignored(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        fake_client.advance(video_id, VideoStatus.IN_PROGRESS, 70)
        await services.reconciler.run_once()

        fake_client.advance(video_id, VideoStatus.IN_PROGRESS, 40)
        await services.reconciler.run_once()

        assert (await services.store.get_by_id(video_id)).progress == 70

    @pytest.mark.asyncio
    async def test_terminal_jobs_not_polled(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        fake_client.advance(video_id, VideoStatus.COMPLETED, 100)
        await services.reconciler.run_once()
        polls = fake_client.count("get_status")

        summary = await services.reconciler.run_once()

        assert summary["checked"] == 0
        assert fake_client.count("get_status") == polls

    @pytest.mark.asyncio
    async def test_completion_sets_progress_and_completed_at(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        fake_client.advance(video_id, VideoStatus.COMPLETED, 100, completed_at=1700000500)

        await services.reconciler.run_once()

        job = await services.store.get_by_id(video_id)
        assert job.status == VideoStatus.COMPLETED
        assert job.progress == 100
        assert job.completed_at == 1700000500

    @pytest.mark.asyncio
    async def test_failure_logs_failed_event(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        fake_client.fail(video_id, "content policy")

        await services.reconciler.run_once()

        job = await services.store.get_by_id(video_id)
        assert job.status == VideoStatus.FAILED
        assert job.error_message == "content policy"
        failed = _events_of(await services.events.get_by_job(video_id), EventType.FAILED)
        assert failed[0].event_data == {"error_message": "content policy"}

    @pytest.mark.asyncio
    async def test_one_bad_job_does_not_abort_batch(self, services, fake_client):
        broken = await _submit(services, fake_client)
        healthy = await _submit(services, fake_client)
        fake_client.unavailable.add(broken)
        fake_client.advance(healthy, VideoStatus.IN_PROGRESS, 50)

        summary = await services.reconciler.run_once()

        assert summary == {"checked": 2, "updated": 1, "unchanged": 0, "failed": 1}
        assert (await services.store.get_by_id(healthy)).progress == 50
        assert services.reconciler.last_summary == summary

    @pytest.mark.asyncio
    async def test_job_missing_upstream_marked_failed(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        del fake_client.videos[video_id]

        await services.reconciler.run_once()

        job = await services.store.get_by_id(video_id)
        assert job.status == VideoStatus.FAILED
        assert job.error_message == MISSING_UPSTREAM_MESSAGE

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_write_once(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        fake_client.advance(video_id, VideoStatus.COMPLETED, 100)
        stored = await services.store.get_by_id(video_id)

        results = await asyncio.gather(
            services.reconciler.reconcile(stored),
            services.reconciler.reconcile(stored),
        )

        assert sum(1 for r in results if r is not None) == 1
        events = await services.events.get_by_job(video_id)
        assert len(_events_of(events, EventType.STATUS_CHANGED)) == 1


class TestReconcilerLoop:
    @pytest.mark.asyncio
    async def test_loop_ticks_and_stops(self, services, fake_client):
        video_id = await _submit(services, fake_client)
        fake_client.advance(video_id, VideoStatus.IN_PROGRESS, 10)
        stop = asyncio.Event()

        task = asyncio.create_task(reconciler_loop(services.reconciler, 0.01, stop))
        await asyncio.sleep(0.1)
        assert services.reconciler.running is True
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert services.reconciler.running is False
        assert (await services.store.get_by_id(video_id)).progress == 10

    @pytest.mark.asyncio
    async def test_loop_survives_tick_errors(self, services, monkeypatch):
        calls = []

        async def boom():
            calls.append(1)
            raise RuntimeError("store down")

        monkeypatch.setattr(services.reconciler, "run_once", boom)
        stop = asyncio.Event()

        task = asyncio.create_task(reconciler_loop(services.reconciler, 0.01, stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert len(calls) > 1
