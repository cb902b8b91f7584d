"""
Tests for the request-path video service
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from sora_studio.errors import (
    NotFoundError,
    NotReadyError,
    QuotaExceededError,
    SourceNotCompletedError,
    ValidationError,
)
from sora_studio.models.video import Video
from sora_studio.schemas.video import EventType, VideoModel, VideoStatus
from sora_studio.services.cache import KEY_PREFIX
from sora_studio.services.video_service import parse_options


async def _row_count(services):
    async with services.session_factory() as db:
        return (await db.execute(select(func.count(Video.id)))).scalar_one()


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_to_completion(self, services, fake_client, fake_redis):
        """create → in_progress 30 → completed, read through the service"""
        job = await services.videos.create_job("user_a", "A red fox running through snow")

        assert job.status == VideoStatus.QUEUED
        assert job.owner_id == "user_a"
        assert (await services.quota.get_quota("user_a")).videos_created == 1

        fake_client.advance(job.id, VideoStatus.IN_PROGRESS, 30)
        await services.reconciler.run_once()
        mid = await services.videos.get_job(job.id, "user_a")
        assert mid.status == VideoStatus.IN_PROGRESS
        assert mid.progress == 30

        fake_client.advance(
            job.id, VideoStatus.COMPLETED, 100, file_url="https://cdn.example/fox.mp4", completed_at=1700000600
        )
        await services.reconciler.run_once()
        assert await fake_redis.ttl(f"{KEY_PREFIX}{job.id}") == 3600
        done = await services.videos.get_job(job.id, "user_a")
        assert done.status == VideoStatus.COMPLETED
        assert done.progress == 100
        assert done.file_url == "https://cdn.example/fox.mp4"
        assert done.completed_at == 1700000600

        events = await services.videos.get_job_events(job.id, "user_a")
        assert [e.event_type for e in events] == [
            EventType.STATUS_CHANGED,
            EventType.STATUS_CHANGED,
            EventType.CREATED,
        ]
        assert events[-1].event_data["prompt_length"] == len("A red fox running through snow")

    @pytest.mark.asyncio
    async def test_options_forwarded(self, services):
        options = parse_options(model="sora-2-pro", size="1808x1024", seconds=10, quality="high")

        job = await services.videos.create_job("user_a", "A lighthouse at dusk", options)

        assert job.model == VideoModel.SORA_2_PRO.value
        assert job.size == "1808x1024"
        assert job.seconds == "10"

    @pytest.mark.asyncio
    async def test_overlong_prompt_rejected_without_side_effects(self, services, fake_client):
        with pytest.raises(ValidationError):
            await services.videos.create_job("user_a", "x" * 1001)

        assert fake_client.calls == []
        assert await _row_count(services) == 0
        assert (await services.quota.get_quota("user_a")).videos_created == 0

    @pytest.mark.asyncio
    async def test_prompt_at_limit_accepted(self, services):
        job = await services.videos.create_job("user_a", "x" * 1000)
        assert job.prompt == "x" * 1000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("prompt", ["", "   ", None])
    async def test_blank_prompt_rejected(self, services, fake_client, prompt):
        with pytest.raises(ValidationError):
            await services.videos.create_job("user_a", prompt)
        assert fake_client.calls == []

    def test_invalid_options_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_options(model="sora-3", seconds=7)
        assert exc_info.value.details == {"fields": ["model", "seconds"]}

    @pytest.mark.asyncio
    async def test_quota_exhausted_rejected_before_upstream(self, services, fake_client):
        await services.quota.update_limit("user_a", 0)

        with pytest.raises(QuotaExceededError):
            await services.videos.create_job("user_a", "A fox")

        assert fake_client.count("create") == 0

    @pytest.mark.asyncio
    async def test_concurrent_creates_at_last_slot(self, services, fake_client):
        await services.quota.update_limit("user_a", 1)

        results = await asyncio.gather(
            services.videos.create_job("user_a", "first fox"),
            services.videos.create_job("user_a", "second fox"),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, QuotaExceededError)]
        assert len(succeeded) == 1
        assert len(refused) == 1
        assert (await services.quota.get_quota("user_a")).videos_created == 1
        assert await _row_count(services) == 1
        # The refused job was removed from the provider again
        assert fake_client.count("delete") == 1
        assert list(fake_client.videos) == [succeeded[0].id]


class TestGet:
    @pytest.mark.asyncio
    async def test_missing_job(self, services):
        with pytest.raises(NotFoundError):
            await services.videos.get_job("video_nope")

    @pytest.mark.asyncio
    async def test_other_owner_sees_not_found(self, services):
        job = await services.videos.create_job("user_a", "A fox")
        await services.cache.invalidate(job.id)

        with pytest.raises(NotFoundError):
            await services.videos.get_job(job.id, "user_b")

    @pytest.mark.asyncio
    async def test_cache_hit_skips_store_and_upstream(self, services, fake_client):
        job = await services.videos.create_job("user_a", "A fox")

        await services.videos.get_job(job.id, "user_a")

        assert fake_client.count("get_status") == 0

    @pytest.mark.asyncio
    async def test_cache_miss_refreshes_pending_job(self, services, fake_client):
        job = await services.videos.create_job("user_a", "A fox")
        await services.cache.invalidate(job.id)
        fake_client.advance(job.id, VideoStatus.IN_PROGRESS, 45)

        fresh = await services.videos.get_job(job.id, "user_a")

        assert fresh.progress == 45
        assert (await services.store.get_by_id(job.id)).progress == 45

    @pytest.mark.asyncio
    async def test_refresh_failure_serves_stored_copy(self, services, fake_client):
        job = await services.videos.create_job("user_a", "A fox")
        await services.cache.invalidate(job.id)
        fake_client.unavailable.add(job.id)

        served = await services.videos.get_job(job.id, "user_a")

        assert served.status == VideoStatus.QUEUED


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_hides_job(self, services, fake_client):
        job = await services.videos.create_job("user_a", "A fox")

        assert await services.videos.delete_job(job.id, "user_a") is True

        with pytest.raises(NotFoundError):
            await services.videos.get_job(job.id, "user_a")
        assert await services.videos.list_jobs("user_a") == []
        # Provider copy is kept unless configured otherwise
        assert fake_client.count("delete") == 0
        events = await services.videos.get_job_events(job.id, "user_a")
        assert events[0].event_type == EventType.DELETED

    @pytest.mark.asyncio
    async def test_delete_twice(self, services):
        job = await services.videos.create_job("user_a", "A fox")
        await services.videos.delete_job(job.id, "user_a")

        with pytest.raises(NotFoundError):
            await services.videos.delete_job(job.id, "user_a")

    @pytest.mark.asyncio
    async def test_delete_other_owner(self, services):
        job = await services.videos.create_job("user_a", "A fox")

        with pytest.raises(NotFoundError):
            await services.videos.delete_job(job.id, "user_b")


class TestRemix:
    @pytest.mark.asyncio
    async def test_remix_requires_completed_source(self, services, fake_client):
        source = await services.videos.create_job("user_a", "A fox")
        fake_client.advance(source.id, VideoStatus.IN_PROGRESS, 50)
        used_before = (await services.quota.get_quota("user_a")).videos_created

        with pytest.raises(SourceNotCompletedError):
            await services.videos.remix_job(source.id, "user_a", "Make it night")

        assert fake_client.count("remix") == 0
        assert (await services.quota.get_quota("user_a")).videos_created == used_before
        assert await _row_count(services) == 1

    @pytest.mark.asyncio
    async def test_refused_remix_leaves_source_untouched(self, services, fake_client):
        source = await services.videos.create_job("user_a", "A fox")
        await services.cache.invalidate(source.id)
        fake_client.advance(source.id, VideoStatus.IN_PROGRESS, 50)

        with pytest.raises(SourceNotCompletedError):
            await services.videos.remix_job(source.id, "user_a", "Make it night")

        stored = await services.store.get_by_id(source.id)
        assert stored.status == VideoStatus.QUEUED
        assert stored.progress == 0
        events = await services.events.get_by_job(source.id)
        assert [e.event_type for e in events] == [EventType.CREATED]

    @pytest.mark.asyncio
    async def test_remix_picks_up_completion_upstream(self, services, fake_client):
        source = await services.videos.create_job("user_a", "A fox")
        await services.cache.invalidate(source.id)
        fake_client.advance(source.id, VideoStatus.COMPLETED, 100)

        remix = await services.videos.remix_job(source.id, "user_a", "Make it night")

        assert remix.remixed_from_video_id == source.id
        assert (await services.store.get_by_id(source.id)).status == VideoStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_remix_completed_source(self, services, fake_client):
        source = await services.videos.create_job("user_a", "A fox")
        fake_client.advance(source.id, VideoStatus.COMPLETED, 100)
        await services.reconciler.run_once()

        remix = await services.videos.remix_job(source.id, "user_a", "Make it night")

        assert remix.remixed_from_video_id == source.id
        assert remix.prompt == "Make it night"
        assert (await services.quota.get_quota("user_a")).videos_created == 2
        events = await services.videos.get_job_events(remix.id, "user_a")
        assert events[0].event_type == EventType.REMIXED
        assert events[0].event_data["source_video_id"] == source.id

    @pytest.mark.asyncio
    async def test_remix_validates_prompt_first(self, services, fake_client):
        with pytest.raises(ValidationError):
            await services.videos.remix_job("video_any", "user_a", "")
        assert fake_client.calls == []


class TestDownload:
    @pytest.mark.asyncio
    async def test_not_ready(self, services, fake_client):
        job = await services.videos.create_job("user_a", "A fox")

        with pytest.raises(NotReadyError):
            await services.videos.download_job(job.id, "user_a")
        assert fake_client.count("download") == 0

    @pytest.mark.asyncio
    async def test_download_completed(self, services, fake_client):
        job = await services.videos.create_job("user_a", "A fox")
        fake_client.advance(job.id, VideoStatus.COMPLETED, 100)
        await services.reconciler.run_once()

        content = await services.videos.download_job(job.id, "user_a", ip_address="10.0.0.1", user_agent="pytest")

        assert content == f"video:{job.id}".encode()
        events = await services.videos.get_job_events(job.id, "user_a")
        assert events[0].event_type == EventType.DOWNLOADED
        assert events[0].event_data == {"ip_address": "10.0.0.1", "user_agent": "pytest"}


class TestQuotaAndStats:
    @pytest.mark.asyncio
    async def test_quota_summary(self, services):
        await services.videos.create_job("user_a", "A fox")
        await services.videos.create_job("user_a", "A hare")

        summary = await services.videos.get_quota_summary("user_a")

        assert summary.videos_created == 2
        assert summary.remaining == 3
        assert str(summary.estimated_cost) == "0.80"

    @pytest.mark.asyncio
    async def test_owner_events_only_cover_own_videos(self, services):
        mine = await services.videos.create_job("user_a", "A fox")
        await services.videos.create_job("user_b", "A hare")

        events = await services.videos.get_owner_events("user_a")

        assert {e.video_id for e in events} == {mine.id}

    @pytest.mark.asyncio
    async def test_stats(self, services, fake_client):
        job = await services.videos.create_job("user_a", "A fox")
        await services.videos.create_job("user_a", "A hare")
        fake_client.advance(job.id, VideoStatus.COMPLETED, 100)
        await services.reconciler.run_once()

        stats = await services.videos.get_stats("user_a")

        assert stats.total_videos == 2
        assert stats.completed_videos == 1
        assert stats.queued_videos == 1


class TestEventLogFailures:
    """A broken event store never fails the operation being recorded"""

    @pytest.mark.asyncio
    async def test_create_and_tick_survive_event_errors(self, services, fake_client, monkeypatch):
        monkeypatch.setattr(services.events, "_session_factory", MagicMock(side_effect=OSError("disk full")))

        job = await services.videos.create_job("user_a", "A fox")
        fake_client.advance(job.id, VideoStatus.IN_PROGRESS, 20)
        summary = await services.reconciler.run_once()

        assert job.status == VideoStatus.QUEUED
        assert summary["updated"] == 1
        assert summary["failed"] == 0
        assert (await services.store.get_by_id(job.id)).progress == 20

    @pytest.mark.asyncio
    async def test_append_reports_failure(self, services, monkeypatch):
        monkeypatch.setattr(services.events, "_session_factory", MagicMock(side_effect=OSError("disk full")))

        assert await services.events.log_deleted("video_1", "user_a") is False
