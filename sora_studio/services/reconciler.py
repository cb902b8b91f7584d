"""
Lifecycle reconciler: brings stored jobs in line with the provider.

Each tick loads every queued/in_progress job, asks the provider for its
current state and persists forward movement. Jobs are checked concurrently,
bounded by a semaphore; one job failing never aborts the rest of the batch.
Terminal jobs are never polled because get_pending never returns them.

The same per-job refresh backs the opportunistic update on GET.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from sora_studio.errors import NotFoundError
from sora_studio.schemas.video import STATUS_RANK, VideoError, VideoJob, VideoStatus
from sora_studio.services.cache import VideoCache
from sora_studio.services.event_log import EventLog
from sora_studio.services.sora_client import SoraClient
from sora_studio.services.video_store import VideoStore
from sora_studio.utils.datetime_utils import from_unix, utcnow
from sora_studio.utils.logger import get_logger
from sora_studio.utils.metrics import inc, set_gauge, track_duration

logger = get_logger("reconciler")

MISSING_UPSTREAM_MESSAGE = "Video no longer exists at the provider"


def is_forward(stored: VideoJob, upstream: VideoJob) -> bool:
    """True if ``upstream`` is ahead of ``stored`` in status or progress"""
    if stored.is_terminal or upstream.status not in STATUS_RANK:
        return False
    stored_rank = STATUS_RANK[stored.status]
    upstream_rank = STATUS_RANK[upstream.status]
    if upstream_rank != stored_rank:
        return upstream_rank > stored_rank
    return upstream.progress > stored.progress


class Reconciler:
    def __init__(
        self,
        store: VideoStore,
        client: SoraClient,
        cache: VideoCache,
        events: EventLog,
        max_concurrent: int = 5,
    ):
        self._store = store
        self._client = client
        self._cache = cache
        self._events = events
        self._max_concurrent = max_concurrent

        # Loop state, reported by /health/ready
        self.running = False
        self.last_run_at: Optional[datetime] = None
        self.last_summary: Optional[Dict[str, int]] = None

    async def reconcile(self, job: VideoJob) -> Optional[VideoJob]:
        """
        Fetch the provider's view of one job and persist it if it moved forward.

        Returns the updated job, or None when nothing was written.
        """
        if job.is_terminal:
            return None
        try:
            upstream = await self._client.get_status(job.id)
        except NotFoundError:
            logger.warning("reconciler.missing_upstream", extra={"job_id": job.id})
            upstream = job.model_copy(update={
                "status": VideoStatus.FAILED,
                "error": VideoError(code="not_found", message=MISSING_UPSTREAM_MESSAGE),
            })
        return await self.apply(job, upstream)

    async def apply(self, stored: VideoJob, upstream: VideoJob) -> Optional[VideoJob]:
        """Persist ``upstream`` over ``stored`` if it is a forward move"""
        if not is_forward(stored, upstream):
            return None

        new_status = upstream.status
        if new_status == VideoStatus.FAILED:
            progress = None
        elif new_status == VideoStatus.COMPLETED:
            progress = 100
        else:
            progress = max(upstream.progress, stored.progress)

        error_message = None
        if new_status == VideoStatus.FAILED:
            error_message = upstream.error_message or "Video generation failed"

        completed_at = from_unix(upstream.completed_at)
        if new_status == VideoStatus.COMPLETED and completed_at is None:
            completed_at = utcnow()

        updated = await self._store.update_status(
            stored.id,
            new_status,
            progress=progress,
            file_url=upstream.file_url,
            thumbnail_url=upstream.thumbnail_url,
            error_message=error_message,
            completed_at=completed_at,
            expires_at=from_unix(upstream.expires_at),
        )
        if updated is None:
            # Someone else already wrote this or a later state
            return None

        await self._cache.cache_job(updated)
        await self._events.log_status_changed(
            stored.id, stored.status.value, updated.status.value, progress=updated.progress
        )

        if updated.status != stored.status:
            inc(f"jobs.{updated.status.value}")
            if updated.status == VideoStatus.FAILED:
                await self._events.log_failed(stored.id, error_message)
            logger.info(
                "reconciler.transition",
                extra={
                    "job_id": stored.id,
                    "old_status": stored.status.value,
                    "new_status": updated.status.value,
                    "progress": updated.progress,
                },
            )
        return updated

    async def run_once(self) -> Dict[str, int]:
        """One tick over all pending jobs. Returns {checked, updated, unchanged, failed}."""
        async with track_duration("reconciler", "tick"):
            jobs = await self._store.get_pending()
            set_gauge("jobs.pending", len(jobs))
            semaphore = asyncio.Semaphore(self._max_concurrent)

            async def check(job: VideoJob) -> str:
                async with semaphore:
                    try:
                        updated = await self.reconcile(job)
                    except Exception as exc:
                        inc("reconciler.job_error")
                        logger.error(
                            f"[reconciler] Failed to check {job.id}: {exc}",
                            extra={"job_id": job.id, "error_type": type(exc).__name__},
                        )
                        return "failed"
                    return "updated" if updated else "unchanged"

            outcomes = await asyncio.gather(*(check(job) for job in jobs))

        summary: Dict[str, Any] = {
            "checked": len(jobs),
            "updated": outcomes.count("updated"),
            "unchanged": outcomes.count("unchanged"),
            "failed": outcomes.count("failed"),
        }
        self.last_run_at = utcnow()
        self.last_summary = summary
        if jobs:
            logger.info("reconciler.tick", extra=summary)
        return summary

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_summary": self.last_summary,
        }
