"""
Redis cache for video jobs.

Write-through from the request path and the reconciler, read-through on
get. TTL depends on status: completed jobs are immutable and live for an
hour, everything else expires after five minutes so stale progress is never
shown for long.

All operations fail open: a Redis failure is logged and treated as a miss or
no-op, never raised.
"""

import logging
from typing import Optional

from sora_studio.schemas.video import VideoJob, VideoStatus
from sora_studio.utils.metrics import inc

_log = logging.getLogger(__name__)

KEY_PREFIX = "sora:video:"

COMPLETED_TTL_SECONDS = 3600
FAILED_TTL_SECONDS = 300
PENDING_TTL_SECONDS = 300


def ttl_for(status: VideoStatus) -> int:
    if status == VideoStatus.COMPLETED:
        return COMPLETED_TTL_SECONDS
    if status == VideoStatus.FAILED:
        return FAILED_TTL_SECONDS
    return PENDING_TTL_SECONDS


class VideoCache:
    """Job cache keyed by video id. ``redis`` may be None (cache disabled)."""

    def __init__(self, redis=None):
        self._redis = redis

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    async def cache_job(self, video: VideoJob) -> bool:
        """Store a job with its status TTL. Returns success."""
        if self._redis is None or video.status == VideoStatus.DELETED:
            return False
        ttl = ttl_for(video.status)
        try:
            await self._redis.set(f"{KEY_PREFIX}{video.id}", video.model_dump_json(), ex=ttl)
            _log.debug(f"[cache] SET {video.id} status={video.status.value} ttl={ttl}s")
            return True
        except Exception as exc:
            _log.warning(f"[cache] SET {video.id} failed: {exc}")
            return False

    async def get_cached(self, video_id: str) -> Optional[VideoJob]:
        """Fetch a cached job. Returns None on miss or error."""
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(f"{KEY_PREFIX}{video_id}")
            if raw is None:
                inc("cache.miss")
                return None
            inc("cache.hit")
            return VideoJob.model_validate_json(raw)
        except Exception as exc:
            _log.warning(f"[cache] GET {video_id} failed: {exc}")
            return None

    async def invalidate(self, video_id: str) -> bool:
        """Remove a job from the cache. Returns success."""
        if self._redis is None:
            return False
        try:
            await self._redis.delete(f"{KEY_PREFIX}{video_id}")
            return True
        except Exception as exc:
            _log.warning(f"[cache] DEL {video_id} failed: {exc}")
            return False
