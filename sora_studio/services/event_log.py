"""
Append-only audit trail of video lifecycle events.

Writes never fail the operation that triggered them: an append error is
logged and dropped. Reads propagate store errors like any other query.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from sora_studio.database import transaction
from sora_studio.models.video import Video
from sora_studio.models.video_event import VideoEvent
from sora_studio.schemas.video import EventType, VideoEventOut
from sora_studio.utils.datetime_utils import as_utc, utcnow
from sora_studio.utils.logger import get_logger

logger = get_logger("events")

DEFAULT_OWNER_EVENTS_LIMIT = 50


def _to_event(row: VideoEvent) -> VideoEventOut:
    return VideoEventOut(
        id=row.id,
        video_id=row.video_id,
        event_type=EventType(row.event_type),
        event_data=row.event_data or {},
        created_at=as_utc(row.created_at),
    )


class EventLog:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def append(self, video_id: str, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> bool:
        """Record one event. Returns False (and logs) instead of raising."""
        row = VideoEvent(
            video_id=video_id,
            event_type=event_type.value,
            event_data=data or {},
            created_at=utcnow(),
        )
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    db.add(row)
        except Exception as exc:
            logger.error(
                f"[events] Failed to log {event_type.value} (non-critical): {exc}",
                extra={"job_id": video_id},
            )
            return False

        logger.debug(f"[events] {event_type.value}", extra={"job_id": video_id})
        return True

    # Helpers for each event type

    async def log_created(self, video_id: str, owner_id: str, model: str, prompt: str) -> bool:
        return await self.append(video_id, EventType.CREATED, {
            "user_id": owner_id,
            "model": model,
            "prompt_length": len(prompt),
        })

    async def log_status_changed(
        self, video_id: str, old_status: str, new_status: str, progress: Optional[int] = None
    ) -> bool:
        return await self.append(video_id, EventType.STATUS_CHANGED, {
            "old_status": old_status,
            "new_status": new_status,
            "progress": progress,
        })

    async def log_downloaded(self, video_id: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> bool:
        return await self.append(video_id, EventType.DOWNLOADED, {
            "ip_address": ip_address,
            "user_agent": user_agent,
        })

    async def log_deleted(self, video_id: str, owner_id: str) -> bool:
        return await self.append(video_id, EventType.DELETED, {"user_id": owner_id})

    async def log_failed(self, video_id: str, error_message: str) -> bool:
        return await self.append(video_id, EventType.FAILED, {"error_message": error_message})

    async def log_remixed(self, video_id: str, source_video_id: str, prompt: str) -> bool:
        return await self.append(video_id, EventType.REMIXED, {
            "source_video_id": source_video_id,
            "prompt_length": len(prompt),
        })

    # Reads

    async def get_by_job(self, video_id: str) -> List[VideoEventOut]:
        """All events for one video, newest first"""
        query = (
            select(VideoEvent)
            .where(VideoEvent.video_id == video_id)
            .order_by(VideoEvent.created_at.desc(), VideoEvent.id.desc())
        )
        async with transaction(self._session_factory, "fetch video events") as db:
            rows = (await db.execute(query)).scalars().all()
            return [_to_event(row) for row in rows]

    async def get_by_owner(self, owner_id: str, limit: int = DEFAULT_OWNER_EVENTS_LIMIT) -> List[VideoEventOut]:
        """Recent events across all of an owner's videos, newest first"""
        query = (
            select(VideoEvent)
            .join(Video, VideoEvent.video_id == Video.id)
            .where(Video.user_id == owner_id)
            .order_by(VideoEvent.created_at.desc(), VideoEvent.id.desc())
            .limit(limit)
        )
        async with transaction(self._session_factory, "fetch owner events") as db:
            rows = (await db.execute(query)).scalars().all()
            return [_to_event(row) for row in rows]
