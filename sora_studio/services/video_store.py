"""
Durable store for video jobs.

The videos table is the record of truth for every job the service knows
about. Status writes are conditional: a row only moves forward through the
lifecycle (queued → in_progress → completed | failed), progress never goes
down, and a terminal row is never touched again except by soft delete. A
write that would violate any of that is a no-op, so the reconciler and the
read path can race on the same job without corrupting it.

Usage:
    store = VideoStore(session_factory)
    await store.create(job, owner_id="user-1")
    await store.update_status(job.id, VideoStatus.IN_PROGRESS, progress=30)
    pending = await store.get_pending()
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sora_studio.database import transaction
from sora_studio.models.video import Video
from sora_studio.schemas.video import (
    PENDING_STATUSES,
    STATUS_RANK,
    VideoError,
    VideoFilters,
    VideoJob,
    VideoStats,
    VideoStatus,
)
from sora_studio.utils.datetime_utils import as_utc, from_unix, to_unix, utcnow
from sora_studio.utils.logger import logger


def to_video_job(row: Video) -> VideoJob:
    """Map a videos row to the shared job shape"""
    error = None
    if row.status == VideoStatus.FAILED.value or row.error_message:
        error = VideoError(message=row.error_message or "Video generation failed")
    return VideoJob(
        id=row.id,
        owner_id=row.user_id,
        model=row.model,
        status=VideoStatus(row.status),
        progress=row.progress,
        prompt=row.prompt,
        size=row.size,
        seconds=row.seconds,
        quality=row.quality,
        remixed_from_video_id=row.remixed_from_video_id,
        file_url=row.file_url,
        thumbnail_url=row.thumbnail_url,
        created_at=to_unix(row.created_at),
        completed_at=to_unix(row.completed_at),
        expires_at=to_unix(row.expires_at),
        error=error,
    )


def _sources_for(target: VideoStatus) -> List[str]:
    """Stored statuses a row may hold for a write to ``target`` to apply"""
    return sorted(
        s.value for s in PENDING_STATUSES if STATUS_RANK[s] <= STATUS_RANK[target]
    )


class VideoStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(
        self,
        job: VideoJob,
        owner_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        session: Optional[AsyncSession] = None,
    ) -> VideoJob:
        """
        Insert a freshly created job.

        Pass ``session`` to join a caller's transaction (the quota charge and
        the insert commit together); otherwise a transaction of its own is used.
        """
        now = utcnow()
        row = Video(
            id=job.id,
            user_id=owner_id,
            status=job.status.value,
            progress=job.progress,
            prompt=job.prompt or "",
            model=job.model,
            size=job.size,
            seconds=job.seconds,
            quality=job.quality,
            remixed_from_video_id=job.remixed_from_video_id,
            file_url=job.file_url,
            thumbnail_url=job.thumbnail_url,
            error_message=job.error_message,
            metadata_=metadata or {},
            created_at=from_unix(job.created_at) or now,
            updated_at=now,
            completed_at=from_unix(job.completed_at),
            expires_at=from_unix(job.expires_at),
        )

        if session is not None:
            session.add(row)
            await session.flush()
        else:
            async with transaction(self._session_factory, "create video") as db:
                db.add(row)

        logger.info("video.stored", extra={"job_id": job.id, "owner_id": owner_id, "new_status": job.status.value})
        return to_video_job(row)

    async def get_by_id(self, video_id: str) -> Optional[VideoJob]:
        async with transaction(self._session_factory, "fetch video") as db:
            result = await db.execute(select(Video).where(Video.id == video_id))
            row = result.scalar_one_or_none()
            return to_video_job(row) if row else None

    async def update_status(
        self,
        video_id: str,
        status: VideoStatus,
        *,
        progress: Optional[int] = None,
        file_url: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
        error_message: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[VideoJob]:
        """
        Apply a forward status/progress change.

        Returns the updated job, or None when the row is missing, terminal,
        ahead of ``status``, or already at this status with at least this
        progress. Nothing is written in the None case.
        """
        if status not in STATUS_RANK:
            raise ValueError(f"update_status cannot set {status.value}; use soft_delete")

        values: Dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        conditions = [Video.id == video_id, Video.status.in_(_sources_for(status))]

        if progress is not None:
            progress = max(0, min(100, int(progress)))
            values["progress"] = progress
            conditions.append(Video.progress <= progress)
            conditions.append(or_(Video.status != status.value, Video.progress < progress))
        else:
            conditions.append(Video.status != status.value)

        optional = {
            "file_url": file_url,
            "thumbnail_url": thumbnail_url,
            "error_message": error_message,
            "completed_at": completed_at,
            "expires_at": expires_at,
        }
        values.update({k: v for k, v in optional.items() if v is not None})

        async with transaction(self._session_factory, "update video status") as db:
            result = await db.execute(
                update(Video)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            row = (await db.execute(select(Video).where(Video.id == video_id))).scalar_one()
            job = to_video_job(row)

        logger.info(
            "video.status_updated",
            extra={"job_id": video_id, "new_status": status.value, "progress": job.progress},
        )
        return job

    async def soft_delete(self, video_id: str) -> bool:
        """Mark a job deleted. Returns False if it was missing or already deleted."""
        async with transaction(self._session_factory, "delete video") as db:
            result = await db.execute(
                update(Video)
                .where(Video.id == video_id, Video.status != VideoStatus.DELETED.value)
                .values(status=VideoStatus.DELETED.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount > 0

        if deleted:
            logger.info("video.deleted", extra={"job_id": video_id})
        return deleted

    async def list_by_owner(self, owner_id: str, filters: Optional[VideoFilters] = None) -> List[VideoJob]:
        """Owner's jobs, newest first. Deleted jobs only appear when asked for by status."""
        filters = filters or VideoFilters()
        query = select(Video).where(Video.user_id == owner_id)

        if filters.status is not None:
            query = query.where(Video.status == filters.status.value)
        else:
            query = query.where(Video.status != VideoStatus.DELETED.value)
        if filters.from_date is not None:
            query = query.where(Video.created_at >= as_utc(filters.from_date))
        if filters.to_date is not None:
            query = query.where(Video.created_at <= as_utc(filters.to_date))

        query = (
            query.order_by(Video.created_at.desc(), Video.id.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )

        async with transaction(self._session_factory, "list videos") as db:
            rows = (await db.execute(query)).scalars().all()
            return [to_video_job(row) for row in rows]

    async def get_pending(self, limit: Optional[int] = None) -> List[VideoJob]:
        """Non-terminal jobs across all owners, oldest first"""
        query = (
            select(Video)
            .where(Video.status.in_([s.value for s in PENDING_STATUSES]))
            .order_by(Video.created_at.asc(), Video.id.asc())
        )
        if limit:
            query = query.limit(limit)

        async with transaction(self._session_factory, "list pending videos") as db:
            rows = (await db.execute(query)).scalars().all()
            return [to_video_job(row) for row in rows]

    async def get_stats(self, owner_id: Optional[str] = None) -> VideoStats:
        """Job counts per status, for one owner or the whole service"""
        query = select(Video.status, func.count(Video.id)).group_by(Video.status)
        if owner_id is not None:
            query = query.where(Video.user_id == owner_id)

        async with transaction(self._session_factory, "count videos") as db:
            counts = {status: count for status, count in (await db.execute(query)).all()}

        return VideoStats(
            total_videos=sum(c for s, c in counts.items() if s != VideoStatus.DELETED.value),
            completed_videos=counts.get(VideoStatus.COMPLETED.value, 0),
            failed_videos=counts.get(VideoStatus.FAILED.value, 0),
            in_progress_videos=counts.get(VideoStatus.IN_PROGRESS.value, 0),
            queued_videos=counts.get(VideoStatus.QUEUED.value, 0),
        )
