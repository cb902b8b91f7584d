"""
Request-path orchestration for video jobs.

Ties the provider client, the store, the cache, the quota ledger and the
event log together for create/get/list/delete/remix/download. Input is
validated before anything is charged or sent upstream. A new job is
persisted and charged in one transaction; if the charge is refused the
just-created provider job is deleted best-effort and the caller gets
QuotaExceededError.

Usage:
    service = VideoService(store=..., client=..., cache=..., quota=..., events=...,
                           reconciler=..., session_factory=...)
    job = await service.create_job("user-1", "A red fox in snow", parse_options(model="sora-2"))
"""
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from sora_studio.database import transaction
from sora_studio.errors import (
    AppError,
    NotFoundError,
    NotReadyError,
    QuotaExceededError,
    SourceNotCompletedError,
    StoreError,
    ValidationError,
)
from sora_studio.schemas.video import (
    PROMPT_MAX_LENGTH,
    QuotaCheck,
    QuotaSummary,
    VideoEventOut,
    VideoFilters,
    VideoJob,
    VideoOptions,
    VideoStats,
    VideoStatus,
)
from sora_studio.services.cache import VideoCache
from sora_studio.services.event_log import EventLog
from sora_studio.services.quota_ledger import QuotaLedger, calculate_cost, estimate_monthly_cost
from sora_studio.services.reconciler import Reconciler
from sora_studio.services.sora_client import SoraClient
from sora_studio.services.video_store import VideoStore
from sora_studio.utils.logger import get_logger
from sora_studio.utils.metrics import inc

logger = get_logger("video_service")


def validate_prompt(prompt: Any, label: str = "Prompt") -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError(f"{label} is required and must be a non-empty string")
    if len(prompt) > PROMPT_MAX_LENGTH:
        raise ValidationError(f"{label} is too long (maximum {PROMPT_MAX_LENGTH} characters)")
    return prompt


def parse_options(
    model: Optional[str] = None,
    size: Optional[str] = None,
    seconds: Any = None,
    quality: Optional[str] = None,
) -> VideoOptions:
    """Build generation options from raw request values"""
    try:
        return VideoOptions(
            model=model or None,
            size=size or None,
            seconds=str(seconds) if seconds is not None else None,
            quality=quality or None,
        )
    except PydanticValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise ValidationError(
            f"Invalid {', '.join(fields) or 'options'}",
            details={"fields": fields},
        ) from exc


class VideoService:
    def __init__(
        self,
        *,
        store: VideoStore,
        client: SoraClient,
        cache: VideoCache,
        quota: QuotaLedger,
        events: EventLog,
        reconciler: Reconciler,
        session_factory: async_sessionmaker,
        delete_upstream_on_delete: bool = False,
    ):
        self._store = store
        self._client = client
        self._cache = cache
        self._quota = quota
        self._events = events
        self._reconciler = reconciler
        self._session_factory = session_factory
        self._delete_upstream_on_delete = delete_upstream_on_delete

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, owner_id: str, prompt: Any, options: Optional[VideoOptions] = None) -> VideoJob:
        """Start a generation for ``owner_id`` and charge one video"""
        prompt = validate_prompt(prompt)
        options = options or VideoOptions()

        await self._require_quota(owner_id)

        upstream = await self._client.create(prompt, options)
        job = self._with_request_fields(upstream, owner_id, prompt, options)
        stored = await self._persist_new(owner_id, job, {"created_via": "api"})

        await self._cache.cache_job(stored)
        await self._events.log_created(stored.id, owner_id, stored.model, prompt)
        inc("jobs.created")
        logger.info(
            f"[VideoService] Video created: {stored.id}",
            extra={"job_id": stored.id, "owner_id": owner_id, "new_status": stored.status.value},
        )
        return stored

    async def get_job(self, video_id: str, owner_id: Optional[str] = None) -> VideoJob:
        """
        Cache, then store. A non-terminal job read from the store is refreshed
        from the provider; if that fails the stored copy is served.
        """
        cached = await self._cache.get_cached(video_id)
        if cached is not None:
            self._check_owner(cached, owner_id)
            return cached

        job = await self._get_owned(video_id, owner_id)

        if not job.is_terminal:
            try:
                refreshed = await self._reconciler.reconcile(job)
            except AppError as exc:
                logger.warning(
                    f"[VideoService] Refresh of {video_id} failed, serving stored copy: {exc.message}",
                    extra={"job_id": video_id, "error_type": type(exc).__name__},
                )
                refreshed = None
            if refreshed is not None:
                job = refreshed

        await self._cache.cache_job(job)
        return job

    async def list_jobs(self, owner_id: str, filters: Optional[VideoFilters] = None) -> List[VideoJob]:
        return await self._store.list_by_owner(owner_id, filters or VideoFilters())

    async def delete_job(self, video_id: str, owner_id: Optional[str] = None) -> bool:
        """Soft delete. The provider copy is only removed when configured to."""
        job = await self._get_owned(video_id, owner_id)

        if self._delete_upstream_on_delete:
            try:
                await self._client.delete(video_id)
            except NotFoundError:
                logger.info(f"[VideoService] {video_id} already gone upstream", extra={"job_id": video_id})

        if not await self._store.soft_delete(video_id):
            raise NotFoundError()

        await self._cache.invalidate(video_id)
        await self._events.log_deleted(video_id, owner_id or job.owner_id)
        inc("jobs.deleted")
        return True

    async def remix_job(self, source_id: str, owner_id: str, prompt: Any) -> VideoJob:
        """Derive a new job from a completed one; charged like a create"""
        prompt = validate_prompt(prompt, label="Remix prompt")

        source = await self._completed_source(source_id, owner_id)

        await self._require_quota(owner_id)

        upstream = await self._client.remix(source_id, prompt)
        job = upstream.model_copy(update={
            "owner_id": owner_id,
            "prompt": prompt,
            "remixed_from_video_id": source_id,
            "size": upstream.size or source.size,
            "seconds": upstream.seconds or source.seconds,
            "quality": upstream.quality or source.quality,
        })
        stored = await self._persist_new(
            owner_id, job, {"created_via": "remix", "source_video_id": source_id}
        )

        await self._cache.cache_job(stored)
        await self._events.log_remixed(stored.id, source_id, prompt)
        inc("jobs.remixed")
        logger.info(
            f"[VideoService] Remix {stored.id} created from {source_id}",
            extra={"job_id": stored.id, "owner_id": owner_id},
        )
        return stored

    async def download_job(
        self,
        video_id: str,
        owner_id: Optional[str] = None,
        variant: str = "video",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bytes:
        job = await self.get_job(video_id, owner_id)
        if job.status != VideoStatus.COMPLETED:
            raise NotReadyError()

        content = await self._client.download(video_id, variant)
        await self._events.log_downloaded(video_id, ip_address, user_agent)
        inc("jobs.downloaded")
        return content

    # ------------------------------------------------------------------
    # Quota, events, stats
    # ------------------------------------------------------------------

    async def check_quota(self, owner_id: str) -> QuotaCheck:
        return await self._quota.check_quota(owner_id)

    async def get_quota_summary(self, owner_id: str) -> QuotaSummary:
        await self._quota.check_quota(owner_id)
        quota = await self._quota.get_quota(owner_id)
        return QuotaSummary(
            owner_id=owner_id,
            videos_created=quota.videos_created,
            videos_limit=quota.videos_limit,
            remaining=quota.remaining,
            reset_at=quota.reset_at,
            estimated_cost=estimate_monthly_cost(quota.videos_created),
        )

    async def get_job_events(self, video_id: str, owner_id: Optional[str] = None) -> List[VideoEventOut]:
        await self._get_owned(video_id, owner_id, allow_deleted=True)
        return await self._events.get_by_job(video_id)

    async def get_owner_events(self, owner_id: str, limit: int = 50) -> List[VideoEventOut]:
        return await self._events.get_by_owner(owner_id, limit)

    async def get_stats(self, owner_id: Optional[str] = None) -> VideoStats:
        return await self._store.get_stats(owner_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_quota(self, owner_id: str) -> None:
        check = await self._quota.check_quota(owner_id)
        if not check.allowed:
            raise QuotaExceededError(check.used, check.limit, check.message)

    async def _persist_new(self, owner_id: str, job: VideoJob, metadata: Dict[str, Any]) -> VideoJob:
        """Charge quota and insert the job in one transaction"""
        cost = calculate_cost(job.model, job.seconds)
        try:
            async with transaction(self._session_factory, "create video") as db:
                await self._quota.track_usage(owner_id, job.id, cost, session=db)
                return await self._store.create(job, owner_id, metadata, session=db)
        except (QuotaExceededError, StoreError):
            await self._discard_upstream(job.id)
            raise

    async def _discard_upstream(self, video_id: str) -> None:
        try:
            await self._client.delete(video_id)
            logger.info(f"[VideoService] Discarded unrecorded upstream job {video_id}", extra={"job_id": video_id})
        except AppError as exc:
            logger.warning(
                f"[VideoService] Could not discard upstream job {video_id}: {exc.message}",
                extra={"job_id": video_id},
            )

    async def _completed_source(self, source_id: str, owner_id: str) -> VideoJob:
        """
        The remix source, which must be completed. A pending source is checked
        against the provider, but only a completed answer is written back.
        """
        source = await self._cache.get_cached(source_id)
        if source is not None:
            self._check_owner(source, owner_id)
        else:
            source = await self._get_owned(source_id, owner_id)

        if not source.is_terminal:
            upstream = await self._client.get_status(source_id)
            if upstream.status == VideoStatus.COMPLETED:
                source = await self._reconciler.apply(source, upstream) or await self._get_owned(source_id, owner_id)

        if source.status != VideoStatus.COMPLETED:
            raise SourceNotCompletedError()
        return source

    async def _get_owned(self, video_id: str, owner_id: Optional[str], allow_deleted: bool = False) -> VideoJob:
        job = await self._store.get_by_id(video_id)
        if job is None or (job.status == VideoStatus.DELETED and not allow_deleted):
            raise NotFoundError()
        self._check_owner(job, owner_id)
        return job

    @staticmethod
    def _check_owner(job: VideoJob, owner_id: Optional[str]) -> None:
        # Someone else's video is indistinguishable from a missing one
        if owner_id is not None and job.owner_id is not None and job.owner_id != owner_id:
            raise NotFoundError()

    @staticmethod
    def _with_request_fields(upstream: VideoJob, owner_id: str, prompt: str, options: VideoOptions) -> VideoJob:
        updates: Dict[str, Any] = {"owner_id": owner_id, "prompt": upstream.prompt or prompt}
        for field in ("size", "seconds", "quality"):
            requested = getattr(options, field)
            if getattr(upstream, field) is None and requested is not None:
                updates[field] = requested.value
        return upstream.model_copy(update=updates)
