"""
Per-owner monthly video quota.

One user_quotas row per owner, created on first access with the default
limit (lower for the anonymous owner) and a reset at the first instant of
next month. Usage is charged with a conditional increment, so the ceiling
holds under concurrent creates: the charge either lands below the limit or
matches no row and raises QuotaExceededError.

Usage:
    ledger = QuotaLedger(session_factory, default_limit=100, anonymous_limit=10)
    check = await ledger.check_quota("user-1")
    async with transaction(session_factory, "create video") as db:
        await ledger.track_usage("user-1", job.id, cost, session=db)
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sora_studio.database import transaction
from sora_studio.errors import QuotaExceededError, StoreError, ValidationError
from sora_studio.models.quota import UserQuota
from sora_studio.schemas.video import ANONYMOUS_OWNER, QuotaCheck, QuotaRecord, VideoModel
from sora_studio.utils.datetime_utils import as_utc, first_instant_of_next_month, utcnow
from sora_studio.utils.logger import logger

# USD per generated second
COST_PER_SECOND = {
    VideoModel.SORA_2.value: Decimal("0.10"),
    VideoModel.SORA_2_PRO.value: Decimal("0.20"),
}
DEFAULT_SECONDS = 5

# Blended average across models and durations, for the monthly estimate
AVERAGE_COST_PER_VIDEO = Decimal("0.40")

_CENTS = Decimal("0.01")


def _to_record(row: UserQuota) -> QuotaRecord:
    return QuotaRecord(
        owner_id=row.user_id,
        videos_created=row.videos_created,
        videos_limit=row.videos_limit,
        reset_at=as_utc(row.reset_at),
    )


def calculate_cost(model: Optional[str], seconds: Optional[str]) -> Decimal:
    """Cost of one generation; unknown models are priced as sora-2"""
    duration = int(seconds) if seconds else DEFAULT_SECONDS
    rate = COST_PER_SECOND.get(model or "", COST_PER_SECOND[VideoModel.SORA_2.value])
    return (rate * duration).quantize(_CENTS, rounding=ROUND_HALF_UP)


def estimate_monthly_cost(videos_created: int) -> Decimal:
    return (AVERAGE_COST_PER_VIDEO * videos_created).quantize(_CENTS, rounding=ROUND_HALF_UP)


class QuotaLedger:
    def __init__(self, session_factory: async_sessionmaker, default_limit: int = 100, anonymous_limit: int = 10):
        self._session_factory = session_factory
        self.default_limit = default_limit
        self.anonymous_limit = anonymous_limit

    calculate_cost = staticmethod(calculate_cost)
    estimate_monthly_cost = staticmethod(estimate_monthly_cost)

    def limit_for(self, owner_id: str) -> int:
        return self.anonymous_limit if owner_id == ANONYMOUS_OWNER else self.default_limit

    async def get_quota(self, owner_id: str) -> QuotaRecord:
        """Current quota, creating the default record on first access"""
        record = await self._fetch(owner_id)
        if record is not None:
            return record
        return await self._create_default(owner_id)

    async def check_quota(self, owner_id: str) -> QuotaCheck:
        """Whether the owner may create one more video right now"""
        await self.get_quota(owner_id)
        await self.reset_if_due(owner_id)
        quota = await self.get_quota(owner_id)

        remaining = quota.remaining
        check = QuotaCheck(
            allowed=remaining > 0,
            used=quota.videos_created,
            limit=quota.videos_limit,
            remaining=remaining,
        )
        if not check.allowed:
            check.message = f"Quota exceeded. You have used {quota.videos_created} of {quota.videos_limit} videos."
            logger.info("quota.exceeded", extra={"owner_id": owner_id})
        return check

    async def track_usage(
        self,
        owner_id: str,
        job_id: str,
        cost: Decimal,
        session: Optional[AsyncSession] = None,
    ) -> None:
        """
        Charge one video against the owner's quota.

        The increment only applies while usage is below the limit. Pass
        ``session`` to charge inside the caller's transaction; raising here
        then rolls back everything the caller wrote in it.
        """
        if session is not None:
            await self._increment(session, owner_id, job_id, cost)
            return
        async with transaction(self._session_factory, "track quota usage") as db:
            await self._increment(db, owner_id, job_id, cost)

    async def reset_if_due(self, owner_id: str) -> bool:
        """Zero the usage if the period has rolled over. Returns True if reset."""
        now = utcnow()
        async with transaction(self._session_factory, "reset quota") as db:
            result = await db.execute(
                update(UserQuota)
                .where(UserQuota.user_id == owner_id, UserQuota.reset_at <= now)
                .values(videos_created=0, reset_at=first_instant_of_next_month(now), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            reset = result.rowcount > 0

        if reset:
            logger.info("quota.reset", extra={"owner_id": owner_id})
        return reset

    async def update_limit(self, owner_id: str, new_limit: int) -> QuotaRecord:
        """Change an owner's monthly ceiling"""
        if new_limit < 0:
            raise ValidationError("Quota limit must be non-negative")

        await self.get_quota(owner_id)
        async with transaction(self._session_factory, "update quota limit") as db:
            await db.execute(
                update(UserQuota)
                .where(UserQuota.user_id == owner_id)
                .values(videos_limit=new_limit, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        logger.info(f"[quota] Limit for {owner_id} set to {new_limit}", extra={"owner_id": owner_id})
        return await self.get_quota(owner_id)

    # ------------------------------------------------------------------

    async def _increment(self, db: AsyncSession, owner_id: str, job_id: str, cost: Decimal) -> None:
        result = await db.execute(
            update(UserQuota)
            .where(
                UserQuota.user_id == owner_id,
                UserQuota.videos_created < UserQuota.videos_limit,
            )
            .values(videos_created=UserQuota.videos_created + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            row = (await db.execute(select(UserQuota).where(UserQuota.user_id == owner_id))).scalar_one_or_none()
            used, limit = (row.videos_created, row.videos_limit) if row else (0, 0)
            raise QuotaExceededError(used, limit)

        logger.info(
            f"[quota] Charged {owner_id} for {job_id} (${cost})",
            extra={"owner_id": owner_id, "job_id": job_id},
        )

    async def _fetch(self, owner_id: str) -> Optional[QuotaRecord]:
        async with transaction(self._session_factory, "fetch quota") as db:
            row = (await db.execute(select(UserQuota).where(UserQuota.user_id == owner_id))).scalar_one_or_none()
            return _to_record(row) if row else None

    async def _create_default(self, owner_id: str) -> QuotaRecord:
        now = utcnow()
        row = UserQuota(
            user_id=owner_id,
            videos_created=0,
            videos_limit=self.limit_for(owner_id),
            reset_at=first_instant_of_next_month(now),
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    db.add(row)
        except IntegrityError:
            # Another request created it first
            record = await self._fetch(owner_id)
            if record is None:
                raise StoreError("Failed to create quota record")
            return record
        except SQLAlchemyError as exc:
            logger.error(f"[quota] Failed to create default quota: {exc}", extra={"owner_id": owner_id})
            raise StoreError("Failed to create quota record") from exc

        logger.info(
            f"[quota] Default quota created: 0/{row.videos_limit}",
            extra={"owner_id": owner_id},
        )
        return _to_record(row)
