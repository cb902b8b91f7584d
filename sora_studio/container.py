"""
Wires the long-lived components together once per process.

The API app and the standalone worker both build their services here, so
there is exactly one engine, Redis client, gateway and provider client each.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from sora_studio.config import Settings
from sora_studio.database import create_engine, create_session_factory, init_db
from sora_studio.services.cache import VideoCache
from sora_studio.services.event_log import EventLog
from sora_studio.services.gateway import ServiceConfig, ServiceGateway
from sora_studio.services.quota_ledger import QuotaLedger
from sora_studio.services.reconciler import Reconciler
from sora_studio.services.redis_client import close_redis, connect_redis
from sora_studio.services.sora_client import SERVICE_NAME, SoraClient
from sora_studio.services.video_service import VideoService
from sora_studio.services.video_store import VideoStore
from sora_studio.utils.logger import logger


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    redis: Optional[Redis]
    gateway: ServiceGateway
    client: SoraClient
    store: VideoStore
    cache: VideoCache
    quota: QuotaLedger
    events: EventLog
    reconciler: Reconciler
    videos: VideoService


async def build_services(
    settings: Settings,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    client: Optional[SoraClient] = None,
    redis: Optional[Redis] = None,
) -> Services:
    """
    Create and connect every component.

    ``client`` and ``redis`` replace the real provider client and Redis
    connection; tests use them to inject fakes.
    """
    engine = create_engine(settings.database_url, echo=settings.debug)
    await init_db(engine)
    session_factory = create_session_factory(engine)

    if redis is None:
        redis = await connect_redis(settings.redis_url)

    gateway = ServiceGateway({
        SERVICE_NAME: ServiceConfig(
            max_concurrent=settings.upstream_max_concurrent,
            timeout_seconds=settings.upstream_timeout_seconds,
        ),
    })
    if client is None:
        client = SoraClient(settings, gateway, http_client=http_client)

    store = VideoStore(session_factory)
    cache = VideoCache(redis)
    quota = QuotaLedger(
        session_factory,
        default_limit=settings.default_videos_limit,
        anonymous_limit=settings.anonymous_videos_limit,
    )
    events = EventLog(session_factory)
    reconciler = Reconciler(store, client, cache, events, max_concurrent=settings.reconciler_max_concurrent)
    videos = VideoService(
        store=store,
        client=client,
        cache=cache,
        quota=quota,
        events=events,
        reconciler=reconciler,
        session_factory=session_factory,
        delete_upstream_on_delete=settings.delete_upstream_on_delete,
    )

    logger.info(
        "services.ready",
        extra={"service": "sora_studio", "status": "redis" if redis is not None else "no-redis"},
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        redis=redis,
        gateway=gateway,
        client=client,
        store=store,
        cache=cache,
        quota=quota,
        events=events,
        reconciler=reconciler,
        videos=videos,
    )


async def close_services(services: Services) -> None:
    """Release network and database resources"""
    await services.client.aclose()
    await close_redis(services.redis)
    await services.engine.dispose()
    logger.info("services.closed")


# FastAPI dependency providers

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_video_service(request: Request) -> VideoService:
    return request.app.state.services.videos
