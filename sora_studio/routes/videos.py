"""
Video API Routes

Create, inspect, list, delete, remix and download video generation jobs.
Every route acts for the owner resolved from the request.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from sora_studio.container import get_video_service
from sora_studio.middleware.auth import resolve_owner
from sora_studio.middleware.rate_limit import create_rate_limit, limiter
from sora_studio.schemas.video import (
    CreateVideoRequest,
    RemixVideoRequest,
    VideoFilters,
    VideoStatus,
)
from sora_studio.services.video_service import VideoService, parse_options

router = APIRouter()
events_router = APIRouter()

MAX_PAGE_SIZE = 100

CONTENT_TYPES = {
    "video": ("video/mp4", "mp4"),
    "thumbnail": ("image/webp", "webp"),
    "spritesheet": ("image/jpeg", "jpg"),
}


async def _quota_snapshot(service: VideoService, owner_id: str) -> dict:
    check = await service.check_quota(owner_id)
    return {"current_usage": check.used, "limit": check.limit, "remaining": check.remaining}


@router.post("", status_code=201)
@limiter.limit(create_rate_limit)
async def create_video(
    request: Request,
    body: CreateVideoRequest,
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    """
    Start a video generation job.

    Counts against the caller's monthly quota. Rate limited per owner.
    """
    options = parse_options(body.model, body.size, body.seconds, body.quality)
    video = await service.create_job(owner_id, body.prompt, options)
    return {
        "success": True,
        "data": video.model_dump(mode="json"),
        "quota": await _quota_snapshot(service, owner_id),
    }


@router.get("")
async def list_videos(
    status: Optional[VideoStatus] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    limit: int = Query(20, ge=1),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    """List the caller's videos, newest first"""
    limit = min(limit, MAX_PAGE_SIZE)
    filters = VideoFilters(status=status, from_date=from_date, to_date=to_date, limit=limit, offset=offset)
    videos = await service.list_jobs(owner_id, filters)
    return {
        "success": True,
        "data": [v.model_dump(mode="json") for v in videos],
        "pagination": {
            "limit": limit,
            "offset": offset,
            "count": len(videos),
            "has_more": len(videos) == limit,
        },
    }


@router.get("/stats")
async def video_stats(
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    stats = await service.get_stats(owner_id)
    return {"success": True, "data": stats.model_dump()}


@router.get("/{video_id}")
async def get_video(
    video_id: str,
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    """Current job state; pending jobs are refreshed from the provider"""
    video = await service.get_job(video_id, owner_id)
    return {"success": True, "data": video.model_dump(mode="json")}


@router.delete("/{video_id}")
async def delete_video(
    video_id: str,
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    await service.delete_job(video_id, owner_id)
    return {"success": True, "data": {"id": video_id, "deleted": True}}


@router.get("/{video_id}/download")
async def download_video(
    request: Request,
    video_id: str,
    variant: str = Query("video", pattern="^(video|thumbnail|spritesheet)$"),
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    """Stream the rendered file for a completed video"""
    content = await service.download_job(
        video_id,
        owner_id,
        variant=variant,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    media_type, extension = CONTENT_TYPES[variant]
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="video_{video_id}.{extension}"'},
    )


@router.post("/{video_id}/remix", status_code=201)
@limiter.limit(create_rate_limit)
async def remix_video(
    request: Request,
    video_id: str,
    body: RemixVideoRequest,
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    """Create a new video from a completed one with a new prompt"""
    video = await service.remix_job(video_id, owner_id, body.prompt)
    return {
        "success": True,
        "data": video.model_dump(mode="json"),
        "quota": await _quota_snapshot(service, owner_id),
    }


@router.get("/{video_id}/events")
async def video_events(
    video_id: str,
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    """Audit trail for one video, newest first"""
    events = await service.get_job_events(video_id, owner_id)
    return {"success": True, "data": [e.model_dump(mode="json") for e in events]}


@events_router.get("")
async def owner_events(
    limit: int = Query(50, ge=1, le=200),
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    """Recent events across all of the caller's videos"""
    events = await service.get_owner_events(owner_id, limit)
    return {"success": True, "data": [e.model_dump(mode="json") for e in events]}
