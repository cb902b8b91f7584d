"""
Quota API Routes
"""
from fastapi import APIRouter, Depends

from sora_studio.container import get_video_service
from sora_studio.middleware.auth import resolve_owner
from sora_studio.services.video_service import VideoService

router = APIRouter()


@router.get("")
async def get_quota(
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    """Usage this period, remaining videos, next reset and estimated cost"""
    summary = await service.get_quota_summary(owner_id)
    data = summary.model_dump(mode="json")
    # Expose the cost as a number rather than a decimal string
    data["estimated_cost"] = float(summary.estimated_cost)
    data["user_id"] = data.pop("owner_id")
    return {"success": True, "data": data}


@router.get("/check")
async def check_quota(
    owner_id: str = Depends(resolve_owner),
    service: VideoService = Depends(get_video_service),
):
    """Whether the caller can create another video, without creating one"""
    check = await service.check_quota(owner_id)
    return {
        "success": True,
        "data": {
            "allowed": check.allowed,
            "current_usage": check.used,
            "limit": check.limit,
            "remaining": check.remaining,
            "message": check.message,
        },
    }
