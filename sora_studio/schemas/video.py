"""
Pydantic schemas for video jobs, quota and events.

``VideoJob`` is the shape shared by the upstream client, the store, the cache
and the API responses. Timestamps are Unix seconds, as the provider sends them.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, field_validator

ANONYMOUS_OWNER = "anonymous"

PROMPT_MIN_LENGTH = 1
PROMPT_MAX_LENGTH = 1000


class VideoStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    DELETED = "deleted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


PENDING_STATUSES = frozenset({VideoStatus.QUEUED, VideoStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset({VideoStatus.COMPLETED, VideoStatus.FAILED, VideoStatus.DELETED})

# Lifecycle order; deleted is imposed out of band and never ranked
STATUS_RANK = {
    VideoStatus.QUEUED: 0,
    VideoStatus.IN_PROGRESS: 1,
    VideoStatus.COMPLETED: 2,
    VideoStatus.FAILED: 2,
}


class EventType(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    DOWNLOADED = "downloaded"
    DELETED = "deleted"
    FAILED = "failed"
    REMIXED = "remixed"


class VideoModel(str, Enum):
    SORA_2 = "sora-2"
    SORA_2_PRO = "sora-2-pro"


class VideoSize(str, Enum):
    PORTRAIT = "1024x1808"
    LANDSCAPE = "1808x1024"
    SQUARE = "1024x1024"


class VideoSeconds(str, Enum):
    FIVE = "5"
    EIGHT = "8"
    TEN = "10"


class VideoQuality(str, Enum):
    STANDARD = "standard"
    HIGH = "high"


class VideoError(BaseModel):
    code: str = "generation_failed"
    message: str


class VideoJob(BaseModel):
    id: str
    object: str = "video"
    owner_id: Optional[str] = None
    model: str = VideoModel.SORA_2.value
    status: VideoStatus
    progress: int = 0
    prompt: Optional[str] = None
    size: Optional[str] = None
    seconds: Optional[str] = None
    quality: Optional[str] = None
    remixed_from_video_id: Optional[str] = None
    file_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    created_at: int
    completed_at: Optional[int] = None
    expires_at: Optional[int] = None
    error: Optional[VideoError] = None

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp_progress(cls, value):
        if value is None:
            return 0
        return max(0, min(100, int(value)))

    @field_validator("seconds", mode="before")
    @classmethod
    def _seconds_as_text(cls, value):
        return None if value is None else str(value)

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error else None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class VideoOptions(BaseModel):
    model: Optional[VideoModel] = None
    size: Optional[VideoSize] = None
    seconds: Optional[VideoSeconds] = None
    quality: Optional[VideoQuality] = None

    def as_payload(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True, mode="json")


class CreateVideoRequest(BaseModel):
    prompt: Optional[str] = None
    model: Optional[str] = None
    size: Optional[str] = None
    seconds: Optional[Union[str, int]] = None
    quality: Optional[str] = None


class RemixVideoRequest(BaseModel):
    prompt: Optional[str] = None


class VideoFilters(BaseModel):
    status: Optional[VideoStatus] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class VideoStats(BaseModel):
    total_videos: int = 0
    completed_videos: int = 0
    failed_videos: int = 0
    in_progress_videos: int = 0
    queued_videos: int = 0


class QuotaRecord(BaseModel):
    owner_id: str
    videos_created: int
    videos_limit: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.videos_limit - self.videos_created)


class QuotaCheck(BaseModel):
    allowed: bool
    used: int
    limit: int
    remaining: int
    message: Optional[str] = None


class QuotaSummary(BaseModel):
    owner_id: str
    videos_created: int
    videos_limit: int
    remaining: int
    reset_at: datetime
    estimated_cost: Decimal


class VideoEventOut(BaseModel):
    id: int
    video_id: str
    event_type: EventType
    event_data: Dict[str, Any] = {}
    created_at: datetime
