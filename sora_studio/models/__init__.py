# Database models package
from sora_studio.models.video import Video
from sora_studio.models.quota import UserQuota
from sora_studio.models.video_event import VideoEvent

__all__ = [
    "Video",
    "UserQuota",
    "VideoEvent",
]
