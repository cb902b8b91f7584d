from sqlalchemy import Column, Integer, String, DateTime, JSON, func
from sora_studio.database import Base


class VideoEvent(Base):
    """Append-only audit row. Never updated or deleted."""
    __tablename__ = "video_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    video_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(30), nullable=False, index=True)
    event_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
