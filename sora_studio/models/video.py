"""
SQLAlchemy model for the videos table: one row per video generation job.
"""
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index, func
from sora_studio.database import Base


class Video(Base):
    __tablename__ = "videos"

    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)

    # Status: queued → in_progress → completed | failed, deleted out of band
    status = Column(String(20), nullable=False, default="queued", index=True)
    progress = Column(Integer, nullable=False, default=0)  # 0-100

    # Generation parameters, immutable after creation
    prompt = Column(Text, nullable=False)
    model = Column(String(50), nullable=False)
    size = Column(String(20), nullable=True)
    seconds = Column(String(10), nullable=True)
    quality = Column(String(20), nullable=True)
    remixed_from_video_id = Column(String(255), nullable=True)

    # Results
    file_url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_videos_status_created_at", "status", "created_at"),
    )
