from sqlalchemy import Column, String, Integer, DateTime, func
from sora_studio.database import Base


class UserQuota(Base):
    __tablename__ = "user_quotas"

    user_id = Column(String(255), primary_key=True)
    videos_created = Column(Integer, nullable=False, default=0)
    videos_limit = Column(Integer, nullable=False, default=100)
    reset_at = Column(DateTime(timezone=True), nullable=False)  # first instant of next month (UTC)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
