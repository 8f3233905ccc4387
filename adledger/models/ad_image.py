import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from adledger.core.database import Base


class AdImage(Base):
    """生成任务产出的广告图"""
    __tablename__ = "ad_image"

    id = Column(String(191), primary_key=True, default=lambda: str(uuid.uuid4()))
    jobId = Column(String(191), ForeignKey("generation_job.id", ondelete="CASCADE"), nullable=False, index=True)
    userId = Column(String(191), ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    imageUrl = Column(String(1024), nullable=False)
    format = Column(String(16), nullable=True)  # 1:1 / 9:16
    createdAt = Column(DateTime, default=datetime.utcnow, nullable=False)

    job = relationship("GenerationJob", back_populates="images")
