import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from adledger.core.database import Base


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED})


class GenerationJob(Base):
    __tablename__ = "generation_job"

    id = Column(String(191), primary_key=True, default=lambda: str(uuid.uuid4()))
    userId = Column(String(191), ForeignKey("user.id", ondelete="CASCADE"), nullable=False)

    status = Column(String(16), nullable=False, default=JobStatus.QUEUED.value)  # 使用 String 避免 Enum 大小写问题
    prompt = Column(Text, nullable=True)
    params = Column(JSON, nullable=False, default=dict)
    formats = Column(JSON, nullable=False, default=list)

    tokensCost = Column(BigInteger, nullable=False, default=0)
    # 一次预扣只对应一个任务
    ledgerId = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        ForeignKey("token_ledger.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    errorCode = Column(String(64), nullable=True)
    errorMessage = Column(Text, nullable=True)

    createdAt = Column(DateTime, default=datetime.utcnow, nullable=False)
    startedAt = Column(DateTime, nullable=True)
    completedAt = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="generationJobs")
    ledgerEntry = relationship("TokenLedger")
    images = relationship("AdImage", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_generation_job_user_time", "userId", "createdAt"),
        Index("idx_generation_job_status", "status"),
    )

    def __repr__(self):
        return f"<GenerationJob id={self.id} userId={self.userId} status={self.status}>"
