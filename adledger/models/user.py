from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from adledger.core.database import Base
import uuid
from datetime import datetime


class User(Base):
    __tablename__ = "user"

    id = Column(String(191), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    displayName = Column(String(255), nullable=True)
    createdAt = Column(DateTime, default=datetime.utcnow, nullable=False)
    updatedAt = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # 关系
    tokenAccount = relationship("TokenAccount", back_populates="user", cascade="all, delete-orphan", uselist=False)
    tokenLedger = relationship("TokenLedger", back_populates="user", cascade="all, delete-orphan")
    generationJobs = relationship("GenerationJob", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User {self.email}>"
