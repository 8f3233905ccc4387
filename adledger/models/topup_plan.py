from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String

from adledger.core.database import Base


class TopupPlan(Base):
    __tablename__ = "topup_plan"

    topupSku = Column(String(64), primary_key=True)
    displayName = Column(String(255), nullable=False)
    tokensAmount = Column(BigInteger, nullable=False)
    stripeProductId = Column(String(255), nullable=True, unique=True)
    isActive = Column(Boolean, nullable=False, default=True)
    sortOrder = Column(Integer, nullable=False, default=100)

    createdAt = Column(DateTime, default=datetime.utcnow, nullable=False)
    updatedAt = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<TopupPlan {self.topupSku} tokensAmount={self.tokensAmount}>"
