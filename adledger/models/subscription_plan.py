from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String

from adledger.core.database import Base


class SubscriptionPlan(Base):
    """订阅档位：monthlyTokens 是每个周期补足到的额度"""

    __tablename__ = "subscription_plan"

    planCode = Column(String(64), primary_key=True)
    displayName = Column(String(255), nullable=False)
    monthlyTokens = Column(BigInteger, nullable=False, default=0)
    stripeProductId = Column(String(255), nullable=True, unique=True)
    isActive = Column(Boolean, nullable=False, default=True)
    isDefault = Column(Boolean, nullable=False, default=False)
    sortOrder = Column(Integer, nullable=False, default=100)
    rolloverCap = Column(BigInteger, nullable=True)

    createdAt = Column(DateTime, default=datetime.utcnow, nullable=False)
    updatedAt = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<SubscriptionPlan {self.planCode} monthlyTokens={self.monthlyTokens}>"
