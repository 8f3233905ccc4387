from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship

from adledger.core.database import Base


class TokenAccount(Base):
    """每个用户一行：当前可用代币 + 订阅信息。

    balance 只能通过 adledger.services.tokens 中的操作修改，
    任何时候都等于该用户全部账本 delta 之和。
    """

    __tablename__ = "token_account"

    userId = Column(
        String(191),
        ForeignKey("user.id", ondelete="CASCADE"),
        primary_key=True,
    )
    balance = Column(BigInteger, nullable=False, default=0)
    planCode = Column(
        String(64),
        ForeignKey("subscription_plan.planCode", onupdate="CASCADE", ondelete="RESTRICT"),
        nullable=False,
        default="FREE",
    )
    period = Column(String(16), nullable=False, default="MONTHLY")  # MONTHLY / YEARLY，取自 Stripe price.recurring.interval
    lastRefillAt = Column(DateTime, nullable=True)
    nextRefillAt = Column(DateTime, nullable=True)

    # Stripe 关联字段，只由订阅生命周期操作修改
    stripeCustomerId = Column(String(255), nullable=True)
    stripeSubscriptionId = Column(String(255), nullable=True)
    stripeProductId = Column(String(255), nullable=True)
    stripePriceId = Column(String(255), nullable=True)
    subscriptionStatus = Column(String(32), nullable=True)
    # 已取消但本计费周期内仍可使用
    cancellationTime = Column(DateTime, nullable=True)
    # 挽留优惠每个用户只发一次
    retentionOfferAppliedAt = Column(DateTime, nullable=True)

    createdAt = Column(DateTime, default=datetime.utcnow, nullable=False)
    updatedAt = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="tokenAccount")
    plan = relationship("SubscriptionPlan")
    ledger = relationship(
        "TokenLedger",
        primaryjoin="TokenAccount.userId == TokenLedger.userId",
        foreign_keys="TokenLedger.userId",
        order_by="TokenLedger.id",
        viewonly=True,
    )

    __table_args__ = (
        # NULL 不参与唯一性比较，未绑定 Stripe 的账户可以有多个
        UniqueConstraint("stripeCustomerId", name="uq_token_account_stripe_customer"),
        UniqueConstraint("stripeSubscriptionId", name="uq_token_account_stripe_subscription"),
    )

    def __repr__(self):
        return f"<TokenAccount userId={self.userId} balance={self.balance} plan={self.planCode}>"
