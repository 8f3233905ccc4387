from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from adledger.core.database import Base


class LedgerReason(str, Enum):
    JOB_RESERVE = "JOB_RESERVE"
    JOB_REFUND = "JOB_REFUND"
    JOB_PARTIAL_CHARGE = "JOB_PARTIAL_CHARGE"
    SUBS_REFILL = "SUBS_REFILL"
    SUBS_ACTIVATION = "SUBS_ACTIVATION"
    INITIAL_GRANT = "INITIAL_GRANT"
    ADMIN_ADJUST = "ADMIN_ADJUST"
    RETENTION_OFFER = "RETENTION_OFFER"

    @staticmethod
    def topup(sku: str) -> str:
        # 同一 SKU 可以多次购买，幂等键是 checkout session id 而不是 SKU
        return f"TOPUP_PURCHASE:{sku}"


class TokenLedger(Base):
    """只追加的代币流水。写入后不再修改或删除。"""

    __tablename__ = "token_ledger"

    # SQLite 只有 INTEGER PRIMARY KEY 会自增
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    userId = Column(String(191), ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    occurredAt = Column(DateTime, default=datetime.utcnow, nullable=False)

    delta = Column(BigInteger, nullable=False)
    reason = Column(String(128), nullable=False)
    referenceId = Column(String(191), nullable=True)  # job id / checkout session id / 续费日期 / subscription id
    balanceAfter = Column(BigInteger, nullable=False)

    user = relationship("User", back_populates="tokenLedger")

    __table_args__ = (
        # 幂等键：referenceId 为 NULL 时不参与比较
        UniqueConstraint("reason", "referenceId", name="uq_token_ledger_reason_ref"),
        Index("idx_token_ledger_user_time", "userId", "occurredAt"),
    )

    def __repr__(self):
        return f"<TokenLedger id={self.id} userId={self.userId} reason={self.reason} delta={self.delta}>"
