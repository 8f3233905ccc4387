from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class TokenBalanceResponse(BaseModel):
    balance: int
    planCode: str
    period: str
    subscriptionStatus: Optional[str] = None
    lastRefillAt: Optional[datetime] = None
    nextRefillAt: Optional[datetime] = None
    cancellationTime: Optional[datetime] = None


class TokenLedgerItem(BaseModel):
    id: int
    reason: str
    delta: int
    balanceAfter: int
    referenceId: Optional[str] = None
    occurredAt: datetime


class TokenLedgerResponse(BaseModel):
    items: list[TokenLedgerItem]


class SubscriptionPlanItem(BaseModel):
    planCode: str
    displayName: str
    monthlyTokens: int
    isDefault: bool
    sortOrder: int


class TopupPlanItem(BaseModel):
    topupSku: str
    displayName: str
    tokensAmount: int
    sortOrder: int


class PlanCatalogResponse(BaseModel):
    subscriptions: list[SubscriptionPlanItem]
    topups: list[TopupPlanItem]


class RetentionOfferResponse(BaseModel):
    applied: bool
    tokensGranted: int
    balance: int
    retentionOfferAppliedAt: Optional[datetime] = None
