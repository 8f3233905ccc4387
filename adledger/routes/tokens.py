from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from adledger.core.config import settings
from adledger.core.database import get_db
from adledger.core.security import get_current_user
from adledger.models import User
from adledger.schemas.tokens import (
    PlanCatalogResponse,
    RetentionOfferResponse,
    SubscriptionPlanItem,
    TokenBalanceResponse,
    TokenLedgerItem,
    TokenLedgerResponse,
    TopupPlanItem,
)
from adledger.services import plans as plans_service
from adledger.services.tokens import apply_retention_offer, get_token_account, list_ledger_entries

router = APIRouter()


@router.get("", response_model=TokenBalanceResponse)
async def get_my_tokens(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    account = get_token_account(db, current_user.id)
    if account is None:
        # 尚未开户的用户按免费档零余额展示
        return TokenBalanceResponse(balance=0, planCode=settings.FREE_PLAN_CODE, period="MONTHLY")

    return TokenBalanceResponse(
        balance=int(account.balance),
        planCode=account.planCode,
        period=account.period,
        subscriptionStatus=account.subscriptionStatus,
        lastRefillAt=account.lastRefillAt,
        nextRefillAt=account.nextRefillAt,
        cancellationTime=account.cancellationTime,
    )


@router.get("/ledger", response_model=TokenLedgerResponse)
async def get_my_token_ledger(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = list_ledger_entries(db, current_user.id, limit=limit)
    return TokenLedgerResponse(
        items=[
            TokenLedgerItem(
                id=row.id,
                reason=row.reason,
                delta=int(row.delta),
                balanceAfter=int(row.balanceAfter),
                referenceId=row.referenceId,
                occurredAt=row.occurredAt,
            )
            for row in rows
        ]
    )


@router.get("/plans", response_model=PlanCatalogResponse)
async def get_plan_catalog(db: Session = Depends(get_db)):
    return PlanCatalogResponse(
        subscriptions=[
            SubscriptionPlanItem(
                planCode=plan.planCode,
                displayName=plan.displayName,
                monthlyTokens=int(plan.monthlyTokens),
                isDefault=bool(plan.isDefault),
                sortOrder=plan.sortOrder,
            )
            for plan in plans_service.list_subscription_plans(db)
        ],
        topups=[
            TopupPlanItem(
                topupSku=topup.topupSku,
                displayName=topup.displayName,
                tokensAmount=int(topup.tokensAmount),
                sortOrder=topup.sortOrder,
            )
            for topup in plans_service.list_topup_plans(db)
        ],
    )


@router.post("/retention-offer", response_model=RetentionOfferResponse)
async def claim_retention_offer(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """取消订阅挽留：一次性赠送代币（优惠券部分由前端走 Stripe）"""
    result = apply_retention_offer(db, current_user.id)
    db.commit()
    account = get_token_account(db, current_user.id)
    return RetentionOfferResponse(
        applied=result.applied,
        tokensGranted=int(result.entry.delta) if result.applied else 0,
        balance=result.balance,
        retentionOfferAppliedAt=account.retentionOfferAppliedAt if account else None,
    )
