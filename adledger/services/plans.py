import logging
import os
from typing import Optional

from sqlalchemy.orm import Session

from adledger.models import SubscriptionPlan, TopupPlan

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_PLANS = [
    {"planCode": "FREE", "displayName": "Free", "monthlyTokens": 50, "productEnv": None, "isDefault": True, "sortOrder": 1},
    {"planCode": "STARTER", "displayName": "Starter", "monthlyTokens": 300, "productEnv": "STRIPE_STARTER_PRODUCT_ID", "isDefault": False, "sortOrder": 2},
    {"planCode": "PRO", "displayName": "Pro", "monthlyTokens": 1500, "productEnv": "STRIPE_GROWTH_PRODUCT_ID", "isDefault": False, "sortOrder": 3},
    {"planCode": "TEAM", "displayName": "Team", "monthlyTokens": 5000, "productEnv": "STRIPE_TEAM_PRODUCT_ID", "isDefault": False, "sortOrder": 4},
]

DEFAULT_TOPUP_PLANS = [
    {"topupSku": "TOPUP_100", "displayName": "100 Tokens", "tokensAmount": 100, "productEnv": "STRIPE_TOPUP_100_PRODUCT_ID", "sortOrder": 1},
    {"topupSku": "TOPUP_500", "displayName": "500 Tokens", "tokensAmount": 500, "productEnv": "STRIPE_TOPUP_500_PRODUCT_ID", "sortOrder": 2},
    {"topupSku": "TOPUP_2000", "displayName": "2000 Tokens", "tokensAmount": 2000, "productEnv": "STRIPE_TOPUP_2000_PRODUCT_ID", "sortOrder": 3},
]


def _product_id(env_name: Optional[str]) -> Optional[str]:
    if not env_name:
        return None
    value = (os.getenv(env_name) or "").strip()
    return value or None


def seed_plans(db: Session) -> None:
    """写入/更新默认订阅档位与充值包（按主键 upsert）"""
    for item in DEFAULT_SUBSCRIPTION_PLANS:
        plan = db.get(SubscriptionPlan, item["planCode"]) or SubscriptionPlan(planCode=item["planCode"])
        plan.displayName = item["displayName"]
        plan.monthlyTokens = item["monthlyTokens"]
        plan.stripeProductId = _product_id(item["productEnv"])
        plan.isActive = True
        plan.isDefault = item["isDefault"]
        plan.sortOrder = item["sortOrder"]
        db.add(plan)

    for item in DEFAULT_TOPUP_PLANS:
        topup = db.get(TopupPlan, item["topupSku"]) or TopupPlan(topupSku=item["topupSku"])
        topup.displayName = item["displayName"]
        topup.tokensAmount = item["tokensAmount"]
        topup.stripeProductId = _product_id(item["productEnv"])
        topup.isActive = True
        topup.sortOrder = item["sortOrder"]
        db.add(topup)

    db.commit()
    logger.info("订阅档位与充值包已同步")


def list_subscription_plans(db: Session, *, active_only: bool = True) -> list[SubscriptionPlan]:
    query = db.query(SubscriptionPlan)
    if active_only:
        query = query.filter(SubscriptionPlan.isActive.is_(True))
    return query.order_by(SubscriptionPlan.sortOrder.asc()).all()


def list_topup_plans(db: Session, *, active_only: bool = True) -> list[TopupPlan]:
    query = db.query(TopupPlan)
    if active_only:
        query = query.filter(TopupPlan.isActive.is_(True))
    return query.order_by(TopupPlan.sortOrder.asc()).all()


def get_subscription_plan(db: Session, plan_code: str) -> Optional[SubscriptionPlan]:
    return db.get(SubscriptionPlan, plan_code)


def get_topup_plan(db: Session, topup_sku: str) -> Optional[TopupPlan]:
    return db.get(TopupPlan, topup_sku)


def find_subscription_plan_by_product(db: Session, stripe_product_id: str) -> Optional[SubscriptionPlan]:
    if not stripe_product_id:
        return None
    return db.query(SubscriptionPlan).filter(SubscriptionPlan.stripeProductId == stripe_product_id).first()


def find_topup_plan_by_product(db: Session, stripe_product_id: str) -> Optional[TopupPlan]:
    if not stripe_product_id:
        return None
    return db.query(TopupPlan).filter(TopupPlan.stripeProductId == stripe_product_id).first()
