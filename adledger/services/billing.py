"""Stripe 事件 -> 账本操作。

这里只处理已经验签、解析成 dict 的事件；验签在 routes/stripe_webhook.py。
Stripe 会至少投递一次，所有分支都依赖账本操作自身的幂等键，可安全重放。
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adledger.core.config import settings
from adledger.models import SubscriptionPlan, TokenAccount, User
from adledger.services import plans as plans_service
from adledger.services import tokens as tokens_service
from adledger.services.errors import PlanNotFoundError, TokenLedgerError
from adledger.services.tokens import REFILL_ELIGIBLE_STATUSES

logger = logging.getLogger(__name__)


def _from_unix(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _metadata(obj: dict) -> dict:
    return obj.get("metadata") or {}


def _resolve_user_id(db: Session, obj: dict) -> Optional[str]:
    """metadata.user_id > client_reference_id > 已绑定的 Stripe customer"""
    candidates = [_metadata(obj).get("user_id"), obj.get("client_reference_id")]
    for candidate in candidates:
        if candidate and db.get(User, candidate) is not None:
            return candidate

    account = tokens_service.get_account_by_stripe_customer_id(db, obj.get("customer") or "")
    if account is not None:
        return account.userId
    return None


def _subscription_product_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    product = price.get("product")
    if isinstance(product, dict):
        return product.get("id")
    return product


def _subscription_price_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def _resolve_plan(db: Session, *, plan_code: Optional[str], product_id: Optional[str]) -> SubscriptionPlan:
    plan = None
    if plan_code:
        plan = plans_service.get_subscription_plan(db, plan_code)
    if plan is None and product_id:
        plan = plans_service.find_subscription_plan_by_product(db, product_id)
    if plan is None:
        raise PlanNotFoundError(plan_code or product_id)
    return plan


def _skip(reason: str, **extra: Any) -> dict:
    return {"skipped": reason, **extra}


def _handle_checkout_completed(db: Session, session: dict, *, now: datetime) -> dict:
    user_id = _resolve_user_id(db, session)
    if user_id is None:
        logger.error(f"Stripe checkout 找不到对应用户: session={session.get('id')} customer={session.get('customer')}")
        return _skip("user_not_found")

    tokens_service.provision_account(db, user_id)
    metadata = _metadata(session)

    if session.get("mode") == "payment":
        topup = None
        if metadata.get("topup_sku"):
            topup = plans_service.get_topup_plan(db, metadata["topup_sku"])
        if topup is None and metadata.get("product_id"):
            topup = plans_service.find_topup_plan_by_product(db, metadata["product_id"])
        if topup is None:
            logger.error(f"Stripe checkout 找不到充值包: session={session.get('id')} metadata={metadata}")
            return _skip("topup_not_found")

        result = tokens_service.add_topup_tokens(db, user_id, int(topup.tokensAmount), session["id"], topup.topupSku)
        return {"userId": user_id, "applied": result.applied, "balance": result.balance}

    if session.get("mode") == "subscription":
        plan = _resolve_plan(db, plan_code=metadata.get("plan_code"), product_id=metadata.get("product_id"))
        result = tokens_service.activate_subscription(
            db,
            user_id,
            plan_code=plan.planCode,
            plan_tokens=int(plan.monthlyTokens),
            stripe_customer_id=session.get("customer"),
            stripe_subscription_id=session.get("subscription"),
            stripe_product_id=plan.stripeProductId,
            subscription_status="active",
            now=now,
        )
        return {"userId": user_id, "applied": result.applied, "balance": result.balance}

    return _skip("unsupported_mode", mode=session.get("mode"))


def _subscription_period(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    recurring = (items[0].get("price") or {}).get("recurring") or {}
    interval = recurring.get("interval")
    if not interval:
        return None
    return "YEARLY" if interval == "year" else "MONTHLY"


def _handle_subscription_updated(db: Session, subscription: dict, *, now: datetime) -> dict:
    user_id = _resolve_user_id(db, subscription)
    if user_id is None:
        logger.error(f"Stripe subscription 找不到对应用户: customer={subscription.get('customer')}")
        return _skip("user_not_found")

    account = tokens_service.provision_account(db, user_id)
    status = subscription.get("status")
    period = _subscription_period(subscription)
    cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
    cancellation_time = None
    if cancel_at_period_end:
        # 周期结束前仍可使用，由续费定时任务在 cancellationTime 之后降级
        cancellation_time = _from_unix(subscription.get("current_period_end")) or account.nextRefillAt

    if status not in REFILL_ELIGIBLE_STATUSES:
        tokens_service.update_subscription_status(
            db, user_id, status, cancellation_time=cancellation_time, period=period
        )
        return {"userId": user_id, "status": status}

    plan_code = _metadata(subscription).get("plan_code")
    product_id = _subscription_product_id(subscription)
    linked = account.stripeSubscriptionId == subscription.get("id")
    plan = None
    if plan_code or product_id or not cancel_at_period_end:
        try:
            plan = _resolve_plan(db, plan_code=plan_code, product_id=product_id)
        except PlanNotFoundError:
            # 已绑定的订阅找不到档位时保留原档位，只同步状态与周期
            if not linked:
                raise
            logger.warning(f"Stripe subscription 档位无法识别，保留原档位: user={user_id} product={product_id}")

    unchanged = plan is None or (
        account.planCode == plan.planCode
        and linked
        and account.subscriptionStatus in REFILL_ELIGIBLE_STATUSES
    )
    response: dict = {"userId": user_id, "status": status}
    if unchanged:
        # 档位未变：只同步状态，不重置计费周期
        tokens_service.update_subscription_status(
            db, user_id, status, cancellation_time=cancellation_time, period=period
        )
    else:
        result = tokens_service.activate_subscription(
            db,
            user_id,
            plan_code=plan.planCode,
            plan_tokens=int(plan.monthlyTokens),
            stripe_customer_id=subscription.get("customer"),
            stripe_subscription_id=subscription.get("id"),
            stripe_product_id=product_id,
            stripe_price_id=_subscription_price_id(subscription),
            subscription_status=status,
            period=period,
            now=now,
        )
        response.update(applied=result.applied, balance=result.balance)
        if cancel_at_period_end:
            # 档位变更先生效，再记录取消时间（activate 会清空 cancellationTime）
            tokens_service.update_subscription_status(db, user_id, status, cancellation_time=cancellation_time)

    if cancel_at_period_end:
        response["cancellationTime"] = cancellation_time.isoformat() if cancellation_time else None
    return response


def _handle_subscription_deleted(db: Session, subscription: dict, *, now: datetime) -> dict:
    user_id = _resolve_user_id(db, subscription)
    if user_id is None:
        return _skip("user_not_found")
    if tokens_service.get_token_account(db, user_id) is None:
        return _skip("account_not_found")
    tokens_service.downgrade_to_free(db, user_id, now=now)
    return {"userId": user_id, "planCode": settings.FREE_PLAN_CODE}


def _handle_invoice_paid(db: Session, invoice: dict, *, now: datetime) -> dict:
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        lines = (invoice.get("lines") or {}).get("data") or []
        subscription_id = lines[0].get("subscription") if lines else None
    if not subscription_id:
        return _skip("not_subscription_invoice")

    account = tokens_service.get_account_by_stripe_customer_id(db, invoice.get("customer") or "")
    if account is None:
        logger.error(f"Stripe invoice 找不到对应账户: customer={invoice.get('customer')}")
        return _skip("account_not_found")

    # 本周期已经补发过（3 天缓冲避免时区误差）
    if account.nextRefillAt and account.nextRefillAt >= now + timedelta(days=settings.REFILL_SAFETY_DAYS):
        logger.info(f"本周期已续费，跳过: user={account.userId} nextRefillAt={account.nextRefillAt}")
        return _skip("already_refilled", userId=account.userId)

    plan = plans_service.get_subscription_plan(db, account.planCode)
    if plan is None:
        raise PlanNotFoundError(account.planCode)

    result = tokens_service.refill_subscription_tokens(
        db, account.userId, int(plan.monthlyTokens), now.date(), now=now
    )
    return {"userId": account.userId, "applied": result.applied, "balance": result.balance}


EVENT_HANDLERS: dict[str, Callable[..., dict]] = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.created": _handle_subscription_updated,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_invoice_paid,
    "invoice.paid": _handle_invoice_paid,
}


def handle_stripe_event(db: Session, event: dict, *, now: Optional[datetime] = None) -> dict:
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"忽略未处理的 Stripe 事件: {event_type}")
        return {"handled": False, "type": event_type}

    logger.info(f"处理 Stripe 事件: id={event.get('id')} type={event_type}")
    result = handler(db, obj, now=now or datetime.utcnow())
    return {"handled": True, "type": event_type, **result}


def run_due_refills(db: Session, *, now: Optional[datetime] = None) -> dict:
    """续费定时任务：逐个账户处理并提交，单个失败不影响其它账户。"""
    now = now or datetime.utcnow()
    accounts: list[TokenAccount] = tokens_service.list_accounts_due_for_refill(db, now=now)
    logger.info(f"待续费账户数: {len(accounts)}")

    summary = {"processed": 0, "refilled": 0, "downgraded": 0, "skipped": 0, "errors": 0}
    for account in accounts:
        user_id = account.userId
        summary["processed"] += 1
        try:
            if account.cancellationTime is not None and account.cancellationTime <= now:
                tokens_service.downgrade_to_free(db, user_id, now=now)
                summary["downgraded"] += 1
            elif account.subscriptionStatus not in REFILL_ELIGIBLE_STATUSES:
                logger.info(f"跳过续费: user={user_id} status={account.subscriptionStatus}")
                summary["skipped"] += 1
            else:
                plan = plans_service.get_subscription_plan(db, account.planCode)
                if plan is None:
                    raise PlanNotFoundError(account.planCode)
                tokens_service.refill_subscription_tokens(db, user_id, int(plan.monthlyTokens), now.date(), now=now)
                summary["refilled"] += 1
            db.commit()
        except (TokenLedgerError, SQLAlchemyError):
            db.rollback()
            logger.exception(f"续费失败: user={user_id}")
            summary["errors"] += 1

    logger.info(f"续费任务完成: {summary}")
    return summary
