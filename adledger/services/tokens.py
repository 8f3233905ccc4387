"""代币账户与账本操作。

余额的每一次变化都走 apply_token_delta 同一套流程：
锁账户行 -> 计算新余额 -> 在 SAVEPOINT 中插入账本（唯一约束冲突即视为重复事件）
-> 检查余额不能为负 -> 回写账户余额。
调用方负责最终 commit（见 transaction）。
"""

import calendar
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adledger.core.config import settings
from adledger.models import LedgerReason, TokenAccount, TokenLedger, User
from adledger.services.errors import (
    AccountNotFoundError,
    InsufficientTokensError,
    LedgerIntegrityError,
    NoActiveSubscriptionError,
)

logger = logging.getLogger(__name__)

REFILL_ELIGIBLE_STATUSES = ("active", "trialing")
SUBSCRIPTION_PERIODS = ("MONTHLY", "YEARLY")
RETENTION_REFERENCE_PREFIX = "retention_70_"


@dataclass(frozen=True)
class LedgerResult:
    # applied=False 表示幂等命中（entry 为之前写入的那一行）或无需变动（entry 为 None）
    entry: Optional[TokenLedger]
    balance: int
    applied: bool


@contextmanager
def transaction(db: Session):
    # SQLAlchemy 2.x 默认 autobegin：路由里只要 query 过就已经在事务中。
    # 这里用 begin_nested 兼容"事务中再写账本"的场景，外层事务由调用方提交。
    if db.in_transaction():
        with db.begin_nested():
            yield
    else:
        with db.begin():
            yield


def _lock_account_row(db: Session, user_id: str) -> Optional[TokenAccount]:
    stmt = (
        select(TokenAccount)
        .where(TokenAccount.userId == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def _find_entry(db: Session, reason: str, reference_id: str) -> Optional[TokenLedger]:
    return db.execute(
        select(TokenLedger).where(TokenLedger.reason == reason, TokenLedger.referenceId == reference_id)
    ).scalar_one_or_none()


def _add_one_month(moment: datetime) -> datetime:
    # 按自然月推进，月末日期落到下个月的最后一天（1/31 -> 2/28）
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _start_billing_cycle(account: TokenAccount, now: datetime) -> None:
    account.lastRefillAt = now
    account.nextRefillAt = _add_one_month(now)


def _append_entry(
    db: Session,
    account: TokenAccount,
    *,
    delta: int,
    reason: str,
    reference_id: Optional[str] = None,
) -> LedgerResult:
    """在已加锁的账户上记一笔账。必须在 transaction 内调用。"""
    delta = int(delta)
    current_balance = int(account.balance or 0)
    next_balance = current_balance + delta

    entry = TokenLedger(
        userId=account.userId,
        delta=delta,
        reason=reason,
        referenceId=reference_id,
        balanceAfter=next_balance,
        occurredAt=datetime.utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(entry)
            db.flush()
    except IntegrityError:
        if reference_id is None:
            raise
        existing = _find_entry(db, reason, reference_id)
        if existing is None:
            raise
        if existing.userId != account.userId:
            raise LedgerIntegrityError(
                f"Reference {reason}/{reference_id} already belongs to another account",
                reason=reason,
                reference_id=reference_id,
            )
        logger.info(f"重复事件已忽略: user={account.userId} reason={reason} ref={reference_id}")
        return LedgerResult(entry=existing, balance=current_balance, applied=False)

    if next_balance < 0:
        logger.warning(f"代币不足: user={account.userId} balance={current_balance} delta={delta} reason={reason}")
        # 抛出后 transaction 回滚，刚插入的账本行一并撤销
        raise InsufficientTokensError(required=-delta, available=current_balance)

    account.balance = next_balance
    db.flush()
    logger.info(
        f"账本记账: user={account.userId} reason={reason} ref={reference_id} delta={delta} balance={next_balance}"
    )
    return LedgerResult(entry=entry, balance=next_balance, applied=True)


def apply_token_delta(
    db: Session,
    user_id: str,
    *,
    delta: int,
    reason: str,
    reference_id: Optional[str] = None,
) -> LedgerResult:
    """所有余额变动的唯一入口。"""
    with transaction(db):
        account = _lock_account_row(db, user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return _append_entry(db, account, delta=delta, reason=reason, reference_id=reference_id)


def _require_non_negative(name: str, value: int) -> int:
    value = int(value)
    if value < 0:
        raise ValueError(f"{name} must not be negative")
    return value


# ---------------------------------------------------------------------------
# 写操作
# ---------------------------------------------------------------------------


def provision_account(
    db: Session,
    user_id: str,
    *,
    plan_code: Optional[str] = None,
    initial_grant: Optional[int] = None,
) -> TokenAccount:
    """确保用户有代币账户；首次创建时发放 INITIAL_GRANT。重复调用无副作用。"""
    grant = settings.INITIAL_GRANT_TOKENS if initial_grant is None else initial_grant
    with transaction(db):
        account = _lock_account_row(db, user_id)
        if account is not None:
            return account

        account = TokenAccount(
            userId=user_id,
            balance=0,
            planCode=plan_code or settings.FREE_PLAN_CODE,
            period="MONTHLY",
        )
        try:
            with db.begin_nested():
                db.add(account)
                db.flush()
        except IntegrityError:
            # 并发开户：另一请求已经建好
            account = _lock_account_row(db, user_id)
            if account is None:
                raise
            return account

        logger.info(f"开户: user={user_id} plan={account.planCode}")
        if grant > 0:
            _append_entry(db, account, delta=grant, reason=LedgerReason.INITIAL_GRANT.value, reference_id=user_id)
        return account


def reserve_tokens(db: Session, user_id: str, tokens_cost: int, job_id: str) -> LedgerResult:
    tokens_cost = _require_non_negative("tokens_cost", tokens_cost)
    return apply_token_delta(
        db,
        user_id,
        delta=-tokens_cost,
        reason=LedgerReason.JOB_RESERVE.value,
        reference_id=job_id,
    )


def refund_tokens(db: Session, user_id: str, tokens_cost: int, job_id: str) -> LedgerResult:
    """任务失败/取消退款。按 job_id 幂等，重复回调只退一次。"""
    tokens_cost = _require_non_negative("tokens_cost", tokens_cost)
    return apply_token_delta(
        db,
        user_id,
        delta=tokens_cost,
        reason=LedgerReason.JOB_REFUND.value,
        reference_id=job_id,
    )


def charge_partial(db: Session, user_id: str, tokens: int, job_id: str) -> LedgerResult:
    """失败任务仍产出了部分图片时，补扣其中一部分退款。按 job_id 幂等。"""
    tokens = _require_non_negative("tokens", tokens)
    return apply_token_delta(
        db,
        user_id,
        delta=-tokens,
        reason=LedgerReason.JOB_PARTIAL_CHARGE.value,
        reference_id=job_id,
    )


def add_topup_tokens(
    db: Session,
    user_id: str,
    tokens_amount: int,
    checkout_session_id: str,
    topup_sku: str,
) -> LedgerResult:
    tokens_amount = _require_non_negative("tokens_amount", tokens_amount)
    return apply_token_delta(
        db,
        user_id,
        delta=tokens_amount,
        reason=LedgerReason.topup(topup_sku),
        reference_id=checkout_session_id,
    )


def admin_adjust(db: Session, user_id: str, delta: int, *, reference_id: Optional[str] = None) -> LedgerResult:
    return apply_token_delta(
        db,
        user_id,
        delta=int(delta),
        reason=LedgerReason.ADMIN_ADJUST.value,
        reference_id=reference_id,
    )


def _refill_reference(user_id: str, refill_date) -> str:
    if isinstance(refill_date, (date, datetime)):
        refill_date = refill_date.strftime("%Y-%m-%d")
    # 续费日期对所有用户都一样，拼上 user_id 才能全局唯一
    return f"{refill_date}:{user_id}"


def refill_subscription_tokens(
    db: Session,
    user_id: str,
    tokens_per_period: int,
    refill_date=None,
    *,
    now: Optional[datetime] = None,
) -> LedgerResult:
    """订阅续费：把余额补足到 tokens_per_period，而不是在原余额上累加。

    余额已经不低于档位额度时不写账本、不动余额；
    lastRefillAt / nextRefillAt 无论是否补发都会推进到下一个周期。
    """
    tokens_per_period = _require_non_negative("tokens_per_period", tokens_per_period)
    now = now or datetime.utcnow()
    reference_id = _refill_reference(user_id, refill_date or now.date())

    with transaction(db):
        account = _lock_account_row(db, user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        current_balance = int(account.balance or 0)
        result = LedgerResult(entry=None, balance=current_balance, applied=False)
        if current_balance < tokens_per_period:
            result = _append_entry(
                db,
                account,
                delta=tokens_per_period - current_balance,
                reason=LedgerReason.SUBS_REFILL.value,
                reference_id=reference_id,
            )
        else:
            logger.info(f"余额已满足档位额度，跳过补发: user={user_id} balance={current_balance}")

        _start_billing_cycle(account, now)
        db.flush()
        return result


def activate_subscription(
    db: Session,
    user_id: str,
    *,
    plan_code: str,
    plan_tokens: int,
    stripe_customer_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    stripe_product_id: Optional[str] = None,
    stripe_price_id: Optional[str] = None,
    subscription_status: Optional[str] = "active",
    period: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LedgerResult:
    """订阅开通/升级：先无条件更新订阅信息，再把余额补足到新档位额度（免费档不补）。"""
    plan_tokens = _require_non_negative("plan_tokens", plan_tokens)
    if period is not None and period not in SUBSCRIPTION_PERIODS:
        raise ValueError(f"Unknown subscription period: {period}")
    now = now or datetime.utcnow()

    with transaction(db):
        account = _lock_account_row(db, user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        account.planCode = plan_code
        if stripe_customer_id is not None:
            account.stripeCustomerId = stripe_customer_id
        if stripe_subscription_id is not None:
            account.stripeSubscriptionId = stripe_subscription_id
        if stripe_product_id is not None:
            account.stripeProductId = stripe_product_id
        if stripe_price_id is not None:
            account.stripePriceId = stripe_price_id
        if period is not None:
            account.period = period
        account.subscriptionStatus = subscription_status
        account.cancellationTime = None
        db.flush()

        current_balance = int(account.balance or 0)
        result = LedgerResult(entry=None, balance=current_balance, applied=False)
        if plan_code != settings.FREE_PLAN_CODE and current_balance < plan_tokens:
            # 同一订阅升级到不同档位时各补一次
            reference_id = f"{stripe_subscription_id or user_id}:{plan_code}"
            result = _append_entry(
                db,
                account,
                delta=plan_tokens - current_balance,
                reason=LedgerReason.SUBS_ACTIVATION.value,
                reference_id=reference_id,
            )

        _start_billing_cycle(account, now)
        db.flush()
        logger.info(f"订阅已激活: user={user_id} plan={plan_code} status={subscription_status}")
        return result


def downgrade_to_free(db: Session, user_id: str, *, now: Optional[datetime] = None) -> TokenAccount:
    """降级到免费档。已有代币不回收。"""
    now = now or datetime.utcnow()
    with transaction(db):
        account = _lock_account_row(db, user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        account.planCode = settings.FREE_PLAN_CODE
        account.stripeSubscriptionId = None
        account.stripeProductId = None
        account.stripePriceId = None
        account.period = "MONTHLY"
        account.subscriptionStatus = "canceled"
        account.cancellationTime = None
        _start_billing_cycle(account, now)
        db.flush()
        logger.info(f"已降级到免费档: user={user_id}")
        return account


def update_subscription_status(
    db: Session,
    user_id: str,
    subscription_status: Optional[str],
    *,
    cancellation_time: Optional[datetime] = None,
    period: Optional[str] = None,
) -> TokenAccount:
    if period is not None and period not in SUBSCRIPTION_PERIODS:
        raise ValueError(f"Unknown subscription period: {period}")
    with transaction(db):
        account = _lock_account_row(db, user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        account.subscriptionStatus = subscription_status
        account.cancellationTime = cancellation_time
        if period is not None:
            account.period = period
        db.flush()
        return account


def apply_retention_offer(db: Session, user_id: str, *, now: Optional[datetime] = None) -> LedgerResult:
    """取消订阅挽留：赠送 RETENTION_OFFER_TOKENS，每个用户只发一次。

    只对绑定了 Stripe 订阅的账户开放；重复请求返回第一次的账本行。
    """
    now = now or datetime.utcnow()
    reference_id = f"{RETENTION_REFERENCE_PREFIX}{user_id}"

    with transaction(db):
        account = _lock_account_row(db, user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        if account.retentionOfferAppliedAt is not None:
            existing = _find_entry(db, LedgerReason.RETENTION_OFFER.value, reference_id)
            return LedgerResult(entry=existing, balance=int(account.balance or 0), applied=False)
        if not account.stripeSubscriptionId:
            raise NoActiveSubscriptionError(user_id)

        result = _append_entry(
            db,
            account,
            delta=settings.RETENTION_OFFER_TOKENS,
            reason=LedgerReason.RETENTION_OFFER.value,
            reference_id=reference_id,
        )
        account.retentionOfferAppliedAt = now
        db.flush()
        logger.info(f"挽留优惠已发放: user={user_id} applied={result.applied}")
        return result


# ---------------------------------------------------------------------------
# 读操作
# ---------------------------------------------------------------------------


def get_token_account(db: Session, user_id: str) -> Optional[TokenAccount]:
    return db.query(TokenAccount).filter(TokenAccount.userId == user_id).first()


def get_token_balance(db: Session, user_id: str) -> int:
    account = get_token_account(db, user_id)
    if not account:
        return 0
    return int(account.balance or 0)


def has_enough_tokens(db: Session, user_id: str, required_tokens: int) -> bool:
    return get_token_balance(db, user_id) >= int(required_tokens)


def get_user_with_token_account(db: Session, user_id: str) -> Optional[tuple[User, Optional[TokenAccount]]]:
    row = (
        db.query(User, TokenAccount)
        .outerjoin(TokenAccount, TokenAccount.userId == User.id)
        .filter(User.id == user_id)
        .first()
    )
    if row is None:
        return None
    return row[0], row[1]


def get_account_by_stripe_customer_id(db: Session, stripe_customer_id: str) -> Optional[TokenAccount]:
    if not stripe_customer_id:
        return None
    return db.query(TokenAccount).filter(TokenAccount.stripeCustomerId == stripe_customer_id).first()


def get_ledger_entry_by_reference(db: Session, reference_id: str, reason: str) -> Optional[TokenLedger]:
    return (
        db.query(TokenLedger)
        .filter(TokenLedger.referenceId == reference_id, TokenLedger.reason == reason)
        .order_by(TokenLedger.id.desc())
        .first()
    )


def list_ledger_entries(db: Session, user_id: str, *, limit: int = 50) -> list[TokenLedger]:
    return (
        db.query(TokenLedger)
        .filter(TokenLedger.userId == user_id)
        .order_by(TokenLedger.id.desc())
        .limit(limit)
        .all()
    )


def list_accounts_due_for_refill(db: Session, *, now: Optional[datetime] = None) -> list[TokenAccount]:
    """到期待续费的付费账户；最近 REFILL_SAFETY_DAYS 天内续过的跳过。"""
    now = now or datetime.utcnow()
    safety_cutoff = now - timedelta(days=settings.REFILL_SAFETY_DAYS)
    accounts: list[TokenAccount] = (
        db.query(TokenAccount)
        .filter(
            TokenAccount.nextRefillAt.isnot(None),
            TokenAccount.nextRefillAt <= now,
            TokenAccount.planCode != settings.FREE_PLAN_CODE,
            TokenAccount.stripeSubscriptionId.isnot(None),
        )
        .order_by(TokenAccount.nextRefillAt.asc())
        .all()
    )
    return [a for a in accounts if a.lastRefillAt is None or a.lastRefillAt < safety_cutoff]


def verify_user_ledger(db: Session, user_id: str) -> None:
    """按 id 顺序重放账本：每行 balanceAfter 必须等于累计和，最终累计和等于账户余额。"""
    account = get_token_account(db, user_id)
    entries: list[TokenLedger] = (
        db.query(TokenLedger).filter(TokenLedger.userId == user_id).order_by(TokenLedger.id.asc()).all()
    )

    running = 0
    for entry in entries:
        running += int(entry.delta)
        if running < 0:
            raise LedgerIntegrityError(
                "Ledger replay went negative",
                user_id=user_id,
                ledger_id=entry.id,
            )
        if int(entry.balanceAfter) != running:
            raise LedgerIntegrityError(
                "Ledger balanceAfter does not match running total",
                user_id=user_id,
                ledger_id=entry.id,
                expected=running,
                actual=int(entry.balanceAfter),
            )

    balance = int(account.balance or 0) if account else 0
    if balance != running:
        raise LedgerIntegrityError(
            "Account balance does not match ledger total",
            user_id=user_id,
            expected=running,
            actual=balance,
        )


def find_ledger_mismatches(db: Session) -> list[tuple[str, LedgerIntegrityError]]:
    """对所有账户做账本对账，返回不一致的 (user_id, 错误)。"""
    mismatches: list[tuple[str, LedgerIntegrityError]] = []
    for (user_id,) in db.query(TokenAccount.userId).order_by(TokenAccount.userId).all():
        try:
            verify_user_ledger(db, user_id)
        except LedgerIntegrityError as exc:
            logger.error(f"账本对账失败: user={user_id} {exc.message} {exc.details}")
            mismatches.append((user_id, exc))
    return mismatches
