from .user import User
from .subscription_plan import SubscriptionPlan
from .topup_plan import TopupPlan
from .token_account import TokenAccount
from .token_ledger import TokenLedger, LedgerReason
from .generation_job import GenerationJob, JobStatus, TERMINAL_STATUSES
from .ad_image import AdImage

__all__ = [
    "User",
    # 代币档位
    "SubscriptionPlan",
    "TopupPlan",
    # 账户与账本
    "TokenAccount",
    "TokenLedger",
    "LedgerReason",
    # 生成任务
    "GenerationJob",
    "JobStatus",
    "TERMINAL_STATUSES",
    "AdImage",
]
