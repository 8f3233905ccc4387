"""代币账本领域异常。

服务层只抛这些异常，不直接返回 HTTP；main.py 中的 exception handler
负责把它们映射成状态码和 error_code。
"""

from typing import Any, Optional


class TokenLedgerError(Exception):
    error_code = "TOKEN_LEDGER_ERROR"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, "error_code": self.error_code, **self.details}


class InsufficientTokensError(TokenLedgerError):
    error_code = "INSUFFICIENT_TOKENS"
    http_status = 402

    def __init__(self, *, required: int, available: int):
        super().__init__("Insufficient tokens", tokens_required=required, tokens_available=available)
        self.required = required
        self.available = available


class AccountNotFoundError(TokenLedgerError):
    error_code = "ACCOUNT_NOT_FOUND"
    http_status = 500

    def __init__(self, user_id: str):
        super().__init__(f"Token account not found for user {user_id}")
        self.user_id = user_id


class PlanNotFoundError(TokenLedgerError):
    error_code = "PLAN_NOT_FOUND"
    http_status = 404

    def __init__(self, plan_code: Optional[str]):
        super().__init__(f"Subscription plan not found: {plan_code}")
        self.plan_code = plan_code


class JobNotFoundError(TokenLedgerError):
    error_code = "JOB_NOT_FOUND"
    http_status = 404

    def __init__(self, job_id: str):
        super().__init__("Job not found", job_id=job_id)
        self.job_id = job_id


class InvalidJobTransitionError(TokenLedgerError):
    error_code = "INVALID_JOB_TRANSITION"
    http_status = 409

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job is already {current}", job_id=job_id, status=current, requested_status=target)
        self.current = current
        self.target = target


class LedgerIntegrityError(TokenLedgerError):
    error_code = "LEDGER_INTEGRITY"
    http_status = 500


class NoActiveSubscriptionError(TokenLedgerError):
    error_code = "NO_ACTIVE_SUBSCRIPTION"
    http_status = 400

    def __init__(self, user_id: str):
        super().__init__("No active subscription")
        self.user_id = user_id
