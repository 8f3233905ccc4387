from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import Optional
import os
import json


class Settings(BaseSettings):
    """应用配置"""

    # API 配置
    API_TITLE: str = "Ad Ledger API"
    API_VERSION: str = "1.0.0"
    API_DESCRIPTION: str = "Token accounting and generation jobs for AI ad generation"

    # JWT 配置（只负责识别用户，登录流程不在本服务）
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 10080

    # 数据库配置
    DATABASE_URL: str

    # 代币（Tokens）配置
    # - FREE_PLAN_CODE: 免费档位编码，激活/降级时不补发代币
    # - INITIAL_GRANT_TOKENS: 开户赠送代币
    # - TOKENS_COST_*: 生成任务按版式计价
    FREE_PLAN_CODE: str = "FREE"
    INITIAL_GRANT_TOKENS: int = 50
    TOKENS_COST_SINGLE_FORMAT: int = 50
    TOKENS_COST_MULTI_FORMAT: int = 80

    # 卡在 QUEUED/RUNNING 超过该时长的任务视为失败并退款
    STALE_JOB_MINUTES: int = 30
    # 续费防重：距上次续费不足该天数的账户跳过
    REFILL_SAFETY_DAYS: int = 3
    # 取消订阅挽留：一次性赠送代币
    RETENTION_OFFER_TOKENS: int = 200

    # 外部调用方密钥（未配置时对应端点返回 503）
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    CRON_SECRET: Optional[str] = None
    WORKFLOW_CALLBACK_SECRET: Optional[str] = None

    # CORS 配置
    # 支持通过环境变量 CORS_ORIGINS 覆盖：
    # - JSON 数组：["https://a.com","https://b.com"]
    # - 逗号分隔：https://a.com,https://b.com
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        if v is None:
            return v
        if isinstance(v, str):
            raw = v.strip()
            if not raw:
                return []
            if raw.startswith("["):
                try:
                    parsed = json.loads(raw)
                    if isinstance(parsed, list):
                        return [str(item).strip() for item in parsed if str(item).strip()]
                except ValueError:
                    pass
            return [item.strip() for item in raw.split(",") if item.strip()]
        return v

    @field_validator("STRIPE_WEBHOOK_SECRET", "CRON_SECRET", "WORKFLOW_CALLBACK_SECRET", mode="before")
    @classmethod
    def _blank_secret_to_none(cls, v):
        if isinstance(v, str):
            raw = v.strip()
            return raw or None
        return v

    @staticmethod
    def _default_env_file() -> str:
        env_file = os.getenv("ENV_FILE")
        if env_file:
            return env_file
        for candidate in (".env.sqlite", ".env.sqlite.example", ".env"):
            if os.path.exists(candidate):
                return candidate
        return ".env"

    model_config = SettingsConfigDict(env_file=_default_env_file.__func__(), extra="ignore")


settings = Settings()
