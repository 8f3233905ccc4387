import hmac
from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from starlette.requests import Request
from adledger.core.config import settings
from adledger.models import User
from adledger.core.database import get_db
from sqlalchemy.orm import Session


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """创建 JWT Token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(
        to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM
    )
    return encoded_jwt


async def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
) -> User:
    """获取当前认证用户"""
    # 从 Authorization 头获取 token
    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭证",
        )

    token = auth_header.split(" ")[1]
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
        )
        user_id: str = payload.get("sub")
        if user_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="无效的认证凭证",
            )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭证",
        )

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="用户不存在",
        )
    return user


def _check_shared_secret(provided: Optional[str], expected: Optional[str], name: str) -> None:
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} 未配置",
        )
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭证",
        )


async def require_cron_secret(request: Request) -> None:
    """定时任务调用：Authorization: Bearer <CRON_SECRET>"""
    auth_header = request.headers.get("authorization") or ""
    provided = auth_header[len("Bearer "):] if auth_header.startswith("Bearer ") else None
    _check_shared_secret(provided, settings.CRON_SECRET, "CRON_SECRET")


async def require_workflow_key(request: Request) -> None:
    """AI 工作流回调：X-Workflow-Key"""
    _check_shared_secret(request.headers.get("x-workflow-key"), settings.WORKFLOW_CALLBACK_SECRET, "WORKFLOW_CALLBACK_SECRET")
