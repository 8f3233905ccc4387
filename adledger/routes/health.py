# 后端健康检查端点
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from sqlalchemy import inspect, text
from adledger.core.database import get_db
import time

router = APIRouter()

REQUIRED_TABLES = {"token_account", "token_ledger", "generation_job", "subscription_plan"}


@router.get("")
async def health_check(db: Session = Depends(get_db)):
    """
    健康检查端点 - 数据库连通性与账本相关表
    """
    start = time.time()

    db_status = "healthy"
    db_latency_ms = 0
    missing_tables: list[str] = []
    try:
        db_start = time.time()
        db.execute(text("SELECT 1"))
        db_latency_ms = round((time.time() - db_start) * 1000, 2)
        tables = set(inspect(db.connection()).get_table_names())
        missing_tables = sorted(REQUIRED_TABLES - tables)
        if missing_tables:
            db_status = "degraded"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "timestamp": time.time(),
        "checks": {
            "database": {
                "status": db_status,
                "latency_ms": db_latency_ms,
                "missingTables": missing_tables,
            }
        },
        "latency_ms": round((time.time() - start) * 1000, 2),
    }


@router.get("/ready")
async def readiness_check(db: Session = Depends(get_db)):
    """就绪检查 - 数据库可用才返回 200"""
    try:
        db.execute(text("SELECT 1"))
        return {"ready": True}
    except Exception:
        raise HTTPException(status_code=503, detail="Service not ready")


@router.get("/live")
async def liveness_check():
    return {"alive": True}
