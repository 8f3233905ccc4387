from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from adledger.core.database import get_db
from adledger.core.security import require_cron_secret
from adledger.services.billing import run_due_refills

router = APIRouter()


@router.post("/refill", dependencies=[Depends(require_cron_secret)])
async def refill_due_subscriptions(db: Session = Depends(get_db)):
    """订阅续费定时任务入口"""
    summary = run_due_refills(db)
    return {"success": True, **summary}
