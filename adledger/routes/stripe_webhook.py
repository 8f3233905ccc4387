import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from adledger.core.config import settings
from adledger.core.database import get_db
from adledger.services.billing import handle_stripe_event

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Stripe webhook：验签后分发到账本操作。重复投递由账本幂等键兜底。"""
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="STRIPE_WEBHOOK_SECRET 未配置")

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="缺少 Stripe-Signature")

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="无效的 payload")
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook 验签失败")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="签名校验失败")

    event = json.loads(payload)
    result = handle_stripe_event(db, event)
    db.commit()
    return {"received": True, **result}
