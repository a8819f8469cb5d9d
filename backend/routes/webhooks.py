from fastapi import APIRouter, Depends, Request, HTTPException
import json
import logging

from config.constants import REFUND_STATUS_PROCESSED
from database import get_db
from utils.idempotency import (
    SCOPE_RAZORPAY_REFUND_WEBHOOK,
    complete_idempotency_key,
    fail_idempotency_key,
    reserve_idempotency_key,
)
from utils.notifications import send_refund_processed_notification
from utils.razorpay import verify_webhook_signature
from utils.refund_service import apply_refund_webhook

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = logging.getLogger(__name__)

REFUND_EVENTS = {"refund.created", "refund.processed", "refund.failed"}


# =========================================================
# RAZORPAY REFUND WEBHOOK (IDEMPOTENT)
# =========================================================

@router.post("/razorpay")
async def razorpay_webhook(request: Request, db=Depends(get_db)):
    """
    Razorpay refund events.

    Guarantees:
    - Signature verified
    - Fully idempotent per (event, refund id)
    - A processed refund is never downgraded
    """
    signature = request.headers.get("X-Razorpay-Signature")
    if not signature:
        raise HTTPException(401, "Missing Razorpay signature")

    raw_body = await request.body()
    if not verify_webhook_signature(raw_body=raw_body, received_signature=signature):
        raise HTTPException(401, "Invalid Razorpay signature")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(400, "Invalid JSON payload")

    event = payload.get("event")
    refund_entity = (
        payload.get("payload", {})
        .get("refund", {})
        .get("entity", {})
    )
    refund_id = refund_entity.get("id")

    if event not in REFUND_EVENTS or not refund_id:
        return {"ok": True, "ignored": True, "event": event}

    idempotency_key = f"razorpay:{event}:{refund_id}"

    existing = await reserve_idempotency_key(
        db=db,
        key=idempotency_key,
        scope=SCOPE_RAZORPAY_REFUND_WEBHOOK,
    )
    if existing:
        return existing

    try:
        response = await apply_refund_webhook(db, event=event, refund_entity=refund_entity)
    except Exception as e:
        logger.exception("RAZORPAY_REFUND_WEBHOOK_ERROR refund=%s", refund_id)
        await fail_idempotency_key(
            db=db,
            key=idempotency_key,
            scope=SCOPE_RAZORPAY_REFUND_WEBHOOK,
            error=str(e),
        )
        raise HTTPException(500, "Webhook processing failed")

    if response.get("updated") and response.get("refund_status") == REFUND_STATUS_PROCESSED:
        order = await db.orders.find_one({"refund_info.refund_id": refund_id})
        if order:
            await send_refund_processed_notification(db, order, order.get("refund_info") or {})

    await complete_idempotency_key(
        db=db,
        key=idempotency_key,
        scope=SCOPE_RAZORPAY_REFUND_WEBHOOK,
        response=response,
    )
    return response
