import asyncio
import logging
from datetime import datetime

from fastapi import HTTPException

from config.constants import (
    COD_PAYMENT_OPTIONS,
    DEFAULT_CANCEL_REASON,
    STAFF_NON_CANCELLABLE_STATUSES,
    STATUS_CANCELLED,
    USER_NON_CANCELLABLE_STATUSES,
)
from utils.audit import ACTION_ORDER_CANCELLED, log_audit
from utils.notifications import send_cancellation_notification, send_refund_notification
from utils.order_timeline import (
    EVENT_ORDER_CANCELLED,
    EVENT_SHIPMENT_CANCELLED,
    record_order_event,
)
from utils.rate_limiter import carrier_rate_limiter
from utils.refund_service import process_order_cancellation_refund
from utils.shiprocket import cancel_shiprocket_orders

logger = logging.getLogger(__name__)


def assert_cancellable(order: dict, actor_role: str):
    status = order.get("status")

    if actor_role == "user":
        if status in USER_NON_CANCELLABLE_STATUSES:
            raise HTTPException(400, USER_NON_CANCELLABLE_STATUSES[status])
        return

    if status in STAFF_NON_CANCELLABLE_STATUSES:
        raise HTTPException(400, f'Orders with status "{status}" cannot be cancelled')


async def _cancel_carrier_shipment(db, order: dict) -> bool:
    shiprocket_order_id = (order.get("shipping") or {}).get("shiprocket_order_id")
    if not shiprocket_order_id:
        return False

    try:
        await carrier_rate_limiter.acquire()
        await asyncio.to_thread(cancel_shiprocket_orders, [shiprocket_order_id])
    except HTTPException as e:
        logger.error(
            "SHIPROCKET_CANCEL_FAILED order=%s shiprocket_order=%s detail=%s",
            order["_id"],
            shiprocket_order_id,
            e.detail,
        )
        return False

    await record_order_event(
        db=db,
        order_id=order["_id"],
        event=EVENT_SHIPMENT_CANCELLED,
        actor_role="system",
        metadata={"shiprocket_order_id": shiprocket_order_id},
    )
    return True


async def cancel_order(
    db,
    *,
    order: dict,
    actor_role: str,
    actor_id=None,
    reason: str | None = None,
) -> dict:
    """
    Cancel an order and run the refund chain.

    The cancellation stands even if the carrier cancel, the refund or the
    emails fail; those outcomes are reported in the response.
    """
    reason = reason or DEFAULT_CANCEL_REASON
    assert_cancellable(order, actor_role)

    now = datetime.utcnow()
    update_res = await db.orders.update_one(
        {"_id": order["_id"], "status": order.get("status")},
        {
            "$set": {
                "status": STATUS_CANCELLED,
                "cancel_reason": reason,
                "cancelled_by": actor_role,
                "cancelled_at": now,
                "updated_at": now,
            }
        },
    )
    if update_res.modified_count != 1:
        raise HTTPException(409, "Order status changed, please retry")

    await record_order_event(
        db=db,
        order_id=order["_id"],
        event=EVENT_ORDER_CANCELLED,
        actor_role=actor_role,
        actor_id=actor_id,
        metadata={"reason": reason, "previous_status": order.get("status")},
    )

    shipment_cancelled = await _cancel_carrier_shipment(db, order)

    refund_response = None
    try:
        refund_response = await process_order_cancellation_refund(
            db,
            order_id=order["_id"],
            reason=reason,
            user_id=actor_id if actor_role == "user" else None,
        )
        if not refund_response["success"]:
            logger.warning("REFUND_NOT_PROCESSED order=%s message=%s", order["_id"], refund_response["message"])
    except Exception:
        logger.exception("REFUND_PROCESSING_ERROR order=%s", order["_id"])

    if refund_response and (order.get("payment_option") or "").lower() not in COD_PAYMENT_OPTIONS:
        await send_refund_notification(db, order, refund_response, reason)

    await send_cancellation_notification(db, order, reason)

    await log_audit(
        db=db,
        actor_id=actor_id,
        actor_role=actor_role,
        action=ACTION_ORDER_CANCELLED,
        metadata={
            "order_id": str(order["_id"]),
            "reason": reason,
            "refund_success": bool(refund_response and refund_response["success"]),
        },
    )

    message = "Order cancelled successfully"
    if refund_response and refund_response["success"]:
        message += f". {refund_response['message']}"
    elif refund_response:
        message += ". Refund will be processed manually if applicable."

    return {
        "success": True,
        "message": message,
        "data": {
            "order_id": str(order["_id"]),
            "status": STATUS_CANCELLED,
            "shipment_cancelled": shipment_cancelled,
            "refund_info": (refund_response or {}).get("refund_details"),
        },
    }
