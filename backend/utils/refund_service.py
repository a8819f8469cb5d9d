import asyncio
import logging
import time
from datetime import datetime

from bson import ObjectId

from config.constants import (
    COD_PAYMENT_OPTIONS,
    DEFAULT_CANCEL_REASON,
    GATEWAY_PAYMENT_OPTIONS,
    NON_REFUNDABLE_STATUSES,
    REFUND_STATUS_FAILED,
    REFUND_STATUS_MANUAL_REVIEW,
    REFUND_STATUS_NOT_APPLICABLE,
    REFUND_STATUS_PENDING,
    REFUND_STATUS_PROCESSED,
)
from utils.order_timeline import (
    EVENT_REFUND_FAILED,
    EVENT_REFUND_INITIATED,
    EVENT_REFUND_UPDATED,
    record_order_event,
)
from utils.razorpay import (
    RazorpayRefundError,
    create_razorpay_refund,
    fetch_razorpay_refund,
    map_refund_status,
)

logger = logging.getLogger(__name__)


def _result(success: bool, message: str, *, refund_id=None, refund_amount=None, refund_status=None, error=None) -> dict:
    result = {"success": success, "message": message}
    if success or refund_status:
        result["refund_details"] = {
            "refund_id": refund_id,
            "refund_amount": refund_amount,
            "refund_status": refund_status,
        }
    if error is not None:
        result["error"] = error
    return result


def _as_object_id(value):
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def _payment_option(order: dict) -> str:
    return (order.get("payment_option") or "").lower()


# =========================================================
# ELIGIBILITY
# =========================================================

def check_refund_eligibility(order: dict) -> tuple[bool, str | None]:
    status = order.get("status")
    if status in NON_REFUNDABLE_STATUSES:
        return False, f'Orders with status "{status}" are not eligible for automatic refund'

    if order.get("payment_status") != "paid":
        return False, "Only paid orders are eligible for refund"

    payment_option = _payment_option(order)
    if payment_option in COD_PAYMENT_OPTIONS:
        return False, "Cash on Delivery orders do not require refund processing"

    if payment_option in GATEWAY_PAYMENT_OPTIONS:
        if not (order.get("payment_info") or {}).get("razorpay_payment_id"):
            return False, "Missing payment information required for refund processing"

    return True, None


# =========================================================
# PAYMENT METHOD BRANCHING
# =========================================================

def refund_amount_paise(order: dict) -> int:
    payment_info = order.get("payment_info") or {}
    if payment_info.get("payment_amount"):
        return int(payment_info["payment_amount"])
    return int(round(float(order.get("total") or 0) * 100))


async def process_razorpay_refund(order: dict, reason: str) -> dict:
    payment_id = order["payment_info"]["razorpay_payment_id"]
    order_ref = order.get("order_id") or str(order["_id"])
    now = datetime.utcnow()

    try:
        refund = await asyncio.to_thread(
            create_razorpay_refund,
            payment_id=payment_id,
            amount_paise=refund_amount_paise(order),
            notes={
                "order_id": order_ref,
                "reason": reason,
                "cancelled_at": now.isoformat(),
            },
            receipt=f"refund_{order_ref}_{int(time.time() * 1000)}",
        )
    except RazorpayRefundError as e:
        logger.error("RAZORPAY_REFUND_FAILED order=%s reason=%s", order_ref, e.description)
        return _result(
            False,
            "Failed to process refund automatically. Our team will process it manually within 2-3 business days.",
            error=e.description,
        )

    return _result(
        True,
        "Refund initiated successfully. Amount will be credited to your original payment method within 5-7 business days.",
        refund_id=refund["refund_id"],
        refund_amount=refund["amount"],
        refund_status=refund["status"],
    )


async def process_refund_by_payment_method(order: dict, reason: str) -> dict:
    payment_option = _payment_option(order)

    if payment_option in COD_PAYMENT_OPTIONS:
        return _result(
            True,
            "Cash on Delivery order cancelled successfully (no refund required)",
            refund_status=REFUND_STATUS_NOT_APPLICABLE,
        )

    if (order.get("payment_info") or {}).get("razorpay_payment_id"):
        return await process_razorpay_refund(order, reason)

    logger.warning(
        "REFUND_MANUAL_REVIEW order=%s payment_option=%s amount=%s",
        order.get("_id"),
        payment_option,
        order.get("total"),
    )
    return _result(
        True,
        "Refund request submitted for manual processing. You will be contacted within 2-3 business days.",
        refund_status=REFUND_STATUS_MANUAL_REVIEW,
    )


# =========================================================
# REFUND LEDGER
# =========================================================

async def update_order_with_refund_info(
    db,
    order_id,
    refund_result: dict,
    reason: str,
    *,
    unless_status_in: tuple = (),
) -> bool:
    """
    Write the refund outcome onto `order.refund_info`. With
    `unless_status_in`, a ledger already in one of those statuses is left
    untouched and False is returned.
    """
    details = refund_result.get("refund_details") or {}
    now = datetime.utcnow()

    update = {
        "refund_info.refund_initiated_at": now,
        "refund_info.refund_reason": reason or DEFAULT_CANCEL_REASON,
        "updated_at": now,
    }
    if details.get("refund_id"):
        update["refund_info.refund_id"] = details["refund_id"]
    if details.get("refund_amount"):
        update["refund_info.refund_amount"] = details["refund_amount"]
    if details.get("refund_status"):
        update["refund_info.refund_status"] = details["refund_status"]
        if details["refund_status"] == REFUND_STATUS_PROCESSED:
            update["refund_info.refund_processed_at"] = now

    query = {"_id": order_id}
    if unless_status_in:
        query["refund_info.refund_status"] = {"$nin": list(unless_status_in)}

    try:
        res = await db.orders.update_one(query, {"$set": update})
    except Exception:
        logger.exception("REFUND_LEDGER_WRITE_FAILED order=%s", order_id)
        return False

    if res.matched_count != 1:
        logger.warning("REFUND_LEDGER_WRITE_SKIPPED order=%s", order_id)
        return False
    return True


async def process_order_cancellation_refund(
    db,
    *,
    order_id,
    reason: str = DEFAULT_CANCEL_REASON,
    user_id=None,
) -> dict:
    """
    Refund chain for a cancelled order.

    Returns {"success", "message", "refund_details", "error"}; the refund
    having gone through at the gateway is reported as success even when the
    ledger write afterwards fails.
    """
    oid = _as_object_id(order_id)
    order = await db.orders.find_one({"_id": oid}) if oid else None
    if not order:
        return _result(False, "Order not found")

    if user_id and str(order.get("user_id")) != str(user_id):
        return _result(False, "Unauthorized: Order does not belong to user")

    eligible, ineligible_reason = check_refund_eligibility(order)
    if not eligible:
        return _result(False, ineligible_reason or "Order not eligible for refund")

    current_status = (order.get("refund_info") or {}).get("refund_status")
    if current_status == REFUND_STATUS_PROCESSED:
        return _result(False, "Refund has already been processed for this order")
    if current_status == REFUND_STATUS_PENDING:
        return _result(False, "Refund is already in progress for this order")

    refund_result = await process_refund_by_payment_method(order, reason)

    if not refund_result["success"]:
        # a refund in flight or settled at the gateway is never marked failed
        await update_order_with_refund_info(
            db,
            order["_id"],
            {"refund_details": {"refund_status": REFUND_STATUS_FAILED}},
            reason,
            unless_status_in=(REFUND_STATUS_PENDING, REFUND_STATUS_PROCESSED),
        )
        await record_order_event(
            db=db,
            order_id=order["_id"],
            event=EVENT_REFUND_FAILED,
            actor_role="system",
            metadata={"error": refund_result.get("error")},
        )
        return refund_result

    await update_order_with_refund_info(db, order["_id"], refund_result, reason)

    await record_order_event(
        db=db,
        order_id=order["_id"],
        event=EVENT_REFUND_INITIATED,
        actor_role="system",
        metadata=refund_result["refund_details"],
    )

    return refund_result


async def get_order_refund_status(db, order_id) -> dict:
    oid = _as_object_id(order_id)
    order = await db.orders.find_one(
        {"_id": oid},
        {"refund_info": 1, "payment_info": 1, "total": 1, "order_id": 1},
    ) if oid else None

    if not order:
        return {"success": False, "message": "Order not found"}

    return {
        "success": True,
        "message": "Refund information retrieved successfully",
        "refund_info": order.get("refund_info"),
    }


# =========================================================
# GATEWAY -> LEDGER
# =========================================================

async def _apply_gateway_status(db, order: dict, *, refund_id: str, status: str, amount=None, source: str) -> bool:
    now = datetime.utcnow()
    update = {
        "refund_info.refund_status": status,
        "refund_info.refund_id": refund_id,
        "updated_at": now,
    }
    if amount:
        update["refund_info.refund_amount"] = amount
    if status == REFUND_STATUS_PROCESSED:
        update["refund_info.refund_processed_at"] = now

    res = await db.orders.update_one(
        {
            "_id": order["_id"],
            # a processed refund is final
            "refund_info.refund_status": {"$ne": REFUND_STATUS_PROCESSED},
        },
        {"$set": update},
    )

    if res.modified_count == 1:
        await record_order_event(
            db=db,
            order_id=order["_id"],
            event=EVENT_REFUND_UPDATED,
            actor_role="system",
            metadata={"refund_id": refund_id, "refund_status": status, "source": source},
        )
        return True
    return False


async def sync_refund_status(db, order_id) -> dict:
    """
    Poll Razorpay for a refund still pending on the order.
    """
    oid = _as_object_id(order_id)
    order = await db.orders.find_one({"_id": oid}) if oid else None
    if not order:
        return {"success": False, "message": "Order not found"}

    refund_info = order.get("refund_info") or {}
    refund_id = refund_info.get("refund_id")
    if not refund_id:
        return {"success": False, "message": "No gateway refund recorded for this order"}

    if refund_info.get("refund_status") == REFUND_STATUS_PROCESSED:
        return {"success": True, "message": "Refund already processed", "refund_info": refund_info, "updated": False}

    try:
        refund = await asyncio.to_thread(fetch_razorpay_refund, refund_id)
    except RazorpayRefundError as e:
        return {"success": False, "message": e.description}

    updated = False
    if refund["status"] != refund_info.get("refund_status"):
        updated = await _apply_gateway_status(
            db,
            order,
            refund_id=refund_id,
            status=refund["status"],
            amount=refund.get("amount"),
            source="poll",
        )

    order = await db.orders.find_one({"_id": order["_id"]}, {"refund_info": 1})
    return {
        "success": True,
        "message": "Refund status fetched successfully",
        "refund_info": order.get("refund_info"),
        "updated": updated,
    }


async def apply_refund_webhook(db, *, event: str, refund_entity: dict) -> dict:
    refund_id = refund_entity.get("id")
    payment_id = refund_entity.get("payment_id")

    order = None
    if refund_id:
        order = await db.orders.find_one({"refund_info.refund_id": refund_id})
    if not order and payment_id:
        order = await db.orders.find_one({"payment_info.razorpay_payment_id": payment_id})

    if not order:
        return {"ok": True, "order": "not_found"}

    if event == "refund.processed":
        status = REFUND_STATUS_PROCESSED
    elif event == "refund.failed":
        status = REFUND_STATUS_FAILED
    else:
        status = map_refund_status(refund_entity.get("status"))
        if status == REFUND_STATUS_FAILED and refund_entity.get("status") is None:
            status = REFUND_STATUS_PENDING

    updated = await _apply_gateway_status(
        db,
        order,
        refund_id=refund_id,
        status=status,
        amount=refund_entity.get("amount"),
        source="webhook",
    )

    return {
        "ok": True,
        "updated": updated,
        "order_id": str(order["_id"]),
        "refund_status": status,
    }
