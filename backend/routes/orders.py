import logging

from fastapi import APIRouter, Depends, HTTPException

from config.constants import REFUND_STATUS_FAILED, REFUND_STATUS_PROCESSED, STATUS_CANCELLED
from database import get_db
from models.order import CancelOrderRequest
from utils.audit import ACTION_REFUND_REQUESTED, ACTION_REFUND_SYNCED, log_audit
from utils.cancellation import cancel_order
from utils.guards import assert_order_owner, get_order_or_404
from utils.notifications import send_refund_notification, send_refund_processed_notification
from utils.order_timeline import list_order_events
from utils.rate_limiter import rate_limit
from utils.refund_service import (
    get_order_refund_status,
    process_order_cancellation_refund,
    sync_refund_status,
)
from utils.security import get_current_user, require_staff

router = APIRouter(tags=["Orders"])
logger = logging.getLogger(__name__)


def _assert_vendor_scope(order: dict, staff: dict):
    if staff.get("role") != "vendor":
        return
    vendor_ids = {str(item.get("vendor_id")) for item in order.get("items") or []}
    if str(staff.get("_id")) not in vendor_ids:
        raise HTTPException(403, "Order does not contain your products")


# ======================================================
# CUSTOMER
# ======================================================

@router.patch("/orders/{order_id}/cancel")
async def cancel_order_by_customer(
    order_id: str,
    body: CancelOrderRequest,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    rate_limit(key=f"cancel:{user['_id']}", max_requests=5, window_seconds=60)

    order = await get_order_or_404(db, order_id)
    assert_order_owner(order, user)

    return await cancel_order(
        db,
        order=order,
        actor_role="user",
        actor_id=user["_id"],
        reason=body.reason,
    )


@router.get("/orders/{order_id}/refund-status")
async def refund_status_for_customer(
    order_id: str,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    order = await get_order_or_404(db, order_id)
    assert_order_owner(order, user)

    return await get_order_refund_status(db, order["_id"])


@router.get("/orders/{order_id}/timeline")
async def order_timeline_for_customer(
    order_id: str,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    order = await get_order_or_404(db, order_id)
    assert_order_owner(order, user)

    return {"events": await list_order_events(db, order["_id"])}


# ======================================================
# ADMIN / VENDOR
# ======================================================

@router.post("/admin/orders/{order_id}/cancel")
async def cancel_order_by_staff(
    order_id: str,
    body: CancelOrderRequest,
    staff=Depends(require_staff),
    db=Depends(get_db),
):
    order = await get_order_or_404(db, order_id)
    _assert_vendor_scope(order, staff)

    return await cancel_order(
        db,
        order=order,
        actor_role=staff["role"],
        actor_id=staff.get("_id"),
        reason=body.reason or f"Order cancelled by {staff['role']}",
    )


@router.post("/admin/orders/{order_id}/refund")
async def retry_refund(
    order_id: str,
    body: CancelOrderRequest,
    staff=Depends(require_staff),
    db=Depends(get_db),
):
    """
    Re-run the refund chain for a cancelled order whose refund failed.
    """
    rate_limit(key=f"refund:{order_id}", max_requests=1, window_seconds=60)

    order = await get_order_or_404(db, order_id)
    _assert_vendor_scope(order, staff)

    if order.get("status") != STATUS_CANCELLED:
        raise HTTPException(400, "Only cancelled orders can be refunded here")

    refund_status = (order.get("refund_info") or {}).get("refund_status")
    if refund_status not in (None, REFUND_STATUS_FAILED):
        raise HTTPException(400, f'Refund is already "{refund_status}" for this order')

    reason = body.reason or order.get("cancel_reason") or "Order cancelled"
    refund_response = await process_order_cancellation_refund(
        db,
        order_id=order["_id"],
        reason=reason,
    )

    await log_audit(
        db=db,
        actor_id=staff.get("_id"),
        actor_role=staff["role"],
        action=ACTION_REFUND_REQUESTED,
        metadata={"order_id": str(order["_id"]), "success": refund_response["success"]},
    )

    if refund_response["success"]:
        await send_refund_notification(db, order, refund_response, reason)
    else:
        raise HTTPException(400, refund_response["message"])

    return refund_response


@router.post("/admin/orders/{order_id}/refund/sync")
async def sync_refund(
    order_id: str,
    staff=Depends(require_staff),
    db=Depends(get_db),
):
    order = await get_order_or_404(db, order_id)
    _assert_vendor_scope(order, staff)

    result = await sync_refund_status(db, order["_id"])
    if not result["success"]:
        raise HTTPException(400, result["message"])

    refund_info = result.get("refund_info") or {}
    if result.get("updated") and refund_info.get("refund_status") == REFUND_STATUS_PROCESSED:
        await send_refund_processed_notification(db, order, refund_info)

    await log_audit(
        db=db,
        actor_id=staff.get("_id"),
        actor_role=staff["role"],
        action=ACTION_REFUND_SYNCED,
        metadata={"order_id": str(order["_id"]), "refund_status": refund_info.get("refund_status")},
    )

    return result
