import asyncio
import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from config.constants import CLOSED_STATUSES
from config.env import SHIPROCKET_WEBHOOK_TOKEN
from database import get_db
from models.order import TrackingLookup, TrackingResponse
from utils.audit import ACTION_STATUS_SYNC_RUN, log_audit
from utils.idempotency import (
    SCOPE_SHIPROCKET_WEBHOOK,
    complete_idempotency_key,
    fail_idempotency_key,
    reserve_idempotency_key,
)
from utils.rate_limiter import carrier_rate_limiter, rate_limit
from utils.security import require_cron_secret, require_staff
from utils.shipment_sync import (
    apply_tracking_update,
    get_sync_overview,
    sync_order_statuses,
    tracking_from_webhook,
)
from utils.shiprocket import (
    extract_tracking,
    track_by_awb,
    track_by_order_id,
    track_by_shipment_id,
)
from utils.status_mapper import normalize_carrier_status, resolve_transition

router = APIRouter(tags=["Shiprocket"])
logger = logging.getLogger(__name__)

TRACKING_LOOKUPS = {
    "awb": ("shipping.awb_code", track_by_awb),
    "shipment": ("shipping.shiprocket_shipment_id", track_by_shipment_id),
    "order": ("shipping.shiprocket_order_id", track_by_order_id),
}

OPEN_ORDER_FILTER = {"status": {"$nin": CLOSED_STATUSES}}


def _id_variants(value):
    """
    Shiprocket sends numeric ids; orders may have stored them as strings.
    """
    variants = [value, str(value)]
    if isinstance(value, str) and value.isdigit():
        variants.append(int(value))
    return {"$in": variants}


# =========================================================
# CRON SYNC
# =========================================================

@router.post("/shiprocket/sync-status")
async def run_status_sync(
    _=Depends(require_cron_secret),
    db=Depends(get_db),
):
    """
    Manual / cron triggered reconciliation pass.
    """
    rate_limit(key="shiprocket:sync-status", max_requests=6, window_seconds=60)

    logger.info("STATUS_SYNC_TRIGGERED")

    try:
        results = await sync_order_statuses(db)
    except Exception:
        logger.exception("STATUS_SYNC_FAILED")
        raise HTTPException(500, "Sync failed")

    await log_audit(
        db=db,
        actor_id="cron",
        actor_role="system",
        action=ACTION_STATUS_SYNC_RUN,
        metadata=results,
    )

    return {
        "success": True,
        "message": "Status sync completed",
        "results": results,
    }


@router.get("/shiprocket/sync-status")
async def status_sync_overview(
    _=Depends(require_cron_secret),
    db=Depends(get_db),
):
    overview = await get_sync_overview(db)
    return {
        "success": True,
        "active_shipments": overview["active_shipments"],
        "last_sync": overview["last_sync"],
        "sync_endpoint": "/api/shiprocket/sync-status",
        "webhook_endpoint": "/api/shiprocket/webhook",
    }


# =========================================================
# CARRIER WEBHOOK (IDEMPOTENT)
# =========================================================

@router.post("/shiprocket/webhook")
async def shiprocket_webhook(request: Request, db=Depends(get_db)):
    """
    Shiprocket status push.

    Guarantees:
    - Token verified when SHIPROCKET_WEBHOOK_TOKEN is set
    - Same (order, status, latest scan) processed once
    - Closed orders are never reopened
    """
    if SHIPROCKET_WEBHOOK_TOKEN:
        received = request.headers.get("x-api-key") or ""
        if not hmac.compare_digest(received, SHIPROCKET_WEBHOOK_TOKEN):
            raise HTTPException(401, "Invalid webhook token")

    raw_body = await request.body()
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(400, "Invalid JSON payload")

    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid JSON payload")

    shiprocket_order_id = payload.get("order_id")
    awb = payload.get("awb") or payload.get("awb_code")
    current_status = payload.get("current_status") or payload.get("shipment_status")

    if not current_status or (not shiprocket_order_id and not awb):
        return {"ok": True, "ignored": True}

    scans = payload.get("scans") or []
    latest_scan = scans[-1].get("date") if scans and isinstance(scans[-1], dict) else None
    idempotency_key = (
        f"shiprocket:{shiprocket_order_id or awb}:"
        f"{normalize_carrier_status(current_status)}:{latest_scan or '-'}"
    )

    existing = await reserve_idempotency_key(
        db=db,
        key=idempotency_key,
        scope=SCOPE_SHIPROCKET_WEBHOOK,
    )
    if existing:
        return existing

    order = None
    if shiprocket_order_id:
        order = await db.orders.find_one({"shipping.shiprocket_order_id": _id_variants(shiprocket_order_id)})
    if not order and awb:
        order = await db.orders.find_one({"shipping.awb_code": str(awb)})

    if not order:
        logger.info("SHIPROCKET_WEBHOOK_ORDER_NOT_FOUND shiprocket_order=%s awb=%s", shiprocket_order_id, awb)
        response = {"ok": True, "order": "not_found"}
        await complete_idempotency_key(
            db=db,
            key=idempotency_key,
            scope=SCOPE_SHIPROCKET_WEBHOOK,
            response=response,
        )
        return response

    try:
        result = await apply_tracking_update(
            db,
            order,
            tracking_from_webhook(payload),
            status_filter=OPEN_ORDER_FILTER,
            source="webhook",
        )
    except Exception as e:
        logger.exception("SHIPROCKET_WEBHOOK_ERROR order=%s", order.get("_id"))
        await fail_idempotency_key(
            db=db,
            key=idempotency_key,
            scope=SCOPE_SHIPROCKET_WEBHOOK,
            error=str(e),
        )
        raise HTTPException(500, "Webhook processing failed")

    response = {
        "ok": True,
        "updated": result["applied"],
        "status": result["system_status"],
        "notified": result["notified"],
    }
    await complete_idempotency_key(
        db=db,
        key=idempotency_key,
        scope=SCOPE_SHIPROCKET_WEBHOOK,
        response=response,
    )
    return response


@router.get("/shiprocket/webhook")
async def shiprocket_webhook_alive():
    return {"success": True, "message": "Shiprocket webhook endpoint is active"}


# =========================================================
# ADMIN TRACKING
# =========================================================

@router.get("/admin/shiprocket/track/{identifier}", response_model=TrackingResponse)
async def track_shipment(
    identifier: str,
    lookup_type: TrackingLookup = Query("awb", alias="type"),
    send_email: bool = Query(False),
    staff=Depends(require_staff),
    db=Depends(get_db),
):
    """
    Live carrier lookup. With send_email=true the result is also written to
    the matching order, notifying the customer when the status warrants it.
    """
    rate_limit(key=f"shiprocket:track:{staff.get('_id')}", max_requests=20, window_seconds=60)

    field, lookup = TRACKING_LOOKUPS[lookup_type]

    await carrier_rate_limiter.acquire()
    payload = await asyncio.to_thread(lookup, identifier)

    tracking = extract_tracking(payload)
    if not tracking:
        raise HTTPException(404, "No tracking information available yet")

    transition = resolve_transition(tracking["current_status"])
    notified = False
    system_status = transition["system_status"]

    if send_email:
        order = await db.orders.find_one({field: _id_variants(identifier)})
        if not order:
            raise HTTPException(404, "No order found for this shipment")

        result = await apply_tracking_update(
            db,
            order,
            tracking,
            status_filter=OPEN_ORDER_FILTER,
            source="manual",
        )
        notified = result["notified"]
        system_status = result["system_status"]

    return TrackingResponse(
        current_status=tracking["current_status"],
        system_status=system_status,
        notification_type=transition["notification_type"],
        awb_code=tracking.get("awb_code"),
        courier_name=tracking.get("courier_name"),
        etd=tracking.get("etd"),
        track_url=tracking.get("track_url"),
        delivered_date=tracking.get("delivered_date"),
        pickup_date=tracking.get("pickup_date"),
        activities=tracking.get("activities") or [],
        notified=notified,
    )
