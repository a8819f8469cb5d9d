import asyncio
import logging
from datetime import datetime, timedelta

from fastapi import HTTPException

from config.constants import (
    ACTIVE_SHIPMENT_STATUSES,
    SHIPROCKET_STATUS_MAPPING,
)
from config.env import (
    SHIPROCKET_BATCH_DELAY_MS,
    SHIPROCKET_INTER_REQUEST_DELAY_MS,
    SHIPROCKET_MIN_RESYNC_MINUTES,
    STATUS_SYNC_BATCH_SIZE,
)
from utils.notifications import send_shipping_notification
from utils.order_timeline import EVENT_CARRIER_STATUS_SYNCED, record_order_event
from utils.rate_limiter import carrier_rate_limiter
from utils.shiprocket import (
    build_tracking_url,
    extract_tracking,
    parse_carrier_datetime,
    track_by_awb,
    track_by_order_id,
    track_by_shipment_id,
)
from utils.status_mapper import normalize_carrier_status, resolve_transition

logger = logging.getLogger(__name__)

ACTIVE_SHIPMENT_QUERY = {
    "$or": [
        {"shipping.shiprocket_order_id": {"$exists": True}},
        {"shipping.shiprocket_shipment_id": {"$exists": True}},
    ],
    "status": {"$in": ACTIVE_SHIPMENT_STATUSES},
}

# Lookup order: AWB first, then Shiprocket's own ids
TRACKING_LOOKUPS = (
    ("awb", "awb_code", track_by_awb),
    ("shipment", "shiprocket_shipment_id", track_by_shipment_id),
    ("order", "shiprocket_order_id", track_by_order_id),
)


def _chunks(items: list, size: int):
    size = max(1, size)
    for i in range(0, len(items), size):
        yield items[i:i + size]


# =========================================================
# CARRIER LOOKUP
# =========================================================

async def fetch_tracking_with_fallback(
    order: dict,
    *,
    limiter=carrier_rate_limiter,
    cache: dict | None = None,
    inter_request_delay: float = SHIPROCKET_INTER_REQUEST_DELAY_MS / 1000,
    sleep=asyncio.sleep,
) -> tuple[dict | None, str | None]:
    """
    Returns (tracking, lookup_kind). `cache` de-duplicates lookups within one
    sync run, so orders sharing a shipment cost one API call.
    """
    shipping = order.get("shipping") or {}
    cache = cache if cache is not None else {}

    for kind, field, lookup in TRACKING_LOOKUPS:
        identifier = shipping.get(field)
        if not identifier:
            continue

        cache_key = f"{kind}:{identifier}"
        if cache_key in cache:
            tracking = cache[cache_key]
        else:
            await limiter.acquire()
            try:
                payload = await asyncio.to_thread(lookup, identifier)
                tracking = extract_tracking(payload)
            except HTTPException as e:
                logger.warning(
                    "SHIPROCKET_TRACKING_LOOKUP_FAILED order=%s via=%s detail=%s",
                    order.get("_id"),
                    kind,
                    e.detail,
                )
                tracking = None

            cache[cache_key] = tracking
            if inter_request_delay:
                await sleep(inter_request_delay)

        if tracking:
            return tracking, kind

    return None, None


# =========================================================
# ORDER UPDATE
# =========================================================

async def apply_tracking_update(
    db,
    order: dict,
    tracking: dict,
    *,
    status_filter: dict | None = None,
    source: str = "sync",
) -> dict:
    """
    Write carrier tracking onto the order and notify the customer when the
    transition calls for it.

    The write is conditional on `status_filter` so a concurrent cancellation
    is not overwritten. Unknown carrier statuses only refresh the shipping
    block and leave the order status untouched.
    """
    shipping = order.get("shipping") or {}
    transition = resolve_transition(
        tracking.get("current_status"),
        shipping.get("notified_types") or [],
    )
    now = datetime.utcnow()

    carrier_status = transition["carrier_status"]
    status_is_known = carrier_status in SHIPROCKET_STATUS_MAPPING
    new_status = transition["system_status"] if status_is_known else order.get("status")

    update = {
        "shipping.shipping_status": tracking.get("current_status"),
        "shipping.last_update": now,
        "updated_at": now,
        "status": new_status,
    }
    if tracking.get("awb_code"):
        update["shipping.awb_code"] = tracking["awb_code"]
        update["shipping.tracking_url"] = tracking.get("track_url") or build_tracking_url(tracking["awb_code"])
    if tracking.get("courier_name"):
        update["shipping.courier_name"] = tracking["courier_name"]
    if tracking.get("activities"):
        update["shipping.shipping_history"] = tracking["activities"]
    if tracking.get("etd"):
        update["shipping.etd"] = tracking["etd"]
    if tracking.get("pickup_date"):
        update["shipping.pickup_date"] = tracking["pickup_date"]
    if carrier_status == "DELIVERED":
        update["shipping.delivered_date"] = tracking.get("delivered_date") or now
        update["delivered_at"] = tracking.get("delivered_date") or now

    query = {"_id": order["_id"]}
    query.update(status_filter or {"status": {"$in": ACTIVE_SHIPMENT_STATUSES}})

    res = await db.orders.update_one(query, {"$set": update})
    if res.matched_count != 1:
        # Cancelled or closed meanwhile
        return {"applied": False, "changed": False, "notified": False, "system_status": order.get("status")}

    previous_carrier_status = normalize_carrier_status(shipping.get("shipping_status"))
    changed = new_status != order.get("status") or carrier_status != previous_carrier_status

    if changed:
        try:
            await record_order_event(
                db=db,
                order_id=order["_id"],
                event=EVENT_CARRIER_STATUS_SYNCED,
                actor_role="system",
                metadata={
                    "source": source,
                    "carrier_status": tracking.get("current_status"),
                    "from_status": order.get("status"),
                    "to_status": new_status,
                    "awb_code": tracking.get("awb_code") or shipping.get("awb_code"),
                },
            )
        except Exception:
            logger.exception("TIMELINE_ERROR order=%s", order.get("_id"))

    notified = False
    if transition["notify"]:
        fresh = dict(order)
        fresh["status"] = new_status
        notified = await send_shipping_notification(db, fresh, transition["notification_type"], tracking)
        if notified:
            await db.orders.update_one(
                {"_id": order["_id"]},
                {
                    "$addToSet": {"shipping.notified_types": transition["notification_type"]},
                    "$set": {"shipping.last_notified_at": datetime.utcnow()},
                },
            )

    logger.info(
        "ORDER_TRACKING_APPLIED order=%s source=%s carrier_status=%s status=%s->%s notified=%s",
        order.get("_id"),
        source,
        carrier_status,
        order.get("status"),
        new_status,
        notified,
    )

    return {
        "applied": True,
        "changed": changed,
        "notified": notified,
        "system_status": new_status,
    }


# =========================================================
# BATCH
# =========================================================

async def sync_single_order(
    db,
    order: dict,
    *,
    limiter=carrier_rate_limiter,
    cache: dict | None = None,
    inter_request_delay: float = SHIPROCKET_INTER_REQUEST_DELAY_MS / 1000,
    sleep=asyncio.sleep,
) -> dict:
    tracking, via = await fetch_tracking_with_fallback(
        order,
        limiter=limiter,
        cache=cache,
        inter_request_delay=inter_request_delay,
        sleep=sleep,
    )

    if not tracking:
        return {"outcome": "no_tracking", "notified": False}

    result = await apply_tracking_update(db, order, tracking, source=f"sync:{via}")
    if not result["applied"]:
        return {"outcome": "skipped", "notified": False}

    return {
        "outcome": "updated" if result["changed"] else "unchanged",
        "notified": result["notified"],
        "system_status": result["system_status"],
    }


async def sync_order_statuses(
    db,
    *,
    limiter=carrier_rate_limiter,
    batch_size: int = STATUS_SYNC_BATCH_SIZE,
    inter_request_delay: float = SHIPROCKET_INTER_REQUEST_DELAY_MS / 1000,
    batch_delay: float = SHIPROCKET_BATCH_DELAY_MS / 1000,
    min_resync_minutes: int = SHIPROCKET_MIN_RESYNC_MINUTES,
    sleep=asyncio.sleep,
) -> dict:
    """
    One reconciliation pass over every order with an open shipment,
    oldest carrier update first. A failing order is logged and counted;
    it never stops the batch.
    """
    results = {
        "total": 0,
        "updated": 0,
        "unchanged": 0,
        "skipped": 0,
        "errors": 0,
        "notifications_sent": 0,
    }

    orders = await db.orders.find(ACTIVE_SHIPMENT_QUERY).sort("shipping.last_update", 1).to_list(length=None)
    results["total"] = len(orders)

    resync_cutoff = datetime.utcnow() - timedelta(minutes=min_resync_minutes)
    cache = {}

    batches = list(_chunks(orders, batch_size))
    for index, batch in enumerate(batches):
        for order in batch:
            last_update = (order.get("shipping") or {}).get("last_update")
            if min_resync_minutes and last_update and last_update > resync_cutoff:
                results["skipped"] += 1
                continue

            try:
                outcome = await sync_single_order(
                    db,
                    order,
                    limiter=limiter,
                    cache=cache,
                    inter_request_delay=inter_request_delay,
                    sleep=sleep,
                )
            except Exception:
                logger.exception("STATUS_SYNC_ERROR order=%s", order.get("_id"))
                results["errors"] += 1
                continue

            if outcome["outcome"] == "updated":
                results["updated"] += 1
            elif outcome["outcome"] == "unchanged":
                results["unchanged"] += 1
            else:
                # no scans yet, or closed meanwhile
                results["skipped"] += 1

            if outcome["notified"]:
                results["notifications_sent"] += 1

        if batch_delay and index < len(batches) - 1:
            await sleep(batch_delay)

    logger.info(
        "STATUS_SYNC_COMPLETED total=%s updated=%s unchanged=%s skipped=%s errors=%s notified=%s",
        results["total"],
        results["updated"],
        results["unchanged"],
        results["skipped"],
        results["errors"],
        results["notifications_sent"],
    )

    return results


async def get_sync_overview(db) -> dict:
    active_shipments = await db.orders.count_documents(ACTIVE_SHIPMENT_QUERY)

    last_synced = await db.orders.find_one(
        {"shipping.last_update": {"$exists": True}},
        {"shipping.last_update": 1},
        sort=[("shipping.last_update", -1)],
    )

    return {
        "active_shipments": active_shipments,
        "last_sync": (last_synced or {}).get("shipping", {}).get("last_update"),
    }


# =========================================================
# WEBHOOK
# =========================================================

def tracking_from_webhook(payload: dict) -> dict:
    activities = [
        {
            "date": scan.get("date"),
            "status": scan.get("sr-status-label") or scan.get("status"),
            "activity": scan.get("activity"),
            "location": scan.get("location"),
        }
        for scan in (payload.get("scans") or [])
        if isinstance(scan, dict)
    ]
    # Shiprocket sends scans oldest first; history is kept newest first
    activities.reverse()

    awb_code = payload.get("awb") or payload.get("awb_code")

    return {
        "current_status": payload.get("current_status") or payload.get("shipment_status"),
        "awb_code": str(awb_code) if awb_code else None,
        "courier_name": payload.get("courier_name"),
        "delivered_date": parse_carrier_datetime(payload.get("delivered_date")),
        "pickup_date": parse_carrier_datetime(payload.get("pickup_date")),
        "etd": payload.get("etd") or payload.get("edd"),
        "track_url": build_tracking_url(awb_code),
        "activities": activities,
    }
