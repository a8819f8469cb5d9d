from datetime import datetime
from bson import ObjectId

# Event names written by the shipment / refund flows
EVENT_CARRIER_STATUS_SYNCED = "CARRIER_STATUS_SYNCED"
EVENT_CUSTOMER_NOTIFIED = "CUSTOMER_NOTIFIED"
EVENT_ORDER_CANCELLED = "ORDER_CANCELLED"
EVENT_SHIPMENT_CANCELLED = "SHIPMENT_CANCELLED"
EVENT_REFUND_INITIATED = "REFUND_INITIATED"
EVENT_REFUND_FAILED = "REFUND_FAILED"
EVENT_REFUND_UPDATED = "REFUND_STATUS_UPDATED"


async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    metadata: dict | None = None,
):
    """
    Single source of truth for order timeline events.
    """

    doc = {
        "order_id": ObjectId(order_id),
        "event": event,
        "actor_role": actor_role,
        "actor_id": str(actor_id) if actor_id else None,
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    }

    await db.order_timeline.insert_one(doc)


async def list_order_events(db, order_id, limit: int = 100) -> list[dict]:
    cursor = db.order_timeline.find(
        {"order_id": ObjectId(order_id)},
        {"_id": 0, "order_id": 0},
    ).sort("created_at", 1)

    return await cursor.to_list(length=limit)
