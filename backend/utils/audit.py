from datetime import datetime

ACTION_ORDER_CANCELLED = "ORDER_CANCELLED"
ACTION_REFUND_REQUESTED = "REFUND_REQUESTED"
ACTION_REFUND_SYNCED = "REFUND_SYNCED"
ACTION_STATUS_SYNC_RUN = "STATUS_SYNC_RUN"


async def log_audit(
    db,
    actor_id,
    actor_role: str,
    action: str,
    metadata: dict | None = None
):
    await db.audit_logs.insert_one({
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "action": action,
        "metadata": metadata or {},
        "created_at": datetime.utcnow()
    })
