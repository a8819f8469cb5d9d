from datetime import datetime
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24  # 24 hours
IN_PROGRESS_STALE_SECONDS = 60 * 10     # 10 minutes

SCOPE_SHIPROCKET_WEBHOOK = "shiprocket_webhook"
SCOPE_RAZORPAY_REFUND_WEBHOOK = "razorpay_refund_webhook"


def _in_progress() -> dict:
    return {
        "message": "Request already in progress",
        "status": "processing",
    }


async def reserve_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
):
    """
    Claim `key` within `scope` before doing side effects.

    Returns None when the caller owns the key and should proceed,
    the stored response when the work already completed, or a
    "processing" marker while another worker holds a fresh reservation.
    Reservations older than IN_PROGRESS_STALE_SECONDS and failed keys
    are expired so the work can be retried.
    """
    now = datetime.utcnow()
    existing = await db.idempotency_keys.find_one({"key": key, "scope": scope})

    if existing:
        if existing.get("status") == "completed":
            return existing.get("response")

        created_at = existing.get("created_at") or now
        age_seconds = (now - created_at).total_seconds()
        if existing.get("status") == "reserved" and age_seconds <= IN_PROGRESS_STALE_SECONDS:
            return _in_progress()

        await db.idempotency_keys.delete_one({"_id": existing["_id"]})

    try:
        await db.idempotency_keys.insert_one({
            "key": key,
            "scope": scope,
            "status": "reserved",
            "response": None,
            "created_at": now,
        })
    except DuplicateKeyError:
        # Concurrent request won the race
        concurrent = await db.idempotency_keys.find_one({"key": key, "scope": scope})
        if concurrent and concurrent.get("status") == "completed":
            return concurrent.get("response")
        return _in_progress()

    return None


async def complete_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    response: dict,
):
    await db.idempotency_keys.find_one_and_update(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "completed",
                "response": response,
                "completed_at": datetime.utcnow(),
            }
        },
        return_document=ReturnDocument.AFTER,
    )


async def fail_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    error: str,
):
    """
    Failed keys are released on the next reserve, so the sender's retry runs.
    """
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "failed",
                "error": error,
                "failed_at": datetime.utcnow(),
            }
        },
    )
