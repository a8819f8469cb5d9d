import asyncio
import logging
from datetime import datetime, timedelta

from config.constants import REFUND_STATUS_PENDING, REFUND_STATUS_PROCESSED
from database import get_db
from utils.notifications import send_refund_processed_notification
from utils.refund_service import sync_refund_status

CHECK_INTERVAL_SECONDS = 60 * 60  # hourly
MAX_PENDING_DAYS = 14
logger = logging.getLogger(__name__)


async def reconcile_pending_refunds(db) -> dict:
    """
    Poll Razorpay for refunds the webhook has not settled yet.
    """
    since = datetime.utcnow() - timedelta(days=MAX_PENDING_DAYS)
    counters = {"checked": 0, "processed": 0, "errors": 0}

    cursor = db.orders.find({
        "refund_info.refund_status": REFUND_STATUS_PENDING,
        "refund_info.refund_id": {"$exists": True},
        "refund_info.refund_initiated_at": {"$gte": since},
    })

    async for order in cursor:
        counters["checked"] += 1
        try:
            result = await sync_refund_status(db, order["_id"])
            if not result["success"]:
                counters["errors"] += 1
                continue

            refund_info = result.get("refund_info") or {}
            if result.get("updated") and refund_info.get("refund_status") == REFUND_STATUS_PROCESSED:
                counters["processed"] += 1
                await send_refund_processed_notification(db, order, refund_info)

        except Exception:
            logger.exception("REFUND_RECONCILE_ERROR order=%s", order.get("_id"))
            counters["errors"] += 1

    logger.info(
        "REFUND_RECONCILE_COMPLETED checked=%s processed=%s errors=%s",
        counters["checked"],
        counters["processed"],
        counters["errors"],
    )
    return counters


async def refund_status_worker():
    db = get_db()

    while True:
        try:
            await reconcile_pending_refunds(db)
        except Exception:
            logger.exception("REFUND_STATUS_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
