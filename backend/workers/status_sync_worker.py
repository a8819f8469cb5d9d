import asyncio
import logging

from config.env import STATUS_SYNC_ENABLED, STATUS_SYNC_INTERVAL_SECONDS
from database import get_db
from utils.shipment_sync import sync_order_statuses

CHECK_INTERVAL_SECONDS = STATUS_SYNC_INTERVAL_SECONDS
logger = logging.getLogger(__name__)


async def status_sync_worker():
    db = get_db()

    while True:
        if STATUS_SYNC_ENABLED:
            try:
                await sync_order_statuses(db)
            except Exception:
                # Never let one bad pass kill the loop
                logger.exception("STATUS_SYNC_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
