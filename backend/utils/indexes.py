from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS

AUDIT_LOG_TTL_SECONDS = 60 * 60 * 24 * 180  # 180 days
INDEX_CONFLICT_CODES = {85, 86}  # IndexOptionsConflict, IndexKeySpecsConflict


async def _create_index_safe(collection, keys, *, name: str, **options):
    """
    Create `name` on `collection`. An older index over the same keys with
    other options or another name is dropped and replaced.
    """
    try:
        await collection.create_index(keys, name=name, **options)
        return
    except OperationFailure as e:
        if e.code not in INDEX_CONFLICT_CODES:
            raise

    existing = await collection.index_information()
    for index_name, info in existing.items():
        if index_name != "_id_" and list(info.get("key", [])) == list(keys):
            await collection.drop_index(index_name)

    await collection.create_index(keys, name=name, **options)


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db.orders,
        [("order_id", ASCENDING)],
        name="orders_order_id_unique_idx",
        unique=True,
        sparse=True,
    )
    await _create_index_safe(
        db.orders,
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_user_created_at_idx",
    )

    # Shipment sync: active orders, oldest carrier update first
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("shipping.last_update", ASCENDING)],
        name="orders_status_shipping_last_update_idx",
    )
    await _create_index_safe(
        db.orders,
        [("shipping.shiprocket_order_id", ASCENDING)],
        name="orders_shiprocket_order_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.orders,
        [("shipping.awb_code", ASCENDING)],
        name="orders_awb_code_idx",
        sparse=True,
    )

    # Refund ledger
    await _create_index_safe(
        db.orders,
        [("refund_info.refund_id", ASCENDING)],
        name="orders_refund_id_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.orders,
        [("payment_info.razorpay_payment_id", ASCENDING)],
        name="orders_razorpay_payment_idx",
        sparse=True,
    )

    # Timeline
    await _create_index_safe(
        db.order_timeline,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_timeline_order_created_idx",
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )

    # Audit
    await _create_index_safe(
        db.audit_logs,
        [("created_at", ASCENDING)],
        name="audit_logs_ttl_idx",
        expireAfterSeconds=AUDIT_LOG_TTL_SECONDS,
    )
