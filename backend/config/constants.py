# backend/config/constants.py

# -----------------------------
# ORDER STATUSES (INTERNAL)
# -----------------------------

STATUS_CONFIRMED = "confirmed"
STATUS_PROCESSING = "processing"
STATUS_READY_TO_SHIP = "ready to ship"
STATUS_SHIPPED = "shipped"
STATUS_OUT_FOR_DELIVERY = "out for delivery"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"
STATUS_RETURNED = "returned"

# Orders the status sync job still has to follow
ACTIVE_SHIPMENT_STATUSES = [
    STATUS_READY_TO_SHIP,
    STATUS_SHIPPED,
    STATUS_OUT_FOR_DELIVERY,
]

# -----------------------------
# SHIPROCKET -> INTERNAL
# -----------------------------

SHIPROCKET_STATUS_MAPPING = {
    "NEW": STATUS_READY_TO_SHIP,
    "PICKUP_SCHEDULED": STATUS_READY_TO_SHIP,
    "PICKUP_GENERATED": STATUS_READY_TO_SHIP,
    "PICKED_UP": STATUS_SHIPPED,
    "IN_TRANSIT": STATUS_SHIPPED,
    "OUT_FOR_DELIVERY": STATUS_OUT_FOR_DELIVERY,
    "DELIVERED": STATUS_DELIVERED,
    "CANCELLED": STATUS_CANCELLED,
    "LOST": STATUS_CANCELLED,
    "DAMAGED": STATUS_RETURNED,
    "RETURNED": STATUS_RETURNED,
    "RTO_INITIATED": STATUS_RETURNED,
    "RTO_DELIVERED": STATUS_RETURNED,
}

FALLBACK_SYSTEM_STATUS = STATUS_PROCESSING

# Carrier statuses that trigger a customer email
SHIPROCKET_NOTIFICATION_MAPPING = {
    "PICKED_UP": "shipped",
    "IN_TRANSIT": "in_transit",
    "OUT_FOR_DELIVERY": "out_for_delivery",
    "DELIVERED": "delivered",
}

# -----------------------------
# CANCELLATION
# -----------------------------

USER_NON_CANCELLABLE_STATUSES = {
    STATUS_READY_TO_SHIP: (
        "Orders that are ready to ship cannot be cancelled. The vendor has already "
        "prepared your order for shipping. Please contact support if you need assistance."
    ),
    STATUS_SHIPPED: (
        "Orders that have been shipped cannot be cancelled. You can return the order after delivery."
    ),
    STATUS_OUT_FOR_DELIVERY: (
        "Orders that are out for delivery cannot be cancelled. You can return the order after delivery."
    ),
    STATUS_DELIVERED: (
        "Orders that have been delivered cannot be cancelled. You can return the order instead."
    ),
    STATUS_CANCELLED: "This order is already cancelled.",
    STATUS_RETURNED: "This order has already been returned.",
}

STAFF_NON_CANCELLABLE_STATUSES = {
    STATUS_DELIVERED,
    STATUS_CANCELLED,
    STATUS_RETURNED,
}

DEFAULT_CANCEL_REASON = "Order cancelled by customer"

# -----------------------------
# REFUNDS
# -----------------------------

NON_REFUNDABLE_STATUSES = {
    STATUS_READY_TO_SHIP,
    STATUS_DELIVERED,
    STATUS_RETURNED,
}

COD_PAYMENT_OPTIONS = {"cash-on-delivery", "cod"}

GATEWAY_PAYMENT_OPTIONS = {
    "razorpay",
    "card",
    "upi",
    "netbanking",
    "wallet",
}

REFUND_STATUS_PROCESSED = "processed"
REFUND_STATUS_PENDING = "pending"
REFUND_STATUS_FAILED = "failed"
REFUND_STATUS_NOT_APPLICABLE = "not_applicable"
REFUND_STATUS_MANUAL_REVIEW = "manual_review"

REFUND_EXPECTED_DAYS = 7

# Orders the carrier can no longer move
CLOSED_STATUSES = [
    STATUS_DELIVERED,
    STATUS_CANCELLED,
    STATUS_RETURNED,
]
