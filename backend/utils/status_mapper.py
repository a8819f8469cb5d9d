import re

from config.constants import (
    FALLBACK_SYSTEM_STATUS,
    SHIPROCKET_NOTIFICATION_MAPPING,
    SHIPROCKET_STATUS_MAPPING,
)

_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_carrier_status(carrier_status) -> str:
    """
    "Out For Delivery" / "out-for-delivery" / "OUT_FOR_DELIVERY" -> "OUT_FOR_DELIVERY"
    """
    if not carrier_status or not isinstance(carrier_status, str):
        return ""
    return _SEPARATORS.sub("_", carrier_status.strip()).upper()


def map_status_to_system(carrier_status) -> str:
    normalized = normalize_carrier_status(carrier_status)
    return SHIPROCKET_STATUS_MAPPING.get(normalized, FALLBACK_SYSTEM_STATUS)


def get_notification_type(carrier_status):
    normalized = normalize_carrier_status(carrier_status)
    return SHIPROCKET_NOTIFICATION_MAPPING.get(normalized)


def should_notify_user(carrier_status) -> bool:
    return get_notification_type(carrier_status) is not None


def resolve_transition(carrier_status, notified_types=()) -> dict:
    """
    Decide what a carrier status means for the order.

    `notified_types` holds every notification type already emailed for the
    order. A type is only sent once, so a parcel bouncing between
    OUT_FOR_DELIVERY and IN_TRANSIT after a failed attempt does not email
    the customer again.
    """
    notification_type = get_notification_type(carrier_status)

    return {
        "carrier_status": normalize_carrier_status(carrier_status),
        "system_status": map_status_to_system(carrier_status),
        "notification_type": notification_type,
        "notify": (
            notification_type is not None
            and notification_type not in (notified_types or ())
        ),
    }
