import asyncio
import html
import logging
import smtplib
from datetime import datetime, timedelta
from email.message import EmailMessage

from config.env import (
    APP_BASE_URL,
    COMPANY_NAME,
    EMAIL_FROM,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USE_TLS,
    SMTP_USER,
)
from config.constants import (
    COD_PAYMENT_OPTIONS,
    REFUND_EXPECTED_DAYS,
    REFUND_STATUS_MANUAL_REVIEW,
    REFUND_STATUS_PROCESSED,
)
from utils.order_timeline import EVENT_CUSTOMER_NOTIFIED, record_order_event

SMTP_TIMEOUT_SECONDS = 20

logger = logging.getLogger(__name__)

# =========================================================
# TEMPLATES
# =========================================================

SHIPPING_TEMPLATES = {
    "shipped": {
        "subject": "📦 Your Order #{order_id} is on its Way!",
        "heading": "Your order has been shipped",
        "body": "Good news! {courier} has picked up your package and it is on its way to you.",
    },
    "in_transit": {
        "subject": "🚛 Order #{order_id} is in Transit",
        "heading": "Your order is in transit",
        "body": "Your package is moving through the {courier} network.",
    },
    "out_for_delivery": {
        "subject": "🚚 Order #{order_id} is Out for Delivery!",
        "heading": "Out for delivery",
        "body": "Your package is out for delivery today. Please keep your phone reachable.",
    },
    "delivered": {
        "subject": "🎉 Your Order #{order_id} Has Been Delivered!",
        "heading": "Delivered",
        "body": "Your package has been delivered. We hope you enjoy your purchase!",
    },
}

REFUND_TEMPLATES = {
    "initiated": {
        "subject": "Refund Initiated - {order_id}",
        "heading": "💰 Refund Initiated",
        "body": (
            "Your refund has been initiated and will be processed within 5-7 business days. "
            "The amount will be credited back to your original payment method."
        ),
    },
    "processed": {
        "subject": "Refund Processed - ₹{amount} Credited - {order_id}",
        "heading": "✅ Refund Processed",
        "body": "Your refund of ₹{amount} has been processed to your original payment method.",
    },
    "failed": {
        "subject": "Refund Processing Issue - {order_id} - Manual Review Required",
        "heading": "Refund Processing Issue",
        "body": (
            "We could not process your refund automatically. Our team will process it "
            "manually within 2-3 business days."
        ),
    },
    "under_review": {
        "subject": "Refund Under Review - {order_id}",
        "heading": "Refund Under Review",
        "body": (
            "Your refund request has been submitted for manual processing. "
            "You will be contacted within 2-3 business days."
        ),
    },
}


def _e(value) -> str:
    return html.escape("" if value is None else str(value))


def _format_inr(amount) -> str:
    try:
        return f"{float(amount):,.2f}".rstrip("0").rstrip(".")
    except (TypeError, ValueError):
        return "0"


def _wrap(title: str, rows: list[tuple[str, str]], paragraphs: list[str], cta_url: str | None = None) -> str:
    detail_rows = "".join(
        f"<tr><td style=\"padding-bottom: 8px;\"><strong>{_e(label)}:</strong> {_e(value)}</td></tr>"
        for label, value in rows
        if value not in (None, "")
    )
    body = "".join(f"<p style=\"font-size: 15px; color: #444;\">{_e(p)}</p>" for p in paragraphs)
    cta = (
        f"<p style=\"text-align: center;\"><a href=\"{_e(cta_url)}\">View your order</a></p>"
        if cta_url else ""
    )

    return (
        "<html><body style=\"font-family: Arial, sans-serif;\">"
        f"<h1 style=\"text-align: center;\">{_e(title)}</h1>"
        f"{body}"
        f"<table style=\"width: 100%; background-color: #f8f9fa; padding: 15px;\">{detail_rows}</table>"
        f"{cta}"
        f"<p style=\"font-size: 12px; color: #888; text-align: center;\">© {datetime.utcnow().year} {_e(COMPANY_NAME)}</p>"
        "</body></html>"
    )


def _order_ref(order: dict) -> str:
    return str(order.get("order_id") or order.get("_id"))


def build_shipping_email(notification_type: str, *, order: dict, user: dict, tracking: dict) -> dict | None:
    template = SHIPPING_TEMPLATES.get(notification_type)
    if not template:
        return None

    order_ref = _order_ref(order)
    courier = tracking.get("courier_name") or "our courier partner"

    rows = [
        ("Order ID", order_ref),
        ("Courier", tracking.get("courier_name")),
        ("Tracking number", tracking.get("awb_code")),
        ("Current status", tracking.get("current_status")),
        ("Estimated delivery", tracking.get("etd")),
        ("Order total", f"₹{_format_inr(order.get('total'))}"),
    ]
    paragraphs = [f"Hi {user.get('name') or 'there'},", template["body"].format(courier=courier)]

    latest_scan = (tracking.get("activities") or [None])[0]
    if latest_scan:
        paragraphs.append(
            f"Latest update: {latest_scan.get('activity') or latest_scan.get('status')}"
            f" ({latest_scan.get('location') or 'in transit'})"
        )

    return {
        "to": user.get("email"),
        "subject": template["subject"].format(order_id=order_ref),
        "html": _wrap(
            template["heading"],
            rows,
            paragraphs,
            tracking.get("track_url") or f"{APP_BASE_URL}/order-summary/{order_ref}",
        ),
    }


def refund_email_kind(refund_response: dict) -> str:
    if not refund_response.get("success"):
        return "failed"

    refund_status = (refund_response.get("refund_details") or {}).get("refund_status")
    if refund_status == REFUND_STATUS_PROCESSED:
        return "processed"
    if refund_status == REFUND_STATUS_MANUAL_REVIEW:
        return "under_review"
    return "initiated"


def build_refund_email(kind: str, *, order: dict, user: dict, refund_details: dict | None, reason: str) -> dict:
    template = REFUND_TEMPLATES[kind]
    order_ref = _order_ref(order)
    refund_details = refund_details or {}

    refund_amount = order.get("total")
    if refund_details.get("refund_amount"):
        refund_amount = refund_details["refund_amount"] / 100

    expected = (datetime.utcnow() + timedelta(days=REFUND_EXPECTED_DAYS)).strftime("%d %b %Y")
    amount = _format_inr(refund_amount)

    rows = [
        ("Order ID", order_ref),
        ("Original amount", f"₹{_format_inr(order.get('total'))}"),
        ("Refund amount", f"₹{amount}"),
        ("Refund ID", refund_details.get("refund_id")),
        ("Payment method", order.get("payment_option")),
        ("Refund reason", reason),
    ]
    if kind in {"initiated", "under_review"}:
        rows.append(("Expected completion", expected))

    return {
        "to": user.get("email"),
        "subject": template["subject"].format(order_id=order_ref, amount=amount),
        "html": _wrap(
            template["heading"],
            rows,
            [f"Hi {user.get('name') or 'there'},", template["body"].format(amount=amount)],
            f"{APP_BASE_URL}/profile",
        ),
    }


def build_cancellation_email(*, order: dict, user: dict, reason: str) -> dict:
    order_ref = _order_ref(order)
    payment_option = (order.get("payment_option") or "").lower()

    if payment_option in COD_PAYMENT_OPTIONS:
        refund_note = "Since this was a Cash on Delivery order, no refund is required."
    else:
        refund_note = "Any amount paid will be refunded to your original payment method."

    rows = [
        ("Order ID", order_ref),
        ("Order total", f"₹{_format_inr(order.get('total'))}"),
        ("Payment method", order.get("payment_option")),
        ("Reason", reason),
    ]

    return {
        "to": user.get("email"),
        "subject": f"Order Cancelled - {order_ref}",
        "html": _wrap(
            "Order Cancelled",
            rows,
            [f"Hi {user.get('name') or 'there'},", "Your order has been cancelled.", refund_note],
            f"{APP_BASE_URL}/profile",
        ),
    }


# =========================================================
# TRANSPORT
# =========================================================

def _deliver_smtp(message: EmailMessage):
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT_SECONDS) as smtp:
        if SMTP_USE_TLS:
            smtp.starttls()
        if SMTP_USER and SMTP_PASSWORD:
            smtp.login(SMTP_USER, SMTP_PASSWORD)
        smtp.send_message(message)


async def send_email(payload: dict) -> bool:
    """
    Send one composed payload. Never raises: notification problems must not
    break order processing.
    """
    if not payload or not payload.get("to"):
        logger.warning("EMAIL_SKIPPED_NO_RECIPIENT subject=%s", (payload or {}).get("subject"))
        return False

    if not SMTP_HOST:
        logger.info("EMAIL_NOT_CONFIGURED to=%s subject=%s", payload["to"], payload["subject"])
        return False

    message = EmailMessage()
    message["From"] = f"{COMPANY_NAME} <{EMAIL_FROM}>"
    message["To"] = payload["to"]
    message["Subject"] = payload["subject"]
    message.set_content("Please view this email in an HTML capable client.")
    message.add_alternative(payload["html"], subtype="html")

    try:
        await asyncio.to_thread(_deliver_smtp, message)
    except (smtplib.SMTPException, OSError):
        logger.exception("EMAIL_SEND_FAILED to=%s subject=%s", payload["to"], payload["subject"])
        return False

    logger.info("EMAIL_SENT to=%s subject=%s", payload["to"], payload["subject"])
    return True


# =========================================================
# DISPATCH
# =========================================================

async def _load_customer(db, order: dict) -> dict | None:
    user_id = order.get("user_id")
    if not user_id:
        return None
    try:
        return await db.users.find_one({"_id": user_id}, {"name": 1, "email": 1})
    except Exception:
        logger.exception("NOTIFY_CUSTOMER_LOOKUP_FAILED order=%s", order.get("_id"))
        return None


async def _dispatch(db, order: dict, payload: dict | None, kind: str) -> bool:
    if not payload:
        return False

    sent = await send_email(payload)
    if sent:
        try:
            await record_order_event(
                db=db,
                order_id=order["_id"],
                event=EVENT_CUSTOMER_NOTIFIED,
                actor_role="system",
                metadata={"kind": kind, "subject": payload["subject"]},
            )
        except Exception:
            logger.exception("TIMELINE_ERROR order=%s", order.get("_id"))
    return sent


async def send_shipping_notification(db, order: dict, notification_type: str, tracking: dict) -> bool:
    user = await _load_customer(db, order)
    if not user:
        logger.warning("NOTIFY_NO_CUSTOMER order=%s", order.get("_id"))
        return False

    payload = build_shipping_email(notification_type, order=order, user=user, tracking=tracking)
    return await _dispatch(db, order, payload, f"shipping:{notification_type}")


async def send_refund_notification(db, order: dict, refund_response: dict, reason: str) -> bool:
    user = await _load_customer(db, order)
    if not user:
        return False

    kind = refund_email_kind(refund_response)
    payload = build_refund_email(
        kind,
        order=order,
        user=user,
        refund_details=refund_response.get("refund_details"),
        reason=reason,
    )
    return await _dispatch(db, order, payload, f"refund:{kind}")


async def send_refund_processed_notification(db, order: dict, refund_details: dict) -> bool:
    user = await _load_customer(db, order)
    if not user:
        return False

    payload = build_refund_email(
        "processed",
        order=order,
        user=user,
        refund_details=refund_details,
        reason=(order.get("refund_info") or {}).get("refund_reason") or "Order cancelled",
    )
    return await _dispatch(db, order, payload, "refund:processed")


async def send_cancellation_notification(db, order: dict, reason: str) -> bool:
    user = await _load_customer(db, order)
    if not user:
        return False

    payload = build_cancellation_email(order=order, user=user, reason=reason)
    return await _dispatch(db, order, payload, "cancellation")
