import base64
import hashlib
import hmac
import json
import logging
from urllib import request, error, parse

from fastapi import HTTPException

from config.env import RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET, RAZORPAY_WEBHOOK_SECRET
from config.constants import (
    REFUND_STATUS_FAILED,
    REFUND_STATUS_PENDING,
    REFUND_STATUS_PROCESSED,
)

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"
RAZORPAY_REFUND_SPEEDS = {"normal", "optimum"}

logger = logging.getLogger(__name__)


class RazorpayRefundError(Exception):
    """
    Gateway rejected the refund. `description` is Razorpay's own message.
    """

    def __init__(self, description: str, error_payload: dict | None = None):
        super().__init__(description)
        self.description = description
        self.error_payload = error_payload or {}


def _require_razorpay_config() -> tuple[str, str]:
    if not RAZORPAY_KEY_ID or not RAZORPAY_KEY_SECRET:
        raise HTTPException(status_code=500, detail="Razorpay keys are not configured")
    return RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET


def _basic_auth_header(key_id: str, key_secret: str) -> str:
    token = f"{key_id}:{key_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


def amount_to_paise(amount_inr: float) -> int:
    return int(round(float(amount_inr) * 100))


def calculate_refund_amount(original_amount_paise: int, refund_percentage: float = 100) -> int:
    return int(round(original_amount_paise * refund_percentage / 100))


def map_refund_status(razorpay_status: str | None) -> str:
    if razorpay_status == "processed":
        return REFUND_STATUS_PROCESSED
    if razorpay_status in {"pending", "created"}:
        return REFUND_STATUS_PENDING
    return REFUND_STATUS_FAILED


def validate_refund_request(*, payment_id: str | None, amount_paise: int | None = None, speed: str | None = None) -> list[str]:
    errors = []

    if not payment_id:
        errors.append("Payment ID is required")

    if amount_paise is not None and amount_paise <= 0:
        errors.append("Refund amount must be greater than 0")

    if speed and speed not in RAZORPAY_REFUND_SPEEDS:
        errors.append('Invalid refund speed. Must be "normal" or "optimum"')

    return errors


def _razorpay_call(method: str, path: str, payload: dict | None = None) -> dict:
    key_id, key_secret = _require_razorpay_config()

    req = request.Request(
        url=f"{RAZORPAY_API_BASE}{path}",
        data=json.dumps(payload).encode("utf-8") if payload is not None else None,
        headers={
            "Content-Type": "application/json",
            "Authorization": _basic_auth_header(key_id, key_secret),
        },
        method=method,
    )

    try:
        with request.urlopen(req, timeout=15) as resp:
            body = resp.read().decode("utf-8")
            return json.loads(body)
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        try:
            error_payload = json.loads(details).get("error") or {}
        except (ValueError, AttributeError):
            error_payload = {}
        description = error_payload.get("description") or f"Razorpay request failed ({e.code})"
        raise RazorpayRefundError(description, error_payload)
    except (error.URLError, TimeoutError, ValueError):
        raise RazorpayRefundError("Razorpay is unreachable")


def create_razorpay_refund(
    *,
    payment_id: str,
    amount_paise: int | None = None,
    notes: dict | None = None,
    receipt: str | None = None,
    speed: str = "normal",
) -> dict:
    """
    Refund a captured payment. Without amount_paise Razorpay refunds in full.
    """
    errors = validate_refund_request(payment_id=payment_id, amount_paise=amount_paise, speed=speed)
    if errors:
        raise RazorpayRefundError("; ".join(errors))

    payload = {"speed": speed}
    if amount_paise:
        payload["amount"] = amount_paise
    if notes:
        payload["notes"] = notes
    if receipt:
        payload["receipt"] = receipt

    data = _razorpay_call("POST", f"/payments/{parse.quote(payment_id)}/refund", payload)

    logger.info(
        "RAZORPAY_REFUND_CREATED payment=%s refund=%s status=%s",
        payment_id,
        data.get("id"),
        data.get("status"),
    )

    return {
        "refund_id": data.get("id"),
        "amount": data.get("amount"),
        "status": map_refund_status(data.get("status")),
        "raw_status": data.get("status"),
    }


def fetch_razorpay_refund(refund_id: str) -> dict:
    data = _razorpay_call("GET", f"/refunds/{parse.quote(refund_id)}")
    return {
        "refund_id": data.get("id"),
        "amount": data.get("amount"),
        "status": map_refund_status(data.get("status")),
        "raw_status": data.get("status"),
    }


def fetch_payment_refunds(payment_id: str) -> list[dict]:
    data = _razorpay_call("GET", f"/payments/{parse.quote(payment_id)}/refunds")
    return data.get("items") or []


def verify_webhook_signature(*, raw_body: bytes, received_signature: str) -> bool:
    if not RAZORPAY_WEBHOOK_SECRET:
        raise HTTPException(status_code=500, detail="Razorpay webhook secret is not configured")
    expected = hmac.new(RAZORPAY_WEBHOOK_SECRET.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received_signature)
