import json
import logging
from datetime import datetime, timedelta
from urllib import request, error, parse

from fastapi import HTTPException

from config.env import (
    SHIPROCKET_API_BASE_URL,
    SHIPROCKET_EMAIL,
    SHIPROCKET_PASSWORD,
    SHIPROCKET_TRACKING_URL,
)

SHIPROCKET_TIMEOUT_SECONDS = 15
SHIPROCKET_TOKEN_TTL_DAYS = 9  # tokens live 10 days

ENDPOINT_AUTH = "/auth/login"
ENDPOINT_TRACK_AWB = "/courier/track/awb"
ENDPOINT_TRACK_SHIPMENT = "/courier/track/shipment"
ENDPOINT_TRACK_ORDER = "/courier/track"
ENDPOINT_CANCEL_ORDER = "/orders/cancel"

logger = logging.getLogger(__name__)

_TOKEN_CACHE = {
    "token": None,
    "expires_at": None,
}


def _require_shiprocket_config() -> tuple[str, str]:
    if not SHIPROCKET_EMAIL or not SHIPROCKET_PASSWORD:
        raise HTTPException(status_code=500, detail="Shiprocket credentials are not configured")
    return SHIPROCKET_EMAIL, SHIPROCKET_PASSWORD


def _send(method: str, path: str, payload: dict | None = None, token: str | None = None) -> dict | list:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    req = request.Request(
        url=f"{SHIPROCKET_API_BASE_URL}{path}",
        data=json.dumps(payload).encode("utf-8") if payload is not None else None,
        headers=headers,
        method=method,
    )

    logger.debug("SHIPROCKET_REQUEST %s %s", method, path)

    with request.urlopen(req, timeout=SHIPROCKET_TIMEOUT_SECONDS) as resp:
        body = resp.read().decode("utf-8")
        return json.loads(body) if body else {}


# =========================================================
# AUTH
# =========================================================

def clear_shiprocket_token():
    _TOKEN_CACHE["token"] = None
    _TOKEN_CACHE["expires_at"] = None


def get_shiprocket_token(*, force_refresh: bool = False) -> str:
    token = _TOKEN_CACHE["token"]
    expires_at = _TOKEN_CACHE["expires_at"]

    if not force_refresh and token and expires_at and datetime.utcnow() < expires_at:
        return token

    email, password = _require_shiprocket_config()

    try:
        data = _send("POST", ENDPOINT_AUTH, {"email": email, "password": password})
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise HTTPException(status_code=502, detail=f"Shiprocket login failed: {details}")
    except (error.URLError, TimeoutError, ValueError):
        raise HTTPException(status_code=502, detail="Shiprocket login failed")

    token = data.get("token") if isinstance(data, dict) else None
    if not token:
        raise HTTPException(status_code=502, detail="Shiprocket login returned no token")

    _TOKEN_CACHE["token"] = token
    _TOKEN_CACHE["expires_at"] = datetime.utcnow() + timedelta(days=SHIPROCKET_TOKEN_TTL_DAYS)
    logger.info("SHIPROCKET_AUTHENTICATED")

    return token


def _call_with_auth(method: str, path: str, payload: dict | None = None):
    try:
        return _send(method, path, payload, get_shiprocket_token())
    except error.HTTPError as e:
        if e.code != 401:
            raise

    # Token revoked before its expiry: log in again, once
    logger.warning("SHIPROCKET_TOKEN_REJECTED path=%s", path)
    clear_shiprocket_token()
    return _send(method, path, payload, get_shiprocket_token(force_refresh=True))


def _shiprocket_call(method: str, path: str, payload: dict | None = None, *, action: str):
    try:
        return _call_with_auth(method, path, payload)
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        status_code = 404 if e.code == 404 else 502
        raise HTTPException(status_code=status_code, detail=f"Shiprocket {action} failed: {details}")
    except (error.URLError, TimeoutError, ValueError):
        raise HTTPException(status_code=502, detail=f"Shiprocket {action} failed")


# =========================================================
# TRACKING
# =========================================================

def track_by_awb(awb_code: str):
    return _shiprocket_call(
        "GET",
        f"{ENDPOINT_TRACK_AWB}/{parse.quote(str(awb_code))}",
        action="AWB tracking",
    )


def track_by_shipment_id(shipment_id):
    return _shiprocket_call(
        "GET",
        f"{ENDPOINT_TRACK_SHIPMENT}/{parse.quote(str(shipment_id))}",
        action="shipment tracking",
    )


def track_by_order_id(shiprocket_order_id):
    query = parse.urlencode({"order_id": shiprocket_order_id})
    return _shiprocket_call(
        "GET",
        f"{ENDPOINT_TRACK_ORDER}?{query}",
        action="order tracking",
    )


def cancel_shiprocket_orders(shiprocket_order_ids: list) -> dict:
    if not shiprocket_order_ids:
        raise HTTPException(status_code=400, detail="No Shiprocket order ids to cancel")
    return _shiprocket_call(
        "POST",
        ENDPOINT_CANCEL_ORDER,
        {"ids": list(shiprocket_order_ids)},
        action="order cancel",
    )


def build_tracking_url(awb_code: str | None) -> str | None:
    if not awb_code:
        return None
    return f"{SHIPROCKET_TRACKING_URL}/{awb_code}"


def parse_carrier_datetime(value):
    if not value or not isinstance(value, str):
        return None

    value = value.strip()
    if value.upper() in {"NA", "N/A", "NULL"}:
        return None

    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d", "%d-%m-%Y %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # stored naive UTC like the rest of the documents
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed


def _unwrap_tracking_data(payload):
    if isinstance(payload, list):
        payload = payload[0] if payload else None

    if not isinstance(payload, dict):
        return None

    if "tracking_data" in payload:
        return payload.get("tracking_data")

    # {"<shipment_id>": {"tracking_data": {...}}}
    for value in payload.values():
        if isinstance(value, dict) and "tracking_data" in value:
            return value.get("tracking_data")

    return None


def extract_tracking(payload) -> dict | None:
    """
    Flatten the AWB / shipment / order tracking responses into one shape.
    Returns None when Shiprocket has nothing to report yet.
    """
    tracking_data = _unwrap_tracking_data(payload)
    if not isinstance(tracking_data, dict) or tracking_data.get("error"):
        return None

    shipment_track = tracking_data.get("shipment_track") or []
    track = shipment_track[0] if shipment_track and isinstance(shipment_track[0], dict) else {}

    activities = []
    for scan in tracking_data.get("shipment_track_activities") or []:
        if not isinstance(scan, dict):
            continue
        activities.append({
            "date": scan.get("date"),
            "status": scan.get("sr-status-label") or scan.get("status"),
            "activity": scan.get("activity"),
            "location": scan.get("location"),
        })

    current_status = track.get("current_status")
    if not current_status and activities:
        current_status = activities[0].get("status")

    if not current_status:
        return None

    awb_code = track.get("awb_code") or None

    return {
        "current_status": current_status,
        "awb_code": awb_code,
        "courier_name": track.get("courier_name") or None,
        "shipment_id": track.get("shipment_id"),
        "delivered_date": parse_carrier_datetime(track.get("delivered_date")),
        "pickup_date": parse_carrier_datetime(track.get("pickup_date")),
        "etd": tracking_data.get("etd") or track.get("edd"),
        "track_url": tracking_data.get("track_url") or build_tracking_url(awb_code),
        "activities": activities,
    }
