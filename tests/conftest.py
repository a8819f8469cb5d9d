"""Shared fixtures for the orders backend tests."""

import os

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/orders_test")
os.environ["ENV"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp_webhook_secret"
os.environ["SHIPROCKET_EMAIL"] = "ops@example.com"
os.environ["SHIPROCKET_PASSWORD"] = "shiprocket-password"
os.environ["SHIPROCKET_WEBHOOK_TOKEN"] = "sr-webhook-token"
os.environ.pop("SMTP_HOST", None)

import io
import json
from datetime import datetime
from urllib import error

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from utils import rate_limiter, shiprocket
from utils import notifications


@pytest.fixture(autouse=True)
def reset_process_state():
    rate_limiter._RATE_LIMIT_STORE.clear()
    rate_limiter.carrier_rate_limiter.reset()
    shiprocket.clear_shiprocket_token()
    yield
    rate_limiter._RATE_LIMIT_STORE.clear()
    shiprocket.clear_shiprocket_token()


@pytest.fixture()
def db():
    return AsyncMongoMockClient()["orders_test"]


@pytest.fixture()
def sent_emails(monkeypatch):
    """
    Enable SMTP and capture every message instead of delivering it.
    """
    outbox = []
    monkeypatch.setattr(notifications, "SMTP_HOST", "smtp.test")
    monkeypatch.setattr(notifications, "_deliver_smtp", outbox.append)
    return outbox


class NoSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture()
def no_sleep():
    return NoSleep()


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def json_response(payload, status: int = 200):
    """
    Build what urlopen returns (or raises) for a JSON body.
    """
    body = json.dumps(payload).encode("utf-8")
    if status >= 400:
        return error.HTTPError("https://api.test", status, "error", {}, io.BytesIO(body))
    return FakeResponse(body)


class FakeUrlopen:
    """
    Replays queued responses and records the requests made.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, req, timeout=None):
        self.requests.append(req)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture()
def customer():
    return {"_id": ObjectId(), "name": "Asha Patel", "email": "asha@example.com", "role": "user"}


@pytest.fixture()
def make_order(db, customer):
    async def factory(**overrides):
        await db.users.update_one({"_id": customer["_id"]}, {"$set": customer}, upsert=True)

        order = {
            "_id": ObjectId(),
            "order_id": f"ORD-{ObjectId()}",
            "user_id": customer["_id"],
            "status": "confirmed",
            "items": [
                {"product_name": "Kaju Katli", "quantity": 2, "price": 450, "vendor_id": ObjectId()},
            ],
            "subtotal": 900,
            "delivery_charges": 50,
            "total": 950,
            "payment_option": "razorpay",
            "payment_status": "paid",
            "payment_info": {"razorpay_payment_id": "pay_123", "payment_amount": 95000},
            "shipping": {},
            "created_at": datetime.utcnow(),
        }
        for key, value in overrides.items():
            order[key] = value

        await db.orders.insert_one(order)
        return order

    return factory


def shiprocket_awb_payload(current_status: str, *, awb: str = "AWB123", courier: str = "Delhivery", activities=None):
    return {
        "tracking_data": {
            "track_status": 1,
            "shipment_track": [
                {
                    "awb_code": awb,
                    "courier_name": courier,
                    "current_status": current_status,
                    "delivered_date": "2024-03-05 14:20:00" if current_status.upper() == "DELIVERED" else "",
                    "pickup_date": "2024-03-02 10:00:00",
                    "edd": "2024-03-06",
                }
            ],
            "shipment_track_activities": activities if activities is not None else [
                {
                    "date": "2024-03-03 09:00:00",
                    "status": "X-IT",
                    "activity": "In Transit - Ahmedabad Hub",
                    "location": "Ahmedabad",
                    "sr-status-label": current_status,
                }
            ],
            "track_url": f"https://shiprocket.co/tracking/{awb}",
            "etd": "2024-03-06 18:00:00",
        }
    }
