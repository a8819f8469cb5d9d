"""Status sync job: carrier lookups, order updates and batch accounting."""

from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from conftest import shiprocket_awb_payload
from utils import shipment_sync
from utils.rate_limiter import CarrierRateLimiter
from utils.shipment_sync import (
    apply_tracking_update,
    fetch_tracking_with_fallback,
    get_sync_overview,
    sync_order_statuses,
    tracking_from_webhook,
)


class FakeCarrier:
    """
    Answers tracking lookups from a table keyed by (kind, identifier).
    """

    def __init__(self):
        self.responses = {}
        self.calls = []

    def lookup(self, kind):
        def call(identifier):
            self.calls.append((kind, identifier))
            response = self.responses.get((kind, identifier))
            if isinstance(response, Exception):
                raise response
            return response

        return call


@pytest.fixture()
def carrier(monkeypatch):
    fake = FakeCarrier()
    monkeypatch.setattr(
        shipment_sync,
        "TRACKING_LOOKUPS",
        (
            ("awb", "awb_code", fake.lookup("awb")),
            ("shipment", "shiprocket_shipment_id", fake.lookup("shipment")),
            ("order", "shiprocket_order_id", fake.lookup("order")),
        ),
    )
    return fake


@pytest.fixture()
def limiter(no_sleep):
    return CarrierRateLimiter(30, 60, sleep=no_sleep)


@pytest.fixture()
def sync_options(limiter, no_sleep):
    return {
        "limiter": limiter,
        "inter_request_delay": 0.1,
        "batch_delay": 2,
        "min_resync_minutes": 0,
        "sleep": no_sleep,
    }


def shipped_order(**shipping):
    base = {"shiprocket_order_id": 5001, "shiprocket_shipment_id": 7001, "awb_code": "AWB123"}
    base.update(shipping)
    return base


class TestFetchTrackingWithFallback:
    async def test_awb_first(self, carrier, limiter, no_sleep):
        carrier.responses[("awb", "AWB123")] = shiprocket_awb_payload("In Transit")

        tracking, via = await fetch_tracking_with_fallback(
            {"shipping": shipped_order()}, limiter=limiter, sleep=no_sleep
        )

        assert via == "awb"
        assert tracking["current_status"] == "In Transit"
        assert carrier.calls == [("awb", "AWB123")]

    async def test_falls_back_through_shipment_and_order(self, carrier, limiter, no_sleep):
        carrier.responses[("awb", "AWB123")] = HTTPException(404, "not found")
        carrier.responses[("shipment", 7001)] = {"tracking_data": {"error": "not yet"}}
        carrier.responses[("order", 5001)] = [{"7001": shiprocket_awb_payload("Picked Up")}]

        tracking, via = await fetch_tracking_with_fallback(
            {"shipping": shipped_order()}, limiter=limiter, inter_request_delay=0.1, sleep=no_sleep
        )

        assert via == "order"
        assert tracking["current_status"] == "Picked Up"
        assert [kind for kind, _ in carrier.calls] == ["awb", "shipment", "order"]
        assert no_sleep.calls == [0.1, 0.1, 0.1]

    async def test_cache_shares_lookups(self, carrier, limiter, no_sleep):
        carrier.responses[("awb", "AWB123")] = shiprocket_awb_payload("In Transit")
        cache = {}

        for _ in range(2):
            await fetch_tracking_with_fallback(
                {"shipping": shipped_order()}, limiter=limiter, cache=cache, sleep=no_sleep
            )

        assert carrier.calls == [("awb", "AWB123")]

    async def test_nothing_to_look_up(self, carrier, limiter, no_sleep):
        assert await fetch_tracking_with_fallback({"shipping": {}}, limiter=limiter, sleep=no_sleep) == (None, None)


class TestApplyTrackingUpdate:
    async def test_known_status_moves_order_and_notifies(self, db, make_order, sent_emails):
        order = await make_order(status="ready to ship", shipping=shipped_order())
        tracking = shipment_sync.extract_tracking(shiprocket_awb_payload("Picked Up"))

        result = await apply_tracking_update(db, order, tracking)

        assert result == {"applied": True, "changed": True, "notified": True, "system_status": "shipped"}

        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["status"] == "shipped"
        assert stored["shipping"]["shipping_status"] == "Picked Up"
        assert stored["shipping"]["courier_name"] == "Delhivery"
        assert stored["shipping"]["tracking_url"] == "https://shiprocket.co/tracking/AWB123"
        assert stored["shipping"]["notified_types"] == ["shipped"]
        assert sent_emails[0]["Subject"] == f"📦 Your Order #{order['order_id']} is on its Way!"

    async def test_same_milestone_is_not_emailed_twice(self, db, make_order, sent_emails):
        order = await make_order(
            status="shipped",
            shipping=shipped_order(shipping_status="In Transit", notified_types=["shipped", "in_transit"]),
        )
        tracking = shipment_sync.extract_tracking(shiprocket_awb_payload("IN TRANSIT"))

        result = await apply_tracking_update(db, order, tracking)

        assert result["applied"] is True
        assert result["changed"] is False
        assert result["notified"] is False
        assert sent_emails == []

    async def test_failed_delivery_attempt_does_not_repeat_emails(self, db, make_order, sent_emails):
        order = await make_order(status="shipped", shipping=shipped_order())

        for carrier_status in ("In Transit", "Out For Delivery", "In Transit", "Out For Delivery", "Delivered"):
            current = await db.orders.find_one({"_id": order["_id"]})
            tracking = shipment_sync.extract_tracking(shiprocket_awb_payload(carrier_status))
            await apply_tracking_update(db, current, tracking)

        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["status"] == "delivered"
        assert stored["shipping"]["notified_types"] == ["in_transit", "out_for_delivery", "delivered"]
        assert len(sent_emails) == 3

    async def test_unknown_status_keeps_order_status(self, db, make_order, sent_emails):
        order = await make_order(status="shipped", shipping=shipped_order())
        tracking = {"current_status": "Shipment Held At Hub", "activities": []}

        result = await apply_tracking_update(db, order, tracking)

        stored = await db.orders.find_one({"_id": order["_id"]})
        assert result["system_status"] == "shipped"
        assert stored["status"] == "shipped"
        assert stored["shipping"]["shipping_status"] == "Shipment Held At Hub"

    async def test_delivered_sets_delivery_dates(self, db, make_order, sent_emails):
        order = await make_order(status="out for delivery", shipping=shipped_order())
        tracking = shipment_sync.extract_tracking(shiprocket_awb_payload("Delivered"))

        await apply_tracking_update(db, order, tracking)

        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["status"] == "delivered"
        assert stored["delivered_at"] == datetime(2024, 3, 5, 14, 20)
        assert stored["shipping"]["delivered_date"] == datetime(2024, 3, 5, 14, 20)

    async def test_cancelled_meanwhile_is_left_alone(self, db, make_order, sent_emails):
        order = await make_order(status="shipped", shipping=shipped_order())
        await db.orders.update_one({"_id": order["_id"]}, {"$set": {"status": "cancelled"}})
        tracking = shipment_sync.extract_tracking(shiprocket_awb_payload("Delivered"))

        result = await apply_tracking_update(db, order, tracking)

        assert result["applied"] is False
        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["status"] == "cancelled"
        assert sent_emails == []

    async def test_notification_failure_does_not_block_update(self, db, make_order):
        order = await make_order(status="shipped", shipping=shipped_order())
        tracking = shipment_sync.extract_tracking(shiprocket_awb_payload("Out For Delivery"))

        # SMTP is not configured in tests
        result = await apply_tracking_update(db, order, tracking)

        assert result["applied"] is True
        assert result["notified"] is False
        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["status"] == "out for delivery"
        assert "notified_types" not in stored["shipping"]


class TestSyncOrderStatuses:
    async def test_batch_counters(self, db, make_order, carrier, sync_options, sent_emails):
        moving = await make_order(status="ready to ship", shipping=shipped_order(awb_code="AWB-A"))
        await make_order(
            status="shipped",
            shipping=shipped_order(awb_code="AWB-B", shipping_status="In Transit", notified_types=["shipped", "in_transit"]),
        )
        await make_order(status="shipped", shipping=shipped_order(awb_code="AWB-C", shiprocket_shipment_id=None, shiprocket_order_id=9))
        await make_order(status="delivered", shipping=shipped_order(awb_code="AWB-D"))
        await make_order(status="confirmed")

        carrier.responses[("awb", "AWB-A")] = shiprocket_awb_payload("Picked Up", awb="AWB-A")
        carrier.responses[("awb", "AWB-B")] = shiprocket_awb_payload("In Transit", awb="AWB-B")
        carrier.responses[("awb", "AWB-C")] = HTTPException(502, "down")
        carrier.responses[("order", 9)] = None

        results = await sync_order_statuses(db, batch_size=2, **sync_options)

        assert results == {
            "total": 3,
            "updated": 1,
            "unchanged": 1,
            # AWB-C has no scans at the carrier yet
            "skipped": 1,
            "errors": 0,
            "notifications_sent": 1,
        }
        stored = await db.orders.find_one({"_id": moving["_id"]})
        assert stored["status"] == "shipped"

    async def test_batch_delay_between_batches_only(self, db, make_order, carrier, sync_options, no_sleep):
        for index in range(3):
            await make_order(status="shipped", shipping=shipped_order(awb_code=f"AWB-{index}"))

        await sync_order_statuses(db, batch_size=2, **sync_options)

        # three lookups with the inter-request delay, one gap between the two batches
        assert no_sleep.calls.count(2) == 1
        assert no_sleep.calls.count(0.1) >= 3

    async def test_recently_synced_orders_are_skipped(self, db, make_order, carrier, sync_options):
        await make_order(
            status="shipped",
            shipping=shipped_order(last_update=datetime.utcnow() - timedelta(minutes=2)),
        )
        sync_options["min_resync_minutes"] = 15

        results = await sync_order_statuses(db, **sync_options)

        assert results["skipped"] == 1
        assert carrier.calls == []

    async def test_one_failing_order_does_not_stop_the_batch(self, db, make_order, carrier, sync_options, monkeypatch):
        await make_order(status="shipped", shipping=shipped_order(awb_code="AWB-1"))
        await make_order(status="shipped", shipping=shipped_order(awb_code="AWB-2"))
        carrier.responses[("awb", "AWB-1")] = RuntimeError("unexpected")
        carrier.responses[("awb", "AWB-2")] = shiprocket_awb_payload("Out For Delivery", awb="AWB-2")

        results = await sync_order_statuses(db, **sync_options)

        assert results["errors"] == 1
        assert results["updated"] == 1


class TestOverviewAndWebhookPayload:
    async def test_overview(self, db, make_order):
        synced_at = datetime(2024, 3, 1, 12, 0)
        await make_order(status="shipped", shipping=shipped_order(last_update=synced_at))
        await make_order(status="delivered", shipping=shipped_order())

        overview = await get_sync_overview(db)

        assert overview["active_shipments"] == 1
        assert overview["last_sync"] == synced_at

    def test_tracking_from_webhook(self):
        tracking = tracking_from_webhook({
            "awb": 19041424751540,
            "current_status": "OUT FOR DELIVERY",
            "courier_name": "Delhivery Surface",
            "etd": "2024-03-06 18:00:00",
            "scans": [
                {"date": "2024-03-03 09:00:00", "activity": "Picked", "sr-status-label": "PICKED UP"},
                {"date": "2024-03-05 08:00:00", "activity": "Out", "sr-status-label": "OUT FOR DELIVERY"},
            ],
        })

        assert tracking["awb_code"] == "19041424751540"
        assert tracking["track_url"].endswith("/19041424751540")
        assert [scan["status"] for scan in tracking["activities"]] == ["OUT FOR DELIVERY", "PICKED UP"]
