"""Refund chain for cancelled orders and gateway reconciliation."""

from datetime import datetime

import pytest

from utils import refund_service
from utils.razorpay import RazorpayRefundError
from utils.refund_service import (
    apply_refund_webhook,
    check_refund_eligibility,
    get_order_refund_status,
    process_order_cancellation_refund,
    process_refund_by_payment_method,
    refund_amount_paise,
    sync_refund_status,
    update_order_with_refund_info,
)
from workers.refund_status_worker import reconcile_pending_refunds


@pytest.fixture()
def gateway(monkeypatch):
    """
    Stand-in for the Razorpay refund endpoints.
    """

    class Gateway:
        def __init__(self):
            self.created = []
            self.fail_with = None
            self.refund_status = "processed"

        def create(self, **kwargs):
            self.created.append(kwargs)
            if self.fail_with:
                raise RazorpayRefundError(self.fail_with)
            return {"refund_id": "rfnd_1", "amount": kwargs["amount_paise"], "status": "pending", "raw_status": "created"}

        def fetch(self, refund_id):
            return {"refund_id": refund_id, "amount": 95000, "status": self.refund_status, "raw_status": self.refund_status}

    fake = Gateway()
    monkeypatch.setattr(refund_service, "create_razorpay_refund", fake.create)
    monkeypatch.setattr(refund_service, "fetch_razorpay_refund", fake.fetch)
    return fake


async def _events(db, order):
    return [e["event"] async for e in db.order_timeline.find({"order_id": order["_id"]})]


class TestEligibility:
    @pytest.mark.parametrize("status", ["ready to ship", "delivered", "returned"])
    def test_non_refundable_statuses(self, status):
        eligible, reason = check_refund_eligibility({"status": status, "payment_status": "paid"})

        assert eligible is False
        assert status in reason

    def test_unpaid(self):
        eligible, reason = check_refund_eligibility({"status": "cancelled", "payment_status": "pending"})

        assert (eligible, reason) == (False, "Only paid orders are eligible for refund")

    def test_cod(self):
        eligible, reason = check_refund_eligibility(
            {"status": "cancelled", "payment_status": "paid", "payment_option": "Cash-on-Delivery"}
        )

        assert eligible is False
        assert "Cash on Delivery" in reason

    def test_gateway_order_without_payment_id(self):
        eligible, reason = check_refund_eligibility(
            {"status": "cancelled", "payment_status": "paid", "payment_option": "upi", "payment_info": {}}
        )

        assert eligible is False
        assert "Missing payment information" in reason

    def test_paid_gateway_order(self):
        order = {
            "status": "cancelled",
            "payment_status": "paid",
            "payment_option": "razorpay",
            "payment_info": {"razorpay_payment_id": "pay_1"},
        }

        assert check_refund_eligibility(order) == (True, None)


class TestPaymentMethodBranching:
    def test_amount_prefers_captured_paise(self):
        assert refund_amount_paise({"total": 950, "payment_info": {"payment_amount": 94000}}) == 94000
        assert refund_amount_paise({"total": 950.5}) == 95050

    async def test_cod_needs_no_refund(self, gateway):
        result = await process_refund_by_payment_method({"payment_option": "cod"}, "changed my mind")

        assert result["success"] is True
        assert result["refund_details"]["refund_status"] == "not_applicable"
        assert gateway.created == []

    async def test_unknown_method_goes_to_manual_review(self, gateway):
        result = await process_refund_by_payment_method(
            {"_id": "x", "payment_option": "bank-transfer", "total": 100}, "reason"
        )

        assert result["success"] is True
        assert result["refund_details"]["refund_status"] == "manual_review"
        assert gateway.created == []


class TestProcessOrderCancellationRefund:
    async def test_gateway_refund_is_recorded(self, db, make_order, gateway):
        order = await make_order(status="cancelled")

        result = await process_order_cancellation_refund(db, order_id=order["_id"], reason="Changed my mind")

        assert result["success"] is True
        assert result["refund_details"] == {"refund_id": "rfnd_1", "refund_amount": 95000, "refund_status": "pending"}

        call = gateway.created[0]
        assert call["payment_id"] == "pay_123"
        assert call["amount_paise"] == 95000
        assert call["notes"]["order_id"] == order["order_id"]
        assert call["receipt"].startswith(f"refund_{order['order_id']}_")

        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["refund_info"]["refund_id"] == "rfnd_1"
        assert stored["refund_info"]["refund_status"] == "pending"
        assert stored["refund_info"]["refund_reason"] == "Changed my mind"
        assert await _events(db, order) == ["REFUND_INITIATED"]

    async def test_accepts_string_order_id(self, db, make_order, gateway):
        order = await make_order(status="cancelled")

        result = await process_order_cancellation_refund(db, order_id=str(order["_id"]))

        assert result["success"] is True

    async def test_gateway_failure_is_recorded_as_failed(self, db, make_order, gateway):
        order = await make_order(status="cancelled")
        gateway.fail_with = "Payment not captured"

        result = await process_order_cancellation_refund(db, order_id=order["_id"], reason="r")

        assert result["success"] is False
        assert result["error"] == "Payment not captured"

        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["refund_info"]["refund_status"] == "failed"
        assert await _events(db, order) == ["REFUND_FAILED"]

    async def test_other_users_order(self, db, make_order, gateway):
        order = await make_order(status="cancelled")

        result = await process_order_cancellation_refund(db, order_id=order["_id"], user_id="someone-else")

        assert result == {"success": False, "message": "Unauthorized: Order does not belong to user"}

    async def test_missing_order(self, db, gateway):
        result = await process_order_cancellation_refund(db, order_id="not-an-id")

        assert result == {"success": False, "message": "Order not found"}

    async def test_already_processed(self, db, make_order, gateway):
        order = await make_order(status="cancelled", refund_info={"refund_status": "processed", "refund_id": "rfnd_0"})

        result = await process_order_cancellation_refund(db, order_id=order["_id"])

        assert result["success"] is False
        assert "already been processed" in result["message"]
        assert gateway.created == []

    async def test_pending_refund_is_not_issued_again(self, db, make_order, gateway):
        initiated_at = datetime(2024, 3, 1, 10, 0)
        order = await make_order(
            status="cancelled",
            refund_info={
                "refund_id": "rfnd_1",
                "refund_status": "pending",
                "refund_initiated_at": initiated_at,
                "refund_reason": "Changed my mind",
            },
        )
        gateway.fail_with = "The total refund amount is greater than the refund payment amount"

        result = await process_order_cancellation_refund(db, order_id=order["_id"], reason="retry")

        assert result["success"] is False
        assert "already in progress" in result["message"]
        assert gateway.created == []

        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["refund_info"] == {
            "refund_id": "rfnd_1",
            "refund_status": "pending",
            "refund_initiated_at": initiated_at,
            "refund_reason": "Changed my mind",
        }
        assert await _events(db, order) == []

    async def test_failure_write_leaves_refund_in_flight_alone(self, db, make_order):
        order = await make_order(status="cancelled", refund_info={"refund_id": "rfnd_1", "refund_status": "pending"})

        written = await update_order_with_refund_info(
            db,
            order["_id"],
            {"refund_details": {"refund_status": "failed"}},
            "retry",
            unless_status_in=("pending", "processed"),
        )

        assert written is False
        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["refund_info"] == {"refund_id": "rfnd_1", "refund_status": "pending"}

    async def test_failed_refund_can_be_retried(self, db, make_order, gateway):
        order = await make_order(status="cancelled", refund_info={"refund_status": "failed"})

        result = await process_order_cancellation_refund(db, order_id=order["_id"], reason="retry")

        assert result["success"] is True
        assert len(gateway.created) == 1
        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["refund_info"]["refund_status"] == "pending"
        assert stored["refund_info"]["refund_id"] == "rfnd_1"

    async def test_cod_order_is_not_eligible(self, db, make_order, gateway):
        order = await make_order(status="cancelled", payment_option="cod", payment_info={})

        result = await process_order_cancellation_refund(db, order_id=order["_id"])

        assert result["success"] is False
        assert gateway.created == []


class TestRefundStatus:
    async def test_get_order_refund_status(self, db, make_order):
        order = await make_order(refund_info={"refund_status": "pending", "refund_id": "rfnd_1"})

        result = await get_order_refund_status(db, order["_id"])

        assert result["success"] is True
        assert result["refund_info"]["refund_id"] == "rfnd_1"

    async def test_sync_moves_pending_to_processed(self, db, make_order, gateway):
        order = await make_order(status="cancelled", refund_info={"refund_status": "pending", "refund_id": "rfnd_1"})

        result = await sync_refund_status(db, order["_id"])

        assert result["success"] is True
        assert result["updated"] is True
        assert result["refund_info"]["refund_status"] == "processed"
        assert result["refund_info"]["refund_processed_at"] is not None
        assert await _events(db, order) == ["REFUND_STATUS_UPDATED"]

    async def test_sync_without_gateway_refund(self, db, make_order, gateway):
        order = await make_order(status="cancelled")

        result = await sync_refund_status(db, order["_id"])

        assert result["success"] is False


class TestRefundWebhook:
    async def test_processed_event(self, db, make_order):
        order = await make_order(status="cancelled", refund_info={"refund_status": "pending", "refund_id": "rfnd_1"})

        result = await apply_refund_webhook(
            db,
            event="refund.processed",
            refund_entity={"id": "rfnd_1", "payment_id": "pay_123", "amount": 95000, "status": "processed"},
        )

        assert result == {"ok": True, "updated": True, "order_id": str(order["_id"]), "refund_status": "processed"}

    async def test_processed_refund_is_never_downgraded(self, db, make_order):
        await make_order(status="cancelled", refund_info={"refund_status": "processed", "refund_id": "rfnd_1"})

        result = await apply_refund_webhook(
            db,
            event="refund.failed",
            refund_entity={"id": "rfnd_1", "status": "failed"},
        )

        assert result["updated"] is False
        stored = await db.orders.find_one({"refund_info.refund_id": "rfnd_1"})
        assert stored["refund_info"]["refund_status"] == "processed"

    async def test_falls_back_to_payment_id(self, db, make_order):
        order = await make_order(status="cancelled")

        result = await apply_refund_webhook(
            db,
            event="refund.created",
            refund_entity={"id": "rfnd_9", "payment_id": "pay_123", "status": "pending"},
        )

        assert result["refund_status"] == "pending"
        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["refund_info"]["refund_id"] == "rfnd_9"

    async def test_unknown_refund(self, db):
        result = await apply_refund_webhook(db, event="refund.processed", refund_entity={"id": "rfnd_x"})

        assert result == {"ok": True, "order": "not_found"}


class TestReconcilePendingRefunds:
    async def test_settles_pending_refunds_and_notifies(self, db, make_order, gateway, sent_emails):
        await make_order(
            status="cancelled",
            refund_info={"refund_status": "pending", "refund_id": "rfnd_1", "refund_initiated_at": datetime.utcnow()},
        )
        await make_order(
            status="cancelled",
            refund_info={"refund_status": "processed", "refund_id": "rfnd_2", "refund_initiated_at": datetime.utcnow()},
        )

        counters = await reconcile_pending_refunds(db)

        assert counters == {"checked": 1, "processed": 1, "errors": 0}
        assert len(sent_emails) == 1
        assert sent_emails[0]["Subject"].startswith("Refund Processed")
