"""
Tests for the payment confirmation processor and its entry points.
"""
import hashlib
import hmac

import pytest
from unittest.mock import AsyncMock

from config import settings
from db_models import Item
from domain.enums import PaymentSource
from domain.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from services import gateway_client, inventory_service, order_service, payment_service
from services.payment_service import PaymentDetails


async def stock_of(db, item: Item) -> int:
    await db.refresh(item)
    return item.stock_qty


def captured_event(gateway_order_id: str, amount: int = 80_000, event: str = "payment.captured") -> dict:
    return {
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": "pay_001",
                    "order_id": gateway_order_id,
                    "amount": amount,
                    "method": "upi",
                    "status": "captured" if event == "payment.captured" else "failed",
                    "error_code": None if event == "payment.captured" else "BAD_REQUEST_ERROR",
                    "error_description": None if event == "payment.captured" else "Payment declined",
                }
            }
        },
    }


class TestSignatures:

    @pytest.mark.unit
    def test_webhook_signature_valid(self):
        body = b'{"event":"payment.captured"}'
        sig = hmac.new(settings.gateway_webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        assert payment_service.verify_webhook_signature(body, sig)

    @pytest.mark.unit
    def test_webhook_signature_tampered(self):
        body = b'{"event":"payment.captured"}'
        sig = hmac.new(settings.gateway_webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        assert not payment_service.verify_webhook_signature(body + b" ", sig)
        assert not payment_service.verify_webhook_signature(body, "")

    @pytest.mark.unit
    def test_webhook_fails_closed_without_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "gateway_webhook_secret", "")
        body = b"{}"
        sig = hmac.new(b"", body, hashlib.sha256).hexdigest()
        assert not payment_service.verify_webhook_signature(body, sig)

    @pytest.mark.unit
    def test_checkout_signature(self):
        sig = hmac.new(
            settings.gateway_key_secret.encode(), b"order_GW1|pay_001", hashlib.sha256
        ).hexdigest()
        assert payment_service.verify_checkout_signature("order_GW1", "pay_001", sig)
        assert not payment_service.verify_checkout_signature("order_GW1", "pay_002", sig)


class TestConfirmPayment:

    @pytest.mark.asyncio
    async def test_double_confirmation_commits_stock_once(self, db_session, make_order, sample_items, dispatcher):
        tote, pin = sample_items
        order = await make_order()

        first = await payment_service.confirm_payment(
            db_session, order.id, source=PaymentSource.WEBHOOK, dispatch_shipment=dispatcher
        )
        await db_session.commit()
        second = await payment_service.confirm_payment(
            db_session, order.id, source=PaymentSource.VERIFY, dispatch_shipment=dispatcher
        )
        await db_session.commit()

        assert first.already_confirmed is False
        assert first.shipment_dispatched is True
        assert second.already_confirmed is True
        assert dispatcher.calls == [order.id]
        assert await stock_of(db_session, tote) == 8
        assert await stock_of(db_session, pin) == 4
        assert len(second.order.payment_attempts) == 1

    @pytest.mark.asyncio
    async def test_confirmation_keeps_delivery_state(self, db_session, make_order):
        order = await make_order(provider="SELF_HANDLED", delivery="OUT_FOR_DELIVERY")
        result = await payment_service.confirm_payment(db_session, order.id, source="manual")
        assert result.order.payment_signal == "paid"
        assert result.order.lifecycle_status == "shipped"
        assert result.shipment_dispatched is False

    @pytest.mark.asyncio
    async def test_cancelled_order_conflicts(self, db_session, make_order, sample_items):
        tote, _ = sample_items
        order = await make_order(payment="cancelled")
        with pytest.raises(ConflictError):
            await payment_service.confirm_payment(db_session, order.id, source=PaymentSource.WEBHOOK)
        assert await stock_of(db_session, tote) == 10

    @pytest.mark.asyncio
    async def test_cancelled_lifecycle_conflicts(self, db_session, make_order):
        order = await make_order(provider="SELF_HANDLED", delivery="PRE_PICKUP_CANCEL")
        with pytest.raises(ConflictError):
            await payment_service.confirm_payment(db_session, order.id, source=PaymentSource.WEBHOOK)

    @pytest.mark.asyncio
    async def test_insufficient_stock_leaves_order_pending(self, db_session, make_order, sample_items):
        tote, pin = sample_items
        order = await make_order(quantities=(2, 1))
        order_id = order.id
        pin.stock_qty = 0
        await db_session.commit()

        with pytest.raises(InsufficientStockError):
            await payment_service.confirm_payment(db_session, order_id, source=PaymentSource.WEBHOOK)
        await db_session.rollback()

        order = await order_service.get_order(db_session, order_id, fresh=True)
        assert order.payment_signal == "pending"
        assert order.stock_committed is False
        assert await stock_of(db_session, tote) == 10

    @pytest.mark.asyncio
    async def test_guarded_decrement_raises_and_leaves_rollback_to_caller(
        self, db_session, make_order, sample_items
    ):
        tote, pin = sample_items
        order = await make_order(quantities=(2, 1))
        pin.stock_qty = 0
        await db_session.commit()

        with pytest.raises(InsufficientStockError) as exc_info:
            await inventory_service.decrement_for_order(db_session, order)
        assert exc_info.value.item_id == pin.id
        await db_session.rollback()

        assert await stock_of(db_session, tote) == 10
        assert await stock_of(db_session, pin) == 0

    @pytest.mark.asyncio
    async def test_stock_sold_after_availability_check(
        self, db_session, make_order, sample_items, monkeypatch
    ):
        """Another buyer takes the last pin between the check and the decrement."""
        tote, pin = sample_items
        order = await make_order(quantities=(2, 1))
        order_id = order.id
        pin.stock_qty = 0
        await db_session.commit()
        monkeypatch.setattr(inventory_service, "ensure_available", AsyncMock(return_value=None))

        with pytest.raises(InsufficientStockError):
            await payment_service.confirm_payment(db_session, order_id, source=PaymentSource.WEBHOOK)
        await db_session.rollback()

        order = await order_service.get_order(db_session, order_id, fresh=True)
        assert order.payment_signal == "pending"
        assert order.stock_committed is False
        assert await stock_of(db_session, tote) == 10

    @pytest.mark.asyncio
    async def test_underpayment_rejected(self, db_session, make_order):
        order = await make_order()
        with pytest.raises(ValidationError):
            await payment_service.confirm_payment(
                db_session, order.id,
                source=PaymentSource.WEBHOOK,
                payment=PaymentDetails(payment_id="pay_x", amount_minor=100),
            )

    @pytest.mark.asyncio
    async def test_dispatcher_error_is_swallowed(self, db_session, make_order):
        order = await make_order()

        def broken_dispatch(order_id):
            raise RuntimeError("queue down")

        result = await payment_service.confirm_payment(
            db_session, order.id, source=PaymentSource.WEBHOOK, dispatch_shipment=broken_dispatch
        )
        assert result.order.payment_signal == "paid"
        assert result.shipment_dispatched is False


class TestPaymentFailure:

    @pytest.mark.asyncio
    async def test_failure_recorded(self, db_session, make_order):
        order = await make_order()
        order = await payment_service.record_payment_failure(
            db_session, order.id,
            source=PaymentSource.WEBHOOK,
            payment=PaymentDetails(payment_id="pay_f", error_code="BAD_REQUEST_ERROR"),
        )
        assert order.payment_signal == "failed"
        assert order.lifecycle_status == "failed"
        assert order.payment_attempts[-1].error_code == "BAD_REQUEST_ERROR"

    @pytest.mark.asyncio
    async def test_late_failure_does_not_unpay(self, db_session, make_order):
        order = await make_order(payment="paid", stock_committed=True)
        order = await payment_service.record_payment_failure(db_session, order.id, source=PaymentSource.WEBHOOK)
        assert order.payment_signal == "paid"
        assert order.lifecycle_status == "confirmed"
        assert len(order.payment_attempts) == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure_confirms(self, db_session, make_order):
        order = await make_order(payment="failed")
        result = await payment_service.confirm_payment(db_session, order.id, source=PaymentSource.VERIFY)
        assert result.order.lifecycle_status == "confirmed"


class TestWebhook:

    @pytest.mark.asyncio
    async def test_duplicate_captured_webhook_dispatches_once(self, db_session, make_order, dispatcher):
        order = await make_order(gateway_order_id="order_GW1")

        first = await payment_service.process_webhook(
            db_session, captured_event("order_GW1"), dispatch_shipment=dispatcher
        )
        await db_session.commit()
        second = await payment_service.process_webhook(
            db_session, captured_event("order_GW1"), dispatch_shipment=dispatcher
        )
        await db_session.commit()

        assert first == {"status": "confirmed", "orderId": order.id}
        assert second == {"status": "already_confirmed", "orderId": order.id}
        assert dispatcher.calls == [order.id]

    @pytest.mark.asyncio
    async def test_failed_webhook(self, db_session, make_order):
        order = await make_order(gateway_order_id="order_GW2")
        result = await payment_service.process_webhook(
            db_session, captured_event("order_GW2", event="payment.failed")
        )
        assert result["status"] == "failed"
        order = await order_service.get_order(db_session, order.id, fresh=True)
        assert order.payment_signal == "failed"
        assert order.payment_attempts[0].source == "webhook"

    @pytest.mark.asyncio
    async def test_redelivered_failure_recorded_once(self, db_session, make_order):
        order = await make_order(gateway_order_id="order_GW9")
        event = captured_event("order_GW9", event="payment.failed")

        for _ in range(3):
            result = await payment_service.process_webhook(db_session, event)
            await db_session.commit()
            assert result["status"] == "failed"

        order = await order_service.get_order(db_session, order.id, fresh=True)
        assert [a.gateway_payment_id for a in order.payment_attempts] == ["pay_001"]

    @pytest.mark.asyncio
    async def test_authorized_ignored(self, db_session, make_order):
        await make_order(gateway_order_id="order_GW3")
        result = await payment_service.process_webhook(
            db_session, captured_event("order_GW3", event="payment.authorized")
        )
        assert result == {"status": "ignored", "reason": "authorized"}

    @pytest.mark.asyncio
    async def test_unknown_order_ignored(self, db_session, sample_items):
        result = await payment_service.process_webhook(db_session, captured_event("order_missing"))
        assert result["reason"] == "unknown_order"


class TestVerifyAndReconcile:

    @pytest.mark.asyncio
    async def test_verify_with_valid_signature(self, db_session, make_order, dispatcher, monkeypatch):
        order = await make_order(gateway_order_id="order_GW4")
        fetch = AsyncMock(return_value={
            "id": "pay_004", "order_id": "order_GW4", "status": "captured", "amount": 80_000,
        })
        monkeypatch.setattr(gateway_client, "fetch_payment", fetch)
        sig = hmac.new(
            settings.gateway_key_secret.encode(), b"order_GW4|pay_004", hashlib.sha256
        ).hexdigest()
        result = await payment_service.verify_checkout_payment(
            db_session,
            gateway_order_id="order_GW4",
            payment_id="pay_004",
            signature=sig,
            dispatch_shipment=dispatcher,
        )
        assert result["status"] == "confirmed"
        fetch.assert_awaited_once_with("pay_004")
        order = await order_service.get_order(db_session, order.id, fresh=True)
        assert order.payment_attempts[0].source == "verify"
        assert order.payment_attempts[0].signature_verified is True

    @pytest.mark.asyncio
    async def test_verify_falls_back_to_gateway(self, db_session, make_order, monkeypatch):
        order = await make_order(gateway_order_id="order_GW5")
        fetch = AsyncMock(return_value={
            "id": "pay_005", "order_id": "order_GW5", "status": "captured", "amount": 80_000,
        })
        monkeypatch.setattr(gateway_client, "fetch_payment", fetch)

        result = await payment_service.verify_checkout_payment(
            db_session, gateway_order_id="order_GW5", payment_id="pay_005", signature="garbage"
        )

        assert result["status"] == "confirmed"
        fetch.assert_awaited_once_with("pay_005")
        order = await order_service.get_order(db_session, order.id, fresh=True)
        assert order.payment_attempts[0].signature_verified is False

    @pytest.mark.asyncio
    async def test_valid_signature_does_not_bypass_amount_check(self, db_session, make_order, monkeypatch):
        order = await make_order(gateway_order_id="order_GW10")
        order_id = order.id
        monkeypatch.setattr(gateway_client, "fetch_payment", AsyncMock(return_value={
            "id": "pay_010", "order_id": "order_GW10", "status": "captured", "amount": 1,
        }))
        sig = hmac.new(
            settings.gateway_key_secret.encode(), b"order_GW10|pay_010", hashlib.sha256
        ).hexdigest()

        with pytest.raises(ValidationError):
            await payment_service.verify_checkout_payment(
                db_session, gateway_order_id="order_GW10", payment_id="pay_010", signature=sig
            )

        order = await order_service.get_order(db_session, order_id, fresh=True)
        assert order.payment_signal == "pending"

    @pytest.mark.asyncio
    async def test_valid_signature_with_uncaptured_payment_stays_pending(
        self, db_session, make_order, monkeypatch
    ):
        await make_order(gateway_order_id="order_GW11")
        monkeypatch.setattr(gateway_client, "fetch_payment", AsyncMock(return_value={
            "id": "pay_011", "order_id": "order_GW11", "status": "authorized", "amount": 80_000,
        }))
        sig = hmac.new(
            settings.gateway_key_secret.encode(), b"order_GW11|pay_011", hashlib.sha256
        ).hexdigest()

        result = await payment_service.verify_checkout_payment(
            db_session, gateway_order_id="order_GW11", payment_id="pay_011", signature=sig
        )
        assert result["status"] == "pending"
        assert result["gatewayStatus"] == "authorized"

    @pytest.mark.asyncio
    async def test_verify_rejects_foreign_payment(self, db_session, make_order, monkeypatch):
        await make_order(gateway_order_id="order_GW6")
        monkeypatch.setattr(gateway_client, "fetch_payment", AsyncMock(return_value={
            "id": "pay_006", "order_id": "order_OTHER", "status": "captured",
        }))
        with pytest.raises(ValidationError):
            await payment_service.verify_checkout_payment(
                db_session, gateway_order_id="order_GW6", payment_id="pay_006", signature=""
            )

    @pytest.mark.asyncio
    async def test_verify_unknown_gateway_order(self, db_session, sample_items):
        with pytest.raises(NotFoundError):
            await payment_service.verify_checkout_payment(
                db_session, gateway_order_id="order_nope", payment_id="pay", signature=""
            )

    @pytest.mark.asyncio
    async def test_manual_reconcile_scans_gateway_payments(self, db_session, make_order, monkeypatch):
        order = await make_order(gateway_order_id="order_GW7")
        monkeypatch.setattr(gateway_client, "fetch_order_payments", AsyncMock(return_value=[
            {"id": "pay_a", "order_id": "order_GW7", "status": "failed"},
            {"id": "pay_b", "order_id": "order_GW7", "status": "captured", "amount": 80_000},
        ]))

        result = await payment_service.reconcile_manually(db_session, order.id)

        assert result["status"] == "confirmed"
        order = await order_service.get_order(db_session, order.id, fresh=True)
        assert order.payment_attempts[0].source == "manual"
        assert order.payment_attempts[0].gateway_payment_id == "pay_b"

    @pytest.mark.asyncio
    async def test_manual_reconcile_pending(self, db_session, make_order, monkeypatch):
        order = await make_order(gateway_order_id="order_GW8")
        monkeypatch.setattr(gateway_client, "fetch_order_payments", AsyncMock(return_value=[]))
        result = await payment_service.reconcile_manually(db_session, order.id)
        assert result == {"status": "pending", "orderId": order.id}


class TestGatewayOrder:

    @pytest.mark.asyncio
    async def test_created_once(self, db_session, make_order, monkeypatch):
        order = await make_order()
        create = AsyncMock(return_value={"id": "order_GW9", "amount": 80_000})
        monkeypatch.setattr(gateway_client, "create_gateway_order", create)

        first = await payment_service.create_gateway_order(db_session, order.id)
        second = await payment_service.create_gateway_order(db_session, order.id)

        assert first["gatewayOrderId"] == second["gatewayOrderId"] == "order_GW9"
        assert first["amount"] == 80_000
        create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_paid_order_rejected(self, db_session, make_order):
        order = await make_order(payment="paid", stock_committed=True)
        with pytest.raises(ConflictError):
            await payment_service.create_gateway_order(db_session, order.id)
