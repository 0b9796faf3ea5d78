import json
import threading
import time
from decimal import Decimal

import pytest
from sqlmodel import Session, select

from app.constants.order_status import OrderStatus
from app.exceptions import (
    Forbidden,
    FraudSuspected,
    GatewayDeclined,
    GatewayUnavailable,
    InsufficientFunds,
    InvalidState,
    InvalidTransition,
    NotFound,
    OrderCreationFailed,
    RefundExceedsOriginal,
    ValidationError,
)
from app.models import Notification, Order, OrderItem, OrderTracking, PaymentTransaction
from app.notifications import OrderEvent
from app.schemas.orders_schemas import PaymentMethodIn
from app.services.payment_gateway import RefundResult, SimulatorGateway
from tests.conftest import CUSTOMER_ID, MERCHANT_ID, OTHER_CUSTOMER_ID, card, count_rows


class SlowGateway(SimulatorGateway):
    def charge(self, amount, currency, payment_method):
        time.sleep(1)
        return super().charge(amount, currency, payment_method)


class CrashingGateway(SimulatorGateway):
    def charge(self, amount, currency, payment_method):
        raise RuntimeError("connection reset by peer")


class RefundRejectingGateway(SimulatorGateway):
    def refund(self, provider_tx_id, amount, reason):
        return RefundResult(
            success=False,
            refund_id=None,
            amount=amount,
            failure_code="refund_failed",
            failure_reason="Refund window closed",
        )


class SlowRefundGateway(SimulatorGateway):
    def refund(self, provider_tx_id, amount, reason):
        time.sleep(1)
        return super().refund(provider_tx_id, amount, reason)


def assert_no_order_rows(engine):
    assert count_rows(engine, Order) == 0
    assert count_rows(engine, OrderItem) == 0
    assert count_rows(engine, OrderTracking) == 0


class TestCreateOrderWithPayment:
    def test_confirms_paid_order(self, coordinator, cart_data, card_method, payment_store):
        result = coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID)

        order = result.order
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.payment_status == "paid"
        assert order.payment_id == result.payment.id
        assert order.processing_fee == Decimal("1.05")
        assert order.total_amount == Decimal("32.10")
        assert order.currency_code == "USD"
        assert order.order_number.startswith("ORD")
        assert [entry.status for entry in order.tracking] == ["pending", "confirmed"]

        payment = result.payment
        assert payment.status == "completed"
        assert payment.amount == order.total_amount
        assert payment.provider_transaction_id.startswith("sim_")
        assert payment.details["gateway"] == "simulator"

        assert payment_store.get_transactions_by_order(order.id) == [payment]

    def test_items_and_address_are_stored(self, coordinator, cart_data, card_method, order_store):
        created = coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order

        order = order_store.get_by_id(created.id)

        [item] = order.items
        assert item.menu_item_id == "pizza-margherita"
        assert item.total_price == Decimal("25.98")
        assert item.customizations == {"crust": "thin", "extras": ["basil"]}
        assert item.special_instructions == "Cut in squares"
        assert order.delivery_address.city == "Austin"
        assert order.delivery_address.latitude == pytest.approx(30.2672)

    def test_payment_method_is_masked(self, coordinator, cart_data, card_method):
        payment = coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).payment

        assert payment.details["payment_method"] == {"type": "card", "brand": "visa", "last_four": "4242"}
        assert "fp_test_4242" not in json.dumps(payment.details)

    def test_explicit_currency_is_kept(self, coordinator, cart_data, card_method):
        cart_data.currency_code = "CAD"

        order = coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order

        assert order.currency_code == "CAD"

    def test_notifies_merchant_and_customer(self, coordinator, cart_data, card_method, scheduled, engine):
        coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID)

        assert scheduled.calls == [OrderEvent.NEW_ORDER, OrderEvent.ORDER_CONFIRMED]
        with Session(engine) as session:
            roles = sorted(n.recipient_role.value for n in session.exec(select(Notification)).all())
        assert roles == ["customer", "merchant"]

    @pytest.mark.parametrize(
        "last_four, error_cls",
        [("0002", GatewayDeclined), ("0004", InsufficientFunds), ("0009", FraudSuspected)],
    )
    def test_declined_charge_leaves_no_order(self, coordinator, cart_data, engine, scheduled, last_four, error_cls):
        with pytest.raises(error_cls) as exc:
            coordinator.create_order_with_payment(cart_data, card(last_four), CUSTOMER_ID)

        assert exc.value.status_code == 400
        assert_no_order_rows(engine)
        assert scheduled.calls == []

    def test_declined_charge_is_kept_for_audit(self, coordinator, cart_data, engine):
        with pytest.raises(GatewayDeclined):
            coordinator.create_order_with_payment(cart_data, card("0002"), CUSTOMER_ID)

        with Session(engine) as session:
            [txn] = session.exec(select(PaymentTransaction)).all()
        assert txn.status == "failed"
        assert txn.details["ephemeral_order"] is True
        assert txn.details["error"]["code"] == "GatewayDeclined"
        assert "fp_test_0002" not in json.dumps(txn.details)

    def test_over_limit_amount_is_declined(self, make_coordinator, cart_data, engine):
        coordinator = make_coordinator(gateway=SimulatorGateway(latency_ms=(1, 2), amount_limit=Decimal("20")))

        with pytest.raises(GatewayDeclined):
            coordinator.create_order_with_payment(cart_data, card(), CUSTOMER_ID)

        assert_no_order_rows(engine)

    def test_gateway_timeout_leaves_no_order(self, make_coordinator, test_settings, cart_data, engine):
        settings = test_settings.model_copy(update={"gateway_timeout_seconds": 0.2})
        coordinator = make_coordinator(gateway=SlowGateway(latency_ms=(1, 2)), settings=settings)

        with pytest.raises(GatewayUnavailable) as exc:
            coordinator.create_order_with_payment(cart_data, card(), CUSTOMER_ID)

        assert exc.value.status_code == 503
        assert_no_order_rows(engine)

    def test_unexpected_gateway_error_rolls_back(self, make_coordinator, cart_data, engine):
        coordinator = make_coordinator(gateway=CrashingGateway(latency_ms=(1, 2)))

        with pytest.raises(OrderCreationFailed) as exc:
            coordinator.create_order_with_payment(cart_data, card(), CUSTOMER_ID)

        assert exc.value.details["cause"] == "RuntimeError"
        assert_no_order_rows(engine)
        assert count_rows(engine, PaymentTransaction) == 0

    def test_invalid_payment_method(self, coordinator, cart_data, engine):
        with pytest.raises(ValidationError) as exc:
            coordinator.create_order_with_payment(cart_data, PaymentMethodIn(type="card"), CUSTOMER_ID)

        assert exc.value.details["payment_method"]["type"] == "card"
        assert_no_order_rows(engine)

    def test_discount_larger_than_order_rejected(self, coordinator, cart_data, card_method, engine):
        cart_data.discount_amount = Decimal("100")

        with pytest.raises(ValidationError):
            coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID)

        assert_no_order_rows(engine)

    def test_zero_subtotal_rejected(self, coordinator, cart_data, card_method):
        cart_data.subtotal = Decimal("0")

        with pytest.raises(ValidationError):
            coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID)

    def test_notification_failure_does_not_fail_order(self, make_coordinator, cart_data, card_method, order_store):
        def broken_schedule(fn, **kwargs):
            raise RuntimeError("queue down")

        coordinator = make_coordinator(schedule=broken_schedule)

        order = coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order

        assert order_store.get_by_id(order.id).status == "confirmed"


class TestCancelOrder:
    def test_cancel_refunds_paid_order(self, coordinator, paid_order, payment_store, scheduled):
        result = coordinator.cancel_order(paid_order.id, None, CUSTOMER_ID)

        assert result.order.status == "cancelled"
        assert result.order.payment_status == "refunded"
        assert result.order.cancel_reason == "Cancelled by customer"
        assert result.refund.success
        assert result.refund.amount == Decimal("32.10")
        assert result.refund_error is None

        refunds = [t for t in payment_store.get_transactions_by_order(paid_order.id) if t.transaction_type == "refund"]
        assert len(refunds) == 1
        assert refunds[0].amount == Decimal("32.10")
        assert refunds[0].details["original_transaction_id"] == paid_order.payment_id
        assert payment_store.get_transaction_by_id(paid_order.payment_id).status == "refunded"

        assert OrderEvent.ORDER_CANCELLED in scheduled.calls
        assert OrderEvent.REFUND_PROCESSED in scheduled.calls

    def test_cancel_records_reason_and_actor(self, coordinator, paid_order):
        order = coordinator.cancel_order(paid_order.id, "Ordered twice", CUSTOMER_ID).order

        assert order.cancel_reason == "Ordered twice"
        assert order.tracking[-1].created_by == f"user:{CUSTOMER_ID}"

    def test_other_user_cannot_cancel(self, coordinator, paid_order, order_store):
        with pytest.raises(Forbidden):
            coordinator.cancel_order(paid_order.id, None, OTHER_CUSTOMER_ID)

        assert order_store.get_by_id(paid_order.id).status == "confirmed"

    def test_unknown_order(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.cancel_order("missing", None, CUSTOMER_ID)

    def test_second_cancel_rejected(self, coordinator, paid_order, payment_store):
        coordinator.cancel_order(paid_order.id, None, CUSTOMER_ID)

        with pytest.raises(InvalidTransition):
            coordinator.cancel_order(paid_order.id, None, CUSTOMER_ID)

        refunds = [t for t in payment_store.get_transactions_by_order(paid_order.id) if t.transaction_type == "refund"]
        assert len(refunds) == 1

    def test_completed_order_cannot_be_cancelled(self, coordinator, paid_order):
        coordinator.advance_status(paid_order.id, "completed")

        with pytest.raises(InvalidTransition):
            coordinator.cancel_order(paid_order.id, None, CUSTOMER_ID)

    def test_unpaid_order_cancels_without_refund(self, coordinator, order_store, payment_store):
        from tests.test_order_store import order_data

        order = order_store.create_order(order_data())

        result = coordinator.cancel_order(order.id, None, CUSTOMER_ID)

        assert result.order.status == "cancelled"
        assert result.refund is None
        assert result.refund_error is None
        assert payment_store.get_transactions_by_order(order.id) == []

    def test_failed_refund_keeps_order_cancelled(self, make_coordinator, cart_data, card_method, payment_store, scheduled):
        coordinator = make_coordinator(gateway=RefundRejectingGateway(latency_ms=(1, 2)))
        order = coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order

        result = coordinator.cancel_order(order.id, None, CUSTOMER_ID)

        assert result.order.status == "cancelled"
        assert result.order.payment_status == "paid"
        assert result.refund is None
        assert result.refund_error["code"] == "refund_failed"
        assert result.refund_error["manual_follow_up"] is True
        assert "Support will follow up" in result.message
        assert OrderEvent.REFUND_FAILED in scheduled.calls

        failed = [t for t in payment_store.get_transactions_by_order(order.id) if t.transaction_type == "refund"]
        assert [t.status for t in failed] == ["failed"]
        assert payment_store.get_transaction_by_id(order.payment_id).status == "completed"

    def test_refund_retry_after_failed_cancellation_refund(self, make_coordinator, coordinator, cart_data, card_method):
        rejecting = make_coordinator(gateway=RefundRejectingGateway(latency_ms=(1, 2)))
        order = rejecting.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order
        rejecting.cancel_order(order.id, None, CUSTOMER_ID)

        outcome = coordinator.process_refund(order.id, reason="Support reconciliation")

        assert outcome.success
        assert outcome.amount == Decimal("32.10")
        refreshed = coordinator.order_store.get_by_id(order.id)
        assert refreshed.status == "cancelled"
        assert refreshed.payment_status == "refunded"


class TestProcessRefund:
    def test_full_refund(self, coordinator, paid_order):
        outcome = coordinator.process_refund(paid_order.id)

        assert outcome.success
        assert outcome.amount == Decimal("32.10")
        assert outcome.transaction.provider_transaction_id.startswith("ref_")

        order = coordinator.order_store.get_by_id(paid_order.id)
        assert order.status == "refunded"
        assert order.payment_status == "refunded"
        assert order.refund_id == outcome.refund_id

    def test_partial_refunds_up_to_original(self, coordinator, paid_order):
        first = coordinator.process_refund(paid_order.id, Decimal("10.00"), "Missing drink")

        assert first.success
        order = coordinator.order_store.get_by_id(paid_order.id)
        assert order.payment_status == "partially_refunded"
        assert order.status == "refunded"

        with pytest.raises(RefundExceedsOriginal) as exc:
            coordinator.process_refund(paid_order.id, Decimal("22.11"))
        assert exc.value.details["already_refunded"] == "10.00"

        rest = coordinator.process_refund(paid_order.id)
        assert rest.amount == Decimal("22.10")
        assert coordinator.order_store.get_by_id(paid_order.id).payment_status == "refunded"

        with pytest.raises(InvalidState):
            coordinator.process_refund(paid_order.id)

    def test_amount_above_original_rejected(self, coordinator, paid_order, payment_store):
        with pytest.raises(RefundExceedsOriginal):
            coordinator.process_refund(paid_order.id, Decimal("32.11"))

        assert len(payment_store.get_transactions_by_order(paid_order.id)) == 1

    def test_non_positive_amount_rejected(self, coordinator, paid_order):
        with pytest.raises(ValidationError):
            coordinator.process_refund(paid_order.id, Decimal("0"))

    def test_unpaid_order_rejected(self, coordinator, order_store):
        from tests.test_order_store import order_data

        order = order_store.create_order(order_data())

        with pytest.raises(InvalidState):
            coordinator.process_refund(order.id)

    def test_unknown_order(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.process_refund("missing")

    def test_completed_order_cannot_be_refunded(self, coordinator, paid_order):
        coordinator.advance_status(paid_order.id, "completed")

        with pytest.raises(InvalidTransition):
            coordinator.process_refund(paid_order.id)

    def test_refund_timeout_is_reported(self, make_coordinator, test_settings, cart_data, card_method):
        settings = test_settings.model_copy(update={"gateway_timeout_seconds": 0.2})
        coordinator = make_coordinator(gateway=SlowRefundGateway(latency_ms=(1, 2)), settings=settings)
        order = coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order

        outcome = coordinator.process_refund(order.id)

        assert not outcome.success
        assert outcome.error["code"] == "gateway_timeout"
        refreshed = coordinator.order_store.get_by_id(order.id)
        assert refreshed.status == "confirmed"
        assert refreshed.payment_status == "paid"

    def test_pending_refund_counts_toward_bound(self, coordinator, paid_order, payment_store):
        original = payment_store.get_active_payment(paid_order.id)
        payment_store.create_transaction(
            {
                "order_id": paid_order.id,
                "user_id": CUSTOMER_ID,
                "transaction_type": "refund",
                "status": "pending",
                "amount": Decimal("10.00"),
                "currency": "USD",
                "country_code": "US",
                "details": {"gateway": "simulator", "original_transaction_id": original.id},
            }
        )

        with pytest.raises(RefundExceedsOriginal) as exc:
            coordinator.process_refund(paid_order.id, Decimal("22.11"))
        assert exc.value.details["already_refunded"] == "10.00"

        rest = coordinator.process_refund(paid_order.id)

        assert rest.amount == Decimal("22.10")
        # the pending refund has not settled, so the payment is not fully refunded
        assert coordinator.order_store.get_by_id(paid_order.id).payment_status == "partially_refunded"

    def test_refund_row_is_pending_while_gateway_runs(self, make_coordinator, cart_data, card_method, payment_store):
        seen = []

        class RecordingGateway(SimulatorGateway):
            def refund(self, provider_tx_id, amount, reason):
                seen.extend(
                    t.status for t in payment_store.get_transactions_by_order(order.id)
                    if t.transaction_type == "refund"
                )
                return super().refund(provider_tx_id, amount, reason)

        coordinator = make_coordinator(gateway=RecordingGateway(latency_ms=(1, 2)))
        order = coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order

        outcome = coordinator.process_refund(order.id)

        assert seen == ["pending"]
        assert outcome.transaction.status == "completed"
        assert outcome.transaction.details["original_transaction_id"] == order.payment_id

    def test_failed_refund_releases_reservation(self, make_coordinator, coordinator, cart_data, card_method):
        rejecting = make_coordinator(gateway=RefundRejectingGateway(latency_ms=(1, 2)))
        order = rejecting.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order

        failed = rejecting.process_refund(order.id)

        assert not failed.success
        assert failed.transaction.status == "failed"
        assert failed.transaction.details["error"]["code"] == "refund_failed"
        assert coordinator.process_refund(order.id).amount == Decimal("32.10")

    def test_concurrent_refunds_do_not_exceed_original(self, make_coordinator, cart_data, card_method,
                                                       payment_store):
        coordinator = make_coordinator(gateway=SimulatorGateway(latency_ms=(200, 200)))
        order = coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order
        outcomes, errors = [], []

        def refund():
            try:
                outcomes.append(coordinator.process_refund(order.id))
            except (RefundExceedsOriginal, InvalidState) as exc:
                errors.append(exc)

        threads = [threading.Thread(target=refund) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(outcomes) == 1 and outcomes[0].success
        assert len(errors) == 1
        completed = [
            t.amount for t in payment_store.get_transactions_by_order(order.id)
            if t.transaction_type == "refund" and t.status == "completed"
        ]
        assert sum(completed) == Decimal("32.10")


class TestAdvanceStatus:
    def test_fulfilment_flow(self, coordinator, paid_order):
        preparing = coordinator.advance_status(paid_order.id, "preparing", note="In the oven", actor="merchant:1")
        completed = coordinator.advance_status(paid_order.id, "completed")

        assert preparing.status == "preparing"
        assert preparing.tracking[-1].created_by == "merchant:1"
        assert completed.status == "completed"
        assert [e.status for e in completed.tracking] == ["pending", "confirmed", "preparing", "completed"]

    @pytest.mark.parametrize("status", ["refunded", "cancelled", "pending", "shipped"])
    def test_only_fulfilment_statuses(self, coordinator, paid_order, status):
        with pytest.raises(ValidationError):
            coordinator.advance_status(paid_order.id, status)

    def test_pending_order_cannot_skip_payment(self, coordinator, order_store):
        from tests.test_order_store import order_data

        order = order_store.create_order(order_data())

        with pytest.raises(InvalidTransition):
            coordinator.advance_status(order.id, "preparing")

    def test_unknown_order(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.advance_status("missing", "preparing")

    def test_merchant_moves_own_order(self, coordinator, paid_order):
        preparing = coordinator.advance_status(paid_order.id, "preparing", merchant_id=MERCHANT_ID)

        assert preparing.status == "preparing"

    def test_other_merchant_cannot_move_order(self, coordinator, paid_order, order_store):
        with pytest.raises(Forbidden):
            coordinator.advance_status(paid_order.id, "preparing", actor="merchant:other", merchant_id="merchant-2")

        assert order_store.get_by_id(paid_order.id).status == "confirmed"
