"""
Midtrans webhook reconciliation tests
Signature gate, redelivery handling, settlement -> escrow hold and the
rejected-event ledger.
"""

from unittest.mock import patch

import pytest
from sqlalchemy import select

from handlers.midtrans_webhook import WebhookOutcome, process_midtrans_notification
from models import LedgerEntry, Order, OrderStatus, Payment, PaymentStatus, WebhookEvent


def build_payload(gateway, order_id, status="settlement", gross="100000.00", transaction_id="txn-001", **extra):
    payload = {
        "order_id": order_id,
        "status_code": "200" if status in ("settlement", "capture") else "201",
        "gross_amount": gross,
        "transaction_status": status,
        "transaction_id": transaction_id,
        "payment_type": "bank_transfer",
        "fraud_status": "accept",
        "transaction_time": "2024-05-01 10:00:00",
    }
    payload.update(extra)
    payload["signature_key"] = gateway.compute_signature(order_id, payload["status_code"], payload["gross_amount"])
    return payload


@pytest.fixture
def waiting_order(test_data_factory, buyer, service):
    return test_data_factory.create_waiting_order(buyer, service)


def _ledger(session):
    return session.execute(select(LedgerEntry)).scalars().all()


def _events(session):
    return session.execute(select(WebhookEvent)).scalars().all()


class TestSettlement:

    def test_settlement_places_hold(self, test_db_session, midtrans_gateway, waiting_order):
        result = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, waiting_order.id), midtrans_gateway
        )

        assert result.outcome == WebhookOutcome.PROCESSED
        assert result.payment_status == PaymentStatus.SETTLEMENT.value
        order = test_db_session.get(Order, waiting_order.id)
        assert order.status == OrderStatus.PAID_ESCROW.value
        assert order.payment.transaction_id == "txn-001"
        assert order.payment.paid_amount == 100_000
        assert order.payment.payment_type == "bank_transfer"
        assert len(_ledger(test_db_session)) == 1

        event = _events(test_db_session)[0]
        assert event.event_id == "txn-001:settlement"
        assert event.outcome == "processed"
        assert "signature_key" not in event.payload

    def test_duplicate_delivery_is_a_no_op(self, test_db_session, midtrans_gateway, waiting_order):
        payload = build_payload(midtrans_gateway, waiting_order.id)
        process_midtrans_notification(test_db_session, payload, midtrans_gateway)
        first_entries = [(e.id, e.amount) for e in _ledger(test_db_session)]

        second = process_midtrans_notification(test_db_session, dict(payload), midtrans_gateway)

        assert second.outcome == WebhookOutcome.DUPLICATE
        assert [(e.id, e.amount) for e in _ledger(test_db_session)] == first_entries
        assert len(_events(test_db_session)) == 1

    def test_late_status_after_terminal_payment_is_ignored(self, test_db_session, midtrans_gateway, waiting_order):
        process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, waiting_order.id), midtrans_gateway
        )

        result = process_midtrans_notification(
            test_db_session,
            build_payload(midtrans_gateway, waiting_order.id, status="expire"),
            midtrans_gateway,
        )

        assert result.outcome == WebhookOutcome.DUPLICATE
        assert test_db_session.get(Order, waiting_order.id).payment.status == PaymentStatus.SETTLEMENT.value
        assert [e.outcome for e in _events(test_db_session)] == ["processed", "duplicate"]

    def test_capture_is_treated_as_settlement(self, test_db_session, midtrans_gateway, waiting_order):
        result = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, waiting_order.id, status="capture"), midtrans_gateway
        )
        assert result.outcome == WebhookOutcome.PROCESSED
        assert test_db_session.get(Order, waiting_order.id).is_paid


class TestRejections:

    def test_invalid_signature_changes_nothing(self, test_db_session, midtrans_gateway, waiting_order):
        payload = build_payload(midtrans_gateway, waiting_order.id)
        payload["signature_key"] = "0" * 128

        result = process_midtrans_notification(test_db_session, payload, midtrans_gateway)

        assert result.outcome == WebhookOutcome.SIGNATURE_INVALID
        order = test_db_session.get(Order, waiting_order.id)
        assert order.status == OrderStatus.WAITING_PAYMENT.value
        assert order.payment.status == PaymentStatus.PENDING.value
        assert _ledger(test_db_session) == []
        assert _events(test_db_session) == []

    def test_tampered_amount_fails_signature(self, test_db_session, midtrans_gateway, waiting_order):
        payload = build_payload(midtrans_gateway, waiting_order.id)
        payload["gross_amount"] = "1.00"

        result = process_midtrans_notification(test_db_session, payload, midtrans_gateway)

        assert result.outcome == WebhookOutcome.SIGNATURE_INVALID

    def test_missing_fields(self, test_db_session, midtrans_gateway):
        result = process_midtrans_notification(test_db_session, {"order_id": "x"}, midtrans_gateway)
        assert result.outcome == WebhookOutcome.INVALID_PAYLOAD
        assert "signature_key" in result.message

    def test_unknown_order(self, test_db_session, midtrans_gateway):
        result = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, "no-such-order"), midtrans_gateway
        )
        assert result.outcome == WebhookOutcome.NOT_FOUND
        assert _events(test_db_session) == []

    def test_underpaid_settlement_is_rejected_and_recorded(self, test_db_session, midtrans_gateway, waiting_order):
        result = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, waiting_order.id, gross="50000.00"), midtrans_gateway
        )

        assert result.outcome == WebhookOutcome.REJECTED
        payment = test_db_session.execute(select(Payment)).scalar_one()
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.paid_amount is None
        assert _ledger(test_db_session) == []
        event = _events(test_db_session)[0]
        assert event.outcome == "rejected"
        assert event.error_message.startswith("validation_error")

    def test_fractional_amount_is_rejected(self, test_db_session, midtrans_gateway, waiting_order):
        result = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, waiting_order.id, gross="100000.50"), midtrans_gateway
        )
        assert result.outcome == WebhookOutcome.REJECTED
        assert not test_db_session.get(Order, waiting_order.id).is_paid

    def test_ledger_conflict_reported_as_duplicate(self, test_db_session, midtrans_gateway, waiting_order):
        from utils.exception_handler import ResourceConflictError

        with patch(
            "handlers.midtrans_webhook.EscrowService.on_payment_verified",
            side_effect=ResourceConflictError("ESCROW_HOLD already recorded"),
        ):
            result = process_midtrans_notification(
                test_db_session, build_payload(midtrans_gateway, waiting_order.id), midtrans_gateway
            )

        assert result.outcome == WebhookOutcome.DUPLICATE
        assert test_db_session.get(Order, waiting_order.id).payment.status == PaymentStatus.PENDING.value


class TestNonSettlementStatuses:

    @pytest.mark.parametrize("status,expected", [
        ("expire", PaymentStatus.EXPIRED),
        ("cancel", PaymentStatus.CANCELLED),
        ("deny", PaymentStatus.FAILED),
    ])
    def test_failed_payment_marks_payment_only(
        self, test_db_session, midtrans_gateway, notifier, buyer, waiting_order, status, expected
    ):
        result = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, waiting_order.id, status=status), midtrans_gateway
        )

        assert result.outcome == WebhookOutcome.PROCESSED
        order = test_db_session.get(Order, waiting_order.id)
        assert order.payment.status == expected.value
        assert order.status == OrderStatus.WAITING_PAYMENT.value
        assert _ledger(test_db_session) == []
        assert any(n.type == "PAYMENT" for n in notifier.for_user(buyer.id))

    def test_fraud_challenge_is_failed(self, test_db_session, midtrans_gateway, waiting_order):
        result = process_midtrans_notification(
            test_db_session,
            build_payload(midtrans_gateway, waiting_order.id, status="capture", fraud_status="challenge"),
            midtrans_gateway,
        )
        assert result.payment_status == PaymentStatus.FAILED.value
        assert not test_db_session.get(Order, waiting_order.id).is_paid

    def test_pending_then_settlement(self, test_db_session, midtrans_gateway, waiting_order):
        pending = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, waiting_order.id, status="pending"), midtrans_gateway
        )
        settled = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, waiting_order.id), midtrans_gateway
        )

        assert pending.outcome == WebhookOutcome.PROCESSED
        assert settled.outcome == WebhookOutcome.PROCESSED
        assert test_db_session.get(Order, waiting_order.id).is_paid
        assert len(_events(test_db_session)) == 2


class TestLocallyCancelledPayment:

    @pytest.fixture
    def cancelled_order(self, test_data_factory, buyer, waiting_order):
        test_data_factory.orders().cancel(buyer.id, waiting_order.id, "Changed my mind")
        return waiting_order

    def test_cancel_flags_pending_payment(self, test_db_session, cancelled_order):
        payment = test_db_session.get(Order, cancelled_order.id).payment
        assert payment.status == PaymentStatus.CANCELLED.value
        assert payment.cancelled_locally
        assert payment.payment_metadata["cancel_reason"] == "Changed my mind"

    def test_late_settlement_is_rejected(
        self, test_db_session, midtrans_gateway, notifier, admin, cancelled_order, caplog
    ):
        result = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, cancelled_order.id), midtrans_gateway
        )

        assert result.outcome == WebhookOutcome.REJECTED
        assert result.message.startswith("payment_cancelled_locally")
        order = test_db_session.get(Order, cancelled_order.id)
        assert order.status == OrderStatus.CANCELLED.value
        assert not order.is_paid
        assert order.payment.status == PaymentStatus.CANCELLED.value
        assert _ledger(test_db_session) == []

        event = _events(test_db_session)[0]
        assert event.outcome == "rejected"
        assert event.error_message.startswith("payment_cancelled_locally")
        assert any("paid after it was cancelled" in n.content for n in notifier.for_user(admin.id))
        assert any(
            r.levelname == "ERROR" and "payment_cancelled_locally" in r.getMessage() for r in caplog.records
        )

    def test_redelivered_late_settlement_is_duplicate(self, test_db_session, midtrans_gateway, cancelled_order):
        payload = build_payload(midtrans_gateway, cancelled_order.id)
        process_midtrans_notification(test_db_session, payload, midtrans_gateway)

        again = process_midtrans_notification(test_db_session, dict(payload), midtrans_gateway)

        assert again.outcome == WebhookOutcome.DUPLICATE
        assert len(_events(test_db_session)) == 1

    def test_late_expire_is_ignored(self, test_db_session, midtrans_gateway, cancelled_order):
        result = process_midtrans_notification(
            test_db_session, build_payload(midtrans_gateway, cancelled_order.id, status="expire"), midtrans_gateway
        )

        assert result.outcome == WebhookOutcome.DUPLICATE
        assert _events(test_db_session)[0].outcome == "duplicate"


class TestPayAgain:

    def test_new_session_after_expiry_can_settle(self, test_db_session, test_data_factory, midtrans_gateway, buyer, waiting_order):
        expired = process_midtrans_notification(
            test_db_session,
            build_payload(midtrans_gateway, waiting_order.id, status="expire", transaction_id="txn-first"),
            midtrans_gateway,
        )
        assert expired.outcome == WebhookOutcome.PROCESSED

        payment = test_data_factory.orders().get_payment_session(buyer.id, waiting_order.id)
        assert payment.token == "tok-2"
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.transaction_id is None

        settled = process_midtrans_notification(
            test_db_session,
            build_payload(midtrans_gateway, waiting_order.id, transaction_id="txn-second"),
            midtrans_gateway,
        )

        assert settled.outcome == WebhookOutcome.PROCESSED
        order = test_db_session.get(Order, waiting_order.id)
        assert order.status == OrderStatus.PAID_ESCROW.value
        assert order.payment.transaction_id == "txn-second"
        assert len(_ledger(test_db_session)) == 1
