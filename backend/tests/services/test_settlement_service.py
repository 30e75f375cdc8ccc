"""
Tests for PaymentSettlementService: browser verification and webhooks.

Whichever signal arrives first settles the payment; every later one is a
no-op that reports ALREADY_SETTLED and adds no side effects.
"""

from datetime import time
from decimal import Decimal

import pytest

from consultbook.core.exceptions import (
    GatewayTimeoutException,
    InvalidSignatureException,
    NotFoundException,
    ValidationException,
)
from consultbook.core.signatures import compute_signature
from consultbook.models.availability import AvailabilitySlot
from consultbook.models.consultant import Client
from consultbook.models.event_outbox import EventOutbox
from consultbook.models.payment import PaymentTransaction
from consultbook.models.session import ConsultationSession
from consultbook.models.webhook_event import WebhookEvent
from consultbook.services.settlement_service import (
    VERIFY_TIMEOUT_MESSAGE,
    PaymentSettlementService,
    SettlementOutcome,
)

from tests.helpers.constants import WEBHOOK_SECRET
from tests.helpers.payments import payment_webhook, signed_body


@pytest.fixture
def settlement(session_factory, gateway, test_settings):
    return PaymentSettlementService(session_factory(), gateway, test_settings)


@pytest.fixture
def checkout(reserve, open_order):
    """A reservation with its gateway order open."""
    reservation = reserve()
    order = open_order(reservation)
    return reservation, order


def test_verify_confirms_session_and_enqueues_side_effects(
    checkout, settlement, gateway, load, load_all
):
    reservation, order = checkout
    payment_id = gateway.capture(order.order_id)

    result = settlement.verify_payment(order.order_id, payment_id, gateway.sign(order.order_id, payment_id))

    assert result.outcome == SettlementOutcome.SETTLED
    assert result.payment_status == "SUCCESS"
    assert result.session_status == "CONFIRMED"

    txn = load(PaymentTransaction, order.transaction_id)
    assert txn.gateway_payment_id == payment_id
    assert txn.settled_by == "verify"
    session = load(ConsultationSession, reservation.session_id)
    assert session.payment_status == "PAID"
    assert session.reservation_expires_at is None
    assert load(Client, reservation.client_id).total_amount_paid == Decimal("1500.00")

    events = load_all(EventOutbox, aggregate_id=reservation.session_id)
    assert sorted(e.event_type for e in events) == ["session.confirmed", "session.meeting_link"]


def test_tampered_signature_changes_nothing(checkout, settlement, gateway, load, load_all):
    reservation, order = checkout
    payment_id = gateway.capture(order.order_id)

    with pytest.raises(InvalidSignatureException):
        settlement.verify_payment(order.order_id, payment_id, "0" * 64)

    assert load(PaymentTransaction, order.transaction_id).status == "PENDING"
    assert load(ConsultationSession, reservation.session_id).status == "PENDING"
    assert load_all(EventOutbox) == []
    assert "fetch_payment" not in gateway.calls


def test_webhook_after_verify_is_already_settled(checkout, settlement, gateway, load_all):
    reservation, order = checkout
    payment_id = gateway.capture(order.order_id)
    settlement.verify_payment(order.order_id, payment_id, gateway.sign(order.order_id, payment_id))

    raw, signature = signed_body(
        payment_webhook("payment.captured", order.order_id, payment_id, order.amount_minor)
    )
    result = settlement.handle_webhook(raw, signature, "evt_001")

    assert result.outcome == SettlementOutcome.ALREADY_SETTLED
    assert result.session_status == "CONFIRMED"
    assert len(load_all(EventOutbox, aggregate_id=reservation.session_id)) == 2
    ledger = load_all(WebhookEvent, event_id="evt_001")
    assert ledger[0].status == "processed"
    assert ledger[0].outcome == "already_settled"


def test_verify_after_webhook_reaches_same_state(checkout, settlement, gateway, load, load_all):
    reservation, order = checkout
    payment_id = gateway.capture(order.order_id)
    raw, signature = signed_body(
        payment_webhook("payment.captured", order.order_id, payment_id, order.amount_minor)
    )

    first = settlement.handle_webhook(raw, signature, "evt_002")
    second = settlement.verify_payment(order.order_id, payment_id, gateway.sign(order.order_id, payment_id))

    assert first.outcome == SettlementOutcome.SETTLED
    assert second.outcome == SettlementOutcome.ALREADY_SETTLED
    assert load(PaymentTransaction, order.transaction_id).settled_by == "webhook"
    assert load(ConsultationSession, reservation.session_id).status == "CONFIRMED"
    assert len(load_all(EventOutbox, aggregate_id=reservation.session_id)) == 2


def test_redelivered_webhook_is_a_duplicate(checkout, settlement, gateway, load_all):
    _, order = checkout
    payment_id = gateway.capture(order.order_id)
    raw, signature = signed_body(
        payment_webhook("payment.captured", order.order_id, payment_id, order.amount_minor)
    )

    settlement.handle_webhook(raw, signature, "evt_003")
    again = settlement.handle_webhook(raw, signature, "evt_003")

    assert again.outcome == SettlementOutcome.DUPLICATE
    ledger = load_all(WebhookEvent, event_id="evt_003")
    assert len(ledger) == 1
    assert ledger[0].attempts == 2


def test_webhook_without_event_id_deduplicates_on_body(checkout, settlement, gateway):
    _, order = checkout
    payment_id = gateway.capture(order.order_id)
    raw, signature = signed_body(
        payment_webhook("payment.captured", order.order_id, payment_id, order.amount_minor)
    )

    settlement.handle_webhook(raw, signature)
    assert settlement.handle_webhook(raw, signature).outcome == SettlementOutcome.DUPLICATE


def test_webhook_with_bad_signature_is_rejected_before_ledger(checkout, settlement, gateway, load_all):
    _, order = checkout
    raw, _ = signed_body(payment_webhook("payment.captured", order.order_id, "pay_x", order.amount_minor))

    with pytest.raises(InvalidSignatureException):
        settlement.handle_webhook(raw, "sha256=" + "f" * 64, "evt_004")

    assert load_all(WebhookEvent) == []
    assert load_all(PaymentTransaction, status="PENDING")


def test_prefixed_webhook_signature_is_accepted(checkout, settlement, gateway):
    _, order = checkout
    payment_id = gateway.capture(order.order_id)
    raw, signature = signed_body(
        payment_webhook("order.paid", order.order_id, payment_id, order.amount_minor)
    )

    result = settlement.handle_webhook(raw, f"sha256={signature}", "evt_005")
    assert result.outcome == SettlementOutcome.SETTLED


def test_failed_payment_webhook_cancels_and_releases_slot(checkout, settlement, gateway, load):
    reservation, order = checkout
    payment_id = gateway.fail(order.order_id)
    raw, signature = signed_body(
        payment_webhook(
            "payment.failed",
            order.order_id,
            payment_id,
            order.amount_minor,
            error_code="BAD_REQUEST_ERROR",
            error_description="Card declined",
        )
    )

    result = settlement.handle_webhook(raw, signature, "evt_006")

    assert result.outcome == SettlementOutcome.SETTLED
    txn = load(PaymentTransaction, order.transaction_id)
    assert txn.status == "FAILED"
    assert txn.failure_code == "BAD_REQUEST_ERROR"
    session = load(ConsultationSession, reservation.session_id)
    assert session.status == "CANCELLED"
    assert session.payment_status == "FAILED"
    assert load(AvailabilitySlot, reservation.slot_id).is_booked is False


def test_capture_after_failure_is_flagged_not_applied(checkout, settlement, gateway, load, caplog):
    reservation, order = checkout
    failed_id = gateway.fail(order.order_id)
    raw, signature = signed_body(
        payment_webhook("payment.failed", order.order_id, failed_id, order.amount_minor)
    )
    settlement.handle_webhook(raw, signature, "evt_007")

    captured_id = gateway.capture(order.order_id)
    raw, signature = signed_body(
        payment_webhook("payment.captured", order.order_id, captured_id, order.amount_minor)
    )
    with caplog.at_level("ERROR"):
        result = settlement.handle_webhook(raw, signature, "evt_008")

    assert result.outcome == SettlementOutcome.ALREADY_SETTLED
    assert load(ConsultationSession, reservation.session_id).status == "CANCELLED"
    assert any(getattr(r, "refund_required", False) for r in caplog.records)


def test_webhook_amount_mismatch_is_ignored(checkout, settlement, gateway, load):
    _, order = checkout
    payment_id = gateway.capture(order.order_id, amount_minor=100)
    raw, signature = signed_body(payment_webhook("payment.captured", order.order_id, payment_id, 100))

    result = settlement.handle_webhook(raw, signature, "evt_009")

    assert result.outcome == SettlementOutcome.IGNORED
    assert result.detail == "amount_mismatch"
    assert load(PaymentTransaction, order.transaction_id).status == "PENDING"


def test_verify_amount_mismatch_releases_the_connection(checkout, settlement, gateway, reserve, load):
    _, order = checkout
    payment_id = gateway.capture(order.order_id, amount_minor=100)

    result = settlement.verify_payment(order.order_id, payment_id, gateway.sign(order.order_id, payment_id))

    assert result.outcome == SettlementOutcome.IGNORED
    assert result.session_status == "PENDING"
    assert settlement.db.in_transaction() is False
    # A writer on another connection is not blocked by the verification.
    assert reserve(time(11, 0)).start_time == time(11, 0)


@pytest.mark.parametrize(
    "event,expected",
    [
        ("refund.processed", SettlementOutcome.ACKNOWLEDGED),
        ("payment.authorized", SettlementOutcome.IGNORED),
    ],
)
def test_non_settling_events(checkout, settlement, event, expected):
    _, order = checkout
    raw, signature = signed_body(payment_webhook(event, order.order_id, "pay_y", order.amount_minor))
    assert settlement.handle_webhook(raw, signature, f"evt_{event}").outcome == expected


def test_webhook_for_unknown_order_is_ignored(settlement):
    raw, signature = signed_body(payment_webhook("payment.captured", "order_nope", "pay_z", 100))
    result = settlement.handle_webhook(raw, signature, "evt_010")
    assert result.outcome == SettlementOutcome.IGNORED
    assert result.detail == "unknown_order"


def test_malformed_webhook_body(settlement):
    raw, signature = signed_body({"event": "payment.captured"})
    bad = b"not json"

    with pytest.raises(ValidationException):
        settlement.handle_webhook(bad, compute_signature(WEBHOOK_SECRET, bad), "evt_011")
    assert settlement.handle_webhook(raw, signature, "evt_012").detail == "missing_order_id"


def test_verify_timeout_leaves_payment_pending(checkout, settlement, gateway, load):
    _, order = checkout
    payment_id = gateway.capture(order.order_id)
    gateway.simulate_timeout("fetch_payment")

    with pytest.raises(GatewayTimeoutException) as exc_info:
        settlement.verify_payment(order.order_id, payment_id, gateway.sign(order.order_id, payment_id))

    assert exc_info.value.message == VERIFY_TIMEOUT_MESSAGE
    assert load(PaymentTransaction, order.transaction_id).status == "PENDING"


def test_verify_reports_processing_for_uncaptured_payment(checkout, settlement, gateway, load):
    _, order = checkout
    payment_id = gateway.capture(order.order_id)
    gateway.payments[payment_id]["status"] = "authorized"

    result = settlement.verify_payment(order.order_id, payment_id, gateway.sign(order.order_id, payment_id))

    assert result.outcome == SettlementOutcome.PROCESSING
    assert load(PaymentTransaction, order.transaction_id).status == "PENDING"


def test_verify_rejects_payment_from_another_order(reserve, open_order, settlement, gateway):
    first = open_order(reserve(time(10, 0)))
    other = open_order(reserve(time(11, 0)))
    payment_id = gateway.capture(other.order_id)

    with pytest.raises(ValidationException) as exc_info:
        settlement.verify_payment(first.order_id, payment_id, gateway.sign(first.order_id, payment_id))
    assert exc_info.value.code == "PAYMENT_ORDER_MISMATCH"


def test_verify_unknown_order(settlement, gateway):
    with pytest.raises(NotFoundException):
        settlement.verify_payment("order_missing", "pay_1", gateway.sign("order_missing", "pay_1"))


def test_client_reported_failure_does_not_settle(checkout, settlement, load):
    reservation, order = checkout

    result = settlement.mark_failed(order.order_id, "PAYMENT_CANCELLED", "User closed the checkout")

    assert result.outcome == SettlementOutcome.PROCESSING
    txn = load(PaymentTransaction, order.transaction_id)
    assert txn.status == "PENDING"
    assert txn.failure_code == "PAYMENT_CANCELLED"
    assert load(ConsultationSession, reservation.session_id).status == "PENDING"
