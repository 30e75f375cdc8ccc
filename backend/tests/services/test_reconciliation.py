"""Reconciliation of checkouts that never produced a verify or webhook signal."""

from datetime import timedelta

import pytest

from consultbook.models.availability import AvailabilitySlot
from consultbook.models.payment import PaymentTransaction
from consultbook.models.session import ConsultationSession
from consultbook.services.settlement_service import PaymentSettlementService


@pytest.fixture
def settlement(session_factory, gateway, test_settings):
    return PaymentSettlementService(session_factory(), gateway, test_settings)


@pytest.fixture
def stale_checkout(reserve, open_order, now):
    """Reservation opened 20 minutes ago; its hold lapsed 10 minutes ago."""
    reservation = reserve(at=now - timedelta(minutes=20))
    order = open_order(reservation, at=now - timedelta(minutes=19))
    return reservation, order


def test_captured_payment_is_settled(stale_checkout, settlement, gateway, load, now):
    reservation, order = stale_checkout
    gateway.capture(order.order_id)

    counts = settlement.reconcile_pending(now=now)

    assert counts["checked"] == 1
    assert counts["succeeded"] == 1
    txn = load(PaymentTransaction, order.transaction_id)
    assert txn.status == "SUCCESS"
    assert txn.settled_by == "reconciliation"
    assert load(ConsultationSession, reservation.session_id).status == "CONFIRMED"


def test_checkout_without_any_attempt_is_abandoned(stale_checkout, settlement, load, now):
    reservation, order = stale_checkout

    counts = settlement.reconcile_pending(now=now)

    assert counts["abandoned"] == 1
    txn = load(PaymentTransaction, order.transaction_id)
    assert txn.status == "FAILED"
    assert txn.failure_code == "expired_unpaid"
    session = load(ConsultationSession, reservation.session_id)
    assert session.status == "ABANDONED"
    assert load(AvailabilitySlot, reservation.slot_id).is_booked is False


def test_declined_attempt_cancels_session(stale_checkout, settlement, gateway, load, now):
    reservation, order = stale_checkout
    gateway.fail(order.order_id, error_code="GATEWAY_ERROR", description="Issuer down")

    counts = settlement.reconcile_pending(now=now)

    assert counts["failed"] == 1
    txn = load(PaymentTransaction, order.transaction_id)
    assert txn.failure_code == "GATEWAY_ERROR"
    assert load(ConsultationSession, reservation.session_id).status == "CANCELLED"


def test_authorized_attempt_is_deferred(stale_checkout, settlement, gateway, load, now):
    reservation, order = stale_checkout
    payment_id = gateway.capture(order.order_id)
    gateway.payments[payment_id]["status"] = "authorized"

    counts = settlement.reconcile_pending(now=now)

    assert counts["deferred"] == 1
    assert load(PaymentTransaction, order.transaction_id).status == "PENDING"
    assert load(ConsultationSession, reservation.session_id).status == "PENDING"


def test_gateway_timeout_defers_to_next_run(stale_checkout, settlement, gateway, load, now):
    _, order = stale_checkout
    gateway.simulate_timeout("fetch_order_payments")

    counts = settlement.reconcile_pending(now=now)

    assert counts == {"checked": 1, "succeeded": 0, "failed": 0, "abandoned": 0, "deferred": 1}
    assert load(PaymentTransaction, order.transaction_id).status == "PENDING"


def test_checkouts_inside_grace_period_are_not_polled(reserve, open_order, settlement, gateway, now):
    # Hold lapsed two minutes ago; the grace period is five.
    reservation = reserve(at=now - timedelta(minutes=12))
    open_order(reservation, at=now - timedelta(minutes=11))

    counts = settlement.reconcile_pending(now=now)

    assert counts["checked"] == 0
    assert "fetch_order_payments" not in gateway.calls


def test_settled_payments_are_not_revisited(stale_checkout, settlement, gateway, now):
    _, order = stale_checkout
    gateway.capture(order.order_id)
    settlement.reconcile_pending(now=now)

    assert settlement.reconcile_pending(now=now)["checked"] == 0
