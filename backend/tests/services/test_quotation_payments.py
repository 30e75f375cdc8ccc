"""
Quotation checkouts: the same order and settlement path as sessions, with
the quotation moving to ACCEPTED when its payment settles as SUCCESS.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from consultbook.core.exceptions import BusinessRuleException, NotFoundException
from consultbook.models.event_outbox import EventOutbox
from consultbook.models.payment import PaymentTransaction
from consultbook.models.quotation import Quotation
from consultbook.services.payment_order_service import PaymentOrderCoordinator
from consultbook.services.settlement_service import PaymentSettlementService, SettlementOutcome

from tests.helpers.constants import QUOTATION_AMOUNT
from tests.helpers.payments import payment_webhook, signed_body


@pytest.fixture
def coordinator(session_factory, gateway, test_settings):
    return PaymentOrderCoordinator(session_factory(), gateway, test_settings)


@pytest.fixture
def settlement(session_factory, gateway, test_settings):
    return PaymentSettlementService(session_factory(), gateway, test_settings)


def test_order_for_sent_quotation_is_quotation_scoped(make_quotation, coordinator, gateway, load_all, now):
    quotation = make_quotation()

    order = coordinator.create_quotation_order(quotation.id, now=now)

    assert order.quotation_id == quotation.id
    assert order.session_id is None
    assert order.amount_minor == 1200000
    assert order.expires_at is not None
    assert gateway.orders[order.order_id]["receipt"] == quotation.id
    assert gateway.orders[order.order_id]["notes"]["quotation_id"] == quotation.id

    rows = load_all(PaymentTransaction, quotation_id=quotation.id)
    assert [(r.status, r.session_id, r.amount) for r in rows] == [("PENDING", None, QUOTATION_AMOUNT)]


def test_second_quotation_order_reuses_pending(make_quotation, coordinator, gateway, now):
    quotation = make_quotation()
    first = coordinator.create_quotation_order(quotation.id, now=now)

    second = coordinator.create_quotation_order(quotation.id, now=now)

    assert second.reused is True
    assert second.order_id == first.order_id
    assert gateway.calls.count("create_order") == 1


@pytest.mark.parametrize("overrides", [{"status": "DRAFT"}, {"status": "ACCEPTED"}, {"status": "REJECTED"}])
def test_only_sent_quotations_can_be_paid(make_quotation, coordinator, gateway, overrides, now):
    quotation = make_quotation(**overrides)

    with pytest.raises(BusinessRuleException) as exc_info:
        coordinator.create_quotation_order(quotation.id, now=now)

    assert exc_info.value.code == "QUOTATION_NOT_PAYABLE"
    assert "create_order" not in gateway.calls


def test_lapsed_quotation_cannot_be_paid(make_quotation, coordinator, now):
    quotation = make_quotation(valid_until=now - timedelta(minutes=1))

    with pytest.raises(BusinessRuleException) as exc_info:
        coordinator.create_quotation_order(quotation.id, now=now)
    assert exc_info.value.message == "Quotation has expired"


def test_unknown_quotation_is_not_found(coordinator, now):
    with pytest.raises(NotFoundException):
        coordinator.create_quotation_order("01UNKNOWNQUOTATION00000000", now=now)


def test_verified_payment_accepts_quotation(make_quotation, coordinator, settlement, gateway, load, load_all, now):
    quotation = make_quotation()
    order = coordinator.create_quotation_order(quotation.id, now=now)
    payment_id = gateway.capture(order.order_id)

    result = settlement.verify_payment(order.order_id, payment_id, gateway.sign(order.order_id, payment_id), now=now)

    assert result.outcome == SettlementOutcome.SETTLED
    assert result.payment_status == "SUCCESS"
    assert result.quotation_id == quotation.id
    assert result.session_id is None
    assert result.session_status is None
    accepted = load(Quotation, quotation.id)
    assert accepted.status == "ACCEPTED"
    assert accepted.accepted_at is not None
    assert load_all(EventOutbox) == []


def test_webhook_after_acceptance_is_already_settled(make_quotation, coordinator, settlement, gateway, load):
    quotation = make_quotation()
    order = coordinator.create_quotation_order(quotation.id)
    payment_id = gateway.capture(order.order_id)
    settlement.verify_payment(order.order_id, payment_id, gateway.sign(order.order_id, payment_id))

    raw, signature = signed_body(
        payment_webhook("payment.captured", order.order_id, payment_id, order.amount_minor)
    )
    result = settlement.handle_webhook(raw, signature, "evt_quotation_1")

    assert result.outcome == SettlementOutcome.ALREADY_SETTLED
    assert load(Quotation, quotation.id).status == "ACCEPTED"


def test_failed_payment_leaves_quotation_open(make_quotation, coordinator, settlement, gateway, load, now):
    quotation = make_quotation()
    order = coordinator.create_quotation_order(quotation.id, now=now)
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
    result = settlement.handle_webhook(raw, signature, "evt_quotation_2")

    assert result.outcome == SettlementOutcome.SETTLED
    assert load(PaymentTransaction, order.transaction_id).status == "FAILED"
    assert load(Quotation, quotation.id).status == "SENT"

    retry = coordinator.create_quotation_order(quotation.id, now=now)
    assert retry.reused is False
    assert retry.order_id != order.order_id


def test_reconciliation_accepts_quiet_quotation_checkout(
    make_quotation, coordinator, settlement, gateway, db, load, now
):
    quotation = make_quotation()
    order = coordinator.create_quotation_order(quotation.id, now=now)
    db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == order.transaction_id)
        .values(created_at=now - timedelta(minutes=30))
    )
    db.commit()
    gateway.capture(order.order_id)

    counts = settlement.reconcile_pending(now=now)

    assert counts["succeeded"] == 1
    assert load(PaymentTransaction, order.transaction_id).settled_by == "reconciliation"
    assert load(Quotation, quotation.id).status == "ACCEPTED"


def test_recent_quotation_checkout_is_left_alone(make_quotation, coordinator, settlement, now):
    quotation = make_quotation()
    coordinator.create_quotation_order(quotation.id, now=now)

    assert settlement.reconcile_pending(now=now)["checked"] == 0


def test_transaction_pays_for_exactly_one_thing(db, test_consultant):
    db.add(
        PaymentTransaction(
            consultant_id=test_consultant.id,
            amount=QUOTATION_AMOUNT,
            amount_minor=1200000,
            currency="INR",
        )
    )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()
