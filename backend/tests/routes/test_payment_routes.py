"""Checkout callback and webhook endpoints."""

from fastapi.testclient import TestClient
import pytest

from consultbook.models.session import ConsultationSession
from consultbook.models.webhook_event import WebhookEvent

from tests.helpers.payments import payment_webhook, signed_body


@pytest.fixture
def checkout(reserve, open_order):
    reservation = reserve()
    return reservation, open_order(reservation)


def test_payment_config(client: TestClient):
    response = client.get("/api/v1/payments/config")
    assert response.status_code == 200
    assert response.json() == {"key_id": "rzp_test_fake", "currency": "INR"}


def test_verify_with_checkout_field_names(client: TestClient, checkout, gateway, load):
    reservation, order = checkout
    payment_id = gateway.capture(order.order_id)

    response = client.post(
        "/api/v1/payments/verify",
        json={
            "razorpay_order_id": order.order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": gateway.sign(order.order_id, payment_id),
        },
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == "settled"
    assert response.json()["session_status"] == "CONFIRMED"
    assert load(ConsultationSession, reservation.session_id).status == "CONFIRMED"

    again = client.post(
        "/api/v1/payments/verify",
        json={
            "order_id": order.order_id,
            "payment_id": payment_id,
            "signature": gateway.sign(order.order_id, payment_id),
        },
    )
    assert again.status_code == 200
    assert again.json()["outcome"] == "already_settled"


def test_verify_with_bad_signature(client: TestClient, checkout, gateway):
    _, order = checkout
    payment_id = gateway.capture(order.order_id)

    response = client.post(
        "/api/v1/payments/verify",
        json={"order_id": order.order_id, "payment_id": payment_id, "signature": "bad"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_SIGNATURE"


def test_verify_timeout_is_retriable(client: TestClient, checkout, gateway):
    _, order = checkout
    payment_id = gateway.capture(order.order_id)
    gateway.simulate_timeout("fetch_payment")

    response = client.post(
        "/api/v1/payments/verify",
        json={
            "order_id": order.order_id,
            "payment_id": payment_id,
            "signature": gateway.sign(order.order_id, payment_id),
        },
    )

    assert response.status_code == 504
    assert response.json()["code"] == "GATEWAY_TIMEOUT"


def test_reported_failure_is_acknowledged_without_settling(client: TestClient, checkout, load):
    reservation, order = checkout

    response = client.post(
        "/api/v1/payments/failed",
        json={"razorpay_order_id": order.order_id, "error_code": "PAYMENT_CANCELLED"},
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == "processing"
    assert load(ConsultationSession, reservation.session_id).status == "PENDING"


def test_webhook_settles_and_records_ledger(client: TestClient, checkout, gateway, load, load_all):
    reservation, order = checkout
    payment_id = gateway.capture(order.order_id)
    raw, signature = signed_body(
        payment_webhook("payment.captured", order.order_id, payment_id, order.amount_minor)
    )
    headers = {
        "Content-Type": "application/json",
        "X-Razorpay-Signature": signature,
        "X-Razorpay-Event-Id": "evt_route_1",
    }

    response = client.post("/api/v1/payments/webhook", content=raw, headers=headers)
    replay = client.post("/api/v1/payments/webhook", content=raw, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "settled", "detail": None}
    assert replay.json()["outcome"] == "duplicate"
    assert load(ConsultationSession, reservation.session_id).status == "CONFIRMED"
    assert load_all(WebhookEvent, event_id="evt_route_1")[0].attempts == 2


def test_webhook_without_signature_is_rejected(client: TestClient, checkout, load_all):
    _, order = checkout
    raw, _ = signed_body(payment_webhook("payment.captured", order.order_id, "pay_1", order.amount_minor))

    response = client.post(
        "/api/v1/payments/webhook", content=raw, headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_SIGNATURE"
    assert load_all(WebhookEvent) == []
