"""Public booking and availability endpoints."""

from datetime import timedelta

from fastapi.testclient import TestClient

from consultbook.models.payment import PaymentTransaction
from consultbook.models.session import ConsultationSession


def _booking_body(consultant_id, slot_date, start="10:00", amount="1500.00", email="meera@example.com"):
    return {
        "consultant_id": consultant_id,
        "slot": {"session_type": "PERSONAL", "date": slot_date.isoformat(), "start_time": start},
        "client": {"name": "Meera Iyer", "email": email, "phone": "+91 98450 00000"},
        "amount": amount,
    }


class TestAvailableSlots:
    def test_by_slug_groups_slots_by_date(self, client: TestClient, monday_pattern, next_monday):
        response = client.get(
            "/api/v1/consultants/by-slug/asha-rao/available-slots",
            params={"start_date": next_monday.isoformat(), "days": 7},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["timezone"] == "Asia/Kolkata"
        assert [s["start"] for s in data["slots_by_date"][next_monday.isoformat()]] == ["10:00", "11:00"]

    def test_by_id_requires_range(self, client: TestClient, test_consultant, monday_pattern, next_monday):
        response = client.get(
            f"/api/v1/consultants/{test_consultant.id}/available-slots",
            params={"start_date": next_monday.isoformat(), "end_date": next_monday.isoformat()},
        )
        assert response.status_code == 200
        assert response.json()["slots"][0]["starts_at"].startswith(f"{next_monday.isoformat()}T04:30:00")

        missing = client.get(f"/api/v1/consultants/{test_consultant.id}/available-slots")
        assert missing.status_code == 422

    def test_range_longer_than_limit_is_rejected(self, client: TestClient, test_consultant, next_monday):
        response = client.get(
            f"/api/v1/consultants/{test_consultant.id}/available-slots",
            params={
                "start_date": next_monday.isoformat(),
                "end_date": (next_monday + timedelta(days=120)).isoformat(),
            },
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_DATE_RANGE"

    def test_unknown_slug(self, client: TestClient):
        response = client.get("/api/v1/consultants/by-slug/nobody/available-slots")
        assert response.status_code == 404
        assert response.headers["content-type"].startswith("application/problem+json")


class TestCreateBooking:
    def test_booking_returns_reservation_and_order(
        self, client: TestClient, test_consultant, monday_pattern, next_monday, load
    ):
        response = client.post("/api/v1/bookings", json=_booking_body(test_consultant.id, next_monday))

        assert response.status_code == 201
        data = response.json()
        assert data["reservation"]["start_time"] == "10:00"
        assert data["reservation"]["end_time"] == "11:00"
        assert data["order"]["amount"] == "1500.00"
        assert data["order"]["amount_minor"] == 150000
        assert data["order"]["key_id"] == "rzp_test_fake"
        assert data["order_error"] is None

        session = load(ConsultationSession, data["session_id"])
        assert session.status == "PENDING"
        assert load(PaymentTransaction, data["order"]["transaction_id"]).status == "PENDING"

    def test_second_booking_for_same_slot_conflicts(self, client: TestClient, test_consultant, monday_pattern, next_monday):
        first = client.post("/api/v1/bookings", json=_booking_body(test_consultant.id, next_monday))
        second = client.post(
            "/api/v1/bookings",
            json=_booking_body(test_consultant.id, next_monday, email="other@example.com"),
        )

        assert first.status_code == 201
        assert second.status_code == 409
        problem = second.json()
        assert problem["code"] == "SLOT_UNAVAILABLE"
        assert problem["title"] == "Conflict"
        assert problem["instance"] == "/api/v1/bookings"

    def test_order_failure_keeps_hold(self, client: TestClient, gateway, test_consultant, monday_pattern, next_monday):
        gateway.simulate_timeout("create_order")

        response = client.post("/api/v1/bookings", json=_booking_body(test_consultant.id, next_monday))

        assert response.status_code == 201
        data = response.json()
        assert data["order"] is None
        assert data["order_error"]["code"] == "GATEWAY_TIMEOUT"

        gateway.timeout_operations.clear()
        retry = client.post(f"/api/v1/sessions/{data['session_id']}/order")
        assert retry.status_code == 200
        assert retry.json()["reused"] is False

    def test_malformed_booking_is_a_validation_problem(self, client: TestClient, test_consultant, next_monday):
        body = _booking_body(test_consultant.id, next_monday, start="10am")
        body["unexpected"] = True

        response = client.post("/api/v1/bookings", json=body)

        assert response.status_code == 422
        problem = response.json()
        assert problem["code"] == "VALIDATION_ERROR"
        assert problem["errors"]

    def test_wrong_amount(self, client: TestClient, test_consultant, monday_pattern, next_monday):
        response = client.post(
            "/api/v1/bookings", json=_booking_body(test_consultant.id, next_monday, amount="10.00")
        )
        assert response.status_code == 400
        assert response.json()["code"] == "AMOUNT_MISMATCH"


class TestAnonymousCancel:
    def test_client_cancels_with_session_id(self, client: TestClient, reserve, load):
        reservation = reserve()

        response = client.post(
            f"/api/v1/sessions/{reservation.session_id}/cancel", json={"reason": "Plans changed"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert response.json()["cancelled_by"] == "client"

    def test_bad_token_is_rejected(self, client: TestClient, reserve):
        reservation = reserve()
        response = client.post(
            f"/api/v1/sessions/{reservation.session_id}/cancel",
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert response.status_code == 401


class TestQuotationOrder:
    def test_sent_quotation_opens_checkout(self, client: TestClient, make_quotation, load_all):
        quotation = make_quotation()

        response = client.post(f"/api/v1/quotations/{quotation.id}/order")

        assert response.status_code == 200
        data = response.json()
        assert data["quotation_id"] == quotation.id
        assert data["amount_minor"] == 1200000
        assert [t.gateway_order_id for t in load_all(PaymentTransaction, quotation_id=quotation.id)] == [
            data["order_id"]
        ]

    def test_draft_quotation_is_not_payable(self, client: TestClient, make_quotation):
        quotation = make_quotation(status="DRAFT")

        response = client.post(f"/api/v1/quotations/{quotation.id}/order")

        assert response.status_code == 422
        assert response.json()["code"] == "QUOTATION_NOT_PAYABLE"
