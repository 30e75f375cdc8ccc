"""Consultant-only endpoints: sessions, refunds and availability administration."""

from fastapi.testclient import TestClient

from consultbook.models.availability import WeeklyAvailabilityPattern
from consultbook.models.session import ConsultationSession


class TestAuth:
    def test_sessions_require_token(self, client: TestClient, test_consultant):
        response = client.get("/api/v1/sessions")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_sessions_require_consultant_role(self, client: TestClient, auth_headers_other_role):
        response = client.get("/api/v1/sessions", headers=auth_headers_other_role)
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"


class TestSessions:
    def test_list_and_get(self, client: TestClient, confirm, auth_headers_consultant):
        reservation, _ = confirm()

        listed = client.get("/api/v1/sessions", params={"status": "CONFIRMED"}, headers=auth_headers_consultant)
        single = client.get(f"/api/v1/sessions/{reservation.session_id}", headers=auth_headers_consultant)

        assert listed.status_code == 200
        assert [s["id"] for s in listed.json()] == [reservation.session_id]
        assert single.json()["amount"] == "1500.00"
        assert single.json()["start_time"] == "10:00"

    def test_unknown_status_filter(self, client: TestClient, auth_headers_consultant):
        response = client.get("/api/v1/sessions", params={"status": "LOST"}, headers=auth_headers_consultant)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_STATUS"

    def test_patch_notes(self, client: TestClient, reserve, auth_headers_consultant, load):
        reservation = reserve()

        response = client.patch(
            f"/api/v1/sessions/{reservation.session_id}",
            json={"consultant_notes": "Send prep sheet"},
            headers=auth_headers_consultant,
        )

        assert response.status_code == 200
        assert load(ConsultationSession, reservation.session_id).consultant_notes == "Send prep sheet"

    def test_patch_status_is_not_allowed(self, client: TestClient, reserve, auth_headers_consultant):
        reservation = reserve()
        response = client.patch(
            f"/api/v1/sessions/{reservation.session_id}",
            json={"status": "CONFIRMED"},
            headers=auth_headers_consultant,
        )
        assert response.status_code == 422

    def test_consultant_cancel(self, client: TestClient, reserve, auth_headers_consultant):
        reservation = reserve()

        response = client.post(
            f"/api/v1/sessions/{reservation.session_id}/cancel", headers=auth_headers_consultant
        )

        assert response.status_code == 200
        assert response.json()["cancelled_by"] == "consultant"

    def test_confirmed_session_cancel_conflicts(self, client: TestClient, confirm, auth_headers_consultant):
        reservation, _ = confirm()
        response = client.post(
            f"/api/v1/sessions/{reservation.session_id}/cancel", headers=auth_headers_consultant
        )
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_STATE_TRANSITION"

    def test_mark_before_start(self, client: TestClient, confirm, auth_headers_consultant):
        reservation, _ = confirm()
        response = client.post(
            f"/api/v1/sessions/{reservation.session_id}/mark",
            json={"status": "COMPLETED"},
            headers=auth_headers_consultant,
        )
        assert response.status_code == 422
        assert response.json()["code"] == "SESSION_NOT_STARTED"

    def test_refund(self, client: TestClient, confirm, auth_headers_consultant, load):
        reservation, _ = confirm()

        response = client.post(
            f"/api/v1/sessions/{reservation.session_id}/refund",
            json={"amount": "500", "reason": "Ended early"},
            headers=auth_headers_consultant,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["amount"] == "500.00"
        assert data["payment_status"] == "PARTIALLY_REFUNDED"
        assert load(ConsultationSession, reservation.session_id).status == "RETURNED"

    def test_refund_provider_failure(self, client: TestClient, confirm, gateway, auth_headers_consultant):
        reservation, _ = confirm()
        gateway.simulate_error("refund")

        response = client.post(
            f"/api/v1/sessions/{reservation.session_id}/refund", headers=auth_headers_consultant
        )

        assert response.status_code == 502
        assert response.json()["code"] == "REFUND_FAILED"


class TestPatterns:
    def test_create_list_update_delete(self, client: TestClient, auth_headers_consultant, load):
        created = client.post(
            "/api/v1/availability/patterns",
            json={"session_type": "WEBINAR", "day_of_week": 5, "start_time": "17:00", "end_time": "19:00"},
            headers=auth_headers_consultant,
        )
        assert created.status_code == 201
        pattern_id = created.json()["id"]

        listed = client.get(
            "/api/v1/availability/patterns", params={"session_type": "WEBINAR"}, headers=auth_headers_consultant
        )
        assert [p["id"] for p in listed.json()] == [pattern_id]

        updated = client.put(
            f"/api/v1/availability/patterns/{pattern_id}",
            json={"end_time": "20:00"},
            headers=auth_headers_consultant,
        )
        assert updated.json()["end_time"] == "20:00"

        deleted = client.delete(f"/api/v1/availability/patterns/{pattern_id}", headers=auth_headers_consultant)
        assert deleted.status_code == 204
        assert load(WeeklyAvailabilityPattern, pattern_id) is None

    def test_overlap_conflicts(self, client: TestClient, monday_pattern, auth_headers_consultant):
        response = client.post(
            "/api/v1/availability/patterns",
            json={"session_type": "PERSONAL", "day_of_week": 1, "start_time": "09:00", "end_time": "10:30"},
            headers=auth_headers_consultant,
        )
        assert response.status_code == 409
        assert response.json()["code"] == "PATTERN_OVERLAP"

    def test_bulk_replace_and_generate(self, client: TestClient, auth_headers_consultant, next_monday):
        replaced = client.post(
            "/api/v1/availability/patterns/bulk",
            json={
                "session_type": "PERSONAL",
                "windows": [{"day_of_week": 1, "start_time": "09:00", "end_time": "12:00"}],
            },
            headers=auth_headers_consultant,
        )
        assert replaced.status_code == 200
        assert len(replaced.json()) == 1

        generated = client.post(
            "/api/v1/availability/generate-slots",
            json={
                "session_type": "PERSONAL",
                "start_date": next_monday.isoformat(),
                "end_date": next_monday.isoformat(),
            },
            headers=auth_headers_consultant,
        )
        assert generated.json() == {"created": 3, "skipped": 0}

    def test_block_slot(self, client: TestClient, reserve, auth_headers_consultant):
        reservation = reserve()
        response = client.post(
            "/api/v1/availability/slots/block",
            json={"slot_id": reservation.slot_id},
            headers=auth_headers_consultant,
        )
        assert response.status_code == 409
        assert response.json()["code"] == "SLOT_BOOKED"


class TestOperational:
    def test_health_at_both_paths(self, client: TestClient):
        for path in ("/health", "/api/v1/health"):
            response = client.get(path)
            assert response.status_code == 200
            assert response.json() == {"status": "ok", "environment": "test", "database": "ok"}

    def test_metrics_exposition(self, client: TestClient, reserve):
        reserve()
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "consultbook_reservation_outcomes_total" in response.text
