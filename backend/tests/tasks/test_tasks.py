"""
Celery task wrappers run against the test database.

Tasks are executed with ``.run`` so no broker is involved; the worker
resources are swapped for the test fixtures.
"""

from datetime import timedelta
from unittest.mock import patch

from celery.exceptions import Retry
import pytest

from consultbook.models.event_outbox import EventOutbox
from consultbook.models.session import ConsultationSession
from consultbook.tasks.beat_schedule import CELERYBEAT_SCHEDULE, get_beat_schedule
from consultbook.tasks.celery_app import WorkerResources, celery_app, set_worker_resources
from consultbook.tasks.outbox_tasks import deliver_event, dispatch_pending
from consultbook.tasks.payment_tasks import reconcile_pending_payments
from consultbook.tasks.reservation_tasks import sweep_expired_reservations
from consultbook.tasks.session_tasks import advance_session_lifecycle


@pytest.fixture(autouse=True)
def worker_resources(test_settings, database, gateway, meeting_client, email_sender):
    resources = WorkerResources(
        config=test_settings,
        database=database,
        gateway=gateway,
        meeting_client=meeting_client,
        email_sender=email_sender,
    )
    set_worker_resources(resources)
    yield resources
    set_worker_resources(None)


class TestPeriodicJobs:
    def test_sweep_abandons_lapsed_reservations(self, reserve, load, now):
        handle = reserve(at=now - timedelta(minutes=15))

        assert sweep_expired_reservations.run() == 1
        assert load(ConsultationSession, handle.session_id).status == "ABANDONED"

    def test_reconcile_settles_from_gateway_record(self, reserve, open_order, gateway, load, now):
        reservation = reserve(at=now - timedelta(minutes=20))
        order = open_order(reservation, at=now - timedelta(minutes=19))
        gateway.capture(order.order_id)

        counts = reconcile_pending_payments.run()

        assert counts["succeeded"] == 1
        assert load(ConsultationSession, reservation.session_id).status == "CONFIRMED"

    def test_advance_lifecycle_with_nothing_due(self, confirm):
        confirm()
        assert advance_session_lifecycle.run() == {"started": 0, "completed": 0}


class TestOutboxTasks:
    def test_dispatch_enqueues_each_due_event(self, confirm):
        confirm()

        with patch("consultbook.tasks.outbox_tasks.deliver_event.apply_async") as mock_apply:
            scheduled = dispatch_pending.run()

        assert scheduled == 2
        assert mock_apply.call_count == 2
        assert all(call.kwargs["queue"] == "notifications" for call in mock_apply.call_args_list)

    def test_deliver_event_sends(self, confirm, email_sender, load_all):
        confirm()
        event = load_all(EventOutbox, event_type="session.confirmed")[0]

        assert deliver_event.run(event.id) == event.id
        assert len(email_sender.sent) == 1

    def test_deliver_event_retries_with_backoff(self, confirm, meeting_client, load_all):
        confirm()
        meeting_client.fail_next = 1
        event = load_all(EventOutbox, event_type="session.meeting_link")[0]

        with patch("consultbook.tasks.outbox_tasks.deliver_event.retry") as mock_retry:
            mock_retry.side_effect = Retry("Retry called")
            with pytest.raises(Retry):
                deliver_event.run(event.id)

        mock_retry.assert_called_once()
        assert mock_retry.call_args.kwargs["countdown"] == 30

    def test_deliver_missing_event_is_a_no_op(self):
        assert deliver_event.run("01NOTHERE") is None


class TestBeatSchedule:
    def test_every_job_is_registered(self):
        registered = set(celery_app.tasks.keys())
        for entry in CELERYBEAT_SCHEDULE.values():
            assert entry["task"] in registered

    def test_testing_overrides_dispatch_interval(self):
        schedule = get_beat_schedule("testing")
        assert schedule["dispatch-outbox-events"]["schedule"] == timedelta(seconds=15)

    def test_reconciliation_can_be_disabled(self, monkeypatch):
        monkeypatch.setenv("CONSULTBOOK_DISABLE_RECONCILIATION", "true")
        assert "reconcile-pending-payments" not in get_beat_schedule()

        monkeypatch.delenv("CONSULTBOOK_DISABLE_RECONCILIATION")
        assert "reconcile-pending-payments" in get_beat_schedule()
