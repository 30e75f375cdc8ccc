# backend/consultbook/services/reservation_service.py
"""
Slot reservation manager.

Claims one concrete slot for one booking attempt. The database is the only
synchronization point:

* no row for the key: insert it already booked; the unique constraint makes
  concurrent inserts lose;
* row exists: conditional update ``is_booked false -> true``; concurrent
  updates serialize on the row and only one sees a changed row.

The PENDING session is created in the same transaction, so a lost race
leaves nothing behind. Reservations that are never paid are swept to
ABANDONED, which is the only way a held slot is released without a
settlement or cancellation.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import NotFoundException, SlotUnavailableException, ValidationException
from ..core.timezone_utils import format_hhmm, utc_now
from ..models.availability import AvailabilitySlot, SessionType
from ..models.consultant import Consultant
from ..models.session import ConsultationSession, SessionPaymentStatus, SessionStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .availability_service import AvailabilityService
from .base import BaseService
from .session_state import SessionStateMachine


@dataclass(frozen=True)
class ReservationHandle:
    session_id: str
    slot_id: str
    consultant_id: str
    client_id: str
    session_type: str
    slot_date: date
    start_time: time
    end_time: time
    expires_at: datetime


class SlotReservationManager(BaseService):
    def __init__(self, db: Session, config: Optional[Settings] = None):
        super().__init__(db)
        self.config = config or default_settings
        self.consultants = RepositoryFactory.create_consultant_repository(db)
        self.clients = RepositoryFactory.create_client_repository(db)
        self.slots = RepositoryFactory.create_slot_repository(db)
        self.sessions = RepositoryFactory.create_session_repository(db)
        self.payments = RepositoryFactory.create_payment_repository(db)
        self.state = SessionStateMachine(self.sessions)
        self.availability = AvailabilityService(db, self.config)

    @BaseService.measure_operation("reserve_slot")
    def reserve(
        self,
        consultant_id: str,
        session_type: str,
        slot_date: date,
        start_time: time,
        client_id: str,
        *,
        amount: Decimal,
        currency: Optional[str] = None,
        client_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReservationHandle:
        """Claim the slot and create a PENDING session, or raise SlotUnavailableException."""
        now = now or utc_now()
        try:
            session_type = SessionType(session_type).value
        except ValueError as exc:
            raise ValidationException(f"Unknown session type {session_type!r}") from exc
        with self.transaction():
            consultant = self.consultants.get_active(consultant_id)
            if consultant is None:
                raise NotFoundException("Consultant not found", code="CONSULTANT_NOT_FOUND")
            client = self.clients.get_by_id(client_id)
            if client is None or client.consultant_id != consultant.id:
                raise NotFoundException("Client not found", code="CLIENT_NOT_FOUND")
            offered = self.availability.find_offered_slot(
                consultant, session_type, slot_date, start_time, now=now
            )

        key_details = {
            "consultant_id": consultant.id,
            "session_type": session_type,
            "date": slot_date.isoformat(),
            "start_time": format_hhmm(start_time),
        }
        if offered is None:
            prometheus_metrics.record_reservation("not_offered")
            raise SlotUnavailableException(details={**key_details, "reason": "not_offered"})

        expires_at = now + timedelta(minutes=self.config.reservation_ttl_minutes)
        with self.transaction():
            session = self.sessions.create(
                consultant_id=consultant.id,
                client_id=client.id,
                session_type=session_type,
                title=consultant.title_for(session_type),
                scheduled_date=slot_date,
                start_time=offered.start_time,
                end_time=offered.end_time,
                duration_minutes=self.config.slot_duration_minutes,
                timezone=offered.timezone,
                scheduled_start_at=offered.starts_at,
                amount=amount,
                currency=currency or consultant.currency or self.config.default_currency,
                status=SessionStatus.PENDING.value,
                payment_status=SessionPaymentStatus.PENDING.value,
                reservation_expires_at=expires_at,
                client_notes=client_notes,
            )
            slot = self._claim(consultant, session, offered.timezone, now=now)
            if slot is None:
                prometheus_metrics.record_reservation("conflict")
                raise SlotUnavailableException(details={**key_details, "reason": "taken"})
            session.slot_id = slot.id
            self.clients.record_booking(client.id)
            self.sessions.flush()
            handle = ReservationHandle(
                session_id=session.id,
                slot_id=slot.id,
                consultant_id=consultant.id,
                client_id=client_id,
                session_type=session_type,
                slot_date=slot_date,
                start_time=offered.start_time,
                end_time=offered.end_time,
                expires_at=expires_at,
            )

        prometheus_metrics.record_reservation("reserved")
        self.log_operation(
            "slot_reserved",
            session_id=handle.session_id,
            slot_id=handle.slot_id,
            expires_at=expires_at.isoformat(),
            **key_details,
        )
        return handle

    def _claim(
        self,
        consultant: Consultant,
        session: ConsultationSession,
        timezone: str,
        *,
        now: datetime,
    ) -> Optional[AvailabilitySlot]:
        slot = self.slots.get_by_key(
            consultant.id, session.session_type, session.scheduled_date, session.start_time
        )
        if slot is None:
            inserted = self.slots.insert_booked(
                consultant_id=consultant.id,
                session_type=session.session_type,
                slot_date=session.scheduled_date,
                start_time=session.start_time,
                end_time=session.end_time,
                timezone=timezone,
                session_id=session.id,
            )
            if inserted is not None:
                return inserted
            # Lost the insert race; the row now exists and may still be free.
            slot = self.slots.get_by_key(
                consultant.id, session.session_type, session.scheduled_date, session.start_time
            )
            if slot is None:
                return None

        if slot.is_booked and slot.session_id:
            self._expire_holder_if_stale(slot, now=now)

        if self.slots.claim_existing(slot.id, session.id):
            self.slots.refresh(slot)
            return slot
        return None

    def _expire_holder_if_stale(self, slot: AvailabilitySlot, *, now: datetime) -> None:
        """Lazy sweep: free the slot if its holder is an unpaid, expired reservation."""
        holder = self.sessions.get_by_id(slot.session_id)
        if holder is None or holder.status != SessionStatus.PENDING.value:
            return
        if not holder.reservation_expired(now):
            return
        if self.payments.get_pending_for_session(holder.id) is not None:
            return
        self._abandon(holder, now=now, reason="reservation_expired")

    def _abandon(self, session: ConsultationSession, *, now: datetime, reason: str) -> bool:
        if not self.state.transition(
            session,
            SessionStatus.ABANDONED,
            now=now,
            unless_payment_pending=True,
            cancellation_reason=reason,
        ):
            return False
        self.release_slot(session)
        self.log_operation("reservation_abandoned", session_id=session.id, reason=reason)
        return True

    def release_slot(self, session: ConsultationSession) -> bool:
        """Return the session's slot to inventory if this session still holds it."""
        if not session.slot_id:
            return False
        released = self.slots.release(session.slot_id, session.id)
        if released:
            self.log_operation("slot_released", session_id=session.id, slot_id=session.slot_id)
        return released

    @BaseService.measure_operation("sweep_expired_reservations")
    def sweep_expired(self, *, now: Optional[datetime] = None, limit: int = 500) -> int:
        """
        ABANDON every PENDING session past its expiry that has no checkout in
        flight, releasing its slot. Sessions with a PENDING payment are left
        to payment reconciliation.
        """
        now = now or utc_now()
        abandoned = 0
        with self.transaction():
            expired = self.sessions.list_expired_reservations(now, limit=limit)
        for session in expired:
            with self.transaction():
                if self.payments.get_pending_for_session(session.id) is not None:
                    continue
                if self._abandon(session, now=now, reason="reservation_expired"):
                    abandoned += 1
        if abandoned:
            self.logger.info("Swept %d expired reservations", abandoned)
        return abandoned
