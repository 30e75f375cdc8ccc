# backend/consultbook/repositories/availability_repository.py
"""
Availability data access.

``SlotRepository`` holds the two atomic claim primitives the reservation
manager relies on:

* ``insert_booked`` inserts a booked row inside a savepoint and reports a
  uniqueness conflict as ``False`` instead of poisoning the outer
  transaction.
* ``claim_existing`` is a conditional update that flips ``is_booked`` only
  while the row is still free; exactly one concurrent caller sees rowcount 1.
"""

from datetime import date, time
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.availability import AvailabilitySlot, WeeklyAvailabilityPattern
from .base_repository import BaseRepository


class PatternRepository(BaseRepository[WeeklyAvailabilityPattern]):
    def __init__(self, db: Session):
        super().__init__(db, WeeklyAvailabilityPattern)

    def list_for_consultant(
        self,
        consultant_id: str,
        session_type: Optional[str] = None,
        *,
        active_only: bool = False,
    ) -> List[WeeklyAvailabilityPattern]:
        stmt = select(WeeklyAvailabilityPattern).where(
            WeeklyAvailabilityPattern.consultant_id == consultant_id
        )
        if session_type:
            stmt = stmt.where(WeeklyAvailabilityPattern.session_type == session_type)
        if active_only:
            stmt = stmt.where(WeeklyAvailabilityPattern.is_active.is_(True))
        stmt = stmt.order_by(
            WeeklyAvailabilityPattern.day_of_week,
            WeeklyAvailabilityPattern.start_time,
            WeeklyAvailabilityPattern.id,
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_active(self, consultant_id: str, session_type: str) -> List[WeeklyAvailabilityPattern]:
        return self.list_for_consultant(consultant_id, session_type, active_only=True)

    def delete_for_type(self, consultant_id: str, session_type: str) -> int:
        result = self.db.execute(
            delete(WeeklyAvailabilityPattern).where(
                WeeklyAvailabilityPattern.consultant_id == consultant_id,
                WeeklyAvailabilityPattern.session_type == session_type,
            )
        )
        return result.rowcount or 0


class SlotRepository(BaseRepository[AvailabilitySlot]):
    def __init__(self, db: Session):
        super().__init__(db, AvailabilitySlot)

    def get_by_key(
        self, consultant_id: str, session_type: str, slot_date: date, start_time: time
    ) -> Optional[AvailabilitySlot]:
        return self.db.execute(
            select(AvailabilitySlot).where(
                AvailabilitySlot.consultant_id == consultant_id,
                AvailabilitySlot.session_type == session_type,
                AvailabilitySlot.slot_date == slot_date,
                AvailabilitySlot.start_time == start_time,
            )
        ).scalar_one_or_none()

    def list_in_range(
        self, consultant_id: str, session_type: str, start_date: date, end_date: date
    ) -> List[AvailabilitySlot]:
        stmt = (
            select(AvailabilitySlot)
            .where(
                AvailabilitySlot.consultant_id == consultant_id,
                AvailabilitySlot.session_type == session_type,
                AvailabilitySlot.slot_date >= start_date,
                AvailabilitySlot.slot_date <= end_date,
            )
            .order_by(AvailabilitySlot.slot_date, AvailabilitySlot.start_time)
        )
        return list(self.db.execute(stmt).scalars().all())

    def insert_booked(
        self,
        *,
        consultant_id: str,
        session_type: str,
        slot_date: date,
        start_time: time,
        end_time: time,
        timezone: str,
        session_id: str,
    ) -> Optional[AvailabilitySlot]:
        """Insert the slot already booked; None when the key exists."""
        try:
            with self.db.begin_nested():
                slot = AvailabilitySlot(
                    consultant_id=consultant_id,
                    session_type=session_type,
                    slot_date=slot_date,
                    start_time=start_time,
                    end_time=end_time,
                    timezone=timezone,
                    is_booked=True,
                    is_blocked=False,
                    session_id=session_id,
                )
                self.db.add(slot)
            return slot
        except IntegrityError:
            self.logger.info(
                "Slot key already materialized",
                extra={
                    "consultant_id": consultant_id,
                    "session_type": session_type,
                    "slot_date": slot_date.isoformat(),
                    "start_time": start_time.isoformat(),
                },
            )
            return None

    def claim_existing(self, slot_id: str, session_id: str) -> bool:
        """Flip a free row to booked. True only for the single winning caller."""
        updated = self.conditional_update(
            update(AvailabilitySlot)
            .where(
                AvailabilitySlot.id == slot_id,
                AvailabilitySlot.is_booked.is_(False),
                AvailabilitySlot.is_blocked.is_(False),
            )
            .values(is_booked=True, session_id=session_id),
            slot_id,
        )
        return updated == 1

    def release(self, slot_id: str, session_id: str) -> bool:
        """Free a slot, but only if ``session_id`` still holds it."""
        updated = self.conditional_update(
            update(AvailabilitySlot)
            .where(
                AvailabilitySlot.id == slot_id,
                AvailabilitySlot.session_id == session_id,
                AvailabilitySlot.is_booked.is_(True),
            )
            .values(is_booked=False, session_id=None),
            slot_id,
        )
        return updated == 1

    def set_blocked(self, slot_id: str, blocked: bool) -> bool:
        """Block/unblock a slot that nobody holds."""
        updated = self.conditional_update(
            update(AvailabilitySlot)
            .where(AvailabilitySlot.id == slot_id, AvailabilitySlot.is_booked.is_(False))
            .values(is_blocked=blocked),
            slot_id,
        )
        return updated == 1

    def existing_keys(
        self, consultant_id: str, session_type: str, start_date: date, end_date: date
    ) -> set[tuple[date, time]]:
        rows = self.db.execute(
            select(AvailabilitySlot.slot_date, AvailabilitySlot.start_time).where(
                and_(
                    AvailabilitySlot.consultant_id == consultant_id,
                    AvailabilitySlot.session_type == session_type,
                    AvailabilitySlot.slot_date >= start_date,
                    AvailabilitySlot.slot_date <= end_date,
                )
            )
        ).all()
        return {(row[0], row[1]) for row in rows}

    def add_free_slots(self, slots: Iterable[AvailabilitySlot]) -> int:
        items: Sequence[AvailabilitySlot] = list(slots)
        if items:
            self.db.add_all(items)
            self.db.flush()
        return len(items)
