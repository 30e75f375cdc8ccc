# backend/consultbook/repositories/consultant_repository.py
"""Consultant and client lookups, including race-safe client find-or-create."""

from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.consultant import Client, Consultant
from .base_repository import BaseRepository


class ConsultantRepository(BaseRepository[Consultant]):
    def __init__(self, db: Session):
        super().__init__(db, Consultant)

    def get_by_slug(self, slug: str) -> Optional[Consultant]:
        return self.db.execute(
            select(Consultant).where(Consultant.slug == slug)
        ).scalar_one_or_none()

    def get_active(self, consultant_id: str) -> Optional[Consultant]:
        consultant = self.get_by_id(consultant_id)
        if consultant is None or not consultant.is_active:
            return None
        return consultant


class ClientRepository(BaseRepository[Client]):
    def __init__(self, db: Session):
        super().__init__(db, Client)

    def find_by_email(self, consultant_id: str, email: str) -> Optional[Client]:
        return self.db.execute(
            select(Client).where(
                Client.consultant_id == consultant_id,
                Client.email == email.strip().lower(),
            )
        ).scalar_one_or_none()

    def find_or_create(
        self,
        consultant_id: str,
        *,
        name: str,
        email: str,
        phone: Optional[str] = None,
    ) -> Client:
        """Return the consultant's client with this email, creating it if needed."""
        normalized = email.strip().lower()
        existing = self.find_by_email(consultant_id, normalized)
        if existing is not None:
            if phone and not existing.phone:
                existing.phone = phone
            return existing
        try:
            with self.db.begin_nested():
                client = Client(
                    consultant_id=consultant_id,
                    name=name.strip(),
                    email=normalized,
                    phone=phone,
                )
                self.db.add(client)
            return client
        except IntegrityError:
            # A concurrent booking created the same client first.
            winner = self.find_by_email(consultant_id, normalized)
            if winner is None:
                raise
            return winner

    def record_booking(self, client_id: str) -> None:
        self.conditional_update(
            update(Client)
            .where(Client.id == client_id)
            .values(total_sessions=Client.total_sessions + 1),
            client_id,
        )

    def add_paid_amount(self, client_id: str, amount: Decimal) -> None:
        self.conditional_update(
            update(Client)
            .where(Client.id == client_id)
            .values(total_amount_paid=Client.total_amount_paid + amount),
            client_id,
        )
