# backend/consultbook/repositories/quotation_repository.py
"""Quotation data access."""

from datetime import datetime
from typing import List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..models.quotation import Quotation, QuotationStatus
from .base_repository import BaseRepository


class QuotationRepository(BaseRepository[Quotation]):
    def __init__(self, db: Session):
        super().__init__(db, Quotation)

    def list_for_consultant(self, consultant_id: str) -> List[Quotation]:
        return list(
            self.db.execute(
                select(Quotation)
                .where(Quotation.consultant_id == consultant_id)
                .order_by(Quotation.created_at.desc())
            ).scalars().all()
        )

    def mark_accepted(self, quotation_id: str, accepted_at: datetime) -> bool:
        """SENT -> ACCEPTED. False if the quotation was not awaiting payment."""
        updated = self.conditional_update(
            update(Quotation)
            .where(
                Quotation.id == quotation_id,
                Quotation.status == QuotationStatus.SENT.value,
            )
            .values(status=QuotationStatus.ACCEPTED.value, accepted_at=accepted_at),
            quotation_id,
        )
        return updated == 1
