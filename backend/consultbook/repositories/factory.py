# backend/consultbook/repositories/factory.py
"""
Repository factory.

Services build their repositories through here so tests can patch a single
seam when they need a different implementation.
"""

from sqlalchemy.orm import Session

from .availability_repository import PatternRepository, SlotRepository
from .consultant_repository import ClientRepository, ConsultantRepository
from .event_outbox_repository import EventOutboxRepository
from .payment_repository import PaymentRepository
from .quotation_repository import QuotationRepository
from .session_repository import SessionRepository
from .webhook_event_repository import WebhookEventRepository


class RepositoryFactory:
    @staticmethod
    def create_consultant_repository(db: Session) -> ConsultantRepository:
        return ConsultantRepository(db)

    @staticmethod
    def create_client_repository(db: Session) -> ClientRepository:
        return ClientRepository(db)

    @staticmethod
    def create_pattern_repository(db: Session) -> PatternRepository:
        return PatternRepository(db)

    @staticmethod
    def create_slot_repository(db: Session) -> SlotRepository:
        return SlotRepository(db)

    @staticmethod
    def create_session_repository(db: Session) -> SessionRepository:
        return SessionRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> PaymentRepository:
        return PaymentRepository(db)

    @staticmethod
    def create_quotation_repository(db: Session) -> QuotationRepository:
        return QuotationRepository(db)

    @staticmethod
    def create_event_outbox_repository(db: Session) -> EventOutboxRepository:
        return EventOutboxRepository(db)

    @staticmethod
    def create_webhook_event_repository(db: Session) -> WebhookEventRepository:
        return WebhookEventRepository(db)
