# backend/consultbook/models/__init__.py
"""
SQLAlchemy models. Importing this package registers every table on
``Base.metadata``.
"""

from .availability import AvailabilitySlot, SessionType, WeeklyAvailabilityPattern
from .consultant import Client, Consultant
from .event_outbox import EventOutbox, EventOutboxStatus, OutboxEventType
from .payment import (
    PaymentTransaction,
    PaymentTransactionStatus,
    PaymentTransactionType,
    SettlementSource,
)
from .quotation import Quotation, QuotationStatus
from .session import ConsultationSession, SessionPaymentStatus, SessionStatus
from .webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "AvailabilitySlot",
    "Client",
    "Consultant",
    "ConsultationSession",
    "EventOutbox",
    "EventOutboxStatus",
    "OutboxEventType",
    "PaymentTransaction",
    "PaymentTransactionStatus",
    "PaymentTransactionType",
    "Quotation",
    "QuotationStatus",
    "SessionPaymentStatus",
    "SessionStatus",
    "SessionType",
    "SettlementSource",
    "WebhookEvent",
    "WebhookEventStatus",
    "WeeklyAvailabilityPattern",
]
