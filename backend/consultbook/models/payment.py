# backend/consultbook/models/payment.py
"""
Payment ledger.

PaymentTransaction rows are append-only. A payment row is settled exactly
once (PENDING to SUCCESS or FAILED) by a conditional update; refunds move a
SUCCESS payment to REFUNDED/PARTIALLY_REFUNDED and append a REFUND row.

A transaction pays for exactly one session or one quotation. The partial
unique indexes keep at most one PENDING transaction per payable.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class PaymentTransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class PaymentTransactionType(str, Enum):
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"


class SettlementSource(str, Enum):
    VERIFY = "verify"
    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"
    CANCELLATION = "cancellation"


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    session_id = Column(String(26), ForeignKey("sessions.id"), nullable=True, index=True)
    quotation_id = Column(String(26), ForeignKey("quotations.id"), nullable=True, index=True)
    consultant_id = Column(String(26), ForeignKey("consultants.id"), nullable=False, index=True)
    client_id = Column(String(26), ForeignKey("clients.id"), nullable=True)
    parent_transaction_id = Column(
        String(26), ForeignKey("payment_transactions.id"), nullable=True
    )

    transaction_type = Column(String(20), nullable=False, default=PaymentTransactionType.PAYMENT.value)
    amount = Column(Numeric(10, 2), nullable=False)
    amount_minor = Column(Integer, nullable=False, comment="Amount in paise sent to the gateway")
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(30), nullable=False, default=PaymentTransactionStatus.PENDING.value)

    gateway_order_id = Column(String(64), nullable=True, unique=True)
    gateway_payment_id = Column(String(64), nullable=True, index=True)
    gateway_refund_id = Column(String(64), nullable=True)
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=0)

    failure_code = Column(String(100), nullable=True)
    failure_reason = Column(Text, nullable=True)
    settled_by = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    session = relationship("ConsultationSession", back_populates="transactions")
    quotation = relationship("Quotation", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_transactions_amount_non_negative"),
        CheckConstraint(
            "(session_id IS NULL) <> (quotation_id IS NULL)",
            name="ck_payment_transactions_one_payable",
        ),
        Index(
            "uq_payment_transactions_one_pending",
            "session_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index(
            "uq_payment_transactions_one_pending_quotation",
            "quotation_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("ix_payment_transactions_status_created", "status", "created_at"),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentTransactionStatus.PENDING.value

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction {self.id} {self.transaction_type} {self.amount} "
            f"status={self.status}>"
        )
