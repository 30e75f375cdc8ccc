# backend/consultbook/repositories/payment_repository.py
"""
Payment ledger data access.

``settle`` is the compare-and-set at the centre of reconciliation: it moves a
transaction out of PENDING with a single conditional UPDATE, so whichever
signal executes it first wins and every later caller sees rowcount 0.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.payment import (
    PaymentTransaction,
    PaymentTransactionStatus,
    PaymentTransactionType,
)
from ..models.session import ConsultationSession
from .base_repository import BaseRepository

_TERMINAL_SETTLEMENT = {
    PaymentTransactionStatus.SUCCESS.value,
    PaymentTransactionStatus.FAILED.value,
}


class PaymentRepository(BaseRepository[PaymentTransaction]):
    def __init__(self, db: Session):
        super().__init__(db, PaymentTransaction)

    def get_by_order_id(self, order_id: str) -> Optional[PaymentTransaction]:
        return self.db.execute(
            select(PaymentTransaction).where(PaymentTransaction.gateway_order_id == order_id)
        ).scalar_one_or_none()

    def get_pending_for_session(self, session_id: str) -> Optional[PaymentTransaction]:
        return self.db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.session_id == session_id,
                PaymentTransaction.status == PaymentTransactionStatus.PENDING.value,
            )
        ).scalar_one_or_none()

    def get_pending_for_quotation(self, quotation_id: str) -> Optional[PaymentTransaction]:
        return self.db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.quotation_id == quotation_id,
                PaymentTransaction.status == PaymentTransactionStatus.PENDING.value,
            )
        ).scalar_one_or_none()

    def get_successful_payment(self, session_id: str) -> Optional[PaymentTransaction]:
        """The settled payment a refund applies to (SUCCESS or already partly refunded)."""
        return self.db.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.session_id == session_id,
                PaymentTransaction.transaction_type == PaymentTransactionType.PAYMENT.value,
                PaymentTransaction.status.in_(
                    [
                        PaymentTransactionStatus.SUCCESS.value,
                        PaymentTransactionStatus.PARTIALLY_REFUNDED.value,
                    ]
                ),
            )
            .order_by(PaymentTransaction.created_at.desc())
        ).scalars().first()

    def list_for_session(self, session_id: str) -> List[PaymentTransaction]:
        return list(
            self.db.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.session_id == session_id)
                .order_by(PaymentTransaction.created_at, PaymentTransaction.id)
            ).scalars().all()
        )

    def create_pending(self, **values: Any) -> Optional[PaymentTransaction]:
        """Insert a PENDING payment; None if its session or quotation already has one."""
        try:
            with self.db.begin_nested():
                txn = PaymentTransaction(
                    status=PaymentTransactionStatus.PENDING.value,
                    transaction_type=PaymentTransactionType.PAYMENT.value,
                    **values,
                )
                self.db.add(txn)
            return txn
        except IntegrityError:
            self.logger.info(
                "Pending transaction already exists",
                extra={
                    "session_id": values.get("session_id"),
                    "quotation_id": values.get("quotation_id"),
                },
            )
            return None

    def settle(
        self,
        transaction_id: str,
        status: str,
        *,
        settled_by: str,
        processed_at: datetime,
        gateway_payment_id: Optional[str] = None,
        failure_code: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """PENDING -> SUCCESS|FAILED. True only for the caller that performed the move."""
        if status not in _TERMINAL_SETTLEMENT:
            raise ValueError(f"Settlement target must be SUCCESS or FAILED, got {status}")
        values: dict[str, Any] = {
            "status": status,
            "settled_by": settled_by,
            "processed_at": processed_at,
        }
        if gateway_payment_id:
            values["gateway_payment_id"] = gateway_payment_id
        if failure_code is not None:
            values["failure_code"] = failure_code[:100]
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        updated = self.conditional_update(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                PaymentTransaction.status == PaymentTransactionStatus.PENDING.value,
            )
            .values(**values),
            transaction_id,
        )
        return updated == 1

    def mark_refunded(
        self, transaction_id: str, expected_status: str, new_status: str, refunded_amount: Decimal
    ) -> bool:
        updated = self.conditional_update(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                PaymentTransaction.status == expected_status,
            )
            .values(status=new_status, refunded_amount=refunded_amount),
            transaction_id,
        )
        return updated == 1

    def record_client_failure(
        self, transaction_id: str, error_code: Optional[str], error_description: Optional[str]
    ) -> bool:
        """Note a browser-reported failure without settling the row."""
        updated = self.conditional_update(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                PaymentTransaction.status == PaymentTransactionStatus.PENDING.value,
            )
            .values(
                failure_code=(error_code or "CLIENT_REPORTED")[:100],
                failure_reason=error_description,
            ),
            transaction_id,
        )
        return updated == 1

    def list_stale_pending(
        self,
        expired_before: datetime,
        limit: int = 100,
        *,
        quotation_opened_before: Optional[datetime] = None,
    ) -> List[PaymentTransaction]:
        """
        PENDING payments whose reservation expired before ``expired_before``,
        plus quotation checkouts opened before ``quotation_opened_before``.
        """
        stale = and_(
            PaymentTransaction.session_id.is_not(None),
            ConsultationSession.reservation_expires_at <= expired_before,
        )
        if quotation_opened_before is not None:
            stale = or_(
                stale,
                and_(
                    PaymentTransaction.quotation_id.is_not(None),
                    PaymentTransaction.created_at <= quotation_opened_before,
                ),
            )
        stmt = (
            select(PaymentTransaction)
            .outerjoin(ConsultationSession, ConsultationSession.id == PaymentTransaction.session_id)
            .where(
                PaymentTransaction.status == PaymentTransactionStatus.PENDING.value,
                PaymentTransaction.transaction_type == PaymentTransactionType.PAYMENT.value,
                stale,
            )
            .order_by(PaymentTransaction.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
