# backend/consultbook/services/session_state.py
"""
Session state machine.

    PENDING   -> CONFIRMED | CANCELLED | ABANDONED
    CONFIRMED -> ONGOING | NO_SHOW | RETURNED
    ONGOING   -> COMPLETED | NO_SHOW
    COMPLETED -> RETURNED

CONFIRMED is reachable only with a SUCCESS payment in hand and RETURNED only
with a refunded one; there is no generic way to set either. Every
transition is applied as a compare-and-set on the current status.
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

from ..core.exceptions import InvalidStateTransitionException
from ..models.payment import PaymentTransaction, PaymentTransactionStatus
from ..models.session import ConsultationSession, SessionStatus
from ..repositories.session_repository import SessionRepository

S = SessionStatus

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.PENDING.value: frozenset({S.CONFIRMED.value, S.CANCELLED.value, S.ABANDONED.value}),
    S.CONFIRMED.value: frozenset({S.ONGOING.value, S.NO_SHOW.value, S.RETURNED.value}),
    S.ONGOING.value: frozenset({S.COMPLETED.value, S.NO_SHOW.value}),
    S.COMPLETED.value: frozenset({S.RETURNED.value}),
    S.CANCELLED.value: frozenset(),
    S.ABANDONED.value: frozenset(),
    S.NO_SHOW.value: frozenset(),
    S.RETURNED.value: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

_REFUNDED = {
    PaymentTransactionStatus.REFUNDED.value,
    PaymentTransactionStatus.PARTIALLY_REFUNDED.value,
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def assert_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransitionException(current, target)


def _timestamps_for(target: str, now: datetime) -> Dict[str, Any]:
    if target == S.CONFIRMED.value:
        return {"confirmed_at": now, "reservation_expires_at": None}
    if target == S.ONGOING.value:
        return {"started_at": now}
    if target == S.COMPLETED.value:
        return {"completed_at": now}
    if target in (S.CANCELLED.value, S.ABANDONED.value):
        return {"cancelled_at": now}
    return {}


class SessionStateMachine:
    def __init__(self, sessions: SessionRepository):
        self.sessions = sessions

    def transition(
        self,
        session: ConsultationSession,
        target: SessionStatus,
        *,
        now: datetime,
        settled_payment: Optional[PaymentTransaction] = None,
        refunded_payment: Optional[PaymentTransaction] = None,
        unless_payment_pending: bool = False,
        **values: Any,
    ) -> bool:
        """
        Apply ``session.status -> target``.

        Raises InvalidStateTransitionException for a move the table forbids.
        Returns False when another writer changed the status first.
        """
        current = session.status
        target_value = target.value
        assert_transition(current, target_value)

        if target_value == S.CONFIRMED.value:
            if (
                settled_payment is None
                or settled_payment.session_id != session.id
                or settled_payment.status != PaymentTransactionStatus.SUCCESS.value
            ):
                raise InvalidStateTransitionException(
                    current,
                    target_value,
                    message="A session is confirmed only by a successful payment settlement",
                )
        if target_value == S.RETURNED.value:
            if (
                refunded_payment is None
                or refunded_payment.session_id != session.id
                or refunded_payment.status not in _REFUNDED
            ):
                raise InvalidStateTransitionException(
                    current,
                    target_value,
                    message="A session is returned only through a processed refund",
                )

        fields = _timestamps_for(target_value, now)
        fields.update(values)
        return self.sessions.compare_and_set_status(
            session.id, [current], target_value, unless_payment_pending=unless_payment_pending, **fields
        )
