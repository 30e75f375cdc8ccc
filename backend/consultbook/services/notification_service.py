# backend/consultbook/services/notification_service.py
"""
Session emails.

Delivery goes through an ``EmailSender``: Resend in deployed environments,
the console sender locally and in tests. Senders raise on failure so the
outbox can retry; the message text is deliberately plain.
"""

import logging
from typing import Any, Dict, List, Optional

import resend
from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import NotFoundException, ServiceException
from ..core.timezone_utils import format_hhmm
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)


class ConsoleEmailSender:
    """Logs instead of sending; keeps a copy of every message for inspection."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def send(self, *, to_email: str, subject: str, text: str, idempotency_key: str) -> Dict[str, Any]:
        message = {"to": to_email, "subject": subject, "text": text, "idempotency_key": idempotency_key}
        self.sent.append(message)
        logger.info("Console email to %s: %s", to_email, subject)
        return {"id": f"console-{len(self.sent)}"}


class ResendEmailSender:
    def __init__(self, api_key: str, from_email: str) -> None:
        if not api_key:
            raise ServiceException("Resend API key not configured")
        resend.api_key = api_key
        self.from_email = from_email

    def send(self, *, to_email: str, subject: str, text: str, idempotency_key: str) -> Dict[str, Any]:
        try:
            return dict(
                resend.Emails.send(
                    {
                        "from": self.from_email,
                        "to": to_email,
                        "subject": subject,
                        "text": text,
                        "headers": {"X-Entity-Ref-ID": idempotency_key},
                    }
                )
            )
        except Exception as exc:
            logger.error("Failed to send email to %s: %s", to_email, exc)
            raise ServiceException(f"Email sending failed: {exc}") from exc


def build_email_sender(config: Optional[Settings] = None):
    config = config or default_settings
    api_key = config.resend_api_key.get_secret_value() if config.resend_api_key else ""
    if config.email_provider == "console" or not api_key:
        return ConsoleEmailSender()
    return ResendEmailSender(api_key, config.from_email)


class NotificationService(BaseService):
    def __init__(self, db: Session, sender: Any, config: Optional[Settings] = None):
        super().__init__(db)
        self.sender = sender
        self.config = config or default_settings
        self.sessions = RepositoryFactory.create_session_repository(db)

    def _load(self, session_id: str):
        with self.transaction():
            session = self.sessions.get_by_id(session_id)
            if session is None:
                raise NotFoundException("Session not found", code="SESSION_NOT_FOUND")
            # touch relationships while the transaction is open
            return session, session.client, session.consultant

    @BaseService.measure_operation("send_session_confirmed")
    def send_session_confirmed(self, session_id: str, *, idempotency_key: str) -> None:
        session, client, consultant = self._load(session_id)
        when = f"{session.scheduled_date.isoformat()} {format_hhmm(session.start_time)} ({session.timezone})"
        lines = [
            f"Hi {client.name},",
            "",
            f"Your session \"{session.title}\" with {consultant.name} is confirmed for {when}.",
            f"Amount paid: {session.amount} {session.currency}.",
        ]
        if session.meeting_link:
            lines.append(f"Join link: {session.meeting_link}")
        self.sender.send(
            to_email=client.email,
            subject=f"Confirmed: {session.title}",
            text="\n".join(lines),
            idempotency_key=idempotency_key,
        )
        self.log_operation("confirmation_email_sent", session_id=session_id)

    @BaseService.measure_operation("send_session_refunded")
    def send_session_refunded(
        self, session_id: str, *, amount: str, currency: str, idempotency_key: str
    ) -> None:
        session, client, _ = self._load(session_id)
        self.sender.send(
            to_email=client.email,
            subject=f"Refund issued: {session.title}",
            text=(
                f"Hi {client.name},\n\n"
                f"A refund of {amount} {currency} for \"{session.title}\" has been issued. "
                "It may take 5-7 business days to appear on your statement."
            ),
            idempotency_key=idempotency_key,
        )
        self.log_operation("refund_email_sent", session_id=session_id)
