# backend/consultbook/services/meeting_service.py
"""Meeting links for confirmed sessions. Best-effort: failures never touch session status."""

from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.remote_call import Deadline, call_with_deadline
from ..core.timezone_utils import ensure_utc
from ..integrations.meeting_client import ZoomMeetingClient
from ..models.session import SessionStatus
from ..repositories.factory import RepositoryFactory
from .base import BaseService

LINKABLE_STATUSES = frozenset({SessionStatus.CONFIRMED.value, SessionStatus.ONGOING.value})


class MeetingLinkService(BaseService):
    def __init__(self, db: Session, client: ZoomMeetingClient, config: Optional[Settings] = None):
        super().__init__(db)
        self.client = client
        self.config = config or default_settings
        self.sessions = RepositoryFactory.create_session_repository(db)

    @BaseService.measure_operation("ensure_meeting_link")
    def ensure_meeting_link(self, session_id: str) -> Optional[str]:
        """
        Create a meeting if the session has none.

        Returns the link, or None when the session no longer needs one.
        Provider errors and timeouts propagate so the outbox retries.
        """
        with self.transaction():
            session = self.sessions.get_by_id(session_id)
            if session is None:
                self.logger.warning("Meeting link requested for missing session %s", session_id)
                return None
            if session.meeting_link:
                return session.meeting_link
            if session.status not in LINKABLE_STATUSES:
                self.logger.info(
                    "Skipping meeting link for session in status %s",
                    session.status,
                    extra={"session_id": session_id},
                )
                return None
            meeting_request = {
                "topic": session.title,
                "start_time_iso": ensure_utc(session.scheduled_start_at).strftime("%Y-%m-%dT%H:%M:%SZ"),
                "duration_minutes": session.duration_minutes,
                "timezone": session.timezone,
            }

        meeting = call_with_deadline(
            Deadline("create_meeting", self.config.meeting_timeout_seconds),
            lambda timeout: self.client.create_meeting(**meeting_request, timeout=timeout),
        )

        with self.transaction():
            stored = self.sessions.set_meeting_details(
                session_id,
                link=meeting["join_url"],
                meeting_id=meeting.get("meeting_id"),
                password=meeting.get("password"),
                platform=self.client.platform,
            )
            link = self.sessions.get_by_id(session_id).meeting_link
        if stored:
            self.log_operation("meeting_link_created", session_id=session_id, platform=self.client.platform)
        return link
