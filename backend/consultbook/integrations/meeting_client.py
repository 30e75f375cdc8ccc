"""Meeting-link provider client (Zoom REST API)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, cast
from uuid import uuid4

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)


class MeetingProviderError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ZoomMeetingClient:
    """Creates scheduled meetings; only ever called for CONFIRMED sessions."""

    platform = "zoom"

    def __init__(
        self,
        *,
        access_token: str | SecretStr,
        base_url: str = "https://api.zoom.us/v2",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        token = access_token.get_secret_value() if isinstance(access_token, SecretStr) else access_token
        if not token:
            raise ValueError("Meeting provider token must be provided")
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def create_meeting(
        self,
        *,
        topic: str,
        start_time_iso: str,
        duration_minutes: int,
        timezone: str,
        timeout: httpx.Timeout,
    ) -> Dict[str, Any]:
        body = {
            "topic": topic,
            "type": 2,
            "start_time": start_time_iso,
            "duration": duration_minutes,
            "timezone": timezone,
            "settings": {"join_before_host": False, "waiting_room": True},
        }
        try:
            response = self._client.post("/users/me/meetings", json=body, timeout=timeout)
            response.raise_for_status()
        except httpx.TimeoutException:
            raise
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Meeting provider error %s: %s",
                exc.response.status_code,
                exc.response.text[:500],
            )
            raise MeetingProviderError(
                f"Meeting provider responded with status {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise MeetingProviderError("Failed to reach meeting provider") from exc
        payload = cast(Dict[str, Any], response.json())
        return {
            "join_url": payload.get("join_url"),
            "meeting_id": str(payload.get("id") or ""),
            "password": payload.get("password"),
        }


class FakeMeetingClient(ZoomMeetingClient):
    """In-memory meeting provider that records every call."""

    platform = "fake"

    def __init__(self) -> None:
        super().__init__(access_token="fake-meeting-token")
        self.created: List[Dict[str, Any]] = []
        self.fail_next = 0

    def create_meeting(
        self,
        *,
        topic: str,
        start_time_iso: str,
        duration_minutes: int,
        timezone: str,
        timeout: httpx.Timeout,
    ) -> Dict[str, Any]:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise MeetingProviderError("simulated meeting provider outage", status_code=503)
        meeting_id = uuid4().hex[:11]
        meeting = {
            "join_url": f"https://meet.example.test/j/{meeting_id}",
            "meeting_id": meeting_id,
            "password": None,
            "topic": topic,
            "start_time": start_time_iso,
        }
        self.created.append(meeting)
        return meeting


def build_meeting_client(config: Any) -> ZoomMeetingClient:
    token = config.meeting_provider_token.get_secret_value()
    if token:
        return ZoomMeetingClient(access_token=token, base_url=config.meeting_provider_base_url)
    logger.warning("Meeting provider token not configured; meeting links will be placeholders")
    return FakeMeetingClient()
