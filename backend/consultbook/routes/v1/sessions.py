# backend/consultbook/routes/v1/sessions.py
"""
Session routes - API v1

Endpoints:
    GET /sessions - Consultant's sessions, optionally filtered by status
    GET /sessions/{session_id} - One session
    PATCH /sessions/{session_id} - Edit title or notes
    POST /sessions/{session_id}/cancel - Cancel a pending session (client or consultant)
    POST /sessions/{session_id}/mark - Consultant marks COMPLETED or NO_SHOW
    POST /sessions/{session_id}/refund - Consultant refunds a paid session
"""

import logging
from typing import List, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from ...api.dependencies.auth import Principal, get_optional_principal, require_consultant
from ...api.dependencies.services import get_refund_service, get_session_service
from ...core.exceptions import DomainException
from ...schemas.session import (
    RefundRequest,
    RefundResponse,
    SessionCancelRequest,
    SessionMarkRequest,
    SessionResponse,
    SessionUpdate,
)
from ...services.refund_service import RefundService
from ...services.session_service import SessionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("", response_model=List[SessionResponse])
def list_sessions(
    status_filter: Optional[str] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(require_consultant),
    session_service: SessionService = Depends(get_session_service),
) -> List[SessionResponse]:
    try:
        sessions = session_service.list_sessions(principal.subject, status_filter, skip=skip, limit=limit)
    except DomainException as exc:
        handle_domain_exception(exc)
    return [SessionResponse.model_validate(session) for session in sessions]


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: str,
    principal: Principal = Depends(require_consultant),
    session_service: SessionService = Depends(get_session_service),
) -> SessionResponse:
    try:
        session = session_service.get_session(session_id, principal.subject)
    except DomainException as exc:
        handle_domain_exception(exc)
    return SessionResponse.model_validate(session)


@router.patch("/{session_id}", response_model=SessionResponse)
def update_session(
    session_id: str,
    payload: SessionUpdate,
    principal: Principal = Depends(require_consultant),
    session_service: SessionService = Depends(get_session_service),
) -> SessionResponse:
    try:
        session = session_service.update_session(
            session_id, payload.model_dump(exclude_unset=True), consultant_id=principal.subject
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/cancel", response_model=SessionResponse)
def cancel_session(
    session_id: str,
    payload: Optional[SessionCancelRequest] = Body(None),
    principal: Optional[Principal] = Depends(get_optional_principal),
    session_service: SessionService = Depends(get_session_service),
) -> SessionResponse:
    """
    Cancel a session that has not been paid.

    Anonymous callers act as the client and need the session id returned at
    booking time. A consultant token scopes the lookup to that consultant.
    """
    is_consultant = principal is not None and principal.is_consultant
    try:
        session = session_service.cancel_session(
            session_id,
            cancelled_by="consultant" if is_consultant else "client",
            consultant_id=principal.subject if is_consultant and principal else None,
            reason=payload.reason if payload else None,
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/mark", response_model=SessionResponse)
def mark_session(
    session_id: str,
    payload: SessionMarkRequest,
    principal: Principal = Depends(require_consultant),
    session_service: SessionService = Depends(get_session_service),
) -> SessionResponse:
    try:
        session = session_service.mark_session(
            session_id, payload.status, consultant_id=principal.subject
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/refund", response_model=RefundResponse)
def refund_session(
    session_id: str,
    payload: Optional[RefundRequest] = Body(None),
    principal: Principal = Depends(require_consultant),
    refund_service: RefundService = Depends(get_refund_service),
) -> RefundResponse:
    """Full refund by default; pass ``amount`` for a partial one."""
    try:
        result = refund_service.refund_session(
            session_id,
            payload.amount if payload else None,
            consultant_id=principal.subject,
            reason=payload.reason if payload else None,
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return RefundResponse.model_validate(result, from_attributes=True)
