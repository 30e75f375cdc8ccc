# backend/consultbook/routes/v1/availability.py
"""
Availability routes - API v1

Public slot lookups plus the consultant's pattern and slot administration.

Endpoints:
    GET /consultants/{consultant_id}/available-slots - Open slots in a date range
    GET /consultants/by-slug/{slug}/available-slots - Open slots for the public booking page
    GET /availability/patterns - List own weekly patterns
    POST /availability/patterns - Add one weekly window
    PUT /availability/patterns/{pattern_id} - Change a window
    DELETE /availability/patterns/{pattern_id} - Remove a window
    POST /availability/patterns/bulk - Replace all windows of a session type
    POST /availability/generate-slots - Materialize slots ahead of time
    POST /availability/slots/block - Block or unblock an unbooked slot
"""

from datetime import date
import logging
from typing import List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ...api.dependencies.auth import Principal, require_consultant
from ...api.dependencies.services import get_availability_service
from ...core.exceptions import DomainException
from ...schemas.availability import (
    AvailableSlotsResponse,
    GenerateSlotsRequest,
    GenerateSlotsResponse,
    OpenSlotResponse,
    PatternBulkReplace,
    PatternCreate,
    PatternResponse,
    PatternUpdate,
    SessionTypeLiteral,
    SlotBlockRequest,
    SlotResponse,
)
from ...services.availability_resolver import ResolvedAvailability
from ...services.availability_service import AvailabilityService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["availability-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _slots_response(
    consultant_id: str,
    session_type: str,
    start_date: date,
    end_date: date,
    timezone: Optional[str],
    resolved: ResolvedAvailability,
) -> AvailableSlotsResponse:
    slots = [OpenSlotResponse.model_validate(slot.as_dict()) for slot in resolved.slots]
    grouped = {
        day: [OpenSlotResponse.model_validate(slot.as_dict()) for slot in day_slots]
        for day, day_slots in resolved.by_date().items()
    }
    return AvailableSlotsResponse(
        consultant_id=consultant_id,
        session_type=session_type,
        start_date=start_date,
        end_date=end_date,
        timezone=timezone,
        slots=slots,
        slots_by_date=grouped,
        total=len(slots),
    )


# ============================================================================
# Public reads
# ============================================================================


@router.get("/consultants/by-slug/{slug}/available-slots", response_model=AvailableSlotsResponse)
def get_available_slots_by_slug(
    slug: str,
    session_type: SessionTypeLiteral = Query("PERSONAL"),
    start_date: Optional[date] = Query(None),
    days: Optional[int] = Query(None, ge=1, le=60),
    timezone: Optional[str] = Query(None, max_length=64),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailableSlotsResponse:
    try:
        consultant, first, last, resolved = availability_service.get_available_slots_by_slug(
            slug, session_type, start_date=start_date, days=days, timezone=timezone
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return _slots_response(
        consultant.id, session_type, first, last, timezone or consultant.timezone, resolved
    )


@router.get("/consultants/{consultant_id}/available-slots", response_model=AvailableSlotsResponse)
def get_available_slots(
    consultant_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    session_type: SessionTypeLiteral = Query("PERSONAL"),
    timezone: Optional[str] = Query(None, max_length=64),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailableSlotsResponse:
    """Open slots, grouped by date, for a consultant and session type."""
    try:
        resolved = availability_service.get_available_slots(
            consultant_id, session_type, start_date, end_date, timezone=timezone
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return _slots_response(consultant_id, session_type, start_date, end_date, timezone, resolved)


# ============================================================================
# Consultant administration
# ============================================================================


@router.get("/availability/patterns", response_model=List[PatternResponse])
def list_patterns(
    session_type: Optional[SessionTypeLiteral] = Query(None),
    principal: Principal = Depends(require_consultant),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> List[PatternResponse]:
    patterns = availability_service.list_patterns(principal.subject, session_type)
    return [PatternResponse.model_validate(pattern) for pattern in patterns]


@router.post(
    "/availability/patterns",
    response_model=PatternResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_pattern(
    payload: PatternCreate,
    principal: Principal = Depends(require_consultant),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> PatternResponse:
    try:
        pattern = availability_service.create_pattern(
            principal.subject, payload.model_dump(exclude_none=True)
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return PatternResponse.model_validate(pattern)


@router.put("/availability/patterns/{pattern_id}", response_model=PatternResponse)
def update_pattern(
    pattern_id: str,
    payload: PatternUpdate,
    principal: Principal = Depends(require_consultant),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> PatternResponse:
    try:
        pattern = availability_service.update_pattern(
            principal.subject, pattern_id, payload.model_dump(exclude_unset=True)
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return PatternResponse.model_validate(pattern)


@router.delete("/availability/patterns/{pattern_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_pattern(
    pattern_id: str,
    principal: Principal = Depends(require_consultant),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> Response:
    try:
        availability_service.delete_pattern(principal.subject, pattern_id)
    except DomainException as exc:
        handle_domain_exception(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/availability/patterns/bulk", response_model=List[PatternResponse])
def replace_patterns(
    payload: PatternBulkReplace,
    principal: Principal = Depends(require_consultant),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> List[PatternResponse]:
    """Replace every window of one session type in a single transaction."""
    try:
        patterns = availability_service.replace_patterns(
            principal.subject,
            payload.session_type,
            [window.model_dump(exclude_none=True) for window in payload.windows],
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return [PatternResponse.model_validate(pattern) for pattern in patterns]


@router.post("/availability/generate-slots", response_model=GenerateSlotsResponse)
def generate_slots(
    payload: GenerateSlotsRequest,
    principal: Principal = Depends(require_consultant),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> GenerateSlotsResponse:
    try:
        counts = availability_service.generate_slots(
            principal.subject, payload.session_type, payload.start_date, payload.end_date
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return GenerateSlotsResponse(**counts)


@router.post("/availability/slots/block", response_model=SlotResponse)
def set_slot_blocked(
    payload: SlotBlockRequest,
    principal: Principal = Depends(require_consultant),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> SlotResponse:
    try:
        slot = availability_service.set_slot_blocked(principal.subject, payload.slot_id, payload.blocked)
    except DomainException as exc:
        handle_domain_exception(exc)
    return SlotResponse.model_validate(slot)
