# backend/consultbook/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Remote clients live on ``app.state`` for the lifetime of the process; every
request gets fresh service objects bound to its own session.
"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ...core.config import Settings, get_settings
from ...integrations.razorpay_client import RazorpayClient
from ...services.availability_service import AvailabilityService
from ...services.booking_service import BookingService
from ...services.payment_order_service import PaymentOrderCoordinator
from ...services.refund_service import RefundService
from ...services.session_service import SessionService
from ...services.settlement_service import PaymentSettlementService
from .database import get_db


def get_config(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_gateway(request: Request) -> RazorpayClient:
    return request.app.state.gateway


def get_availability_service(
    db: Session = Depends(get_db), config: Settings = Depends(get_config)
) -> AvailabilityService:
    return AvailabilityService(db, config)


def get_booking_service(
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
    config: Settings = Depends(get_config),
) -> BookingService:
    return BookingService(db, gateway, config)


def get_order_coordinator(
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
    config: Settings = Depends(get_config),
) -> PaymentOrderCoordinator:
    return PaymentOrderCoordinator(db, gateway, config)


def get_settlement_service(
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
    config: Settings = Depends(get_config),
) -> PaymentSettlementService:
    return PaymentSettlementService(db, gateway, config)


def get_session_service(
    db: Session = Depends(get_db), config: Settings = Depends(get_config)
) -> SessionService:
    return SessionService(db, config)


def get_refund_service(
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
    config: Settings = Depends(get_config),
) -> RefundService:
    return RefundService(db, gateway, config)
