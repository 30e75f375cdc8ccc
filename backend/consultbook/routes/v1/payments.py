# backend/consultbook/routes/v1/payments.py
"""
Payment routes - API v1

Endpoints:
    GET /payments/config - Public checkout key and currency
    POST /payments/verify - Browser callback after checkout (signed by the gateway)
    POST /payments/failed - Browser-reported checkout failure
    POST /payments/webhook - Gateway webhook (HMAC over the raw body)
"""

import asyncio
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ...api.dependencies.services import get_config, get_gateway, get_settlement_service
from ...core.config import Settings
from ...core.exceptions import DomainException
from ...integrations.razorpay_client import RazorpayClient
from ...schemas.payment import (
    PaymentConfigResponse,
    PaymentFailedRequest,
    PaymentVerifyRequest,
    SettlementResponse,
    WebhookAck,
)
from ...services.settlement_service import PaymentSettlementService, SettlementResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _settlement_response(result: SettlementResult) -> SettlementResponse:
    return SettlementResponse(
        outcome=result.outcome.value,
        transaction_id=result.transaction_id,
        session_id=result.session_id,
        payment_status=result.payment_status,
        session_status=result.session_status,
        detail=result.detail,
        quotation_id=result.quotation_id,
    )


@router.get("/config", response_model=PaymentConfigResponse)
def get_payment_config(
    gateway: RazorpayClient = Depends(get_gateway),
    config: Settings = Depends(get_config),
) -> PaymentConfigResponse:
    return PaymentConfigResponse(key_id=gateway.key_id, currency=config.default_currency)


@router.post("/verify", response_model=SettlementResponse)
def verify_payment(
    payload: PaymentVerifyRequest,
    settlement_service: PaymentSettlementService = Depends(get_settlement_service),
) -> SettlementResponse:
    """
    Settle from the checkout callback.

    An already settled payment is a normal 200 answer with outcome
    ``already_settled``; a provider timeout is a retriable 504 and the
    webhook or reconciliation finishes the job.
    """
    try:
        result = settlement_service.verify_payment(
            payload.order_id, payload.payment_id, payload.signature
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return _settlement_response(result)


@router.post("/failed", response_model=SettlementResponse)
def report_payment_failed(
    payload: PaymentFailedRequest,
    settlement_service: PaymentSettlementService = Depends(get_settlement_service),
) -> SettlementResponse:
    try:
        result = settlement_service.mark_failed(
            payload.order_id, payload.error_code, payload.error_description
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return _settlement_response(result)


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
    settlement_service: PaymentSettlementService = Depends(get_settlement_service),
) -> WebhookAck:
    # The signature covers the exact bytes received, so read the body unparsed.
    raw_body = await request.body()
    try:
        result = await asyncio.to_thread(
            settlement_service.handle_webhook,
            raw_body,
            x_razorpay_signature,
            x_razorpay_event_id,
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return WebhookAck(outcome=result.outcome.value, detail=result.detail)
