"""Payment request/response schemas. Checkout callbacks use Razorpay's field names."""

from typing import Optional

from pydantic import AliasChoices, Field

from .base import StandardizedModel, StrictModel


class PaymentVerifyRequest(StrictModel):
    order_id: str = Field(..., validation_alias=AliasChoices("order_id", "razorpay_order_id"))
    payment_id: str = Field(..., validation_alias=AliasChoices("payment_id", "razorpay_payment_id"))
    signature: str = Field(..., validation_alias=AliasChoices("signature", "razorpay_signature"))


class PaymentFailedRequest(StrictModel):
    order_id: str = Field(..., validation_alias=AliasChoices("order_id", "razorpay_order_id"))
    error_code: Optional[str] = Field(None, max_length=100)
    error_description: Optional[str] = Field(None, max_length=1000)


class SettlementResponse(StandardizedModel):
    outcome: str
    transaction_id: Optional[str] = None
    session_id: Optional[str] = None
    payment_status: Optional[str] = None
    session_status: Optional[str] = None
    detail: Optional[str] = None
    quotation_id: Optional[str] = None


class WebhookAck(StandardizedModel):
    received: bool = True
    outcome: str
    detail: Optional[str] = None


class PaymentConfigResponse(StandardizedModel):
    key_id: str
    currency: str
