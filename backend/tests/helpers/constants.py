"""Shared values for fixtures and assertions."""

from decimal import Decimal

WEBHOOK_SECRET = "whsec_test_secret"
KEY_SECRET = "fake_key_secret"
PERSONAL_PRICE = Decimal("1500.00")
WEBINAR_PRICE = Decimal("499.00")
CONSULTANT_TZ = "Asia/Kolkata"
QUOTATION_AMOUNT = Decimal("12000.00")
