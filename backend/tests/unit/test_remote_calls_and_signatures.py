"""Deadline handling for provider calls and HMAC signature checks."""

import hashlib
import hmac
import threading
import time

import httpx
import pytest

from consultbook.core.exceptions import GatewayTimeoutException
from consultbook.core.remote_call import Deadline, call_with_deadline
from consultbook.core.signatures import (
    compute_signature,
    payment_signature_message,
    signatures_match,
)
from consultbook.integrations.razorpay_client import FakeRazorpayClient, GatewayError


def test_deadline_must_be_positive():
    with pytest.raises(ValueError):
        Deadline("create_order", 0)


def test_call_with_deadline_passes_timeout_and_returns_result():
    seen = {}

    def _call(timeout):
        seen["timeout"] = timeout
        return {"id": "order_1"}

    assert call_with_deadline(Deadline("create_order", 3), _call) == {"id": "order_1"}
    assert isinstance(seen["timeout"], httpx.Timeout)
    assert seen["timeout"].read == 3


def test_transport_timeout_becomes_gateway_timeout():
    def _call(timeout):
        raise httpx.ReadTimeout("slow")

    with pytest.raises(GatewayTimeoutException) as exc_info:
        call_with_deadline(Deadline("fetch_payment", 2.5), _call)

    assert exc_info.value.operation == "fetch_payment"
    assert exc_info.value.status_code == 504


def test_provider_rejection_is_not_a_timeout():
    def _call(timeout):
        raise GatewayError("bad request", status_code=400)

    with pytest.raises(GatewayError):
        call_with_deadline(Deadline("create_order", 2), _call)


def test_slow_call_is_abandoned_at_the_deadline():
    finished = threading.Event()

    def _call(timeout):
        time.sleep(0.3)
        finished.set()
        return "late-result"

    started = time.monotonic()
    with pytest.raises(GatewayTimeoutException) as exc_info:
        call_with_deadline(Deadline("create_order", 0.05), _call)

    assert time.monotonic() - started < 0.25
    assert exc_info.value.operation == "create_order"
    assert not finished.is_set()
    finished.wait(1)


def test_call_within_deadline_is_not_a_timeout():
    def _call(timeout):
        time.sleep(0.01)
        return "on-time"

    assert call_with_deadline(Deadline("fetch_payment", 2), _call) == "on-time"


def test_payment_signature_covers_order_and_payment_ids():
    expected = hmac.new(b"secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert compute_signature("secret", payment_signature_message("order_1", "pay_1")) == expected


@pytest.mark.parametrize(
    "provided,valid",
    [
        (None, False),
        ("", False),
        ("deadbeef", False),
    ],
)
def test_signatures_match_rejects_missing_or_wrong(provided, valid):
    assert signatures_match("secret", b"body", provided) is valid


def test_signatures_match_accepts_prefixed_and_plain_hex():
    digest = compute_signature("secret", b"body")
    assert signatures_match("secret", b"body", digest)
    assert signatures_match("secret", b"body", f"sha256={digest}")


def test_unset_secret_never_matches():
    assert not signatures_match("", b"body", compute_signature("", b"body"))


def test_fake_gateway_signs_like_the_checkout():
    gateway = FakeRazorpayClient(key_secret="k")
    signature = gateway.sign("order_1", "pay_1")
    assert gateway.payment_signature_valid("order_1", "pay_1", signature)
    assert not gateway.payment_signature_valid("order_1", "pay_2", signature)
