# backend/consultbook/core/remote_call.py
"""
Bounded remote calls.

Every call to an external provider goes through :func:`call_with_deadline`
with a :class:`Deadline`. The deadline bounds the whole call, not just each
transport phase: the callable runs on a worker thread and the caller stops
waiting when the budget is spent. The same budget is handed to the callable
as an ``httpx.Timeout`` so the abandoned request also ends on its own.
Either kind of overrun surfaces as :class:`GatewayTimeoutException`,
distinct from a provider rejection, and a late result is discarded. Nothing
here retries; retry policy belongs to the caller.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
import logging
import time
from typing import Callable, TypeVar

import httpx

from ..monitoring.prometheus_metrics import prometheus_metrics
from .exceptions import GatewayTimeoutException

logger = logging.getLogger(__name__)

T = TypeVar("T")

REMOTE_CALL_EXECUTOR = ThreadPoolExecutor(max_workers=16, thread_name_prefix="remote_call_")


@dataclass(frozen=True)
class Deadline:
    operation: str
    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError(f"Deadline for {self.operation} must be positive")

    def as_timeout(self) -> httpx.Timeout:
        # Per-phase bound for the transport; call_with_deadline bounds the total.
        return httpx.Timeout(self.seconds)


def _timed_out(deadline: Deadline, elapsed: float) -> GatewayTimeoutException:
    logger.warning(
        "Remote call %s timed out after %.2fs (deadline %.2fs)",
        deadline.operation,
        elapsed,
        deadline.seconds,
        extra={"operation": deadline.operation, "deadline_seconds": deadline.seconds},
    )
    prometheus_metrics.record_gateway_call(deadline.operation, "timeout", elapsed)
    return GatewayTimeoutException(deadline.operation, deadline.seconds)


def call_with_deadline(deadline: Deadline, func: Callable[[httpx.Timeout], T]) -> T:
    """Run ``func`` under ``deadline``; overruns raise GatewayTimeoutException."""
    started = time.monotonic()
    future = REMOTE_CALL_EXECUTOR.submit(func, deadline.as_timeout())
    try:
        result = future.result(timeout=deadline.seconds)
    except FutureTimeoutError as exc:
        future.cancel()
        raise _timed_out(deadline, time.monotonic() - started) from exc
    except httpx.TimeoutException as exc:
        raise _timed_out(deadline, time.monotonic() - started) from exc
    except Exception:
        prometheus_metrics.record_gateway_call(
            deadline.operation, "error", time.monotonic() - started
        )
        raise

    elapsed = time.monotonic() - started
    if elapsed > deadline.seconds:
        # Finished between the wait expiring and the check; still too late to use.
        raise _timed_out(deadline, elapsed)
    prometheus_metrics.record_gateway_call(deadline.operation, "success", elapsed)
    return result
