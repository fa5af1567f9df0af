"""Deadline-aware retry wrapper shared by every outbound call.

A single :class:`Deadline` is created when the process starts, either from an
explicit runtime budget or from the lease TTL minus a buffer. Each attempt made
through :func:`call_with_retry` gets a timeout clamped to what is left of that
budget, and a backoff sleep that would run past it fails straight away with
:class:`DeadlineExceeded`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import asyncpg
import httpx
from botocore.exceptions import ClientError, ConnectionError as BotoConnectionError, HTTPClientError

from .errors import (
    RUN_FATAL_ERRORS,
    DeadlineExceeded,
    RateLimitedError,
    ServiceWarmingUpError,
    TransientNetworkError,
)
from .logging_utils import log_json

T = TypeVar("T")

_LOG = logging.getLogger(__name__)


class ErrorClass(enum.Enum):
    FATAL = "fatal"
    TRANSIENT = "transient"
    WARMUP = "warmup"
    RATE_LIMITED = "rate_limited"


_WARMUP_PG_ERRORS = (
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
)
_TRANSIENT_PG_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)
_THROTTLING_CODES = {"Throttling", "ThrottlingException", "SlowDown", "RequestLimitExceeded", "TooManyRequestsException"}
_TRANSIENT_AWS_CODES = {"InternalError", "ServiceUnavailable", "RequestTimeout"}


def _classify_client_error(exc: ClientError) -> ErrorClass:
    error = exc.response.get("Error", {})
    code = error.get("Code", "")
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    if code in _THROTTLING_CODES or status == 429:
        return ErrorClass.RATE_LIMITED
    if code in _TRANSIENT_AWS_CODES or status >= 500:
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


def classify_exception(exc: BaseException) -> ErrorClass:
    if isinstance(exc, RateLimitedError):
        return ErrorClass.RATE_LIMITED
    if isinstance(exc, ServiceWarmingUpError):
        return ErrorClass.WARMUP
    if isinstance(exc, TransientNetworkError):
        return ErrorClass.TRANSIENT
    # ConnectError is a NetworkError, so it has to be checked first.
    if isinstance(exc, httpx.ConnectError):
        return ErrorClass.WARMUP
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, _WARMUP_PG_ERRORS) or isinstance(exc, ConnectionRefusedError):
        return ErrorClass.WARMUP
    if isinstance(exc, _TRANSIENT_PG_ERRORS) or isinstance(exc, ConnectionResetError):
        return ErrorClass.TRANSIENT
    # botocore: endpoint and connect-timeout failures subclass ConnectionError.
    if isinstance(exc, BotoConnectionError):
        return ErrorClass.WARMUP
    if isinstance(exc, HTTPClientError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, ClientError):
        return _classify_client_error(exc)
    return ErrorClass.FATAL


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    warmup_base_delay_seconds: float = 2.0
    warmup_max_delay_seconds: float = 30.0
    jitter: float = 0.25
    classify: Callable[[BaseException], ErrorClass] = field(default=classify_exception)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "RetryPolicy":
        raw = raw or {}
        known = {
            "max_attempts",
            "base_delay_seconds",
            "max_delay_seconds",
            "warmup_base_delay_seconds",
            "warmup_max_delay_seconds",
            "jitter",
        }
        return cls(**{k: v for k, v in raw.items() if k in known})

    def backoff(
        self,
        attempt: int,
        error_class: ErrorClass,
        retry_after: Optional[float] = None,
        rand: Callable[[], float] = random.random,
    ) -> float:
        if error_class is ErrorClass.WARMUP:
            base, cap = self.warmup_base_delay_seconds, self.warmup_max_delay_seconds
        else:
            base, cap = self.base_delay_seconds, self.max_delay_seconds
        delay = min(cap, base * (2 ** (attempt - 1)))
        if self.jitter:
            delay *= 1 + self.jitter * (2 * rand() - 1)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return max(0.0, delay)


class Deadline:
    """Job-wide runtime budget.

    ``budget_seconds=None`` means unbounded; requested timeouts pass through
    unchanged in that case.
    """

    def __init__(
        self,
        budget_seconds: Optional[float],
        safety_margin_seconds: float = 5.0,
        min_attempt_seconds: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self.budget_seconds = budget_seconds
        self.safety_margin_seconds = safety_margin_seconds
        self.min_attempt_seconds = min_attempt_seconds
        self._expires_at = None if budget_seconds is None else clock() + budget_seconds

    @classmethod
    def from_lease_ttl(
        cls,
        ttl_seconds: float,
        buffer_seconds: float,
        safety_margin_seconds: float = 5.0,
        min_attempt_seconds: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> "Deadline":
        return cls(
            max(0.0, ttl_seconds - buffer_seconds),
            safety_margin_seconds=safety_margin_seconds,
            min_attempt_seconds=min_attempt_seconds,
            clock=clock,
        )

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    @property
    def bounded(self) -> bool:
        return self._expires_at is not None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def effective_timeout(self, requested: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return requested
        effective = min(requested, remaining - self.safety_margin_seconds)
        if effective < self.min_attempt_seconds:
            raise DeadlineExceeded(
                f"{remaining:.3f}s remaining, not enough for another attempt"
            )
        return effective

    def check(self) -> None:
        self.effective_timeout(self.min_attempt_seconds)

    def ensure_can_wait(self, delay: float) -> None:
        remaining = self.remaining()
        if remaining is None:
            return
        usable = remaining - self.safety_margin_seconds
        if delay + self.min_attempt_seconds > usable:
            raise DeadlineExceeded(
                f"backoff of {delay:.3f}s would exceed the deadline ({remaining:.3f}s remaining)"
            )


async def call_with_retry(
    op: Callable[[float], Awaitable[T]],
    *,
    policy: RetryPolicy,
    deadline: Deadline,
    timeout: float,
    label: str = "call",
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``op(effective_timeout)`` until it succeeds or retries run out.

    ``op`` receives the clamped timeout so it can pass it on to the client it
    wraps; the same value is also enforced with :func:`asyncio.wait_for`.
    """
    logger = logger or _LOG
    attempt = 0
    while True:
        attempt += 1
        effective = deadline.effective_timeout(timeout)
        try:
            return await asyncio.wait_for(op(effective), timeout=effective)
        except RUN_FATAL_ERRORS:
            raise
        except asyncio.TimeoutError as exc:
            error: BaseException = TransientNetworkError(f"{label} timed out after {effective:.3f}s")
            error.__cause__ = exc
            error_class = ErrorClass.TRANSIENT
        except Exception as exc:
            error = exc
            error_class = policy.classify(exc)
            if error_class is ErrorClass.FATAL:
                raise

        if attempt >= policy.max_attempts:
            raise error
        retry_after = getattr(error, "retry_after", None)
        delay = policy.backoff(attempt, error_class, retry_after)
        try:
            deadline.ensure_can_wait(delay)
        except DeadlineExceeded as exc:
            raise exc from error
        log_json(
            logger,
            "retry_scheduled",
            label=label,
            attempt=attempt,
            error_class=error_class.value,
            error=str(error),
            delay=round(delay, 3),
        )
        await sleep(delay)
