from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .errors import (
    RateLimitedError,
    ServiceWarmingUpError,
    TransientNetworkError,
    UpstreamError,
    UpstreamNotFoundError,
)
from .logging_utils import log_json
from .resilience import Deadline, RetryPolicy, call_with_retry

AuthProvider = Callable[[], Awaitable[Dict[str, str]]]


@dataclass
class ApiConfig:
    timeout_seconds: float = 20
    max_concurrency: int = 10
    rate_limit_per_sec: int = 50
    retry: Dict[str, Any] = field(default_factory=dict)
    base_url: str = ""
    locale: str = "en_US"


class RateLimiter:
    def __init__(self, rate_per_sec: int) -> None:
        self.rate_per_sec = rate_per_sec
        self._lock = asyncio.Lock()
        self._tokens = rate_per_sec
        self._last = time.monotonic()

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                now = time.monotonic()
                elapsed = now - self._last
                refill = int(elapsed * self.rate_per_sec)
                if refill > 0:
                    self._tokens = min(self.rate_per_sec, self._tokens + refill)
                    self._last = now
                if self._tokens > 0:
                    self._tokens -= 1
                    return
            await asyncio.sleep(max(0.01, 1 / self.rate_per_sec))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def raise_for_response(resp: httpx.Response) -> None:
    status = resp.status_code
    if 200 <= status < 300:
        return
    url = str(resp.request.url) if resp.request is not None else ""
    if status == 404:
        raise UpstreamNotFoundError(f"not found: {url}")
    if status == 429:
        raise RateLimitedError(f"rate limited: {url}", retry_after=parse_retry_after(resp.headers.get("Retry-After")))
    if status == 503:
        raise ServiceWarmingUpError(f"service unavailable ({status}): {url}")
    if status in (500, 502, 504):
        raise TransientNetworkError(f"upstream error ({status}): {url}")
    raise UpstreamError(f"upstream returned {status}: {url}", status_code=status)


class ApiClient:
    """Async JSON client; every request goes through ``call_with_retry``.

    Fetch concurrency is bounded by the semaphore and the token-bucket limiter,
    independently of the database-side limits used by the loader.
    """

    def __init__(
        self,
        cfg: ApiConfig,
        deadline: Optional[Deadline] = None,
        auth: Optional[AuthProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.cfg = cfg
        self.deadline = deadline or Deadline.unbounded()
        self.policy = RetryPolicy.from_dict(cfg.retry)
        self._auth = auth
        self._semaphore = asyncio.Semaphore(cfg.max_concurrency)
        self._limiter = RateLimiter(cfg.rate_limit_per_sec)
        self._client = httpx.AsyncClient(base_url=cfg.base_url, timeout=cfg.timeout_seconds, transport=transport)
        self._logger = logging.getLogger(__name__)

    def set_logger(self, logger: logging.Logger) -> None:
        self._logger = logger

    def set_auth(self, auth: Optional[AuthProvider]) -> None:
        self._auth = auth

    async def close(self) -> None:
        await self._client.aclose()

    async def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        auth: Optional[AuthProvider] = None,
    ) -> Any:
        return await self.request_json("GET", path, params=params, timeout=timeout, auth=auth)

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        basic_auth: Optional[tuple] = None,
        timeout: Optional[float] = None,
        auth: Optional[AuthProvider] = None,
    ) -> Any:
        params = params or {}
        provider = auth or self._auth

        async def attempt(effective_timeout: float) -> Any:
            headers = {}
            # Requests that carry their own basic auth (the token exchange) skip the bearer header.
            if provider is not None and basic_auth is None:
                headers.update(await provider())
            async with self._semaphore:
                await self._limiter.acquire()
                log_json(self._logger, "http_request", level=logging.DEBUG, method=method, path=path, params=params)
                resp = await self._client.request(
                    method,
                    path,
                    params=params,
                    data=data,
                    headers=headers,
                    auth=basic_auth,
                    timeout=effective_timeout,
                )
            if resp.status_code == 401 and basic_auth is None and hasattr(provider, "invalidate"):
                provider.invalidate()
                raise TransientNetworkError(f"unauthorized, token invalidated: {path}")
            raise_for_response(resp)
            return resp.json()

        return await call_with_retry(
            attempt,
            policy=self.policy,
            deadline=self.deadline,
            timeout=timeout or self.cfg.timeout_seconds,
            label=f"{method} {path}",
            logger=self._logger,
        )
