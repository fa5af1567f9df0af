"""Named job leases stored in the ``job_lock`` table.

A lease is FREE (no row, or an expired row) or HELD by one owner until
``expires_at``. Acquire is a single ``INSERT ... ON CONFLICT DO UPDATE ...
WHERE`` statement, so two racing callers cannot both win: the row lock taken
by the conflicting insert serialises them and the loser sees the winner's
unexpired row. Expiry is the only recovery path for a crashed holder.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .errors import LeaseLostError
from .logging_utils import log_json

ACQUIRE_SQL = """
INSERT INTO job_lock AS jl (lock_name, owner, acquired_at, expires_at)
VALUES ($1, $2, COALESCE($4::timestamptz, now()), COALESCE($4::timestamptz, now()) + make_interval(secs => $3))
ON CONFLICT (lock_name) DO UPDATE
SET owner = EXCLUDED.owner, acquired_at = EXCLUDED.acquired_at, expires_at = EXCLUDED.expires_at
WHERE jl.expires_at <= EXCLUDED.acquired_at + make_interval(secs => $5)
   OR jl.owner = EXCLUDED.owner
RETURNING lock_name, owner, acquired_at, expires_at
"""

CURRENT_SQL = "SELECT lock_name, owner, acquired_at, expires_at FROM job_lock WHERE lock_name = $1"

VERIFY_SQL = """
SELECT owner, expires_at, expires_at > COALESCE($3::timestamptz, now()) AS live
FROM job_lock
WHERE lock_name = $1 AND owner = $2
"""

RELEASE_SQL = "DELETE FROM job_lock WHERE lock_name = $1 AND owner = $2"


class LeaseStatus(str, enum.Enum):
    ACQUIRED = "ACQUIRED"
    LOCKED = "LOCKED"


@dataclass(frozen=True)
class LeaseHandle:
    lock_name: str
    owner: str
    acquired_at: datetime
    expires_at: datetime


@dataclass
class AcquireResult:
    status: LeaseStatus
    lease: Optional[LeaseHandle] = None
    current_owner: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def acquired(self) -> bool:
        return self.status is LeaseStatus.ACQUIRED

    def as_dict(self) -> Dict[str, Any]:
        if self.acquired:
            return {
                "status": self.status.value,
                "lock_name": self.lease.lock_name,
                "owner": self.lease.owner,
                "expires_at": self.lease.expires_at.isoformat(),
            }
        return {
            "status": self.status.value,
            "current_owner": self.current_owner,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class LeaseCoordinator:
    def __init__(
        self,
        pool: Any,
        default_ttl_seconds: float = 3600,
        statement_timeout_seconds: float = 10,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.pool = pool
        self.default_ttl_seconds = default_ttl_seconds
        self.statement_timeout_seconds = statement_timeout_seconds
        # None means the database clock (now()) is authoritative.
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def _now(self) -> Optional[datetime]:
        return self._clock() if self._clock is not None else None

    async def acquire(
        self,
        lock_name: str,
        owner: str,
        ttl_seconds: Optional[float] = None,
        steal: bool = False,
        grace_seconds: float = 0,
    ) -> AcquireResult:
        ttl = float(ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds)
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        grace = float(grace_seconds) if steal else 0.0
        timeout = self.statement_timeout_seconds

        async with self.pool.acquire(timeout=timeout) as conn:
            for _ in range(3):
                row = await conn.fetchrow(ACQUIRE_SQL, lock_name, owner, ttl, self._now(), grace, timeout=timeout)
                if row is not None:
                    lease = LeaseHandle(row["lock_name"], row["owner"], row["acquired_at"], row["expires_at"])
                    log_json(
                        self.logger,
                        "lease_acquired",
                        lock_name=lock_name,
                        owner=owner,
                        expires_at=lease.expires_at,
                        steal=steal,
                    )
                    return AcquireResult(LeaseStatus.ACQUIRED, lease=lease)
                current = await conn.fetchrow(CURRENT_SQL, lock_name, timeout=timeout)
                if current is not None:
                    log_json(
                        self.logger,
                        "lease_locked",
                        lock_name=lock_name,
                        owner=owner,
                        holder=current["owner"],
                        expires_at=current["expires_at"],
                    )
                    return AcquireResult(
                        LeaseStatus.LOCKED,
                        current_owner=current["owner"],
                        expires_at=current["expires_at"],
                    )
                # Holder released between the two statements; try again.
        return AcquireResult(LeaseStatus.LOCKED)

    async def steal(self, lock_name: str, owner: str, ttl_seconds: Optional[float], grace_seconds: float) -> AcquireResult:
        return await self.acquire(lock_name, owner, ttl_seconds, steal=True, grace_seconds=grace_seconds)

    async def current(self, lock_name: str) -> Optional[Dict[str, Any]]:
        timeout = self.statement_timeout_seconds
        async with self.pool.acquire(timeout=timeout) as conn:
            row = await conn.fetchrow(CURRENT_SQL, lock_name, timeout=timeout)
        return dict(row) if row is not None else None

    async def verify(self, lease: LeaseHandle) -> None:
        timeout = self.statement_timeout_seconds
        async with self.pool.acquire(timeout=timeout) as conn:
            row = await conn.fetchrow(VERIFY_SQL, lease.lock_name, lease.owner, self._now(), timeout=timeout)
        if row is None or not row["live"]:
            log_json(self.logger, "lease_lost", level=logging.ERROR, lock_name=lease.lock_name, owner=lease.owner)
            raise LeaseLostError(f"lease {lease.lock_name!r} is no longer held by {lease.owner!r}")

    async def release(self, lock_name: str, owner: str, timeout: Optional[float] = None) -> bool:
        """Delete the lease if ``owner`` holds it. Returns whether a row was removed."""
        timeout = timeout or self.statement_timeout_seconds
        async with self.pool.acquire(timeout=timeout) as conn:
            status = await conn.execute(RELEASE_SQL, lock_name, owner, timeout=timeout)
        released = status.endswith(" 1")
        log_json(self.logger, "lease_released", lock_name=lock_name, owner=owner, released=released)
        return released

    async def release_quietly(self, lease: LeaseHandle, attempts: int = 3, timeout: float = 5) -> bool:
        """Best-effort release for shutdown paths. Never raises."""
        delay = 0.2
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(self.release(lease.lock_name, lease.owner, timeout=timeout), timeout)
            except Exception as exc:
                log_json(
                    self.logger,
                    "lease_release_failed",
                    level=logging.WARNING,
                    lock_name=lease.lock_name,
                    owner=lease.owner,
                    attempt=attempt,
                    error=str(exc) or type(exc).__name__,
                )
                if attempt < attempts:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False
