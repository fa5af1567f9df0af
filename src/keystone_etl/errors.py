"""Error taxonomy shared by the remote caller, loader and lease coordinator."""

from __future__ import annotations

from typing import Optional


class KeystoneError(Exception):
    pass


class TransientNetworkError(KeystoneError):
    """Timeouts, resets and 5xx responses. Safe to retry."""


class ServiceWarmingUpError(TransientNetworkError):
    """Connection refused or 503 while a dependency is still starting."""


class RateLimitedError(KeystoneError):
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamNotFoundError(KeystoneError):
    """The upstream has no data for this request. Not a fault."""


class UpstreamError(KeystoneError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConstraintViolation(KeystoneError):
    """An integrity error while applying a shard. Fatal to that shard only."""


class DeadlineExceeded(KeystoneError):
    """The job-wide runtime budget cannot cover another attempt."""


class LeaseLostError(KeystoneError):
    """The job lease expired or was taken over while the run was in progress."""


RUN_FATAL_ERRORS = (DeadlineExceeded, LeaseLostError)


class PlanningError(KeystoneError):
    """The run cannot be planned from what is recorded and what the upstream lists."""
