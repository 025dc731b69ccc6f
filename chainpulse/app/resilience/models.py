"""Resilience data models.

This module contains dataclasses for rate limit state, error
classification, best-effort results and health status.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class RateLimitState:
    """Last known quota for one endpoint key.

    Stale once ``now >= reset_at``; stale state is discarded, never read
    as still limiting.
    """
    endpoint: str
    limit: int
    remaining: int
    reset_at: float  # Unix timestamp in seconds
    retry_after: Optional[float] = None

    def is_stale(self, now: float) -> bool:
        return now >= self.reset_at


@dataclass(frozen=True)
class WaitDecision:
    """Result of a should-wait check."""
    wait: bool
    wait_seconds: Optional[int] = None


class ErrorKind(str, Enum):
    """How a failed operation should be treated."""
    RATE_LIMIT = "rate_limit"
    NON_RETRYABLE = "non_retryable"
    UNKNOWN = "unknown"


@dataclass
class ClassifiedError:
    """Everything the resilience layer needs to know about a failure."""
    kind: ErrorKind
    status: Optional[int] = None
    retry_after: Optional[str] = None
    rate_limit: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    rpc_code: Optional[int] = None
    message: str = ""

    @property
    def is_rate_limit(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMIT


@dataclass
class BackoffResult(Generic[T]):
    """Outcome of a best-effort operation.

    Keeps "failed" distinguishable from "succeeded with an empty value";
    ``value_or`` collapses the two for callers that only want data.
    """
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    def value_or(self, default: Any) -> Any:
        return self.value if self.ok else default


class HealthState(str, Enum):
    """Health of an external service as seen by the last probe."""
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class HealthStatus:
    """Snapshot of the monitor's view. UNKNOWN counts as not healthy."""
    state: HealthState = HealthState.UNKNOWN
    last_checked_at: Optional[float] = None

    @property
    def healthy(self) -> bool:
        return self.state is HealthState.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "healthy": self.healthy,
            "last_checked_at": self.last_checked_at,
        }
