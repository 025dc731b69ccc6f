"""Resilience layer for rate-limited external APIs.

This package provides:
- Rate limit tracking per endpoint (RateLimitTracker)
- Error classification (classify_error, endpoint_key)
- Retry orchestration (RetryOrchestrator) and bounded backoff
  (BackoffPolicy, with_backoff)
- Health monitoring and health-gated jobs (HealthMonitor, ScheduledJob)
- Wiring helpers (build_resilience)
"""

from chainpulse.app.resilience.classifier import (
    classify_error,
    endpoint_key,
    is_backoff_retryable,
    is_rate_limit_error,
)
from chainpulse.app.resilience.factory import (
    Resilience,
    ServiceResilience,
    build_backoff_policy,
    build_health_monitor,
    build_resilience,
    build_service_resilience,
)
from chainpulse.app.resilience.health import HealthMonitor, ScheduledJob, is_trivial
from chainpulse.app.resilience.models import (
    BackoffResult,
    ClassifiedError,
    ErrorKind,
    HealthState,
    HealthStatus,
    RateLimitState,
    WaitDecision,
)
from chainpulse.app.resilience.rate_limit import RateLimitTracker
from chainpulse.app.resilience.retry import BackoffPolicy, RetryOrchestrator, with_backoff

__all__ = [
    # Classification
    "classify_error",
    "endpoint_key",
    "is_backoff_retryable",
    "is_rate_limit_error",
    # Wiring
    "Resilience",
    "ServiceResilience",
    "build_backoff_policy",
    "build_health_monitor",
    "build_resilience",
    "build_service_resilience",
    # Health
    "HealthMonitor",
    "ScheduledJob",
    "is_trivial",
    # Models
    "BackoffResult",
    "ClassifiedError",
    "ErrorKind",
    "HealthState",
    "HealthStatus",
    "RateLimitState",
    "WaitDecision",
    # Tracking and retry
    "RateLimitTracker",
    "BackoffPolicy",
    "RetryOrchestrator",
    "with_backoff",
]
