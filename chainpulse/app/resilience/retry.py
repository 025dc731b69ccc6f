"""Retry mechanisms for calls to rate-limited external APIs.

Two flavours live here:

- ``RetryOrchestrator`` waits out server-reported rate limits. It consults a
  ``RateLimitTracker`` before every attempt, retries only rate-limit
  failures, and propagates everything else immediately.
- ``BackoffPolicy`` is the bounded-backoff variant used for best-effort RPC
  reads. It follows a fixed delay schedule and reports final failure as a
  ``BackoffResult`` instead of raising.
"""

import asyncio
import functools
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

from chainpulse.app.core.cache import TTLCache
from chainpulse.app.core.logging import get_log_context, get_logger
from chainpulse.app.exceptions import (
    RateLimitExceeded,
    RetriesExhaustedError,
    TransientProbeFailure,
)
from chainpulse.app.resilience.classifier import classify_error, is_backoff_retryable
from chainpulse.app.resilience.models import BackoffResult
from chainpulse.app.resilience.rate_limit import RateLimitTracker

logger = get_logger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])

Operation = Callable[[], Awaitable[T]]


def _response_metadata(result: Any) -> Optional[Mapping]:
    """Pull header-style metadata off an operation result, if it has any."""
    headers = getattr(result, "headers", None)
    if isinstance(headers, Mapping):
        return headers
    if isinstance(result, Mapping):
        headers = result.get("headers")
        if isinstance(headers, Mapping):
            return headers
    return None


class RetryOrchestrator:
    """Runs operations against named endpoints with rate limit handling.

    Usage:
        orchestrator = RetryOrchestrator(tracker, cache=cache)
        profile = await orchestrator.execute("users", fetch_profile)
        price = await orchestrator.execute(
            "gasPrice", fetch_gas_price, cache_key="gasPrice"
        )
    """

    def __init__(
        self,
        tracker: RateLimitTracker,
        cache: Optional[TTLCache] = None,
        max_attempts: int = 3,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            tracker: Rate limit state shared by every call to this service
            cache: Optional cache used to short-circuit idempotent reads
            max_attempts: Default number of retries after the first attempt
        """
        self.tracker = tracker
        self.cache = cache
        self.max_attempts = max_attempts

    async def execute(
        self,
        endpoint: str,
        operation: Operation,
        max_attempts: Optional[int] = None,
        cache_key: Optional[str] = None,
        cache_if: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Execute ``operation`` with rate limit handling.

        Args:
            endpoint: Endpoint key whose rate limit state applies
            operation: Zero-argument coroutine function to call
            max_attempts: Retries after the first attempt (defaults to the
                orchestrator's setting)
            cache_key: When set and a cache is configured, serve hits from
                the cache and store successful results under this key
            cache_if: Predicate deciding whether a result is cached
                (default: any result that is not None)

        Returns:
            The operation's result

        Raises:
            RateLimitExceeded: The endpoint was still rate limited after the
                final attempt
            Exception: Any non-rate-limit error, on first occurrence
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        use_cache = self.cache is not None and cache_key is not None

        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug(
                    f"{endpoint} served from cache",
                    extra=get_log_context(endpoint=endpoint),
                )
                return cached

        for attempt in range(attempts + 1):
            # Pre-emptive: also applies before the first attempt
            await self.tracker.wait_if_needed(endpoint)

            try:
                result = await operation()
            except Exception as e:
                classified = classify_error(e)
                if not classified.is_rate_limit:
                    raise

                wait_seconds = self.tracker.update_from_rate_limit_error(endpoint, classified)
                if attempt >= attempts:
                    logger.error(
                        f"Rate limit hit for {endpoint}. Max retries ({attempts}) exceeded.",
                        extra=get_log_context(
                            endpoint=endpoint, attempt=attempt + 1, wait_seconds=wait_seconds
                        ),
                    )
                    raise RateLimitExceeded(endpoint, attempt + 1, wait_seconds) from e

                logger.info(
                    f"Rate limit hit for {endpoint}. Waiting {wait_seconds}s before retry "
                    f"(attempt {attempt + 1}/{attempts})",
                    extra=get_log_context(
                        endpoint=endpoint, attempt=attempt + 1, wait_seconds=wait_seconds
                    ),
                )
                await asyncio.sleep(wait_seconds)
                continue

            metadata = _response_metadata(result)
            if metadata is not None:
                self.tracker.update_from_success_metadata(endpoint, metadata)

            if use_cache and (cache_if(result) if cache_if else result is not None):
                self.cache.set(cache_key, result)

            return result

        raise RetriesExhaustedError(endpoint, attempts + 1)


@dataclass
class BackoffPolicy:
    """Bounded backoff with a fixed delay schedule.

    Attributes:
        schedule: Delays in seconds; attempt k waits ``schedule[k]``, and
            attempts past the end reuse the last entry
        max_attempts: Total number of calls, including the first

    Example:
        >>> policy = BackoffPolicy(schedule=(1.0, 2.0, 4.0))
        >>> policy.calculate_delay(5)
        4.0
    """

    schedule: Tuple[float, ...] = (1.0, 2.0, 4.0)
    max_attempts: int = 3

    def __post_init__(self) -> None:
        self.schedule = tuple(float(d) for d in self.schedule)
        if not self.schedule:
            raise ValueError("schedule must contain at least one delay")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay after a failed attempt (0-indexed)."""
        if attempt < len(self.schedule):
            return self.schedule[attempt]
        return self.schedule[-1]

    async def attempt(
        self,
        name: str,
        operation: Operation,
        max_attempts: Optional[int] = None,
    ) -> BackoffResult:
        """Run ``operation`` until it succeeds, fails hard, or runs out of attempts.

        Never raises for failures of the operation itself; cancellation
        still propagates.

        Returns:
            BackoffResult with ``ok=True`` and the value, or ``ok=False`` and
            a TransientProbeFailure wrapping the last error
        """
        attempts = max_attempts or self.max_attempts

        for attempt in range(attempts):
            try:
                value = await operation()
                return BackoffResult(ok=True, value=value, attempts=attempt + 1)
            except Exception as e:
                is_last_attempt = attempt == attempts - 1

                if not is_backoff_retryable(e):
                    logger.error(
                        f"Failed {name} with non-retryable error: {type(e).__name__}: {e}",
                        extra=get_log_context(operation=name, attempt=attempt + 1),
                    )
                    return BackoffResult(
                        ok=False,
                        error=TransientProbeFailure(name, attempt + 1, e),
                        attempts=attempt + 1,
                    )

                if is_last_attempt:
                    logger.error(
                        f"Failed {name} after {attempts} attempts: {type(e).__name__}: {e}",
                        extra=get_log_context(operation=name, attempt=attempt + 1),
                    )
                    return BackoffResult(
                        ok=False,
                        error=TransientProbeFailure(name, attempt + 1, e),
                        attempts=attempt + 1,
                    )

                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"RPC rate limit hit for {name}, attempt {attempt + 1}/{attempts}. "
                    f"Retrying in {delay}s...",
                    extra=get_log_context(operation=name, attempt=attempt + 1, wait_seconds=delay),
                )
                await asyncio.sleep(delay)

        # Only reachable with attempts <= 0
        return BackoffResult(ok=False, attempts=0)

    async def run(
        self,
        name: str,
        operation: Operation,
        default: Any = None,
        max_attempts: Optional[int] = None,
    ) -> Any:
        """Fail-soft form of ``attempt``: the value, or ``default`` on failure."""
        result = await self.attempt(name, operation, max_attempts=max_attempts)
        return result.value_or(default)


def with_backoff(policy: Optional[BackoffPolicy] = None, default: Any = None) -> Callable[[F], F]:
    """Decorator that makes an async function best-effort.

    Example:
        >>> @with_backoff(BackoffPolicy(schedule=(1, 2, 4)), default=[])
        ... async def fetch_logs(self):
        ...     return await self._call("eth_getLogs", [...])
    """
    backoff_policy = policy or BackoffPolicy()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await backoff_policy.run(
                func.__name__, lambda: func(*args, **kwargs), default=default
            )

        return wrapper  # type: ignore

    return decorator
