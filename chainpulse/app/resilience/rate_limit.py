"""Per-endpoint rate limit tracking.

The tracker does not enforce a rate of its own. It records what the remote
server reports, either through ``x-rate-limit-*`` response headers or through
429-style errors, and tells callers whether they should wait before the
next call.

Malformed metadata never blocks a caller: it is logged and treated as
"no known limit".
"""

import asyncio
import math
import time
from collections.abc import Mapping
from dataclasses import replace
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional

from chainpulse.app.core.logging import get_log_context, get_logger
from chainpulse.app.exceptions import MalformedMetadataError
from chainpulse.app.resilience.classifier import classify_error
from chainpulse.app.resilience.models import (
    ClassifiedError,
    RateLimitState,
    WaitDecision,
)

logger = get_logger(__name__)

DEFAULT_SAFETY_MARGIN = 5
DEFAULT_RETRY_AFTER = 60

LIMIT_HEADERS = ("x-rate-limit-limit", "x-ratelimit-limit")
REMAINING_HEADERS = ("x-rate-limit-remaining", "x-ratelimit-remaining")
RESET_HEADERS = ("x-rate-limit-reset", "x-ratelimit-reset")


def _parse_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MalformedMetadataError(f"Unexpected boolean rate limit value: {value!r}")
    try:
        return int(str(value).strip())
    except ValueError:
        pass
    try:
        return int(float(str(value).strip()))
    except ValueError as e:
        raise MalformedMetadataError(f"Invalid rate limit value: {value!r}") from e


def _first_header(headers: Dict[str, str], names: tuple) -> Any:
    for name in names:
        if name in headers:
            return headers[name]
    return None


def _parse_retry_after(raw: str, now: float) -> int:
    """Convert a Retry-After value (seconds or HTTP date) to seconds from now."""
    raw = raw.strip()
    try:
        return math.ceil(float(raw))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMetadataError(f"Invalid retry-after value: {raw!r}") from e
    if retry_at is None:
        raise MalformedMetadataError(f"Invalid retry-after value: {raw!r}")
    return math.ceil(retry_at.timestamp() - now)


class RateLimitTracker:
    """Tracks the last known rate limit state for each endpoint key.

    One tracker is shared by every call site that talks to the same
    external service.

    Attributes:
        safety_margin: Remaining-call count at or below which callers are
            told to wait for the window reset
        default_retry_after: Wait in seconds used when a rate-limit error
            carries no timing information
    """

    def __init__(
        self,
        safety_margin: int = DEFAULT_SAFETY_MARGIN,
        default_retry_after: int = DEFAULT_RETRY_AFTER,
        endpoint_margins: Optional[Mapping[str, int]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.safety_margin = safety_margin
        self.default_retry_after = default_retry_after
        self._endpoint_margins: Dict[str, int] = dict(endpoint_margins or {})
        self._clock = clock
        self._states: Dict[str, RateLimitState] = {}

    def set_safety_margin(self, endpoint: str, margin: int) -> None:
        """Override the safety margin for one endpoint.

        Useful when endpoints have very different quota sizes.
        """
        if margin < 0:
            raise ValueError("safety margin must not be negative")
        self._endpoint_margins[endpoint] = margin

    def safety_margin_for(self, endpoint: str) -> int:
        return self._endpoint_margins.get(endpoint, self.safety_margin)

    def should_wait(self, endpoint: str) -> WaitDecision:
        """Check whether a caller must wait before calling ``endpoint``.

        Stale state (``now >= reset_at``) is discarded and never limits.
        """
        state = self._states.get(endpoint)
        if state is None:
            return WaitDecision(wait=False)

        now = self._clock()
        if state.is_stale(now):
            del self._states[endpoint]
            return WaitDecision(wait=False)

        wait_seconds = math.ceil(state.reset_at - now)

        if state.retry_after is not None:
            return WaitDecision(wait=True, wait_seconds=wait_seconds)

        if state.remaining <= self.safety_margin_for(endpoint):
            logger.warning(
                f"Rate limit approaching for {endpoint}: {state.remaining}/{state.limit} remaining. "
                f"Waiting {wait_seconds}s",
                extra=get_log_context(endpoint=endpoint, wait_seconds=wait_seconds),
            )
            return WaitDecision(wait=True, wait_seconds=wait_seconds)

        return WaitDecision(wait=False)

    async def wait_if_needed(self, endpoint: str) -> float:
        """Sleep when ``should_wait`` says so.

        Returns:
            Seconds waited (0 when no wait was needed)
        """
        decision = self.should_wait(endpoint)
        if decision.wait and decision.wait_seconds:
            logger.info(
                f"Waiting {decision.wait_seconds}s due to rate limit for {endpoint}",
                extra=get_log_context(endpoint=endpoint, wait_seconds=decision.wait_seconds),
            )
            await asyncio.sleep(decision.wait_seconds)
            return decision.wait_seconds
        return 0

    def update_from_success_metadata(self, endpoint: str, metadata: Any) -> bool:
        """Update an endpoint's state from response headers.

        The state is replaced only when both a limit and a reset time are
        present. Missing or malformed fields are ignored.

        Args:
            endpoint: Endpoint key
            metadata: Case-insensitive header mapping (e.g. ``httpx.Headers``)

        Returns:
            True if the endpoint's state was replaced
        """
        if not isinstance(metadata, Mapping):
            return False
        headers = {str(k).lower(): v for k, v in metadata.items()}

        try:
            limit = _parse_int(_first_header(headers, LIMIT_HEADERS))
            remaining = _parse_int(_first_header(headers, REMAINING_HEADERS))
            reset = _parse_int(_first_header(headers, RESET_HEADERS))
        except MalformedMetadataError as e:
            logger.warning(
                f"Error parsing rate limit headers for {endpoint}: {e}",
                extra=get_log_context(endpoint=endpoint),
            )
            return False

        if not limit or not reset:
            return False

        self._states[endpoint] = RateLimitState(
            endpoint=endpoint,
            limit=max(limit, 0),
            remaining=max(remaining or 0, 0),
            reset_at=float(reset),
        )
        logger.debug(
            f"Rate limit updated for {endpoint}: {remaining}/{limit}, resets at {reset}",
            extra=get_log_context(endpoint=endpoint),
        )
        return True

    def update_from_rate_limit_error(self, endpoint: str, error: Any) -> int:
        """Record a rate-limit failure and work out how long to wait.

        The wait comes from, in order: the error's ``retry-after`` value,
        the reset time of a structured rate-limit object (or rate limit
        headers) on the error, and finally ``default_retry_after``.

        The resulting state is stored immediately, so ``should_wait``
        reflects it before any retry fires.

        Args:
            endpoint: Endpoint key
            error: The exception, or an already classified error

        Returns:
            Seconds to wait, at least 1
        """
        classified = error if isinstance(error, ClassifiedError) else classify_error(error)
        now = self._clock()
        wait: Optional[int] = None
        limit = 0

        if classified.retry_after:
            try:
                wait = _parse_retry_after(classified.retry_after, now)
            except MalformedMetadataError as e:
                logger.warning(
                    f"Ignoring retry-after for {endpoint}: {e}",
                    extra=get_log_context(endpoint=endpoint),
                )

        try:
            header_limit = _parse_int(_first_header(classified.headers, LIMIT_HEADERS))
            header_reset = _parse_int(_first_header(classified.headers, RESET_HEADERS))
        except MalformedMetadataError as e:
            logger.warning(
                f"Ignoring rate limit headers for {endpoint}: {e}",
                extra=get_log_context(endpoint=endpoint),
            )
            header_limit = header_reset = None
        limit = header_limit or 0

        if classified.rate_limit is not None:
            try:
                limit = _parse_int(classified.rate_limit.get("limit")) or limit
                reset = _parse_int(classified.rate_limit.get("reset"))
            except MalformedMetadataError as e:
                logger.warning(
                    f"Ignoring rate limit object for {endpoint}: {e}",
                    extra=get_log_context(endpoint=endpoint),
                )
                reset = None
            if wait is None and reset:
                wait = math.ceil(reset - now)

        if wait is None and header_reset:
            wait = math.ceil(header_reset - now)

        if wait is None:
            wait = self.default_retry_after

        wait = max(wait, 1)

        self._states[endpoint] = RateLimitState(
            endpoint=endpoint,
            limit=max(limit, 0),
            remaining=0,
            reset_at=now + wait,
            retry_after=wait,
        )

        logger.warning(
            f"Rate limit hit for {endpoint}. Waiting {wait} seconds before retry.",
            extra=get_log_context(endpoint=endpoint, wait_seconds=wait),
        )
        return wait

    def get_status(self, endpoint: str) -> Optional[RateLimitState]:
        """Get the current state for an endpoint, or None if unknown or stale."""
        state = self._states.get(endpoint)
        if state is None:
            return None
        if state.is_stale(self._clock()):
            del self._states[endpoint]
            return None
        return replace(state)

    def all_statuses(self) -> Dict[str, RateLimitState]:
        """Snapshot of every tracked endpoint, after pruning stale entries."""
        now = self._clock()
        for endpoint in [e for e, s in self._states.items() if s.is_stale(now)]:
            del self._states[endpoint]
        return {endpoint: replace(state) for endpoint, state in self._states.items()}

    def clear_endpoint(self, endpoint: str) -> None:
        """Forget everything known about one endpoint."""
        self._states.pop(endpoint, None)

    def clear_all(self) -> None:
        """Forget everything known about all endpoints."""
        self._states.clear()
