"""Failure classification for wrapped operations.

Errors raised by HTTP and RPC clients come in many shapes: an
``httpx.HTTPStatusError`` carries a response, SDK errors expose ``status``
or ``code``, JSON-RPC nodes answer with negative error codes, and some
clients attach a structured rate-limit object. ``classify_error`` probes
all of these once and returns a ``ClassifiedError``, so call sites only
ever switch on ``ErrorKind``.
"""

from collections.abc import Mapping
from typing import Any, Dict, Optional

from chainpulse.app.exceptions import ChainPulseError
from chainpulse.app.resilience.models import ClassifiedError, ErrorKind

RATE_LIMIT_STATUS = 429

# JSON-RPC "limit exceeded" (EIP-1474)
RPC_LIMIT_EXCEEDED = -32005

_RATE_LIMIT_PHRASES = ("rate limit", "too many requests")

_STATUS_ATTRS = ("status_code", "status", "code")
_RESPONSE_STATUS_ATTRS = ("status_code", "status", "statusCode")

# Normalize common Twitter API operations to the quota they share.
# "retweets" must be matched before its substring "tweets".
_ENDPOINT_KEYS = (
    "retweets",
    "tweets",
    "users",
    "search",
    "timeline",
    "mentions",
    "likes",
    "followers",
    "following",
)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _lower_headers(headers: Any) -> Dict[str, str]:
    if not isinstance(headers, Mapping):
        return {}
    return {str(k).lower(): str(v) for k, v in headers.items()}


def _rate_limit_object(exc: BaseException) -> Optional[Dict[str, Any]]:
    raw = getattr(exc, "rate_limit", None)
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        fields = {k: raw.get(k) for k in ("limit", "remaining", "reset")}
    else:
        fields = {k: getattr(raw, k, None) for k in ("limit", "remaining", "reset")}
    return fields if any(v is not None for v in fields.values()) else None


def classify_error(exc: BaseException) -> ClassifiedError:
    """Classify a failure raised by a wrapped operation.

    Args:
        exc: The exception to inspect

    Returns:
        A ClassifiedError whose kind is RATE_LIMIT when any rate-limit
        signal is present, NON_RETRYABLE when a definite non-429 HTTP
        status is present, and UNKNOWN otherwise.
    """
    status: Optional[int] = None
    rpc_code: Optional[int] = None

    # status_code on our own exceptions is the status we would answer with
    status_attrs = ("code",) if isinstance(exc, ChainPulseError) else _STATUS_ATTRS
    for attr in status_attrs:
        value = _as_int(getattr(exc, attr, None))
        if value is None:
            continue
        if value < 0:
            rpc_code = value
        elif 100 <= value < 600 and status is None:
            status = value

    response = getattr(exc, "response", None)
    headers: Dict[str, str] = {}
    if response is not None:
        if status is None:
            for attr in _RESPONSE_STATUS_ATTRS:
                value = _as_int(getattr(response, attr, None))
                if value is not None and 100 <= value < 600:
                    status = value
                    break
        headers = _lower_headers(getattr(response, "headers", None))

    message = str(exc)
    error_text = getattr(exc, "error", None)
    haystack = message.lower()
    if isinstance(error_text, str):
        haystack = f"{haystack} {error_text.lower()}"

    rate_limit = _rate_limit_object(exc)

    is_rate_limit = (
        status == RATE_LIMIT_STATUS
        or rpc_code == RPC_LIMIT_EXCEEDED
        or rate_limit is not None
        or any(phrase in haystack for phrase in _RATE_LIMIT_PHRASES)
    )

    if is_rate_limit:
        kind = ErrorKind.RATE_LIMIT
    elif status is not None:
        kind = ErrorKind.NON_RETRYABLE
    else:
        kind = ErrorKind.UNKNOWN

    return ClassifiedError(
        kind=kind,
        status=status,
        retry_after=headers.get("retry-after"),
        rate_limit=rate_limit,
        headers=headers,
        rpc_code=rpc_code,
        message=message,
    )


def is_rate_limit_error(exc: BaseException) -> bool:
    """Check if an exception is a rate-limit failure."""
    return classify_error(exc).is_rate_limit


def is_backoff_retryable(exc: BaseException) -> bool:
    """Retry heuristic for the bounded-backoff variant.

    Besides real rate-limit signals, RPC nodes report quota problems with
    free-form messages ("daily request limit reached", "project ID request
    rate exceeded"), so any message mentioning a limit or a rate is retried
    too.
    """
    classified = classify_error(exc)
    message = classified.message.lower()
    return classified.is_rate_limit or "limit" in message or "rate" in message


def endpoint_key(operation: str) -> str:
    """Map an operation name to the endpoint key whose quota it uses.

    Example:
        >>> endpoint_key("get_user_tweets")
        'tweets'
        >>> endpoint_key("gasPrice")
        'gasPrice'
    """
    lowered = operation.lower()
    for key in _ENDPOINT_KEYS:
        if key in lowered:
            return key
    return operation
