"""Custom exceptions for chainpulse."""

from typing import Any, Optional


class ChainPulseError(Exception):
    """Base class for chainpulse exceptions.

    ``status_code`` mirrors the closest HTTP status so the status surface
    can report failures consistently.
    """
    status_code: int = 500

    def __init__(self, message: str = "chainpulse error"):
        self.message = message
        super().__init__(message)


class RateLimitExceeded(ChainPulseError):
    """Raised when an endpoint is still rate limited after every retry.

    Carries enough context to tell "still rate limited after N retries"
    apart from a hard failure.
    """
    status_code = 429

    def __init__(self, endpoint: str, attempts: int, wait_seconds: float):
        self.endpoint = endpoint
        self.attempts = attempts
        self.wait_seconds = wait_seconds
        super().__init__(
            f"Rate limit still in effect for '{endpoint}' after {attempts} attempts "
            f"(last wait {wait_seconds}s)"
        )


class RetriesExhaustedError(ChainPulseError):
    """Raised if the retry loop ends without returning or raising."""
    status_code = 503

    def __init__(self, endpoint: str, attempts: int):
        self.endpoint = endpoint
        self.attempts = attempts
        super().__init__(f"Failed to execute '{endpoint}' after {attempts} attempts")


class TransientProbeFailure(ChainPulseError):
    """Final failure of a best-effort operation.

    Never raised to callers of ``BackoffPolicy.run``; it is carried inside
    the ``BackoffResult`` so the failure stays inspectable.
    """
    status_code = 503

    def __init__(self, operation: str, attempts: int, cause: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {type(cause).__name__}: {cause}"
        )


class CycleFailedError(ChainPulseError):
    """Raised when a scheduled job cycle fails as a whole."""
    status_code = 503


class RpcError(ChainPulseError):
    """JSON-RPC error object returned by the node."""
    status_code = 502

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.data = data
        super().__init__(message)

    def __str__(self) -> str:
        return f"RPC error {self.code}: {self.message}"


class MalformedMetadataError(ChainPulseError):
    """Unparseable rate-limit metadata. Caught and logged, never escalated."""
    status_code = 400
