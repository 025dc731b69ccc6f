import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_BACKOFF_SCHEDULE = [1.0, 2.0, 4.0]
DEFAULT_BLOCK_RANGE = 100


def _parse_backoff_schedule(raw: Any) -> list[float]:
    if raw is None:
        return list(DEFAULT_BACKOFF_SCHEDULE)
    if isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        raw = str(raw).strip()
        if not raw or raw == "[]":
            return list(DEFAULT_BACKOFF_SCHEDULE)
        # Prefer JSON, but accept "1,2,4" and "1 2 4" as well.
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                items = parsed
            else:
                items = [p for p in re.split(r"[\[\],\s]+", raw) if p]
        else:
            items = [p for p in re.split(r"[,\s]+", raw) if p]

    schedule = [float(item) for item in items]
    if not schedule:
        return list(DEFAULT_BACKOFF_SCHEDULE)
    if any(delay < 0 for delay in schedule):
        raise ValueError("rpc_backoff_schedule delays must not be negative")
    return schedule


def _parse_endpoint_margins(raw: Any) -> dict[str, int]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        items = raw.items()
    else:
        raw = str(raw).strip()
        if not raw:
            return {}
        # JSON object, or "tweets=2,users=1".
        if raw.startswith("{"):
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                raise ValueError("rate_limit_endpoint_margins must be a JSON object")
            items = parsed.items()
        else:
            items = []
            for pair in re.split(r"[,\s]+", raw):
                if not pair:
                    continue
                endpoint, sep, margin = pair.partition("=")
                if not sep or not endpoint:
                    raise ValueError(f"invalid endpoint margin entry: {pair!r}")
                items.append((endpoint, margin))

    margins = {str(endpoint): int(margin) for endpoint, margin in items}
    if any(margin < 0 for margin in margins.values()):
        raise ValueError("rate_limit_endpoint_margins must not be negative")
    return margins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Values are read once, when the settings object is constructed.
    """

    # Debug mode
    debug: bool = False

    # Blockchain JSON-RPC settings
    rpc_url: str = "https://bsc-dataseed.binance.org/"
    rpc_block_range: int = DEFAULT_BLOCK_RANGE
    rpc_retry_attempts: int = 3
    rpc_cache_ttl: int = 300_000  # milliseconds
    rpc_backoff_schedule: Annotated[list[float], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_BACKOFF_SCHEDULE)
    )

    # Cache sweep
    cache_sweep_interval_seconds: float = 60.0

    # Retry / rate limit tracking
    retry_max_attempts: int = 3
    rate_limit_safety_margin: int = 5
    rate_limit_default_retry_after: int = 60
    rate_limit_endpoint_margins: Annotated[dict[str, int], NoDecode] = Field(
        default_factory=dict
    )

    # Health monitoring
    health_max_age_seconds: float = 600.0  # 10 minutes
    health_check_interval_seconds: float = 0.0  # 0 disables the dedicated timer

    # Scheduled insights job
    insights_enabled: bool = Field(
        default=False, validation_alias="BNB_MCP_SCHEDULED_INSIGHTS"
    )
    insights_interval_minutes: float = Field(
        default=30.0, validation_alias="BNB_MCP_CHECK_INTERVAL"
    )

    # Twitter API v2 settings
    twitter_bearer_token: str = ""
    twitter_base_url: str = "https://api.twitter.com/2"
    twitter_cache_ttl: int = 60_000  # milliseconds

    # HTTP Client connection pool settings
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 30.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 50
    httpx_max_keepalive_connections: int = 10

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("rpc_block_range", mode="before")
    @classmethod
    def fallback_block_range(cls, v: Any) -> int:
        """Invalid block ranges fall back to the default instead of failing."""
        try:
            value = int(v)
        except (TypeError, ValueError):
            return DEFAULT_BLOCK_RANGE
        return value if value >= 1 else DEFAULT_BLOCK_RANGE

    @field_validator("rpc_backoff_schedule", mode="before")
    @classmethod
    def decode_backoff_schedule(cls, v: Any) -> list[float]:
        return _parse_backoff_schedule(v)

    @field_validator("rate_limit_endpoint_margins", mode="before")
    @classmethod
    def decode_endpoint_margins(cls, v: Any) -> dict[str, int]:
        return _parse_endpoint_margins(v)

    @field_validator("rpc_retry_attempts", "retry_max_attempts")
    @classmethod
    def validate_attempts_positive(cls, v: int) -> int:
        """Validate attempt counts are positive."""
        if v < 1:
            raise ValueError("attempt counts must be at least 1")
        return v

    @field_validator("rate_limit_safety_margin")
    @classmethod
    def validate_safety_margin(cls, v: int) -> int:
        if v < 0:
            raise ValueError("rate_limit_safety_margin must not be negative")
        return v

    @field_validator(
        "rpc_cache_ttl",
        "twitter_cache_ttl",
        "cache_sweep_interval_seconds",
        "rate_limit_default_retry_after",
        "health_max_age_seconds",
        "insights_interval_minutes",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("health_check_interval_seconds")
    @classmethod
    def validate_health_interval(cls, v: float) -> float:
        if v < 0:
            raise ValueError("health_check_interval_seconds must not be negative")
        return v

    @field_validator(
        "httpx_connect_timeout",
        "httpx_read_timeout",
        "httpx_write_timeout",
        "httpx_pool_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )


# Global settings instance
settings = Settings()
