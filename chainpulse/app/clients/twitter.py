"""Twitter API v2 client with rate limit handling.

Every request goes through a RetryOrchestrator keyed by the quota it
consumes, so ``x-rate-limit-*`` headers from successful responses and 429
errors both feed the same RateLimitTracker.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from chainpulse.app.core.config import Settings
from chainpulse.app.core.logging import get_logger
from chainpulse.app.resilience.classifier import endpoint_key
from chainpulse.app.resilience.models import RateLimitState
from chainpulse.app.resilience.retry import RetryOrchestrator

logger = get_logger(__name__)


@dataclass
class ApiResponse:
    """Decoded response body plus the headers the tracker reads."""
    status_code: int
    data: Any
    headers: httpx.Headers


class TwitterApiClient:
    """Minimal Twitter API v2 client using app-only bearer auth."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        orchestrator: RetryOrchestrator,
        bearer_token: str,
        base_url: str = "https://api.twitter.com/2",
    ):
        self._http_client = http_client
        self.orchestrator = orchestrator
        self.base_url = base_url.rstrip("/")
        self.headers = self._build_headers(bearer_token)
        self._user_id: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        http_client: httpx.AsyncClient,
        orchestrator: RetryOrchestrator,
        config: Settings,
    ) -> "TwitterApiClient":
        return cls(
            http_client,
            orchestrator,
            bearer_token=config.twitter_bearer_token,
            base_url=config.twitter_base_url,
        )

    def _build_headers(self, bearer_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {bearer_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> ApiResponse:
        response = await self._http_client.request(
            method, f"{self.base_url}{path}", headers=self.headers, **kwargs
        )
        response.raise_for_status()
        data = response.json() if response.content else None
        return ApiResponse(status_code=response.status_code, data=data, headers=response.headers)

    async def _execute(self, operation_name: str, method: str, path: str, **kwargs: Any) -> ApiResponse:
        async def operation() -> ApiResponse:
            return await self._request(method, path, **kwargs)

        return await self.orchestrator.execute(endpoint_key(operation_name), operation)

    async def get_user_profile(self) -> Dict[str, str]:
        """Profile of the authenticated user."""
        response = await self._execute(
            "users",
            "GET",
            "/users/me",
            params={"user.fields": "description,profile_image_url,username,name"},
        )
        user = (response.data or {}).get("data")
        if not user:
            raise ValueError("Failed to retrieve user profile")

        self._user_id = user["id"]
        return {
            "id": user["id"],
            "username": user["username"],
            "screen_name": user.get("name", ""),
            "description": user.get("description", ""),
            "profile_image_url": user.get("profile_image_url", ""),
        }

    async def _get_user_id(self) -> str:
        if self._user_id is None:
            await self.get_user_profile()
        return self._user_id  # type: ignore[return-value]

    async def send_tweet(self, text: str, in_reply_to: Optional[str] = None) -> Dict[str, str]:
        payload: Dict[str, Any] = {"text": text}
        if in_reply_to:
            payload["reply"] = {"in_reply_to_tweet_id": in_reply_to}

        response = await self._execute("tweets", "POST", "/tweets", json=payload)
        tweet = response.data["data"]
        logger.info(f"Tweet sent successfully: {tweet['id']}")
        return {"id": tweet["id"], "text": tweet.get("text", text)}

    async def get_tweet(self, tweet_id: str) -> Dict[str, Any]:
        """Fetch one tweet. Results are cached when a cache is configured."""

        async def operation() -> ApiResponse:
            return await self._request(
                "GET",
                f"/tweets/{tweet_id}",
                params={
                    "tweet.fields": "created_at,author_id,conversation_id,text",
                    "user.fields": "username,name",
                    "expansions": "author_id",
                },
            )

        response = await self.orchestrator.execute(
            endpoint_key("tweets"), operation, cache_key=f"tweet:{tweet_id}"
        )
        body = response.data or {}
        tweet = body.get("data")
        users = (body.get("includes") or {}).get("users") or []
        if not tweet or not users:
            raise ValueError("Failed to retrieve tweet data")

        user = users[0]
        return {
            "id": tweet["id"],
            "username": user["username"],
            "name": user.get("name", ""),
            "text": tweet["text"],
            "created_at": tweet.get("created_at"),
            "permanent_url": f"https://twitter.com/{user['username']}/status/{tweet['id']}",
        }

    async def like_tweet(self, tweet_id: str) -> bool:
        user_id = await self._get_user_id()
        response = await self._execute(
            "likes", "POST", f"/users/{user_id}/likes", json={"tweet_id": tweet_id}
        )
        return bool((response.data or {}).get("data", {}).get("liked"))

    async def retweet(self, tweet_id: str) -> bool:
        user_id = await self._get_user_id()
        response = await self._execute(
            "retweets", "POST", f"/users/{user_id}/retweets", json={"tweet_id": tweet_id}
        )
        return bool((response.data or {}).get("data", {}).get("retweeted"))

    def get_rate_limit_status(self) -> Dict[str, RateLimitState]:
        """Current rate limit state for monitoring."""
        return self.orchestrator.tracker.all_statuses()
