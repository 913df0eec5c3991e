"""Forum search via the Reddit OAuth API (application-only auth)."""

from __future__ import annotations

import time
from typing import Any

import structlog

from angle_finder.models import Source, SourceType
from angle_finder.providers.base import ProviderAdapter, SearchContext

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
API_BASE = "https://oauth.reddit.com"
MAX_SUBREDDITS = 10
_TOKEN_EXPIRY_MARGIN = 60.0


class RedditAdapter(ProviderAdapter):
    """Forum search, optionally restricted to suggested communities.

    Requires ``REDDIT_CLIENT_ID`` and ``REDDIT_CLIENT_SECRET``; without
    them every search returns no results.
    """

    source_type = SourceType.REDDIT

    _token: str | None = None
    _token_expires_at: float = 0.0

    async def _access_token(self, client_id: str, client_secret: str) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        response = await self._request(
            "POST",
            TOKEN_URL,
            auth=(client_id, client_secret),
            data={"grant_type": "client_credentials"},
        )
        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise RuntimeError("Reddit auth response carried no access token")
        expires_in = float(payload.get("expires_in") or 0)
        self._token = str(token)
        self._token_expires_at = time.monotonic() + max(
            0.0, expires_in - _TOKEN_EXPIRY_MARGIN
        )
        return self._token

    async def _search(self, query: str, context: SearchContext) -> list[Source]:
        client_id = self._secret("REDDIT_CLIENT_ID")
        client_secret = self._secret("REDDIT_CLIENT_SECRET")
        if not client_id or not client_secret:
            logger.warning("provider_not_configured", provider=self.name)
            return []

        token = await self._access_token(client_id, client_secret)
        subreddits = [name for name in context.subreddits if name][:MAX_SUBREDDITS]
        params: dict[str, Any] = {"q": query, "sort": "relevance"}
        if subreddits:
            url = f"{API_BASE}/r/{'+'.join(subreddits)}/search.json"
            params.update(restrict_sr="true", limit=15)
        else:
            url = f"{API_BASE}/search.json"
            params["limit"] = 10

        response = await self._request(
            "GET", url, params=params, headers={"Authorization": f"Bearer {token}"}
        )
        children = response.json().get("data", {}).get("children", [])
        return [
            source
            for source in (self._to_source(child) for child in children)
            if source is not None
        ]

    def _to_source(self, child: Any) -> Source | None:
        post = child.get("data") if isinstance(child, dict) else None
        if not isinstance(post, dict) or not post.get("id"):
            return None
        return Source(
            id=f"reddit-{post['id']}",
            type=self.source_type,
            title=post.get("title") or "Untitled",
            url=f"https://www.reddit.com{post.get('permalink', '')}",
            views=int(post.get("score") or 0),
            engagement=int(post.get("num_comments") or 0),
            subreddit=post.get("subreddit"),
            author=post.get("author"),
        )
