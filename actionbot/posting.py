"""Publishing of final post text (and optional media) to an account."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import httpx

from actionbot.accounts import AccountConfig
from actionbot.config import Config
from actionbot.errors import PostingError

logger = logging.getLogger(__name__)


class Poster(Protocol):
    """Publishes text for an account and returns the external post id."""

    async def post(self, account: AccountConfig, text: str, media_path: Optional[str] = None) -> str:
        ...


class MockPoster:
    """Records posts in memory and hands out sequential ids."""

    def __init__(self, prefix: str = "mock") -> None:
        self.prefix = prefix
        self.posts: List[Dict[str, Any]] = []

    async def post(self, account: AccountConfig, text: str, media_path: Optional[str] = None) -> str:
        post_id = f"{self.prefix}-{len(self.posts) + 1}"
        self.posts.append(
            {"id": post_id, "account_id": account.id, "text": text, "media_path": media_path}
        )
        logger.info(f"[mock] Posted {post_id} for account {account.id}")
        return post_id


class XApiPoster:
    """X API v2 poster using the account's user access token."""

    def __init__(
        self,
        *,
        base_url: str = Config.X_API_BASE_URL,
        timeout_seconds: float = Config.POST_TIMEOUT_SEC,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.request(method, url, timeout=self.timeout_seconds, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise PostingError(f"post request failed: {e}") from e

    @staticmethod
    def _check(resp: httpx.Response, what: str) -> Dict[str, Any]:
        if resp.status_code == 429:
            raise PostingError(f"{what} rate limited", rate_limited=True)
        if resp.status_code >= 400:
            raise PostingError(f"{what} failed: HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise PostingError(f"{what} returned non-JSON response") from e
        if not isinstance(data, dict) or not isinstance(data.get("data"), dict):
            raise PostingError(f"{what} returned an unexpected response body")
        return data["data"]

    async def upload_media(self, account: AccountConfig, media_path: str) -> str:
        path = Path(media_path)
        try:
            content = path.read_bytes()
        except OSError as e:
            raise PostingError(f"unable to read media {media_path}: {e}") from e

        resp = await self._send(
            "POST",
            f"{self.base_url}/media/upload",
            headers={"Authorization": f"Bearer {account.access_token}"},
            data={"media_category": "tweet_image"},
            files={"media": (path.name, content, "image/png")},
        )
        media_id = self._check(resp, "media upload").get("id")
        if not media_id:
            raise PostingError("media upload returned no id")
        return str(media_id)

    async def post(self, account: AccountConfig, text: str, media_path: Optional[str] = None) -> str:
        if not account.access_token:
            raise PostingError(f"account {account.id} has no access token")

        payload: Dict[str, Any] = {"text": text}
        if media_path:
            media_id = await self.upload_media(account, media_path)
            payload["media"] = {"media_ids": [media_id]}

        resp = await self._send(
            "POST",
            f"{self.base_url}/tweets",
            headers={"Authorization": f"Bearer {account.access_token}"},
            json=payload,
        )
        post_id = self._check(resp, "post").get("id")
        if not post_id:
            raise PostingError("post returned no id")
        return str(post_id)


def make_poster(provider: str = Config.POSTER_PROVIDER) -> Poster:
    if provider == "mock":
        return MockPoster()
    if provider == "x":
        return XApiPoster()
    raise ValueError(f"Invalid POSTER_PROVIDER: {provider}")
