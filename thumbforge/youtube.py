"""
YouTube Data API v3 — reference thumbnail search.

Two REST calls per search: /search for relevance-ordered videos, then
/videos?part=statistics for their view counts (the popularity signal).
"""

import logging
from typing import Optional

import httpx

from . import config
from .pipeline.errors import ErrorCode, ProviderFailure
from .pipeline.models import ReferenceCandidate

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/youtube/v3"

THUMBNAIL_PREFERENCE = ("maxres", "high", "medium", "default")


def best_thumbnail_url(thumbnails: dict) -> str:
    for size in THUMBNAIL_PREFERENCE:
        url = (thumbnails.get(size) or {}).get("url")
        if url:
            return url
    return ""


def _video_id(item: dict) -> str:
    ident = item.get("id")
    return ident.get("videoId", "") if isinstance(ident, dict) else ""


class YouTubeSearch:
    """``search(query, max_results)`` capability backed by the Data API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = config.YOUTUBE_API_KEY if api_key is None else api_key
        self._client = client
        self._timeout = timeout or config.SEARCH_TIMEOUT_SECONDS
        if not self.api_key:
            logger.warning("YOUTUBE_API_KEY not set — reference thumbnails will be skipped")

    async def _get(self, client: httpx.AsyncClient, path: str, params: dict) -> dict:
        try:
            resp = await client.get(f"{API_BASE}/{path}", params={**params, "key": self.api_key})
        except httpx.TimeoutException as e:
            raise ProviderFailure(ErrorCode.TIMEOUT, f"YouTube {path} timed out") from e
        except httpx.HTTPError as e:
            raise ProviderFailure(ErrorCode.PROVIDER_ERROR, f"YouTube {path} failed: {e}") from e

        if resp.status_code != 200:
            raise ProviderFailure(
                ErrorCode.PROVIDER_ERROR,
                f"YouTube API error {resp.status_code}: {resp.text[:300]}",
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderFailure(
                ErrorCode.PROVIDER_ERROR, f"YouTube {path} returned non-JSON body: {resp.text[:100]!r}"
            ) from e
        if not isinstance(data, dict):
            raise ProviderFailure(ErrorCode.PROVIDER_ERROR, f"YouTube {path} returned {type(data).__name__}")
        return data

    async def _search(self, client: httpx.AsyncClient, query: str, max_results: int) -> list[ReferenceCandidate]:
        data = await self._get(client, "search", {
            "part": "snippet",
            "q": query,
            "type": "video",
            "maxResults": str(max_results),
            "order": "relevance",
            "videoDuration": "medium",
            "videoDefinition": "high",
        })
        items = [item for item in data.get("items") or [] if isinstance(item, dict)]
        if not items:
            return []

        video_ids = [_video_id(item) for item in items]
        views: dict[str, int] = {}
        try:
            stats = await self._get(client, "videos", {
                "part": "statistics",
                "id": ",".join(v for v in video_ids if v),
            })
            for row in stats.get("items") or []:
                try:
                    views[row["id"]] = int(row.get("statistics", {}).get("viewCount", 0))
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    raise ProviderFailure(ErrorCode.PROVIDER_ERROR, f"Unreadable statistics row: {row!r:.100}") from e
        except ProviderFailure as e:
            # Without statistics every hit scores zero and gets filtered out downstream
            logger.warning(f"YouTube statistics lookup failed: {e}")

        candidates = []
        for item, video_id in zip(items, video_ids):
            snippet = item.get("snippet") or {}
            try:
                candidates.append(ReferenceCandidate(
                    url=best_thumbnail_url(snippet.get("thumbnails") or {}),
                    view_count=views.get(video_id, 0),
                    title=snippet.get("title", ""),
                    channel_title=snippet.get("channelTitle", ""),
                    video_id=video_id,
                ))
            except (AttributeError, ValueError) as e:
                logger.warning(f"Skipping unreadable YouTube hit {video_id!r}: {e}")
        return candidates

    async def search(self, query: str, max_results: int) -> list[ReferenceCandidate]:
        if not self.api_key:
            return []
        if self._client is not None:
            return await self._search(self._client, query, max_results)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._search(client, query, max_results)
