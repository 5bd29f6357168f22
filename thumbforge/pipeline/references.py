"""
Reference Collector — find and download existing thumbnails for a topic.

References are an enhancement, never a requirement: a failed search yields
an empty list, and each image fetch fails independently of its siblings.
Results keep the provider's relevance order.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol

import httpx

from .. import config
from .errors import ProviderFailure
from .images import sniff_mime
from .models import ReferenceCandidate, ReferenceImage

logger = logging.getLogger(__name__)

QUALITY_KEYWORDS = (
    "tutorial", "guide", "how to", "explained", "tips", "secrets",
    "ultimate", "complete", "best", "top", "amazing", "incredible",
)

# Ask for a few extra hits so the popularity filter still leaves enough
SEARCH_OVERFETCH = 2


class ReferenceSearch(Protocol):
    async def search(self, query: str, max_results: int) -> list[ReferenceCandidate]: ...


def build_search_query(topic: str) -> str:
    """Steer the search towards polished, high-effort videos."""
    clean = topic.strip()
    if any(k in clean.lower() for k in QUALITY_KEYWORDS):
        return clean
    return f"{clean} tutorial OR {clean} guide OR {clean} explained"


class ReferenceCollector:
    def __init__(
        self,
        search: ReferenceSearch,
        client: Optional[httpx.AsyncClient] = None,
        min_views: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        max_bytes: Optional[int] = None,
    ):
        self._search = search
        self._client = client
        self._min_views = config.REFERENCE_MIN_VIEWS if min_views is None else min_views
        self._fetch_timeout = fetch_timeout or config.FETCH_TIMEOUT_SECONDS
        self._max_bytes = max_bytes or config.MAX_REFERENCE_BYTES

    async def _download(
        self,
        client: httpx.AsyncClient,
        index: int,
        candidate: ReferenceCandidate,
        scratch: Optional[Path],
    ) -> Optional[ReferenceImage]:
        """Stream one image (to the scratch dir if given). None on any failure."""
        path = scratch / f"ref_{index}.img" if scratch is not None else None
        chunks: list[bytes] = []
        size = 0
        try:
            async with client.stream(
                "GET", candidate.url, timeout=self._fetch_timeout, follow_redirects=True
            ) as resp:
                resp.raise_for_status()
                async for chunk in resp.aiter_bytes():
                    size += len(chunk)
                    if size > self._max_bytes:
                        logger.warning(f"Reference {candidate.url} exceeds {self._max_bytes} bytes, skipped")
                        return None
                    chunks.append(chunk)
        except httpx.HTTPError as e:
            logger.warning(f"Reference fetch failed for {candidate.url}: {e}")
            return None

        data = b"".join(chunks)
        mime = sniff_mime(data)
        if mime is None:
            logger.warning(f"Reference {candidate.url} is not a readable image, skipped")
            return None

        if path is not None:
            path.write_bytes(data)

        return ReferenceImage(
            data=data,
            mime_type=mime,
            source_url=candidate.url,
            title=candidate.title,
            channel_title=candidate.channel_title,
            view_count=candidate.view_count,
            video_id=candidate.video_id,
            path=str(path) if path is not None else None,
        )

    async def _download_all(
        self,
        client: httpx.AsyncClient,
        candidates: list[ReferenceCandidate],
        scratch: Optional[Path],
    ) -> list[ReferenceImage]:
        fetched = await asyncio.gather(*(
            self._download(client, i, c, scratch) for i, c in enumerate(candidates)
        ))
        return [ref for ref in fetched if ref is not None]

    async def collect(
        self,
        topic: str,
        max_results: Optional[int] = None,
        scratch: Optional[Path] = None,
    ) -> list[ReferenceImage]:
        """
        Search once, filter by popularity, fetch each image independently.

        Args:
            topic:       Raw video topic.
            max_results: Upper bound on references returned.
            scratch:     Attempt-scoped directory to write downloads into.
        """
        limit = max_results or config.REFERENCE_MAX_RESULTS
        query = build_search_query(topic)

        try:
            hits = await self._search.search(query, limit * SEARCH_OVERFETCH)
        except ProviderFailure as e:
            logger.warning(f"Reference search failed for {topic!r}: {e}")
            return []

        candidates = [h for h in hits if h.url and h.view_count > self._min_views][:limit]
        if not candidates:
            logger.info(f"No usable reference thumbnails for {topic!r}")
            return []

        if self._client is not None:
            refs = await self._download_all(self._client, candidates, scratch)
        else:
            async with httpx.AsyncClient() as client:
                refs = await self._download_all(client, candidates, scratch)

        logger.info(f"Collected {len(refs)}/{len(candidates)} reference thumbnails for {topic!r}")
        return refs
