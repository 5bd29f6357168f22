"""
Regenerate sessions — "retry this generation" without re-answering.

A session links a user to a topic, an optional originating history row and
an optional carried-over user image.  It is valid for a fixed TTL from
creation; expiry is checked at read time, nothing purges rows on a timer.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from .. import config
from .models import RegenerateSession, utcnow
from .stores import SessionStore

logger = logging.getLogger(__name__)


class RegenerateSessionStore:
    def __init__(
        self,
        store: SessionStore,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._ttl = timedelta(
            seconds=ttl_seconds if ttl_seconds is not None else config.REGENERATE_SESSION_TTL_SECONDS
        )
        self._clock = clock

    async def create(
        self,
        user_id: str,
        topic: str,
        original_thumbnail_id: Optional[str] = None,
        user_image: Optional[str] = None,
    ) -> RegenerateSession:
        now = self._clock()
        session = RegenerateSession(
            id=str(uuid4()),
            user_id=user_id,
            topic=topic,
            original_thumbnail_id=original_thumbnail_id or None,
            user_image=user_image or None,
            created_at=now,
            expires_at=now + self._ttl,
        )
        await self._store.insert(session)
        logger.info(f"Regenerate session {session.id} created for {user_id} (topic={topic[:40]!r})")
        return session

    async def get_active(self, user_id: str) -> Optional[RegenerateSession]:
        """Most recently created, unexpired session for the user."""
        return await self._store.latest_active(user_id, self._clock())

    async def get(self, session_id: str) -> Optional[RegenerateSession]:
        """Look a session up by id, expired or not."""
        return await self._store.get(session_id)

    async def delete_by_id(self, session_id: str) -> None:
        if not await self._store.delete(session_id):
            logger.debug(f"Regenerate session {session_id} already gone")

    async def delete_all_for_user(self, user_id: str) -> int:
        removed = await self._store.delete_for_user(user_id)
        logger.info(f"Cleared {removed} regenerate session(s) for {user_id}")
        return removed
