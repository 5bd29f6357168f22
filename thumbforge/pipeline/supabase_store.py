"""
Supabase-backed record stores.

Tables:
  user_credits         — one row per user, keyed by user_id
  regenerate_sessions  — short-lived resumable generation intents
  thumbnail_history    — persisted GenerationResults

All calls go through the service-role client (bypasses RLS).  Conditional
updates are expressed as ``update(...).eq(column, expected)``: PostgREST
returns the rows it touched, so an empty result means we lost a race.
"""

import logging
from datetime import datetime
from typing import Optional

from supabase import Client, create_client

from .. import config
from .errors import PersistenceError
from .models import (
    EntitlementRecord,
    GenerationResult,
    RegenerateSession,
    utcnow,
)
from .stores import CreditStore, HistoryStore, SessionStore, Stores

logger = logging.getLogger(__name__)

CREDITS_TABLE = "user_credits"
SESSIONS_TABLE = "regenerate_sessions"
HISTORY_TABLE = "thumbnail_history"

_COMPUTED = {"unlimited", "thumbnails_display", "regenerates_display"}

# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY)
    return _service_client


def _now_iso() -> str:
    return utcnow().isoformat()


def _execute(query, what: str):
    try:
        return query.execute()
    except Exception as e:
        logger.error(f"Supabase {what} failed: {e}")
        raise PersistenceError(f"Record store error during {what}") from e


def _first(data) -> Optional[dict]:
    return data[0] if data else None


# ── Credits ──────────────────────────────────────────────────────────────────

class SupabaseCreditStore(CreditStore):
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        return self._client or get_service_client()

    async def get(self, user_id):
        res = _execute(
            self.sb.table(CREDITS_TABLE).select("*").eq("user_id", user_id).limit(1),
            "credits.get",
        )
        row = _first(res.data)
        return EntitlementRecord(**row) if row else None

    async def insert_if_absent(self, record):
        row = record.model_dump(mode="json", exclude=_COMPUTED)
        _execute(
            self.sb.table(CREDITS_TABLE).upsert(
                row, on_conflict="user_id", ignore_duplicates=True
            ),
            "credits.insert",
        )
        stored = await self.get(record.user_id)
        if stored is None:
            raise PersistenceError(f"Credit row for {record.user_id} vanished after insert")
        return stored

    async def compare_and_set(self, user_id, expected, changes):
        now = _now_iso()
        query = self.sb.table(CREDITS_TABLE).update(
            {**changes, "last_updated": now, "updated_at": now}
        ).eq("user_id", user_id)
        for column, value in expected.items():
            query = query.eq(column, value)
        res = _execute(query, "credits.compare_and_set")
        row = _first(res.data)
        return EntitlementRecord(**row) if row else None

    async def delete(self, user_id):
        res = _execute(
            self.sb.table(CREDITS_TABLE).delete().eq("user_id", user_id),
            "credits.delete",
        )
        return bool(res.data)

    async def list_all(self):
        res = _execute(
            self.sb.table(CREDITS_TABLE).select("*").order("created_at", desc=True),
            "credits.list",
        )
        return [EntitlementRecord(**row) for row in res.data]


# ── Regenerate sessions ──────────────────────────────────────────────────────

class SupabaseSessionStore(SessionStore):
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        return self._client or get_service_client()

    async def insert(self, session):
        _execute(
            self.sb.table(SESSIONS_TABLE).insert(session.model_dump(mode="json")),
            "sessions.insert",
        )
        return session

    async def get(self, session_id):
        res = _execute(
            self.sb.table(SESSIONS_TABLE).select("*").eq("id", session_id).limit(1),
            "sessions.get",
        )
        row = _first(res.data)
        return RegenerateSession(**row) if row else None

    async def latest_active(self, user_id, now: datetime):
        res = _execute(
            self.sb.table(SESSIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .gt("expires_at", now.isoformat())
            .order("created_at", desc=True)
            .limit(1),
            "sessions.latest_active",
        )
        row = _first(res.data)
        return RegenerateSession(**row) if row else None

    async def delete(self, session_id):
        res = _execute(
            self.sb.table(SESSIONS_TABLE).delete().eq("id", session_id),
            "sessions.delete",
        )
        return bool(res.data)

    async def delete_for_user(self, user_id):
        res = _execute(
            self.sb.table(SESSIONS_TABLE).delete().eq("user_id", user_id),
            "sessions.delete_for_user",
        )
        return len(res.data or [])


# ── Thumbnail history ────────────────────────────────────────────────────────

class SupabaseHistoryStore(HistoryStore):
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        return self._client or get_service_client()

    async def insert(self, result):
        _execute(
            self.sb.table(HISTORY_TABLE).insert(result.model_dump(mode="json")),
            "history.insert",
        )
        return result

    async def get(self, result_id):
        res = _execute(
            self.sb.table(HISTORY_TABLE).select("*").eq("id", result_id).limit(1),
            "history.get",
        )
        row = _first(res.data)
        return GenerationResult(**row) if row else None

    async def list_for_user(self, user_id):
        res = _execute(
            self.sb.table(HISTORY_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True),
            "history.list",
        )
        return [GenerationResult(**row) for row in res.data]

    async def delete(self, result_id):
        res = _execute(
            self.sb.table(HISTORY_TABLE).delete().eq("id", result_id),
            "history.delete",
        )
        return bool(res.data)

    async def delete_for_user(self, user_id):
        res = _execute(
            self.sb.table(HISTORY_TABLE).delete().eq("user_id", user_id),
            "history.delete_for_user",
        )
        return len(res.data or [])

    async def count(self):
        res = _execute(
            self.sb.table(HISTORY_TABLE).select("id", count="exact").limit(1),
            "history.count",
        )
        return res.count or 0


def supabase_stores(client: Optional[Client] = None) -> Stores:
    return Stores(
        credits=SupabaseCreditStore(client),
        sessions=SupabaseSessionStore(client),
        history=SupabaseHistoryStore(client),
    )
