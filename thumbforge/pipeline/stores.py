"""
Record store interfaces and their in-memory implementations.

The ledger, session store and orchestrator only talk to these interfaces.
``compare_and_set`` is the one atomic primitive: it applies ``changes`` iff
every column in ``expected`` still holds the given value, and returns the
updated record (or None when the row moved underneath us or is gone).

The in-memory stores are the default when Supabase is not configured and
are what the tests run against.  State is per-process and lost on restart.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .models import (
    EntitlementRecord,
    GenerationResult,
    RegenerateSession,
    utcnow,
)


# ── Interfaces ───────────────────────────────────────────────────────────────

class CreditStore:
    async def get(self, user_id: str) -> Optional[EntitlementRecord]:
        raise NotImplementedError

    async def insert_if_absent(self, record: EntitlementRecord) -> EntitlementRecord:
        """Insert ``record`` unless the user already has one; return the stored row."""
        raise NotImplementedError

    async def compare_and_set(
        self, user_id: str, expected: dict, changes: dict
    ) -> Optional[EntitlementRecord]:
        raise NotImplementedError

    async def delete(self, user_id: str) -> bool:
        raise NotImplementedError

    async def list_all(self) -> list[EntitlementRecord]:
        raise NotImplementedError


class SessionStore:
    async def insert(self, session: RegenerateSession) -> RegenerateSession:
        raise NotImplementedError

    async def get(self, session_id: str) -> Optional[RegenerateSession]:
        raise NotImplementedError

    async def latest_active(self, user_id: str, now: datetime) -> Optional[RegenerateSession]:
        raise NotImplementedError

    async def delete(self, session_id: str) -> bool:
        raise NotImplementedError

    async def delete_for_user(self, user_id: str) -> int:
        raise NotImplementedError


class HistoryStore:
    async def insert(self, result: GenerationResult) -> GenerationResult:
        raise NotImplementedError

    async def get(self, result_id: str) -> Optional[GenerationResult]:
        raise NotImplementedError

    async def list_for_user(self, user_id: str) -> list[GenerationResult]:
        raise NotImplementedError

    async def delete(self, result_id: str) -> bool:
        raise NotImplementedError

    async def delete_for_user(self, user_id: str) -> int:
        raise NotImplementedError

    async def count(self) -> int:
        raise NotImplementedError


@dataclass
class Stores:
    credits: CreditStore
    sessions: SessionStore
    history: HistoryStore


# ── In-memory implementations ────────────────────────────────────────────────

class MemoryCreditStore(CreditStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: dict[str, EntitlementRecord] = {}

    async def get(self, user_id):
        with self._lock:
            return self._rows.get(user_id)

    async def insert_if_absent(self, record):
        with self._lock:
            existing = self._rows.get(record.user_id)
            if existing is not None:
                return existing
            self._rows[record.user_id] = record
            return record

    async def compare_and_set(self, user_id, expected, changes):
        with self._lock:
            current = self._rows.get(user_id)
            if current is None:
                return None
            for column, value in expected.items():
                if getattr(current, column) != value:
                    return None
            now = utcnow()
            updated = current.model_copy(
                update={**changes, "last_updated": now, "updated_at": now}
            )
            self._rows[user_id] = updated
            return updated

    async def delete(self, user_id):
        with self._lock:
            return self._rows.pop(user_id, None) is not None

    async def list_all(self):
        with self._lock:
            return sorted(self._rows.values(), key=lambda r: r.created_at, reverse=True)


class MemorySessionStore(SessionStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: dict[str, RegenerateSession] = {}

    async def insert(self, session):
        with self._lock:
            self._rows[session.id] = session
            return session

    async def get(self, session_id):
        with self._lock:
            return self._rows.get(session_id)

    async def latest_active(self, user_id, now):
        with self._lock:
            candidates = [
                s for s in self._rows.values()
                if s.user_id == user_id and s.is_active(now)
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    async def delete(self, session_id):
        with self._lock:
            return self._rows.pop(session_id, None) is not None

    async def delete_for_user(self, user_id):
        with self._lock:
            doomed = [sid for sid, s in self._rows.items() if s.user_id == user_id]
            for sid in doomed:
                del self._rows[sid]
            return len(doomed)


class MemoryHistoryStore(HistoryStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: dict[str, GenerationResult] = {}

    async def insert(self, result):
        with self._lock:
            self._rows[result.id] = result
            return result

    async def get(self, result_id):
        with self._lock:
            return self._rows.get(result_id)

    async def list_for_user(self, user_id):
        with self._lock:
            rows = [r for r in self._rows.values() if r.user_id == user_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    async def delete(self, result_id):
        with self._lock:
            return self._rows.pop(result_id, None) is not None

    async def delete_for_user(self, user_id):
        with self._lock:
            doomed = [rid for rid, r in self._rows.items() if r.user_id == user_id]
            for rid in doomed:
                del self._rows[rid]
            return len(doomed)

    async def count(self):
        with self._lock:
            return len(self._rows)


def memory_stores() -> Stores:
    return Stores(
        credits=MemoryCreditStore(),
        sessions=MemorySessionStore(),
        history=MemoryHistoryStore(),
    )
