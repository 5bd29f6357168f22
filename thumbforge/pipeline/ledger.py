"""
Entitlement Ledger — per-user credit balances and the free-preview flag.

Every mutation is a read → decide → conditional-write loop against the
CreditStore.  Within one process a per-user asyncio.Lock serialises the
loop; across processes the conditional write (``compare_and_set``) is what
keeps balances linearizable: two concurrent consumes against a balance of
1 produce one success and one failure, never a negative balance.

Admins are exempt from decrements.  ``is_admin`` is re-derived from the
caller's email on every ``get_or_create`` through an injected policy, and
the real balances are never overwritten when it flips.
"""

import asyncio
import logging
import weakref
from typing import Callable, Iterable, Optional

from .errors import ForbiddenError, NotFoundError, PersistenceError
from .models import (
    BALANCE_FIELDS,
    AdminStats,
    CheckResult,
    ConsumeResult,
    CreditKind,
    EntitlementRecord,
)
from .stores import CreditStore, HistoryStore

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 8

FREE_PREVIEW_EXHAUSTED = (
    "You've used your free preview. Please purchase credits to generate more thumbnails."
)
FREE_PREVIEW_ALREADY_USED = "You've already used your free preview. Please purchase credits."
DOWNLOAD_DENIED = "No credits remaining for download. Please purchase more credits."
NO_BALANCE = {
    CreditKind.THUMBNAIL: "No thumbnails remaining. Please purchase more credits.",
    CreditKind.REGENERATE: "No regenerates remaining. Please purchase more credits.",
}


def deny_all(email: str) -> bool:
    return False


def email_policy(admin_emails: Iterable[str]) -> Callable[[str], bool]:
    """Build an ``is_privileged(email)`` predicate from an allow-list."""
    allowed = {e.strip().lower() for e in admin_emails if e and e.strip()}

    def is_privileged(email: str) -> bool:
        return bool(email) and email.strip().lower() in allowed

    return is_privileged


class EntitlementLedger:
    def __init__(
        self,
        store: CreditStore,
        is_privileged: Callable[[str], bool] = deny_all,
        history: Optional[HistoryStore] = None,
    ):
        self._store = store
        self._is_privileged = is_privileged
        self._history = history
        # Entries vanish once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ── Internals ────────────────────────────────────────────────────────

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def _require(self, user_id: str) -> EntitlementRecord:
        record = await self._store.get(user_id)
        if record is None:
            raise NotFoundError(f"User {user_id} not found")
        return record

    async def _update(
        self,
        user_id: str,
        decide: Callable[[EntitlementRecord], Optional[tuple[dict, dict]]],
    ) -> tuple[EntitlementRecord, bool]:
        """
        Apply ``decide`` atomically.

        ``decide`` returns ``(expected, changes)`` to attempt a write, or
        None to leave the record alone.  Returns the final record and
        whether a write happened.
        """
        async with self._lock_for(user_id):
            for attempt in range(MAX_CAS_ATTEMPTS):
                record = await self._require(user_id)
                step = decide(record)
                if step is None:
                    return record, False
                expected, changes = step
                updated = await self._store.compare_and_set(user_id, expected, changes)
                if updated is not None:
                    return updated, True
                logger.info(f"Ledger write for {user_id} lost a race (attempt {attempt + 1})")
        raise PersistenceError(f"Could not update credits for {user_id}: too much contention")

    # ── Lookup / creation ────────────────────────────────────────────────

    async def get(self, user_id: str) -> EntitlementRecord:
        return await self._require(user_id)

    async def get_or_create(self, user_id: str, email: str) -> EntitlementRecord:
        """
        Return the user's record, creating it with zero balances on first
        sight.  Re-syncs ``is_admin`` (and the stored email) with the
        privilege policy on every call.
        """
        privileged = self._is_privileged(email)
        record = await self._store.get(user_id)
        if record is None:
            record = await self._store.insert_if_absent(
                EntitlementRecord(user_id=user_id, email=email or "", is_admin=privileged)
            )
            logger.info(f"Created credit record for {user_id} (admin={record.is_admin})")

        # Without an email there is nothing to derive admin status from
        if not email or (record.is_admin == privileged and record.email == email):
            return record

        def resync(current: EntitlementRecord):
            changes = {}
            if current.is_admin != privileged:
                changes["is_admin"] = privileged
            if current.email != email:
                changes["email"] = email
            if not changes:
                return None
            return {"is_admin": current.is_admin}, changes

        updated, written = await self._update(user_id, resync)
        if written and record.is_admin != updated.is_admin:
            logger.info(
                f"Admin flag for {user_id} → {updated.is_admin} "
                f"(real balance kept: {updated.thumbnails_remaining}/{updated.regenerates_remaining})"
            )
        return updated

    # ── Free preview ─────────────────────────────────────────────────────

    async def can_consume_free_preview(self, user_id: str) -> CheckResult:
        record = await self._require(user_id)
        if record.is_admin or not record.has_used_free_preview or record.thumbnails_remaining > 0:
            return CheckResult(allowed=True, record=record)
        return CheckResult(allowed=False, record=record, message=FREE_PREVIEW_EXHAUSTED)

    async def consume_free_preview(self, user_id: str) -> ConsumeResult:
        def mark_used(current: EntitlementRecord):
            if current.is_admin or current.has_used_free_preview:
                return None
            return {"has_used_free_preview": False}, {"has_used_free_preview": True}

        record, written = await self._update(user_id, mark_used)
        if written or record.is_admin:
            return ConsumeResult(success=True, record=record)
        return ConsumeResult(success=False, record=record, message=FREE_PREVIEW_ALREADY_USED)

    async def reset_free_preview(self, user_id: str) -> EntitlementRecord:
        """Admin override: hand the user a fresh free preview."""
        def reset(current: EntitlementRecord):
            if not current.has_used_free_preview:
                return None
            return {"has_used_free_preview": True}, {"has_used_free_preview": False}

        record, _ = await self._update(user_id, reset)
        logger.info(f"Free preview reset for {user_id}")
        return record

    # ── Paid balances ────────────────────────────────────────────────────

    async def can_consume(self, kind: CreditKind, user_id: str) -> CheckResult:
        kind = CreditKind(kind)
        record = await self._require(user_id)
        if record.is_admin or record.balance(kind) > 0:
            return CheckResult(allowed=True, record=record)
        return CheckResult(allowed=False, record=record, message=NO_BALANCE[kind])

    async def consume(self, kind: CreditKind, user_id: str) -> ConsumeResult:
        kind = CreditKind(kind)
        field = BALANCE_FIELDS[kind]

        def decrement(current: EntitlementRecord):
            if current.is_admin:
                return None
            balance = current.balance(kind)
            if balance <= 0:
                return None
            return {field: balance, "is_admin": False}, {field: balance - 1}

        record, written = await self._update(user_id, decrement)
        if written or record.is_admin:
            return ConsumeResult(success=True, record=record)
        return ConsumeResult(success=False, record=record, message=NO_BALANCE[kind])

    async def can_download(self, user_id: str) -> CheckResult:
        record = await self._require(user_id)
        if record.is_admin or record.thumbnails_remaining > 0:
            return CheckResult(allowed=True, record=record)
        return CheckResult(allowed=False, record=record, message=DOWNLOAD_DENIED)

    async def adjust(self, user_id: str, delta_thumbnails: int, delta_regenerates: int) -> EntitlementRecord:
        """Apply signed deltas, clamping each balance at zero."""
        def apply(current: EntitlementRecord):
            thumbs = max(0, current.thumbnails_remaining + delta_thumbnails)
            regens = max(0, current.regenerates_remaining + delta_regenerates)
            if thumbs == current.thumbnails_remaining and regens == current.regenerates_remaining:
                return None
            expected = {
                "thumbnails_remaining": current.thumbnails_remaining,
                "regenerates_remaining": current.regenerates_remaining,
            }
            return expected, {"thumbnails_remaining": thumbs, "regenerates_remaining": regens}

        record, _ = await self._update(user_id, apply)
        logger.info(
            f"Adjusted {user_id} by ({delta_thumbnails:+d}, {delta_regenerates:+d}) → "
            f"{record.thumbnails_remaining}/{record.regenerates_remaining}"
        )
        return record

    # ── Admin actions ────────────────────────────────────────────────────

    async def block(self, user_id: str) -> EntitlementRecord:
        """Zero both balances.  Admin targets are refused."""
        def zero(current: EntitlementRecord):
            if current.is_admin:
                raise ForbiddenError("Cannot block admin users")
            if current.thumbnails_remaining == 0 and current.regenerates_remaining == 0:
                return None
            expected = {
                "is_admin": False,
                "thumbnails_remaining": current.thumbnails_remaining,
                "regenerates_remaining": current.regenerates_remaining,
            }
            return expected, {"thumbnails_remaining": 0, "regenerates_remaining": 0}

        record, _ = await self._update(user_id, zero)
        logger.info(f"Blocked user {user_id}")
        return record

    async def delete_user(self, user_id: str) -> None:
        """Remove the user's history, then the credit record itself."""
        async with self._lock_for(user_id):
            record = await self._require(user_id)
            if record.is_admin:
                raise ForbiddenError("Cannot delete admin users")
            removed = 0
            if self._history is not None:
                removed = await self._history.delete_for_user(user_id)
            await self._store.delete(user_id)
        logger.info(f"Deleted user {user_id} and {removed} history record(s)")

    async def list_users(self) -> list[EntitlementRecord]:
        return await self._store.list_all()

    async def admin_stats(self) -> AdminStats:
        users = await self._store.list_all()
        total_thumbnails = await self._history.count() if self._history is not None else 0
        active = sum(
            1 for u in users
            if u.is_admin or u.thumbnails_remaining > 0 or u.regenerates_remaining > 0
        )
        blocked = sum(
            1 for u in users
            if not u.is_admin and u.thumbnails_remaining == 0 and u.regenerates_remaining == 0
        )
        return AdminStats(
            total_users=len(users),
            total_thumbnails=total_thumbnails,
            active_users=active,
            blocked_users=blocked,
            total_credits_used=total_thumbnails,
        )
