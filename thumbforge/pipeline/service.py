"""
Thumbnail service — the operations the API layer exposes.

Wraps the ledger, the regenerate session store, the history store and the
generation orchestrator behind one object.  Route handlers only ever talk
to this class; caller identity is always passed in explicitly.
"""

import logging
from typing import Optional

from .. import config
from .errors import ForbiddenError, NotFoundError
from .ledger import EntitlementLedger, email_policy
from .models import (
    AdminStats,
    ConsumeResult,
    CreditKind,
    DownloadCheck,
    EntitlementRecord,
    GenerationReport,
    GenerationResult,
    PreviewCheck,
    RegenerateSession,
    VariationsReport,
)
from .orchestrator import AnswersInput, ThumbnailGenerationService
from .sessions import RegenerateSessionStore
from .stores import HistoryStore, Stores, memory_stores

logger = logging.getLogger(__name__)


class ThumbnailService:
    def __init__(
        self,
        ledger: EntitlementLedger,
        sessions: RegenerateSessionStore,
        history: HistoryStore,
        generation: ThumbnailGenerationService,
    ):
        self.ledger = ledger
        self.sessions = sessions
        self.history = history
        self.generation = generation

    # ── Entitlement checks ───────────────────────────────────────────────

    async def check_free_preview(self, user_id: str, email: str) -> PreviewCheck:
        await self.ledger.get_or_create(user_id, email)
        check = await self.ledger.can_consume_free_preview(user_id)
        return PreviewCheck(can_generate=check.allowed, message=check.message, record=check.record)

    async def check_download_allowed(self, user_id: str, email: str) -> DownloadCheck:
        await self.ledger.get_or_create(user_id, email)
        check = await self.ledger.can_download(user_id)
        return DownloadCheck(can_download=check.allowed, message=check.message, record=check.record)

    async def get_credits(self, user_id: str, email: str) -> EntitlementRecord:
        return await self.ledger.get_or_create(user_id, email)

    async def consume_credit(self, user_id: str, email: str, kind: CreditKind) -> ConsumeResult:
        await self.ledger.get_or_create(user_id, email)
        return await self.ledger.consume(kind, user_id)

    async def use_free_preview(self, user_id: str, email: str) -> ConsumeResult:
        await self.ledger.get_or_create(user_id, email)
        return await self.ledger.consume_free_preview(user_id)

    # ── Admin operations ─────────────────────────────────────────────────

    async def grant_credits(self, user_id: str, thumbnails: int, regenerates: int) -> EntitlementRecord:
        return await self.ledger.adjust(user_id, thumbnails, regenerates)

    async def grant_package(self, user_id: str, package_id: str) -> EntitlementRecord:
        """Credit a purchased package (see config.CREDIT_PACKAGES)."""
        if package_id not in config.CREDIT_PACKAGES:
            raise ValueError(f"Unknown credit package: {package_id}")
        thumbnails, regenerates = config.CREDIT_PACKAGES[package_id]
        logger.info(f"Granting package {package_id!r} to {user_id}")
        return await self.ledger.adjust(user_id, thumbnails, regenerates)

    async def block_user(self, user_id: str) -> EntitlementRecord:
        return await self.ledger.block(user_id)

    async def delete_user(self, user_id: str) -> None:
        await self.ledger.delete_user(user_id)
        await self.sessions.delete_all_for_user(user_id)

    async def reset_free_preview(self, user_id: str) -> EntitlementRecord:
        return await self.ledger.reset_free_preview(user_id)

    async def list_users(self) -> list[EntitlementRecord]:
        return await self.ledger.list_users()

    async def admin_stats(self) -> AdminStats:
        return await self.ledger.admin_stats()

    # ── Regenerate sessions ──────────────────────────────────────────────

    async def create_regenerate_session(
        self,
        user_id: str,
        topic: str,
        original_thumbnail_id: Optional[str] = None,
        user_image: Optional[str] = None,
    ) -> RegenerateSession:
        return await self.sessions.create(user_id, topic, original_thumbnail_id, user_image)

    async def get_active_regenerate_session(self, user_id: str) -> Optional[RegenerateSession]:
        return await self.sessions.get_active(user_id)

    async def delete_regenerate_session(self, user_id: str, session_id: Optional[str] = None) -> int:
        """Delete one session (by id, caller's own only) or all of the caller's sessions."""
        if session_id is None:
            return await self.sessions.delete_all_for_user(user_id)
        session = await self.sessions.get(session_id)
        if session is None:
            return 0
        if session.user_id != user_id:
            raise ForbiddenError("Regenerate session belongs to another user")
        await self.sessions.delete_by_id(session_id)
        return 1

    # ── Generation ───────────────────────────────────────────────────────

    async def generate_thumbnail(
        self,
        user_id: str,
        email: str,
        answers: AnswersInput,
        user_image: Optional[str] = None,
    ) -> GenerationReport:
        return await self.generation.generate_one(user_id, email, answers, user_image)

    async def generate_variations(
        self,
        user_id: str,
        email: str,
        answers: AnswersInput,
        count: int,
        user_image: Optional[str] = None,
    ) -> VariationsReport:
        return await self.generation.generate_variations(user_id, email, answers, count, user_image)

    async def regenerate_thumbnail(
        self,
        user_id: str,
        email: str,
        answers: Optional[AnswersInput] = None,
    ) -> GenerationReport:
        return await self.generation.regenerate(user_id, email, answers)

    def get_status(self, attempt_id: str) -> GenerationReport:
        return self.generation.get_status(attempt_id)

    # ── History ──────────────────────────────────────────────────────────

    async def list_history(self, user_id: str) -> list[GenerationResult]:
        return await self.history.list_for_user(user_id)

    async def get_result(self, result_id: str, user_id: str) -> GenerationResult:
        result = await self.history.get(result_id)
        if result is None:
            raise NotFoundError(f"Thumbnail {result_id} not found")
        if result.user_id != user_id:
            raise ForbiddenError("Thumbnail belongs to another user")
        return result

    async def delete_result(self, result_id: str, user_id: str) -> None:
        """Remove one of the caller's own history entries."""
        await self.get_result(result_id, user_id)
        await self.history.delete(result_id)
        logger.info(f"Deleted thumbnail {result_id} for {user_id}")

    async def list_user_thumbnails(self, user_id: str) -> list[GenerationResult]:
        """Admin view of another user's history, newest first."""
        return await self.history.list_for_user(user_id)


def build_service(stores: Optional[Stores] = None, search=None, generator=None) -> ThumbnailService:
    """
    Wire the production service.

    Supabase-backed stores when SUPABASE_URL is configured, in-memory
    otherwise; YouTube search and Gemini generation unless overridden.
    """
    from ..gemini import GeminiImageGenerator
    from ..youtube import YouTubeSearch
    from .references import ReferenceCollector

    if stores is None:
        if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
            from .supabase_store import supabase_stores
            stores = supabase_stores()
        else:
            logger.warning("Supabase not configured — using in-memory stores (data is lost on restart)")
            stores = memory_stores()

    ledger = EntitlementLedger(stores.credits, email_policy(config.ADMIN_EMAILS), stores.history)
    sessions = RegenerateSessionStore(stores.sessions)
    generation = ThumbnailGenerationService(
        ledger=ledger,
        history=stores.history,
        sessions=sessions,
        collector=ReferenceCollector(search or YouTubeSearch()),
        generator=generator or GeminiImageGenerator(),
    )
    return ThumbnailService(ledger, sessions, stores.history, generation)
