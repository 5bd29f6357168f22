"""
ThumbnailGenerationService — main generation orchestrator.

One attempt walks a fixed state machine, with status tracking per attempt:
  PENDING → CHECKING → COLLECTING → ASSEMBLING → GENERATING → PERSISTING → DONE
and FAILED reachable from any step.

Entitlement is checked up front (no external calls on denial) but only
consumed after the result is stored, so a provider or storage failure
never costs the user anything.  If consumption loses a race after the
result was stored, the stored row is removed and the attempt is denied.

Reference downloads live in a per-attempt scratch directory that is
removed on every exit path.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol, Union
from uuid import uuid4

from pydantic import ValidationError

from .. import config, metrics
from .ctr import estimate_ctr, reference_score
from .errors import (
    RETRY_MESSAGE,
    RETRYABLE_CODES,
    ErrorCode,
    NotFoundError,
    PersistenceError,
)
from .images import decode_user_image
from .ledger import EntitlementLedger
from .models import (
    AssembledRequest,
    ConsumeResult,
    CreditKind,
    EntitlementRecord,
    GenerationOutcome,
    GenerationReport,
    GenerationResult,
    PipelineStatus,
    ReferenceImage,
    ThumbnailAnswers,
    VariationsReport,
    utcnow,
)
from .prompt import ASPECT_RATIO, HEIGHT, WIDTH, assemble
from .references import ReferenceCollector
from .scratch import scratch_dir
from .sessions import RegenerateSessionStore
from .storage import store_thumbnail
from .stores import HistoryStore

logger = logging.getLogger(__name__)

AnswersInput = Union[ThumbnailAnswers, dict]
ImageSink = Callable[[str, str, bytes, str], Awaitable[str]]

# Perturbation tables for variations: odd indices swap style, even swap emotion
ALT_STYLES = [
    "Bold/Dramatic", "Minimalist/Clean", "Colorful/Vibrant",
    "Dark/Moody", "Bright/Cheerful", "Professional/Corporate",
]
ALT_EMOTIONS = [
    "Excitement", "Curiosity", "Urgency", "Mysterious",
    "Fun", "Trust", "Professional",
]


class ImageGenerator(Protocol):
    async def generate(self, request: AssembledRequest) -> GenerationOutcome: ...


class Charge(str, Enum):
    FREE_PREVIEW = "free_preview"
    THUMBNAIL = "thumbnail"
    REGENERATE = "regenerate"


# Field names only the snake_case (stored) shape uses
_MODEL_ONLY_FIELDS = set(ThumbnailAnswers.model_fields) - {"topic", "emotion"}


def parse_answers(answers: AnswersInput) -> ThumbnailAnswers:
    """Accept a model, a stored snake_case dict, or the questionnaire payload."""
    if isinstance(answers, ThumbnailAnswers):
        return answers
    if _MODEL_ONLY_FIELDS & set(answers):
        return ThumbnailAnswers(**answers)
    return ThumbnailAnswers.from_form(answers)


def _alternate(current: str, table: list[str], index: int) -> str:
    options = [v for v in table if v.lower() != (current or "").lower()]
    return options[(index // 2) % len(options)]


def perturb(answers: ThumbnailAnswers, index: int) -> ThumbnailAnswers:
    """Deterministic per-index tweak so variations are not identical."""
    if index == 0:
        return answers
    if index % 2 == 1:
        return answers.model_copy(update={"style_preference": _alternate(answers.style_preference, ALT_STYLES, index)})
    return answers.model_copy(update={"emotion": _alternate(answers.emotion, ALT_EMOTIONS, index)})


class ThumbnailGenerationService:
    """
    Usage:
        service = ThumbnailGenerationService(ledger, history, sessions, collector, generator)

        report = await service.generate_one(user_id, email, answers)
        batch = await service.generate_variations(user_id, email, answers, 3)
        report = await service.regenerate(user_id, email)
    """

    def __init__(
        self,
        ledger: EntitlementLedger,
        history: HistoryStore,
        sessions: RegenerateSessionStore,
        collector: ReferenceCollector,
        generator: ImageGenerator,
        image_sink: ImageSink = store_thumbnail,
        variation_delay: Optional[float] = None,
        scratch_root: Optional[Path] = None,
        max_tracked: Optional[int] = None,
    ):
        self._ledger = ledger
        self._history = history
        self._sessions = sessions
        self._collector = collector
        self._generator = generator
        self._image_sink = image_sink
        self._variation_delay = (
            config.VARIATION_DELAY_SECONDS if variation_delay is None else variation_delay
        )
        self._scratch_root = scratch_root
        self._max_tracked = max_tracked or config.MAX_TRACKED_ATTEMPTS
        self._jobs: "OrderedDict[str, GenerationReport]" = OrderedDict()

    # ── Status tracking ──────────────────────────────────────────────────

    def get_status(self, attempt_id: str) -> GenerationReport:
        """Get the current status of a generation attempt."""
        return self._jobs.get(attempt_id, GenerationReport(
            attempt_id=attempt_id,
            status=PipelineStatus.FAILED,
            error_code=ErrorCode.NOT_FOUND,
            error="Attempt not found",
        ))

    def _update_status(
        self,
        attempt_id: str,
        status: PipelineStatus,
        step: str = "",
        progress: int = 0,
        **fields,
    ) -> GenerationReport:
        result = fields.get("result")
        report = GenerationReport(
            attempt_id=attempt_id,
            status=status,
            current_step=step,
            progress_pct=progress,
            result_id=result.id if result is not None else None,
            **fields,
        )
        # Status keeps the result id only; the history row holds the image
        self._jobs[attempt_id] = report.model_copy(update={"result": None})
        self._jobs.move_to_end(attempt_id)
        while len(self._jobs) > self._max_tracked:
            self._jobs.popitem(last=False)
        logger.info(f"[{attempt_id}] {status.value} → {step} ({progress}%)")
        return report

    def _fail(
        self,
        attempt_id: str,
        code: ErrorCode,
        message: str,
        record: Optional[EntitlementRecord] = None,
        user_id: str = "",
    ) -> GenerationReport:
        metrics.inc_counter(f"errors.{code.value.lower()}")
        metrics.record_error("generate", code.value, message, user_id)
        # Upstream details stay in the logs
        public = RETRY_MESSAGE if code in RETRYABLE_CODES else message
        return self._update_status(
            attempt_id, PipelineStatus.FAILED, "Failed",
            error_code=code, error=public, record=record,
        )

    # ── Entitlement ──────────────────────────────────────────────────────

    async def _authorize(self, user_id: str, email: str, regenerate: bool):
        record = await self._ledger.get_or_create(user_id, email)
        if regenerate:
            check = await self._ledger.can_consume(CreditKind.REGENERATE, user_id)
            return check, Charge.REGENERATE

        check = await self._ledger.can_consume_free_preview(user_id)
        charge = Charge.THUMBNAIL if record.has_used_free_preview else Charge.FREE_PREVIEW
        return check, charge

    async def _consume(self, user_id: str, charge: Charge) -> ConsumeResult:
        if charge == Charge.REGENERATE:
            return await self._ledger.consume(CreditKind.REGENERATE, user_id)
        if charge == Charge.FREE_PREVIEW:
            result = await self._ledger.consume_free_preview(user_id)
            if result.success:
                return result
            # Another request took the preview first; fall back to a paid credit
        return await self._ledger.consume(CreditKind.THUMBNAIL, user_id)

    # ── Persistence ──────────────────────────────────────────────────────

    async def _persist(
        self,
        user_id: str,
        answers: ThumbnailAnswers,
        request: AssembledRequest,
        references: list[ReferenceImage],
        outcome: GenerationOutcome,
    ) -> GenerationResult:
        result_id = str(uuid4())
        image_url = await self._image_sink(user_id, result_id, outcome.image_bytes, outcome.mime_type)
        ctr = estimate_ctr(answers, references)

        result = GenerationResult(
            id=result_id,
            user_id=user_id,
            topic=answers.topic,
            prompt=request.prompt_text,
            answers=answers.model_dump(mode="json"),
            image_url=image_url,
            ctr_score=ctr["score"],
            ctr_analysis=", ".join(ctr["insights"]) or None,
            metadata={
                "model": outcome.model,
                "mime_type": outcome.mime_type,
                "aspect_ratio": ASPECT_RATIO,
                "dimensions": f"{WIDTH}x{HEIGHT}",
                "style": answers.style_preference,
                "emotion": answers.emotion,
                "target_audience": answers.target_audience,
                "content_type": answers.content_type,
                "key_elements": answers.key_elements,
                "text_mode": answers.text_mode.value,
                "reference_images": [r.source_url for r in references],
                "reference_score": reference_score(references),
                "recommendations": ctr["recommendations"],
                "generation_timestamp": utcnow().isoformat(),
            },
        )
        return await self._history.insert(result)

    async def _discard(self, result: GenerationResult) -> None:
        try:
            await self._history.delete(result.id)
        except PersistenceError as e:
            logger.error(f"Could not discard unpaid result {result.id}: {e}")

    # ── Single attempt ───────────────────────────────────────────────────

    async def generate_one(
        self,
        user_id: str,
        email: str,
        answers: AnswersInput,
        user_image: Optional[str] = None,
        regenerate: bool = False,
        attempt_id: Optional[str] = None,
    ) -> GenerationReport:
        """
        Run one generation attempt.

        Args:
            user_id:    Stable id from the identity provider.
            email:      Caller's email (drives admin status).
            answers:    ThumbnailAnswers or the questionnaire payload.
            user_image: Optional base64 / data: URL upload.
            regenerate: Charge a regenerate credit instead of a thumbnail.

        Returns:
            GenerationReport — DONE with the stored result, or FAILED with a
            typed error code.
        """
        attempt_id = attempt_id or str(uuid4())
        started = time.time()
        metrics.inc_counter("requests.generate")
        self._update_status(attempt_id, PipelineStatus.PENDING, "Validating answers...", 0)

        try:
            parsed = parse_answers(answers)
            decoded = decode_user_image(user_image) if user_image else None
        except (ValidationError, ValueError) as e:
            logger.info(f"[{attempt_id}] Invalid request: {e}")
            return self._fail(attempt_id, ErrorCode.VALIDATION_ERROR, f"Invalid answers: {e}", user_id=user_id)

        try:
            # ── Checking ─────────────────────────────────────────────
            self._update_status(attempt_id, PipelineStatus.CHECKING, "Checking credits...", 5)
            check, charge = await self._authorize(user_id, email, regenerate)
            if not check.allowed:
                return self._fail(
                    attempt_id, ErrorCode.ENTITLEMENT_DENIED,
                    check.message or "Insufficient credits", check.record, user_id,
                )

            async with scratch_dir(attempt_id, self._scratch_root) as scratch:
                # ── Collecting ───────────────────────────────────────
                self._update_status(attempt_id, PipelineStatus.COLLECTING, "Finding reference thumbnails...", 15)
                try:
                    references = await self._collector.collect(parsed.topic, scratch=scratch)
                except Exception as e:
                    logger.warning(f"[{attempt_id}] Reference collection failed, continuing without: {e}")
                    references = []

                # ── Assembling ───────────────────────────────────────
                self._update_status(attempt_id, PipelineStatus.ASSEMBLING, "Building prompt...", 30)
                request = assemble(parsed, references, decoded)

                # ── Generating ───────────────────────────────────────
                self._update_status(attempt_id, PipelineStatus.GENERATING, "Generating thumbnail...", 45)
                outcome = await self._generator.generate(request)
                if not outcome.ok:
                    logger.error(f"[{attempt_id}] Generation failed: {outcome.error_code} {outcome.message}")
                    return self._fail(
                        attempt_id, outcome.error_code or ErrorCode.PROVIDER_ERROR,
                        outcome.message or "Generation failed", check.record, user_id,
                    )

                # ── Persisting ───────────────────────────────────────
                self._update_status(attempt_id, PipelineStatus.PERSISTING, "Saving thumbnail...", 85)
                try:
                    result = await self._persist(user_id, parsed, request, references, outcome)
                except PersistenceError as e:
                    logger.error(f"[{attempt_id}] Persisting result failed: {e}")
                    return self._fail(
                        attempt_id, ErrorCode.PERSISTENCE_ERROR,
                        "Could not save the generated thumbnail", check.record, user_id,
                    )

                try:
                    consumed = await self._consume(user_id, charge)
                except PersistenceError as e:
                    logger.error(f"[{attempt_id}] Consuming {charge.value} failed: {e}")
                    await self._discard(result)
                    return self._fail(
                        attempt_id, ErrorCode.PERSISTENCE_ERROR,
                        "Could not record credit usage", check.record, user_id,
                    )
                if not consumed.success:
                    await self._discard(result)
                    return self._fail(
                        attempt_id, ErrorCode.ENTITLEMENT_DENIED,
                        consumed.message or "Insufficient credits", consumed.record, user_id,
                    )

        except NotFoundError as e:
            # The user's record vanished mid-attempt (admin deletion)
            return self._fail(attempt_id, ErrorCode.NOT_FOUND, str(e), user_id=user_id)
        except PersistenceError as e:
            logger.error(f"[{attempt_id}] Record store failure: {e}")
            return self._fail(attempt_id, ErrorCode.PERSISTENCE_ERROR, "Record store unavailable", user_id=user_id)
        except Exception as e:
            logger.error(f"[{attempt_id}] Unexpected failure: {e}", exc_info=True)
            self._update_status(attempt_id, PipelineStatus.FAILED, "Failed", error=RETRY_MESSAGE)
            raise

        metrics.inc_counter("generations.succeeded")
        metrics.record_latency("generate", (time.time() - started) * 1000)
        return self._update_status(
            attempt_id, PipelineStatus.DONE, "Thumbnail ready!", 100,
            result=result, record=consumed.record,
        )

    # ── Variations ───────────────────────────────────────────────────────

    async def generate_variations(
        self,
        user_id: str,
        email: str,
        answers: AnswersInput,
        count: int,
        user_image: Optional[str] = None,
    ) -> VariationsReport:
        """
        Generate ``count`` variations one after another.

        Each variation is its own entitlement-checked attempt.  Whatever
        succeeded is returned; the batch is only a hard failure when the
        first attempt is denied or the answers are invalid.
        """
        count = max(1, min(count, config.MAX_VARIATIONS))
        batch = VariationsReport()

        try:
            base = parse_answers(answers)
        except ValidationError as e:
            report = self._fail(str(uuid4()), ErrorCode.VALIDATION_ERROR, f"Invalid answers: {e}", user_id=user_id)
            batch.failures.append(report)
            batch.message = report.error
            return batch

        for index in range(count):
            if index > 0 and self._variation_delay > 0:
                await asyncio.sleep(self._variation_delay)

            report = await self.generate_one(user_id, email, perturb(base, index), user_image)
            if report.ok:
                batch.results.append(report.result)
                continue

            batch.failures.append(report)
            if report.error_code in (ErrorCode.ENTITLEMENT_DENIED, ErrorCode.VALIDATION_ERROR):
                if index == 0:
                    batch.denied = report.error_code == ErrorCode.ENTITLEMENT_DENIED
                    batch.message = report.error
                logger.info(f"Variations for {user_id} stopped at {index + 1}/{count}: {report.error_code.value}")
                break

        logger.info(f"Variations for {user_id}: {len(batch.results)}/{count} succeeded")
        return batch

    # ── Regenerate ───────────────────────────────────────────────────────

    async def _answers_for_session(self, session, user_id: str) -> ThumbnailAnswers:
        if session.original_thumbnail_id:
            original = await self._history.get(session.original_thumbnail_id)
            if original is not None and original.user_id == user_id and original.answers:
                try:
                    return ThumbnailAnswers(**{**original.answers, "topic": session.topic})
                except ValidationError as e:
                    logger.warning(f"Stored answers for {original.id} no longer valid: {e}")
        return ThumbnailAnswers(topic=session.topic)

    async def regenerate(
        self,
        user_id: str,
        email: str,
        answers: Optional[AnswersInput] = None,
    ) -> GenerationReport:
        """
        Resume the user's active regenerate session.

        Raises:
            NotFoundError: if the user has no unexpired session.
        """
        session = await self._sessions.get_active(user_id)
        if session is None:
            raise NotFoundError("No active regenerate session")

        if answers is None:
            answers = await self._answers_for_session(session, user_id)

        report = await self.generate_one(
            user_id, email, answers, session.user_image, regenerate=True,
        )
        if report.ok:
            await self._sessions.delete_by_id(session.id)
        return report
