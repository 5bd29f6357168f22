"""
Pydantic models and enums for the thumbnail generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from .errors import ErrorCode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Pipeline Status ──────────────────────────────────────────────────────────

class PipelineStatus(str, Enum):
    PENDING = "PENDING"
    CHECKING = "CHECKING"
    COLLECTING = "COLLECTING"
    ASSEMBLING = "ASSEMBLING"
    GENERATING = "GENERATING"
    PERSISTING = "PERSISTING"
    DONE = "DONE"
    FAILED = "FAILED"


# ── Entitlements ─────────────────────────────────────────────────────────────

class CreditKind(str, Enum):
    THUMBNAIL = "thumbnail"
    REGENERATE = "regenerate"


BALANCE_FIELDS = {
    CreditKind.THUMBNAIL: "thumbnails_remaining",
    CreditKind.REGENERATE: "regenerates_remaining",
}

UNLIMITED = "unlimited"


class EntitlementRecord(BaseModel):
    """
    Per-user credit state.

    The balance fields always hold the real, finite balance.  Admin access
    is a property of ``is_admin`` alone; "unlimited" is only ever a display
    value so a demotion never reveals a clobbered counter.
    """
    user_id: str
    email: str = ""
    thumbnails_remaining: int = Field(0, ge=0)
    regenerates_remaining: int = Field(0, ge=0)
    is_admin: bool = False
    has_used_free_preview: bool = False
    last_updated: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def unlimited(self) -> bool:
        return self.is_admin

    @computed_field
    @property
    def thumbnails_display(self) -> str:
        return UNLIMITED if self.is_admin else str(self.thumbnails_remaining)

    @computed_field
    @property
    def regenerates_display(self) -> str:
        return UNLIMITED if self.is_admin else str(self.regenerates_remaining)

    def balance(self, kind: CreditKind) -> int:
        return getattr(self, BALANCE_FIELDS[kind])


class CheckResult(BaseModel):
    allowed: bool
    record: EntitlementRecord
    message: Optional[str] = None


class ConsumeResult(BaseModel):
    success: bool
    record: EntitlementRecord
    message: Optional[str] = None


class PreviewCheck(BaseModel):
    can_generate: bool
    message: Optional[str] = None
    record: EntitlementRecord


class DownloadCheck(BaseModel):
    can_download: bool
    message: Optional[str] = None
    record: EntitlementRecord


class AdminStats(BaseModel):
    total_users: int = 0
    total_thumbnails: int = 0
    active_users: int = 0
    blocked_users: int = 0
    total_credits_used: int = 0


# ── Answers ──────────────────────────────────────────────────────────────────

class TextMode(str, Enum):
    CUSTOM = "custom"  # render the user's literal string
    AUTO = "auto"      # render a label derived from the topic
    NONE = "none"      # render no text at all


# Questionnaire option strings → TextMode
FORM_TEXT_OPTIONS = {
    "Custom text (I'll specify)": TextMode.CUSTOM,
    "Auto-generate from topic": TextMode.AUTO,
    "No text needed": TextMode.NONE,
}

_FORM_FIELDS = {
    "topic": "topic",
    "targetAudience": "target_audience",
    "contentType": "content_type",
    "emotion": "emotion",
    "keyElements": "key_elements",
    "stylePreference": "style_preference",
}


class ThumbnailAnswers(BaseModel):
    topic: str = Field(..., min_length=1)
    target_audience: str = ""
    content_type: str = ""
    emotion: str = ""
    key_elements: str = ""
    style_preference: str = ""
    text_mode: TextMode = TextMode.NONE
    custom_text: Optional[str] = None
    extras: dict[str, str] = Field(default_factory=dict)

    @field_validator("topic")
    @classmethod
    def _topic_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("topic must not be blank")
        return v

    @model_validator(mode="after")
    def _custom_text_present(self):
        if self.text_mode == TextMode.CUSTOM and not (self.custom_text or "").strip():
            raise ValueError("custom_text is required when text_mode is 'custom'")
        return self

    @classmethod
    def from_form(cls, payload: dict) -> "ThumbnailAnswers":
        """Build answers from the questionnaire's camelCase payload."""
        data: dict = {}
        for form_key, field_name in _FORM_FIELDS.items():
            if payload.get(form_key) is not None:
                data[field_name] = payload[form_key]

        additional = dict(payload.get("additionalAnswers") or {})
        choice = additional.pop("thumbnailText", None)
        custom = additional.pop("customText", None)
        data["text_mode"] = FORM_TEXT_OPTIONS.get(choice, TextMode.NONE)
        if custom:
            data["custom_text"] = custom
        data["extras"] = {str(k): str(v) for k, v in additional.items()}
        return cls(**data)


# ── Regenerate Sessions ──────────────────────────────────────────────────────

class RegenerateSession(BaseModel):
    id: str
    user_id: str
    topic: str
    original_thumbnail_id: Optional[str] = None
    user_image: Optional[str] = None  # base64 or data: URL, as uploaded
    created_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


# ── Generation History ───────────────────────────────────────────────────────

class GenerationResult(BaseModel):
    id: str
    user_id: str
    topic: str
    prompt: str
    answers: dict = Field(default_factory=dict)
    image_url: str
    ctr_score: Optional[int] = None
    ctr_analysis: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ── Transient pipeline types ─────────────────────────────────────────────────

class ReferenceCandidate(BaseModel):
    """One search hit, before its image bytes are fetched."""
    url: str
    view_count: int = 0
    title: str = ""
    channel_title: str = ""
    video_id: str = ""


class ReferenceImage(BaseModel):
    data: bytes
    mime_type: str = "image/jpeg"
    source_url: str
    title: str = ""
    channel_title: str = ""
    view_count: int = 0
    video_id: str = ""
    path: Optional[str] = None  # scratch copy, if one was written


class TextPart(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    kind: Literal["image"] = "image"
    mime_type: str
    data: bytes


class AssembledRequest(BaseModel):
    parts: list[Union[TextPart, ImagePart]] = Field(default_factory=list)

    @property
    def prompt_text(self) -> str:
        """All text parts joined, as stored on the history record."""
        return "\n\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def image_count(self) -> int:
        return sum(1 for p in self.parts if isinstance(p, ImagePart))


class GenerationOutcome(BaseModel):
    ok: bool
    image_bytes: Optional[bytes] = None
    mime_type: str = "image/png"
    model: str = ""
    text: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, image_bytes: bytes, mime_type: str, model: str, text: Optional[str] = None):
        return cls(ok=True, image_bytes=image_bytes, mime_type=mime_type, model=model, text=text)

    @classmethod
    def failure(cls, code: ErrorCode, message: str, model: str = ""):
        return cls(ok=False, error_code=code, message=message, model=model)


class GenerationReport(BaseModel):
    attempt_id: str
    status: PipelineStatus
    current_step: str = ""
    progress_pct: int = 0
    result: Optional[GenerationResult] = None
    result_id: Optional[str] = None
    record: Optional[EntitlementRecord] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == PipelineStatus.DONE


class VariationsReport(BaseModel):
    results: list[GenerationResult] = Field(default_factory=list)
    failures: list[GenerationReport] = Field(default_factory=list)
    denied: bool = False
    message: Optional[str] = None


# ── API Request Models ───────────────────────────────────────────────────────

class GenerateRequest(BaseModel):
    answers: dict = Field(..., description="Questionnaire payload (camelCase form shape)")
    user_image: Optional[str] = None
    variations: int = Field(1, ge=1, le=5)


class RegenerateRequest(BaseModel):
    answers: Optional[dict] = None


class RegenerateSessionCreate(BaseModel):
    topic: str = Field(..., min_length=1)
    original_thumbnail_id: Optional[str] = None
    user_image: Optional[str] = None


class ConsumeRequest(BaseModel):
    kind: CreditKind


class GrantRequest(BaseModel):
    user_id: str
    thumbnails: int = 0
    regenerates: int = 0
    package_id: Optional[str] = None


class AdminTargetRequest(BaseModel):
    user_id: str
