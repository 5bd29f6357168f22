"""
Thumbnail Generation Pipeline

  Credits    — Entitlement ledger: free preview, paid balances, admin bypass
  Sessions   — Regenerate sessions with a read-time TTL
  Generation — References → prompt → Gemini → storage, credit charged last
"""

from .orchestrator import ThumbnailGenerationService
from .routes import credits_router, thumbnail_router
from .models import PipelineStatus, CreditKind

__all__ = [
    "ThumbnailGenerationService",
    "credits_router",
    "thumbnail_router",
    "PipelineStatus",
    "CreditKind",
]
