"""
Environment configuration for the thumbnail worker.

Everything is read once at import time from the process environment
(a local .env is honoured via python-dotenv).  Modules import the
constants they need; tests monkeypatch them.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


# ── Environment ──────────────────────────────────────────────────────────────

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
GATEWAY_SHARED_SECRET = os.getenv("GATEWAY_SHARED_SECRET", "")

# ── Providers ────────────────────────────────────────────────────────────────

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", "")
GEMINI_IMAGE_MODEL = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image-preview")
YOUTUBE_API_KEY = os.getenv("YOUTUBE_API_KEY", "")

# ── Persistence / infra ──────────────────────────────────────────────────────

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
REDIS_URL = os.getenv("REDIS_URL", "")

R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "thumbnails")
R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")

# ── Admin policy ─────────────────────────────────────────────────────────────

ADMIN_EMAILS = [
    e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()
]

# ── Generation tuning ────────────────────────────────────────────────────────

SEARCH_TIMEOUT_SECONDS = _env_float("SEARCH_TIMEOUT_SECONDS", 15.0)
FETCH_TIMEOUT_SECONDS = _env_float("FETCH_TIMEOUT_SECONDS", 10.0)
GENERATION_TIMEOUT_SECONDS = _env_float("GENERATION_TIMEOUT_SECONDS", 120.0)

VARIATION_DELAY_SECONDS = _env_float("VARIATION_DELAY_SECONDS", 1.0)
MAX_VARIATIONS = _env_int("MAX_VARIATIONS", 5)

REFERENCE_MAX_RESULTS = _env_int("REFERENCE_MAX_RESULTS", 3)
REFERENCE_MIN_VIEWS = _env_int("REFERENCE_MIN_VIEWS", 1000)
MAX_REFERENCE_BYTES = _env_int("MAX_REFERENCE_BYTES", 5 * 1024 * 1024)

REGENERATE_SESSION_TTL_SECONDS = _env_int("REGENERATE_SESSION_TTL_SECONDS", 3600)

# Per-attempt scratch directories live under here (system temp dir if unset)
SCRATCH_ROOT = os.getenv("SCRATCH_ROOT", "")

# ── Credit packages ──────────────────────────────────────────────────────────

# package id → (thumbnails, regenerates)
CREDIT_PACKAGES = {
    "starter": (3, 5),
}

# ── Request throttling (generation endpoints) ────────────────────────────────

THROTTLE_MAX_REQUESTS = _env_int("THROTTLE_MAX_REQUESTS", 20)
THROTTLE_WINDOW_SECONDS = _env_int("THROTTLE_WINDOW_SECONDS", 3600)
# No shared state without Redis, so the in-process limit is stricter
FALLBACK_MAX_REQUESTS = _env_int("FALLBACK_MAX_REQUESTS", 10)

# ── Attempt status tracking ──────────────────────────────────────────────────

# Oldest attempts are forgotten first once this many are tracked
MAX_TRACKED_ATTEMPTS = _env_int("MAX_TRACKED_ATTEMPTS", 1000)
