"""
FastAPI routes for credits and thumbnail generation.

Credits Endpoints:
  GET  /credits                       — Caller's entitlement record
  GET  /credits/free-preview          — Can the caller generate right now?
  POST /credits/free-preview          — Mark the free preview as used
  GET  /credits/download              — Can the caller download?
  POST /credits/consume               — Consume one thumbnail/regenerate credit

Admin Endpoints (caller must be privileged):
  GET  /admin/users                   — List every entitlement record
  GET  /admin/users/{id}/thumbnails   — One user's history, newest first
  GET  /admin/stats                   — Aggregate counts
  POST /admin/grant                   — Grant credits or a package
  POST /admin/block                   — Zero a user's balances
  POST /admin/delete                  — Delete a user and their history
  POST /admin/reset-free-preview      — Hand back the free preview

Thumbnail Endpoints:
  POST   /thumbnails/generate         — Generate one thumbnail (or N variations)
  POST   /thumbnails/regenerate       — Regenerate from the active session
  GET    /thumbnails/status/{id}      — Attempt status
  GET    /thumbnails                  — Caller's history, newest first
  GET    /thumbnails/{id}             — One stored result
  DELETE /thumbnails/{id}             — Delete one of the caller's results
  POST   /regenerate-session          — Create a regenerate session
  GET    /regenerate-session          — Caller's active session
  DELETE /regenerate-session          — Delete one (?session_id=) or all of the caller's sessions

Identity comes from the gateway in X-User-Id / X-User-Email.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from .. import throttle
from .errors import (
    RETRY_MESSAGE,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
)
from .models import (
    AdminTargetRequest,
    ConsumeRequest,
    GenerateRequest,
    GenerationReport,
    GrantRequest,
    RegenerateRequest,
    RegenerateSessionCreate,
)
from .service import ThumbnailService, build_service

logger = logging.getLogger(__name__)

# Created on first request so importing the routes has no side effects
_service: Optional[ThumbnailService] = None


def get_service() -> ThumbnailService:
    global _service
    if _service is None:
        _service = build_service()
    return _service


class Caller(BaseModel):
    user_id: str
    email: str = ""


def current_caller(
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_user_email: str = Header("", alias="X-User-Email"),
) -> Caller:
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity")
    return Caller(user_id=x_user_id.strip(), email=x_user_email.strip())


async def require_admin(
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
) -> Caller:
    record = await service.get_credits(caller.user_id, caller.email)
    if not record.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return caller


# ── Error mapping ────────────────────────────────────────────────────────────

_STATUS_FOR_CODE = {
    ErrorCode.ENTITLEMENT_DENIED: 402,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.PROVIDER_ERROR: 502,
    ErrorCode.TIMEOUT: 502,
    ErrorCode.NO_OUTPUT_PRODUCED: 502,
    ErrorCode.PERSISTENCE_ERROR: 500,
}


def _raise_for_error(e: Exception, action: str):
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ForbiddenError):
        raise HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ValueError):
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(e, PersistenceError):
        logger.error(f"{action} failed: {e}")
        raise HTTPException(status_code=500, detail="Record store unavailable")
    logger.error(f"{action} failed: {e}", exc_info=True)
    raise HTTPException(status_code=500, detail=RETRY_MESSAGE)


def _raise_for_report(report: GenerationReport):
    status = _STATUS_FOR_CODE.get(report.error_code, 500)
    detail = {
        "code": report.error_code.value if report.error_code else None,
        "message": report.error,
        "attempt_id": report.attempt_id,
    }
    if report.record is not None:
        detail["credits"] = report.record.model_dump(mode="json")
    raise HTTPException(status_code=status, detail=detail)


def _throttle(user_id: str):
    allowed, _, retry_after = throttle.check(user_id)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after}s.",
            headers={"Retry-After": str(retry_after)},
        )


# ═════════════════════════════════════════════════════════════════════════════
# Credits Router
# ═════════════════════════════════════════════════════════════════════════════

credits_router = APIRouter(tags=["credits"])


@credits_router.get("/credits")
async def get_credits(
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    try:
        return await service.get_credits(caller.user_id, caller.email)
    except Exception as e:
        _raise_for_error(e, "Get credits")


@credits_router.get("/credits/free-preview")
async def check_free_preview(
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    try:
        return await service.check_free_preview(caller.user_id, caller.email)
    except Exception as e:
        _raise_for_error(e, "Free preview check")


@credits_router.post("/credits/free-preview")
async def use_free_preview(
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    try:
        result = await service.use_free_preview(caller.user_id, caller.email)
    except Exception as e:
        _raise_for_error(e, "Use free preview")
    if not result.success:
        raise HTTPException(status_code=402, detail=result.message)
    return result


@credits_router.get("/credits/download")
async def check_download(
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    try:
        return await service.check_download_allowed(caller.user_id, caller.email)
    except Exception as e:
        _raise_for_error(e, "Download check")


@credits_router.post("/credits/consume")
async def consume_credit(
    request: ConsumeRequest,
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    """
    Errors:
      - 402: No balance left for this kind
    """
    try:
        result = await service.consume_credit(caller.user_id, caller.email, request.kind)
    except Exception as e:
        _raise_for_error(e, "Consume credit")
    if not result.success:
        raise HTTPException(
            status_code=402,
            detail={"message": result.message, "credits": result.record.model_dump(mode="json")},
        )
    return result


# ── Admin ────────────────────────────────────────────────────────────────────

@credits_router.get("/admin/users")
async def list_users(
    _: Caller = Depends(require_admin),
    service: ThumbnailService = Depends(get_service),
):
    try:
        return await service.list_users()
    except Exception as e:
        _raise_for_error(e, "List users")


@credits_router.get("/admin/users/{user_id}/thumbnails")
async def list_user_thumbnails(
    user_id: str,
    _: Caller = Depends(require_admin),
    service: ThumbnailService = Depends(get_service),
):
    try:
        return await service.list_user_thumbnails(user_id)
    except Exception as e:
        _raise_for_error(e, "List user thumbnails")


@credits_router.get("/admin/stats")
async def admin_stats(
    _: Caller = Depends(require_admin),
    service: ThumbnailService = Depends(get_service),
):
    try:
        return await service.admin_stats()
    except Exception as e:
        _raise_for_error(e, "Admin stats")


@credits_router.post("/admin/grant")
async def grant_credits(
    request: GrantRequest,
    admin: Caller = Depends(require_admin),
    service: ThumbnailService = Depends(get_service),
):
    try:
        if request.package_id:
            record = await service.grant_package(request.user_id, request.package_id)
        else:
            record = await service.grant_credits(request.user_id, request.thumbnails, request.regenerates)
    except Exception as e:
        _raise_for_error(e, "Grant credits")
    logger.info(f"Admin {admin.user_id} granted credits to {request.user_id}")
    return record


@credits_router.post("/admin/block")
async def block_user(
    request: AdminTargetRequest,
    admin: Caller = Depends(require_admin),
    service: ThumbnailService = Depends(get_service),
):
    """
    Errors:
      - 403: Target is an admin
      - 404: Unknown user
    """
    try:
        record = await service.block_user(request.user_id)
    except Exception as e:
        _raise_for_error(e, "Block user")
    logger.info(f"Admin {admin.user_id} blocked {request.user_id}")
    return record


@credits_router.post("/admin/delete")
async def delete_user(
    request: AdminTargetRequest,
    admin: Caller = Depends(require_admin),
    service: ThumbnailService = Depends(get_service),
):
    try:
        await service.delete_user(request.user_id)
    except Exception as e:
        _raise_for_error(e, "Delete user")
    logger.info(f"Admin {admin.user_id} deleted {request.user_id}")
    return {"status": "deleted", "user_id": request.user_id}


@credits_router.post("/admin/reset-free-preview")
async def reset_free_preview(
    request: AdminTargetRequest,
    _: Caller = Depends(require_admin),
    service: ThumbnailService = Depends(get_service),
):
    try:
        return await service.reset_free_preview(request.user_id)
    except Exception as e:
        _raise_for_error(e, "Reset free preview")


# ═════════════════════════════════════════════════════════════════════════════
# Thumbnail Router
# ═════════════════════════════════════════════════════════════════════════════

thumbnail_router = APIRouter(tags=["thumbnails"])


@thumbnail_router.post("/thumbnails/generate")
async def generate_thumbnail(
    request: GenerateRequest,
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    """
    Generate one thumbnail, or ``variations`` of them one after another.

    Errors:
      - 402: No free preview and no credits
      - 400: Invalid answers or user image
      - 429: Too many generation requests
      - 502: Provider failed (safe to retry, nothing was charged)
    """
    _throttle(caller.user_id)

    if request.variations > 1:
        batch = await service.generate_variations(
            caller.user_id, caller.email, request.answers, request.variations, request.user_image,
        )
        if not batch.results and batch.failures:
            _raise_for_report(batch.failures[0])
        return batch

    report = await service.generate_thumbnail(
        caller.user_id, caller.email, request.answers, request.user_image,
    )
    if not report.ok:
        _raise_for_report(report)
    return report


@thumbnail_router.post("/thumbnails/regenerate")
async def regenerate_thumbnail(
    request: RegenerateRequest,
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    _throttle(caller.user_id)
    try:
        report = await service.regenerate_thumbnail(caller.user_id, caller.email, request.answers)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if not report.ok:
        _raise_for_report(report)
    return report


@thumbnail_router.get("/thumbnails/status/{attempt_id}")
async def get_status(attempt_id: str, service: ThumbnailService = Depends(get_service)):
    report = service.get_status(attempt_id)
    if report.error == "Attempt not found":
        raise HTTPException(status_code=404, detail="Attempt not found")
    return report


@thumbnail_router.get("/thumbnails")
async def list_history(
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    try:
        return await service.list_history(caller.user_id)
    except Exception as e:
        _raise_for_error(e, "List history")


@thumbnail_router.get("/thumbnails/{result_id}")
async def get_result(
    result_id: str,
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    try:
        return await service.get_result(result_id, caller.user_id)
    except Exception as e:
        _raise_for_error(e, "Get thumbnail")


@thumbnail_router.delete("/thumbnails/{result_id}")
async def delete_result(
    result_id: str,
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    """
    Errors:
      - 403: Entry belongs to another user
      - 404: Unknown entry
    """
    try:
        await service.delete_result(result_id, caller.user_id)
    except Exception as e:
        _raise_for_error(e, "Delete thumbnail")
    return {"status": "deleted", "id": result_id}


# ── Regenerate sessions ──────────────────────────────────────────────────────

@thumbnail_router.post("/regenerate-session")
async def create_regenerate_session(
    request: RegenerateSessionCreate,
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    try:
        session = await service.create_regenerate_session(
            caller.user_id, request.topic, request.original_thumbnail_id, request.user_image,
        )
    except Exception as e:
        _raise_for_error(e, "Create regenerate session")
    return {"session_id": session.id, "expires_at": session.expires_at}


@thumbnail_router.get("/regenerate-session")
async def get_regenerate_session(
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    try:
        session = await service.get_active_regenerate_session(caller.user_id)
    except Exception as e:
        _raise_for_error(e, "Get regenerate session")
    return {"session": session}


@thumbnail_router.delete("/regenerate-session")
async def delete_regenerate_session(
    session_id: Optional[str] = None,
    caller: Caller = Depends(current_caller),
    service: ThumbnailService = Depends(get_service),
):
    try:
        removed = await service.delete_regenerate_session(caller.user_id, session_id)
    except Exception as e:
        _raise_for_error(e, "Delete regenerate session")
    return {"status": "ok", "deleted": removed}
