"""
Gemini image generation via the generativelanguage REST API.

One capability: submit an AssembledRequest, get back raw image bytes or a
typed failure.  No retries here; the orchestrator owns retry policy.
"""

import base64
import binascii
import logging
from typing import Optional

import httpx

from . import config
from .pipeline.errors import ErrorCode
from .pipeline.models import AssembledRequest, GenerationOutcome, ImagePart, TextPart

logger = logging.getLogger(__name__)

API_BASE = "https://generativelanguage.googleapis.com/v1beta"


def _api_url(model: str) -> str:
    return f"{API_BASE}/models/{model}:generateContent"


def to_gemini_parts(request: AssembledRequest) -> list[dict]:
    """Serialise parts into Gemini's ``contents[0].parts`` shape, order preserved."""
    parts: list[dict] = []
    for part in request.parts:
        if isinstance(part, ImagePart):
            parts.append({
                "inlineData": {
                    "mimeType": part.mime_type,
                    "data": base64.b64encode(part.data).decode("utf-8"),
                }
            })
        elif isinstance(part, TextPart):
            parts.append({"text": part.text})
    return parts


def extract_image(result: dict) -> Optional[tuple[bytes, str, Optional[str]]]:
    """
    First inline image across all candidates → (bytes, mime, accompanying text).

    Raises:
        ValueError: if the response is not shaped like a generateContent
            reply or the inline data is not valid base64.
    """
    if not isinstance(result, dict):
        raise ValueError(f"Expected a JSON object, got {type(result).__name__}")
    for candidate in result.get("candidates") or []:
        if not isinstance(candidate, dict):
            continue
        text = None
        content = candidate.get("content")
        for part in (content.get("parts") if isinstance(content, dict) else None) or []:
            if not isinstance(part, dict):
                continue
            if "text" in part and text is None:
                text = part["text"]
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and inline.get("data"):
                mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                try:
                    data = base64.b64decode(inline["data"], validate=True)
                except binascii.Error as e:
                    raise ValueError(f"Inline image data is not valid base64: {e}") from e
                return data, mime, text
    return None


class GeminiImageGenerator:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = config.GEMINI_API_KEY if api_key is None else api_key
        self.model = model or config.GEMINI_IMAGE_MODEL
        self._timeout = timeout or config.GENERATION_TIMEOUT_SECONDS
        self._client = client

    async def _post(self, client: httpx.AsyncClient, body: dict) -> httpx.Response:
        return await client.post(
            _api_url(self.model),
            params={"key": self.api_key},
            json=body,
            timeout=self._timeout,
        )

    async def generate(self, request: AssembledRequest) -> GenerationOutcome:
        if not self.api_key:
            logger.error("GEMINI_API_KEY not set — cannot generate thumbnails")
            return GenerationOutcome.failure(ErrorCode.PROVIDER_ERROR, "Generation provider not configured", self.model)

        body = {
            "contents": [{"parts": to_gemini_parts(request)}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
            },
        }
        logger.info(
            f"Gemini request: model={self.model}, {len(request.parts)} part(s), "
            f"{request.image_count} image(s)"
        )

        try:
            if self._client is not None:
                resp = await self._post(self._client, body)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await self._post(client, body)
        except httpx.TimeoutException:
            logger.error(f"Gemini call timed out after {self._timeout}s")
            return GenerationOutcome.failure(ErrorCode.TIMEOUT, "Generation timed out", self.model)
        except httpx.HTTPError as e:
            logger.error(f"Gemini transport error: {e}")
            return GenerationOutcome.failure(ErrorCode.PROVIDER_ERROR, "Generation provider unreachable", self.model)

        if resp.status_code != 200:
            logger.error(f"Gemini API error {resp.status_code}: {resp.text[:500]}")
            return GenerationOutcome.failure(
                ErrorCode.PROVIDER_ERROR, f"Provider returned HTTP {resp.status_code}", self.model
            )

        try:
            found = extract_image(resp.json())
        except ValueError as e:
            logger.error(f"Gemini returned a malformed body ({e}): {resp.text[:200]}")
            return GenerationOutcome.failure(ErrorCode.PROVIDER_ERROR, "Malformed provider response", self.model)

        if found is None:
            logger.warning("Gemini response contained no image data")
            return GenerationOutcome.failure(ErrorCode.NO_OUTPUT_PRODUCED, "No image was produced", self.model)

        image_bytes, mime, text = found
        logger.info(f"Gemini produced {len(image_bytes)} bytes ({mime})")
        return GenerationOutcome.success(image_bytes, mime, self.model, text)
