"""
Image byte helpers — decode uploads and sniff formats with Pillow.
"""

import base64
import binascii
import logging
from io import BytesIO
from typing import Optional

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

_FORMAT_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


def sniff_mime(data: bytes) -> Optional[str]:
    """Return the MIME type of ``data``, or None if Pillow can't read it."""
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
    return _FORMAT_MIME.get(fmt or "", "image/jpeg")


def decode_user_image(payload: str) -> tuple[bytes, str]:
    """
    Decode an uploaded image given as raw base64 or a ``data:`` URL.

    Raises:
        ValueError: if the payload isn't base64 or isn't an image.
    """
    b64data = payload.strip()
    if b64data.startswith("data:"):
        try:
            _, b64data = b64data.split(",", 1)
        except ValueError:
            raise ValueError("Malformed data URL for user image")
    try:
        data = base64.b64decode(b64data, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("User image is not valid base64")

    mime = sniff_mime(data)
    if mime is None:
        raise ValueError("User image could not be decoded as an image")
    return data, mime


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('utf-8')}"
