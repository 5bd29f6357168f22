"""
Object storage for generated thumbnails.

With R2 configured, images are uploaded under:
  thumbnails/{user_id}/{result_id}.{ext}

and the history row stores the public URL.  Without R2 the image is kept
inline on the row as a data: URL.
"""

import asyncio
import logging

import boto3
from botocore.config import Config as BotoConfig

from .. import config
from .errors import PersistenceError
from .images import to_data_url

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


def r2_configured() -> bool:
    return bool(config.R2_ACCOUNT_ID and config.R2_ACCESS_KEY_ID and config.R2_SECRET_ACCESS_KEY)


def thumbnail_key(user_id: str, result_id: str, mime_type: str) -> str:
    """Generate the S3 key for a generated thumbnail."""
    ext = _EXTENSIONS.get(mime_type, "png")
    return f"thumbnails/{user_id}/{result_id}.{ext}"


def public_url(key: str) -> str:
    return f"{config.R2_PUBLIC_URL.rstrip('/')}/{key}"


def _put_object(key: str, data: bytes, content_type: str) -> None:
    s3 = boto3.client(
        "s3",
        endpoint_url=f"https://{config.R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        aws_access_key_id=config.R2_ACCESS_KEY_ID,
        aws_secret_access_key=config.R2_SECRET_ACCESS_KEY,
        config=BotoConfig(signature_version="s3v4"),
        region_name="auto",
    )
    s3.put_object(
        Bucket=config.R2_BUCKET_NAME,
        Key=key,
        Body=data,
        ContentType=content_type,
    )


async def upload_to_r2(key: str, data: bytes, content_type: str = "image/png") -> str:
    """Upload bytes to R2 and return the public URL."""
    try:
        await asyncio.to_thread(_put_object, key, data, content_type)
    except Exception as e:
        logger.error(f"R2 upload failed for key={key}: {e}")
        raise PersistenceError(f"Could not store thumbnail {key}") from e

    url = public_url(key)
    logger.info(f"Uploaded to R2: {url}")
    return url


async def store_thumbnail(user_id: str, result_id: str, data: bytes, mime_type: str) -> str:
    """Persist generated bytes and return the URL the history row should carry."""
    if r2_configured():
        return await upload_to_r2(thumbnail_key(user_id, result_id, mime_type), data, mime_type)
    return to_data_url(data, mime_type)
