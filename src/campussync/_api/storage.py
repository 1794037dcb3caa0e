"""Object storage endpoints.

Endpoints:
  - /storage/v1/object/<bucket>/<path> (upload)
  - /storage/v1/object/public/<bucket>/<path> (public URL, no request)
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import AsyncIterator, Callable
from urllib.parse import quote

from campussync._api._common import raise_for_response
from campussync._constants import (
    ALLOWED_IMAGE_TYPES,
    ALLOWED_VIDEO_TYPES,
    MAX_IMAGE_BYTES,
    MAX_VIDEO_BYTES,
    STORAGE_CACHE_CONTROL,
    STORAGE_PREFIX,
    UPLOAD_CHUNK_BYTES,
)
from campussync._transport import Transport
from campussync.exceptions import UploadValidationError
from campussync.models.media import MediaKind, StoredObject, UploadResult

_logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def _object_path(bucket: str, path: str) -> str:
    return f"{STORAGE_PREFIX}/object/{quote(bucket)}/{quote(path)}"


def get_public_url(base_url: str, bucket: str, path: str) -> str:
    """Public URL of an object in a public bucket."""
    return f"{base_url.rstrip('/')}{STORAGE_PREFIX}/object/public/{quote(bucket)}/{quote(path)}"


def classify_media(content_type: str) -> MediaKind:
    """Image or video, or :class:`UploadValidationError` for anything else."""
    if content_type in ALLOWED_IMAGE_TYPES:
        return MediaKind.IMAGE
    if content_type in ALLOWED_VIDEO_TYPES:
        return MediaKind.VIDEO
    images = ", ".join(t.split("/")[1].upper() for t in ALLOWED_IMAGE_TYPES)
    videos = ", ".join(t.split("/")[1].upper() for t in ALLOWED_VIDEO_TYPES)
    raise UploadValidationError(
        f"Unsupported file type. Please upload {images} for images or {videos} for videos."
    )


def validate_media(content_type: str, size: int, *, max_bytes: int | None = None) -> MediaKind:
    kind = classify_media(content_type)
    limit = max_bytes
    if limit is None:
        limit = MAX_VIDEO_BYTES if kind is MediaKind.VIDEO else MAX_IMAGE_BYTES
    if size > limit:
        raise UploadValidationError(f"File size must be less than {limit // (1024 * 1024)}MB")
    return kind


def build_object_path(user_id: str, filename: str, *, now_ms: int | None = None) -> str:
    """``<user_id>/<timestamp>-<random>.<ext>``; the original name is not kept."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    _, dot, ext = filename.rpartition(".")
    suffix = f".{ext.lower()}" if dot and ext else ""
    return f"{user_id}/{now_ms}-{secrets.token_hex(6)}{suffix}"


async def _chunks(data: bytes, on_progress: ProgressCallback | None) -> AsyncIterator[bytes]:
    total = len(data)
    sent = 0
    last_reported = -1
    while sent < total:
        chunk = data[sent : sent + UPLOAD_CHUNK_BYTES]
        sent += len(chunk)
        yield chunk
        if on_progress is not None:
            percentage = round(sent * 100 / total)
            if percentage != last_reported:
                last_reported = percentage
                try:
                    on_progress(percentage)
                except Exception:
                    _logger.debug("Upload progress callback failed", exc_info=True)


async def upload(
    transport: Transport,
    bucket: str,
    path: str,
    data: bytes,
    content_type: str,
    *,
    on_progress: ProgressCallback | None = None,
    upsert: bool = False,
) -> StoredObject:
    """Upload *data*, streaming it in chunks and reporting integer percentages."""
    endpoint = _object_path(bucket, path)
    body: bytes | AsyncIterator[bytes] = _chunks(data, on_progress) if data else b""
    response = await transport.request(
        "POST",
        endpoint,
        data=body,
        headers={
            "content-type": content_type,
            "cache-control": f"max-age={STORAGE_CACHE_CONTROL}",
            "x-upsert": "true" if upsert else "false",
        },
    )
    raise_for_response(response, endpoint)
    if not data and on_progress is not None:
        on_progress(100)
    _logger.debug("Uploaded %d bytes to %s/%s", len(data), bucket, path)
    return StoredObject(bucket=bucket, path=path)


async def upload_media(
    transport: Transport,
    base_url: str,
    *,
    user_id: str,
    filename: str,
    data: bytes,
    content_type: str,
    bucket: str = "posts",
    on_progress: ProgressCallback | None = None,
    max_bytes: int | None = None,
) -> UploadResult:
    """Validate, upload and resolve the public URL of a post/message/profile media file."""
    kind = validate_media(content_type, len(data), max_bytes=max_bytes)
    path = build_object_path(user_id, filename)
    stored = await upload(transport, bucket, path, data, content_type, on_progress=on_progress)
    return UploadResult(
        url=get_public_url(base_url, stored.bucket, stored.path),
        path=stored.path,
        kind=kind,
        size=len(data),
    )
