"""Input validation for job submissions."""

import posixpath
import re
from typing import Optional

from app.core.exceptions import BadRequestException, ForbiddenException
from app.jobs.models import JobKind

MAX_KEY_CHARS = 512

_DISALLOWED_KEY_PATTERN = re.compile(r"(^/)|(\.\.)|(\x00)|(//)")

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic", ".heif"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".m4v", ".webm"}

MEDIA_EXTENSIONS = {
    JobKind.IMAGE_ANALYSIS: IMAGE_EXTENSIONS,
    JobKind.VIDEO_ANALYSIS: VIDEO_EXTENSIONS,
}


def upload_prefixes(user_id: str) -> list[str]:
    return [f"uploads/{user_id}/", f"uploads/users/{user_id}/"]


def validate_media_key(user_id: str, key: str, kind: JobKind, *, allowed_prefixes: Optional[list[str]] = None) -> str:
    """
    Check that `key` names one of the caller's own uploads, of a media type
    the job kind can process. Returns the normalized key.
    """
    if not isinstance(key, str) or not key.strip():
        raise BadRequestException("input_ref is required")

    normalized = key.strip()
    if len(normalized) > MAX_KEY_CHARS:
        raise BadRequestException("input_ref is too long.")
    if normalized.startswith(("http://", "https://", "s3://")):
        raise BadRequestException("Use an S3 object key (input_ref), not a URL.")
    if _DISALLOWED_KEY_PATTERN.search(normalized):
        raise BadRequestException("Invalid input_ref.")

    prefixes = allowed_prefixes or upload_prefixes(user_id)
    if not any(normalized.startswith(p) and len(normalized) > len(p) for p in prefixes):
        raise ForbiddenException("You can only submit your own uploaded media.")

    allowed = MEDIA_EXTENSIONS.get(kind)
    if allowed is not None:
        extension = posixpath.splitext(normalized)[1].lower()
        if extension not in allowed:
            media = "video" if kind == JobKind.VIDEO_ANALYSIS else "image"
            raise BadRequestException(
                f"Unsupported {media} format '{extension or 'none'}'. Expected one of: {', '.join(sorted(allowed))}."
            )

    return normalized
