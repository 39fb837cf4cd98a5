"""Content addressing for job deduplication.

Two addressing domains share one hash function but never collide because the
domain tag is part of the hashed input:

- content: identity of raw uploaded bytes, regardless of who uploaded them.
- request: identity of "this transformation of this content", i.e. the target
  content's identity plus the canonical (sorted, de-duplicated) fix set.

Dedup keys additionally bind the job kind, so an image job and a video job
over the same bytes never share results.
"""

from __future__ import annotations

import hashlib
import json
from typing import Iterable

CONTENT_TAG = b"content\x00"
REQUEST_TAG = b"request\x00"
KIND_TAG = b"kind\x00"


def content_address(data: bytes) -> str:
    """SHA-256 identity of raw media bytes."""
    return content_address_stream([data])


def content_address_stream(chunks: Iterable[bytes]) -> str:
    """Same as `content_address`, for bodies read in chunks."""
    h = hashlib.sha256(CONTENT_TAG)
    for chunk in chunks:
        h.update(chunk)
    return h.hexdigest()


def canonical_fix_ids(fix_ids: Iterable[str]) -> list[str]:
    return sorted({str(f).strip() for f in fix_ids if str(f).strip()})


def request_address(content_id: str, fix_ids: Iterable[str]) -> str:
    """SHA-256 identity of a fix request against a piece of content."""
    if not content_id:
        raise ValueError("content_id is required")
    ids = canonical_fix_ids(fix_ids)
    if not ids:
        raise ValueError("at least one fix id is required")
    # JSON array keeps ids containing separators distinct from id lists.
    encoded_ids = json.dumps(ids, separators=(",", ":"), ensure_ascii=False)
    data = content_id.encode("utf-8") + b"\x00" + encoded_ids.encode("utf-8")
    return hashlib.sha256(REQUEST_TAG + data).hexdigest()


def dedup_key(kind: str, address: str) -> str:
    """Dedup key of a job of `kind` over a content or request address."""
    if not kind or not address:
        raise ValueError("kind and address are required")
    data = kind.encode("utf-8") + b"\x00" + address.encode("utf-8")
    return hashlib.sha256(KIND_TAG + data).hexdigest()
