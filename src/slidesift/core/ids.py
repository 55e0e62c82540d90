from __future__ import annotations

import hashlib
import re
import uuid

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def new_item_id(name: str) -> str:
    """Batch item id: a readable slug of the file name plus a short random suffix."""
    slug = _SLUG_RE.sub("-", name.lower()).strip("-")[:48] or "document"
    return f"{slug}-{uuid.uuid4().hex[:8]}"


def compute_bytes_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
