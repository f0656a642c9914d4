"""Small shared helpers."""

from __future__ import annotations

import hashlib
import hmac
import uuid
from datetime import datetime, timezone
from typing import Iterator, Optional, Sequence, TypeVar

T = TypeVar("T")


def now_iso() -> str:
    """Return current UTC time in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def generate_request_id() -> str:
    """Generate a unique request ID for correlation."""
    return str(uuid.uuid4())


def parse_bearer_token(value: Optional[str]) -> str:
    """Extract bearer token from Authorization header."""
    if not value:
        return ""
    parts = value.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def owner_id_for_token(token: str) -> str:
    """Stable, non-reversible owner id derived from a client token."""
    return "key_" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


def mask_secret(value: str) -> str:
    """Mask a secret value for display, showing only prefix/suffix."""
    s = (value or "").strip()
    if not s:
        return ""
    if len(s) <= 8:
        return f"{s[:2]}***"
    return f"{s[:4]}...{s[-4:]}"


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]
