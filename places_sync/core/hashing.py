"""Identity fingerprints used for place and review deduplication."""

import hashlib
from typing import Any, Mapping, Optional


def _canonical(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def place_hash(name: Optional[str], address: Optional[str]) -> str:
    """Return a stable md5 hex digest of the canonical ``name|address`` pair.

    Not a security primitive; it only has to be deterministic and
    insensitive to case and surrounding whitespace.
    """
    data = f"{_canonical(name)}|{_canonical(address)}"
    return hashlib.md5(data.encode("utf-8")).hexdigest()


def review_hash(review: Mapping[str, Any]) -> str:
    """Fingerprint a review by author, publish time and text."""
    parts = (
        _canonical(review.get("author_name")),
        str(review.get("publish_time") or review.get("time") or ""),
        (review.get("text") or "").strip(),
    )
    return hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()
