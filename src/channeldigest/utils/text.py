"""Text and hashing helpers."""

from __future__ import annotations

import hashlib
import html as html_lib
import re
from collections.abc import Iterable

_TAG_RE = re.compile(r"<[^>]+>")


def cluster_fingerprint(item_ids: Iterable[str]) -> str:
    """Return a deterministic sha256 hex digest of the sorted, non-empty item ids."""

    ids = sorted(item_id for item_id in item_ids if item_id)
    if not ids:
        return ""
    joined = "|".join(ids)
    return hashlib.sha256(joined.encode("utf-8", errors="ignore")).hexdigest()


def jaccard_overlap(a: Iterable[str], b: Iterable[str]) -> float:
    left = set(a)
    right = set(b)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def normalize_language(language: str | None) -> str:
    return (language or "").strip().lower()


def strip_html(text: str | None) -> str:
    text = html_lib.unescape(text or "")
    text = _TAG_RE.sub("", text)
    return " ".join(text.split())

