"""Greedy semantic deduplication over item embeddings."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from channeldigest.models.domain import Item
from channeldigest.services.scoring import cosine_similarity

log = structlog.get_logger(__name__)


def deduplicate_items(items: Iterable[Item], threshold: float) -> list[Item]:
    """
    Drop items that are near-duplicates of an earlier kept item.

    Items without an embedding are always kept. An embedded item is dropped
    when its cosine similarity to any kept embedded item exceeds
    ``threshold``. Input order is preserved.
    """
    kept: list[Item] = []
    kept_embedded: list[Item] = []

    for item in items:
        if not item.has_embedding:
            kept.append(item)
            continue

        duplicate_of = None
        for other in kept_embedded:
            similarity = cosine_similarity(item.embedding, other.embedding)
            if similarity > threshold:
                duplicate_of = other
                log.debug(
                    "dedup.skipped_duplicate",
                    skipped_id=item.id,
                    duplicate_of=other.id,
                    similarity=round(similarity, 4),
                )
                break

        if duplicate_of is None:
            kept.append(item)
            kept_embedded.append(item)

    return kept
