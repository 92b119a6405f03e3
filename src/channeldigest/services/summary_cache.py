"""Reuse LLM cluster summaries across digests when the member set barely changed."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import structlog

from channeldigest.errors import RepositoryError
from channeldigest.models.domain import ClusterSummaryCacheEntry, Item
from channeldigest.services.ports import Repository
from channeldigest.utils.text import cluster_fingerprint, jaccard_overlap, normalize_language

log = structlog.get_logger(__name__)

CACHE_MAX_AGE = timedelta(days=7)
MIN_OVERLAP = 0.8


class ClusterSummaryCache:
    """
    Per-run view over the ``cluster_summary_cache`` table for one digest language.

    Entries newer than seven days are loaded once and indexed by item id, so
    overlap candidates for a cluster are the entries sharing at least one id.
    """

    def __init__(self, repo: Repository, language: str, now: datetime | None = None) -> None:
        self.repo = repo
        self.language = normalize_language(language)
        self.now = now or datetime.now(tz=UTC)
        self._entries: list[ClusterSummaryCacheEntry] | None = None
        self._by_item: dict[str, list[int]] = defaultdict(list)

    def _load(self) -> list[ClusterSummaryCacheEntry]:
        if self._entries is not None:
            return self._entries

        try:
            entries = self.repo.get_cluster_summaries_since(self.language, self.now - CACHE_MAX_AGE)
        except RepositoryError as exc:
            log.warning("summary_cache.load_failed", error=str(exc))
            entries = []

        self._entries = list(entries)
        for position, entry in enumerate(self._entries):
            for item_id in entry.item_ids:
                self._by_item[item_id].append(position)
        return self._entries

    def lookup(self, items: Sequence[Item]) -> str | None:
        """Exact fingerprint match first, otherwise the best overlap of at least 0.8."""
        ids = sorted(item.id for item in items if item.id)
        if not ids:
            return None

        fingerprint = cluster_fingerprint(ids)
        try:
            exact = self.repo.get_cluster_summary(self.language, fingerprint)
        except RepositoryError as exc:
            log.warning("summary_cache.lookup_failed", error=str(exc))
            exact = None
        if exact is not None and exact.summary:
            return exact.summary

        entries = self._load()
        candidates = {position for item_id in ids for position in self._by_item.get(item_id, [])}

        best_summary = None
        best_score = 0.0
        for position in sorted(candidates):
            entry = entries[position]
            if entry.fingerprint == fingerprint:
                return entry.summary
            score = jaccard_overlap(ids, entry.item_ids)
            if score >= MIN_OVERLAP and score > best_score:
                best_score = score
                best_summary = entry.summary

        if best_summary:
            log.debug("summary_cache.overlap_hit", overlap=round(best_score, 3), items=len(ids))
        return best_summary or None

    def store(self, items: Sequence[Item], summary: str) -> None:
        ids = sorted(item.id for item in items if item.id)
        if not ids or not summary.strip():
            return

        entry = ClusterSummaryCacheEntry(
            digest_language=self.language,
            fingerprint=cluster_fingerprint(ids),
            item_ids=ids,
            summary=summary,
            created_at=self.now,
        )
        entries = self._load()
        try:
            self.repo.upsert_cluster_summary(entry)
        except RepositoryError as exc:
            log.warning("summary_cache.upsert_failed", error=str(exc))
            return

        entries.append(entry)
        for item_id in ids:
            self._by_item[item_id].append(len(entries) - 1)
