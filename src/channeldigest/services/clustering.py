"""Topic-aware clustering of digest items using embeddings and shared evidence."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from enum import Enum
from urllib.parse import urlsplit, urlunsplit

import numpy as np
import structlog
from pydantic import BaseModel
from sklearn.metrics.pairwise import cosine_similarity as pairwise_cosine

from channeldigest.errors import LLMError, RepositoryError
from channeldigest.models.domain import Cluster, Evidence, Item, Window
from channeldigest.services.ports import LLMGateway, Repository
from channeldigest.services.scoring import cosine_similarity
from channeldigest.services.settings import DEFAULT_COHERENCE_THRESHOLD, DigestSettings

log = structlog.get_logger(__name__)

DEFAULT_TOPIC = "General"
TOPIC_JACCARD_THRESHOLD = 0.8
COHERENCE_EPSILON = 1e-9

TOPIC_SYNONYMS = {
    "ukraine": "Ukraine",
    "украина": "Ukraine",
    "україна": "Ukraine",
    "russia": "Russia",
    "россия": "Russia",
    "росія": "Russia",
    "cyprus": "Cyprus",
    "кипр": "Cyprus",
}

_TOKEN_STRIP = ".,:;!()[]{}\"'"


class PairVariant(Enum):
    SAME_TOPIC = "same_topic"
    CROSS_TOPIC = "cross_topic"
    REJECT = "reject"


class ClusteringConfig(BaseModel):
    similarity_threshold: float = 0.75
    cross_topic_enabled: bool = False
    cross_topic_threshold: float = 0.90
    coherence_threshold: float = DEFAULT_COHERENCE_THRESHOLD
    cluster_window: timedelta = timedelta(hours=36)
    max_items: int = 2000
    evidence_enabled: bool = True
    evidence_boost: float = 0.15
    evidence_min_agreement: float = 0.5
    digest_language: str = "en"

    @classmethod
    def from_settings(cls, settings: DigestSettings) -> "ClusteringConfig":
        similarity = settings.cluster_similarity_threshold
        return cls(
            similarity_threshold=similarity,
            cross_topic_enabled=settings.cross_topic_clustering_enabled,
            cross_topic_threshold=settings.cross_topic_similarity_threshold or similarity,
            coherence_threshold=settings.cluster_coherence_threshold or DEFAULT_COHERENCE_THRESHOLD,
            cluster_window=timedelta(hours=max(settings.cluster_time_window_hours, 0)),
            max_items=settings.cluster_max_items,
            evidence_enabled=settings.evidence_clustering_enabled,
            evidence_boost=settings.evidence_clustering_boost,
            evidence_min_agreement=settings.evidence_clustering_min_score,
            digest_language=settings.digest_language,
        )


class ClusterDraft(BaseModel):
    """A cluster built in memory, before it is persisted."""

    topic: str
    items: list[Item]


def normalize_cluster_topic(topic: str | None) -> str:
    """Lower-case lookup in the synonym table, otherwise title case; empty becomes ``General``."""
    normalized = (topic or "").strip().lower()
    if not normalized:
        return DEFAULT_TOPIC
    if normalized in TOPIC_SYNONYMS:
        return TOPIC_SYNONYMS[normalized]
    return normalized.title().strip()


def _topic_tokens(topic: str) -> set[str]:
    tokens = (token.strip(_TOKEN_STRIP) for token in topic.lower().split())
    return {token for token in tokens if token}


def topics_similar(a: str, b: str) -> bool:
    if a == b:
        return True
    tokens_a = _topic_tokens(a)
    tokens_b = _topic_tokens(b)
    if not tokens_a or not tokens_b:
        return False
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b) >= TOPIC_JACCARD_THRESHOLD


def build_topic_groups(items: Sequence[Item]) -> tuple[dict[str, str], dict[str, list[Item]]]:
    """
    Map each item to a canonical topic and group items by it.

    Returns:
        ``(topic_index, topic_groups)``; groups keep first-appearance order
    """
    topic_index: dict[str, str] = {}
    groups: dict[str, list[Item]] = {}
    canonical: list[str] = []

    for item in items:
        normalized = normalize_cluster_topic(item.topic)
        topic = next((existing for existing in canonical if topics_similar(normalized, existing)), normalized)
        if topic == normalized and topic not in canonical:
            canonical.append(topic)
        topic_index[item.id] = topic
        groups.setdefault(topic, []).append(item)

    return topic_index, groups


def normalize_evidence_url(url: str) -> str:
    """Drop a leading ``www.`` from the host so both spellings match."""
    if not url or "www." not in url.lower():
        return url
    parts = urlsplit(url)
    host = parts.netloc
    if host.lower().startswith("www."):
        host = host[4:]
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def evidence_boost(
    evidence_a: Sequence[Evidence],
    evidence_b: Sequence[Evidence],
    boost: float,
    min_agreement: float,
) -> float:
    """Boost proportional to the strongest shared, agreeing, non-contradicting evidence URL."""
    if not evidence_a or not evidence_b:
        return 0.0

    urls_a = {
        normalize_evidence_url(ev.url): ev.agreement_score
        for ev in evidence_a
        if ev.agreement_score >= min_agreement and not ev.is_contradiction
    }
    if not urls_a:
        return 0.0

    best = 0.0
    for ev in evidence_b:
        if ev.agreement_score < min_agreement or ev.is_contradiction:
            continue
        score_a = urls_a.get(normalize_evidence_url(ev.url))
        if score_a is not None:
            best = max(best, min(score_a, ev.agreement_score))

    return min(best * boost, boost)


def within_cluster_window(a: datetime | None, b: datetime | None, window: timedelta) -> bool:
    if window <= timedelta(0) or a is None or b is None:
        return True
    return abs(a - b) <= window


def cluster_coherence(items: Sequence[Item]) -> float:
    """Mean pairwise cosine similarity over members that carry embeddings."""
    if len(items) < 2:
        return 1.0

    vectors = [item.embedding for item in items if item.has_embedding]
    if len(vectors) < 2:
        return 0.0

    if len({len(vector) for vector in vectors}) == 1:
        matrix = pairwise_cosine(np.asarray(vectors, dtype=float))
        upper = matrix[np.triu_indices(len(vectors), k=1)]
        return float(upper.mean())

    scores = [
        cosine_similarity(vectors[i], vectors[j])
        for i in range(len(vectors))
        for j in range(i + 1, len(vectors))
    ]
    return sum(scores) / len(scores)


def sort_cluster_items(items: list[Item]) -> list[Item]:
    return sorted(items, key=lambda item: (-item.importance_score, -len(item.summary)))


class TopicClusterer:
    """Groups a window's items into clusters and persists them."""

    def __init__(self, repo: Repository, config: ClusteringConfig, llm: LLMGateway | None = None) -> None:
        self.repo = repo
        self.config = config
        self.llm = llm

    def evaluate_pair(
        self,
        item_a: Item,
        item_b: Item,
        topic_a: str,
        topic_b: str,
        evidence: dict[str, list[Evidence]],
    ) -> PairVariant:
        """Decide whether ``item_b`` joins the cluster anchored at ``item_a``."""
        cfg = self.config
        if not item_a.has_embedding or not item_b.has_embedding:
            return PairVariant.REJECT

        same_topic = topic_a == topic_b
        if not same_topic and not cfg.cross_topic_enabled:
            return PairVariant.REJECT

        if not within_cluster_window(item_a.published_at, item_b.published_at, cfg.cluster_window):
            return PairVariant.REJECT

        similarity = cosine_similarity(item_a.embedding, item_b.embedding)
        if cfg.evidence_enabled and evidence:
            similarity += evidence_boost(
                evidence.get(item_a.id, []),
                evidence.get(item_b.id, []),
                cfg.evidence_boost,
                cfg.evidence_min_agreement,
            )
        similarity = min(similarity, 1.0)

        if same_topic:
            return PairVariant.SAME_TOPIC if similarity > cfg.similarity_threshold else PairVariant.REJECT
        return PairVariant.CROSS_TOPIC if similarity > cfg.cross_topic_threshold else PairVariant.REJECT

    def build(self, items: Sequence[Item], evidence: dict[str, list[Evidence]] | None = None) -> list[ClusterDraft]:
        """
        Build clusters in memory.

        Args:
            items: Candidate items (capped at ``max_items``)
            evidence: Evidence per item id, used for the similarity boost

        Returns:
            Cluster drafts with the representative item first
        """
        if not items:
            return []

        items = list(items)
        if len(items) > self.config.max_items:
            log.warning("clustering.items_limited", count=len(items), limit=self.config.max_items)
            items = items[: self.config.max_items]

        evidence = evidence or {}
        topic_index, groups = build_topic_groups(items)
        assigned: set[str] = set()
        drafts: list[ClusterDraft] = []

        for topic, group in groups.items():
            candidates = items if self.config.cross_topic_enabled else group
            for anchor in group:
                if anchor.id in assigned:
                    continue

                members = [anchor]
                assigned.add(anchor.id)
                if anchor.has_embedding:
                    for other in candidates:
                        if other.id == anchor.id or other.id in assigned:
                            continue
                        variant = self.evaluate_pair(
                            anchor, other, topic_index[anchor.id], topic_index[other.id], evidence
                        )
                        if variant is not PairVariant.REJECT:
                            members.append(other)
                            assigned.add(other.id)

                if len(members) > 2:
                    coherence = cluster_coherence(members)
                    if coherence < self.config.coherence_threshold - COHERENCE_EPSILON:
                        log.debug("clustering.low_coherence_rejected", coherence=round(coherence, 4), size=len(members))
                        for released in members[1:]:
                            assigned.discard(released.id)
                        members = [anchor]

                drafts.append(ClusterDraft(topic=topic, items=sort_cluster_items(members)))

        # Members released from an incoherent cross-topic cluster whose own group was already visited.
        for item in items:
            if item.id not in assigned:
                assigned.add(item.id)
                drafts.append(ClusterDraft(topic=topic_index[item.id], items=[item]))

        log.info(
            "clustering_complete",
            total_items=len(items),
            clusters=len(drafts),
            multi_item=sum(1 for draft in drafts if len(draft.items) > 1),
        )
        return drafts

    def cluster_window(self, items: Sequence[Item], window: Window) -> list[Cluster]:
        """
        Rebuild and persist the clusters for ``window``.

        Raises:
            RepositoryError: When stale clusters cannot be removed or a new cluster
                cannot be created.
        """
        if not items:
            return []

        self.repo.delete_clusters_for_window(window.start, window.end)

        drafts = self.build(items, self._load_evidence(items))
        clusters: list[Cluster] = []
        for draft in drafts:
            topic = self._cluster_topic(draft)
            cluster_id = self.repo.create_cluster(window.start, window.end, topic)
            for item in draft.items:
                try:
                    self.repo.add_to_cluster(cluster_id, item.id)
                except RepositoryError as exc:
                    log.error("clustering.add_item_failed", cluster_id=cluster_id, item_id=item.id, error=str(exc))
            clusters.append(
                Cluster(id=cluster_id, topic=topic, items=draft.items, window_start=window.start, window_end=window.end)
            )

        return clusters

    def _load_evidence(self, items: Sequence[Item]) -> dict[str, list[Evidence]]:
        if not self.config.evidence_enabled:
            return {}
        try:
            evidence = self.repo.get_items_evidence([item.id for item in items])
        except RepositoryError as exc:
            log.warning("clustering.evidence_unavailable", error=str(exc))
            return {}
        if evidence:
            log.debug("clustering.evidence_loaded", items_with_evidence=len(evidence))
        return evidence

    def _cluster_topic(self, draft: ClusterDraft) -> str:
        if len(draft.items) <= 1 or self.llm is None:
            return draft.topic
        try:
            topic = self.llm.generate_cluster_topic(draft.items, self.config.digest_language).strip()
        except LLMError as exc:
            log.warning("clustering.topic_generation_failed", error=str(exc))
            return draft.topic
        return topic or draft.topic
