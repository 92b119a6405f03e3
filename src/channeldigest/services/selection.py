"""Candidate selection: pool fetch, empty-window anomalies, ranking and topic balance."""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from channeldigest.errors import RepositoryError
from channeldigest.models.domain import Anomaly, AnomalyKind, Item, Window
from channeldigest.services.ports import Repository
from channeldigest.services.scoring import freshness_decay
from channeldigest.services.settings import DigestSettings

log = structlog.get_logger(__name__)

SOURCE_DIVERSITY_BONUS = 0.1


class CandidatePool(BaseModel):
    items: list[Item] = Field(default_factory=list)
    total_items: int = 0
    ready_items: int = 0
    anomaly: Anomaly | None = None


class TopicBalanceResult(BaseModel):
    items: list[Item] = Field(default_factory=list)
    topics_available: int = 0
    topics_selected: int = 0
    max_per_topic: int = 0
    relaxed: bool = False


def topic_key(topic: str | None) -> str:
    return (topic or "").strip().lower()


def fetch_candidate_pool(repo: Repository, window: Window, settings: DigestSettings) -> CandidatePool:
    """
    Load the candidate pool for a window and classify an empty result.

    Args:
        repo: Item store
        window: Digest window
        settings: Active digest settings

    Returns:
        The pool plus window counts; ``anomaly`` is set when the pool is empty
        and the emptiness is worth reporting.
    """
    try:
        total = repo.count_items_in_window(window.start, window.end)
        ready = repo.count_ready_items_in_window(window.start, window.end)
    except RepositoryError as exc:
        log.warning("digest.window_counts_failed", error=str(exc))
        total = ready = 0

    items = repo.get_items_for_window(
        window.start,
        window.end,
        settings.importance_threshold,
        settings.pool_limit,
    )

    anomaly = None
    if not items:
        anomaly = check_empty_window(repo, window, total, ready, settings)

    return CandidatePool(items=items, total_items=total, ready_items=ready, anomaly=anomaly)


def check_empty_window(
    repo: Repository,
    window: Window,
    total_items: int,
    ready_items: int,
    settings: DigestSettings,
) -> Anomaly | None:
    if total_items > 0:
        log.info(
            "digest.window_below_threshold",
            start=window.start.isoformat(),
            end=window.end.isoformat(),
            total_items=total_items,
            ready_items=ready_items,
            threshold=settings.importance_threshold,
        )
        return Anomaly(
            kind=AnomalyKind.THRESHOLD,
            start=window.start,
            end=window.end,
            total_items=total_items,
            ready_items=ready_items,
            threshold=settings.importance_threshold,
        )

    try:
        backlog = repo.get_backlog_count()
    except RepositoryError as exc:
        log.warning("digest.backlog_count_failed", error=str(exc))
        backlog = 0

    if backlog > settings.backlog_threshold:
        log.warning("digest.backlog_catching_up", backlog=backlog)
        return Anomaly(
            kind=AnomalyKind.BACKLOG,
            start=window.start,
            end=window.end,
            backlog_size=backlog,
        )

    log.debug("digest.window_empty", start=window.start.isoformat(), end=window.end.isoformat())
    return None


def apply_smart_selection(items: list[Item], settings: DigestSettings, now: datetime) -> list[Item]:
    """Apply freshness decay and the source-diversity bonus, then sort by importance and relevance."""
    channel_counts = Counter(item.source_channel for item in items)

    for item in items:
        item.importance_score = freshness_decay(
            item.importance_score,
            item.published_at,
            now,
            settings.freshness_decay_hours,
            settings.freshness_floor,
        )
        if channel_counts[item.source_channel] == 1:
            item.importance_score += SOURCE_DIVERSITY_BONUS

    return sorted(items, key=lambda item: (-item.importance_score, -item.relevance_score))


def apply_relevance_gate(items: list[Item], relevance_threshold: float) -> list[Item]:
    """Keep items whose relevance clears the global threshold shifted by their channel's delta."""
    kept = [item for item in items if item.relevance_score >= relevance_threshold + item.channel_relevance_delta]
    if len(kept) < len(items):
        log.debug("digest.relevance_gate_dropped", dropped=len(items) - len(kept))
    return kept


def apply_topic_balance(items: list[Item], top_n: int, cap: float, min_topics: int) -> TopicBalanceResult:
    """
    Pick up to ``top_n`` items while limiting how many share a topic.

    Args:
        items: Candidates in ranked order
        top_n: Maximum number of items to return
        cap: Fraction of the selection one topic may occupy; outside (0, 1)
            the cap is disabled
        min_topics: Number of distinct topics seeded before the capped pass

    Returns:
        Selection in the original ranked order. ``relaxed`` is set when the
        cap had to be dropped to reach ``min(top_n, len(items))`` items.
    """
    if not items or top_n <= 0:
        return TopicBalanceResult()

    target = min(top_n, len(items))
    keys = [topic_key(item.topic) for item in items]
    available: list[str] = []
    first_index: dict[str, int] = {}
    for index, key in enumerate(keys):
        if key and key not in first_index:
            first_index[key] = index
            available.append(key)

    if cap <= 0 or cap >= 1:
        chosen = items[:target]
        return TopicBalanceResult(
            items=chosen,
            topics_available=len(available),
            topics_selected=len({topic_key(item.topic) for item in chosen} - {""}),
        )

    max_per_topic = max(1, math.floor(cap * target))
    selected: set[int] = set()
    counts: Counter[str] = Counter()

    for key in available[: min(max(min_topics, 0), target)]:
        selected.add(first_index[key])
        counts[key] += 1

    for index, key in enumerate(keys):
        if len(selected) >= target:
            break
        if index in selected or not key or counts[key] >= max_per_topic:
            continue
        selected.add(index)
        counts[key] += 1

    relaxed = False
    if len(selected) < target:
        relaxed = True
        for index in range(len(items)):
            if len(selected) >= target:
                break
            if index not in selected:
                selected.add(index)
                if keys[index]:
                    counts[keys[index]] += 1

    chosen = [items[index] for index in sorted(selected)]
    return TopicBalanceResult(
        items=chosen,
        topics_available=len(available),
        topics_selected=len([key for key, count in counts.items() if count > 0]),
        max_per_topic=max_per_topic,
        relaxed=relaxed,
    )


def balance_and_limit(items: list[Item], settings: DigestSettings) -> list[Item]:
    cap = settings.topic_diversity_cap
    if settings.topics_enabled and 0 < cap < 1 and items:
        result = apply_topic_balance(items, settings.digest_top_n, cap, settings.min_topic_count)
        if result.relaxed:
            log.warning(
                "digest.topic_cap_relaxed",
                topics_available=result.topics_available,
                topics_selected=result.topics_selected,
                max_per_topic=result.max_per_topic,
                cap=cap,
            )
        return result.items

    return items[: settings.digest_top_n]
