"""In-memory collaborators for engine tests."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from channeldigest.errors import LLMError, PosterError, RepositoryError
from channeldigest.models.domain import (
    Channel,
    Cluster,
    ClusterSummaryCacheEntry,
    DigestEntry,
    DigestRecord,
    Evidence,
    FactCheck,
    Item,
    RatingSample,
    RatingStatsRecord,
    RollingStats,
    ThresholdTuningLogEntry,
)

BASE_TIME = datetime(2024, 5, 6, 12, 0, tzinfo=UTC)


def make_item(item_id: str, **overrides: Any) -> Item:
    values: dict[str, Any] = {
        "id": item_id,
        "importance_score": 0.5,
        "relevance_score": 0.5,
        "published_at": BASE_TIME,
        "source_channel": f"chan_{item_id}",
        "source_msg_id": 1,
        "summary": f"Summary {item_id}",
        "topic": "Politics",
    }
    values.update(overrides)
    return Item(**values)


class FakeRepository:
    """Implements the repository protocol over dictionaries; ``fail`` names methods that raise."""

    def __init__(self) -> None:
        self.settings: dict[str, Any] = {}
        self.items: list[Item] = []
        self.total_items: int | None = None
        self.ready_items: int | None = None
        self.backlog = 0
        self.evidence: dict[str, list[Evidence]] = {}
        self.fact_checks: dict[str, list[FactCheck]] = {}
        self.cover_image: bytes | None = None
        self.digests: dict[tuple[datetime, datetime], DigestRecord] = {}
        self.digest_errors: list[tuple[datetime, datetime, int, str]] = []
        self.digest_entries: dict[str, list[DigestEntry]] = {}
        self.digested_ids: list[str] = []
        self.clusters: dict[tuple[datetime, datetime], list[Cluster]] = {}
        self.channel_stats_windows: list[tuple[datetime, datetime]] = []
        self.rating_samples: list[RatingSample] = []
        self.rolling_stats: dict[str, RollingStats] = {}
        self.rating_stats: list[RatingStatsRecord] = []
        self.tuning_log: list[ThresholdTuningLogEntry] = []
        self.channels: list[Channel] = []
        self.summary_cache: dict[tuple[str, str], ClusterSummaryCacheEntry] = {}
        self.lock_holder: int | None = None
        self.lock_available = True
        self.released: list[int] = []
        self.fail: set[str] = set()
        self.calls: list[str] = []

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise RepositoryError(f"{name} failed")

    # Settings
    def get_setting(self, key: str) -> Any | None:
        self._call("get_setting")
        return self.settings.get(key)

    def save_setting(self, key: str, value: Any) -> None:
        self._call("save_setting")
        self.settings[key] = value

    # Lock
    def try_advisory_lock(self, lock_id: int) -> bool:
        self._call("try_advisory_lock")
        if not self.lock_available:
            return False
        self.lock_holder = lock_id
        return True

    def release_advisory_lock(self, lock_id: int) -> None:
        self._call("release_advisory_lock")
        self.released.append(lock_id)
        self.lock_holder = None

    # Digests
    def digest_exists(self, start: datetime, end: datetime) -> bool:
        self._call("digest_exists")
        return (start, end) in self.digests

    def save_digest(self, record: DigestRecord) -> str:
        self._call("save_digest")
        self.digests[(record.window_start, record.window_end)] = record
        return record.id

    def save_digest_error(self, start: datetime, end: datetime, chat_id: int, error: str) -> None:
        self._call("save_digest_error")
        self.digest_errors.append((start, end, chat_id, error))

    def save_digest_entries(self, digest_id: str, entries: Sequence[DigestEntry]) -> None:
        self._call("save_digest_entries")
        self.digest_entries[digest_id] = list(entries)

    def get_digest_cover_image(self, start: datetime, end: datetime, threshold: float) -> bytes | None:
        self._call("get_digest_cover_image")
        return self.cover_image

    # Items
    def _in_window(self, start: datetime, end: datetime) -> list[Item]:
        return [
            item
            for item in self.items
            if item.published_at is not None and start <= item.published_at < end and item.id not in self.digested_ids
        ]

    def get_items_for_window(self, start: datetime, end: datetime, threshold: float, limit: int) -> list[Item]:
        self._call("get_items_for_window")
        eligible = [item for item in self._in_window(start, end) if item.importance_score >= threshold]
        eligible.sort(key=lambda item: -item.importance_score)
        return [item.model_copy(deep=True) for item in eligible[:limit]]

    def count_items_in_window(self, start: datetime, end: datetime) -> int:
        self._call("count_items_in_window")
        if self.total_items is not None:
            return self.total_items
        return len(self._in_window(start, end))

    def count_ready_items_in_window(self, start: datetime, end: datetime) -> int:
        self._call("count_ready_items_in_window")
        if self.ready_items is not None:
            return self.ready_items
        return len(self._in_window(start, end))

    def mark_items_as_digested(self, item_ids: Sequence[str]) -> None:
        self._call("mark_items_as_digested")
        self.digested_ids.extend(item_ids)

    def get_backlog_count(self) -> int:
        self._call("get_backlog_count")
        return self.backlog

    def get_items_evidence(self, item_ids: Sequence[str]) -> dict[str, list[Evidence]]:
        self._call("get_items_evidence")
        return {item_id: self.evidence[item_id] for item_id in item_ids if item_id in self.evidence}

    def get_fact_checks(self, item_ids: Sequence[str]) -> dict[str, list[FactCheck]]:
        self._call("get_fact_checks")
        return {item_id: self.fact_checks[item_id] for item_id in item_ids if item_id in self.fact_checks}

    # Clusters
    def get_clusters_for_window(self, start: datetime, end: datetime) -> list[Cluster]:
        self._call("get_clusters_for_window")
        return [cluster.model_copy(deep=True) for cluster in self.clusters.get((start, end), [])]

    def delete_clusters_for_window(self, start: datetime, end: datetime) -> None:
        self._call("delete_clusters_for_window")
        self.clusters.pop((start, end), None)

    def create_cluster(self, start: datetime, end: datetime, topic: str) -> str:
        self._call("create_cluster")
        cluster = Cluster(id=str(uuid.uuid4()), topic=topic, window_start=start, window_end=end)
        self.clusters.setdefault((start, end), []).append(cluster)
        return cluster.id

    def add_to_cluster(self, cluster_id: str, item_id: str) -> None:
        self._call("add_to_cluster")
        item = next(item for item in self.items if item.id == item_id)
        for clusters in self.clusters.values():
            for cluster in clusters:
                if cluster.id == cluster_id:
                    cluster.items.append(item.model_copy(deep=True))
                    return

    # Ratings and channel statistics
    def get_rating_samples(self, since: datetime) -> list[RatingSample]:
        self._call("get_rating_samples")
        return [sample for sample in self.rating_samples if sample.created_at >= since]

    def get_channel_rolling_stats(self, channel_id: str, since: datetime) -> RollingStats:
        self._call("get_channel_rolling_stats")
        return self.rolling_stats.get(channel_id, RollingStats())

    def collect_and_save_channel_stats(self, start: datetime, end: datetime) -> None:
        self._call("collect_and_save_channel_stats")
        self.channel_stats_windows.append((start, end))

    def upsert_rating_stats(self, records: Sequence[RatingStatsRecord]) -> None:
        self._call("upsert_rating_stats")
        self.rating_stats.extend(records)

    def insert_threshold_tuning_log(self, entry: ThresholdTuningLogEntry) -> None:
        self._call("insert_threshold_tuning_log")
        self.tuning_log.append(entry)

    # Channels
    def list_active_channels(self) -> list[Channel]:
        self._call("list_active_channels")
        return [channel.model_copy() for channel in self.channels]

    def update_channel_importance_weight(self, channel_id: str, weight: float) -> None:
        self._call("update_channel_importance_weight")
        for channel in self.channels:
            if channel.id == channel_id:
                channel.importance_weight = weight

    def update_channel_relevance_delta(self, channel_id: str, delta: float) -> None:
        self._call("update_channel_relevance_delta")
        for channel in self.channels:
            if channel.id == channel_id:
                channel.relevance_delta = delta

    # Cluster summary cache
    def get_cluster_summary(self, language: str, fingerprint: str) -> ClusterSummaryCacheEntry | None:
        self._call("get_cluster_summary")
        return self.summary_cache.get((language, fingerprint))

    def get_cluster_summaries_since(self, language: str, since: datetime) -> list[ClusterSummaryCacheEntry]:
        self._call("get_cluster_summaries_since")
        return [
            entry
            for (entry_language, _), entry in self.summary_cache.items()
            if entry_language == language and (entry.created_at is None or entry.created_at >= since)
        ]

    def upsert_cluster_summary(self, entry: ClusterSummaryCacheEntry) -> None:
        self._call("upsert_cluster_summary")
        self.summary_cache[(entry.digest_language, entry.fingerprint)] = entry


class FakePoster:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[int, str, str]] = []
        self.images: list[bytes] = []
        self.notifications: list[str] = []
        self._next_id = 100

    def send_digest(self, chat_id: int, text: str, digest_id: str) -> int:
        if self.fail:
            raise PosterError("sink unavailable")
        self.sent.append((chat_id, text, digest_id))
        self._next_id += 1
        return self._next_id

    def send_digest_with_image(self, chat_id: int, text: str, digest_id: str, image: bytes) -> int:
        self.images.append(image)
        return self.send_digest(chat_id, text, digest_id)

    def send_notification(self, text: str) -> None:
        self.notifications.append(text)


class FakeLLM:
    def __init__(self, summary: str = "Merged summary", topic: str = "", fail: bool = False) -> None:
        self.summary = summary
        self.topic = topic
        self.fail = fail
        self.calls: list[str] = []

    def summarize_cluster(self, items: Sequence[Item], language: str) -> str:
        self.calls.append("summarize_cluster")
        if self.fail:
            raise LLMError("llm down")
        return self.summary

    def generate_cluster_topic(self, items: Sequence[Item], language: str) -> str:
        self.calls.append("generate_cluster_topic")
        if self.fail:
            raise LLMError("llm down")
        return self.topic

    def compose_narrative(self, items: Sequence[Item], language: str) -> str:
        self.calls.append("compose_narrative")
        if self.fail:
            raise LLMError("llm down")
        return "Quiet day overall."
