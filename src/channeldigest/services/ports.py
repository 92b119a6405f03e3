"""Interfaces the composition engine consumes from its collaborators."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

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


class Repository(Protocol):
    """Persistent store. Every method may raise :class:`~channeldigest.errors.RepositoryError`."""

    # Settings
    def get_setting(self, key: str) -> Any | None: ...

    def save_setting(self, key: str, value: Any) -> None: ...

    # Scheduler lock
    def try_advisory_lock(self, lock_id: int) -> bool: ...

    def release_advisory_lock(self, lock_id: int) -> None: ...

    # Digests
    def digest_exists(self, start: datetime, end: datetime) -> bool: ...

    def save_digest(self, record: DigestRecord) -> str: ...

    def save_digest_error(self, start: datetime, end: datetime, chat_id: int, error: str) -> None: ...

    def save_digest_entries(self, digest_id: str, entries: Sequence[DigestEntry]) -> None: ...

    def get_digest_cover_image(self, start: datetime, end: datetime, threshold: float) -> bytes | None: ...

    # Items
    def get_items_for_window(self, start: datetime, end: datetime, threshold: float, limit: int) -> list[Item]: ...

    def count_items_in_window(self, start: datetime, end: datetime) -> int: ...

    def count_ready_items_in_window(self, start: datetime, end: datetime) -> int: ...

    def mark_items_as_digested(self, item_ids: Sequence[str]) -> None: ...

    def get_backlog_count(self) -> int: ...

    def get_items_evidence(self, item_ids: Sequence[str]) -> dict[str, list[Evidence]]: ...

    def get_fact_checks(self, item_ids: Sequence[str]) -> dict[str, list[FactCheck]]: ...

    # Clusters
    def get_clusters_for_window(self, start: datetime, end: datetime) -> list[Cluster]: ...

    def delete_clusters_for_window(self, start: datetime, end: datetime) -> None: ...

    def create_cluster(self, start: datetime, end: datetime, topic: str) -> str: ...

    def add_to_cluster(self, cluster_id: str, item_id: str) -> None: ...

    # Ratings and channel statistics
    def get_rating_samples(self, since: datetime) -> list[RatingSample]: ...

    def get_channel_rolling_stats(self, channel_id: str, since: datetime) -> RollingStats: ...

    def collect_and_save_channel_stats(self, start: datetime, end: datetime) -> None: ...

    def upsert_rating_stats(self, records: Sequence[RatingStatsRecord]) -> None: ...

    def insert_threshold_tuning_log(self, entry: ThresholdTuningLogEntry) -> None: ...

    # Channels
    def list_active_channels(self) -> list[Channel]: ...

    def update_channel_importance_weight(self, channel_id: str, weight: float) -> None: ...

    def update_channel_relevance_delta(self, channel_id: str, delta: float) -> None: ...

    # Cluster summary cache
    def get_cluster_summary(self, language: str, fingerprint: str) -> ClusterSummaryCacheEntry | None: ...

    def get_cluster_summaries_since(self, language: str, since: datetime) -> list[ClusterSummaryCacheEntry]: ...

    def upsert_cluster_summary(self, entry: ClusterSummaryCacheEntry) -> None: ...


class Poster(Protocol):
    """Delivery sink. Returns the sink message id; failures raise :class:`~channeldigest.errors.PosterError`."""

    def send_digest(self, chat_id: int, text: str, digest_id: str) -> int: ...

    def send_digest_with_image(self, chat_id: int, text: str, digest_id: str, image: bytes) -> int: ...

    def send_notification(self, text: str) -> None: ...


class LLMGateway(Protocol):
    """Text generation. Failures raise :class:`~channeldigest.errors.LLMError`."""

    def summarize_cluster(self, items: Sequence[Item], language: str) -> str: ...

    def generate_cluster_topic(self, items: Sequence[Item], language: str) -> str: ...

    def compose_narrative(self, items: Sequence[Item], language: str) -> str: ...
