"""Dynamic digest settings stored in the repository, layered over :class:`AppConfig`."""

from __future__ import annotations

from typing import TypeVar

import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from channeldigest.config import AppConfig
from channeldigest.errors import RepositoryError
from channeldigest.services.ports import Repository

log = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_COHERENCE_THRESHOLD = 0.7


def read_setting(repo: Repository, key: str, default: T) -> T:
    """
    Read one setting, coerced to the type of ``default``.

    Missing keys, unreadable values and repository failures all fall back to
    ``default`` (logged at debug level).
    """
    try:
        raw = repo.get_setting(key)
    except RepositoryError as exc:
        log.debug("setting_read_failed", key=key, error=str(exc))
        return default

    if raw is None:
        return default

    try:
        return TypeAdapter(type(default)).validate_python(raw)
    except ValidationError:
        log.debug("setting_coercion_failed", key=key, value=raw)
        return default


class DigestSettings(BaseModel):
    """Every dynamic key the composition engine reads, named as stored."""

    target_chat_id: int = 0
    digest_top_n: int = 20
    digest_pool_multiplier: int = 3
    importance_threshold: float = 0.3
    relevance_threshold: float = 0.5
    similarity_threshold: float = 0.65
    backlog_threshold: int = 100

    topics_enabled: bool = True
    freshness_decay_hours: int = 36
    freshness_floor: float = 0.4
    topic_diversity_cap: float = 0.30
    min_topic_count: int = 3
    relevance_gate_enabled: bool = False

    cluster_similarity_threshold: float = 0.75
    cluster_coherence_threshold: float = DEFAULT_COHERENCE_THRESHOLD
    cluster_time_window_hours: int = 36
    cluster_max_items: int = 2000
    cross_topic_clustering_enabled: bool = False
    cross_topic_similarity_threshold: float = 0.90
    evidence_clustering_enabled: bool = True
    evidence_clustering_boost: float = 0.15
    evidence_clustering_min_score: float = 0.5

    corroboration_importance_boost: float = 0.05
    single_source_penalty: float = 0.05

    editor_enabled: bool = False
    consolidated_clusters_enabled: bool = True
    evidence_display_min_agreement: float = 0.5
    digest_language: str = "en"
    digest_cover_image: bool = True
    anomaly_notifications: bool = True
    time_to_digest_alert: str = "0s"

    @classmethod
    def defaults(cls, config: AppConfig) -> "DigestSettings":
        """Static defaults taken from the application config."""
        overlap = {name: getattr(config, name) for name in cls.model_fields if hasattr(config, name)}
        return cls(**overlap)

    @classmethod
    def load(cls, repo: Repository, config: AppConfig) -> "DigestSettings":
        """Overlay stored settings on the config defaults and normalize zero values."""
        base = cls.defaults(config)
        values = {name: read_setting(repo, name, getattr(base, name)) for name in cls.model_fields}
        settings = cls(**values)

        if settings.cluster_similarity_threshold <= 0:
            settings.cluster_similarity_threshold = config.cluster_similarity_threshold
        if settings.cross_topic_similarity_threshold <= 0:
            settings.cross_topic_similarity_threshold = settings.cluster_similarity_threshold
        if settings.cluster_coherence_threshold <= 0:
            settings.cluster_coherence_threshold = DEFAULT_COHERENCE_THRESHOLD
        settings.digest_language = settings.digest_language.strip().lower() or config.digest_language

        return settings

    @property
    def pool_limit(self) -> int:
        return self.digest_top_n * self.digest_pool_multiplier
