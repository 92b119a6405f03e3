"""Pydantic models exchanged between the repository, the engine and the adapters."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def ensure_utc(value: Any) -> datetime | None:
    """Coerce strings and naive datetimes into timezone-aware UTC datetimes."""

    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    raise TypeError("Unsupported datetime type")


UtcDatetime = Annotated[datetime, BeforeValidator(ensure_utc)]


class Rating(StrEnum):
    GOOD = "good"
    BAD = "bad"
    IRRELEVANT = "irrelevant"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "Rating":
        """Case-insensitive parse; anything unrecognised is ``UNKNOWN``."""

        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Evidence(BaseModel):
    """Third-party reference attached to an item by the enrichment stage."""

    url: str
    title: str = ""
    domain: str = ""
    agreement_score: float = Field(default=0.0, ge=0, le=1)
    is_contradiction: bool = False


class FactCheck(BaseModel):
    item_id: str
    claim: str = ""
    rating: str = ""
    url: str = ""
    publisher: str = ""


class Item(BaseModel):
    """A scored message ready for digest composition."""

    model_config = ConfigDict(extra="ignore", validate_assignment=False)

    id: str
    importance_score: float = 0.0
    relevance_score: float = 0.0
    published_at: UtcDatetime | None = None
    first_seen_at: UtcDatetime | None = None
    source_channel: str = ""
    source_channel_id: int = 0
    source_channel_title: str = ""
    source_msg_id: int = 0
    summary: str = ""
    topic: str = ""
    embedding: list[float] = Field(default_factory=list)
    channel_relevance_delta: float = 0.0

    @property
    def has_embedding(self) -> bool:
        return len(self.embedding) > 0


class Cluster(BaseModel):
    """A group of items reporting the same story within one window."""

    id: str = ""
    topic: str
    items: list[Item] = Field(default_factory=list)
    window_start: UtcDatetime
    window_end: UtcDatetime

    @property
    def representative(self) -> Item | None:
        return self.items[0] if self.items else None


class Window(BaseModel):
    """Half-open ``[start, end)`` UTC interval processed by one digest."""

    model_config = ConfigDict(frozen=True)

    start: UtcDatetime
    end: UtcDatetime

    @model_validator(mode="after")
    def _check_order(self) -> "Window":
        if not self.start < self.end:
            raise ValueError("window start must be before end")
        return self


class RatingSample(BaseModel):
    item_id: str = ""
    rating: str = Rating.UNKNOWN.value
    created_at: UtcDatetime
    channel_id: str = ""


class RollingStats(BaseModel):
    total_messages: int = 0
    total_items_created: int = 0
    total_items_digested: int = 0
    avg_importance: float = 0.0


class Channel(BaseModel):
    """Channel attributes the adaptive tuners read and write."""

    id: str
    username: str = ""
    title: str = ""
    peer_id: int = 0
    importance_weight: float = 1.0
    auto_weight_enabled: bool = True
    relevance_delta: float = 0.0
    auto_relevance_enabled: bool = True

    @property
    def display_name(self) -> str:
        return self.username or self.title or self.id


class ClusterSummaryCacheEntry(BaseModel):
    digest_language: str
    fingerprint: str
    item_ids: list[str]
    summary: str
    created_at: UtcDatetime | None = None


class DigestSource(BaseModel):
    channel: str = ""
    msg_id: int = 0


class DigestEntry(BaseModel):
    title: str = ""
    body: str = ""
    sources: list[DigestSource] = Field(default_factory=list)


class DigestRecord(BaseModel):
    id: str
    window_start: UtcDatetime
    window_end: UtcDatetime
    chat_id: int
    message_id: int
    entries: list[DigestEntry] = Field(default_factory=list)


class RatingStatsRecord(BaseModel):
    channel_id: str | None = None
    period_start: UtcDatetime
    period_end: UtcDatetime
    weighted_good: float = 0.0
    weighted_bad: float = 0.0
    weighted_irrelevant: float = 0.0
    weighted_total: float = 0.0
    rating_count: int = 0


class ThresholdTuningLogEntry(BaseModel):
    tuned_at: UtcDatetime
    net_score: float
    delta: float
    importance_threshold: float
    relevance_threshold: float


class AnomalyKind(StrEnum):
    THRESHOLD = "threshold"
    BACKLOG = "backlog"


class Anomaly(BaseModel):
    """An empty digest window worth reporting to the operator."""

    kind: AnomalyKind
    start: UtcDatetime
    end: UtcDatetime
    total_items: int = 0
    ready_items: int = 0
    threshold: float = 0.0
    backlog_size: int = 0

    @property
    def is_backlog(self) -> bool:
        return self.kind is AnomalyKind.BACKLOG
