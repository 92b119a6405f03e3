"""Weekly recalculation of per-channel importance weights."""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel

from channeldigest.config import AppConfig
from channeldigest.errors import RepositoryError
from channeldigest.models.domain import RollingStats
from channeldigest.services.ports import Repository
from channeldigest.services.ratings import RatingTally, tally_ratings
from channeldigest.services.scoring import clamp, clamp01
from channeldigest.services.settings import read_setting
from channeldigest.services.tasks import WeeklyTask

log = structlog.get_logger(__name__)

NEUTRAL_WEIGHT = 1.0
BASE_OFFSET = 0.5
INCLUSION_FACTOR = 0.4
IMPORTANCE_FACTOR = 0.3
CONSISTENCY_FACTOR = 0.2
SIGNAL_FACTOR = 0.1
MIN_WEIGHT_CHANGE = 0.05

RELIABILITY_WINDOW_DAYS = 60
RELIABILITY_HALF_LIFE_DAYS = 30.0
RELIABILITY_NEUTRAL = 0.5
RELIABILITY_DELTA_FACTOR = 0.2
RELIABILITY_HIGH_IRRELEVANT = 0.35
RELIABILITY_EXTRA_PENALTY = 0.05


class AutoWeightConfig(BaseModel):
    min_messages: int = 10
    expected_frequency: float = 5.0
    auto_min: float = 0.5
    auto_max: float = 1.5
    rolling_days: int = 30

    @classmethod
    def load(cls, repo: Repository) -> "AutoWeightConfig":
        base = cls()
        return cls(
            min_messages=read_setting(repo, "auto_weight_min_messages", base.min_messages),
            expected_frequency=read_setting(repo, "auto_weight_expected_freq", base.expected_frequency),
            auto_min=read_setting(repo, "auto_weight_min", base.auto_min),
            auto_max=read_setting(repo, "auto_weight_max", base.auto_max),
            rolling_days=read_setting(repo, "auto_weight_rolling_days", base.rolling_days),
        )


def calculate_auto_weight(stats: RollingStats, cfg: AutoWeightConfig, days: int) -> float:
    """
    Weight a channel by how often its messages make it into digests.

    Args:
        stats: Rolling statistics for the channel
        cfg: Auto-weight parameters
        days: Length of the rolling window

    Returns:
        ``clamp(0.5 + raw, auto_min, auto_max)``, or the neutral weight when
        the channel posted fewer than ``min_messages`` messages
    """
    if stats.total_messages < cfg.min_messages:
        return NEUTRAL_WEIGHT

    inclusion = 0.0
    if stats.total_items_created > 0:
        inclusion = stats.total_items_digested / stats.total_items_created

    importance = stats.avg_importance if stats.total_items_digested > 0 else 0.5

    per_day = stats.total_messages / max(days, 1)
    consistency = min(1.0, per_day / cfg.expected_frequency) if cfg.expected_frequency > 0 else 0.0

    signal = 0.0
    if stats.total_messages > 0:
        signal = stats.total_items_created / stats.total_messages

    raw = (
        inclusion * INCLUSION_FACTOR
        + importance * IMPORTANCE_FACTOR
        + consistency * CONSISTENCY_FACTOR
        + signal * SIGNAL_FACTOR
    )
    return clamp(BASE_OFFSET + raw, cfg.auto_min, cfg.auto_max)


def reliability_delta(tally: RatingTally) -> tuple[float, float] | None:
    """Weight adjustment from rating reliability; ``None`` without weighted samples."""
    if tally.weighted_total <= 0:
        return None

    irrelevant_rate = tally.irrelevant_rate
    reliability = clamp01(RELIABILITY_NEUTRAL + (tally.good_rate - irrelevant_rate) * RELIABILITY_NEUTRAL)
    delta = (reliability - RELIABILITY_NEUTRAL) * RELIABILITY_DELTA_FACTOR
    if irrelevant_rate >= RELIABILITY_HIGH_IRRELEVANT:
        delta -= RELIABILITY_EXTRA_PENALTY
    return delta, reliability


def update_auto_weights(repo: Repository, config: AppConfig, now: datetime) -> int:
    """Recompute and persist channel weights; returns the number of channels updated."""
    cfg = AutoWeightConfig.load(repo)
    channels = [channel for channel in repo.list_active_channels() if channel.auto_weight_enabled]
    since = now - timedelta(days=cfg.rolling_days)

    try:
        samples = repo.get_rating_samples(now - timedelta(days=RELIABILITY_WINDOW_DAYS))
    except RepositoryError as exc:
        log.warning("autoweight.ratings_unavailable", error=str(exc))
        samples = []
    reliability, _ = tally_ratings(now, samples, RELIABILITY_HALF_LIFE_DAYS)

    updated = 0
    skipped = 0
    for channel in channels:
        try:
            stats = repo.get_channel_rolling_stats(channel.id, since)
        except RepositoryError as exc:
            log.warning("autoweight.stats_unavailable", channel_id=channel.id, error=str(exc))
            continue

        weight = calculate_auto_weight(stats, cfg, cfg.rolling_days)

        tally = reliability.get(channel.id)
        if tally is not None and tally.count >= config.rating_min_sample_channel:
            adjustment = reliability_delta(tally)
            if adjustment is not None:
                delta, score = adjustment
                weight = clamp(weight + delta, cfg.auto_min, cfg.auto_max)
                log.debug("autoweight.reliability_applied", channel_id=channel.id, reliability=score, delta=delta)

        if abs(weight - channel.importance_weight) < MIN_WEIGHT_CHANGE:
            skipped += 1
            continue

        try:
            repo.update_channel_importance_weight(channel.id, weight)
        except RepositoryError as exc:
            log.warning("autoweight.update_failed", channel_id=channel.id, error=str(exc))
            continue

        log.info(
            "autoweight.channel_updated",
            channel=channel.display_name,
            old_weight=channel.importance_weight,
            new_weight=round(weight, 4),
        )
        updated += 1

    log.info("autoweight.completed", updated=updated, skipped=skipped, total=len(channels))
    return updated


class AutoWeightTask(WeeklyTask):
    name = "auto-weight"
    setting_key = "auto_weight_enabled"

    def __init__(self, repo: Repository, config: AppConfig) -> None:
        self.repo = repo
        self.config = config

    def run(self, now: datetime) -> None:
        update_auto_weights(self.repo, self.config, now)
