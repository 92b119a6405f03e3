"""Time-decayed rating tallies and the weekly rating-stats aggregation."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel

from channeldigest.models.domain import Rating, RatingSample, RatingStatsRecord
from channeldigest.services.ports import Repository
from channeldigest.services.scoring import decay_weight
from channeldigest.services.tasks import WeeklyTask

log = structlog.get_logger(__name__)

RATING_WINDOW_DAYS = 30
RATING_HALF_LIFE_DAYS = 14.0


class RatingTally(BaseModel):
    """Weighted rating counters; unknown ratings count as bad."""

    count: int = 0
    weighted_total: float = 0.0
    weighted_good: float = 0.0
    weighted_bad: float = 0.0
    weighted_irrelevant: float = 0.0

    def add(self, rating: str, weight: float) -> None:
        self.count += 1
        self.weighted_total += weight

        parsed = Rating.parse(rating)
        if parsed is Rating.GOOD:
            self.weighted_good += weight
        elif parsed is Rating.IRRELEVANT:
            self.weighted_irrelevant += weight
        else:
            self.weighted_bad += weight

    @property
    def good_rate(self) -> float:
        return self.weighted_good / self.weighted_total if self.weighted_total > 0 else 0.0

    @property
    def irrelevant_rate(self) -> float:
        return self.weighted_irrelevant / self.weighted_total if self.weighted_total > 0 else 0.0


def sample_weight(now: datetime, created_at: datetime, half_life_days: float) -> float:
    age_days = max(0.0, (now - created_at).total_seconds() / 86400)
    return decay_weight(age_days, half_life_days)


def tally_ratings(
    now: datetime,
    samples: Iterable[RatingSample],
    half_life_days: float = RATING_HALF_LIFE_DAYS,
    require_channel: bool = True,
) -> tuple[dict[str, RatingTally], RatingTally]:
    """
    Aggregate samples into per-channel and global tallies.

    Args:
        now: Reference time for the decay
        samples: Rating samples
        half_life_days: Decay half-life
        require_channel: Ignore samples without a channel id (also for the
            global tally)

    Returns:
        ``(per_channel, global_tally)``
    """
    per_channel: dict[str, RatingTally] = {}
    overall = RatingTally()

    for sample in samples:
        if require_channel and not sample.channel_id:
            continue

        weight = sample_weight(now, sample.created_at, half_life_days)
        if weight <= 0:
            continue

        overall.add(sample.rating, weight)
        if sample.channel_id:
            per_channel.setdefault(sample.channel_id, RatingTally()).add(sample.rating, weight)

    return per_channel, overall


def _day_floor(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def update_rating_stats(repo: Repository, now: datetime) -> int:
    """Upsert per-channel and global weighted rating stats for the last 30 days."""
    since = now - timedelta(days=RATING_WINDOW_DAYS)
    samples = repo.get_rating_samples(since)
    per_channel, overall = tally_ratings(now, samples)

    period_start = _day_floor(since)
    period_end = _day_floor(now)
    if period_end <= period_start:
        period_end = period_start + timedelta(days=1)

    records = [
        RatingStatsRecord(
            channel_id=channel_id,
            period_start=period_start,
            period_end=period_end,
            weighted_good=tally.weighted_good,
            weighted_bad=tally.weighted_bad,
            weighted_irrelevant=tally.weighted_irrelevant,
            weighted_total=tally.weighted_total,
            rating_count=tally.count,
        )
        for channel_id, tally in per_channel.items()
    ]
    records.append(
        RatingStatsRecord(
            channel_id=None,
            period_start=period_start,
            period_end=period_end,
            weighted_good=overall.weighted_good,
            weighted_bad=overall.weighted_bad,
            weighted_irrelevant=overall.weighted_irrelevant,
            weighted_total=overall.weighted_total,
            rating_count=overall.count,
        )
    )
    repo.upsert_rating_stats(records)

    log.info(
        "rating_stats.updated",
        channels=len(per_channel),
        rating_count=overall.count,
        weighted_total=round(overall.weighted_total, 3),
    )
    return len(records)


class RatingStatsTask(WeeklyTask):
    name = "rating-stats"
    setting_key = "rating_stats_enabled"

    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    def run(self, now: datetime) -> None:
        update_rating_stats(self.repo, now)
