"""Weekly per-channel relevance threshold deltas derived from ratings."""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from channeldigest.config import AppConfig
from channeldigest.errors import RepositoryError
from channeldigest.models.domain import Channel
from channeldigest.services.ports import Repository
from channeldigest.services.ratings import RATING_HALF_LIFE_DAYS, RATING_WINDOW_DAYS, RatingTally, tally_ratings
from channeldigest.services.scoring import clamp, clamp01
from channeldigest.services.tasks import WeeklyTask

log = structlog.get_logger(__name__)

PENALTY_FACTOR = 0.2
DELTA_EPSILON = 0.01


def relevance_delta(tally: RatingTally) -> float:
    """``(1 - reliability) * 0.2`` clamped to ``[0, 0.2]``; reliability is the weighted good rate."""
    reliability = clamp01(tally.weighted_good / tally.weighted_total)
    return clamp((1.0 - reliability) * PENALTY_FACTOR, 0.0, PENALTY_FACTOR)


def _update_channel(repo: Repository, channel: Channel, tally: RatingTally | None, min_channel: int) -> bool:
    if tally is None or tally.count < min_channel or tally.weighted_total <= 0:
        if channel.relevance_delta == 0:
            return False
        target = 0.0
    else:
        target = relevance_delta(tally)
        if abs(target - channel.relevance_delta) < DELTA_EPSILON:
            return False

    try:
        repo.update_channel_relevance_delta(channel.id, target)
    except RepositoryError as exc:
        log.warning("autorelevance.update_failed", channel_id=channel.id, error=str(exc))
        return False

    log.info(
        "autorelevance.channel_updated",
        channel=channel.display_name,
        old_delta=channel.relevance_delta,
        new_delta=round(target, 4),
        rating_count=tally.count if tally else 0,
    )
    return True


def update_auto_relevance(repo: Repository, config: AppConfig, now: datetime) -> int:
    """Recompute relevance deltas; returns the number of channels updated."""
    samples = repo.get_rating_samples(now - timedelta(days=RATING_WINDOW_DAYS))
    per_channel, overall = tally_ratings(now, samples, RATING_HALF_LIFE_DAYS)

    if overall.count < config.rating_min_sample_global:
        log.info(
            "autorelevance.insufficient_ratings",
            global_count=overall.count,
            min_global=config.rating_min_sample_global,
        )
        return 0

    channels = repo.list_active_channels()
    updated = 0
    for channel in channels:
        if not channel.auto_relevance_enabled:
            continue
        if _update_channel(repo, channel, per_channel.get(channel.id), config.rating_min_sample_channel):
            updated += 1

    log.info(
        "autorelevance.completed",
        updated=updated,
        skipped=len(channels) - updated,
        total=len(channels),
        global_count=overall.count,
    )
    return updated


class AutoRelevanceTask(WeeklyTask):
    name = "auto-relevance"
    setting_key = "auto_relevance_enabled"

    def __init__(self, repo: Repository, config: AppConfig) -> None:
        self.repo = repo
        self.config = config

    def run(self, now: datetime) -> None:
        update_auto_relevance(self.repo, self.config, now)
