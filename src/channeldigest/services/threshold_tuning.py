"""Weekly nudging of the global importance and relevance thresholds from ratings."""

from __future__ import annotations

import math
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel

from channeldigest.config import AppConfig
from channeldigest.errors import RepositoryError
from channeldigest.models.domain import ThresholdTuningLogEntry
from channeldigest.services.ports import Repository
from channeldigest.services.ratings import RATING_HALF_LIFE_DAYS, RATING_WINDOW_DAYS, tally_ratings
from channeldigest.services.scoring import clamp
from channeldigest.services.settings import read_setting
from channeldigest.services.tasks import WeeklyTask

log = structlog.get_logger(__name__)

DELTA_CAP = 0.3
DEFAULT_STEP = 0.05
DELTA_EPSILON = 1e-6


class TuningResult(BaseModel):
    net_score: float
    delta: float
    importance_threshold: float
    relevance_threshold: float


def tuning_bounds(config: AppConfig) -> tuple[float, float]:
    lower = max(config.threshold_tuning_min, 0.0)
    upper = min(config.threshold_tuning_max, 1.0)
    return lower, max(upper, lower)


def threshold_delta(net: float, step: float) -> float:
    """``clamp(net, -0.3, 0.3) * step``; zero inside the neutral band."""
    if step <= 0:
        step = DEFAULT_STEP
    delta = clamp(net, -DELTA_CAP, DELTA_CAP) * step
    if abs(delta) < DELTA_EPSILON:
        return 0.0
    return delta


def update_global_thresholds(repo: Repository, config: AppConfig, now: datetime) -> TuningResult | None:
    """
    Shift both thresholds by the rating-derived delta.

    Returns:
        The applied result, or ``None`` when there were too few ratings or
        the delta fell into the neutral band
    """
    samples = repo.get_rating_samples(now - timedelta(days=RATING_WINDOW_DAYS))
    _, tally = tally_ratings(now, samples, RATING_HALF_LIFE_DAYS, require_channel=False)

    total = tally.weighted_total
    if tally.count < config.rating_min_sample_global or not math.isfinite(total) or total <= 0:
        log.info(
            "threshold_tuning.insufficient_ratings",
            global_count=tally.count,
            min_global=config.rating_min_sample_global,
        )
        return None

    net = (tally.weighted_good - (tally.weighted_bad + tally.weighted_irrelevant)) / total
    delta = threshold_delta(net, config.threshold_tuning_step)
    if delta == 0:
        log.info("threshold_tuning.neutral_band", net_score=net)
        return None

    lower, upper = tuning_bounds(config)
    importance = read_setting(repo, "importance_threshold", config.importance_threshold)
    relevance = read_setting(repo, "relevance_threshold", config.relevance_threshold)
    new_importance = clamp(importance + delta, lower, upper)
    new_relevance = clamp(relevance + delta, lower, upper)

    if new_relevance != relevance:
        repo.save_setting("relevance_threshold", new_relevance)
    if new_importance != importance:
        repo.save_setting("importance_threshold", new_importance)

    try:
        repo.insert_threshold_tuning_log(
            ThresholdTuningLogEntry(
                tuned_at=now,
                net_score=net,
                delta=delta,
                importance_threshold=new_importance,
                relevance_threshold=new_relevance,
            )
        )
    except RepositoryError as exc:
        log.warning("threshold_tuning.log_failed", error=str(exc))

    log.info(
        "threshold_tuning.updated",
        net_score=round(net, 4),
        delta=round(delta, 4),
        importance=importance,
        importance_new=new_importance,
        relevance=relevance,
        relevance_new=new_relevance,
    )
    return TuningResult(
        net_score=net,
        delta=delta,
        importance_threshold=new_importance,
        relevance_threshold=new_relevance,
    )


class ThresholdTuningTask(WeeklyTask):
    name = "threshold-tuning"
    setting_key = "auto_threshold_tuning_enabled"

    def __init__(self, repo: Repository, config: AppConfig) -> None:
        self.repo = repo
        self.config = config

    def run(self, now: datetime) -> None:
        update_global_thresholds(self.repo, self.config, now)
