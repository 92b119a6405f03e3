"""Tests for the threshold, auto-weight and auto-relevance tuners."""

from datetime import timedelta

import pytest
from fakes import BASE_TIME, FakeRepository

from channeldigest.config import AppConfig
from channeldigest.models.domain import Channel, RatingSample, RollingStats
from channeldigest.services.autorelevance import relevance_delta, update_auto_relevance
from channeldigest.services.autoweight import (
    NEUTRAL_WEIGHT,
    AutoWeightConfig,
    calculate_auto_weight,
    reliability_delta,
    update_auto_weights,
)
from channeldigest.services.ratings import RatingTally
from channeldigest.services.threshold_tuning import threshold_delta, update_global_thresholds


def _config(**overrides) -> AppConfig:
    return AppConfig(_env_file=None, **overrides)


def _samples(good: int, bad: int, irrelevant: int, channel: str = "c1") -> list[RatingSample]:
    ratings = ["good"] * good + ["bad"] * bad + ["irrelevant"] * irrelevant
    return [RatingSample(rating=rating, channel_id=channel, created_at=BASE_TIME) for rating in ratings]


class TestThresholdTuning:
    def test_positive_net_raises_thresholds(self) -> None:
        repo = FakeRepository()
        repo.rating_samples = _samples(120, 40, 40)
        repo.settings = {"importance_threshold": 0.50, "relevance_threshold": 0.60}

        result = update_global_thresholds(repo, _config(), BASE_TIME)

        assert result is not None
        assert result.net_score == pytest.approx(0.2)
        assert result.delta == pytest.approx(0.01)
        assert repo.settings["importance_threshold"] == pytest.approx(0.51)
        assert repo.settings["relevance_threshold"] == pytest.approx(0.61)
        assert len(repo.tuning_log) == 1
        assert repo.tuning_log[0].importance_threshold == pytest.approx(0.51)

    def test_insufficient_ratings(self) -> None:
        repo = FakeRepository()
        repo.rating_samples = _samples(50, 10, 10)

        assert update_global_thresholds(repo, _config(), BASE_TIME) is None
        assert repo.tuning_log == []

    def test_neutral_band(self) -> None:
        repo = FakeRepository()
        repo.rating_samples = _samples(100, 50, 50)

        assert update_global_thresholds(repo, _config(), BASE_TIME) is None
        assert "importance_threshold" not in repo.settings

    def test_thresholds_stay_in_bounds(self) -> None:
        repo = FakeRepository()
        repo.rating_samples = _samples(0, 200, 0)
        repo.settings = {"importance_threshold": 0.11, "relevance_threshold": 0.5}

        result = update_global_thresholds(repo, _config(), BASE_TIME)

        assert result is not None
        assert result.delta == pytest.approx(-0.015)
        assert result.importance_threshold == pytest.approx(0.10)
        assert result.relevance_threshold == pytest.approx(0.485)

    @pytest.mark.parametrize(("net", "expected"), [(1.0, 0.015), (-1.0, -0.015), (0.1, 0.005), (0.0, 0.0)])
    def test_delta_is_capped(self, net: float, expected: float) -> None:
        assert threshold_delta(net, 0.05) == pytest.approx(expected)

    def test_invalid_step_uses_default(self) -> None:
        assert threshold_delta(0.2, 0.0) == pytest.approx(0.01)


class TestAutoWeight:
    def test_neutral_below_min_messages(self) -> None:
        assert calculate_auto_weight(RollingStats(total_messages=3), AutoWeightConfig(), 30) == NEUTRAL_WEIGHT

    def test_formula(self) -> None:
        stats = RollingStats(total_messages=150, total_items_created=60, total_items_digested=30, avg_importance=0.6)

        weight = calculate_auto_weight(stats, AutoWeightConfig(), 30)

        # 0.5*0.4 + 0.6*0.3 + 1.0*0.2 + 0.4*0.1 = 0.62
        assert weight == pytest.approx(1.12)

    def test_weight_is_clamped(self) -> None:
        stats = RollingStats(total_messages=300, total_items_created=300, total_items_digested=300, avg_importance=1.0)

        assert calculate_auto_weight(stats, AutoWeightConfig(auto_max=1.2), 30) == 1.2

    def test_reliability_delta(self) -> None:
        tally = RatingTally()
        for rating in ["good"] * 6 + ["irrelevant"] * 4:
            tally.add(rating, 1.0)

        delta, reliability = reliability_delta(tally)

        assert reliability == pytest.approx(0.6)
        assert delta == pytest.approx(0.02 - 0.05)
        assert reliability_delta(RatingTally()) is None

    def test_updates_only_significant_changes(self) -> None:
        repo = FakeRepository()
        repo.channels = [
            Channel(id="busy", username="busy", importance_weight=1.0),
            Channel(id="steady", username="steady", importance_weight=1.1),
            Channel(id="manual", username="manual", auto_weight_enabled=False),
        ]
        stats = RollingStats(total_messages=150, total_items_created=60, total_items_digested=30, avg_importance=0.6)
        repo.rolling_stats = {"busy": stats, "steady": stats, "manual": stats}

        updated = update_auto_weights(repo, _config(), BASE_TIME)

        assert updated == 1
        weights = {channel.id: channel.importance_weight for channel in repo.channels}
        assert weights == {"busy": pytest.approx(1.12), "steady": 1.1, "manual": 1.0}

    def test_reliability_applies_with_enough_ratings(self) -> None:
        repo = FakeRepository()
        repo.channels = [Channel(id="c1", importance_weight=1.0)]
        repo.rolling_stats = {"c1": RollingStats(total_messages=2)}
        repo.rating_samples = _samples(0, 0, 20)

        update_auto_weights(repo, _config(rating_min_sample_channel=15), BASE_TIME)

        # neutral 1.0, reliability 0 -> -0.1 - 0.05
        assert repo.channels[0].importance_weight == pytest.approx(0.85)


class TestAutoRelevance:
    def test_relevance_delta(self) -> None:
        tally = RatingTally()
        for rating in ["good"] * 3 + ["bad"]:
            tally.add(rating, 1.0)

        assert relevance_delta(tally) == pytest.approx(0.05)

    def test_updates_channels_with_enough_ratings(self) -> None:
        repo = FakeRepository()
        repo.channels = [
            Channel(id="c1"),
            Channel(id="c2", relevance_delta=0.1),
            Channel(id="c3", relevance_delta=0.1, auto_relevance_enabled=False),
        ]
        repo.rating_samples = _samples(60, 20, 20, "c1") + _samples(1, 0, 0, "c2")

        updated = update_auto_relevance(repo, _config(rating_min_sample_global=100), BASE_TIME)

        deltas = {channel.id: channel.relevance_delta for channel in repo.channels}
        assert updated == 2
        assert deltas["c1"] == pytest.approx(0.08)
        assert deltas["c2"] == 0.0
        assert deltas["c3"] == 0.1

    def test_insufficient_global_ratings(self) -> None:
        repo = FakeRepository()
        repo.channels = [Channel(id="c1")]
        repo.rating_samples = _samples(10, 0, 0)

        assert update_auto_relevance(repo, _config(), BASE_TIME) == 0
        assert "list_active_channels" not in repo.calls

    def test_old_samples_are_ignored(self) -> None:
        repo = FakeRepository()
        repo.rating_samples = [
            RatingSample(rating="good", channel_id="c1", created_at=BASE_TIME - timedelta(days=45))
            for _ in range(200)
        ]

        assert update_auto_relevance(repo, _config(), BASE_TIME) == 0
