"""Tests for channeldigest.services.selection."""

from datetime import timedelta

import pytest
from fakes import BASE_TIME, FakeRepository, make_item

from channeldigest.models.domain import AnomalyKind, Window
from channeldigest.services.selection import (
    SOURCE_DIVERSITY_BONUS,
    apply_relevance_gate,
    apply_smart_selection,
    apply_topic_balance,
    balance_and_limit,
    fetch_candidate_pool,
)
from channeldigest.services.settings import DigestSettings

WINDOW = Window(start=BASE_TIME - timedelta(hours=1), end=BASE_TIME + timedelta(hours=1))


class TestFetchCandidatePool:
    def test_backlog_anomaly(self) -> None:
        repo = FakeRepository()
        repo.backlog = 250
        settings = DigestSettings(importance_threshold=0.5)

        pool = fetch_candidate_pool(repo, WINDOW, settings)

        assert pool.items == []
        assert pool.anomaly is not None
        assert pool.anomaly.kind is AnomalyKind.BACKLOG
        assert pool.anomaly.backlog_size == 250

    def test_threshold_anomaly(self) -> None:
        repo = FakeRepository()
        repo.items = [make_item(f"i{n}", importance_score=0.1 + (n % 4) * 0.1) for n in range(30)]
        settings = DigestSettings(importance_threshold=0.5)

        pool = fetch_candidate_pool(repo, WINDOW, settings)

        assert pool.items == []
        assert pool.anomaly is not None
        assert pool.anomaly.kind is AnomalyKind.THRESHOLD
        assert pool.anomaly.total_items == 30
        assert pool.anomaly.ready_items == 30
        assert pool.ready_items == 30
        assert pool.anomaly.threshold == 0.5

    def test_quiet_window_is_not_an_anomaly(self) -> None:
        repo = FakeRepository()
        repo.backlog = 100

        pool = fetch_candidate_pool(repo, WINDOW, DigestSettings())

        assert pool.anomaly is None

    def test_pool_is_limited(self) -> None:
        repo = FakeRepository()
        repo.items = [make_item(f"i{n}", importance_score=0.9) for n in range(20)]
        settings = DigestSettings(digest_top_n=2, digest_pool_multiplier=3)

        pool = fetch_candidate_pool(repo, WINDOW, settings)

        assert len(pool.items) == 6
        assert pool.total_items == 20

    def test_count_failure_is_not_fatal(self) -> None:
        repo = FakeRepository()
        repo.items = [make_item("a", importance_score=0.9)]
        repo.fail = {"count_items_in_window"}

        pool = fetch_candidate_pool(repo, WINDOW, DigestSettings())

        assert [item.id for item in pool.items] == ["a"]
        assert pool.total_items == 0


class TestSmartSelection:
    def test_single_source_bonus_and_order(self) -> None:
        items = [
            make_item("a", importance_score=0.6, source_channel="shared"),
            make_item("b", importance_score=0.55, source_channel="shared"),
            make_item("c", importance_score=0.55, source_channel="solo"),
        ]
        settings = DigestSettings(freshness_decay_hours=0)

        ranked = apply_smart_selection(items, settings, BASE_TIME)

        assert [item.id for item in ranked] == ["c", "a", "b"]
        assert ranked[0].importance_score == pytest.approx(0.55 + SOURCE_DIVERSITY_BONUS)

    def test_relevance_breaks_ties(self) -> None:
        items = [
            make_item("a", importance_score=0.6, relevance_score=0.2, source_channel="x"),
            make_item("b", importance_score=0.6, relevance_score=0.9, source_channel="x"),
        ]

        ranked = apply_smart_selection(items, DigestSettings(freshness_decay_hours=0), BASE_TIME)

        assert [item.id for item in ranked] == ["b", "a"]

    def test_freshness_decay_applies(self) -> None:
        items = [
            make_item("old", importance_score=0.8, published_at=BASE_TIME - timedelta(hours=36), source_channel="x"),
            make_item("new", importance_score=0.6, published_at=BASE_TIME, source_channel="x"),
        ]
        settings = DigestSettings(freshness_decay_hours=36, freshness_floor=0.1)

        ranked = apply_smart_selection(items, settings, BASE_TIME)

        assert [item.id for item in ranked] == ["new", "old"]
        assert ranked[1].importance_score == pytest.approx(0.4, abs=0.01)


class TestRelevanceGate:
    def test_channel_delta_raises_bar(self) -> None:
        items = [
            make_item("a", relevance_score=0.55),
            make_item("b", relevance_score=0.55, channel_relevance_delta=0.1),
            make_item("c", relevance_score=0.4),
        ]

        kept = apply_relevance_gate(items, 0.5)

        assert [item.id for item in kept] == ["a"]


class TestTopicBalance:
    def test_relaxed_when_cap_cannot_be_met(self) -> None:
        items = [make_item(f"a{n}", topic="A") for n in range(8)] + [make_item(f"b{n}", topic="B") for n in range(2)]

        result = apply_topic_balance(items, top_n=5, cap=0.3, min_topics=3)

        assert len(result.items) == 5
        assert result.relaxed is True
        assert result.max_per_topic == 1
        assert [item.id for item in result.items] == ["a0", "a1", "a2", "a3", "b0"]

    def test_cap_spreads_topics(self) -> None:
        items = (
            [make_item(f"a{n}", topic="A") for n in range(4)]
            + [make_item(f"b{n}", topic="B") for n in range(3)]
            + [make_item(f"c{n}", topic="C") for n in range(3)]
        )

        result = apply_topic_balance(items, top_n=6, cap=0.34, min_topics=3)

        assert result.relaxed is False
        assert result.max_per_topic == 2
        assert [item.id for item in result.items] == ["a0", "a1", "b0", "b1", "c0", "c1"]

    def test_topic_keys_are_case_insensitive(self) -> None:
        items = [make_item("a", topic="Politics"), make_item("b", topic=" politics ")]

        result = apply_topic_balance(items, top_n=2, cap=0.5, min_topics=0)

        assert result.topics_available == 1

    @pytest.mark.parametrize("cap", [0.0, 1.0, 1.5])
    def test_cap_outside_unit_interval_takes_prefix(self, cap: float) -> None:
        items = [make_item(f"a{n}", topic="A") for n in range(5)]

        result = apply_topic_balance(items, top_n=3, cap=cap, min_topics=3)

        assert [item.id for item in result.items] == ["a0", "a1", "a2"]
        assert result.relaxed is False

    def test_empty_input(self) -> None:
        assert apply_topic_balance([], top_n=5, cap=0.3, min_topics=3).items == []

    def test_balance_disabled_without_topics(self) -> None:
        items = [make_item(f"a{n}", topic="A") for n in range(5)]
        settings = DigestSettings(topics_enabled=False, digest_top_n=2)

        assert [item.id for item in balance_and_limit(items, settings)] == ["a0", "a1"]
