"""Tests for channeldigest.services.clustering."""

import math
from datetime import timedelta

import pytest
from fakes import BASE_TIME, FakeLLM, FakeRepository, make_item

from channeldigest.errors import RepositoryError
from channeldigest.models.domain import Evidence, Window
from channeldigest.services.clustering import (
    ClusteringConfig,
    TopicClusterer,
    build_topic_groups,
    cluster_coherence,
    evidence_boost,
    normalize_cluster_topic,
    normalize_evidence_url,
    topics_similar,
)

WINDOW = Window(start=BASE_TIME - timedelta(hours=1), end=BASE_TIME + timedelta(hours=1))


def _clusterer(repo: FakeRepository | None = None, llm: FakeLLM | None = None, **overrides) -> TopicClusterer:
    return TopicClusterer(repo or FakeRepository(), ClusteringConfig(**overrides), llm=llm)


def _ids(drafts) -> list[list[str]]:
    return [[item.id for item in draft.items] for draft in drafts]


class TestTopicNormalization:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("", "General"), ("  ", "General"), ("украина", "Ukraine"), ("Кипр", "Cyprus"), ("world news", "World News")],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_cluster_topic(raw) == expected

    def test_similar_topics(self) -> None:
        assert topics_similar("Middle East", "Middle East")
        assert not topics_similar("Middle East", "Middle East Conflict")
        assert topics_similar("Elections: Results", "elections results")

    def test_groups_follow_first_appearance(self) -> None:
        items = [make_item("1", topic="Sport"), make_item("2", topic="Politics"), make_item("3", topic="sport")]

        index, groups = build_topic_groups(items)

        assert list(groups) == ["Sport", "Politics"]
        assert index["3"] == "Sport"
        assert [item.id for item in groups["Sport"]] == ["1", "3"]


class TestEvidenceBoost:
    def test_www_prefix_is_ignored(self) -> None:
        assert normalize_evidence_url("https://www.example.com/a") == "https://example.com/a"
        assert normalize_evidence_url("https://example.com/a") == "https://example.com/a"

    def test_shared_url_boost(self) -> None:
        a = [Evidence(url="https://www.example.com/a", agreement_score=0.8)]
        b = [Evidence(url="https://example.com/a", agreement_score=0.6)]

        assert evidence_boost(a, b, 0.15, 0.5) == pytest.approx(0.09)

    def test_contradiction_and_low_agreement_are_ignored(self) -> None:
        a = [Evidence(url="https://example.com/a", agreement_score=0.9, is_contradiction=True)]
        b = [Evidence(url="https://example.com/a", agreement_score=0.9)]
        c = [Evidence(url="https://example.com/a", agreement_score=0.3)]

        assert evidence_boost(a, b, 0.15, 0.5) == 0.0
        assert evidence_boost(b, c, 0.15, 0.5) == 0.0


class TestClusterCoherence:
    def test_identical_embeddings(self) -> None:
        items = [make_item(str(n), embedding=[1.0, 2.0, 3.0]) for n in range(3)]

        assert cluster_coherence(items) == pytest.approx(1.0)

    def test_orthogonal_embeddings(self) -> None:
        items = [
            make_item("1", embedding=[1.0, 0.0, 0.0]),
            make_item("2", embedding=[0.0, 1.0, 0.0]),
            make_item("3", embedding=[0.0, 0.0, 1.0]),
        ]

        assert cluster_coherence(items) == pytest.approx(0.0)

    def test_single_item_is_coherent(self) -> None:
        assert cluster_coherence([make_item("1")]) == 1.0


class TestTopicClusterer:
    def test_incoherent_cluster_keeps_only_anchor(self) -> None:
        diagonal = [1 / math.sqrt(3)] * 3
        items = [
            make_item("anchor", embedding=diagonal, importance_score=0.9),
            make_item("x", embedding=[1.0, 0.0, 0.0]),
            make_item("y", embedding=[0.0, 1.0, 0.0]),
            make_item("z", embedding=[0.0, 0.0, 1.0]),
        ]

        drafts = _clusterer(similarity_threshold=0.5, coherence_threshold=0.9).build(items)

        assert _ids(drafts) == [["anchor"], ["x"], ["y"], ["z"]]

    def test_identical_embeddings_pass_full_coherence(self) -> None:
        items = [make_item(str(n), embedding=[1.0, 2.0, 3.0], importance_score=0.5 + n / 10) for n in range(3)]

        drafts = _clusterer(coherence_threshold=1.0).build(items)

        assert _ids(drafts) == [["2", "1", "0"]]

    def test_cross_topic_disabled(self) -> None:
        items = [
            make_item("a", topic="Sport", embedding=[1.0, 0.0]),
            make_item("b", topic="Politics", embedding=[1.0, 0.0]),
        ]

        assert _ids(_clusterer().build(items)) == [["a"], ["b"]]

    def test_cross_topic_enabled(self) -> None:
        items = [
            make_item("a", topic="Sport", embedding=[1.0, 0.0], importance_score=0.8),
            make_item("b", topic="Politics", embedding=[1.0, 0.0]),
        ]

        drafts = _clusterer(cross_topic_enabled=True, cross_topic_threshold=0.9).build(items)

        assert _ids(drafts) == [["a", "b"]]
        assert drafts[0].topic == "Sport"

    def test_evidence_boost_joins_borderline_pair(self) -> None:
        items = [
            make_item("a", embedding=[1.0, 0.0]),
            make_item("b", embedding=[0.7, math.sqrt(1 - 0.49)]),
        ]
        evidence = {
            "a": [Evidence(url="https://www.example.com/story", agreement_score=0.8)],
            "b": [Evidence(url="https://example.com/story", agreement_score=0.8)],
        }

        assert _ids(_clusterer().build(items)) == [["a"], ["b"]]
        assert _ids(_clusterer().build(items, evidence)) == [["a", "b"]]
        assert _ids(_clusterer(evidence_enabled=False).build(items, evidence)) == [["a"], ["b"]]

    def test_time_window_separates_items(self) -> None:
        items = [
            make_item("a", embedding=[1.0, 0.0], published_at=BASE_TIME),
            make_item("b", embedding=[1.0, 0.0], published_at=BASE_TIME - timedelta(hours=48)),
        ]

        assert _ids(_clusterer().build(items)) == [["a"], ["b"]]
        assert _ids(_clusterer(cluster_window=timedelta(0)).build(items)) == [["a", "b"]]

    def test_items_without_embedding_are_singletons(self) -> None:
        items = [make_item("a"), make_item("b", embedding=[1.0]), make_item("c", embedding=[1.0])]

        assert _ids(_clusterer().build(items)) == [["a"], ["b", "c"]]

    def test_every_item_lands_in_one_cluster(self) -> None:
        items = [
            make_item(str(n), topic=["A", "B", "C"][n % 3], embedding=[float(n % 2), float(n % 5), 1.0])
            for n in range(12)
        ]

        drafts = _clusterer(cross_topic_enabled=True, similarity_threshold=0.6).build(items)
        ids = [item_id for cluster in _ids(drafts) for item_id in cluster]

        assert sorted(ids) == sorted(item.id for item in items)

    def test_max_items_limit(self) -> None:
        items = [make_item(str(n)) for n in range(5)]

        assert len(_clusterer(max_items=3).build(items)) == 3

    def test_cluster_window_persists_and_names_clusters(self) -> None:
        repo = FakeRepository()
        repo.items = [
            make_item("a", embedding=[1.0, 0.0], importance_score=0.9),
            make_item("b", embedding=[1.0, 0.0]),
            make_item("c", topic="Sport"),
        ]
        repo.clusters[(WINDOW.start, WINDOW.end)] = []
        clusterer = _clusterer(repo, FakeLLM(topic="Elections"))

        clusters = clusterer.cluster_window(repo.items, WINDOW)

        assert [cluster.topic for cluster in clusters] == ["Elections", "Sport"]
        stored = repo.get_clusters_for_window(WINDOW.start, WINDOW.end)
        assert [[item.id for item in cluster.items] for cluster in stored] == [["a", "b"], ["c"]]

    def test_topic_generation_failure_keeps_group_topic(self) -> None:
        repo = FakeRepository()
        repo.items = [make_item("a", embedding=[1.0]), make_item("b", embedding=[1.0])]

        clusters = _clusterer(repo, FakeLLM(fail=True)).cluster_window(repo.items, WINDOW)

        assert [cluster.topic for cluster in clusters] == ["Politics"]

    def test_stale_cluster_cleanup_failure_aborts(self) -> None:
        repo = FakeRepository()
        repo.items = [make_item("a", embedding=[1.0])]
        repo.clusters[(WINDOW.start, WINDOW.end)] = []
        repo.fail = {"delete_clusters_for_window"}

        with pytest.raises(RepositoryError):
            _clusterer(repo).cluster_window(repo.items, WINDOW)

        assert "create_cluster" not in repo.calls
