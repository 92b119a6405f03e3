"""Tests for configuration and dynamic settings."""

from datetime import timedelta

import pytest
from fakes import FakeRepository

from channeldigest.config import AppConfig, parse_duration
from channeldigest.services.settings import DigestSettings, read_setting


class TestParseDuration:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("10m", timedelta(minutes=10)),
            ("24h", timedelta(hours=24)),
            ("1h30m", timedelta(hours=1, minutes=30)),
            ("500ms", timedelta(milliseconds=500)),
            ("1.5h", timedelta(minutes=90)),
            ("0s", timedelta(0)),
        ],
    )
    def test_valid(self, value: str, expected: timedelta) -> None:
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "10", "m10", "10x", "1h 30m"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_duration(value)


class TestAppConfig:
    def test_log_level_is_upper_cased(self) -> None:
        assert AppConfig(_env_file=None, log_level="debug").log_level == "DEBUG"


class TestReadSetting:
    def test_missing_key_uses_default(self) -> None:
        assert read_setting(FakeRepository(), "digest_top_n", 20) == 20

    def test_value_is_coerced(self) -> None:
        repo = FakeRepository()
        repo.settings["digest_top_n"] = "15"

        assert read_setting(repo, "digest_top_n", 20) == 15

    def test_unreadable_value_uses_default(self) -> None:
        repo = FakeRepository()
        repo.settings["digest_top_n"] = "lots"

        assert read_setting(repo, "digest_top_n", 20) == 20

    def test_repository_failure_uses_default(self) -> None:
        repo = FakeRepository()
        repo.fail = {"get_setting"}

        assert read_setting(repo, "importance_threshold", 0.3) == 0.3


class TestDigestSettings:
    def test_stored_values_override_config(self) -> None:
        repo = FakeRepository()
        repo.settings = {"digest_top_n": 7, "target_chat_id": 555, "digest_language": " RU "}

        settings = DigestSettings.load(repo, AppConfig(_env_file=None))

        assert settings.digest_top_n == 7
        assert settings.target_chat_id == 555
        assert settings.digest_language == "ru"
        assert settings.pool_limit == 21

    def test_zero_thresholds_are_normalized(self) -> None:
        repo = FakeRepository()
        repo.settings = {
            "cluster_similarity_threshold": 0,
            "cross_topic_similarity_threshold": 0,
            "cluster_coherence_threshold": 0,
        }

        settings = DigestSettings.load(repo, AppConfig(_env_file=None, cluster_similarity_threshold=0.8))

        assert settings.cluster_similarity_threshold == 0.8
        assert settings.cross_topic_similarity_threshold == 0.8
        assert settings.cluster_coherence_threshold == 0.7
