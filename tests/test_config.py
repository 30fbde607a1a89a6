"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from property_dedup.config import Settings
from property_dedup.models import DedupConfig


class TestDefaults:
    def test_defaults(self) -> None:
        s = Settings()
        assert s.database_path == "data/dedup.db"
        assert s.dedup_enabled is True
        assert s.distance_threshold_meters == 100.0
        assert s.auto_match_threshold == 0.90
        assert s.review_threshold == 0.60
        assert s.task_max_attempts == 3


class TestEnvironment:
    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROPERTY_DEDUP_AUTO_MATCH_THRESHOLD", "0.95")
        monkeypatch.setenv("PROPERTY_DEDUP_DEDUP_ENABLED", "false")
        s = Settings()
        assert s.auto_match_threshold == 0.95
        assert s.dedup_enabled is False

    def test_unprefixed_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AUTO_MATCH_THRESHOLD", "0.5")
        assert Settings().auto_match_threshold == 0.90


class TestThresholdValidation:
    def test_review_above_auto_rejected(self) -> None:
        with pytest.raises(ValidationError, match="review_threshold"):
            Settings(auto_match_threshold=0.5, review_threshold=0.6)

    def test_equal_thresholds_allowed(self) -> None:
        s = Settings(auto_match_threshold=0.7, review_threshold=0.7)
        assert s.review_threshold == s.auto_match_threshold

    @pytest.mark.parametrize("value", [-0.1, 1.1])
    def test_out_of_range(self, value: float) -> None:
        with pytest.raises(ValidationError):
            Settings(auto_match_threshold=value)

    def test_radius_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            Settings(distance_threshold_meters=0)


class TestGetDedupConfig:
    def test_builds_frozen_config(self) -> None:
        s = Settings(distance_threshold_meters=250, max_nearby=5, review_threshold=0.5)
        config = s.get_dedup_config()
        assert config == DedupConfig(
            distance_threshold_meters=250,
            max_nearby=5,
            auto_match_threshold=0.90,
            review_threshold=0.5,
        )
        with pytest.raises(ValidationError):
            config.max_nearby = 20  # type: ignore[misc]
