"""Tests for feature extraction, normalization and splitting."""

import math
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest
from pydantic import ValidationError

from trading_ml.features import (
    FeatureEngineer,
    FeatureVector,
    NormalizationStats,
    apply_normalization,
    normalize_features,
    split_train_test,
)

from conftest import make_bars


def vec(features, target=None, i=0):
    return FeatureVector(
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(hours=i),
        symbol="TEST",
        features=features,
        target=target,
    )


class TestExtractFeatures:
    """Labeled vector extraction."""

    def test_too_few_bars_returns_empty(self):
        assert FeatureEngineer().extract_features(make_bars(99)) == []

    def test_vector_count(self, bars):
        vectors = FeatureEngineer().extract_features(bars, target_lookforward=5)
        assert len(vectors) == len(bars) - 50 - 5

    def test_first_vector_aligned_to_lookback(self, bars):
        vectors = FeatureEngineer().extract_features(bars)
        assert vectors[0].timestamp == bars[50].timestamp
        assert vectors[-1].timestamp == bars[len(bars) - 6].timestamp

    def test_targets_look_ahead(self, bars):
        h = 5
        vectors = FeatureEngineer().extract_features(bars, target_lookforward=h)
        for offset, v in enumerate(vectors):
            i = 50 + offset
            expected = 1 if bars[i + h].close > bars[i].close else 0
            assert v.target == expected

    def test_feature_names_known(self, bars):
        engineer = FeatureEngineer()
        names = set(engineer.feature_names())
        for v in engineer.extract_features(bars):
            assert set(v.features) <= names

    def test_full_schema_on_regular_bars(self, bars):
        engineer = FeatureEngineer()
        v = engineer.extract_features(bars)[0]
        assert set(v.features) == set(engineer.feature_names())

    def test_values_finite_and_scaled(self, bars):
        for v in FeatureEngineer().extract_features(bars):
            assert all(math.isfinite(x) for x in v.features.values())
            assert 0.0 <= v.features["rsi"] <= 1.0
            assert v.features["is_green"] in (0.0, 1.0)
            assert 0.0 <= v.features["green_streak_3"] <= 1.0

    def test_return_feature(self, bars):
        v = FeatureEngineer().extract_features(bars)[0]
        expected = (bars[50].close - bars[49].close) / bars[49].close
        assert v.features["return_1"] == pytest.approx(expected)

    def test_sunday_midnight_encoding(self):
        # Daily bars from a Sunday: index 56 falls on a Sunday at 00:00
        daily = make_bars(120, step=timedelta(days=1))
        vectors = FeatureEngineer().extract_features(daily)
        sunday = vectors[56 - 50]
        assert sunday.timestamp.isoweekday() == 7
        assert sunday.features["dow_sin"] == pytest.approx(0.0, abs=1e-12)
        assert sunday.features["dow_cos"] == pytest.approx(1.0)
        assert sunday.features["hour_sin"] == pytest.approx(0.0, abs=1e-12)
        assert sunday.features["hour_cos"] == pytest.approx(1.0)

    def test_time_encoding_uses_utc(self):
        eastern = timezone(timedelta(hours=-5))
        local = make_bars(120, start=datetime(2024, 1, 6, 19, tzinfo=eastern))
        utc = make_bars(120)
        engineer = FeatureEngineer()
        for a, b in zip(engineer.extract_features(local), engineer.extract_features(utc)):
            assert a.features == b.features

    def test_flat_candles_skip_geometry(self):
        bars = make_bars(120)
        flat = [
            b.__class__(b.timestamp, b.symbol, b.close, b.close, b.close, b.close, b.volume)
            for b in bars
        ]
        v = FeatureEngineer().extract_features(flat)[0]
        assert "body_ratio" not in v.features
        assert "upper_shadow" not in v.features
        assert v.features["is_green"] == 0.0


class TestNormalization:
    """Z-scoring with frozen stats."""

    def test_zero_mean_unit_std(self, bars):
        vectors = FeatureEngineer().extract_features(bars)
        normalized, stats = normalize_features(vectors)
        values = np.array([v.features["rsi"] for v in normalized])
        assert values.mean() == pytest.approx(0.0, abs=1e-9)
        assert values.std() == pytest.approx(1.0, rel=1e-6)
        assert stats["rsi"].std > 0

    def test_stats_are_frozen(self):
        stats = NormalizationStats(mean=1.0, std=2.0)
        with pytest.raises(ValidationError):
            stats.mean = 5.0

    def test_constant_feature_uses_unit_std(self):
        vectors = [vec({"c": 3.0, "x": float(i)}, i=i) for i in range(5)]
        normalized, stats = normalize_features(vectors)
        assert stats["c"] == NormalizationStats(mean=3.0, std=1.0)
        assert all(v.features["c"] == 0.0 for v in normalized)

    def test_union_of_names(self):
        vectors = [vec({"a": 1.0}), vec({"a": 3.0, "b": 5.0}, i=1)]
        normalized, stats = normalize_features(vectors)
        assert set(stats) == {"a", "b"}
        assert normalized[0].features["b"] == 0.0
        assert set(normalized[0].features) == set(normalized[1].features)

    def test_labels_preserved(self):
        vectors = [vec({"a": float(i)}, target=i % 2, i=i) for i in range(4)]
        normalized, _ = normalize_features(vectors)
        assert [v.target for v in normalized] == [0, 1, 0, 1]

    def test_empty(self):
        assert normalize_features([]) == ([], {})

    def test_apply_unknown_and_bad_values(self):
        stats = {"a": NormalizationStats(mean=1.0, std=2.0), "b": NormalizationStats(mean=0.0, std=1.0)}
        result = apply_normalization({"a": 5.0, "b": float("nan"), "z": 9.0}, stats)
        assert result == {"a": 2.0, "b": 0.0}

    def test_apply_with_names_fills_missing(self):
        stats = {"a": NormalizationStats(mean=0.0, std=1.0)}
        assert apply_normalization({}, stats, ["a", "b"]) == {"a": 0.0, "b": 0.0}


class TestSplit:

    def test_prefix_split(self):
        vectors = [vec({"a": float(i)}, i=i) for i in range(10)]
        train, test = split_train_test(vectors, 0.8)
        assert len(train) == 8 and len(test) == 2
        assert train[-1].features["a"] == 7.0
        assert test[0].features["a"] == 8.0

    def test_floor(self):
        vectors = [vec({"a": float(i)}, i=i) for i in range(7)]
        train, test = split_train_test(vectors, 0.8)
        assert len(train) == 5 and len(test) == 2
