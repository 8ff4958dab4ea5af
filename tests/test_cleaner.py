"""
tests/test_cleaner.py
─────────────────────
Test suite for printwatch/telemetry/cleaner.py

What we are testing
────────────────────
TelemetryCleaner turns raw samples into windowed aggregates. The properties
that matter downstream:
  1. Out-of-domain samples never reach an aggregate, and each one is counted
     exactly once in invalid_count.
  2. Output is deterministic: same input (in any order) → identical aggregates.
  3. data_quality_score stays in [0, 100] and never drops when the window
     gets better (more survivors, fresher).

Test groups
────────────
Group 1: Validation        — rejection rules and exact invalid counts
Group 2: Windowing         — epoch alignment, grouping, empty groups
Group 3: Aggregation       — averages, error sums, dominant status
Group 4: Data Quality      — exact scores, bounds, monotonicity
Group 5: Idempotence       — repeated and shuffled runs
Group 6: Quality Stats     — data_quality_statistics distribution
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from printwatch.shared.config import PipelineConfig
from printwatch.shared.models import CleanTelemetryAggregate, RawTelemetrySample
from printwatch.telemetry.cleaner import (
    HIGH_QUALITY_THRESHOLD,
    TelemetryCleaner,
    data_quality_statistics,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
"""Window-aligned reference time (09:00 is a multiple of 5 minutes)."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_sample(
    device_id: str = "prn-01",
    offset_s: float = 0.0,
    **overrides: object,
) -> RawTelemetrySample:
    """A fully valid sample at T0 + offset_s, with every core gauge reported."""
    values = dict(
        device_id=device_id,
        timestamp=T0 + timedelta(seconds=offset_s),
        status="online",
        toner_pct=50.0,
        paper_pct=60.0,
        temperature_c=40.0,
        cpu_pct=20.0,
        memory_pct=30.0,
        queue_depth=1.0,
        error_count=0,
        collection_method="simulated",
    )
    values.update(overrides)
    return RawTelemetrySample(**values)


def _full_window(device_id: str = "prn-01", window: int = 0, **overrides: object) -> List[RawTelemetrySample]:
    """Five valid samples, 60s apart, filling 5-minute window number `window`."""
    return [
        _make_sample(device_id, window * 300 + i * 60, **overrides) for i in range(5)
    ]


def _make_cleaner(**config: object) -> TelemetryCleaner:
    return TelemetryCleaner(PipelineConfig(**config))


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Validation
# ─────────────────────────────────────────────────────────────────────────────

class TestValidation:
    """Each out-of-domain sample is excluded and counted exactly once."""

    @pytest.mark.parametrize("field,value", [
        ("toner_pct", -1.0),
        ("toner_pct", 100.5),
        ("paper_pct", 150.0),
        ("cpu_pct", -0.1),
        ("memory_pct", 101.0),
        ("temperature_c", -10.5),
        ("temperature_c", 100.1),
        ("error_count", -1),
        ("queue_depth", -2.0),
        ("queue_depth", float("nan")),
        ("temperature_c", float("nan")),
        ("cpu_pct", float("inf")),
        ("collection_success", False),
    ])
    def test_single_invalid_field_rejects_sample(self, field: str, value: object) -> None:
        """One bad field → invalid_count == 1, the sample never reaches an average."""
        samples = _full_window()
        samples[2] = _make_sample(offset_s=120, **{field: value})

        result = _make_cleaner().clean(samples)

        assert result.invalid_count == 1
        assert result.total_clean == 4
        assert result.aggregates[0].sample_count == 4
        assert result.aggregates[0].invalid_count == 1

    def test_nan_queue_depth_reason(self) -> None:
        sample = _make_sample(offset_s=0, queue_depth=float("nan"))
        assert _make_cleaner().validation_error(sample) == "queue_depth=nan not finite"

    def test_boundary_values_are_valid(self) -> None:
        """0 and 100 for percentages, -10 and 100 for temperature are accepted."""
        samples = [
            _make_sample(offset_s=0, toner_pct=0.0, paper_pct=100.0, temperature_c=-10.0),
            _make_sample(offset_s=60, cpu_pct=100.0, memory_pct=0.0, temperature_c=100.0),
        ]
        result = _make_cleaner().clean(samples)
        assert result.invalid_count == 0
        assert result.total_clean == 2

    def test_invalid_count_is_exact_over_mixed_batch(self) -> None:
        """7 bad samples scattered over 3 devices → invalid_count == 7."""
        samples: List[RawTelemetrySample] = []
        for device in ("prn-01", "prn-02", "prn-03"):
            samples.extend(_full_window(device))
        bad = [
            _make_sample("prn-01", 10, toner_pct=-5.0),
            _make_sample("prn-01", 20, temperature_c=250.0),
            _make_sample("prn-02", 30, error_count=-3),
            _make_sample("prn-02", 40, collection_success=False),
            _make_sample("prn-03", 50, memory_pct=400.0),
            _make_sample("prn-03", 70, paper_pct=-0.01),
            _make_sample("prn-03", 80, queue_depth=-1.0),
        ]
        result = _make_cleaner().clean(samples + bad)

        assert result.invalid_count == 7
        assert result.total_raw == len(samples) + 7
        assert result.total_raw == result.total_clean + result.invalid_count
        assert sum(a.invalid_count for a in result.aggregates) == 7

    def test_custom_temperature_range_is_honoured(self) -> None:
        """A tighter configured range rejects readings the default would accept."""
        samples = [_make_sample(offset_s=0, temperature_c=70.0)]
        assert _make_cleaner().clean(samples).invalid_count == 0
        tight = _make_cleaner(temperature_min_c=0.0, temperature_max_c=60.0)
        assert tight.clean(samples).invalid_count == 1

    def test_rejected_values_do_not_leak_into_averages(self) -> None:
        """An out-of-range toner reading never shifts the toner average."""
        samples = _full_window(toner_pct=40.0)
        samples.append(_make_sample(offset_s=30, toner_pct=1000.0))
        agg = _make_cleaner().clean(samples).aggregates[0]
        assert agg.avg_toner_pct == pytest.approx(40.0)


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Windowing
# ─────────────────────────────────────────────────────────────────────────────

class TestWindowing:
    """Samples are grouped by device and epoch-aligned fixed windows."""

    def test_window_start_is_epoch_aligned(self) -> None:
        cleaner = _make_cleaner()
        assert cleaner.window_start(T0 + timedelta(minutes=7, seconds=13)) == T0 + timedelta(minutes=5)
        assert cleaner.window_start(T0) == T0

    def test_one_aggregate_per_device_and_window(self) -> None:
        samples = _full_window("prn-01", 0) + _full_window("prn-01", 1) + _full_window("prn-02", 0)
        result = _make_cleaner().clean(samples)

        keys = [(a.device_id, a.window_start) for a in result.aggregates]
        assert keys == [
            ("prn-01", T0),
            ("prn-01", T0 + timedelta(minutes=5)),
            ("prn-02", T0),
        ]
        for agg in result.aggregates:
            assert agg.window_end - agg.window_start == timedelta(minutes=5)

    def test_group_with_no_survivors_yields_no_aggregate(self) -> None:
        samples = _full_window("prn-01") + [
            _make_sample("prn-02", 0, toner_pct=-1.0),
            _make_sample("prn-02", 60, cpu_pct=900.0),
        ]
        result = _make_cleaner().clean(samples)

        assert [a.device_id for a in result.aggregates] == ["prn-01"]
        assert result.invalid_count == 2

    def test_empty_input(self) -> None:
        result = _make_cleaner().clean([])
        assert result.total_raw == 0
        assert result.aggregates == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Aggregation
# ─────────────────────────────────────────────────────────────────────────────

class TestAggregation:

    def test_averages_and_error_sum(self) -> None:
        samples = [
            _make_sample(offset_s=0, toner_pct=10.0, error_count=1),
            _make_sample(offset_s=60, toner_pct=20.0, error_count=2),
            _make_sample(offset_s=120, toner_pct=30.0, error_count=0),
        ]
        agg = _make_cleaner().clean(samples).aggregates[0]

        assert agg.avg_toner_pct == pytest.approx(20.0)
        assert agg.total_errors == 3
        assert agg.sample_count == 3

    def test_gauge_missing_everywhere_is_none(self) -> None:
        samples = [_make_sample(offset_s=i * 60, paper_pct=None) for i in range(3)]
        agg = _make_cleaner().clean(samples).aggregates[0]
        assert agg.avg_paper_pct is None
        assert agg.avg_toner_pct == pytest.approx(50.0)

    def test_gauge_average_uses_only_reporting_samples(self) -> None:
        samples = [
            _make_sample(offset_s=0, temperature_c=30.0),
            _make_sample(offset_s=60, temperature_c=None),
            _make_sample(offset_s=120, temperature_c=50.0),
        ]
        agg = _make_cleaner().clean(samples).aggregates[0]
        assert agg.avg_temperature_c == pytest.approx(40.0)

    def test_dominant_status_is_most_common(self) -> None:
        samples = [
            _make_sample(offset_s=0, status="offline"),
            _make_sample(offset_s=60, status="offline"),
            _make_sample(offset_s=120, status="online"),
        ]
        assert _make_cleaner().clean(samples).aggregates[0].dominant_status == "offline"

    def test_dominant_status_tie_breaks_alphabetically(self) -> None:
        samples = [
            _make_sample(offset_s=0, status="online"),
            _make_sample(offset_s=60, status="error"),
        ]
        assert _make_cleaner().clean(samples).aggregates[0].dominant_status == "error"


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Data Quality
# ─────────────────────────────────────────────────────────────────────────────

class TestDataQuality:

    def test_full_fresh_window_scores_100(self) -> None:
        agg = _make_cleaner().clean(_full_window()).aggregates[0]
        assert agg.data_quality_score == pytest.approx(100.0)

    def test_one_invalid_of_five_scores_86(self) -> None:
        """
        retained 4/5 → 0.32, coverage 4/5 → 0.24, completeness 1 → 0.2,
        recency 1 → 0.1  ⇒ 86.0
        """
        samples = _full_window()
        samples[0] = _make_sample(offset_s=0, toner_pct=-3.0)
        agg = _make_cleaner().clean(samples).aggregates[0]
        assert agg.data_quality_score == pytest.approx(86.0)

    def test_recency_uses_as_of(self) -> None:
        """A window a full recency horizon old loses the 10-point recency share."""
        as_of = T0 + timedelta(minutes=5) + timedelta(hours=24)
        agg = _make_cleaner().clean(_full_window(), as_of=as_of).aggregates[0]
        assert agg.data_quality_score == pytest.approx(90.0)

    def test_score_is_bounded_over_random_windows(self) -> None:
        """Property: 200 random windows, every score in [0, 100]."""
        rng = random.Random(11)
        cleaner = _make_cleaner()
        for _ in range(200):
            n = rng.randint(1, 8)
            samples = [
                _make_sample(
                    offset_s=rng.uniform(0, 299),
                    toner_pct=rng.choice([None, rng.uniform(-20, 120)]),
                    temperature_c=rng.choice([None, rng.uniform(-30, 130)]),
                    cpu_pct=rng.uniform(-5, 105),
                )
                for _ in range(n)
            ]
            as_of = T0 + timedelta(hours=rng.uniform(0, 48))
            for agg in cleaner.clean(samples, as_of=as_of).aggregates:
                assert 0.0 <= agg.data_quality_score <= 100.0

    def test_more_survivors_never_lower_the_score(self) -> None:
        cleaner = _make_cleaner()
        as_of = T0 + timedelta(hours=1)
        previous = -1.0
        for n in range(1, 8):
            samples = [_make_sample(offset_s=i * 40) for i in range(n)]
            score = cleaner.clean(samples, as_of=as_of).aggregates[0].data_quality_score
            assert score >= previous
            previous = score

    def test_fresher_window_never_scores_lower(self) -> None:
        cleaner = _make_cleaner()
        samples = _full_window()
        scores = [
            cleaner.clean(samples, as_of=T0 + timedelta(hours=h)).aggregates[0].data_quality_score
            for h in (30, 12, 6, 1, 0)
        ]
        assert scores == sorted(scores)


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Idempotence
# ─────────────────────────────────────────────────────────────────────────────

class TestIdempotence:

    def _batch(self) -> List[RawTelemetrySample]:
        rng = random.Random(3)
        samples: List[RawTelemetrySample] = []
        for device in ("prn-01", "prn-02"):
            for i in range(20):
                samples.append(_make_sample(
                    device, i * 45,
                    toner_pct=rng.uniform(-5, 100),
                    temperature_c=rng.uniform(20, 60),
                    status=rng.choice(["online", "busy", "offline"]),
                    error_count=rng.randint(0, 3),
                ))
        return samples

    @staticmethod
    def _dump(aggregates: List[CleanTelemetryAggregate]) -> List[str]:
        return [a.model_dump_json() for a in aggregates]

    def test_rerun_yields_identical_aggregates(self) -> None:
        cleaner = _make_cleaner()
        samples = self._batch()
        first = cleaner.clean(samples)
        second = cleaner.clean(samples)
        assert self._dump(first.aggregates) == self._dump(second.aggregates)
        assert first.invalid_count == second.invalid_count

    def test_input_order_does_not_matter(self) -> None:
        cleaner = _make_cleaner()
        samples = self._batch()
        shuffled = list(samples)
        random.Random(99).shuffle(shuffled)
        assert self._dump(cleaner.clean(samples).aggregates) == self._dump(
            cleaner.clean(shuffled).aggregates
        )


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: Quality Stats
# ─────────────────────────────────────────────────────────────────────────────

class TestDataQualityStatistics:

    def test_distribution(self) -> None:
        result = _make_cleaner().clean(_full_window("prn-01") + _full_window("prn-02"))
        low = result.aggregates[0].model_copy(update={"data_quality_score": 20.0})
        medium = result.aggregates[1].model_copy(update={"data_quality_score": 60.0})

        stats = data_quality_statistics(result.aggregates + [low, medium])

        assert stats.total_aggregates == 4
        assert stats.high_quality == 2
        assert stats.medium_quality == 1
        assert stats.low_quality == 1
        assert stats.average_quality == pytest.approx((100 + 100 + 20 + 60) / 4)
        assert HIGH_QUALITY_THRESHOLD == 80.0

    def test_empty(self) -> None:
        stats = data_quality_statistics([])
        assert stats.total_aggregates == 0
        assert stats.average_quality == 0.0
