"""
printwatch/telemetry/cleaner.py
───────────────────────────────
TelemetryCleaner: raw samples → validated, windowed aggregates.

What this is
─────────────
The second stage of the pipeline. clean() takes a closed list of raw
samples and returns one CleanTelemetryAggregate per (device, window) that
has at least one valid sample.

Algorithm
──────────
  1. Group samples by device and by fixed window. Windows are
     config.window_minutes wide and aligned to the Unix epoch, so the same
     sample always lands in the same window regardless of batch boundaries.
  2. Validate every sample. A sample is rejected when:
        toner / paper / cpu / memory  outside [0, 100]
        temperature                   outside [temperature_min_c, temperature_max_c]
        error_count / queue_depth     negative
        collection_success            False
     Each rejected sample adds exactly 1 to invalid_count.
  3. Average each gauge over the survivors that reported it; sum errors;
     take the most common status (ties → alphabetical first).
  4. Score data quality (below). A group with no survivors yields nothing.

Data-quality score (0–100, 2 decimals)
───────────────────────────────────────
    100 × ( 0.4 × retained      survivors / samples in the window
          + 0.3 × coverage      min(1, survivors / expected samples)
          + 0.2 × completeness  share of the 5 core gauges reported
          + 0.1 × recency )     1 - age / recency_horizon, clamped to [0, 1]

age is measured from the window end to `as_of`. as_of defaults to the newest
sample timestamp in the input, never the wall clock, so re-running clean()
on the same input yields identical aggregates.

Determinism
───────────
Output is sorted by (device_id, window_start). Samples inside a group are
sorted before averaging, so the floating-point sums do not depend on input
order. duration in CleanResult is the only non-deterministic field.
"""

from __future__ import annotations

import logging
import math
import time
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from printwatch.shared.config import DEFAULT_CONFIG, PipelineConfig
from printwatch.shared.models import (
    CleanResult,
    CleanTelemetryAggregate,
    DataQualityStatistics,
    RawTelemetrySample,
    as_utc,
)

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────
# Module-level so tests can import and assert against them directly.

QUALITY_WEIGHTS: Dict[str, float] = {
    "retained": 0.4,
    "coverage": 0.3,
    "completeness": 0.2,
    "recency": 0.1,
}
"""Weights of the four data-quality components. Sum to 1.0."""

CORE_GAUGES: Tuple[str, ...] = (
    "toner_pct", "paper_pct", "temperature_c", "cpu_pct", "memory_pct",
)
"""Gauges counted by the completeness component."""

PERCENT_GAUGES: Tuple[str, ...] = ("toner_pct", "paper_pct", "cpu_pct", "memory_pct")
"""Gauges that must lie in [0, 100]."""

FLOAT_GAUGES: Tuple[str, ...] = PERCENT_GAUGES + ("temperature_c", "queue_depth")
"""Gauges that must be finite. NaN slips past every range comparison."""

HIGH_QUALITY_THRESHOLD: float = 80.0
"""Aggregates scoring at or above this count as high quality."""

MEDIUM_QUALITY_THRESHOLD: float = 50.0
"""Aggregates scoring at or above this (and below high) count as medium quality."""

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_GroupKey = Tuple[str, datetime]


class TelemetryCleaner:
    """
    Stateless validator and window aggregator.

    Single-threaded over a closed input list. The same instance can be
    reused across cycles; it holds only its configuration.

    Usage:
        cleaner = TelemetryCleaner(config)
        result = cleaner.clean(raw_samples)
        store.upsert_aggregates(result.aggregates)
    """

    def __init__(self, config: PipelineConfig = DEFAULT_CONFIG) -> None:
        self._config = config

    # ── Public API ────────────────────────────────────────────────────────────

    def clean(
        self,
        raw_samples: Iterable[RawTelemetrySample],
        as_of: Optional[datetime] = None,
    ) -> CleanResult:
        """
        Validate and aggregate a batch of raw samples.

        Args:
            raw_samples: Any mix of devices and windows.
            as_of:       Reference time for the recency component. Defaults
                         to the newest sample timestamp in the batch.

        Returns:
            CleanResult. total_raw == total_clean + invalid_count.
        """
        started = time.perf_counter()
        samples = list(raw_samples)
        if not samples:
            return CleanResult(duration=timedelta(seconds=time.perf_counter() - started))

        reference = as_utc(as_of) if as_of is not None else max(
            as_utc(s.timestamp) for s in samples
        )

        groups: Dict[_GroupKey, List[RawTelemetrySample]] = defaultdict(list)
        for sample in samples:
            groups[(sample.device_id, self.window_start(sample.timestamp))].append(sample)

        aggregates: List[CleanTelemetryAggregate] = []
        total_clean = 0
        total_invalid = 0
        for key in sorted(groups):
            group = sorted(groups[key], key=_sample_order)
            survivors: List[RawTelemetrySample] = []
            invalid = 0
            for sample in group:
                reason = self.validation_error(sample)
                if reason is None:
                    survivors.append(sample)
                else:
                    invalid += 1
                    logger.debug("Dropped sample %s@%s: %s",
                                 sample.device_id, sample.timestamp.isoformat(), reason)
            total_clean += len(survivors)
            total_invalid += invalid
            if survivors:
                aggregates.append(self._aggregate(key, survivors, invalid, reference))

        result = CleanResult(
            total_raw=len(samples),
            total_clean=total_clean,
            invalid_count=total_invalid,
            duration=timedelta(seconds=time.perf_counter() - started),
            aggregates=aggregates,
        )
        logger.info(
            "Cleaned %d raw samples: %d valid, %d invalid, %d aggregates",
            result.total_raw, result.total_clean, result.invalid_count, len(aggregates),
        )
        return result

    def validation_error(self, sample: RawTelemetrySample) -> Optional[str]:
        """Why `sample` is rejected, or None if it is valid."""
        if not sample.collection_success:
            return "collection unsuccessful"
        for name in FLOAT_GAUGES:
            value = getattr(sample, name)
            if value is not None and not math.isfinite(value):
                return f"{name}={value} not finite"
        for name in PERCENT_GAUGES:
            value = getattr(sample, name)
            if value is not None and not (0.0 <= value <= 100.0):
                return f"{name}={value} outside [0, 100]"
        temp = sample.temperature_c
        if temp is not None and not (
            self._config.temperature_min_c <= temp <= self._config.temperature_max_c
        ):
            return f"temperature_c={temp} outside plausible range"
        if sample.error_count is not None and sample.error_count < 0:
            return f"error_count={sample.error_count} negative"
        if sample.queue_depth is not None and sample.queue_depth < 0:
            return f"queue_depth={sample.queue_depth} negative"
        return None

    def window_start(self, timestamp: datetime) -> datetime:
        """Start of the epoch-aligned window containing `timestamp`."""
        width = self._config.window
        offset = (as_utc(timestamp) - _EPOCH) // width
        return _EPOCH + offset * width

    def data_quality_score(
        self,
        total: int,
        survivors: Sequence[RawTelemetrySample],
        window_end: datetime,
        as_of: datetime,
    ) -> float:
        """
        0–100 quality of one window. Pure: same inputs, same score.

        Monotonic in each component: more survivors, fuller gauges or a
        fresher window never lower the score.
        """
        if total <= 0 or not survivors:
            return 0.0
        retained = len(survivors) / total
        coverage = min(1.0, len(survivors) / self._config.expected_samples_per_window)
        completeness = sum(
            sum(1 for g in CORE_GAUGES if getattr(s, g) is not None) / len(CORE_GAUGES)
            for s in survivors
        ) / len(survivors)
        age = (as_utc(as_of) - as_utc(window_end)).total_seconds()
        horizon = self._config.recency_horizon.total_seconds()
        recency = _clamp(1.0 - age / horizon, 0.0, 1.0)

        score = 100.0 * (
            QUALITY_WEIGHTS["retained"] * retained
            + QUALITY_WEIGHTS["coverage"] * coverage
            + QUALITY_WEIGHTS["completeness"] * completeness
            + QUALITY_WEIGHTS["recency"] * recency
        )
        return round(_clamp(score, 0.0, 100.0), 2)

    # ── Private helpers ───────────────────────────────────────────────────────

    def _aggregate(
        self,
        key: _GroupKey,
        survivors: List[RawTelemetrySample],
        invalid: int,
        as_of: datetime,
    ) -> CleanTelemetryAggregate:
        device_id, start = key
        end = start + self._config.window
        return CleanTelemetryAggregate(
            device_id=device_id,
            window_start=start,
            window_end=end,
            avg_toner_pct=_mean(s.toner_pct for s in survivors),
            avg_paper_pct=_mean(s.paper_pct for s in survivors),
            avg_temperature_c=_mean(s.temperature_c for s in survivors),
            avg_cpu_pct=_mean(s.cpu_pct for s in survivors),
            avg_memory_pct=_mean(s.memory_pct for s in survivors),
            avg_queue_depth=_mean(s.queue_depth for s in survivors),
            avg_pages_printed=_mean(s.pages_printed for s in survivors),
            total_errors=sum(s.error_count or 0 for s in survivors),
            sample_count=len(survivors),
            invalid_count=invalid,
            data_quality_score=self.data_quality_score(
                len(survivors) + invalid, survivors, end, as_of
            ),
            dominant_status=_dominant_status(survivors),
        )

    def __repr__(self) -> str:
        return f"TelemetryCleaner(window={self._config.window_minutes}min)"


# ── Statistics ────────────────────────────────────────────────────────────────

def data_quality_statistics(
    aggregates: Sequence[CleanTelemetryAggregate],
) -> DataQualityStatistics:
    """Average quality and high / medium / low counts over `aggregates`."""
    if not aggregates:
        return DataQualityStatistics()
    scores = [a.data_quality_score for a in aggregates]
    return DataQualityStatistics(
        total_aggregates=len(scores),
        average_quality=round(sum(scores) / len(scores), 2),
        high_quality=sum(1 for s in scores if s >= HIGH_QUALITY_THRESHOLD),
        medium_quality=sum(
            1 for s in scores if MEDIUM_QUALITY_THRESHOLD <= s < HIGH_QUALITY_THRESHOLD
        ),
        low_quality=sum(1 for s in scores if s < MEDIUM_QUALITY_THRESHOLD),
    )


# ── Utility ───────────────────────────────────────────────────────────────────

def _sample_order(sample: RawTelemetrySample) -> Tuple[datetime, str]:
    return (as_utc(sample.timestamp), sample.model_dump_json())


def _mean(values: Iterable[Optional[float]]) -> Optional[float]:
    present = [float(v) for v in values if v is not None]
    if not present:
        return None
    return math.fsum(present) / len(present)


def _dominant_status(samples: Sequence[RawTelemetrySample]) -> str:
    counts = Counter(s.status for s in samples)
    return min(counts, key=lambda status: (-counts[status], status))


def _clamp(value: float, lo: float, hi: float) -> float:
    """Clamp value to [lo, hi]. Equivalent to max(lo, min(hi, value))."""
    return max(lo, min(hi, value))
