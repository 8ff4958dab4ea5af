"""
risk_core/features.py
─────────────────────
Feature extraction: clean aggregates → one fixed-length vector per failure type.

What this is
─────────────
The scorer in parameters.py is a logistic model over a handful of features.
This module turns the latest few CleanTelemetryAggregates for a device into
those features. Every feature is scaled to [0, 1] so the hand-set default
weights read naturally and the trainer's warm start is well-conditioned.

Features per failure type
──────────────────────────
  toner-depletion / paper-depletion
      deficit   (100 - latest level) / 100
      decline   downward trend of the level across windows, in units of
                TREND_SCALE_PCT per window, clipped to [0, 1]

  network-failure
      offline   share of windows whose dominant status is in OFFLINE_STATUSES
      shortfall 1 - min(1, mean sample_count / expected samples per window)

  hardware-failure
      heat      mean excess temperature over HOT_TEMPERATURE_C, / 40, clipped
      errors    errors per sample / ERRORS_PER_SAMPLE_SCALE, clipped
      pressure  excess of max(cpu, memory) over PRESSURE_THRESHOLD_PCT, / 15

A type with no input data returns None and the predictor omits it: a device
that never reports paper level gets no paper prediction rather than a
prediction of 0.

Integration
───────────
  Called by: printwatch/control_plane/predictor.py
  Output fed to: risk_core/parameters.score(), risk_core/trainer.py
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from printwatch.shared.models import CleanTelemetryAggregate, FailureType

# ── Constants ─────────────────────────────────────────────────────────────────

FEATURE_NAMES: Dict[FailureType, Tuple[str, ...]] = {
    FailureType.TONER_DEPLETION: ("deficit", "decline"),
    FailureType.PAPER_DEPLETION: ("deficit", "decline"),
    FailureType.NETWORK_FAILURE: ("offline", "shortfall"),
    FailureType.HARDWARE_FAILURE: ("heat", "errors", "pressure"),
}
"""Feature order per failure type. Weights in ModelParameters follow this order."""

TREND_SCALE_PCT: float = 10.0
"""A level drop of this many percentage points per window saturates `decline`."""

OFFLINE_STATUSES = frozenset({"offline", "unreachable", "error"})
"""Dominant-status labels that count as a network-failure window."""

HOT_TEMPERATURE_C: float = 60.0
"""Temperatures above this contribute to the `heat` feature."""

ERRORS_PER_SAMPLE_SCALE: float = 5.0
"""Errors per sample at which the `errors` feature saturates."""

PRESSURE_THRESHOLD_PCT: float = 85.0
"""CPU or memory above this contributes to the `pressure` feature."""


# ── Public API ────────────────────────────────────────────────────────────────

def extract_features(
    failure_type: FailureType,
    aggregates: Sequence[CleanTelemetryAggregate],
    expected_samples: float = 5.0,
) -> Optional[np.ndarray]:
    """
    Feature vector for one failure type, or None if there is no input data.

    Args:
        failure_type:     Which scorer the vector is for.
        aggregates:       Latest aggregates for ONE device, oldest first.
        expected_samples: Samples a full window holds (network shortfall).

    Returns:
        float64 array of len(FEATURE_NAMES[failure_type]), every entry in [0, 1].
    """
    if not aggregates:
        return None
    if failure_type is FailureType.TONER_DEPLETION:
        return _level_features([a.avg_toner_pct for a in aggregates])
    if failure_type is FailureType.PAPER_DEPLETION:
        return _level_features([a.avg_paper_pct for a in aggregates])
    if failure_type is FailureType.NETWORK_FAILURE:
        return _network_features(aggregates, expected_samples)
    if failure_type is FailureType.HARDWARE_FAILURE:
        return _hardware_features(aggregates)
    raise ValueError(f"unknown failure type: {failure_type!r}")


def trend_slope(values: Sequence[float]) -> float:
    """Least-squares slope of `values` against their index. 0 for < 2 points."""
    if len(values) < 2:
        return 0.0
    y = np.asarray(values, dtype=np.float64)
    x = np.arange(len(y), dtype=np.float64)
    slope, _ = np.polyfit(x, y, 1)
    return float(slope)


# ── Per-type extraction ───────────────────────────────────────────────────────

def _level_features(levels: List[Optional[float]]) -> Optional[np.ndarray]:
    present = [v for v in levels if v is not None]
    if not present:
        return None
    deficit = (100.0 - present[-1]) / 100.0
    decline = -trend_slope(present) / TREND_SCALE_PCT
    return _clip([deficit, decline])


def _network_features(
    aggregates: Sequence[CleanTelemetryAggregate],
    expected_samples: float,
) -> np.ndarray:
    offline = sum(
        1 for a in aggregates if a.dominant_status.lower() in OFFLINE_STATUSES
    ) / len(aggregates)
    mean_samples = float(np.mean([a.sample_count for a in aggregates]))
    shortfall = 1.0 - min(1.0, mean_samples / max(expected_samples, 1.0))
    return _clip([offline, shortfall])


def _hardware_features(aggregates: Sequence[CleanTelemetryAggregate]) -> np.ndarray:
    temps = [a.avg_temperature_c for a in aggregates if a.avg_temperature_c is not None]
    heat = 0.0
    if temps:
        heat = max(float(np.mean(temps)) - HOT_TEMPERATURE_C, 0.0) / 40.0

    samples = sum(a.sample_count for a in aggregates)
    errors = sum(a.total_errors for a in aggregates) / samples / ERRORS_PER_SAMPLE_SCALE

    loads = [
        max(v for v in (a.avg_cpu_pct, a.avg_memory_pct) if v is not None)
        for a in aggregates
        if a.avg_cpu_pct is not None or a.avg_memory_pct is not None
    ]
    pressure = 0.0
    if loads:
        pressure = max(float(np.mean(loads)) - PRESSURE_THRESHOLD_PCT, 0.0) / 15.0

    return _clip([heat, errors, pressure])


def _clip(values: List[float]) -> np.ndarray:
    return np.clip(np.asarray(values, dtype=np.float64), 0.0, 1.0)
