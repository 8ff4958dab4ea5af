"""
printwatch/telemetry — device sampling and telemetry cleaning.

Public API:
    TelemetrySource           — strategy interface for sampling one device
    TelemetrySourceError      — raised by a source that could not sample
    SimulatedTelemetrySource  — Gaussian-noise source with fault injection
    FallbackTelemetrySource   — ordered chain of named sources
    TelemetryCollector        — bounded-pool collection cycle + recent buffer
    TelemetryCleaner          — validation and windowed aggregation
    data_quality_statistics   — quality distribution over aggregates
"""

from printwatch.telemetry.sources import (
    FallbackTelemetrySource,
    SimulatedTelemetrySource,
    TelemetrySource,
    TelemetrySourceError,
)
from printwatch.telemetry.collector import TelemetryCollector
from printwatch.telemetry.cleaner import TelemetryCleaner, data_quality_statistics

__all__ = [
    "TelemetrySource",
    "TelemetrySourceError",
    "SimulatedTelemetrySource",
    "FallbackTelemetrySource",
    "TelemetryCollector",
    "TelemetryCleaner",
    "data_quality_statistics",
]
