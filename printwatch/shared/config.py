"""
printwatch/shared/config.py
───────────────────────────
PipelineConfig: the one explicit configuration object for the pipeline.

What this is
─────────────
Every threshold, window size and limit the pipeline uses lives here as a
named option. Components receive a PipelineConfig at construction time and
never read the environment or a global themselves, so a test can build a
pipeline with `PipelineConfig(min_training_records=5)` and nothing else.

Design
───────
- Frozen pydantic-settings model with extra="forbid": the option set is
  closed and a misspelt keyword is a ValidationError, not an ignored key.
- Defaults are module-level constants, each documented, so tests can import
  and assert against them directly.
- Any option not passed explicitly is read from its PRINTWATCH_* variable,
  then falls back to the default. Durations are given in seconds
  (e.g. PRINTWATCH_RAW_RETENTION=3600).

Integration
───────────
    config = PipelineConfig.from_env()
    service = MaintenancePipelineService(config=config, source=...)
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from printwatch.shared.models import Severity

# ── Defaults ──────────────────────────────────────────────────────────────────
# Module-level so tests can import and assert against them directly.

COLLECTION_WORKERS: int = 4
"""Maximum number of devices sampled concurrently in one collection cycle."""

COLLECTION_INTERVAL_S: float = 60.0
"""Expected seconds between two samples of the same device.

Used by the cleaner to work out how many samples a full window should hold.
A 5-minute window at 60s intervals expects 5 samples.
"""

RAW_RETENTION: timedelta = timedelta(hours=1)
"""How long raw samples stay in the recent-sample buffer."""

RAW_BUFFER_MAX_PER_DEVICE: int = 500
"""Hard cap on buffered samples per device. Oldest are dropped first."""

ATTEMPT_RETENTION: timedelta = timedelta(days=7)
"""How long collection attempts are kept for collection statistics."""

WINDOW_MINUTES: int = 5
"""Width of the fixed cleaning window, aligned to the Unix epoch."""

TEMPERATURE_MIN_C: float = -10.0
"""Lowest plausible device temperature. Colder readings are sensor faults."""

TEMPERATURE_MAX_C: float = 100.0
"""Highest plausible device temperature."""

RECENCY_HORIZON: timedelta = timedelta(hours=24)
"""Age at which a window's recency contribution to data quality reaches 0."""

LOOKBACK_WINDOWS: int = 3
"""Number of latest clean aggregates the predictor evaluates per device."""

DEFAULT_HORIZON: timedelta = timedelta(days=14)
"""Prediction horizon used when the caller does not give one."""

SIGNAL_FLOOR: float = 0.10
"""Probability below which a failure type counts as "no signal" and is omitted."""

DECISION_THRESHOLD: float = 0.5
"""Probability at or above which a prediction counts as a positive call."""

NOTIFY_MIN_SEVERITY: Severity = Severity.HIGH
"""Lowest severity forwarded to the notification sink."""

FEEDBACK_HIGH_COMMENT_LENGTH: int = 40
"""A comment must be longer than this for feedback to rate High."""

MIN_TRAINING_RECORDS: int = 50
"""Retraining is a no-op below this many ready, unused records."""

FEEDBACK_LOOKBACK: timedelta = timedelta(days=30)
"""Only feedback newer than this re-weights records during a retrain."""

TRAINING_LOOKBACK: timedelta = timedelta(days=90)
"""Ready records older than this are not offered to the retrainer."""

MAX_TRAINING_WEIGHT: float = 2.0
"""Upper bound on any single record's training weight."""

TRAIN_EPOCHS: int = 200
"""Full-batch optimisation steps per failure type in the torch fitter."""

LEARNING_RATE: float = 0.05
"""Adam learning rate for the torch fitter."""

ENV_PREFIX: str = "PRINTWATCH_"
"""Prefix of the environment variables PipelineConfig reads."""


class PipelineConfig(BaseSettings):
    """
    Closed set of named pipeline options.

    All durations are timedelta. Keyword overrides win over PRINTWATCH_*
    variables, which win over the defaults.
    """
    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, frozen=True, extra="forbid")

    # Collection
    collection_workers: int = Field(COLLECTION_WORKERS, ge=1)
    collection_interval_s: float = Field(COLLECTION_INTERVAL_S, gt=0.0)
    raw_retention: timedelta = RAW_RETENTION
    raw_buffer_max_per_device: int = Field(RAW_BUFFER_MAX_PER_DEVICE, ge=1)
    attempt_retention: timedelta = ATTEMPT_RETENTION

    # Cleaning
    window_minutes: int = Field(WINDOW_MINUTES, ge=1)
    temperature_min_c: float = TEMPERATURE_MIN_C
    temperature_max_c: float = TEMPERATURE_MAX_C
    recency_horizon: timedelta = RECENCY_HORIZON

    # Prediction
    lookback_windows: int = Field(LOOKBACK_WINDOWS, ge=1)
    default_horizon: timedelta = DEFAULT_HORIZON
    signal_floor: float = Field(SIGNAL_FLOOR, ge=0.0, le=1.0)
    decision_threshold: float = Field(DECISION_THRESHOLD, ge=0.0, le=1.0)
    notify_min_severity: Severity = NOTIFY_MIN_SEVERITY

    # Feedback and retraining
    feedback_high_comment_length: int = Field(FEEDBACK_HIGH_COMMENT_LENGTH, ge=0)
    min_training_records: int = Field(MIN_TRAINING_RECORDS, ge=1)
    feedback_lookback: timedelta = FEEDBACK_LOOKBACK
    training_lookback: timedelta = TRAINING_LOOKBACK
    max_training_weight: float = Field(MAX_TRAINING_WEIGHT, gt=0.0)
    train_epochs: int = Field(TRAIN_EPOCHS, ge=1)
    learning_rate: float = Field(LEARNING_RATE, gt=0.0)

    @field_validator(
        "raw_retention", "attempt_retention", "recency_horizon", "default_horizon",
        "feedback_lookback", "training_lookback",
        mode="before",
    )
    @classmethod
    def _seconds(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                return value
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "PipelineConfig":
        if self.temperature_min_c >= self.temperature_max_c:
            raise ValueError(
                f"temperature_min_c ({self.temperature_min_c}) must be below "
                f"temperature_max_c ({self.temperature_max_c})"
            )
        if self.raw_retention < self.window:
            raise ValueError("raw_retention must cover at least one cleaning window")
        if self.attempt_retention < self.raw_retention:
            raise ValueError("attempt_retention must cover at least raw_retention")
        for name in ("recency_horizon", "default_horizon",
                     "feedback_lookback", "training_lookback"):
            if getattr(self, name) <= timedelta(0):
                raise ValueError(f"{name} must be positive")
        return self

    # ── Derived values ────────────────────────────────────────────────────────

    @property
    def window(self) -> timedelta:
        """The cleaning window as a timedelta."""
        return timedelta(minutes=self.window_minutes)

    @property
    def expected_samples_per_window(self) -> float:
        """Samples a full window holds when every collection succeeds."""
        return max(self.window.total_seconds() / self.collection_interval_s, 1.0)

    # ── Environment loading ───────────────────────────────────────────────────

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides: Any) -> "PipelineConfig":
        """
        Build a config from environment variables with a given prefix.

        PW_WINDOW_MINUTES=10 with prefix="PW_" sets window_minutes=10.
        Variables that name no option are ignored.

        Args:
            prefix:    Variable prefix. Default "PRINTWATCH_".
            overrides: Options that win over the environment.
        """
        return cls(_env_prefix=prefix, **overrides)


DEFAULT_CONFIG = PipelineConfig()
"""Shared default instance. Frozen, so safe to hand to every component."""
