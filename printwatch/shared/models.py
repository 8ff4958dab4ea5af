"""
printwatch/shared/models.py
───────────────────────────
The single source of truth for every data structure in the maintenance pipeline.

Design philosophy
-----------------
Every model answers one question: "What does the pipeline *need to know*
about this thing to turn telemetry into a maintenance decision, or a human
judgement into training data?"

Records that the pipeline treats as facts (raw samples, clean aggregates,
predictions, feedback, retraining runs) are frozen. A fact is never edited:
a new prediction supersedes an old one, a new run is appended after the
previous run. The only record that changes after creation is the
TrainingDataRecord, and only its `used_in_run_id` marker.

Derived values (severity, feedback quality, recency) are NOT stored here.
They are pure functions in control_plane/severity.py and
control_plane/feedback.py that take explicit inputs and an explicit "now",
so that changing a threshold never leaves stale values behind.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time. Every default timestamp goes through here."""
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken as UTC. Aware ones are converted to UTC."""
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]
"""Datetime field type. Every stored timestamp is timezone-aware UTC, so
records from sources that stamp naive UTC compare cleanly with utcnow()."""


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class FailureType(str, Enum):
    """
    The categories of impending device problem the predictor knows about.

    TONER_DEPLETION   → consumable runs out; driven by toner level and trend.
    PAPER_DEPLETION   → tray runs empty; driven by paper level and trend.
    NETWORK_FAILURE   → device stops answering; driven by offline status
                        and missing samples.
    HARDWARE_FAILURE  → mechanical/electronic fault; driven by temperature,
                        error counts, CPU and memory pressure.
    """
    TONER_DEPLETION = "toner-depletion"
    PAPER_DEPLETION = "paper-depletion"
    NETWORK_FAILURE = "network-failure"
    HARDWARE_FAILURE = "hardware-failure"


class Severity(str, Enum):
    """Derived urgency tier. Ordered: LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: Dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class FeedbackQuality(int, Enum):
    """
    How useful a human judgement is for retraining.

    Integer-valued so it can be averaged and turned into a training weight
    (quality / 3) exactly as the weighting rule expects.
    """
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class RetrainingStatus(str, Enum):
    """
    Terminal state of a retraining attempt.

    COMPLETED            → candidate fitted and installed (model_updated=True).
    INSUFFICIENT_DATA    → fewer ready records than the configured minimum.
    REGRESSION_REJECTED  → candidate fitted but worse than the live parameters.
    FAILED               → a true fault (store error) aborted the run.
    BUSY                 → another retrain held the lock; nothing was done.
    """
    COMPLETED = "completed"
    INSUFFICIENT_DATA = "insufficient-data"
    REGRESSION_REJECTED = "regression-rejected"
    FAILED = "failed"
    BUSY = "busy"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: DEVICES AND RAW TELEMETRY
# ─────────────────────────────────────────────────────────────────────────────

class Device(BaseModel):
    """
    A monitored network printer.

    Only enabled devices are sampled by the collector. Disabled devices stay
    registered (they still count towards total_devices) so that history and
    predictions remain attached to a stable id.
    """
    model_config = ConfigDict(frozen=True)

    device_id: str = Field(..., min_length=1, description="Stable device identifier")
    name: str = Field("", description="Human-readable label")
    ip_address: Optional[str] = Field(None, description="Last known address, if any")
    enabled: bool = Field(True, description="Disabled devices are skipped by the collector")


class RawTelemetrySample(BaseModel):
    """
    One uncurated measurement snapshot from a device.

    Gauges are deliberately NOT range-constrained here: the source reports
    whatever the device said, and the cleaner is the component that decides
    whether a value is plausible. Constraining them at construction would
    turn a bad reading into an exception inside the collector instead of an
    `invalid_count` increment inside the cleaner.

    Every gauge is Optional because not every collection method reports every
    gauge (e.g. a fallback agent may not know the temperature).
    """
    model_config = ConfigDict(frozen=True)

    device_id: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    status: str = Field("online", description="Status label reported by the device")

    toner_pct: Optional[float] = None
    paper_pct: Optional[float] = None
    temperature_c: Optional[float] = None
    cpu_pct: Optional[float] = None
    memory_pct: Optional[float] = None
    queue_depth: Optional[float] = None
    error_count: Optional[int] = None
    pages_printed: Optional[int] = None

    collection_success: bool = True
    collection_latency_ms: float = Field(0.0, ge=0.0)
    collection_method: str = Field("unknown", description="Which source answered")


class CollectionAttempt(BaseModel):
    """
    Audit entry for one collect_one() call, written on success AND failure.

    The latency of failed attempts matters as much as that of successful ones:
    a device that times out after 5s every cycle is a network-failure signal.
    """
    model_config = ConfigDict(frozen=True)

    device_id: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    success: bool
    latency_ms: float = Field(..., ge=0.0)
    collection_method: Optional[str] = None
    error: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: CLEAN AGGREGATES
# ─────────────────────────────────────────────────────────────────────────────

class CleanTelemetryAggregate(BaseModel):
    """
    A validated, time-windowed average derived from one or more raw samples.

    Fields:
        window_start / window_end → the fixed aggregation window [start, end).
        avg_*                     → mean over surviving samples that reported
                                    the gauge. None if no survivor reported it.
        total_errors              → sum of error counts over survivors.
        sample_count              → survivors contributing to the averages.
        invalid_count             → samples of this window rejected by validation.
        data_quality_score        → 0–100, see cleaner.data_quality_score().
        dominant_status           → most common status label among survivors.
    """
    model_config = ConfigDict(frozen=True)

    device_id: str
    window_start: UtcDatetime
    window_end: UtcDatetime

    avg_toner_pct: Optional[float] = None
    avg_paper_pct: Optional[float] = None
    avg_temperature_c: Optional[float] = None
    avg_cpu_pct: Optional[float] = None
    avg_memory_pct: Optional[float] = None
    avg_queue_depth: Optional[float] = None
    avg_pages_printed: Optional[float] = None

    total_errors: int = Field(0, ge=0)
    sample_count: int = Field(..., ge=1)
    invalid_count: int = Field(0, ge=0)
    data_quality_score: float = Field(..., ge=0.0, le=100.0)
    dominant_status: str = "online"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: PREDICTIONS
# ─────────────────────────────────────────────────────────────────────────────

class MaintenancePrediction(BaseModel):
    """
    A per-device, per-failure-type maintenance forecast.

    At most one prediction per (device, failure_type) is *live* at a time.
    The store tracks which one; this record never changes once written.

    severity and requires_immediate_attention are properties, recomputed on
    every access from (probability, days_until_event) by the pure functions
    in control_plane/severity.py.
    """
    model_config = ConfigDict(frozen=True)

    prediction_id: int = Field(0, ge=0, description="Assigned by the store on write")
    device_id: str
    failure_type: FailureType
    probability: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    estimated_date: UtcDatetime
    days_until_event: int = Field(..., ge=0)
    recommended_action: str = ""
    created_at: UtcDatetime = Field(default_factory=utcnow)
    model_version: str = "default"
    input_snapshot: Optional[CleanTelemetryAggregate] = Field(
        None,
        description="Latest aggregate the prediction was computed from. "
                    "Copied into the training record once the outcome is known.",
    )
    input_features: List[float] = Field(
        default_factory=list,
        description="Feature vector the probability was scored from",
    )

    @property
    def severity(self) -> Severity:
        from printwatch.control_plane.severity import severity_for
        return severity_for(self.probability, self.days_until_event)

    @property
    def requires_immediate_attention(self) -> bool:
        from printwatch.control_plane.severity import requires_immediate_attention
        return requires_immediate_attention(self.probability, self.days_until_event)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: FEEDBACK AND TRAINING DATA
# ─────────────────────────────────────────────────────────────────────────────

class PredictionFeedback(BaseModel):
    """
    A human judgement on a past prediction.

    Stage one of the two-stage feedback pipeline: feedback is captured as
    soon as it is submitted, but contributes no training data until the real
    outcome is known and a TrainingDataRecord is materialised from it.
    """
    model_config = ConfigDict(frozen=True)

    feedback_id: int = Field(0, ge=0)
    prediction_id: int
    is_correct: bool
    comment: str = ""
    proposed_correction: Optional[str] = None
    author: str
    created_at: UtcDatetime = Field(default_factory=utcnow)


class TrainingDataRecord(BaseModel):
    """
    Stage two of the feedback pipeline: a labelled example for retraining.

    Created only once the outcome is known, so is_ready_for_training is True
    from birth for every record the ingestor writes. The field is kept
    explicit because stores may hold records imported from elsewhere.

    used_in_run_id is the "used" flag: set by the retrainer when a run that
    consumed this record installs its parameters. Records are never deleted.
    """
    record_id: int = Field(0, ge=0)
    feedback_id: int
    prediction_id: int
    device_id: str
    failure_type: FailureType
    input_snapshot: Optional[CleanTelemetryAggregate] = None
    input_features: List[float] = Field(default_factory=list)
    original_probability: float = Field(..., ge=0.0, le=1.0)
    actual_days_until_event: Optional[int] = Field(None, ge=0)
    event_occurred: bool = False
    feedback_quality: FeedbackQuality = FeedbackQuality.LOW
    training_weight: float = Field(1.0, ge=0.0)
    is_ready_for_training: bool = False
    created_at: UtcDatetime = Field(default_factory=utcnow)
    ready_at: Optional[UtcDatetime] = None
    used_in_run_id: Optional[int] = None

    @property
    def is_used(self) -> bool:
        return self.used_in_run_id is not None


class RetrainingRun(BaseModel):
    """
    Audit record of one retrain() invocation.

    Written for every invocation that got past the busy check, including
    no-op and failed ones. BUSY runs are returned to the caller but never
    stored: a rejected request must not mutate anything.
    """
    model_config = ConfigDict(frozen=True)

    run_id: int = Field(0, ge=0)
    status: RetrainingStatus
    started_at: UtcDatetime
    finished_at: UtcDatetime
    training_data_size: int = Field(0, ge=0)
    feedback_data_size: int = Field(0, ge=0)
    quality_before: Optional[float] = None
    quality_after: Optional[float] = None
    quality_delta: Optional[float] = None
    issues: List[str] = Field(default_factory=list)
    model_updated: bool = False
    model_version: Optional[str] = None

    @property
    def duration(self) -> timedelta:
        return self.finished_at - self.started_at


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: OPERATION RESULTS
# ─────────────────────────────────────────────────────────────────────────────

class CollectionResult(BaseModel):
    """Summary of one collect_all() cycle."""
    total_devices: int = Field(0, ge=0)
    active_devices: int = Field(0, ge=0)
    successful_collections: int = Field(0, ge=0)
    failed_collections: int = Field(0, ge=0)
    samples_collected: int = Field(0, ge=0)
    started_at: UtcDatetime = Field(default_factory=utcnow)
    finished_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def duration(self) -> timedelta:
        return self.finished_at - self.started_at


class CleanResult(BaseModel):
    """
    Summary of one clean() batch.

    `aggregates` is deterministic for a given input; `duration` is not, which
    is why idempotence is asserted on the aggregates, never on the result.
    """
    total_raw: int = Field(0, ge=0)
    total_clean: int = Field(0, ge=0)
    invalid_count: int = Field(0, ge=0)
    duration: timedelta = timedelta(0)
    aggregates: List[CleanTelemetryAggregate] = Field(default_factory=list)


class TrainingResult(BaseModel):
    """Outcome of MaintenancePredictor.train(). Parameters are NOT installed."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    training_data_size: int = Field(0, ge=0)
    duration: timedelta = timedelta(0)
    fit_quality: float = Field(0.0, ge=0.0, le=1.0)
    parameters: Optional[object] = Field(
        None, description="Candidate risk_core ModelParameters"
    )


class Statistics(BaseModel):
    """
    Accuracy, lead-time and feedback-quality statistics over a time window.

    Every rate is computed over *resolved* feedback only (the target
    prediction has a materialised outcome). Pending feedback shows up in
    total_feedback and pending_feedback and nowhere else.
    """
    window_start: UtcDatetime
    window_end: UtcDatetime
    calculated_at: UtcDatetime = Field(default_factory=utcnow)

    total_feedback: int = 0
    resolved_feedback: int = 0
    pending_feedback: int = 0
    correct_predictions: int = 0
    incorrect_predictions: int = 0

    overall_accuracy: float = Field(0.0, ge=0.0, le=1.0)
    accuracy_by_type: Dict[str, float] = Field(default_factory=dict)
    accuracy_by_device: Dict[str, float] = Field(default_factory=dict)
    average_anticipation_days: float = Field(0.0, ge=0.0)
    false_positive_rate: float = Field(0.0, ge=0.0, le=1.0)
    false_negative_rate: float = Field(0.0, ge=0.0, le=1.0)

    predictions_by_type: Dict[str, int] = Field(default_factory=dict)
    average_confidence_by_type: Dict[str, float] = Field(default_factory=dict)
    feedback_quality_distribution: Dict[str, int] = Field(default_factory=dict)
    human_agreement_rate: float = Field(0.0, ge=0.0, le=1.0)
    top_problematic_devices: List[str] = Field(default_factory=list)


class CollectionStatistics(BaseModel):
    """Collector health over a time window, built from CollectionAttempts."""
    period_start: UtcDatetime
    period_end: UtcDatetime
    total_collections: int = 0
    successful_collections: int = 0
    failed_collections: int = 0
    average_latency_ms: float = 0.0
    most_used_method: Optional[str] = None
    methods_used: Dict[str, int] = Field(default_factory=dict)


class DataQualityStatistics(BaseModel):
    """Distribution of data-quality scores across a set of aggregates."""
    total_aggregates: int = 0
    average_quality: float = Field(0.0, ge=0.0, le=100.0)
    high_quality: int = 0
    medium_quality: int = 0
    low_quality: int = 0
