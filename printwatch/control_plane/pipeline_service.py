"""
printwatch/control_plane/pipeline_service.py
────────────────────────────────────────────
MaintenancePipelineService: the single entry point to the maintenance pipeline.

What this is
─────────────
A facade that wires every component to one store and one configuration,
and exposes the operations a controller, a scheduler or a CLI would call:

  Queries and commands
    get_recent_predictions(device_id=None)  → live predictions
    predict_maintenance(device_id, horizon) → fresh, stored predictions
    process_feedback(...)                   → bool (False for unknown prediction)
    retrain_model()                         → RetrainingRun
    get_retraining_run(run_id)              → RetrainingRun | None
    get_advanced_statistics(from, to)       → Statistics

  Operational cycles
    run_collection_cycle()                  → CollectionResult
    run_cleaning_cycle(now)                 → CleanResult (closed windows only)
    resolve_outcomes()                      → training records created
    get_collection_statistics(from, to)     → CollectionStatistics

Consumed interfaces
────────────────────
  TelemetrySource    sample(device)                        (required)
  OutcomeTracker     actual_outcome(device, type, since)   (optional)
  NotificationSink   notify(prediction)                    (optional)

The notification sink is fire-and-forget: a sink that raises is logged and
ignored, and never fails the prediction that triggered it. Only predictions
at or above config.notify_min_severity are forwarded.

Cleaning watermark
──────────────────
run_cleaning_cycle() only aggregates windows that have closed (window end
≤ now) and have not been cleaned before. A second call with the same `now`
cleans nothing new; aggregates are upserted by (device, window_start), so
replaying a window never duplicates it.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional

from printwatch.control_plane.feedback import (
    FeedbackIngestor,
    OutcomeTracker,
    PredictionNotFoundError,
)
from printwatch.control_plane.predictor import Fitter, MaintenancePredictor
from printwatch.control_plane.retrainer import ModelRetrainer, RunNotFoundError
from printwatch.control_plane.severity import at_least
from printwatch.control_plane.statistics import StatisticsAggregator, collection_statistics
from printwatch.shared.config import DEFAULT_CONFIG, PipelineConfig
from printwatch.shared.models import (
    CleanResult,
    CollectionResult,
    CollectionStatistics,
    DataQualityStatistics,
    Device,
    MaintenancePrediction,
    RetrainingRun,
    Statistics,
    utcnow,
)
from printwatch.shared.store import InMemoryRecordStore, RecordStore
from printwatch.telemetry.cleaner import TelemetryCleaner, data_quality_statistics
from printwatch.telemetry.collector import TelemetryCollector
from printwatch.telemetry.sources import TelemetrySource
from risk_core.trainer import fit_parameters

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Consumed interface: where urgent predictions are delivered."""

    @abstractmethod
    def notify(self, prediction: MaintenancePrediction) -> None: ...


class MaintenancePipelineService:
    """
    Facade over collector, cleaner, predictor, feedback, retrainer and statistics.

    Attributes (public, readable by tests):
        store      : RecordStore
        config     : PipelineConfig
        collector  : TelemetryCollector
        cleaner    : TelemetryCleaner
        predictor  : MaintenancePredictor
        feedback   : FeedbackIngestor
        retrainer  : ModelRetrainer
        statistics : StatisticsAggregator

    Thread safety:
        Every component is safe to call concurrently. Cleaning cycles are
        serialised by the service so the watermark advances in order.
    """

    def __init__(
        self,
        source: TelemetrySource,
        config: PipelineConfig = DEFAULT_CONFIG,
        store: Optional[RecordStore] = None,
        outcome_tracker: Optional[OutcomeTracker] = None,
        notification_sink: Optional[NotificationSink] = None,
        fitter: Fitter = fit_parameters,
    ) -> None:
        self.config = config
        self.store: RecordStore = store if store is not None else InMemoryRecordStore()
        self.collector = TelemetryCollector(self.store, source, config)
        self.cleaner = TelemetryCleaner(config)
        self.predictor = MaintenancePredictor(self.store, config, fitter=fitter)
        self.feedback = FeedbackIngestor(self.store, config)
        self.retrainer = ModelRetrainer(self.store, self.predictor, config)
        self.statistics = StatisticsAggregator(self.store, config)

        self._outcome_tracker = outcome_tracker
        self._sink = notification_sink
        self._clean_lock = threading.Lock()
        self._cleaned_through: Optional[datetime] = None

        logger.info(
            "MaintenancePipelineService initialised (workers=%d, window=%dmin, model=%s)",
            config.collection_workers, config.window_minutes,
            self.store.live_parameters().version,
        )

    # ── Devices ───────────────────────────────────────────────────────────────

    def register_device(self, device: Device) -> Device:
        return self.collector.register_device(device)

    def remove_device(self, device_id: str) -> bool:
        return self.collector.remove_device(device_id)

    # ── Predictions ───────────────────────────────────────────────────────────

    def get_recent_predictions(
        self, device_id: Optional[str] = None
    ) -> List[MaintenancePrediction]:
        """Live predictions (one per device and failure type), newest first."""
        live = self.store.live_predictions(device_id)
        return sorted(live, key=lambda p: (p.created_at, p.prediction_id), reverse=True)

    def predict_maintenance(
        self,
        device_id: str,
        horizon: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> List[MaintenancePrediction]:
        """Score, store and (if severe enough) notify predictions for one device."""
        predictions = self.predictor.predict(device_id, horizon=horizon, now=now)
        for prediction in predictions:
            if at_least(prediction.severity, self.config.notify_min_severity):
                self._notify(prediction)
        return predictions

    # ── Feedback ──────────────────────────────────────────────────────────────

    def process_feedback(
        self,
        prediction_id: int,
        is_correct: bool,
        comment: str,
        author: str,
        proposed_correction: Optional[str] = None,
    ) -> bool:
        """
        Store a human judgement. False if the prediction does not exist.

        Creates no training record: that happens when the outcome is known
        (see resolve_outcomes()).
        """
        try:
            self.feedback.submit_feedback(
                prediction_id, is_correct, comment, author, proposed_correction
            )
        except PredictionNotFoundError:
            logger.warning("Feedback from %s for unknown prediction %d", author, prediction_id)
            return False
        return True

    def resolve_outcomes(self, now: Optional[datetime] = None) -> int:
        """Materialise training records for feedback whose outcome is now known."""
        if self._outcome_tracker is None:
            logger.debug("No outcome tracker configured; nothing to resolve")
            return 0
        return self.feedback.resolve_pending(self._outcome_tracker, now)

    # ── Retraining and statistics ─────────────────────────────────────────────

    def retrain_model(self, now: Optional[datetime] = None) -> RetrainingRun:
        return self.retrainer.retrain(now)

    def get_retraining_run(self, run_id: int) -> Optional[RetrainingRun]:
        """A stored retraining run, or None if the id is unknown."""
        try:
            return self.retrainer.get_run(run_id)
        except RunNotFoundError:
            logger.warning("Lookup of unknown retraining run %d", run_id)
            return None

    def get_advanced_statistics(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> Statistics:
        return self.statistics.advanced_statistics(from_date, to_date)

    def get_collection_statistics(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> CollectionStatistics:
        return collection_statistics(self.store.list_attempts(), from_date, to_date)

    def get_data_quality_statistics(self, device_id: Optional[str] = None) -> DataQualityStatistics:
        return data_quality_statistics(self.store.list_aggregates(device_id))

    # ── Operational cycles ────────────────────────────────────────────────────

    def run_collection_cycle(self) -> CollectionResult:
        return self.collector.collect_all()

    def run_cleaning_cycle(self, now: Optional[datetime] = None) -> CleanResult:
        """
        Clean every buffered sample in a closed, not-yet-cleaned window.

        Args:
            now: Reference time. Windows ending at or before the start of
                 the window containing `now` are closed.
        """
        now = now or utcnow()
        with self._clean_lock:
            cutoff = self.cleaner.window_start(now)
            samples = [
                s for s in self.collector.buffer.snapshot(before=cutoff)
                if self._cleaned_through is None
                or self.cleaner.window_start(s.timestamp) >= self._cleaned_through
            ]
            result = self.cleaner.clean(samples, as_of=now)
            self.store.upsert_aggregates(result.aggregates)
            if self._cleaned_through is None or cutoff > self._cleaned_through:
                self._cleaned_through = cutoff
        return result

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Purge buffered raw samples older than the retention window."""
        return self.collector.cleanup_recent(now)

    # ── Private helpers ───────────────────────────────────────────────────────

    def _notify(self, prediction: MaintenancePrediction) -> None:
        if self._sink is None:
            return
        try:
            self._sink.notify(prediction)
        except Exception:
            logger.exception(
                "Notification sink failed for prediction %d (%s on %s)",
                prediction.prediction_id, prediction.failure_type.value, prediction.device_id,
            )

    def __repr__(self) -> str:
        return (
            f"MaintenancePipelineService("
            f"devices={len(self.store.list_devices())}, "
            f"live_predictions={len(self.store.live_predictions())}, "
            f"model={self.store.live_parameters().version})"
        )
