"""
printwatch/control_plane — prediction, feedback, retraining and statistics.

Public API:
    MaintenancePipelineService — facade over the whole pipeline
    MaintenancePredictor       — aggregates → stored maintenance predictions
    FeedbackIngestor           — feedback capture and training-record materialisation
    ModelRetrainer             — guarded, exclusive retraining
    StatisticsAggregator       — accuracy and feedback statistics
    OutcomeTracker             — consumed interface: real outcomes
    NotificationSink           — consumed interface: urgent prediction delivery
    PredictionNotFoundError    — feedback for an unknown prediction
    FeedbackNotFoundError      — materialisation for unknown feedback
    RunNotFoundError           — lookup of an unknown retraining run

Usage:
    from printwatch.control_plane import MaintenancePipelineService
    from printwatch.telemetry import SimulatedTelemetrySource

    service = MaintenancePipelineService(source=SimulatedTelemetrySource(seed=1))
    service.run_collection_cycle()
    service.run_cleaning_cycle()
    predictions = service.predict_maintenance("prn-01")
"""

from printwatch.control_plane.severity import (
    recommended_action,
    requires_immediate_attention,
    severity_for,
)
from printwatch.control_plane.predictor import MaintenancePredictor
from printwatch.control_plane.feedback import (
    FeedbackIngestor,
    FeedbackNotFoundError,
    OutcomeTracker,
    PredictionNotFoundError,
    feedback_quality,
)
from printwatch.control_plane.retrainer import ModelRetrainer, RunNotFoundError
from printwatch.control_plane.statistics import StatisticsAggregator, collection_statistics
from printwatch.control_plane.pipeline_service import (
    MaintenancePipelineService,
    NotificationSink,
)

__all__ = [
    "severity_for",
    "requires_immediate_attention",
    "recommended_action",
    "MaintenancePredictor",
    "FeedbackIngestor",
    "FeedbackNotFoundError",
    "OutcomeTracker",
    "PredictionNotFoundError",
    "feedback_quality",
    "ModelRetrainer",
    "RunNotFoundError",
    "StatisticsAggregator",
    "collection_statistics",
    "MaintenancePipelineService",
    "NotificationSink",
]
