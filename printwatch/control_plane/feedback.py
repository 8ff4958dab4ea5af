"""
printwatch/control_plane/feedback.py
────────────────────────────────────
FeedbackIngestor: human judgements → training data, in two explicit stages.

What this is
─────────────
The side channel that closes the learning loop.

  Stage 1  submit_feedback()
           A technician says "this prediction was right / wrong". The
           judgement is stored immediately. No training data yet: a human
           opinion is not a label until the real outcome is known.

  Stage 2  materialize_training_record()   (or resolve_pending())
           Once the outcome is known (did the toner actually run out, and
           after how many days?), one TrainingDataRecord is created from the
           feedback, the prediction's input snapshot and the outcome. It is
           ready for training from birth.

Feedback quality
────────────────
Pure function of the feedback's information content:

  HIGH    comment longer than config.feedback_high_comment_length
          AND a non-empty proposed correction
  MEDIUM  a non-empty comment, or a correction on its own
  LOW     neither

Adding a comment or a correction never lowers the quality.

Training weight
───────────────
    weight = quality / 3                       (LOW 0.33, MEDIUM 0.67, HIGH 1.0)
           × 1.5   if the event occurred and its day count is known
    capped at config.max_training_weight

Integration
───────────
  Reads:   predictions (RecordStore), OutcomeTracker (consumed interface)
  Writes:  PredictionFeedback, TrainingDataRecord (RecordStore)
  Called by: control_plane/pipeline_service.py
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from printwatch.shared.config import DEFAULT_CONFIG, FEEDBACK_HIGH_COMMENT_LENGTH, PipelineConfig
from printwatch.shared.models import (
    FailureType,
    FeedbackQuality,
    PredictionFeedback,
    TrainingDataRecord,
    as_utc,
    utcnow,
)
from printwatch.shared.store import RecordStore

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

RECENT_FEEDBACK_WINDOW: timedelta = timedelta(hours=24)
"""Feedback younger than this is "recent"."""

OCCURRED_WEIGHT_MULTIPLIER: float = 1.5
"""Weight bonus for records whose event occurred with a known lead time."""


class PredictionNotFoundError(Exception):
    """
    Raised when feedback references a prediction id the store does not know.

    Attributes:
        prediction_id: The unknown id.
    """

    def __init__(self, prediction_id: int) -> None:
        super().__init__(f"prediction {prediction_id} not found")
        self.prediction_id = prediction_id


class FeedbackNotFoundError(Exception):
    """
    Raised when a materialisation references an unknown feedback id.

    Attributes:
        feedback_id: The unknown id.
    """

    def __init__(self, feedback_id: int) -> None:
        super().__init__(f"feedback {feedback_id} not found")
        self.feedback_id = feedback_id


class OutcomeTracker(ABC):
    """Consumed interface: what actually happened after a prediction."""

    @abstractmethod
    def actual_outcome(
        self,
        device_id: str,
        failure_type: FailureType,
        since: datetime,
    ) -> Optional[Tuple[Optional[int], bool]]:
        """
        (days until the event, whether it occurred), or None while unknown.

        days may be None when the event did not occur or its date is unknown.
        """


# ── Pure functions ────────────────────────────────────────────────────────────

def feedback_quality(
    feedback: PredictionFeedback,
    high_comment_length: int = FEEDBACK_HIGH_COMMENT_LENGTH,
) -> FeedbackQuality:
    comment = (feedback.comment or "").strip()
    correction = (feedback.proposed_correction or "").strip()
    if len(comment) > high_comment_length and correction:
        return FeedbackQuality.HIGH
    if comment or correction:
        return FeedbackQuality.MEDIUM
    return FeedbackQuality.LOW


def time_since_creation(feedback: PredictionFeedback, now: datetime) -> timedelta:
    return as_utc(now) - feedback.created_at


def is_recent(
    feedback: PredictionFeedback,
    now: datetime,
    window: timedelta = RECENT_FEEDBACK_WINDOW,
) -> bool:
    return time_since_creation(feedback, now) <= window


def training_weight(
    quality: FeedbackQuality,
    event_occurred: bool,
    actual_days_until_event: Optional[int],
    cap: float,
) -> float:
    weight = quality.value / 3.0
    if event_occurred and actual_days_until_event is not None:
        weight *= OCCURRED_WEIGHT_MULTIPLIER
    return min(weight, cap)


# ── Ingestor ──────────────────────────────────────────────────────────────────

class FeedbackIngestor:
    """
    Stores feedback and turns it into training records once outcomes are known.

    Thread safety:
        submit_feedback() relies on the store's lock. Materialisation takes
        the ingestor's own lock so that two concurrent calls for the same
        feedback produce exactly one record.
    """

    def __init__(self, store: RecordStore, config: PipelineConfig = DEFAULT_CONFIG) -> None:
        self._store = store
        self._config = config
        self._lock = threading.Lock()

    # ── Stage 1 ───────────────────────────────────────────────────────────────

    def submit_feedback(
        self,
        prediction_id: int,
        is_correct: bool,
        comment: str,
        author: str,
        proposed_correction: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PredictionFeedback:
        """
        Record a human judgement on a prediction. Creates no training record.

        Raises:
            PredictionNotFoundError: if prediction_id is unknown.
        """
        if self._store.get_prediction(prediction_id) is None:
            raise PredictionNotFoundError(prediction_id)
        feedback = self._store.add_feedback(PredictionFeedback(
            prediction_id=prediction_id,
            is_correct=is_correct,
            comment=comment or "",
            proposed_correction=proposed_correction,
            author=author,
            created_at=now or utcnow(),
        ))
        logger.info(
            "Feedback %d on prediction %d by %s (correct=%s, quality=%s)",
            feedback.feedback_id, prediction_id, author, is_correct,
            self.quality_of(feedback).name,
        )
        return feedback

    def quality_of(self, feedback: PredictionFeedback) -> FeedbackQuality:
        return feedback_quality(feedback, self._config.feedback_high_comment_length)

    # ── Stage 2 ───────────────────────────────────────────────────────────────

    def materialize_training_record(
        self,
        feedback_id: int,
        actual_days_until_event: Optional[int],
        event_occurred: bool,
        now: Optional[datetime] = None,
    ) -> TrainingDataRecord:
        """
        Create the training record for a feedback whose outcome is now known.

        Idempotent: a feedback that already has a record returns that record.

        Raises:
            FeedbackNotFoundError:   if feedback_id is unknown.
            PredictionNotFoundError: if the feedback's prediction has vanished.
        """
        with self._lock:
            existing = self._store.training_record_for_feedback(feedback_id)
            if existing is not None:
                return existing

            feedback = self._store.get_feedback(feedback_id)
            if feedback is None:
                raise FeedbackNotFoundError(feedback_id)
            prediction = self._store.get_prediction(feedback.prediction_id)
            if prediction is None:
                raise PredictionNotFoundError(feedback.prediction_id)

            now = now or utcnow()
            quality = self.quality_of(feedback)
            record = self._store.add_training_record(TrainingDataRecord(
                feedback_id=feedback.feedback_id,
                prediction_id=prediction.prediction_id,
                device_id=prediction.device_id,
                failure_type=prediction.failure_type,
                input_snapshot=prediction.input_snapshot,
                input_features=list(prediction.input_features),
                original_probability=prediction.probability,
                actual_days_until_event=actual_days_until_event,
                event_occurred=event_occurred,
                feedback_quality=quality,
                training_weight=training_weight(
                    quality, event_occurred, actual_days_until_event,
                    self._config.max_training_weight,
                ),
                is_ready_for_training=True,
                created_at=now,
                ready_at=now,
            ))

        logger.info(
            "Training record %d from feedback %d (%s occurred=%s weight=%.2f)",
            record.record_id, feedback_id, record.failure_type.value,
            event_occurred, record.training_weight,
        )
        return record

    def resolve_pending(
        self,
        outcome_tracker: OutcomeTracker,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Ask the outcome tracker about every feedback without a training record.

        Unknown outcomes stay pending and are asked about again next time.

        Returns:
            Number of training records created.
        """
        created = 0
        for feedback in self.pending_feedback():
            prediction = self._store.get_prediction(feedback.prediction_id)
            if prediction is None:
                logger.warning("Feedback %d references missing prediction %d",
                               feedback.feedback_id, feedback.prediction_id)
                continue
            outcome = outcome_tracker.actual_outcome(
                prediction.device_id, prediction.failure_type, prediction.created_at
            )
            if outcome is None:
                continue
            days, occurred = outcome
            self.materialize_training_record(feedback.feedback_id, days, occurred, now)
            created += 1
        if created:
            logger.info("Resolved %d pending feedback entries", created)
        return created

    def pending_feedback(self) -> List[PredictionFeedback]:
        """Feedback that has no training record yet, oldest first."""
        return [
            f for f in self._store.list_feedback()
            if self._store.training_record_for_feedback(f.feedback_id) is None
        ]

    def __repr__(self) -> str:
        return f"FeedbackIngestor(pending={len(self.pending_feedback())})"
