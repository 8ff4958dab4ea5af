"""
printwatch/control_plane/statistics.py
──────────────────────────────────────
StatisticsAggregator: read-only accuracy, lead-time and collection statistics.

What this is
─────────────
Answers "how good have the predictions been?" over a time window. It reads
predictions, feedback and training records and writes nothing.

Counting rules
──────────────
Feedback is selected by created_at in [from_date, to_date] (default: the
last 30 days). A feedback is *resolved* once its training record exists,
i.e. the real outcome is known. Every rate below uses resolved feedback
only; pending feedback appears in total_feedback / pending_feedback and in
the human-opinion figures (quality distribution, agreement rate).

For a resolved feedback on prediction P with outcome O:

    positive call   P.probability ≥ config.decision_threshold
    correct         positive call == O.event_occurred

    TP  positive, occurred       FP  positive, did not occur
    TN  negative, did not occur  FN  negative, occurred

    false_positive_rate = FP / (FP + TN)     0 when the denominator is 0
    false_negative_rate = FN / (FN + TP)     0 when the denominator is 0

average_anticipation_days is the mean actual lead time of resolved
predictions whose event occurred with a known day count.

top_problematic_devices ranks devices by the number of resolved events that
actually occurred (ties by device id), up to TOP_PROBLEMATIC_LIMIT.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from printwatch.control_plane.feedback import feedback_quality
from printwatch.shared.config import DEFAULT_CONFIG, PipelineConfig
from printwatch.shared.models import (
    CollectionAttempt,
    CollectionStatistics,
    FeedbackQuality,
    Statistics,
    as_utc,
    utcnow,
)
from printwatch.shared.store import RecordStore

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

DEFAULT_STATISTICS_WINDOW: timedelta = timedelta(days=30)
"""Window used when the caller gives no from_date."""

TOP_PROBLEMATIC_LIMIT: int = 5
"""Maximum number of devices listed in top_problematic_devices."""


class StatisticsAggregator:
    """Read-only statistics over the store. Safe to call from any thread."""

    def __init__(self, store: RecordStore, config: PipelineConfig = DEFAULT_CONFIG) -> None:
        self._store = store
        self._config = config

    def advanced_statistics(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Statistics:
        """
        Accuracy and feedback statistics for feedback created in [from, to].

        Args:
            from_date: Window start. Defaults to to_date - 30 days.
            to_date:   Window end. Defaults to now.
            now:       calculated_at, and the default to_date.
        """
        now = as_utc(now or utcnow())
        to_date = as_utc(to_date or now)
        from_date = as_utc(from_date or to_date - DEFAULT_STATISTICS_WINDOW)
        if from_date > to_date:
            raise ValueError("from_date must not be after to_date")

        feedback = self._store.list_feedback(since=from_date, until=to_date)
        threshold = self._config.decision_threshold

        correct = 0
        tp = fp = tn = fn = 0
        pending = 0
        by_type: Dict[str, List[bool]] = defaultdict(list)
        by_device: Dict[str, List[bool]] = defaultdict(list)
        lead_times: List[int] = []
        occurred_by_device: Counter = Counter()
        quality_counts: Counter = Counter()
        agreed = 0

        for entry in feedback:
            quality = feedback_quality(entry, self._config.feedback_high_comment_length)
            quality_counts[quality.name.lower()] += 1
            agreed += 1 if entry.is_correct else 0

            prediction = self._store.get_prediction(entry.prediction_id)
            record = self._store.training_record_for_feedback(entry.feedback_id)
            if prediction is None or record is None:
                pending += 1
                continue

            positive = prediction.probability >= threshold
            occurred = record.event_occurred
            hit = positive == occurred
            correct += 1 if hit else 0
            if positive and occurred:
                tp += 1
            elif positive:
                fp += 1
            elif occurred:
                fn += 1
            else:
                tn += 1

            by_type[prediction.failure_type.value].append(hit)
            by_device[prediction.device_id].append(hit)
            if occurred:
                occurred_by_device[prediction.device_id] += 1
                if record.actual_days_until_event is not None:
                    lead_times.append(record.actual_days_until_event)

        resolved = len(feedback) - pending
        predictions_by_type, confidence_by_type = self._prediction_counts(from_date, to_date)

        stats = Statistics(
            window_start=from_date,
            window_end=to_date,
            calculated_at=now,
            total_feedback=len(feedback),
            resolved_feedback=resolved,
            pending_feedback=pending,
            correct_predictions=correct,
            incorrect_predictions=resolved - correct,
            overall_accuracy=_ratio(correct, resolved),
            accuracy_by_type={k: _ratio(sum(v), len(v)) for k, v in sorted(by_type.items())},
            accuracy_by_device={k: _ratio(sum(v), len(v)) for k, v in sorted(by_device.items())},
            average_anticipation_days=_ratio(sum(lead_times), len(lead_times)),
            false_positive_rate=_ratio(fp, fp + tn),
            false_negative_rate=_ratio(fn, fn + tp),
            predictions_by_type=predictions_by_type,
            average_confidence_by_type=confidence_by_type,
            feedback_quality_distribution={
                q.name.lower(): quality_counts.get(q.name.lower(), 0) for q in FeedbackQuality
            },
            human_agreement_rate=_ratio(agreed, len(feedback)),
            top_problematic_devices=[
                device for device, _ in sorted(
                    occurred_by_device.items(), key=lambda item: (-item[1], item[0])
                )[:TOP_PROBLEMATIC_LIMIT]
            ],
        )
        logger.info(
            "Statistics %s..%s: %d feedback (%d resolved), accuracy %.3f",
            from_date.isoformat(), to_date.isoformat(),
            stats.total_feedback, stats.resolved_feedback, stats.overall_accuracy,
        )
        return stats

    def _prediction_counts(
        self, from_date: datetime, to_date: datetime
    ) -> Tuple[Dict[str, int], Dict[str, float]]:
        confidences: Dict[str, List[float]] = defaultdict(list)
        for prediction in self._store.list_predictions():
            if from_date <= prediction.created_at <= to_date:
                confidences[prediction.failure_type.value].append(prediction.confidence)
        counts = {k: len(v) for k, v in sorted(confidences.items())}
        means = {k: sum(v) / len(v) for k, v in sorted(confidences.items())}
        return counts, means

    def __repr__(self) -> str:
        return f"StatisticsAggregator(threshold={self._config.decision_threshold})"


def collection_statistics(
    attempts: Iterable[CollectionAttempt],
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> CollectionStatistics:
    """
    Collector health over [from, to] (default: the last 24 hours).

    methods_used counts successful attempts by collection method.
    """
    to_date = as_utc(to_date or utcnow())
    from_date = as_utc(from_date or to_date - timedelta(hours=24))
    selected = [a for a in attempts if from_date <= a.timestamp <= to_date]
    methods = Counter(a.collection_method for a in selected if a.success and a.collection_method)
    successes = sum(1 for a in selected if a.success)

    return CollectionStatistics(
        period_start=from_date,
        period_end=to_date,
        total_collections=len(selected),
        successful_collections=successes,
        failed_collections=len(selected) - successes,
        average_latency_ms=_ratio(sum(a.latency_ms for a in selected), len(selected)),
        most_used_method=min(methods, key=lambda m: (-methods[m], m)) if methods else None,
        methods_used=dict(sorted(methods.items())),
    )


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0
