"""
printwatch/control_plane/predictor.py
─────────────────────────────────────
MaintenancePredictor: clean aggregates → per-failure-type maintenance forecasts.

What this is
─────────────
The decision-making stage of the pipeline. It answers: "Given how this
printer has looked over its last few clean windows, which problems are
coming, how likely are they, and how soon?"

Prediction path
────────────────
For one device:

  1. Read the latest config.lookback_windows aggregates (oldest first).
  2. For each FailureType:
       x = risk_core.extract_features(type, aggregates)   None → omit type
       p = risk_core.score(live_parameters, type, x)      p < floor → omit
  3. Lead time:      days_until_event = ceil(horizon_days × (1 - p))
                     estimated_date   = now + days_until_event
  4. Confidence:     mean_quality / 100
                     × min(1, windows / lookback_windows)
                     × (0.5 + 0.5 × fit_quality of the live parameters)
  5. Severity and recommended action from control_plane/severity.py.
  6. Store the prediction. It supersedes the live prediction for the same
     (device, failure type).

Types below the signal floor are omitted rather than emitted with a tiny
probability, so get_recent_predictions() only shows things worth reading.

Training
─────────
train() builds labelled examples from training records and hands them to
the fitter strategy (risk_core.fit_parameters by default, a torch weighted
logistic fit). It returns candidate parameters WITHOUT installing them:
whether a candidate goes live is the retrainer's decision.

Live parameters
────────────────
predict() reads store.live_parameters() once per call and uses that object
for every failure type. The retrainer swaps the reference atomically, so a
prediction is scored entirely by the old or entirely by the new parameters.

Integration
───────────
  Reads:   RecordStore aggregates + live parameters
  Writes:  MaintenancePrediction (RecordStore)
  Called by: control_plane/pipeline_service.py, control_plane/retrainer.py
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

import numpy as np

from printwatch.control_plane.severity import recommended_action, severity_for
from printwatch.shared.config import DEFAULT_CONFIG, PipelineConfig
from printwatch.shared.models import (
    FailureType,
    MaintenancePrediction,
    TrainingDataRecord,
    TrainingResult,
    utcnow,
)
from printwatch.shared.store import RecordStore
from risk_core.features import extract_features
from risk_core.parameters import ModelParameters, score
from risk_core.trainer import LabelledExample, evaluate, fit_parameters

logger = logging.getLogger(__name__)

Fitter = Callable[..., ModelParameters]
"""fitter(examples, base, epochs=..., learning_rate=..., version=...) -> ModelParameters"""


class MaintenancePredictor:
    """
    Per-device risk forecaster backed by the store's live parameters.

    One instance serves every device. Stateless apart from its collaborators,
    so it can be called from several threads at once.

    Lifecycle:
        predictor = MaintenancePredictor(store, config)
        predictions = predictor.predict("prn-01")          # scored + stored
        result = predictor.train(records)                  # candidate only
        store.replace_parameters(result.parameters)        # retrainer's call
    """

    def __init__(
        self,
        store: RecordStore,
        config: PipelineConfig = DEFAULT_CONFIG,
        fitter: Fitter = fit_parameters,
    ) -> None:
        self._store = store
        self._config = config
        self._fitter = fitter

    # ── Prediction ────────────────────────────────────────────────────────────

    def predict(
        self,
        device_id: str,
        horizon: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> List[MaintenancePrediction]:
        """
        Forecast every failure type with signal for one device and store them.

        Args:
            device_id: Device to forecast.
            horizon:   Forecast horizon. Defaults to config.default_horizon.
            now:       Reference time for created_at / estimated_date.

        Returns:
            Stored predictions, in FailureType order. Empty if the device has
            no clean aggregates or no type clears the signal floor.
        """
        horizon = horizon or self._config.default_horizon
        if horizon <= timedelta(0):
            raise ValueError("prediction horizon must be positive")
        now = now or utcnow()

        aggregates = self._store.latest_aggregates(device_id, self._config.lookback_windows)
        if not aggregates:
            logger.debug("No clean aggregates for %s; nothing to predict", device_id)
            return []

        parameters = self._store.live_parameters()
        mean_quality = float(np.mean([a.data_quality_score for a in aggregates]))
        window_factor = min(1.0, len(aggregates) / self._config.lookback_windows)
        horizon_days = horizon.total_seconds() / 86400.0

        predictions: List[MaintenancePrediction] = []
        for failure_type in FailureType:
            features = extract_features(
                failure_type, aggregates, self._config.expected_samples_per_window
            )
            if features is None:
                continue
            probability = score(parameters, failure_type, features)
            if probability < self._config.signal_floor:
                continue

            days = days_until_event(probability, horizon_days)
            confidence = _clamp01(
                mean_quality / 100.0
                * window_factor
                * (0.5 + 0.5 * parameters.fit_quality(failure_type))
            )
            prediction = self._store.add_prediction(MaintenancePrediction(
                device_id=device_id,
                failure_type=failure_type,
                probability=probability,
                confidence=confidence,
                estimated_date=now + timedelta(days=days),
                days_until_event=days,
                recommended_action=recommended_action(
                    failure_type, severity_for(probability, days)
                ),
                created_at=now,
                model_version=parameters.version,
                input_snapshot=aggregates[-1],
                input_features=[float(v) for v in features],
            ))
            predictions.append(prediction)

        logger.info(
            "Predicted %d failure types for %s (windows=%d, quality=%.1f, model=%s)",
            len(predictions), device_id, len(aggregates), mean_quality, parameters.version,
        )
        return predictions

    # ── Training ──────────────────────────────────────────────────────────────

    def train(
        self,
        training_set: Sequence[TrainingDataRecord],
        base: Optional[ModelParameters] = None,
        version: Optional[str] = None,
    ) -> TrainingResult:
        """
        Fit candidate parameters on `training_set`. Does NOT install them.

        Args:
            training_set: Ready training records. training_weight is used as-is.
            base:         Warm-start parameters. Defaults to the live ones.
            version:      Version for the candidate. Fitter default if None.

        Returns:
            TrainingResult with the candidate and its fit quality on the set.
        """
        started = time.perf_counter()
        base = base or self._store.live_parameters()
        examples = self.training_examples(training_set)
        candidate = self._fitter(
            examples,
            base,
            epochs=self._config.train_epochs,
            learning_rate=self._config.learning_rate,
            version=version,
        )
        result = TrainingResult(
            training_data_size=len(training_set),
            duration=timedelta(seconds=time.perf_counter() - started),
            fit_quality=evaluate(candidate, examples),
            parameters=candidate,
        )
        logger.info(
            "Trained candidate %s on %d records (%d usable) fit_quality=%.3f",
            candidate.version, len(training_set), len(examples), result.fit_quality,
        )
        return result

    def training_examples(
        self, records: Sequence[TrainingDataRecord]
    ) -> List[LabelledExample]:
        """
        Labelled examples for the records that carry input data.

        Uses the stored feature vector when present, else re-extracts from
        the input snapshot. Records with neither are skipped.
        """
        examples: List[LabelledExample] = []
        for record in records:
            features: Optional[Sequence[float]] = record.input_features or None
            if features is None and record.input_snapshot is not None:
                extracted = extract_features(
                    record.failure_type,
                    [record.input_snapshot],
                    self._config.expected_samples_per_window,
                )
                features = None if extracted is None else extracted.tolist()
            if features is None:
                logger.debug("Record %d has no input data; skipped", record.record_id)
                continue
            examples.append(LabelledExample(
                failure_type=record.failure_type,
                features=list(features),
                label=1.0 if record.event_occurred else 0.0,
                weight=record.training_weight,
            ))
        return examples

    def __repr__(self) -> str:
        return (
            f"MaintenancePredictor(model={self._store.live_parameters().version}, "
            f"lookback={self._config.lookback_windows}, "
            f"floor={self._config.signal_floor})"
        )


# ── Utility ───────────────────────────────────────────────────────────────────

def days_until_event(probability: float, horizon_days: float) -> int:
    """ceil(horizon_days × (1 - probability)), never negative."""
    return max(int(math.ceil(round(horizon_days * (1.0 - probability), 9))), 0)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))
