"""
printwatch/control_plane/retrainer.py
─────────────────────────────────────
ModelRetrainer: guarded retraining of the live risk model.

What this is
─────────────
The last stage of the learning loop. retrain() turns the ready, unused
training records into candidate parameters and installs them only if they
are at least as good as the live ones on the same data.

Algorithm
──────────
  1. Non-blocking acquire of an exclusive lock. If another retrain holds
     it, return a BUSY run at once. BUSY runs are not stored and touch
     nothing.
  2. Snapshot ready, unused records newer than config.training_lookback and
     feedback newer than config.feedback_lookback. Records arriving after
     this point wait for the next run.
  3. Fewer than config.min_training_records → INSUFFICIENT_DATA, not updated.
  4. Re-weight each record by the quality of recent feedback on its
     prediction:
         weight × (0.5 + mean_quality / 3), capped at max_training_weight
     Fit a candidate through MaintenancePredictor.train(), then evaluate
     live and candidate parameters on the same examples.
         delta = quality_after - quality_before
         delta ≥ 0  → COMPLETED, see Install below
         delta < 0  → REGRESSION_REJECTED, no swap, records stay unused
  5. Any fault in 2–4 (typically RecordStoreError) → FAILED run with the
     error as an issue. The live parameters are untouched.

Install
───────
Every fallible write happens before the parameter swap:
  reserve run id → mark records used → append COMPLETED run → swap
A fault while marking or appending releases the marks, so the history
holds only the FAILED run and the live parameters never changed.

Every non-busy run is appended to the run history.

Integration
───────────
  Reads:   training records, feedback, live parameters (RecordStore)
  Writes:  RetrainingRun, live parameters, record "used" markers
  Called by: control_plane/pipeline_service.py
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from printwatch.control_plane.feedback import feedback_quality
from printwatch.control_plane.predictor import MaintenancePredictor
from printwatch.shared.config import DEFAULT_CONFIG, PipelineConfig
from printwatch.shared.models import (
    PredictionFeedback,
    RetrainingRun,
    RetrainingStatus,
    TrainingDataRecord,
    as_utc,
    utcnow,
)
from printwatch.shared.store import RecordStore, RecordStoreError
from risk_core.parameters import ModelParameters
from risk_core.trainer import evaluate

logger = logging.getLogger(__name__)

BUSY_ISSUE: str = "another retraining run is in progress"
"""Issue attached to BUSY runs."""


class RunNotFoundError(Exception):
    """
    Raised when a lookup references a retraining run id that was never stored.

    Attributes:
        run_id: The unknown id.
    """

    def __init__(self, run_id: int) -> None:
        super().__init__(f"retraining run {run_id} not found")
        self.run_id = run_id


class ModelRetrainer:
    """
    Runs at most one retraining at a time and guards against regressions.

    Usage:
        retrainer = ModelRetrainer(store, predictor, config)
        run = retrainer.retrain()
        if run.model_updated:
            ...   # predictor.predict() now scores with the new parameters
    """

    def __init__(
        self,
        store: RecordStore,
        predictor: MaintenancePredictor,
        config: PipelineConfig = DEFAULT_CONFIG,
    ) -> None:
        self._store = store
        self._predictor = predictor
        self._config = config
        self._lock = threading.Lock()

    # ── Public API ────────────────────────────────────────────────────────────

    def retrain(self, now: Optional[datetime] = None) -> RetrainingRun:
        """
        Attempt one retraining. Never raises for business conditions.

        Returns:
            The run record. Stored in the history unless its status is BUSY.
        """
        now = as_utc(now or utcnow())
        if not self._lock.acquire(blocking=False):
            logger.warning("Retrain requested while another run is in progress")
            return RetrainingRun(
                status=RetrainingStatus.BUSY,
                started_at=now,
                finished_at=utcnow(),
                issues=[BUSY_ISSUE],
            )
        try:
            return self._run(now)
        finally:
            self._lock.release()

    def history(self) -> List[RetrainingRun]:
        """Every stored run, oldest first."""
        return self._store.list_runs()

    def get_run(self, run_id: int) -> RetrainingRun:
        """
        Raises:
            RunNotFoundError: if no stored run has this id. BUSY runs are never stored.
        """
        for run in self._store.list_runs():
            if run.run_id == run_id:
                return run
        raise RunNotFoundError(run_id)

    def last_successful_run(self) -> Optional[RetrainingRun]:
        for run in reversed(self._store.list_runs()):
            if run.model_updated:
                return run
        return None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _run(self, started_at: datetime) -> RetrainingRun:
        old = self._store.live_parameters()
        reserved: Optional[int] = None
        records: List[TrainingDataRecord] = []
        feedback: List[PredictionFeedback] = []
        try:
            # ── Snapshot ──────────────────────────────────────────────────────
            records = self._store.list_training_records(
                ready_only=True,
                unused_only=True,
                since=started_at - self._config.training_lookback,
            )
            feedback = self._store.list_feedback(
                since=started_at - self._config.feedback_lookback
            )

            # ── Sufficiency ───────────────────────────────────────────────────
            minimum = self._config.min_training_records
            if len(records) < minimum:
                logger.info("Retrain skipped: %d ready records, need %d", len(records), minimum)
                return self._store.append_run(RetrainingRun(
                    status=RetrainingStatus.INSUFFICIENT_DATA,
                    started_at=started_at,
                    finished_at=utcnow(),
                    training_data_size=len(records),
                    feedback_data_size=len(feedback),
                    issues=[f"insufficient training data ({len(records)} < {minimum})"],
                ))

            # ── Fit and evaluate ──────────────────────────────────────────────
            weighted = self._reweight(records, feedback)
            examples = self._predictor.training_examples(weighted)
            issues: List[str] = []
            skipped = len(weighted) - len(examples)
            if skipped:
                issues.append(f"{skipped} records without input data skipped")
            if len(examples) < minimum:
                issues.insert(0, f"insufficient training data ({len(examples)} usable < {minimum})")
                return self._store.append_run(RetrainingRun(
                    status=RetrainingStatus.INSUFFICIENT_DATA,
                    started_at=started_at,
                    finished_at=utcnow(),
                    training_data_size=len(records),
                    feedback_data_size=len(feedback),
                    issues=issues,
                ))

            result = self._predictor.train(weighted, base=old)
            candidate: ModelParameters = result.parameters  # type: ignore[assignment]
            before = evaluate(old, examples)
            after = evaluate(candidate, examples)
            delta = after - before

            if delta < 0:
                issues.append(
                    f"candidate regressed quality by {-delta:.4f}; live parameters kept"
                )
                logger.warning(
                    "Retrain rejected: quality %.4f → %.4f (delta %.4f)", before, after, delta
                )
                return self._store.append_run(RetrainingRun(
                    status=RetrainingStatus.REGRESSION_REJECTED,
                    started_at=started_at,
                    finished_at=utcnow(),
                    training_data_size=len(records),
                    feedback_data_size=len(feedback),
                    quality_before=before,
                    quality_after=after,
                    quality_delta=delta,
                    issues=issues,
                    model_updated=False,
                ))

            # ── Install ───────────────────────────────────────────────────────
            reserved = self._store.reserve_run_id()
            self._store.mark_records_used((r.record_id for r in records), reserved)
            run = self._store.append_run(RetrainingRun(
                run_id=reserved,
                status=RetrainingStatus.COMPLETED,
                started_at=started_at,
                finished_at=utcnow(),
                training_data_size=len(records),
                feedback_data_size=len(feedback),
                quality_before=before,
                quality_after=after,
                quality_delta=delta,
                issues=issues,
                model_updated=True,
                model_version=candidate.version,
            ))
            self._store.replace_parameters(candidate)
            logger.info(
                "Retrain %d installed %s: quality %.4f → %.4f on %d records",
                run.run_id, candidate.version, before, after, len(records),
            )
            return run

        except Exception as exc:
            logger.exception("Retrain failed")
            if reserved is not None:
                self._release(reserved)
            return self._store.append_run(RetrainingRun(
                status=RetrainingStatus.FAILED,
                started_at=started_at,
                finished_at=utcnow(),
                training_data_size=len(records),
                feedback_data_size=len(feedback),
                issues=[f"{type(exc).__name__}: {exc}"],
                model_updated=False,
            ))

    def _release(self, run_id: int) -> None:
        try:
            released = self._store.release_records(run_id)
        except RecordStoreError:
            logger.exception("Could not release records marked for run %d", run_id)
            return
        if released:
            logger.info("Released %d records marked for failed run %d", released, run_id)

    def _reweight(
        self,
        records: List[TrainingDataRecord],
        feedback: List[PredictionFeedback],
    ) -> List[TrainingDataRecord]:
        """Copies of `records` with weights adjusted by recent feedback quality."""
        qualities: Dict[int, List[int]] = defaultdict(list)
        for entry in feedback:
            quality = feedback_quality(entry, self._config.feedback_high_comment_length)
            qualities[entry.prediction_id].append(quality.value)

        cap = self._config.max_training_weight
        weighted: List[TrainingDataRecord] = []
        for record in records:
            scores = qualities.get(record.prediction_id)
            weight = record.training_weight
            if scores:
                weight *= 0.5 + (sum(scores) / len(scores)) / 3.0
            weighted.append(record.model_copy(update={"training_weight": min(weight, cap)}))
        return weighted

    def __repr__(self) -> str:
        return (
            f"ModelRetrainer(runs={len(self._store.list_runs())}, "
            f"min_records={self._config.min_training_records}, "
            f"running={self.is_running})"
        )
