"""
printwatch/shared/store.py
──────────────────────────
RecordStore: persistence contract for every record the pipeline keeps.

What this is
─────────────
The pipeline components never hold long-lived state of their own. Devices,
collection attempts, clean aggregates, predictions, feedback, training
records, retraining runs and the live model parameters all live behind the
RecordStore interface. InMemoryRecordStore is the bundled implementation;
a database-backed store implements the same abstract methods.

Write semantics
───────────────
  append-only   raw samples, collection attempts, predictions, feedback,
                training records, retraining runs. Ids are assigned by the
                store, sequentially from 1. A retraining run id can
                be reserved before the run is appended.
  upsert        clean aggregates, keyed on (device_id, window_start). Writing
                the same aggregate twice leaves one copy.
  supersede     add_prediction() makes the new prediction the live one for
                its (device_id, failure_type). Older ones stay readable by id.
  mark used     the only in-place change to a training record. A run that
                fails after marking releases its marks again.
  purge         raw samples and collection attempts are retained only for
                a bounded window. purge_raw_samples() and purge_attempts()
                drop everything older than a cutoff.
  swap          replace_parameters() swaps the live ModelParameters reference
                under the lock. Readers holding the old object keep a
                complete, consistent set of parameters.

Errors
──────
RecordStoreError signals a true fault (backend unavailable, corrupt or
missing record on a write path). Lookups of unknown ids return None.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from printwatch.shared.models import (
    CleanTelemetryAggregate,
    CollectionAttempt,
    Device,
    FailureType,
    MaintenancePrediction,
    PredictionFeedback,
    RawTelemetrySample,
    RetrainingRun,
    TrainingDataRecord,
    as_utc,
)
from risk_core.parameters import DEFAULT_PARAMETERS, ModelParameters


class RecordStoreError(Exception):
    """
    Raised when the store cannot complete an operation.

    Attributes:
        reason: Human-readable description of the fault.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class RecordStore(ABC):
    """Persistence contract. See the module docstring for write semantics."""

    # ── Devices ───────────────────────────────────────────────────────────────

    @abstractmethod
    def save_device(self, device: Device) -> Device: ...

    @abstractmethod
    def delete_device(self, device_id: str) -> bool: ...

    @abstractmethod
    def get_device(self, device_id: str) -> Optional[Device]: ...

    @abstractmethod
    def list_devices(self) -> List[Device]: ...

    # ── Raw telemetry and collection attempts ─────────────────────────────────

    @abstractmethod
    def append_raw_samples(self, samples: Iterable[RawTelemetrySample]) -> int: ...

    @abstractmethod
    def list_raw_samples(
        self,
        device_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[RawTelemetrySample]: ...

    @abstractmethod
    def purge_raw_samples(self, before: datetime) -> int:
        """Drop raw samples stamped before `before`. Returns the count removed."""

    @abstractmethod
    def append_attempt(self, attempt: CollectionAttempt) -> None: ...

    @abstractmethod
    def list_attempts(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[CollectionAttempt]: ...

    @abstractmethod
    def purge_attempts(self, before: datetime) -> int: ...

    # ── Clean aggregates ──────────────────────────────────────────────────────

    @abstractmethod
    def upsert_aggregates(self, aggregates: Iterable[CleanTelemetryAggregate]) -> int: ...

    @abstractmethod
    def latest_aggregates(self, device_id: str, limit: int) -> List[CleanTelemetryAggregate]:
        """The `limit` newest aggregates for a device, oldest first."""

    @abstractmethod
    def list_aggregates(self, device_id: Optional[str] = None) -> List[CleanTelemetryAggregate]: ...

    # ── Predictions ───────────────────────────────────────────────────────────

    @abstractmethod
    def add_prediction(self, prediction: MaintenancePrediction) -> MaintenancePrediction: ...

    @abstractmethod
    def get_prediction(self, prediction_id: int) -> Optional[MaintenancePrediction]: ...

    @abstractmethod
    def live_predictions(self, device_id: Optional[str] = None) -> List[MaintenancePrediction]: ...

    @abstractmethod
    def list_predictions(self, device_id: Optional[str] = None) -> List[MaintenancePrediction]: ...

    # ── Feedback and training records ─────────────────────────────────────────

    @abstractmethod
    def add_feedback(self, feedback: PredictionFeedback) -> PredictionFeedback: ...

    @abstractmethod
    def get_feedback(self, feedback_id: int) -> Optional[PredictionFeedback]: ...

    @abstractmethod
    def list_feedback(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[PredictionFeedback]: ...

    @abstractmethod
    def add_training_record(self, record: TrainingDataRecord) -> TrainingDataRecord: ...

    @abstractmethod
    def training_record_for_feedback(self, feedback_id: int) -> Optional[TrainingDataRecord]: ...

    @abstractmethod
    def list_training_records(
        self,
        ready_only: bool = False,
        unused_only: bool = False,
        since: Optional[datetime] = None,
    ) -> List[TrainingDataRecord]: ...

    @abstractmethod
    def mark_records_used(self, record_ids: Iterable[int], run_id: int) -> int: ...

    @abstractmethod
    def release_records(self, run_id: int) -> int:
        """Clear the used marker of every record marked for `run_id`."""

    # ── Retraining runs and live parameters ───────────────────────────────────

    @abstractmethod
    def reserve_run_id(self) -> int: ...

    @abstractmethod
    def append_run(self, run: RetrainingRun) -> RetrainingRun:
        """Store a run. A non-zero run_id (from reserve_run_id()) is kept as is."""

    @abstractmethod
    def list_runs(self) -> List[RetrainingRun]: ...

    @abstractmethod
    def live_parameters(self) -> ModelParameters: ...

    @abstractmethod
    def replace_parameters(self, parameters: ModelParameters) -> None: ...


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe, process-local RecordStore.

    One lock guards every collection. Reads return copies of the internal
    lists, so callers can iterate without holding the lock.

    Usage:
        store = InMemoryRecordStore()
        pred = store.add_prediction(prediction)   # returns the stored copy with its id
    """

    def __init__(self, parameters: ModelParameters = DEFAULT_PARAMETERS) -> None:
        self._lock = threading.RLock()
        self._devices: Dict[str, Device] = {}
        self._raw: List[RawTelemetrySample] = []
        self._attempts: List[CollectionAttempt] = []
        self._aggregates: Dict[Tuple[str, datetime], CleanTelemetryAggregate] = {}
        self._predictions: Dict[int, MaintenancePrediction] = {}
        self._live: Dict[Tuple[str, FailureType], int] = {}
        self._feedback: Dict[int, PredictionFeedback] = {}
        self._records: Dict[int, TrainingDataRecord] = {}
        self._record_by_feedback: Dict[int, int] = {}
        self._runs: List[RetrainingRun] = []
        self._parameters: ModelParameters = parameters
        self._next_id: Dict[str, int] = {
            "prediction": 1, "feedback": 1, "record": 1, "run": 1,
        }

    # ── Devices ───────────────────────────────────────────────────────────────

    def save_device(self, device: Device) -> Device:
        with self._lock:
            self._devices[device.device_id] = device
        return device

    def delete_device(self, device_id: str) -> bool:
        with self._lock:
            return self._devices.pop(device_id, None) is not None

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._lock:
            return self._devices.get(device_id)

    def list_devices(self) -> List[Device]:
        with self._lock:
            return [self._devices[k] for k in sorted(self._devices)]

    # ── Raw telemetry and collection attempts ─────────────────────────────────

    def append_raw_samples(self, samples: Iterable[RawTelemetrySample]) -> int:
        batch = list(samples)
        with self._lock:
            self._raw.extend(batch)
        return len(batch)

    def list_raw_samples(
        self,
        device_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[RawTelemetrySample]:
        with self._lock:
            return [
                s for s in self._raw
                if (device_id is None or s.device_id == device_id)
                and _in_range(s.timestamp, since, until)
            ]

    def purge_raw_samples(self, before: datetime) -> int:
        cutoff = as_utc(before)
        with self._lock:
            kept = [s for s in self._raw if s.timestamp >= cutoff]
            removed = len(self._raw) - len(kept)
            self._raw = kept
        return removed

    def append_attempt(self, attempt: CollectionAttempt) -> None:
        with self._lock:
            self._attempts.append(attempt)

    def list_attempts(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[CollectionAttempt]:
        with self._lock:
            return [a for a in self._attempts if _in_range(a.timestamp, since, until)]

    def purge_attempts(self, before: datetime) -> int:
        cutoff = as_utc(before)
        with self._lock:
            kept = [a for a in self._attempts if a.timestamp >= cutoff]
            removed = len(self._attempts) - len(kept)
            self._attempts = kept
        return removed

    # ── Clean aggregates ──────────────────────────────────────────────────────

    def upsert_aggregates(self, aggregates: Iterable[CleanTelemetryAggregate]) -> int:
        count = 0
        with self._lock:
            for aggregate in aggregates:
                self._aggregates[(aggregate.device_id, aggregate.window_start)] = aggregate
                count += 1
        return count

    def latest_aggregates(self, device_id: str, limit: int) -> List[CleanTelemetryAggregate]:
        if limit <= 0:
            return []
        return self.list_aggregates(device_id)[-limit:]

    def list_aggregates(self, device_id: Optional[str] = None) -> List[CleanTelemetryAggregate]:
        with self._lock:
            keys = sorted(
                k for k in self._aggregates if device_id is None or k[0] == device_id
            )
            return [self._aggregates[k] for k in keys]

    # ── Predictions ───────────────────────────────────────────────────────────

    def add_prediction(self, prediction: MaintenancePrediction) -> MaintenancePrediction:
        with self._lock:
            stored = prediction.model_copy(update={"prediction_id": self._take_id("prediction")})
            self._predictions[stored.prediction_id] = stored
            self._live[(stored.device_id, stored.failure_type)] = stored.prediction_id
        return stored

    def get_prediction(self, prediction_id: int) -> Optional[MaintenancePrediction]:
        with self._lock:
            return self._predictions.get(prediction_id)

    def live_predictions(self, device_id: Optional[str] = None) -> List[MaintenancePrediction]:
        with self._lock:
            ids = sorted(
                pid for (dev, _), pid in self._live.items()
                if device_id is None or dev == device_id
            )
            return [self._predictions[pid] for pid in ids]

    def list_predictions(self, device_id: Optional[str] = None) -> List[MaintenancePrediction]:
        with self._lock:
            return [
                p for _, p in sorted(self._predictions.items())
                if device_id is None or p.device_id == device_id
            ]

    # ── Feedback and training records ─────────────────────────────────────────

    def add_feedback(self, feedback: PredictionFeedback) -> PredictionFeedback:
        with self._lock:
            if feedback.prediction_id not in self._predictions:
                raise RecordStoreError(
                    f"feedback references unknown prediction {feedback.prediction_id}"
                )
            stored = feedback.model_copy(update={"feedback_id": self._take_id("feedback")})
            self._feedback[stored.feedback_id] = stored
        return stored

    def get_feedback(self, feedback_id: int) -> Optional[PredictionFeedback]:
        with self._lock:
            return self._feedback.get(feedback_id)

    def list_feedback(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[PredictionFeedback]:
        with self._lock:
            return [
                f for _, f in sorted(self._feedback.items())
                if _in_range(f.created_at, since, until)
            ]

    def add_training_record(self, record: TrainingDataRecord) -> TrainingDataRecord:
        with self._lock:
            if record.feedback_id in self._record_by_feedback:
                raise RecordStoreError(
                    f"feedback {record.feedback_id} already has a training record"
                )
            stored = record.model_copy(update={"record_id": self._take_id("record")})
            self._records[stored.record_id] = stored
            self._record_by_feedback[stored.feedback_id] = stored.record_id
        return stored

    def training_record_for_feedback(self, feedback_id: int) -> Optional[TrainingDataRecord]:
        with self._lock:
            record_id = self._record_by_feedback.get(feedback_id)
            return None if record_id is None else self._records[record_id]

    def list_training_records(
        self,
        ready_only: bool = False,
        unused_only: bool = False,
        since: Optional[datetime] = None,
    ) -> List[TrainingDataRecord]:
        with self._lock:
            return [
                r for _, r in sorted(self._records.items())
                if (not ready_only or r.is_ready_for_training)
                and (not unused_only or not r.is_used)
                and _in_range(r.created_at, since, None)
            ]

    def mark_records_used(self, record_ids: Iterable[int], run_id: int) -> int:
        ids = list(record_ids)
        with self._lock:
            missing = [rid for rid in ids if rid not in self._records]
            if missing:
                raise RecordStoreError(f"unknown training records: {missing}")
            for rid in ids:
                self._records[rid] = self._records[rid].model_copy(
                    update={"used_in_run_id": run_id}
                )
        return len(ids)

    def release_records(self, run_id: int) -> int:
        with self._lock:
            marked = [rid for rid, r in self._records.items() if r.used_in_run_id == run_id]
            for rid in marked:
                self._records[rid] = self._records[rid].model_copy(
                    update={"used_in_run_id": None}
                )
        return len(marked)

    # ── Retraining runs and live parameters ───────────────────────────────────

    def reserve_run_id(self) -> int:
        with self._lock:
            return self._take_id("run")

    def append_run(self, run: RetrainingRun) -> RetrainingRun:
        with self._lock:
            stored = run if run.run_id else run.model_copy(
                update={"run_id": self._take_id("run")}
            )
            self._runs.append(stored)
        return stored

    def list_runs(self) -> List[RetrainingRun]:
        with self._lock:
            return list(self._runs)

    def live_parameters(self) -> ModelParameters:
        # Single reference read; replace_parameters() swaps whole objects.
        return self._parameters

    def replace_parameters(self, parameters: ModelParameters) -> None:
        with self._lock:
            self._parameters = parameters

    # ── Internals ─────────────────────────────────────────────────────────────

    def _take_id(self, kind: str) -> int:
        value = self._next_id[kind]
        self._next_id[kind] = value + 1
        return value

    def __repr__(self) -> str:
        return (
            f"InMemoryRecordStore(devices={len(self._devices)}, "
            f"predictions={len(self._predictions)}, "
            f"feedback={len(self._feedback)}, "
            f"records={len(self._records)}, runs={len(self._runs)})"
        )


def _in_range(ts: datetime, since: Optional[datetime], until: Optional[datetime]) -> bool:
    if since is not None and ts < as_utc(since):
        return False
    if until is not None and ts > as_utc(until):
        return False
    return True
