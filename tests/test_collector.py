"""
tests/test_collector.py
───────────────────────
Test suite for printwatch/telemetry/collector.py, printwatch/telemetry/sources.py
and printwatch/shared/telemetry.py

What we are testing
────────────────────
TelemetryCollector is the only component that talks to devices. It must:
  1. Sample every enabled device, skip disabled ones, and count both.
  2. Contain per-device failures: a broken source never raises out of
     collect_all(), it only increments failed_collections.
  3. Record a CollectionAttempt (with latency) for every device, every cycle.
  4. Keep the recent-sample buffer ordered and bounded.

Test groups
────────────
Group 1: Collection Cycle  — counts, disabled devices, attempts
Group 2: Failure Boundary  — injected faults, crashing sources, flagged samples
Group 3: Worker Pool       — concurrency bounded by collection_workers
Group 4: Recent Buffer     — ordering, cap, retention purge of buffer and store,
                             sources stamping naive UTC
Group 5: Sources           — simulated source hooks, fallback chain
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from printwatch.shared.config import PipelineConfig
from printwatch.shared.models import Device, RawTelemetrySample
from printwatch.shared.store import InMemoryRecordStore
from printwatch.shared.telemetry import RecentSampleBuffer
from printwatch.telemetry.collector import TelemetryCollector
from printwatch.telemetry.sources import (
    FallbackTelemetrySource,
    SimulatedTelemetrySource,
    TelemetrySource,
    TelemetrySourceError,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _CrashingSource(TelemetrySource):
    """Raises a non-source exception for one device, samples the rest."""

    def __init__(self, broken: str) -> None:
        self._broken = broken
        self._inner = SimulatedTelemetrySource(seed=1, noise=False)

    def sample(self, device: Device) -> RawTelemetrySample:
        if device.device_id == self._broken:
            raise RuntimeError("driver bug")
        return self._inner.sample(device)


class _FlaggedSource(TelemetrySource):
    """Returns samples marked collection_success=False."""

    def sample(self, device: Device) -> RawTelemetrySample:
        return RawTelemetrySample(device_id=device.device_id, collection_success=False)


class _FailingSource(TelemetrySource):

    def __init__(self, reason: str) -> None:
        self.reason = reason
        self.calls = 0

    def sample(self, device: Device) -> RawTelemetrySample:
        self.calls += 1
        raise TelemetrySourceError(device.device_id, self.reason)


class _PeakTrackingSource(TelemetrySource):
    """Tracks the peak number of concurrent sample() calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active = 0
        self.peak = 0

    def sample(self, device: Device) -> RawTelemetrySample:
        with self._lock:
            self._active += 1
            self.peak = max(self.peak, self._active)
        time.sleep(0.02)
        with self._lock:
            self._active -= 1
        return RawTelemetrySample(device_id=device.device_id, toner_pct=50.0)


def _make_collector(source: TelemetrySource, n_devices: int = 3, **config: object) -> TelemetryCollector:
    store = InMemoryRecordStore()
    collector = TelemetryCollector(store, source, PipelineConfig(**config))
    for i in range(n_devices):
        collector.register_device(Device(device_id=f"prn-{i:02d}"))
    return collector


def _sample_at(device_id: str, minutes: float) -> RawTelemetrySample:
    return RawTelemetrySample(device_id=device_id, timestamp=T0 + timedelta(minutes=minutes))


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Collection Cycle
# ─────────────────────────────────────────────────────────────────────────────

class TestCollectionCycle:

    def test_all_enabled_devices_sampled(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1), n_devices=4)
        result = collector.collect_all()

        assert result.total_devices == 4
        assert result.active_devices == 4
        assert result.successful_collections == 4
        assert result.failed_collections == 0
        assert result.samples_collected == 4
        assert result.finished_at >= result.started_at
        assert collector.buffer.count() == 4

    def test_disabled_devices_are_counted_but_not_sampled(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1), n_devices=2)
        collector.register_device(Device(device_id="prn-off", enabled=False))

        result = collector.collect_all()

        assert result.total_devices == 3
        assert result.active_devices == 2
        assert collector.buffer.count("prn-off") == 0

    def test_attempt_recorded_per_device(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1), n_devices=3)
        collector.collect_all()
        collector.collect_all()

        attempts = collector._store.list_attempts()
        assert len(attempts) == 6
        assert all(a.success and a.latency_ms >= 0.0 for a in attempts)
        assert {a.collection_method for a in attempts} == {"simulated"}

    def test_raw_samples_persisted(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1), n_devices=2)
        collector.collect_all()
        assert len(collector._store.list_raw_samples()) == 2

    def test_no_devices(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1), n_devices=0)
        result = collector.collect_all()
        assert result.total_devices == 0
        assert result.successful_collections == 0

    def test_remove_device(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1), n_devices=2)
        assert collector.remove_device("prn-00") is True
        assert collector.remove_device("prn-00") is False
        assert [d.device_id for d in collector.devices] == ["prn-01"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Failure Boundary
# ─────────────────────────────────────────────────────────────────────────────

class TestFailureBoundary:

    def test_injected_fault_counts_as_failure(self) -> None:
        source = SimulatedTelemetrySource(seed=1)
        collector = _make_collector(source, n_devices=3)
        source.inject_fault("prn-01", n_samples=1)

        result = collector.collect_all()

        assert result.successful_collections == 2
        assert result.failed_collections == 1
        assert collector.buffer.count("prn-01") == 0
        failed = [a for a in collector._store.list_attempts() if not a.success]
        assert len(failed) == 1
        assert failed[0].device_id == "prn-01"
        assert failed[0].error == "simulated timeout"
        assert failed[0].latency_ms >= 0.0

    def test_fault_expires_after_n_samples(self) -> None:
        source = SimulatedTelemetrySource(seed=1)
        collector = _make_collector(source, n_devices=1)
        source.inject_fault("prn-00", n_samples=2)

        outcomes = [collector.collect_all().failed_collections for _ in range(3)]

        assert outcomes == [1, 1, 0]

    def test_unexpected_exception_is_contained(self) -> None:
        collector = _make_collector(_CrashingSource("prn-02"), n_devices=3)
        result = collector.collect_all()

        assert result.failed_collections == 1
        assert result.successful_collections == 2

    def test_flagged_sample_counts_as_failure(self) -> None:
        collector = _make_collector(_FlaggedSource(), n_devices=2)
        result = collector.collect_all()

        assert result.failed_collections == 2
        assert result.samples_collected == 0
        assert collector.buffer.count() == 0

    def test_collect_one_returns_none_on_failure(self) -> None:
        collector = _make_collector(_FailingSource("refused"), n_devices=1)
        assert collector.collect_one(Device(device_id="prn-00")) is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Worker Pool
# ─────────────────────────────────────────────────────────────────────────────

class TestWorkerPool:

    def test_concurrency_bounded_by_config(self) -> None:
        tracker = _PeakTrackingSource()
        collector = _make_collector(tracker, n_devices=8, collection_workers=2)

        result = collector.collect_all()

        assert result.successful_collections == 8
        assert 1 <= tracker.peak <= 2


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Recent Buffer
# ─────────────────────────────────────────────────────────────────────────────

class TestRecentBuffer:

    def test_out_of_order_inserts_are_sorted(self) -> None:
        buffer = RecentSampleBuffer(retention=timedelta(hours=1), max_per_device=100)
        for minutes in (3, 1, 2, 0):
            buffer.add(_sample_at("prn-01", minutes))

        recent = buffer.recent("prn-01", timedelta(minutes=10), now=T0 + timedelta(minutes=4))
        assert [s.timestamp for s in recent] == [
            T0 + timedelta(minutes=m) for m in (3, 2, 1, 0)
        ]
        snapshot = buffer.snapshot()
        assert [s.timestamp for s in snapshot] == sorted(s.timestamp for s in snapshot)

    def test_per_device_cap_drops_oldest(self) -> None:
        buffer = RecentSampleBuffer(retention=timedelta(hours=1), max_per_device=3)
        for minutes in range(5):
            buffer.add(_sample_at("prn-01", minutes))

        assert buffer.count("prn-01") == 3
        assert buffer.snapshot()[0].timestamp == T0 + timedelta(minutes=2)

    def test_purge_is_idempotent(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1), n_devices=0)
        for minutes in (0, 30, 59, 61, 90):
            collector.buffer.add(_sample_at("prn-01", minutes))

        now = T0 + timedelta(minutes=120)
        assert collector.cleanup_recent(now) == 3
        assert collector.cleanup_recent(now) == 0
        assert collector.buffer.count() == 2

    def test_cleanup_trims_store_history(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1, clock=lambda: T0), n_devices=2)
        collector.collect_all()
        collector._store.append_raw_samples([_sample_at("prn-00", 90)])

        assert collector.cleanup_recent(now=T0 + timedelta(minutes=120)) == 2

        remaining = collector._store.list_raw_samples()
        assert [s.timestamp for s in remaining] == [T0 + timedelta(minutes=90)]

    def test_cleanup_drops_attempts_past_retention(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1), n_devices=1)
        collector.collect_all()
        stamped = collector._store.list_attempts()[0].timestamp

        collector.cleanup_recent(now=stamped + timedelta(days=6))
        assert len(collector._store.list_attempts()) == 1

        collector.cleanup_recent(now=stamped + timedelta(days=8))
        assert collector._store.list_attempts() == []

    def test_naive_clock_samples_are_stored_as_utc(self) -> None:
        naive = T0.replace(tzinfo=None)
        collector = _make_collector(SimulatedTelemetrySource(seed=1, clock=lambda: naive), n_devices=1)
        collector.collect_all()

        sample = collector._store.list_raw_samples()[0]
        assert sample.timestamp == T0
        assert sample.timestamp.tzinfo is not None
        assert collector.recent_metrics("prn-00", timedelta(minutes=5), now=naive) == [sample]
        assert collector.cleanup_recent(now=naive + timedelta(hours=2)) == 1
        assert collector.cleanup_recent() == 0

    def test_recent_metrics_window(self) -> None:
        collector = _make_collector(SimulatedTelemetrySource(seed=1), n_devices=0)
        for minutes in (0, 10, 20, 30):
            collector.buffer.add(_sample_at("prn-01", minutes))

        recent = collector.recent_metrics(
            "prn-01", timedelta(minutes=15), now=T0 + timedelta(minutes=30)
        )
        assert [s.timestamp for s in recent] == [
            T0 + timedelta(minutes=30), T0 + timedelta(minutes=20),
        ]

    def test_concurrent_add_and_purge(self) -> None:
        buffer = RecentSampleBuffer(retention=timedelta(minutes=30), max_per_device=10_000)

        def writer(device: str) -> None:
            for i in range(500):
                buffer.add(_sample_at(device, i * 0.1))

        threads = [threading.Thread(target=writer, args=(f"prn-{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for _ in range(20):
            buffer.purge(now=T0 + timedelta(minutes=10))
        for t in threads:
            t.join()

        buffer.purge(now=T0 + timedelta(minutes=60))
        for device in (f"prn-{i}" for i in range(4)):
            kept = buffer.recent(device, timedelta(hours=2), now=T0 + timedelta(minutes=60))
            assert all(s.timestamp >= T0 + timedelta(minutes=30) for s in kept)
            assert len(kept) == 200

    def test_invalid_limits_rejected(self) -> None:
        with pytest.raises(ValueError):
            RecentSampleBuffer(retention=timedelta(0), max_per_device=10)
        with pytest.raises(ValueError):
            RecentSampleBuffer(retention=timedelta(hours=1), max_per_device=0)


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Sources
# ─────────────────────────────────────────────────────────────────────────────

class TestSources:

    def test_simulated_source_without_noise_returns_baseline(self) -> None:
        source = SimulatedTelemetrySource(noise=False, clock=lambda: T0)
        source.set_baseline("prn-01", toner_pct=8.0, toner_depletion=0.0)

        sample = source.sample(Device(device_id="prn-01"))

        assert sample.toner_pct == pytest.approx(8.0)
        assert sample.timestamp == T0
        assert sample.collection_method == "simulated"

    def test_consumables_deplete(self) -> None:
        source = SimulatedTelemetrySource(noise=False)
        source.set_baseline("prn-01", toner_pct=10.0, toner_depletion=1.0)
        device = Device(device_id="prn-01")

        levels = [source.sample(device).toner_pct for _ in range(3)]
        assert levels == [10.0, 9.0, 8.0]

    def test_seeded_sources_are_reproducible(self) -> None:
        device = Device(device_id="prn-01")
        a = SimulatedTelemetrySource(seed=42, clock=lambda: T0)
        b = SimulatedTelemetrySource(seed=42, clock=lambda: T0)
        assert a.sample(device) == b.sample(device)

    def test_fallback_uses_first_answering_source(self) -> None:
        snmp = _FailingSource("timeout")
        wmi = SimulatedTelemetrySource(seed=1)
        source = FallbackTelemetrySource([("snmp", snmp), ("wmi", wmi)])

        sample = source.sample(Device(device_id="prn-01"))

        assert sample.collection_method == "wmi"
        assert snmp.calls == 1
        assert source.methods == ["snmp", "wmi"]

    def test_fallback_raises_when_every_source_fails(self) -> None:
        source = FallbackTelemetrySource([
            ("snmp", _FailingSource("timeout")),
            ("agent", _FailingSource("refused")),
        ])
        with pytest.raises(TelemetrySourceError) as info:
            source.sample(Device(device_id="prn-01"))
        assert "snmp: timeout" in info.value.reason
        assert "agent: refused" in info.value.reason

    def test_fallback_method_recorded_in_attempts(self) -> None:
        source = FallbackTelemetrySource([
            ("snmp", _FailingSource("timeout")),
            ("agent", SimulatedTelemetrySource(seed=1)),
        ])
        collector = _make_collector(source, n_devices=2)
        collector.collect_all()
        assert {a.collection_method for a in collector._store.list_attempts()} == {"agent"}
