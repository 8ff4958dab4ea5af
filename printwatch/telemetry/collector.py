"""
printwatch/telemetry/collector.py
─────────────────────────────────
TelemetryCollector: one collection cycle across every registered printer.

What this is
─────────────
The first stage of the pipeline. Each call to collect_all():

  1. Reads the device registry from the store.
  2. Samples every enabled device through the TelemetrySource, on a bounded
     worker pool (config.collection_workers).
  3. Records a CollectionAttempt per device, success or failure, with the
     latency of the source call.
  4. Appends successful samples to the store (raw history) and to the
     RecentSampleBuffer the cleaner reads from.

Failure boundary
────────────────
Each device is sampled inside its own try/except. A device that times out,
refuses, or returns a sample flagged collection_success=False contributes
zero samples and one failure to the tally. Nothing propagates to the
caller: one broken printer never stops the cycle for the other 200.

Design
───────
- The source is a strategy (printwatch/telemetry/sources.py). Swapping the
  simulated source for a real poller changes nothing here.
- Latency is measured with time.perf_counter() around the source call, so
  a device that hangs for 5s before failing shows up as a 5000ms failure.
- The buffer keeps per-device timestamp order regardless of which worker
  finishes first.

Integration contract
─────────────────────
    collector = TelemetryCollector(store, source, config)
    collector.register_device(Device(device_id="prn-01"))
    result = collector.collect_all()
    collector.cleanup_recent()          # periodic, drops raw samples older than 1h
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import List, Optional

from printwatch.shared.config import DEFAULT_CONFIG, PipelineConfig
from printwatch.shared.models import (
    CollectionAttempt,
    CollectionResult,
    Device,
    RawTelemetrySample,
    as_utc,
    utcnow,
)
from printwatch.shared.store import RecordStore
from printwatch.shared.telemetry import RecentSampleBuffer
from printwatch.telemetry.sources import TelemetrySource, TelemetrySourceError

logger = logging.getLogger(__name__)


class TelemetryCollector:
    """
    Samples registered devices and buffers the results.

    Thread safety:
        collect_all() fans out to a ThreadPoolExecutor. The store and the
        buffer are both lock-protected, so workers write concurrently.
        cleanup_recent() may run while a cycle is in flight.

    Attributes (public, readable by tests):
        buffer : RecentSampleBuffer — the recent-window sample buffer
    """

    def __init__(
        self,
        store: RecordStore,
        source: TelemetrySource,
        config: PipelineConfig = DEFAULT_CONFIG,
        buffer: Optional[RecentSampleBuffer] = None,
    ) -> None:
        self._store = store
        self._source = source
        self._config = config
        self.buffer = buffer or RecentSampleBuffer(
            retention=config.raw_retention,
            max_per_device=config.raw_buffer_max_per_device,
        )
        self._cycles: int = 0

    # ── Device registry ───────────────────────────────────────────────────────

    def register_device(self, device: Device) -> Device:
        """Add or replace a device in the registry."""
        logger.debug("Registering device %s (enabled=%s)", device.device_id, device.enabled)
        return self._store.save_device(device)

    def remove_device(self, device_id: str) -> bool:
        """Remove a device. Its history stays in the store. False if unknown."""
        return self._store.delete_device(device_id)

    @property
    def devices(self) -> List[Device]:
        return self._store.list_devices()

    # ── Public API ────────────────────────────────────────────────────────────

    def collect_all(self) -> CollectionResult:
        """
        Sample every enabled device once.

        Never raises for per-device failures. They are logged and counted.

        Returns:
            CollectionResult with device counts, success/failure tallies and
            the cycle's start/finish times.
        """
        started_at = utcnow()
        devices = self._store.list_devices()
        active = [d for d in devices if d.enabled]

        successes = 0
        failures = 0
        if active:
            workers = min(self._config.collection_workers, len(active))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {pool.submit(self.collect_one, d): d for d in active}
                for fut in as_completed(futures):
                    device = futures[fut]
                    try:
                        sample = fut.result()
                    except Exception:
                        # collect_one has its own boundary; this only fires on a bug there
                        logger.exception("Collection worker crashed for %s", device.device_id)
                        sample = None
                    if sample is None:
                        failures += 1
                    else:
                        successes += 1

        self._cycles += 1
        result = CollectionResult(
            total_devices=len(devices),
            active_devices=len(active),
            successful_collections=successes,
            failed_collections=failures,
            samples_collected=successes,
            started_at=started_at,
            finished_at=utcnow(),
        )
        logger.info(
            "Collection cycle %d: %d/%d active devices sampled, %d failed in %.0fms",
            self._cycles, successes, len(active), failures,
            result.duration.total_seconds() * 1000.0,
        )
        return result

    def collect_one(self, device: Device) -> Optional[RawTelemetrySample]:
        """
        Sample one device inside its own failure boundary.

        Returns:
            The buffered sample, or None if the device could not be sampled.
            A CollectionAttempt is recorded either way.
        """
        started = time.perf_counter()
        sample: Optional[RawTelemetrySample] = None
        error: Optional[str] = None
        try:
            sample = self._source.sample(device)
        except TelemetrySourceError as exc:
            error = exc.reason
            logger.warning("Collection failed for %s: %s", device.device_id, exc.reason)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Telemetry source raised for %s", device.device_id)
        latency_ms = (time.perf_counter() - started) * 1000.0

        if sample is not None and not sample.collection_success:
            error = "device reported an unsuccessful collection"
            logger.warning("Collection failed for %s: %s", device.device_id, error)
            sample = None

        if sample is not None:
            sample = sample.model_copy(update={"collection_latency_ms": latency_ms})

        self._store.append_attempt(CollectionAttempt(
            device_id=device.device_id,
            success=sample is not None,
            latency_ms=latency_ms,
            collection_method=sample.collection_method if sample is not None else None,
            error=error,
        ))

        if sample is None:
            return None

        self._store.append_raw_samples([sample])
        self.buffer.add(sample)
        logger.debug("Collected %s via %s in %.1fms",
                     device.device_id, sample.collection_method, latency_ms)
        return sample

    def cleanup_recent(self, now: Optional[datetime] = None) -> int:
        """
        Purge raw samples older than the retention window.

        Drops them from the buffer and from the store's raw history, and drops
        collection attempts older than config.attempt_retention. Idempotent and
        safe to call while a collection cycle is running.

        Returns:
            Number of samples removed from the buffer.
        """
        now = as_utc(now or utcnow())
        removed = self.buffer.purge(now)
        stored = self._store.purge_raw_samples(now - self._config.raw_retention)
        attempts = self._store.purge_attempts(now - self._config.attempt_retention)
        if removed or stored or attempts:
            logger.info(
                "Purged %d buffered and %d stored raw samples older than %s, %d attempts",
                removed, stored, self.buffer.retention, attempts,
            )
        return removed

    def recent_metrics(
        self,
        device_id: str,
        window: timedelta = timedelta(minutes=15),
        now: Optional[datetime] = None,
    ) -> List[RawTelemetrySample]:
        """Buffered samples for one device within `window`, newest first."""
        return self.buffer.recent(device_id, window, now)

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def cycle_count(self) -> int:
        """Number of collect_all() calls since this collector was created."""
        return self._cycles

    def __repr__(self) -> str:
        return (
            f"TelemetryCollector("
            f"devices={len(self._store.list_devices())}, "
            f"cycles={self._cycles}, "
            f"workers={self._config.collection_workers})"
        )
