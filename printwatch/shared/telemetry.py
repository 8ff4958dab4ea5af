"""
printwatch/shared/telemetry.py
──────────────────────────────
RecentSampleBuffer: the rolling, per-device window of raw telemetry.

Why this is a separate file from models.py
------------------------------------------
models.py defines the records themselves. This file defines the short-lived
working memory the collector writes into and the cleaner reads from:

  models.py    → "What does one sample look like?"
  telemetry.py → "What has each device reported over the last hour?"

How the buffer is bounded
-------------------------
Two limits apply independently:
  1. Retention: purge() drops samples older than now - retention.
  2. Per-device cap: add() drops the oldest sample once a device holds
     max_per_device samples, so a chatty device cannot grow the buffer
     between two purges.

Ordering
--------
Collection workers finish in any order, so samples can arrive slightly out
of timestamp order. add() inserts in timestamp order per device, which keeps
every read path (recent(), snapshot()) sorted without re-sorting.

Thread safety
-------------
Every method takes the same lock. Collection workers call add() concurrently
while a cleanup or cleaning cycle calls purge() or snapshot().
"""

from __future__ import annotations

import bisect
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from printwatch.shared.models import RawTelemetrySample, as_utc, utcnow


class RecentSampleBuffer:
    """
    Thread-safe per-device sample window bounded by retention and count.

    Usage:
        buffer = RecentSampleBuffer(retention=timedelta(hours=1), max_per_device=500)
        buffer.add(sample)
        buffer.purge()                         # drop anything older than 1h
        samples = buffer.recent("prn-01", timedelta(minutes=15))
    """

    def __init__(self, retention: timedelta, max_per_device: int) -> None:
        if retention <= timedelta(0):
            raise ValueError("RecentSampleBuffer retention must be positive.")
        if max_per_device < 1:
            raise ValueError("RecentSampleBuffer max_per_device must be >= 1.")
        self._retention = retention
        self._max_per_device = max_per_device
        self._samples: Dict[str, List[RawTelemetrySample]] = {}
        self._keys: Dict[str, List[datetime]] = {}
        self._lock = threading.Lock()

    # ── Writes ────────────────────────────────────────────────────────────────

    def add(self, sample: RawTelemetrySample) -> None:
        """Insert a sample, keeping the device's samples in timestamp order."""
        with self._lock:
            samples = self._samples.setdefault(sample.device_id, [])
            keys = self._keys.setdefault(sample.device_id, [])
            idx = bisect.bisect_right(keys, sample.timestamp)
            keys.insert(idx, sample.timestamp)
            samples.insert(idx, sample)
            overflow = len(samples) - self._max_per_device
            if overflow > 0:
                del samples[:overflow]
                del keys[:overflow]

    def purge(self, now: Optional[datetime] = None) -> int:
        """
        Drop samples older than now - retention.

        Idempotent: a second call with the same `now` removes nothing.

        Returns:
            Number of samples removed.
        """
        cutoff = as_utc(now or utcnow()) - self._retention
        removed = 0
        with self._lock:
            for device_id in list(self._samples):
                keys = self._keys[device_id]
                idx = bisect.bisect_left(keys, cutoff)
                if idx:
                    del keys[:idx]
                    del self._samples[device_id][:idx]
                    removed += idx
                if not keys:
                    del self._keys[device_id]
                    del self._samples[device_id]
        return removed

    # ── Reads ─────────────────────────────────────────────────────────────────

    def recent(
        self,
        device_id: str,
        window: timedelta,
        now: Optional[datetime] = None,
    ) -> List[RawTelemetrySample]:
        """Samples for one device within `window` of `now`, newest first."""
        cutoff = as_utc(now or utcnow()) - window
        with self._lock:
            keys = self._keys.get(device_id, [])
            idx = bisect.bisect_left(keys, cutoff)
            selected = self._samples.get(device_id, [])[idx:]
        return list(reversed(selected))

    def snapshot(self, before: Optional[datetime] = None) -> List[RawTelemetrySample]:
        """
        Every buffered sample, ordered by (device_id, timestamp).

        Args:
            before: If given, only samples strictly older than this instant.
        """
        if before is not None:
            before = as_utc(before)
        with self._lock:
            result: List[RawTelemetrySample] = []
            for device_id in sorted(self._samples):
                samples = self._samples[device_id]
                if before is not None:
                    samples = samples[:bisect.bisect_left(self._keys[device_id], before)]
                result.extend(samples)
        return result

    def count(self, device_id: Optional[str] = None) -> int:
        """Buffered sample count for one device, or across all devices."""
        with self._lock:
            if device_id is not None:
                return len(self._samples.get(device_id, []))
            return sum(len(s) for s in self._samples.values())

    @property
    def retention(self) -> timedelta:
        return self._retention

    @property
    def max_per_device(self) -> int:
        return self._max_per_device

    def __repr__(self) -> str:
        return (
            f"RecentSampleBuffer(devices={len(self._samples)}, "
            f"samples={self.count()}, retention={self._retention})"
        )
