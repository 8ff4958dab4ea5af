"""
printwatch/telemetry/sources.py
───────────────────────────────
Telemetry sources: the opaque "ask a printer how it is" strategy.

What this is
─────────────
The collector never speaks a device protocol. It calls
TelemetrySource.sample(device) and gets back a RawTelemetrySample, or a
TelemetrySourceError if the device could not be sampled. Anything that can
answer that call (an SNMP poller, a WMI query, a vendor agent, a replay of
recorded data) plugs in here.

Bundled sources
───────────────
  SimulatedTelemetrySource
      Gaussian noise around per-device baselines, with consumables that
      deplete a little on every sample. Deterministic when seeded.
      inject_fault() and set_baseline() drive test scenarios.

  FallbackTelemetrySource
      Tries an ordered chain of named sources (e.g. snmp → wmi → agent) and
      tags the sample with the name of the one that answered. Fails only
      when every source in the chain fails.

Integration contract
─────────────────────
    source = SimulatedTelemetrySource(seed=7)
    source.set_baseline("prn-01", toner_pct=8.0)
    source.inject_fault("prn-02", n_samples=3)   # next 3 samples raise
    collector = TelemetryCollector(store, source, config)
"""

from __future__ import annotations

import logging
import random
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from printwatch.shared.models import Device, RawTelemetrySample, utcnow

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

TONER_NOISE_STD: float = 0.5
"""Gaussian noise on toner readings (percentage points). Levels change slowly."""

PAPER_NOISE_STD: float = 2.0
"""Gaussian noise on paper readings. Trays are refilled and drained in steps."""

TEMPERATURE_NOISE_STD: float = 1.5
"""Gaussian noise on temperature (°C)."""

LOAD_NOISE_STD: float = 5.0
"""Gaussian noise on CPU and memory utilisation (%)."""

SIMULATED_METHOD: str = "simulated"
"""collection_method stamped by SimulatedTelemetrySource."""


class TelemetrySourceError(Exception):
    """
    Raised by a source that could not sample a device.

    Always caught by the collector, which records a failed CollectionAttempt.

    Attributes:
        device_id: The device that could not be sampled.
        reason:    Human-readable cause (timeout, refused, malformed reply).
    """

    def __init__(self, device_id: str, reason: str) -> None:
        super().__init__(f"{device_id}: {reason}")
        self.device_id = device_id
        self.reason = reason


class TelemetrySource(ABC):
    """Strategy interface for sampling one device."""

    @abstractmethod
    def sample(self, device: Device) -> RawTelemetrySample:
        """
        Return one raw sample for `device`.

        Raises:
            TelemetrySourceError: if the device cannot be sampled.
        """


# ── Simulated source ──────────────────────────────────────────────────────────

class DeviceBaseline(BaseModel):
    """
    Centre values the simulated source draws around for one device.

    toner_depletion / paper_depletion are subtracted from the level after
    every sample, so a long simulation shows a realistic downward trend.
    """
    toner_pct: Optional[float] = 70.0
    paper_pct: Optional[float] = 80.0
    temperature_c: Optional[float] = 38.0
    cpu_pct: Optional[float] = 15.0
    memory_pct: Optional[float] = 35.0
    queue_depth: float = Field(1.0, ge=0.0)
    error_rate: float = Field(0.0, ge=0.0, description="Mean errors per sample")
    status: str = "online"
    toner_depletion: float = Field(0.05, ge=0.0)
    paper_depletion: float = Field(0.2, ge=0.0)


class SimulatedTelemetrySource(TelemetrySource):
    """
    Synthetic telemetry: noise around per-device baselines.

    Thread-safe: the collector samples devices from a worker pool, so the
    shared RNG and the per-device state are guarded by one lock.

    Args:
        seed:  RNG seed. Same seed + same call order → same samples.
        noise: If False, every gauge equals its baseline exactly.
        clock: Timestamp source for samples. Defaults to UTC now.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        noise: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._rng = random.Random(seed)
        self._noise = noise
        self._clock = clock
        self._baselines: Dict[str, DeviceBaseline] = {}
        self._faults_remaining: Dict[str, int] = {}
        self._lock = threading.Lock()

    # ── Test hooks ────────────────────────────────────────────────────────────

    def set_baseline(self, device_id: str, **values: object) -> DeviceBaseline:
        """
        Override baseline fields for a device. Unset fields keep their value.

        Example:
            source.set_baseline("prn-01", toner_pct=8.0, toner_depletion=0.0)
        """
        with self._lock:
            current = self._baselines.get(device_id, DeviceBaseline())
            updated = DeviceBaseline(**{**current.model_dump(), **values})
            self._baselines[device_id] = updated
        return updated

    def inject_fault(self, device_id: str, n_samples: int = 1) -> None:
        """
        Make the next n_samples calls for device_id raise TelemetrySourceError.

        Calling again before the counter expires extends the fault.
        """
        with self._lock:
            self._faults_remaining[device_id] = (
                self._faults_remaining.get(device_id, 0) + n_samples
            )

    def baseline(self, device_id: str) -> DeviceBaseline:
        with self._lock:
            return self._baselines.get(device_id, DeviceBaseline())

    # ── TelemetrySource ───────────────────────────────────────────────────────

    def sample(self, device: Device) -> RawTelemetrySample:
        with self._lock:
            remaining = self._faults_remaining.get(device.device_id, 0)
            if remaining > 0:
                if remaining == 1:
                    del self._faults_remaining[device.device_id]
                else:
                    self._faults_remaining[device.device_id] = remaining - 1
                raise TelemetrySourceError(device.device_id, "simulated timeout")

            base = self._baselines.get(device.device_id, DeviceBaseline())
            sample = RawTelemetrySample(
                device_id=device.device_id,
                timestamp=self._clock(),
                status=base.status,
                toner_pct=self._level(base.toner_pct, TONER_NOISE_STD),
                paper_pct=self._level(base.paper_pct, PAPER_NOISE_STD),
                temperature_c=self._draw(base.temperature_c, TEMPERATURE_NOISE_STD),
                cpu_pct=self._level(base.cpu_pct, LOAD_NOISE_STD),
                memory_pct=self._level(base.memory_pct, LOAD_NOISE_STD),
                queue_depth=max(self._draw(base.queue_depth, 1.0) or 0.0, 0.0),
                error_count=self._errors(base.error_rate),
                collection_method=SIMULATED_METHOD,
            )
            self._baselines[device.device_id] = base.model_copy(update={
                "toner_pct": _deplete(base.toner_pct, base.toner_depletion),
                "paper_pct": _deplete(base.paper_pct, base.paper_depletion),
            })
        return sample

    # ── Private helpers ───────────────────────────────────────────────────────

    def _draw(self, centre: Optional[float], std: float) -> Optional[float]:
        if centre is None:
            return None
        if not self._noise:
            return centre
        return self._rng.gauss(centre, std)

    def _level(self, centre: Optional[float], std: float) -> Optional[float]:
        value = self._draw(centre, std)
        return None if value is None else _clamp(value, 0.0, 100.0)

    def _errors(self, rate: float) -> int:
        if rate <= 0.0:
            return 0
        if not self._noise:
            return int(round(rate))
        return max(int(round(self._rng.gauss(rate, rate ** 0.5))), 0)

    def __repr__(self) -> str:
        return (
            f"SimulatedTelemetrySource(devices={len(self._baselines)}, "
            f"faults={sum(self._faults_remaining.values())}, noise={self._noise})"
        )


# ── Fallback chain ────────────────────────────────────────────────────────────

class FallbackTelemetrySource(TelemetrySource):
    """
    Try named sources in order; the first one that answers wins.

    Usage:
        source = FallbackTelemetrySource([
            ("snmp", snmp_source),
            ("wmi", wmi_source),
            ("agent", agent_source),
        ])
    """

    def __init__(self, chain: Sequence[Tuple[str, TelemetrySource]]) -> None:
        if not chain:
            raise ValueError("FallbackTelemetrySource requires at least one source.")
        self._chain: List[Tuple[str, TelemetrySource]] = list(chain)

    def sample(self, device: Device) -> RawTelemetrySample:
        reasons: List[str] = []
        for method, source in self._chain:
            try:
                sample = source.sample(device)
            except TelemetrySourceError as exc:
                logger.debug("%s via %s failed: %s", device.device_id, method, exc.reason)
                reasons.append(f"{method}: {exc.reason}")
                continue
            return sample.model_copy(update={"collection_method": method})
        raise TelemetrySourceError(device.device_id, "; ".join(reasons))

    @property
    def methods(self) -> List[str]:
        return [method for method, _ in self._chain]

    def __repr__(self) -> str:
        return f"FallbackTelemetrySource(chain={self.methods})"


# ── Utility ───────────────────────────────────────────────────────────────────

def _deplete(level: Optional[float], step: float) -> Optional[float]:
    return None if level is None else max(level - step, 0.0)


def _clamp(value: float, lo: float, hi: float) -> float:
    """Clamp value to [lo, hi]. Equivalent to max(lo, min(hi, value))."""
    return max(lo, min(hi, value))
