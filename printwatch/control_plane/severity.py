"""
printwatch/control_plane/severity.py
────────────────────────────────────
Severity tiers and recommended actions: pure functions of a prediction's
probability and lead time.

What this is
─────────────
A stateless rule table. Nothing here reads a clock, a store or a config,
so the same (probability, days_until_event) always maps to the same
severity, and a prediction's severity can be recomputed at any time from
its stored fields.

Rules
──────
  CRITICAL   probability ≥ 0.85  AND  days_until_event ≤ 3
  HIGH       probability ≥ 0.60
  MEDIUM     probability ≥ 0.35
  LOW        otherwise

requires_immediate_attention ⇔ CRITICAL.

Recommended action
──────────────────
One urgent and one planned action per failure type. CRITICAL and HIGH get
the urgent action; MEDIUM and LOW the planned one.
"""

from __future__ import annotations

from typing import Dict, Tuple

from printwatch.shared.models import FailureType, Severity

# ── Thresholds ────────────────────────────────────────────────────────────────
# Module-level so tests can import and assert against them directly.

CRITICAL_PROBABILITY: float = 0.85
"""Minimum probability for CRITICAL (together with CRITICAL_MAX_DAYS)."""

CRITICAL_MAX_DAYS: int = 3
"""Maximum days_until_event for CRITICAL."""

HIGH_PROBABILITY: float = 0.60
"""Minimum probability for HIGH."""

MEDIUM_PROBABILITY: float = 0.35
"""Minimum probability for MEDIUM."""

_ACTIONS: Dict[FailureType, Tuple[str, str]] = {
    FailureType.TONER_DEPLETION: (
        "Replace toner cartridge now",
        "Schedule toner replacement in the coming days",
    ),
    FailureType.PAPER_DEPLETION: (
        "Refill paper trays now",
        "Check paper levels",
    ),
    FailureType.NETWORK_FAILURE: (
        "Check network connectivity urgently",
        "Monitor network connectivity",
    ),
    FailureType.HARDWARE_FAILURE: (
        "Call a service technician now",
        "Schedule a preventive technical inspection",
    ),
}


def severity_for(probability: float, days_until_event: int) -> Severity:
    """Severity tier for a (probability, lead time) pair."""
    if probability >= CRITICAL_PROBABILITY and days_until_event <= CRITICAL_MAX_DAYS:
        return Severity.CRITICAL
    if probability >= HIGH_PROBABILITY:
        return Severity.HIGH
    if probability >= MEDIUM_PROBABILITY:
        return Severity.MEDIUM
    return Severity.LOW


def requires_immediate_attention(probability: float, days_until_event: int) -> bool:
    return severity_for(probability, days_until_event) is Severity.CRITICAL


def recommended_action(failure_type: FailureType, severity: Severity) -> str:
    urgent, planned = _ACTIONS[failure_type]
    return urgent if severity.rank >= Severity.HIGH.rank else planned


def at_least(severity: Severity, minimum: Severity) -> bool:
    """True if `severity` is `minimum` or more urgent."""
    return severity.rank >= minimum.rank
