"""
risk_core/parameters.py
───────────────────────
ModelParameters and score(): the live state of the risk model and how a
feature vector becomes a failure probability.

What this is
─────────────
One logistic scorer per failure type:

    p = σ(w · x + b)        σ(z) = 1 / (1 + e^-z)

x is the feature vector from risk_core/features.py. The weights, bias and
fit quality for each type live in an immutable ModelParameters object.
"Installing" new parameters means swapping which ModelParameters object the
store holds. Nothing here is ever mutated in place, so a reader holding the
old object keeps a consistent view while a retrain installs the new one.

Default parameters
──────────────────
Hand-set so the model is useful before any feedback exists:

  toner / paper   w = [10.0, 4.0]      b = -6.5
      level 8% sustained     → x = [0.92, 0.0]  → p ≈ 0.94
      level 50% sustained    → x = [0.50, 0.0]  → p ≈ 0.18
      level 90% sustained    → x = [0.10, 0.0]  → p ≈ 0.005  (below floor)

  network         w = [6.0, 3.0]       b = -4.5
      healthy                → p ≈ 0.011
      every window offline   → p ≈ 0.82

  hardware        w = [3.0, 4.0, 2.0]  b = -4.0
      healthy                → p ≈ 0.018

fit_quality for defaults is DEFAULT_FIT_QUALITY. It feeds the predictor's
confidence, so untrained parameters never produce full confidence.

Integration
───────────
  Read by:    printwatch/control_plane/predictor.py   (score)
  Written by: risk_core/trainer.py                     (fit_parameters)
  Stored by:  printwatch/shared/store.py               (live reference swap)
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, List, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

from printwatch.shared.models import FailureType, utcnow
from risk_core.features import FEATURE_NAMES

# ── Constants ─────────────────────────────────────────────────────────────────

DEFAULT_VERSION: str = "default"
"""model_version stamped on predictions made with the hand-set parameters."""

DEFAULT_FIT_QUALITY: float = 0.5
"""fit_quality of the hand-set parameters, halfway between unknown and perfect."""


class TypeParameters(BaseModel):
    """Weights, bias and fit quality of the scorer for one failure type."""
    model_config = ConfigDict(frozen=True)

    weights: List[float]
    bias: float = 0.0
    fit_quality: float = Field(DEFAULT_FIT_QUALITY, ge=0.0, le=1.0)


class ModelParameters(BaseModel):
    """
    An immutable, complete set of scorer parameters.

    Fields:
        version     → stamped on every prediction made with these parameters.
        types       → one TypeParameters per FailureType. Always complete.
        trained_on  → number of training examples behind these parameters
                      (0 for the hand-set defaults).
        created_at  → when the parameters were fitted.
    """
    model_config = ConfigDict(frozen=True)

    version: str = DEFAULT_VERSION
    types: Dict[FailureType, TypeParameters]
    trained_on: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_complete(self) -> "ModelParameters":
        for failure_type in FailureType:
            if failure_type not in self.types:
                raise ValueError(f"missing parameters for {failure_type.value}")
            expected = len(FEATURE_NAMES[failure_type])
            got = len(self.types[failure_type].weights)
            if got != expected:
                raise ValueError(
                    f"{failure_type.value}: expected {expected} weights, got {got}"
                )
        return self

    def fit_quality(self, failure_type: FailureType) -> float:
        return self.types[failure_type].fit_quality


DEFAULT_PARAMETERS = ModelParameters(
    version=DEFAULT_VERSION,
    types={
        FailureType.TONER_DEPLETION: TypeParameters(weights=[10.0, 4.0], bias=-6.5),
        FailureType.PAPER_DEPLETION: TypeParameters(weights=[10.0, 4.0], bias=-6.5),
        FailureType.NETWORK_FAILURE: TypeParameters(weights=[6.0, 3.0], bias=-4.5),
        FailureType.HARDWARE_FAILURE: TypeParameters(weights=[3.0, 4.0, 2.0], bias=-4.0),
    },
)
"""The hand-set parameters the store starts with."""


# ── Scoring ───────────────────────────────────────────────────────────────────

def score(
    parameters: ModelParameters,
    failure_type: FailureType,
    features: Sequence[float],
) -> float:
    """
    Probability of `failure_type` given a feature vector. Always in [0, 1].

    Raises:
        ValueError: if the feature vector length does not match the weights.
    """
    params = parameters.types[failure_type]
    x = np.asarray(features, dtype=np.float64)
    w = np.asarray(params.weights, dtype=np.float64)
    if x.shape != w.shape:
        raise ValueError(
            f"{failure_type.value}: expected {w.shape[0]} features, got {x.shape}"
        )
    return _clamp01(sigmoid(float(np.dot(w, x)) + params.bias))


def sigmoid(z: float) -> float:
    """Numerically stable logistic function."""
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


def _clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))
