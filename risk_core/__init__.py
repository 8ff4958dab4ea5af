"""
risk_core — statistical core of the maintenance risk model.

Public API:
    extract_features    — latest aggregates → feature vector per failure type
    ModelParameters     — immutable scorer parameters (one logistic per type)
    DEFAULT_PARAMETERS  — hand-set parameters used before any retraining
    score               — ModelParameters × features → probability in [0, 1]
    LabelledExample     — one weighted training example
    fit_parameters      — torch fit, warm-started from existing parameters
    evaluate            — 1 - weighted Brier score on a set of examples

Usage:
    from risk_core import DEFAULT_PARAMETERS, extract_features, score

    x = extract_features(FailureType.TONER_DEPLETION, aggregates)
    if x is not None:
        p = score(DEFAULT_PARAMETERS, FailureType.TONER_DEPLETION, x)
"""

from risk_core.features import FEATURE_NAMES, extract_features
from risk_core.parameters import (
    DEFAULT_PARAMETERS,
    ModelParameters,
    TypeParameters,
    score,
)
from risk_core.trainer import LabelledExample, evaluate, fit_parameters

__all__ = [
    "FEATURE_NAMES",
    "extract_features",
    "DEFAULT_PARAMETERS",
    "ModelParameters",
    "TypeParameters",
    "score",
    "LabelledExample",
    "evaluate",
    "fit_parameters",
]
