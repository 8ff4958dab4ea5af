"""
risk_core/trainer.py
────────────────────
Weighted logistic fitting and evaluation of ModelParameters.

What this is
─────────────
The default fitter behind MaintenancePredictor.train(). For every failure
type that has labelled examples it fits the logistic scorer with torch,
warm-started from the current parameters, and leaves the other types as
they were.

Architecture
─────────────
One linear layer per failure type, trained full-batch:

  Input:   (n_examples, n_features)     features in [0, 1]
                ↓
  Linear:  n_features → 1               initialised from the base weights
                ↓
  Loss:    BCEWithLogits, per-example, × training weight, / Σ weight

Full batch is fine: a retrain sees at most a few thousand records, one
tensor per type. Warm start keeps a retrain on a small, noisy snapshot from
throwing away what the defaults already encode.

Evaluation
──────────
evaluate() scores a ModelParameters on a set of examples as

    quality = 1 - weighted Brier score = 1 - Σ w (p - y)² / Σ w

in [0, 1], higher is better. The retrainer compares evaluate(old) with
evaluate(new) on the same snapshot to decide whether to install.

Integration
───────────
  Called by: printwatch/control_plane/predictor.py   (train)
             printwatch/control_plane/retrainer.py   (evaluate)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, NamedTuple, Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
from torch.optim import Adam

from printwatch.shared.models import FailureType, utcnow
from risk_core.parameters import ModelParameters, TypeParameters, score

logger = logging.getLogger(__name__)

# ── Hyperparameters ───────────────────────────────────────────────────────────
# Module-level so tests can import and assert against them directly.

TRAIN_EPOCHS: int = 200
"""Full-batch Adam steps per failure type."""

LEARNING_RATE: float = 0.05
"""Adam learning rate. Features are in [0, 1], so a fairly high rate converges."""


class LabelledExample(NamedTuple):
    """One training example: features of a past prediction and what really happened."""
    failure_type: FailureType
    features: Sequence[float]
    label: float           # 1.0 if the event occurred, else 0.0
    weight: float = 1.0


# ── Public API ────────────────────────────────────────────────────────────────

def fit_parameters(
    examples: Sequence[LabelledExample],
    base: ModelParameters,
    epochs: int = TRAIN_EPOCHS,
    learning_rate: float = LEARNING_RATE,
    version: Optional[str] = None,
) -> ModelParameters:
    """
    Fit candidate parameters on `examples`, warm-started from `base`.

    Types without examples keep their base parameters. The base object is
    not modified.

    Args:
        examples:      Labelled, weighted examples (any mix of failure types).
        base:          Parameters to start from (usually the live ones).
        epochs:        Full-batch optimisation steps per type.
        learning_rate: Adam learning rate.
        version:       Version string for the result. Defaults to a UTC
                       timestamp "YYYYmmddTHHMMSS".

    Returns:
        A new ModelParameters with trained_on=len(examples).
    """
    by_type = _group(examples)
    types: Dict[FailureType, TypeParameters] = dict(base.types)

    for failure_type, group in by_type.items():
        start = base.types[failure_type]
        types[failure_type] = _fit_type(group, start, epochs, learning_rate)
        logger.debug(
            "Fitted %s on %d examples (fit_quality=%.3f)",
            failure_type.value, len(group), types[failure_type].fit_quality,
        )

    created_at = utcnow()
    return ModelParameters(
        version=version or created_at.strftime("%Y%m%dT%H%M%S"),
        types=types,
        trained_on=len(examples),
        created_at=created_at,
    )


def evaluate(parameters: ModelParameters, examples: Sequence[LabelledExample]) -> float:
    """
    1 - weighted Brier score of `parameters` on `examples`. 0.0 if there are none.
    """
    if not examples:
        return 0.0
    probs = np.array(
        [score(parameters, e.failure_type, e.features) for e in examples],
        dtype=np.float64,
    )
    labels = np.array([e.label for e in examples], dtype=np.float64)
    weights = np.array([e.weight for e in examples], dtype=np.float64)
    return _weighted_quality(probs, labels, weights)


# ── Internals ─────────────────────────────────────────────────────────────────

def _group(examples: Sequence[LabelledExample]) -> Dict[FailureType, List[LabelledExample]]:
    groups: Dict[FailureType, List[LabelledExample]] = defaultdict(list)
    for example in examples:
        groups[example.failure_type].append(example)
    return groups


def _fit_type(
    examples: List[LabelledExample],
    start: TypeParameters,
    epochs: int,
    learning_rate: float,
) -> TypeParameters:
    X_np = np.array([list(e.features) for e in examples], dtype=np.float32)
    y_np = np.array([e.label for e in examples], dtype=np.float32)
    w_np = np.array([e.weight for e in examples], dtype=np.float32)

    if float(w_np.sum()) <= 0.0:
        return start

    X = torch.tensor(X_np)                       # (n, n_features)
    y = torch.tensor(y_np).unsqueeze(-1)         # (n, 1)
    w = torch.tensor(w_np).unsqueeze(-1)         # (n, 1)

    # ── Model & optimiser (warm start) ────────────────────────────────────────
    model = nn.Linear(X.shape[1], 1)
    with torch.no_grad():
        model.weight.copy_(torch.tensor([start.weights], dtype=torch.float32))
        model.bias.fill_(start.bias)
    model.train()
    optimiser = Adam(model.parameters(), lr=learning_rate)
    loss_fn = nn.BCEWithLogitsLoss(reduction="none")
    total_weight = w.sum()

    # ── Training loop ─────────────────────────────────────────────────────────
    for _ in range(epochs):
        optimiser.zero_grad()
        logits = model(X)
        loss = (loss_fn(logits, y) * w).sum() / total_weight
        loss.backward()
        optimiser.step()

    # ── Commit ────────────────────────────────────────────────────────────────
    model.eval()
    with torch.no_grad():
        probs = torch.sigmoid(model(X)).squeeze(-1).numpy().astype(np.float64)
        weights = model.weight.squeeze(0).tolist()
        bias = float(model.bias.item())

    fit_quality = _weighted_quality(probs, y_np.astype(np.float64), w_np.astype(np.float64))
    return TypeParameters(weights=weights, bias=bias, fit_quality=fit_quality)


def _weighted_quality(probs: np.ndarray, labels: np.ndarray, weights: np.ndarray) -> float:
    total = float(weights.sum())
    if total <= 0.0:
        return 0.0
    brier = float(np.sum(weights * (probs - labels) ** 2)) / total
    return max(0.0, min(1.0, 1.0 - brier))
