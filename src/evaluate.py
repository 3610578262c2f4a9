"""RMSE, points scoring and the final results table."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Iterator, List, Sequence, Tuple

import numpy as np
import pandas as pd

from .baseline import MISSING_POLICIES, MissingPolicy, MissingPredictionError


logger = logging.getLogger(__name__)

# (lower bound, points); first bound the RMSE reaches wins.
POINTS_STEPS: Tuple[Tuple[float, int], ...] = (
    (0.9, 5),
    (0.8655, 10),
    (0.865, 15),
    (0.8649, 20),
)
BEST_POINTS = 25


class EvaluationError(ValueError):
    """Raised when RMSE inputs violate their preconditions."""


def rmse(predicted: Sequence[float], observed: Sequence[float]) -> float:
    """Root-mean-square error between two equal-length, non-empty, NaN-free sequences."""
    pred = np.asarray(predicted, dtype="float64").reshape(-1)
    obs = np.asarray(observed, dtype="float64").reshape(-1)
    if pred.size == 0 or obs.size == 0:
        raise EvaluationError("rmse needs at least one prediction")
    if pred.size != obs.size:
        raise EvaluationError(f"predicted/observed length mismatch: {pred.size} vs {obs.size}")
    if np.isnan(pred).any() or np.isnan(obs).any():
        raise EvaluationError("rmse inputs contain missing values; apply a missing policy first")
    return float(np.sqrt(np.mean((pred - obs) ** 2)))


def apply_missing_policy(
    predicted: Sequence[float],
    observed: Sequence[float],
    *,
    policy: MissingPolicy = "exclude",
    fallback: float = float("nan"),
) -> Tuple[np.ndarray, np.ndarray]:
    """Resolve missing predictions before scoring.

    - ``exclude``: drop rows without a prediction from both sequences.
    - ``global_mean``: fill missing predictions with `fallback`.
    - ``raise``: fail with `MissingPredictionError` if anything is missing.
    """
    if policy not in MISSING_POLICIES:
        raise ValueError(f"Unknown missing policy {policy!r}; expected one of {MISSING_POLICIES}")

    pred = np.asarray(predicted, dtype="float64").reshape(-1)
    obs = np.asarray(observed, dtype="float64").reshape(-1)
    if pred.size != obs.size:
        raise EvaluationError(f"predicted/observed length mismatch: {pred.size} vs {obs.size}")

    missing = np.isnan(pred)
    n_missing = int(missing.sum())
    if n_missing == 0:
        return pred, obs

    if policy == "raise":
        raise MissingPredictionError(f"{n_missing} of {pred.size} predictions are missing")
    if policy == "global_mean":
        if math.isnan(fallback):
            raise ValueError("global_mean policy needs a fallback value")
        logger.info("Imputing %d missing predictions with %.5f", n_missing, fallback)
        return np.where(missing, float(fallback), pred), obs

    logger.info("Excluding %d of %d rows without a prediction", n_missing, pred.size)
    return pred[~missing], obs[~missing]


def score_points(value: float) -> int:
    """Map an RMSE onto the points scale (lower RMSE earns more points)."""
    if math.isnan(value):
        raise EvaluationError("cannot score a NaN RMSE")
    for lower, points in POINTS_STEPS:
        if value >= lower:
            return points
    return BEST_POINTS


@dataclass(frozen=True)
class ResultRow:
    method: str
    model: str
    rmse: float
    points: int


@dataclass
class ResultsTable:
    """Append-only list of scored results."""

    rows: List[ResultRow] = field(default_factory=list)

    def add(self, method: str, model: str, value: float) -> ResultRow:
        row = ResultRow(method=method, model=model, rmse=float(value), points=score_points(value))
        self.rows.append(row)
        logger.info("%s (%s): RMSE=%.5f points=%d", method, model, row.rmse, row.points)
        return row

    def __iter__(self) -> Iterator[ResultRow]:
        return iter(tuple(self.rows))

    def __len__(self) -> int:
        return len(self.rows)

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame([asdict(r) for r in self.rows], columns=["method", "model", "rmse", "points"])
        return frame.rename(
            columns={"method": "Method", "model": "Model", "rmse": "RMSE", "points": "Estimated Points"}
        )


def render_results(table: ResultsTable, *, digits: int = 5) -> str:
    """Plain-text rendering with the RMSE rounded to `digits` decimals."""
    frame = table.to_frame()
    frame["RMSE"] = frame["RMSE"].map(lambda v: f"{v:.{digits}f}")
    return frame.to_string(index=False)
