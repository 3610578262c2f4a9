from __future__ import annotations

import math

import numpy as np
import pytest

from src.baseline import MissingPredictionError
from src.evaluate import (
    EvaluationError,
    ResultsTable,
    apply_missing_policy,
    render_results,
    rmse,
    score_points,
)


def test_rmse_of_identical_sequences_is_zero() -> None:
    x = [3.5, 4.0, 1.0, 5.0]
    assert rmse(x, x) == 0.0


def test_rmse_known_value_and_symmetry() -> None:
    assert rmse([1.0, 2.0], [2.0, 4.0]) == pytest.approx(math.sqrt(2.5))
    assert rmse([1.0, 2.0], [2.0, 4.0]) == rmse([2.0, 4.0], [1.0, 2.0])


@pytest.mark.parametrize(
    "predicted, observed",
    [
        ([], []),
        ([1.0, 2.0], [1.0]),
        ([1.0, float("nan")], [1.0, 2.0]),
    ],
)
def test_rmse_preconditions(predicted: list[float], observed: list[float]) -> None:
    with pytest.raises(EvaluationError):
        rmse(predicted, observed)


def test_missing_policy_exclude_drops_rows_from_both_sides() -> None:
    pred, obs = apply_missing_policy([4.0, np.nan, 3.0], [4.0, 1.0, 2.0], policy="exclude")

    assert pred.tolist() == [4.0, 3.0]
    assert obs.tolist() == [4.0, 2.0]


def test_missing_policy_global_mean_imputes() -> None:
    pred, obs = apply_missing_policy([4.0, np.nan], [4.0, 1.0], policy="global_mean", fallback=3.5)

    assert pred.tolist() == [4.0, 3.5]
    assert obs.tolist() == [4.0, 1.0]


def test_missing_policy_raise() -> None:
    with pytest.raises(MissingPredictionError):
        apply_missing_policy([np.nan], [1.0], policy="raise")


def test_missing_policy_rejects_unknown_policy() -> None:
    with pytest.raises(ValueError):
        apply_missing_policy([1.0], [1.0], policy="drop")  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "value, points",
    [
        (0.95, 5),
        (0.9, 5),
        (0.89999, 10),
        (0.8655, 10),
        (0.86549, 15),
        (0.865, 15),
        (0.86499, 20),
        (0.8649, 20),
        (0.8648, 25),
        (0.5, 25),
    ],
)
def test_score_points_step_function(value: float, points: int) -> None:
    assert score_points(value) == points


def test_results_table_renders_rounded_rmse() -> None:
    table = ResultsTable()
    table.add("Method #1", "Naive Model", 1.0612345678)
    table.add("Final Validation", "Matrix Factorization", 0.8342912)

    frame = table.to_frame()
    text = render_results(table)

    assert list(frame.columns) == ["Method", "Model", "RMSE", "Estimated Points"]
    assert frame["Estimated Points"].tolist() == [5, 25]
    assert "1.06123" in text
    assert "0.83429" in text
    assert [row.method for row in table] == ["Method #1", "Final Validation"]
