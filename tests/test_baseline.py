from __future__ import annotations

import math

import pandas as pd
import pytest

from src.baseline import fit_bias_models, fit_movie_effects, fit_naive, fit_user_effects
from src.evaluate import apply_missing_policy, rmse
from src.partition import partition


@pytest.fixture
def tiny_train() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "userId": [1, 1, 2],
            "movieId": [1, 2, 1],
            "rating": [5.0, 3.0, 4.0],
        }
    )


def test_movie_effects_on_three_ratings(tiny_train: pd.DataFrame) -> None:
    naive = fit_naive(tiny_train)
    movie = fit_movie_effects(tiny_train, naive)

    assert naive.global_mean == pytest.approx(4.0)
    assert movie.movie_bias[1] == pytest.approx(0.5)
    assert movie.movie_bias[2] == pytest.approx(-1.0)

    query = pd.DataFrame({"userId": [1], "movieId": [1]})
    assert movie.predict(query).iloc[0] == pytest.approx(4.5)


def test_user_effects_use_movie_residuals(tiny_train: pd.DataFrame) -> None:
    naive, movie, user = fit_bias_models(tiny_train)

    # u1: mean(5 - 4 - 0.5, 3 - 4 + 1) = 0.25 ; u2: 4 - 4 - 0.5 = -0.5
    assert user.user_bias[1] == pytest.approx(0.25)
    assert user.user_bias[2] == pytest.approx(-0.5)

    query = pd.DataFrame({"userId": [1, 2], "movieId": [1, 2]})
    assert user.predict(query).tolist() == pytest.approx([4.75, 2.5])
    assert [m.stage for m in (naive, movie, user)] == [0, 1, 2]


def test_stages_do_not_mutate_previous_models(tiny_train: pd.DataFrame) -> None:
    naive = fit_naive(tiny_train)
    movie = fit_movie_effects(tiny_train, naive)
    fit_user_effects(tiny_train, movie)

    assert naive.movie_bias is None
    assert movie.user_bias is None


def test_user_effects_require_movie_effects(tiny_train: pd.DataFrame) -> None:
    with pytest.raises(ValueError):
        fit_user_effects(tiny_train, fit_naive(tiny_train))


def test_unseen_ids_predict_missing(tiny_train: pd.DataFrame) -> None:
    _, movie, user = fit_bias_models(tiny_train)
    query = pd.DataFrame({"userId": [1, 3, 1], "movieId": [99, 1, 2]}, index=[7, 8, 9])

    movie_pred = movie.predict(query)
    user_pred = user.predict(query)

    assert movie_pred.index.tolist() == [7, 8, 9]
    assert math.isnan(movie_pred.loc[7])
    assert movie_pred.loc[8] == pytest.approx(4.5)
    assert math.isnan(user_pred.loc[7])
    assert math.isnan(user_pred.loc[8])
    assert user_pred.loc[9] == pytest.approx(4.0 - 1.0 + 0.25)


def test_naive_model_predicts_the_mean_everywhere(tiny_train: pd.DataFrame) -> None:
    naive = fit_naive(tiny_train)
    query = pd.DataFrame({"userId": [5, 6], "movieId": [7, 8]})

    assert naive.predict(query).tolist() == [4.0, 4.0]


def test_stage_rmse_is_non_increasing_on_biased_data(synthetic_ratings: pd.DataFrame) -> None:
    train, test = partition(synthetic_ratings, 0.2, seed=92)

    scores = []
    for model in fit_bias_models(train):
        pred, obs = apply_missing_policy(model.predict(test), test["rating"], policy="exclude")
        scores.append(rmse(pred, obs))

    assert scores[1] < scores[0]
    assert scores[2] < scores[1]
