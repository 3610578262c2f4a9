"""Additive bias models: global mean, movie effects, user effects.

Each stage is fitted once from the training ratings and returned as a new
frozen `BiasModel`; the next stage reads the previous one and never mutates it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional, Tuple

import pandas as pd


logger = logging.getLogger(__name__)

MissingPolicy = Literal["exclude", "global_mean", "raise"]
MISSING_POLICIES: Tuple[str, ...] = ("exclude", "global_mean", "raise")


class MissingPredictionError(ValueError):
    """Raised when a prediction is missing and the policy forbids it."""


def _as_table(series: pd.Series) -> pd.Series:
    return series.astype("float64").copy()


@dataclass(frozen=True)
class BiasModel:
    """Global mean plus optional per-movie and per-user offsets."""

    global_mean: float
    movie_bias: Optional[pd.Series] = None
    user_bias: Optional[pd.Series] = None

    @property
    def stage(self) -> int:
        if self.user_bias is not None:
            return 2
        if self.movie_bias is not None:
            return 1
        return 0

    @property
    def name(self) -> str:
        return ("Naive Model", "Mean + Movie", "Mean + Movie + User")[self.stage]

    def predict(self, frame: pd.DataFrame) -> pd.Series:
        """Predict ratings for `frame[["userId", "movieId"]]`, aligned to `frame.index`.

        Unseen movies (stage >= 1) or users (stage 2) yield NaN.
        """
        pred = pd.Series(self.global_mean, index=frame.index, dtype="float64")
        if self.movie_bias is not None:
            pred = pred + frame["movieId"].map(self.movie_bias)
        if self.user_bias is not None:
            pred = pred + frame["userId"].map(self.user_bias)
        return pred.rename("prediction")


def fit_naive(train: pd.DataFrame) -> BiasModel:
    if train.empty:
        raise ValueError("cannot fit a bias model on an empty training set")
    mu = float(train["rating"].mean())
    logger.info("Naive model: mu=%.5f over %d ratings", mu, len(train))
    return BiasModel(global_mean=mu)


def fit_movie_effects(train: pd.DataFrame, base: BiasModel) -> BiasModel:
    """b_i = mean(rating - mu) per movie."""
    residual = train["rating"] - base.global_mean
    b_i = residual.groupby(train["movieId"]).mean().rename("b_i")
    logger.info("Movie effects: %d movies", len(b_i))
    return BiasModel(global_mean=base.global_mean, movie_bias=_as_table(b_i))


def fit_user_effects(train: pd.DataFrame, base: BiasModel) -> BiasModel:
    """b_u = mean(rating - mu - b_i) per user over the training rows."""
    if base.movie_bias is None:
        raise ValueError("user effects are fitted on top of movie effects")
    b_i = train["movieId"].map(base.movie_bias)
    residual = train["rating"] - base.global_mean - b_i
    b_u = residual.groupby(train["userId"]).mean().rename("b_u")
    logger.info("User effects: %d users", len(b_u))
    return BiasModel(global_mean=base.global_mean, movie_bias=base.movie_bias, user_bias=_as_table(b_u))


def fit_bias_models(train: pd.DataFrame) -> Tuple[BiasModel, BiasModel, BiasModel]:
    """Fit the three successive stages on the same training set."""
    naive = fit_naive(train)
    movie = fit_movie_effects(train, naive)
    user = fit_user_effects(train, movie)
    return naive, movie, user
