"""Seeded train/held-out splits and the validation reconcile step."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from sklearn import model_selection


logger = logging.getLogger(__name__)


class PartitionError(ValueError):
    """Raised when a split cannot produce a usable held-out set."""


def _rating_strata(data: pd.DataFrame, n_held_out: int) -> Optional[np.ndarray]:
    # Stratifying by rating is nice for MovieLens (many samples per rating
    # bucket) but breaks on tiny tables where a bucket has a single row.
    strata = data["rating"].astype(str).to_numpy()
    counts = pd.Series(strata).value_counts()
    if int(counts.min()) < 2:
        return None
    if n_held_out < len(counts) or len(data) - n_held_out < len(counts):
        return None
    return strata


def partition(data: pd.DataFrame, fraction: float, seed: int) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Split `data` into `(train, held_out)` with `len(held_out) ~= fraction * len(data)`.

    Deterministic for a given `seed`. Rows keep their original index labels so
    the two halves can be traced back to `data`.
    """
    if not 0.0 < float(fraction) < 1.0:
        raise ValueError(f"fraction must be in (0, 1), got {fraction}")
    if len(data) < 2:
        raise PartitionError(f"cannot partition a table with {len(data)} row(s)")

    n_held_out = int(np.ceil(float(fraction) * len(data)))
    n_held_out = min(max(n_held_out, 1), len(data) - 1)

    train, held_out = model_selection.train_test_split(
        data,
        test_size=n_held_out,
        random_state=int(seed),
        stratify=_rating_strata(data, n_held_out),
    )
    logger.info(
        "Partitioned %d rows (fraction=%.2f seed=%d): train=%d held_out=%d",
        len(data),
        float(fraction),
        int(seed),
        len(train),
        len(held_out),
    )
    return train, held_out


def reconcile(train: pd.DataFrame, held_out: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Move held-out rows with a user or movie unseen in `train` back into `train`.

    Returns `(train, validation)`; afterwards every userId/movieId of
    `validation` also occurs in `train`.
    """
    known = held_out["movieId"].isin(train["movieId"].unique()) & held_out["userId"].isin(
        train["userId"].unique()
    )
    validation = held_out[known]
    removed = held_out[~known]
    if validation.empty:
        raise PartitionError("reconcile left the validation set empty")

    if not removed.empty:
        train = pd.concat([train, removed])
    logger.info("Reconciled held-out set: validation=%d moved_to_train=%d", len(validation), len(removed))
    return train, validation


def split_validation(
    data: pd.DataFrame, fraction: float, seed: int, *, reconcile_ids: bool = True
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """`partition` followed (optionally) by `reconcile`."""
    train, held_out = partition(data, fraction, seed)
    if not reconcile_ids:
        return train, held_out
    return reconcile(train, held_out)


def sample_rows(data: pd.DataFrame, n: int, seed: int) -> pd.DataFrame:
    """Reproducible row sample without replacement (`n` capped at the table size)."""
    n = min(int(n), len(data))
    return data.sample(n=n, replace=False, random_state=int(seed))
