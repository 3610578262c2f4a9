from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from src.evaluate import rmse
from src.factorization.train import (
    FactorizationParams,
    IdEncoder,
    RatingTriplets,
    predict,
    to_triplets,
    train,
)


FAST = FactorizationParams(dim=4, costp_l2=0.01, costq_l2=0.01, niter=40, nbin=2, lrate=0.1, batch_size=64, seed=7)


@pytest.fixture
def low_rank_ratings() -> pd.DataFrame:
    rng = np.random.default_rng(11)
    p = rng.uniform(0.5, 1.5, size=(30, 2))
    q = rng.uniform(0.5, 1.5, size=(20, 2))
    full = np.clip(p @ q.T * 1.6, 0.5, 5.0)
    users, items = np.nonzero(np.ones_like(full))
    return pd.DataFrame(
        {
            "userId": users + 1,
            "movieId": items + 1000,
            "rating": full[users, items],
        }
    )


def test_to_triplets_and_iteration() -> None:
    frame = pd.DataFrame({"userId": [5, 6], "movieId": [10, 11], "rating": [4.0, 2.5]})

    triplets = to_triplets(frame)
    query = to_triplets(frame, with_rating=False)

    assert len(triplets) == 2
    assert list(triplets) == [(5, 10, 4.0), (6, 11, 2.5)]
    assert list(query) == [(5, 10, None), (6, 11, None)]


def test_to_triplets_requires_columns() -> None:
    with pytest.raises(ValueError):
        to_triplets(pd.DataFrame({"userId": [1], "movieId": [2]}))


def test_triplets_reject_misaligned_arrays() -> None:
    with pytest.raises(ValueError):
        RatingTriplets(user_id=np.array([1, 2]), item_id=np.array([1]))


def test_id_encoder_maps_unseen_to_minus_one() -> None:
    enc = IdEncoder.fit(np.array([30, 10, 20, 10]))

    assert len(enc) == 3
    assert enc.transform(np.array([10, 20, 30, 40, 5])).tolist() == [0, 1, 2, -1, -1]


def test_training_fits_better_than_the_mean(low_rank_ratings: pd.DataFrame) -> None:
    model = train(to_triplets(low_rank_ratings), FAST)
    pred = predict(model, to_triplets(low_rank_ratings, with_rating=False))
    observed = low_rank_ratings["rating"].to_numpy()

    baseline = rmse(np.full(len(observed), observed.mean()), observed)
    assert len(model.train_rmse) == FAST.niter
    assert model.train_rmse[-1] < model.train_rmse[0]
    assert rmse(pred, observed) < 0.7 * baseline
    assert (model.n_users, model.n_items) == (30, 20)


def test_training_is_seeded(low_rank_ratings: pd.DataFrame) -> None:
    params = FactorizationParams(dim=3, niter=3, nbin=2, batch_size=50, seed=3)
    query = to_triplets(low_rank_ratings, with_rating=False)

    first = predict(train(to_triplets(low_rank_ratings), params), query)
    second = predict(train(to_triplets(low_rank_ratings), params), query)

    np.testing.assert_allclose(first, second, rtol=1e-6, atol=1e-6)


def test_predict_keeps_input_order_and_falls_back_for_unseen(low_rank_ratings: pd.DataFrame) -> None:
    params = FactorizationParams(dim=3, niter=2, nbin=3, batch_size=32, seed=1)
    model = train(to_triplets(low_rank_ratings), params)

    query = pd.DataFrame({"userId": [1, 2, 999, 3], "movieId": [1000, 1001, 1000, 5]})
    pred = predict(model, to_triplets(query, with_rating=False))
    reversed_pred = predict(model, to_triplets(query.iloc[::-1], with_rating=False))

    assert pred.shape == (4,)
    np.testing.assert_allclose(pred[::-1], reversed_pred)
    assert pred[2] == pytest.approx(model.global_mean)
    assert pred[3] == pytest.approx(model.global_mean)
    assert model.global_mean == pytest.approx(low_rank_ratings["rating"].mean(), rel=1e-5)


def test_training_requires_ratings() -> None:
    query = RatingTriplets(user_id=np.array([1]), item_id=np.array([2]))
    with pytest.raises(ValueError):
        train(query, FAST)
