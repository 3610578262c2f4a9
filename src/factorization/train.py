from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple

import numpy as np
import pandas as pd
import torch
from sklearn.preprocessing import LabelEncoder

from .model import LatentFactorModel


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FactorizationParams:
    dim: int = 10
    costp_l2: float = 0.1
    costq_l2: float = 0.1
    niter: int = 20
    nbin: int = 20
    lrate: float = 0.1
    batch_size: int = 4096
    seed: int = 92
    device: Optional[str] = None


@dataclass(frozen=True)
class RatingTriplets:
    """Sparse (user, item, rating) stream backed by aligned numpy arrays.

    `rating` is None for prediction-only input.
    """

    user_id: np.ndarray
    item_id: np.ndarray
    rating: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        if len(self.user_id) != len(self.item_id):
            raise ValueError(f"user/item length mismatch: {len(self.user_id)} vs {len(self.item_id)}")
        if self.rating is not None and len(self.rating) != len(self.user_id):
            raise ValueError(f"rating length mismatch: {len(self.rating)} vs {len(self.user_id)}")

    def __len__(self) -> int:
        return int(len(self.user_id))

    def __iter__(self) -> Iterator[Tuple[int, int, Optional[float]]]:
        ratings = self.rating if self.rating is not None else [None] * len(self)
        for u, i, r in zip(self.user_id.tolist(), self.item_id.tolist(), ratings):
            yield int(u), int(i), (None if r is None else float(r))


def to_triplets(frame: pd.DataFrame, *, with_rating: bool = True) -> RatingTriplets:
    """Expected columns: userId, movieId (and rating when `with_rating`)."""
    required = {"userId", "movieId"} | ({"rating"} if with_rating else set())
    missing = required - set(frame.columns)
    if missing:
        raise ValueError(f"ratings missing required columns: {sorted(missing)}")

    return RatingTriplets(
        user_id=frame["userId"].to_numpy(dtype=np.int64),
        item_id=frame["movieId"].to_numpy(dtype=np.int64),
        rating=(frame["rating"].to_numpy(dtype=np.float32) if with_rating else None),
    )


@dataclass(frozen=True)
class IdEncoder:
    """Raw id -> contiguous index; ids unseen at fit time encode to -1."""

    classes: np.ndarray

    @classmethod
    def fit(cls, ids: np.ndarray) -> "IdEncoder":
        le = LabelEncoder()
        le.fit(np.asarray(ids, dtype=np.int64))
        return cls(classes=le.classes_.astype(np.int64))

    def __len__(self) -> int:
        return int(len(self.classes))

    def transform(self, ids: np.ndarray) -> np.ndarray:
        ids = np.asarray(ids, dtype=np.int64)
        if len(self.classes) == 0:
            return np.full(ids.shape, -1, dtype=np.int64)
        pos = np.searchsorted(self.classes, ids)
        pos_clipped = np.minimum(pos, len(self.classes) - 1)
        found = self.classes[pos_clipped] == ids
        return np.where(found, pos_clipped, -1).astype(np.int64)


@dataclass(frozen=True)
class FactorizationModel:
    module: LatentFactorModel
    users: IdEncoder
    items: IdEncoder
    global_mean: float
    params: FactorizationParams
    train_rmse: Tuple[float, ...] = field(default_factory=tuple)

    @property
    def n_users(self) -> int:
        return len(self.users)

    @property
    def n_items(self) -> int:
        return len(self.items)


def _device_from_str(device: str | None) -> torch.device:
    if device is None:
        return torch.device("cpu")
    return torch.device(str(device))


def _block_rows(user_idx: np.ndarray, item_idx: np.ndarray, nbin: int, rng: np.random.Generator) -> list[np.ndarray]:
    """Group row positions into an nbin x nbin grid of (user bin, item bin) blocks."""
    n_users = int(user_idx.max()) + 1
    n_items = int(item_idx.max()) + 1
    # Random id -> bin assignment spreads heavy users/items across blocks.
    user_bin = rng.permutation(n_users)[user_idx] % nbin
    item_bin = rng.permutation(n_items)[item_idx] % nbin
    block_id = user_bin * nbin + item_bin

    order = np.argsort(block_id, kind="stable")
    counts = np.bincount(block_id, minlength=nbin * nbin)
    return [b for b in np.split(order, np.cumsum(counts)[:-1]) if len(b)]


def train(triplets: RatingTriplets, params: FactorizationParams = FactorizationParams()) -> FactorizationModel:
    """Fit latent factors on rated triplets. The returned model is never retrained."""
    if triplets.rating is None:
        raise ValueError("training triplets need ratings")
    if len(triplets) == 0:
        raise ValueError("cannot train on an empty triplet stream")
    if int(params.nbin) < 1 or int(params.niter) < 1 or int(params.dim) < 1:
        raise ValueError(f"invalid factorization params: {params}")

    users = IdEncoder.fit(triplets.user_id)
    items = IdEncoder.fit(triplets.item_id)
    user_idx = users.transform(triplets.user_id)
    item_idx = items.transform(triplets.item_id)
    ratings = np.asarray(triplets.rating, dtype=np.float32)
    global_mean = float(ratings.mean())

    rng = np.random.default_rng(int(params.seed))
    torch.manual_seed(int(params.seed))
    torch_device = _device_from_str(params.device)

    model = LatentFactorModel(n_users=len(users), n_items=len(items), dim=int(params.dim)).to(torch_device)
    # Adaptive per-coordinate step sizes; torch's Adagrad accepts sparse gradients.
    optimizer = torch.optim.Adagrad(model.parameters(), lr=float(params.lrate))

    blocks = _block_rows(user_idx, item_idx, int(params.nbin), rng)
    u_t = torch.from_numpy(user_idx).to(torch_device)
    i_t = torch.from_numpy(item_idx).to(torch_device)
    r_t = torch.from_numpy(ratings).to(torch_device)
    batch_size = max(1, int(params.batch_size))

    logger.info(
        "MF: users=%d items=%d ratings=%d dim=%d niter=%d nbin=%d blocks=%d device=%s",
        len(users),
        len(items),
        len(ratings),
        int(params.dim),
        int(params.niter),
        int(params.nbin),
        len(blocks),
        torch_device,
    )

    history: list[float] = []
    model.train()
    for it in range(int(params.niter)):
        total_sq = 0.0
        total_obj = 0.0
        for b in rng.permutation(len(blocks)):
            rows = rng.permutation(blocks[int(b)])
            for start in range(0, len(rows), batch_size):
                batch = torch.from_numpy(rows[start : start + batch_size]).to(torch_device)
                users_b, items_b, ratings_b = u_t[batch], i_t[batch], r_t[batch]

                err = ratings_b - model(users_b, items_b)
                reg = model.penalty(users_b, items_b, params.costp_l2, params.costq_l2)
                loss = (err * err + reg).mean()

                optimizer.zero_grad(set_to_none=True)
                loss.backward()
                optimizer.step()

                total_sq += float((err.detach() ** 2).sum().item())
                total_obj += float(loss.item()) * int(batch.shape[0])

        tr_rmse = float(np.sqrt(total_sq / len(ratings)))
        history.append(tr_rmse)
        logger.info("MF iter=%d tr_rmse=%.4f obj=%.4f", it + 1, tr_rmse, total_obj / len(ratings))

    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)

    return FactorizationModel(
        module=model,
        users=users,
        items=items,
        global_mean=global_mean,
        params=params,
        train_rmse=tuple(history),
    )


def predict(model: FactorizationModel, triplets: RatingTriplets) -> np.ndarray:
    """One prediction per triplet, in input order; ratings on the input are ignored.

    Pairs whose user or item was not seen in training get the training mean.
    """
    user_idx = model.users.transform(triplets.user_id)
    item_idx = model.items.transform(triplets.item_id)
    known = (user_idx >= 0) & (item_idx >= 0)

    out = np.full(len(triplets), model.global_mean, dtype=np.float64)
    if not known.any():
        return out

    device = next(model.module.parameters()).device
    positions = np.flatnonzero(known)
    batch_size = max(1, int(model.params.batch_size)) * 16
    with torch.no_grad():
        for start in range(0, len(positions), batch_size):
            pos = positions[start : start + batch_size]
            u = torch.from_numpy(user_idx[pos]).to(device)
            i = torch.from_numpy(item_idx[pos]).to(device)
            out[pos] = model.module(u, i).cpu().numpy().astype(np.float64)

    n_unknown = int((~known).sum())
    if n_unknown:
        logger.info("MF predict: %d of %d pairs unseen in training, using mean %.4f", n_unknown, len(out), model.global_mean)
    return out
