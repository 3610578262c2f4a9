from __future__ import annotations

import math

import torch
import torch.nn as nn


class LatentFactorModel(nn.Module):
    """Plain MF model: dot(user_factors, item_factors), no bias terms."""

    def __init__(self, n_users: int, n_items: int, *, dim: int = 10) -> None:
        super().__init__()
        # Sparse gradients: each step only touches the rows in the batch.
        self.user_factors = nn.Embedding(int(n_users), int(dim), sparse=True)
        self.item_factors = nn.Embedding(int(n_items), int(dim), sparse=True)

        # Small positive init keeps the initial dot products in the rating range.
        bound = 1.0 / math.sqrt(int(dim))
        nn.init.uniform_(self.user_factors.weight, 0.0, bound)
        nn.init.uniform_(self.item_factors.weight, 0.0, bound)

    def forward(self, user_idx: torch.Tensor, item_idx: torch.Tensor) -> torch.Tensor:
        p = self.user_factors(user_idx)
        q = self.item_factors(item_idx)
        return (p * q).sum(dim=1)

    def penalty(self, user_idx: torch.Tensor, item_idx: torch.Tensor, costp_l2: float, costq_l2: float) -> torch.Tensor:
        """Per-row L2 penalty on the factors used by each rating."""
        p = self.user_factors(user_idx)
        q = self.item_factors(item_idx)
        return float(costp_l2) * (p * p).sum(dim=1) + float(costq_l2) * (q * q).sum(dim=1)
