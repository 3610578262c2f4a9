"""Matrix factorization rating predictor.

Core idea:
- Turn (userId, movieId, rating) rows into a sparse triplet stream
- Learn one latent factor vector per user and per movie (dot product ~ rating)
- Train with block-partitioned stochastic gradients, L2 penalties on both sides
- Predict one rating per input triplet, in input order

Callers only use `train` / `predict` from `.train`, so the solver behind them can change.
"""
