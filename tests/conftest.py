from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure `import src...` works when pytest uses importlib import mode.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


GENRE_COMBOS = (
    "Comedy",
    "Comedy|Romance",
    "Action|Crime|Thriller",
    "Animation|Children|Comedy",
    "Drama",
    "Drama|War",
    "Sci-Fi|Thriller",
)


def make_synthetic_ratings(
    n_users: int = 40,
    n_movies: int = 25,
    *,
    seed: int = 0,
    noise: float = 0.3,
) -> pd.DataFrame:
    """Every user rates every movie; rating = 3.5 + movie bias + user bias + noise, half-star rounded."""
    rng = np.random.default_rng(seed)
    movie_bias = rng.normal(0.0, 0.6, size=n_movies)
    user_bias = rng.normal(0.0, 0.4, size=n_users)

    users, movies = np.meshgrid(np.arange(n_users), np.arange(n_movies), indexing="ij")
    users = users.ravel()
    movies = movies.ravel()
    raw = 3.5 + movie_bias[movies] + user_bias[users] + rng.normal(0.0, noise, size=users.size)
    rating = np.clip(np.round(raw * 2) / 2, 0.5, 5.0)

    frame = pd.DataFrame(
        {
            "userId": users.astype(np.int64) + 1,
            "movieId": movies.astype(np.int64) + 101,
            "rating": rating.astype(np.float64),
            "timestamp": (900_000_000 + np.arange(users.size) * 3600).astype(np.int64),
        }
    )
    titles = {m: f"Movie {m} ({1980 + m % 30})" for m in frame["movieId"].unique()}
    genres = {m: GENRE_COMBOS[m % len(GENRE_COMBOS)] for m in frame["movieId"].unique()}
    frame["title"] = frame["movieId"].map(titles).astype("string")
    frame["genres"] = frame["movieId"].map(genres).astype("string")
    return frame


def write_movielens_dat(frame: pd.DataFrame, raw_dir: Path) -> None:
    """Write `ratings.dat` / `movies.dat` in the MovieLens 10M `::` format."""
    raw_dir.mkdir(parents=True, exist_ok=True)
    rating_lines = [
        f"{u}::{m}::{r:g}::{t}"
        for u, m, r, t in frame[["userId", "movieId", "rating", "timestamp"]].itertuples(index=False)
    ]
    (raw_dir / "ratings.dat").write_text("\n".join(rating_lines) + "\n")

    movies = frame.drop_duplicates("movieId")[["movieId", "title", "genres"]]
    movie_lines = [f"{m}::{title}::{genres}" for m, title, genres in movies.itertuples(index=False)]
    (raw_dir / "movies.dat").write_text("\n".join(movie_lines) + "\n")


@pytest.fixture
def synthetic_ratings() -> pd.DataFrame:
    return make_synthetic_ratings()


@pytest.fixture
def make_ratings():
    return make_synthetic_ratings


@pytest.fixture
def write_raw_files():
    return write_movielens_dat
