"""Data quality checks for the MovieLens 10M ratings/movies tables.

Exploratory summaries live in `features.py`; this module only decides whether
the raw tables are fit to feed the modelling pipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .data import RawMovieLensData, validate_schema
from .features import release_years


logger = logging.getLogger(__name__)


# NOTE:
# The 10M README lists 18 genres; the movies file also carries "IMAX" and
# "(no genres listed)". Unknown tokens only warn.
ALLOWED_GENRES: frozenset[str] = frozenset(
    {
        "Action",
        "Adventure",
        "Animation",
        "Children",
        "Comedy",
        "Crime",
        "Documentary",
        "Drama",
        "Fantasy",
        "Film-Noir",
        "Horror",
        "IMAX",
        "Musical",
        "Mystery",
        "Romance",
        "Sci-Fi",
        "Thriller",
        "War",
        "Western",
        "(no genres listed)",
    }
)


@dataclass(frozen=True)
class CheckResult:
    """Single validation check outcome."""

    name: str
    status: str  # "PASS" | "WARN" | "FAIL"
    details: str


def run_data_checks(
    data: RawMovieLensData,
    *,
    strict: bool = True,
    allowed_genres: Sequence[str] = tuple(ALLOWED_GENRES),
) -> Tuple[CheckResult, ...]:
    """Run data quality checks over the raw tables.

    Parameters
    ----------
    data:
        Loaded raw data.
    strict:
        If True, raise ValueError on FAIL checks.
    allowed_genres:
        Genre vocabulary used for validation. Unknown genres -> WARN.

    Returns
    -------
    tuple[CheckResult, ...]
        All check results.
    """

    validate_schema(data)

    movies = data.movies
    ratings = data.ratings

    checks: List[CheckResult] = []

    def _fail_or_warn(name: str, ok: bool, fail_msg: str, warn: bool = False) -> None:
        if ok:
            checks.append(CheckResult(name=name, status="PASS", details="OK"))
            return
        status = "WARN" if warn else "FAIL"
        checks.append(CheckResult(name=name, status=status, details=fail_msg))
        if strict and status == "FAIL":
            raise ValueError(f"[FAIL] {name}: {fail_msg}")

    _fail_or_warn(
        "movies.required_non_null",
        ok=bool(movies[["movieId", "title", "genres"]].notna().all().all()),
        fail_msg="movies has nulls in required columns (movieId/title/genres)",
    )

    _fail_or_warn(
        "ratings.required_non_null",
        ok=bool(ratings[["userId", "movieId", "rating", "timestamp"]].notna().all().all()),
        fail_msg="ratings has nulls in required columns",
    )

    valid_ratings = {0.5, 1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0, 4.5, 5.0}
    bad_rating_values = sorted(set(ratings["rating"].unique().tolist()) - valid_ratings)
    _fail_or_warn(
        "ratings.allowed_values",
        ok=(len(bad_rating_values) == 0),
        fail_msg=f"Unexpected rating values found: {bad_rating_values}",
    )

    _fail_or_warn(
        "ratings.user_movie_unique",
        ok=(ratings.duplicated(subset=["userId", "movieId"]).sum() == 0),
        fail_msg="ratings contains duplicate (userId, movieId) rows",
        warn=True,
    )

    _fail_or_warn(
        "ratings.timestamp_non_negative",
        ok=bool((ratings["timestamp"] >= 0).all()),
        fail_msg="ratings contains negative timestamps",
    )

    # Movies referenced by ratings but missing from the movie table get no
    # title/genres after the join; the models do not need them.
    unknown_movies = set(ratings["movieId"].unique().tolist()) - set(movies["movieId"].tolist())
    _fail_or_warn(
        "ratings.movie_ids_in_movies",
        ok=(len(unknown_movies) == 0),
        fail_msg=f"{len(unknown_movies)} rated movieIds are missing from movies",
        warn=True,
    )

    # MovieLens 10M only includes users with >= 20 ratings.
    ratings_per_user = ratings.groupby("userId").size()
    min_ratings_per_user = int(ratings_per_user.min()) if len(ratings_per_user) else 0
    _fail_or_warn(
        "ratings.min_20_per_user",
        ok=(min_ratings_per_user >= 20),
        fail_msg=f"Found user(s) with < 20 ratings. min={min_ratings_per_user}",
        warn=True,
    )

    allowed = set(allowed_genres)
    observed: set[str] = set()
    for g in movies["genres"].astype(str):
        observed.update(g.split("|"))
    unknown_genres = sorted(observed - allowed)
    _fail_or_warn(
        "movies.genres_vocabulary",
        ok=(len(unknown_genres) == 0),
        fail_msg=f"Unknown genre tokens found: {unknown_genres}",
        warn=True,
    )

    n_missing_year = int(release_years(movies["title"]).isna().sum())
    _fail_or_warn(
        "movies.title_year_parse",
        ok=(n_missing_year == 0),
        fail_msg=f"Could not parse year from {n_missing_year} titles",
        warn=True,
    )

    for check in checks:
        if check.status != "PASS":
            logger.warning("Data check %s: %s (%s)", check.name, check.status, check.details)
    return tuple(checks)
