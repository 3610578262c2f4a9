"""Exploratory per-movie, per-user and per-genre summaries.

These tables are for the report only; none of them feed the rating models.
"""

from __future__ import annotations

from dataclasses import dataclass

import pandas as pd


TITLE_YEAR_PATTERN = r"\((\d{4})\)\s*$"


def release_years(titles: pd.Series) -> pd.Series:
    """Year from the trailing `(YYYY)` of each title as float64; NaN where a title has none."""
    year = titles.astype("string").str.strip().str.extract(TITLE_YEAR_PATTERN, expand=False)
    return pd.to_numeric(year, errors="coerce").astype("float64")


def parse_genres(genres: str) -> list[str]:
    """Parse pipe-separated genre tokens into a list."""
    if genres is None or (not isinstance(genres, str) and pd.isna(genres)):
        return []
    tokens = [g.strip() for g in str(genres).split("|")]
    return [t for t in tokens if t]


def add_time_features(sample: pd.DataFrame, *, reference_year: int = 2022) -> pd.DataFrame:
    """Add rating date parts, release year, rating gap and movie age columns."""
    out = sample.copy()
    out["rating_date"] = pd.to_datetime(out["timestamp"], unit="s", utc=True)
    out["rating_year"] = out["rating_date"].dt.year.astype("int64")
    out["rating_month"] = out["rating_date"].dt.month.astype("int64")

    out["release_year"] = release_years(out["title"])
    out["rating_gap"] = out["rating_year"] - out["release_year"]
    out["movie_age"] = int(reference_year) - out["release_year"]
    return out


def summarize_movies(sample: pd.DataFrame) -> pd.DataFrame:
    """Rating count and mean rating per movie."""
    return (
        sample.groupby("movieId")["rating"]
        .agg(n_ratings="count", avg_movie_rating="mean")
        .reset_index()
    )


def summarize_users(sample: pd.DataFrame) -> pd.DataFrame:
    """Mean given rating per user."""
    return sample.groupby("userId")["rating"].agg(avg_user_rating="mean").reset_index()


def explode_genres(frame: pd.DataFrame) -> pd.DataFrame:
    """One row per (row, genre tag); rows without genres are dropped."""
    exploded = frame.assign(genre=frame["genres"].map(parse_genres)).explode("genre")
    return exploded[exploded["genre"].notna()]


def summarize_genres(sample: pd.DataFrame) -> pd.DataFrame:
    """Mean rating and rating count per individual genre tag."""
    exploded = explode_genres(sample[["rating", "genres"]])
    return (
        exploded.groupby("genre")["rating"]
        .agg(avg_genre_rating="mean", n="count")
        .reset_index()
        .sort_values("genre", kind="mergesort", ignore_index=True)
    )


def summarize_genre_combinations(sample: pd.DataFrame, genre_table: pd.DataFrame) -> pd.DataFrame:
    """Average the per-tag means across all tags of each distinct genre string."""
    combos = pd.DataFrame({"genres": sample["genres"].dropna().unique()})
    exploded = explode_genres(combos)
    per_tag = exploded.merge(genre_table[["genre", "avg_genre_rating"]], on="genre", how="inner")
    return per_tag.groupby("genres", sort=False)["avg_genre_rating"].mean().reset_index()


def popular_genres(genre_table: pd.DataFrame, *, min_count: int = 1000) -> pd.DataFrame:
    """Genre tags with more than `min_count` ratings, best rated first."""
    popular = genre_table[genre_table["n"] > int(min_count)]
    return popular.sort_values("avg_genre_rating", ascending=False, kind="mergesort", ignore_index=True)


@dataclass(frozen=True)
class ExploratorySummary:
    movies: pd.DataFrame
    users: pd.DataFrame
    genres: pd.DataFrame
    genre_combinations: pd.DataFrame
    popular_genres: pd.DataFrame
    table: pd.DataFrame
    correlations: pd.DataFrame


def build_exploratory_table(
    sample: pd.DataFrame,
    movies: pd.DataFrame,
    users: pd.DataFrame,
    genre_combinations: pd.DataFrame,
) -> pd.DataFrame:
    """Join the per-movie/user/genre-combination aggregates back onto the sample."""
    table = sample.merge(movies, on="movieId", how="left", sort=False)
    table = table.merge(users, on="userId", how="left", sort=False)
    return table.merge(genre_combinations, on="genres", how="left", sort=False)


def numeric_correlations(table: pd.DataFrame) -> pd.DataFrame:
    """Pearson correlations between the numeric columns, alphabetically ordered."""
    numeric = table.select_dtypes("number")
    numeric = numeric[sorted(numeric.columns)]
    return numeric.astype("float64").corr()


def summarize_sample(
    sample: pd.DataFrame,
    *,
    reference_year: int = 2022,
    min_genre_count: int = 1000,
) -> ExploratorySummary:
    enriched = add_time_features(sample, reference_year=reference_year)
    movie_table = summarize_movies(enriched)
    user_table = summarize_users(enriched)
    genre_table = summarize_genres(enriched)
    combo_table = summarize_genre_combinations(enriched, genre_table)

    table = build_exploratory_table(enriched, movie_table, user_table, combo_table)
    return ExploratorySummary(
        movies=movie_table,
        users=user_table,
        genres=genre_table,
        genre_combinations=combo_table,
        popular_genres=popular_genres(genre_table, min_count=min_genre_count),
        table=table,
        correlations=numeric_correlations(table),
    )
