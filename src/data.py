"""MovieLens 10M download, parsing and joining."""

from __future__ import annotations

import csv
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Tuple

import pandas as pd
import requests


logger = logging.getLogger(__name__)

MOVIELENS_10M_URL = "https://files.grouplens.org/datasets/movielens/ml-10m.zip"
ARCHIVE_PREFIX = "ml-10M100K/"
FIELD_SEP = "::"

RATINGS_FILE = "ratings.dat"
MOVIES_FILE = "movies.dat"

REQUIRED_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "movies": ("movieId", "title", "genres"),
    "ratings": ("userId", "movieId", "rating", "timestamp"),
}

RATING_DTYPES = {"userId": "int64", "movieId": "int64", "rating": "float64", "timestamp": "int64"}


class DatasetLoadError(ValueError):
    """Raised when the raw MovieLens sources are missing or malformed."""


@dataclass(frozen=True)
class MovieLensFiles:
    ratings_path: Path
    movies_path: Path


@dataclass(frozen=True)
class RawMovieLensData:
    ratings: pd.DataFrame
    movies: pd.DataFrame


def download_movielens(
    raw_dir: Path,
    *,
    url: str = MOVIELENS_10M_URL,
    force: bool = False,
    timeout: float = 60.0,
) -> MovieLensFiles:
    """Download the MovieLens zip and extract `ratings.dat` / `movies.dat` into `raw_dir`.

    Nothing is fetched when both files already exist (unless `force`).
    """
    raw_dir = Path(raw_dir)
    files = MovieLensFiles(ratings_path=raw_dir / RATINGS_FILE, movies_path=raw_dir / MOVIES_FILE)
    if not force and files.ratings_path.exists() and files.movies_path.exists():
        logger.info("MovieLens files already present in %s, skipping download", raw_dir)
        return files

    raw_dir.mkdir(parents=True, exist_ok=True)
    zip_path = raw_dir / Path(url).name
    logger.info("Downloading %s -> %s", url, zip_path)
    try:
        try:
            with requests.get(url, stream=True, timeout=timeout) as response:
                response.raise_for_status()
                with zip_path.open("wb") as f:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as exc:
            raise DatasetLoadError(f"Could not download MovieLens archive from {url}: {exc}") from exc

        try:
            with zipfile.ZipFile(zip_path) as zf:
                for name, target in ((RATINGS_FILE, files.ratings_path), (MOVIES_FILE, files.movies_path)):
                    member = _find_member(zf, name)
                    with zf.open(member) as src, target.open("wb") as dst:
                        for chunk in iter(lambda: src.read(1024 * 1024), b""):
                            dst.write(chunk)
        except zipfile.BadZipFile as exc:
            raise DatasetLoadError(f"{zip_path} is not a valid zip archive") from exc
    finally:
        # Partial downloads must not linger in raw_dir.
        zip_path.unlink(missing_ok=True)

    logger.info("Extracted %s and %s", files.ratings_path.name, files.movies_path.name)
    return files


def _find_member(zf: zipfile.ZipFile, name: str) -> str:
    preferred = ARCHIVE_PREFIX + name
    names = zf.namelist()
    if preferred in names:
        return preferred
    # Tolerate other top-level folder names (e.g. repackaged archives).
    for candidate in names:
        if candidate.endswith("/" + name) or candidate == name:
            return candidate
    raise DatasetLoadError(f"Archive does not contain {name!r}")


class _SeparatorSwapReader:
    """Lazy file-like view over text lines with `::` rewritten to a tab.

    Lets the C parser of `pd.read_csv` consume the ratings one buffer at a time.
    """

    def __init__(self, lines: Iterable[str]) -> None:
        self._lines = iter(lines)
        self._pending = ""

    @staticmethod
    def _swap(line: str) -> str:
        return line.rstrip("\r\n").replace(FIELD_SEP, "\t") + "\n"

    def read(self, size: int = -1) -> str:
        parts = [self._pending]
        n = len(self._pending)
        while size is None or size < 0 or n < size:
            line = next(self._lines, None)
            if line is None:
                break
            line = self._swap(line)
            parts.append(line)
            n += len(line)
        text = "".join(parts)
        if size is None or size < 0 or len(text) <= size:
            self._pending = ""
            return text
        self._pending = text[size:]
        return text[:size]

    def __iter__(self) -> Iterator[str]:
        if self._pending:
            pending, self._pending = self._pending, ""
            yield pending
        for line in self._lines:
            yield self._swap(line)


def parse_ratings_lines(lines: Iterable[str]) -> pd.DataFrame:
    """Parse `userId::movieId::rating::timestamp` lines into a typed DataFrame.

    Lines are streamed into the parser with final dtypes, so no intermediate copy
    of the source text or per-field string objects are kept.
    """
    expected = REQUIRED_COLUMNS["ratings"]
    dtypes = {pos: RATING_DTYPES[col] for pos, col in enumerate(expected)}
    try:
        df = pd.read_csv(
            _SeparatorSwapReader(lines),
            sep="\t",
            header=None,
            quoting=csv.QUOTE_NONE,
            dtype=dtypes,
            keep_default_na=False,
        )
    except pd.errors.EmptyDataError as exc:
        raise DatasetLoadError("ratings source is empty") from exc
    except ValueError as exc:
        # ParserError (ragged rows) and failed int/float conversion both land here.
        raise DatasetLoadError(f"ratings source is malformed: {exc}") from exc

    if df.shape[1] != len(expected):
        raise DatasetLoadError(f"ratings source has {df.shape[1]} columns, expected {len(expected)}")
    df.columns = list(expected)

    empty = df.isna().any(axis=1)
    if empty.any():
        first_bad = int(empty.to_numpy().argmax()) + 1
        raise DatasetLoadError(f"ratings source has missing fields (first at line {first_bad})")
    return df


def parse_movies_lines(lines: Iterable[str]) -> pd.DataFrame:
    """Parse `movieId::title::genres` lines; genres keep any trailing separators."""
    records = []
    for lineno, line in enumerate(lines, start=1):
        line = line.rstrip("\r\n")
        if not line:
            continue
        parts = line.split(FIELD_SEP, 2)
        if len(parts) != 3:
            raise DatasetLoadError(f"movies source line {lineno} has {len(parts)} fields, expected 3")
        movie_id, title, genres = parts
        try:
            records.append((int(movie_id), title, genres))
        except ValueError as exc:
            raise DatasetLoadError(f"movies source line {lineno} has a non-integer movieId: {movie_id!r}") from exc

    movies = pd.DataFrame.from_records(records, columns=list(REQUIRED_COLUMNS["movies"]))
    return movies.astype({"movieId": "int64", "title": "string", "genres": "string"})


def load_ratings(path: Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise DatasetLoadError(f"ratings file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return parse_ratings_lines(f)


def load_movies(path: Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise DatasetLoadError(f"movies file not found: {path}")
    # movies.dat ships some latin-1 titles.
    with path.open("r", encoding="utf-8", errors="replace") as f:
        return parse_movies_lines(f)


def join_movielens(ratings: pd.DataFrame, movies: pd.DataFrame) -> pd.DataFrame:
    """Left join movie metadata onto ratings (one row per rating, rating order kept)."""
    joined = ratings.merge(movies, on="movieId", how="left", sort=False)
    n_missing = int(joined["title"].isna().sum())
    if n_missing:
        logger.warning("%d ratings reference movies absent from the movie table", n_missing)
    return joined


def load_movielens(raw_dir: Path) -> RawMovieLensData:
    """Load and validate `ratings.dat` / `movies.dat` from `raw_dir`."""
    raw_dir = Path(raw_dir)
    ratings = load_ratings(raw_dir / RATINGS_FILE)
    movies = load_movies(raw_dir / MOVIES_FILE)
    data = RawMovieLensData(ratings=ratings, movies=movies)
    validate_schema(data)
    logger.info("Loaded ratings=%d movies=%d from %s", len(ratings), len(movies), raw_dir)
    return data


def validate_schema(data: RawMovieLensData) -> None:
    """Validate that all required columns exist and basic constraints hold."""
    for name, cols in REQUIRED_COLUMNS.items():
        df = getattr(data, name)
        missing = [c for c in cols if c not in df.columns]
        if missing:
            raise DatasetLoadError(f"{name} missing columns: {missing}")

    if data.movies["movieId"].duplicated().any():
        raise DatasetLoadError("movies has duplicate movieId values")

    ratings = data.ratings
    if (ratings["timestamp"] < 0).any():
        raise DatasetLoadError("ratings contains negative timestamps")

    # Allowed values: 0.5, 1.0, ..., 5.0 (half-star increments).
    # Use integer arithmetic to avoid float representation edge cases.
    scaled = (ratings["rating"] * 2).round().astype("int64")
    bad_mask = ~scaled.isin(range(1, 11)) | ~ratings["rating"].between(0.5, 5.0) | (scaled != ratings["rating"] * 2)
    if bad_mask.any():
        bad_values = sorted(set(ratings.loc[bad_mask, "rating"].tolist()))
        raise DatasetLoadError(f"ratings has invalid rating values (expected half-stars 0.5..5.0): {bad_values[:10]}")
