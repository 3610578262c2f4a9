from __future__ import annotations

import argparse
import dataclasses
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from ..baseline import MISSING_POLICIES, MissingPolicy, fit_bias_models
from ..data import MOVIELENS_10M_URL, download_movielens, join_movielens, load_movielens
from ..eda import run_data_checks
from ..evaluate import ResultsTable, apply_missing_policy, render_results, rmse
from ..factorization.train import FactorizationParams, predict, to_triplets, train
from ..features import ExploratorySummary, summarize_sample
from ..partition import sample_rows, split_validation
from ..paths import ProjectPaths, get_repo_root
from ..utils import ReproducibilityConfig, log_duration, set_global_seed, setup_logging


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartitionConfig:
    validation_fraction: float = 0.1
    validation_seed: int = 1
    test_fraction: float = 0.2
    test_seed: int = 92
    reconcile_test: bool = False


@dataclass(frozen=True)
class ExplorationConfig:
    enabled: bool = True
    sample_size: int = 100_000
    seed: int = 92
    reference_year: int = 2022
    min_genre_count: int = 1000


@dataclass(frozen=True)
class ReportConfig:
    url: str = MOVIELENS_10M_URL
    raw_dir: Path = Path("data/raw")
    reports_dir: Path = Path("reports")
    partition: PartitionConfig = field(default_factory=PartitionConfig)
    exploration: ExplorationConfig = field(default_factory=ExplorationConfig)
    missing_policy: MissingPolicy = "exclude"
    factorization: FactorizationParams = field(default_factory=FactorizationParams)


def _section(cfg_yaml: dict[str, Any], name: str) -> dict[str, Any]:
    section = cfg_yaml.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"config section {name!r} must be a mapping")
    return section


def _pick(cls: type, raw: dict[str, Any]) -> Any:
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys in config: {unknown}")
    return cls(**raw)


def config_from_mapping(cfg_yaml: dict[str, Any]) -> ReportConfig:
    dataset_cfg = _section(cfg_yaml, "dataset")
    missing_policy = str(_section(cfg_yaml, "baseline").get("missing_policy", "exclude"))
    if missing_policy not in MISSING_POLICIES:
        raise ValueError(f"baseline.missing_policy must be one of {MISSING_POLICIES}, got {missing_policy!r}")

    return ReportConfig(
        url=str(dataset_cfg.get("url", MOVIELENS_10M_URL)),
        raw_dir=Path(str(dataset_cfg.get("raw_dir", "data/raw"))),
        reports_dir=Path(str(dataset_cfg.get("reports_dir", "reports"))),
        partition=_pick(PartitionConfig, _section(cfg_yaml, "partition")),
        exploration=_pick(ExplorationConfig, _section(cfg_yaml, "exploration")),
        missing_policy=missing_policy,  # type: ignore[arg-type]
        factorization=_pick(FactorizationParams, _section(cfg_yaml, "factorization")),
    )


def load_config(config_path: Path) -> ReportConfig:
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")
    cfg_yaml = yaml.safe_load(config_path.read_text())
    if not isinstance(cfg_yaml, dict):
        raise ValueError(f"Expected config YAML to be a mapping, got: {type(cfg_yaml)}")
    return config_from_mapping(cfg_yaml)


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


@dataclass(frozen=True)
class ReportResult:
    results: ResultsTable
    exploration: Optional[ExploratorySummary]
    outputs: dict[str, str]
    manifest: dict[str, Any]


def save_report(
    results: ResultsTable,
    exploration: Optional[ExploratorySummary],
    manifest: dict[str, Any],
    paths: ProjectPaths,
) -> dict[str, str]:
    """Write results.csv, exploratory tables and run_manifest.json under `reports_dir`."""
    paths.reports_dir.mkdir(parents=True, exist_ok=True)
    outputs: dict[str, str] = {}

    results_path = paths.reports_dir / "results.csv"
    results.to_frame().to_csv(results_path, index=False)
    outputs["results"] = str(results_path)

    if exploration is not None:
        paths.exploration_dir.mkdir(parents=True, exist_ok=True)
        tables = {
            "movie_summary": exploration.movies,
            "user_summary": exploration.users,
            "genre_summary": exploration.genres,
            "genre_combinations": exploration.genre_combinations,
            "popular_genres": exploration.popular_genres,
        }
        for name, table in tables.items():
            path = paths.exploration_dir / f"{name}.csv"
            table.to_csv(path, index=False)
            outputs[name] = str(path)
        corr_path = paths.exploration_dir / "correlations.csv"
        exploration.correlations.to_csv(corr_path)
        outputs["correlations"] = str(corr_path)

    manifest_path = paths.reports_dir / "run_manifest.json"
    manifest = {**manifest, "outputs": dict(outputs)}
    manifest_path.write_text(json.dumps(manifest, indent=2, sort_keys=True, default=str) + "\n")
    outputs["manifest"] = str(manifest_path)
    return outputs


def run_report(cfg: ReportConfig, *, repo_root: Path, download: bool = True) -> ReportResult:
    """Load -> split -> explore -> fit bias models and MF -> score -> save."""
    paths = ProjectPaths.from_repo_root(repo_root, raw_dir=cfg.raw_dir, reports_dir=cfg.reports_dir)
    set_global_seed(ReproducibilityConfig(seed=cfg.factorization.seed, deterministic=True))
    timings: dict[str, float] = {}

    with log_duration("load") as t:
        if download:
            download_movielens(paths.raw_dir, url=cfg.url)
        data = load_movielens(paths.raw_dir)
        run_data_checks(data, strict=True)
        movielens = join_movielens(data.ratings, data.movies)
        del data
    timings["load"] = t["seconds"]

    edx, validation = split_validation(
        movielens,
        cfg.partition.validation_fraction,
        cfg.partition.validation_seed,
        reconcile_ids=True,
    )
    n_movielens = len(movielens)
    del movielens
    logger.info("Released joined dataset (%d rows)", n_movielens)

    exploration: Optional[ExploratorySummary] = None
    if cfg.exploration.enabled:
        with log_duration("exploration") as t:
            sample = sample_rows(edx, cfg.exploration.sample_size, cfg.exploration.seed)
            exploration = summarize_sample(
                sample,
                reference_year=cfg.exploration.reference_year,
                min_genre_count=cfg.exploration.min_genre_count,
            )
            del sample
        timings["exploration"] = t["seconds"]
        logger.info("Popular genres:\n%s", exploration.popular_genres.to_string(index=False))

    train_set, test_set = split_validation(
        edx,
        cfg.partition.test_fraction,
        cfg.partition.test_seed,
        reconcile_ids=cfg.partition.reconcile_test,
    )
    n_edx = len(edx)
    del edx
    logger.info("Released training pool (%d rows)", n_edx)

    results = ResultsTable()
    observed = test_set["rating"]
    scored: dict[str, dict[str, int]] = {}

    with log_duration("bias models") as t:
        for method_no, model in enumerate(fit_bias_models(train_set), start=1):
            raw_pred = model.predict(test_set)
            pred, obs = apply_missing_policy(
                raw_pred,
                observed,
                policy=cfg.missing_policy,
                fallback=model.global_mean,
            )
            scored[model.name] = {"missing": int(raw_pred.isna().sum()), "scored": int(obs.size)}
            results.add(f"Method #{method_no}", model.name, rmse(pred, obs))
    timings["bias_models"] = t["seconds"]

    with log_duration("matrix factorization") as t:
        mf = train(to_triplets(train_set), cfg.factorization)
        test_pred = predict(mf, to_triplets(test_set, with_rating=False))
        results.add("Method #4", "Matrix Factorization", rmse(test_pred, observed))

        # Only the final model is scored on the validation set.
        val_pred = predict(mf, to_triplets(validation, with_rating=False))
        results.add("Final Validation", "Matrix Factorization", rmse(val_pred, validation["rating"]))
    timings["matrix_factorization"] = t["seconds"]

    raw_files = sorted(p for p in paths.raw_dir.glob("*.dat"))
    manifest: dict[str, Any] = {
        "built_at_utc": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "dataset": {
            "url": cfg.url,
            "raw_dir": str(paths.raw_dir),
            "files_sha256": {p.name: _sha256_file(p) for p in raw_files},
        },
        "config": dataclasses.asdict(cfg),
        "rows": {
            "movielens": n_movielens,
            "train": len(train_set),
            "test": len(test_set),
            "validation": len(validation),
        },
        "bias_predictions": scored,
        "mf_train_rmse": list(mf.train_rmse),
        "timings_seconds": timings,
        "results": results.to_frame().to_dict(orient="records"),
    }
    outputs = save_report(results, exploration, manifest, paths)
    return ReportResult(results=results, exploration=exploration, outputs=outputs, manifest=manifest)


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="MovieLens 10M rating prediction report (bias models + MF).")
    p.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to config YAML.")
    p.add_argument("--raw-dir", type=Path, default=None, help="Override dataset.raw_dir")
    p.add_argument("--reports-dir", type=Path, default=None, help="Override dataset.reports_dir")
    p.add_argument("--device", type=str, default=None, help="MF training device (cpu/cuda/mps)")
    p.add_argument("--niter", type=int, default=None, help="Override factorization.niter")
    p.add_argument("--skip-exploration", action="store_true", help="Do not compute exploratory summaries")
    p.add_argument("--no-download", action="store_true", help="Fail instead of downloading missing raw files")
    p.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_arg_parser().parse_args(argv)
    setup_logging(args.log_level.upper())

    repo_root = get_repo_root()
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = (repo_root / config_path).resolve()
    cfg = load_config(config_path)

    if args.raw_dir is not None:
        cfg = dataclasses.replace(cfg, raw_dir=Path(args.raw_dir))
    if args.reports_dir is not None:
        cfg = dataclasses.replace(cfg, reports_dir=Path(args.reports_dir))
    if args.device is not None or args.niter is not None:
        mf_overrides: dict[str, Any] = {}
        if args.device is not None:
            mf_overrides["device"] = args.device
        if args.niter is not None:
            mf_overrides["niter"] = int(args.niter)
        cfg = dataclasses.replace(cfg, factorization=dataclasses.replace(cfg.factorization, **mf_overrides))
    if args.skip_exploration:
        cfg = dataclasses.replace(cfg, exploration=dataclasses.replace(cfg.exploration, enabled=False))

    report = run_report(cfg, repo_root=repo_root, download=(not bool(args.no_download)))

    print("\n=== Results ===")
    print(render_results(report.results))
    print(f"\nReport written to {report.outputs['manifest']}")


if __name__ == "__main__":
    main()
