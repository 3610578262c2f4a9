from __future__ import annotations

import logging
import os
import random
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import numpy as np
import torch


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReproducibilityConfig:
    seed: int = 92
    deterministic: bool = True


def setup_logging(level: int | str = "INFO") -> None:
    """Configure stdlib logging with a consistent, project-wide format."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        # Avoid duplicate handlers if called multiple times (e.g., tests + CLI).
        root_logger.setLevel(level)
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def set_global_seed(cfg: ReproducibilityConfig) -> None:
    """Seed python, numpy and torch RNGs.

    Splits and samples take their own explicit seeds; this only pins the
    sources that are not passed a generator (torch parameter init, etc.).
    """
    random.seed(cfg.seed)
    np.random.seed(cfg.seed)
    torch.manual_seed(cfg.seed)

    if cfg.deterministic:
        torch.use_deterministic_algorithms(True, warn_only=True)

    os.environ["PYTHONHASHSEED"] = str(cfg.seed)


@contextmanager
def log_duration(step: str) -> Iterator[dict[str, float]]:
    """Log how long a pipeline step took; yields a dict filled with `seconds`."""
    timing: dict[str, float] = {}
    start = time.perf_counter()
    logger.info("%s: started", step)
    try:
        yield timing
    finally:
        timing["seconds"] = time.perf_counter() - start
        logger.info("%s: done in %.1fs", step, timing["seconds"])
