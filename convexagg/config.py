from __future__ import annotations
import math
from dataclasses import dataclass, field
from typing import Tuple

from .errors import ConfigError

OBJECTIVES = ("svm", "logistic", "ridge", "lasso", "cox")
METHODS = ("igd", "cg", "newton")


@dataclass(frozen=True)
class TaskConfig:
    """Per-pass hyperparameters. Fixed from initialize to finalize."""
    dimension: int
    stepsize: float = 0.01
    regularization: float = 0.0
    objective: str = "svm"

    def __post_init__(self):
        if isinstance(self.dimension, bool) or not isinstance(self.dimension, int):
            raise ConfigError(f"dimension must be an int, got {self.dimension!r}")
        if self.dimension <= 0:
            raise ConfigError(f"dimension must be positive, got {self.dimension}")
        if self.objective not in OBJECTIVES:
            raise ConfigError(f"Unknown objective: {self.objective!r} (expected one of {OBJECTIVES})")
        for name in ("stepsize", "regularization"):
            v = float(getattr(self, name))
            if not math.isfinite(v) or v < 0.0:
                raise ConfigError(f"{name} must be finite and >= 0, got {v}")


@dataclass
class RunConfig:
    seed: int = 0

    # Model
    objective: str = "svm"       # svm | logistic | ridge | lasso | cox
    method: str = "igd"          # igd | cg | newton
    dimension: int = 2

    # Optimization
    stepsize: float = 0.01
    regularization: float = 0.0
    tolerance: float = 1e-6
    max_iters: int = 50

    # Partitioning / merging
    num_partitions: int = 1
    max_workers: int = 1
    merge_shape: str = "tree"    # tree | sequential

    # Conjugate gradient
    cg_beta: str = "polak_ribiere"   # or "fletcher_reeves"
    line_search: str = "fixed"       # fixed | best_ball
    stepsizes: Tuple[float, ...] = field(default_factory=lambda: (1.0, 0.5, 0.25, 0.125, 0.0625))

    # Newton
    max_dense_dimension: int = 2048
    max_condition: float = 1e12

    results_dir: str = "results"

    def __post_init__(self):
        if self.method not in METHODS:
            raise ConfigError(f"Unknown method: {self.method!r} (expected one of {METHODS})")
        if self.merge_shape not in ("tree", "sequential"):
            raise ConfigError(f"Unknown merge shape: {self.merge_shape!r}")
        if self.cg_beta not in ("fletcher_reeves", "polak_ribiere"):
            raise ConfigError(f"Unknown conjugate-gradient beta rule: {self.cg_beta!r}")
        if self.line_search not in ("fixed", "best_ball"):
            raise ConfigError(f"Unknown line search: {self.line_search!r}")
        if self.num_partitions < 1 or self.max_workers < 1:
            raise ConfigError("num_partitions and max_workers must be >= 1")
        if self.max_iters < 1:
            raise ConfigError("max_iters must be >= 1")
        if self.line_search == "best_ball" and len(self.stepsizes) == 0:
            raise ConfigError("best_ball line search needs at least one candidate stepsize")
        self.stepsizes = tuple(float(s) for s in self.stepsizes)
        # fails early on bad dimension / objective
        self.task()

    def task(self) -> TaskConfig:
        return TaskConfig(
            dimension=self.dimension,
            stepsize=self.stepsize,
            regularization=self.regularization,
            objective=self.objective,
        )
