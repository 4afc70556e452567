"""
Accumulator state shared by every optimization strategy, plus the frozen
Snapshot that finalize produces and the flat blob layout it is persisted in.
"""
from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

import torch
from loguru import logger

from .config import OBJECTIVES, TaskConfig
from .data import DTYPE
from .errors import ConfigError, NO_DATA
from .objectives import RiskSetAccumulator


class _Empty:
    """Pass state before the first transition. Identity element of merge."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "EMPTY"


EMPTY = _Empty()


@dataclass
class Accumulator:
    """Algorithm-specific partial sums of one pass."""
    loss: float = 0.0
    gradient: Optional[torch.Tensor] = None
    hessian: Optional[torch.Tensor] = None
    risk: Optional[RiskSetAccumulator] = None

    def clone(self) -> "Accumulator":
        return Accumulator(
            loss=self.loss,
            gradient=None if self.gradient is None else self.gradient.clone(),
            hessian=None if self.hessian is None else self.hessian.clone(),
            risk=None if self.risk is None else self.risk.clone(),
        )


@dataclass(frozen=True, eq=False)
class SearchMemory:
    """Bookkeeping carried from one iteration to the next (conjugate directions)."""
    iteration: int = 0
    direction: Optional[torch.Tensor] = None
    prev_gradient: Optional[torch.Tensor] = None


@dataclass
class AccumulatorState:
    config: TaskConfig
    model: torch.Tensor
    memory: SearchMemory = field(default_factory=SearchMemory)
    acc: Accumulator = field(default_factory=Accumulator)
    row_count: int = 0

    @property
    def dimension(self) -> int:
        return self.config.dimension

    def clone(self) -> "AccumulatorState":
        return AccumulatorState(
            config=self.config,
            model=self.model.clone(),
            memory=self.memory,
            acc=self.acc.clone(),
            row_count=self.row_count,
        )


@dataclass(frozen=True, eq=False)
class Snapshot:
    """Immutable result of one finalized pass; seeds the next pass."""
    config: TaskConfig
    model: torch.Tensor
    loss: float
    row_count: int
    method: str
    memory: SearchMemory = field(default_factory=SearchMemory)
    grad_norm: Optional[float] = None
    condition_number: Optional[float] = None
    inv_hessian_diag: Optional[torch.Tensor] = None

    @property
    def iteration(self) -> int:
        return self.memory.iteration

    @property
    def direction(self) -> Optional[torch.Tensor]:
        return self.memory.direction

    @property
    def mean_loss(self) -> float:
        return self.loss / self.row_count


# ---------------------------
# Blob layout
# ---------------------------

METHOD_CODES = {"igd": 1.0, "cg": 2.0, "newton": 3.0}
_METHODS_BY_CODE = {v: k for k, v in METHOD_CODES.items()}


def snapshot_to_blob(snap: Snapshot) -> torch.Tensor:
    """
    [dimension][objective code, stepsize, regularization, method code][model: D]
    [iteration, loss, grad_norm, condition number, direction: D, prev_gradient: D,
     inverse Hessian diagonal: D, has direction, has prev_gradient,
     has inverse Hessian diagonal][rowCount]

    Missing scalars are stored as NaN, missing vectors as zeros plus a 0 flag.
    """
    cfg = snap.config
    d = cfg.dimension
    zeros = torch.zeros(d, dtype=DTYPE)
    nan = float("nan")

    def vec(v):
        return zeros if v is None else v.to(DTYPE)

    parts = [
        torch.tensor([d, OBJECTIVES.index(cfg.objective), cfg.stepsize, cfg.regularization,
                      METHOD_CODES[snap.method]], dtype=DTYPE),
        snap.model.to(DTYPE),
        torch.tensor([snap.memory.iteration, snap.loss,
                      nan if snap.grad_norm is None else snap.grad_norm,
                      nan if snap.condition_number is None else snap.condition_number], dtype=DTYPE),
        vec(snap.memory.direction),
        vec(snap.memory.prev_gradient),
        vec(snap.inv_hessian_diag),
        torch.tensor([snap.memory.direction is not None, snap.memory.prev_gradient is not None,
                      snap.inv_hessian_diag is not None], dtype=DTYPE),
        torch.tensor([snap.row_count], dtype=DTYPE),
    ]
    return torch.cat(parts)


def snapshot_from_blob(blob: torch.Tensor) -> Snapshot:
    blob = torch.as_tensor(blob, dtype=DTYPE)
    d = int(blob[0])
    expected = 5 + d + 4 + 3 * d + 1 + 3
    if d <= 0 or blob.numel() != expected:
        raise ConfigError(f"Blob of length {blob.numel()} does not match dimension {d}")
    cfg = TaskConfig(
        dimension=d,
        objective=OBJECTIVES[int(blob[1])],
        stepsize=float(blob[2]),
        regularization=float(blob[3]),
    )
    method = _METHODS_BY_CODE[float(blob[4])]
    i = 5
    model = blob[i:i + d].clone()
    i += d
    iteration, loss, grad_norm, cond = (float(v) for v in blob[i:i + 4])
    i += 4
    direction, prev_gradient, inv_diag = (blob[i + k * d:i + (k + 1) * d].clone() for k in range(3))
    i += 3 * d
    has_dir, has_prev, has_inv = (bool(v) for v in blob[i:i + 3])
    row_count = int(blob[i + 3])
    return Snapshot(
        config=cfg,
        model=model,
        loss=loss,
        row_count=row_count,
        method=method,
        memory=SearchMemory(
            iteration=int(iteration),
            direction=direction if has_dir else None,
            prev_gradient=prev_gradient if has_prev else None,
        ),
        grad_norm=None if grad_norm != grad_norm else grad_norm,
        condition_number=None if cond != cond else cond,
        inv_hessian_diag=inv_diag if has_inv else None,
    )


class SnapshotStore:
    """Finalized snapshots keyed by iteration number, optionally saved to disk."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory
        self._snapshots: Dict[int, Snapshot] = {}
        if directory:
            os.makedirs(directory, exist_ok=True)

    def put(self, iteration: int, snap: Snapshot) -> None:
        if snap is NO_DATA:
            raise ValueError("NO_DATA is not a snapshot")
        self._snapshots[iteration] = snap
        if self.directory:
            path = self.path(iteration)
            torch.save(snapshot_to_blob(snap), path)
            logger.debug(f"saved iteration {iteration} -> {path}")

    def path(self, iteration: int) -> str:
        return os.path.join(self.directory, f"iter_{iteration:04d}.pt")

    def get(self, iteration: int) -> Snapshot:
        if iteration in self._snapshots:
            return self._snapshots[iteration]
        if self.directory and os.path.exists(self.path(iteration)):
            snap = snapshot_from_blob(torch.load(self.path(iteration)))
            self._snapshots[iteration] = snap
            return snap
        raise KeyError(iteration)

    def latest(self) -> Optional[Snapshot]:
        if not self._snapshots:
            return None
        return self._snapshots[max(self._snapshots)]

    def __len__(self):
        return len(self._snapshots)

    def __contains__(self, iteration: int):
        return iteration in self._snapshots


def warm_state(snap: Snapshot, config: Optional[TaskConfig] = None) -> AccumulatorState:
    """Copy model, config and search memory from a finalized snapshot; zero the sums."""
    cfg = snap.config if config is None else config
    if cfg.dimension != snap.config.dimension or cfg.objective != snap.config.objective:
        raise ConfigError(
            f"Cannot warm start a {cfg.objective}/{cfg.dimension} pass from a "
            f"{snap.config.objective}/{snap.config.dimension} snapshot"
        )
    return AccumulatorState(config=cfg, model=snap.model.clone(), memory=snap.memory)


def fresh_state(config: TaskConfig) -> AccumulatorState:
    return AccumulatorState(config=config, model=torch.zeros(config.dimension, dtype=DTYPE))
