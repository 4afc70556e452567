"""
Batched step-size search ("best ball").

One pass over the data scores K candidate models at once; finalize picks the
lowest total loss, earliest candidate on ties. Candidates are either
model + s_i * direction for a list of stepsizes, or K independent models
(e.g. the outcome of K IGD trials run side by side).
"""
from __future__ import annotations
import math
from dataclasses import dataclass, replace
from typing import Optional, Sequence, Tuple

import torch
from loguru import logger

from .config import TaskConfig
from .data import DTYPE, Example
from .errors import ConfigError, DimensionMismatch, NO_DATA, NumericError
from .objectives import make_objective
from .optimizers import IGD
from .state import EMPTY, Snapshot


def backtracking_candidates(alpha0: float = 1.0, tau: float = 0.5, n: int = 8) -> Tuple[float, ...]:
    """alpha0 * tau^k for k < n: every trial of an Armijo backtracking run, scored in one pass."""
    if alpha0 <= 0.0 or not (0.0 < tau < 1.0) or n < 1:
        raise ConfigError("Need alpha0 > 0, 0 < tau < 1 and n >= 1")
    return tuple(alpha0 * tau ** k for k in range(n))


@dataclass
class CandidateRecord:
    model: torch.Tensor
    stepsize: Optional[float] = None
    loss: float = 0.0
    row_count: int = 0


@dataclass
class SearchState:
    """K candidate records fed by one example stream. K never changes within a pass."""
    records: Tuple[CandidateRecord, ...]

    @property
    def row_count(self) -> int:
        return self.records[0].row_count

    def __len__(self):
        return len(self.records)


@dataclass(frozen=True, eq=False)
class SearchResult:
    index: int
    model: torch.Tensor
    stepsize: Optional[float]
    losses: Tuple[float, ...]
    row_count: int

    @property
    def loss(self) -> float:
        return self.losses[self.index]


class StepSizeSearch:
    def __init__(self, config: TaskConfig, models: Sequence[torch.Tensor], stepsizes: Optional[Sequence[float]] = None):
        if len(models) == 0:
            raise ConfigError("Step-size search needs at least one candidate")
        if stepsizes is not None and len(stepsizes) != len(models):
            raise ConfigError(f"{len(models)} candidate models but {len(stepsizes)} stepsizes")
        self.config = config
        self.objective = make_objective(config.objective)
        if self.objective.risk_set:
            raise ConfigError("cox losses are not per-example; step-size search does not apply")
        self.models = tuple(torch.as_tensor(m, dtype=DTYPE).reshape(-1).clone() for m in models)
        for m in self.models:
            if m.numel() != config.dimension:
                raise DimensionMismatch(config.dimension, m.numel())
        self.stepsizes = None if stepsizes is None else tuple(float(s) for s in stepsizes)

    @classmethod
    def from_direction(cls, config: TaskConfig, model: torch.Tensor, direction: torch.Tensor,
                       stepsizes: Sequence[float]) -> "StepSizeSearch":
        model = torch.as_tensor(model, dtype=DTYPE)
        direction = torch.as_tensor(direction, dtype=DTYPE)
        return cls(config, [model + s * direction for s in stepsizes], stepsizes)

    @classmethod
    def from_models(cls, config: TaskConfig, models: Sequence[torch.Tensor],
                    stepsizes: Optional[Sequence[float]] = None) -> "StepSizeSearch":
        return cls(config, models, stepsizes)

    def __len__(self):
        return len(self.models)

    def initialize(self) -> SearchState:
        return SearchState(records=tuple(
            CandidateRecord(model=m.clone(), stepsize=None if self.stepsizes is None else self.stepsizes[i])
            for i, m in enumerate(self.models)
        ))

    def transition(self, state, example: Example) -> SearchState:
        if example.dimension != self.config.dimension:
            raise DimensionMismatch(self.config.dimension, example.dimension)
        if state is EMPTY:
            state = self.initialize()
        for rec in state.records:
            rec.loss += self.objective.loss(rec.model, example)
            rec.row_count += 1
        return state

    def merge(self, left, right):
        if left is EMPTY:
            return right
        if right is EMPTY:
            return left
        if len(left) != len(right):
            raise ConfigError(f"Cannot merge searches over {len(left)} and {len(right)} candidates")
        return SearchState(records=tuple(
            CandidateRecord(model=a.model.clone(), stepsize=a.stepsize,
                            loss=a.loss + b.loss, row_count=a.row_count + b.row_count)
            for a, b in zip(left.records, right.records)
        ))

    def finalize(self, state):
        if state is EMPTY or state.row_count == 0:
            return NO_DATA
        lam = self.config.regularization
        penalty = self.objective.penalty
        losses = tuple(rec.loss + penalty.loss(rec.model, lam) for rec in state.records)

        best = None
        for i, v in enumerate(losses):
            if not math.isfinite(v):
                continue
            # strict < keeps the earliest candidate on ties
            if best is None or v < losses[best]:
                best = i
        if best is None:
            raise NumericError("Every candidate produced a non-finite loss")
        rec = state.records[best]
        logger.debug(f"[best_ball] picked {best} (stepsize={rec.stepsize}) of {len(losses)}: {losses}")
        return SearchResult(
            index=best,
            model=rec.model.clone(),
            stepsize=rec.stepsize,
            losses=losses,
            row_count=rec.row_count,
        )


# ---------------------------
# Blob layout
# ---------------------------

def search_to_blob(state) -> torch.Tensor:
    """[K][record]*K, record = [dimension, stepsize, loss, rowCount, model: D]; [0] when empty."""
    if state is EMPTY:
        return torch.zeros(1, dtype=DTYPE)
    rows = []
    for rec in state.records:
        head = torch.tensor([rec.model.numel(), math.nan if rec.stepsize is None else rec.stepsize,
                             rec.loss, rec.row_count], dtype=DTYPE)
        rows.append(torch.cat([head, rec.model]))
    return torch.cat([torch.tensor([len(rows)], dtype=DTYPE)] + rows)


def search_from_blob(blob: torch.Tensor):
    blob = torch.as_tensor(blob, dtype=DTYPE)
    k = int(blob[0])
    if k == 0:
        return EMPTY
    d = int(blob[1])
    stride = 4 + d
    if blob.numel() != 1 + k * stride:
        raise ConfigError(f"Blob of length {blob.numel()} does not hold {k} records of dimension {d}")
    records = []
    for i in range(k):
        r = blob[1 + i * stride:1 + (i + 1) * stride]
        step = float(r[1])
        records.append(CandidateRecord(
            model=r[4:].clone(),
            stepsize=None if step != step else step,
            loss=float(r[2]),
            row_count=int(r[3]),
        ))
    return SearchState(records=tuple(records))


# ---------------------------
# IGD trials side by side
# ---------------------------

class IGDBestBall:
    """
    K IGD runs, one per stepsize, folded from the same example stream in one
    pass. The resulting models are then scored with scorer() in a second pass.
    """

    def __init__(self, config: TaskConfig, stepsizes: Sequence[float], previous: Optional[Snapshot] = None):
        if len(stepsizes) == 0:
            raise ConfigError("Need at least one stepsize")
        self.config = config
        self.stepsizes = tuple(float(s) for s in stepsizes)
        self.trials = [IGD(replace(config, stepsize=s), previous) for s in self.stepsizes]

    def initialize(self):
        return tuple(t.initialize() for t in self.trials)

    def transition(self, states, example: Example):
        if states is EMPTY:
            states = self.initialize()
        return tuple(t.transition(s, example) for t, s in zip(self.trials, states))

    def merge(self, left, right):
        if left is EMPTY:
            return right
        if right is EMPTY:
            return left
        return tuple(t.merge(a, b) for t, a, b in zip(self.trials, left, right))

    def finalize(self, states):
        if states is EMPTY:
            return NO_DATA
        snaps = tuple(t.finalize(s) for t, s in zip(self.trials, states))
        if any(s is NO_DATA for s in snaps):
            return NO_DATA
        return snaps

    def scorer(self, snapshots: Sequence[Snapshot]) -> StepSizeSearch:
        return StepSizeSearch.from_models(self.config, [s.model for s in snapshots], self.stepsizes)


def select_best(snapshots: Sequence) -> Optional[Snapshot]:
    """Lowest-loss snapshot, earliest on ties; NO_DATA entries are skipped."""
    best = None
    for snap in snapshots:
        if snap is NO_DATA or snap is None:
            continue
        if best is None or snap.loss < best.loss:
            best = snap
    return best
