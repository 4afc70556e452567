from __future__ import annotations
import math
from dataclasses import replace
from typing import Optional, Union

import torch
from loguru import logger

from .config import TaskConfig
from .data import DTYPE, Example
from .errors import ConfigError, DimensionMismatch, NO_DATA, NumericError
from .functional import ensure_finite
from .objectives import make_objective
from .state import (
    EMPTY,
    Accumulator,
    AccumulatorState,
    SearchMemory,
    Snapshot,
    fresh_state,
    warm_state,
)

State = Union[AccumulatorState, type(EMPTY)]


class Optimizer:
    """
    transition / merge / finalize over AccumulatorState for one pass.

    One instance is built per pass from the pass's TaskConfig and, for warm
    starts, the previous iteration's Snapshot. When both are given the config
    wins for hyperparameters but must agree on dimension and objective.

    transition() folds into the state it is handed (each worker owns its own
    state); merge() and finalize() never mutate their inputs.
    """
    name = ""

    def __init__(self, config: Optional[TaskConfig] = None, previous: Optional[Snapshot] = None):
        if previous is NO_DATA:
            previous = None
        if config is None:
            if previous is None:
                raise ConfigError("Need a TaskConfig or a previous snapshot to start a pass")
            config = previous.config
        self.config = config
        self.previous = previous
        self.objective = make_objective(config.objective)
        self._check()

    def _check(self) -> None:
        pass

    @property
    def dimension(self) -> int:
        return self.config.dimension

    # ---------------------------
    # protocol
    # ---------------------------

    def initialize(self) -> AccumulatorState:
        if self.previous is not None:
            state = warm_state(self.previous, self.config)
        else:
            state = fresh_state(self.config)
        state.acc = self._new_accumulator()
        return state

    def transition(self, state: State, example: Example) -> AccumulatorState:
        if example.dimension != self.dimension:
            raise DimensionMismatch(self.dimension, example.dimension)
        if state is EMPTY:
            state = self.initialize()
        self._step(state, example)
        state.row_count += 1
        return state

    def merge(self, left: State, right: State) -> State:
        if left is EMPTY:
            return right
        if right is EMPTY:
            return left
        if left.dimension != right.dimension:
            raise DimensionMismatch(left.dimension, right.dimension)
        merged = self._merge(left, right)
        # after the algorithm-specific merge: weighted averaging reads the old counts
        merged.row_count = left.row_count + right.row_count
        return merged

    def finalize(self, state: State):
        if state is EMPTY or state.row_count == 0:
            return NO_DATA
        snap = self._finalize(state)
        logger.debug(f"[{self.name}] finalize rows={snap.row_count} loss={snap.loss:.6g}")
        return snap

    # ---------------------------
    # strategy hooks
    # ---------------------------

    def _new_accumulator(self) -> Accumulator:
        return Accumulator()

    def _step(self, state: AccumulatorState, example: Example) -> None:
        raise NotImplementedError

    def _merge(self, left: AccumulatorState, right: AccumulatorState) -> AccumulatorState:
        raise NotImplementedError

    def _finalize(self, state: AccumulatorState) -> Snapshot:
        raise NotImplementedError


class IGD(Optimizer):
    """
    Incremental gradient descent: the model moves on every example.

    Partitions run their own trajectories and merge by row-count weighted model
    averaging. That average is not associative, so different merge-tree shapes
    give numerically different (not wrong) models.
    """
    name = "igd"

    def _check(self):
        if self.objective.risk_set:
            raise ConfigError("igd cannot fit cox; use newton")

    def _step(self, state, example):
        cfg = state.config
        penalty = self.objective.penalty
        w = state.model
        g = self.objective.gradient(w, example) + penalty.step_gradient(w, cfg.regularization)
        w = penalty.prox(w - cfg.stepsize * g, cfg.stepsize, cfg.regularization)
        state.model = w
        # loss of the updated model
        state.acc.loss += self.objective.loss(w, example)

    def _merge(self, left, right):
        n_l, n_r = left.row_count, right.row_count
        if n_l + n_r == 0:
            model = left.model.clone()
        else:
            model = (n_l * left.model + n_r * right.model) / (n_l + n_r)
        return AccumulatorState(
            config=left.config,
            model=model,
            memory=left.memory,
            acc=Accumulator(loss=left.acc.loss + right.acc.loss),
            row_count=n_l,
        )

    def _finalize(self, state):
        cfg = state.config
        ensure_finite("IGD model", state.model)
        # penalty at the merged model, as CG and Newton report it
        loss = state.acc.loss + self.objective.penalty.loss(state.model, cfg.regularization)
        ensure_finite("IGD loss", loss)
        return Snapshot(
            config=cfg,
            model=state.model.clone(),
            loss=loss,
            row_count=state.row_count,
            method=self.name,
            memory=state.memory,
        )


class GradientSum(Optimizer):
    """Model fixed for the pass; gradient and loss are exact sums."""

    def _check(self):
        if self.objective.risk_set:
            raise ConfigError(f"{self.name} cannot fit {self.config.objective}; use newton")

    def _new_accumulator(self):
        return Accumulator(gradient=torch.zeros(self.dimension, dtype=DTYPE))

    def _step(self, state, example):
        self.objective.accumulate(state.acc, state.model, example)

    def _merge(self, left, right):
        acc = Accumulator(
            loss=left.acc.loss + right.acc.loss,
            gradient=left.acc.gradient + right.acc.gradient,
        )
        return AccumulatorState(
            config=left.config,
            model=left.model.clone(),
            memory=left.memory,
            acc=acc,
            row_count=left.row_count,
        )

    def _totals(self, state):
        """Gradient and loss with the penalty applied once for the whole pass."""
        cfg = state.config
        penalty = self.objective.penalty
        g = state.acc.gradient + penalty.gradient(state.model, cfg.regularization)
        loss = state.acc.loss + penalty.loss(state.model, cfg.regularization)
        ensure_finite("gradient", g)
        ensure_finite("loss", loss)
        return g, loss


class ConjugateGradient(GradientSum):
    """
    Finalize turns the summed gradient into a conjugate search direction.
    The model is only moved afterwards, by apply_direction(), with a stepsize
    chosen outside the pass.
    """
    name = "cg"

    def __init__(self, config=None, previous=None, beta: str = "polak_ribiere"):
        if beta not in ("fletcher_reeves", "polak_ribiere"):
            raise ConfigError(f"Unknown conjugate-gradient beta rule: {beta!r}")
        self.beta = beta
        super().__init__(config, previous)

    def _direction(self, g: torch.Tensor, memory: SearchMemory) -> torch.Tensor:
        if memory.iteration == 0 or memory.direction is None or memory.prev_gradient is None:
            return -g
        gp = memory.prev_gradient
        denom = float(torch.dot(gp, gp))
        if denom <= 0.0:
            return -g
        if self.beta == "fletcher_reeves":
            beta = float(torch.dot(g, g)) / denom
        else:
            beta = max(0.0, float(torch.dot(g, g - gp)) / denom)
        d = -g + beta * memory.direction
        # restart when conjugacy no longer gives a descent direction
        if float(torch.dot(g, d)) >= 0.0:
            return -g
        return d

    def _finalize(self, state):
        g, loss = self._totals(state)
        d = self._direction(g, state.memory)
        memory = SearchMemory(
            iteration=state.memory.iteration + 1,
            direction=d,
            prev_gradient=g.clone(),
        )
        return Snapshot(
            config=state.config,
            model=state.model.clone(),
            loss=loss,
            row_count=state.row_count,
            method=self.name,
            memory=memory,
            grad_norm=float(torch.linalg.norm(g)),
        )


def apply_direction(snap: Snapshot, stepsize: float) -> Snapshot:
    """model_new = model + stepsize * direction, as a new snapshot."""
    if snap.memory.direction is None:
        raise ConfigError("Snapshot carries no search direction")
    if not math.isfinite(stepsize):
        raise NumericError(f"Non-finite stepsize: {stepsize}")
    return replace(snap, model=snap.model + stepsize * snap.memory.direction)


def distance(new, old) -> float:
    """
    Relative loss change |new - old| / |old| between two finalized passes.
    A missing or zero-loss baseline reads as "not converged" (inf).
    """
    if new is NO_DATA or old is None or old is NO_DATA:
        return math.inf
    ensure_finite("loss", new.loss)
    ensure_finite("loss", old.loss)
    if old.loss == 0.0:
        return math.inf
    return abs(new.loss - old.loss) / abs(old.loss)


def make_optimizer(method: str, config: Optional[TaskConfig] = None, previous: Optional[Snapshot] = None, **kwargs):
    from .newton import Newton

    if method == "igd":
        return IGD(config, previous)
    if method == "cg":
        return ConjugateGradient(config, previous, **kwargs)
    if method == "newton":
        return Newton(config, previous, **kwargs)
    raise ConfigError(f"Unknown method: {method!r}")
