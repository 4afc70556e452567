"""
Newton-Raphson over a dense Hessian accumulated in the pass state.

Per pass: sum gradient, Hessian and loss at the fixed model; at finalize solve
H delta = g and step model <- model - delta. The Hessian takes O(D^2) state, so
dimensions beyond max_dense_dimension are refused up front.
"""
from __future__ import annotations
import math

import torch
from loguru import logger

from .data import DTYPE
from .errors import ConfigError, NumericError, SizeLimitError
from .functional import ensure_finite
from .optimizers import GradientSum
from .state import Accumulator, AccumulatorState, SearchMemory, Snapshot


class Newton(GradientSum):
    name = "newton"

    def __init__(self, config=None, previous=None, max_dense_dimension: int = 2048, max_condition: float = 1e12):
        self.max_dense_dimension = int(max_dense_dimension)
        self.max_condition = float(max_condition)
        super().__init__(config, previous)

    def _check(self):
        if not self.objective.has_hessian:
            raise ConfigError(f"{self.config.objective} has no Hessian; use igd or cg")
        if not self.objective.penalty.smooth:
            raise ConfigError(f"{self.config.objective} penalty is not twice differentiable; use igd or cg")
        if self.dimension > self.max_dense_dimension:
            raise SizeLimitError(
                f"Dense Hessian for dimension {self.dimension} exceeds the bound of "
                f"{self.max_dense_dimension}"
            )

    def _new_accumulator(self):
        d = self.dimension
        return Accumulator(
            gradient=torch.zeros(d, dtype=DTYPE),
            hessian=torch.zeros(d, d, dtype=DTYPE),
        )

    def _merge(self, left, right):
        if left.acc.risk is not None and right.acc.risk is not None:
            # the risk set spans the whole time-ordered stream
            raise ConfigError("cox partial likelihood needs a single time-ordered partition")
        risk = left.acc.risk if left.acc.risk is not None else right.acc.risk
        acc = Accumulator(
            loss=left.acc.loss + right.acc.loss,
            gradient=left.acc.gradient + right.acc.gradient,
            hessian=left.acc.hessian + right.acc.hessian,
            risk=None if risk is None else risk.clone(),
        )
        return AccumulatorState(
            config=left.config,
            model=left.model.clone(),
            memory=left.memory,
            acc=acc,
            row_count=left.row_count,
        )

    def _closed_sums(self, state: AccumulatorState):
        acc = state.acc
        g, H, loss = acc.gradient.clone(), acc.hessian.clone(), acc.loss
        if acc.risk is not None and not acc.risk.empty:
            dg, dH, dloss = self.objective.pending(acc)
            g, H, loss = g + dg, H + dH, loss + dloss
        return g, H, loss

    def _finalize(self, state):
        cfg = state.config
        penalty = self.objective.penalty
        g, H, loss = self._closed_sums(state)
        g = g + penalty.gradient(state.model, cfg.regularization)
        H = H + penalty.hessian(cfg.dimension, cfg.regularization)
        loss = loss + penalty.loss(state.model, cfg.regularization)
        ensure_finite("gradient", g)
        ensure_finite("Hessian", H)
        ensure_finite("loss", loss)

        cond = float(torch.linalg.cond(H))
        if not math.isfinite(cond) or cond > self.max_condition:
            logger.error(f"[newton] singular Hessian, condition number {cond:.3g}")
            raise NumericError(
                f"Hessian is singular or ill-conditioned (condition number {cond:.3g}, "
                f"bound {self.max_condition:.3g})"
            )
        delta = torch.linalg.solve(H, g)
        inv_diag = torch.linalg.inv(H).diagonal().clone()
        model = state.model - delta
        ensure_finite("Newton step", model)

        return Snapshot(
            config=cfg,
            model=model,
            loss=loss,
            row_count=state.row_count,
            method=self.name,
            memory=SearchMemory(iteration=state.memory.iteration + 1),
            grad_norm=float(torch.linalg.norm(g)),
            condition_number=cond,
            inv_hessian_diag=inv_diag,
        )
