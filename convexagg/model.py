from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Optional

import pandas as pd
import torch

from .data import DTYPE
from .objectives import make_objective
from .state import Snapshot


@dataclass(frozen=True, eq=False)
class GLMResult:
    """Fitted coefficients plus, for Newton fits, Wald statistics."""
    objective: str
    coef: torch.Tensor
    loss: float
    num_iterations: int
    std_err: Optional[torch.Tensor] = None
    z_stats: Optional[torch.Tensor] = None
    p_values: Optional[torch.Tensor] = None
    condition_no: Optional[float] = None

    @classmethod
    def from_snapshot(cls, snap: Snapshot, num_iterations: Optional[int] = None) -> "GLMResult":
        coef = snap.model.clone()
        iters = snap.iteration if num_iterations is None else num_iterations
        if snap.inv_hessian_diag is None:
            return cls(snap.config.objective, coef, snap.loss, iters)
        # inverse-Hessian diagonal from the last pass, i.e. at the penultimate model
        std_err = torch.sqrt(snap.inv_hessian_diag.clamp_min(0.0))
        z = coef / std_err
        p = torch.special.erfc(z.abs() / math.sqrt(2.0))
        return cls(
            objective=snap.config.objective,
            coef=coef,
            loss=snap.loss,
            num_iterations=iters,
            std_err=std_err,
            z_stats=z,
            p_values=p,
            condition_no=snap.condition_number,
        )

    def predict(self, features):
        return make_objective(self.objective).predict(self.coef, torch.as_tensor(features, dtype=DTYPE))

    def summary(self) -> pd.DataFrame:
        cols = {"coef": self.coef.tolist()}
        if self.std_err is not None:
            cols["std_err"] = self.std_err.tolist()
            cols["z_stats"] = self.z_stats.tolist()
            cols["p_values"] = self.p_values.tolist()
        df = pd.DataFrame(cols)
        df.index.name = "feature"
        return df
