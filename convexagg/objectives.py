"""
Per-example objectives for linear models.

An objective is a pure function of (model, example). Regularization is not
part of the per-example terms; it lives in a Penalty that each optimizer
applies where its update rule needs it (once per pass for CG/Newton, on every
step for IGD).

The Cox partial likelihood is the exception: its contribution depends on the
risk set, so it is accumulated by a RiskSetAccumulator over a time-ordered
stream instead of through gradient()/loss().
"""
from __future__ import annotations
import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

import torch

from .data import DTYPE, Example, SurvivalLabel
from .errors import ConfigError
from .functional import ensure_finite, log1pexp, score, sigmoid, soft_threshold

TIE_TOLERANCE = 1e-6


def _sign_label(example: Example) -> float:
    # bool / {0,1} / {-1,+1} all map onto {-1,+1}
    return 1.0 if example.label > 0 else -1.0


# ---------------------------
# Penalties
# ---------------------------

class L2Penalty:
    smooth = True

    def loss(self, model: torch.Tensor, lam: float) -> float:
        return 0.5 * lam * float(torch.dot(model, model))

    def gradient(self, model: torch.Tensor, lam: float) -> torch.Tensor:
        return lam * model

    def hessian(self, dimension: int, lam: float) -> torch.Tensor:
        return lam * torch.eye(dimension, dtype=DTYPE)

    def step_gradient(self, model: torch.Tensor, lam: float) -> torch.Tensor:
        return lam * model

    def prox(self, model: torch.Tensor, stepsize: float, lam: float) -> torch.Tensor:
        return model


class L1Penalty:
    smooth = False

    def loss(self, model: torch.Tensor, lam: float) -> float:
        return lam * float(model.abs().sum())

    def gradient(self, model: torch.Tensor, lam: float) -> torch.Tensor:
        # subgradient, 0 at 0
        return lam * torch.sign(model)

    def hessian(self, dimension: int, lam: float) -> torch.Tensor:
        raise ConfigError("The L1 penalty has no Hessian; use igd or cg for lasso.")

    def step_gradient(self, model: torch.Tensor, lam: float) -> torch.Tensor:
        return torch.zeros_like(model)

    def prox(self, model: torch.Tensor, stepsize: float, lam: float) -> torch.Tensor:
        return soft_threshold(model, stepsize * lam)


# ---------------------------
# Objectives
# ---------------------------

class Objective:
    kind: str = ""
    classification: bool = False
    has_hessian: bool = True
    risk_set: bool = False

    def __init__(self, penalty=None):
        self.penalty = penalty if penalty is not None else L2Penalty()

    def loss(self, model: torch.Tensor, example: Example) -> float:
        raise NotImplementedError

    def gradient(self, model: torch.Tensor, example: Example) -> torch.Tensor:
        raise NotImplementedError

    def hessian(self, model: torch.Tensor, example: Example) -> torch.Tensor:
        raise NotImplementedError(f"{self.kind} has no Hessian contribution")

    def predict(self, model: torch.Tensor, features: torch.Tensor):
        return score(model, torch.as_tensor(features, dtype=DTYPE).reshape(-1))

    def accumulate(self, acc, model: torch.Tensor, example: Example) -> None:
        """Add gradient, loss and (if acc carries one) Hessian of one example."""
        acc.gradient += self.gradient(model, example)
        acc.loss += self.loss(model, example)
        if acc.hessian is not None:
            acc.hessian += self.hessian(model, example)

    def __repr__(self):
        return f"{type(self).__name__}(penalty={type(self.penalty).__name__})"


class HingeLoss(Objective):
    """Linear-kernel SVM: max(0, 1 - y w.x)."""
    kind = "svm"
    classification = True
    has_hessian = False

    def loss(self, model, example):
        return max(0.0, 1.0 - _sign_label(example) * score(model, example.features))

    def gradient(self, model, example):
        y = _sign_label(example)
        # margin == 1 resolves to a zero subgradient
        if y * score(model, example.features) >= 1.0:
            return torch.zeros_like(model)
        return -y * example.features

    def predict(self, model, features):
        return super().predict(model, features) > 0.0


class LogisticLoss(Objective):
    kind = "logistic"
    classification = True

    def loss(self, model, example):
        return log1pexp(-_sign_label(example) * score(model, example.features))

    def gradient(self, model, example):
        y = _sign_label(example)
        return -y * sigmoid(-y * score(model, example.features)) * example.features

    def hessian(self, model, example):
        p = sigmoid(score(model, example.features))
        x = example.features
        return p * (1.0 - p) * torch.outer(x, x)

    def predict(self, model, features):
        return sigmoid(super().predict(model, features)) > 0.5


class SquaredLoss(Objective):
    """0.5 (y - w.x)^2. Ridge with the L2 penalty, LASSO with L1."""
    kind = "ridge"

    def loss(self, model, example):
        r = example.label - score(model, example.features)
        return 0.5 * r * r

    def gradient(self, model, example):
        return -(example.label - score(model, example.features)) * example.features

    def hessian(self, model, example):
        x = example.features
        return torch.outer(x, x)


class LassoLoss(SquaredLoss):
    kind = "lasso"

    def __init__(self, penalty=None):
        super().__init__(penalty if penalty is not None else L1Penalty())


@dataclass
class RiskSetAccumulator:
    """
    Running sums over the risk set of a time-descending example stream.

    s0 = sum exp(w.x), s1 = sum exp(w.x) x, s2 = sum exp(w.x) x x^T over every
    example seen so far. Examples whose times are within TIE_TOLERANCE of the
    open group's time are buffered and enter the risk set together (Breslow).
    """
    dimension: int
    s0: float = 0.0
    s1: torch.Tensor = None
    s2: torch.Tensor = None
    group_time: Optional[float] = None
    g0: float = 0.0
    g1: torch.Tensor = None
    g2: torch.Tensor = None
    deaths: int = 0
    death_x: torch.Tensor = None
    death_score: float = 0.0

    def __post_init__(self):
        d = self.dimension
        for name, shape in (("s1", (d,)), ("g1", (d,)), ("death_x", (d,)), ("s2", (d, d)), ("g2", (d, d))):
            if getattr(self, name) is None:
                setattr(self, name, torch.zeros(shape, dtype=DTYPE))

    def clone(self) -> "RiskSetAccumulator":
        return RiskSetAccumulator(
            dimension=self.dimension, s0=self.s0, s1=self.s1.clone(), s2=self.s2.clone(),
            group_time=self.group_time, g0=self.g0, g1=self.g1.clone(), g2=self.g2.clone(),
            deaths=self.deaths, death_x=self.death_x.clone(), death_score=self.death_score,
        )

    @property
    def empty(self) -> bool:
        return self.group_time is None

    def add(self, model: torch.Tensor, example: Example) -> Optional[Tuple[torch.Tensor, torch.Tensor, float]]:
        """Buffer one example; returns the closed group's contribution when a new group starts."""
        label = example.label
        if not isinstance(label, SurvivalLabel):
            raise ConfigError("cox examples need a (time, event) label")
        closed = None
        if self.group_time is not None:
            if label.time > self.group_time + TIE_TOLERANCE:
                raise ConfigError("cox pass needs examples in descending time order")
            if self.group_time - label.time >= TIE_TOLERANCE:
                closed = self.close_group()
                self.group_time = label.time
        else:
            self.group_time = label.time
        x = example.features
        t = score(model, x)
        r = float(torch.exp(torch.tensor(t, dtype=DTYPE)))
        ensure_finite("Cox risk score", r)
        self.g0 += r
        self.g1 += r * x
        self.g2 += r * torch.outer(x, x)
        if label.event:
            self.deaths += 1
            self.death_x += x
            self.death_score += t
        return closed

    def close_group(self) -> Tuple[torch.Tensor, torch.Tensor, float]:
        """Move the open group into the risk set; return (gradient, hessian, loss) of its deaths."""
        self.s0 += self.g0
        self.s1 += self.g1
        self.s2 += self.g2
        d = self.deaths
        grad = torch.zeros(self.dimension, dtype=DTYPE)
        hess = torch.zeros(self.dimension, self.dimension, dtype=DTYPE)
        loss = 0.0
        if d > 0:
            mean = self.s1 / self.s0
            grad = -(self.death_x - d * mean)
            hess = d * (self.s2 / self.s0 - torch.outer(mean, mean))
            loss = -(self.death_score - d * math.log(self.s0))
        self.g0 = 0.0
        self.g1.zero_()
        self.g2.zero_()
        self.deaths = 0
        self.death_x.zero_()
        self.death_score = 0.0
        # group_time is left for add() to move to the next group
        return grad, hess, loss


class CoxPartialLikelihood(Objective):
    """Negative Cox partial log-likelihood with Breslow ties."""
    kind = "cox"
    risk_set = True

    def loss(self, model, example):
        raise NotImplementedError("Cox contributions depend on the risk set; accumulate with accumulate()")

    gradient = loss
    hessian = loss

    def accumulate(self, acc, model, example):
        if acc.risk is None:
            acc.risk = RiskSetAccumulator(model.numel())
        closed = acc.risk.add(model, example)
        if closed is not None:
            grad, hess, loss = closed
            acc.gradient += grad
            acc.hessian += hess
            acc.loss += loss

    def pending(self, acc) -> Tuple[torch.Tensor, torch.Tensor, float]:
        """Contribution of the still-open tie group, without touching acc."""
        return acc.risk.clone().close_group()


_REGISTRY = {
    "svm": HingeLoss,
    "logistic": LogisticLoss,
    "ridge": SquaredLoss,
    "lasso": LassoLoss,
    "cox": CoxPartialLikelihood,
}


def make_objective(kind: str) -> Objective:
    try:
        return _REGISTRY[kind]()
    except KeyError:
        raise ConfigError(f"Unknown objective: {kind!r}") from None
