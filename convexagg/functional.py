from __future__ import annotations
import math

import torch
import torch.nn.functional as F

from .errors import NumericError


def score(model: torch.Tensor, x: torch.Tensor) -> float:
    return float(torch.dot(model, x))


def log1pexp(t: float) -> float:
    # log(1 + exp(t)) without overflow for large t
    return float(F.softplus(torch.tensor(t, dtype=torch.float64)))


def sigmoid(t: float) -> float:
    return float(torch.sigmoid(torch.tensor(t, dtype=torch.float64)))


def soft_threshold(v: torch.Tensor, thresh: float) -> torch.Tensor:
    """Proximal operator of thresh * ||v||_1."""
    return torch.sign(v) * torch.clamp(v.abs() - thresh, min=0.0)


def ensure_finite(name: str, value) -> None:
    if isinstance(value, torch.Tensor):
        if not bool(torch.isfinite(value).all()):
            raise NumericError(f"Non-finite values in {name}")
    elif not math.isfinite(float(value)):
        raise NumericError(f"Non-finite {name}: {value}")
