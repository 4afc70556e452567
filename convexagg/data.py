from __future__ import annotations
from dataclasses import dataclass
from typing import Iterator, List, NamedTuple, Optional, Sequence, Union

import torch

DTYPE = torch.float64


class SurvivalLabel(NamedTuple):
    time: float
    event: bool


@dataclass(frozen=True, eq=False)
class Example:
    features: torch.Tensor
    label: Union[float, SurvivalLabel]

    def __post_init__(self):
        x = torch.as_tensor(self.features, dtype=DTYPE).reshape(-1)
        object.__setattr__(self, "features", x)
        if isinstance(self.label, tuple):
            object.__setattr__(self, "label", SurvivalLabel(float(self.label[0]), bool(self.label[1])))
        else:
            object.__setattr__(self, "label", float(self.label))

    @property
    def dimension(self) -> int:
        return int(self.features.numel())


class ExampleSource:
    """
    Finite, re-playable example stream backed by in-memory tensors.

    Every call to iter() replays the same examples in the same order, so one
    source can feed any number of passes.
    """

    def __init__(self, X: torch.Tensor, y: torch.Tensor, event: Optional[torch.Tensor] = None):
        X = torch.as_tensor(X, dtype=DTYPE)
        if X.dim() != 2:
            raise ValueError(f"X must be 2-D (rows, features), got shape {tuple(X.shape)}")
        y = torch.as_tensor(y, dtype=DTYPE).reshape(-1)
        if y.numel() != X.shape[0]:
            raise ValueError(f"{X.shape[0]} rows but {y.numel()} labels")
        if event is not None:
            event = torch.as_tensor(event).reshape(-1).bool()
            if event.numel() != X.shape[0]:
                raise ValueError(f"{X.shape[0]} rows but {event.numel()} event flags")
        self.X = X
        self.y = y
        self.event = event

    @classmethod
    def from_examples(cls, examples: Sequence[Example]) -> "ExampleSource":
        if not examples:
            raise ValueError("Cannot build a source from zero examples")
        X = torch.stack([e.features for e in examples])
        if isinstance(examples[0].label, SurvivalLabel):
            y = torch.tensor([e.label.time for e in examples], dtype=DTYPE)
            ev = torch.tensor([e.label.event for e in examples])
            return cls(X, y, ev)
        return cls(X, torch.tensor([e.label for e in examples], dtype=DTYPE))

    def __len__(self) -> int:
        return int(self.X.shape[0])

    @property
    def dimension(self) -> int:
        return int(self.X.shape[1])

    def _example(self, i: int) -> Example:
        if self.event is not None:
            return Example(self.X[i], SurvivalLabel(float(self.y[i]), bool(self.event[i])))
        return Example(self.X[i], float(self.y[i]))

    def __iter__(self) -> Iterator[Example]:
        for i in range(len(self)):
            yield self._example(i)

    def partition(self, n: int, generator: Optional[torch.Generator] = None) -> List[List[Example]]:
        """Shuffle (with the given generator) and split into n partitions; some may be empty."""
        if n < 1:
            raise ValueError("n must be >= 1")
        if generator is None:
            order = torch.arange(len(self))
        else:
            order = torch.randperm(len(self), generator=generator)
        return [[self._example(int(i)) for i in chunk] for chunk in _split(order, n)]

    def time_ordered(self) -> List[Example]:
        """Examples by descending time (the order a risk-set pass must see them in)."""
        order = torch.argsort(self.y, descending=True, stable=True)
        return [self._example(int(i)) for i in order]


def _split(order: torch.Tensor, n: int) -> List[torch.Tensor]:
    size, rem = divmod(order.numel(), n)
    out, i = [], 0
    for k in range(n):
        step = size + (1 if k < rem else 0)
        out.append(order[i:i + step])
        i += step
    return out


def make_separable_data(m: int, d: int, generator: torch.Generator):
    # Labels in {+1, -1} from a random hyperplane through the origin, with a margin
    w = torch.randn(d, generator=generator, dtype=DTYPE)
    X = torch.randn(m, d, generator=generator, dtype=DTYPE)
    score = X @ w
    X = X + 0.5 * torch.sign(score).unsqueeze(1) * (w / torch.linalg.norm(w)).unsqueeze(0)
    y = torch.where(X @ w > 0, 1.0, -1.0).to(DTYPE)
    return X, y


def make_linear_data(m: int, d: int, noise_std: float, generator: torch.Generator):
    X = torch.randn(m, d, generator=generator, dtype=DTYPE)
    w = torch.randn(d, generator=generator, dtype=DTYPE) / (d ** 0.5)
    y = X @ w + noise_std * torch.randn(m, generator=generator, dtype=DTYPE)
    return X, y


def make_survival_data(m: int, d: int, generator: torch.Generator, censor_rate: float = 0.3):
    # Exponential event times with hazard exp(w.x); independent censoring
    X = torch.randn(m, d, generator=generator, dtype=DTYPE)
    w = torch.randn(d, generator=generator, dtype=DTYPE) / (d ** 0.5)
    u = torch.rand(m, generator=generator, dtype=DTYPE).clamp_min(1e-12)
    times = -torch.log(u) / torch.exp(X @ w)
    event = torch.rand(m, generator=generator, dtype=DTYPE) >= censor_rate
    return X, times, event


def make_dataset(name: str, m: int, d: int, generator: torch.Generator, noise_std: float = 0.1) -> ExampleSource:
    if name == "separable":
        return ExampleSource(*make_separable_data(m, d, generator))
    if name == "binary":
        X, y = make_separable_data(m, d, generator)
        return ExampleSource(X, (y > 0).to(DTYPE))
    if name == "linear":
        return ExampleSource(*make_linear_data(m, d, noise_std, generator))
    if name == "survival":
        return ExampleSource(*make_survival_data(m, d, generator))
    raise ValueError(f"Unknown dataset: {name}")
