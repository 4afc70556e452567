# tests/conftest.py
from __future__ import annotations

import pytest
import torch
from loguru import logger

from convexagg.data import Example, ExampleSource, SurvivalLabel


@pytest.fixture(autouse=True)
def disable_logger():
    logger.remove()
    logger.add(lambda msg: None)
    yield


@pytest.fixture
def svm_examples():
    """Three 2-d points, labels +1, +1, -1."""
    return [
        Example([1.0, 2.0], 1.0),
        Example([2.0, 1.0], 1.0),
        Example([-1.0, -1.0], -1.0),
    ]


@pytest.fixture
def regression_source() -> ExampleSource:
    g = torch.Generator().manual_seed(7)
    X = torch.randn(20, 3, generator=g, dtype=torch.float64)
    w = torch.tensor([1.0, -2.0, 0.5], dtype=torch.float64)
    y = X @ w + 0.1 * torch.randn(20, generator=g, dtype=torch.float64)
    return ExampleSource(X, y)


@pytest.fixture
def logistic_source() -> ExampleSource:
    g = torch.Generator().manual_seed(11)
    X = torch.randn(24, 3, generator=g, dtype=torch.float64)
    noise = 0.8 * torch.randn(24, generator=g, dtype=torch.float64)
    y = ((X @ torch.tensor([1.0, 0.5, -1.0], dtype=torch.float64) + noise) > 0).to(torch.float64)
    return ExampleSource(X, y)


@pytest.fixture
def line_examples():
    """y = 2x on x = 1, 2, 3."""
    return [Example([x], 2.0 * x) for x in (1.0, 2.0, 3.0)]


@pytest.fixture
def survival_examples():
    g = torch.Generator().manual_seed(3)
    X = torch.randn(6, 2, generator=g, dtype=torch.float64)
    times = [5.0, 4.0, 3.0, 3.0, 2.0, 1.0]
    events = [True, False, True, True, True, False]
    return [Example(X[i], SurvivalLabel(times[i], events[i])) for i in range(6)]
