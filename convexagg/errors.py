from __future__ import annotations


class ConvexAggError(Exception):
    """Base class for everything raised by an aggregation pass."""


class ConfigError(ConvexAggError, ValueError):
    pass


class SizeLimitError(ConfigError):
    """Dense Hessian storage would exceed the configured dimension bound."""


class DimensionMismatch(ConvexAggError, ValueError):
    def __init__(self, expected: int, got: int):
        super().__init__(f"Example has {got} features, state is configured for {expected}.")
        self.expected = expected
        self.got = got


class NumericError(ConvexAggError, ArithmeticError):
    pass


class _NoData:
    """Returned by finalize when a pass saw no rows. A value, not an error."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "NO_DATA"


NO_DATA = _NoData()
