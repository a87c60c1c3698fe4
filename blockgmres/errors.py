"""
Error, warning and exit-flag taxonomy for the GMRES solver.

Malformed input raises `DimensionError` before any iteration. A non-finite
value coming out of the operator or a preconditioner raises
`IllConditionedError`, which the solver turns into flag 2. Non-convergence
is never an exception; callers read it from `GMRESResult.flag`.
"""

from enum import IntEnum

__all__ = [
    "GMRESError",
    "DimensionError",
    "IllConditionedError",
    "IllConditionedPreconditioner",
    "GMRESWarning",
    "ToleranceOutOfRange",
    "IterationLimitWarning",
    "Flag",
]


class GMRESError(Exception):
    """Base class for solver errors."""


class DimensionError(GMRESError, ValueError):
    """Shapes of A, B, M1, M2 or X0 do not agree."""


class IllConditionedError(GMRESError, ArithmeticError):
    """An operator or preconditioner application produced NaN/Inf."""


IllConditionedPreconditioner = IllConditionedError


class GMRESWarning(UserWarning):
    pass


class ToleranceOutOfRange(GMRESWarning):
    """Requested tolerance was clamped, or is too small to be reached."""


class IterationLimitWarning(GMRESWarning):
    """restart or maxit exceeded the system size and was reduced to n."""


class Flag(IntEnum):
    CONVERGED = 0
    MAX_ITERATIONS = 1
    ILL_CONDITIONED = 2
    STAGNATED = 3
