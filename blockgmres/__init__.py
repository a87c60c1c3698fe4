"""
blockgmres - Restarted GMRES for one or many right-hand sides

Householder-based GMRES (Walker's method) that solves A*X = B for a block
of right-hand sides sharing one operator and one preconditioner chain.

Examples
--------
>>> from blockgmres import gmres
>>> result = gmres(A, b, restart=10, tol=1e-12, maxit=15, M1=M)
>>> print(result.x, result.converged)

>>> # MATLAB-style unpacking:
>>> x, flag, relres, iter, resvec = gmres(A, b)

>>> # With scipy sparse matrices:
>>> from blockgmres import gmres_scipy
>>> x, flag = gmres_scipy(A, b)

>>> # CSC arrays with a generated preconditioner:
>>> from blockgmres import gmres_solve
>>> result = gmres_solve(Ap, Ai, Ax, b, precond_type='ilu')

>>> # Check whether the reflector kernel is JIT-compiled:
>>> from blockgmres import HAS_NUMBA
>>> print("Using Numba" if HAS_NUMBA else "Using NumPy")
"""

from .errors import (
    DimensionError,
    Flag,
    GMRESError,
    GMRESWarning,
    IllConditionedError,
    IllConditionedPreconditioner,
    IterationLimitWarning,
    ToleranceOutOfRange,
)
from .gmres import (
    DEFAULT_MAXIT_CAP,
    DEFAULT_TOL,
    MAX_STAG_STEPS,
    GMRESResult,
    GMRESWorkspace,
    MinimumResidualTracker,
    gmres,
    gmres_scipy,
    gmres_solve,
)
from .householder import HAS_NUMBA
from .operators import (
    DensePreconditioner,
    DiagonalPreconditioner,
    SparsePreconditioner,
    make_preconditioner,
)

__version__ = "0.1.0"
__author__ = "Qianqian Fang"

__all__ = [
    "gmres",
    "gmres_scipy",
    "gmres_solve",
    "GMRESResult",
    "GMRESWorkspace",
    "MinimumResidualTracker",
    "HAS_NUMBA",
    "DEFAULT_TOL",
    "MAX_STAG_STEPS",
    "DEFAULT_MAXIT_CAP",
    "Flag",
    "GMRESError",
    "DimensionError",
    "IllConditionedError",
    "IllConditionedPreconditioner",
    "GMRESWarning",
    "ToleranceOutOfRange",
    "IterationLimitWarning",
    "SparsePreconditioner",
    "DensePreconditioner",
    "DiagonalPreconditioner",
    "make_preconditioner",
]


def test():
    """Run basic tests to verify installation."""
    from .gmres import _test

    return _test()


def get_backend_info():
    """Return information about the active backend.

    Returns
    -------
    dict
        Dictionary containing:
        - 'backend': 'numba' or 'numpy'
        - 'has_numba': bool (JIT-compiled reflector kernel)
    """
    return {
        "backend": "numba" if HAS_NUMBA else "numpy",
        "has_numba": HAS_NUMBA,
    }
