"""
Operator and preconditioner adapters for the GMRES solver.

The solver only ever calls ``op.apply(X)`` and ``chain.solve(R)`` on ``n x k``
blocks. The adapters here put explicit matrices (dense, sparse,
LinearOperator) and user callables behind those two methods, check shapes
and turn non-finite results into `IllConditionedError`.
"""

import warnings

import numpy as np
from scipy import sparse
from scipy.linalg import LinAlgWarning, lu_factor, lu_solve
from scipy.sparse.linalg import LinearOperator, spilu, splu

from .errors import DimensionError, IllConditionedError

__all__ = [
    "MatrixOperator",
    "FunctionOperator",
    "make_operator",
    "SparsePreconditioner",
    "DensePreconditioner",
    "DiagonalPreconditioner",
    "FunctionPreconditioner",
    "PreconditionerChain",
    "make_preconditioner_chain",
    "make_preconditioner",
]


def _as_block(Y, shape, what):
    """Coerce the output of a user call to an ``n x k`` block."""
    Y = np.asarray(Y)
    if Y.shape == shape:
        return Y
    if Y.ndim == 1 and shape[1] == 1 and Y.shape[0] == shape[0]:
        return Y.reshape(shape)
    raise DimensionError(f"{what} returned shape {Y.shape}, expected {shape}")


def _check_finite(Y, what):
    if not np.all(np.isfinite(Y)):
        raise IllConditionedError(f"{what} produced non-finite values")
    return Y


# =============================================================================
# Operator Adapter
# =============================================================================


class MatrixOperator:
    """Explicit matrix: ndarray, scipy sparse matrix or LinearOperator."""

    __slots__ = ("A", "shape", "dtype")

    def __init__(self, A):
        self.A = A
        self.shape = tuple(A.shape)
        self.dtype = getattr(A, "dtype", None)

    def apply(self, X: np.ndarray) -> np.ndarray:
        Y = _as_block(self.A @ X, X.shape, "A @ X")
        return _check_finite(Y, "operator A")


class FunctionOperator:
    """User function ``fun(X) -> A @ X`` applied to the whole block."""

    __slots__ = ("fun", "shape", "dtype")

    def __init__(self, fun, n: int):
        self.fun = fun
        self.shape = (n, n)
        self.dtype = None

    def apply(self, X: np.ndarray) -> np.ndarray:
        Y = _as_block(np.array(self.fun(X)), X.shape, "operator function")
        return _check_finite(Y, "operator function")


def make_operator(A, n: int):
    """
    Wrap ``A`` so that the solver can call ``apply``.

    Parameters
    ----------
    A : ndarray, sparse matrix, LinearOperator or callable
        Square system matrix, or a function returning ``A @ X`` for an
        ``n x k`` block ``X``.
    n : int
        Number of rows of the right-hand side.

    Returns
    -------
    MatrixOperator or FunctionOperator
    """
    if isinstance(A, (MatrixOperator, FunctionOperator)):
        op = A
    elif sparse.issparse(A) or isinstance(A, (np.ndarray, LinearOperator)):
        op = MatrixOperator(A)
    elif callable(A):
        op = FunctionOperator(A, n)
    else:
        op = MatrixOperator(np.asarray(A))

    if len(op.shape) != 2 or op.shape[0] != op.shape[1]:
        raise DimensionError(f"A must be a square matrix, got shape {op.shape}")
    if op.shape[0] != n:
        raise DimensionError(
            f"right-hand side has {n} rows but A is {op.shape[0]}x{op.shape[1]}"
        )
    return op


# =============================================================================
# Preconditioner Classes
# =============================================================================


def _split_complex(solve, b, factor_is_complex):
    # SuperLU refuses complex right-hand sides on a real factor
    if np.iscomplexobj(b) and not factor_is_complex:
        return solve(np.ascontiguousarray(b.real)) + 1j * solve(
            np.ascontiguousarray(b.imag)
        )
    return solve(b)


class SparsePreconditioner:
    """Sparse preconditioner solved through a SuperLU factor."""

    __slots__ = ("lu", "shape", "singular", "is_complex")

    def __init__(self, M=None, factor=None):
        if factor is None:
            M_csc = M if sparse.issparse(M) and M.format == "csc" else sparse.csc_matrix(M)
            if M_csc.shape[0] != M_csc.shape[1]:
                raise DimensionError(
                    f"preconditioner must be square, got shape {M_csc.shape}"
                )
            self.shape = M_csc.shape
            try:
                factor = splu(M_csc)
            except RuntimeError:
                # exactly singular; reported on first solve
                factor = None
        else:
            self.shape = factor.shape
        self.lu = factor
        self.singular = factor is None
        self.is_complex = factor is not None and np.iscomplexobj(factor.L.data)

    def solve(self, b: np.ndarray) -> np.ndarray:
        if self.singular:
            raise IllConditionedError("sparse preconditioner matrix is singular")
        return _split_complex(self.lu.solve, b, self.is_complex)


class DensePreconditioner:
    """Dense preconditioner solved through an LU factorization."""

    __slots__ = ("lu", "piv", "shape", "singular")

    def __init__(self, M):
        M = np.asarray(M)
        if M.ndim != 2 or M.shape[0] != M.shape[1]:
            raise DimensionError(f"preconditioner must be square, got shape {M.shape}")
        self.shape = M.shape
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", LinAlgWarning)
            self.lu, self.piv = lu_factor(M)
        self.singular = bool(np.any(np.diag(self.lu) == 0))

    def solve(self, b: np.ndarray) -> np.ndarray:
        if self.singular:
            raise IllConditionedError("dense preconditioner matrix is singular")
        return lu_solve((self.lu, self.piv), b)


class DiagonalPreconditioner:
    """Jacobi preconditioner: divides by the diagonal of A."""

    __slots__ = ("d", "shape")

    def __init__(self, d):
        self.d = np.asarray(d)
        self.shape = (self.d.shape[0], self.d.shape[0])

    def solve(self, b: np.ndarray) -> np.ndarray:
        if b.ndim == 1:
            return b / self.d
        return b / self.d[:, None]


class FunctionPreconditioner:
    """User function ``fun(R) -> M^-1 @ R``."""

    __slots__ = ("fun",)

    def __init__(self, fun):
        self.fun = fun

    def solve(self, b: np.ndarray) -> np.ndarray:
        return np.array(self.fun(b))


def _as_preconditioner(M, n, name):
    if sparse.issparse(M):
        pc = SparsePreconditioner(M)
    elif isinstance(M, np.ndarray):
        pc = DensePreconditioner(M)
    elif hasattr(M, "solve"):
        # Custom preconditioner with .solve() method
        pc = M
    elif callable(M):
        pc = FunctionPreconditioner(M)
    else:
        pc = DensePreconditioner(np.asarray(M))

    shape = getattr(pc, "shape", None)
    if shape is not None and tuple(shape) != (n, n):
        raise DimensionError(f"{name} must be {n}x{n}, got shape {tuple(shape)}")
    return pc


class PreconditionerChain:
    """Applies ``M1`` then ``M2``, i.e. ``M^-1 = M2^-1 M1^-1``."""

    __slots__ = ("stages",)

    def __init__(self, stages):
        self.stages = list(stages)

    def solve(self, R: np.ndarray) -> np.ndarray:
        for name, stage in self.stages:
            R = _as_block(stage.solve(R), R.shape, name)
            _check_finite(R, f"preconditioner {name}")
        return R


def make_preconditioner_chain(M1, M2, n: int):
    """Build the chain for ``M1``/``M2``; returns None when both are absent."""
    stages = [
        (name, _as_preconditioner(M, n, name))
        for name, M in (("M1", M1), ("M2", M2))
        if M is not None
    ]
    return PreconditionerChain(stages) if stages else None


# =============================================================================
# Preconditioner Factory
# =============================================================================


def make_preconditioner(A, precond_type: str = "diag", **kwargs):
    """
    Create a preconditioner approximating ``A`` for use as ``M1``/``M2``.

    Parameters
    ----------
    A : sparse matrix or ndarray
        System matrix
    precond_type : str
        'diag' or 'jacobi': Diagonal (Jacobi) preconditioner
        'ilu0': Incomplete LU with no fill-in
        'ilu' or 'ilut': Incomplete LU with threshold
        'lu': Full LU factorization (exact, use as reference)
        'ssor': Symmetric SOR splitting matrix ``D + omega*L``
    **kwargs : dict
        - drop_tol: ILUT drop tolerance (default 1e-4)
        - fill_factor: ILUT fill factor (default 10)
        - omega: SSOR relaxation (default 1.0)

    Returns
    -------
    M : preconditioner object or sparse matrix
    """
    A = A if sparse.issparse(A) else sparse.csc_matrix(A)

    if precond_type in ("diag", "jacobi"):
        diag = A.diagonal().copy()
        diag[np.abs(diag) < 1e-14] = 1.0
        return DiagonalPreconditioner(diag)

    elif precond_type == "ilu0":
        try:
            return SparsePreconditioner(
                factor=spilu(A.tocsc(), drop_tol=0, fill_factor=1)
            )
        except RuntimeError as e:
            warnings.warn(f"ILU(0) factorization failed: {e}, falling back to diagonal")
            return make_preconditioner(A, "diag")

    elif precond_type in ("ilu", "ilut"):
        drop_tol = kwargs.get("drop_tol", 1e-4)
        fill_factor = kwargs.get("fill_factor", 10)
        try:
            return SparsePreconditioner(
                factor=spilu(A.tocsc(), drop_tol=drop_tol, fill_factor=fill_factor)
            )
        except RuntimeError as e:
            warnings.warn(f"ILUT factorization failed: {e}, trying ILU(0)")
            return make_preconditioner(A, "ilu0")

    elif precond_type == "lu":
        try:
            return SparsePreconditioner(factor=splu(A.tocsc()))
        except RuntimeError as e:
            warnings.warn(f"LU factorization failed: {e}, falling back to ILUT")
            return make_preconditioner(A, "ilut", **kwargs)

    elif precond_type == "ssor":
        omega = kwargs.get("omega", 1.0)
        D = sparse.diags(A.diagonal(), format="csr")
        L = sparse.tril(A, k=-1, format="csr")
        return (D + omega * L).tocsr()

    else:
        raise ValueError(f"Unknown preconditioner type: {precond_type}")
