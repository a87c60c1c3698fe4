"""
GMRES - restarted Generalized Minimum Residual solver.

Householder-based Arnoldi (Walker's method) with incremental Givens
triangularization, for one or several right-hand sides that share an
operator and a preconditioner chain. Every right-hand side column carries
its own reflector chain, projected triangle and residual estimate; the
operator and preconditioner are called once per step for the whole block.
"""

import logging
import warnings
from dataclasses import dataclass, field
from math import ceil
from typing import Optional, Tuple

import numpy as np
from scipy import sparse

from .errors import (
    DimensionError,
    Flag,
    IllConditionedError,
    IterationLimitWarning,
    ToleranceOutOfRange,
)
from .householder import (
    HAS_NUMBA,
    apply_givens,
    apply_reflectors,
    householder_seed,
    krylov_direction,
    new_givens,
    next_reflector,
    reconstruct,
)
from .operators import make_operator, make_preconditioner, make_preconditioner_chain

__all__ = [
    "gmres",
    "gmres_scipy",
    "gmres_solve",
    "GMRESResult",
    "GMRESWorkspace",
    "MinimumResidualTracker",
    "DEFAULT_TOL",
    "MAX_STAG_STEPS",
    "DEFAULT_MAXIT_CAP",
]

logger = logging.getLogger(__name__)

DEFAULT_TOL = 1e-6
MAX_STAG_STEPS = 3
DEFAULT_MAXIT_CAP = 10


# =============================================================================
# Result Container
# =============================================================================


@dataclass
class GMRESResult:
    """Result container for the GMRES solver.

    Unpacks as ``x, flag, relres, iter, resvec``.
    """

    x: np.ndarray
    flag: Flag
    relres: np.ndarray
    iter: Tuple[int, int]
    resvec: np.ndarray
    itercol: Optional[np.ndarray] = None

    @property
    def converged(self) -> bool:
        return self.flag == 0

    def __iter__(self):
        return iter((self.x, self.flag, self.relres, self.iter, self.resvec))

    def __repr__(self) -> str:
        status = "converged" if self.converged else f"flag={int(self.flag)}"
        return (
            f"GMRESResult({status}, iter={tuple(self.iter)}, "
            f"relres={float(np.max(self.relres)):.2e})"
        )


# =============================================================================
# GMRES Workspace
# =============================================================================


class GMRESWorkspace:
    """Pre-allocated storage for one restart cycle."""

    __slots__ = ("U", "R", "J", "w", "n", "k", "inner", "dtype")

    def __init__(self, n: int, k: int, inner: int, dtype=np.float64):
        self.n, self.k, self.inner = n, k, inner
        self.dtype = dtype
        # reflector h of column c is U[h, :, c]
        self.U = np.zeros((inner + 1, n, k), dtype=dtype)
        self.R = np.zeros((k, inner, inner), dtype=dtype)
        self.J = np.zeros((inner, 2, k), dtype=dtype)
        self.w = np.zeros((inner + 1, k), dtype=dtype)

    def reset(self):
        self.U.fill(0)
        self.R.fill(0)
        self.J.fill(0)
        self.w.fill(0)


# =============================================================================
# Convergence Monitor State
# =============================================================================


class MinimumResidualTracker:
    """Best exactly evaluated iterate per column, and where it was produced.

    Only overwrites a column when the new residual norm is not larger, so
    ``normrmin`` never increases.
    """

    __slots__ = ("xmin", "normrmin", "imin", "jmin")

    def __init__(self, x: np.ndarray, normr: np.ndarray):
        k = x.shape[1]
        self.xmin = x.copy()
        self.normrmin = np.array(normr, dtype=np.float64)
        self.imin = np.zeros(k, dtype=int)
        self.jmin = np.zeros(k, dtype=int)

    def update(self, x, normr, outer, inner, mask=None) -> np.ndarray:
        better = normr <= self.normrmin
        if mask is not None:
            better &= mask
        self.xmin[:, better] = x[:, better]
        self.normrmin[better] = normr[better]
        self.imin[better] = outer
        self.jmin[better] = np.broadcast_to(inner, better.shape)[better]
        return better

    def best_iter(self) -> Tuple[int, int]:
        """Latest (outer, inner) at which any column of ``xmin`` was produced."""
        c = max(range(len(self.imin)), key=lambda i: (self.imin[i], self.jmin[i]))
        return int(self.imin[c]), int(self.jmin[c])


@dataclass
class _GMRESState:
    """Iteration counters threaded through the restart loop."""

    maxmsteps: int
    converged: np.ndarray
    warned: bool = False
    maxstagsteps: int = MAX_STAG_STEPS
    stag: int = 0
    moresteps: int = 0
    flag: Flag = Flag.MAX_ITERATIONS
    outiter: int = 0
    initer: int = 0
    conv_at: np.ndarray = field(default=None)


def _check_tolerance(tol):
    eps = np.finfo(np.float64).eps
    if tol is None:
        return DEFAULT_TOL, False
    if tol < eps:
        warnings.warn(
            f"tolerance {tol:g} is below machine precision, using {eps:g}",
            ToleranceOutOfRange,
        )
        return eps, True
    if tol >= 1:
        warnings.warn(
            f"tolerance {tol:g} is not below 1, using {1 - eps}", ToleranceOutOfRange
        )
        return 1 - eps, True
    return float(tol), False


def _relres(normr, nb):
    return np.divide(normr, nb, out=np.zeros_like(normr, dtype=np.float64), where=nb > 0)


def _residual(op, precond, B, x):
    r = B - op.apply(x)
    return precond.solve(r) if precond is not None else r


# =============================================================================
# Pure-Python GMRES Solver
# =============================================================================


def _gmres_python_impl(
    A,
    B: np.ndarray,
    restart: Optional[int] = None,
    tol: Optional[float] = None,
    maxit: Optional[int] = None,
    M1=None,
    M2=None,
    x0: Optional[np.ndarray] = None,
    workspace: Optional[GMRESWorkspace] = None,
    use_numba: bool = True,
):
    """Native Python GMRES implementation (internal).

    Always works on ``n x k`` blocks and returns
    ``(x, flag, relres, iter, resvec, itercol)``.
    """
    B = np.asarray(B)
    if B.ndim == 1:
        B = B.reshape(-1, 1)
    if B.ndim != 2:
        raise DimensionError(f"B must be a vector or an n x k matrix, got shape {B.shape}")
    n, k = B.shape

    is_complex = any(np.iscomplexobj(a) for a in (A, B, x0, M1, M2) if a is not None)
    dtype = np.complex128 if is_complex else np.float64
    B = B.astype(dtype)

    op = make_operator(A, n)
    precond = make_preconditioner_chain(M1, M2, n)

    if x0 is None:
        x = np.zeros((n, k), dtype=dtype)
    else:
        x = np.array(x0, dtype=dtype)
        if x.ndim == 1 and k == 1:
            x = x.reshape(-1, 1)
        if x.shape != (n, k):
            raise DimensionError(f"x0 must have shape {(n, k)}, got {x.shape}")

    # Assign default values to unspecified parameters
    restarted = restart is not None and restart != n
    tol, warned = _check_tolerance(tol)
    if restarted and restart < 1:
        raise ValueError(f"restart must be a positive integer, got {restart}")
    if maxit is None:
        if restarted:
            maxit = min(ceil(n / restart), DEFAULT_MAXIT_CAP)
        else:
            maxit = min(n, DEFAULT_MAXIT_CAP)
    elif maxit < 1:
        raise ValueError(f"maxit must be a positive integer, got {maxit}")

    if restarted:
        outer = maxit
        if restart > n:
            warnings.warn(
                f"restart={restart} exceeds the system size, using {n}",
                IterationLimitWarning,
            )
            restart = n
        inner = restart
    else:
        outer = 1
        if maxit > n:
            warnings.warn(
                f"maxit={maxit} exceeds the system size, using {n}",
                IterationLimitWarning,
            )
            maxit = n
        inner = maxit

    itercol = np.zeros((k, 2), dtype=int)

    # All zero right hand side => all zero solution
    n2b = np.linalg.norm(B, axis=0)
    if np.max(n2b) == 0:
        return np.zeros((n, k), dtype=dtype), Flag.CONVERGED, np.zeros(k), (0, 0), np.zeros((1, k)), itercol

    zero_cols = n2b == 0
    x[:, zero_cols] = 0
    x0iszero = np.linalg.norm(x, axis=0) == 0

    try:
        r = B - op.apply(x)
    except IllConditionedError as e:
        logger.debug("gmres: operator failed on the initial guess: %s", e)
        nan = np.full(k, np.nan)
        return x, Flag.ILL_CONDITIONED, nan, (0, 0), nan[None, :], itercol
    normr = np.linalg.norm(r, axis=0)
    if np.all(normr <= tol * n2b):
        # Initial guess is a good enough solution
        return x, Flag.CONVERGED, _relres(normr, n2b), (0, 0), normr[None, :], itercol

    if precond is not None:
        try:
            r = precond.solve(r)
            minv_b = r if np.all(x0iszero) else precond.solve(B)
        except IllConditionedError as e:
            logger.debug("gmres: preconditioner failed on the initial residual: %s", e)
            return x, Flag.ILL_CONDITIONED, _relres(normr, n2b), (0, 0), normr[None, :], itercol
    else:
        minv_b = B

    normr = np.linalg.norm(r, axis=0)
    n2minv_b = np.linalg.norm(minv_b, axis=0)
    tolb = tol * n2minv_b
    if np.all(normr <= tolb):
        return x, Flag.CONVERGED, _relres(normr, n2minv_b), (0, 0), normr[None, :], itercol

    if (
        workspace is None
        or workspace.n != n
        or workspace.k != k
        or workspace.inner != inner
        or workspace.dtype != dtype
    ):
        ws = GMRESWorkspace(n, k, inner, dtype)
    else:
        ws = workspace

    state = _GMRESState(
        maxmsteps=min(n // 50, 5, n - maxit),
        converged=zero_cols | (normr <= tolb),
        warned=warned,
        conv_at=np.zeros((k, 2), dtype=int),
    )
    tracker = MinimumResidualTracker(x, normr)
    resvec = [normr.copy()]
    eps = np.finfo(dtype).eps
    normr_act = normr

    for outiter in range(1, outer + 1):
        state.outiter = outiter
        logger.debug(
            "gmres: cycle %d/%d, max relres %.3e",
            outiter,
            outer,
            np.max(_relres(normr_act, n2minv_b)),
        )

        # Re-seed the reflector chain from the current residual
        ws.reset()
        u, beta = householder_seed(r)
        ws.U[0] = u
        ws.w[0] = -beta

        kdim = np.full(k, inner)
        cycle_min = normr_act.copy()
        cycle_step = np.zeros(k, dtype=int)
        xm = x

        for initer in range(1, inner + 1):
            state.initer = initer
            j = initer - 1

            v = krylov_direction(ws.U, j, use_numba)
            try:
                v = op.apply(v)
                if precond is not None:
                    v = precond.solve(v)
            except IllConditionedError as e:
                logger.debug("gmres: %s at (%d, %d)", e, outiter, initer)
                state.flag = Flag.ILL_CONDITIONED
                break
            v = np.array(v, dtype=dtype)

            # Form P_j ... P_0 A v, then determine P_{j+1}
            apply_reflectors(ws.U, v, range(initer), use_numba)
            if initer < n:
                next_reflector(ws.U, v, j)
            apply_givens(ws.J, v, j)
            if initer < n:
                new_givens(ws.J, ws.w, v, j)
            ws.R[:, :, j] = v[:inner].T

            normr = np.abs(ws.w[initer])
            breakdown = v[j] == 0
            kdim[breakdown] = np.minimum(kdim[breakdown], j)
            exhausted = (normr == 0) & ~breakdown
            kdim[exhausted] = np.minimum(kdim[exhausted], initer)

            resvec.append(normr.copy())
            normr_act = normr
            active = ~state.converged

            if (
                np.all(normr[active] <= tolb[active])
                or state.stag >= state.maxstagsteps
                or state.moresteps
            ):
                additive = reconstruct(ws.U, ws.R, ws.w, np.minimum(initer, kdim), active)
                candidate = x + additive
                step = np.linalg.norm((candidate - xm)[:, active], axis=0)
                if np.all(step < eps * np.linalg.norm(xm[:, active], axis=0)):
                    state.stag += 1
                else:
                    state.stag = 0
                xm = candidate

                try:
                    normr_act = np.linalg.norm(_residual(op, precond, B, xm), axis=0)
                except IllConditionedError as e:
                    logger.debug("gmres: %s at (%d, %d)", e, outiter, initer)
                    state.flag = Flag.ILL_CONDITIONED
                    break
                resvec[-1] = normr_act.copy()
                tracker.update(xm, normr_act, outiter, initer, mask=active)
                logger.debug(
                    "gmres: exact check at (%d, %d), max relres %.3e",
                    outiter,
                    initer,
                    np.max(_relres(normr_act[active], n2minv_b[active])),
                )

                newly = active & (normr_act <= tolb)
                x[:, newly] = xm[:, newly]
                state.converged |= newly
                state.conv_at[newly] = (outiter, initer)
                if np.all(state.converged):
                    state.flag = Flag.CONVERGED
                    break

                if state.stag >= state.maxstagsteps and state.moresteps == 0:
                    state.stag = 0
                state.moresteps += 1
                if state.moresteps >= state.maxmsteps:
                    if not state.warned:
                        warnings.warn(
                            "exact residual does not reach the requested "
                            "tolerance; tolerance may be too small",
                            ToleranceOutOfRange,
                        )
                        state.warned = True
                    state.flag = Flag.STAGNATED
                    break

            better = normr_act <= cycle_min
            cycle_min[better] = normr_act[better]
            cycle_step[better] = initer

            if state.stag >= state.maxstagsteps:
                state.flag = Flag.STAGNATED
                break

        if state.flag == Flag.CONVERGED:
            break

        # Materialize the best iterate of this cycle and restart from it
        active = ~state.converged
        steps = np.minimum(cycle_step, kdim)
        x = x + reconstruct(ws.U, ws.R, ws.w, steps, active)
        try:
            r = _residual(op, precond, B, x)
        except IllConditionedError as e:
            logger.debug("gmres: %s at end of cycle %d", e, outiter)
            state.flag = Flag.ILL_CONDITIONED
            # no exact residual available; keep the cycle's estimate
            tracker.update(x, cycle_min, outiter, steps, mask=active & (steps > 0))
            break
        normr_act = np.linalg.norm(r, axis=0)
        tracker.update(x, normr_act, outiter, steps, mask=active)
        if state.flag == Flag.ILL_CONDITIONED:
            break

        newly = active & (normr_act <= tolb)
        state.converged |= newly
        state.conv_at[newly] = np.column_stack([np.full(k, outiter), steps])[newly]
        if np.all(state.converged):
            state.flag = Flag.CONVERGED
            break
        if state.flag == Flag.STAGNATED:
            break

    flag = state.flag
    logger.debug(
        "gmres: finished with flag %d at (%d, %d)", flag, state.outiter, state.initer
    )

    # returned solution is that with minimum residual
    if flag == Flag.CONVERGED:
        relres = _relres(normr_act, n2minv_b)
        itercol = state.conv_at
        it = max((int(o), int(i)) for o, i in itercol)
    else:
        x = tracker.xmin
        relres = _relres(tracker.normrmin, n2minv_b)
        it = tracker.best_iter()
        itercol = np.column_stack([tracker.imin, tracker.jmin])

    return x, flag, relres, it, np.array(resvec), itercol


# =============================================================================
# High-Level Solver Interface
# =============================================================================


def gmres(
    A,
    B: np.ndarray,
    restart: Optional[int] = None,
    tol: Optional[float] = None,
    maxit: Optional[int] = None,
    M1=None,
    M2=None,
    x0: Optional[np.ndarray] = None,
    workspace: Optional[GMRESWorkspace] = None,
    use_numba: bool = True,
) -> GMRESResult:
    """
    Restarted GMRES solver - main interface.

    Parameters
    ----------
    A : ndarray, sparse matrix, LinearOperator or callable
        Square n x n matrix, or a function returning ``A @ X`` for an
        ``n x k`` block ``X``
    B : ndarray
        Right-hand side vector/matrix (n,) or (n x k)
    restart : int, optional
        Inner iterations per cycle. None or n selects unrestarted GMRES
    tol : float, optional
        Relative residual tolerance (default: 1e-6), clamped to [eps, 1-eps]
    maxit : int, optional
        Outer cycles when restarted (default: min(ceil(n/restart), 10)),
        total inner iterations otherwise (default: min(n, 10))
    M1, M2 : preconditioner, optional
        Matrices approximating A, objects with ``.solve``, or callables
        returning ``M \\ R``. Applied as M1 then M2
    x0 : ndarray, optional
        Initial guess (default: zeros)
    workspace : GMRESWorkspace, optional
        Pre-allocated workspace, reused when the shape matches
    use_numba : bool
        Use the JIT-compiled reflector kernel when Numba is available

    Returns
    -------
    GMRESResult
        Result object containing:
        - x: Solution array (minimum-residual iterate unless converged)
        - flag: 0 = converged, 1 = max iterations, 2 = preconditioner
          ill-conditioned, 3 = stagnated
        - relres: Preconditioned relative residual per column
        - iter: (outer, inner) iteration at which x was computed
        - resvec: Residual norm history, including the initial residual
    """
    vector_rhs = np.ndim(B) == 1
    x, flag, relres, it, resvec, itercol = _gmres_python_impl(
        A,
        B,
        restart=restart,
        tol=tol,
        maxit=maxit,
        M1=M1,
        M2=M2,
        x0=x0,
        workspace=workspace,
        use_numba=use_numba,
    )

    # Flatten for single RHS
    if vector_rhs:
        x = x.ravel()
        relres = float(relres[0])
        resvec = resvec.ravel()

    return GMRESResult(
        x=x, flag=Flag(flag), relres=relres, iter=it, resvec=resvec, itercol=itercol
    )


def gmres_scipy(
    A,
    b: np.ndarray,
    x0: Optional[np.ndarray] = None,
    tol: float = DEFAULT_TOL,
    restart: Optional[int] = None,
    maxiter: Optional[int] = None,
    M=None,
    **kwargs,
) -> Tuple[np.ndarray, int]:
    """
    SciPy-compatible interface for the GMRES solver.

    Parameters
    ----------
    A : sparse matrix, ndarray, LinearOperator or callable
        System matrix
    b : ndarray
        Right-hand side vector
    x0 : ndarray, optional
        Initial guess
    tol : float
        Convergence tolerance
    restart : int, optional
        Inner iterations per cycle
    maxiter : int, optional
        Maximum outer cycles (or inner iterations when unrestarted)
    M : preconditioner, optional
        Preconditioner (used as M1)
    **kwargs
        Additional arguments passed to gmres()

    Returns
    -------
    x : ndarray
        Solution vector
    flag : int
        Convergence flag (0 = converged)
    """
    result = gmres(A, b, restart=restart, tol=tol, maxit=maxiter, M1=M, x0=x0, **kwargs)
    return result.x, int(result.flag)


def gmres_solve(
    Ap: np.ndarray,
    Ai: np.ndarray,
    Ax: np.ndarray,
    b: np.ndarray,
    *,
    x0: Optional[np.ndarray] = None,
    restart: Optional[int] = None,
    tol: float = DEFAULT_TOL,
    maxit: Optional[int] = None,
    precond_type: Optional[str] = "ilu",
    zero_based: bool = True,
    **kwargs,
) -> GMRESResult:
    """
    Solve a sparse system given in CSC arrays.

    Parameters
    ----------
    Ap : ndarray of int
        Column pointers for CSC format. Length n+1.
    Ai : ndarray of int
        Row indices for CSC format. Length nnz.
    Ax : ndarray
        Non-zero values. Length nnz.
    b : ndarray
        Right-hand side, (n,) or (n x k).
    precond_type : str or None
        Passed to make_preconditioner(); None or '' disables preconditioning.
    zero_based : bool, default True
        If False, Ap and Ai use 1-based (Fortran) indexing.
    **kwargs
        Options for make_preconditioner() (drop_tol, fill_factor, omega).

    Returns
    -------
    GMRESResult
    """
    Ap = np.asarray(Ap)
    Ai = np.asarray(Ai)
    Ax = np.asarray(Ax)
    n = len(Ap) - 1

    if len(Ai) != len(Ax):
        raise DimensionError(f"Ai length ({len(Ai)}) must match Ax length ({len(Ax)})")

    if not zero_based:
        Ap = Ap - 1
        Ai = Ai - 1

    A = sparse.csc_matrix((Ax, Ai, Ap), shape=(n, n))
    M1 = make_preconditioner(A, precond_type, **kwargs) if precond_type else None
    return gmres(A, b, restart=restart, tol=tol, maxit=maxit, M1=M1, x0=x0)


# =============================================================================
# Test Function
# =============================================================================


def _test():
    """Quick test to verify installation."""
    print("blockgmres GMRES Test")
    print("=" * 40)
    print(f"Numba acceleration available: {HAS_NUMBA}")
    print()

    # Wilkinson W21+ with a diagonal preconditioner
    n = 21
    d = np.abs(np.arange(n) - (n - 1) // 2).astype(float)
    A = np.diag(d) + np.diag(np.ones(n - 1), 1) + np.diag(np.ones(n - 1), -1)
    b = A.sum(axis=1)
    M = np.diag(np.r_[np.arange(10, 0, -1), 1, np.arange(1, 11)].astype(float))

    print(f"Matrix: wilkinson({n}), restart=10, tol=1e-12, maxit=15")
    result = gmres(A, b, 10, 1e-12, 15, M)

    print(f"\n{result}")
    print(f"||Ax - b|| = {np.linalg.norm(A @ result.x - b):.2e}")

    return result.converged


if __name__ == "__main__":
    _test()
