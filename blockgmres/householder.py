"""
Householder Arnoldi and Givens kernels for GMRES.

The Krylov basis is never stored explicitly. For each right-hand side the
reflectors P_0, P_1, ... live in one slot of ``U`` (shape ``(inner+1, n, k)``),
and the j-th basis vector is ``P_0 P_1 ... P_j e_j`` (H.F. Walker, "Implementation
of the GMRES Method Using Householder Transformations", SIAM J. Sci. Stat.
Comput. 9(1), 1988). A zero slot acts as the identity reflector.

All routines work column-wise on ``n x k`` blocks so that one operator call
serves every right-hand side.
"""

import numpy as np
from scipy.linalg import solve_triangular

__all__ = [
    "HAS_NUMBA",
    "scalarsign",
    "apply_reflectors",
    "householder_seed",
    "krylov_direction",
    "next_reflector",
    "apply_givens",
    "new_givens",
    "reconstruct",
]

# Optional Numba acceleration
try:
    import numba

    HAS_NUMBA = True
except ImportError:
    numba = None
    HAS_NUMBA = False


# =============================================================================
# Reflector Kernels
# =============================================================================


def _reflect_real(U, v, order):
    """v <- P_h v for h in order, real arrays."""
    n, k = v.shape
    for h in order:
        for c in range(k):
            dot = 0.0
            for i in range(n):
                dot += U[h, i, c] * v[i, c]
            dot *= 2.0
            for i in range(n):
                v[i, c] -= dot * U[h, i, c]


def _reflect_complex(U, v, order):
    """v <- P_h v for h in order, complex arrays (Hermitian inner product)."""
    n, k = v.shape
    for h in order:
        for c in range(k):
            dot = 0.0j
            for i in range(n):
                dot += U[h, i, c].conjugate() * v[i, c]
            dot *= 2.0
            for i in range(n):
                v[i, c] -= dot * U[h, i, c]


if HAS_NUMBA:
    _reflect_real_kernel = numba.njit(cache=True)(_reflect_real)
    _reflect_complex_kernel = numba.njit(cache=True)(_reflect_complex)


def apply_reflectors(U: np.ndarray, v: np.ndarray, order, use_numba: bool = True):
    """
    Apply the reflectors ``U[h]`` for ``h`` in ``order`` to ``v`` in place.

    Parameters
    ----------
    U : ndarray
        Reflector storage, shape ``(slots, n, k)``; unit-norm or zero columns.
    v : ndarray
        Block to transform, shape ``(n, k)``. Modified in place.
    order : iterable of int
        Reflector indices, applied left to right.
    use_numba : bool
        If True and Numba available, use JIT-compiled kernel

    Returns
    -------
    v : ndarray
    """
    order = np.asarray(order, dtype=np.int64)
    if order.size == 0:
        return v

    if use_numba and HAS_NUMBA:
        if np.iscomplexobj(v):
            _reflect_complex_kernel(U, v, order)
        else:
            _reflect_real_kernel(U, v, order)
    else:
        for h in order:
            u = U[h]
            v -= 2.0 * u * np.sum(u.conj() * v, axis=0)
    return v


# =============================================================================
# Householder Arnoldi
# =============================================================================


def scalarsign(d) -> np.ndarray:
    """Elementwise sign with sign(0) = 1; ``d/|d|`` for complex input."""
    d = np.asarray(d)
    if np.iscomplexobj(d):
        mag = np.abs(d)
        return np.where(mag == 0, 1.0, d / np.where(mag == 0, 1.0, mag))
    return np.where(d < 0, -1.0, 1.0)


def _normalize(v):
    nrm = np.linalg.norm(v, axis=0)
    nz = nrm != 0
    v[:, nz] /= nrm[nz]
    return v


def householder_seed(r: np.ndarray):
    """
    First reflector of a cycle: ``P_0 r = -beta e_0``.

    Returns ``(u, beta)`` with ``beta = sign(r[0]) * ||r||`` per column.
    Zero residual columns give a zero ``u``.
    """
    beta = scalarsign(r[0]) * np.linalg.norm(r, axis=0)
    u = np.array(r, copy=True)
    u[0] += beta
    return _normalize(u), beta


def krylov_direction(U: np.ndarray, j: int, use_numba: bool = True) -> np.ndarray:
    """Form ``v = P_0 P_1 ... P_j e_j``, explicitly renormalized."""
    u = U[j]
    v = -2.0 * u * u[j].conj()
    v[j] += 1.0
    apply_reflectors(U, v, range(j - 1, -1, -1), use_numba)
    return _normalize(v)


def next_reflector(U: np.ndarray, v: np.ndarray, j: int) -> np.ndarray:
    """
    Build ``P_{j+1}`` from ``v[j+1:]`` and apply it to ``v`` in place.

    Columns whose trailing sub-vector is zero keep an identity reflector;
    their Krylov space is exhausted.
    """
    tail = v[j + 1 :]
    alpha = np.linalg.norm(tail, axis=0)
    nz = alpha != 0
    if not np.any(nz):
        return v
    alpha = scalarsign(v[j + 1]) * alpha

    u = np.zeros_like(v)
    u[j + 1 :] = tail
    u[j + 1] += alpha
    u = _normalize(u)
    U[j + 1][:, nz] = u[:, nz]

    v[j + 2 :, nz] = 0
    v[j + 1, nz] = -alpha[nz]
    return v


# =============================================================================
# Givens Triangularization
# =============================================================================


def apply_givens(J: np.ndarray, v: np.ndarray, j: int) -> np.ndarray:
    """Apply the stored rotations ``J[0..j-1]`` to rows ``(c, c+1)`` of ``v``."""
    for c in range(j):
        J0, J1 = J[c, 0], J[c, 1]
        tmp = v[c].copy()
        v[c] = J0.conj() * tmp + J1.conj() * v[c + 1]
        v[c + 1] = -J1 * tmp + J0 * v[c + 1]
    return v


def new_givens(J: np.ndarray, w: np.ndarray, v: np.ndarray, j: int) -> np.ndarray:
    """
    Compute the rotation that zeroes ``v[j+1]`` and apply it to ``w``.

    ``|w[j+1]|`` afterwards is the residual estimate of step ``j+1``. A zero
    pair (breakdown) stores ``(0, 1)``, which moves ``w[j]`` down unchanged.

    Returns
    -------
    rho : ndarray
        New diagonal entries of the projected triangle.
    """
    rho = np.linalg.norm(v[j : j + 2], axis=0)
    ok = rho != 0
    safe = np.where(ok, rho, 1.0)
    J[j, 0] = np.where(ok, v[j] / safe, 0.0)
    J[j, 1] = np.where(ok, v[j + 1] / safe, 1.0)

    w[j + 1] = -J[j, 1] * w[j]
    w[j] = J[j, 0].conj() * w[j]
    v[j] = rho
    v[j + 1] = 0
    return rho


# =============================================================================
# Solution Reconstruction
# =============================================================================


def reconstruct(U, R, w, steps, mask=None) -> np.ndarray:
    """
    Map the projected least-squares solution back to an update of X.

    For each column ``c`` with ``s = steps[c] > 0``, solve
    ``R[c, :s, :s] y = w[:s, c]`` and accumulate
    ``P_0 (y_0 e_0 + P_1 (y_1 e_1 + ... + P_{s-1} y_{s-1} e_{s-1}))``.

    Parameters
    ----------
    U : ndarray
        Reflectors, shape ``(slots, n, k)``
    R : ndarray
        Projected triangles, shape ``(k, inner, inner)``
    w : ndarray
        Rotated right-hand sides, shape ``(inner+1, k)``
    steps : array of int
        Number of inner steps to use per column
    mask : array of bool, optional
        Columns to update; others get a zero update

    Returns
    -------
    additive : ndarray
        Update block, shape ``(n, k)``
    """
    _, n, k = U.shape
    additive = np.zeros((n, k), dtype=U.dtype)
    for c in range(k):
        s = int(steps[c])
        if s <= 0 or (mask is not None and not mask[c]):
            continue
        y = solve_triangular(R[c, :s, :s], w[:s, c])
        add = additive[:, c]
        for h in range(s - 1, -1, -1):
            add[h] += y[h]
            u = U[h, :, c]
            add -= 2.0 * u * np.vdot(u, add)
    return additive
