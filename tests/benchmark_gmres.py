"""
Benchmark script for the GMRES solver comparing:
1. Block GMRES with the Numba reflector kernel (if available)
2. Block GMRES with the NumPy reflector path
3. SciPy SuperLU direct solver

Tests both real and complex symmetric matrices across various sizes, with an
ILU preconditioner. Uses 3D FEM-like matrices (7-point stencil Laplacian).
"""

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import splu
import time
import sys
import os
import warnings

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from blockgmres import HAS_NUMBA, get_backend_info, gmres, make_preconditioner


def create_3d_fem_matrix(n_target, matrix_type="real"):
    """
    Create 3D FEM-like sparse symmetric matrix (7-point stencil Laplacian).

    For complex symmetric: A = A^T (not Hermitian A = A^H)
    """
    m = max(2, int(round(n_target ** (1 / 3))))
    n = m ** 3
    complex_valued = matrix_type == "complex"
    diag_main = 6.0 + 0.2j if complex_valued else 6.0
    diag_off = -1.0 + 0.1j if complex_valued else -1.0

    # 1D second-difference pattern, assembled with Kronecker products
    T = sparse.diags([1.0, 1.0], [-1, 1], shape=(m, m))
    I = sparse.identity(m)
    offdiag = (
        sparse.kron(sparse.kron(T, I), I)
        + sparse.kron(sparse.kron(I, T), I)
        + sparse.kron(sparse.kron(I, I), T)
    )
    A = (diag_main * sparse.identity(n) + diag_off * offdiag).tocsc()
    return A, n, m


def benchmark_superlu(A, B, n_runs=3):
    """SuperLU: factorize once, solve all columns."""
    times = []
    for _ in range(n_runs):
        t0 = time.perf_counter()
        x = splu(A.tocsc()).solve(B)
        times.append(time.perf_counter() - t0)
    return np.median(times), x


def benchmark_gmres(A, B, use_numba, restart=30, tol=1e-8, maxit=50, n_runs=3):
    """Block GMRES with an ILUT preconditioner (factorization included in timing)."""
    # Warmup (JIT compilation)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        gmres(A, B, restart=restart, tol=tol, maxit=1, use_numba=use_numba)

    times, results = [], []
    for _ in range(n_runs):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            t0 = time.perf_counter()
            M1 = make_preconditioner(A, "ilut", drop_tol=1e-3)
            result = gmres(
                A, B, restart=restart, tol=tol, maxit=maxit, M1=M1, use_numba=use_numba
            )
            times.append(time.perf_counter() - t0)
            results.append(result)

    idx = np.argmin(np.abs(np.array(times) - np.median(times)))
    return np.median(times), results[idx]


def max_relres(A, X, B):
    return float(np.max(np.linalg.norm(A @ X - B, axis=0) / np.linalg.norm(B, axis=0)))


def run_benchmark(sizes, matrix_type="real", nrhs=4, tol=1e-8, n_runs=3):
    """Run benchmarks for all solvers across matrix sizes."""
    results = []

    for n_target in sizes:
        print(f"  Testing n≈{n_target:,} (nrhs={nrhs})...", end=" ", flush=True)
        A, n, m = create_3d_fem_matrix(n_target, matrix_type)

        rng = np.random.RandomState(42)
        B = rng.randn(n, nrhs)
        if matrix_type == "complex":
            B = B + 1j * rng.randn(n, nrhs)

        row = {"n": n, "grid": m, "nnz": A.nnz}
        row["t_superlu"], x = benchmark_superlu(A, B, n_runs)
        row["res_superlu"] = max_relres(A, x, B)

        for label, use_numba in (("numpy", False), ("numba", True)):
            if use_numba and not HAS_NUMBA:
                row[f"t_{label}"] = None
                continue
            t, result = benchmark_gmres(A, B, use_numba, tol=tol, n_runs=n_runs)
            row[f"t_{label}"] = t
            row[f"flag_{label}"] = int(result.flag)
            row[f"iter_{label}"] = result.iter
            row[f"res_{label}"] = max_relres(A, result.x, B)

        results.append(row)
        print(f"done (grid={m}³={n}, nnz={A.nnz:,})")

    return results


def print_results_table(results, matrix_type):
    """Print benchmark results in a formatted table."""
    print(f"\n{'='*110}")
    print(f"BENCHMARK RESULTS - {matrix_type.upper()} MATRICES (3D FEM 7-point stencil)")
    print(f"{'='*110}")
    print("Flags: 0=converged, 1=maxit, 2=preconditioner ill-conditioned, 3=stagnated")
    print()
    print(
        f"{'Grid':>6} {'Size':>8} {'NNZ':>10} │ {'SuperLU':>10} {'Residual':>9} │ "
        f"{'GMRES/NumPy':>11} {'Iter':>8} {'Flg':>3} │ {'GMRES/Numba':>11} "
        f"{'Iter':>8} {'Flg':>3} │ {'Residual':>9}"
    )
    print("-" * 110)

    for r in results:

        def fmt_time(key):
            return f"{r[key]*1000:.1f}ms" if r.get(key) else "N/A"

        def fmt_iter(label):
            return str(r[f"iter_{label}"]) if r.get(f"t_{label}") else "-"

        def fmt_flag(label):
            return str(r[f"flag_{label}"]) if r.get(f"t_{label}") else "-"

        res = r.get("res_numba", r.get("res_numpy"))
        print(
            f"{r['grid']:>5}³ {r['n']:>8,} {r['nnz']:>10,} │ "
            f"{fmt_time('t_superlu'):>10} {r['res_superlu']:>9.1e} │ "
            f"{fmt_time('t_numpy'):>11} {fmt_iter('numpy'):>8} {fmt_flag('numpy'):>3} │ "
            f"{fmt_time('t_numba'):>11} {fmt_iter('numba'):>8} {fmt_flag('numba'):>3} │ "
            f"{res:>9.1e}"
        )


def main():
    print("=" * 90)
    print("GMRES BENCHMARK: Block GMRES (NumPy / Numba) vs SciPy SuperLU")
    print("=" * 90)

    info = get_backend_info()
    print(f"\nBackend Info:")
    print(f"  Numba acceleration available: {HAS_NUMBA}")
    print(f"  Active backend: {info['backend']}")

    # Grid sizes: 5, 8, 10, 15, 20, 25 -> n = 125 ... 15625
    sizes = [125, 512, 1000, 3375, 8000, 15625]
    nrhs = 4

    print(f"\n3D FEM Test Configuration:")
    print(f"  Target sizes: {sizes}")
    print(f"  Right-hand sides: {nrhs}")
    print(f"  restart=30, maxit=50, tol=1e-8, ILUT(1e-3) preconditioner")

    for matrix_type in ("real", "complex"):
        print("\n" + "─" * 90)
        print(f"Testing {matrix_type.upper()} symmetric matrices...")
        print("─" * 90)
        results = run_benchmark(sizes, matrix_type, nrhs=nrhs, tol=1e-8, n_runs=3)
        print_results_table(results, matrix_type)


if __name__ == "__main__":
    main()
