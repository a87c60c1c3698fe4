"""
Unit tests for the operator and preconditioner adapters.

Run with: python -m unittest test_operators -v
"""

import unittest
import numpy as np
from numpy.testing import assert_allclose
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


from blockgmres import (
    DimensionError,
    IllConditionedError,
    DiagonalPreconditioner,
    DensePreconditioner,
    SparsePreconditioner,
    make_preconditioner,
)
from blockgmres.operators import (
    MatrixOperator,
    FunctionOperator,
    make_operator,
    make_preconditioner_chain,
)


def tridiagonal(n, diag=4.0, offdiag=-1.0):
    from scipy.sparse import diags

    return diags([offdiag, diag, offdiag], [-1, 0, 1], shape=(n, n), format="csc")


class TestOperatorAdapter(unittest.TestCase):
    def setUp(self):
        self.A = tridiagonal(6)
        self.X = np.random.RandomState(0).randn(6, 2)

    def test_matrix_inputs(self):
        from scipy.sparse.linalg import aslinearoperator

        expected = self.A @ self.X
        for A in (self.A, self.A.toarray(), aslinearoperator(self.A)):
            op = make_operator(A, 6)
            self.assertIsInstance(op, MatrixOperator)
            assert_allclose(op.apply(self.X), expected)

    def test_nested_list_input(self):
        op = make_operator(self.A.toarray().tolist(), 6)
        assert_allclose(op.apply(self.X), self.A @ self.X)

    def test_function_input(self):
        op = make_operator(lambda X: self.A @ X, 6)
        self.assertIsInstance(op, FunctionOperator)
        self.assertEqual(op.shape, (6, 6))
        assert_allclose(op.apply(self.X), self.A @ self.X)

    def test_function_vector_result_for_single_column(self):
        op = make_operator(lambda X: (self.A @ X).ravel(), 6)
        Y = op.apply(self.X[:, :1])
        self.assertEqual(Y.shape, (6, 1))

    def test_function_wrong_shape(self):
        op = make_operator(lambda X: X[:-1], 6)
        with self.assertRaises(DimensionError):
            op.apply(self.X)

    def test_non_finite_result(self):
        op = make_operator(lambda X: X * np.inf, 6)
        with self.assertRaises(IllConditionedError):
            op.apply(self.X)

    def test_non_square(self):
        with self.assertRaises(DimensionError):
            make_operator(np.ones((6, 5)), 6)

    def test_row_mismatch(self):
        with self.assertRaises(DimensionError):
            make_operator(self.A, 5)


class TestPreconditioners(unittest.TestCase):
    def setUp(self):
        self.A = tridiagonal(8)
        self.R = np.random.RandomState(1).randn(8, 3)

    def test_dense(self):
        M = self.A.toarray()
        pc = DensePreconditioner(M)
        self.assertFalse(pc.singular)
        assert_allclose(M @ pc.solve(self.R), self.R, atol=1e-12)

    def test_dense_singular(self):
        pc = DensePreconditioner(np.zeros((4, 4)))
        self.assertTrue(pc.singular)
        with self.assertRaises(IllConditionedError):
            pc.solve(np.ones((4, 1)))

    def test_sparse(self):
        pc = SparsePreconditioner(self.A)
        assert_allclose(self.A @ pc.solve(self.R), self.R, atol=1e-12)

    def test_sparse_singular(self):
        from scipy.sparse import csc_matrix

        pc = SparsePreconditioner(csc_matrix(np.diag([1.0, 0.0, 2.0])))
        self.assertTrue(pc.singular)
        with self.assertRaises(IllConditionedError):
            pc.solve(np.ones((3, 1)))

    def test_sparse_complex_rhs_on_real_factor(self):
        pc = SparsePreconditioner(self.A)
        R = self.R + 1j * self.R[:, ::-1]
        assert_allclose(self.A @ pc.solve(R), R, atol=1e-12)

    def test_chain_order(self):
        rng = np.random.RandomState(2)
        M1 = np.eye(8) + 0.1 * rng.randn(8, 8)
        M2 = np.triu(np.ones((8, 8)))
        chain = make_preconditioner_chain(M1, M2, 8)
        expected = np.linalg.solve(M2, np.linalg.solve(M1, self.R))
        assert_allclose(chain.solve(self.R), expected, atol=1e-10)

    def test_chain_absent(self):
        self.assertIsNone(make_preconditioner_chain(None, None, 8))

    def test_chain_accepts_solve_objects_and_callables(self):
        chain = make_preconditioner_chain(
            DiagonalPreconditioner(2.0 * np.ones(8)), lambda r: 4.0 * r, 8
        )
        assert_allclose(chain.solve(self.R), 2.0 * self.R)

    def test_chain_shape_mismatch(self):
        with self.assertRaises(DimensionError):
            make_preconditioner_chain(np.eye(7), None, 8)

    def test_chain_non_finite(self):
        chain = make_preconditioner_chain(lambda r: r / 0.0, None, 8)
        with self.assertRaises(IllConditionedError):
            with np.errstate(divide="ignore", invalid="ignore"):
                chain.solve(self.R)


class TestPreconditionerFactory(unittest.TestCase):
    def setUp(self):
        self.A = tridiagonal(20)
        self.b = np.ones(20)

    def test_diagonal_preconditioner(self):
        M = make_preconditioner(self.A, "diag")
        assert_allclose(M.solve(self.b), self.b / 4.0)
        assert_allclose(M.solve(np.ones((20, 2))), np.full((20, 2), 0.25))

    def test_jacobi_alias(self):
        M1 = make_preconditioner(self.A, "diag")
        M2 = make_preconditioner(self.A, "jacobi")
        assert_allclose(M1.solve(self.b), M2.solve(self.b))

    def test_zero_diagonal_entries_replaced(self):
        M = make_preconditioner(np.diag([2.0, 0.0, 4.0]), "diag")
        assert_allclose(M.solve(np.ones(3)), [0.5, 1.0, 0.25])

    def test_ilu_variants(self):
        for pt in ("ilu0", "ilu", "ilut"):
            with self.subTest(precond_type=pt):
                M = make_preconditioner(self.A, pt)
                self.assertIsInstance(M, SparsePreconditioner)
                x = M.solve(self.b)
                self.assertLess(
                    np.linalg.norm(self.A @ x - self.b), np.linalg.norm(self.b)
                )

    def test_lu_is_exact(self):
        M = make_preconditioner(self.A, "lu")
        self.assertIsInstance(M, SparsePreconditioner)
        x = M.solve(self.b)
        self.assertLess(np.linalg.norm(self.A @ x - self.b), 1e-10)

    def test_ssor_returns_splitting_matrix(self):
        from scipy import sparse

        M = make_preconditioner(self.A, "ssor", omega=1.2)
        self.assertTrue(sparse.issparse(M))
        expected = np.diag(self.A.diagonal()) + 1.2 * np.tril(self.A.toarray(), -1)
        assert_allclose(M.toarray(), expected)

    def test_invalid_preconditioner_type(self):
        with self.assertRaises(ValueError):
            make_preconditioner(self.A, "invalid_type")


if __name__ == "__main__":
    unittest.main(module="test_operators", verbosity=2)
