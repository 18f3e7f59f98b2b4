from __future__ import annotations

import numpy as np
import pytest

from dg_transport.solver import gmres_solve_with_history


def _nonsymmetric(n: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return np.eye(n) * 4.0 + 0.3 * rng.normal(size=(n, n))


def test_gmres_solve_matches_numpy_and_records_history() -> None:
    n = 24
    a = _nonsymmetric(n, 0)
    b = np.random.default_rng(1).normal(size=(n,))
    x_ref = np.linalg.solve(a, b)

    result = gmres_solve_with_history(matvec=lambda x: a @ x, b=b, tol=1e-12, restart=30, maxiter=200)
    np.testing.assert_allclose(result.x, x_ref, rtol=1e-8, atol=1e-8)
    assert result.residual_norm < 1e-9
    assert result.converged
    assert result.n_iter > 0
    assert result.history[-1] <= result.history[0]


@pytest.mark.parametrize("side", ["left", "right"])
def test_preconditioned_gmres_with_exact_inverse_converges_fast(side: str) -> None:
    n = 16
    a = _nonsymmetric(n, 2)
    a_inv = np.linalg.inv(a)
    b = np.ones(n)
    result = gmres_solve_with_history(
        matvec=lambda x: a @ x,
        b=b,
        preconditioner=lambda r: a_inv @ r,
        tol=1e-10,
        precondition_side=side,
    )
    np.testing.assert_allclose(a @ result.x, b, atol=1e-8)
    assert result.n_iter <= 2


def test_iteration_cap_counts_inner_iterations() -> None:
    n = 40
    rng = np.random.default_rng(5)
    a = np.diag(np.linspace(1.0, 1e4, n)) + 0.01 * rng.normal(size=(n, n))
    result = gmres_solve_with_history(matvec=lambda x: a @ x, b=np.ones(n), tol=1e-14, restart=5, maxiter=10)
    assert not result.converged
    assert result.n_iter <= 10


def test_zero_rhs_returns_zero() -> None:
    result = gmres_solve_with_history(matvec=lambda x: 2.0 * x, b=np.zeros(5))
    np.testing.assert_array_equal(result.x, np.zeros(5))
    assert result.residual_norm == 0.0


def test_restart_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DG_TRANSPORT_GMRES_RESTART", "3")
    n = 12
    a = _nonsymmetric(n, 7)
    result = gmres_solve_with_history(matvec=lambda x: a @ x, b=np.ones(n), tol=1e-10, restart=50, maxiter=400)
    assert result.converged
    np.testing.assert_allclose(a @ result.x, np.ones(n), atol=1e-8)


def test_bad_precondition_side_raises() -> None:
    with pytest.raises(ValueError):
        gmres_solve_with_history(matvec=lambda x: x, b=np.ones(3), precondition_side="middle")


def test_exact_initial_guess_returns_without_iterating() -> None:
    n = 10
    a = _nonsymmetric(n, 11)
    b = np.random.default_rng(12).normal(size=(n,))
    x_ref = np.linalg.solve(a, b)
    result = gmres_solve_with_history(
        matvec=lambda x: a @ x,
        b=a @ x_ref,
        preconditioner=lambda r: r / np.diag(a),
        x0=x_ref,
        precondition_side="right",
    )
    np.testing.assert_array_equal(result.x, x_ref)
    assert result.n_iter == 0
    assert result.converged


@pytest.mark.parametrize("side", ["left", "right"])
def test_initial_guess_is_used_under_either_preconditioning(side: str) -> None:
    n = 20
    a = _nonsymmetric(n, 13)
    b = np.random.default_rng(14).normal(size=(n,))
    x_ref = np.linalg.solve(a, b)
    x0 = x_ref + 1e-6 * np.random.default_rng(15).normal(size=(n,))

    def jacobi(r):
        return r / np.diag(a)

    cold = gmres_solve_with_history(
        matvec=lambda x: a @ x, b=b, preconditioner=jacobi, tol=1e-10, precondition_side=side
    )
    warm = gmres_solve_with_history(
        matvec=lambda x: a @ x, b=b, preconditioner=jacobi, x0=x0, tol=1e-10, precondition_side=side
    )
    assert warm.converged
    np.testing.assert_allclose(warm.x, x_ref, rtol=1e-7, atol=1e-8)
    assert warm.residual_norm <= 1e-8 * np.linalg.norm(b)
    assert warm.n_iter < cold.n_iter
