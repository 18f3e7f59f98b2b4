from __future__ import annotations

import numpy as np
import scipy.sparse as sp
import jax
import jax.numpy as jnp
import pytest

from dg_transport.newton import solve_newton_krylov


def _problem(n: int = 20):
    rng = np.random.default_rng(0)
    c = jnp.asarray(rng.uniform(0.5, 1.5, size=n))

    def residual(x):
        # x^3 + 2 x + coupling - c, monotone so Newton converges from zero
        lap = jnp.concatenate([x[1:] - x[:-1], jnp.zeros(1)]) - jnp.concatenate([jnp.zeros(1), x[1:] - x[:-1]])
        return x**3 + 2.0 * x - 0.2 * lap - c

    def jacobian(x):
        return sp.csr_matrix(np.asarray(jax.jacfwd(residual)(x)))

    return residual, jacobian, n


def test_newton_reduces_residual_below_relative_tolerance() -> None:
    residual, jacobian, n = _problem()
    messages: list[str] = []
    res = solve_newton_krylov(
        residual=residual,
        jacobian=jacobian,
        x0=jnp.zeros(n),
        rel_tol=1e-8,
        gmres_tol=1e-10,
        emit=lambda level, msg: messages.append(msg),
    )
    assert res.converged
    assert res.residual_norm <= 1e-8 * res.initial_residual_norm
    assert float(jnp.linalg.norm(residual(res.x))) == pytest.approx(res.residual_norm, rel=1e-12, abs=1e-300)
    assert len(res.gmres_iterations) == res.n_newton
    assert res.residual_history[0] == pytest.approx(res.initial_residual_norm)
    assert any(m.startswith("newton_iter=0: residual_norm=") for m in messages)


def test_frozen_jacobian_still_converges_with_more_iterations() -> None:
    residual, jacobian, n = _problem()
    calls = {"n": 0}

    def counting_jacobian(x):
        calls["n"] += 1
        return jacobian(x)

    exact = solve_newton_krylov(residual=residual, jacobian=jacobian, x0=jnp.zeros(n), max_newton=30)
    frozen = solve_newton_krylov(
        residual=residual, jacobian=counting_jacobian, x0=jnp.zeros(n), max_newton=30, jacobian_refresh=0
    )
    assert frozen.converged
    assert calls["n"] == 1
    assert frozen.n_newton >= exact.n_newton


def test_iteration_cap_returns_unconverged_iterate() -> None:
    residual, jacobian, n = _problem()
    res = solve_newton_krylov(residual=residual, jacobian=jacobian, x0=jnp.zeros(n), max_newton=1, rel_tol=1e-14)
    assert not res.converged
    assert res.n_newton == 1
    assert res.residual_norm < res.initial_residual_norm


def _switching_slope_problem():
    # F(x) = x with a Jacobian guess that is only good for |x| > 0.5, so plain Newton
    # improves twice and then overshoots.
    def residual(x):
        return x

    def jacobian(x):
        slope = 0.6 if abs(float(x[0])) > 0.5 else 0.2
        return sp.csr_matrix(np.array([[slope]]))

    return residual, jacobian


def test_iteration_cap_returns_best_iterate_not_last() -> None:
    residual, jacobian = _switching_slope_problem()
    res = solve_newton_krylov(
        residual=residual,
        jacobian=jacobian,
        x0=jnp.ones(1),
        max_newton=3,
        rel_tol=1e-14,
        gmres_tol=1e-14,
        max_backtracks=0,
    )
    np.testing.assert_allclose(res.residual_history, [1.0, 2.0 / 3.0, 4.0 / 9.0, 16.0 / 9.0], rtol=1e-8)
    assert not res.converged
    assert res.n_newton == 3
    np.testing.assert_allclose(np.asarray(res.x), [4.0 / 9.0], rtol=1e-8)
    assert res.residual_norm == pytest.approx(4.0 / 9.0, rel=1e-8)


def test_line_search_keeps_residual_history_monotone() -> None:
    residual, jacobian = _switching_slope_problem()
    messages: list[tuple[int, str]] = []
    res = solve_newton_krylov(
        residual=residual,
        jacobian=jacobian,
        x0=jnp.ones(1),
        max_newton=6,
        rel_tol=1e-14,
        gmres_tol=1e-14,
        emit=lambda level, msg: messages.append((level, msg)),
    )
    hist = res.residual_history
    assert len(hist) == 7
    assert all(b < a for a, b in zip(hist, hist[1:]))
    assert res.residual_norm == pytest.approx(hist[-1])
    assert any("step=2.500e-01" in msg for _, msg in messages)


@pytest.mark.parametrize(("max_backtracks", "expected"), [(0, 0.0), (8, 0.5)])
def test_non_finite_residual_returns_best_finite_iterate(max_backtracks: int, expected: float) -> None:
    def residual(x):
        return jnp.where(x > 0.5, jnp.nan, x - 1.0)

    def jacobian(x):
        return sp.eye(x.size, format="csr")

    res = solve_newton_krylov(residual=residual, jacobian=jacobian, x0=jnp.zeros(3), max_backtracks=max_backtracks)
    assert not res.converged
    np.testing.assert_allclose(np.asarray(res.x), np.full(3, expected))
    assert res.residual_norm == pytest.approx(float(np.sqrt(3.0)) * (1.0 - expected))


class _RecordingPreconditioner:
    def __init__(self) -> None:
        self.operators = []

    def set_operator(self, op) -> None:
        self.operators.append(op)

    def __call__(self, r):
        return r


def test_non_finite_jacobian_returns_best_iterate_before_preconditioner_setup() -> None:
    def jacobian(x):
        return sp.csr_matrix(np.diag([1.0, np.inf]))

    pc = _RecordingPreconditioner()
    res = solve_newton_krylov(residual=lambda x: x - 1.0, jacobian=jacobian, x0=jnp.zeros(2), preconditioner=pc)
    assert not res.converged
    assert res.n_newton == 0
    np.testing.assert_array_equal(np.asarray(res.x), np.zeros(2))
    assert res.residual_norm == pytest.approx(float(np.sqrt(2.0)))
    assert pc.operators == []


def test_zero_initial_residual_is_converged_immediately() -> None:
    res = solve_newton_krylov(
        residual=lambda x: x, jacobian=lambda x: sp.eye(x.size, format="csr"), x0=jnp.zeros(4)
    )
    assert res.converged
    assert res.n_newton == 0
    assert res.gmres_iterations == []


def test_negative_refresh_raises() -> None:
    with pytest.raises(ValueError):
        solve_newton_krylov(residual=lambda x: x, jacobian=lambda x: None, x0=jnp.ones(2), jacobian_refresh=-1)


def test_negative_backtracks_raise() -> None:
    with pytest.raises(ValueError):
        solve_newton_krylov(residual=lambda x: x, jacobian=lambda x: None, x0=jnp.ones(2), max_backtracks=-1)
