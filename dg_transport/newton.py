from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

import numpy as np
import scipy.sparse as sp

import jax.numpy as jnp

from .block import BlockOperator
from .solver import gmres_solve_with_history
from .verbose import EmitFn, Level


@dataclass(frozen=True)
class NewtonKrylovResult:
    x: jnp.ndarray
    residual_norm: float
    initial_residual_norm: float
    n_newton: int
    converged: bool
    residual_history: list[float] = field(default_factory=list)
    gmres_iterations: list[int] = field(default_factory=list)
    last_linear_residual_norm: float = float("inf")


def _as_matrix(jac) -> sp.csr_matrix:
    if isinstance(jac, BlockOperator):
        return jac.to_csr()
    return sp.csr_matrix(jac)


def solve_newton_krylov(
    *,
    residual: Callable[[jnp.ndarray], jnp.ndarray],
    jacobian: Callable[[jnp.ndarray], BlockOperator | sp.spmatrix],
    x0,
    preconditioner=None,
    rel_tol: float = 1e-8,
    abs_tol: float = 0.0,
    max_newton: int = 10,
    gmres_tol: float = 1e-10,
    gmres_atol: float = 0.0,
    gmres_restart: int = 50,
    gmres_maxiter: int | None = 300,
    jacobian_refresh: int = 1,
    max_backtracks: int = 8,
    emit: EmitFn | None = None,
) -> NewtonKrylovResult:
    """Newton iteration ``x <- x + a s`` with ``J(x) s = -F(x)`` solved by preconditioned GMRES.

    Stops when ``||F|| <= max(rel_tol * ||F_0||, abs_tol)`` or after ``max_newton`` updates.
    Without convergence the iterate with the smallest finite residual is returned, also when a
    residual, Jacobian or linear solution turns non-finite.

    The step length ``a`` is halved up to ``max_backtracks`` times until
    ``||F(x + a s)|| <= (1 - 1e-4 a) ||F(x)||``; if no trial is accepted the shortest one is
    taken anyway. ``max_backtracks = 0`` gives undamped Newton.

    ``jacobian_refresh = N > 0`` rebuilds ``J`` every ``N`` iterations, ``0`` keeps the first one.
    ``preconditioner`` needs ``set_operator(J)`` and ``__call__(r)``.
    """
    x = jnp.asarray(x0, dtype=jnp.float64).reshape((-1,))
    refresh = int(jacobian_refresh)
    if refresh < 0:
        raise ValueError(f"jacobian_refresh must be >= 0, got {jacobian_refresh}")
    n_backtracks = int(max_backtracks)
    if n_backtracks < 0:
        raise ValueError(f"max_backtracks must be >= 0, got {max_backtracks}")

    history: list[float] = []
    gmres_iters: list[int] = []
    last_linear = float("inf")
    rnorm0: float | None = None
    x_best = x
    r_best = float("inf")
    mat = None

    def _result(xr, rn, k, conv):
        return NewtonKrylovResult(
            x=xr,
            residual_norm=float(rn),
            initial_residual_norm=float(rnorm0 if rnorm0 is not None else rn),
            n_newton=int(k),
            converged=bool(conv),
            residual_history=history,
            gmres_iterations=gmres_iters,
            last_linear_residual_norm=float(last_linear),
        )

    r = residual(x)
    for k in range(int(max_newton) + 1):
        rnorm_f = float(jnp.linalg.norm(r))
        if emit is not None:
            emit(Level.NEWTON, f"newton_iter={k}: residual_norm={rnorm_f:.6e}")
        if not np.isfinite(rnorm_f):
            if emit is not None:
                emit(Level.NEWTON, f"newton_iter={k}: non-finite residual; returning best finite iterate")
            return _result(x_best, r_best, k, False)
        history.append(rnorm_f)
        if rnorm_f < r_best:
            x_best, r_best = x, rnorm_f
        if rnorm0 is None:
            rnorm0 = rnorm_f
        target = max(float(rel_tol) * float(rnorm0), float(abs_tol))
        if rnorm_f <= target:
            return _result(x, rnorm_f, k, True)
        if k == int(max_newton):
            break

        rebuild = mat is None or (refresh > 0 and k % refresh == 0)
        if rebuild:
            jac = jacobian(x)
            if emit is not None:
                emit(Level.SOLVE, f"newton_iter={k}: evaluateJacobian called")
            mat = _as_matrix(jac)
            if not np.all(np.isfinite(mat.data)):
                if emit is not None:
                    emit(Level.NEWTON, f"newton_iter={k}: non-finite Jacobian; returning best finite iterate")
                return _result(x_best, r_best, k, False)
            if preconditioner is not None:
                preconditioner.set_operator(jac)

        lin = gmres_solve_with_history(
            matvec=mat.__matmul__,
            b=-np.asarray(r, dtype=np.float64),
            preconditioner=preconditioner,
            tol=float(gmres_tol),
            atol=float(gmres_atol),
            restart=int(gmres_restart),
            maxiter=gmres_maxiter,
        )
        gmres_iters.append(lin.n_iter)
        if emit is not None:
            emit(Level.SOLVE, f"newton_iter={k}: gmres_iters={lin.n_iter} gmres_residual={float(lin.residual_norm):.6e}")
        if not lin.is_finite:
            if emit is not None:
                emit(Level.NEWTON, f"newton_iter={k}: GMRES returned non-finite result; returning best finite iterate")
            return _result(x_best, r_best, k, False)
        last_linear = float(lin.residual_norm)
        s = jnp.asarray(lin.x, dtype=jnp.float64)

        step = 1.0
        for _ in range(n_backtracks + 1):
            x_try = x + step * s
            r_try = residual(x_try)
            if n_backtracks == 0:
                break
            rnorm_try = float(jnp.linalg.norm(r_try))
            if np.isfinite(rnorm_try) and rnorm_try <= (1.0 - 1e-4 * step) * rnorm_f:
                break
            step *= 0.5
        else:
            step *= 2.0
            if emit is not None:
                emit(Level.SOLVE, f"newton_iter={k}: line search failed; taking step={step:.3e}")
        if emit is not None and step < 1.0:
            emit(Level.SETUP, f"newton_iter={k}: step={step:.3e}")
        x, r = x_try, r_try

    return _result(x_best, r_best, int(max_newton), False)
