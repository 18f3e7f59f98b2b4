"""Time-dependent transport operator: one implicit stage solve per driver call."""

from __future__ import annotations

import os
from typing import Sequence

import numpy as np

import jax.numpy as jnp

from .combined import CombinedOperator
from .config import FIELD_NAMES, N_FIELDS, TransportConfig
from .dg import DGSpace
from .diagnostics import DiagnosticTable
from .fields import FieldKind, make_field_operators
from .newton import NewtonKrylovResult, solve_newton_krylov
from .preconditioner import BlockDiagonalAMG
from .verbose import EmitFn, Level, Timer, scoped

_POSITIVE_FIELDS = (
    FieldKind.NEUTRAL_DENSITY,
    FieldKind.ION_DENSITY,
    FieldKind.ION_TEMPERATURE,
    FieldKind.ELECTRON_TEMPERATURE,
)


def _env_flag(name: str) -> bool | None:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def check_physical_state(space: DGSpace, fields: Sequence[jnp.ndarray], emit: EmitFn | None = None) -> bool:
    """Return False if any density or temperature is negative (or non-finite) at a node.

    On failure every field is dumped at level 0.
    """
    ok = True
    for i in _POSITIVE_FIELDS:
        vals, _ = space.node_values(fields[int(i)])
        vals = np.asarray(vals)
        if not np.all(np.isfinite(vals)) or np.any(vals < 0.0):
            ok = False
    if not ok and emit is not None:
        emit(Level.NEWTON, "check_physical_state: invalid state")
        for i in range(N_FIELDS):
            vals = np.asarray(fields[i]).reshape(-1)
            emit(Level.NEWTON, f"  {FIELD_NAMES[i]}: min={np.min(vals):.6e} max={np.max(vals):.6e}")
            emit(Level.NEWTON, "    " + np.array2string(vals, precision=6, max_line_width=120))
    return ok


class TransportOperator:
    """Implicit operator ``k = f(t, y + dt k)`` of the five-field system on one DG space."""

    def __init__(self, space: DGSpace, config: TransportConfig, *, emit: EmitFn | None = None) -> None:
        self.config = config
        self.space = space
        self._emit = emit
        self.combined = CombinedOperator(
            make_field_operators(space, config, emit=scoped(emit, "fields")), emit=scoped(emit, "combined")
        )
        self.preconditioner = BlockDiagonalAMG(strength=config.solver.amg_strength, emit=scoped(emit, "amg"))
        self.t = 0.0
        self._last_result: NewtonKrylovResult | None = None

        env_check = _env_flag("DG_TRANSPORT_CHECK_STATE")
        self.check_state = bool(config.solver.check_physical_state) if env_check is None else env_check
        refresh = int(config.solver.jacobian_refresh)
        env_refresh = os.environ.get("DG_TRANSPORT_JACOBIAN_REFRESH", "").strip()
        if env_refresh:
            try:
                refresh = int(env_refresh)
            except ValueError:
                pass
        self.jacobian_refresh = refresh

    @property
    def height(self) -> int:
        return self.combined.size

    @property
    def width(self) -> int:
        return self.combined.size

    @property
    def last_result(self) -> NewtonKrylovResult | None:
        return self._last_result

    def set_time(self, t: float) -> None:
        self.t = float(t)

    def initial_state(self) -> jnp.ndarray:
        return self.combined.join([self.space.interpolate(v) for v in self.config.initial])

    def implicit_solve(self, dt: float, y, rate_out: np.ndarray | None = None) -> jnp.ndarray:
        """Solve ``R(k) = 0`` for the stage rate ``k`` at state ``y``, starting from ``k = 0``."""
        timer = Timer()
        if rate_out is not None and rate_out.shape != (self.height,):
            raise ValueError(f"rate_out must have shape {(self.height,)}, got {rate_out.shape}")
        ctx = self.combined.context(y, self.t)
        if self.check_state:
            check_physical_state(self.space, ctx.state, self._emit)
        self.combined.set_time_step(dt)

        s = self.config.solver
        result = solve_newton_krylov(
            residual=lambda k: self.combined.mult(k, ctx),
            jacobian=lambda k: self.combined.update_gradient(k, ctx),
            x0=jnp.zeros((self.height,), dtype=jnp.float64),
            preconditioner=self.preconditioner,
            rel_tol=s.newton_rel_tol,
            abs_tol=s.newton_abs_tol,
            max_newton=s.newton_max_iter,
            gmres_tol=s.krylov_tol,
            gmres_atol=s.krylov_abs_tol,
            gmres_restart=s.krylov_restart,
            gmres_maxiter=s.krylov_max_iter,
            jacobian_refresh=self.jacobian_refresh,
            max_backtracks=s.newton_max_backtracks,
            emit=scoped(self._emit, "newton"),
        )
        self._last_result = result
        if self._emit is not None:
            self._emit(
                Level.SOLVE,
                f"implicit_solve: dt={float(dt):.6e} newton_iters={result.n_newton} "
                f"elapsed_s={timer.elapsed_s():.3f}",
            )
        if self._emit is not None and not result.converged:
            self._emit(
                Level.NEWTON,
                f"implicit_solve: Newton did not converge in {result.n_newton} iterations "
                f"(residual_norm={result.residual_norm:.6e}, initial={result.initial_residual_norm:.6e})",
            )
        if rate_out is not None:
            rate_out[...] = np.asarray(result.x)
        return result.x

    def update(self, space: DGSpace | None = None) -> None:
        if space is not None:
            self.space = space
        self.combined.update(space)

    def prepare_data_fields(self, y, table: DiagnosticTable) -> dict:
        return table.prepare(self.combined, y, self.t)
