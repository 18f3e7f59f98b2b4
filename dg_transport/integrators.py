"""Implicit time-integration drivers around ``TransportOperator.implicit_solve``."""

from __future__ import annotations

import math

import jax.numpy as jnp


class BackwardEulerSolver:
    """``k = f(t + dt, x + dt k)``, ``x <- x + dt k``."""

    name = "backward_euler"

    def __init__(self) -> None:
        self.op = None

    def init(self, op) -> None:
        self.op = op

    def _require_op(self):
        if self.op is None:
            raise ValueError(f"{type(self).__name__}: call init(op) before step")
        return self.op

    def step(self, x, t: float, dt: float):
        op = self._require_op()
        op.set_time(t + dt)
        k = op.implicit_solve(dt, x)
        return jnp.asarray(x) + dt * k, t + dt


class SDIRK23Solver(BackwardEulerSolver):
    """Two-stage singly diagonally implicit Runge-Kutta with ``gamma = (3 + sqrt(3)) / 6``."""

    name = "sdirk23"
    gamma = (3.0 + math.sqrt(3.0)) / 6.0

    def step(self, x, t: float, dt: float):
        op = self._require_op()
        g = self.gamma
        x = jnp.asarray(x)

        op.set_time(t + g * dt)
        k1 = op.implicit_solve(g * dt, x)
        y = x + (1.0 - 2.0 * g) * dt * k1
        x = x + 0.5 * dt * k1

        op.set_time(t + (1.0 - g) * dt)
        k2 = op.implicit_solve(g * dt, y)
        x = x + 0.5 * dt * k2
        return x, t + dt


_SOLVERS = {
    "backward_euler": BackwardEulerSolver,
    "implicit_euler": BackwardEulerSolver,
    "sdirk23": SDIRK23Solver,
}


def make_ode_solver(name: str):
    key = str(name).strip().lower()
    cls = _SOLVERS.get(key)
    if cls is None:
        raise ValueError(f"Unknown ODE solver {name!r}; expected one of {sorted(_SOLVERS)}")
    return cls()
