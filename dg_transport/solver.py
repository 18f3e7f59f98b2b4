from __future__ import annotations

from dataclasses import dataclass, field
import math
import os
from typing import Callable

import numpy as np
from scipy.sparse.linalg import LinearOperator as _LinearOperator
from scipy.sparse.linalg import gmres as _scipy_gmres


@dataclass(frozen=True)
class GMRESSolveResult:
    x: np.ndarray
    residual_norm: float
    history: list[float] = field(default_factory=list)
    info: int = 0

    @property
    def n_iter(self) -> int:
        return len(self.history)

    @property
    def converged(self) -> bool:
        return int(self.info) == 0

    @property
    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.x))) and math.isfinite(float(self.residual_norm))


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _maybe_limit_restart(n: int, restart: int) -> int:
    """Cap the Krylov basis at the system size and at ``DG_TRANSPORT_GMRES_MAX_MB``."""
    env_restart = _env_int("DG_TRANSPORT_GMRES_RESTART")
    if env_restart is not None and env_restart > 0:
        restart = env_restart
    if n <= 0 or restart <= 1:
        return max(int(restart), 1)
    restart = min(int(restart), int(n))
    max_mb_env = os.environ.get("DG_TRANSPORT_GMRES_MAX_MB", "").strip()
    try:
        max_mb = float(max_mb_env) if max_mb_env else 2048.0
    except ValueError:
        max_mb = 2048.0
    if max_mb <= 0:
        return restart
    # Krylov basis storage ~ (restart+1) * n * 8 bytes.
    max_restart = max(int(max_mb * 1e6 // (8 * n)) - 1, 1)
    return min(restart, max_restart)


def gmres_solve_with_history(
    *,
    matvec: Callable[[np.ndarray], np.ndarray],
    b,
    preconditioner: Callable[[np.ndarray], np.ndarray] | None = None,
    x0=None,
    tol: float = 1e-10,
    atol: float = 0.0,
    restart: int = 50,
    maxiter: int | None = 300,
    precondition_side: str = "right",
) -> GMRESSolveResult:
    """Restarted SciPy GMRES that records the preconditioned residual norm per inner iteration.

    ``maxiter`` bounds the total number of inner iterations; SciPy counts restart cycles, so it
    is converted to ``ceil(maxiter / restart)`` cycles.

    ``x0`` is a guess for the unpreconditioned unknown. With right preconditioning the solve is
    for the correction ``A P^-1 z = b - A x0``, ``x = x0 + P^-1 z``, stopped at the same
    ``max(tol ||b||, atol)`` as without a guess.
    """
    b_np = np.asarray(b, dtype=np.float64).reshape((-1,))
    n = int(b_np.size)
    x0_np = np.asarray(x0, dtype=np.float64).reshape((-1,)) if x0 is not None else None
    restart_use = _maybe_limit_restart(n, int(restart))
    cycles = None if maxiter is None else max(int(math.ceil(int(maxiter) / restart_use)), 1)

    def _mv(x_np: np.ndarray) -> np.ndarray:
        return np.asarray(matvec(x_np), dtype=np.float64).reshape((-1,))

    def _prec(x_np: np.ndarray) -> np.ndarray:
        if preconditioner is None:
            return x_np
        return np.asarray(preconditioner(x_np), dtype=np.float64).reshape((-1,))

    side = str(precondition_side).strip().lower()
    if side not in {"left", "right", "none"}:
        raise ValueError(f"precondition_side must be 'left', 'right' or 'none', got {precondition_side!r}")
    if side == "none":
        preconditioner = None

    if float(np.linalg.norm(b_np)) == 0.0:
        return GMRESSolveResult(x=np.zeros_like(b_np), residual_norm=0.0, history=[], info=0)

    rtol_use = float(tol)
    atol_use = float(atol)
    rhs = b_np
    x_guess = None
    right = side == "right" and preconditioner is not None
    if right:

        def _mv_right(y_np: np.ndarray) -> np.ndarray:
            return _mv(_prec(y_np))

        A = _LinearOperator((n, n), matvec=_mv_right, dtype=np.float64)
        M = None
        if x0_np is not None:
            x_guess = x0_np
            rhs = b_np - _mv(x0_np)
            if float(np.linalg.norm(rhs)) == 0.0:
                return GMRESSolveResult(x=x0_np.copy(), residual_norm=0.0, history=[], info=0)
            atol_use = max(atol_use, rtol_use * float(np.linalg.norm(b_np)))
            rtol_use = 0.0
            x0_np = None
    else:
        A = _LinearOperator((n, n), matvec=_mv, dtype=np.float64)
        M = _LinearOperator((n, n), matvec=_prec, dtype=np.float64) if preconditioner is not None else None

    history: list[float] = []

    def _cb(arg):
        if np.isscalar(arg):
            history.append(float(arg))
        else:
            history.append(float(np.linalg.norm(arg)))

    x_np, info = _scipy_gmres(
        A,
        rhs,
        x0=x0_np,
        rtol=rtol_use,
        atol=atol_use,
        restart=int(restart_use),
        maxiter=cycles,
        M=M,
        callback=_cb,
        callback_type="pr_norm",
    )

    if right:
        x_np = _prec(x_np)
        if x_guess is not None:
            x_np = x_guess + x_np

    res = b_np - _mv(x_np)
    rn = float(np.linalg.norm(res))
    return GMRESSolveResult(x=np.asarray(x_np, dtype=np.float64), residual_norm=rn, history=history, info=int(info))
