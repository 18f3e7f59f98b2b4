"""Block-Jacobi preconditioner with one algebraic-multigrid V-cycle per diagonal block."""

from __future__ import annotations

from typing import List, Tuple

import numpy as np
import pyamg
import scipy.sparse as sp
from scipy.sparse.linalg import LinearOperator

from .block import BlockOperator
from .verbose import EmitFn, Level


class BlockDiagonalAMG:
    """Applies ``diag(P_0, ..., P_{nb-1})``; off-diagonal coupling is ignored."""

    def __init__(self, *, strength: float = 0.0, max_coarse: int = 10, emit: EmitFn | None = None) -> None:
        self.strength = float(strength)
        self.max_coarse = int(max_coarse)
        self._emit = emit
        self._offsets: Tuple[int, ...] | None = None
        self._blocks: List[LinearOperator | None] = []

    @property
    def offsets(self) -> Tuple[int, ...] | None:
        return self._offsets

    @property
    def shape(self) -> tuple[int, int]:
        if self._offsets is None:
            raise ValueError("BlockDiagonalAMG has no operator; call set_operator first")
        n = int(self._offsets[-1])
        return (n, n)

    def block_preconditioner(self, i: int) -> LinearOperator | None:
        return self._blocks[i]

    def _build_block(self, a: sp.csr_matrix) -> LinearOperator:
        ml = pyamg.smoothed_aggregation_solver(
            sp.csr_matrix(a, dtype=np.float64),
            strength=("symmetric", {"theta": self.strength}),
            symmetry="nonsymmetric",
            max_coarse=self.max_coarse,
        )
        return ml.aspreconditioner(cycle="V")

    def set_operator(self, op) -> None:
        if not isinstance(op, BlockOperator):
            if self._emit is not None:
                self._emit(Level.SOLVE, f"operator of type {type(op).__name__} is not block structured; keeping blocks")
            return
        offsets = tuple(int(o) for o in op.offsets)
        if offsets != self._offsets:
            self._blocks = [None] * (len(offsets) - 1)
            self._offsets = offsets
        for i in range(op.n_blocks):
            diag = op.block(i, i)
            if diag is None:
                continue
            self._blocks[i] = None
            self._blocks[i] = self._build_block(diag)
            if self._emit is not None:
                self._emit(Level.SETUP, f"block {i} size={op.block_size(i)} nnz={int(diag.nnz)}")

    def __call__(self, r) -> np.ndarray:
        n = self.shape[0]
        o = self._offsets
        r = np.asarray(r, dtype=np.float64).reshape((-1,))
        if r.shape != (n,):
            raise ValueError(f"vector must have shape {(n,)}, got {r.shape}")
        z = r.copy()
        for i, pc in enumerate(self._blocks):
            if pc is not None:
                z[o[i] : o[i + 1]] = pc.matvec(r[o[i] : o[i + 1]])
        return z

    def as_linear_operator(self) -> LinearOperator:
        return LinearOperator(self.shape, matvec=self.__call__, dtype=np.float64)
