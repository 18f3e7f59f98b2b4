"""Ordered collection of the five field operators acting on one concatenated vector."""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

import jax.numpy as jnp

from .block import BlockOperator
from .config import N_FIELDS
from .dg import DGSpace
from .fields import EvalContext, FieldOperator, TimeStep
from .verbose import EmitFn, Level


class CombinedOperator:
    """Fields 0..4 in fixed order; block ``i`` of every vector belongs to field ``i``."""

    def __init__(self, operators: Sequence[FieldOperator], *, emit: EmitFn | None = None) -> None:
        operators = tuple(operators)
        if len(operators) != N_FIELDS:
            raise ValueError(f"expected {N_FIELDS} field operators, got {len(operators)}")
        for i, op in enumerate(operators):
            if op.index != i:
                raise ValueError(f"operator at position {i} belongs to field {op.index}")
        self._ops = operators
        self._emit = emit
        self._gradient: BlockOperator | None = None
        self._step: TimeStep | None = None
        self._offsets = self._compute_offsets()

    def _compute_offsets(self) -> Tuple[int, ...]:
        offs = [0]
        for op in self._ops:
            offs.append(offs[-1] + int(op.height))
        return tuple(offs)

    @property
    def operators(self) -> Tuple[FieldOperator, ...]:
        return self._ops

    @property
    def offsets(self) -> Tuple[int, ...]:
        return self._offsets

    @property
    def size(self) -> int:
        return int(self._offsets[-1])

    @property
    def space(self) -> DGSpace:
        return self._ops[0].space

    @property
    def time_step(self) -> float | None:
        return None if self._step is None else float(self._step.dt)

    @property
    def gradient(self) -> BlockOperator | None:
        return self._gradient

    def set_time_step(self, dt: float) -> None:
        step = TimeStep(float(dt))
        if self._emit is not None:
            self._emit(Level.SOLVE, f"dt={float(step.dt):.6e}")
        for op in self._ops:
            op.set_time_step(step)
        self._step = step

    # -- vector layout -----------------------------------------------------

    def split(self, v) -> Tuple[jnp.ndarray, ...]:
        v = jnp.asarray(v, dtype=jnp.float64).reshape((-1,))
        if v.shape != (self.size,):
            raise ValueError(f"vector must have shape {(self.size,)}, got {v.shape}")
        o = self._offsets
        return tuple(v[o[i] : o[i + 1]] for i in range(N_FIELDS))

    def join(self, fields: Sequence[jnp.ndarray]) -> jnp.ndarray:
        fields = tuple(fields)
        if len(fields) != N_FIELDS:
            raise ValueError(f"expected {N_FIELDS} fields, got {len(fields)}")
        return jnp.concatenate([jnp.asarray(f, dtype=jnp.float64).reshape((-1,)) for f in fields])

    def context(self, y, t: float = 0.0) -> EvalContext:
        return EvalContext(state=self.split(y), time=float(t))

    def zero_rate_fields(self) -> Tuple[jnp.ndarray, ...]:
        return self.split(jnp.zeros((self.size,), dtype=jnp.float64))

    # -- evaluation --------------------------------------------------------

    def mult(self, k, ctx: EvalContext) -> jnp.ndarray:
        """Concatenated residual ``[R_0(k), ..., R_4(k)]``."""
        kf = self.split(k)
        return jnp.concatenate([op.mult(kf, ctx) for op in self._ops])

    def update_gradient(self, k, ctx: EvalContext) -> BlockOperator:
        """Rebuild the block Jacobian ``dR/dk`` at ``k``; only declared couplings are filled."""
        self._gradient = None
        kf = self.split(k)
        rows: List[tuple] = []
        for op in self._ops:
            rows.append(tuple(op.gradient_block(j, kf, ctx) for j in range(N_FIELDS)))
        self._gradient = BlockOperator(offsets=self._offsets, blocks=tuple(rows))
        if self._emit is not None:
            nnz = sum(int(b.nnz) for row in rows for b in row if b is not None)
            self._emit(Level.SETUP, f"gradient blocks={int(np.sum(self._gradient.presence()))} nnz={nnz}")
        return self._gradient

    def update(self, space: DGSpace | None = None) -> None:
        """Propagate a space change to every field, then recompute the offsets."""
        self._gradient = None
        for op in self._ops:
            op.update(space)
        self._offsets = self._compute_offsets()
        if self._emit is not None:
            self._emit(Level.SOLVE, f"update size={self.size}")
