from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
import scipy.sparse as sp

import jax
import jax.numpy as jnp


@dataclass(frozen=True, eq=False)
class ColoredPattern:
    """Sparsity pattern of a DG coupling block plus a column colouring.

    Columns of equal colour never touch a common row, so one JVP per colour recovers every
    structurally nonzero entry: ``J[r, c] = compressed[colors[i], r]`` for ``(r, c) = (rows[i], cols[i])``.
    """

    shape: tuple[int, int]
    rows: np.ndarray
    cols: np.ndarray
    colors: np.ndarray
    seeds: jnp.ndarray  # (n_colors, n_cols)

    @property
    def n_colors(self) -> int:
        return int(self.seeds.shape[0])

    @property
    def nnz(self) -> int:
        return int(self.rows.size)

    def to_csr(self, compressed) -> sp.csr_matrix:
        compressed = np.asarray(compressed, dtype=np.float64)
        if compressed.shape != (self.n_colors, self.shape[0]):
            raise ValueError(f"compressed Jacobian must have shape {(self.n_colors, self.shape[0])}, got {compressed.shape}")
        data = compressed[self.colors, self.rows]
        return sp.csr_matrix((data, (self.rows, self.cols)), shape=self.shape)


def dg_neighbor_pattern(n_elements: int, nloc: int, *, reach: int = 1) -> ColoredPattern:
    """Pattern of an operator coupling each element to neighbours within ``reach`` elements.

    Colour of column ``(e, b)`` is ``(e mod (2 reach + 1), b)``; empty colours are dropped.
    """
    n_elements = int(n_elements)
    nloc = int(nloc)
    stride = 2 * int(reach) + 1
    n = n_elements * nloc

    rows_l: list[np.ndarray] = []
    cols_l: list[np.ndarray] = []
    a = np.arange(nloc)
    for off in range(-int(reach), int(reach) + 1):
        e = np.arange(max(0, -off), min(n_elements, n_elements - off))
        if e.size == 0:
            continue
        en = e + off
        r = (e[:, None, None] * nloc + a[None, :, None]) * np.ones((1, 1, nloc), dtype=np.int64)
        c = (en[:, None, None] * nloc + a[None, None, :]) * np.ones((1, nloc, 1), dtype=np.int64)
        rows_l.append(r.reshape(-1))
        cols_l.append(c.reshape(-1))
    rows = np.concatenate(rows_l).astype(np.int64)
    cols = np.concatenate(cols_l).astype(np.int64)

    col_color = (np.arange(n) // nloc % stride) * nloc + np.arange(n) % nloc
    used, compact = np.unique(col_color, return_inverse=True)
    seeds = np.zeros((used.size, n), dtype=np.float64)
    seeds[compact, np.arange(n)] = 1.0

    return ColoredPattern(
        shape=(n, n),
        rows=rows,
        cols=cols,
        colors=compact[cols],
        seeds=jnp.asarray(seeds),
    )


def compressed_jacobian(fun: Callable[[jnp.ndarray], jnp.ndarray], x: jnp.ndarray, seeds: jnp.ndarray) -> jnp.ndarray:
    """Stack of JVPs ``J(x) @ s`` for every seed row ``s``; shape (n_seeds, n_out)."""

    def _col(s: jnp.ndarray) -> jnp.ndarray:
        return jax.jvp(fun, (x,), (s,))[1]

    return jax.vmap(_col)(seeds)
