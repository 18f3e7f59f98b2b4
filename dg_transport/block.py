from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import scipy.sparse as sp


@dataclass(frozen=True, eq=False)
class BlockOperator:
    """Sparse block matrix with ``None`` standing for a structurally zero block.

    Row/column block ``i`` spans ``offsets[i]:offsets[i + 1]``.
    """

    offsets: tuple[int, ...]
    blocks: tuple[tuple[sp.csr_matrix | None, ...], ...]

    def __post_init__(self) -> None:
        nb = len(self.offsets) - 1
        if nb < 1 or int(self.offsets[0]) != 0:
            raise ValueError(f"offsets must start at 0 and define at least one block, got {self.offsets}")
        if len(self.blocks) != nb or any(len(row) != nb for row in self.blocks):
            raise ValueError(f"blocks must be a {nb}x{nb} grid")
        for i, row in enumerate(self.blocks):
            for j, blk in enumerate(row):
                if blk is None:
                    continue
                want = (self.block_size(i), self.block_size(j))
                if blk.shape != want:
                    raise ValueError(f"block ({i}, {j}) has shape {blk.shape}, expected {want}")

    @property
    def n_blocks(self) -> int:
        return len(self.offsets) - 1

    @property
    def shape(self) -> tuple[int, int]:
        n = int(self.offsets[-1])
        return (n, n)

    def block_size(self, i: int) -> int:
        return int(self.offsets[i + 1] - self.offsets[i])

    def block(self, i: int, j: int) -> sp.csr_matrix | None:
        return self.blocks[i][j]

    def is_zero_block(self, i: int, j: int) -> bool:
        return self.blocks[i][j] is None

    def presence(self) -> np.ndarray:
        """Boolean table of non-null blocks."""
        return np.array([[blk is not None for blk in row] for row in self.blocks], dtype=bool)

    def matvec(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64).reshape((-1,))
        if x.shape != (self.shape[1],):
            raise ValueError(f"vector must have shape {(self.shape[1],)}, got {x.shape}")
        out = np.zeros((self.shape[0],), dtype=np.float64)
        o = self.offsets
        for i, row in enumerate(self.blocks):
            for j, blk in enumerate(row):
                if blk is not None:
                    out[o[i] : o[i + 1]] += blk @ x[o[j] : o[j + 1]]
        return out

    __matmul__ = matvec

    def to_csr(self) -> sp.csr_matrix:
        grid = [[None if blk is None else blk for blk in row] for row in self.blocks]
        # empty rows/columns still need their size
        for i in range(self.n_blocks):
            if all(blk is None for blk in grid[i]) or all(grid[r][i] is None for r in range(self.n_blocks)):
                grid[i][i] = sp.csr_matrix((self.block_size(i), self.block_size(i)))
        return sp.bmat(grid, format="csr")


def block_diagonal(offsets: Sequence[int], diag: Sequence[sp.csr_matrix | None]) -> BlockOperator:
    nb = len(offsets) - 1
    blocks = tuple(tuple(diag[i] if i == j else None for j in range(nb)) for i in range(nb))
    return BlockOperator(offsets=tuple(int(o) for o in offsets), blocks=blocks)
