"""Diagnostic side table and the passive data-collection sink.

Exported quantities are selected per field by a `VisFlag` mask. The table is filled only for the
selected subset and never participates in residual or Jacobian evaluation.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence

import numpy as np

from .io import write_data_collection_h5


class VisFlag(enum.IntFlag):
    NONE = 0
    FIELD = 1
    DIFFUSION = 2
    DIFFUSION_PARA = 4
    DIFFUSION_PERP = 8
    ADVECTION = 16
    SOURCE = 32


@dataclass(frozen=True)
class DiagnosticEntry:
    field_index: int
    flag: VisFlag
    name: str


class DiagnosticTable:
    """Maps each field's mask to the list of exported quantities."""

    def __init__(self, vis_flags: Sequence[int]) -> None:
        self.vis_flags = tuple(VisFlag(int(f)) for f in vis_flags)
        self._last: Dict[str, np.ndarray] = {}

    def selected(self, field_index: int) -> VisFlag:
        return self.vis_flags[int(field_index)]

    def entries(self, combined) -> List[DiagnosticEntry]:
        out: List[DiagnosticEntry] = []
        for i, op in enumerate(combined.operators):
            for flag, name in op.diagnostic_names(self.vis_flags[i]):
                out.append(DiagnosticEntry(field_index=i, flag=flag, name=name))
        return out

    def prepare(self, combined, y, t: float = 0.0) -> Dict[str, np.ndarray]:
        """Project the selected coefficients onto nodal arrays for state ``y`` (rate zero)."""
        ctx = combined.context(y, t)
        k = combined.zero_rate_fields()
        fields: Dict[str, np.ndarray] = {}
        for i, op in enumerate(combined.operators):
            if self.vis_flags[i] == VisFlag.NONE:
                continue
            fields.update(op.diagnostic_fields(k, ctx, self.vis_flags[i]))
        self._last = fields
        return fields

    @property
    def last(self) -> Dict[str, np.ndarray]:
        return dict(self._last)


@dataclass
class Snapshot:
    cycle: int
    time: float
    fields: Dict[str, np.ndarray]


@dataclass
class DataCollection:
    """In-memory sink of named nodal fields, one snapshot per output cycle."""

    name: str = "transport"
    coordinates: np.ndarray | None = None
    snapshots: List[Snapshot] = field(default_factory=list)

    def register_fields(self, cycle: int, time: float, fields: Dict[str, np.ndarray]) -> Snapshot:
        snap = Snapshot(cycle=int(cycle), time=float(time), fields={k: np.asarray(v).copy() for k, v in fields.items()})
        self.snapshots.append(snap)
        return snap

    @property
    def field_names(self) -> List[str]:
        names: List[str] = []
        for snap in self.snapshots:
            for k in snap.fields:
                if k not in names:
                    names.append(k)
        return names

    def save(self, path: str | Path) -> Path:
        return write_data_collection_h5(path, self)
