"""Advance the five-field edge slab and inspect the written snapshots.

This example demonstrates:
  - running the `dg-transport run` command from Python
  - reading the per-cycle HDF5 groups back

Run:
  python examples/2_intermediate/02_edge_plasma_run.py
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np

_REPO_ROOT = Path(__file__).resolve().parents[2]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from dg_transport.cli import main as cli_main
from dg_transport.io import read_snapshots_h5


def main() -> int:
    input_path = Path(__file__).parents[1] / "data" / "edge_plasma.input.namelist"
    out_path = Path(__file__).with_suffix("").parent / "output" / "edge_plasma.h5"

    code = cli_main(["run", "--input", str(input_path), "--out", str(out_path)])
    if code != 0:
        return code

    for snap in read_snapshots_h5(out_path):
        te = snap["fields"]["Electron Temperature"]
        ni = snap["fields"]["Ion Density"]
        print(f"cycle={snap['cycle']:3d} t={snap['time']:.3e}  Te=[{np.min(te):.3f}, {np.max(te):.3f}]  ni_mean={np.mean(ni):.4e}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
