from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import h5py
import numpy as np


def _decode_if_bytes(x: Any) -> Any:
    if isinstance(x, (bytes, np.bytes_)):
        return x.decode("utf-8", errors="replace")
    if isinstance(x, np.ndarray) and x.dtype.kind in {"S", "O"} and x.size == 1:
        return _decode_if_bytes(x.reshape(-1)[0])
    return x


def _to_numpy_for_h5(x: Any) -> Any:
    if isinstance(x, np.ndarray):
        return x
    # JAX arrays
    if hasattr(x, "__array__"):
        return np.asarray(x)
    return x


def _snapshot_group_name(cycle: int) -> str:
    return f"cycle_{int(cycle):06d}"


def write_data_collection_h5(path: str | Path, collection, *, overwrite: bool = True) -> Path:
    """Write a data collection as one HDF5 group per snapshot.

    Layout: root attribute ``name``, dataset ``coordinates`` (nodal x), and groups
    ``cycle_NNNNNN`` carrying ``cycle``/``time`` attributes and one dataset per field.
    """
    path = Path(path).resolve()
    if path.exists() and not overwrite:
        raise FileExistsError(str(path))
    path.parent.mkdir(parents=True, exist_ok=True)

    with h5py.File(path, "w") as f:
        f.attrs["name"] = str(collection.name)
        if collection.coordinates is not None:
            f.create_dataset("coordinates", data=_to_numpy_for_h5(collection.coordinates))
        for snap in collection.snapshots:
            g = f.create_group(_snapshot_group_name(snap.cycle))
            g.attrs["cycle"] = int(snap.cycle)
            g.attrs["time"] = float(snap.time)
            for k, v in snap.fields.items():
                if v is None:
                    continue
                g.create_dataset(k, data=_to_numpy_for_h5(v))
    return path


def read_h5(path: str | Path) -> Dict[str, Any]:
    """Read every dataset of an HDF5 file into a flat ``{path: array}`` dict."""
    path = Path(path).resolve()
    if not path.exists():
        raise FileNotFoundError(str(path))

    out: Dict[str, Any] = {}
    with h5py.File(path, "r") as f:

        def visit(name: str, obj: Any) -> None:
            if isinstance(obj, h5py.Dataset):
                out[name] = _decode_if_bytes(obj[...])

        f.visititems(visit)
    return out


def read_snapshots_h5(path: str | Path) -> List[Dict[str, Any]]:
    """Snapshots of a data-collection file as ``{"cycle", "time", "fields"}`` dicts, by cycle."""
    path = Path(path).resolve()
    if not path.exists():
        raise FileNotFoundError(str(path))

    snaps: List[Dict[str, Any]] = []
    with h5py.File(path, "r") as f:
        for name in sorted(f.keys()):
            obj = f[name]
            if not isinstance(obj, h5py.Group):
                continue
            snaps.append(
                {
                    "cycle": int(obj.attrs["cycle"]),
                    "time": float(obj.attrs["time"]),
                    "fields": {k: np.asarray(obj[k][...]) for k in obj.keys()},
                }
            )
    snaps.sort(key=lambda s: s["cycle"])
    return snaps
