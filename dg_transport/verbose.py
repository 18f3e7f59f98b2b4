from __future__ import annotations

from collections.abc import Callable
from enum import IntEnum
import sys
import time
from typing import TextIO


EmitFn = Callable[[int, str], None]


class Level(IntEnum):
    """Verbosity levels understood by every emitter in the solver stack."""

    NEWTON = 0  # Newton residual history, failures, invalid states
    SOLVE = 1  # per-solve summaries: GMRES counts, Jacobian rebuilds, dt changes
    SETUP = 2  # operator/preconditioner construction, line-search steps
    TRACE = 3  # every residual evaluation


def make_emit(*, verbose: int = 0, quiet: bool = False, stream: TextIO | None = None, prefix: str = "") -> EmitFn:
    """Create the leveled printer passed through the solver stack.

    Parameters
    ----------
    verbose:
      Print messages with `level <= verbose`. Values above `Level.TRACE` print everything.
    quiet:
      Suppress all messages.
    stream:
      Destination stream (default: stdout).
    prefix:
      Optional line prefix, e.g. a rank tag.
    """
    if int(verbose) < 0:
        raise ValueError(f"verbose must be >= 0, got {verbose}")
    if stream is None:
        stream = sys.stdout

    v = min(int(verbose), int(Level.TRACE))
    q = bool(quiet)
    p = str(prefix)

    def emit(level: int, msg: str) -> None:
        if q:
            return
        if v >= int(level):
            print(f"{p}{msg}", file=stream, flush=True)

    return emit


def scoped(emit: EmitFn | None, name: str) -> EmitFn | None:
    """Child emitter tagging each line with ``[name]``; nested scopes read ``[outer/inner]``."""
    if emit is None:
        return None
    tag = str(name)
    parent = getattr(emit, "scope", None)
    if parent is not None:
        tag = f"{parent}/{tag}"
        emit = emit.base  # type: ignore[attr-defined]

    def child(level: int, msg: str) -> None:
        emit(level, f"[{tag}] {msg}")

    child.scope = tag  # type: ignore[attr-defined]
    child.base = emit  # type: ignore[attr-defined]
    return child


class Timer:
    """Elapsed wall time since construction."""

    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    def elapsed_s(self) -> float:
        return float(time.perf_counter() - self._t0)
