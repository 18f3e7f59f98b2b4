from __future__ import annotations

import io

import pytest

from dg_transport.verbose import Level, Timer, make_emit, scoped


def test_levels_gate_output() -> None:
    buf = io.StringIO()
    emit = make_emit(verbose=Level.SOLVE, stream=buf, prefix="> ")
    emit(Level.NEWTON, "a")
    emit(Level.SOLVE, "b")
    emit(Level.SETUP, "c")
    assert buf.getvalue() == "> a\n> b\n"


def test_verbose_above_trace_prints_everything_and_quiet_prints_nothing() -> None:
    loud = io.StringIO()
    emit = make_emit(verbose=10, stream=loud)
    for level in Level:
        emit(level, level.name)
    assert loud.getvalue().split() == ["NEWTON", "SOLVE", "SETUP", "TRACE"]

    silent = io.StringIO()
    make_emit(verbose=3, quiet=True, stream=silent)(Level.NEWTON, "x")
    assert silent.getvalue() == ""


def test_negative_verbose_raises() -> None:
    with pytest.raises(ValueError):
        make_emit(verbose=-1)


def test_scoped_tags_lines_and_nests() -> None:
    messages: list[tuple[int, str]] = []

    def record(level: int, msg: str) -> None:
        messages.append((level, msg))

    newton = scoped(record, "newton")
    newton(Level.NEWTON, "residual_norm=1")
    scoped(newton, "gmres")(Level.SOLVE, "iters=3")
    assert messages == [(Level.NEWTON, "[newton] residual_norm=1"), (Level.SOLVE, "[newton/gmres] iters=3")]
    assert scoped(None, "newton") is None


def test_timer_is_monotone() -> None:
    t = Timer()
    a = t.elapsed_s()
    assert 0.0 <= a <= t.elapsed_s()
