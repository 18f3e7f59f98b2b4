from __future__ import annotations

from pathlib import Path

import numpy as np
import jax.numpy as jnp
import pytest

from dg_transport.config import (
    BoundaryCondition,
    DGParams,
    FieldCoefficients,
    MeshParams,
    SolverParams,
    TransportConfig,
    read_transport_config,
)
from dg_transport.transport import TransportOperator, check_physical_state


def _steady_diffusion_config(**solver_kw) -> TransportConfig:
    nn = FieldCoefficients(
        diffusion=1.0,
        source=1.0,
        dirichlet=(BoundaryCondition(attrs=(1,), value=0.0),),
    )
    coeffs = (nn,) + tuple(FieldCoefficients() for _ in range(4))
    return TransportConfig(
        mesh=MeshParams(n_elements=2, x_min=0.0, x_max=1.0),
        dg=DGParams(order=2),
        solver=SolverParams(newton_rel_tol=1e-10, **solver_kw),
        enable_mask=0b00001,
        coefficients=coeffs,
        initial=(0.0, 1.0e18, 0.0, 10.0, 10.0),
    )


def test_single_field_diffusion_reaches_quadratic_steady_state() -> None:
    cfg = _steady_diffusion_config()
    space = cfg.build_space()
    op = TransportOperator(space, cfg)
    y = op.initial_state()
    dt = 1.0e8

    k = op.implicit_solve(dt, y)
    result = op.last_result
    assert result is not None and result.converged
    assert result.residual_norm <= 1e-10 * result.initial_residual_norm

    u = np.asarray(op.combined.split(y + dt * k)[0])
    assert space.evaluate(u, 0.5)[0] == pytest.approx(0.375, rel=1e-6)
    xs = np.linspace(0.0, 1.0, 11)
    np.testing.assert_allclose(space.evaluate(u, xs), xs * (2.0 - xs) / 2.0, atol=1e-6)


def test_disabled_fields_keep_their_state() -> None:
    cfg = _steady_diffusion_config()
    op = TransportOperator(cfg.build_space(), cfg)
    y = op.initial_state()
    k = op.implicit_solve(1.0e-3, y)
    kf = op.combined.split(k)
    for i in range(1, 5):
        np.testing.assert_allclose(np.asarray(kf[i]), 0.0, atol=1e-12)
    y_new = op.combined.split(y + 1.0e-3 * k)
    for i in range(1, 5):
        np.testing.assert_allclose(np.asarray(y_new[i]), np.asarray(op.combined.split(y)[i]))


def test_rate_out_is_filled_in_place() -> None:
    cfg = _steady_diffusion_config()
    op = TransportOperator(cfg.build_space(), cfg)
    y = op.initial_state()
    out = np.zeros(op.height)
    k = op.implicit_solve(1.0e8, y, rate_out=out)
    np.testing.assert_array_equal(out, np.asarray(k))


def test_wrong_sized_rate_out_is_rejected_before_solving() -> None:
    cfg = _steady_diffusion_config()
    op = TransportOperator(cfg.build_space(), cfg)
    y = op.initial_state()
    with pytest.raises(ValueError, match="rate_out"):
        op.implicit_solve(1.0e8, y, rate_out=np.zeros(op.height + 1))
    assert op.last_result is None
    assert op.combined.time_step is None


def test_component_messages_are_tagged() -> None:
    cfg = _steady_diffusion_config()
    messages: list[tuple[int, str]] = []
    op = TransportOperator(cfg.build_space(), cfg, emit=lambda level, msg: messages.append((level, msg)))
    op.implicit_solve(1.0e8, op.initial_state())
    assert any(msg.startswith("[newton] newton_iter=0: residual_norm=") for _, msg in messages)
    assert any(msg.startswith("[combined] dt=") for _, msg in messages)
    assert any(msg.startswith("implicit_solve: dt=") for _, msg in messages)


def test_reference_namelist_reproduces_steady_state() -> None:
    cfg = read_transport_config(Path(__file__).parent / "ref" / "steady_diffusion.input.namelist")
    space = cfg.build_space()
    op = TransportOperator(space, cfg)
    y = op.initial_state()
    k = op.implicit_solve(cfg.time.dt, y)
    u = np.asarray(op.combined.split(y + cfg.time.dt * k)[0])
    assert space.evaluate(u, 0.5)[0] == pytest.approx(0.375, rel=1e-6)


def test_physical_state_check_reports_negative_values(monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = _steady_diffusion_config()
    space = cfg.build_space()
    good = tuple(space.interpolate(v) for v in (1e16, 1e18, -5.0, 10.0, 10.0))
    assert check_physical_state(space, good)

    bad = good[:3] + (space.interpolate(lambda x: x - 0.5),) + good[4:]
    messages: list[tuple[int, str]] = []
    assert not check_physical_state(space, bad, lambda level, msg: messages.append((level, msg)))
    assert messages and all(level == 0 for level, _ in messages)
    assert any("Ion Temperature" in msg for _, msg in messages)

    monkeypatch.setenv("DG_TRANSPORT_CHECK_STATE", "1")
    op = TransportOperator(space, cfg, emit=lambda level, msg: messages.append((level, msg)))
    assert op.check_state
    messages.clear()
    y = op.combined.join(bad)
    op.implicit_solve(1.0, y)
    assert any("invalid state" in msg for _, msg in messages)


def test_jacobian_refresh_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DG_TRANSPORT_JACOBIAN_REFRESH", "0")
    cfg = _steady_diffusion_config()
    op = TransportOperator(cfg.build_space(), cfg)
    assert op.jacobian_refresh == 0


def test_update_to_refined_space_keeps_solving() -> None:
    cfg = _steady_diffusion_config()
    space = cfg.build_space()
    op = TransportOperator(space, cfg)
    fine = space.refined()
    op.update(fine)
    assert op.height == 5 * fine.ndof
    y = op.combined.join([fine.interpolate(v) for v in cfg.initial])
    k = op.implicit_solve(1.0e8, y)
    u = np.asarray(op.combined.split(y + 1.0e8 * k)[0])
    assert fine.evaluate(u, 0.5)[0] == pytest.approx(0.375, rel=1e-6)
    assert isinstance(k, jnp.ndarray)
