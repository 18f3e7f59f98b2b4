from __future__ import annotations

import numpy as np
import jax
import jax.numpy as jnp
import pytest

from dg_transport.config import DGParams, FieldCoefficients, PlasmaParams, TransportConfig, MeshParams
from dg_transport.dg import uniform_dg_space
from dg_transport.diagnostics import VisFlag
from dg_transport.fields import (
    DummyPhysics,
    EvalContext,
    FieldKind,
    FieldOperator,
    IonDensityPhysics,
    TimeStep,
    make_field_operators,
    make_physics,
)

# Declared couplings dR_i/dk_j of the full physics, row i = field.
DEPENDENCIES = np.array(
    [
        [1, 1, 0, 0, 0],
        [1, 1, 0, 0, 0],
        [0, 1, 1, 1, 1],
        [0, 1, 0, 1, 0],
        [0, 1, 0, 0, 1],
    ],
    dtype=bool,
)


def _state(space, values=(1.0e16, 1.0e18, 1.0e3, 10.0, 20.0)):
    profiles = (
        lambda x: values[0] * (1.0 + 0.1 * x),
        lambda x: values[1] * (1.0 + 0.5 * x),
        lambda x: values[2] * (x - 0.5),
        lambda x: values[3] * (1.0 + x),
        lambda x: values[4] * (1.0 + 0.2 * x),
    )
    return tuple(space.interpolate(f) for f in profiles)


def _config(mask: int = 31) -> TransportConfig:
    return TransportConfig(mesh=MeshParams(n_elements=3), dg=DGParams(order=1), enable_mask=mask)


def test_physics_variants_and_declared_dependencies() -> None:
    plasma = PlasmaParams()
    for i in range(5):
        phys = make_physics(i, plasma)
        assert phys.index == i
        assert phys.kind == FieldKind(i)
        np.testing.assert_array_equal([j in phys.dependencies for j in range(5)], DEPENDENCIES[i])
        dummy = make_physics(i, plasma, enabled=False)
        assert isinstance(dummy, DummyPhysics)
        assert dummy.dependencies == frozenset({i})
    assert isinstance(make_physics(1, plasma), IonDensityPhysics)


def test_time_step_validation() -> None:
    with pytest.raises(ValueError):
        TimeStep(-1.0)
    with pytest.raises(ValueError):
        TimeStep(float("nan"))
    assert TimeStep(0.0).dt == 0.0


@pytest.mark.parametrize("mask", [31, 0b10101, 0])
def test_gradient_block_presence_table(mask: int) -> None:
    cfg = _config(mask)
    space = cfg.build_space()
    ops = make_field_operators(space, cfg)
    y = _state(space)
    k = tuple(jnp.zeros(space.ndof) for _ in range(5))
    ctx = EvalContext(state=y)
    for op in ops:
        op.set_time_step(TimeStep(1e-6))
    for i, op in enumerate(ops):
        present = [op.gradient_block(j, k, ctx) is not None for j in range(5)]
        expected = DEPENDENCIES[i] if cfg.field_enabled(i) else np.eye(5, dtype=bool)[i]
        np.testing.assert_array_equal(present, expected)


def test_dummy_mult_is_mass_times_rate() -> None:
    space = uniform_dg_space(4, order=2)
    op = FieldOperator(DummyPhysics(3), space, dg=DGParams(order=2))
    op.set_time_step(TimeStep(0.25))
    rng = np.random.default_rng(1)
    k = tuple(jnp.asarray(rng.normal(size=space.ndof)) for _ in range(5))
    ctx = EvalContext(state=_state(space))
    r = np.asarray(op.mult(k, ctx))
    np.testing.assert_allclose(r, space.mass_matrix() @ np.asarray(k[3]), rtol=1e-12, atol=1e-14)
    assert op.is_dummy
    assert op.dependencies == frozenset({3})


def test_mult_requires_time_step_and_matching_sizes() -> None:
    space = uniform_dg_space(2, order=1)
    op = FieldOperator(DummyPhysics(0), space, dg=DGParams())
    k = tuple(jnp.zeros(space.ndof) for _ in range(5))
    ctx = EvalContext(state=k)
    with pytest.raises(ValueError):
        op.mult(k, ctx)
    op.set_time_step(TimeStep(1.0))
    with pytest.raises(ValueError):
        op.mult(k[:4], ctx)
    with pytest.raises(ValueError):
        op.mult(k[:4] + (jnp.zeros(space.ndof + 1),), ctx)


def test_gradient_blocks_match_dense_jacobian() -> None:
    cfg = _config()
    space = cfg.build_space()
    ops = make_field_operators(space, cfg)
    y = _state(space)
    ctx = EvalContext(state=y)
    rng = np.random.default_rng(2)
    scales = (1e15, 1e17, 1e2, 1.0, 1.0)
    k = tuple(jnp.asarray(s * rng.normal(size=space.ndof)) for s in scales)
    for op in ops:
        op.set_time_step(TimeStep(1e-7))
    for i, op in enumerate(ops):
        for j in sorted(op.dependencies):

            def r_of_kj(kj, j=j):
                ks = k[:j] + (kj,) + k[j + 1 :]
                return op.mult(ks, ctx)

            dense = np.asarray(jax.jacfwd(r_of_kj)(k[j]))
            blk = op.gradient_block(j, k, ctx).toarray()
            scale = max(float(np.max(np.abs(dense))), 1e-300)
            np.testing.assert_allclose(blk, dense, rtol=1e-10, atol=1e-12 * scale)


def test_time_step_rescaling_is_idempotent_and_reversible() -> None:
    cfg = _config()
    space = cfg.build_space()
    op = make_field_operators(space, cfg)[FieldKind.ELECTRON_TEMPERATURE]
    ctx = EvalContext(state=_state(space))
    k = tuple(jnp.full(space.ndof, 1e-3) for _ in range(5))

    op.set_time_step(TimeStep(1e-6))
    r_once = np.asarray(op.mult(k, ctx))
    b_once = op.gradient_block(4, k, ctx).toarray()
    op.set_time_step(TimeStep(1e-6))
    np.testing.assert_array_equal(np.asarray(op.mult(k, ctx)), r_once)

    op.set_time_step(TimeStep(3e-5))
    assert op.time_step == pytest.approx(3e-5)
    assert not np.allclose(op.gradient_block(4, k, ctx).toarray(), b_once)
    op.set_time_step(TimeStep(1e-6))
    np.testing.assert_allclose(op.gradient_block(4, k, ctx).toarray(), b_once, rtol=1e-14, atol=0.0)


def test_coefficient_overrides_replace_physics_terms() -> None:
    space = uniform_dg_space(2, order=1)
    coeffs = FieldCoefficients(diffusion=0.0, source=lambda x: 2.0 + 0.0 * x)
    op = FieldOperator(make_physics(0, PlasmaParams()), space, dg=DGParams(), coefficients=coeffs)
    op.set_time_step(TimeStep(1.0))
    k = tuple(jnp.zeros(space.ndof) for _ in range(5))
    ctx = EvalContext(state=_state(space))
    # k = 0, no diffusion: residual is minus the source load
    r = np.asarray(op.mult(k, ctx))
    np.testing.assert_allclose(r, -2.0 * np.asarray(space.integrate_test(jnp.ones((2, space.n_quad)))), rtol=1e-12)


def test_diagnostic_names_follow_vis_flags() -> None:
    cfg = _config()
    space = cfg.build_space()
    ops = make_field_operators(space, cfg)
    names = [n for _, n in ops[1].diagnostic_names()]
    assert names == [
        "Ion Density",
        "Ion Density Diffusion Perpendicular",
        "Ion Density Advection Velocity",
        "Ion Density Source",
    ]
    te_names = [n for _, n in ops[4].diagnostic_names(VisFlag.FIELD | VisFlag.ADVECTION | VisFlag.SOURCE)]
    assert te_names == ["Electron Temperature"]

    ctx = EvalContext(state=_state(space))
    k = tuple(jnp.zeros(space.ndof) for _ in range(5))
    fields = ops[1].diagnostic_fields(k, ctx)
    assert set(fields) == set(names)
    np.testing.assert_allclose(fields["Ion Density"], np.asarray(ctx.state[1]))
    np.testing.assert_allclose(fields["Ion Density Advection Velocity"], np.asarray(ctx.state[2]))
    assert np.all(fields["Ion Density Source"] > 0.0)


def test_update_rebinds_to_refined_space() -> None:
    cfg = _config()
    space = cfg.build_space()
    op = make_field_operators(space, cfg)[0]
    op.set_time_step(TimeStep(1e-6))
    fine = space.refined()
    op.update(fine)
    assert op.height == fine.ndof
    assert op.width == 5 * fine.ndof
    assert op.time_step == pytest.approx(1e-6)
    k = tuple(jnp.zeros(fine.ndof) for _ in range(5))
    r = op.mult(k, EvalContext(state=_state(fine)))
    assert r.shape == (fine.ndof,)
