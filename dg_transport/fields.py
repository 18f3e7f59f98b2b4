"""Per-field nonlinear operators of the implicit transport residual.

Every field operator represents

    R_i(k) = sum_j dM_i/dy_j(y1) k_j + A_i(y1; y1_i) - S_i(y1),     y1 = y + dt k,

where ``M_i`` is the conserved quantity of field ``i``, ``A_i`` the DG diffusion/advection form
acting on the field's own ``y1_i`` and ``S_i`` the volumetric source.

The physics of a field is one member of a closed set of frozen dataclasses (`FieldPhysics`);
`DummyPhysics` is the trivial member used for administratively disabled fields. A single
`FieldOperator` class evaluates any member.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Callable, ClassVar, Dict, FrozenSet, List, NamedTuple, Sequence, Tuple, Union

import numpy as np

import jax
import jax.numpy as jnp

from .coefficients import (
    electron_parallel_conductivity,
    field_aligned_tensor,
    ion_parallel_conductivity,
    ion_parallel_viscosity,
    ionization_source,
    neutral_diffusivity,
    neutral_thermal_speed,
    unit_direction,
)
from .config import FIELD_NAMES, N_FIELDS, DGParams, FieldCoefficients, PlasmaParams, TransportConfig
from .constants import AMU, EV
from .dg import BoundaryData, DGSpace
from .diagnostics import VisFlag
from .sparse import ColoredPattern, compressed_jacobian, dg_neighbor_pattern
from .verbose import EmitFn, Level


class FieldKind(enum.IntEnum):
    NEUTRAL_DENSITY = 0
    ION_DENSITY = 1
    ION_PARALLEL_VELOCITY = 2
    ION_TEMPERATURE = 3
    ELECTRON_TEMPERATURE = 4


@dataclass(frozen=True)
class TimeStep:
    """The single time-step value shared by every field operator."""

    dt: float

    def __post_init__(self) -> None:
        dt = float(self.dt)
        if not math.isfinite(dt) or dt < 0.0:
            raise ValueError(f"time step must be finite and non-negative, got {self.dt}")


@dataclass(frozen=True)
class EvalContext:
    """Explicit evaluation context: the per-field state and the current time."""

    state: Tuple[jnp.ndarray, ...]
    time: float = 0.0


class PointValues(NamedTuple):
    """All five fields and their x-derivatives at one point set."""

    u: Tuple[jnp.ndarray, ...]
    du: Tuple[jnp.ndarray, ...]
    x: jnp.ndarray
    b: jnp.ndarray  # (..., 3) unit field direction
    at: str  # "quad", "face" or "nodes"


def _electron_density(plasma: PlasmaParams, u: Sequence[jnp.ndarray]) -> jnp.ndarray:
    return float(plasma.ion_charge) * u[FieldKind.ION_DENSITY]


# ----------------------------------------------------------------------------
# Physics variants
# ----------------------------------------------------------------------------


@dataclass(frozen=True)
class NeutralDensityPhysics:
    plasma: PlasmaParams
    kind: ClassVar[FieldKind] = FieldKind.NEUTRAL_DENSITY
    dependencies: ClassVar[FrozenSet[int]] = frozenset({0, 1})
    default_vis: ClassVar[VisFlag] = VisFlag.FIELD | VisFlag.DIFFUSION | VisFlag.SOURCE

    @property
    def index(self) -> int:
        return int(self.kind)

    def mass(self, u):
        return u[0]

    def diffusion(self, p: PointValues):
        pl = self.plasma
        d = neutral_diffusivity(
            _electron_density(pl, p.u),
            p.u[FieldKind.ELECTRON_TEMPERATURE],
            thermal_speed=neutral_thermal_speed(pl.neutral_temp, pl.neutral_mass),
            density_floor=pl.density_floor,
            temperature_floor=pl.temperature_floor,
        )
        return d, d

    def advection(self, p: PointValues):
        return None

    def source(self, p: PointValues):
        pl = self.plasma
        s_iz = ionization_source(
            _electron_density(pl, p.u),
            p.u[FieldKind.NEUTRAL_DENSITY],
            p.u[FieldKind.ELECTRON_TEMPERATURE],
            temperature_floor=pl.temperature_floor,
        )
        return -s_iz


@dataclass(frozen=True)
class IonDensityPhysics:
    plasma: PlasmaParams
    kind: ClassVar[FieldKind] = FieldKind.ION_DENSITY
    dependencies: ClassVar[FrozenSet[int]] = frozenset({0, 1})
    default_vis: ClassVar[VisFlag] = VisFlag.FIELD | VisFlag.DIFFUSION_PERP | VisFlag.ADVECTION | VisFlag.SOURCE

    @property
    def index(self) -> int:
        return int(self.kind)

    def mass(self, u):
        return u[1]

    def diffusion(self, p: PointValues):
        d_perp = jnp.full_like(p.u[1], float(self.plasma.di_perp))
        return jnp.zeros_like(d_perp), d_perp

    def advection(self, p: PointValues):
        return p.u[FieldKind.ION_PARALLEL_VELOCITY][..., None] * p.b

    def source(self, p: PointValues):
        pl = self.plasma
        return ionization_source(
            _electron_density(pl, p.u),
            p.u[FieldKind.NEUTRAL_DENSITY],
            p.u[FieldKind.ELECTRON_TEMPERATURE],
            temperature_floor=pl.temperature_floor,
        )


@dataclass(frozen=True)
class IonMomentumPhysics:
    plasma: PlasmaParams
    kind: ClassVar[FieldKind] = FieldKind.ION_PARALLEL_VELOCITY
    dependencies: ClassVar[FrozenSet[int]] = frozenset({1, 2, 3, 4})
    default_vis: ClassVar[VisFlag] = (
        VisFlag.FIELD | VisFlag.DIFFUSION_PARA | VisFlag.DIFFUSION_PERP | VisFlag.ADVECTION | VisFlag.SOURCE
    )

    @property
    def index(self) -> int:
        return int(self.kind)

    @property
    def ion_mass_kg(self) -> float:
        return float(self.plasma.ion_mass) * AMU

    def mass(self, u):
        return self.ion_mass_kg * u[1] * u[2]

    def diffusion(self, p: PointValues):
        pl = self.plasma
        eta_para = ion_parallel_viscosity(
            p.u[FieldKind.ION_TEMPERATURE],
            p.u[FieldKind.ION_DENSITY],
            ion_charge=pl.ion_charge,
            ion_mass=pl.ion_mass,
            coulomb_log=pl.coulomb_log,
            density_floor=pl.density_floor,
            temperature_floor=pl.temperature_floor,
        )
        eta_perp = float(pl.di_perp) * self.ion_mass_kg * p.u[FieldKind.ION_DENSITY]
        return eta_para, eta_perp

    def advection(self, p: PointValues):
        flux = self.ion_mass_kg * p.u[FieldKind.ION_DENSITY] * p.u[FieldKind.ION_PARALLEL_VELOCITY]
        return flux[..., None] * p.b

    def source(self, p: PointValues):
        z = float(self.plasma.ion_charge)
        ni, ti, te = p.u[1], p.u[3], p.u[4]
        dni, dti, dte = p.du[1], p.du[3], p.du[4]
        dp_dx = EV * (dni * ti + ni * dti + z * (dni * te + ni * dte))
        return -p.b[..., 0] * dp_dx


@dataclass(frozen=True)
class IonTemperaturePhysics:
    plasma: PlasmaParams
    kind: ClassVar[FieldKind] = FieldKind.ION_TEMPERATURE
    dependencies: ClassVar[FrozenSet[int]] = frozenset({1, 3})
    default_vis: ClassVar[VisFlag] = VisFlag.FIELD | VisFlag.DIFFUSION_PARA | VisFlag.DIFFUSION_PERP

    @property
    def index(self) -> int:
        return int(self.kind)

    def mass(self, u):
        return 1.5 * u[1] * u[3]

    def diffusion(self, p: PointValues):
        pl = self.plasma
        ni = p.u[FieldKind.ION_DENSITY]
        para = ion_parallel_conductivity(
            p.u[FieldKind.ION_TEMPERATURE],
            ni,
            ion_charge=pl.ion_charge,
            ion_mass=pl.ion_mass,
            coulomb_log=pl.coulomb_log,
            density_floor=pl.density_floor,
            temperature_floor=pl.temperature_floor,
        )
        return para, float(pl.xi_perp) * ni

    def advection(self, p: PointValues):
        return None

    def source(self, p: PointValues):
        return None


@dataclass(frozen=True)
class ElectronTemperaturePhysics:
    plasma: PlasmaParams
    kind: ClassVar[FieldKind] = FieldKind.ELECTRON_TEMPERATURE
    dependencies: ClassVar[FrozenSet[int]] = frozenset({1, 4})
    default_vis: ClassVar[VisFlag] = VisFlag.FIELD | VisFlag.DIFFUSION_PARA | VisFlag.DIFFUSION_PERP

    @property
    def index(self) -> int:
        return int(self.kind)

    def mass(self, u):
        return 1.5 * float(self.plasma.ion_charge) * u[1] * u[4]

    def diffusion(self, p: PointValues):
        pl = self.plasma
        ne = _electron_density(pl, p.u)
        para = electron_parallel_conductivity(
            p.u[FieldKind.ELECTRON_TEMPERATURE],
            ne,
            ion_charge=pl.ion_charge,
            coulomb_log=pl.coulomb_log,
            density_floor=pl.density_floor,
            temperature_floor=pl.temperature_floor,
        )
        return para, float(pl.xe_perp) * ne

    def advection(self, p: PointValues):
        return None

    def source(self, p: PointValues):
        return None


@dataclass(frozen=True)
class DummyPhysics:
    """Identity mass on its own unknown; no other terms and no cross-field dependencies."""

    field_index: int
    default_vis: ClassVar[VisFlag] = VisFlag.FIELD

    @property
    def kind(self) -> FieldKind:
        return FieldKind(int(self.field_index))

    @property
    def index(self) -> int:
        return int(self.field_index)

    @property
    def dependencies(self) -> FrozenSet[int]:
        return frozenset({int(self.field_index)})

    def mass(self, u):
        return u[self.field_index]

    def diffusion(self, p: PointValues):
        return None

    def advection(self, p: PointValues):
        return None

    def source(self, p: PointValues):
        return None


FieldPhysics = Union[
    NeutralDensityPhysics,
    IonDensityPhysics,
    IonMomentumPhysics,
    IonTemperaturePhysics,
    ElectronTemperaturePhysics,
    DummyPhysics,
]

_PHYSICS_BY_KIND = {
    FieldKind.NEUTRAL_DENSITY: NeutralDensityPhysics,
    FieldKind.ION_DENSITY: IonDensityPhysics,
    FieldKind.ION_PARALLEL_VELOCITY: IonMomentumPhysics,
    FieldKind.ION_TEMPERATURE: IonTemperaturePhysics,
    FieldKind.ELECTRON_TEMPERATURE: ElectronTemperaturePhysics,
}


def make_physics(index: int, plasma: PlasmaParams, *, enabled: bool = True) -> FieldPhysics:
    kind = FieldKind(int(index))
    if not enabled:
        return DummyPhysics(field_index=int(kind))
    return _PHYSICS_BY_KIND[kind](plasma=plasma)


# ----------------------------------------------------------------------------
# Field operator
# ----------------------------------------------------------------------------


DirectionField = Union[Sequence[float], Callable[[np.ndarray], np.ndarray]]


def _direction_at(b_hat: DirectionField, x: np.ndarray) -> jnp.ndarray:
    x = np.asarray(x, dtype=np.float64)
    if callable(b_hat):
        b = np.asarray(b_hat(x), dtype=np.float64)
    else:
        b = np.broadcast_to(np.asarray(b_hat, dtype=np.float64), x.shape + (3,))
    if b.shape != x.shape + (3,):
        raise ValueError(f"field direction must evaluate to shape {x.shape + (3,)}, got {b.shape}")
    return unit_direction(jnp.asarray(b))


def _override_at(value, x: np.ndarray) -> jnp.ndarray | None:
    if value is None:
        return None
    x = np.asarray(x, dtype=np.float64)
    if callable(value):
        return jnp.asarray(np.broadcast_to(np.asarray(value(x), dtype=np.float64), x.shape))
    return jnp.full(x.shape, float(value), dtype=jnp.float64)


class FieldOperator:
    """Residual and Jacobian blocks of one field on a DG space."""

    def __init__(
        self,
        physics: FieldPhysics,
        space: DGSpace,
        *,
        dg: DGParams,
        coefficients: FieldCoefficients | None = None,
        b_hat: DirectionField = (1.0, 0.0, 0.0),
        vis_flag: int | None = None,
        emit: EmitFn | None = None,
    ) -> None:
        self.physics = physics
        self.index = int(physics.index)
        self.name = FIELD_NAMES[self.index]
        self.dg = dg
        self.coefficients = coefficients if coefficients is not None else FieldCoefficients()
        self.b_hat = b_hat
        self.vis_flag = VisFlag(int(vis_flag)) if vis_flag is not None else physics.default_vis
        self._emit = emit
        self._step: TimeStep | None = None
        self._bind_space(space)

    # -- structure ---------------------------------------------------------

    @property
    def kind(self) -> FieldKind:
        return self.physics.kind

    @property
    def is_dummy(self) -> bool:
        return isinstance(self.physics, DummyPhysics)

    @property
    def dependencies(self) -> FrozenSet[int]:
        return frozenset(self.physics.dependencies)

    @property
    def height(self) -> int:
        return self.space.ndof

    @property
    def width(self) -> int:
        return N_FIELDS * self.space.ndof

    @property
    def pattern(self) -> ColoredPattern:
        return self._pattern

    @property
    def time_step(self) -> float | None:
        return None if self._step is None else float(self._step.dt)

    def _bind_space(self, space: DGSpace) -> None:
        self.space = space
        points = {"quad": np.asarray(space.x_quad), "face": np.asarray(space.x_face), "nodes": np.asarray(space.x_nodes)}
        self._b = {k: _direction_at(self.b_hat, x) for k, x in points.items()}
        c = self.coefficients
        self._overrides: Dict[str, Dict[str, jnp.ndarray | None]] = {
            k: {
                "diffusion": _override_at(c.diffusion, x),
                "advection": _override_at(c.advection, x),
                "source": _override_at(c.source, x),
            }
            for k, x in points.items()
        }
        self._boundary = self._boundary_data(space)
        self._pattern = dg_neighbor_pattern(space.n_elements, space.nloc)
        self._block_kernels: Dict[int, Callable] = {}
        self._residual_jit = jax.jit(self._residual)

    def _boundary_data(self, space: DGSpace) -> Tuple[BoundaryData, ...]:
        out: List[BoundaryData] = []
        for kind, bcs in (("dirichlet", self.coefficients.dirichlet), ("neumann", self.coefficients.neumann)):
            for bc in bcs:
                for attr in bc.resolved_attrs():
                    if any(b.attribute == attr for b in out):
                        continue
                    out.append(BoundaryData(attribute=attr, kind=kind, value=bc.value_at(space.boundary_point(attr))))
        return tuple(out)

    def set_time_step(self, step: TimeStep) -> None:
        if not isinstance(step, TimeStep):
            step = TimeStep(float(step))
        if self._emit is not None:
            self._emit(Level.SETUP, f"Setting time step: {float(step.dt):.6e} in {self.name}{' (dummy)' if self.is_dummy else ''}")
        self._step = step

    def update(self, space: DGSpace | None = None) -> None:
        """Adopt a new (or the same) space and drop every cached kernel."""
        self._bind_space(self.space if space is None else space)
        if self._emit is not None:
            self._emit(Level.SETUP, f"{self.name}: update height={self.height}")

    # -- evaluation --------------------------------------------------------

    def _points(self, u, du, at: str) -> PointValues:
        x = {"quad": self.space.x_quad, "face": self.space.x_face, "nodes": self.space.x_nodes}[at]
        return PointValues(u=tuple(u), du=tuple(du), x=x, b=self._b[at], at=at)

    def _diffusion_parts(self, p: PointValues):
        if self.is_dummy:
            return None
        override = self._overrides[p.at]["diffusion"]
        if override is not None:
            return override, override
        return self.physics.diffusion(p)

    def _diffusion_xx(self, p: PointValues):
        parts = self._diffusion_parts(p)
        if parts is None:
            return None
        para, perp = parts
        return field_aligned_tensor(p.b, para, perp)[..., 0, 0]

    def _advection_x(self, p: PointValues):
        if self.is_dummy:
            return None
        override = self._overrides[p.at]["advection"]
        if override is not None:
            return override
        v = self.physics.advection(p)
        return None if v is None else v[..., 0]

    def _source(self, p: PointValues):
        if self.is_dummy:
            return None
        override = self._overrides[p.at]["source"]
        if override is not None:
            return override
        return self.physics.source(p)

    def _residual(self, k_fields, y_fields, dt):
        sp = self.space
        y1 = tuple(y + dt * k for y, k in zip(y_fields, k_fields))
        traces = tuple(sp.trace(u) for u in y1)
        pq = self._points((t.q for t in traces), (t.dq for t in traces), "quad")
        k_q = tuple(sp.quad_values(k) for k in k_fields)

        _, mdot = jax.jvp(self.physics.mass, (pq.u,), (k_q,))
        r = sp.integrate_test(mdot)
        if self.is_dummy:
            return r

        own = traces[self.index]
        pf = self._points((t.f for t in traces), (t.df for t in traces), "face")

        k_q_diff = self._diffusion_xx(pq)
        if k_q_diff is not None:
            r = r + sp.integrate_test_grad(k_q_diff * own.dq)
            r = r + sp.diffusion_faces(
                self._diffusion_xx(pf),
                own,
                sigma=float(self.dg.sigma),
                kappa=self.dg.penalty,
                boundary=self._boundary,
            )

        v_q = self._advection_x(pq)
        if v_q is not None:
            r = r - sp.integrate_test_grad(v_q * own.q)
            r = r + sp.advection_faces(self._advection_x(pf), own, boundary=self._boundary)

        s_q = self._source(pq)
        if s_q is not None:
            r = r - sp.integrate_test(s_q)

        if any(b.kind == "neumann" for b in self._boundary):
            r = r + sp.neumann_faces(self._boundary, own.f)
        return r

    def _check_fields(self, fields, what: str) -> Tuple[jnp.ndarray, ...]:
        fields = tuple(fields)
        if len(fields) != N_FIELDS:
            raise ValueError(f"{self.name}: expected {N_FIELDS} {what} fields, got {len(fields)}")
        out = []
        for i, f in enumerate(fields):
            f = jnp.asarray(f, dtype=jnp.float64)
            if f.shape != (self.height,):
                raise ValueError(f"{self.name}: {what} field {i} must have shape {(self.height,)}, got {f.shape}")
            out.append(f)
        return tuple(out)

    def _require_step(self) -> float:
        if self._step is None:
            raise ValueError(f"{self.name}: set_time_step must be called before evaluation")
        return float(self._step.dt)

    def mult(self, k: Sequence[jnp.ndarray], ctx: EvalContext) -> jnp.ndarray:
        """Residual segment of this field for the per-field rates ``k``."""
        dt = self._require_step()
        if self._emit is not None:
            self._emit(Level.TRACE, f"{self.name}: mult")
        return self._residual_jit(self._check_fields(k, "rate"), self._check_fields(ctx.state, "state"), dt)

    def _block_kernel(self, j: int) -> Callable:
        kernel = self._block_kernels.get(j)
        if kernel is not None:
            return kernel

        def _kernel(k_fields, y_fields, dt, seeds):
            def _r_of_kj(kj):
                ks = k_fields[:j] + (kj,) + k_fields[j + 1 :]
                return self._residual(ks, y_fields, dt)

            return compressed_jacobian(_r_of_kj, k_fields[j], seeds)

        kernel = jax.jit(_kernel)
        self._block_kernels[j] = kernel
        return kernel

    def gradient_block(self, j: int, k: Sequence[jnp.ndarray], ctx: EvalContext):
        """``dR_i/dk_j`` as CSR, or ``None`` when no dependency on field ``j`` is declared."""
        j = int(j)
        if j not in self.dependencies:
            return None
        dt = self._require_step()
        kf = self._check_fields(k, "rate")
        yf = self._check_fields(ctx.state, "state")
        compressed = self._block_kernel(j)(kf, yf, dt, self._pattern.seeds)
        return self._pattern.to_csr(np.asarray(compressed))

    # -- diagnostics -------------------------------------------------------

    def diagnostic_names(self, flags: int | None = None) -> List[Tuple[VisFlag, str]]:
        flags = self.vis_flag if flags is None else VisFlag(int(flags))
        names: List[Tuple[VisFlag, str]] = []
        if VisFlag.FIELD in flags:
            names.append((VisFlag.FIELD, self.name))
        if self.is_dummy:
            return names
        if VisFlag.DIFFUSION in flags:
            names.append((VisFlag.DIFFUSION, f"{self.name} Diffusion Coefficient"))
        if VisFlag.DIFFUSION_PARA in flags:
            names.append((VisFlag.DIFFUSION_PARA, f"{self.name} Diffusion Parallel"))
        if VisFlag.DIFFUSION_PERP in flags:
            names.append((VisFlag.DIFFUSION_PERP, f"{self.name} Diffusion Perpendicular"))
        # quantities a physics never produces are exported only when overridden
        native = self.physics.default_vis
        has_adv = VisFlag.ADVECTION in native or self.coefficients.advection is not None
        has_src = VisFlag.SOURCE in native or self.coefficients.source is not None
        if VisFlag.ADVECTION in flags and has_adv:
            names.append((VisFlag.ADVECTION, f"{self.name} Advection Velocity"))
        if VisFlag.SOURCE in flags and has_src:
            names.append((VisFlag.SOURCE, f"{self.name} Source"))
        return names

    def diagnostic_fields(self, k: Sequence[jnp.ndarray], ctx: EvalContext, flags: int | None = None) -> Dict[str, np.ndarray]:
        """Nodal values of the selected quantities at ``y + dt k`` (``dt = 0`` before any step)."""
        kf = self._check_fields(k, "rate")
        yf = self._check_fields(ctx.state, "state")
        dt = 0.0 if self._step is None else float(self._step.dt)
        y1 = tuple(y + dt * kk for y, kk in zip(yf, kf))
        nodal = [self.space.node_values(u) for u in y1]
        p = self._points((v for v, _ in nodal), (d for _, d in nodal), "nodes")

        out: Dict[str, np.ndarray] = {}
        parts = self._diffusion_parts(p)
        for flag, name in self.diagnostic_names(flags):
            if flag == VisFlag.FIELD:
                value = nodal[self.index][0]
            elif flag == VisFlag.DIFFUSION:
                value = self._diffusion_xx(p)
            elif flag == VisFlag.DIFFUSION_PARA:
                value = None if parts is None else parts[0]
            elif flag == VisFlag.DIFFUSION_PERP:
                value = None if parts is None else parts[1]
            elif flag == VisFlag.ADVECTION:
                value = self._advection_x(p)
            else:
                value = self._source(p)
            if value is None:
                continue
            out[name] = np.broadcast_to(np.asarray(value, dtype=np.float64), (self.space.n_elements, self.space.nloc)).reshape(-1).copy()
        return out


def make_field_operators(
    space: DGSpace,
    config: TransportConfig,
    *,
    emit: EmitFn | None = None,
) -> Tuple[FieldOperator, ...]:
    """Build the five operators in fixed order, substituting dummies per the enable mask."""
    ops = []
    for i in range(N_FIELDS):
        physics = make_physics(i, config.plasma, enabled=config.field_enabled(i))
        ops.append(
            FieldOperator(
                physics,
                space,
                dg=config.dg,
                coefficients=config.coefficients[i],
                b_hat=config.plasma.b_hat,
                vis_flag=config.vis_flags[i],
                emit=emit,
            )
        )
        if emit is not None:
            emit(Level.SETUP, f"field {i}: {ops[-1].name}{' (dummy)' if ops[-1].is_dummy else ''}")
    return tuple(ops)
