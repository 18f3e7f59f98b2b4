"""Run configuration: frozen parameter dataclasses and their namelist reader."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Tuple, Union

import numpy as np

from .dg import DGSpace, resolve_boundary_attributes, uniform_dg_space
from .namelist import Namelist, read_transport_input

N_FIELDS = 5
FIELD_PREFIXES = ("nn", "ni", "vi", "Ti", "Te")
FIELD_NAMES = (
    "Neutral Density",
    "Ion Density",
    "Ion Parallel Velocity",
    "Ion Temperature",
    "Electron Temperature",
)
ALL_FIELDS_MASK = (1 << N_FIELDS) - 1

CoefficientValue = Union[float, Callable[[np.ndarray], np.ndarray]]


@dataclass(frozen=True)
class DGParams:
    """Interior-penalty parameters and polynomial order.

    ``sigma = -1`` gives the symmetric (SIPG) form, ``+1`` the non-symmetric one. ``kappa``
    defaults to ``(order + 1)**2``.
    """

    order: int = 1
    sigma: float = -1.0
    kappa: float | None = None
    n_quad: int | None = None

    @property
    def penalty(self) -> float:
        if self.kappa is None or float(self.kappa) < 0.0:
            return float((int(self.order) + 1) ** 2)
        return float(self.kappa)


@dataclass(frozen=True)
class MeshParams:
    n_elements: int = 8
    x_min: float = 0.0
    x_max: float = 1.0


@dataclass(frozen=True)
class PlasmaParams:
    """Species data (masses in amu, temperatures in eV) and transport constants."""

    ion_charge: float = 1.0
    ion_mass: float = 2.0
    neutral_mass: float = 2.0
    neutral_temp: float = 3.0
    coulomb_log: float = 17.0
    di_perp: float = 1.0
    xi_perp: float = 1.0
    xe_perp: float = 1.0
    b_hat: Union[Tuple[float, float, float], Callable[[np.ndarray], np.ndarray]] = (1.0, 0.0, 0.0)
    density_floor: float = 1.0e6
    temperature_floor: float = 1.0e-3


@dataclass(frozen=True)
class SolverParams:
    newton_rel_tol: float = 1e-8
    newton_abs_tol: float = 0.0
    newton_max_iter: int = 10
    newton_max_backtracks: int = 8
    krylov_rel_tol: float | None = None
    krylov_abs_tol: float = 0.0
    krylov_max_iter: int = 300
    krylov_restart: int = 50
    jacobian_refresh: int = 1
    amg_strength: float = 0.0
    check_physical_state: bool = False

    @property
    def krylov_tol(self) -> float:
        """Linear tolerance; two orders tighter than Newton unless set explicitly."""
        if self.krylov_rel_tol is None:
            return float(self.newton_rel_tol) * 1e-2
        return float(self.krylov_rel_tol)


@dataclass(frozen=True)
class TimeParams:
    dt: float = 1e-6
    t_final: float = 1e-5
    ode_solver: str = "backward_euler"


@dataclass(frozen=True)
class OutputParams:
    file: str | None = None
    cadence: int = 1


@dataclass(frozen=True)
class BoundaryCondition:
    """A boundary value on a set of attributes; ``-1`` in ``attrs`` means every boundary."""

    attrs: Tuple[int, ...]
    value: CoefficientValue = 0.0

    def resolved_attrs(self) -> Tuple[int, ...]:
        return resolve_boundary_attributes(self.attrs)

    def value_at(self, x: float) -> float:
        if callable(self.value):
            return float(np.asarray(self.value(np.asarray([x], dtype=np.float64))).reshape(-1)[0])
        return float(self.value)


@dataclass(frozen=True)
class FieldCoefficients:
    """Per-field overrides of the physics coefficients and the boundary data.

    ``diffusion``/``advection``/``source`` replace the corresponding physics term when given.
    Values are constants or callables of x.
    """

    diffusion: CoefficientValue | None = None
    advection: CoefficientValue | None = None
    source: CoefficientValue | None = None
    dirichlet: Tuple[BoundaryCondition, ...] = ()
    neumann: Tuple[BoundaryCondition, ...] = ()

    def __post_init__(self) -> None:
        d = {a for bc in self.dirichlet for a in bc.resolved_attrs()}
        n = {a for bc in self.neumann for a in bc.resolved_attrs()}
        both = sorted(d & n)
        if both:
            raise ValueError(f"Boundary attributes {both} carry both Dirichlet and Neumann conditions")


def _default_coefficients() -> Tuple[FieldCoefficients, ...]:
    return tuple(FieldCoefficients() for _ in range(N_FIELDS))


@dataclass(frozen=True)
class TransportConfig:
    mesh: MeshParams = field(default_factory=MeshParams)
    dg: DGParams = field(default_factory=DGParams)
    plasma: PlasmaParams = field(default_factory=PlasmaParams)
    solver: SolverParams = field(default_factory=SolverParams)
    time: TimeParams = field(default_factory=TimeParams)
    output: OutputParams = field(default_factory=OutputParams)
    enable_mask: int = ALL_FIELDS_MASK
    vis_flags: Tuple[int | None, ...] = (None,) * N_FIELDS
    coefficients: Tuple[FieldCoefficients, ...] = field(default_factory=_default_coefficients)
    initial: Tuple[CoefficientValue, ...] = (1.0e17, 1.0e18, 0.0, 10.0, 10.0)

    def __post_init__(self) -> None:
        mask = int(self.enable_mask)
        if mask < 0 or mask > ALL_FIELDS_MASK:
            raise ValueError(f"enable_mask must be in [0, {ALL_FIELDS_MASK}], got {mask}")
        for name in ("vis_flags", "coefficients", "initial"):
            if len(getattr(self, name)) != N_FIELDS:
                raise ValueError(f"{name} must have {N_FIELDS} entries")

    def field_enabled(self, index: int) -> bool:
        return bool((int(self.enable_mask) >> int(index)) & 1)

    def build_space(self) -> DGSpace:
        return uniform_dg_space(
            self.mesh.n_elements,
            order=self.dg.order,
            x_min=self.mesh.x_min,
            x_max=self.mesh.x_max,
            n_quad=self.dg.n_quad,
        )


def _as_list(v) -> list:
    if v is None:
        return []
    return list(v) if isinstance(v, list) else [v]


def _boundary_conditions(bc_group: dict, prefix: str, kind: str) -> Tuple[BoundaryCondition, ...]:
    attrs = _as_list(bc_group.get(f"{prefix}{kind}ATTR".upper()))
    if not attrs:
        return ()
    value = bc_group.get(f"{prefix}{kind}VALUE".upper(), 0.0)
    if isinstance(value, list):
        if len(value) != len(attrs):
            raise ValueError(f"{prefix}{kind}Value must be a scalar or match {prefix}{kind}Attr")
        return tuple(BoundaryCondition(attrs=(int(a),), value=float(v)) for a, v in zip(attrs, value))
    return (BoundaryCondition(attrs=tuple(int(a) for a in attrs), value=float(value)),)


def _optional_float(group: dict, key: str) -> float | None:
    v = group.get(key.upper())
    return None if v is None else float(v)


def transport_config_from_namelist(nml: Namelist) -> TransportConfig:
    """Build a `TransportConfig` from the ``&mesh``, ``&dg``, ``&plasma``, ... groups."""
    mesh_g = nml.group("mesh")
    dg_g = nml.group("dg")
    pl_g = nml.group("plasma")
    fl_g = nml.group("fields")
    co_g = nml.group("coefficients")
    bc_g = nml.group("boundaryConditions")
    ic_g = nml.group("initialConditions")
    so_g = nml.group("solver")
    ti_g = nml.group("time")
    out_g = nml.group("output")

    mesh = MeshParams(
        n_elements=int(mesh_g.get("NELEMENTS", MeshParams.n_elements)),
        x_min=float(mesh_g.get("XMIN", MeshParams.x_min)),
        x_max=float(mesh_g.get("XMAX", MeshParams.x_max)),
    )
    n_quad = dg_g.get("NQUAD")
    dg = DGParams(
        order=int(dg_g.get("ORDER", DGParams.order)),
        sigma=float(dg_g.get("SIGMA", DGParams.sigma)),
        kappa=_optional_float(dg_g, "kappa"),
        n_quad=None if n_quad is None else int(n_quad),
    )

    b_hat = pl_g.get("BHAT", list(PlasmaParams.b_hat))
    b_hat = [float(v) for v in _as_list(b_hat)]
    if len(b_hat) != 3:
        raise ValueError(f"plasma bHat must have 3 components, got {b_hat}")
    plasma = PlasmaParams(
        ion_charge=float(pl_g.get("IONCHARGE", PlasmaParams.ion_charge)),
        ion_mass=float(pl_g.get("IONMASS", PlasmaParams.ion_mass)),
        neutral_mass=float(pl_g.get("NEUTRALMASS", PlasmaParams.neutral_mass)),
        neutral_temp=float(pl_g.get("NEUTRALTEMP", PlasmaParams.neutral_temp)),
        coulomb_log=float(pl_g.get("COULOMBLOG", PlasmaParams.coulomb_log)),
        di_perp=float(pl_g.get("DIPERP", PlasmaParams.di_perp)),
        xi_perp=float(pl_g.get("XIPERP", PlasmaParams.xi_perp)),
        xe_perp=float(pl_g.get("XEPERP", PlasmaParams.xe_perp)),
        b_hat=(b_hat[0], b_hat[1], b_hat[2]),
        density_floor=float(pl_g.get("DENSITYFLOOR", PlasmaParams.density_floor)),
        temperature_floor=float(pl_g.get("TEMPERATUREFLOOR", PlasmaParams.temperature_floor)),
    )

    solver = SolverParams(
        newton_rel_tol=float(so_g.get("NEWTONRELTOL", SolverParams.newton_rel_tol)),
        newton_abs_tol=float(so_g.get("NEWTONABSTOL", SolverParams.newton_abs_tol)),
        newton_max_iter=int(so_g.get("NEWTONMAXITER", SolverParams.newton_max_iter)),
        newton_max_backtracks=int(so_g.get("NEWTONMAXBACKTRACKS", SolverParams.newton_max_backtracks)),
        krylov_rel_tol=_optional_float(so_g, "krylovRelTol"),
        krylov_abs_tol=float(so_g.get("KRYLOVABSTOL", SolverParams.krylov_abs_tol)),
        krylov_max_iter=int(so_g.get("KRYLOVMAXITER", SolverParams.krylov_max_iter)),
        krylov_restart=int(so_g.get("KRYLOVRESTART", SolverParams.krylov_restart)),
        jacobian_refresh=int(so_g.get("JACOBIANREFRESH", SolverParams.jacobian_refresh)),
        amg_strength=float(so_g.get("AMGSTRENGTH", SolverParams.amg_strength)),
        check_physical_state=bool(so_g.get("CHECKPHYSICALSTATE", SolverParams.check_physical_state)),
    )
    time = TimeParams(
        dt=float(ti_g.get("DT", TimeParams.dt)),
        t_final=float(ti_g.get("TFINAL", TimeParams.t_final)),
        ode_solver=str(ti_g.get("ODESOLVER", TimeParams.ode_solver)).strip().lower(),
    )
    out_file = out_g.get("FILE")
    output = OutputParams(
        file=None if out_file in (None, "") else str(out_file),
        cadence=int(out_g.get("CADENCE", OutputParams.cadence)),
    )

    vis_raw = _as_list(fl_g.get("VISMASK"))
    if vis_raw and len(vis_raw) != N_FIELDS:
        raise ValueError(f"fields visMask must have {N_FIELDS} entries, got {len(vis_raw)}")
    vis_flags = tuple(None if (not vis_raw or int(v) < 0) else int(v) for v in (vis_raw or [-1] * N_FIELDS))

    coefficients = []
    initial = []
    defaults = TransportConfig.__dataclass_fields__["initial"].default
    for i, prefix in enumerate(FIELD_PREFIXES):
        coefficients.append(
            FieldCoefficients(
                diffusion=_optional_float(co_g, f"{prefix}Diffusion"),
                advection=_optional_float(co_g, f"{prefix}Advection"),
                source=_optional_float(co_g, f"{prefix}Source"),
                dirichlet=_boundary_conditions(bc_g, prefix, "Dirichlet"),
                neumann=_boundary_conditions(bc_g, prefix, "Neumann"),
            )
        )
        initial.append(float(ic_g.get(prefix.upper(), defaults[i])))

    return TransportConfig(
        mesh=mesh,
        dg=dg,
        plasma=plasma,
        solver=solver,
        time=time,
        output=output,
        enable_mask=int(fl_g.get("ENABLEMASK", ALL_FIELDS_MASK)),
        vis_flags=vis_flags,
        coefficients=tuple(coefficients),
        initial=tuple(initial),
    )


def read_transport_config(path: str | Path) -> TransportConfig:
    return transport_config_from_namelist(read_transport_input(path))
