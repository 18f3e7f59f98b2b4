"""Pointwise transport coefficients used by the field operators.

All functions are pure `jax.numpy` expressions so they can be traced, differentiated and
evaluated on arbitrarily shaped point sets (quadrature points, face points, nodes).

Units: densities in m^-3, temperatures in eV, masses in amu, velocities in m/s.
"""

from __future__ import annotations

import math

import jax.numpy as jnp

from .constants import AMU, ELECTRON_MASS, EPSILON0, EV, PI


def unit_direction(b: jnp.ndarray) -> jnp.ndarray:
    """Normalize a (..., 3) direction field pointwise."""
    b = jnp.asarray(b, dtype=jnp.float64)
    norm = jnp.sqrt(jnp.sum(b * b, axis=-1, keepdims=True))
    return b / jnp.maximum(norm, 1e-300)


def field_aligned_tensor(
    b: jnp.ndarray,
    para: jnp.ndarray,
    perp: jnp.ndarray,
    cross: jnp.ndarray | None = None,
) -> jnp.ndarray:
    """Build ``K = b b^T (para - perp) + perp I`` plus the antisymmetric Hall part.

    ``b`` has shape (..., 3) and is normalized here. The scalar coefficients broadcast against
    ``b[..., 0]``. The cross coefficient multiplies the rotation generator of ``b``:
    ``K_jk += cross * eps_jkl b_l`` with the sign convention ``K_01 -= b_2 cross``.
    """
    bh = unit_direction(b)
    para = jnp.asarray(para, dtype=jnp.float64)
    perp = jnp.asarray(perp, dtype=jnp.float64)
    shape = jnp.broadcast_shapes(bh.shape[:-1], para.shape, perp.shape)
    bh = jnp.broadcast_to(bh, shape + (3,))
    para = jnp.broadcast_to(para, shape)
    perp = jnp.broadcast_to(perp, shape)

    outer = bh[..., :, None] * bh[..., None, :]
    eye = jnp.eye(3, dtype=jnp.float64)
    k = outer * (para - perp)[..., None, None] + perp[..., None, None] * eye
    if cross is None:
        return k

    c = jnp.broadcast_to(jnp.asarray(cross, dtype=jnp.float64), shape)
    bx, by, bz = bh[..., 0], bh[..., 1], bh[..., 2]
    zero = jnp.zeros_like(bx)
    hall = jnp.stack(
        [
            jnp.stack([zero, -bz, by], axis=-1),
            jnp.stack([bz, zero, -bx], axis=-1),
            jnp.stack([-by, bx, zero], axis=-1),
        ],
        axis=-2,
    )
    return k + c[..., None, None] * hall


def neutral_thermal_speed(neutral_temp: float, neutral_mass: float) -> float:
    """Mean thermal speed ``sqrt(8 T_n / (pi m_n))`` of the neutral population."""
    return math.sqrt(8.0 * float(neutral_temp) * EV / (PI * float(neutral_mass) * AMU))


def ionization_rate(te: jnp.ndarray, *, temperature_floor: float = 0.0) -> jnp.ndarray:
    """Electron-impact ionization rate coefficient ``<sigma v>_iz`` in m^3/s."""
    te = jnp.maximum(jnp.asarray(te, dtype=jnp.float64), temperature_floor)
    return 3.0e-16 * te * te / (3.0 + 0.01 * te * te)


def ionization_source(
    ne: jnp.ndarray,
    nn: jnp.ndarray,
    te: jnp.ndarray,
    *,
    temperature_floor: float = 0.0,
) -> jnp.ndarray:
    """Volumetric ionization source ``S_iz = n_e n_n <sigma v>_iz``."""
    return ne * nn * ionization_rate(te, temperature_floor=temperature_floor)


def neutral_diffusivity(
    ne: jnp.ndarray,
    te: jnp.ndarray,
    *,
    thermal_speed: float,
    density_floor: float,
    temperature_floor: float,
) -> jnp.ndarray:
    """Charge-exchange-free neutral diffusivity ``D_n = v_n^2 / (3 n_e <sigma v>_iz)``."""
    ne = jnp.maximum(jnp.asarray(ne, dtype=jnp.float64), density_floor)
    rate = jnp.maximum(ionization_rate(te, temperature_floor=temperature_floor), 1e-300)
    return thermal_speed**2 / (3.0 * ne * rate)


def electron_collision_time(
    te: jnp.ndarray,
    ne: jnp.ndarray,
    *,
    ion_charge: float,
    coulomb_log: float,
    density_floor: float = 0.0,
    temperature_floor: float = 0.0,
) -> jnp.ndarray:
    """Braginskii electron collision time in seconds."""
    te_j = jnp.maximum(jnp.asarray(te, dtype=jnp.float64), temperature_floor) * EV
    ne = jnp.maximum(jnp.asarray(ne, dtype=jnp.float64), density_floor)
    num = 6.0 * math.sqrt(2.0) * PI**1.5 * EPSILON0**2 * math.sqrt(ELECTRON_MASS) * te_j**1.5
    den = coulomb_log * EV**4 * float(ion_charge) * ne
    return num / den


def ion_collision_time(
    ti: jnp.ndarray,
    ni: jnp.ndarray,
    *,
    ion_charge: float,
    ion_mass: float,
    coulomb_log: float,
    density_floor: float = 0.0,
    temperature_floor: float = 0.0,
) -> jnp.ndarray:
    """Braginskii ion-ion collision time in seconds (``ion_mass`` in amu)."""
    ti_j = jnp.maximum(jnp.asarray(ti, dtype=jnp.float64), temperature_floor) * EV
    ni = jnp.maximum(jnp.asarray(ni, dtype=jnp.float64), density_floor)
    num = 12.0 * PI**1.5 * EPSILON0**2 * math.sqrt(float(ion_mass) * AMU) * ti_j**1.5
    den = coulomb_log * EV**4 * float(ion_charge) ** 4 * ni
    return num / den


def electron_parallel_conductivity(te, ne, *, ion_charge, coulomb_log, density_floor=0.0, temperature_floor=0.0):
    """``n_e chi_e,para = 3.16 n_e T_e tau_e / m_e`` in (m s)^-1."""
    tau = electron_collision_time(
        te,
        ne,
        ion_charge=ion_charge,
        coulomb_log=coulomb_log,
        density_floor=density_floor,
        temperature_floor=temperature_floor,
    )
    te_j = jnp.maximum(jnp.asarray(te, dtype=jnp.float64), temperature_floor) * EV
    return 3.16 * ne * te_j * tau / ELECTRON_MASS


def ion_parallel_conductivity(ti, ni, *, ion_charge, ion_mass, coulomb_log, density_floor=0.0, temperature_floor=0.0):
    """``n_i chi_i,para = 3.9 n_i T_i tau_i / m_i`` in (m s)^-1."""
    tau = ion_collision_time(
        ti,
        ni,
        ion_charge=ion_charge,
        ion_mass=ion_mass,
        coulomb_log=coulomb_log,
        density_floor=density_floor,
        temperature_floor=temperature_floor,
    )
    ti_j = jnp.maximum(jnp.asarray(ti, dtype=jnp.float64), temperature_floor) * EV
    return 3.9 * ni * ti_j * tau / (float(ion_mass) * AMU)


def ion_parallel_viscosity(ti, ni, *, ion_charge, ion_mass, coulomb_log, density_floor=0.0, temperature_floor=0.0):
    """Braginskii parallel ion viscosity ``eta_0 = 0.96 n_i T_i tau_i`` in Pa s."""
    tau = ion_collision_time(
        ti,
        ni,
        ion_charge=ion_charge,
        ion_mass=ion_mass,
        coulomb_log=coulomb_log,
        density_floor=density_floor,
        temperature_floor=temperature_floor,
    )
    ti_j = jnp.maximum(jnp.asarray(ti, dtype=jnp.float64), temperature_floor) * EV
    return 0.96 * ni * ti_j * tau
