"""Implicit DG transport of a five-field edge plasma in JAX.

Neutral density, ion density, ion parallel velocity and ion/electron temperatures are advanced
with an implicit Newton-Krylov solve of the coupled residual on a 1D discontinuous-Galerkin space.
"""

from __future__ import annotations

# Optional host-device count for vmapped Jacobian colouring on CPU. Must be set before JAX import.
import os

_cpu_devices_env = os.environ.get("DG_TRANSPORT_CPU_DEVICES", "").strip()
if _cpu_devices_env:
    try:
        _cpu_devices = int(_cpu_devices_env)
    except ValueError:
        _cpu_devices = 0
    if _cpu_devices > 0:
        _xla_flags = os.environ.get("XLA_FLAGS", "")
        if "--xla_force_host_platform_device_count" not in _xla_flags:
            flag = f"--xla_force_host_platform_device_count={_cpu_devices}"
            os.environ["XLA_FLAGS"] = f"{_xla_flags} {flag}".strip()

# Transport coefficients span ~30 orders of magnitude; everything runs in float64.
from jax import config as _jax_config  # noqa: E402

_jax_config.update("jax_enable_x64", True)

__all__ = [
    "__version__",
]

__version__ = "0.1.0"
