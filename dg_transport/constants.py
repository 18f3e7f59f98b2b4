"""Physical constants (SI, CODATA 2018)."""

from __future__ import annotations

import math

EV = 1.602176634e-19  # J per eV, also the elementary charge in C
AMU = 1.66053906660e-27  # kg
ELECTRON_MASS = 9.1093837015e-31  # kg
EPSILON0 = 8.8541878128e-12  # F / m

PI = math.pi
