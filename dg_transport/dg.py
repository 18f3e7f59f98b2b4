"""One-dimensional nodal discontinuous-Galerkin space.

The space provides the pluggable spatial primitives used by the field operators:

- traces of a DG function at quadrature points and at element end points,
- volume integrals against test functions and their gradients,
- interior-penalty diffusion face terms (parameters ``sigma`` and ``kappa``),
- upwind advection trace terms,
- Dirichlet / Neumann boundary terms.

Degrees of freedom are element-major: ``dof = e * (order + 1) + a`` with Gauss–Lobatto nodes.
Boundary attribute 1 is the left end of the mesh, attribute 2 the right end.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, NamedTuple, Sequence

import numpy as np
from numpy.polynomial import legendre as _leg
import scipy.sparse as sp

import jax.numpy as jnp


LEFT = 1
RIGHT = 2
BOUNDARY_ATTRIBUTES = (LEFT, RIGHT)


class FieldTrace(NamedTuple):
    """Values and x-derivatives of a DG function at quadrature and element end points."""

    q: jnp.ndarray  # (n_elements, n_quad)
    dq: jnp.ndarray  # (n_elements, n_quad)
    f: jnp.ndarray  # (n_elements, 2), [left end, right end]
    df: jnp.ndarray  # (n_elements, 2)


class BoundaryData(NamedTuple):
    """Static description of the condition applied at one boundary end."""

    attribute: int
    kind: str  # "natural", "dirichlet" or "neumann"
    value: float


def gauss_lobatto_nodes(order: int) -> np.ndarray:
    if order < 1:
        raise ValueError(f"DG order must be >= 1, got {order}")
    if order == 1:
        return np.array([-1.0, 1.0])
    interior = _leg.Legendre.basis(order).deriv().roots()
    return np.concatenate([[-1.0], np.sort(np.real(interior)), [1.0]])


def _lagrange_coefficients(nodes: np.ndarray) -> np.ndarray:
    """Legendre expansion coefficients of the nodal Lagrange basis (columns)."""
    v = _leg.legvander(nodes, nodes.size - 1)
    return np.linalg.inv(v)


def _eval_basis(coeffs: np.ndarray, xi: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    p = coeffs.shape[0] - 1
    v = _leg.legvander(xi, p)
    dv = np.zeros_like(v)
    for j in range(p + 1):
        e = np.zeros(p + 1)
        e[j] = 1.0
        dv[:, j] = _leg.legval(xi, _leg.legder(e))
    return v @ coeffs, dv @ coeffs


@dataclass(frozen=True, eq=False)
class DGSpace:
    vertices: np.ndarray
    order: int
    n_quad: int
    ref_nodes: np.ndarray
    quad_points: np.ndarray
    quad_weights: np.ndarray
    phi: jnp.ndarray  # (n_quad, nloc)
    dphi: jnp.ndarray  # reference derivative, (n_quad, nloc)
    phi_face: jnp.ndarray  # (2, nloc)
    dphi_face: jnp.ndarray  # (2, nloc)
    dnodes: jnp.ndarray  # reference derivative at nodes, (nloc, nloc)
    h: jnp.ndarray  # (n_elements,)
    x_quad: jnp.ndarray  # (n_elements, n_quad)
    x_face: jnp.ndarray  # (n_elements, 2)
    x_nodes: jnp.ndarray  # (n_elements, nloc)

    @property
    def n_elements(self) -> int:
        return int(self.vertices.size - 1)

    @property
    def nloc(self) -> int:
        return int(self.order + 1)

    @property
    def ndof(self) -> int:
        return self.n_elements * self.nloc

    @property
    def jac(self) -> jnp.ndarray:
        return 0.5 * self.h

    @property
    def length(self) -> float:
        return float(self.vertices[-1] - self.vertices[0])

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def elements(self, u: jnp.ndarray) -> jnp.ndarray:
        u = jnp.asarray(u)
        if u.shape != (self.ndof,):
            raise ValueError(f"DG vector must have shape {(self.ndof,)}, got {u.shape}")
        return u.reshape((self.n_elements, self.nloc))

    def trace(self, u: jnp.ndarray) -> FieldTrace:
        ue = self.elements(u)
        inv_jac = (1.0 / self.jac)[:, None]
        return FieldTrace(
            q=ue @ self.phi.T,
            dq=(ue @ self.dphi.T) * inv_jac,
            f=ue @ self.phi_face.T,
            df=(ue @ self.dphi_face.T) * inv_jac,
        )

    def quad_values(self, u: jnp.ndarray) -> jnp.ndarray:
        return self.elements(u) @ self.phi.T

    def node_values(self, u: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
        """Nodal values and nodal x-derivatives, both shaped (n_elements, nloc)."""
        ue = self.elements(u)
        return ue, (ue @ self.dnodes.T) * (1.0 / self.jac)[:, None]

    def evaluate(self, u, x) -> np.ndarray:
        """Evaluate a DG function at physical points (NumPy, not traced).

        Points on an interior vertex take the value from the element on the right.
        """
        x = np.atleast_1d(np.asarray(x, dtype=np.float64))
        ue = np.asarray(self.elements(u))
        e = np.clip(np.searchsorted(self.vertices, x, side="right") - 1, 0, self.n_elements - 1)
        x0 = self.vertices[e]
        x1 = self.vertices[e + 1]
        xi = 2.0 * (x - x0) / (x1 - x0) - 1.0
        phi, _ = _eval_basis(_lagrange_coefficients(self.ref_nodes), xi)
        return np.sum(phi * ue[e], axis=1)

    def interpolate(self, f: float | Callable[[np.ndarray], np.ndarray]) -> jnp.ndarray:
        """Nodal interpolant of a constant or a callable of x."""
        xn = np.asarray(self.x_nodes)
        if callable(f):
            vals = np.broadcast_to(np.asarray(f(xn), dtype=np.float64), xn.shape)
        else:
            vals = np.full(xn.shape, float(f))
        return jnp.asarray(vals.reshape(-1))

    # ------------------------------------------------------------------
    # Volume integrals against test functions
    # ------------------------------------------------------------------

    def integrate_test(self, g_q: jnp.ndarray) -> jnp.ndarray:
        """Return ``(∫ g φ_a dx)_a`` for g given at quadrature points."""
        w = jnp.asarray(self.quad_weights)[None, :] * self.jac[:, None]
        return ((g_q * w) @ self.phi).reshape(-1)

    def integrate_test_grad(self, g_q: jnp.ndarray) -> jnp.ndarray:
        """Return ``(∫ g dφ_a/dx dx)_a``; the element Jacobians cancel."""
        w = jnp.asarray(self.quad_weights)[None, :]
        return ((g_q * w) @ self.dphi).reshape(-1)

    def face_test(self, c_val: jnp.ndarray, c_grad: jnp.ndarray) -> jnp.ndarray:
        """Scatter end-point coefficients onto test functions.

        ``c_val[e, s]`` multiplies ``φ_a`` and ``c_grad[e, s]`` multiplies ``dφ_a/dx`` at end
        ``s`` (0 = left, 1 = right) of element ``e``.
        """
        dphi_x = self.dphi_face[None, :, :] / self.jac[:, None, None]
        out = c_val[:, :, None] * self.phi_face[None, :, :] + c_grad[:, :, None] * dphi_x
        return out.sum(axis=1).reshape(-1)

    # ------------------------------------------------------------------
    # Face forms
    # ------------------------------------------------------------------

    def _zeros_face(self, like: jnp.ndarray) -> jnp.ndarray:
        return jnp.zeros((self.n_elements, 2), dtype=like.dtype)

    def diffusion_faces(
        self,
        k_face: jnp.ndarray,
        tr: FieldTrace,
        *,
        sigma: float,
        kappa: float,
        boundary: Sequence[BoundaryData] = (),
    ) -> jnp.ndarray:
        """Interior-penalty face terms of ``-div(K grad u)``.

        Interior faces contribute ``-{K u'n}[v] + sigma [u]{K v'n} + kappa {K/h}[u][v]``.
        Dirichlet ends use the same form against the boundary value. Other ends are natural.
        """
        c_val = self._zeros_face(tr.f)
        c_grad = self._zeros_face(tr.f)
        h = self.h

        if self.n_elements > 1:
            k_l = k_face[:-1, 1]
            k_r = k_face[1:, 0]
            avg_flux = 0.5 * (k_l * tr.df[:-1, 1] + k_r * tr.df[1:, 0])
            jump = tr.f[:-1, 1] - tr.f[1:, 0]
            pen = kappa * 0.5 * (k_l / h[:-1] + k_r / h[1:])
            c_val = c_val.at[:-1, 1].add(-avg_flux + pen * jump)
            c_val = c_val.at[1:, 0].add(avg_flux - pen * jump)
            c_grad = c_grad.at[:-1, 1].add(sigma * 0.5 * k_l * jump)
            c_grad = c_grad.at[1:, 0].add(sigma * 0.5 * k_r * jump)

        for bd in boundary:
            e, s, n = self.boundary_location(bd.attribute)
            if bd.kind == "dirichlet":
                kb = k_face[e, s]
                du = tr.f[e, s] - bd.value
                c_val = c_val.at[e, s].add(-kb * tr.df[e, s] * n + kappa * kb / h[e] * du)
                c_grad = c_grad.at[e, s].add(sigma * du * kb * n)
        return self.face_test(c_val, c_grad)

    def neumann_faces(self, boundary: Sequence[BoundaryData], like: jnp.ndarray) -> jnp.ndarray:
        """Boundary load ``-g v`` for every Neumann end, ``g`` being the outward flux."""
        c_val = self._zeros_face(like)
        for bd in boundary:
            if bd.kind == "neumann":
                e, s, _ = self.boundary_location(bd.attribute)
                c_val = c_val.at[e, s].add(-bd.value)
        return self.face_test(c_val, self._zeros_face(like))

    def advection_faces(
        self,
        v_face: jnp.ndarray,
        tr: FieldTrace,
        *,
        boundary: Sequence[BoundaryData] = (),
    ) -> jnp.ndarray:
        """Upwind trace terms of ``div(V u)`` in weak-divergence form.

        Interior flux: ``V̄ {u} + |V̄|/2 [u]``. At a boundary the outflow uses the trace and the
        inflow uses the Dirichlet value when one is prescribed, else the trace.
        """
        c_val = self._zeros_face(tr.f)
        if self.n_elements > 1:
            vbar = 0.5 * (v_face[:-1, 1] + v_face[1:, 0])
            u_l = tr.f[:-1, 1]
            u_r = tr.f[1:, 0]
            flux = vbar * 0.5 * (u_l + u_r) + 0.5 * jnp.abs(vbar) * (u_l - u_r)
            c_val = c_val.at[:-1, 1].add(flux)
            c_val = c_val.at[1:, 0].add(-flux)

        by_attr = {bd.attribute: bd for bd in boundary}
        for attr in BOUNDARY_ATTRIBUTES:
            e, s, n = self.boundary_location(attr)
            vn = v_face[e, s] * n
            u = tr.f[e, s]
            bd = by_attr.get(attr)
            u_in = bd.value if (bd is not None and bd.kind == "dirichlet") else u
            c_val = c_val.at[e, s].add(jnp.maximum(vn, 0.0) * u + jnp.minimum(vn, 0.0) * u_in)
        return self.face_test(c_val, self._zeros_face(tr.f))

    # ------------------------------------------------------------------
    # Topology helpers
    # ------------------------------------------------------------------

    def boundary_location(self, attribute: int) -> tuple[int, int, float]:
        """Return (element, end, outward normal) of a boundary attribute."""
        if attribute == LEFT:
            return 0, 0, -1.0
        if attribute == RIGHT:
            return self.n_elements - 1, 1, 1.0
        raise ValueError(f"Unknown boundary attribute {attribute}; expected one of {BOUNDARY_ATTRIBUTES}")

    def boundary_point(self, attribute: int) -> float:
        return float(self.vertices[0] if attribute == LEFT else self.vertices[-1])

    def mass_matrix(self) -> sp.csr_matrix:
        phi = np.asarray(self.phi)
        w = np.asarray(self.quad_weights)
        m_ref = phi.T @ (w[:, None] * phi)
        blocks = [float(j) * m_ref for j in np.asarray(self.jac)]
        return sp.block_diag(blocks, format="csr")

    def refined(self) -> "DGSpace":
        """Uniform bisection of every element, same order and quadrature."""
        mids = 0.5 * (self.vertices[:-1] + self.vertices[1:])
        verts = np.sort(np.concatenate([self.vertices, mids]))
        return build_dg_space(verts, order=self.order, n_quad=self.n_quad)

    def transfer(self, u, other: "DGSpace") -> jnp.ndarray:
        """Interpolate a DG function onto the nodes of a nested (refined) space.

        Each target node is evaluated in the source element containing its own cell midpoint,
        so discontinuities at shared vertices are preserved.
        """
        xn = np.asarray(other.x_nodes).reshape(-1)
        xm = np.repeat(0.5 * (other.vertices[:-1] + other.vertices[1:]), other.nloc)
        ue = np.asarray(self.elements(u))
        e = np.clip(np.searchsorted(self.vertices, xm, side="right") - 1, 0, self.n_elements - 1)
        xi = 2.0 * (xn - self.vertices[e]) / (self.vertices[e + 1] - self.vertices[e]) - 1.0
        phi, _ = _eval_basis(_lagrange_coefficients(self.ref_nodes), xi)
        return jnp.asarray(np.sum(phi * ue[e], axis=1))


def build_dg_space(vertices, *, order: int, n_quad: int | None = None) -> DGSpace:
    verts = np.asarray(vertices, dtype=np.float64).reshape((-1,))
    if verts.size < 2:
        raise ValueError("A DG mesh needs at least one element (two vertices)")
    h = np.diff(verts)
    if np.any(h <= 0.0):
        raise ValueError("Mesh vertices must be strictly increasing")
    order = int(order)
    nq = int(n_quad) if n_quad is not None else 2 * order + 1
    if nq < order + 1:
        raise ValueError(f"n_quad={nq} is too small for order {order}")

    nodes = gauss_lobatto_nodes(order)
    coeffs = _lagrange_coefficients(nodes)
    xq, wq = _leg.leggauss(nq)
    phi, dphi = _eval_basis(coeffs, xq)
    phi_f, dphi_f = _eval_basis(coeffs, np.array([-1.0, 1.0]))
    _, dnodes = _eval_basis(coeffs, nodes)

    x0 = verts[:-1, None]
    hh = h[:, None]
    x_quad = x0 + 0.5 * (xq[None, :] + 1.0) * hh
    x_nodes = x0 + 0.5 * (nodes[None, :] + 1.0) * hh
    x_face = np.stack([verts[:-1], verts[1:]], axis=1)

    return DGSpace(
        vertices=verts,
        order=order,
        n_quad=nq,
        ref_nodes=nodes,
        quad_points=xq,
        quad_weights=wq,
        phi=jnp.asarray(phi),
        dphi=jnp.asarray(dphi),
        phi_face=jnp.asarray(phi_f),
        dphi_face=jnp.asarray(dphi_f),
        dnodes=jnp.asarray(dnodes),
        h=jnp.asarray(h),
        x_quad=jnp.asarray(x_quad),
        x_face=jnp.asarray(x_face),
        x_nodes=jnp.asarray(x_nodes),
    )


def uniform_dg_space(n_elements: int, *, order: int, x_min: float = 0.0, x_max: float = 1.0, n_quad: int | None = None) -> DGSpace:
    if int(n_elements) < 1:
        raise ValueError(f"n_elements must be >= 1, got {n_elements}")
    verts = np.linspace(float(x_min), float(x_max), int(n_elements) + 1)
    return build_dg_space(verts, order=order, n_quad=n_quad)


def resolve_boundary_attributes(attrs: Sequence[int]) -> tuple[int, ...]:
    """Expand an attribute list; ``-1`` selects every boundary attribute."""
    attrs = tuple(int(a) for a in attrs)
    if -1 in attrs:
        return BOUNDARY_ATTRIBUTES
    for a in attrs:
        if a not in BOUNDARY_ATTRIBUTES:
            raise ValueError(f"Unknown boundary attribute {a}; expected one of {BOUNDARY_ATTRIBUTES} or -1")
    return tuple(sorted(set(attrs)))
