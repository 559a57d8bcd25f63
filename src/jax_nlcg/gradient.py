r"""Gradients of the Mermin free energy on the constraint manifold.

The free energy is parametrized by the wavefunctions :math:`X` (orthonormal,
or :math:`S`-orthonormal for ultrasoft pseudopotentials) and the Hermitian
subspace matrix :math:`\eta` whose eigenvalues are the band energies fed to
the smearing function. With the weighted subspace Hamiltonian

.. math::

    H_{ij} = w_k \langle x_i | H | x_j \rangle

the gradient with respect to :math:`X` is :math:`g_X = w_k H X f - S X \Lambda`
and the preconditioned steepest direction is
:math:`\Delta_X = -P (w_k H X - S X \Lambda) / w_k`, where the Lagrange
multipliers :math:`\Lambda = (X^H S P S X)^{-1} X^H S P\, w_k H X` make
:math:`\Delta_X` orthogonal to :math:`S X`.

For :math:`\eta` (diagonal in the current basis, eigenvalues :math:`\epsilon`):

.. math::

    (g_\eta)_{ij} = \frac{f_i - f_j}{\epsilon_i - \epsilon_j} H_{ij} \quad (i \neq j), \qquad
    (g_\eta)_{ii} = -(H_{ii} - w_k \epsilon_i)\,\delta_i
        + \frac{w_k \delta_i}{\sum w \delta} \sum (H_{nn} - w \epsilon_n)\,\delta_n

with :math:`\delta = \partial f / \partial \mu`; the last term accounts for the
shift of the chemical potential. The closed-form direction is
:math:`\Delta_\eta = \kappa (H_{ij} - w_k \mathrm{diag}(\epsilon)) / w_k`.
"""

from __future__ import annotations

from typing import NamedTuple

import jax
import jax.numpy as jnp

from .kpoints import Communicator, KField, KPointWeights, diag, innerh_reduce, kmap, ksum
from .operators import Identity, Operator
from .utils import herm

_DEGENERATE = 1e-10


class XGradient(NamedTuple):
    g_X: KField
    delta_x: KField
    SX: KField


@jax.jit
def _solve_lagrange(sx, psx, phx):
    return jnp.linalg.solve(jnp.conj(sx.T) @ psx, jnp.conj(sx.T) @ phx)


def lagrange_multipliers(SX: KField, PSX: KField, PHX: KField) -> KField:
    """Per-k solve of ``(SX^H P SX) LL = SX^H P HX``."""
    return kmap(_solve_lagrange, SX, PSX, PHX)


def subspace_hamiltonian(X: KField, HX: KField, wk: KPointWeights) -> KField:
    """``Hij = w_k X^H H X``, Hermitian per k-point."""
    return kmap(lambda x, hx, w: herm(w * (jnp.conj(x.T) @ hx)), X, HX, wk.values)


@jax.jit
def _g_eta(hij, w, ek, fn, dfn, dmu):
    n = ek.shape[0]
    hd = jnp.real(jnp.diagonal(hij))
    g_diag = -(hd - w * ek) * dfn + w * dfn * dmu
    de = ek[:, None] - ek[None, :]
    dfij = fn[:, None] - fn[None, :]
    degenerate = jnp.abs(de) < _DEGENERATE
    # divided difference of the occupations, f'(e) in the degenerate limit
    ratio = jnp.where(degenerate, -0.5 * (dfn[:, None] + dfn[None, :]), dfij / jnp.where(degenerate, 1.0, de))
    offdiag = ratio * hij * (1.0 - jnp.eye(n, dtype=ek.dtype))
    return offdiag + jnp.diag(g_diag)


class GradEta:
    """Gradient and closed-form descent direction for the subspace variable eta."""

    def __init__(self, temperature: float, kappa: float):
        self.temperature = temperature
        self.kappa = kappa

    def g_eta(self, Hij: KField, wk: KPointWeights, ek: KField, fn: KField, dfn: KField) -> KField:
        """``dfn`` is the occupation derivative ``d fn / d mu`` from the smearing."""
        commk = wk.commk
        resid = kmap(lambda h, w, e: jnp.real(jnp.diagonal(h)) - w * e, Hij, wk.values, ek)
        dFdmu = ksum(resid * dfn, commk)
        sum_delta = ksum(dfn * wk.values, commk)
        dmu = 0.0 if abs(sum_delta) < _DEGENERATE else dFdmu / sum_delta
        return kmap(lambda h, w, e, f, d: _g_eta(h, w, e, f, d, dmu), Hij, wk.values, ek, fn, dfn)

    def delta_eta(self, Hij: KField, ek: KField, wk: KPointWeights) -> KField:
        kappa = self.kappa
        return kmap(lambda h, e, w: kappa * (h - w * jnp.diag(e)) / w, Hij, ek, wk.values)


def compute_slope(
    g_X: KField, Z_x: KField, g_eta: KField, Z_eta: KField, commk: Communicator
) -> tuple[float, float]:
    """Directional derivatives of F along ``(Z_x, Z_eta)``, split by block."""
    slope_x = 2.0 * innerh_reduce(g_X, Z_x, commk)
    slope_eta = innerh_reduce(g_eta, Z_eta, commk)
    return slope_x, slope_eta


def compute_slope_single(
    g_X: KField, Z_x: KField, g_eta: KField, Z_eta: KField, commk: Communicator
) -> float:
    return sum(compute_slope(g_X, Z_x, g_eta, Z_eta, commk))


class StandardGradient:
    """Norm-conserving case: orthonormal X, kinetic (Teter) preconditioner."""

    name = "standard"

    def __init__(self, preconditioner: Operator | None = None):
        self.preconditioner = preconditioner or Identity()

    def overlap(self, X: KField) -> KField:
        return X

    def gradients(self, X: KField, HX: KField, fn: KField, wk: KPointWeights) -> XGradient:
        HXw = HX * wk.values
        SX = self.overlap(X)
        PHX = self.preconditioner.apply(HXw)
        PSX = self.preconditioner.apply(SX)
        LL = lagrange_multipliers(SX, PSX, PHX)
        g_X = HXw * fn - SX @ LL
        delta_x = -(PHX - PSX @ LL) / wk.values
        return XGradient(g_X, delta_x, SX)

    def conjugate(self, delta_x: KField, Z_xp: KField, X: KField, SX: KField, gamma: float) -> KField:
        """``delta_x + gamma * Z_xp`` with ``Z_xp`` projected onto the tangent space at X."""
        return kmap(
            lambda d, z, x, sx: d + gamma * (z - x @ (jnp.conj(sx.T) @ z)),
            delta_x,
            Z_xp,
            X,
            SX,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.preconditioner!r})"


class UltrasoftGradient(StandardGradient):
    """Generalized orthonormality ``X^H S X = I`` with an ultrasoft preconditioner."""

    name = "ultrasoft"

    def __init__(self, overlap: Operator, preconditioner: Operator | None = None):
        super().__init__(preconditioner)
        self.S = overlap

    def overlap(self, X: KField) -> KField:
        return self.S.apply(X)


def steepest_eta(
    grad_eta: GradEta,
    X: KField,
    HX: KField,
    ek: KField,
    fn: KField,
    dfn: KField,
    wk: KPointWeights,
) -> tuple[KField, KField, KField]:
    """``(eta, g_eta, delta_eta)`` at a point where eta is diagonal."""
    eta = diag(ek)
    Hij = subspace_hamiltonian(X, HX, wk)
    g_eta = grad_eta.g_eta(Hij, wk, ek, fn, dfn)
    delta_eta = grad_eta.delta_eta(Hij, ek, wk)
    return eta, g_eta, delta_eta


class Point(NamedTuple):
    """Iterate together with everything derived from one model evaluation."""

    X: KField
    HX: KField
    SX: KField
    ek: KField
    fn: KField
    eta: KField
    g_X: KField
    delta_x: KField
    g_eta: KField
    delta_eta: KField


def evaluate(free_energy, strategy, grad_eta: GradEta, ek: KField) -> Point:
    """Gradients at the model's current state, whose band energies are ``ek``.

    Occupations are re-derived from ``ek``; ``H X`` is read exactly once.
    """
    wk = free_energy.get_wk()
    X = free_energy.get_X()
    HX = free_energy.get_HX()
    fn, mu = free_energy.smearing.fn(ek)
    dfn = free_energy.smearing.delta(ek, mu)
    g_X, delta_x, SX = strategy.gradients(X, HX, fn, wk)
    eta, g_eta, delta_eta = steepest_eta(grad_eta, X, HX, ek, fn, dfn, wk)
    return Point(X, HX, SX, ek, fn, eta, g_X, delta_x, g_eta, delta_eta)
