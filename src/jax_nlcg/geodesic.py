"""Geodesic retraction on the (generalized) Stiefel manifold."""

from __future__ import annotations

import jax
import jax.numpy as jnp

from .energy import FreeEnergy
from .kpoints import KField, eigh, kmap
from .utils import herm


@jax.jit
def _horizontal(x, sx, z):
    return z - x @ (jnp.conj(sx.T) @ z)


@jax.jit
def _stiefel_geodesic(x, zh, szh, t):
    # zh^H S zh = V diag(sigma^2) V^H
    s2, v = jnp.linalg.eigh(herm(jnp.conj(zh.T) @ szh))
    sigma = jnp.sqrt(jnp.clip(s2, 0.0, None))
    cos = jnp.cos(sigma * t)
    # sin(sigma t) / sigma, finite at sigma = 0
    sin = t * jnp.sinc(sigma * t / jnp.pi)
    vh = jnp.conj(v.T)
    return ((x @ v) * cos) @ vh + ((zh @ v) * sin) @ vh


def horizontal(X: KField, SX: KField, Z: KField) -> KField:
    """Remove from ``Z`` the component that rotates within span(X)."""
    return kmap(_horizontal, X, SX, Z)


def stiefel_geodesic(strategy, X: KField, Z: KField, t: float) -> KField:
    """Point at time ``t`` on the geodesic through ``X`` with horizontal initial velocity.

    ``X^H S X = I`` is preserved exactly for every ``t``.
    """
    Zh = horizontal(X, strategy.overlap(X), Z)
    SZh = strategy.overlap(Zh)
    return kmap(lambda x, zh, szh: _stiefel_geodesic(x, zh, szh, t), X, Zh, SZh)


def geodesic(
    free_energy: FreeEnergy,
    strategy,
    X: KField,
    eta: KField,
    Z_x: KField,
    Z_eta: KField,
    t: float,
) -> tuple[KField, KField]:
    """Move to ``(X(t), eta + t Z_eta)`` and evaluate the free energy there.

    The new subspace matrix is diagonalized, ``eta + t Z_eta = U diag(ek) U^H``;
    the wavefunctions pushed into the model are ``X(t) U`` with occupations
    derived from ``ek``. Returns ``(ek, U)``.
    """
    Xt = stiefel_geodesic(strategy, X, Z_x, t)
    ek, u = eigh(eta + t * Z_eta)
    fn, _ = free_energy.smearing.fn(ek)
    free_energy.compute(Xt @ u, fn)
    return ek, u
