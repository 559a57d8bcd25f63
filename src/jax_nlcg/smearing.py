"""Occupation smearing: band energies -> occupations, entropy and its derivative."""

from __future__ import annotations

import math
from enum import Enum

import jax
import jax.numpy as jnp
from jax.scipy.special import erfc, expit

from .kpoints import KField, KPointWeights, kmap, ksum

# Boltzmann constant in Hartree / Kelvin
kb = 3.166811563e-6

_TINY = 1e-300
_SQRT_E = math.sqrt(math.e)
_A = 1.0 / math.sqrt(2.0)


class SmearingType(str, Enum):
    FERMI_DIRAC = "fermi-dirac"
    GAUSSIAN_SPLINE = "gaussian-spline"


# -------------------------------------------------------------------------
# Fermi-Dirac, x = (mu - e) / kT
# -------------------------------------------------------------------------
@jax.jit
def fermi_dirac(x: jax.Array) -> jax.Array:
    """Finite-T Fermi-Dirac occupation 1/(1 + exp(-x))."""
    return expit(x)


@jax.jit
def fermi_dirac_delta(x: jax.Array) -> jax.Array:
    s = expit(x)
    return s * (1 - s)


@jax.jit
def fermi_dirac_entropy(f: jax.Array) -> jax.Array:
    """-f ln f - (1-f) ln(1-f) for normalized occupations f in [0, 1]."""
    p = jnp.clip(f, _TINY, 1.0)
    q = jnp.clip(1.0 - f, _TINY, 1.0)
    return -(p * jnp.log(p) + q * jnp.log(q))


# -------------------------------------------------------------------------
# Gaussian spline: Gaussian tails joined C1 at the Fermi level
# -------------------------------------------------------------------------
@jax.jit
def gaussian_spline(x: jax.Array) -> jax.Array:
    lower = 0.5 * _SQRT_E * jnp.exp(-((jnp.minimum(x, 0.0) - _A) ** 2))
    upper = 1.0 - 0.5 * _SQRT_E * jnp.exp(-((jnp.maximum(x, 0.0) + _A) ** 2))
    return jnp.where(x < 0, lower, upper)


@jax.jit
def gaussian_spline_delta(x: jax.Array) -> jax.Array:
    ax = jnp.abs(x) + _A
    return _SQRT_E * ax * jnp.exp(-(ax**2))


def _gaussian_spline_entropy_x(x):
    # valid for x <= 0, the entropy is even in x
    return _SQRT_E * (0.25 * math.sqrt(math.pi) * erfc(_A - x) - 0.5 * x * jnp.exp(-((x - _A) ** 2)))


@jax.jit
def gaussian_spline_entropy(f: jax.Array) -> jax.Array:
    g = jnp.clip(jnp.minimum(f, 1.0 - f), _TINY, 0.5)
    # invert the occupation on the x <= 0 branch
    r = jnp.sqrt(0.5 - jnp.log(2.0 * g))
    return _gaussian_spline_entropy_x(_A - r)


_KERNELS = {
    SmearingType.FERMI_DIRAC: (fermi_dirac, fermi_dirac_delta, fermi_dirac_entropy),
    SmearingType.GAUSSIAN_SPLINE: (gaussian_spline, gaussian_spline_delta, gaussian_spline_entropy),
}


class Smearing:
    """Maps band energies to occupations at electronic temperature ``temperature`` [K].

    Occupations are ``occupancy * f((mu - ek) / kT)`` with the chemical potential
    ``mu`` chosen such that ``sum_k w_k sum_n fn = nelectrons``.
    """

    def __init__(
        self,
        kind: SmearingType | str,
        temperature: float,
        nelectrons: float,
        occupancy: float,
        wk: KPointWeights,
        *,
        maxiter: int = 200,
        tol: float = 1e-12,
    ):
        if temperature <= 0:
            raise ValueError(f"temperature must be positive, got {temperature}")
        self.kind = SmearingType(kind)
        self.temperature = float(temperature)
        self.kT = kb * self.temperature
        self.nelectrons = float(nelectrons)
        self.occupancy = float(occupancy)
        self.wk = wk
        self.maxiter = int(maxiter)
        self.tol = float(tol)
        self._occ, self._delta, self._entropy = _KERNELS[self.kind]

    def __repr__(self) -> str:
        return f"Smearing({self.kind.value}, T={self.temperature} K)"

    def occupation(self, ek: KField, mu: float) -> KField:
        kT, mo = self.kT, self.occupancy
        return kmap(lambda e: mo * self._occ((mu - e) / kT), ek)

    def electron_count(self, ek: KField, mu: float) -> float:
        return ksum(self.occupation(ek, mu) * self.wk.values, self.wk.commk)

    def chemical_potential(self, ek: KField) -> float:
        """Bracketed bisection on the electron count, tolerant of degenerate bands."""
        commk = self.wk.commk
        # the sum over ranks of the local max |e| bounds every band energy
        emax = commk.allreduce(max(float(jnp.max(jnp.abs(e))) for e in ek.values()))
        span = emax + 50.0 * self.kT
        lo, hi = -span, span
        mu = 0.5 * (lo + hi)
        for _ in range(self.maxiter):
            mu = 0.5 * (lo + hi)
            count = self.electron_count(ek, mu)
            if abs(count - self.nelectrons) < self.tol * max(1.0, self.nelectrons):
                break
            if count > self.nelectrons:
                hi = mu
            else:
                lo = mu
        return mu

    def fn(self, ek: KField) -> tuple[KField, float]:
        """Occupations and chemical potential for band energies ``ek``."""
        mu = self.chemical_potential(ek)
        return self.occupation(ek, mu), mu

    def entropy(self, fn: KField) -> float:
        """The ``-T S`` contribution to the free energy (non-positive)."""
        mo = self.occupancy
        s = kmap(lambda f, w: w * jnp.sum(self._entropy(f / mo)), fn, self.wk.values)
        return -self.kT * mo * ksum(s, self.wk.commk)

    def delta(self, ek: KField, mu: float) -> KField:
        """``d fn / d mu`` at fixed band energies."""
        kT, mo = self.kT, self.occupancy
        return kmap(lambda e: (mo / kT) * self._delta((mu - e) / kT), ek)
