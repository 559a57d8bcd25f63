"""Linear operators applied to wavefunction fields (overlap, preconditioners)."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import jax
import jax.numpy as jnp

from .kpoints import KField, kmap


@runtime_checkable
class Operator(Protocol):
    """A per-k linear operator acting on the columns of a wavefunction field."""

    def apply(self, X: KField) -> KField: ...


class Identity:
    def apply(self, X: KField) -> KField:
        return X

    def __repr__(self) -> str:
        return "Identity()"


@jax.jit
def teter(x: jax.Array) -> jax.Array:
    """Teter-Payne-Allan kinetic preconditioner, x = kinetic energy of the basis function."""
    num = 27.0 + x * (18.0 + x * (12.0 + 8.0 * x))
    return num / (num + 16.0 * x**4)


class TeterPreconditioner:
    """Diagonal preconditioner built from the kinetic energies of the basis functions."""

    def __init__(self, ekin: KField):
        self.diagonal = kmap(teter, ekin)

    def apply(self, X: KField) -> KField:
        return kmap(lambda k, x: k[:, None] * x, self.diagonal, X)


class MatrixOperator:
    """Dense per-k matrix, e.g. an explicit overlap or its inverse."""

    def __init__(self, matrices: KField):
        self.matrices = matrices

    def apply(self, X: KField) -> KField:
        return self.matrices @ X

    def inverse(self) -> "MatrixOperator":
        return MatrixOperator(kmap(jnp.linalg.inv, self.matrices))
