"""k-point indexed fields and their reductions.

Every field the optimizer handles (wavefunctions, band energies, occupations,
subspace matrices, ...) is a `KField`: a mapping from a (k-point, spin) index
to a dense block. Blocks are plain ``jax.Array`` objects, so arithmetic on a
field is dispatched asynchronously per index; reductions force all pending
blocks before summing over the k-point communicator.
"""

from __future__ import annotations

from typing import Any, Callable, Hashable, Iterable, NamedTuple, Protocol

import jax
import jax.numpy as jnp
import numpy as np

from .utils import herm


class Communicator(Protocol):
    """Collective sum over the partition of the k-point index set."""

    rank: int
    size: int

    def allreduce(self, value: Any) -> Any: ...


class SerialComm:
    """All k-points live in this process."""

    rank = 0
    size = 1

    def allreduce(self, value):
        return value

    def __repr__(self) -> str:
        return "SerialComm()"


class MPIComm:
    """Adapter for an mpi4py-style communicator (``allreduce`` defaults to a sum)."""

    def __init__(self, comm):
        self._comm = comm
        self.rank = comm.Get_rank()
        self.size = comm.Get_size()

    def allreduce(self, value):
        return self._comm.allreduce(value)

    def __repr__(self) -> str:
        return f"MPIComm(rank={self.rank}, size={self.size})"


@jax.tree_util.register_pytree_node_class
class KField:
    """Immutable mapping ``index -> jax.Array`` over the local k-points."""

    __slots__ = ("_blocks",)

    def __init__(self, blocks: dict | Iterable[tuple[Hashable, Any]] | None = None):
        blocks = dict(blocks or {})
        self._blocks = {k: jnp.asarray(v) for k, v in blocks.items()}

    # -- pytree ----------------------------------------------------------------
    def tree_flatten(self):
        keys = tuple(self._blocks)
        return tuple(self._blocks[k] for k in keys), keys

    @classmethod
    def tree_unflatten(cls, keys, children):
        out = cls.__new__(cls)
        out._blocks = dict(zip(keys, children))
        return out

    # -- mapping ---------------------------------------------------------------
    def __getitem__(self, key):
        return self._blocks[key]

    def __contains__(self, key) -> bool:
        return key in self._blocks

    def __iter__(self):
        return iter(self._blocks)

    def __len__(self) -> int:
        return len(self._blocks)

    def keys(self):
        return self._blocks.keys()

    def values(self):
        return self._blocks.values()

    def items(self):
        return self._blocks.items()

    def __repr__(self) -> str:
        shapes = ", ".join(f"{k}: {tuple(v.shape)}" for k, v in self._blocks.items())
        return f"KField({{{shapes}}})"

    # -- arithmetic ------------------------------------------------------------
    def _binary(self, other, op):
        if isinstance(other, KField):
            if self._blocks.keys() != other._blocks.keys():
                raise ValueError("KField operands are defined on different k-point sets")
            return KField.tree_unflatten(
                tuple(self._blocks), [op(v, other._blocks[k]) for k, v in self._blocks.items()]
            )
        return KField.tree_unflatten(tuple(self._blocks), [op(v, other) for v in self._blocks.values()])

    def __add__(self, other):
        return self._binary(other, lambda a, b: a + b)

    def __radd__(self, other):
        return self._binary(other, lambda a, b: b + a)

    def __sub__(self, other):
        return self._binary(other, lambda a, b: a - b)

    def __rsub__(self, other):
        return self._binary(other, lambda a, b: b - a)

    def __mul__(self, other):
        return self._binary(other, lambda a, b: a * b)

    def __rmul__(self, other):
        return self._binary(other, lambda a, b: b * a)

    def __truediv__(self, other):
        return self._binary(other, lambda a, b: a / b)

    def __matmul__(self, other):
        return self._binary(other, lambda a, b: a @ b)

    def __neg__(self):
        return kmap(jnp.negative, self)

    @property
    def H(self) -> "KField":
        """Conjugate transpose of every block."""
        return kmap(lambda x: jnp.conj(jnp.swapaxes(x, -1, -2)), self)

    # -- placement / synchronisation -------------------------------------------
    def device_put(self, device) -> "KField":
        if device is None:
            return self
        return jax.device_put(self, device)

    def block_until_ready(self) -> "KField":
        jax.block_until_ready(self._blocks)
        return self


class KPointWeights(NamedTuple):
    """k-point weights together with the communicator that partitions them."""

    values: KField
    commk: Communicator


def kmap(fn: Callable, *fields: KField) -> KField:
    """Apply ``fn`` block by block; blocks are dispatched, not awaited."""
    first = fields[0]
    for f in fields[1:]:
        if f.keys() != first.keys():
            raise ValueError("kmap operands are defined on different k-point sets")
    keys = tuple(first.keys())
    return KField.tree_unflatten(keys, [fn(*(f[k] for f in fields)) for k in keys])


def kmap_pair(fn: Callable, *fields: KField) -> tuple[KField, KField]:
    """Like `kmap` for a ``fn`` returning two blocks, e.g. an eigendecomposition."""
    keys = tuple(fields[0].keys())
    results = [fn(*(f[k] for f in fields)) for k in keys]
    return (
        KField.tree_unflatten(keys, [r[0] for r in results]),
        KField.tree_unflatten(keys, [r[1] for r in results]),
    )


def zeros_like(field: KField) -> KField:
    return kmap(jnp.zeros_like, field)


def diag(field: KField) -> KField:
    """Vector blocks become diagonal matrices, matrix blocks their diagonal."""
    return kmap(jnp.diag, field)


@jax.jit
def _eigh(a):
    return jnp.linalg.eigh(herm(a))


def eigh(field: KField) -> tuple[KField, KField]:
    """Per-k Hermitian eigendecomposition, eigenvalues ascending."""
    return kmap_pair(_eigh, field)


def _force(*fields: KField) -> None:
    jax.block_until_ready([f._blocks for f in fields])


def inner(a: KField, b: KField) -> KField:
    """Per-k Hermitian inner product ``<a, b>`` (``a`` conjugated)."""
    return kmap(jnp.vdot, a, b)


def ksum(field: KField, comm: Communicator) -> float:
    """Sum of all entries of all blocks, reduced over the communicator."""
    _force(field)
    local = float(np.sum([np.real(np.sum(np.asarray(v))) for v in field.values()]))
    return comm.allreduce(local)


def innerh_reduce(a: KField, b: KField, comm: Communicator) -> float:
    """``Re sum_k <a_k, b_k>`` over all k-points of the communicator."""
    return ksum(inner(a, b), comm)


def l2norm(field: KField, comm: Communicator | None = None) -> float:
    comm = comm or SerialComm()
    return float(np.sqrt(innerh_reduce(field, field, comm)))
