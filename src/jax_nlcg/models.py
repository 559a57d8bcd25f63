"""A non-self-consistent reference model with a fixed Hamiltonian per k-point.

Useful to exercise the optimizer without an electronic-structure code: the
total energy is ``E = sum_k w_k sum_n fn_n <x_n|H_k|x_n>``, so the minimum of
the Mermin functional over ``nbands`` S-orthonormal states is known in closed
form (lowest generalized eigenpairs of ``(H_k, S_k)``).
"""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np

from .kpoints import Communicator, KField, KPointWeights, SerialComm, kmap
from .operators import Identity, MatrixOperator
from .smearing import Smearing, SmearingType


def _whitening(S):
    # L^{-1} with S = L L^H
    L = jnp.linalg.cholesky(S)
    return jnp.linalg.inv(L)


class FixedHamiltonianModel:
    """`EnergyModel` for fixed Hermitian ``H_k`` and optional overlap ``S_k``."""

    def __init__(
        self,
        hamiltonians: dict,
        nbands: int,
        nelectrons: float,
        occupancy: float = 2.0,
        weights: dict | None = None,
        overlaps: dict | None = None,
        ekin: dict | None = None,
        commk: Communicator | None = None,
        seed: int = 0,
    ):
        self.H = KField(hamiltonians)
        keys = list(self.H.keys())
        nbasis = self.H[keys[0]].shape[0]
        if nbands > nbasis:
            raise ValueError(f"nbands = {nbands} exceeds the basis size {nbasis}")
        self.nbands = int(nbands)
        self._nelectrons = float(nelectrons)
        self._occupancy = float(occupancy)
        self.commk = commk or SerialComm()
        if weights is None:
            weights = {k: 1.0 / len(keys) for k in keys}
        self.wk = KField({k: jnp.asarray(weights[k], dtype=jnp.float64) for k in keys})
        self.S = KField(overlaps) if overlaps is not None else None
        if ekin is None:
            ekin = {k: np.zeros(nbasis) for k in keys}
        self.ekin = KField(ekin)

        self._X = self._initial_guess(np.random.default_rng(seed))
        self._fn = kmap(lambda x: jnp.zeros(x.shape[1]), self._X)
        self._HX = None
        self._energy = None
        self.ncompute = 0

    def _initial_guess(self, rng) -> KField:
        """Random S-orthonormal states that diagonalize the subspace Hamiltonian."""
        blocks = {}
        for k, h in self.H.items():
            n = h.shape[0]
            a = rng.standard_normal((n, self.nbands)) + 1j * rng.standard_normal((n, self.nbands))
            a = jnp.asarray(a)
            sa = a if self.S is None else self.S[k] @ a
            # a L^{-H} is S-orthonormal for a^H S a = L L^H
            linv = _whitening(jnp.conj(a.T) @ sa)
            x = a @ jnp.conj(linv.T)
            _, u = jnp.linalg.eigh(jnp.conj(x.T) @ h @ x)
            blocks[k] = x @ u
        return KField(blocks)

    def compute(self) -> None:
        self.ncompute += 1
        self._HX = self.H @ self._X
        energies = kmap(
            lambda x, hx, f, w: w * jnp.sum(f * jnp.real(jnp.sum(jnp.conj(x) * hx, axis=0))),
            self._X,
            self._HX,
            self._fn,
            self.wk,
        )
        local = float(sum(float(e) for e in energies.values()))
        self._energy = self.commk.allreduce(local)

    def total_energy(self) -> float:
        return self._energy

    def get_X(self) -> KField:
        return self._X

    def set_X(self, X: KField) -> None:
        self._X = X

    def get_fn(self) -> KField:
        return self._fn

    def set_fn(self, fn: KField) -> None:
        self._fn = fn

    def get_HX(self) -> KField:
        return self._HX

    def get_ek(self) -> KField:
        """Rayleigh quotients of the current states."""
        return kmap(lambda x, hx: jnp.real(jnp.sum(jnp.conj(x) * hx, axis=0)), self._X, self._HX)

    def get_wk(self) -> KPointWeights:
        return KPointWeights(self.wk, self.commk)

    def get_gkvec_ekin(self) -> KField:
        return self.ekin

    def occupancy(self) -> float:
        return self._occupancy

    def nelectrons(self) -> float:
        return self._nelectrons

    def band_energies(self) -> KField:
        """Lowest ``nbands`` eigenvalues of the generalized problem ``H x = e S x``."""
        blocks = {}
        for k, h in self.H.items():
            if self.S is not None:
                linv = _whitening(self.S[k])
                h = linv @ h @ jnp.conj(linv.T)
            blocks[k] = jnp.linalg.eigvalsh(h)[: self.nbands]
        return KField(blocks)

    def ground_state_free_energy(self, temperature: float, smearing: SmearingType | str) -> float:
        """Exact minimum of the Mermin free energy of this model."""
        smear = Smearing(smearing, temperature, self._nelectrons, self._occupancy, self.get_wk())
        ek = self.band_energies()
        fn, _ = smear.fn(ek)
        band = kmap(lambda e, f, w: w * jnp.sum(e * f), ek, fn, self.wk)
        local = float(sum(float(b) for b in band.values()))
        return self.commk.allreduce(local) + smear.entropy(fn)


def _random_unitary(rng, n):
    q, r = np.linalg.qr(rng.standard_normal((n, n)) + 1j * rng.standard_normal((n, n)))
    return q * (np.diag(r) / np.abs(np.diag(r)))


def _hamiltonians(rng, nk, nbasis, nocc, gap):
    blocks = {}
    for k in range(nk):
        levels = np.sort(rng.uniform(-1.0, 1.0, nbasis))
        levels[nocc:] += gap
        q = _random_unitary(rng, nbasis)
        blocks[(k, 0)] = (q * levels) @ q.conj().T
    return blocks


def random_model(
    nk: int = 2,
    nbasis: int = 10,
    nbands: int = 4,
    nelectrons: float = 4.0,
    occupancy: float = 2.0,
    gap: float = 0.0,
    kinetic: float = 0.0,
    seed: int = 0,
) -> FixedHamiltonianModel:
    """Random model; ``gap`` separates the lowest ``nelectrons / occupancy`` levels.

    With ``kinetic > 0`` the basis functions get kinetic energies spread over
    ``[0, kinetic]``, which switches on the Teter preconditioner.
    """
    rng = np.random.default_rng(seed)
    nocc = int(round(nelectrons / occupancy))
    H = _hamiltonians(rng, nk, nbasis, nocc, gap)
    ekin = {k: np.linspace(0.0, kinetic, nbasis) for k in H}
    return FixedHamiltonianModel(H, nbands, nelectrons, occupancy, ekin=ekin, seed=seed)


def random_ultrasoft_model(
    nk: int = 2,
    nbasis: int = 10,
    nbands: int = 4,
    nelectrons: float = 4.0,
    occupancy: float = 2.0,
    gap: float = 0.0,
    overlap_strength: float = 0.2,
    seed: int = 0,
) -> tuple[FixedHamiltonianModel, MatrixOperator, Identity]:
    """Random model with overlap ``S = 1 + Q``, ``Q`` positive semi-definite.

    Returns ``(model, overlap, preconditioner)``.
    """
    rng = np.random.default_rng(seed)
    nocc = int(round(nelectrons / occupancy))
    H = _hamiltonians(rng, nk, nbasis, nocc, gap)
    S = {}
    for k in H:
        b = rng.standard_normal((nbasis, 2)) + 1j * rng.standard_normal((nbasis, 2))
        S[k] = np.eye(nbasis) + overlap_strength * (b @ b.conj().T) / nbasis
    model = FixedHamiltonianModel(H, nbands, nelectrons, occupancy, overlaps=S, seed=seed)
    return model, MatrixOperator(model.S), Identity()
