"""Physics model contract and the Mermin free energy built on top of it."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .kpoints import KField, KPointWeights
from .smearing import Smearing, SmearingType
from .utils import Placement


@runtime_checkable
class EnergyModel(Protocol):
    """Kohn-Sham energy evaluator provided by the electronic-structure code.

    The model is stateful: ``set_X`` / ``set_fn`` replace the wavefunctions and
    occupations, ``compute`` evaluates the total energy and ``H X`` for them.
    """

    def compute(self) -> None: ...

    def total_energy(self) -> float: ...

    def get_X(self) -> KField: ...

    def set_X(self, X: KField) -> None: ...

    def get_fn(self) -> KField: ...

    def set_fn(self, fn: KField) -> None: ...

    def get_HX(self) -> KField: ...

    def get_ek(self) -> KField: ...

    def get_wk(self) -> KPointWeights: ...

    def get_gkvec_ekin(self) -> KField: ...

    def occupancy(self) -> float: ...

    def nelectrons(self) -> float: ...


class FreeEnergy:
    """F = E_KS - T S for an `EnergyModel` and a smearing kind.

    Fields read from the model are moved to the compute device, fields pushed
    into the model are moved back to the device the model keeps them on.
    """

    def __init__(
        self,
        energy: EnergyModel,
        temperature: float,
        smearing: SmearingType | str,
        placement: Placement | None = None,
    ):
        self.energy = energy
        self.temperature = float(temperature)
        self.placement = placement
        self.smearing = Smearing(
            smearing, temperature, energy.nelectrons(), energy.occupancy(), self.get_wk()
        )
        self._ks_energy = None
        self._entropy = None

    def _fetch(self, field: KField) -> KField:
        if self.placement is None:
            return field
        return field.device_put(self.placement.compute)

    def _push(self, field: KField) -> KField:
        if self.placement is None:
            return field
        return field.device_put(self.placement.fetch)

    def compute(self, X: KField | None = None, fn: KField | None = None) -> None:
        """Evaluate at the model's current state, or at ``(X, fn)``."""
        if (X is None) != (fn is None):
            raise TypeError("compute() takes either no arguments or both X and fn")
        if X is not None:
            self.energy.set_X(self._push(X))
            self.energy.set_fn(self._push(fn))
        self.energy.compute()
        self._ks_energy = float(self.energy.total_energy())
        self._entropy = self.smearing.entropy(self.get_fn())

    def _require_computed(self):
        if self._ks_energy is None:
            raise RuntimeError("FreeEnergy.compute() has not been called")

    def get_F(self) -> float:
        self._require_computed()
        return self._ks_energy + self._entropy

    def ks_energy(self) -> float:
        self._require_computed()
        return self._ks_energy

    def get_entropy(self) -> float:
        """The ``-T S`` term."""
        self._require_computed()
        return self._entropy

    def get_X(self) -> KField:
        return self._fetch(self.energy.get_X())

    def get_HX(self) -> KField:
        return self._fetch(self.energy.get_HX())

    def get_fn(self) -> KField:
        return self._fetch(self.energy.get_fn())

    def get_ek(self) -> KField:
        return self._fetch(self.energy.get_ek())

    def get_wk(self) -> KPointWeights:
        wk = self.energy.get_wk()
        return KPointWeights(self._fetch(wk.values), wk.commk)

    def get_gkvec_ekin(self) -> KField:
        return self._fetch(self.energy.get_gkvec_ekin())

    def occupancy(self) -> float:
        return self.energy.occupancy()

    def nelectrons(self) -> float:
        return self.energy.nelectrons()
