import numpy as np
import pytest

from jax_nlcg.energy import EnergyModel, FreeEnergy
from jax_nlcg.models import FixedHamiltonianModel
from jax_nlcg.utils import Placement


def test_model_satisfies_protocol(metallic_model):
    assert isinstance(metallic_model, EnergyModel)


def test_requires_compute_first(metallic_model):
    free_energy = FreeEnergy(metallic_model, 3000.0, "fermi-dirac")
    with pytest.raises(RuntimeError):
        free_energy.get_F()


def test_compute_needs_both_or_neither(metallic_model):
    free_energy = FreeEnergy(metallic_model, 3000.0, "fermi-dirac")
    free_energy.compute()
    with pytest.raises(TypeError):
        free_energy.compute(free_energy.get_X())


def test_free_energy_is_ks_plus_entropy(metallic_model):
    free_energy = FreeEnergy(metallic_model, 3000.0, "gaussian-spline", Placement.from_spaces())
    free_energy.compute()
    fn, _ = free_energy.smearing.fn(free_energy.get_ek())
    free_energy.compute(free_energy.get_X(), fn)
    assert free_energy.get_F() == pytest.approx(free_energy.ks_energy() + free_energy.get_entropy())
    assert free_energy.get_entropy() <= 0
    assert free_energy.ks_energy() == metallic_model.total_energy()


def test_ground_state_is_a_lower_bound(metallic_model):
    free_energy = FreeEnergy(metallic_model, 3000.0, "fermi-dirac")
    free_energy.compute()
    fn, _ = free_energy.smearing.fn(free_energy.get_ek())
    free_energy.compute(free_energy.get_X(), fn)
    assert metallic_model.ground_state_free_energy(3000.0, "fermi-dirac") < free_energy.get_F()


def test_too_many_bands():
    with pytest.raises(ValueError):
        FixedHamiltonianModel({(0, 0): np.eye(3)}, nbands=4, nelectrons=2.0)
