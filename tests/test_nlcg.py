import re

import jax.numpy as jnp
import numpy as np
import pytest
from loguru import logger

from jax_nlcg import (
    ConfigurationError,
    InvariantViolation,
    NLCGConfig,
    NLCGStatus,
    nlcg,
    nlcg_cpu,
    nlcg_us,
    run,
)
from jax_nlcg.energy import FreeEnergy
from jax_nlcg.gradient import StandardGradient
from jax_nlcg.kpoints import KField
from jax_nlcg.models import FixedHamiltonianModel, random_model, random_ultrasoft_model

PARAMS = dict(maxiter=50, tol=1e-6, kappa=0.3, tau=0.1, restart=5)


class BrokenAfterModel(FixedHamiltonianModel):
    """Adds a large penalty to every evaluation after ``H X`` was read ``n`` times."""

    def __init__(self, *args, fail_after=3, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_after = fail_after
        self.hx_reads = 0

    def get_HX(self):
        self.hx_reads += 1
        return super().get_HX()

    def compute(self):
        super().compute()
        if self.hx_reads >= self.fail_after:
            self._energy += 1e3


class AscendingConjugate(StandardGradient):
    """Every recombined direction points uphill."""

    def conjugate(self, delta_x, Z_xp, X, SX, gamma):
        return -5.0 * delta_x


class VanishingGradient(StandardGradient):
    """Reports a zero wavefunction gradient after the first evaluation."""

    def __init__(self, preconditioner=None):
        super().__init__(preconditioner)
        self.calls = 0

    def gradients(self, X, HX, fn, wk):
        self.calls += 1
        grad = super().gradients(X, HX, fn, wk)
        if self.calls > 1:
            return grad._replace(g_X=0.0 * grad.g_X)
        return grad


def _by_iteration(messages):
    chunks = {}
    current = 0
    for m in messages:
        text = m.strip()
        if re.fullmatch(r"Iteration \d+", text):
            current = int(text.split()[1])
        chunks.setdefault(current, []).append(text)
    return chunks


def test_converges_to_known_minimum(insulating_model):
    T = 1000.0
    info = nlcg(insulating_model, "fermi-dirac", T, **PARAMS)
    assert info.status is NLCGStatus.CONVERGED
    assert abs(info.tolerance) < 1e-6
    assert 1 <= info.iterations <= PARAMS["maxiter"]
    assert info.free_energy == pytest.approx(insulating_model.ground_state_free_energy(T, "fermi-dirac"), abs=1e-5)
    assert info.free_energy == pytest.approx(info.ks_energy + info.entropy)


@pytest.mark.parametrize("smearing", ["fermi-dirac", "gaussian-spline"])
def test_metallic_minimum(smearing):
    model = random_model(nk=2, nbasis=8, nbands=4, nelectrons=3.0, seed=5)
    T = 20000.0
    info = nlcg(model, smearing, T, maxiter=200, tol=1e-7, kappa=0.3, tau=0.1, restart=10)
    assert info.status is NLCGStatus.CONVERGED
    assert info.entropy < 0
    assert info.free_energy == pytest.approx(model.ground_state_free_energy(T, smearing), abs=1e-5)


def test_final_state_is_orthonormal(insulating_model):
    nlcg(insulating_model, "fermi-dirac", 1000.0, **PARAMS)
    for x in insulating_model.get_X().values():
        np.testing.assert_allclose(jnp.conj(x.T) @ x, jnp.eye(x.shape[1]), atol=1e-10)


def test_free_energy_decreases_monotonically():
    energies = []
    for maxiter in (1, 3, 6):
        model = random_model(nk=2, nbasis=10, nbands=4, nelectrons=4.0, gap=0.5, seed=3)
        info = nlcg(model, "fermi-dirac", 1000.0, maxiter=maxiter, tol=1e-12, kappa=0.3, tau=0.1, restart=5)
        energies.append(info.free_energy)
    assert energies[0] > energies[1] > energies[2]


def test_immediate_convergence_skips_line_search(insulating_model):
    info = nlcg(insulating_model, "fermi-dirac", 1000.0, maxiter=10, tol=1e6, kappa=0.3, tau=0.1, restart=5)
    assert info.status is NLCGStatus.CONVERGED
    assert info.iterations == 1
    # initial evaluation plus the one with consistent occupations
    assert insulating_model.ncompute == 2


def test_descent_failure_returns_previous_summary():
    reference = random_model(nk=2, nbasis=10, nbands=4, nelectrons=4.0, gap=0.5, seed=3)
    model = BrokenAfterModel(
        {k: h for k, h in reference.H.items()}, nbands=4, nelectrons=4.0, fail_after=3, seed=3
    )
    info = nlcg(model, "fermi-dirac", 1000.0, maxiter=50, tol=1e-12, kappa=0.3, tau=0.1, restart=5, max_trials=4)
    assert info.status is NLCGStatus.DESCENT_FAILURE
    assert info.iterations == 2
    assert info.free_energy < 1e2


def test_flat_model_aborts_on_initial_slope():
    H = {(k, 0): np.zeros((6, 6)) for k in range(2)}
    model = FixedHamiltonianModel(H, nbands=3, nelectrons=2.0)
    with pytest.raises(InvariantViolation):
        nlcg(model, "fermi-dirac", 1000.0, **PARAMS)


def test_max_iterations_status(insulating_model):
    info = nlcg(insulating_model, "fermi-dirac", 1000.0, maxiter=2, tol=1e-14, kappa=0.3, tau=0.1, restart=5)
    assert info.status is NLCGStatus.MAX_ITERATIONS
    assert info.iterations == 2


def test_ultrasoft_converges():
    model, overlap, precond = random_ultrasoft_model(nk=2, nbasis=10, nbands=4, nelectrons=4.0, gap=0.5, seed=11)
    T = 1000.0
    info = nlcg_us(model, precond, overlap, "fermi-dirac", T, **PARAMS)
    assert info.status is NLCGStatus.CONVERGED
    assert info.free_energy == pytest.approx(model.ground_state_free_energy(T, "fermi-dirac"), abs=1e-5)
    for k, x in model.get_X().items():
        g = jnp.conj(x.T) @ (model.S[k] @ x)
        np.testing.assert_allclose(g, jnp.eye(x.shape[1]), atol=1e-10)


def test_run_from_config(insulating_model, tmp_path):
    log_file = tmp_path / "nlcg.out"
    config = NLCGConfig(temperature=1000.0, log_file=str(log_file), **PARAMS)
    info = run(insulating_model, config)
    assert info.status is NLCGStatus.CONVERGED
    text = log_file.read_text()
    assert "F (initial)" in text
    assert "NLCG SUCCESS" in text


def test_host_placement(insulating_model):
    info = nlcg_cpu(insulating_model, "fermi-dirac", 1000.0, **PARAMS)
    assert info.status is NLCGStatus.CONVERGED
    assert isinstance(insulating_model.get_X(), KField)


def test_failure_scan_is_logged():
    reference = random_model(nk=2, nbasis=10, nbands=4, nelectrons=4.0, gap=0.5, seed=3)
    model = BrokenAfterModel({k: h for k, h in reference.H.items()}, nbands=4, nelectrons=4.0, seed=3)
    messages = []
    sink_id = logger.add(messages.append, format="{message}", level="INFO")
    try:
        info = nlcg(
            model, "fermi-dirac", 1000.0, maxiter=50, tol=1e-12, kappa=0.3, tau=0.1, restart=5,
            max_trials=2, failure_scan=4,
        )
    finally:
        logger.remove(sink_id)
    assert info.status is NLCGStatus.DESCENT_FAILURE
    assert any("free energy along Z_x" in m for m in messages)
    assert any("No descent direction found" in m for m in messages)


def test_descent_failure_restores_accepted_point():
    reference = random_model(nk=2, nbasis=10, nbands=4, nelectrons=4.0, gap=0.5, seed=3)
    model = BrokenAfterModel(
        {k: h for k, h in reference.H.items()}, nbands=4, nelectrons=4.0, fail_after=3, seed=3
    )
    info = nlcg(
        model, "fermi-dirac", 1000.0, maxiter=50, tol=1e-12, kappa=0.3, tau=0.1, restart=5,
        max_trials=4, failure_scan=3,
    )
    assert info.status is NLCGStatus.DESCENT_FAILURE
    # evaluate the returned state on the undamaged Hamiltonian
    check = FreeEnergy(reference, 1000.0, "fermi-dirac")
    check.compute(model.get_X(), model.get_fn())
    assert check.get_F() == pytest.approx(info.free_energy, abs=1e-12)


def test_uphill_direction_forces_restart_next_iteration(insulating_model, monkeypatch):
    monkeypatch.setattr("jax_nlcg.main.StandardGradient", AscendingConjugate)
    maxiter = 6
    messages = []
    sink_id = logger.add(messages.append, format="{message}", level="DEBUG")
    try:
        info = nlcg(
            insulating_model, "fermi-dirac", 1000.0, maxiter=maxiter, tol=1e-14, kappa=0.0, tau=0.1, restart=100
        )
    finally:
        logger.remove(sink_id)

    assert info.status is NLCGStatus.MAX_ITERATIONS
    chunks = _by_iteration(messages)
    forced = [i for i, chunk in chunks.items() if ">> slope > 0, force restart." in chunk]
    restarted = {i for i, chunk in chunks.items() if "CG restart" in chunk}
    assert forced
    for i in forced:
        if i < maxiter:
            assert i + 1 in restarted
    initial = next(float(m.split("=")[1]) for m in messages if m.startswith("F (initial)"))
    assert info.free_energy < initial
    assert info.tolerance < 0


def test_no_descent_after_restart_is_fatal(insulating_model, monkeypatch):
    monkeypatch.setattr("jax_nlcg.main.StandardGradient", VanishingGradient)
    with pytest.raises(InvariantViolation, match="no descent direction"):
        nlcg(insulating_model, "fermi-dirac", 1000.0, maxiter=10, tol=1e-14, kappa=0.0, tau=0.1, restart=1)


def test_run_ultrasoft_from_config(ultrasoft_model):
    model, overlap, precond = ultrasoft_model
    T = 1000.0
    config = NLCGConfig(temperature=T, variant="ultrasoft", **PARAMS)
    info = run(model, config, overlap=overlap, preconditioner=precond)
    assert info.status is NLCGStatus.CONVERGED
    assert info.free_energy == pytest.approx(model.ground_state_free_energy(T, "fermi-dirac"), abs=1e-5)


def test_run_ultrasoft_requires_overlap(ultrasoft_model):
    model, _, _ = ultrasoft_model
    with pytest.raises(ConfigurationError):
        run(model, NLCGConfig(temperature=1000.0, variant="ultrasoft"))
