import jax.numpy as jnp
import numpy as np
import pytest

from jax_nlcg.kpoints import KField, KPointWeights, SerialComm, kmap, ksum
from jax_nlcg.smearing import (
    Smearing,
    SmearingType,
    fermi_dirac,
    fermi_dirac_entropy,
    gaussian_spline,
    gaussian_spline_delta,
    gaussian_spline_entropy,
    kb,
)

KINDS = [SmearingType.FERMI_DIRAC, SmearingType.GAUSSIAN_SPLINE]


@pytest.fixture
def ek():
    return KField(
        {
            (0, 0): jnp.array([-0.4, -0.1, 0.0, 0.05, 0.3]),
            (1, 0): jnp.array([-0.35, -0.12, 0.02, 0.1, 0.45]),
        }
    )


@pytest.mark.parametrize("kind", KINDS)
def test_electron_count(kind, ek, weights):
    smearing = Smearing(kind, 3000.0, 3.0, 2.0, weights)
    fn, mu = smearing.fn(ek)
    assert ksum(fn * weights.values, weights.commk) == pytest.approx(3.0, abs=1e-10)
    for f in fn.values():
        assert np.all(np.asarray(f) >= 0) and np.all(np.asarray(f) <= 2.0)
    assert -0.4 < mu < 0.45


@pytest.mark.parametrize("kind", KINDS)
def test_entropy_is_nonpositive_and_pure(kind, ek, weights):
    smearing = Smearing(kind, 3000.0, 3.0, 2.0, weights)
    fn, _ = smearing.fn(ek)
    ts = smearing.entropy(fn)
    assert ts <= 0
    assert smearing.entropy(fn) == ts


@pytest.mark.parametrize("kind", KINDS)
def test_delta_is_derivative_wrt_mu(kind, ek, weights):
    smearing = Smearing(kind, 3000.0, 3.0, 2.0, weights)
    mu, h = 0.01, 1e-7
    fd = (smearing.occupation(ek, mu + h) - smearing.occupation(ek, mu - h)) / (2 * h)
    delta = smearing.delta(ek, mu)
    for k in ek:
        np.testing.assert_allclose(delta[k], fd[k], rtol=1e-5, atol=1e-8)


def test_fermi_dirac_values():
    x = jnp.array([-40.0, 0.0, 40.0])
    np.testing.assert_allclose(fermi_dirac(x), [0.0, 0.5, 1.0], atol=1e-15)
    np.testing.assert_allclose(fermi_dirac_entropy(jnp.array([0.0, 0.5, 1.0])), [0.0, np.log(2), 0.0], atol=1e-12)


def test_gaussian_spline_is_continuous_at_zero():
    eps = 1e-9
    lo, hi = gaussian_spline(jnp.array([-eps, eps]))
    assert float(lo) == pytest.approx(0.5, abs=1e-8)
    assert float(hi) == pytest.approx(0.5, abs=1e-8)
    dlo, dhi = gaussian_spline_delta(jnp.array([-eps, eps]))
    assert float(dlo) == pytest.approx(float(dhi))


def test_gaussian_spline_entropy_inverts_occupation():
    x = jnp.linspace(-3.0, 3.0, 13)
    f = gaussian_spline(x)
    S = gaussian_spline_entropy(f)
    # entropy is even in x
    np.testing.assert_allclose(S, S[::-1], rtol=1e-8)
    # dS/dx = -x f'(x)
    h = 1e-6
    dS = (gaussian_spline_entropy(gaussian_spline(x + h)) - gaussian_spline_entropy(gaussian_spline(x - h))) / (2 * h)
    np.testing.assert_allclose(dS, -x * gaussian_spline_delta(x), atol=1e-6)


def test_kelvin_to_hartree():
    weights = KPointWeights(KField({0: 1.0}), SerialComm())
    assert Smearing("fermi-dirac", 1000.0, 1.0, 2.0, weights).kT == pytest.approx(1000.0 * kb)


def test_invalid_temperature():
    weights = KPointWeights(KField({0: 1.0}), SerialComm())
    with pytest.raises(ValueError):
        Smearing("fermi-dirac", 0.0, 1.0, 2.0, weights)
    with pytest.raises(ValueError):
        Smearing("cold", 100.0, 1.0, 2.0, weights)


def test_degenerate_levels(weights):
    ek = kmap(lambda w: jnp.zeros(4), weights.values)
    smearing = Smearing("fermi-dirac", 300.0, 2.0, 2.0, weights)
    fn, _ = smearing.fn(ek)
    for f in fn.values():
        np.testing.assert_allclose(f, 0.5, atol=1e-9)
