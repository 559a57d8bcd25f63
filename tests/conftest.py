import jax.numpy as jnp
import numpy as np
import pytest

import jax_nlcg  # noqa: F401  (enables double precision)
from jax_nlcg.kpoints import KField, KPointWeights, SerialComm
from jax_nlcg.models import random_model, random_ultrasoft_model


def random_field(rng, shapes, complex_=True):
    blocks = {}
    for k, shape in shapes.items():
        a = rng.standard_normal(shape)
        if complex_:
            a = a + 1j * rng.standard_normal(shape)
        blocks[k] = jnp.asarray(a)
    return KField(blocks)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def weights():
    return KPointWeights(KField({(0, 0): 0.25, (1, 0): 0.75}), SerialComm())


@pytest.fixture
def metallic_model():
    return random_model(nk=2, nbasis=8, nbands=4, nelectrons=3.0, gap=0.0, seed=7)


@pytest.fixture
def insulating_model():
    return random_model(nk=2, nbasis=10, nbands=4, nelectrons=4.0, gap=0.5, seed=3)


@pytest.fixture
def ultrasoft_model():
    return random_ultrasoft_model(nk=2, nbasis=10, nbands=4, nelectrons=4.0, gap=0.5, seed=11)
