"""jax_nlcg

Geodesic nonlinear conjugate-gradient minimization of the Mermin free energy
over orthonormality-constrained wavefunctions and the subspace occupation
variable, with k-point fields held as JAX arrays.
"""

from __future__ import annotations

from importlib import metadata

import jax

# slope tolerances around 1e-9 need double precision
jax.config.update("jax_enable_x64", True)

try:  # pragma: no cover - metadata only
    __version__ = metadata.version("jax-nlcg")
except metadata.PackageNotFoundError:  # pragma: no cover - package not installed
    pass

from .config import LineSearchConfig, NLCGConfig  # noqa: E402
from .energy import EnergyModel, FreeEnergy  # noqa: E402
from .exceptions import (  # noqa: E402
    ConfigurationError,
    DescentError,
    InvariantViolation,
    NLCGError,
    StepError,
)
from .kpoints import KField, KPointWeights, MPIComm, SerialComm  # noqa: E402
from .main import NLCGInfo, NLCGStatus, nlcg, nlcg_us, run  # noqa: E402
from .smearing import Smearing, SmearingType  # noqa: E402
from .wrappers import (  # noqa: E402
    nlcg_cpu,
    nlcg_cpu_device,
    nlcg_device,
    nlcg_device_cpu,
    nlcg_us_cpu,
    nlcg_us_cpu_device,
    nlcg_us_device,
    nlcg_us_device_cpu,
)

__all__ = [
    "ConfigurationError",
    "DescentError",
    "EnergyModel",
    "FreeEnergy",
    "InvariantViolation",
    "KField",
    "KPointWeights",
    "LineSearchConfig",
    "MPIComm",
    "NLCGConfig",
    "NLCGError",
    "NLCGInfo",
    "NLCGStatus",
    "SerialComm",
    "Smearing",
    "SmearingType",
    "StepError",
    "nlcg",
    "nlcg_cpu",
    "nlcg_cpu_device",
    "nlcg_device",
    "nlcg_device_cpu",
    "nlcg_us",
    "nlcg_us_cpu",
    "nlcg_us_cpu_device",
    "nlcg_us_device",
    "nlcg_us_device_cpu",
    "run",
]
