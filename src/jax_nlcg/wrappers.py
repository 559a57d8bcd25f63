"""Entry points with a fixed execution placement.

The first location names where the model keeps its fields (fetch), the second
where the optimizer arithmetic runs (compute); a single location means both.
Requesting a device when JAX has no GPU backend raises `ConfigurationError`
before the model is touched.
"""

from .main import NLCGInfo, nlcg, nlcg_us
from .utils import Placement, Space


def nlcg_cpu(energy, smearing, temperature, maxiter, tol, kappa, tau, restart, **kwargs) -> NLCGInfo:
    placement = Placement.from_spaces(Space.HOST, Space.HOST)
    return nlcg(energy, smearing, temperature, maxiter, tol, kappa, tau, restart, placement=placement, **kwargs)


def nlcg_device(energy, smearing, temperature, maxiter, tol, kappa, tau, restart, **kwargs) -> NLCGInfo:
    placement = Placement.from_spaces(Space.DEVICE, Space.DEVICE)
    return nlcg(energy, smearing, temperature, maxiter, tol, kappa, tau, restart, placement=placement, **kwargs)


def nlcg_device_cpu(energy, smearing, temperature, maxiter, tol, kappa, tau, restart, **kwargs) -> NLCGInfo:
    placement = Placement.from_spaces(Space.DEVICE, Space.HOST)
    return nlcg(energy, smearing, temperature, maxiter, tol, kappa, tau, restart, placement=placement, **kwargs)


def nlcg_cpu_device(energy, smearing, temperature, maxiter, tol, kappa, tau, restart, **kwargs) -> NLCGInfo:
    placement = Placement.from_spaces(Space.HOST, Space.DEVICE)
    return nlcg(energy, smearing, temperature, maxiter, tol, kappa, tau, restart, placement=placement, **kwargs)


def nlcg_us_cpu(energy, us_precond, overlap, smearing, temperature, maxiter, tol, kappa, tau, restart, **kwargs) -> NLCGInfo:
    placement = Placement.from_spaces(Space.HOST, Space.HOST)
    return nlcg_us(
        energy, us_precond, overlap, smearing, temperature, maxiter, tol, kappa, tau, restart,
        placement=placement, **kwargs,
    )


def nlcg_us_device(energy, us_precond, overlap, smearing, temperature, maxiter, tol, kappa, tau, restart, **kwargs) -> NLCGInfo:
    placement = Placement.from_spaces(Space.DEVICE, Space.DEVICE)
    return nlcg_us(
        energy, us_precond, overlap, smearing, temperature, maxiter, tol, kappa, tau, restart,
        placement=placement, **kwargs,
    )


def nlcg_us_device_cpu(energy, us_precond, overlap, smearing, temperature, maxiter, tol, kappa, tau, restart, **kwargs) -> NLCGInfo:
    placement = Placement.from_spaces(Space.DEVICE, Space.HOST)
    return nlcg_us(
        energy, us_precond, overlap, smearing, temperature, maxiter, tol, kappa, tau, restart,
        placement=placement, **kwargs,
    )


def nlcg_us_cpu_device(energy, us_precond, overlap, smearing, temperature, maxiter, tol, kappa, tau, restart, **kwargs) -> NLCGInfo:
    placement = Placement.from_spaces(Space.HOST, Space.DEVICE)
    return nlcg_us(
        energy, us_precond, overlap, smearing, temperature, maxiter, tol, kappa, tau, restart,
        placement=placement, **kwargs,
    )
