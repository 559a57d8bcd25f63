"""Consistency checks for models, overlaps and the analytic gradient."""

from __future__ import annotations

from typing import NamedTuple, Sequence

import jax.numpy as jnp
from loguru import logger

from .energy import EnergyModel, FreeEnergy
from .geodesic import geodesic
from .gradient import GradEta, StandardGradient, compute_slope_single, evaluate
from .kpoints import innerh_reduce, l2norm
from .operators import Operator, TeterPreconditioner
from .smearing import SmearingType


class GradientCheck(NamedTuple):
    slope: float
    dts: tuple
    fd_slopes: tuple
    orthogonality: dict


class OverlapCheck(NamedTuple):
    norm_X: float
    norm_SX: float
    norm_SinvX: float
    trace_XSX: float
    error_S_Sinv: float
    error_Sinv_S: float


def check_gradient(
    energy: EnergyModel,
    temperature: float,
    smearing: SmearingType | str = SmearingType.FERMI_DIRAC,
    kappa: float = 0.3,
    dts: Sequence[float] = (1e-4, 1e-5, 1e-6),
    strategy=None,
) -> GradientCheck:
    """Compare the analytic slope along the steepest pair with forward differences of F.

    The model is left at its starting point with consistent occupations.
    """
    free_energy = FreeEnergy(energy, temperature, smearing)
    if strategy is None:
        strategy = StandardGradient(TeterPreconditioner(free_energy.get_gkvec_ekin()))
    wk = free_energy.get_wk()

    free_energy.compute()
    ek = free_energy.get_ek()
    fn, _ = free_energy.smearing.fn(ek)
    free_energy.compute(free_energy.get_X(), fn)
    F0 = free_energy.get_F()

    point = evaluate(free_energy, strategy, GradEta(temperature, kappa), ek)
    slope = compute_slope_single(point.g_X, point.delta_x, point.g_eta, point.delta_eta, wk.commk)

    fd = []
    for dt in dts:
        geodesic(free_energy, strategy, point.X, point.eta, point.delta_x, point.delta_eta, dt)
        fd.append((free_energy.get_F() - F0) / dt)
        logger.info(f"dt = {dt:.1e}: slope = {slope:.10e}, finite difference = {fd[-1]:.10e}")

    orthogonality = {
        k: float(jnp.max(jnp.abs(jnp.conj(point.SX[k].T) @ point.delta_x[k]))) for k in point.X
    }
    logger.info(f"max |X^H S delta_X| per k-point: {orthogonality}")

    free_energy.compute(point.X, point.fn)
    return GradientCheck(slope, tuple(dts), tuple(fd), orthogonality)


def check_overlap(energy: EnergyModel, overlap: Operator, overlap_inverse: Operator) -> OverlapCheck:
    """Check that ``overlap_inverse`` inverts ``overlap`` on the model's wavefunctions."""
    X = energy.get_X()
    commk = energy.get_wk().commk
    SX = overlap.apply(X)
    SinvX = overlap_inverse.apply(X)
    result = OverlapCheck(
        norm_X=l2norm(X, commk),
        norm_SX=l2norm(SX, commk),
        norm_SinvX=l2norm(SinvX, commk),
        trace_XSX=innerh_reduce(X, SX, commk),
        error_S_Sinv=l2norm(overlap.apply(SinvX) - X, commk),
        error_Sinv_S=l2norm(overlap_inverse.apply(SX) - X, commk),
    )
    for name, value in result._asdict().items():
        logger.info(f"{name}: {value:.6e}")
    return result
