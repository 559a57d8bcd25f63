"""Geodesic nonlinear conjugate-gradient minimization of the Mermin free energy."""

from __future__ import annotations

import contextlib
from enum import Enum
from typing import NamedTuple

import numpy as np
from loguru import logger

from .config import NLCGConfig, Variant
from .conjugate import ConjugateDirections, Direction
from .energy import EnergyModel, FreeEnergy
from .exceptions import ConfigurationError, DescentError, InvariantViolation
from .geodesic import geodesic
from .gradient import (
    GradEta,
    Point,
    StandardGradient,
    UltrasoftGradient,
    compute_slope,
    compute_slope_single,
    evaluate,
)
from .kpoints import Communicator, KField, zeros_like
from .linesearch import LineSearch
from .operators import Identity, Operator, TeterPreconditioner
from .smearing import SmearingType
from .utils import Placement, Timer, numeric_guard


class NLCGStatus(str, Enum):
    CONVERGED = "converged"
    DESCENT_FAILURE = "descent_failure"
    MAX_ITERATIONS = "max_iterations"


class NLCGInfo(NamedTuple):
    """Summary of the last completed iteration."""

    free_energy: float
    entropy: float
    tolerance: float
    iterations: int
    ks_energy: float
    slope_x: float
    slope_eta: float
    status: NLCGStatus


def _info(free_energy: FreeEnergy, slope_x: float, slope_eta: float, iteration: int, status: NLCGStatus) -> NLCGInfo:
    return NLCGInfo(
        free_energy=free_energy.get_F(),
        entropy=free_energy.get_entropy(),
        tolerance=slope_x + slope_eta,
        iterations=iteration,
        ks_energy=free_energy.ks_energy(),
        slope_x=slope_x,
        slope_eta=slope_eta,
        status=status,
    )


def _log_parameters(free_energy: FreeEnergy, strategy, maxiter, tol, kappa, restart, line_search) -> None:
    smearing = free_energy.smearing
    logger.info(f"F (initial)  = {free_energy.get_F():.13f}")
    logger.info(f"KS (initial) = {free_energy.ks_energy():.13f}")
    logger.info("nlcg parameters")
    for name, value in [
        ("T", f"{smearing.temperature} K"),
        ("smearing", smearing.kind.value),
        ("maxiter", maxiter),
        ("tol", tol),
        ("kappa", kappa),
        ("tau", line_search.tau),
        ("restart", restart),
        ("variant", strategy.name),
        ("linesearch", line_search),
    ]:
        logger.info(f"{name:>10} : {value}")
    logger.info(f"num electrons: {free_energy.nelectrons()}")


def _failure_scan(free_energy: FreeEnergy, strategy, point: Point, Z_x: KField, npoints: int) -> None:
    """Log F along Z_x with the subspace direction switched off."""
    logger.info("--- line search failed, free energy along Z_x ---")
    Z_eta = zeros_like(point.eta)
    for t in np.linspace(0, 0.5, npoints):
        geodesic(free_energy, strategy, point.X, point.eta, Z_x, Z_eta, float(t))
        logger.info(f"{t:10.5f} {free_energy.get_F():.13f}")


def _minimize(
    free_energy: FreeEnergy,
    strategy,
    *,
    maxiter: int,
    tol: float,
    kappa: float,
    restart: int,
    line_search: LineSearch,
    failure_scan: int = 0,
) -> NLCGInfo:
    timer = Timer()
    commk: Communicator = free_energy.get_wk().commk
    grad_eta = GradEta(free_energy.temperature, kappa)

    free_energy.compute()
    _log_parameters(free_energy, strategy, maxiter, tol, kappa, restart, line_search)

    # start from occupations consistent with the model's band energies
    ek = free_energy.get_ek()
    fn, _ = free_energy.smearing.fn(ek)
    free_energy.compute(free_energy.get_X(), fn)

    point = evaluate(free_energy, strategy, grad_eta, ek)
    directions = ConjugateDirections(strategy, commk, restart)
    directions.initialize(point.delta_x, point.delta_eta)

    slope_x, slope_eta = compute_slope(point.g_X, directions.Z_x, point.g_eta, directions.Z_eta, commk)
    slope = slope_x + slope_eta
    if slope >= 0:
        raise InvariantViolation(f"ascending slope detected at the starting point: {slope:.6e}")
    directions.fr = compute_slope_single(point.g_X, point.delta_x, point.g_eta, point.delta_eta, commk)

    info = _info(free_energy, slope_x, slope_eta, 0, NLCGStatus.MAX_ITERATIONS)
    logger.info(f"{'Iteration':<15}{'Free energy':<22}{'Residual':<15}")

    force_restart = False
    for i in range(1, maxiter + 1):
        logger.debug(f"Iteration {i}")
        timer.start()

        if abs(slope) < tol:
            info = _info(free_energy, slope_x, slope_eta, i, NLCGStatus.CONVERGED)
            logger.info(f"kT * S   : {info.entropy:.13f}")
            logger.info(f"KS-energy: {info.ks_energy:.13f}")
            logger.info(f"F        : {info.free_energy:.13f}")
            logger.success("NLCG SUCCESS")
            return info

        try:
            result = line_search(
                free_energy,
                strategy,
                point.X,
                point.eta,
                directions.Z_x,
                directions.Z_eta,
                slope,
                free_energy.get_F(),
                force_restart,
            )
        except DescentError as err:
            logger.warning(f"No descent direction found, nlcg didn't reach final tolerance ({err})")
            if failure_scan:
                _failure_scan(free_energy, strategy, point, directions.Z_x, failure_scan)
            # back to the last accepted point
            free_energy.compute(point.X, point.fn)
            return info._replace(status=NLCGStatus.DESCENT_FAILURE)

        transported = directions.transport(result.u)
        point = evaluate(free_energy, strategy, grad_eta, result.ek)

        fr_new = compute_slope_single(point.g_X, point.delta_x, point.g_eta, point.delta_eta, commk)
        restarted = directions.update(
            i,
            fr_new,
            Direction(point.delta_x, point.delta_eta),
            transported,
            point.X,
            point.SX,
            force_restart or result.force_restart,
        )
        force_restart = False

        if restarted:
            logger.debug("CG restart")
        else:
            logger.debug(f"\t CG gamma = {directions.last_gamma:.6e}")

        slope_x, slope_eta = compute_slope(point.g_X, directions.Z_x, point.g_eta, directions.Z_eta, commk)
        slope = slope_x + slope_eta
        if slope >= 0:
            if restarted:
                raise InvariantViolation("no descent direction could be found, abort!")
            logger.info(">> slope > 0, force restart.")
            force_restart = True
            directions.initialize(point.delta_x, point.delta_eta)
            slope_x, slope_eta = compute_slope(point.g_X, directions.Z_x, point.g_eta, directions.Z_eta, commk)
            slope = slope_x + slope_eta

        info = _info(free_energy, slope_x, slope_eta, i, NLCGStatus.MAX_ITERATIONS)
        logger.info(f"{i:<15d}{info.free_energy:<22.13f}{slope:<15.6e}")
        logger.debug(
            f"slope_x = {slope_x:.6e}, slope_eta = {slope_eta:.6e}, kT * S = {info.entropy:.10f}, "
            f"KS = {info.ks_energy:.13f}, step = {result.step:.4e}"
        )
        logger.debug(f"cg iteration took {timer.stop():.3f} s")

    logger.warning(f"nlcg did not converge within {maxiter} iterations, |slope| = {abs(slope):.6e}")
    return info


@contextlib.contextmanager
def _log_to_file(log_file: str | None, commk: Communicator):
    """Duplicate the log of this run into ``log_file`` on rank 0."""
    if log_file is None or commk.rank != 0:
        yield
        return
    sink_id = logger.add(log_file, format="{message}", mode="w")
    try:
        yield
    finally:
        logger.remove(sink_id)


def _run(
    free_energy: FreeEnergy,
    strategy,
    *,
    maxiter: int,
    tol: float,
    kappa: float,
    restart: int,
    line_search: LineSearch,
    trap_fpe: bool = True,
    log_file: str | None = None,
    failure_scan: int = 0,
) -> NLCGInfo:
    with numeric_guard(trap_fpe), _log_to_file(log_file, free_energy.get_wk().commk):
        return _minimize(
            free_energy,
            strategy,
            maxiter=maxiter,
            tol=tol,
            kappa=kappa,
            restart=restart,
            line_search=line_search,
            failure_scan=failure_scan,
        )


def nlcg(
    energy: EnergyModel,
    smearing: SmearingType | str,
    temperature: float,
    maxiter: int,
    tol: float,
    kappa: float,
    tau: float,
    restart: int,
    *,
    placement: Placement | None = None,
    trap_fpe: bool = True,
    log_file: str | None = None,
    failure_scan: int = 0,
    **line_search_options,
) -> NLCGInfo:
    """Minimize the free energy of a norm-conserving model.

    Args:
        energy: the Kohn-Sham model, modified in place; on return it holds
            the final wavefunctions and occupations.
        smearing: ``"fermi-dirac"`` or ``"gaussian-spline"``.
        temperature: electronic temperature in Kelvin.
        maxiter: maximal number of CG iterations.
        tol: convergence threshold on the absolute slope.
        kappa: scaling of the subspace search direction.
        tau: backtracking shrink factor.
        restart: CG restart period.
        placement: fetch / compute devices; ``None`` leaves fields where they are.
        trap_fpe: raise on invalid or overflowing arithmetic during the run.
        log_file: additionally log to this file (rank 0 only).
        failure_scan: number of free-energy samples logged along Z_x after a
            line-search failure.
        **line_search_options: ``t_trial``, ``max_trials``, ``c1``.

    Returns:
        `NLCGInfo` of the last completed iteration.
    """
    free_energy = FreeEnergy(energy, temperature, smearing, placement)
    strategy = StandardGradient(TeterPreconditioner(free_energy.get_gkvec_ekin()))
    return _run(
        free_energy,
        strategy,
        maxiter=maxiter,
        tol=tol,
        kappa=kappa,
        restart=restart,
        line_search=LineSearch(tau=tau, **line_search_options),
        trap_fpe=trap_fpe,
        log_file=log_file,
        failure_scan=failure_scan,
    )


def nlcg_us(
    energy: EnergyModel,
    us_precond: Operator,
    overlap: Operator,
    smearing: SmearingType | str,
    temperature: float,
    maxiter: int,
    tol: float,
    kappa: float,
    tau: float,
    restart: int,
    *,
    placement: Placement | None = None,
    trap_fpe: bool = True,
    log_file: str | None = None,
    failure_scan: int = 0,
    **line_search_options,
) -> NLCGInfo:
    """Like `nlcg` for ultrasoft models with overlap ``S`` and preconditioner ``us_precond``."""
    free_energy = FreeEnergy(energy, temperature, smearing, placement)
    strategy = UltrasoftGradient(overlap, us_precond)
    return _run(
        free_energy,
        strategy,
        maxiter=maxiter,
        tol=tol,
        kappa=kappa,
        restart=restart,
        line_search=LineSearch(tau=tau, **line_search_options),
        trap_fpe=trap_fpe,
        log_file=log_file,
        failure_scan=failure_scan,
    )


def run(
    energy: EnergyModel,
    config: NLCGConfig,
    overlap: Operator | None = None,
    preconditioner: Operator | None = None,
) -> NLCGInfo:
    """Run the minimization described by ``config``.

    The ultrasoft variant needs ``overlap``; its preconditioner defaults to
    the identity. The standard variant uses ``preconditioner`` when given and
    the Teter preconditioner otherwise.
    """
    placement = Placement.from_spaces(config.fetch, config.compute)
    variant = Variant(config.variant)
    if variant is Variant.ULTRASOFT and overlap is None:
        raise ConfigurationError("the ultrasoft variant requires an overlap operator")

    free_energy = FreeEnergy(energy, config.temperature, config.smearing, placement)
    if variant is Variant.ULTRASOFT:
        strategy = UltrasoftGradient(overlap, preconditioner or Identity())
    else:
        strategy = StandardGradient(preconditioner or TeterPreconditioner(free_energy.get_gkvec_ekin()))

    ls = config.line_search
    return _run(
        free_energy,
        strategy,
        maxiter=config.maxiter,
        tol=config.tol,
        kappa=config.kappa,
        restart=config.restart,
        line_search=LineSearch(t_trial=ls.t_trial, tau=config.tau, max_trials=ls.max_trials, c1=ls.c1),
        trap_fpe=config.trap_fpe,
        log_file=config.log_file,
        failure_scan=config.failure_scan,
    )
