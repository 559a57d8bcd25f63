"""Step-length selection along the geodesic."""

from __future__ import annotations

from typing import NamedTuple

from loguru import logger

from .energy import FreeEnergy
from .exceptions import DescentError, StepError
from .geodesic import geodesic
from .kpoints import KField


class LineSearchResult(NamedTuple):
    ek: KField
    u: KField
    step: float
    free_energy: float
    force_restart: bool


class LineSearch:
    """Quadratic interpolation with an Armijo-backtracking fallback.

    Every trial evaluates the model, so the model holds the state of the last
    trial point on return; on success that is the accepted point.
    """

    def __init__(self, t_trial: float = 0.2, tau: float = 0.1, max_trials: int = 10, c1: float = 1e-4):
        if t_trial <= 0:
            raise ValueError("t_trial must be positive")
        if not 0 < tau < 1:
            raise ValueError("tau must lie in (0, 1)")
        if max_trials < 1:
            raise ValueError("max_trials must be at least 1")
        self.t_trial = float(t_trial)
        self.tau = float(tau)
        self.max_trials = int(max_trials)
        self.c1 = float(c1)

    def __repr__(self) -> str:
        return (
            f"LineSearch(t_trial={self.t_trial}, tau={self.tau}, "
            f"max_trials={self.max_trials}, c1={self.c1})"
        )

    def _armijo(self, F: float, F0: float, t: float, slope: float) -> bool:
        return F <= F0 + self.c1 * t * slope

    def qline(self, free_energy, strategy, X, eta, Z_x, Z_eta, slope, F0) -> LineSearchResult:
        """Fit ``F(t) = a t^2 + slope t + F0`` through the trial point and jump to its minimum.

        Raises:
            StepError: the step violates Armijo. ``err.trial_accepted`` tells
                whether ``t_trial`` itself passed.
        """
        t = self.t_trial
        ek, u = geodesic(free_energy, strategy, X, eta, Z_x, Z_eta, t)
        F1 = free_energy.get_F()
        trial_accepted = self._armijo(F1, F0, t, slope)
        a = (F1 - slope * t - F0) / t**2
        if a > 0:
            t = -slope / (2 * a)
            ek, u = geodesic(free_energy, strategy, X, eta, Z_x, Z_eta, t)
        else:
            logger.debug("qline: F(t) not convex (a = {:.3e}), keeping t_trial", a)
        F = free_energy.get_F()
        if not self._armijo(F, F0, t, slope):
            raise StepError(f"quadratic step t = {t:.4e} rejected: F = {F:.12f} > F0 = {F0:.12f}", trial_accepted)
        return LineSearchResult(ek, u, t, F, False)

    def backtrack(self, free_energy, strategy, X, eta, Z_x, Z_eta, slope, F0, skip_first=False) -> LineSearchResult:
        """Shrink ``t`` from ``t_trial`` by ``tau`` until Armijo holds.

        With ``skip_first`` the caller already rejected ``t_trial``; it counts
        as one of the ``max_trials`` trials.
        """
        t = self.t_trial
        trials = self.max_trials
        if skip_first:
            t *= self.tau
            trials -= 1
        for _ in range(trials):
            ek, u = geodesic(free_energy, strategy, X, eta, Z_x, Z_eta, t)
            F = free_energy.get_F()
            if self._armijo(F, F0, t, slope):
                return LineSearchResult(ek, u, t, F, False)
            logger.debug("backtracking: t = {:.4e}, F - F0 = {:.4e}", t, F - F0)
            t *= self.tau
        raise DescentError(f"backtracking failed after {self.max_trials} trials (last t = {t / self.tau:.4e})")

    def __call__(
        self,
        free_energy: FreeEnergy,
        strategy,
        X: KField,
        eta: KField,
        Z_x: KField,
        Z_eta: KField,
        slope: float,
        F0: float,
        force_restart: bool = False,
    ) -> LineSearchResult:
        """Search along the descent direction ``(Z_x, Z_eta)`` with ``slope < 0`` at ``F0``.

        With ``force_restart`` the quadratic step is skipped. The result flags
        ``force_restart`` when the quadratic step had to be abandoned, so the
        caller resets the conjugate directions.
        """
        if force_restart:
            return self.backtrack(free_energy, strategy, X, eta, Z_x, Z_eta, slope, F0)
        try:
            return self.qline(free_energy, strategy, X, eta, Z_x, Z_eta, slope, F0)
        except StepError as err:
            logger.info("{}; falling back to backtracking", err)
            skip_first = not err.trial_accepted
        result = self.backtrack(free_energy, strategy, X, eta, Z_x, Z_eta, slope, F0, skip_first)
        return result._replace(force_restart=True)
