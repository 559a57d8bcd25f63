"""Conjugate search directions, their transport and Fletcher-Reeves recombination."""

from __future__ import annotations

from typing import NamedTuple

import jax.numpy as jnp

from .exceptions import InvariantViolation
from .kpoints import Communicator, KField, kmap


class Direction(NamedTuple):
    x: KField
    eta: KField


class ConjugateDirections:
    """Holds ``(Z_x, Z_eta)`` and the previous Fletcher-Reeves scalar ``fr``.

    ``fr`` is the slope along the preconditioned steepest direction, so it is
    negative whenever the gradient does not vanish.
    """

    def __init__(self, strategy, commk: Communicator, restart: int):
        if restart < 1:
            raise ValueError("restart period must be positive")
        self.strategy = strategy
        self.commk = commk
        self.restart = int(restart)
        self.Z_x = None
        self.Z_eta = None
        self.fr = None
        self.last_gamma = None

    @property
    def direction(self) -> Direction:
        return Direction(self.Z_x, self.Z_eta)

    def initialize(self, delta_x: KField, delta_eta: KField, fr: float | None = None) -> None:
        """Reset to the steepest pair."""
        self.Z_x = delta_x
        self.Z_eta = delta_eta
        if fr is not None:
            self.fr = fr

    def transport(self, u: KField) -> Direction:
        """Parallel transport into the rotated basis ``X u``; ``self`` is unchanged."""
        Z_x = self.Z_x @ u
        Z_eta = kmap(lambda z, v: jnp.conj(v.T) @ z @ v, self.Z_eta, u)
        return Direction(Z_x, Z_eta)

    def gamma(self, fr_new: float) -> float:
        if fr_new > 0:
            raise InvariantViolation(f"Fletcher-Reeves scalar must be non-positive, got fr = {fr_new:.6e}")
        gamma = fr_new / self.fr
        self.fr = fr_new
        return gamma

    def recombine(
        self,
        delta_x: KField,
        delta_eta: KField,
        transported: Direction,
        gamma: float,
        X: KField,
        SX: KField,
    ) -> None:
        self.Z_x = self.strategy.conjugate(delta_x, transported.x, X, SX, gamma)
        self.Z_eta = delta_eta + gamma * transported.eta

    def update(
        self,
        iteration: int,
        fr_new: float,
        delta: Direction,
        transported: Direction,
        X: KField,
        SX: KField,
        force_restart: bool = False,
    ) -> bool:
        """New search direction after a step; returns True on restart.

        ``fr_new`` is validated before anything is modified.
        """
        if fr_new > 0:
            raise InvariantViolation(f"Fletcher-Reeves scalar must be non-positive, got fr = {fr_new:.6e}")
        if iteration % self.restart == 0 or force_restart:
            self.initialize(delta.x, delta.eta, fr_new)
            self.last_gamma = None
            return True
        self.last_gamma = self.gamma(fr_new)
        self.recombine(delta.x, delta.eta, transported, self.last_gamma, X, SX)
        return False
