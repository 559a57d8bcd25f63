"""Low-level helpers shared by the optimizer modules."""

from __future__ import annotations

import contextlib
import time
from enum import Enum
from typing import Iterator, NamedTuple

import jax
import jax.numpy as jnp
import numpy as np

from .exceptions import ConfigurationError


def herm(X: jax.Array) -> jax.Array:
    """Hermitian part of the trailing square block."""
    return 0.5 * (X + jnp.conj(jnp.swapaxes(X, -1, -2)))


@contextlib.contextmanager
def numeric_guard(enabled: bool = True) -> Iterator[None]:
    """Trap invalid, overflowing and dividing-by-zero arithmetic inside the block.

    numpy raises ``FloatingPointError`` through ``np.errstate``; JAX checks
    every computation for NaN/Inf through its debug flags. Both are restored
    on exit, also when the block raises.
    """
    if not enabled:
        yield
        return
    with contextlib.ExitStack() as stack:
        stack.enter_context(np.errstate(divide="raise", over="raise", invalid="raise"))
        stack.enter_context(jax.debug_nans(True))
        stack.enter_context(jax.debug_infs(True))
        yield


class Space(str, Enum):
    """Where fields live or where arithmetic runs."""

    HOST = "host"
    DEVICE = "device"


def resolve_device(space: Space | str) -> jax.Device:
    space = Space(space)
    if space is Space.HOST:
        return jax.devices("cpu")[0]
    try:
        return jax.devices("gpu")[0]
    except RuntimeError as err:
        raise ConfigurationError(
            "device execution requested, but no GPU backend is available to JAX"
        ) from err


class Placement(NamedTuple):
    """Devices holding the model's fields (fetch) and running the optimizer (compute)."""

    fetch: jax.Device
    compute: jax.Device

    @classmethod
    def from_spaces(cls, fetch: Space | str = Space.HOST, compute: Space | str = Space.HOST) -> "Placement":
        return cls(resolve_device(fetch), resolve_device(compute))


class Timer:
    """Wall-clock stopwatch for the iteration log."""

    def __init__(self):
        self._t0 = None

    def start(self) -> None:
        self._t0 = time.perf_counter()

    def stop(self) -> float:
        if self._t0 is None:
            raise RuntimeError("Timer.stop() called before Timer.start()")
        elapsed = time.perf_counter() - self._t0
        self._t0 = None
        return elapsed
