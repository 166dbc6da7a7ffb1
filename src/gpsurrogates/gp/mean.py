"""Prior mean functions.

A surrogate's posterior reverts to its prior mean away from the data, so a
constant mean set near the typical output level keeps extrapolations sane.
"""

from abc import ABC, abstractmethod

import jax.numpy as jnp
from jaxtyping import Array, ArrayLike, Float

from gpsurrogates.core import Pytree


class MeanFunction(Pytree, ABC):
    """Maps `(n, d)` inputs to `(n,)` prior means."""

    @abstractmethod
    def __call__(self, x: Float[Array, "n d"]) -> Float[Array, " n"]:
        pass


@Pytree.dataclass
class Zero(MeanFunction):
    """Default prior mean, `m(x) = 0`."""

    def __call__(self, x):
        return jnp.zeros(x.shape[0], dtype=x.dtype)


@Pytree.dataclass
class Constant(MeanFunction):
    """`m(x) = c`. The level `c` is a pytree leaf, so it can be fit by gradient."""

    value: ArrayLike = 0.0

    @classmethod
    def from_outputs(cls, ys: ArrayLike) -> "Constant":
        """Constant mean at the average of observed outputs."""
        return cls(value=float(jnp.mean(jnp.asarray(ys))))

    def __call__(self, x):
        return jnp.full(x.shape[0], self.value, dtype=x.dtype)
