"""Covariance functions for Gaussian processes.

Kernels are immutable `Pytree` dataclasses, so a kernel built from traced
hyperparameter values can be differentiated through. Inputs are 2-D `(n, d)`
arrays; use `gpsurrogates.core.as_inputs` to lift a batch of scalars.
"""

from abc import ABC, abstractmethod

import jax.numpy as jnp
from jaxtyping import Array, ArrayLike, Float

from gpsurrogates.core import Callable, Pytree


class Kernel(Pytree, ABC):
    """Abstract base class for GP kernel functions."""

    @abstractmethod
    def __call__(
        self, x1: Float[Array, "n1 d"], x2: Float[Array, "n2 d"]
    ) -> Float[Array, "n1 n2"]:
        """Compute kernel matrix between two sets of inputs."""

    def diag(self, x: Float[Array, "n d"]) -> Float[Array, " n"]:
        """Diagonal of `self(x, x)`."""
        return jnp.diag(self(x, x))

    def __add__(self, other: "Kernel") -> "Kernel":
        return Sum(self, other)

    def __mul__(self, other: "Kernel") -> "Kernel":
        return Product(self, other)


# Maps a hyperparameter record (without `noise_var`) to a kernel.
KernelBuilder = Callable[..., Kernel]


def _scaled_sq_dists(x1, x2, lengthscale):
    x1_scaled = x1 / lengthscale
    x2_scaled = x2 / lengthscale
    return jnp.sum((x1_scaled[:, None, :] - x2_scaled[None, :, :]) ** 2, axis=-1)


def _scaled_dists(x1, x2, lengthscale):
    # sqrt has an infinite gradient at 0, which would poison `jax.grad`
    # through the diagonal of K(x, x).
    sq_dists = _scaled_sq_dists(x1, x2, lengthscale)
    safe = jnp.where(sq_dists > 0.0, sq_dists, 1.0)
    return jnp.where(sq_dists > 0.0, jnp.sqrt(safe), 0.0)


class Stationary(Kernel):
    """Kernel depending only on the scaled distance between inputs.

    Stationary kernels have `variance` on the diagonal.
    """

    def diag(self, x: Float[Array, "n d"]) -> Float[Array, " n"]:
        return jnp.full(x.shape[0], self.variance)


@Pytree.dataclass
class RBF(Stationary):
    """Radial Basis Function (RBF/Squared Exponential) kernel.

    k(x, x') = σ² exp(-||x - x'||² / (2ℓ²))
    """

    variance: ArrayLike = 1.0
    lengthscale: ArrayLike = 1.0

    def __call__(self, x1, x2):
        sq_dists = _scaled_sq_dists(x1, x2, self.lengthscale)
        return self.variance * jnp.exp(-0.5 * sq_dists)


@Pytree.dataclass
class Matern12(Stationary):
    """Matérn 1/2 kernel (Exponential kernel).

    k(x, x') = σ² exp(-||x - x'|| / ℓ)
    """

    variance: ArrayLike = 1.0
    lengthscale: ArrayLike = 1.0

    def __call__(self, x1, x2):
        dists = _scaled_dists(x1, x2, self.lengthscale)
        return self.variance * jnp.exp(-dists)


@Pytree.dataclass
class Matern32(Stationary):
    """Matérn 3/2 kernel.

    k(x, x') = σ² (1 + √3||x - x'|| / ℓ) exp(-√3||x - x'|| / ℓ)
    """

    variance: ArrayLike = 1.0
    lengthscale: ArrayLike = 1.0

    def __call__(self, x1, x2):
        sqrt3_dists = jnp.sqrt(3.0) * _scaled_dists(x1, x2, self.lengthscale)
        return self.variance * (1.0 + sqrt3_dists) * jnp.exp(-sqrt3_dists)


@Pytree.dataclass
class Matern52(Stationary):
    """Matérn 5/2 kernel.

    k(x, x') = σ² (1 + √5||x - x'|| / ℓ + 5||x - x'||² / (3ℓ²)) exp(-√5||x - x'|| / ℓ)
    """

    variance: ArrayLike = 1.0
    lengthscale: ArrayLike = 1.0

    def __call__(self, x1, x2):
        sq_dists = _scaled_sq_dists(x1, x2, self.lengthscale)
        sqrt5_dists = jnp.sqrt(5.0) * _scaled_dists(x1, x2, self.lengthscale)
        return (
            self.variance
            * (1.0 + sqrt5_dists + 5.0 * sq_dists / 3.0)
            * jnp.exp(-sqrt5_dists)
        )


@Pytree.dataclass
class Linear(Kernel):
    """Linear kernel.

    k(x, x') = σ² (x - c)ᵀ(x' - c)
    """

    variance: ArrayLike = 1.0
    offset: ArrayLike = 0.0

    def __call__(self, x1, x2):
        return self.variance * jnp.dot(x1 - self.offset, (x2 - self.offset).T)


@Pytree.dataclass
class Polynomial(Kernel):
    """Polynomial kernel.

    k(x, x') = (σ² xᵀx' + c)^p
    """

    variance: ArrayLike = 1.0
    offset: ArrayLike = 1.0
    degree: int = Pytree.static(default=2)

    def __call__(self, x1, x2):
        return (self.variance * jnp.dot(x1, x2.T) + self.offset) ** self.degree


@Pytree.dataclass
class White(Kernel):
    """White noise kernel.

    k(x, x') = σ² δ(x, x')
    """

    variance: ArrayLike = 1.0

    def __call__(self, x1, x2):
        same = jnp.all(x1[:, None, :] == x2[None, :, :], axis=-1)
        return self.variance * same.astype(x1.dtype)

    def diag(self, x):
        return jnp.full(x.shape[0], self.variance)


@Pytree.dataclass
class Constant(Kernel):
    """Constant kernel.

    k(x, x') = σ²
    """

    variance: ArrayLike = 1.0

    def __call__(self, x1, x2):
        return self.variance * jnp.ones((x1.shape[0], x2.shape[0]))


@Pytree.dataclass
class Sum(Kernel):
    """Sum of two kernels.

    k(x, x') = k1(x, x') + k2(x, x')
    """

    k1: Kernel
    k2: Kernel

    def __call__(self, x1, x2):
        return self.k1(x1, x2) + self.k2(x1, x2)

    def diag(self, x):
        return self.k1.diag(x) + self.k2.diag(x)


@Pytree.dataclass
class Product(Kernel):
    """Product of two kernels.

    k(x, x') = k1(x, x') * k2(x, x')
    """

    k1: Kernel
    k2: Kernel

    def __call__(self, x1, x2):
        return self.k1(x1, x2) * self.k2(x1, x2)

    def diag(self, x):
        return self.k1.diag(x) * self.k2.diag(x)


def default_kernel_creator(_hyperparameters=None) -> Kernel:
    """Kernel builder used when none is given: a unit Matérn 5/2 kernel."""
    return Matern52()
