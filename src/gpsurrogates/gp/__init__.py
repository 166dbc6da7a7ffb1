"""Gaussian process building blocks used by `GPSurrogate`.

Kernels, prior mean functions, and exact prior/posterior process objects
with Cholesky-based conditioning.
"""

from .kernels import (
    Kernel,
    KernelBuilder,
    Stationary,
    RBF,
    Matern12,
    Matern32,
    Matern52,
    Linear,
    Polynomial,
    White,
    Constant,
    Sum,
    Product,
    default_kernel_creator,
)
from .mean import (
    MeanFunction,
    Zero,
    Constant as ConstantMean,
)
from .gp import (
    DEFAULT_JITTER,
    GP,
    FiniteGP,
    PosteriorGP,
    posterior,
    sampling_factor,
    log_marginal_likelihood,
)

__all__ = [
    # Kernels
    "Kernel",
    "KernelBuilder",
    "Stationary",
    "RBF",
    "Matern12",
    "Matern32",
    "Matern52",
    "Linear",
    "Polynomial",
    "White",
    "Constant",
    "Sum",
    "Product",
    "default_kernel_creator",
    # Mean functions
    "MeanFunction",
    "Zero",
    "ConstantMean",
    # GP
    "DEFAULT_JITTER",
    "GP",
    "FiniteGP",
    "PosteriorGP",
    "posterior",
    "sampling_factor",
    "log_marginal_likelihood",
]
