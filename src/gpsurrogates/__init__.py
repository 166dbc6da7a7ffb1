"""gpsurrogates: online Gaussian process regression surrogates in JAX.

A `GPSurrogate` is fit from observation pairs, grows incrementally with
`add_point`, answers posterior `mean` / `var` / `mean_and_var` / joint
`sample` queries, and refits its kernel hyperparameters (including
observation noise) by bounded maximization of the log marginal likelihood.
"""

from .errors import (
    GPSurrogateError,
    InvalidArgument,
    DimensionMismatch,
    OptimizationFailure,
    NumericalFailure,
)
from .hyperparameters import (
    HyperparameterRecord,
    BoundedHyperparameters,
    DEFAULT_HYPERPARAMETERS,
)
from .optimize import (
    BoundedHyperparameterOptimizer,
    HyperparameterFit,
    OptimizerConfig,
    optimize_hyperparameters,
)
from .surrogate import GPSurrogate
from .gp import KernelBuilder, default_kernel_creator

__all__ = [
    # Errors
    "GPSurrogateError",
    "InvalidArgument",
    "DimensionMismatch",
    "OptimizationFailure",
    "NumericalFailure",
    # Hyperparameters
    "HyperparameterRecord",
    "BoundedHyperparameters",
    "DEFAULT_HYPERPARAMETERS",
    # Optimization
    "BoundedHyperparameterOptimizer",
    "HyperparameterFit",
    "OptimizerConfig",
    "optimize_hyperparameters",
    # Surrogate
    "GPSurrogate",
    "KernelBuilder",
    "default_kernel_creator",
]
