"""Exceptions raised by `gpsurrogates`.

Every mutating surrogate operation builds its new state before assigning
anything, so when one of these propagates the surrogate is unchanged.
"""


class GPSurrogateError(Exception):
    """Base class for all errors raised by this package."""


class InvalidArgument(GPSurrogateError, ValueError):
    """Malformed input: mismatched batch lengths, empty data, bad bounds."""


class DimensionMismatch(GPSurrogateError, ValueError):
    """Point dimensionality disagrees with the surrogate's training inputs."""


class OptimizationFailure(GPSurrogateError, RuntimeError):
    """Bounded hyperparameter search found no usable optimum."""


class NumericalFailure(GPSurrogateError, ArithmeticError):
    """The noisy training covariance could not be factorized."""
