"""Online Gaussian process surrogate.

`GPSurrogate` owns an observation set, a hyperparameter record, a kernel
builder and the posterior conditioned on all of them. Every mutation builds
the new arrays and the new posterior first and only then swaps them in, so a
failed call leaves the surrogate exactly as it was and readers holding the
old `xs` / `ys` arrays never see them change.

Example:
    ```python
    s = GPSurrogate([0.0, 1.0, 2.0], [0.0, 1.0, 4.0])
    s.add_point(3.0, 9.0)
    m, v = s.mean_and_var([0.5, 1.5])
    s.update_hyperparameters({"noise_var": (1e-4, 1.0)})
    ```
"""

import logging
import threading

import jax.numpy as jnp
import jax.random as jrand

from gpsurrogates.core import (
    Any,
    Array,
    ArrayLike,
    Callable,
    Mapping,
    Optional,
    PRNGKey,
    Tuple,
    as_inputs,
)
from gpsurrogates.errors import DimensionMismatch, InvalidArgument
from gpsurrogates.gp import (
    DEFAULT_JITTER,
    GP,
    MeanFunction,
    PosteriorGP,
    Zero,
    default_kernel_creator,
    posterior,
)
from gpsurrogates.hyperparameters import (
    DEFAULT_HYPERPARAMETERS,
    NOISE_DEFAULT,
    NOISE_VAR,
    BoundedHyperparameters,
    HyperparameterRecord,
    as_record,
)
from gpsurrogates.optimize import BoundedHyperparameterOptimizer, OptimizerConfig

logger = logging.getLogger(__name__)


def _observations(xs: ArrayLike, ys: ArrayLike) -> Tuple[Array, Array]:
    xs = jnp.asarray(xs, dtype=float)
    ys = jnp.asarray(ys, dtype=float)
    if xs.ndim not in (1, 2):
        raise InvalidArgument(
            f"xs must be a sequence of scalars or of vectors, got shape {xs.shape}"
        )
    if ys.ndim != 1:
        raise InvalidArgument(f"ys must be a sequence of scalars, got shape {ys.shape}")
    if xs.shape[0] != ys.shape[0]:
        raise InvalidArgument(
            f"xs and ys have different lengths ({xs.shape[0]} != {ys.shape[0]})"
        )
    return xs, ys


class GPSurrogate:
    """Gaussian process surrogate over scalar or fixed-length vector inputs.

    Args:
        xs: Initial inputs, `n` scalars or `n` vectors of length `d`.
        ys: Initial outputs, `n` scalars.
        kernel_creator: Maps a hyperparameter record to a kernel. It never
            receives `noise_var`, which is the observation noise variance and
            is handled by the surrogate itself.
        hyperparameters: Initial record, `{"noise_var": 0.1}` by default. A
            missing `noise_var` means noiseless observations.
        mean_fn: Prior mean, zero by default.
        jitter: Added to the covariance diagonal before factorization.
        optimizer_config: Default settings for `update_hyperparameters`.
        seed: Seed of the key stream used by `sample` when no key is given.

    Raises:
        InvalidArgument: malformed or empty observation set.
        NumericalFailure: the training covariance is not positive definite.
    """

    def __init__(
        self,
        xs: ArrayLike,
        ys: ArrayLike,
        *,
        kernel_creator: Callable[..., Any] = default_kernel_creator,
        hyperparameters: "HyperparameterRecord | Mapping[str, Any] | None" = None,
        mean_fn: Optional[MeanFunction] = None,
        jitter: float = DEFAULT_JITTER,
        optimizer_config: Optional[OptimizerConfig] = None,
        seed: int = 0,
    ):
        xs, ys = _observations(xs, ys)
        if xs.shape[0] == 0:
            raise InvalidArgument("GPSurrogate needs at least one observation")
        record = (
            DEFAULT_HYPERPARAMETERS if hyperparameters is None else as_record(hyperparameters)
        )

        self._kernel_creator = kernel_creator
        self._mean_fn = Zero() if mean_fn is None else mean_fn
        self._jitter = jitter
        self._optimizer_config = optimizer_config or OptimizerConfig()
        self._input_shape = xs.shape[1:]

        gp = self._build_prior(record)
        record = record.with_default(NOISE_DEFAULT)
        gp_posterior = self._condition(gp, xs, ys, record)

        self._xs, self._ys = xs, ys
        self._hyperparameters = record
        self._gp = gp
        self._gp_posterior = gp_posterior
        self._key = jrand.PRNGKey(seed)
        self._key_lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"GPSurrogate(n={len(self)}, input_shape={self._input_shape}, "
            f"hyperparameters={self._hyperparameters!r})"
        )

    def __len__(self) -> int:
        return self._xs.shape[0]

    # Read-only state

    @property
    def xs(self) -> Array:
        return self._xs

    @property
    def ys(self) -> Array:
        return self._ys

    @property
    def hyperparameters(self) -> HyperparameterRecord:
        return self._hyperparameters

    @property
    def kernel_creator(self) -> Callable[..., Any]:
        return self._kernel_creator

    @property
    def prior(self) -> GP:
        return self._gp

    @property
    def posterior(self) -> PosteriorGP:
        return self._gp_posterior

    @property
    def input_dim(self) -> Optional[int]:
        """Length of vector inputs, or `None` for scalar inputs."""
        return self._input_shape[0] if self._input_shape else None

    # Internals

    def _build_prior(self, record: HyperparameterRecord) -> GP:
        return GP(self._kernel_creator(record.without(NOISE_VAR)), self._mean_fn)

    def _condition(
        self, gp: GP, xs: Array, ys: Array, record: HyperparameterRecord
    ) -> PosteriorGP:
        return posterior(gp(as_inputs(xs), record[NOISE_VAR], self._jitter), ys)

    def _points(self, x: ArrayLike) -> Tuple[Array, bool]:
        """Lift `x` to 2-D inputs; also report whether it was a single point."""
        x = jnp.asarray(x, dtype=float)
        if not self._input_shape:
            if x.ndim == 0:
                return x.reshape(1, 1), True
            if x.ndim == 1:
                return x[:, None], False
        else:
            (d,) = self._input_shape
            if x.ndim == 1 and x.shape[0] == d:
                return x[None, :], True
            if x.ndim == 2 and x.shape[1] == d:
                return x, False
        expected = "scalars" if self.input_dim is None else f"vectors of length {self.input_dim}"
        raise DimensionMismatch(
            f"Surrogate inputs are {expected}, got an array of shape {x.shape}"
        )

    def _next_key(self) -> PRNGKey:
        with self._key_lock:
            self._key, key = jrand.split(self._key)
        return key

    # Mutation

    def add_point(self, new_x: ArrayLike, new_y: ArrayLike) -> None:
        """Add one observation, or a batch when `new_y` is a sequence.

        Raises:
            InvalidArgument: batch form with `len(new_xs) != len(new_ys)`.
            DimensionMismatch: points do not match the training inputs.
        """
        if jnp.ndim(new_y) > 0:
            return self.add_points(new_x, new_y)
        inputs, single = self._points(new_x)
        if not single:
            raise DimensionMismatch(
                f"Expected a single point with a scalar value, got {inputs.shape[0]} points"
            )
        self._append(inputs.reshape((1,) + self._input_shape), jnp.reshape(new_y, (1,)))

    def add_points(self, new_xs: ArrayLike, new_ys: ArrayLike) -> None:
        """Add parallel sequences of observations.

        Raises:
            InvalidArgument: `len(new_xs) != len(new_ys)`.
            DimensionMismatch: points do not match the training inputs.
        """
        new_xs = jnp.asarray(new_xs, dtype=float)
        new_ys = jnp.asarray(new_ys, dtype=float)
        if new_xs.ndim == 0 or new_ys.ndim != 1 or new_xs.shape[0] != new_ys.shape[0]:
            raise InvalidArgument(
                f"new_xs, new_ys have different lengths "
                f"(shapes {new_xs.shape} and {new_ys.shape})"
            )
        inputs, single = self._points(new_xs)
        if single:
            # A length-d vector in a d-dimensional domain is one point.
            raise DimensionMismatch(
                f"Expected a batch of points, got a single point of shape {new_xs.shape}"
            )
        self._append(inputs.reshape((-1,) + self._input_shape), new_ys)

    def _append(self, new_xs: Array, new_ys: Array) -> None:
        # Fresh arrays: anyone holding the old `xs` / `ys` keeps seeing them.
        xs = jnp.concatenate([self._xs, new_xs])
        ys = jnp.concatenate([self._ys, new_ys])
        gp_posterior = self._condition(self._gp, xs, ys, self._hyperparameters)
        self._xs, self._ys, self._gp_posterior = xs, ys, gp_posterior
        logger.debug("Added %d observation(s), now %d", new_ys.shape[0], xs.shape[0])

    def update_hyperparameters(
        self,
        prior: "BoundedHyperparameters | Mapping[str, Any]",
        *,
        config: Optional[OptimizerConfig] = None,
    ) -> HyperparameterRecord:
        """Refit the hyperparameters named in `prior` by maximizing the log
        marginal likelihood inside their boxes, then rebuild the prior and the
        posterior. Parameters not named in `prior` keep their current values.

        Returns the new record.

        Raises:
            OptimizationFailure: the search found no usable optimum.
            NumericalFailure: the winning record gives a non-positive-definite
                training covariance.
        """
        optimizer = BoundedHyperparameterOptimizer(config or self._optimizer_config)
        fit = optimizer.fit(
            as_inputs(self._xs),
            self._ys,
            self._kernel_creator,
            prior,
            self._hyperparameters,
            mean_fn=self._mean_fn,
            jitter=self._jitter,
        )
        record = fit.hyperparameters
        gp = self._build_prior(record)
        gp_posterior = self._condition(gp, self._xs, self._ys, record)
        self._hyperparameters, self._gp, self._gp_posterior = record, gp, gp_posterior
        logger.info(
            "Updated hyperparameters to %r (log marginal likelihood %.6g, %d/%d starts converged)",
            record,
            fit.log_marginal_likelihood,
            fit.n_converged,
            fit.n_starts,
        )
        return record

    # Queries

    def mean(self, x: ArrayLike) -> Array:
        """Posterior mean at one point (0-d result) or a batch."""
        inputs, single = self._points(x)
        mean = self._gp_posterior.mean(inputs)
        return mean[0] if single else mean

    def var(self, x: ArrayLike) -> Array:
        """Posterior variance of the latent function at one point or a batch."""
        inputs, single = self._points(x)
        var = self._gp_posterior.var(inputs)
        return var[0] if single else var

    def mean_and_var(self, x: ArrayLike) -> Tuple[Array, Array]:
        inputs, single = self._points(x)
        mean, var = self._gp_posterior.mean_and_var(inputs)
        if single:
            return mean[0], var[0]
        return mean, var

    def cov(self, xs: ArrayLike) -> Array:
        """Joint posterior covariance over a batch."""
        inputs, single = self._points(xs)
        cov = self._gp_posterior.cov(inputs)
        return cov[0, 0] if single else cov

    def sample(self, xs: ArrayLike, key: Optional[PRNGKey] = None) -> Array:
        """One draw from the joint posterior over `xs`.

        A single point is sampled as a one-point batch. Without `key`, a fresh
        key is split off the surrogate's own key stream, so repeated calls
        give different draws.

        Raises:
            NumericalFailure: the posterior covariance at `xs` is not finite.
        """
        inputs, single = self._points(xs)
        key = self._next_key() if key is None else key
        draw = self._gp_posterior.sample(key, inputs)
        return draw[0] if single else draw

    def log_marginal_likelihood(self) -> Array:
        """Log marginal likelihood of the observations under the current model."""
        return self._gp_posterior.log_marginal_likelihood()
