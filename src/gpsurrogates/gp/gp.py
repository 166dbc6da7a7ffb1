"""Exact Gaussian process prior and posterior objects.

The flow mirrors the usual GP library contract:

    gp = GP(kernel)                      # prior process
    fx = gp(xs, noise_var)               # prior projected onto training inputs
    post = posterior(fx, ys)             # conditioned process
    post.mean(xq), post.var(xq), post.sample(key, xq)

All objects are immutable `Pytree` dataclasses; a posterior stores the
Cholesky factor of its noisy training covariance so queries never refactorize.
"""

import logging

import jax.numpy as jnp
import jax.scipy.linalg
from tensorflow_probability.substrates import jax as tfp

from gpsurrogates.core import Array, ArrayLike, Inputs, Outputs, PRNGKey, Pytree, Tuple
from gpsurrogates.errors import NumericalFailure

from .kernels import Kernel
from .mean import MeanFunction, Zero

tfd = tfp.distributions

logger = logging.getLogger(__name__)

DEFAULT_JITTER = 1e-6

# Diagonal padding for sampling, in machine epsilons of the largest variance.
SAMPLE_DIAG_FACTOR = 1e3


def _mvn(loc: Array, scale_tril: Array) -> tfd.Distribution:
    return tfd.MultivariateNormalTriL(loc=loc, scale_tril=scale_tril)


@Pytree.dataclass
class GP(Pytree):
    """Gaussian process prior `f ~ GP(m, k)`.

    Inputs are 2-D `(n, d)` arrays (see `gpsurrogates.core.as_inputs`).
    """

    kernel: Kernel
    mean_fn: MeanFunction = Pytree.field(default_factory=Zero)

    def __call__(
        self,
        xs: Inputs,
        noise_var: ArrayLike = 0.0,
        jitter: float = DEFAULT_JITTER,
    ) -> "FiniteGP":
        """Project the process onto `xs` with i.i.d. Gaussian observation noise."""
        return FiniteGP(self, xs, noise_var, jitter)

    def mean(self, xs: Inputs) -> Outputs:
        return self.mean_fn(xs)

    def cov(self, xs: Inputs) -> Array:
        return self.kernel(xs, xs)

    def var(self, xs: Inputs) -> Outputs:
        return self.kernel.diag(xs)


@Pytree.dataclass
class FiniteGP(Pytree):
    """A GP prior evaluated at finitely many inputs, plus observation noise.

    Its marginal distribution is `N(m(x), K(x, x) + (noise_var + jitter) I)`.
    """

    gp: GP
    xs: Array
    noise_var: ArrayLike
    jitter: float = Pytree.static(default=DEFAULT_JITTER)

    def mean(self) -> Outputs:
        return self.gp.mean(self.xs)

    def cov(self) -> Array:
        n = self.xs.shape[0]
        return self.gp.cov(self.xs) + (self.noise_var + self.jitter) * jnp.eye(
            n, dtype=self.xs.dtype
        )

    def cholesky(self) -> Array:
        return jnp.linalg.cholesky(self.cov())

    def logpdf(self, ys: Outputs) -> Array:
        """Log marginal likelihood of `ys`.

        Traceable: a non-positive-definite covariance yields NaN rather than
        an exception.
        """
        return _mvn(self.mean(), self.cholesky()).log_prob(ys)


@Pytree.dataclass
class PosteriorGP(Pytree):
    """A GP prior conditioned on noisy observations `(xs, ys)`.

    `chol` is the lower Cholesky factor of the noisy training covariance and
    `alpha` solves `(K + σ²I) alpha = ys - m(xs)`.
    """

    prior: GP
    xs: Array
    ys: Array
    noise_var: ArrayLike
    chol: Array
    alpha: Array
    jitter: float = Pytree.static(default=DEFAULT_JITTER)

    def _cross(self, xq: Inputs) -> Array:
        return self.prior.kernel(self.xs, xq)

    def _whitened(self, k_cross: Array) -> Array:
        return jax.scipy.linalg.solve_triangular(self.chol, k_cross, lower=True)

    def mean(self, xq: Inputs) -> Outputs:
        return self.prior.mean(xq) + self._cross(xq).T @ self.alpha

    def var(self, xq: Inputs) -> Outputs:
        """Marginal variance of the latent function (observation noise excluded)."""
        return self.mean_and_var(xq)[1]

    def mean_and_var(self, xq: Inputs) -> Tuple[Outputs, Outputs]:
        k_cross = self._cross(xq)
        v = self._whitened(k_cross)
        mean = self.prior.mean(xq) + k_cross.T @ self.alpha
        var = self.prior.var(xq) - jnp.sum(v**2, axis=0)
        return mean, jnp.maximum(var, 0.0)

    def cov(self, xq: Inputs) -> Array:
        v = self._whitened(self._cross(xq))
        return self.prior.cov(xq) - v.T @ v

    def sample(self, key: PRNGKey, xq: Inputs, sample_shape: Tuple[int, ...] = ()) -> Outputs:
        """Draw joint samples of the latent function at `xq`.

        The result has shape `sample_shape + (m,)`.

        Raises:
            NumericalFailure: if the posterior covariance at `xq` is not
                finite.
        """
        mean, cov = self.mean(xq), self.cov(xq)
        return _mvn(mean, sampling_factor(cov, self.jitter)).sample(sample_shape, seed=key)

    def log_marginal_likelihood(self) -> Array:
        """Log marginal likelihood of the conditioning data."""
        return _mvn(self.prior.mean(self.xs), self.chol).log_prob(self.ys)


def sampling_factor(cov: Array, jitter: float = DEFAULT_JITTER) -> Array:
    """Lower-triangular `L` with `L Lᵀ ≈ cov`, for drawing correlated samples.

    A dense posterior covariance is numerically rank deficient, more so in
    single precision. The diagonal is first padded with the larger of
    `jitter` and `SAMPLE_DIAG_FACTOR` machine epsilons of the largest
    variance. If the Cholesky factor is still not finite, the factor is
    rebuilt from an eigendecomposition with negative eigenvalues clipped
    to zero.

    Raises:
        NumericalFailure: if `cov` itself is not finite.
    """
    if not bool(jnp.all(jnp.isfinite(cov))):
        raise NumericalFailure(
            f"Posterior covariance over {cov.shape[0]} points is not finite"
        )
    n = cov.shape[0]
    # Symmetrize: round-off in `K - vᵀv` breaks exact symmetry.
    cov = 0.5 * (cov + cov.T)
    eps = jnp.finfo(cov.dtype).eps
    pad = jnp.maximum(jitter, SAMPLE_DIAG_FACTOR * eps * jnp.max(jnp.abs(jnp.diag(cov))))
    chol = jnp.linalg.cholesky(cov + pad * jnp.eye(n, dtype=cov.dtype))
    if bool(jnp.all(jnp.isfinite(chol))):
        return chol

    logger.debug("Cholesky of a %dx%d sampling covariance failed, using eigh", n, n)
    evals, evecs = jnp.linalg.eigh(cov)
    root = evecs * jnp.sqrt(jnp.clip(evals, 0.0, None))
    # root rootᵀ = cov; with rootᵀ = QR this is RᵀR, so Rᵀ is lower triangular.
    chol = jnp.linalg.qr(root.T, mode="r").T
    if not bool(jnp.all(jnp.isfinite(chol))):
        raise NumericalFailure(
            f"Could not factorize the posterior covariance over {n} points"
        )
    return chol


def posterior(fx: FiniteGP, ys: ArrayLike) -> PosteriorGP:
    """Condition the finite projection `fx` on observed outputs `ys`.

    Raises:
        NumericalFailure: if the noisy training covariance is not
            positive definite.
    """
    ys = jnp.asarray(ys, dtype=fx.xs.dtype)
    chol = fx.cholesky()
    if not bool(jnp.all(jnp.isfinite(chol))):
        raise NumericalFailure(
            "Cholesky factorization of the training covariance failed "
            f"(n={fx.xs.shape[0]}, noise_var={float(fx.noise_var)}); "
            "the covariance is not positive definite"
        )
    alpha = jax.scipy.linalg.cho_solve((chol, True), ys - fx.mean())
    logger.debug(
        "Built posterior over %d observations (noise_var=%g)",
        fx.xs.shape[0],
        float(fx.noise_var),
    )
    return PosteriorGP(
        prior=fx.gp,
        xs=fx.xs,
        ys=ys,
        noise_var=fx.noise_var,
        chol=chol,
        alpha=alpha,
        jitter=fx.jitter,
    )


def log_marginal_likelihood(
    gp: GP,
    xs: Inputs,
    ys: Outputs,
    noise_var: ArrayLike,
    jitter: float = DEFAULT_JITTER,
) -> Array:
    """`log p(ys | xs)` under `gp` with Gaussian noise; safe to differentiate."""
    return gp(xs, noise_var, jitter).logpdf(ys)
