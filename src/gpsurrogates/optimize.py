"""Box-constrained maximum-marginal-likelihood search over hyperparameters.

Only the parameters named in the prior are free; all other entries of the
current record (including `noise_var` when it is not in the prior) are held at
their current values. The search is multi-start L-BFGS-B (`scipy.optimize`)
over the free values, with gradients of the log marginal likelihood from
`jax.value_and_grad` through the user's kernel builder.

The search is pure: it reads observations and returns a new record, it never
touches a surrogate.
"""

import logging
from dataclasses import dataclass

import jax
import jax.numpy as jnp
import jax.random as jrand
import numpy as np
from scipy.optimize import OptimizeResult, minimize

from gpsurrogates.core import (
    Any,
    Callable,
    Inputs,
    Mapping,
    Optional,
    Outputs,
    Pytree,
    as_inputs,
)
from gpsurrogates.errors import InvalidArgument, OptimizationFailure
from gpsurrogates.gp import DEFAULT_JITTER, GP, MeanFunction, Zero, log_marginal_likelihood
from gpsurrogates.hyperparameters import (
    NOISE_DEFAULT,
    NOISE_VAR,
    BoundedHyperparameters,
    HyperparameterRecord,
    as_prior,
    as_record,
)

logger = logging.getLogger(__name__)

# Raised when a kernel builder forces a traced value to a Python scalar.
_TRACER_ERRORS = (
    jax.errors.ConcretizationTypeError,
    jax.errors.TracerArrayConversionError,
    jax.errors.TracerIntegerConversionError,
)

# scipy's default L-BFGS-B `ftol`.
_LBFGSB_FTOL = 2.220446049250313e-09


@dataclass(frozen=True)
class OptimizerConfig:
    """Settings of the bounded hyperparameter search.

    Args:
        n_restarts: Extra starts drawn uniformly in the box, on top of the
            current values. Only used when every free box is finite.
        max_iter: Iteration cap per L-BFGS-B run.
        tol: Convergence tolerance passed to `scipy.optimize.minimize`. When
            `None`, scipy's default `ftol` is loosened to what the
            objective's dtype can resolve, so single-precision searches can
            still report convergence.
        seed: Seed for the random starts.
        use_gradients: Differentiate the objective with JAX. Set to `False`
            for kernel builders that cannot be traced; scipy then uses
            finite differences.
        require_convergence: Raise `OptimizationFailure` unless at least one
            start reports convergence.
    """

    n_restarts: int = 5
    max_iter: int = 200
    tol: Optional[float] = None
    seed: int = 0
    use_gradients: bool = True
    require_convergence: bool = True


@Pytree.dataclass
class HyperparameterFit(Pytree):
    """Outcome of a bounded search."""

    hyperparameters: HyperparameterRecord
    log_marginal_likelihood: float = Pytree.static()
    n_starts: int = Pytree.static()
    n_converged: int = Pytree.static()


def _start_value(current: HyperparameterRecord, name: str, lo: float, hi: float) -> float:
    if name in current:
        value = float(current[name])
    elif np.isfinite(lo) and np.isfinite(hi):
        value = 0.5 * (lo + hi)
    elif np.isfinite(lo):
        value = lo
    elif np.isfinite(hi):
        value = hi
    else:
        value = 0.0
    return float(np.clip(value, lo, hi))


def negative_log_marginal_likelihood(
    xs: Inputs,
    ys: Outputs,
    kernel_creator: Callable[..., Any],
    base: HyperparameterRecord,
    free_names: tuple,
    *,
    mean_fn: MeanFunction,
    jitter: float = DEFAULT_JITTER,
) -> Callable[[Any], Any]:
    """Objective over the free values `theta`, ordered as `free_names`.

    The kernel builder never sees `noise_var`.
    """

    def objective(theta):
        record = base.replace({name: theta[i] for i, name in enumerate(free_names)})
        gp = GP(kernel_creator(record.without(NOISE_VAR)), mean_fn)
        return -log_marginal_likelihood(gp, xs, ys, record[NOISE_VAR], jitter)

    return objective


class BoundedHyperparameterOptimizer:
    """Multi-start L-BFGS-B maximizer of the log marginal likelihood."""

    def __init__(self, config: Optional[OptimizerConfig] = None):
        self.config = config or OptimizerConfig()

    def _scipy_objective(self, objective):
        if self.config.use_gradients:
            value_and_grad = jax.jit(jax.value_and_grad(objective))

            def fun(theta):
                try:
                    value, grad = value_and_grad(jnp.asarray(theta))
                except _TRACER_ERRORS as e:
                    raise OptimizationFailure(
                        "The kernel builder cannot be traced by JAX; pass "
                        "OptimizerConfig(use_gradients=False) to optimize it "
                        "with finite differences instead"
                    ) from e
                value = float(value)
                if not np.isfinite(value):
                    return np.inf, np.zeros_like(theta)
                return value, np.asarray(grad, dtype=float)

            return fun, True

        def fun(theta):
            value = float(objective([float(t) for t in theta]))
            return value if np.isfinite(value) else np.inf

        return fun, False

    def _starts(self, x0: np.ndarray, lower: np.ndarray, upper: np.ndarray) -> list:
        starts = [x0]
        n = self.config.n_restarts
        if n > 0 and np.all(np.isfinite(lower)) and np.all(np.isfinite(upper)):
            draws = jrand.uniform(
                jrand.PRNGKey(self.config.seed),
                (n, x0.shape[0]),
                minval=jnp.asarray(lower),
                maxval=jnp.asarray(upper),
            )
            starts.extend(np.asarray(draws, dtype=float))
        return starts

    def fit(
        self,
        xs: Inputs,
        ys: Outputs,
        kernel_creator: Callable[..., Any],
        prior: "BoundedHyperparameters | Mapping[str, Any]",
        current: "HyperparameterRecord | Mapping[str, Any] | None" = None,
        *,
        mean_fn: Optional[MeanFunction] = None,
        jitter: float = DEFAULT_JITTER,
    ) -> HyperparameterFit:
        """Search the prior's box for the record maximizing the marginal likelihood.

        Args:
            xs: Training inputs, `(n,)` scalars or `(n, d)` vectors.
            ys: Training outputs `(n,)`.
            kernel_creator: Kernel builder; receives records without `noise_var`.
            prior: Box per free parameter.
            current: Values of the fixed parameters and the first start.
            mean_fn: Prior mean; zero by default.
            jitter: Diagonal jitter added before factorization.

        Raises:
            OptimizationFailure: empty box, no finite objective at any start,
                or (with `require_convergence`) no start converged.
        """
        xs = as_inputs(xs)
        ys = jnp.asarray(ys, dtype=xs.dtype)
        prior = as_prior(prior)
        base = as_record(current).with_default(NOISE_DEFAULT)
        mean_fn = Zero() if mean_fn is None else mean_fn
        if xs.shape[0] != ys.shape[0]:
            raise InvalidArgument(
                f"xs and ys have different lengths ({xs.shape[0]} != {ys.shape[0]})"
            )

        if prior.is_empty_box():
            empty = [name for name, (lo, hi) in prior.items() if lo > hi]
            raise OptimizationFailure(f"No feasible point: empty box for {empty}")

        free_names = tuple(prior.names)
        if not free_names:
            logger.debug("Empty prior, nothing to optimize")
            lml = log_marginal_likelihood(
                GP(kernel_creator(base.without(NOISE_VAR)), mean_fn),
                xs, ys, base[NOISE_VAR], jitter,
            )
            return HyperparameterFit(base, float(lml), 0, 0)

        lower = np.array(prior.lower, dtype=float)
        upper = np.array(prior.upper, dtype=float)
        x0 = np.array(
            [_start_value(base, name, lo, hi) for name, (lo, hi) in prior.items()]
        )
        base = base.replace(dict(zip(free_names, x0.tolist())))

        objective = negative_log_marginal_likelihood(
            xs, ys, kernel_creator, base, free_names, mean_fn=mean_fn, jitter=jitter
        )
        fun, jac = self._scipy_objective(objective)
        # scipy expects `None` for an unbounded side.
        bounds = [
            (lo if np.isfinite(lo) else None, hi if np.isfinite(hi) else None)
            for lo, hi in zip(lower, upper)
        ]

        options = {"maxiter": self.config.max_iter}
        if self.config.tol is None:
            # Smallest relative decrease the objective can resolve in its dtype.
            options["ftol"] = max(_LBFGSB_FTOL, 10 * float(jnp.finfo(xs.dtype).eps))

        results: list[OptimizeResult] = []
        for i, start in enumerate(self._starts(x0, lower, upper)):
            result = minimize(
                fun,
                start,
                jac=jac,
                method="L-BFGS-B",
                bounds=bounds,
                tol=self.config.tol,
                options=options,
            )
            logger.debug(
                "Start %d: success=%s fun=%g x=%s (%s)",
                i, result.success, result.fun, result.x, result.message,
            )
            results.append(result)

        finite = [r for r in results if np.isfinite(r.fun)]
        if not finite:
            raise OptimizationFailure(
                f"No finite log marginal likelihood at any of {len(results)} starts; "
                "try narrowing the bounds of " + ", ".join(free_names)
            )
        converged = [r for r in finite if r.success]
        if self.config.require_convergence and not converged:
            best = min(finite, key=lambda r: r.fun)
            raise OptimizationFailure(
                f"L-BFGS-B did not converge from any of {len(results)} starts "
                f"(best status {best.status}: {best.message})"
            )
        best = min(converged or finite, key=lambda r: r.fun)

        theta = np.clip(best.x, lower, upper)
        for name, value, lo, hi in zip(free_names, theta, lower, upper):
            if np.isclose(value, lo) or np.isclose(value, hi):
                logger.warning(
                    "Optimized %s=%g sits on its bound [%g, %g]", name, value, lo, hi
                )
        record = base.replace({n: float(v) for n, v in zip(free_names, theta)})
        return HyperparameterFit(record, float(-best.fun), len(results), len(converged))

    def __call__(self, *args, **kwargs) -> HyperparameterRecord:
        return self.fit(*args, **kwargs).hyperparameters


def optimize_hyperparameters(
    xs: Inputs,
    ys: Outputs,
    kernel_creator: Callable[..., Any],
    prior: "BoundedHyperparameters | Mapping[str, Any]",
    current: "HyperparameterRecord | Mapping[str, Any] | None" = None,
    *,
    mean_fn: Optional[MeanFunction] = None,
    jitter: float = DEFAULT_JITTER,
    config: Optional[OptimizerConfig] = None,
) -> HyperparameterRecord:
    """Functional form of `BoundedHyperparameterOptimizer(config)(...)`."""
    return BoundedHyperparameterOptimizer(config)(
        xs, ys, kernel_creator, prior, current, mean_fn=mean_fn, jitter=jitter
    )
