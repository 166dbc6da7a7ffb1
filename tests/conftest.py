"""
Shared fixtures and configuration for the gpsurrogates test suite.

Double precision is enabled for the whole session: the bounded optimizer's
line searches and the interpolation checks rely on it.
"""

import jax

jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp  # noqa: E402
import jax.random as jrand  # noqa: E402
import pytest  # noqa: E402

from gpsurrogates import GPSurrogate  # noqa: E402
from gpsurrogates.gp import Matern52  # noqa: E402


# ============================================================================
# Random Key Fixtures
# ============================================================================


@pytest.fixture
def base_key():
    """Base random key for reproducible tests."""
    return jrand.PRNGKey(42)


# ============================================================================
# Test Tolerance Fixtures
# ============================================================================


@pytest.fixture
def strict_tolerance():
    """Strict tolerance for exact linear-algebra identities."""
    return 1e-10


@pytest.fixture
def standard_tolerance():
    """Standard tolerance for most numerical tests."""
    return 1e-6


@pytest.fixture
def noise_tolerance():
    """How far a noisy posterior mean may sit from its training value."""
    return 0.2


# ============================================================================
# Data Fixtures
# ============================================================================


@pytest.fixture
def quadratic_data():
    """Three samples of f(x) = x², the reference scenario."""
    return jnp.array([0.0, 1.0, 2.0]), jnp.array([0.0, 1.0, 4.0])


@pytest.fixture
def sine_data():
    """Twelve noiseless samples of sin on [0, 6]."""
    xs = jnp.linspace(0.0, 6.0, 12)
    return xs, jnp.sin(xs)


@pytest.fixture
def plane_data():
    """Samples of a smooth function on a 2-D grid."""
    g = jnp.linspace(-1.0, 1.0, 4)
    xx, yy = jnp.meshgrid(g, g)
    xs = jnp.stack([xx.ravel(), yy.ravel()], axis=1)
    ys = jnp.sin(xs[:, 0]) + 0.5 * xs[:, 1]
    return xs, ys


# ============================================================================
# Surrogate Fixtures
# ============================================================================


def scaled_matern(hp):
    """Kernel builder reading `variance` and `lengthscale`."""
    return Matern52(variance=hp["variance"], lengthscale=hp["lengthscale"])


@pytest.fixture
def quadratic_surrogate(quadratic_data):
    """Default-kernel surrogate with `noise_var = 0.1`."""
    xs, ys = quadratic_data
    return GPSurrogate(xs, ys)


@pytest.fixture
def sine_surrogate(sine_data):
    """Surrogate with a tunable kernel and deliberately poor hyperparameters."""
    xs, ys = sine_data
    return GPSurrogate(
        xs,
        ys,
        kernel_creator=scaled_matern,
        hyperparameters={"noise_var": 0.3, "variance": 1.0, "lengthscale": 0.2},
    )
