"""Tests for GPSurrogate: construction, incremental updates, hyperparameter
refits and posterior queries."""

import threading

import jax.numpy as jnp
import pytest

from gpsurrogates import (
    BoundedHyperparameters,
    DimensionMismatch,
    GPSurrogate,
    HyperparameterRecord,
    InvalidArgument,
    NumericalFailure,
    OptimizationFailure,
    OptimizerConfig,
)
from gpsurrogates.gp import RBF, ConstantMean, Linear, Matern52


def snapshot(s):
    return s.xs, s.ys, s.posterior, s.prior, s.hyperparameters


def assert_unchanged(s, before):
    for old, new in zip(before, snapshot(s)):
        assert old is new


def assert_consistent(s, standard_tolerance):
    """The posterior matches one rebuilt from scratch on the same state."""
    fresh = GPSurrogate(
        s.xs, s.ys, kernel_creator=s.kernel_creator, hyperparameters=s.hyperparameters
    )
    mean, var = s.mean_and_var(s.xs)
    fresh_mean, fresh_var = fresh.mean_and_var(s.xs)
    assert jnp.allclose(mean, fresh_mean, atol=standard_tolerance)
    assert jnp.allclose(var, fresh_var, atol=standard_tolerance)


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    def test_defaults(self, quadratic_surrogate):
        s = quadratic_surrogate
        assert len(s) == 3
        assert s.hyperparameters == {"noise_var": 0.1}
        assert s.prior.kernel == Matern52()
        assert s.input_dim is None

    def test_noise_var_defaults_to_zero_when_absent(self, quadratic_data):
        xs, ys = quadratic_data
        s = GPSurrogate(xs, ys, hyperparameters={"lengthscale": 1.0})
        assert s.hyperparameters == {"noise_var": 0.0, "lengthscale": 1.0}

    def test_kernel_creator_receives_record_without_noise(self, quadratic_data):
        xs, ys = quadratic_data
        seen = []

        def builder(hp):
            seen.append(hp)
            return RBF(lengthscale=hp["lengthscale"])

        GPSurrogate(xs, ys, kernel_creator=builder, hyperparameters={"noise_var": 0.2, "lengthscale": 0.5})
        assert seen == [HyperparameterRecord.create(lengthscale=0.5)]

    def test_mean_reproduces_training_value(self, quadratic_surrogate, noise_tolerance):
        assert abs(float(quadratic_surrogate.mean(1.0)) - 1.0) < noise_tolerance

    def test_vector_inputs(self, plane_data, standard_tolerance):
        xs, ys = plane_data
        s = GPSurrogate(xs, ys, hyperparameters={"noise_var": 1e-8})
        assert s.input_dim == 2
        assert s.mean(xs[3]).shape == ()
        assert jnp.allclose(s.mean(xs), ys, atol=1e-2)
        assert_consistent(s, standard_tolerance)

    def test_prior_mean_function(self, quadratic_data):
        xs, ys = quadratic_data
        s = GPSurrogate(xs, ys, mean_fn=ConstantMean(value=5.0))
        assert jnp.allclose(s.mean(100.0), 5.0, atol=1e-6)

    def test_far_field_reverts_to_output_average(self, quadratic_data):
        xs, ys = quadratic_data
        s = GPSurrogate(xs, ys, mean_fn=ConstantMean.from_outputs(ys))
        assert jnp.allclose(s.mean(-100.0), 5.0 / 3.0, atol=1e-6)

    @pytest.mark.parametrize(
        "xs, ys",
        [
            ([0.0, 1.0], [0.0]),
            ([], []),
            ([0.0, 1.0], [[0.0], [1.0]]),
            ([[[0.0]]], [0.0]),
        ],
    )
    def test_malformed_observations(self, xs, ys):
        with pytest.raises(InvalidArgument):
            GPSurrogate(xs, ys)

    def test_non_positive_definite_kernel(self, quadratic_data):
        xs, ys = quadratic_data
        with pytest.raises(NumericalFailure):
            GPSurrogate(
                xs,
                ys,
                kernel_creator=lambda _: RBF(variance=-1.0),
                hyperparameters={"noise_var": 0.0},
                jitter=0.0,
            )


# =============================================================================
# Incremental updates
# =============================================================================


class TestAddPoint:
    def test_add_single_point(self, quadratic_surrogate, standard_tolerance):
        s = quadratic_surrogate
        before = float(s.mean(3.0))
        s.add_point(3.0, 9.0)
        after = float(s.mean(3.0))
        assert len(s) == 4
        assert abs(after - 9.0) < abs(before - 9.0)
        assert_consistent(s, standard_tolerance)

    def test_add_points_grows_monotonically_in_order(self, quadratic_surrogate):
        s = quadratic_surrogate
        old_xs, old_ys = s.xs, s.ys
        s.add_points([3.0, 4.0], [9.0, 16.0])
        assert len(s) == 5
        assert jnp.array_equal(s.xs[:3], old_xs)
        assert jnp.array_equal(s.ys[:3], old_ys)
        assert jnp.array_equal(s.xs[3:], jnp.array([3.0, 4.0]))
        assert jnp.array_equal(s.ys[3:], jnp.array([9.0, 16.0]))

    def test_add_point_with_sequences_is_the_batch_form(self, quadratic_surrogate):
        s = quadratic_surrogate
        s.add_point([3.0, 4.0], [9.0, 16.0])
        assert len(s) == 5

    def test_old_arrays_are_never_mutated(self, quadratic_surrogate):
        s = quadratic_surrogate
        old_xs = s.xs
        s.add_point(3.0, 9.0)
        assert old_xs.shape == (3,)
        assert jnp.array_equal(old_xs, jnp.array([0.0, 1.0, 2.0]))

    def test_hyperparameters_unchanged(self, quadratic_surrogate):
        s = quadratic_surrogate
        record = s.hyperparameters
        s.add_point(3.0, 9.0)
        assert s.hyperparameters is record

    def test_mismatched_lengths_leave_surrogate_untouched(self, quadratic_surrogate):
        s = quadratic_surrogate
        before = snapshot(s)
        with pytest.raises(InvalidArgument):
            s.add_point([1.5, 2.5], [1.0])
        with pytest.raises(InvalidArgument):
            s.add_points([1.5, 2.5], [1.0])
        assert_unchanged(s, before)
        assert len(s) == 3

    def test_wrong_dimension_leaves_surrogate_untouched(self, plane_data):
        xs, ys = plane_data
        s = GPSurrogate(xs, ys)
        before = snapshot(s)
        with pytest.raises(DimensionMismatch):
            s.add_point([1.0, 2.0, 3.0], 0.0)
        with pytest.raises(DimensionMismatch):
            s.add_points([[1.0, 2.0, 3.0]], [0.0])
        with pytest.raises(DimensionMismatch):
            s.add_points([1.0, 2.0], [0.0, 1.0])
        assert_unchanged(s, before)

    def test_vector_point(self, plane_data):
        xs, ys = plane_data
        s = GPSurrogate(xs, ys)
        s.add_point([0.3, 0.3], 1.0)
        assert s.xs.shape == (17, 2)

    def test_failed_rebuild_leaves_surrogate_untouched(self):
        s = GPSurrogate(
            [1.0],
            [1.0],
            kernel_creator=lambda _: Linear(),
            hyperparameters={"noise_var": 0.0},
            jitter=0.0,
        )
        before = snapshot(s)
        # A noiseless linear kernel has rank one, so a second point makes it singular.
        with pytest.raises(NumericalFailure):
            s.add_point(2.0, 2.0)
        assert_unchanged(s, before)


# =============================================================================
# Hyperparameter updates
# =============================================================================


class TestUpdateHyperparameters:
    def test_bounded_fields_land_in_box(self, sine_surrogate, standard_tolerance):
        s = sine_surrogate
        prior = BoundedHyperparameters.create(lengthscale=(0.05, 5.0), noise_var=(1e-6, 1.0))
        lml_before = float(s.log_marginal_likelihood())
        record = s.update_hyperparameters(prior)

        assert s.hyperparameters is record
        assert prior.contains(s.hyperparameters)
        assert s.hyperparameters["variance"] == 1.0
        assert float(s.log_marginal_likelihood()) > lml_before
        assert s.prior.kernel == Matern52(variance=1.0, lengthscale=record["lengthscale"])
        assert_consistent(s, standard_tolerance)

    def test_plain_mapping_prior(self, sine_surrogate):
        s = sine_surrogate
        s.update_hyperparameters({"noise_var": (1e-6, 0.05)})
        assert 1e-6 <= s.hyperparameters.noise_var <= 0.05
        assert s.hyperparameters["lengthscale"] == 0.2

    def test_observations_unchanged(self, sine_surrogate):
        s = sine_surrogate
        xs, ys = s.xs, s.ys
        s.update_hyperparameters({"lengthscale": (0.05, 5.0)})
        assert s.xs is xs and s.ys is ys

    def test_failed_search_leaves_surrogate_untouched(self, sine_surrogate):
        s = sine_surrogate
        before = snapshot(s)
        with pytest.raises(OptimizationFailure):
            s.update_hyperparameters({"lengthscale": (2.0, 1.0)})
        with pytest.raises(OptimizationFailure):
            s.update_hyperparameters(
                {"lengthscale": (0.05, 5.0)},
                config=OptimizerConfig(n_restarts=0, max_iter=1),
            )
        assert_unchanged(s, before)

    def test_failing_kernel_builder_leaves_surrogate_untouched(self, sine_data):
        xs, ys = sine_data
        state = {"fail": False}

        def builder(hp):
            if state["fail"]:
                raise RuntimeError("kernel library unavailable")
            return Matern52(lengthscale=hp["lengthscale"])

        s = GPSurrogate(xs, ys, kernel_creator=builder, hyperparameters={"lengthscale": 1.0})
        before = snapshot(s)
        state["fail"] = True
        with pytest.raises(RuntimeError):
            s.update_hyperparameters({"lengthscale": (0.05, 5.0)})
        assert_unchanged(s, before)


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    def test_point_and_batch_shapes(self, quadratic_surrogate):
        s = quadratic_surrogate
        assert s.mean(0.5).shape == ()
        assert s.var(0.5).shape == ()
        assert s.mean([0.5, 1.5]).shape == (2,)
        assert s.var([0.5, 1.5]).shape == (2,)
        assert s.cov([0.5, 1.5]).shape == (2, 2)

    def test_mean_and_var_agree_with_separate_calls(self, quadratic_surrogate):
        s = quadratic_surrogate
        points = jnp.array([-1.0, 0.5, 1.5, 5.0])
        mean, var = s.mean_and_var(points)
        assert jnp.allclose(mean, s.mean(points))
        assert jnp.allclose(var, s.var(points))
        m, v = s.mean_and_var(0.5)
        assert jnp.allclose(m, s.mean(0.5))
        assert jnp.allclose(v, s.var(0.5))

    def test_variance_is_non_negative_and_small_near_data(self, quadratic_surrogate):
        s = quadratic_surrogate
        var = s.var(jnp.linspace(-3.0, 5.0, 50))
        assert jnp.all(var >= 0.0)
        assert s.var(1.0) < s.var(10.0)

    def test_joint_sample_shape_and_freshness(self, quadratic_surrogate):
        s = quadratic_surrogate
        points = jnp.array([0.5, 1.5, 2.5, 3.5])
        mean, var = s.mean(points), s.var(points)
        first, second = s.sample(points), s.sample(points)
        assert first.shape == (4,)
        assert not jnp.allclose(first, second)
        assert jnp.array_equal(s.mean(points), mean)
        assert jnp.array_equal(s.var(points), var)

    def test_sample_with_explicit_key_is_reproducible(self, quadratic_surrogate, base_key):
        s = quadratic_surrogate
        points = jnp.array([0.5, 1.5])
        assert jnp.array_equal(s.sample(points, key=base_key), s.sample(points, key=base_key))

    def test_single_point_sample_is_the_one_point_joint_draw(self, quadratic_surrogate, base_key):
        s = quadratic_surrogate
        draw = s.sample(0.5, key=base_key)
        assert draw.shape == ()
        assert jnp.allclose(draw, s.sample(jnp.array([0.5]), key=base_key)[0])

    def test_dimension_mismatch(self, quadratic_surrogate, plane_data):
        with pytest.raises(DimensionMismatch):
            quadratic_surrogate.mean([[0.0, 1.0]])
        xs, ys = plane_data
        s = GPSurrogate(xs, ys)
        for query in (s.mean, s.var, s.mean_and_var, s.cov, s.sample):
            with pytest.raises(DimensionMismatch):
                query([1.0, 2.0, 3.0])
        with pytest.raises(DimensionMismatch):
            s.mean(0.5)

    def test_concurrent_reads(self, quadratic_surrogate):
        s = quadratic_surrogate
        points = jnp.linspace(0.0, 2.0, 5)
        expected = s.mean(points)
        results = []

        def read():
            results.append(s.mean(points))
            s.sample(points)

        threads = [threading.Thread(target=read) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == 4
        assert all(jnp.array_equal(r, expected) for r in results)
