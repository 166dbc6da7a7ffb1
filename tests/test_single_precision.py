"""End-to-end checks at JAX's default single precision.

`conftest.py` switches the whole session to float64, so each scenario runs in
a fresh interpreter with `JAX_ENABLE_X64=0` and reports back as JSON.
"""

import json
import os
import subprocess
import sys
import textwrap

import pytest

SRC = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src")


def run_float32(script: str) -> dict:
    env = dict(os.environ, JAX_ENABLE_X64="0", JAX_PLATFORMS="cpu")
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [SRC, env.get("PYTHONPATH")]))
    proc = subprocess.run(
        [sys.executable, "-c", textwrap.dedent(script)],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=env,
        check=False,
        timeout=600,
    )
    assert proc.returncode == 0, f"float32 run failed:\n{proc.stderr}"
    return json.loads(proc.stdout.strip().splitlines()[-1])


@pytest.fixture(scope="module")
def reference_scenario():
    return run_float32(
        """
        import json
        from gpsurrogates import GPSurrogate

        s = GPSurrogate([0.0, 1.0, 2.0], [0.0, 1.0, 4.0])
        at_one = float(s.mean(1.0))
        before = float(s.mean(3.0))
        s.add_point(3.0, 9.0)
        print(json.dumps({
            "dtype": str(s.xs.dtype),
            "at_one": at_one,
            "before": before,
            "after": float(s.mean(3.0)),
            "n": len(s),
        }))
        """
    )


def test_runs_in_single_precision(reference_scenario):
    assert reference_scenario["dtype"] == "float32"


def test_reference_scenario(reference_scenario, noise_tolerance):
    r = reference_scenario
    assert abs(r["at_one"] - 1.0) < noise_tolerance
    assert r["n"] == 4
    assert abs(r["after"] - 9.0) < abs(r["before"] - 9.0)


def test_update_hyperparameters():
    r = run_float32(
        """
        import json
        import jax.numpy as jnp
        from gpsurrogates import GPSurrogate
        from gpsurrogates.gp import Matern52

        xs = jnp.linspace(0.0, 6.0, 12)
        s = GPSurrogate(
            xs,
            jnp.sin(xs),
            kernel_creator=lambda hp: Matern52(lengthscale=hp["lengthscale"]),
            hyperparameters={"noise_var": 0.3, "lengthscale": 0.2},
        )
        before = float(s.log_marginal_likelihood())
        record = s.update_hyperparameters(
            {"lengthscale": (0.05, 5.0), "noise_var": (1e-4, 1.0)}
        )
        print(json.dumps({
            "before": before,
            "after": float(s.log_marginal_likelihood()),
            "lengthscale": record["lengthscale"],
            "noise_var": record["noise_var"],
        }))
        """
    )
    assert 0.05 <= r["lengthscale"] <= 5.0
    assert 1e-4 <= r["noise_var"] <= 1.0
    assert r["after"] > r["before"]


def test_dense_sample_from_noiseless_surrogate_is_finite():
    r = run_float32(
        """
        import json
        import jax.numpy as jnp
        from gpsurrogates import GPSurrogate

        xs = jnp.linspace(0.0, 4.0, 30)
        s = GPSurrogate(xs, jnp.sin(xs), hyperparameters={"lengthscale": 1.0})
        draw = s.sample(jnp.linspace(0.0, 4.0, 200))
        print(json.dumps({
            "noise_var": s.hyperparameters.noise_var,
            "shape": list(draw.shape),
            "finite": bool(jnp.all(jnp.isfinite(draw))),
            "dtype": str(draw.dtype),
        }))
        """
    )
    assert r["noise_var"] == 0.0
    assert r["shape"] == [200]
    assert r["dtype"] == "float32"
    assert r["finite"]
