from __future__ import annotations

import numpy as np
import pytest
import jax.numpy as jnp

from isam_jit import NonlinearFactorGraph, Values, make_factor, sigma_to_weight
from isam_jit.core.types import Factor


def _numeric_jacobian(factor: Factor, values: Values, key, eps: float = 1e-6) -> np.ndarray:
    """Central differences of the residual through the variable's retraction."""
    dim = values.dim(key)
    cols = []
    for i in range(dim):
        step = np.zeros(dim)
        step[i] = eps
        plus = values.copy()
        plus.update(key, values.retract_key(key, step))
        minus = values.copy()
        minus.update(key, values.retract_key(key, -step))
        cols.append((factor.residual(plus) - factor.residual(minus)) / (2 * eps))
    return np.stack(cols, axis=1)


@pytest.mark.parametrize(
    "f_type, var_types, values, params",
    [
        (
            "between_pose2",
            ("pose2", "pose2"),
            ([0.3, -0.2, 0.4], [1.2, 0.5, 0.9]),
            {"measurement": [1.0, 0.2, 0.4], "weight": [10.0, 10.0, 20.0]},
        ),
        (
            "pose2_landmark",
            ("pose2", "point2"),
            ([0.3, -0.2, 0.4], [2.0, 1.0]),
            {"measurement": [1.5, 0.5], "weight": 4.0},
        ),
        (
            "pose_landmark_relative",
            ("pose_se3", "landmark3d"),
            ([0.1, 0.2, -0.3, 0.2, -0.1, 0.3], [1.0, 2.0, 0.5]),
            {"measurement": [0.8, 1.7, 0.9]},
        ),
        (
            "odom_se3_geodesic",
            ("pose_se3", "pose_se3"),
            ([0.1, 0.2, -0.3, 0.2, -0.1, 0.3], [1.0, 0.4, -0.2, 0.25, 0.0, 0.35]),
            {"measurement": [0.9, 0.1, 0.1, 0.05, 0.1, 0.05]},
        ),
    ],
)
def test_linearize_matches_finite_differences(f_type, var_types, values, params):
    """
    Jacobian blocks are derivatives of the whitened residual with respect to
    the tangent increment of each variable, and b is the negated residual.
    """
    theta = Values()
    for key, (var_type, value) in enumerate(zip(var_types, values)):
        theta.insert(key, value, var_type)
    factor = make_factor(f_type, tuple(range(len(values))), params)

    linear = factor.linearize(theta)

    assert linear.keys == factor.keys()
    assert np.allclose(linear.b, -factor.residual(theta))
    for key, block in zip(linear.keys, linear.blocks):
        assert block.shape == (linear.rows, theta.dim(key))
        assert np.allclose(block, _numeric_jacobian(factor, theta, key), atol=1e-5)


def test_error_is_half_squared_whitened_residual():
    theta = Values()
    theta.insert(0, [1.0, 2.0], "point2")
    factor = make_factor("prior", (0,), {"target": [0.0, 0.0], "weight": 4.0})
    # sqrt(4) * [1, 2] -> 0.5 * (4 + 16)
    assert factor.error(theta) == pytest.approx(10.0)


def test_sigma_to_weight():
    assert float(sigma_to_weight(0.5)) == pytest.approx(4.0)
    assert jnp.allclose(sigma_to_weight(jnp.array([0.5, 0.1])), jnp.array([2.0, 10.0]))


def test_make_factor_rejects_unknown_type_and_repeated_keys():
    with pytest.raises(ValueError):
        make_factor("no_such_factor", (0,), {})
    with pytest.raises(ValueError):
        make_factor("odom", (1, 1), {"measurement": [1.0]})


def test_graph_level_residual_registration():
    """A residual registered on one graph is usable through that graph's add_factor."""

    def scaled_prior(x, params):
        return 3.0 * (x - params["target"])

    graph = NonlinearFactorGraph()
    graph.register_residual("scaled_prior", scaled_prior)
    idx = graph.add_factor("scaled_prior", (0,), {"target": [1.0]})

    theta = Values()
    theta.insert(0, [2.0])
    assert idx == 0
    assert graph.error(theta) == pytest.approx(4.5)
    assert np.allclose(graph.linearize(theta)[0].blocks[0], [[3.0]])
