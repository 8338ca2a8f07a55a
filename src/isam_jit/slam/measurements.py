# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Residual models (measurement factors) for iSAM-JIT.

Each function here implements a whitened residual

      r(x; params) ∈ ℝᵏ

on the concatenation ``x`` of the values of the variables a factor touches.
The incremental engine only ever sees the factor capabilities (keys, error,
linearize); these functions are the measurement library behind them.

Families
--------
1. Euclidean
    • `prior_residual`              r = x − target
    • `odom_residual`               r = (x₁ − x₀) − measurement

2. Planar SLAM (SE(2) poses, 2D points)
    • `prior_pose2_residual`        r = target⁻¹ ∘ x
    • `between_pose2_residual`      r = meas⁻¹ ∘ (x₀⁻¹ ∘ x₁)
    • `pose2_landmark_residual`     r = R(θ)ᵀ (l − t) − measurement

3. SE(3)
    • `odom_se3_geodesic_residual`  r = relative_pose_se3(x₀, x₁) − measurement
    • `pose_landmark_relative_residual`
                                    r = R(w)ᵀ (l − t) − measurement

Weighting
---------
All residuals pass through `_apply_weight`: a scalar ``weight`` is an
information value (r' = √w · r), a vector ``weight`` is a per-component
square-root information. `sigma_to_weight` turns standard deviations into
the matching weight.

Registry
--------
`RESIDUAL_FUNCTIONS` maps factor type names to residual functions;
`register_residual` extends it and `make_factor` builds a `Factor` from a
type name, keys and params.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence

from isam_jit.core.jax_init import jnp
from isam_jit.core.math3d import (
    between_pose2,
    relative_pose_se3,
    transform_to_frame_pose2,
    transform_to_frame_se3,
)
from isam_jit.core.types import Factor, Key, ResidualFn


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Optional weighting of residuals.

    If params[key] is:
      - missing: no change
      - scalar:  r' = sqrt(w) * r          (scalar weight)
      - vector:  r' = w * r                (per-component sqrt-info)
    """
    w = params.get(key, None)
    if w is None:
        return residual

    w = jnp.asarray(w)
    if w.ndim == 0:
        return jnp.sqrt(w) * residual
    return w * residual


def sigma_to_weight(sigma):
    """
    Convert a standard deviation (or vector of them) to a weight usable by
    `_apply_weight`.

    For scalar sigma:   w = 1 / sigma^2   (information)
    For vector sigma:   w[i] = 1 / sigma[i]   (sqrt-information)
    """
    s = jnp.asarray(sigma, dtype=jnp.float64)
    if s.ndim == 0:
        return 1.0 / (s * s)
    return 1.0 / s


def prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Prior on a single variable:
        residual = x - target
    Works for any vector dimension.
    """
    r = x - params["target"]
    return _apply_weight(r, params)


def odom_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Euclidean between-factor:

        x = [x0, x1]
        residual = (x1 - x0) - measurement
    """
    dim = x.shape[0] // 2
    r = (x[dim:] - x[:dim]) - params["measurement"]
    return _apply_weight(r, params)


def prior_pose2_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """SE(2) prior: the relative pose from the target to ``x`` should vanish."""
    r = between_pose2(params["target"], x[:3])
    return _apply_weight(r, params)


def between_pose2_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    SE(2) odometry / loop closure between two poses.

        x = [pose0 (3), pose1 (3)]
        residual = between(measurement, between(pose0, pose1))
    """
    predicted = between_pose2(x[:3], x[3:6])
    r = between_pose2(params["measurement"], predicted)
    return _apply_weight(r, params)


def pose2_landmark_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    2D point observed in the frame of an SE(2) pose.

        x = [pose (3), landmark (2)]
        residual = R(theta)^T (landmark - t) - measurement
    """
    r = transform_to_frame_pose2(x[:3], x[3:5]) - params["measurement"]
    return _apply_weight(r, params)


def odom_se3_geodesic_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    SE(3) relative pose constraint in 6-vector form.

    pose0, pose1 in R^6: [tx, ty, tz, wx, wy, wz]
    measurement in R^6: relative pose from 0 to 1

        residual = relative_pose_se3(pose0, pose1) - measurement
    """
    assert x.shape[0] == 12, "odom_se3_geodesic_residual expects two 6D poses stacked."
    r = relative_pose_se3(x[:6], x[6:]) - params["measurement"]
    return _apply_weight(r, params)


def pose_landmark_relative_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    3D landmark observed in the frame of an SE(3) pose.

    x = [pose (6), landmark (3)]
    params:
      - "measurement": expected landmark position in the pose frame (R^3)
      - "weight" (optional)

        residual = R^T (landmark - t) - measurement
    """
    r = transform_to_frame_se3(x[:6], x[6:9]) - params["measurement"]
    return _apply_weight(r, params)


RESIDUAL_FUNCTIONS: Dict[str, ResidualFn] = {
    "prior": prior_residual,
    "odom": odom_residual,
    "prior_pose2": prior_pose2_residual,
    "between_pose2": between_pose2_residual,
    "pose2_landmark": pose2_landmark_residual,
    "odom_se3_geodesic": odom_se3_geodesic_residual,
    "pose_landmark_relative": pose_landmark_relative_residual,
}


def register_residual(f_type: str, fn: ResidualFn) -> None:
    RESIDUAL_FUNCTIONS[f_type] = fn


def make_factor(
    f_type: str,
    var_ids: Sequence[Key],
    params: Dict[str, Any],
    registry: Optional[Mapping[str, ResidualFn]] = None,
) -> Factor:
    """Build a factor of a registered type; array-like params become float64 arrays."""
    registry = RESIDUAL_FUNCTIONS if registry is None else registry
    try:
        fn = registry[f_type]
    except KeyError:
        raise ValueError(f"unknown factor type {f_type!r}") from None
    arrays = {name: jnp.asarray(value, dtype=jnp.float64) for name, value in params.items()}
    return Factor(type=f_type, var_ids=tuple(var_ids), params=arrays, residual_fn=fn)
