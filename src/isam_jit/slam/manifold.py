# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Manifold dispatch for iSAM-JIT variables.

The incremental solver works in local tangent spaces while the state lives
on a manifold (SE(2) / SE(3) for poses, ℝⁿ for points). This module is the
single place that knows how each variable type is updated:

    • `TYPE_TO_MANIFOLD`            (variable type → {"se2", "se3", "euclidean"})
    • `get_manifold_for_var_type`
    • `retract(manifold, x, delta)` (x ⊕ δ)
    • `local_coordinates(manifold, x, y)` (y ⊖ x, inverse of retract)

Both operations are traceable by JAX: factor linearization composes them
with the residual and differentiates at a zero increment, so Jacobians are
always taken with respect to the same tangent parameterization that
`Values.retract` later applies.

For every supported manifold the tangent dimension equals the dimension of
the stored value vector.
"""

from __future__ import annotations

from typing import Dict

from isam_jit.core.jax_init import jax, jnp
from isam_jit.core.math3d import (
    between_pose2,
    compose_pose2,
    compose_pose_se3,
    relative_pose_se3,
)

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose_se3": "se3",
    "pose2": "se2",
    "point2": "euclidean",
    "point3": "euclidean",
    "landmark3d": "euclidean",
    "vector": "euclidean",
}

MANIFOLDS = ("euclidean", "se2", "se3")


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def retract(manifold: str, x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Apply a tangent increment: body-frame composition for poses, addition otherwise."""
    if manifold == "se3":
        return compose_pose_se3(x, delta)
    if manifold == "se2":
        return compose_pose2(x, delta)
    return x + delta


def local_coordinates(manifold: str, x: jnp.ndarray, y: jnp.ndarray) -> jnp.ndarray:
    """Tangent vector taking ``x`` to ``y``."""
    if manifold == "se3":
        return relative_pose_se3(x, y)
    if manifold == "se2":
        return between_pose2(x, y)
    return y - x


# Eager entry points used by Values; the manifold name is static.
retract_jit = jax.jit(retract, static_argnums=0)
local_coordinates_jit = jax.jit(local_coordinates, static_argnums=0)
