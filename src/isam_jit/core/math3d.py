"""
Lie-group helpers for the pose types used by iSAM-JIT.

This module implements the small amount of SE(2) / SO(3) / SE(3) math that
the pose manifolds and measurement factors need:

    • SO(3) exponential & logarithm maps
    • SE(3) composition and relative pose in 6-vector form
    • SE(2) composition and relative pose in 3-vector form
    • Angle wrapping

All functions are written in JAX so they can be traced by ``jax.jit`` and
differentiated by ``jax.jacfwd`` when factors are linearized.

Layouts
-------
SE(3) pose vector
    ``[tx, ty, tz, wx, wy, wz]``: translation followed by the rotation
    vector (axis-angle).

SE(2) pose vector
    ``[x, y, theta]`` with ``theta`` in radians, wrapped to ``(-pi, pi]``.

Notes
-----
Small-angle branches use ``jax.lax.cond`` so the Jacobians stay finite at
the identity, which is exactly where every factor is linearized (zero
tangent increment).
"""

from __future__ import annotations

from isam_jit.core.jax_init import jax, jnp


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Split a 6D pose vector into translation and rotation-vector (axis-angle).
    v: [tx, ty, tz, wx, wy, wz]
    """
    v = jnp.asarray(v)
    return v[0:3], v[3:6]


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    zero = jnp.zeros_like(x)
    return jnp.array(
        [
            [zero, -z, y],
            [z, zero, -x],
            [-y, x, zero],
        ]
    )


def vee(W: jnp.ndarray) -> jnp.ndarray:
    """vee: so(3) -> R^3, inverse of hat (antisymmetric part only)."""
    return jnp.array([
        W[2, 1] - W[1, 2],
        W[0, 2] - W[2, 0],
        W[1, 0] - W[0, 1],
    ]) / 2.0


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Uses Rodrigues' formula with a first-order fallback near zero.
    """
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3, dtype=w.dtype)

    def small_angle() -> jnp.ndarray:
        return I + hat(w)

    def normal_angle() -> jnp.ndarray:
        K = hat(w / theta)
        return I + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < 1e-5, small_angle, normal_angle)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map for SO(3).

    The trace is clamped to the valid ``arccos`` domain, and small angles use
    ``w ~ vee(R - I)``. Returns ``w`` such that ``so3_exp(w) ~ R``.
    """
    R = jnp.asarray(R)
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    theta = jnp.arccos(cos_theta)

    def small_angle_case(_) -> jnp.ndarray:
        return vee(R - jnp.eye(3, dtype=R.dtype))

    def general_case(_) -> jnp.ndarray:
        factor = theta / (2.0 * jnp.sin(theta) + 1e-12)
        return factor * vee(R - R.T)

    return jax.lax.cond(theta < 1e-5, small_angle_case, general_case, operand=None)


def compose_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compose two SE(3) poses in 6D vector form.

    a, b: [tx, ty, tz, wx, wy, wz]
    Returns: 6D vector for a ∘ b
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    t = Ra @ tb + ta
    w = so3_log(Ra @ Rb)
    return jnp.concatenate([t, w])


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Relative pose from a to b in 6D vector form, the inverse of
    ``compose_pose_se3`` in its second argument:

      t_rel = R_a^T (t_b - t_a)
      w_rel = log(R_a^T R_b)
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    t_rel = Ra.T @ (tb - ta)
    w_rel = so3_log(Ra.T @ Rb)
    return jnp.concatenate([t_rel, w_rel])


def transform_to_frame_se3(pose: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Express a world point in the frame of ``pose``: ``R^T (p - t)``."""
    t, w = pose_vec_to_rt(pose)
    R = so3_exp(w)
    return R.T @ (jnp.asarray(point) - t)


def wrap_angle(theta: jnp.ndarray) -> jnp.ndarray:
    """Wrap an angle to (-pi, pi]."""
    return jnp.arctan2(jnp.sin(theta), jnp.cos(theta))


def compose_pose2(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compose two SE(2) poses ``[x, y, theta]``: returns ``a ∘ b``.
    """
    a = jnp.asarray(a)
    b = jnp.asarray(b)
    c, s = jnp.cos(a[2]), jnp.sin(a[2])
    return jnp.stack([
        a[0] + c * b[0] - s * b[1],
        a[1] + s * b[0] + c * b[1],
        wrap_angle(a[2] + b[2]),
    ])


def between_pose2(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Relative SE(2) pose ``a^{-1} ∘ b``, expressed in the frame of ``a``.
    """
    a = jnp.asarray(a)
    b = jnp.asarray(b)
    c, s = jnp.cos(a[2]), jnp.sin(a[2])
    dx = b[0] - a[0]
    dy = b[1] - a[1]
    return jnp.stack([
        c * dx + s * dy,
        -s * dx + c * dy,
        wrap_angle(b[2] - a[2]),
    ])


def transform_to_frame_pose2(pose: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Express a 2D world point in the frame of an SE(2) pose."""
    pose = jnp.asarray(pose)
    point = jnp.asarray(point)
    c, s = jnp.cos(pose[2]), jnp.sin(pose[2])
    dx = point[0] - pose[0]
    dy = point[1] - pose[1]
    return jnp.stack([c * dx + s * dy, -s * dx + c * dy])
