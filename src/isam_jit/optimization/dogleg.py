# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Powell's dogleg trust-region step.

Given the steepest-descent (Cauchy) point ``dx_u`` and the Gauss-Newton
point ``dx_n`` of the current linear system, the dogleg point for a trust
radius Δ is

    dx_n                               if ||dx_n|| <= Δ
    (Δ / ||dx_u||) dx_u                if ||dx_u|| >= Δ
    dx_u + τ (dx_n - dx_u)             otherwise, with τ chosen so the
                                       step lands on the radius

`iterate` evaluates the nonlinear error at the dogleg point and adapts Δ
from the gain ratio ρ = (actual reduction) / (reduction predicted by the
quadratic model in the Bayes tree):

    ρ >= 0.75          grow to max(Δ, 3 ||dx_d||)
    0.25 <= ρ < 0.75   keep Δ
    0 <= ρ < 0.25      halve Δ
    ρ < 0              halve Δ and retry; below 1e-5 give up with a zero step

Whether the radius is searched within one call is set by
`TrustRegionAdaptationMode`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np

from isam_jit.core.values import Values, VectorValues
from isam_jit.inference.bayes_tree import BayesTree
from isam_jit.optimization.delta import linear_error

logger = logging.getLogger(__name__)

MIN_DELTA = 1e-5


class TrustRegionAdaptationMode(str, Enum):
    FIXED = "fixed"
    SEARCH_EACH_ITERATION = "search_each_iteration"
    SEARCH_REDUCE_ONLY = "search_reduce_only"
    ONE_STEP_PER_ITERATION = "one_step_per_iteration"


@dataclass
class DoglegIterationResult:
    delta: float
    dx_d: VectorValues
    f_error: float


def compute_blend(delta: float, x_u: VectorValues, x_n: VectorValues) -> VectorValues:
    """Point on the segment from ``x_u`` to ``x_n`` at distance ``delta`` from the origin."""
    p = x_n - x_u
    a = p.squared_norm()
    b = 2.0 * x_u.dot(p)
    c = x_u.squared_norm() - delta * delta
    if a == 0.0:
        return x_u.copy()
    disc = max(b * b - 4.0 * a * c, 0.0)
    tau = (-b + np.sqrt(disc)) / (2.0 * a)
    tau = min(max(tau, 0.0), 1.0)
    return x_u.scaled(1.0 - tau) + x_n.scaled(tau)


def compute_dogleg_point(delta: float, dx_u: VectorValues, dx_n: VectorValues) -> VectorValues:
    dx_n_norm = dx_n.norm()
    dx_u_norm = dx_u.norm()
    if dx_n_norm <= delta:
        return dx_n.copy()
    if dx_u_norm >= delta:
        return dx_u.scaled(delta / dx_u_norm)
    return compute_blend(delta, dx_u, dx_n)


def iterate(
    delta: float,
    mode: TrustRegionAdaptationMode,
    dx_u: VectorValues,
    dx_n: VectorValues,
    tree: BayesTree,
    graph,
    theta: Values,
    f_error: float,
    verbose: bool = False,
) -> DoglegIterationResult:
    """One dogleg step on ``graph`` linearized at ``theta`` (error ``f_error``)."""
    mode = TrustRegionAdaptationMode(mode)
    zero = VectorValues.zeros({k: v.shape[0] for k, v in dx_n.items()})
    m_error = linear_error(tree, zero)

    if mode is TrustRegionAdaptationMode.FIXED:
        dx_d = compute_dogleg_point(delta, dx_u, dx_n)
        return DoglegIterationResult(delta, dx_d, graph.error(theta.retract(dx_d)))

    last_action = None
    while True:
        dx_d = compute_dogleg_point(delta, dx_u, dx_n)
        new_f_error = graph.error(theta.retract(dx_d))
        new_m_error = linear_error(tree, dx_d)

        actual = f_error - new_f_error
        predicted = m_error - new_m_error
        if abs(actual) < 1e-15 and abs(predicted) < 1e-15:
            rho = 0.5
        elif predicted == 0.0:
            rho = -1.0 if actual < 0.0 else 0.5
        else:
            rho = actual / predicted
        if verbose:
            logger.info(
                "dogleg: delta=%g |dx_d|=%g f_error=%g new_f_error=%g rho=%g",
                delta, dx_d.norm(), f_error, new_f_error, rho,
            )

        if rho >= 0.75:
            new_delta = max(delta, 3.0 * dx_d.norm())
            stay = False
            if mode is TrustRegionAdaptationMode.SEARCH_EACH_ITERATION:
                if new_delta != delta and last_action != "decreased":
                    stay = True
                    last_action = "increased"
            delta = new_delta
        elif rho >= 0.25:
            stay = False
        elif rho >= 0.0:
            hit_minimum = delta <= MIN_DELTA
            new_delta = delta if hit_minimum else 0.5 * delta
            if (
                mode is TrustRegionAdaptationMode.ONE_STEP_PER_ITERATION
                or last_action == "increased"
                or hit_minimum
            ):
                stay = False
            else:
                stay = True
                last_action = "decreased"
            delta = new_delta
        else:
            if delta > MIN_DELTA:
                delta *= 0.5
                stay = True
                last_action = "decreased"
            else:
                if verbose:
                    logger.info("dogleg: minimum trust radius reached, returning a zero step")
                return DoglegIterationResult(delta, zero, f_error)

        if not stay:
            return DoglegIterationResult(delta, dx_d, new_f_error)
