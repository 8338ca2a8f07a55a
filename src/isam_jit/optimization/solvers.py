# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Batch solvers for iSAM-JIT.

These are the non-incremental counterparts of the ISAM2 engine. They run
the same symbolic and numeric machinery (ordering, elimination tree,
Bayes tree, back-substitution) on the whole problem every time, and serve
as the reference an incremental run must agree with.

Key Concepts
------------
GNConfig
    Dataclass holding configuration for Gauss–Newton:
    - max_iters: maximum number of GN iterations
    - damping: Levenberg–Marquardt-style diagonal damping λ (0 disables)
    - absolute_error_tol / relative_error_tol: stop once the nonlinear error
      decrease falls below either tolerance
    - factorization: QR or Cholesky elimination

linear_solve(factors, ordering, factorization)
    Eliminates a set of Jacobian factors into a Bayes tree and back-substitutes.

gauss_newton(graph, initial, cfg)
    Manifold-aware Gauss–Newton on a `NonlinearFactorGraph`: linearize at
    the current values, solve for the tangent step, retract, repeat.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

import numpy as np

from isam_jit.core.factor_graph import NonlinearFactorGraph
from isam_jit.core.types import Key
from isam_jit.core.values import Values, VectorValues
from isam_jit.inference.bayes_tree import BayesTree
from isam_jit.linear.jacobian_factor import Factorization, JacobianFactor
from isam_jit.optimization.delta import back_substitute

logger = logging.getLogger(__name__)


@dataclass
class GNConfig:
    max_iters: int = 20
    damping: float = 0.0
    absolute_error_tol: float = 1e-12
    relative_error_tol: float = 1e-10
    factorization: Factorization = Factorization.QR

    def __post_init__(self):
        if self.max_iters < 1:
            raise ValueError(f"max_iters must be positive, got {self.max_iters}")
        if self.damping < 0.0:
            raise ValueError(f"damping must be non-negative, got {self.damping}")
        self.factorization = Factorization(self.factorization)


def linear_solve(
    factors: Union[Mapping[int, JacobianFactor], Sequence[JacobianFactor]],
    ordering: Optional[Sequence[Key]] = None,
    factorization: Factorization = Factorization.QR,
) -> VectorValues:
    """Least-squares solution of a linear factor graph."""
    return back_substitute(BayesTree.eliminate(factors, ordering, factorization))


def gauss_newton(graph: NonlinearFactorGraph, initial: Values, cfg: Optional[GNConfig] = None) -> Values:
    """
    Gauss-Newton over every variable of ``graph``, starting from ``initial``.

    Each iteration solves the full linearized system by elimination and
    applies the tangent step through each variable's retraction.
    """
    cfg = cfg or GNConfig()
    values = initial.copy()
    error = graph.error(values)
    logger.debug("gauss_newton: initial error %.6g", error)

    for it in range(cfg.max_iters):
        linear = graph.linearize(values)
        if cfg.damping > 0.0:
            root = np.sqrt(cfg.damping)
            next_index = len(graph)
            for key, dim in values.dims().items():
                linear[next_index] = JacobianFactor([key], [root * np.eye(dim)], np.zeros(dim))
                next_index += 1

        dx = linear_solve(linear, factorization=cfg.factorization)
        values = values.retract(dx)
        new_error = graph.error(values)
        logger.debug("gauss_newton: iter %d error %.6g |dx| %.3g", it, new_error, dx.norm())

        decrease = error - new_error
        converged = (
            abs(decrease) <= cfg.absolute_error_tol
            or abs(decrease) <= cfg.relative_error_tol * max(error, 1e-300)
        )
        error = new_error
        if converged:
            break
    return values
