# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
iSAM-JIT: incremental smoothing and mapping with JAX-differentiated factors.

Typical use::

    from isam_jit import ISAM2, ISAM2Params, NonlinearFactorGraph, Values

    isam = ISAM2(ISAM2Params(relinearize_skip=1))
    graph = NonlinearFactorGraph()
    graph.add_factor("prior_pose2", (0,), {"target": [0.0, 0.0, 0.0]})
    initial = Values()
    initial.insert(0, [0.1, -0.1, 0.05], "pose2")
    isam.update(graph, initial)
    estimate = isam.calculate_estimate()
"""

from isam_jit.core.errors import (
    InvalidUpdateError,
    ISAMError,
    NumericalFactorizationError,
    TreeStructureError,
)
from isam_jit.core.factor_graph import NonlinearFactorGraph
from isam_jit.core.types import Factor, FactorIndex, Key, Variable
from isam_jit.core.values import Values, VectorValues
from isam_jit.estimation.isam2 import ISAM2
from isam_jit.estimation.params import DoglegParams, GaussNewtonParams, ISAM2Params
from isam_jit.estimation.result import DetailedResults, ISAM2Result, VariableStatus
from isam_jit.inference.bayes_tree import BayesTree, Clique
from isam_jit.linear.jacobian_factor import Factorization, JacobianFactor
from isam_jit.optimization.dogleg import TrustRegionAdaptationMode
from isam_jit.optimization.solvers import GNConfig, gauss_newton
from isam_jit.slam.measurements import make_factor, register_residual, sigma_to_weight

__all__ = [
    "BayesTree",
    "Clique",
    "DetailedResults",
    "DoglegParams",
    "Factor",
    "FactorIndex",
    "Factorization",
    "GNConfig",
    "GaussNewtonParams",
    "ISAM2",
    "ISAM2Params",
    "ISAM2Result",
    "ISAMError",
    "InvalidUpdateError",
    "JacobianFactor",
    "Key",
    "NonlinearFactorGraph",
    "NumericalFactorizationError",
    "TreeStructureError",
    "TrustRegionAdaptationMode",
    "Values",
    "Variable",
    "VariableStatus",
    "VectorValues",
    "gauss_newton",
    "make_factor",
    "register_residual",
    "sigma_to_weight",
]
