# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Linear delta solvers on a Bayes tree.

Back-substitution
-----------------
optimize_wildfire(tree, threshold, replaced, delta)
    Bounded back-substitution from the roots down. A clique is solved only
    if one of its frontals was replaced by the last update or one of its
    separator keys changed. A solved frontal counts as changed when it was
    replaced or moved by at least ``threshold`` in any component, and the
    descent stops below cliques that were not solved. ``delta`` is updated
    in place and the number of solved variables is returned.

back_substitute(tree)
    Full solve of the square-root system, every clique visited.

Gradient and steepest descent
-----------------------------
gradient_at_zero(tree)
    Sum of the cached per-clique contributions ``-[R S]ᵀ d``.

gradient(tree, x0)
    ``Rᵀ (R x0 - d)`` accumulated over cliques.

optimize_gradient_search(tree)
    Cauchy point along the gradient at zero. With ``g`` that gradient, the
    step is ``α g`` where ``α = -(gᵀg) / ||R g||²``.
"""

from __future__ import annotations

from typing import Iterable, Optional, Set

import numpy as np

from isam_jit.core.types import Key
from isam_jit.core.values import VectorValues
from isam_jit.inference.bayes_tree import BayesTree


def optimize_wildfire(
    tree: BayesTree,
    threshold: float,
    replaced: Iterable[Key],
    delta: VectorValues,
) -> int:
    replaced = set(replaced)
    changed: Set[Key] = set()
    count = 0

    stack = sorted(tree.roots, reverse=True)
    while stack:
        clique = tree.cliques[stack.pop()]
        conditional = clique.conditional

        dirty = any(k in replaced for k in conditional.frontals)
        if not dirty:
            dirty = any(k in changed for k in conditional.parents)
        if not dirty:
            continue

        solution = conditional.solve(delta)
        count += len(conditional.frontals)
        for key, value in solution.items():
            old = delta.get(key)
            if (
                key in replaced
                or old is None
                or old.shape != value.shape
                or float(np.max(np.abs(value - old), initial=0.0)) >= threshold
            ):
                changed.add(key)
            delta[key] = value

        stack.extend(sorted(clique.children, reverse=True))
    return count


def back_substitute(tree: BayesTree) -> VectorValues:
    delta = VectorValues()
    for clique in tree.preorder():
        delta.update(clique.conditional.solve(delta))
    return delta


def gradient_at_zero(tree: BayesTree) -> VectorValues:
    g = VectorValues.zeros(tree.dims())
    for clique in tree.cliques.values():
        for key, contribution in clique.gradient_contribution.items():
            g[key] = g[key] + contribution
    return g


def gradient(tree: BayesTree, x0: VectorValues) -> VectorValues:
    g = VectorValues.zeros(tree.dims())
    for clique in tree.cliques.values():
        for key, contribution in clique.conditional.gradient(x0).items():
            g[key] = g[key] + contribution
    return g


def optimize_gradient_search(tree: BayesTree, grad: Optional[VectorValues] = None) -> VectorValues:
    g = gradient_at_zero(tree) if grad is None else grad
    gg = g.squared_norm()
    rg2 = 0.0
    for clique in tree.cliques.values():
        rg = clique.conditional.rg_product(g)
        rg2 += float(rg @ rg)
    if rg2 == 0.0:
        return VectorValues.zeros({k: v.shape[0] for k, v in g.items()})
    return g.scaled(-gg / rg2)


def linear_error(tree: BayesTree, dx: VectorValues) -> float:
    """Quadratic model ``0.5 ||R dx - d||²`` summed over cliques (constant term dropped)."""
    return sum(clique.conditional.error(dx) for clique in tree.cliques.values())
