# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Elimination tree over variables.

Given an elimination ordering and the factor sparsity pattern, the parent
of variable ``j`` is the earliest-ordered variable that is still connected
to ``j`` once ``j`` has been eliminated (the first off-diagonal nonzero of
its row in the square-root factor). `EliminationTree.compute_parents`
finds it with the column elimination tree algorithm of symbolic sparse
Cholesky: scanning variables in order, each factor remembers the last
variable that touched it, and that variable's current root is linked
under ``j``.

Every factor is hung on the node of its earliest-ordered key. Eliminating
the tree bottom-up (`EliminationTree.eliminate`) combines each node's own
factors with the separator factors of its children, eliminates the node's
variable and passes the new separator factor to the parent. Walking
positions in increasing order visits children before parents, so the
traversal is a flat loop rather than a recursion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from isam_jit.core.errors import TreeStructureError
from isam_jit.core.types import Key
from isam_jit.inference.variable_index import VariableIndex
from isam_jit.linear.conditional import GaussianConditional
from isam_jit.linear.jacobian_factor import Factorization, JacobianFactor, eliminate


@dataclass(eq=False)
class EliminationTreeNode:
    key: Key
    factors: List[JacobianFactor] = field(default_factory=list)
    children: List["EliminationTreeNode"] = field(default_factory=list)


@dataclass
class EliminationResult:
    """Output of eliminating a whole elimination tree, in ordering order."""
    ordering: List[Key]
    conditionals: List[GaussianConditional]
    separator_factors: Dict[Key, Optional[JacobianFactor]]
    parents: Dict[Key, Optional[Key]]


class EliminationTree:
    def __init__(
        self,
        ordering: Sequence[Key],
        nodes: Dict[Key, EliminationTreeNode],
        parents: Dict[Key, Optional[Key]],
    ):
        self.ordering: List[Key] = list(ordering)
        self.nodes = nodes
        self.parents = parents
        self.roots: List[EliminationTreeNode] = [nodes[k] for k in self.ordering if parents[k] is None]

    @staticmethod
    def compute_parents(ordering: Sequence[Key], variable_index: VariableIndex) -> Dict[Key, Optional[Key]]:
        parents: Dict[Key, Optional[Key]] = {k: None for k in ordering}
        prev_col: Dict[int, Key] = {}
        for j in ordering:
            for fi in sorted(variable_index.factors_touching(j)):
                k = prev_col.get(fi)
                if k is not None:
                    r = k
                    while parents[r] is not None:
                        r = parents[r]
                    if r != j:
                        parents[r] = j
                prev_col[fi] = j
        return parents

    @classmethod
    def create(
        cls,
        factors: Mapping[int, JacobianFactor],
        ordering: Sequence[Key],
        variable_index: Optional[VariableIndex] = None,
    ) -> "EliminationTree":
        """Build the tree for ``factors`` (``{id: factor}``) under ``ordering``."""
        position = {k: i for i, k in enumerate(ordering)}
        if len(position) != len(ordering):
            raise ValueError("ordering repeats a variable")
        for fi, f in factors.items():
            unordered = [k for k in f.keys if k not in position]
            if unordered:
                raise ValueError(f"factor {fi} touches keys missing from the ordering: {unordered}")
        if variable_index is None:
            variable_index = VariableIndex.from_factors({i: f.keys for i, f in factors.items()})

        parents = cls.compute_parents(ordering, variable_index)
        nodes = {k: EliminationTreeNode(k) for k in ordering}
        for k in ordering:
            if parents[k] is not None:
                nodes[parents[k]].children.append(nodes[k])
        for fi in sorted(factors):
            f = factors[fi]
            nodes[min(f.keys, key=position.__getitem__)].factors.append(f)
        return cls(ordering, nodes, parents)

    def eliminate(self, factorization: Factorization = Factorization.QR) -> EliminationResult:
        position = {k: i for i, k in enumerate(self.ordering)}
        pending: Dict[Key, List[JacobianFactor]] = {}
        conditionals: List[GaussianConditional] = []
        separator_factors: Dict[Key, Optional[JacobianFactor]] = {}

        for j in self.ordering:
            gathered = self.nodes[j].factors + pending.pop(j, [])
            conditional, separator = eliminate(gathered, [j], position, factorization)
            conditionals.append(conditional)
            separator_factors[j] = separator

            target = separator.keys[0] if separator is not None else None
            if target != self.parents[j]:
                raise TreeStructureError(
                    f"separator of {j} leads to {target}, elimination tree parent is {self.parents[j]}"
                )
            if separator is not None:
                pending.setdefault(target, []).append(separator)

        return EliminationResult(
            ordering=list(self.ordering),
            conditionals=conditionals,
            separator_factors=separator_factors,
            parents=dict(self.parents),
        )

    def __repr__(self) -> str:
        return f"EliminationTree({len(self.ordering)} nodes, {len(self.roots)} roots)"
