# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Bayes tree: the clique tree produced by eliminating an elimination tree.

Cliques
-------
Each `Clique` holds a `GaussianConditional` over its frontal keys given its
separator keys, plus two caches computed once when the clique is built:

    cached_factor           the separator factor left over after eliminating
                            the clique's frontals; it summarizes the whole
                            subtree below, so an untouched subtree can be
                            re-used as a single small factor
    gradient_contribution   ``-[R S]ᵀ d``, the clique's share of the gradient
                            at zero used by the dogleg solver

Cliques live in an arena (``BayesTree.cliques``) keyed by integer id. A
clique refers to its parent and children by id only.

Multi-frontal cliques
---------------------
Conditionals are inserted root first. A conditional whose parents are
exactly the keys of its parent clique is merged into that clique as an
extra frontal, otherwise it opens a child clique. Chains therefore
collapse into compact cliques.

Running intersection
--------------------
Every clique's separator is a subset of its parent's frontals ∪ separator.
`check_running_intersection` verifies it over the whole tree.

Incremental surgery
-------------------
The incremental engine never edits the tree in place while planning:

    1. `plan_remove_top`    which cliques go (every clique holding a marked
                            key, and all of their ancestors) and which
                            subtrees are left hanging (orphans)
    2. `build_cliques`      new cliques for the re-eliminated top
    3. `attach_orphans`     where each orphan will hang in the new top
    4. `apply`              commit all of it at once
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Union

import numpy as np

from isam_jit.core.errors import TreeStructureError
from isam_jit.core.types import Key
from isam_jit.inference.elimination_tree import EliminationResult, EliminationTree
from isam_jit.inference.ordering import compute_ordering
from isam_jit.inference.variable_index import VariableIndex
from isam_jit.linear.conditional import GaussianConditional
from isam_jit.linear.jacobian_factor import Factorization, JacobianFactor


@dataclass(eq=False)
class Clique:
    id: int
    conditional: GaussianConditional
    cached_factor: Optional[JacobianFactor]
    gradient_contribution: Dict[Key, np.ndarray]
    parent: Optional[int] = None
    children: Set[int] = field(default_factory=set)

    @property
    def frontals(self):
        return self.conditional.frontals

    @property
    def separator(self):
        return self.conditional.parents

    @property
    def keys(self):
        return self.conditional.keys

    def __repr__(self) -> str:
        return (
            f"Clique(id={self.id}, frontals={list(self.frontals)}, "
            f"separator={list(self.separator)}, parent={self.parent})"
        )


@dataclass
class RemovalPlan:
    removed: List[int]
    orphans: List[int]
    affected_keys: Set[Key]


@dataclass
class CliqueBuild:
    """New cliques for a re-eliminated region, not yet part of the tree."""
    cliques: Dict[int, Clique]
    nodes: Dict[Key, int]
    roots: List[int]
    next_id: int


class BayesTree:
    def __init__(self):
        self.cliques: Dict[int, Clique] = {}
        self.nodes: Dict[Key, int] = {}
        self.roots: Set[int] = set()
        self._next_id = 0

    # --- Queries ---

    def __len__(self) -> int:
        return len(self.cliques)

    def __contains__(self, key) -> bool:
        return key in self.nodes

    def clique(self, key: Key) -> Clique:
        return self.cliques[self.nodes[key]]

    def keys(self) -> List[Key]:
        return sorted(self.nodes)

    def dims(self) -> Dict[Key, int]:
        dims: Dict[Key, int] = {}
        for clique in self.cliques.values():
            dims.update(zip(clique.frontals, clique.conditional.frontal_dims))
        return dims

    def root_keys(self) -> Set[Key]:
        out: Set[Key] = set()
        for cid in self.roots:
            out.update(self.cliques[cid].frontals)
        return out

    def preorder(self) -> Iterator[Clique]:
        """Parents before children; roots and children visited by ascending id."""
        stack = sorted(self.roots, reverse=True)
        while stack:
            clique = self.cliques[stack.pop()]
            yield clique
            stack.extend(sorted(clique.children, reverse=True))

    def nnz(self) -> int:
        """Nonzeros of the square-root factor: triangular R plus dense S per clique."""
        total = 0
        for clique in self.cliques.values():
            df = clique.conditional.R.shape[0]
            total += df * (df + 1) // 2 + df * clique.conditional.S.shape[1]
        return total

    def find_all(self, keys: Iterable[Key]) -> Set[Key]:
        """Frontal keys of every clique whose separator holds one of ``keys``."""
        keys = set(keys)
        out: Set[Key] = set()
        for clique in self.cliques.values():
            if keys.intersection(clique.separator):
                out.update(clique.frontals)
        return out

    def check_running_intersection(self) -> bool:
        for cid, clique in self.cliques.items():
            for key in clique.frontals:
                if self.nodes.get(key) != cid:
                    return False
            if clique.parent is None:
                if cid not in self.roots or clique.separator:
                    return False
                continue
            parent = self.cliques.get(clique.parent)
            if parent is None or cid not in parent.children:
                return False
            if not set(clique.separator) <= set(parent.keys):
                return False
        return True

    # --- Construction ---

    @staticmethod
    def _make_clique(cid: int, conditional: GaussianConditional,
                     cached_factor: Optional[JacobianFactor], parent: Optional[int]) -> Clique:
        return Clique(
            id=cid,
            conditional=conditional,
            cached_factor=cached_factor,
            gradient_contribution=conditional.gradient_contribution(),
            parent=parent,
        )

    def build_cliques(self, result: EliminationResult) -> CliqueBuild:
        cliques: Dict[int, Clique] = {}
        nodes: Dict[Key, int] = {}
        roots: List[int] = []
        next_id = self._next_id

        for key, conditional in zip(reversed(result.ordering), reversed(result.conditionals)):
            separator = result.separator_factors[key]
            if not conditional.parents:
                clique = self._make_clique(next_id, conditional, separator, None)
                roots.append(next_id)
            else:
                first_parent = conditional.parents[0]
                if first_parent not in nodes:
                    raise TreeStructureError(
                        f"parent {first_parent} of {key} was not eliminated after it"
                    )
                parent = cliques[nodes[first_parent]]
                if len(parent.conditional.keys) == len(conditional.parents):
                    parent.conditional = parent.conditional.merge_front(conditional)
                    parent.gradient_contribution = parent.conditional.gradient_contribution()
                    nodes[key] = parent.id
                    continue
                clique = self._make_clique(next_id, conditional, separator, parent.id)
                parent.children.add(next_id)
            cliques[next_id] = clique
            nodes[key] = next_id
            next_id += 1

        return CliqueBuild(cliques=cliques, nodes=nodes, roots=roots, next_id=next_id)

    def plan_remove_top(self, keys: Iterable[Key]) -> RemovalPlan:
        removed: Set[int] = set()
        for key in keys:
            cid = self.nodes.get(key)
            while cid is not None and cid not in removed:
                removed.add(cid)
                cid = self.cliques[cid].parent
        orphans: Set[int] = set()
        affected: Set[Key] = set()
        for cid in removed:
            clique = self.cliques[cid]
            affected.update(clique.frontals)
            orphans.update(c for c in clique.children if c not in removed)
        return RemovalPlan(removed=sorted(removed), orphans=sorted(orphans), affected_keys=affected)

    def attach_orphans(
        self,
        orphans: Sequence[int],
        build: CliqueBuild,
        position: Mapping[Key, int],
    ) -> Dict[int, Optional[int]]:
        """
        Choose the new parent of every orphan: the new clique holding the
        orphan's earliest-ordered separator key. Returns ``{orphan: parent}``.
        """
        parents: Dict[int, Optional[int]] = {}
        for oid in orphans:
            orphan = self.cliques[oid]
            separator = orphan.separator
            if not separator:
                parents[oid] = None
                continue
            missing = [k for k in separator if k not in position]
            if missing:
                raise TreeStructureError(
                    f"orphan clique {oid} has separator keys {missing} outside the re-eliminated region"
                )
            first = min(separator, key=position.__getitem__)
            pid = build.nodes.get(first)
            if pid is None:
                raise TreeStructureError(f"no new clique holds key {first} for orphan clique {oid}")
            if not set(separator) <= set(build.cliques[pid].keys):
                raise TreeStructureError(
                    f"orphan clique {oid} separator {list(separator)} is not covered by "
                    f"clique {pid} keys {list(build.cliques[pid].keys)}"
                )
            parents[oid] = pid
        return parents

    def apply(
        self,
        removed: Iterable[int],
        build: CliqueBuild,
        orphan_parents: Mapping[int, Optional[int]],
    ) -> None:
        for cid in removed:
            clique = self.cliques.pop(cid)
            self.roots.discard(cid)
            for key in clique.frontals:
                if self.nodes.get(key) == cid:
                    del self.nodes[key]
        self.cliques.update(build.cliques)
        self.nodes.update(build.nodes)
        self.roots.update(build.roots)
        for oid, pid in orphan_parents.items():
            orphan = self.cliques[oid]
            orphan.parent = pid
            if pid is None:
                self.roots.add(oid)
            else:
                self.cliques[pid].children.add(oid)
        self._next_id = build.next_id

    @classmethod
    def eliminate(
        cls,
        factors: Union[Mapping[int, JacobianFactor], Sequence[JacobianFactor]],
        ordering: Optional[Sequence[Key]] = None,
        factorization: Factorization = Factorization.QR,
    ) -> "BayesTree":
        """Eliminate a whole linear system into a fresh tree."""
        if not isinstance(factors, Mapping):
            factors = dict(enumerate(factors))
        index = VariableIndex.from_factors({i: f.keys for i, f in factors.items()})
        if ordering is None:
            ordering = compute_ordering(index)
        etree = EliminationTree.create(factors, ordering, index)
        tree = cls()
        tree.apply((), tree.build_cliques(etree.eliminate(factorization)), {})
        return tree

    def __repr__(self) -> str:
        return f"BayesTree({len(self.cliques)} cliques, {len(self.roots)} roots)"
