# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Fill-reducing elimination orderings.

`compute_ordering` returns a permutation of the variables of a
`VariableIndex`:

    "min_degree"  exact minimum degree on the variable adjacency graph; when
                  a variable is eliminated its neighbors become pairwise
                  adjacent (the fill it creates).
    "natural"     ascending keys.

Constraint groups
-----------------
``constraint_groups`` maps keys to integer groups. Every variable of group
``g`` is eliminated before any variable of a higher group; unlisted keys
are in group 0. The incremental engine uses this to push recently observed
variables to the end of the ordering, close to the root of the tree, where
the next update is cheap to redo.

Determinism: selection is by ``(group, degree, key)``, so identical input
always yields the same ordering and ties go to the smaller key.
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Mapping, Optional, Set

from isam_jit.core.types import Key
from isam_jit.inference.variable_index import VariableIndex


def _adjacency(variable_index: VariableIndex, keys: Set[Key]) -> Dict[Key, Set[Key]]:
    adjacency: Dict[Key, Set[Key]] = {k: set() for k in keys}
    seen: Set[int] = set()
    for key in keys:
        for fi in variable_index.factors_touching(key):
            if fi in seen:
                continue
            seen.add(fi)
            members = [k for k in variable_index.factor_keys(fi) if k in adjacency]
            for k in members:
                adjacency[k].update(members)
    for k, nbrs in adjacency.items():
        nbrs.discard(k)
    return adjacency


def compute_ordering(
    variable_index: VariableIndex,
    constraint_groups: Optional[Mapping[Key, int]] = None,
    keys: Optional[Iterable[Key]] = None,
    method: str = "min_degree",
) -> List[Key]:
    """
    Order ``keys`` (default: every variable in the index) for elimination.

    Only adjacency among the ordered keys is considered.
    """
    keys = set(variable_index.keys() if keys is None else keys)
    groups = {k: 0 for k in keys}
    for k, g in (constraint_groups or {}).items():
        if k in groups:
            groups[k] = int(g)

    if method == "natural":
        return sorted(keys, key=lambda k: (groups[k], k))
    if method != "min_degree":
        raise ValueError(f"unknown ordering method {method!r}")

    adjacency = _adjacency(variable_index, keys)
    heap = [(groups[k], len(adjacency[k]), k) for k in keys]
    heapq.heapify(heap)

    ordering: List[Key] = []
    while heap:
        _, degree, key = heapq.heappop(heap)
        if key not in adjacency or degree != len(adjacency[key]):
            continue  # stale
        ordering.append(key)
        neighbors = adjacency.pop(key)
        for n in neighbors:
            adj = adjacency[n]
            adj.discard(key)
            adj.update(neighbors)
            adj.discard(n)
        for n in neighbors:
            heapq.heappush(heap, (groups[n], len(adjacency[n]), n))
    return ordering
