# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Variable index: variable key → set of factor indices touching it.

The index is the adjacency structure every symbolic step reads (ordering,
elimination-tree construction, affected-factor detection). It is updated
incrementally; adding or removing a factor costs time proportional to the
number of keys it touches.

A variable whose last factor is removed keeps an (empty) entry: it is
still a known variable of the problem.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Mapping, Set, Tuple

from isam_jit.core.errors import InvalidUpdateError
from isam_jit.core.types import Key


class VariableIndex:
    def __init__(self):
        self._index: Dict[Key, Set[int]] = {}
        self._factor_keys: Dict[int, Tuple[Key, ...]] = {}

    @classmethod
    def from_factors(cls, factors: Mapping[int, Iterable[Key]]) -> "VariableIndex":
        index = cls()
        index.add_factors(factors)
        return index

    def add_factors(self, factors: Mapping[int, Iterable[Key]]) -> None:
        """Register factors given as ``{factor index: keys}``."""
        staged = {int(i): tuple(Key(int(k)) for k in keys) for i, keys in factors.items()}
        clashes = sorted(i for i in staged if i in self._factor_keys)
        if clashes:
            raise InvalidUpdateError(f"factor indices already indexed: {clashes}")
        for i, keys in staged.items():
            self._factor_keys[i] = keys
            for key in keys:
                self._index.setdefault(key, set()).add(i)

    def remove_factors(self, indices: Iterable[int]) -> None:
        indices = [int(i) for i in indices]
        missing = sorted({i for i in indices if i not in self._factor_keys})
        if missing:
            raise InvalidUpdateError(f"factor indices not present in the variable index: {missing}")
        if len(set(indices)) != len(indices):
            raise InvalidUpdateError(f"duplicate factor indices in removal: {indices}")
        for i in indices:
            for key in self._factor_keys.pop(i):
                self._index[key].discard(i)

    def discard_unused(self, keys: Iterable[Key]) -> None:
        """Forget those of ``keys`` that no indexed factor touches any more."""
        for key in keys:
            if key in self._index and not self._index[key]:
                del self._index[key]

    def factors_touching(self, key: Key) -> FrozenSet[int]:
        return frozenset(self._index.get(key, ()))

    def factor_keys(self, index: int) -> Tuple[Key, ...]:
        return self._factor_keys[index]

    def factor_indices(self) -> List[int]:
        return sorted(self._factor_keys)

    def keys(self) -> List[Key]:
        return sorted(self._index)

    def __contains__(self, key) -> bool:
        return key in self._index

    def __len__(self) -> int:
        return len(self._index)

    @property
    def n_factors(self) -> int:
        return len(self._factor_keys)

    def copy(self) -> "VariableIndex":
        out = VariableIndex()
        out._index = {k: set(v) for k, v in self._index.items()}
        out._factor_keys = dict(self._factor_keys)
        return out

    def __repr__(self) -> str:
        return f"VariableIndex({len(self)} variables, {self.n_factors} factors)"
