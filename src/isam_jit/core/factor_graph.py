# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Nonlinear factor graph container.

`NonlinearFactorGraph` stores factors in index slots. The index a factor
receives when it is added never changes: removing a factor empties its
slot instead of shifting the others, so indices returned by
`ISAM2.update` remain valid handles for later removal.

The graph also keeps a per-instance residual registry
(`register_residual`), seeded from `slam.measurements.RESIDUAL_FUNCTIONS`,
so ``add_factor("between_pose2", (1, 2), params)`` builds the factor in
place.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from isam_jit.core.errors import InvalidUpdateError
from isam_jit.core.types import Factor, FactorIndex, Key, ResidualFn
from isam_jit.core.values import Values
from isam_jit.inference.variable_index import VariableIndex
from isam_jit.linear.jacobian_factor import JacobianFactor
from isam_jit.slam import measurements


class NonlinearFactorGraph:
    def __init__(self, factors: Optional[Iterable[Factor]] = None):
        self._factors: List[Optional[Factor]] = []
        self.residual_fns: Dict[str, ResidualFn] = dict(measurements.RESIDUAL_FUNCTIONS)
        if factors is not None:
            self.add_factors(factors)

    def register_residual(self, f_type: str, fn: ResidualFn) -> None:
        self.residual_fns[f_type] = fn

    def add(self, factor: Factor) -> FactorIndex:
        self._factors.append(factor)
        return FactorIndex(len(self._factors) - 1)

    def add_factor(self, f_type: str, var_ids: Sequence[Key], params: Dict[str, Any]) -> FactorIndex:
        return self.add(measurements.make_factor(f_type, var_ids, params, self.residual_fns))

    def add_factors(self, factors: Iterable[Factor]) -> List[FactorIndex]:
        return [self.add(f) for f in factors]

    def is_live(self, index: int) -> bool:
        return 0 <= index < len(self._factors) and self._factors[index] is not None

    def remove(self, index: int) -> Factor:
        if not self.is_live(index):
            raise InvalidUpdateError(f"factor index {index} is not in the graph")
        factor = self._factors[index]
        self._factors[index] = None
        return factor

    def __getitem__(self, index: int) -> Optional[Factor]:
        return self._factors[index]

    def __len__(self) -> int:
        """Number of slots, including emptied ones."""
        return len(self._factors)

    def size(self) -> int:
        """Number of live factors."""
        return sum(1 for f in self._factors if f is not None)

    def items(self) -> Iterator[Tuple[FactorIndex, Factor]]:
        for i, f in enumerate(self._factors):
            if f is not None:
                yield FactorIndex(i), f

    def __iter__(self) -> Iterator[Factor]:
        return (f for _, f in self.items())

    def keys(self) -> List[Key]:
        out: Set[Key] = set()
        for f in self:
            out.update(f.keys())
        return sorted(out)

    def error(self, values: Values) -> float:
        return sum(f.error(values) for f in self)

    def linearize(self, values: Values) -> Dict[FactorIndex, JacobianFactor]:
        return {i: f.linearize(values) for i, f in self.items()}

    def variable_index(self) -> VariableIndex:
        return VariableIndex.from_factors({i: f.keys() for i, f in self.items()})

    def copy(self) -> "NonlinearFactorGraph":
        out = NonlinearFactorGraph()
        out._factors = list(self._factors)
        out.residual_fns = dict(self.residual_fns)
        return out

    def __repr__(self) -> str:
        return f"NonlinearFactorGraph({self.size()} factors, {len(self)} slots)"
