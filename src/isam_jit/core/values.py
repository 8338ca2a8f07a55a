# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Variable assignments.

Values
    Nonlinear assignment: key → (value vector, variable type). This is what
    the solver linearizes around (the linearization point, theta) and what
    it returns as an estimate. ``retract`` and ``local_coordinates``
    dispatch per variable through `slam.manifold`.

VectorValues
    Linear assignment: key → tangent vector. Used for the delta, for
    gradients and for every intermediate step of the dogleg solver.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Mapping, Optional

import numpy as np

from isam_jit.core.errors import InvalidUpdateError
from isam_jit.core.types import Key, Variable
from isam_jit.slam.manifold import (
    get_manifold_for_var_type,
    local_coordinates_jit,
    retract_jit,
)


class Values:
    def __init__(self, variables: Optional[Iterable[Variable]] = None):
        self._values: Dict[Key, np.ndarray] = {}
        self._types: Dict[Key, str] = {}
        for var in variables or ():
            self.insert(var.id, var.value, var.type)

    def insert(self, key: Key, value, var_type: str = "vector") -> None:
        key = Key(int(key))
        if key in self._values:
            raise InvalidUpdateError(f"variable {key} is already present")
        self._values[key] = np.asarray(value, dtype=np.float64).reshape(-1)
        self._types[key] = var_type

    def update(self, key: Key, value) -> None:
        """Replace the value of an existing variable, keeping its type."""
        key = Key(int(key))
        if key not in self._values:
            raise KeyError(f"variable {key} is not present")
        arr = np.asarray(value, dtype=np.float64).reshape(-1)
        if arr.shape != self._values[key].shape:
            raise ValueError(f"variable {key}: shape {arr.shape} != {self._values[key].shape}")
        self._values[key] = arr

    def at(self, key: Key) -> np.ndarray:
        try:
            return self._values[key]
        except KeyError:
            raise KeyError(f"variable {key} is not present") from None

    def variable(self, key: Key) -> Variable:
        return Variable(id=key, type=self._types[key], value=self.at(key))

    def var_type(self, key: Key) -> str:
        return self._types[key]

    def manifold(self, key: Key) -> str:
        return get_manifold_for_var_type(self._types[key])

    def dim(self, key: Key) -> int:
        return self.at(key).shape[0]

    def dims(self) -> Dict[Key, int]:
        return {k: v.shape[0] for k, v in self._values.items()}

    def keys(self) -> List[Key]:
        return sorted(self._values)

    def __contains__(self, key) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Key]:
        return iter(self.keys())

    def copy(self) -> "Values":
        out = Values()
        out._values = dict(self._values)
        out._types = dict(self._types)
        return out

    def merged(self, other: "Values") -> "Values":
        """New assignment holding both; keys must not overlap."""
        out = self.copy()
        for key in other.keys():
            out.insert(key, other.at(key), other.var_type(key))
        return out

    def retract_key(self, key: Key, delta: np.ndarray) -> np.ndarray:
        x = self.at(key)
        delta = np.asarray(delta, dtype=np.float64).reshape(-1)
        manifold = self.manifold(key)
        if manifold == "euclidean":
            return x + delta
        return np.asarray(retract_jit(manifold, x, delta), dtype=np.float64)

    def retract(self, delta: Mapping[Key, np.ndarray]) -> "Values":
        """``self ⊕ delta``; keys missing from ``delta`` are copied unchanged."""
        out = self.copy()
        for key, d in delta.items():
            if key in self._values:
                out._values[key] = self.retract_key(key, d)
        return out

    def local_coordinates(self, other: "Values") -> "VectorValues":
        """Tangent vectors taking ``self`` to ``other`` for every key of ``self``."""
        out = VectorValues()
        for key, x in self._values.items():
            manifold = self.manifold(key)
            y = other.at(key)
            if manifold == "euclidean":
                out[key] = y - x
            else:
                out[key] = np.asarray(local_coordinates_jit(manifold, x, y), dtype=np.float64)
        return out

    def __repr__(self) -> str:
        return f"Values({len(self)} variables)"


class VectorValues(dict):
    """key → tangent vector, with the vector-space operations the solvers need."""

    @classmethod
    def zeros(cls, dims: Mapping[Key, int]) -> "VectorValues":
        return cls({k: np.zeros(n) for k, n in dims.items()})

    def vector(self, keys: Optional[Iterable[Key]] = None) -> np.ndarray:
        keys = sorted(self) if keys is None else list(keys)
        if not keys:
            return np.zeros(0)
        return np.concatenate([np.asarray(self[k]).reshape(-1) for k in keys])

    def dot(self, other: Mapping[Key, np.ndarray]) -> float:
        total = 0.0
        for key, v in self.items():
            if key in other:
                total += float(np.dot(v, other[key]))
        return total

    def squared_norm(self) -> float:
        return self.dot(self)

    def norm(self) -> float:
        return float(np.sqrt(self.squared_norm()))

    def scaled(self, alpha: float) -> "VectorValues":
        return VectorValues({k: alpha * v for k, v in self.items()})

    def __add__(self, other: Mapping[Key, np.ndarray]) -> "VectorValues":
        out = self.copy()
        for key, v in other.items():
            out[key] = out[key] + v if key in out else np.array(v, dtype=np.float64)
        return out

    def __sub__(self, other: Mapping[Key, np.ndarray]) -> "VectorValues":
        return self + VectorValues(other).scaled(-1.0)

    def copy(self) -> "VectorValues":
        return VectorValues({k: np.array(v, dtype=np.float64) for k, v in self.items()})
