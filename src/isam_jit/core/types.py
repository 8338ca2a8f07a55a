# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Core typed data structures for iSAM-JIT.

Classes
-------
Variable
    A node of the factor graph: integer key, variable type (which selects
    the manifold, see `slam.manifold`) and value vector.

Factor
    An immutable nonlinear measurement constraint:
    - type: string key naming the residual model
    - var_ids: ordered keys of the variables the residual reads
    - params: measurement / weight parameters passed to the residual
    - residual_fn: ``r(x, params)`` on the concatenated variable values

    A factor exposes the three capabilities the incremental engine relies
    on: `keys()`, `error(values)` and `linearize(values)`.

Notes
-----
Linearization is done with JAX forward-mode autodiff of the residual
composed with each variable's retraction, evaluated at a zero tangent
increment. The resulting function is jit-compiled once per
(residual function, manifold signature) pair and cached, so a long run that
keeps adding factors of the same few types compiles only a handful of
kernels.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, NewType, Tuple

import numpy as np

from isam_jit.core.jax_init import jax, jnp
from isam_jit.linear.jacobian_factor import JacobianFactor
from isam_jit.slam.manifold import retract

if TYPE_CHECKING:
    from isam_jit.core.values import Values

Key = NewType("Key", int)
FactorIndex = NewType("FactorIndex", int)

ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]


@dataclass
class Variable:
    """Generic optimization variable node in the factor graph."""
    id: Key
    type: str          # e.g. "pose2", "pose_se3", "point2", "vector"
    value: Any


@functools.lru_cache(maxsize=None)
def _linearizer(residual_fn: ResidualFn, manifolds: Tuple[str, ...]):
    def perturbed(xs, deltas, params):
        moved = [retract(m, x, d) for m, x, d in zip(manifolds, xs, deltas)]
        return residual_fn(jnp.concatenate(moved), params)

    def linearize(xs, params):
        zeros = tuple(jnp.zeros_like(x) for x in xs)
        r = residual_fn(jnp.concatenate(xs), params)
        jacobians = jax.jacfwd(perturbed, argnums=1)(xs, zeros, params)
        return r, jacobians

    return jax.jit(linearize)


@functools.lru_cache(maxsize=None)
def _evaluator(residual_fn: ResidualFn):
    return jax.jit(lambda xs, params: residual_fn(jnp.concatenate(xs), params))


@dataclass(frozen=True, eq=False)
class Factor:
    """Nonlinear factor connecting variables."""
    type: str
    var_ids: Tuple[Key, ...]
    params: Dict[str, Any]
    residual_fn: ResidualFn

    def __post_init__(self):
        ids = tuple(Key(int(k)) for k in self.var_ids)
        if not ids:
            raise ValueError(f"factor of type {self.type!r} touches no variables")
        if len(set(ids)) != len(ids):
            raise ValueError(f"factor of type {self.type!r} repeats a variable: {ids}")
        object.__setattr__(self, "var_ids", ids)

    def keys(self) -> Tuple[Key, ...]:
        return self.var_ids

    def _inputs(self, values: "Values"):
        return tuple(jnp.asarray(values.at(k)) for k in self.var_ids)

    def residual(self, values: "Values") -> np.ndarray:
        r = _evaluator(self.residual_fn)(self._inputs(values), self.params)
        return np.asarray(r, dtype=np.float64).reshape(-1)

    def error(self, values: "Values") -> float:
        """Nonlinear error ``0.5 ||r(x)||²`` of the whitened residual."""
        r = self.residual(values)
        return 0.5 * float(r @ r)

    def linearize(self, values: "Values") -> JacobianFactor:
        """Gaussian approximation at ``values``: ``A_k = ∂r/∂δ_k``, ``b = -r``."""
        manifolds = tuple(values.manifold(k) for k in self.var_ids)
        r, jacobians = _linearizer(self.residual_fn, manifolds)(self._inputs(values), self.params)
        r = np.asarray(r, dtype=np.float64).reshape(-1)
        blocks = [np.asarray(J, dtype=np.float64).reshape(r.shape[0], -1) for J in jacobians]
        return JacobianFactor(self.var_ids, blocks, -r)

    def __repr__(self) -> str:
        return f"Factor(type={self.type!r}, var_ids={list(self.var_ids)})"
