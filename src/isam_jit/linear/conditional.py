# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Gaussian conditionals in square-root form.

A `GaussianConditional` stores the upper-triangular system

    R x_f + S x_s = d

over its frontal keys ``x_f`` given its parent (separator) keys ``x_s``.
It is what each clique of the Bayes tree holds, and everything the delta
solvers need is computed from it: back-substitution (`solve`), the cached
gradient contribution ``-[R S]ᵀ d``, and the ``[R S] g`` products used by
the steepest-descent step length.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np


class GaussianConditional:
    __slots__ = ("frontals", "frontal_dims", "parents", "parent_dims", "R", "S", "d")

    def __init__(
        self,
        frontals: Sequence[int],
        frontal_dims: Sequence[int],
        parents: Sequence[int],
        parent_dims: Sequence[int],
        R: np.ndarray,
        S: np.ndarray,
        d: np.ndarray,
    ):
        self.frontals: Tuple[int, ...] = tuple(int(k) for k in frontals)
        self.frontal_dims: Tuple[int, ...] = tuple(int(n) for n in frontal_dims)
        self.parents: Tuple[int, ...] = tuple(int(k) for k in parents)
        self.parent_dims: Tuple[int, ...] = tuple(int(n) for n in parent_dims)
        df = sum(self.frontal_dims)
        ds = sum(self.parent_dims)
        self.R = np.asarray(R, dtype=np.float64).reshape(df, df)
        self.S = np.asarray(S, dtype=np.float64).reshape(df, ds)
        self.d = np.asarray(d, dtype=np.float64).reshape(df)

    @property
    def keys(self) -> Tuple[int, ...]:
        return self.frontals + self.parents

    def dims(self) -> Dict[int, int]:
        return dict(zip(self.keys, self.frontal_dims + self.parent_dims))

    def _stack(self, x: Mapping[int, np.ndarray], keys: Sequence[int]) -> np.ndarray:
        if not keys:
            return np.zeros(0)
        return np.concatenate([np.asarray(x[k], dtype=np.float64).reshape(-1) for k in keys])

    def _unstack(self, v: np.ndarray, keys: Sequence[int], dims: Sequence[int]) -> Dict[int, np.ndarray]:
        out: Dict[int, np.ndarray] = {}
        offset = 0
        for key, n in zip(keys, dims):
            out[key] = v[offset:offset + n].copy()
            offset += n
        return out

    def solve(self, x: Mapping[int, np.ndarray]) -> Dict[int, np.ndarray]:
        """Back-substitute the frontals given parent values in ``x``."""
        rhs = self.d
        if self.parents:
            rhs = rhs - self.S @ self._stack(x, self.parents)
        sol = np.linalg.solve(self.R, rhs)
        return self._unstack(sol, self.frontals, self.frontal_dims)

    def residual(self, x: Mapping[int, np.ndarray]) -> np.ndarray:
        r = self.R @ self._stack(x, self.frontals) - self.d
        if self.parents:
            r = r + self.S @ self._stack(x, self.parents)
        return r

    def error(self, x: Mapping[int, np.ndarray]) -> float:
        r = self.residual(x)
        return 0.5 * float(r @ r)

    def gradient(self, x: Mapping[int, np.ndarray]) -> Dict[int, np.ndarray]:
        """``[R S]ᵀ ([R S] x - d)`` split per key."""
        g = np.hstack([self.R, self.S]).T @ self.residual(x)
        return self._unstack(g, self.keys, self.frontal_dims + self.parent_dims)

    def gradient_contribution(self) -> Dict[int, np.ndarray]:
        """Gradient at zero, ``-[R S]ᵀ d``, split per key."""
        g = -(np.hstack([self.R, self.S]).T @ self.d)
        return self._unstack(g, self.keys, self.frontal_dims + self.parent_dims)

    def rg_product(self, g: Mapping[int, np.ndarray]) -> np.ndarray:
        return np.hstack([self.R, self.S]) @ self._stack(g, self.keys)

    def merge_front(self, child: "GaussianConditional") -> "GaussianConditional":
        """
        Absorb ``child``, eliminated just before this conditional, whose
        parents are exactly this conditional's keys. The result has frontals
        ``child.frontals + self.frontals`` and keeps this conditional's parents.
        """
        if set(child.parents) != set(self.keys):
            raise ValueError(
                f"cannot merge conditional on {list(child.parents)} into {list(self.keys)}"
            )
        child_cols: Dict[int, Tuple[int, int]] = {}
        offset = 0
        for key, n in zip(child.parents, child.parent_dims):
            child_cols[key] = (offset, offset + n)
            offset += n

        def gather(keys: Sequence[int]) -> np.ndarray:
            cols: List[np.ndarray] = [child.S[:, slice(*child_cols[k])] for k in keys]
            if not cols:
                return np.zeros((child.S.shape[0], 0))
            return np.hstack(cols)

        dc = child.R.shape[0]
        dp = self.R.shape[0]
        R = np.zeros((dc + dp, dc + dp))
        R[:dc, :dc] = child.R
        R[:dc, dc:] = gather(self.frontals)
        R[dc:, dc:] = self.R
        S = np.vstack([gather(self.parents), self.S])
        d = np.concatenate([child.d, self.d])
        return GaussianConditional(
            frontals=child.frontals + self.frontals,
            frontal_dims=child.frontal_dims + self.frontal_dims,
            parents=self.parents,
            parent_dims=self.parent_dims,
            R=R,
            S=S,
            d=d,
        )

    def __repr__(self) -> str:
        return f"GaussianConditional(frontals={list(self.frontals)}, parents={list(self.parents)})"
