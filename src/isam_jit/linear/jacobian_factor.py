# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Dense Jacobian factors and single-step variable elimination.

A `JacobianFactor` is the linearized (whitened) form of one or more
measurement factors:

    e(x) = 0.5 * || Σ_k A_k x_k - b ||²

with one dense block ``A_k`` per variable key. Factors are short-lived: they
are produced by linearization or by a previous elimination step and
consumed by `eliminate`.

eliminate(factors, frontal_keys, position, factorization)
    Stacks every input factor into one joint system with columns ordered
    as ``[frontals, separator keys by elimination position]`` and splits it
    into

        • a `GaussianConditional`  R x_f + S x_s = d
        • a separator `JacobianFactor` over the remaining keys (or ``None``
          when nothing remains)

Two numeric policies are available through `Factorization`:

    QR        Householder QR of the augmented matrix ``[A | b]``.
    CHOLESKY  Cholesky of the frontal information block, Schur complement on
              the separator, converted back to square-root form through a
              symmetric eigendecomposition.

Both give the same conditional up to row signs, and both raise
`NumericalFactorizationError` when the frontal block carries no
information (an under-constrained variable).
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from isam_jit.core.errors import NumericalFactorizationError
from isam_jit.linear.conditional import GaussianConditional

# Relative tolerance on the frontal diagonal below which a block is rank deficient.
RANK_TOLERANCE = 1e-9
# Relative tolerance on negative Schur-complement eigenvalues.
INDEFINITE_TOLERANCE = 1e-6


class Factorization(str, Enum):
    QR = "qr"
    CHOLESKY = "cholesky"


class JacobianFactor:
    """Linear least-squares factor ``0.5 || Σ A_k x_k - b ||²``."""

    __slots__ = ("keys", "blocks", "b")

    def __init__(self, keys: Sequence[int], blocks: Sequence[np.ndarray], b: np.ndarray):
        self.keys: Tuple[int, ...] = tuple(int(k) for k in keys)
        self.b = np.asarray(b, dtype=np.float64).reshape(-1)
        rows = self.b.shape[0]
        self.blocks: List[np.ndarray] = []
        for key, A in zip(self.keys, blocks):
            A = np.asarray(A, dtype=np.float64)
            if A.ndim == 1:
                A = A.reshape(rows, -1)
            if A.shape[0] != rows:
                raise ValueError(
                    f"block for key {key} has {A.shape[0]} rows, expected {rows}"
                )
            self.blocks.append(A)
        if len(self.blocks) != len(self.keys):
            raise ValueError("one block per key is required")
        if len(set(self.keys)) != len(self.keys):
            raise ValueError(f"duplicate keys in linear factor: {self.keys}")

    @property
    def rows(self) -> int:
        return self.b.shape[0]

    def dims(self) -> Dict[int, int]:
        return {k: A.shape[1] for k, A in zip(self.keys, self.blocks)}

    def residual(self, x: Mapping[int, np.ndarray]) -> np.ndarray:
        r = -self.b.copy()
        for key, A in zip(self.keys, self.blocks):
            r += A @ np.asarray(x[key])
        return r

    def error(self, x: Mapping[int, np.ndarray]) -> float:
        r = self.residual(x)
        return 0.5 * float(r @ r)

    def gradient(self, x: Mapping[int, np.ndarray]) -> Dict[int, np.ndarray]:
        """Gradient of `error` at ``x``, per key: ``A_kᵀ (A x - b)``."""
        r = self.residual(x)
        return {key: A.T @ r for key, A in zip(self.keys, self.blocks)}

    def augmented(self) -> np.ndarray:
        """Dense ``[A | b]`` with the blocks in key order."""
        return np.hstack(self.blocks + [self.b[:, None]])

    def __repr__(self) -> str:
        return f"JacobianFactor(keys={list(self.keys)}, rows={self.rows})"


def _stack(
    factors: Sequence[JacobianFactor],
    frontal_keys: Sequence[int],
    position: Mapping[int, int],
) -> Tuple[np.ndarray, List[int], List[int], Dict[int, int]]:
    dims: Dict[int, int] = {}
    for f in factors:
        for key, A in zip(f.keys, f.blocks):
            d = A.shape[1]
            if dims.setdefault(key, d) != d:
                raise ValueError(f"inconsistent dimension for key {key}: {dims[key]} vs {d}")

    missing = [k for k in frontal_keys if k not in dims]
    if missing:
        raise NumericalFactorizationError("no factor constrains the variable", keys=missing)

    frontal_set = set(frontal_keys)
    separator = sorted((k for k in dims if k not in frontal_set), key=lambda k: position[k])

    offsets: Dict[int, int] = {}
    n = 0
    for key in list(frontal_keys) + separator:
        offsets[key] = n
        n += dims[key]

    m = sum(f.rows for f in factors)
    Ab = np.zeros((m, n + 1))
    row = 0
    for f in factors:
        for key, A in zip(f.keys, f.blocks):
            Ab[row:row + f.rows, offsets[key]:offsets[key] + A.shape[1]] = A
        Ab[row:row + f.rows, n] = f.b
        row += f.rows
    return Ab, list(frontal_keys), separator, dims


def _split(M: np.ndarray, keys: Sequence[int], dims: Mapping[int, int]) -> List[np.ndarray]:
    blocks = []
    col = 0
    for key in keys:
        blocks.append(M[:, col:col + dims[key]])
        col += dims[key]
    return blocks


def _eliminate_qr(Ab: np.ndarray, df: int, frontals: Sequence[int]):
    n = Ab.shape[1] - 1
    R = np.linalg.qr(Ab, mode="r")
    if R.shape[0] < df:
        raise NumericalFactorizationError(
            "fewer measurement rows than frontal dimensions", keys=frontals
        )
    diag = np.abs(np.diag(R[:df, :df]))
    scale = max(1.0, float(np.max(np.abs(R[:df, :df]), initial=0.0)))
    if df and float(diag.min()) <= RANK_TOLERANCE * scale:
        raise NumericalFactorizationError("rank-deficient frontal block", keys=frontals)

    conditional_rows = R[:df]
    # Rows past n only carry the constant error term.
    separator_rows = R[df:min(R.shape[0], n), df:]
    return (
        conditional_rows[:, :df],
        conditional_rows[:, df:n],
        conditional_rows[:, n],
        separator_rows[:, :n - df],
        separator_rows[:, n - df],
    )


def _eliminate_cholesky(Ab: np.ndarray, df: int, frontals: Sequence[int]):
    n = Ab.shape[1] - 1
    A = Ab[:, :n]
    b = Ab[:, n]
    H = A.T @ A
    eta = A.T @ b

    H_ff = H[:df, :df]
    scale = max(1.0, float(np.max(np.abs(H_ff), initial=0.0)))
    try:
        L = np.linalg.cholesky(H_ff)
    except np.linalg.LinAlgError as exc:
        raise NumericalFactorizationError(
            f"frontal information block is not positive definite: {exc}", keys=frontals
        ) from exc
    if df and float(np.min(np.diag(L))) <= RANK_TOLERANCE * np.sqrt(scale):
        raise NumericalFactorizationError("rank-deficient frontal block", keys=frontals)

    R = L.T
    S = np.linalg.solve(L, H[:df, df:])
    d = np.linalg.solve(L, eta[:df])

    H_s = H[df:, df:] - S.T @ S
    eta_s = eta[df:] - S.T @ d
    if H_s.shape[0] == 0:
        return R, S, d, np.zeros((0, 0)), np.zeros(0)

    w, V = np.linalg.eigh(0.5 * (H_s + H_s.T))
    s_scale = max(1.0, float(np.max(np.abs(w))))
    if float(w.min()) < -INDEFINITE_TOLERANCE * s_scale:
        raise NumericalFactorizationError("indefinite separator information", keys=frontals)
    keep = w > RANK_TOLERANCE * s_scale
    root = np.sqrt(w[keep])
    A_sep = root[:, None] * V[:, keep].T
    b_sep = (V[:, keep].T @ eta_s) / root
    return R, S, d, A_sep, b_sep


def eliminate(
    factors: Sequence[JacobianFactor],
    frontal_keys: Sequence[int],
    position: Mapping[int, int],
    factorization: Factorization = Factorization.QR,
) -> Tuple[GaussianConditional, Optional[JacobianFactor]]:
    """
    Eliminate ``frontal_keys`` from the product of ``factors``.

    ``position`` maps every involved key to its place in the elimination
    ordering; the separator keys of the result are sorted by it. A separator
    factor with zero rows is still returned when separator keys exist, so
    the key structure of the tree does not depend on the numbers.
    """
    Ab, frontals, separator, dims = _stack(factors, frontal_keys, position)
    df = sum(dims[k] for k in frontals)

    if Factorization(factorization) is Factorization.QR:
        R, S, d, A_sep, b_sep = _eliminate_qr(Ab, df, frontals)
    else:
        R, S, d, A_sep, b_sep = _eliminate_cholesky(Ab, df, frontals)

    conditional = GaussianConditional(
        frontals=frontals,
        frontal_dims=[dims[k] for k in frontals],
        parents=separator,
        parent_dims=[dims[k] for k in separator],
        R=R,
        S=S,
        d=d,
    )
    if not separator:
        return conditional, None
    return conditional, JacobianFactor(separator, _split(A_sep, separator, dims), b_sep)
