from __future__ import annotations

from typing import Dict, List, Tuple

import numpy as np
import pytest

from isam_jit import JacobianFactor, Values, make_factor, sigma_to_weight
from isam_jit.core.math3d import between_pose2, compose_pose2

# =============================================================================
# Shared problems
# =============================================================================


def _pose2_truth(n: int) -> Dict[int, np.ndarray]:
    """Poses 0..n-1 driving 1 m forward and turning 0.5 rad each step."""
    step = np.array([1.0, 0.0, 0.5])
    poses = {0: np.zeros(3)}
    for k in range(1, n):
        poses[k] = np.asarray(compose_pose2(poses[k - 1], step))
    return poses


@pytest.fixture
def pose2_loop() -> Tuple[List[Tuple[list, Values]], Dict[int, np.ndarray]]:
    """
    Five SE(2) poses with noise-free odometry and one loop closure from the
    last pose back to the first.

    Returns:
        steps: list of (factors, initial values) to feed one update at a time;
               initial guesses are ground truth plus a deterministic offset
        truth: key -> ground-truth pose
    """
    truth = _pose2_truth(5)
    odo_w = sigma_to_weight(np.array([0.1, 0.1, 0.05]))
    prior_w = sigma_to_weight(np.array([0.01, 0.01, 0.01]))

    def initial(k: int) -> Values:
        v = Values()
        offset = np.array([0.05, -0.04, 0.03]) * (1 if k % 2 == 0 else -1)
        v.insert(k, truth[k] + offset, "pose2")
        return v

    def odo(i: int, j: int):
        meas = np.asarray(between_pose2(truth[i], truth[j]))
        return make_factor("between_pose2", (i, j), {"measurement": meas, "weight": odo_w})

    steps = [([make_factor("prior_pose2", (0,), {"target": truth[0], "weight": prior_w})], initial(0))]
    for k in range(1, 5):
        factors = [odo(k - 1, k)]
        if k == 4:
            factors.append(odo(4, 0))
        steps.append((factors, initial(k)))
    return steps, truth


@pytest.fixture
def linear_system() -> Dict[int, JacobianFactor]:
    """
    Random, well-conditioned sparse linear least-squares problem over six
    2-D variables: a prior on variable 0, a chain of binary factors and two
    long-range factors.
    """
    rng = np.random.default_rng(7)
    factors: Dict[int, JacobianFactor] = {}

    def add(keys):
        blocks = [rng.normal(size=(2, 2)) + 3.0 * np.eye(2) for _ in keys]
        factors[len(factors)] = JacobianFactor(keys, blocks, rng.normal(size=2))

    add((0,))
    for k in range(5):
        add((k, k + 1))
    add((0, 3))
    add((2, 5))
    return factors


def dense_solution(factors: Dict[int, JacobianFactor]) -> Dict[int, np.ndarray]:
    """Least-squares solution of a set of linear factors via numpy."""
    dims: Dict[int, int] = {}
    for f in factors.values():
        dims.update(f.dims())
    keys = sorted(dims)
    offsets, n = {}, 0
    for k in keys:
        offsets[k] = n
        n += dims[k]
    rows = []
    rhs = []
    for f in factors.values():
        A = np.zeros((f.rows, n))
        for k, block in zip(f.keys, f.blocks):
            A[:, offsets[k]:offsets[k] + dims[k]] = block
        rows.append(A)
        rhs.append(f.b)
    x, *_ = np.linalg.lstsq(np.vstack(rows), np.concatenate(rhs), rcond=None)
    return {k: x[offsets[k]:offsets[k] + dims[k]] for k in keys}


@pytest.fixture
def dense_solve():
    return dense_solution
