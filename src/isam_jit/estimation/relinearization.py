# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Fluid relinearization policy.

A variable's linearization point is stale when its current delta exceeds
the relinearization threshold:

    scalar threshold       max_i |δ_i| > threshold
    per-type thresholds    any |δ_i| > threshold[type][i]

The check only runs on scheduled passes (every ``relinearize_skip``
updates) or when the caller forces it. The stale set is then expanded by
involvement: every variable sharing a factor with a stale variable is
relinearized as well, so no factor is linearized with one side at a new
point and the other at an old one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Set, Union

import numpy as np

from isam_jit.core.types import Key
from isam_jit.inference.variable_index import VariableIndex


@dataclass
class StaleVariables:
    above_threshold: Set[Key] = field(default_factory=set)
    involved: Set[Key] = field(default_factory=set)

    @property
    def relinearized(self) -> Set[Key]:
        return self.above_threshold | self.involved


def check_relinearization(
    delta: Mapping[Key, np.ndarray],
    threshold: Union[float, Mapping[str, np.ndarray]],
    var_type: Callable[[Key], str],
) -> Set[Key]:
    """Keys whose delta is beyond ``threshold``."""
    stale: Set[Key] = set()
    if isinstance(threshold, Mapping):
        for key, d in delta.items():
            t = var_type(key)
            if t not in threshold:
                raise ValueError(f"no relinearize threshold configured for variable type {t!r}")
            limits = np.broadcast_to(threshold[t], d.shape)
            if np.any(np.abs(d) > limits):
                stale.add(key)
    else:
        for key, d in delta.items():
            if d.size and float(np.max(np.abs(d))) > threshold:
                stale.add(key)
    return stale


def expand_involved(keys: Iterable[Key], variable_index: VariableIndex) -> Set[Key]:
    """Keys sharing a factor with any of ``keys`` (excluding ``keys`` themselves)."""
    keys = set(keys)
    out: Set[Key] = set()
    for key in keys:
        for fi in variable_index.factors_touching(key):
            out.update(variable_index.factor_keys(fi))
    return out - keys


def mark_stale(
    delta: Mapping[Key, np.ndarray],
    threshold: Union[float, Mapping[str, np.ndarray]],
    var_type: Callable[[Key], str],
    variable_index: VariableIndex,
    update_count: int,
    relinearize_skip: int,
    force: bool = False,
    enabled: bool = True,
) -> StaleVariables:
    """
    Stale variables for the update numbered ``update_count`` (1-based).

    Nothing is stale unless relinearization is enabled and this update is a
    scheduled pass or ``force`` is set.
    """
    if not enabled or not (force or update_count % relinearize_skip == 0):
        return StaleVariables()
    above = check_relinearization(delta, threshold, var_type)
    if not above:
        return StaleVariables()
    involved = {k for k in expand_involved(above, variable_index) if k in delta}
    return StaleVariables(above_threshold=above, involved=involved)
