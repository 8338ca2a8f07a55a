# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""Value objects returned by `ISAM2.update`."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from isam_jit.core.types import FactorIndex, Key


@dataclass
class VariableStatus:
    is_reeliminated: bool = False
    is_above_relin_threshold: bool = False
    is_relinearize_involved: bool = False
    is_relinearized: bool = False
    is_observed: bool = False
    is_new: bool = False
    in_root_clique: bool = False


@dataclass
class DetailedResults:
    variable_status: Dict[Key, VariableStatus] = field(default_factory=dict)

    def status(self, key: Key) -> VariableStatus:
        return self.variable_status.setdefault(key, VariableStatus())


@dataclass
class ISAM2Result:
    """
    Summary of one update.

    ``error_before`` / ``error_after`` are only filled when
    ``ISAM2Params.evaluate_nonlinear_error`` is set, and ``detail`` only
    when ``enable_detailed_results`` is.
    """
    error_before: Optional[float] = None
    error_after: Optional[float] = None
    variables_relinearized: int = 0
    variables_reeliminated: int = 0
    cliques: int = 0
    new_factors_indices: List[FactorIndex] = field(default_factory=list)
    marked_keys: Set[Key] = field(default_factory=set)
    observed_keys: Set[Key] = field(default_factory=set)
    keys_with_removed_factors: Set[Key] = field(default_factory=set)
    detail: Optional[DetailedResults] = None
