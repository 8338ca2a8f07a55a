# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Configuration for the ISAM2 engine.

GaussNewtonParams
    - wildfire_threshold: minimum per-component delta change that keeps
      back-substitution propagating down the tree (default 0.001)

DoglegParams
    - initial_delta: starting trust-region radius (default 1.0)
    - wildfire_threshold: as above, for the Gauss-Newton part (default 1e-5)
    - adaptation_mode: `TrustRegionAdaptationMode`
    - verbose: log every trust-region trial at INFO level

ISAM2Params
    - optimization_params: one of the two above
    - relinearize_threshold: either a scalar (max-abs over the delta of a
      variable) or a mapping variable type → per-component thresholds
    - relinearize_skip: check for relinearization every N updates
    - enable_relinearization
    - evaluate_nonlinear_error: fill error_before / error_after in results
    - factorization: QR or Cholesky elimination
    - cache_linearized_factors: re-use linear factors of variables that
      were not relinearized
    - enable_detailed_results: per-variable status in results
    - key_formatter: how keys are printed in log messages
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Sequence, Union

import numpy as np

from isam_jit.core.types import Key
from isam_jit.linear.jacobian_factor import Factorization
from isam_jit.optimization.dogleg import TrustRegionAdaptationMode

RelinearizeThreshold = Union[float, Mapping[str, Union[float, Sequence[float]]]]


@dataclass
class GaussNewtonParams:
    wildfire_threshold: float = 0.001

    def __post_init__(self):
        if self.wildfire_threshold < 0.0:
            raise ValueError(f"wildfire_threshold must be non-negative, got {self.wildfire_threshold}")


@dataclass
class DoglegParams:
    initial_delta: float = 1.0
    wildfire_threshold: float = 1e-5
    adaptation_mode: TrustRegionAdaptationMode = TrustRegionAdaptationMode.SEARCH_EACH_ITERATION
    verbose: bool = False

    def __post_init__(self):
        if self.initial_delta <= 0.0:
            raise ValueError(f"initial_delta must be positive, got {self.initial_delta}")
        if self.wildfire_threshold < 0.0:
            raise ValueError(f"wildfire_threshold must be non-negative, got {self.wildfire_threshold}")
        self.adaptation_mode = TrustRegionAdaptationMode(self.adaptation_mode)


@dataclass
class ISAM2Params:
    optimization_params: Union[GaussNewtonParams, DoglegParams] = field(default_factory=GaussNewtonParams)
    relinearize_threshold: RelinearizeThreshold = 0.1
    relinearize_skip: int = 10
    enable_relinearization: bool = True
    evaluate_nonlinear_error: bool = False
    factorization: Factorization = Factorization.QR
    cache_linearized_factors: bool = True
    enable_detailed_results: bool = False
    key_formatter: Callable[[Key], str] = str

    def __post_init__(self):
        if not isinstance(self.optimization_params, (GaussNewtonParams, DoglegParams)):
            raise ValueError(
                "optimization_params must be GaussNewtonParams or DoglegParams, "
                f"got {type(self.optimization_params).__name__}"
            )
        if self.relinearize_skip < 1:
            raise ValueError(f"relinearize_skip must be at least 1, got {self.relinearize_skip}")
        self.factorization = Factorization(self.factorization)

        if isinstance(self.relinearize_threshold, Mapping):
            thresholds: Dict[str, np.ndarray] = {}
            for var_type, value in self.relinearize_threshold.items():
                arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
                if np.any(arr < 0.0):
                    raise ValueError(f"negative relinearize threshold for type {var_type!r}")
                thresholds[var_type] = arr
            self.relinearize_threshold = thresholds
        else:
            self.relinearize_threshold = float(self.relinearize_threshold)
            if self.relinearize_threshold < 0.0:
                raise ValueError(
                    f"relinearize_threshold must be non-negative, got {self.relinearize_threshold}"
                )

    @property
    def is_dogleg(self) -> bool:
        return isinstance(self.optimization_params, DoglegParams)
