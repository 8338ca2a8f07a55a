# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
JAX runtime configuration.

Every module that evaluates residuals or Jacobians imports ``jax`` / ``jnp``
from here so that 64-bit floats are enabled before the first array is
created. The incremental solver compares JAX-computed Jacobians against
numpy factorizations, and single precision is not enough for the
incremental-versus-batch equivalence to hold to useful tolerances.
"""

from __future__ import annotations

import os

# Small per-factor kernels; do not let XLA grab most of the device memory.
os.environ.setdefault("XLA_PYTHON_CLIENT_PREALLOCATE", "false")

import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)

__all__ = ["jax", "jnp"]
