# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""The incremental ISAM2 estimator, its parameters and results."""
