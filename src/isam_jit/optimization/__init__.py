# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""Delta solvers (wildfire, gradient search, dogleg) and the batch Gauss-Newton solver."""
