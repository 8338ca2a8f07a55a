# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""Core data structures: keys, factors, values and the nonlinear factor graph."""
