# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""Manifold dispatch and measurement residual models."""
