# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""Symbolic and numeric elimination: variable index, ordering, elimination and Bayes trees."""
