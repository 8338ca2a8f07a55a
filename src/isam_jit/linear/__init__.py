# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""Linear factors, conditionals and dense elimination."""
