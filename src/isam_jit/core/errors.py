# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
Exception hierarchy for iSAM-JIT.

Three failure families are kept distinct so callers can react differently:

InvalidUpdateError
    The caller broke an input contract (unknown variable, duplicate
    variable, removal of a factor index that is not live). Raised before
    any state is touched.

NumericalFactorizationError
    Elimination hit a singular or indefinite block, typically an
    under-constrained variable. Carries the offending keys.

TreeStructureError
    The clique tree could not be reassembled (an orphan subtree whose
    separator is not covered by the re-eliminated top). The update is
    aborted and the previous tree is kept.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple


class ISAMError(Exception):
    """Base class for every error raised by the solver."""


class InvalidUpdateError(ISAMError, ValueError):
    """Rejected input to a graph, index or solver update."""


class NumericalFactorizationError(ISAMError, ArithmeticError):
    """Singular or indefinite system encountered during elimination."""

    def __init__(self, message: str, keys: Optional[Iterable[int]] = None):
        self.keys: Tuple[int, ...] = tuple(keys) if keys is not None else ()
        if self.keys:
            message = f"{message} (keys: {list(self.keys)})"
        super().__init__(message)


class TreeStructureError(ISAMError, RuntimeError):
    """Clique tree could not be kept consistent."""
