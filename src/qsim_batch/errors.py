from __future__ import annotations


class InputShapeError(ValueError):
    """Batch inputs are malformed; raised before any task is dispatched."""


class SolverConstructionError(RuntimeError):
    """A per-worker solver instance could not be built."""
