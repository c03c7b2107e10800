"""Exception types for sedord."""

from __future__ import annotations

from typing import Any


class SedordError(Exception):
    """Base class for all sedord errors."""


class InvalidInputError(SedordError, ValueError):
    """Malformed or mismatched input (shapes, sample sets, negative counts)."""


class DegenerateInputError(InvalidInputError):
    """All-zero sample rows under a measure that divides by sample totals."""

    def __init__(self, message: str, sample_ids: list[str] | None = None):
        super().__init__(message)
        self.sample_ids = list(sample_ids or [])


class ConvergenceError(SedordError, RuntimeError):
    """No NMDS restart reached a stable stress within the iteration cap.

    The best-effort (lowest-stress) result is kept on ``result`` so callers
    may still use it.
    """

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result
