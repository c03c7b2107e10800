"""Community data transformations applied before dissimilarities."""

from __future__ import annotations

import logging

import numpy as np

from .errors import InvalidInputError
from .io import AbundanceTable

logger = logging.getLogger(__name__)

SQRT_THRESHOLD = 50.0
WISCONSIN_THRESHOLD = 9.0


def _nonnegative(table: AbundanceTable) -> np.ndarray:
    if np.any(table.counts < 0):
        raise InvalidInputError("Transformations require non-negative counts")
    return table.counts


def sqrt_transform(table: AbundanceTable) -> AbundanceTable:
    """Elementwise square root."""
    mat = _nonnegative(table)
    return AbundanceTable(
        sample_ids=list(table.sample_ids),
        feature_ids=list(table.feature_ids),
        counts=np.sqrt(mat),
    )


def wisconsin(table: AbundanceTable) -> AbundanceTable:
    """Wisconsin double standardization.

    Each feature is divided by its maximum, then each sample by its total.
    Features or samples that are entirely zero stay zero.
    """
    mat = _nonnegative(table)
    col_max = mat.max(axis=0, keepdims=True) if mat.shape[0] else np.ones((1, mat.shape[1]))
    col_max = np.where(col_max == 0, 1.0, col_max)
    scaled = mat / col_max
    row_sums = scaled.sum(axis=1, keepdims=True)
    row_sums = np.where(row_sums == 0, 1.0, row_sums)
    return AbundanceTable(
        sample_ids=list(table.sample_ids),
        feature_ids=list(table.feature_ids),
        counts=scaled / row_sums,
    )


def autotransform(table: AbundanceTable) -> tuple[AbundanceTable, list[str]]:
    """Square root if counts exceed 50, then Wisconsin if they exceed 9.

    Both thresholds are judged on the untransformed maximum.
    Returns the transformed table and the names of the steps applied.
    """
    mat = _nonnegative(table)
    peak = float(mat.max()) if mat.size else 0.0
    steps: list[str] = []
    out = table
    if peak > SQRT_THRESHOLD:
        out = sqrt_transform(out)
        steps.append("sqrt")
        logger.info("Square root transformation applied (max count %.1f)", peak)
    if peak > WISCONSIN_THRESHOLD:
        out = wisconsin(out)
        steps.append("wisconsin")
        logger.info("Wisconsin double standardization applied")
    return out, steps
