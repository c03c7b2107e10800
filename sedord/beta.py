"""Beta diversity dissimilarities between samples."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from scipy.spatial.distance import pdist, squareform

from .errors import DegenerateInputError, InvalidInputError
from .io import AbundanceTable

logger = logging.getLogger(__name__)

SYMMETRY_TOL = 1e-10


@dataclass
class DissimilarityMatrix:
    """Square sample-by-sample dissimilarity matrix."""

    sample_ids: list[str]
    distance_matrix: np.ndarray  # shape (n_samples, n_samples)
    metric: str

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    def validate(self) -> None:
        """Raise InvalidInputError unless the matrix is a proper dissimilarity."""
        dm = np.asarray(self.distance_matrix, dtype=np.float64)
        if dm.ndim != 2 or dm.shape[0] != dm.shape[1]:
            raise InvalidInputError(f"Dissimilarity matrix must be square, got {dm.shape}")
        if dm.shape[0] != len(self.sample_ids):
            raise InvalidInputError(
                f"Matrix size {dm.shape[0]} != len(sample_ids) {len(self.sample_ids)}"
            )
        if not np.all(np.isfinite(dm)):
            raise InvalidInputError("Dissimilarity matrix contains non-finite values")
        if np.any(dm < 0):
            raise InvalidInputError("Dissimilarity matrix contains negative values")
        if not np.allclose(dm, dm.T, rtol=0.0, atol=SYMMETRY_TOL):
            raise InvalidInputError("Dissimilarity matrix is not symmetric")
        if np.any(np.abs(np.diag(dm)) > SYMMETRY_TOL):
            raise InvalidInputError("Dissimilarity matrix has a non-zero diagonal")

    def condensed(self) -> np.ndarray:
        """Upper-triangle entries (i < j) in row-major order."""
        return squareform(self.distance_matrix, checks=False)

    @classmethod
    def from_array(
        cls,
        matrix: np.ndarray,
        sample_ids: Sequence[str],
        metric: str = "precomputed",
    ) -> DissimilarityMatrix:
        dm = cls(
            sample_ids=list(sample_ids),
            distance_matrix=np.asarray(matrix, dtype=np.float64),
            metric=metric,
        )
        dm.validate()
        return dm


def _check_counts(table: AbundanceTable, divides_by_totals: bool) -> np.ndarray:
    mat = table.counts
    if table.n_samples < 2:
        raise InvalidInputError(
            f"Need at least 2 samples for dissimilarities, got {table.n_samples}"
        )
    if not np.all(np.isfinite(mat)):
        raise InvalidInputError("Abundance table contains non-finite values")
    if np.any(mat < 0):
        bad = sorted({table.sample_ids[i] for i in np.where(mat < 0)[0]})
        raise InvalidInputError(f"Negative counts in samples: {bad}")
    if divides_by_totals:
        empty = table.empty_samples()
        if empty:
            raise DegenerateInputError(
                f"All-zero samples have no defined dissimilarity: {empty}",
                sample_ids=empty,
            )
    return mat


def bray_curtis(table: AbundanceTable) -> DissimilarityMatrix:
    """Compute Bray-Curtis dissimilarity between all sample pairs.

    1 - 2 * sum(min(a, b)) / (sum(a) + sum(b)); 0 for identical samples,
    1 for samples sharing no features.
    """
    mat = _check_counts(table, divides_by_totals=True)
    dm = squareform(pdist(mat, metric="braycurtis"))
    return DissimilarityMatrix(
        sample_ids=list(table.sample_ids),
        distance_matrix=dm,
        metric="bray_curtis",
    )


def jaccard(table: AbundanceTable) -> DissimilarityMatrix:
    """Compute Jaccard dissimilarity on presence/absence."""
    mat = _check_counts(table, divides_by_totals=True)
    pa = mat > 0
    dm = squareform(pdist(pa, metric="jaccard"))
    return DissimilarityMatrix(
        sample_ids=list(table.sample_ids),
        distance_matrix=dm,
        metric="jaccard",
    )


def euclidean(table: AbundanceTable) -> DissimilarityMatrix:
    """Euclidean distance on the raw (or pre-transformed) counts."""
    mat = _check_counts(table, divides_by_totals=False)
    dm = squareform(pdist(mat, metric="euclidean"))
    return DissimilarityMatrix(
        sample_ids=list(table.sample_ids),
        distance_matrix=dm,
        metric="euclidean",
    )


MEASURES: dict[str, Callable[[AbundanceTable], DissimilarityMatrix]] = {
    "bray_curtis": bray_curtis,
    "jaccard": jaccard,
    "euclidean": euclidean,
}


def compute_dissimilarity(
    table: AbundanceTable, measure: str = "bray_curtis"
) -> DissimilarityMatrix:
    """Dissimilarity matrix for ``table`` under a named measure."""
    try:
        func = MEASURES[measure]
    except KeyError:
        raise InvalidInputError(
            f"Unknown dissimilarity measure {measure!r}; choose from {sorted(MEASURES)}"
        ) from None
    result = func(table)
    logger.info(
        "Computed %s dissimilarities for %d samples x %d features",
        measure, table.n_samples, table.n_features,
    )
    return result
