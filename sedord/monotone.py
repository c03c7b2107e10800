"""Monotone (isotonic) regression for non-metric scaling."""

from __future__ import annotations

import numpy as np

from .errors import InvalidInputError

TIES = ("primary", "secondary")


def isotonic_regression(
    y: np.ndarray, weights: np.ndarray | None = None
) -> np.ndarray:
    """Weighted least-squares non-decreasing fit of ``y`` (pool adjacent violators).

    ``y`` must already be ordered by the predictor.
    """
    y = np.asarray(y, dtype=np.float64).ravel()
    if weights is None:
        w = np.ones_like(y)
    else:
        w = np.asarray(weights, dtype=np.float64).ravel()
        if w.shape != y.shape:
            raise InvalidInputError(
                f"weights shape {w.shape} does not match y shape {y.shape}"
            )
        if np.any(w <= 0):
            raise InvalidInputError("weights must be strictly positive")

    means: list[float] = []
    wsum: list[float] = []
    sizes: list[int] = []
    for yi, wi in zip(y, w):
        means.append(float(yi))
        wsum.append(float(wi))
        sizes.append(1)
        # Merge backwards while the last two blocks violate monotonicity
        while len(means) > 1 and means[-2] > means[-1]:
            total = wsum[-2] + wsum[-1]
            merged = (means[-2] * wsum[-2] + means[-1] * wsum[-1]) / total
            size = sizes[-2] + sizes[-1]
            del means[-1], wsum[-1], sizes[-1]
            means[-1], wsum[-1], sizes[-1] = merged, total, size
    return np.repeat(np.array(means), sizes)


def monotone_disparities(
    dissimilarities: np.ndarray,
    distances: np.ndarray,
    ties: str = "primary",
) -> np.ndarray:
    """Disparities: the closest sequence to ``distances`` that is
    non-decreasing in the order of ``dissimilarities``.

    With ``ties="primary"`` tied dissimilarities may receive different
    disparities (ties are ordered by current distance). With
    ``ties="secondary"`` tied dissimilarities share a single disparity.
    Returned values are in the input order.
    """
    delta = np.asarray(dissimilarities, dtype=np.float64).ravel()
    d = np.asarray(distances, dtype=np.float64).ravel()
    if delta.shape != d.shape:
        raise InvalidInputError(
            f"dissimilarities {delta.shape} and distances {d.shape} differ in shape"
        )
    if ties not in TIES:
        raise InvalidInputError(f"ties must be one of {TIES}, got {ties!r}")

    out = np.empty_like(d)
    if d.size == 0:
        return out

    if ties == "primary":
        # lexsort: last key is the primary sort key
        order = np.lexsort((d, delta))
        out[order] = isotonic_regression(d[order])
        return out

    order = np.argsort(delta, kind="stable")
    _, starts, counts = np.unique(delta[order], return_index=True, return_counts=True)
    block_means = np.add.reduceat(d[order], starts) / counts
    fitted = isotonic_regression(block_means, weights=counts)
    out[order] = np.repeat(fitted, counts)
    return out
