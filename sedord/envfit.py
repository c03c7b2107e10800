"""Fitting environmental variables onto an ordination.

Continuous variables are fitted as vectors: the direction in ordination
space along which the variable increases most, with the fraction of its
variance explained by the ordination axes (R^2). Categorical variables are
fitted as factors: one centroid per level, with R^2 as the share of the
total sum of squares lying between levels.

Significance of both comes from permutation tests. Each permutation
shuffles the sample order once and applies that shuffle to every variable,
optionally only within strata (e.g. sites). P-values are
(count(R^2_perm >= R^2) + 1) / (n_permutations + 1); Benjamini-Hochberg
q-values are added across the fits of one call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from .errors import InvalidInputError
from .io import EnvironmentTable
from .ordination import OrdinationResult

logger = logging.getLogger(__name__)

# Tolerance when counting permuted statistics at least as large as observed
EPS = float(np.sqrt(np.finfo(np.float64).eps))


@dataclass
class VectorFit:
    """Fitted vector for one continuous variable."""

    name: str
    direction: np.ndarray  # unit vector, shape (n_axes,)
    r2: float
    p_value: float | None
    q_value: float | None = None


@dataclass
class FactorFit:
    """Fitted centroids for one categorical variable."""

    name: str
    levels: list[str]
    centroids: np.ndarray  # shape (n_levels, n_axes)
    r2: float
    p_value: float | None
    q_value: float | None = None


@dataclass
class EnvFitResult:
    vectors: list[VectorFit] = field(default_factory=list)
    factors: list[FactorFit] = field(default_factory=list)
    n_permutations: int = 0
    seed: int = 42


def _check_samples(ordination: OrdinationResult, environment: EnvironmentTable) -> list[str]:
    ord_ids = list(ordination.sample_ids)
    env_ids = set(environment.sample_ids)
    missing = sorted(set(ord_ids) - env_ids)
    extra = sorted(env_ids - set(ord_ids))
    if missing or extra:
        raise InvalidInputError(
            "Environment samples do not match the ordination: "
            f"missing={missing}, extra={extra}"
        )
    return ord_ids


def _check_strata(strata: Sequence[str] | None, n: int) -> np.ndarray | None:
    if strata is None:
        return None
    labels = np.asarray(list(strata), dtype=object)
    if len(labels) != n:
        raise InvalidInputError(f"strata has {len(labels)} labels for {n} samples")
    return labels


def _permutation(
    rng: np.random.Generator, n: int, strata: np.ndarray | None
) -> np.ndarray:
    if strata is None:
        return rng.permutation(n)
    idx = np.arange(n)
    for level in sorted(set(strata)):
        members = np.flatnonzero(strata == level)
        idx[members] = members[rng.permutation(len(members))]
    return idx


def _bh_fdr(p_values: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg FDR correction."""
    n = len(p_values)
    if n == 0:
        return np.array([])
    sorted_idx = np.argsort(p_values)
    sorted_p = p_values[sorted_idx]
    q = sorted_p * n / np.arange(1, n + 1)
    for i in range(n - 2, -1, -1):
        q[i] = min(q[i], q[i + 1])
    q = np.clip(q, 0, 1)
    result = np.zeros(n)
    result[sorted_idx] = q
    return result


def _assign_q_values(fits: list) -> None:
    tested = [f for f in fits if f.p_value is not None]
    if not tested:
        return
    q_values = _bh_fdr(np.array([f.p_value for f in tested]))
    for f, q in zip(tested, q_values):
        f.q_value = float(q)


def _vector_r2(X: np.ndarray, Y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Least-squares fit of centered columns of Y on centered X.

    Returns coefficients (n_axes, n_vars) and R^2 per column.
    """
    coeffs, _, _, _ = np.linalg.lstsq(X, Y, rcond=None)
    fitted = X @ coeffs
    r2 = (fitted**2).sum(axis=0) / (Y**2).sum(axis=0)
    return coeffs, r2


def fit_vectors(
    ordination: OrdinationResult,
    environment: EnvironmentTable,
    variables: Sequence[str] | None = None,
    n_permutations: int = 999,
    seed: int = 42,
    strata: Sequence[str] | None = None,
) -> list[VectorFit]:
    """Fit continuous variables as vectors onto the ordination.

    ``variables`` defaults to every numeric variable in ``environment``.
    ``n_permutations=0`` skips the permutation test (p_value is None).
    """
    sample_ids = _check_samples(ordination, environment)
    n = len(sample_ids)
    if n_permutations < 0:
        raise InvalidInputError(f"n_permutations must be >= 0, got {n_permutations}")
    strata_arr = _check_strata(strata, n)
    if variables is None:
        variables = [v for v in environment.variables if environment.is_numeric(v)]
    names = list(variables)
    if not names:
        return []

    X = ordination.coordinates - ordination.coordinates.mean(axis=0)
    raw = np.column_stack([environment.numeric(v, sample_ids) for v in names])
    flat = [v for v, spread in zip(names, np.ptp(raw, axis=0)) if spread == 0]
    if flat:
        raise InvalidInputError(f"Variables with zero variance cannot be fitted: {flat}")
    Y = raw - raw.mean(axis=0)

    coeffs, r2 = _vector_r2(X, Y)

    p_values: list[float | None] = [None] * len(names)
    if n_permutations > 0:
        rng = np.random.default_rng(seed)
        exceed = np.zeros(len(names), dtype=np.int64)
        for _ in range(n_permutations):
            perm = _permutation(rng, n, strata_arr)
            _, r2_perm = _vector_r2(X, Y[perm])
            exceed += r2_perm >= r2 - EPS
        p_values = [float(p) for p in (exceed + 1) / (n_permutations + 1)]

    fits: list[VectorFit] = []
    for j, name in enumerate(names):
        norm = np.linalg.norm(coeffs[:, j])
        direction = coeffs[:, j] / norm if norm > 0 else np.zeros(X.shape[1])
        fits.append(
            VectorFit(
                name=name,
                direction=direction,
                r2=float(min(r2[j], 1.0)),
                p_value=p_values[j],
            )
        )
        logger.debug("Vector %s: r2=%.4f p=%s", name, fits[-1].r2, p_values[j])
    _assign_q_values(fits)
    return fits


def _factor_r2(X: np.ndarray, codes: np.ndarray, n_levels: int) -> float:
    total = float(((X - X.mean(axis=0)) ** 2).sum())
    if total <= 0:
        return 0.0
    within = 0.0
    for k in range(n_levels):
        members = X[codes == k]
        within += float(((members - members.mean(axis=0)) ** 2).sum())
    return 1.0 - within / total


def fit_factors(
    ordination: OrdinationResult,
    environment: EnvironmentTable,
    variables: Sequence[str],
    n_permutations: int = 999,
    seed: int = 42,
    strata: Sequence[str] | None = None,
) -> list[FactorFit]:
    """Fit categorical variables as level centroids onto the ordination."""
    sample_ids = _check_samples(ordination, environment)
    n = len(sample_ids)
    if n_permutations < 0:
        raise InvalidInputError(f"n_permutations must be >= 0, got {n_permutations}")
    strata_arr = _check_strata(strata, n)
    X = ordination.coordinates

    rng = np.random.default_rng(seed)
    perms = [_permutation(rng, n, strata_arr) for _ in range(n_permutations)]

    fits: list[FactorFit] = []
    for name in variables:
        labels = environment.categorical(name, sample_ids)
        blank = [s for s, lab in zip(sample_ids, labels) if not str(lab).strip()]
        if blank:
            raise InvalidInputError(f"Factor {name!r} has no level for samples: {blank}")
        levels, codes = np.unique(labels.astype(str), return_inverse=True)
        if len(levels) < 2:
            raise InvalidInputError(f"Factor {name!r} needs at least 2 levels")
        centroids = np.array([X[codes == k].mean(axis=0) for k in range(len(levels))])
        r2 = _factor_r2(X, codes, len(levels))

        p_value = None
        if n_permutations > 0:
            exceed = sum(
                _factor_r2(X, codes[perm], len(levels)) >= r2 - EPS for perm in perms
            )
            p_value = float((exceed + 1) / (n_permutations + 1))
        fits.append(
            FactorFit(
                name=name,
                levels=[str(lv) for lv in levels],
                centroids=centroids,
                r2=float(r2),
                p_value=p_value,
            )
        )
        logger.debug("Factor %s: r2=%.4f p=%s", name, r2, p_value)
    _assign_q_values(fits)
    return fits


def envfit(
    ordination: OrdinationResult,
    environment: EnvironmentTable,
    n_permutations: int = 999,
    seed: int = 42,
    strata: Sequence[str] | None = None,
    exclude: Sequence[str] = (),
) -> EnvFitResult:
    """Fit every environmental variable: numeric ones as vectors, the rest as factors.

    Variables that cannot carry a signal (constant values, a single level)
    are left out with a warning. Variables named in ``exclude`` (e.g. the
    one the strata come from) are not fitted.
    """
    sample_ids = _check_samples(ordination, environment)
    numeric: list[str] = []
    categorical: list[str] = []
    for v in environment.variables:
        if v in exclude:
            continue
        if environment.is_numeric(v):
            try:
                values = environment.numeric(v, sample_ids)
            except InvalidInputError:
                logger.warning("Skipping %s: missing or non-finite values", v)
                continue
            if np.ptp(values) == 0:
                logger.warning("Skipping %s: constant across samples", v)
                continue
            numeric.append(v)
        else:
            labels = environment.categorical(v, sample_ids)
            if len({str(x) for x in labels}) < 2 or any(not str(x).strip() for x in labels):
                logger.warning("Skipping %s: fewer than 2 levels or missing levels", v)
                continue
            categorical.append(v)

    vectors = fit_vectors(
        ordination, environment, numeric,
        n_permutations=n_permutations, seed=seed, strata=strata,
    )
    factors = fit_factors(
        ordination, environment, categorical,
        n_permutations=n_permutations, seed=seed, strata=strata,
    )
    logger.info(
        "envfit: %d vectors, %d factors, %d permutations",
        len(vectors), len(factors), n_permutations,
    )
    return EnvFitResult(
        vectors=vectors, factors=factors, n_permutations=n_permutations, seed=seed
    )


def significant(fits: Sequence, alpha: float = 0.05) -> list:
    """Fits with a p-value at or below ``alpha``."""
    return [f for f in fits if f.p_value is not None and f.p_value <= alpha]


def vector_arrows(fits: Sequence[VectorFit], scale: float = 1.0) -> np.ndarray:
    """Arrow heads for plotting: direction * sqrt(r2) * scale.

    Returns shape (n_fits, n_axes), or (0, 0) when ``fits`` is empty.
    """
    if not fits:
        return np.zeros((0, 0))
    return np.array([f.direction * np.sqrt(f.r2) * scale for f in fits])
