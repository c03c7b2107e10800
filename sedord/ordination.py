"""Ordination methods (PCoA, NMDS) for sediment community data."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

import numpy as np
from joblib import Parallel, delayed
from scipy import stats as sp_stats
from scipy.linalg import orthogonal_procrustes
from scipy.spatial.distance import pdist, squareform

from .beta import DissimilarityMatrix
from .errors import ConvergenceError, InvalidInputError
from .monotone import TIES, monotone_disparities

logger = logging.getLogger(__name__)

INITS = ("classical", "random")

STRESS_EXCELLENT = 0.1
STRESS_ACCEPTABLE = 0.2

# Stress this small is a perfect fit; iterating further only chases rounding
MIN_STRESS = 1e-12

# A restart "repeats" the best solution when Procrustes fit is this close
REPEAT_RMSE = 0.01
REPEAT_MAX_RESIDUAL = 0.005


@dataclass
class NMDSConfig:
    """Configuration for NMDS.

    Attributes:
        n_axes: Embedding dimension k.
        max_iterations: Iteration cap per restart (maxit).
        n_restarts: Number of starting configurations (trymax).
        tolerance: Minimum stress improvement to keep iterating.
        random_seed: Seed for all starting configurations.
        init: "classical" starts restart 0 from PCoA, the rest at random;
            "random" starts every restart at random.
        ties: Tie handling for monotone regression ("primary"/"secondary").
        n_jobs: Restarts run through joblib when != 1.
        strict: Raise ConvergenceError instead of warning when no restart
            converges.
    """

    n_axes: int = 2
    max_iterations: int = 300
    n_restarts: int = 20
    tolerance: float = 1e-6
    random_seed: int = 42
    init: str = "classical"
    ties: str = "primary"
    n_jobs: int = 1
    strict: bool = False


@dataclass
class NMDSDiagnostics:
    """Per-run NMDS diagnostics.

    Attributes:
        stress_trace: Stress at each iteration of the best restart.
        restart_stresses: Final stress of every restart.
        restart_converged: Whether each restart stopped before the cap.
        best_restart: Index of the lowest-stress restart.
        converged: True if at least one restart converged.
        n_iterations: Iterations used by the best restart.
        n_best_repeats: Other restarts that reproduced the best solution.
        seed: Random seed used.
        stress_rating: Advisory label from ``stress_rating``.
    """

    stress_trace: list[float] = field(default_factory=list)
    restart_stresses: list[float] = field(default_factory=list)
    restart_converged: list[bool] = field(default_factory=list)
    best_restart: int = 0
    converged: bool = False
    n_iterations: int = 0
    n_best_repeats: int = 0
    seed: int = 42
    stress_rating: str = ""


@dataclass
class OrdinationResult:
    """Ordination coordinates and diagnostics."""

    sample_ids: list[str]
    coordinates: np.ndarray  # shape (n_samples, n_axes)
    explained_variance: np.ndarray | None  # per axis (PCoA only)
    stress: float | None  # NMDS only
    method: str
    diagnostics: NMDSDiagnostics | None = None  # NMDS only

    @property
    def n_axes(self) -> int:
        return self.coordinates.shape[1]


@dataclass
class ShepardData:
    """Shepard diagram: embedding distances against input dissimilarities."""

    dissimilarities: np.ndarray
    distances: np.ndarray
    disparities: np.ndarray
    nonmetric_r2: float
    linear_r2: float


def stress_rating(stress: float) -> str:
    """Advisory fit label: excellent (< 0.1), acceptable (<= 0.2), unreliable."""
    if stress < STRESS_EXCELLENT:
        return "excellent"
    if stress <= STRESS_ACCEPTABLE:
        return "acceptable"
    return "unreliable"


def pcoa(dissimilarity: DissimilarityMatrix, n_axes: int = 2) -> OrdinationResult:
    """Principal Coordinates Analysis via classical MDS.

    Double-centers the squared distance matrix, eigendecomposes,
    and returns top-k axes with explained variance.
    """
    dissimilarity.validate()
    if n_axes < 1:
        raise InvalidInputError(f"n_axes must be >= 1, got {n_axes}")
    dm = np.asarray(dissimilarity.distance_matrix, dtype=np.float64)
    n = dm.shape[0]

    d2 = dm**2
    row_mean = d2.mean(axis=1, keepdims=True)
    col_mean = d2.mean(axis=0, keepdims=True)
    B = -0.5 * (d2 - row_mean - col_mean + d2.mean())

    eigenvalues, eigenvectors = np.linalg.eigh(B)
    idx = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[idx]
    eigenvectors = eigenvectors[:, idx]

    # Negative eigenvalues (non-Euclidean input) contribute no coordinates
    n_axes = min(n_axes, max(n - 1, 1))
    pos = eigenvalues[:n_axes].clip(min=0)
    coords = eigenvectors[:, :n_axes] * np.sqrt(pos)[np.newaxis, :]

    total_pos = eigenvalues[eigenvalues > 0].sum()
    if total_pos > 0:
        explained = pos / total_pos
    else:
        explained = np.zeros(n_axes)

    return OrdinationResult(
        sample_ids=list(dissimilarity.sample_ids),
        coordinates=coords,
        explained_variance=explained,
        stress=None,
        method="PCoA",
    )


def procrustes_fit(
    reference: np.ndarray, other: np.ndarray, scale: bool = True
) -> tuple[float, np.ndarray]:
    """Rotate (and scale) ``other`` onto ``reference``.

    Returns the root-mean-square point error and per-point residuals.
    """
    a = reference - reference.mean(axis=0)
    b = other - other.mean(axis=0)
    rotation, sv_sum = orthogonal_procrustes(b, a)
    ss_b = float((b**2).sum())
    s = sv_sum / ss_b if scale and ss_b > 0 else 1.0
    fitted = s * (b @ rotation)
    residuals = np.sqrt(((a - fitted) ** 2).sum(axis=1))
    rmse = float(np.sqrt((residuals**2).sum() / len(a)))
    return rmse, residuals


@dataclass
class _RestartResult:
    coordinates: np.ndarray
    stress: float
    trace: list[float]
    converged: bool


def _check_config(cfg: NMDSConfig, n: int) -> None:
    if cfg.n_axes < 1:
        raise InvalidInputError(f"n_axes must be >= 1, got {cfg.n_axes}")
    if cfg.n_axes >= n:
        raise InvalidInputError(
            f"n_axes ({cfg.n_axes}) must be smaller than the number of samples ({n})"
        )
    if cfg.max_iterations < 1:
        raise InvalidInputError(f"max_iterations must be >= 1, got {cfg.max_iterations}")
    if cfg.n_restarts < 1:
        raise InvalidInputError(f"n_restarts must be >= 1, got {cfg.n_restarts}")
    if cfg.tolerance < 0:
        raise InvalidInputError(f"tolerance must be >= 0, got {cfg.tolerance}")
    if cfg.random_seed < 0:
        raise InvalidInputError(f"random_seed must be >= 0, got {cfg.random_seed}")
    if cfg.init not in INITS:
        raise InvalidInputError(f"init must be one of {INITS}, got {cfg.init!r}")
    if cfg.ties not in TIES:
        raise InvalidInputError(f"ties must be one of {TIES}, got {cfg.ties!r}")
    if cfg.n_jobs == 0:
        raise InvalidInputError("n_jobs must be a positive count or negative (joblib style), got 0")


def _initial_configuration(
    dissimilarity: DissimilarityMatrix,
    n_axes: int,
    restart: int,
    init: str,
    rng: np.random.Generator,
) -> np.ndarray:
    n = dissimilarity.n_samples
    if init == "classical" and restart == 0:
        coords = pcoa(dissimilarity, n_axes=n_axes).coordinates
        # Axes without a positive eigenvalue start flat; jitter lets them move
        spread = float(np.abs(coords).max()) or 1.0
        return coords + 1e-3 * spread * rng.uniform(-1.0, 1.0, size=coords.shape)
    return rng.uniform(-1.0, 1.0, size=(n, n_axes))


def _guttman_transform(
    coords: np.ndarray, distances: np.ndarray, disparities: np.ndarray
) -> np.ndarray:
    """One SMACOF majorization step with unit weights."""
    n = coords.shape[0]
    ratio = np.zeros_like(distances)
    nz = distances > 0
    ratio[nz] = disparities[nz] / distances[nz]
    B = -squareform(ratio)
    B[np.diag_indices(n)] = -B.sum(axis=1)
    return B @ coords / n


def _smacof(
    delta: np.ndarray,
    coords: np.ndarray,
    max_iterations: int,
    tolerance: float,
    ties: str,
) -> tuple[np.ndarray, list[float], bool]:
    """Alternate monotone regression and Guttman updates from ``coords``.

    Disparities are rescaled to a fixed sum of squares n(n-1)/2, which
    makes stress non-increasing from one iteration to the next.
    """
    n = coords.shape[0]
    target = n * (n - 1) / 2.0
    trace: list[float] = []
    converged = False
    prev = np.inf
    for it in range(max_iterations):
        dist = pdist(coords)
        disp = monotone_disparities(delta, dist, ties=ties)
        norm = np.sqrt((disp**2).sum())
        if norm > 0:
            disp *= np.sqrt(target) / norm
        stress = float(np.sqrt(((dist - disp) ** 2).sum() / target))
        trace.append(stress)
        if stress < MIN_STRESS or prev - stress < tolerance:
            converged = True
            break
        # Returned coordinates must be the ones the last stress was measured on
        if it == max_iterations - 1:
            break
        prev = stress
        coords = _guttman_transform(coords, dist, disp)
    return coords, trace, converged


def _run_restart(
    dissimilarity: DissimilarityMatrix,
    delta: np.ndarray,
    cfg: NMDSConfig,
    restart: int,
    seed_seq: np.random.SeedSequence,
) -> _RestartResult:
    rng = np.random.default_rng(seed_seq)
    start = _initial_configuration(dissimilarity, cfg.n_axes, restart, cfg.init, rng)
    coords, trace, converged = _smacof(
        delta, start, cfg.max_iterations, cfg.tolerance, cfg.ties
    )
    logger.debug(
        "Restart %d/%d: stress=%.5f, %d iterations, converged=%s",
        restart + 1, cfg.n_restarts, trace[-1], len(trace), converged,
    )
    return _RestartResult(
        coordinates=coords, stress=trace[-1], trace=trace, converged=converged
    )


def _principal_axes(coords: np.ndarray) -> np.ndarray:
    """Center and rotate to principal axes; largest loading of each axis positive."""
    centered = coords - coords.mean(axis=0)
    _, _, vt = np.linalg.svd(centered, full_matrices=False)
    rotated = centered @ vt.T
    idx = np.argmax(np.abs(rotated), axis=0)
    signs = np.sign(rotated[idx, np.arange(rotated.shape[1])])
    signs[signs == 0] = 1.0
    return rotated * signs


def nmds(
    dissimilarity: DissimilarityMatrix, config: NMDSConfig | None = None
) -> OrdinationResult:
    """Non-metric Multidimensional Scaling with multiple restarts.

    Each restart alternates isotonic regression of embedding distances on
    the dissimilarity order with SMACOF majorization. The lowest-stress
    restart is kept, centered and rotated to principal axes.
    """
    cfg = config or NMDSConfig()
    dissimilarity.validate()
    n = dissimilarity.n_samples
    _check_config(cfg, n)

    delta = dissimilarity.condensed()
    seeds = np.random.SeedSequence(cfg.random_seed).spawn(cfg.n_restarts)

    logger.info(
        "NMDS: %d samples, k=%d, %d restarts, maxit=%d (seed=%d)",
        n, cfg.n_axes, cfg.n_restarts, cfg.max_iterations, cfg.random_seed,
    )
    if cfg.n_jobs == 1:
        runs = [
            _run_restart(dissimilarity, delta, cfg, r, seeds[r])
            for r in range(cfg.n_restarts)
        ]
    else:
        runs = Parallel(n_jobs=cfg.n_jobs)(
            delayed(_run_restart)(dissimilarity, delta, cfg, r, seeds[r])
            for r in range(cfg.n_restarts)
        )

    restart_stresses = [run.stress for run in runs]
    best = int(np.argmin(restart_stresses))
    best_run = runs[best]

    n_repeats = 0
    for r, run in enumerate(runs):
        if r == best:
            continue
        rmse, residuals = procrustes_fit(best_run.coordinates, run.coordinates)
        if rmse < REPEAT_RMSE and residuals.max() < REPEAT_MAX_RESIDUAL:
            n_repeats += 1

    rating = stress_rating(best_run.stress)
    diagnostics = NMDSDiagnostics(
        stress_trace=list(best_run.trace),
        restart_stresses=restart_stresses,
        restart_converged=[run.converged for run in runs],
        best_restart=best,
        converged=any(run.converged for run in runs),
        n_iterations=len(best_run.trace),
        n_best_repeats=n_repeats,
        seed=cfg.random_seed,
        stress_rating=rating,
    )
    result = OrdinationResult(
        sample_ids=list(dissimilarity.sample_ids),
        coordinates=_principal_axes(best_run.coordinates),
        explained_variance=None,
        stress=best_run.stress,
        method="NMDS",
        diagnostics=diagnostics,
    )

    logger.info(
        "NMDS best stress %.4f (%s) from restart %d; repeated %d time(s)",
        best_run.stress, rating, best + 1, n_repeats,
    )
    if rating == "unreliable":
        logger.warning("NMDS stress %.4f > %.1f: ordination is unreliable", best_run.stress, STRESS_ACCEPTABLE)
    if not diagnostics.converged:
        msg = (
            f"No NMDS restart converged within {cfg.max_iterations} iterations "
            f"(best stress {best_run.stress:.4f})"
        )
        if cfg.strict:
            raise ConvergenceError(msg, result=result)
        logger.warning("%s; returning best-effort solution", msg)
    return result


def run_nmds(
    dissimilarity: DissimilarityMatrix,
    n_axes: int = 2,
    seed: int = 42,
    max_iterations: int = 300,
    n_restarts: int = 20,
    tolerance: float = 1e-6,
    **options,
) -> OrdinationResult:
    """Keyword form of :func:`nmds`.

    Extra ``options`` (init, ties, n_jobs, strict) are passed to NMDSConfig.
    The embedding is ``result.coordinates`` and the fit ``result.stress``.
    """
    config = NMDSConfig(
        n_axes=n_axes,
        max_iterations=max_iterations,
        n_restarts=n_restarts,
        tolerance=tolerance,
        random_seed=seed,
        **options,
    )
    return nmds(dissimilarity, config)


def shepard_diagram(
    dissimilarity: DissimilarityMatrix,
    result: OrdinationResult,
    ties: str = "primary",
) -> ShepardData:
    """Distances, dissimilarities and monotone fit for a Shepard plot."""
    if list(result.sample_ids) != list(dissimilarity.sample_ids):
        raise InvalidInputError("Ordination and dissimilarity sample IDs differ")
    delta = dissimilarity.condensed()
    dist = pdist(result.coordinates)
    disp = monotone_disparities(delta, dist, ties=ties)

    if result.stress is not None:
        stress = result.stress
    else:
        ss = float((disp**2).sum())
        stress = float(np.sqrt(((dist - disp) ** 2).sum() / ss)) if ss > 0 else 0.0

    if len(dist) > 1 and np.std(dist) > 0 and np.std(delta) > 0:
        linear_r2 = float(sp_stats.pearsonr(delta, dist)[0] ** 2)
    else:
        linear_r2 = 0.0

    return ShepardData(
        dissimilarities=delta,
        distances=dist,
        disparities=disp,
        nonmetric_r2=1.0 - stress**2,
        linear_r2=linear_r2,
    )


def stress_by_dimension(
    dissimilarity: DissimilarityMatrix,
    max_axes: int = 4,
    config: NMDSConfig | None = None,
) -> dict[int, float]:
    """Best NMDS stress for k = 1..max_axes (capped at n_samples - 1)."""
    cfg = config or NMDSConfig()
    upper = min(max_axes, dissimilarity.n_samples - 1)
    if upper < 1:
        raise InvalidInputError(
            f"Need at least 2 samples and max_axes >= 1 (got {dissimilarity.n_samples}, {max_axes})"
        )
    out: dict[int, float] = {}
    for k in range(1, upper + 1):
        res = nmds(dissimilarity, replace(cfg, n_axes=k, strict=False))
        out[k] = float(res.stress)
        logger.info("k=%d: stress %.4f", k, out[k])
    return out
