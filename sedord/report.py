"""Ordination report: writes distances, NMDS coordinates and fitted variables."""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from . import beta as beta_mod
from . import envfit as envfit_mod
from . import ordination as ord_mod
from .errors import DegenerateInputError, InvalidInputError
from .io import AbundanceTable, EnvironmentTable
from .transform import autotransform

logger = logging.getLogger(__name__)


def write_distance_matrix(result: beta_mod.DissimilarityMatrix, path: Path) -> None:
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow([""] + result.sample_ids)
        for i, sid in enumerate(result.sample_ids):
            w.writerow([sid] + [f"{result.distance_matrix[i, j]:.6f}" for j in range(len(result.sample_ids))])


def write_ordination(result: ord_mod.OrdinationResult, path: Path) -> None:
    prefix = "NMDS" if result.method == "NMDS" else "Axis"
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        n_axes = result.coordinates.shape[1]
        w.writerow(["sample_id"] + [f"{prefix}{k+1}" for k in range(n_axes)])
        for i, sid in enumerate(result.sample_ids):
            w.writerow([sid] + [f"{result.coordinates[i, k]:.6f}" for k in range(n_axes)])


def write_stress_summary(result: ord_mod.OrdinationResult, path: Path) -> None:
    diag = result.diagnostics
    with open(path, "w") as f:
        f.write(f"Method: {result.method}\n")
        f.write(f"Axes: {result.n_axes}\n")
        if result.stress is not None:
            f.write(f"Stress: {result.stress:.4f}\n")
        if diag is not None:
            f.write(f"Rating: {diag.stress_rating}\n")
            f.write(f"Converged: {diag.converged}\n")
            f.write(f"Best restart: {diag.best_restart + 1} of {len(diag.restart_stresses)}\n")
            f.write(f"Iterations: {diag.n_iterations}\n")
            f.write(f"Best solution repeated: {diag.n_best_repeats}\n")
            f.write(f"Seed: {diag.seed}\n")


def _fmt_p(p: float | None) -> str:
    return "" if p is None else f"{p:.4f}"


def write_vectors(fits: list[envfit_mod.VectorFit], path: Path) -> None:
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        n_axes = len(fits[0].direction) if fits else 0
        w.writerow(["variable"] + [f"NMDS{k+1}" for k in range(n_axes)] + ["r2", "p_value", "q_value"])
        for fit in fits:
            w.writerow(
                [fit.name]
                + [f"{x:.6f}" for x in fit.direction]
                + [f"{fit.r2:.4f}", _fmt_p(fit.p_value), _fmt_p(fit.q_value)]
            )


def write_factors(fits: list[envfit_mod.FactorFit], path: Path) -> None:
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        n_axes = fits[0].centroids.shape[1] if fits else 0
        w.writerow(["variable", "level"] + [f"NMDS{k+1}" for k in range(n_axes)] + ["r2", "p_value", "q_value"])
        for fit in fits:
            for level, centroid in zip(fit.levels, fit.centroids):
                w.writerow(
                    [fit.name, level]
                    + [f"{x:.6f}" for x in centroid]
                    + [f"{fit.r2:.4f}", _fmt_p(fit.p_value), _fmt_p(fit.q_value)]
                )


def write_shepard(data: ord_mod.ShepardData, path: Path) -> None:
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["dissimilarity", "distance", "disparity"])
        for row in zip(data.dissimilarities, data.distances, data.disparities):
            w.writerow([f"{x:.6f}" for x in row])


def write_stress_by_dimension(stresses: dict[int, float], path: Path) -> None:
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["n_axes", "stress", "rating"])
        for k, s in sorted(stresses.items()):
            w.writerow([k, f"{s:.4f}", ord_mod.stress_rating(s)])


def generate_report(
    table: AbundanceTable,
    environment: EnvironmentTable | None,
    output_dir: str | Path,
    measure: str = "bray_curtis",
    config: ord_mod.NMDSConfig | None = None,
    n_permutations: int = 999,
    transform: bool = True,
    drop_empty: bool = True,
    max_axes: int = 0,
) -> ord_mod.OrdinationResult:
    """Run the ordination pipeline and write results to ``output_dir``.

    Empty samples are dropped (``drop_empty``) or rejected. Environmental
    variables are fitted only for samples present in both tables.
    ``max_axes > 0`` adds a stress-by-dimension table.
    """
    cfg = config or ord_mod.NMDSConfig()
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    empty = table.empty_samples()
    if empty:
        if not drop_empty:
            raise DegenerateInputError(f"All-zero samples: {empty}", sample_ids=empty)
        logger.warning("Dropping %d empty sample(s): %s", len(empty), ", ".join(empty))
        table = table.drop_empty_samples()
    table = table.drop_empty_features()

    if transform:
        table, steps = autotransform(table)
        logger.info("Transformations: %s", ", ".join(steps) or "none")

    dissimilarity = beta_mod.compute_dissimilarity(table, measure)
    write_distance_matrix(dissimilarity, out / f"dissimilarity_{measure}.csv")

    result = ord_mod.nmds(dissimilarity, cfg)
    write_ordination(result, out / "nmds_coordinates.csv")
    write_stress_summary(result, out / "nmds_summary.txt")
    write_shepard(
        ord_mod.shepard_diagram(dissimilarity, result, ties=cfg.ties),
        out / "shepard.csv",
    )

    if max_axes > 0:
        stresses = ord_mod.stress_by_dimension(dissimilarity, max_axes, cfg)
        write_stress_by_dimension(stresses, out / "stress_by_dimension.csv")

    if environment is not None:
        shared = [s for s in result.sample_ids if s in environment.records]
        if len(shared) < len(result.sample_ids):
            missing = sorted(set(result.sample_ids) - set(shared))
            logger.warning("No environmental record for samples: %s", ", ".join(missing))
        if len(shared) <= cfg.n_axes:
            raise InvalidInputError(
                f"Only {len(shared)} samples have environmental data; cannot fit variables"
            )
        idx = [result.sample_ids.index(s) for s in shared]
        fitted_on = ord_mod.OrdinationResult(
            sample_ids=shared,
            coordinates=result.coordinates[idx],
            explained_variance=None,
            stress=result.stress,
            method=result.method,
            diagnostics=result.diagnostics,
        )
        fits = envfit_mod.envfit(
            fitted_on, environment.subset(shared),
            n_permutations=n_permutations, seed=cfg.random_seed,
        )
        write_vectors(fits.vectors, out / "envfit_vectors.csv")
        write_factors(fits.factors, out / "envfit_factors.csv")
        for fit in envfit_mod.significant(fits.vectors):
            logger.info("Significant vector %s: r2=%.3f p=%.4f", fit.name, fit.r2, fit.p_value)

    logger.info("Report written to %s", out)
    return result
