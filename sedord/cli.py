"""Click CLI for sedord: NMDS ordination of sediment communities."""

from __future__ import annotations

import logging
from functools import wraps
from pathlib import Path

import click

from sedord import __version__

from .errors import SedordError
from .io import load_abundance_table, load_environment

logger = logging.getLogger("sedord")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _reports_errors(func):
    """Turn library errors into a clean CLI failure."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SedordError as exc:
            logger.debug("%s failed", func.__name__, exc_info=True)
            raise click.ClickException(str(exc)) from exc

    return wrapper


def _nmds_options(func):
    options = [
        click.option("--axes", "-k", default=2, show_default=True, help="Number of NMDS axes"),
        click.option("--seed", default=42, show_default=True, help="Random seed"),
        click.option("--maxit", default=300, show_default=True, help="Maximum iterations per restart"),
        click.option("--trymax", default=20, show_default=True, help="Number of restarts"),
        click.option("--tolerance", default=1e-6, show_default=True, type=float, help="Stress improvement tolerance"),
        click.option("--init", type=click.Choice(["classical", "random"]), default="classical", show_default=True, help="Starting configuration"),
        click.option("--ties", type=click.Choice(["primary", "secondary"]), default="primary", show_default=True, help="Tie handling in monotone regression"),
        click.option("--jobs", "-j", default=1, show_default=True, help="Parallel restarts (joblib n_jobs)"),
        click.option("--strict", is_flag=True, help="Fail if no restart converges"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _config(axes, seed, maxit, trymax, tolerance, init, ties, jobs, strict):
    from .ordination import NMDSConfig

    return NMDSConfig(
        n_axes=axes,
        max_iterations=maxit,
        n_restarts=trymax,
        tolerance=tolerance,
        random_seed=seed,
        init=init,
        ties=ties,
        n_jobs=jobs,
        strict=strict,
    )


def _abundance_options(func):
    func = click.option("--samples-as-columns", is_flag=True, help="Table is feature-by-sample")(func)
    func = click.option("--abundance", "-a", required=True, type=click.Path(exists=True), help="Abundance table TSV")(func)
    return func


MEASURE_CHOICE = click.Choice(["bray_curtis", "jaccard", "euclidean"])


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """sedord: NMDS ordination and environmental fitting."""
    _setup_logging(verbose)


@main.command()
@_abundance_options
@click.option("--measure", type=MEASURE_CHOICE, default="bray_curtis", show_default=True, help="Dissimilarity measure")
@click.option("--output", "-o", default="results", help="Output directory")
@_reports_errors
def distance(abundance: str, samples_as_columns: bool, measure: str, output: str) -> None:
    """Compute a sample dissimilarity matrix."""
    from .beta import compute_dissimilarity
    from .report import write_distance_matrix

    table = load_abundance_table(abundance, samples_as_columns=samples_as_columns)
    out = Path(output)
    out.mkdir(parents=True, exist_ok=True)
    dm = compute_dissimilarity(table, measure)
    write_distance_matrix(dm, out / f"dissimilarity_{measure}.csv")
    click.echo(f"Dissimilarities written to {out}/")


@main.command()
@_abundance_options
@click.option("--measure", type=MEASURE_CHOICE, default="bray_curtis", show_default=True, help="Dissimilarity measure")
@_nmds_options
@click.option("--output", "-o", default="results", help="Output directory")
@_reports_errors
def nmds(abundance: str, samples_as_columns: bool, measure: str, output: str, **nmds_opts) -> None:
    """Run NMDS and write coordinates plus a stress summary."""
    from .beta import compute_dissimilarity
    from .ordination import nmds as run_nmds
    from .report import write_ordination, write_stress_summary

    table = load_abundance_table(abundance, samples_as_columns=samples_as_columns)
    out = Path(output)
    out.mkdir(parents=True, exist_ok=True)

    result = run_nmds(compute_dissimilarity(table, measure), _config(**nmds_opts))
    write_ordination(result, out / "nmds_coordinates.csv")
    write_stress_summary(result, out / "nmds_summary.txt")
    click.echo(f"Stress {result.stress:.4f} ({result.diagnostics.stress_rating})")
    click.echo(f"NMDS results written to {out}/")


@main.command()
@_abundance_options
@click.option("--environment", "-e", required=True, type=click.Path(exists=True), help="Environment table TSV")
@click.option("--id-column", default="sample_id", show_default=True, help="Sample ID column in the environment table")
@click.option("--measure", type=MEASURE_CHOICE, default="bray_curtis", show_default=True, help="Dissimilarity measure")
@click.option("--permutations", "-p", default=999, show_default=True, help="Number of permutations")
@click.option("--strata", default=None, help="Environment variable to restrict permutations within (not itself fitted)")
@_nmds_options
@click.option("--output", "-o", default="results", help="Output directory")
@_reports_errors
def envfit(
    abundance: str,
    samples_as_columns: bool,
    environment: str,
    id_column: str,
    measure: str,
    permutations: int,
    strata: str | None,
    output: str,
    **nmds_opts,
) -> None:
    """Fit environmental variables onto an NMDS ordination."""
    from .beta import compute_dissimilarity
    from .envfit import envfit as run_envfit
    from .envfit import significant
    from .ordination import nmds as run_nmds
    from .report import write_factors, write_vectors

    table = load_abundance_table(abundance, samples_as_columns=samples_as_columns)
    env = load_environment(environment, id_column=id_column)
    out = Path(output)
    out.mkdir(parents=True, exist_ok=True)

    cfg = _config(**nmds_opts)
    result = run_nmds(compute_dissimilarity(table, measure), cfg)
    strata_labels = (
        list(env.categorical(strata, result.sample_ids)) if strata else None
    )
    fits = run_envfit(
        result, env, n_permutations=permutations, seed=cfg.random_seed,
        strata=strata_labels, exclude=[strata] if strata else (),
    )
    write_vectors(fits.vectors, out / "envfit_vectors.csv")
    write_factors(fits.factors, out / "envfit_factors.csv")

    n_sig = len(significant(fits.vectors)) + len(significant(fits.factors))
    click.echo(f"Found {n_sig} significant variables (p <= 0.05)")
    click.echo(f"envfit results written to {out}/")


@main.command()
@_abundance_options
@click.option("--measure", type=MEASURE_CHOICE, default="bray_curtis", show_default=True, help="Dissimilarity measure")
@click.option("--max-axes", default=4, show_default=True, help="Largest dimension to try")
@_nmds_options
@_reports_errors
def dimcheck(abundance: str, samples_as_columns: bool, measure: str, max_axes: int, **nmds_opts) -> None:
    """Report the best NMDS stress for each number of axes."""
    from .beta import compute_dissimilarity
    from .ordination import stress_by_dimension, stress_rating

    table = load_abundance_table(abundance, samples_as_columns=samples_as_columns)
    stresses = stress_by_dimension(
        compute_dissimilarity(table, measure), max_axes, _config(**nmds_opts)
    )
    for k, s in stresses.items():
        click.echo(f"k={k}\tstress={s:.4f}\t{stress_rating(s)}")


@main.command()
@_abundance_options
@click.option("--environment", "-e", default=None, type=click.Path(exists=True), help="Environment table TSV (optional)")
@click.option("--id-column", default="sample_id", show_default=True, help="Sample ID column in the environment table")
@click.option("--measure", type=MEASURE_CHOICE, default="bray_curtis", show_default=True, help="Dissimilarity measure")
@click.option("--permutations", "-p", default=999, show_default=True, help="Number of permutations")
@click.option("--no-transform", is_flag=True, help="Skip the automatic sqrt/Wisconsin transformation")
@click.option("--keep-empty", is_flag=True, help="Fail on empty samples instead of dropping them")
@click.option("--max-axes", default=0, show_default=True, help="Also tabulate stress for k=1..N")
@_nmds_options
@click.option("--output", "-o", default="results", help="Output directory")
@_reports_errors
def report(
    abundance: str,
    samples_as_columns: bool,
    environment: str | None,
    id_column: str,
    measure: str,
    permutations: int,
    no_transform: bool,
    keep_empty: bool,
    max_axes: int,
    output: str,
    **nmds_opts,
) -> None:
    """Run the full ordination pipeline and write all outputs."""
    from .report import generate_report

    table = load_abundance_table(abundance, samples_as_columns=samples_as_columns)
    env = load_environment(environment, id_column=id_column) if environment else None

    result = generate_report(
        table,
        env,
        output,
        measure=measure,
        config=_config(**nmds_opts),
        n_permutations=permutations,
        transform=not no_transform,
        drop_empty=not keep_empty,
        max_axes=max_axes,
    )
    click.echo(f"Stress {result.stress:.4f} ({result.diagnostics.stress_rating})")
    click.echo(f"Full report written to {output}/")
