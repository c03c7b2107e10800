"""Synthetic data generation for sedord tests."""

from __future__ import annotations

from pathlib import Path

import numpy as np

from sedord.io import AbundanceTable, EnvironmentTable

GROUP_NAMES = ["legacy", "restored", "reference"]


def generate_synthetic_community(
    n_taxa: int = 20,
    n_samples: int = 12,
    n_groups: int = 3,
    seed: int = 42,
) -> tuple[AbundanceTable, EnvironmentTable]:
    """Generate sediment community counts with planted reach structure.

    Samples are split evenly across reaches. The first third of taxa is
    abundant in reach 0, the second third in reach 1, the rest everywhere.
    The environment carries a fine-sediment gradient that tracks the reach,
    an unrelated noise variable, the reach factor and a constant column.
    """
    rng = np.random.default_rng(seed)
    samples_per_group = n_samples // n_groups
    group_names = GROUP_NAMES[:n_groups]

    sample_ids: list[str] = []
    labels: list[int] = []
    for gi, g in enumerate(group_names):
        for rep in range(samples_per_group):
            sample_ids.append(f"{g}_{rep + 1}")
            labels.append(gi)

    taxa_per_class = n_taxa // 3
    counts = np.zeros((len(sample_ids), n_taxa), dtype=np.float64)
    for j in range(n_taxa):
        if j < taxa_per_class:
            target = 0
        elif j < 2 * taxa_per_class:
            target = 1
        else:
            target = -1  # generalist
        for i, gi in enumerate(labels):
            if target == gi:
                counts[i, j] = rng.poisson(500)
            elif target == -1:
                counts[i, j] = rng.poisson(200)
            else:
                counts[i, j] = rng.poisson(10)

    records: dict[str, dict[str, str]] = {}
    for i, (sid, gi) in enumerate(zip(sample_ids, labels)):
        records[sid] = {
            "fine_sediment_pct": f"{10.0 + 25.0 * gi + rng.normal(0, 2):.3f}",
            "noise": f"{rng.normal(0, 1):.6f}",
            "reach": group_names[gi],
            "basin": "Susquehanna",
        }

    table = AbundanceTable(sample_ids=sample_ids, feature_ids=[f"ASV_{j:03d}" for j in range(n_taxa)], counts=counts)
    env = EnvironmentTable(
        records=records,
        variables=["fine_sediment_pct", "noise", "reach", "basin"],
    )
    return table, env


def four_sample_dissimilarities() -> tuple[np.ndarray, list[str]]:
    """Two tight pairs (A,B) and (C,D) far from each other."""
    ids = ["A", "B", "C", "D"]
    d = {
        ("A", "B"): 0.2, ("A", "C"): 0.8, ("A", "D"): 0.9,
        ("B", "C"): 0.7, ("B", "D"): 0.85, ("C", "D"): 0.3,
    }
    dm = np.zeros((4, 4))
    for (a, b), v in d.items():
        i, j = ids.index(a), ids.index(b)
        dm[i, j] = dm[j, i] = v
    return dm, ids


def write_tsv(path: Path, header: list[str], rows: list[list[object]]) -> Path:
    with open(path, "w") as f:
        f.write("\t".join(header) + "\n")
        for row in rows:
            f.write("\t".join(str(x) for x in row) + "\n")
    return path


def write_community_files(tmp_path: Path, seed: int = 42) -> tuple[Path, Path]:
    """Write the synthetic community and environment as TSV files."""
    table, env = generate_synthetic_community(seed=seed)
    abundance = write_tsv(
        tmp_path / "abundance.tsv",
        ["sample_id"] + table.feature_ids,
        [[sid] + [int(x) for x in table.counts[i]] for i, sid in enumerate(table.sample_ids)],
    )
    environment = write_tsv(
        tmp_path / "environment.tsv",
        ["sample_id"] + env.variables,
        [[sid] + [env.records[sid][v] for v in env.variables] for sid in env.sample_ids],
    )
    return abundance, environment
