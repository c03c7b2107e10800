"""Data loading and validation for sediment community ordination."""

from __future__ import annotations

import csv
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import numpy as np

from .errors import InvalidInputError


@dataclass
class AbundanceTable:
    """Sample-by-feature count matrix (samples are rows)."""

    sample_ids: list[str]
    feature_ids: list[str]
    counts: np.ndarray  # shape (n_samples, n_features)

    def __post_init__(self) -> None:
        self.counts = np.asarray(self.counts, dtype=np.float64)
        if self.counts.ndim != 2:
            raise InvalidInputError(
                f"Counts must be 2-dimensional, got shape {self.counts.shape}"
            )
        n_samples, n_features = self.counts.shape
        if n_samples != len(self.sample_ids):
            raise InvalidInputError(
                f"Row count {n_samples} != len(sample_ids) {len(self.sample_ids)}"
            )
        if n_features != len(self.feature_ids):
            raise InvalidInputError(
                f"Col count {n_features} != len(feature_ids) {len(self.feature_ids)}"
            )
        if len(set(self.sample_ids)) != len(self.sample_ids):
            raise InvalidInputError("Duplicate sample IDs in abundance table")

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    @property
    def n_features(self) -> int:
        return len(self.feature_ids)

    def relative(self) -> AbundanceTable:
        """Return relative-abundance table (rows sum to 1, empty rows stay 0)."""
        row_sums = self.counts.sum(axis=1, keepdims=True)
        row_sums = np.where(row_sums == 0, 1.0, row_sums)
        return AbundanceTable(
            sample_ids=list(self.sample_ids),
            feature_ids=list(self.feature_ids),
            counts=self.counts / row_sums,
        )

    def empty_samples(self) -> list[str]:
        """IDs of samples whose counts are all zero."""
        totals = self.counts.sum(axis=1)
        return [s for s, t in zip(self.sample_ids, totals) if t == 0]

    def drop_empty_samples(self) -> AbundanceTable:
        """Remove samples with no counts at all."""
        mask = self.counts.sum(axis=1) > 0
        return AbundanceTable(
            sample_ids=[s for s, keep in zip(self.sample_ids, mask) if keep],
            feature_ids=list(self.feature_ids),
            counts=self.counts[mask],
        )

    def drop_empty_features(self) -> AbundanceTable:
        """Remove features never observed in any sample."""
        mask = self.counts.sum(axis=0) > 0
        return AbundanceTable(
            sample_ids=list(self.sample_ids),
            feature_ids=[f for f, keep in zip(self.feature_ids, mask) if keep],
            counts=self.counts[:, mask],
        )

    def filter_prevalence(self, min_prevalence: float = 0.0) -> AbundanceTable:
        """Remove features present in fewer than min_prevalence fraction of samples."""
        prevalence = (self.counts > 0).sum(axis=0) / self.n_samples
        mask = prevalence >= min_prevalence
        return AbundanceTable(
            sample_ids=list(self.sample_ids),
            feature_ids=[f for f, keep in zip(self.feature_ids, mask) if keep],
            counts=self.counts[:, mask],
        )

    def subset_samples(self, sample_ids: Sequence[str]) -> AbundanceTable:
        """Return table with only the specified samples, in the given order."""
        idx_map = {s: i for i, s in enumerate(self.sample_ids)}
        missing = [s for s in sample_ids if s not in idx_map]
        if missing:
            raise InvalidInputError(f"Unknown sample IDs: {missing}")
        indices = [idx_map[s] for s in sample_ids]
        return AbundanceTable(
            sample_ids=list(sample_ids),
            feature_ids=list(self.feature_ids),
            counts=self.counts[indices],
        )


def _parse_float(value: str) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class EnvironmentTable:
    """Auxiliary per-sample variables (chemistry, physical, site factors)."""

    records: dict[str, dict[str, str]] = field(default_factory=dict)
    variables: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.variables:
            seen: dict[str, None] = {}
            for meta in self.records.values():
                for k in meta:
                    seen.setdefault(k, None)
            self.variables = list(seen)

    @property
    def sample_ids(self) -> list[str]:
        return list(self.records.keys())

    def _values(self, name: str, sample_ids: Sequence[str]) -> list[str]:
        if name not in self.variables:
            raise InvalidInputError(f"Unknown environmental variable: {name!r}")
        missing = [s for s in sample_ids if s not in self.records]
        if missing:
            raise InvalidInputError(
                f"Variable {name!r} has no record for samples: {missing}"
            )
        return [self.records[s].get(name, "") for s in sample_ids]

    def is_numeric(self, name: str) -> bool:
        """True if every non-empty value of the variable parses as a float."""
        values = [
            meta.get(name, "").strip() for meta in self.records.values()
        ]
        values = [v for v in values if v]
        return bool(values) and all(_parse_float(v) is not None for v in values)

    def numeric(self, name: str, sample_ids: Sequence[str]) -> np.ndarray:
        """Float values of a variable aligned to ``sample_ids``."""
        out = np.empty(len(sample_ids), dtype=np.float64)
        for i, (sid, raw) in enumerate(zip(sample_ids, self._values(name, sample_ids))):
            value = _parse_float(raw)
            if value is None or not math.isfinite(value):
                raise InvalidInputError(
                    f"Variable {name!r} is not a finite number for sample {sid!r}: {raw!r}"
                )
            out[i] = value
        return out

    def categorical(self, name: str, sample_ids: Sequence[str]) -> np.ndarray:
        """String values of a variable aligned to ``sample_ids``."""
        return np.array(self._values(name, sample_ids), dtype=object)

    def get_groups(self, variable: str) -> dict[str, list[str]]:
        """Group sample IDs by a metadata variable."""
        groups: dict[str, list[str]] = {}
        for sample_id, meta in self.records.items():
            val = meta.get(variable, "")
            groups.setdefault(val, []).append(sample_id)
        return groups

    def subset(self, sample_ids: Sequence[str]) -> EnvironmentTable:
        """Keep only records for ``sample_ids`` (ids without a record are skipped)."""
        return EnvironmentTable(
            records={s: dict(self.records[s]) for s in sample_ids if s in self.records},
            variables=list(self.variables),
        )


def load_abundance_table(
    path: str | Path, samples_as_columns: bool = False
) -> AbundanceTable:
    """Load a tab-separated count table.

    By default the first column holds sample IDs and the remaining columns
    hold per-feature counts. With ``samples_as_columns`` the file is read
    feature-by-sample (first column = feature ID) and transposed.
    """
    path = Path(path)
    with open(path, newline="") as f:
        reader = csv.reader(f, delimiter="\t")
        header = next(reader)
        col_ids = [h.strip() for h in header[1:]]
        row_ids: list[str] = []
        rows: list[list[float]] = []
        for lineno, row in enumerate(reader, start=2):
            if not row or not row[0].strip():
                continue
            if len(row) - 1 != len(col_ids):
                raise InvalidInputError(
                    f"{path}:{lineno}: expected {len(col_ids)} values, got {len(row) - 1}"
                )
            try:
                rows.append([float(x) if x.strip() else 0.0 for x in row[1:]])
            except ValueError as exc:
                raise InvalidInputError(f"{path}:{lineno}: {exc}") from exc
            row_ids.append(row[0].strip())
    counts = np.array(rows, dtype=np.float64).reshape(len(row_ids), len(col_ids))
    if samples_as_columns:
        return AbundanceTable(sample_ids=col_ids, feature_ids=row_ids, counts=counts.T)
    return AbundanceTable(sample_ids=row_ids, feature_ids=col_ids, counts=counts)


def load_environment(path: str | Path, id_column: str = "sample_id") -> EnvironmentTable:
    """Load a tab-separated environment table.

    ``id_column`` names the sample ID column, remaining columns = variables.
    """
    path = Path(path)
    records: dict[str, dict[str, str]] = {}
    with open(path, newline="") as f:
        reader = csv.DictReader(f, delimiter="\t")
        fieldnames = list(reader.fieldnames or [])
        if id_column not in fieldnames:
            raise InvalidInputError(f"{path}: missing ID column {id_column!r}")
        variables = [c for c in fieldnames if c != id_column]
        for row in reader:
            sample_id = (row.get(id_column) or "").strip()
            if not sample_id:
                continue
            records[sample_id] = {k: (row.get(k) or "").strip() for k in variables}
    return EnvironmentTable(records=records, variables=variables)
