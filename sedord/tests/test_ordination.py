"""Tests for sedord.ordination module."""

import logging

import numpy as np
import pytest
from scipy.spatial.distance import pdist, squareform

from sedord.beta import DissimilarityMatrix, bray_curtis
from sedord.errors import ConvergenceError, InvalidInputError
from sedord.io import AbundanceTable
from sedord.monotone import monotone_disparities
from sedord.ordination import (
    NMDSConfig,
    nmds,
    pcoa,
    procrustes_fit,
    run_nmds,
    shepard_diagram,
    stress_by_dimension,
    stress_rating,
)
from sedord.tests.fixtures import four_sample_dissimilarities, generate_synthetic_community

FAST = NMDSConfig(n_restarts=5, max_iterations=200)


@pytest.fixture(scope="module")
def community_bc():
    table, _ = generate_synthetic_community()
    return bray_curtis(table)


class TestPCoA:
    def test_basic(self, community_bc):
        result = pcoa(community_bc)
        assert result.coordinates.shape == (community_bc.n_samples, 2)
        assert result.explained_variance is not None
        assert len(result.explained_variance) == 2
        assert np.all(result.explained_variance >= 0)
        assert result.method == "PCoA"

    def test_explained_variance_sums_to_one_or_less(self, community_bc):
        result = pcoa(community_bc, n_axes=5)
        assert result.explained_variance.sum() <= 1.0 + 1e-10

    def test_two_identical_samples(self):
        table = AbundanceTable(
            sample_ids=["s1", "s2", "s3"],
            feature_ids=["a", "b"],
            counts=np.array([[10.0, 20.0], [10.0, 20.0], [100.0, 5.0]]),
        )
        result = pcoa(bray_curtis(table))
        np.testing.assert_array_almost_equal(
            result.coordinates[0], result.coordinates[1]
        )


class TestNMDS:
    def test_basic(self, community_bc):
        result = nmds(community_bc, FAST)
        assert result.coordinates.shape == (community_bc.n_samples, 2)
        assert result.stress is not None
        assert 0.0 <= result.stress < 1.0
        assert result.method == "NMDS"
        diag = result.diagnostics
        assert len(diag.restart_stresses) == 5
        assert result.stress == pytest.approx(min(diag.restart_stresses))
        assert diag.stress_rating == stress_rating(result.stress)

    def test_planted_groups_separate(self, community_bc):
        result = nmds(community_bc, FAST)
        d = squareform(pdist(result.coordinates))
        groups = [sid.split("_")[0] for sid in result.sample_ids]
        same = np.array([[a == b for b in groups] for a in groups])
        off_diag = ~np.eye(len(groups), dtype=bool)
        assert d[same & off_diag].mean() < d[~same].mean()

    def test_stress_non_increasing(self, community_bc):
        cfg = NMDSConfig(n_restarts=3, init="random", tolerance=0.0, max_iterations=100)
        result = nmds(community_bc, cfg)
        trace = np.array(result.diagnostics.stress_trace)
        assert len(trace) >= 2
        assert np.all(np.diff(trace) <= 1e-10)

    def test_deterministic_with_seed(self, community_bc):
        a = nmds(community_bc, NMDSConfig(n_restarts=4, random_seed=7))
        b = nmds(community_bc, NMDSConfig(n_restarts=4, random_seed=7))
        np.testing.assert_array_equal(a.coordinates, b.coordinates)
        assert a.stress == b.stress
        assert a.diagnostics.restart_stresses == b.diagnostics.restart_stresses

    def test_parallel_matches_sequential(self, community_bc):
        seq = nmds(community_bc, NMDSConfig(n_restarts=4, n_jobs=1))
        par = nmds(community_bc, NMDSConfig(n_restarts=4, n_jobs=2))
        np.testing.assert_allclose(par.coordinates, seq.coordinates, atol=1e-10)
        assert par.stress == pytest.approx(seq.stress, abs=1e-12)

    def test_more_axes_never_worse(self, community_bc):
        stresses = stress_by_dimension(community_bc, 3, NMDSConfig(n_restarts=10))
        assert sorted(stresses) == [1, 2, 3]
        assert stresses[2] <= stresses[1] + 1e-3
        assert stresses[3] <= stresses[2] + 1e-3

    def test_four_sample_scenario(self):
        dm, ids = four_sample_dissimilarities()
        result = nmds(DissimilarityMatrix.from_array(dm, ids), NMDSConfig(n_restarts=10))
        d = squareform(pdist(result.coordinates))
        a, b, c, e = range(4)
        within = max(d[a, b], d[c, e])
        between = min(d[a, c], d[a, e], d[b, c], d[b, e])
        assert within <= between

    def test_euclidean_configuration_recovered(self):
        rng = np.random.default_rng(1)
        points = rng.normal(size=(10, 2))
        dm = DissimilarityMatrix.from_array(
            squareform(pdist(points)), [f"p{i}" for i in range(10)], metric="euclidean"
        )
        result = nmds(dm, NMDSConfig(n_restarts=3))
        assert result.stress < 0.05
        assert result.diagnostics.stress_rating == "excellent"

    def test_output_centered_on_principal_axes(self, community_bc):
        result = nmds(community_bc, FAST)
        coords = result.coordinates
        np.testing.assert_allclose(coords.mean(axis=0), 0.0, atol=1e-10)
        cov = np.cov(coords.T)
        assert abs(cov[0, 1]) < 1e-8
        assert cov[0, 0] >= cov[1, 1]

    def test_run_nmds_keywords(self, community_bc):
        result = run_nmds(community_bc, n_axes=3, seed=3, max_iterations=50, n_restarts=2)
        assert result.coordinates.shape == (community_bc.n_samples, 3)
        assert result.diagnostics.seed == 3
        assert len(result.diagnostics.restart_stresses) == 2

    def test_secondary_ties(self, community_bc):
        result = nmds(community_bc, NMDSConfig(n_restarts=2, ties="secondary"))
        assert result.stress is not None


class TestNMDSValidation:
    def test_axes_not_below_sample_count(self):
        dm, ids = four_sample_dissimilarities()
        with pytest.raises(InvalidInputError):
            nmds(DissimilarityMatrix.from_array(dm, ids), NMDSConfig(n_axes=4))

    def test_zero_axes(self, community_bc):
        with pytest.raises(InvalidInputError):
            nmds(community_bc, NMDSConfig(n_axes=0))

    @pytest.mark.parametrize(
        "field,value",
        [
            ("max_iterations", 0),
            ("n_restarts", 0),
            ("tolerance", -1.0),
            ("init", "spectral"),
            ("ties", "none"),
            ("random_seed", -5),
            ("n_jobs", 0),
        ],
    )
    def test_bad_config(self, community_bc, field, value):
        with pytest.raises(InvalidInputError):
            nmds(community_bc, NMDSConfig(**{field: value}))

    def test_asymmetric_matrix(self):
        dm = DissimilarityMatrix(
            sample_ids=["a", "b", "c"],
            distance_matrix=np.array([[0.0, 0.1, 0.2], [0.3, 0.0, 0.4], [0.2, 0.4, 0.0]]),
            metric="precomputed",
        )
        with pytest.raises(InvalidInputError):
            nmds(dm)


class TestConvergence:
    def test_best_effort_result_flagged(self, community_bc, caplog):
        cfg = NMDSConfig(n_restarts=2, max_iterations=1, init="random")
        with caplog.at_level(logging.WARNING, logger="sedord.ordination"):
            result = nmds(community_bc, cfg)
        assert result.diagnostics.converged is False
        assert result.stress is not None
        assert "converged" in caplog.text

    def test_strict_raises_with_result(self, community_bc):
        cfg = NMDSConfig(n_restarts=2, max_iterations=1, init="random", strict=True)
        with pytest.raises(ConvergenceError) as excinfo:
            nmds(community_bc, cfg)
        best = excinfo.value.result
        assert best is not None
        assert best.coordinates.shape == (community_bc.n_samples, 2)

    def test_converged_run(self, community_bc):
        cfg = NMDSConfig(n_restarts=5, max_iterations=2000, tolerance=1e-5)
        result = nmds(community_bc, cfg)
        assert result.diagnostics.converged is True


class TestStressRating:
    @pytest.mark.parametrize(
        "stress,label",
        [(0.0, "excellent"), (0.099, "excellent"), (0.1, "acceptable"),
         (0.2, "acceptable"), (0.2001, "unreliable"), (0.5, "unreliable")],
    )
    def test_thresholds(self, stress, label):
        assert stress_rating(stress) == label


class TestShepard:
    def test_shapes_and_fit(self, community_bc):
        result = nmds(community_bc, FAST)
        data = shepard_diagram(community_bc, result)
        m = community_bc.n_samples * (community_bc.n_samples - 1) // 2
        assert data.dissimilarities.shape == (m,)
        assert data.distances.shape == (m,)
        assert data.disparities.shape == (m,)
        ordered = data.disparities[np.lexsort((data.distances, data.dissimilarities))]
        assert np.all(np.diff(ordered) >= -1e-12)
        assert data.nonmetric_r2 == pytest.approx(1.0 - result.stress**2)
        assert 0.0 <= data.linear_r2 <= 1.0

    def test_sample_mismatch(self, community_bc):
        result = nmds(community_bc, FAST)
        result.sample_ids = list(reversed(result.sample_ids))
        with pytest.raises(InvalidInputError):
            shepard_diagram(community_bc, result)


class TestProcrustes:
    def test_rotated_copy(self):
        rng = np.random.default_rng(2)
        a = rng.normal(size=(8, 2))
        theta = 0.7
        rot = np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
        rmse, residuals = procrustes_fit(a, 3.0 * a @ rot + 5.0)
        assert rmse == pytest.approx(0.0, abs=1e-10)
        assert residuals.max() == pytest.approx(0.0, abs=1e-10)

    def test_different_configurations(self):
        rng = np.random.default_rng(4)
        rmse, _ = procrustes_fit(rng.normal(size=(8, 2)), rng.normal(size=(8, 2)))
        assert rmse > 0.01

    @pytest.mark.parametrize(
        "cfg",
        [FAST, NMDSConfig(n_restarts=1, max_iterations=3, init="random")],
    )
    def test_stress_matches_returned_coordinates(self, community_bc, cfg):
        result = nmds(community_bc, cfg)
        d = pdist(result.coordinates)
        disp = monotone_disparities(community_bc.condensed(), d)
        disp *= np.sqrt(len(d)) / np.linalg.norm(disp)
        stress = np.sqrt(((d - disp) ** 2).sum() / (disp**2).sum())
        assert stress == pytest.approx(result.stress, rel=1e-9, abs=1e-12)
