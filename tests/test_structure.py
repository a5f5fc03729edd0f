import os

import numpy as np
import pandas as pd
import pytest

from cropqtl.genotype import GenotypeSet
from cropqtl.structure import (ClusterResult, find_clusters, genetic_distance, kmeans_bic, pcoa, plot_structure,
                               save_structure)


@pytest.fixture
def trio():
    dosage = pd.DataFrame({
        "a": [0, 2, 1],
        "b": [0, 2, np.nan],
        "c": [2, 2, 0],
    }, index=["x", "y", "z"])
    snps = pd.DataFrame({"chr": "1", "ps": [1, 2, 3], "allele": "A"}, index=["a", "b", "c"])
    return GenotypeSet(dosage, snps)


def test_ibs_distance_values(trio):
    D = genetic_distance(trio)
    assert list(D.index) == ["x", "y", "z"]
    np.testing.assert_allclose(D.values, D.values.T)
    assert (np.diag(D.values) == 0).all()
    # x/y differ completely at a and b and agree at c
    assert D.loc["x", "y"] == pytest.approx(2 / 3)
    # z is untyped at b, so only a and c count
    assert D.loc["x", "z"] == pytest.approx((0.5 + 1.0) / 2)
    assert D.loc["y", "z"] == pytest.approx((0.5 + 1.0) / 2)


def test_euclidean_distance(trio):
    D = genetic_distance(trio, metric="euclidean")
    assert D.loc["x", "y"] == pytest.approx(np.sqrt(8.0))
    with pytest.raises(ValueError, match="Unknown distance metric"):
        genetic_distance(trio, metric="nei")


def test_pcoa_recovers_distances():
    points = np.array([[0.0, 0.0], [3.0, 0.0], [0.0, 4.0], [3.0, 4.0]])
    diff = points[:, None, :] - points[None, :, :]
    D = pd.DataFrame(np.sqrt((diff ** 2).sum(axis=2)), index=list("pqrs"), columns=list("pqrs"))
    coords, axes = pcoa(D)
    assert list(coords.columns) == ["PCo1", "PCo2"]
    assert list(coords.index) == list("pqrs")
    rebuilt = np.sqrt(((coords.values[:, None, :] - coords.values[None, :, :]) ** 2).sum(axis=2))
    np.testing.assert_allclose(rebuilt, D.values, atol=1e-8)
    assert axes["explained"].sum() == pytest.approx(100.0)
    assert axes["eigenvalue"].is_monotonic_decreasing


def test_pcoa_rejects_undefined_distances():
    D = pd.DataFrame([[0.0, np.nan], [np.nan, 0.0]])
    with pytest.raises(ValueError, match="undefined"):
        pcoa(D)


def test_pcoa_separates_populations(panel):
    genotype, _, pop = panel
    coords, axes = pcoa(genetic_distance(genotype), n_axes=5)
    assert coords.shape == (200, 5)
    first = coords["PCo1"]
    assert abs(first[pop == 1].mean() - first[pop == 2].mean()) > 3 * first.std() / 2
    assert axes["explained"].iloc[0] > axes["explained"].iloc[1]


def test_find_clusters_bic(panel):
    genotype, _, pop = panel
    clusters = find_clusters(genotype, max_k=4, seed=0)
    assert isinstance(clusters, ClusterResult)
    assert clusters.bic.index.tolist() == [1, 2, 3, 4]
    assert clusters.bic.index.name == "k"
    assert clusters.k == int(clusters.bic.idxmin())
    assert clusters.bic[2] < clusters.bic[1]
    assert clusters.labels.min() == 1


def test_find_clusters_fixed_k_matches_populations(panel):
    genotype, _, pop = panel
    clusters = find_clusters(genotype, max_k=3, seed=0, n_clusters=2)
    assert clusters.k == 2
    table = pd.crosstab(clusters.labels, pop)
    # every cluster is one population, up to relabelling
    assert (table.max(axis=1) == table.sum(axis=1)).all()
    with pytest.raises(ValueError, match="n_clusters"):
        find_clusters(genotype, n_clusters=0)


def test_kmeans_bic_penalises_k():
    features = np.random.default_rng(1).normal(size=(50, 2))
    _, bic1 = kmeans_bic(features, 1, seed=0)
    labels, bic50 = kmeans_bic(features, 50, seed=0)
    assert len(set(labels)) == 50
    assert np.isfinite(bic1) and np.isfinite(bic50)


def test_structure_outputs(panel, tmp_path):
    genotype = panel[0]
    distance = genetic_distance(genotype)
    coords, axes = pcoa(distance, n_axes=3)
    clusters = find_clusters(genotype, max_k=3, seed=0)
    files = save_structure(str(tmp_path), "panel", distance, coords, axes, clusters)
    assert set(files) == {"distance", "pcoa", "eigen", "clusters", "bic"}
    assert all(os.path.isfile(p) for p in files.values())
    saved = pd.read_csv(files["clusters"], sep="\t", index_col=0)
    assert saved["cluster"].tolist() == clusters.labels.tolist()

    assert os.path.isfile(plot_structure(coords, axes, clusters, str(tmp_path / "panel.structure.png")))
    assert os.path.isfile(plot_structure(coords, axes, None, str(tmp_path / "panel.pcoa.png")))
