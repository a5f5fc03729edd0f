import json
import os

import numpy as np
import pandas as pd
import pytest

from cropqtl.gwas import (GWAS, RESULT_COLUMNS, bh_fdr, genomic_control, pca_covariates, reml_delta,
                          vanraden_kinship)

from conftest import CAUSAL_SNP, PANEL_SNPS


@pytest.fixture(scope="module")
def mlm_result(panel):
    genotype, phenotype, _ = panel
    return GWAS(method="mlm").compute(genotype, phenotype, "flowering")


@pytest.mark.parametrize("method", ["mlm", "glm"])
def test_gwas_finds_causal_snp(panel, method):
    genotype, phenotype, _ = panel
    result = GWAS(method=method).compute(genotype, phenotype, "flowering")
    table = result.table
    assert list(table.columns) == RESULT_COLUMNS
    assert table.loc[table["p_wald"].idxmin(), "rs"] == CAUSAL_SNP
    assert table["p_wald"].min() < GWAS.bonferroni(result)
    assert table.loc[table["rs"] == CAUSAL_SNP, "beta"].iloc[0] == pytest.approx(1.0, abs=0.4)
    assert result.n == 200


def test_gwas_table_invariants(mlm_result):
    table = mlm_result.table
    assert len(table) == PANEL_SNPS
    assert table["p_wald"].between(0, 1).all()
    assert (table["fdr"] >= table["p_wald"] - 1e-12).all()
    assert (table["maf"] <= 0.5).all()
    assert np.isfinite(mlm_result.lambda_gc)
    assert 0 < mlm_result.heritability < 1
    assert mlm_result.delta > 0


def test_glm_has_no_variance_components(panel):
    genotype, phenotype, _ = panel
    result = GWAS(method="glm", n_pcs=0).compute(genotype, phenotype, "noise")
    assert np.isnan(result.heritability)
    assert np.isnan(result.delta)
    # a null trait should not be inflated
    assert 0.6 < result.lambda_gc < 1.6


def test_gwas_input_errors(panel):
    genotype, phenotype, _ = panel
    with pytest.raises(ValueError, match="not found in phenotype data"):
        GWAS().compute(genotype, phenotype, "yield")
    other = phenotype.set_axis([f"x{i}" for i in range(len(phenotype))], axis=0)
    with pytest.raises(ValueError, match="No samples"):
        GWAS().compute(genotype, other, "flowering")
    with pytest.raises(ValueError, match="MAF"):
        GWAS(maf=0.6).compute(genotype, phenotype, "flowering")
    with pytest.raises(ValueError, match="Unknown GWAS method"):
        GWAS(method="farmcpu")


def test_gwas_skips_missing_phenotypes(panel):
    genotype, phenotype, _ = panel
    phenotype = phenotype.copy()
    phenotype.iloc[:10, 0] = np.nan
    result = GWAS(method="glm").compute(genotype, phenotype, "flowering")
    assert result.n == 190


def test_kinship_properties(panel):
    X = panel[0].imputed()
    K = vanraden_kinship(X)
    assert K.shape == (200, 200)
    np.testing.assert_allclose(K, K.T)
    assert (np.diag(K) > 0).all()
    # centred dosages: every row of K sums to zero
    np.testing.assert_allclose(K.sum(axis=1), 0.0, atol=1e-8)
    with pytest.raises(ValueError):
        vanraden_kinship(np.zeros((5, 3)))


def test_reml_delta_tracks_heritability():
    rng = np.random.default_rng(3)
    X = rng.binomial(2, 0.4, size=(150, 400)).astype(float)
    K = vanraden_kinship(X)
    u = rng.multivariate_normal(np.zeros(150), K + 1e-6 * np.eye(150))
    y = 2.0 * u + rng.normal(size=150)
    delta, eigvals, eigvecs = reml_delta(y, np.ones((150, 1)), K)
    assert 0 < delta < 10
    assert eigvals.shape == (150,)
    assert eigvecs.shape == (150, 150)


def test_pca_covariates_shape():
    X = np.random.default_rng(0).normal(size=(10, 4))
    assert pca_covariates(X, 3).shape == (10, 3)
    assert pca_covariates(X, 0).shape == (10, 0)


def test_genomic_control_and_fdr():
    uniform = np.linspace(0.001, 0.999, 999)
    assert genomic_control(uniform) == pytest.approx(1.0, abs=0.01)
    assert np.isnan(genomic_control([np.nan]))
    p = pd.Series([0.01, 0.02, np.nan, 0.04])
    fdr = bh_fdr(p)
    assert np.isnan(fdr.iloc[2])
    assert fdr.iloc[0] == pytest.approx(0.03)
    assert fdr.iloc[3] == pytest.approx(0.04)


def test_persist_and_visualize(mlm_result, tmp_path):
    gwas = GWAS()
    table_path = gwas.persist(mlm_result, out_dir=str(tmp_path), out_name="panel")
    assert table_path == os.path.join(str(tmp_path), "panel.flowering.gwas.tsv")
    table = pd.read_csv(table_path, sep="\t")
    assert list(table.columns) == RESULT_COLUMNS

    with open(tmp_path / "panel.flowering.summary.json") as handle:
        summary = json.load(handle)
    assert summary["method"] == "mlm"
    assert summary["n_snps"] == PANEL_SNPS
    assert summary["n_significant"] >= 1
    assert summary["bonferroni"] == pytest.approx(0.05 / PANEL_SNPS)

    plot_path = gwas.visualize(mlm_result, out_dir=str(tmp_path), out_name="panel")
    assert os.path.isfile(plot_path)
    assert plot_path.endswith("panel.flowering.gwas.png")


def test_load(panel_files):
    geno_path, map_path, phe_path = panel_files
    genotype, phenotype = GWAS().load(geno_path, phe_path, map_file=map_path)
    assert len(genotype) == PANEL_SNPS
    assert list(phenotype.columns) == ["flowering", "noise"]
