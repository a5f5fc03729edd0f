import logging

import numpy as np
import pandas as pd
import pytest

from cropqtl.cross import Cross
from cropqtl.genmap import inverse_haldane
from cropqtl.genotype import GenotypeSet

N_SAMPLES = 150
MARKERS_PER_CHROM = 8
SPACING_CM = 10.0
QTL_MARKER = "c1_m4"
QTL_EFFECT = 1.5

PANEL_SIZE = 200
PANEL_SNPS = 300
CAUSAL_SNP = "snp_3_020"
CODE_TO_CALL = {0: "-", 1: "A", 2: "H", 3: "B"}


def simulate_f2(n=N_SAMPLES, chroms=("1", "2"), n_markers=MARKERS_PER_CHROM, spacing=SPACING_CM, seed=20240601):
    """F2 genotype codes, allele counts and map from two simulated gametes per sample."""
    rng = np.random.default_rng(seed)
    r = float(inverse_haldane(spacing))
    codes, counts, rows = {}, {}, []
    for chrom in chroms:
        gametes = []
        for _ in range(2):
            allele = rng.integers(0, 2, n)
            chain = [allele]
            for _ in range(n_markers - 1):
                flip = rng.random(n) < r
                allele = np.where(flip, 1 - allele, allele)
                chain.append(allele)
            gametes.append(np.column_stack(chain))
        dosage = gametes[0] + gametes[1]
        for j in range(n_markers):
            marker = f"c{chrom}_m{j + 1}"
            counts[marker] = dosage[:, j]
            codes[marker] = dosage[:, j] + 1
            rows.append({"marker": marker, "chr": chrom, "pos": j * spacing})
    samples = [f"F2_{i + 1:03d}" for i in range(n)]
    geno = pd.DataFrame(codes, index=samples)
    # sprinkle missing calls away from the QTL marker
    missing = rng.random(geno.shape) < 0.03
    missing[:, list(geno.columns).index(QTL_MARKER)] = False
    geno = geno.mask(missing, 0)
    gmap = pd.DataFrame(rows).set_index("marker")
    return geno, pd.DataFrame(counts, index=samples), gmap, rng


@pytest.fixture(scope="session")
def f2_cross():
    geno, counts, gmap, rng = simulate_f2()
    qtl_trait = QTL_EFFECT * (counts[QTL_MARKER] - 1) + rng.normal(size=len(geno))
    null_trait = rng.normal(size=len(geno))
    pheno = pd.DataFrame({"qtl_trait": qtl_trait, "null_trait": null_trait}, index=geno.index)
    pheno.iloc[5, 1] = np.nan
    return Cross(geno, pheno, gmap, "f2")


@pytest.fixture(scope="session")
def bc_cross():
    """Backcross to the AA parent: one recombinant F1 gamete per sample, AH where it carries B."""
    rng = np.random.default_rng(20240715)
    r = float(inverse_haldane(SPACING_CM))
    het, rows = {}, []
    for chrom in ("1", "2"):
        allele = rng.integers(0, 2, N_SAMPLES)
        for j in range(MARKERS_PER_CHROM):
            if j:
                allele = np.where(rng.random(N_SAMPLES) < r, 1 - allele, allele)
            marker = f"c{chrom}_m{j + 1}"
            het[marker] = allele
            rows.append({"marker": marker, "chr": chrom, "pos": j * SPACING_CM})
    samples = [f"BC_{i + 1:03d}" for i in range(N_SAMPLES)]
    het = pd.DataFrame(het, index=samples)
    missing = rng.random(het.shape) < 0.03
    missing[:, list(het.columns).index(QTL_MARKER)] = False
    codes = (het + 1).mask(missing, 0)
    trait = QTL_EFFECT * het[QTL_MARKER] + rng.normal(size=N_SAMPLES)
    pheno = pd.DataFrame({"qtl_trait": trait}, index=samples)
    return Cross(codes, pheno, pd.DataFrame(rows).set_index("marker"), "bc")


@pytest.fixture
def cross_files(tmp_path, f2_cross):
    """The simulated cross written as genotype, phenotype and map tables."""
    geno = f2_cross.geno.apply(lambda col: col.astype(int).map(CODE_TO_CALL))
    geno.index.name = "id"
    geno_path = tmp_path / "geno.csv"
    geno.to_csv(geno_path)
    pheno = f2_cross.pheno.copy()
    pheno.index.name = "id"
    pheno_path = tmp_path / "pheno.csv"
    pheno.to_csv(pheno_path)
    map_path = tmp_path / "map.csv"
    f2_cross.gmap.reset_index().to_csv(map_path, index=False)
    return str(geno_path), str(pheno_path), str(map_path)


def simulate_panel(seed=7):
    """
    Two-population diversity panel: the first half of the SNPs is strongly
    differentiated between populations, the second half is shared.
    """
    rng = np.random.default_rng(seed)
    pop = np.repeat([0, 1], PANEL_SIZE // 2)
    n_diff = PANEL_SNPS // 2
    freq = np.empty((PANEL_SIZE, PANEL_SNPS))
    base = rng.uniform(0.1, 0.2, n_diff)
    freq[:, :n_diff] = np.where(pop[:, None] == 0, base, 1 - base)
    freq[:, n_diff:] = rng.uniform(0.2, 0.5, PANEL_SNPS - n_diff)
    dosage = rng.binomial(2, freq).astype(float)

    rs, rows = [], []
    per_chrom = PANEL_SNPS // 3
    for k in range(PANEL_SNPS):
        chrom = str(k // per_chrom + 1)
        name = f"snp_{chrom}_{k % per_chrom:03d}"
        rs.append(name)
        rows.append({"rs": name, "chr": chrom, "ps": 10000 * (k % per_chrom + 1), "allele": "A"})
    samples = [f"acc{i + 1:03d}" for i in range(PANEL_SIZE)]
    dosage_df = pd.DataFrame(dosage, index=samples, columns=rs)
    # a few missing calls away from the causal SNP
    missing = rng.random(dosage_df.shape) < 0.01
    missing[:, rs.index(CAUSAL_SNP)] = False
    dosage_df = dosage_df.mask(missing)
    snps = pd.DataFrame(rows).set_index("rs")

    causal = dosage_df[CAUSAL_SNP].values
    trait = 1.0 * causal + 0.5 * pop + rng.normal(size=PANEL_SIZE)
    phenotype = pd.DataFrame({"flowering": trait, "noise": rng.normal(size=PANEL_SIZE)}, index=samples)
    return GenotypeSet(dosage_df, snps), phenotype, pd.Series(pop + 1, index=samples)


@pytest.fixture(scope="session")
def panel():
    return simulate_panel()


@pytest.fixture
def panel_files(tmp_path, panel):
    """The panel as numeric genotype, SNP map and phenotype tables."""
    genotype, phenotype, _ = panel
    dosage = genotype.dosage.copy()
    dosage.index.name = "sample"
    geno_path = tmp_path / "panel.geno.tsv"
    dosage.to_csv(geno_path, sep="\t")
    map_path = tmp_path / "panel.map.tsv"
    genotype.snps.reset_index()[["rs", "chr", "ps"]].to_csv(map_path, sep="\t", index=False)
    phe = phenotype.copy()
    phe.index.name = "sample"
    phe_path = tmp_path / "panel.phe.csv"
    phe.to_csv(phe_path)
    return str(geno_path), str(map_path), str(phe_path)


@pytest.fixture
def log_records(caplog):
    """Capture records of the package logger, which does not propagate."""
    logger = logging.getLogger("cropqtl")
    logger.addHandler(caplog.handler)
    yield caplog
    logger.removeHandler(caplog.handler)
