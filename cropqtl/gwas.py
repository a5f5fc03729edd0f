"""
Genome-wide association for diversity panels.

The mixed model follows EMMAX/P3D: the genetic to residual variance ratio is
estimated once by REML under the null model and held fixed while every SNP is
tested by generalized least squares in the kinship eigenbasis.
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from scipy import optimize, stats
from sklearn.decomposition import PCA
from statsmodels.stats.multitest import multipletests

from cropqtl.genotype import GenotypeSet, read_genotypes, read_phenotype
from cropqtl.log import logger
from cropqtl.report import safe_name, save_json, save_table
from cropqtl.viz import Visualizer, save_figure

GWAS_METHODS = ("mlm", "glm")
LOG_DELTA_BOUNDS = (-10.0, 10.0)
RESULT_COLUMNS = ["chr", "rs", "ps", "allele", "maf", "beta", "se", "p_wald", "fdr"]


@dataclass(frozen=True)
class GWASResult:
    trait: str
    method: str
    table: pd.DataFrame
    n: int
    heritability: float
    delta: float
    lambda_gc: float


def vanraden_kinship(X: np.ndarray) -> np.ndarray:
    """
    Genomic relationship matrix K = ZZ' / (2 sum p(1-p)) (VanRaden 2008).

    :param X: (samples, SNPs) dosage matrix without missing values
    """
    p = X.mean(axis=0) / 2.0
    Z = X - 2.0 * p
    norm = 2.0 * np.sum(p * (1.0 - p))
    if norm <= 0:
        raise ValueError("Cannot compute kinship: no polymorphic SNPs.")
    K = Z @ Z.T / norm
    return (K + K.T) / 2.0


def pca_covariates(X: np.ndarray, n_pcs: int = 3) -> np.ndarray:
    """Leading principal components of the dosage matrix as covariates."""
    n_pcs = min(n_pcs, X.shape[0] - 1, X.shape[1])
    if n_pcs <= 0:
        return np.empty((X.shape[0], 0))
    return PCA(n_components=n_pcs, svd_solver="full").fit_transform(X)


def _neg_reml(log_delta: float, eigvals: np.ndarray, y_rot: np.ndarray, X_rot: np.ndarray) -> float:
    w = 1.0 / (eigvals + np.exp(log_delta))
    xtwx = X_rot.T @ (w[:, None] * X_rot)
    beta = np.linalg.solve(xtwx, X_rot.T @ (w * y_rot))
    resid = y_rot - X_rot @ beta
    dof = len(y_rot) - X_rot.shape[1]
    sigma2 = np.sum(w * resid ** 2) / dof
    _, logdet_xtwx = np.linalg.slogdet(xtwx)
    return 0.5 * (dof * np.log(sigma2) - np.sum(np.log(w)) + logdet_xtwx)


def reml_delta(y: np.ndarray, covariates: np.ndarray, K: np.ndarray) -> Tuple[float, np.ndarray, np.ndarray]:
    """
    REML estimate of delta = sigma_e^2 / sigma_g^2 under the null model.

    :return: (delta, eigenvalues, eigenvectors) of K
    """
    eigvals, eigvecs = np.linalg.eigh(K)
    eigvals = np.maximum(eigvals, 1e-10)
    y_rot = eigvecs.T @ y
    X_rot = eigvecs.T @ covariates
    res = optimize.minimize_scalar(
        _neg_reml, bounds=LOG_DELTA_BOUNDS, method="bounded", args=(eigvals, y_rot, X_rot)
    )
    if not res.success:
        logger.warning(f"REML optimisation did not converge: {res.message}")
    return float(np.exp(res.x)), eigvals, eigvecs


def _association(y: np.ndarray, covariates: np.ndarray, G: np.ndarray) -> pd.DataFrame:
    """
    Per-SNP least squares of y on covariates plus one SNP, vectorized by
    projecting the covariates out of y and every SNP column.
    """
    q, _ = np.linalg.qr(covariates)
    ry = y - q @ (q.T @ y)
    RG = G - q @ (q.T @ G)
    gg = np.einsum("ij,ij->j", RG, RG)
    dof = len(y) - covariates.shape[1] - 1
    with np.errstate(divide="ignore", invalid="ignore"):
        beta = (RG.T @ ry) / gg
        rss = ry @ ry - beta ** 2 * gg
        se = np.sqrt(rss / dof / gg)
        t = beta / se
    usable = gg > 1e-10
    beta[~usable] = se[~usable] = t[~usable] = np.nan
    pvalues = 2.0 * stats.t.sf(np.abs(t), dof)
    return pd.DataFrame({"beta": beta, "se": se, "p_wald": pvalues})


def genomic_control(pvalues) -> float:
    """Inflation factor lambda = median(chi2) / 0.4549."""
    p = np.asarray(pvalues, dtype=float)
    p = p[np.isfinite(p)]
    if p.size == 0:
        return float("nan")
    chi2 = stats.chi2.isf(np.clip(p, 1e-300, 1.0), df=1)
    return float(np.median(chi2) / stats.chi2.ppf(0.5, df=1))


def bh_fdr(pvalues: pd.Series) -> pd.Series:
    fdr = pd.Series(np.nan, index=pvalues.index)
    ok = pvalues.notna()
    if ok.any():
        fdr[ok] = multipletests(pvalues[ok].values, method="fdr_bh")[1]
    return fdr


class GWAS:
    def __init__(self, method: str = "mlm", n_pcs: int = 3, maf: float = 0.05, impute: str = "middle"):
        """
        :param method: 'mlm' (kinship + PCs, P3D) or 'glm' (PCs only)
        :param n_pcs: Number of principal components used as covariates
        :param maf: Minimum minor allele frequency
        :param impute: Missing genotype imputation: 'middle' or 'mean'
        """
        method = method.lower()
        if method not in GWAS_METHODS:
            raise ValueError(f"Unknown GWAS method '{method}'. Choose from {GWAS_METHODS}.")
        if n_pcs < 0:
            raise ValueError("n_pcs must be non-negative.")
        self.method = method
        self.n_pcs = n_pcs
        self.maf = maf
        self.impute = impute

    def load(self, geno_file: str, pheno_file: str, fmt: str = "auto", map_file: Optional[str] = None,
             sample_col: Optional[str] = None) -> Tuple[GenotypeSet, pd.DataFrame]:
        genotype = read_genotypes(geno_file, fmt=fmt, map_file=map_file)
        phenotype = read_phenotype(pheno_file, sample_col=sample_col)
        logger.info(f"Loaded phenotypes for {len(phenotype)} samples and {phenotype.shape[1]} trait(s).")
        return genotype, phenotype

    def compute(self, genotype: GenotypeSet, phenotype: pd.DataFrame, trait: str) -> GWASResult:
        """
        Test every SNP for association with one trait.

        :param genotype: GenotypeSet (samples in rows)
        :param phenotype: Phenotype table indexed by sample
        :param trait: Phenotype column
        :return: GWASResult with the per-SNP table (chr, rs, ps, allele, maf, beta, se, p_wald, fdr)
        """
        if trait not in phenotype.columns:
            raise ValueError(f"Trait '{trait}' not found in phenotype data. Available traits: {list(phenotype.columns)}")
        y_all = phenotype[trait]
        samples = [s for s in genotype.samples if s in y_all.index and pd.notna(y_all.loc[s])]
        if not samples:
            raise ValueError(f"No samples with genotypes have an observed value for trait '{trait}'.")
        if len(samples) < self.n_pcs + 3:
            raise ValueError(f"Too few samples ({len(samples)}) for trait '{trait}'.")
        logger.info(f"Running {self.method.upper()} GWAS for trait '{trait}' on {len(samples)} samples...")

        geno = genotype.subset_samples(samples).filter_maf(self.maf)
        if len(geno) == 0:
            raise ValueError(f"No SNPs pass the MAF filter ({self.maf}).")
        X = geno.imputed(self.impute)
        y = y_all.loc[samples].values.astype(float)

        pcs = pca_covariates(X, self.n_pcs)
        covariates = np.column_stack([np.ones(len(y)), pcs])

        if self.method == "mlm":
            K = vanraden_kinship(X)
            delta, eigvals, eigvecs = reml_delta(y, covariates, K)
            heritability = 1.0 / (1.0 + delta)
            logger.info(f"REML delta {delta:.4g}, pseudo-heritability {heritability:.3f}")
            scale = 1.0 / np.sqrt(eigvals + delta)
            stats_df = _association(scale * (eigvecs.T @ y), scale[:, None] * (eigvecs.T @ covariates),
                                    scale[:, None] * (eigvecs.T @ X))
        else:
            delta, heritability = float("nan"), float("nan")
            stats_df = _association(y, covariates, X)

        table = geno.snps.reset_index()
        table["maf"] = geno.maf().values
        table = pd.concat([table, stats_df], axis=1)
        table["fdr"] = bh_fdr(table["p_wald"])
        table = table[RESULT_COLUMNS]

        lambda_gc = genomic_control(table["p_wald"])
        logger.info(f"Tested {len(table)} SNPs; genomic control lambda = {lambda_gc:.3f}")
        return GWASResult(trait=trait, method=self.method, table=table, n=len(samples),
                          heritability=float(heritability), delta=float(delta), lambda_gc=lambda_gc)

    @staticmethod
    def bonferroni(result: GWASResult, alpha: float = 0.05) -> float:
        return alpha / max(result.table["p_wald"].notna().sum(), 1)

    def visualize(self, result: GWASResult, out_dir: str = ".", out_name: str = "gwas", fmt: str = "png",
                  sig_threshold: Optional[float] = None, width: float = 12, height: float = 3.5) -> str:
        """
        Manhattan plot (Bonferroni line unless a threshold is given) beside a QQ plot.
        """
        visualizer = Visualizer()
        threshold = sig_threshold if sig_threshold is not None else self.bonferroni(result)
        fig, (ax_m, ax_q) = plt.subplots(1, 2, figsize=(width, height), gridspec_kw={"width_ratios": [4, 1]})
        visualizer.plot_manhattan(result.table, sig_threshold={"Bonferroni" if sig_threshold is None
                                                               else f"p = {threshold:.2e}": threshold},
                                  title=result.trait, ax=ax_m)
        visualizer.plot_qq(result.table, title=f"lambda = {result.lambda_gc:.3f}", ax=ax_q)
        path = os.path.join(out_dir, f"{out_name}.{safe_name(result.trait)}.gwas.{fmt}")
        save_figure(fig, path)
        return path

    def persist(self, result: GWASResult, out_dir: str = ".", out_name: str = "gwas") -> str:
        """
        Write the association table and a JSON summary.

        :return: Path of the association table
        """
        prefix = os.path.join(out_dir, f"{out_name}.{safe_name(result.trait)}")
        table_path = save_table(result.table, f"{prefix}.gwas.tsv")
        threshold = self.bonferroni(result)
        summary = {
            "trait": result.trait,
            "method": result.method,
            "n": result.n,
            "n_snps": int(len(result.table)),
            "heritability": result.heritability,
            "delta": result.delta,
            "lambda_gc": result.lambda_gc,
            "bonferroni": threshold,
            "n_significant": int((result.table["p_wald"] < threshold).sum()),
            "table": os.path.basename(table_path),
        }
        save_json(summary, f"{prefix}.summary.json")
        return table_path
