import os
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from cropqtl.genotype import GenotypeSet
from cropqtl.log import logger
from cropqtl.report import save_table
from cropqtl.viz import Visualizer, save_figure

LD_COLUMNS = ["CHR_A", "BP_A", "SNP_A", "CHR_B", "BP_B", "SNP_B", "R2"]


def check_snps(genotype: GenotypeSet, snps: Iterable[str]) -> List[str]:
    """
    Validate requested SNP IDs against the genotype marker list.

    :raises ValueError: listing every requested SNP that is absent
    """
    snps = list(dict.fromkeys(str(s) for s in snps))
    if len(snps) < 2:
        raise ValueError("At least two SNPs are required for LD analysis.")
    known = set(genotype.rs)
    absent = [s for s in snps if s not in known]
    if absent:
        raise ValueError(f"{len(absent)} requested SNP(s) not found in genotype data: {', '.join(absent)}")
    return snps


def r2_matrix(genotype: GenotypeSet, snps: Optional[List[str]] = None) -> pd.DataFrame:
    """Squared dosage correlation over pairwise-complete samples."""
    dosage = genotype.dosage if snps is None else genotype.dosage[snps]
    return dosage.corr(method="pearson", min_periods=3) ** 2


def compute_ld(genotype: GenotypeSet, snps: Iterable[str]) -> pd.DataFrame:
    """
    Pairwise r² between the requested SNPs, in PLINK .ld layout.

    :param genotype: GenotypeSet
    :param snps: SNP IDs; all must be present in genotype
    :return: DataFrame with columns CHR_A, BP_A, SNP_A, CHR_B, BP_B, SNP_B, R2
    """
    snps = check_snps(genotype, snps)
    rank = {rs: i for i, rs in enumerate(genotype.rs)}
    snps = sorted(snps, key=rank.get)
    logger.info(f"Computing LD for {len(snps)} SNPs...")

    r2 = r2_matrix(genotype, snps).values
    info = genotype.snps.loc[snps]
    i, j = np.triu_indices(len(snps), k=1)
    ld = pd.DataFrame({
        "CHR_A": info["chr"].values[i],
        "BP_A": info["ps"].values[i],
        "SNP_A": np.asarray(snps)[i],
        "CHR_B": info["chr"].values[j],
        "BP_B": info["ps"].values[j],
        "SNP_B": np.asarray(snps)[j],
        "R2": r2[i, j],
    })
    return ld[LD_COLUMNS]


def region_snps(genotype: GenotypeSet, chrom: str, start: int, end: int) -> List[str]:
    snps = genotype.snps
    mask = (snps["chr"] == str(chrom)) & (snps["ps"] >= start) & (snps["ps"] <= end)
    return list(snps.index[mask])


def _r2_to_block(x: np.ndarray, block: np.ndarray) -> np.ndarray:
    """
    r² between one dosage column and each column of block over pairwise-complete samples.

    Pairs with fewer than three shared samples or no variance are NaN.
    """
    mask = ~np.isnan(x)[:, None] & ~np.isnan(block)
    n = mask.sum(axis=0).astype(float)
    xm = np.where(mask, x[:, None], 0.0)
    ym = np.where(mask, block, 0.0)
    with np.errstate(invalid="ignore", divide="ignore"):
        sx, sy = xm.sum(axis=0), ym.sum(axis=0)
        cov = (xm * ym).sum(axis=0) - sx * sy / n
        var_x = (xm ** 2).sum(axis=0) - sx ** 2 / n
        var_y = (ym ** 2).sum(axis=0) - sy ** 2 / n
        r2 = cov ** 2 / (var_x * var_y)
    r2[(n < 3) | ~(var_x > 1e-12) | ~(var_y > 1e-12)] = np.nan
    return np.minimum(r2, 1.0)


def ld_decay(genotype: GenotypeSet, max_distance: int = 500000, bin_size: int = 10000) -> pd.DataFrame:
    """
    Mean r² of SNP pairs binned by physical distance within chromosomes.

    Only pairs closer than max_distance are evaluated, so the cost grows with
    the number of SNPs in each window rather than with the chromosome size.

    :return: DataFrame with columns bin_start, bin_end, bin_mid, mean_r2, n_pairs
    """
    if bin_size <= 0 or max_distance <= 0:
        raise ValueError("max_distance and bin_size must be positive.")
    n_bins = int(np.ceil(max_distance / bin_size))
    sums = np.zeros(n_bins)
    counts = np.zeros(n_bins, dtype=int)
    for chrom, group in genotype.snps.groupby("chr", sort=False):
        if len(group) < 2:
            continue
        order = np.argsort(group["ps"].values, kind="mergesort")
        pos = group["ps"].values.astype(np.int64)[order]
        values = genotype.dosage[list(group.index[order])].values
        ends = np.searchsorted(pos, pos + max_distance, side="left")
        for i in range(len(pos) - 1):
            if ends[i] <= i + 1:
                continue
            r2 = _r2_to_block(values[:, i], values[:, i + 1:ends[i]])
            dist = pos[i + 1:ends[i]] - pos[i]
            keep = np.isfinite(r2)
            bins = dist[keep] // bin_size
            np.add.at(sums, bins, r2[keep])
            np.add.at(counts, bins, 1)
    starts = np.arange(n_bins) * bin_size
    with np.errstate(invalid="ignore", divide="ignore"):
        mean_r2 = np.where(counts > 0, sums / np.maximum(counts, 1), np.nan)
    decay = pd.DataFrame({
        "bin_start": starts,
        "bin_end": starts + bin_size,
        "bin_mid": starts + bin_size / 2.0,
        "mean_r2": mean_r2,
        "n_pairs": counts,
    })
    logger.info(f"LD decay computed from {int(counts.sum())} SNP pairs.")
    return decay


def decay_distance(decay: pd.DataFrame, r2_threshold: Optional[float] = None) -> float:
    """
    Distance at which mean r² first falls to the threshold
    (half of the first-bin r² when no threshold is given).
    """
    curve = decay.dropna(subset=["mean_r2"])
    if curve.empty:
        return float("nan")
    if r2_threshold is None:
        r2_threshold = curve["mean_r2"].iloc[0] / 2.0
    below = curve[curve["mean_r2"] <= r2_threshold]
    return float(below["bin_mid"].iloc[0]) if not below.empty else float("nan")


def plot_ld(ld: pd.DataFrame, path: str, plot_value: bool = False, cmap: str = "Reds",
            width: float = 8, height: float = 5) -> str:
    fig, ax = plt.subplots(figsize=(width, height))
    Visualizer().plot_ld_heatmap(ld, plot_value=plot_value, cmap=cmap, ax=ax)
    save_figure(fig, path)
    return path


def plot_regional(gwas_table: pd.DataFrame, genotype: GenotypeSet, lead: str, path: str,
                  flank: int = 500000, width: float = 8, height: float = 4) -> str:
    """
    Regional association plot around a lead SNP, coloured by r² to the lead.
    """
    if lead not in genotype.snps.index:
        raise ValueError(f"Lead SNP '{lead}' not found in genotype data.")
    info = genotype.snps.loc[lead]
    snps = region_snps(genotype, info["chr"], int(info["ps"]) - flank, int(info["ps"]) + flank)
    region = gwas_table[gwas_table["rs"].isin(snps)]
    r2 = r2_matrix(genotype, snps)[lead]
    fig, ax = plt.subplots(figsize=(width, height))
    Visualizer().plot_regional(region, r2, lead, ax=ax)
    save_figure(fig, path)
    return path


def plot_decay(decay: pd.DataFrame, path: str, r2_threshold: Optional[float] = None,
               width: float = 5, height: float = 4) -> str:
    fig, ax = plt.subplots(figsize=(width, height))
    Visualizer().plot_ld_decay(decay, r2_threshold=r2_threshold, ax=ax)
    save_figure(fig, path)
    return path


def save_ld(ld: pd.DataFrame, out_dir: str = ".", out_name: str = "ld") -> str:
    """Write the pairwise table in tab-delimited PLINK .ld layout."""
    return save_table(ld, os.path.join(out_dir, f"{out_name}.ld"), sep="\t")
