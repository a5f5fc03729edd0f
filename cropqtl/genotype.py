import importlib
import os
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from cropqtl.cross import natural_key
from cropqtl.log import logger

HAPMAP_FIXED_COLUMNS = 11
IUPAC_CALLS = {
    "A": "AA", "C": "CC", "G": "GG", "T": "TT",
    "R": "AG", "Y": "CT", "S": "CG", "W": "AT", "K": "GT", "M": "AC",
    "N": "NN", "-": "NN", "0": "NN", "": "NN",
}
MAP_ALIASES = {
    "rs": ("rs", "rs#", "snp", "marker", "id"),
    "chr": ("chr", "chrom", "chromosome"),
    "ps": ("ps", "pos", "position", "bp"),
}


class GenotypeSet:
    """
    Dosage matrix (sample x SNP, minor/alternate allele count, NaN missing)
    with the SNP map (index rs; columns chr, ps, allele).
    """

    def __init__(self, dosage: pd.DataFrame, snps: pd.DataFrame):
        if list(dosage.columns) != list(snps.index):
            raise ValueError("Dosage columns must match the SNP map index.")
        self.dosage = dosage.astype(float)
        self.snps = snps

    @property
    def samples(self) -> List[str]:
        return list(self.dosage.index)

    @property
    def rs(self) -> List[str]:
        return list(self.snps.index)

    def __len__(self):
        return self.dosage.shape[1]

    def subset_samples(self, samples: Sequence[str]) -> "GenotypeSet":
        return GenotypeSet(self.dosage.loc[list(samples)], self.snps)

    def subset_snps(self, rs: Sequence[str]) -> "GenotypeSet":
        rs = list(rs)
        return GenotypeSet(self.dosage.loc[:, rs], self.snps.loc[rs])

    def maf(self) -> pd.Series:
        p = self.dosage.mean(axis=0, skipna=True) / 2.0
        return np.minimum(p, 1.0 - p).fillna(0.0)

    def missing_rate(self) -> pd.Series:
        return self.dosage.isna().mean(axis=0)

    def filter_maf(self, min_maf: float = 0.05) -> "GenotypeSet":
        keep = self.maf() >= min_maf
        if (~keep).any():
            logger.info(f"Removed {int((~keep).sum())} SNPs with MAF < {min_maf}; {int(keep.sum())} remain.")
        return self.subset_snps(keep.index[keep])

    def imputed(self, method: str = "middle") -> np.ndarray:
        """
        Dosages with missing calls filled.

        :param method: 'middle' fills with the heterozygote (1), 'mean' with the SNP mean
        """
        values = self.dosage.values.copy()
        missing = np.isnan(values)
        if not missing.any():
            return values
        if method == "middle":
            values[missing] = 1.0
        elif method == "mean":
            means = np.nanmean(np.where(missing.all(axis=0), 0.0, values), axis=0)
            values[missing] = np.take(means, np.nonzero(missing)[1])
        else:
            raise ValueError(f"Unknown imputation method '{method}'. Choose 'middle' or 'mean'.")
        return values


def _normalize_map(map_df: pd.DataFrame) -> pd.DataFrame:
    lowered = {str(c).lower(): c for c in map_df.columns}
    rename = {}
    for target, aliases in MAP_ALIASES.items():
        match = next((lowered[a] for a in aliases if a in lowered), None)
        if match is None:
            raise ValueError(f"SNP map is missing a '{target}' column (accepted names: {aliases}).")
        rename[match] = target
    snps = map_df.rename(columns=rename)[["rs", "chr", "ps"]].copy()
    snps["rs"] = snps["rs"].astype(str)
    snps["chr"] = snps["chr"].astype(str)
    snps["ps"] = pd.to_numeric(snps["ps"], errors="coerce")
    if snps["ps"].isna().any():
        raise ValueError("SNP map contains missing or non-numeric positions.")
    snps["ps"] = snps["ps"].astype(np.int64)
    return snps.set_index("rs")


def _sort_snps(geno: GenotypeSet) -> GenotypeSet:
    order = sorted(range(len(geno)), key=lambda i: (natural_key(geno.snps["chr"].iat[i]), geno.snps["ps"].iat[i]))
    return geno.subset_snps([geno.rs[i] for i in order])


def read_hapmap(hmp_file: str) -> GenotypeSet:
    """
    Read a HapMap genotype file and code calls as minor allele counts.

    Calls may be two-letter (AA, AG) or single-letter IUPAC codes; N, -, 0 are missing.
    """
    logger.info(f"Loading HapMap genotypes: {hmp_file}")
    hmp = pd.read_csv(hmp_file, sep="\t", dtype=str, keep_default_na=False)
    if hmp.shape[1] <= HAPMAP_FIXED_COLUMNS:
        raise ValueError("HapMap file must contain 11 fixed columns followed by sample columns.")
    fixed = hmp.columns[:HAPMAP_FIXED_COLUMNS]
    samples = list(hmp.columns[HAPMAP_FIXED_COLUMNS:])

    calls = hmp[samples].apply(lambda col: col.str.strip().str.upper()).replace(IUPAC_CALLS)
    arr = calls.values.astype("U2")
    pairs = arr.view("U1").reshape(arr.shape[0], arr.shape[1], 2)

    alleles = hmp[fixed[1]].str.upper().str.split("/")
    a1 = alleles.str[0].fillna("").values.astype("U1")[:, None]
    a2 = alleles.str[1].fillna("").values.astype("U1")[:, None]
    first, second = pairs[..., 0], pairs[..., 1]
    valid = ((first == a1) | (first == a2)) & ((second == a1) | (second == a2))
    count_a2 = (first == a2).astype(float) + (second == a2).astype(float)
    dosage = np.where(valid, count_a2, np.nan)

    # orient every SNP to its minor allele
    typed = (~np.isnan(dosage)).sum(axis=1)
    freq_a2 = np.where(typed > 0, np.nansum(dosage, axis=1) / np.maximum(2 * typed, 1), 0.0)
    flip = freq_a2 > 0.5
    dosage[flip] = 2.0 - dosage[flip]
    minor = np.where(flip, a1[:, 0], a2[:, 0])

    snps = _normalize_map(hmp[[fixed[0], fixed[2], fixed[3]]].set_axis(["rs", "chr", "ps"], axis=1))
    snps["allele"] = minor
    dosage_df = pd.DataFrame(dosage.T, index=samples, columns=snps.index)
    geno = _sort_snps(GenotypeSet(dosage_df, snps))
    logger.info(f"Loaded {len(geno)} SNPs for {len(samples)} samples.")
    return geno


def read_numeric(geno_file: str, map_file: str) -> GenotypeSet:
    """
    Read numeric genotypes (sample x SNP dosages, first column sample IDs)
    and the matching SNP map (rs, chr, ps).
    """
    logger.info(f"Loading numeric genotypes: {geno_file}")
    sep = "," if geno_file.lower().endswith(".csv") else "\t"
    gd = pd.read_csv(geno_file, sep=sep)
    gd = gd.set_index(gd.columns[0])
    gd.index = gd.index.astype(str)
    gd.columns = gd.columns.astype(str)

    map_sep = "," if map_file.lower().endswith(".csv") else "\t"
    snps = _normalize_map(pd.read_csv(map_file, sep=map_sep))
    unmapped = [s for s in gd.columns if s not in snps.index]
    if unmapped:
        raise ValueError(f"{len(unmapped)} SNP(s) lack map positions, e.g. {unmapped[:5]}")
    snps = snps.loc[list(gd.columns)]
    snps["allele"] = ""
    dosage = gd.apply(pd.to_numeric, errors="coerce")
    invalid = dosage.notna() & ~dosage.isin([0, 1, 2])
    if invalid.values.any():
        raise ValueError("Numeric genotypes must be coded 0, 1, 2 or missing.")
    geno = _sort_snps(GenotypeSet(dosage, snps))
    logger.info(f"Loaded {len(geno)} SNPs for {len(geno.samples)} samples.")
    return geno


def _encode_gt_tuple(gt) -> float:
    if gt is None or len(gt) == 0 or any(a is None for a in gt):
        return np.nan
    return float(sum(1 for a in gt if a != 0))


def read_vcf(vcf_file: str) -> GenotypeSet:
    """
    Read biallelic VCF genotypes as alternate allele counts (requires pysam).
    """
    try:
        pysam = importlib.import_module('pysam')
    except Exception as e:
        raise RuntimeError("pysam is required to read VCF; please install pysam") from e
    logger.info(f"Loading VCF genotypes: {vcf_file}")
    rows, dosages = [], []
    try:
        with pysam.VariantFile(vcf_file) as vf:
            samples = list(vf.header.samples)
            for rec in vf:
                if rec.alts is None or len(rec.alts) != 1:
                    continue
                rs = rec.id if rec.id else f"{rec.chrom}_{rec.pos}"
                rows.append({"rs": rs, "chr": rec.chrom, "ps": rec.pos, "allele": rec.alts[0]})
                dosages.append([_encode_gt_tuple(rec.samples[s].get("GT")) for s in samples])
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read VCF {vcf_file}: {e}")
        raise
    if not rows:
        raise ValueError(f"No biallelic variants found in {vcf_file}")
    snps = pd.DataFrame(rows).drop_duplicates("rs")
    keep = snps.index
    snps = snps.set_index("rs")
    snps["chr"] = snps["chr"].astype(str)
    dosage = pd.DataFrame(np.asarray(dosages, dtype=float)[keep].T, index=samples, columns=snps.index)
    geno = _sort_snps(GenotypeSet(dosage, snps))
    logger.info(f"Loaded {len(geno)} SNPs for {len(samples)} samples.")
    return geno


def read_genotypes(geno_file: str, fmt: str = "auto", map_file: Optional[str] = None) -> GenotypeSet:
    """
    Read genotypes in HapMap, numeric or VCF format.

    :param fmt: 'hapmap', 'numeric', 'vcf' or 'auto' (by file extension)
    :param map_file: SNP map, required for numeric genotypes
    """
    if not os.path.isfile(geno_file):
        raise FileNotFoundError(f"Genotype file not found: {geno_file}")
    fmt = fmt.lower()
    if fmt == "auto":
        lower = geno_file.lower()
        if lower.endswith((".vcf", ".vcf.gz", ".bcf")):
            fmt = "vcf"
        elif lower.endswith((".hmp.txt", ".hmp")):
            fmt = "hapmap"
        else:
            fmt = "numeric"
    if fmt == "hapmap":
        return read_hapmap(geno_file)
    if fmt == "vcf":
        return read_vcf(geno_file)
    if fmt == "numeric":
        if not map_file:
            raise ValueError("A SNP map (--map) is required for numeric genotypes.")
        return read_numeric(geno_file, map_file)
    raise ValueError(f"Unknown genotype format '{fmt}'. Choose hapmap, numeric, vcf or auto.")


def read_phenotype(path: str, sample_col: Optional[str] = None) -> pd.DataFrame:
    """
    Read a phenotype table (sample column + trait columns), indexed by sample.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Phenotype file not found: {path}")
    try:
        df = pd.read_csv(path, sep=None, engine="python")
    except Exception:
        sep = "\t" if os.path.splitext(path)[1].lower() in {".tsv", ".txt"} else ","
        df = pd.read_csv(path, sep=sep)
    if df.shape[1] < 2:
        raise ValueError("Phenotype file must contain at least 2 columns (sample + trait columns)")
    if sample_col is None:
        sample_col = df.columns[0]
    if sample_col not in df.columns:
        raise ValueError(f"Sample column '{sample_col}' not found in phenotype file")
    df[sample_col] = df[sample_col].astype(str)
    df = df.drop_duplicates(subset=sample_col).set_index(sample_col)
    return df.apply(pd.to_numeric, errors="coerce")
