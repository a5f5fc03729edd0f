import os
import re
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from cropqtl.log import logger


# Internal genotype codes: 0 = missing, 1 = AA, 2 = AH, 3 = BB,
# 4 = not BB (AA or AH), 5 = not AA (AH or BB)
MISSING, AA, AH, BB, NOT_BB, NOT_AA = 0, 1, 2, 3, 4, 5
DEFAULT_GENOTYPES = ("A", "H", "B", "D", "C")
DEFAULT_NA_STRINGS = ("-", "NA", "")
CROSS_TYPES = ("f2", "bc")


def natural_key(value) -> List:
    """Sort key placing chr2 before chr10."""
    return [int(tok) if tok.isdigit() else tok.lower() for tok in re.split(r"(\d+)", str(value))]


def encode_genotypes(
    geno_df: pd.DataFrame,
    genotypes: Sequence[str] = DEFAULT_GENOTYPES,
    na_strings: Sequence[str] = DEFAULT_NA_STRINGS,
) -> pd.DataFrame:
    """
    Convert genotype calls to integer codes.

    :param geno_df: sample x marker table of genotype calls
    :param genotypes: calls for AA, AH, BB, not-BB and not-AA, in that order
    :param na_strings: calls treated as missing
    """
    if len(genotypes) < 3:
        raise ValueError("At least three genotype codes (AA, AH, BB) are required.")
    code_map: Dict[str, int] = {str(g): i + 1 for i, g in enumerate(genotypes[:5])}
    for na in na_strings:
        code_map[str(na)] = MISSING

    calls = geno_df.astype(object).where(geno_df.notna(), "")
    calls = calls.apply(lambda col: col.astype(str).str.strip())
    # numeric tables come in as floats, e.g. "1.0"
    calls = calls.replace(to_replace=r"\.0$", value="", regex=True)

    unknown = set(np.unique(calls.values)) - set(code_map)
    if unknown:
        raise ValueError(
            f"Unrecognised genotype calls: {sorted(unknown)[:10]}. "
            f"Expected one of {list(genotypes)} or missing values {list(na_strings)}."
        )
    codes = calls.apply(lambda col: col.map(code_map)).astype(np.int8)
    return codes


class Cross:
    """
    Experimental cross: genotype codes, phenotypes and a genetic map.

    Operations that change the map return a new Cross; the arrays held
    here are never modified in place.
    """

    def __init__(self, geno: pd.DataFrame, pheno: pd.DataFrame, gmap: pd.DataFrame, cross_type: str = "f2"):
        cross_type = cross_type.lower()
        if cross_type not in CROSS_TYPES:
            raise ValueError(f"Unsupported cross type '{cross_type}'. Choose from {CROSS_TYPES}.")
        missing_markers = set(geno.columns) - set(gmap.index)
        if missing_markers:
            raise ValueError(f"Markers missing from the genetic map: {sorted(missing_markers)[:10]}")
        if not geno.index.equals(pheno.index):
            raise ValueError("Genotype and phenotype tables must list the same samples in the same order.")
        if cross_type == "bc" and (geno.values > AH).any():
            raise ValueError("Backcross genotypes may only contain AA and AH calls.")

        gmap = gmap.loc[list(geno.columns), ["chr", "pos"]].copy()
        gmap["chr"] = gmap["chr"].astype(str)
        gmap["pos"] = gmap["pos"].astype(float)
        chrom_order = {c: i for i, c in enumerate(sorted(gmap["chr"].unique(), key=natural_key))}
        gmap["_order"] = gmap["chr"].map(chrom_order)
        gmap = gmap.sort_values(["_order", "pos"], kind="mergesort").drop(columns="_order")
        gmap.index.name = "marker"

        self.cross_type = cross_type
        self.gmap = gmap
        self.geno = geno.loc[:, gmap.index].astype(np.int8)
        self.pheno = pheno

    @property
    def samples(self) -> List[str]:
        return list(self.geno.index)

    @property
    def markers(self) -> List[str]:
        return list(self.gmap.index)

    @property
    def traits(self) -> List[str]:
        return list(self.pheno.columns)

    @property
    def chromosomes(self) -> List[str]:
        return list(dict.fromkeys(self.gmap["chr"]))

    @property
    def n_genotypes(self) -> int:
        return 3 if self.cross_type == "f2" else 2

    def chrom_markers(self, chrom: str) -> List[str]:
        return list(self.gmap.index[self.gmap["chr"] == str(chrom)])

    def trait_values(self, trait: str) -> pd.Series:
        if trait not in self.pheno.columns:
            raise ValueError(f"Trait '{trait}' not found in phenotype data. Available traits: {self.traits}")
        return pd.to_numeric(self.pheno[trait], errors="coerce")

    def with_map(self, gmap: pd.DataFrame) -> "Cross":
        """Return a new Cross over the markers of gmap."""
        markers = [m for m in gmap.index if m in self.geno.columns]
        return Cross(self.geno.loc[:, markers], self.pheno, gmap.loc[markers], self.cross_type)

    def summary(self) -> dict:
        typed = float((self.geno.values != MISSING).mean()) if self.geno.size else 0.0
        return {
            "cross_type": self.cross_type,
            "samples": len(self.samples),
            "markers": len(self.markers),
            "chromosomes": len(self.chromosomes),
            "traits": len(self.traits),
            "percent_typed": round(100 * typed, 2),
        }


def _read_delim(path: str, **kwargs) -> pd.DataFrame:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Input file not found: {path}")
    sep = "," if path.lower().endswith(".csv") else "\t"
    return pd.read_csv(path, sep=sep, **kwargs)


def read_map(map_file: str) -> pd.DataFrame:
    """
    Read a marker map with columns marker, chr, pos (cM).
    """
    logger.info(f"Loading genetic map: {map_file}")
    map_df = _read_delim(map_file, dtype={"chr": str})
    required = {"marker", "chr", "pos"}
    missing = required - set(map_df.columns)
    if missing:
        raise ValueError(f"Map file is missing required columns: {sorted(missing)}")
    map_df["marker"] = map_df["marker"].astype(str)
    return map_df.drop_duplicates(subset="marker").set_index("marker")


def read_cross(
    geno_file: str,
    pheno_file: str,
    map_file: Optional[str] = None,
    cross_type: str = "f2",
    genotypes: Sequence[str] = DEFAULT_GENOTYPES,
    na_strings: Sequence[str] = DEFAULT_NA_STRINGS,
) -> Cross:
    """
    Read a cross from separate genotype, phenotype and map tables.

    :param geno_file: sample x marker table, first column holds sample IDs
    :param pheno_file: sample x trait table, first column holds sample IDs
    :param map_file: marker map (marker, chr, pos); unmapped markers go to chromosome 'un'
    """
    logger.info(f"Loading genotype data: {geno_file}")
    geno_raw = _read_delim(geno_file, dtype=str, keep_default_na=False)
    geno_raw = geno_raw.set_index(geno_raw.columns[0])
    geno_raw.index = geno_raw.index.astype(str)

    logger.info(f"Loading phenotype data: {pheno_file}")
    pheno = _read_delim(pheno_file)
    pheno = pheno.set_index(pheno.columns[0])
    pheno.index = pheno.index.astype(str)

    pheno_samples = set(pheno.index)
    common = [s for s in geno_raw.index if s in pheno_samples]
    if not common:
        raise ValueError("No samples shared between genotype and phenotype files.")
    dropped = len(geno_raw) + len(pheno) - 2 * len(common)
    if dropped:
        logger.warning(f"{dropped} sample record(s) without both genotypes and phenotypes were dropped.")

    geno = encode_genotypes(geno_raw.loc[common], genotypes, na_strings)
    if map_file:
        gmap = read_map(map_file)
    else:
        logger.warning("No map file provided; markers are placed on chromosome 'un' in file order.")
        gmap = pd.DataFrame({"chr": "un", "pos": np.arange(geno.shape[1], dtype=float)}, index=geno.columns)

    cross = Cross(geno, pheno.loc[common], gmap, cross_type)
    logger.info(f"Loaded cross: {cross.summary()}")
    return cross


def _is_number(value: str) -> bool:
    try:
        float(value)
    except ValueError:
        return False
    return True


def read_cross_csv(
    cross_file: str,
    cross_type: str = "f2",
    genotypes: Sequence[str] = DEFAULT_GENOTYPES,
    na_strings: Sequence[str] = DEFAULT_NA_STRINGS,
) -> Cross:
    """
    Read a cross stored in a single comma-delimited file.

    Row 1 holds column names, row 2 the chromosome of each marker column
    (blank for phenotype columns) and, optionally, row 3 the marker
    positions. A phenotype column named id / ID names the samples.
    """
    logger.info(f"Loading cross file: {cross_file}")
    if not os.path.isfile(cross_file):
        raise FileNotFoundError(f"Cross file not found: {cross_file}")
    raw = pd.read_csv(cross_file, header=None, dtype=str, keep_default_na=False)
    if raw.shape[0] < 3:
        raise ValueError("Cross file must contain a header row, a chromosome row and data rows.")

    header = raw.iloc[0].str.strip().tolist()
    chrom_row = raw.iloc[1].str.strip().tolist()
    pheno_idx = [i for i, c in enumerate(chrom_row) if c == ""]
    marker_idx = [i for i, c in enumerate(chrom_row) if c != ""]
    if not marker_idx:
        raise ValueError("No marker columns found: the second row must give chromosomes for markers.")

    pos_row = raw.iloc[2].str.strip().tolist()
    has_pos = all(pos_row[i] == "" for i in pheno_idx) and all(_is_number(pos_row[i]) for i in marker_idx)
    body = (raw.iloc[3:] if has_pos else raw.iloc[2:]).copy()
    body.columns = header

    id_cols = [header[i] for i in pheno_idx if header[i].lower() == "id"]
    if id_cols:
        samples = body[id_cols[0]].astype(str).tolist()
    else:
        samples = [f"ind{i + 1}" for i in range(len(body))]

    markers = [header[i] for i in marker_idx]
    traits = [header[i] for i in pheno_idx if header[i] not in id_cols]

    geno = encode_genotypes(body[markers].reset_index(drop=True), genotypes, na_strings)
    geno.index = samples
    pheno = body[traits].replace(list(na_strings), np.nan).apply(pd.to_numeric, errors="coerce")
    pheno.index = samples

    if has_pos:
        positions = [float(pos_row[i]) for i in marker_idx]
    else:
        logger.warning("Cross file has no position row; marker positions follow column order.")
        positions = list(range(len(markers)))
    gmap = pd.DataFrame({"chr": [chrom_row[i] for i in marker_idx], "pos": positions}, index=markers)

    cross = Cross(geno, pheno, gmap, cross_type)
    logger.info(f"Loaded cross: {cross.summary()}")
    return cross
