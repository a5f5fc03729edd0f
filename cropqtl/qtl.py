import numbers
import os
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import Dict, Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
import matplotlib.pyplot as plt

from cropqtl.cross import Cross, natural_key
from cropqtl.genoprob import calc_genoprob
from cropqtl.log import logger
from cropqtl.report import safe_name
from cropqtl.scan import _ScanEngine, _perm, _scan, perm_threshold
from cropqtl.viz import Visualizer, save_figure

DEFAULT_LOD_THRESHOLD = 3.5
DEFAULT_N_PERM = 1000
DEFAULT_PERM_ALPHA = (0.05, 0.10)


@dataclass(frozen=True)
class QTLModel:
    """Multi-locus fit at the selected QTL positions."""
    loci: pd.DataFrame
    effects: pd.DataFrame
    anova: pd.DataFrame
    lod: float
    pvar: float
    n: int


@dataclass(frozen=True)
class FullResult:
    """Trait analysis with at least one locus above the threshold."""
    trait: str
    threshold: float
    scan: pd.DataFrame
    perms: np.ndarray
    candidates: pd.DataFrame
    model: QTLModel
    kind: str = field(default="full", init=False)


@dataclass(frozen=True)
class PartialResult:
    """Trait analysis where no locus exceeded the threshold."""
    trait: str
    threshold: float
    scan: pd.DataFrame
    perms: np.ndarray
    diagnostic: str
    kind: str = field(default="partial", init=False)


AnalysisResult = Union[FullResult, PartialResult]


def peak_markers(candidates: pd.DataFrame) -> pd.DataFrame:
    """
    Reduce each run of adjacent candidate markers on a chromosome to its highest-LOD marker.

    :param candidates: Rows of a scan above a threshold, keeping the scan's
        integer row index so that adjacent markers have consecutive labels
    """
    if candidates.empty:
        return candidates.copy()
    idx = np.asarray(candidates.index, dtype=np.int64)
    chrom = candidates["chr"].astype(str).to_numpy()
    new_run = np.r_[True, (np.diff(idx) != 1) | (chrom[1:] != chrom[:-1])]
    runs = np.cumsum(new_run)
    peaks = candidates.groupby(runs, sort=False)["lod"].idxmax()
    return candidates.loc[peaks.values]


def select_loci(candidates: pd.DataFrame, min_separation: float = 10.0) -> pd.DataFrame:
    """
    Choose model loci from candidate markers.

    Every run of adjacent candidates on a chromosome contributes its peak
    marker. Peaks are then taken in decreasing LOD order and kept only when
    they lie at least min_separation cM from every kept locus on the same
    chromosome; min_separation <= 0 keeps every peak.
    """
    kept = []
    peaks = peak_markers(candidates)
    for _, row in peaks.sort_values("lod", ascending=False, kind="mergesort").iterrows():
        if min_separation > 0 and any(
            k["chr"] == row["chr"] and abs(k["pos"] - row["pos"]) < min_separation for k in kept
        ):
            continue
        kept.append(row)
    kept.sort(key=lambda r: (natural_key(r["chr"]), r["pos"]))
    loci = pd.DataFrame(kept, columns=candidates.columns).reset_index(drop=True)
    loci.insert(0, "name", [f"Q{i + 1}" for i in range(len(loci))])
    return loci


def _locus_design(cross: Cross, genoprob: Dict[str, np.ndarray], loci: pd.DataFrame) -> pd.DataFrame:
    """
    Expected genotype codings at each locus.

    F2: additive AA=-1, AH=0, BB=+1 and dominance AH=+0.5, AA/BB=-0.5.
    Backcross: additive AA=-0.5, AH=+0.5.
    """
    columns = {}
    for _, locus in loci.iterrows():
        chrom = str(locus["chr"])
        j = cross.chrom_markers(chrom).index(locus["marker"])
        prob = genoprob[chrom][:, j, :]
        if cross.cross_type == "f2":
            columns[f"{locus['name']}_a"] = prob[:, 2] - prob[:, 0]
            columns[f"{locus['name']}_d"] = 0.5 * prob[:, 1] - 0.5 * (prob[:, 0] + prob[:, 2])
        else:
            columns[f"{locus['name']}_a"] = 0.5 * (prob[:, 1] - prob[:, 0])
    return pd.DataFrame(columns, index=cross.samples)


def fit_qtl(
    cross: Cross,
    trait: str,
    loci: pd.DataFrame,
    genoprob: Optional[Dict[str, np.ndarray]] = None,
    error_prob: float = 1e-4,
) -> QTLModel:
    """
    Fit an additive multi-locus model with statsmodels OLS.

    :param loci: Table with columns name, marker, chr, pos (see select_loci)
    :param genoprob: Output of calc_genoprob; computed when omitted
    :return: QTLModel with effect estimates and a drop-one-locus ANOVA
    """
    if loci.empty:
        raise ValueError("At least one locus is required to fit a QTL model.")
    if genoprob is None:
        genoprob = calc_genoprob(cross, error_prob=error_prob)

    y = cross.trait_values(trait)
    design = _locus_design(cross, genoprob, loci)
    keep = y.notna()
    y = y[keep]
    X = sm.add_constant(design[keep], has_constant="add")
    n = len(y)
    logger.info(f"Fitting {len(loci)}-locus model for trait '{trait}' (n={n})...")

    full = sm.OLS(y, X).fit()
    rss0 = float(((y - y.mean()) ** 2).sum())
    lod = n / 2 * np.log10(rss0 / full.ssr) if full.ssr > 0 else np.inf
    pvar = 100 * (1 - 10 ** (-2 * lod / n))

    effects = pd.DataFrame({
        "term": full.params.index,
        "estimate": full.params.values,
        "se": full.bse.values,
        "t": full.tvalues.values,
        "pvalue": full.pvalues.values,
    })

    anova_rows = []
    for name in loci["name"]:
        reduced_cols = [c for c in X.columns if not c.startswith(f"{name}_")]
        reduced = sm.OLS(y, X[reduced_cols]).fit()
        f_value, p_value, df_diff = full.compare_f_test(reduced)
        drop_lod = n / 2 * np.log10(reduced.ssr / full.ssr) if full.ssr > 0 else np.inf
        anova_rows.append({
            "locus": name,
            "df": int(df_diff),
            "ss": reduced.ssr - full.ssr,
            "lod": drop_lod,
            "pvar": 100 * (1 - 10 ** (-2 * drop_lod / n)),
            "f": f_value,
            "pvalue": p_value,
        })

    logger.info(f"Model LOD {lod:.2f}, variance explained {pvar:.1f}%")
    return QTLModel(
        loci=loci.reset_index(drop=True),
        effects=effects,
        anova=pd.DataFrame(anova_rows),
        lod=float(lod),
        pvar=float(pvar),
        n=n,
    )


class TraitAnalysisRunner:
    def __init__(
        self,
        cross: Cross,
        method: str = "hk",
        n_perm: int = DEFAULT_N_PERM,
        seed: Optional[int] = None,
        perm_alpha: Sequence[float] = DEFAULT_PERM_ALPHA,
        min_separation: float = 10.0,
        error_prob: float = 1e-4,
        n_draws: int = 16,
        out_dir: Optional[str] = None,
        plot: bool = True,
        fmt: str = "png",
    ):
        """
        Per-trait QTL analysis over a fixed genetic map.

        :param cross: Cross with its final genetic map
        :param method: Genome scan method: 'hk', 'mr' or 'imp'
        :param n_perm: Number of permutations per trait
        :param seed: Seed for permutations (and imputations); fixed seeds reproduce results
        :param perm_alpha: Levels of the permutation thresholds drawn on the scan plot
        :param min_separation: Minimum distance (cM) between modelled loci on a chromosome
        :param out_dir: Directory for scan plots; no plot is written when None
        """
        if n_perm < 1:
            raise ValueError("n_perm must be at least 1.")
        self.cross = cross
        self.n_perm = n_perm
        self.seed = seed
        self.perm_alpha = tuple(perm_alpha)
        self.min_separation = min_separation
        self.error_prob = error_prob
        self.out_dir = out_dir
        self.plot = plot
        self.fmt = fmt

        self.genoprob = calc_genoprob(cross, error_prob=error_prob)
        self.engine = _ScanEngine(cross, method, genoprob=self.genoprob, error_prob=error_prob,
                                  n_draws=n_draws, seed=seed)

    @property
    def method(self) -> str:
        return self.engine.method

    def analyze(self, trait_id: str, significance_threshold: float = DEFAULT_LOD_THRESHOLD) -> AnalysisResult:
        """
        Scan one trait, calibrate by permutation and fit the loci above the threshold.

        :param trait_id: Phenotype column
        :param significance_threshold: LOD a marker must exceed to become a candidate
        :return: FullResult when candidates exist, otherwise PartialResult
        """
        if trait_id not in self.cross.traits:
            raise ValueError(f"Trait '{trait_id}' not found in phenotype data. Available traits: {self.cross.traits}")
        if isinstance(significance_threshold, bool) or not isinstance(significance_threshold, numbers.Real) \
                or not np.isfinite(significance_threshold) or significance_threshold <= 0:
            raise ValueError(f"significance_threshold must be a positive number, got {significance_threshold!r}.")
        threshold = float(significance_threshold)

        scan = _scan(self.engine, trait_id)
        perms = _perm(self.engine, trait_id, self.n_perm, self.seed)
        thresholds = perm_threshold(perms, self.perm_alpha)
        levels = ", ".join(f"{100 * (1 - a):.0f}%={v:.2f}" for a, v in thresholds.items())
        logger.info(f"Trait '{trait_id}': permutation thresholds {levels}")

        if self.plot and self.out_dir:
            self.plot_scan(trait_id, scan, thresholds)

        candidates = scan[scan["lod"] > threshold].copy()
        if candidates.empty:
            diagnostic = (f"No marker exceeds LOD {threshold:.2f} for trait '{trait_id}' "
                          f"(maximum LOD {scan['lod'].max():.2f}); no QTL model fitted.")
            logger.warning(diagnostic)
            return PartialResult(trait=trait_id, threshold=threshold, scan=scan, perms=perms,
                                 diagnostic=diagnostic)

        logger.info(f"Trait '{trait_id}': {len(candidates)} marker(s) above LOD {threshold:.2f}")
        loci = select_loci(candidates, self.min_separation)
        model = fit_qtl(self.cross, trait_id, loci, genoprob=self.genoprob)
        return FullResult(trait=trait_id, threshold=threshold, scan=scan, perms=perms,
                          candidates=candidates, model=model)

    def plot_scan(self, trait_id: str, scan: pd.DataFrame, thresholds: Dict[float, float]) -> str:
        visualizer = Visualizer()
        fig, axes_pair = plt.subplots(1, 2, figsize=(12, 4), sharey=True)
        visualizer.plot_scan(scan, thresholds=thresholds, title=trait_id, axes_pair=axes_pair)
        path = os.path.join(self.out_dir, f"{safe_name(trait_id)}.scan.{self.fmt}")
        save_figure(fig, path)
        return path

    def analyze_many(
        self,
        traits: Iterable[str],
        significance_threshold: float = DEFAULT_LOD_THRESHOLD,
        threads: int = 1,
    ) -> Dict[str, AnalysisResult]:
        """
        Analyze several traits independently, optionally in a process pool.
        """
        traits = list(traits)
        for trait in traits:
            if trait not in self.cross.traits:
                raise ValueError(f"Trait '{trait}' not found in phenotype data. Available traits: {self.cross.traits}")
        if threads > 1 and len(traits) > 1:
            logger.info(f"Analyzing {len(traits)} traits with {threads} processes...")
            with Pool(min(threads, len(traits))) as pool:
                results = pool.starmap(self.analyze, [(t, significance_threshold) for t in traits])
        else:
            results = [self.analyze(t, significance_threshold) for t in traits]
        return dict(zip(traits, results))
