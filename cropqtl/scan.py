from typing import Dict, Iterable, Optional, Union

import numpy as np
import pandas as pd

from cropqtl.cross import AA, BB, Cross
from cropqtl.genoprob import calc_genoprob, sim_geno
from cropqtl.log import logger

SCAN_METHODS = ("hk", "mr", "imp")
PERM_BATCH = 100


def _rss(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    """Residual sum of squares of each column of Y regressed on X."""
    coef, _, _, _ = np.linalg.lstsq(X, Y, rcond=None)
    resid = Y - X @ coef
    return np.einsum("ij,ij->j", resid, resid)


def _rss_null(Y: np.ndarray) -> np.ndarray:
    centered = Y - Y.mean(axis=0, keepdims=True)
    return np.einsum("ij,ij->j", centered, centered)


def _lod(n: int, rss0: np.ndarray, rss1: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        lod = n / 2.0 * np.log10(rss0 / np.maximum(rss1, 1e-300))
    lod = np.where(rss0 > 0, lod, 0.0)
    return np.maximum(lod, 0.0)


def _onehot(states: np.ndarray, n_states: int) -> np.ndarray:
    X = (states[:, None] == np.arange(n_states)[None, :]).astype(np.float64)
    return X[:, X.sum(axis=0) > 0]


class _ScanEngine:
    """
    Marker-by-marker LOD computation for a block of phenotype columns.

    Genotype probabilities and imputations are computed once and shared by
    the observed scan and every permutation.
    """

    def __init__(self, cross: Cross, method: str = "hk", genoprob=None, draws=None,
                 error_prob: float = 1e-4, n_draws: int = 16, seed: Optional[int] = None):
        method = method.lower()
        if method not in SCAN_METHODS:
            raise ValueError(f"Unknown scan method '{method}'. Choose from {SCAN_METHODS}.")
        self.cross = cross
        self.method = method
        self.genoprob = genoprob
        self.draws = draws
        if method == "hk" and self.genoprob is None:
            self.genoprob = calc_genoprob(cross, error_prob=error_prob)
        if method == "imp" and self.draws is None:
            self.draws = sim_geno(cross, n_draws=n_draws, error_prob=error_prob, seed=seed)

    def lod(self, Y: np.ndarray, keep: np.ndarray) -> np.ndarray:
        """
        :param Y: (kept samples, k) phenotype columns
        :param keep: boolean mask of samples with an observed phenotype
        :return: (markers, k) LOD scores in cross marker order
        """
        blocks = []
        for chrom in self.cross.chromosomes:
            if self.method == "hk":
                blocks.append(self._hk(self.genoprob[chrom][keep], Y))
            elif self.method == "imp":
                blocks.append(self._imp(self.draws[chrom][:, keep], Y))
            else:
                codes = self.cross.geno.loc[keep, self.cross.chrom_markers(chrom)].values
                blocks.append(self._mr(codes, Y))
        return np.vstack(blocks)

    def _hk(self, prob: np.ndarray, Y: np.ndarray) -> np.ndarray:
        n = Y.shape[0]
        rss0 = _rss_null(Y)
        return np.vstack([_lod(n, rss0, _rss(prob[:, j], Y)) for j in range(prob.shape[1])])

    def _mr(self, codes: np.ndarray, Y: np.ndarray) -> np.ndarray:
        out = np.zeros((codes.shape[1], Y.shape[1]))
        upper = BB if self.cross.cross_type == "f2" else BB - 1
        for j in range(codes.shape[1]):
            typed = (codes[:, j] >= AA) & (codes[:, j] <= upper)
            if typed.sum() < 3:
                continue
            X = _onehot(codes[typed, j] - AA, self.cross.n_genotypes)
            if X.shape[1] < 2:
                continue
            Ysub = Y[typed]
            out[j] = _lod(int(typed.sum()), _rss_null(Ysub), _rss(X, Ysub))
        return out

    def _imp(self, draws: np.ndarray, Y: np.ndarray) -> np.ndarray:
        n = Y.shape[0]
        rss0 = _rss_null(Y)
        n_draws, _, n_mar = draws.shape
        out = np.empty((n_mar, Y.shape[1]))
        for j in range(n_mar):
            per_draw = np.vstack([
                _lod(n, rss0, _rss(_onehot(draws[d, :, j], self.cross.n_genotypes), Y))
                for d in range(n_draws)
            ])
            # log10 of the mean likelihood ratio across imputations
            peak = per_draw.max(axis=0)
            out[j] = peak + np.log10(np.mean(10.0 ** (per_draw - peak), axis=0))
        return out


def _trait_vector(cross: Cross, trait: str):
    y = cross.trait_values(trait).values.astype(float)
    keep = ~np.isnan(y)
    if keep.sum() < 3:
        raise ValueError(f"Trait '{trait}' has fewer than three observed values.")
    if (~keep).any():
        logger.info(f"Trait '{trait}': {int((~keep).sum())} sample(s) with missing phenotype excluded.")
    return y[keep], keep


def scanone(
    cross: Cross,
    trait: str,
    method: str = "hk",
    genoprob: Optional[Dict[str, np.ndarray]] = None,
    draws: Optional[Dict[str, np.ndarray]] = None,
    error_prob: float = 1e-4,
    n_draws: int = 16,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Single-QTL genome scan.

    :param cross: Cross object
    :param trait: Phenotype column to scan
    :param method: 'hk' (Haley-Knott), 'mr' (marker regression) or 'imp' (imputation)
    :param genoprob: Precomputed output of calc_genoprob (hk)
    :param draws: Precomputed output of sim_geno (imp)
    :return: DataFrame with columns marker, chr, pos, lod
    """
    engine = _ScanEngine(cross, method, genoprob, draws, error_prob, n_draws, seed)
    return _scan(engine, trait)


def _scan(engine: _ScanEngine, trait: str) -> pd.DataFrame:
    y, keep = _trait_vector(engine.cross, trait)
    logger.info(f"Running genome scan for trait '{trait}' (method={engine.method}, n={len(y)})...")
    lod = engine.lod(y[:, None], keep)[:, 0]
    scan = engine.cross.gmap.reset_index()[["marker", "chr", "pos"]].copy()
    scan["lod"] = lod
    return scan


def scanone_perm(
    cross: Cross,
    trait: str,
    n_perm: int = 1000,
    method: str = "hk",
    seed: Optional[int] = None,
    genoprob: Optional[Dict[str, np.ndarray]] = None,
    draws: Optional[Dict[str, np.ndarray]] = None,
    error_prob: float = 1e-4,
    n_draws: int = 16,
) -> np.ndarray:
    """
    Permutation test for the genome-wide maximum LOD.

    Phenotype values are shuffled across samples and the genome is
    rescanned; the maximum LOD of each rescan is recorded.

    :param n_perm: Number of permutations
    :param seed: Seed for the permutation generator; a fixed seed gives an identical distribution
    :return: float array of length n_perm
    """
    engine = _ScanEngine(cross, method, genoprob, draws, error_prob, n_draws, seed)
    return _perm(engine, trait, n_perm, seed)


def _perm(engine: _ScanEngine, trait: str, n_perm: int, seed: Optional[int]) -> np.ndarray:
    if n_perm < 1:
        raise ValueError("n_perm must be at least 1.")
    y, keep = _trait_vector(engine.cross, trait)
    logger.info(f"Running {n_perm} permutations for trait '{trait}'...")
    rng = np.random.default_rng(seed)
    maxima = np.empty(n_perm)
    for start in range(0, n_perm, PERM_BATCH):
        size = min(PERM_BATCH, n_perm - start)
        Y = np.column_stack([rng.permutation(y) for _ in range(size)])
        maxima[start:start + size] = engine.lod(Y, keep).max(axis=0)
    return maxima


def perm_threshold(perms: np.ndarray, alpha: Union[float, Iterable[float]] = 0.05):
    """
    Genome-wide LOD threshold(s) from a permutation distribution.

    :param alpha: Significance level or iterable of levels
    :return: float, or {alpha: threshold} for an iterable
    """
    perms = np.asarray(perms, dtype=float)
    if np.isscalar(alpha):
        return float(np.quantile(perms, 1.0 - alpha))
    return {float(a): float(np.quantile(perms, 1.0 - a)) for a in alpha}
