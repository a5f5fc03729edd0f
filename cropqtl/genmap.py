from collections import defaultdict
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.special import xlogy

from cropqtl.cross import AA, AH, BB, Cross
from cropqtl.log import logger


class UnionFind:
    """Union-Find data structure for grouping linked markers."""
    def __init__(self):
        self.parent = {}

    def find(self, x):
        if x not in self.parent:
            self.parent[x] = x
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]  # Path compression
            x = self.parent[x]
        return x

    def union(self, x, y):
        root_x = self.find(x)
        root_y = self.find(y)
        if root_x != root_y:
            self.parent[root_y] = root_x


def haldane(r):
    """Recombination fraction to map distance (cM)."""
    r = np.clip(np.asarray(r, dtype=float), 0.0, 0.4999999)
    return -50.0 * np.log(1.0 - 2.0 * r)


def inverse_haldane(d):
    """Map distance (cM) to recombination fraction."""
    d = np.maximum(np.asarray(d, dtype=float), 0.0)
    return 0.5 * (1.0 - np.exp(-d / 50.0))


def _pair_counts(geno: np.ndarray, codes) -> dict:
    onehot = {c: (geno == c).astype(np.float64) for c in codes}
    return {(a, b): onehot[a].T @ onehot[b] for a in codes for b in codes}


def _loglik_f2(r, r0, r1, r2, hh):
    # class probabilities up to constants that do not depend on r
    return (xlogy(2 * r0, 1 - r) + xlogy(r1, r) + xlogy(r1, 1 - r)
            + xlogy(2 * r2, r) + xlogy(hh, (1 - r) ** 2 + r ** 2))


def est_rf(cross: Cross, max_iter: int = 100, tol: float = 1e-8) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Estimate pairwise recombination fractions and LOD scores for linkage.

    F2 double heterozygotes are resolved by EM; backcross fractions are the
    observed recombinant proportion. Partially informative calls are ignored.

    :param cross: Cross object
    :param max_iter: Maximum EM iterations
    :param tol: Convergence tolerance on the recombination fraction
    :return: (rf, lod) marker x marker DataFrames
    """
    markers = cross.markers
    geno = cross.geno.values
    logger.info(f"Estimating pairwise recombination fractions for {len(markers)} markers...")

    with np.errstate(divide="ignore", invalid="ignore"):
        if cross.cross_type == "bc":
            n = _pair_counts(geno, (AA, AH))
            recomb = n[(AA, AH)] + n[(AH, AA)]
            total = recomb + n[(AA, AA)] + n[(AH, AH)]
            rf = recomb / total
            ll = xlogy(recomb, rf) + xlogy(total - recomb, 1 - rf)
            ll_null = total * np.log(0.5)
        else:
            n = _pair_counts(geno, (AA, AH, BB))
            r0 = n[(AA, AA)] + n[(BB, BB)]
            r1 = n[(AA, AH)] + n[(AH, AA)] + n[(AH, BB)] + n[(BB, AH)]
            r2 = n[(AA, BB)] + n[(BB, AA)]
            hh = n[(AH, AH)]
            total = r0 + r1 + r2 + hh

            rf = np.full(total.shape, 0.25)
            for _ in range(max_iter):
                # expected recombinant gametes among double heterozygotes
                e_hh = hh * 2 * rf ** 2 / ((1 - rf) ** 2 + rf ** 2)
                updated = (r1 + 2 * r2 + e_hh) / (2 * total)
                delta = np.nanmax(np.abs(updated - rf)) if updated.size else 0.0
                rf = updated
                if delta < tol:
                    break
            ll = _loglik_f2(rf, r0, r1, r2, hh)
            ll_null = _loglik_f2(0.5, r0, r1, r2, hh)

        lod = (ll - ll_null) / np.log(10)

    untyped = total == 0
    rf[untyped] = np.nan
    lod[untyped] = 0.0
    np.fill_diagonal(rf, 0.0)
    np.fill_diagonal(lod, np.nan)

    rf_df = pd.DataFrame(rf, index=markers, columns=markers)
    lod_df = pd.DataFrame(lod, index=markers, columns=markers)
    return rf_df, lod_df


def form_linkage_groups(
    rf: pd.DataFrame,
    lod: pd.DataFrame,
    max_rf: float = 0.35,
    min_lod: float = 6.0,
) -> pd.DataFrame:
    """
    Partition markers into linkage groups.

    Two markers are placed together when rf <= max_rf and LOD >= min_lod;
    groups are the connected components, numbered by decreasing size.

    :return: DataFrame indexed by marker with a 'group' column
    """
    logger.info(f"Forming linkage groups (max_rf={max_rf}, min_lod={min_lod})...")
    markers = list(rf.index)
    linked = (rf.values <= max_rf) & (lod.values >= min_lod)
    uf = UnionFind()
    for m in markers:
        uf.find(m)
    for i, j in zip(*np.nonzero(np.triu(linked, k=1))):
        uf.union(markers[i], markers[j])

    members = defaultdict(list)
    for m in markers:
        members[uf.find(m)].append(m)
    ordered = sorted(members.values(), key=lambda g: (-len(g), markers.index(g[0])))

    group_of = {m: i + 1 for i, group in enumerate(ordered) for m in group}
    groups = pd.DataFrame({"group": [group_of[m] for m in markers]}, index=pd.Index(markers, name="marker"))
    logger.info(f"Found {len(ordered)} linkage groups; sizes: {[len(g) for g in ordered]}")
    return groups


def order_markers(rf: pd.DataFrame, markers: List[str]) -> List[str]:
    """Order markers as a nearest-neighbour chain from the most peripheral one."""
    if len(markers) <= 2:
        return list(markers)
    sub = rf.loc[markers, markers].values.astype(float)
    sub = np.where(np.isnan(sub), 0.5, sub)
    start = int(np.argmax(sub.sum(axis=1)))
    order = [start]
    remaining = set(range(len(markers))) - {start}
    while remaining:
        current = order[-1]
        nxt = min(remaining, key=lambda k: (sub[current, k], k))
        order.append(nxt)
        remaining.remove(nxt)
    return [markers[k] for k in order]


def est_map(cross: Cross, groups: pd.DataFrame, rf: Optional[pd.DataFrame] = None) -> Cross:
    """
    Build a new Cross whose chromosomes are the linkage groups.

    Markers are ordered within each group and placed at cumulative Haldane
    distances of adjacent recombination fractions.
    """
    if rf is None:
        rf, _ = est_rf(cross)
    rows = []
    for group, sub in groups.groupby("group", sort=True):
        ordered = order_markers(rf, list(sub.index))
        adjacent = [rf.at[a, b] for a, b in zip(ordered[:-1], ordered[1:])]
        adjacent = np.nan_to_num(np.asarray(adjacent, dtype=float), nan=0.5)
        positions = np.concatenate([[0.0], np.cumsum(haldane(adjacent))])
        rows.extend({"marker": m, "chr": str(group), "pos": round(float(p), 4)}
                    for m, p in zip(ordered, positions))
    gmap = pd.DataFrame(rows).set_index("marker")
    logger.info(f"Estimated map over {gmap['chr'].nunique()} linkage groups, total length {gmap.groupby('chr')['pos'].max().sum():.1f} cM.")
    return cross.with_map(gmap)
