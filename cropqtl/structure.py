import os
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from scipy.spatial.distance import pdist, squareform
from sklearn.cluster import KMeans
from sklearn.decomposition import PCA

from cropqtl.genotype import GenotypeSet
from cropqtl.log import logger
from cropqtl.report import save_table
from cropqtl.viz import Visualizer, save_figure

DISTANCE_METRICS = ("ibs", "euclidean")


@dataclass(frozen=True)
class ClusterResult:
    labels: pd.Series
    bic: pd.Series
    k: int


def genetic_distance(genotype: GenotypeSet, metric: str = "ibs", impute: str = "middle") -> pd.DataFrame:
    """
    Pairwise sample distances.

    :param metric: 'ibs' (1 - identity by state over jointly typed SNPs;
        a heterozygote against a homozygote shares half its alleles) or
        'euclidean' (on imputed dosages)
    :return: Symmetric sample x sample DataFrame
    """
    metric = metric.lower()
    if metric not in DISTANCE_METRICS:
        raise ValueError(f"Unknown distance metric '{metric}'. Choose from {DISTANCE_METRICS}.")
    samples = genotype.samples
    logger.info(f"Computing {metric} distances between {len(samples)} samples...")

    if metric == "euclidean":
        D = squareform(pdist(genotype.imputed(impute), metric="euclidean"))
        return pd.DataFrame(D, index=samples, columns=samples)

    dosage = genotype.dosage.values
    onehot = [(dosage == g).astype(float) for g in (0, 1, 2)]
    scored = np.zeros((len(samples), len(samples)))
    mismatch = np.zeros_like(scored)
    for a in range(3):
        for b in range(3):
            shared = onehot[a] @ onehot[b].T
            scored += shared
            mismatch += abs(a - b) / 2.0 * shared
    with np.errstate(invalid="ignore", divide="ignore"):
        D = np.where(scored > 0, mismatch / scored, np.nan)
    if np.isnan(D).any():
        logger.warning("Some sample pairs share no typed SNPs; their distance is undefined.")
    np.fill_diagonal(D, 0.0)
    return pd.DataFrame(D, index=samples, columns=samples)


def pcoa(distance: pd.DataFrame, n_axes: int = 10) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Principal coordinates analysis (classical multidimensional scaling).

    :param distance: Symmetric distance matrix
    :param n_axes: Number of coordinates to keep
    :return: (coordinates PCo1.., table of eigenvalue and explained % per axis)
    """
    D = distance.values.astype(float)
    if np.isnan(D).any():
        raise ValueError("Distance matrix contains undefined entries; cannot run PCoA.")
    n = D.shape[0]
    J = np.eye(n) - np.ones((n, n)) / n
    B = -0.5 * J @ (D ** 2) @ J
    eigvals, eigvecs = np.linalg.eigh(B)
    order = np.argsort(eigvals)[::-1]
    eigvals, eigvecs = eigvals[order], eigvecs[:, order]
    positive = eigvals > 1e-10
    n_axes = max(1, min(n_axes, int(positive.sum())))
    coords = eigvecs[:, :n_axes] * np.sqrt(np.maximum(eigvals[:n_axes], 0.0))
    names = [f"PCo{i + 1}" for i in range(n_axes)]
    explained = 100.0 * eigvals[:n_axes] / eigvals[positive].sum()
    axes = pd.DataFrame({"eigenvalue": eigvals[:n_axes], "explained": explained}, index=names)
    return pd.DataFrame(coords, index=distance.index, columns=names), axes


def kmeans_bic(features: np.ndarray, k: int, seed: Optional[int] = None) -> Tuple[np.ndarray, float]:
    """K-means fit and its BIC = n ln(RSS / n) + k ln(n)."""
    model = KMeans(n_clusters=k, n_init=10, random_state=seed).fit(features)
    n = features.shape[0]
    rss = max(model.inertia_, 1e-12)
    return model.labels_, float(n * np.log(rss / n) + k * np.log(n))


def find_clusters(genotype: GenotypeSet, max_k: int = 10, n_pca: Optional[int] = None,
                  seed: Optional[int] = None, n_clusters: Optional[int] = None,
                  impute: str = "middle") -> ClusterResult:
    """
    Group samples by k-means on principal components of the dosage matrix.

    K = 1..max_k is fitted and the K with the lowest BIC is kept unless
    n_clusters fixes it.

    :param n_pca: Principal components retained (default: all, up to n - 1)
    """
    X = genotype.imputed(impute)
    n = X.shape[0]
    if n < 2:
        raise ValueError("At least two samples are required for clustering.")
    max_k = min(max_k, n - 1) if n > 2 else 1
    if n_clusters is not None and not 1 <= n_clusters <= n:
        raise ValueError(f"n_clusters must lie between 1 and {n}.")
    n_pca = min(n_pca or n - 1, n - 1, X.shape[1])
    features = PCA(n_components=n_pca, svd_solver="full").fit_transform(X)

    labels_by_k = {}
    bic = {}
    for k in range(1, max_k + 1):
        labels_by_k[k], bic[k] = kmeans_bic(features, k, seed)
    bic = pd.Series(bic, name="bic")
    bic.index.name = "k"
    if n_clusters is None:
        k = int(bic.idxmin())
        logger.info(f"Lowest BIC at K = {k}")
    else:
        k = n_clusters
        if k not in labels_by_k:
            labels_by_k[k], _ = kmeans_bic(features, k, seed)
        logger.info(f"Using fixed K = {k}")
    labels = pd.Series(labels_by_k[k] + 1, index=genotype.samples, name="cluster")
    return ClusterResult(labels=labels, bic=bic, k=k)


def plot_structure(coords: pd.DataFrame, axes: pd.DataFrame, clusters: Optional[ClusterResult],
                   path: str, width: float = 10, height: float = 4) -> str:
    visualizer = Visualizer()
    if clusters is None:
        fig, ax = plt.subplots(figsize=(width / 2, height))
        visualizer.plot_pcoa(coords, axes["explained"], ax=ax)
    else:
        fig, (ax_p, ax_b) = plt.subplots(1, 2, figsize=(width, height))
        visualizer.plot_pcoa(coords, axes["explained"], labels=clusters.labels.loc[coords.index], ax=ax_p)
        visualizer.plot_bic(clusters.bic, chosen_k=clusters.k if clusters.k in clusters.bic.index else None,
                            ax=ax_b)
    save_figure(fig, path)
    return path


def save_structure(out_dir: str, out_name: str, distance: pd.DataFrame, coords: pd.DataFrame,
                   axes: pd.DataFrame, clusters: Optional[ClusterResult] = None) -> dict:
    prefix = os.path.join(out_dir, out_name)
    files = {
        "distance": save_table(distance, f"{prefix}.dist.tsv", index=True),
        "pcoa": save_table(coords, f"{prefix}.pcoa.tsv", index=True),
        "eigen": save_table(axes, f"{prefix}.pcoa_eigen.tsv", index=True),
    }
    if clusters is not None:
        files["clusters"] = save_table(clusters.labels.to_frame(), f"{prefix}.clusters.tsv", index=True)
        files["bic"] = save_table(clusters.bic.to_frame(), f"{prefix}.bic.tsv", index=True)
    return files
