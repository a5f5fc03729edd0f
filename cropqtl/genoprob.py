from typing import Dict, Optional

import numpy as np

from cropqtl.cross import Cross
from cropqtl.genmap import inverse_haldane
from cropqtl.log import logger


def _init_probs(cross_type: str) -> np.ndarray:
    if cross_type == "f2":
        return np.array([0.25, 0.5, 0.25])
    return np.array([0.5, 0.5])


def _transition(cross_type: str, r: float) -> np.ndarray:
    """Transition matrix between true genotypes at adjacent markers."""
    if cross_type == "f2":
        s = 1.0 - r
        return np.array([
            [s * s, 2 * r * s, r * r],
            [r * s, s * s + r * r, r * s],
            [r * r, 2 * r * s, s * s],
        ])
    return np.array([[1.0 - r, r], [r, 1.0 - r]])


def _emission(cross_type: str, error_prob: float) -> np.ndarray:
    """
    Emission table indexed by [observed code, true genotype].

    Row 0 (missing) is uninformative; rows 4 and 5 hold the partially
    informative not-BB / not-AA calls.
    """
    if not 0 < error_prob < 1:
        raise ValueError(f"error_prob must lie strictly between 0 and 1, got {error_prob}.")
    e = error_prob
    if cross_type == "f2":
        emit = np.ones((6, 3))
        for obs in range(3):
            emit[obs + 1] = e / 2
            emit[obs + 1, obs] = 1 - e
        emit[4] = [1 - e / 2, 1 - e / 2, e]
        emit[5] = [e, 1 - e / 2, 1 - e / 2]
        return emit
    emit = np.ones((6, 2))
    emit[1] = [1 - e, e]
    emit[2] = [e, 1 - e]
    return emit


def _forward(codes: np.ndarray, trans, init, emit) -> np.ndarray:
    n, n_mar = codes.shape
    alpha = np.empty((n, n_mar, init.size))
    a = init[None, :] * emit[codes[:, 0]]
    alpha[:, 0] = a / a.sum(axis=1, keepdims=True)
    for j in range(1, n_mar):
        a = (alpha[:, j - 1] @ trans[j - 1]) * emit[codes[:, j]]
        alpha[:, j] = a / a.sum(axis=1, keepdims=True)
    return alpha


def _chrom_setup(cross: Cross, chrom: str, error_prob: float):
    markers = cross.chrom_markers(chrom)
    codes = cross.geno.loc[:, markers].values.astype(np.intp)
    pos = cross.gmap.loc[markers, "pos"].values
    rf = inverse_haldane(np.diff(pos))
    trans = [_transition(cross.cross_type, r) for r in rf]
    return codes, trans, _init_probs(cross.cross_type), _emission(cross.cross_type, error_prob)


def calc_genoprob(cross: Cross, error_prob: float = 1e-4) -> Dict[str, np.ndarray]:
    """
    Calculate true-genotype probabilities at each marker with an HMM.

    :param cross: Cross object
    :param error_prob: Genotyping error rate
    :return: {chromosome: array (samples, markers, genotypes)}, rows sum to one
    """
    logger.info(f"Calculating genotype probabilities (error_prob={error_prob})...")
    genoprob = {}
    for chrom in cross.chromosomes:
        codes, trans, init, emit = _chrom_setup(cross, chrom, error_prob)
        alpha = _forward(codes, trans, init, emit)
        n, n_mar, _ = alpha.shape
        beta = np.ones_like(alpha)
        for j in range(n_mar - 2, -1, -1):
            b = (emit[codes[:, j + 1]] * beta[:, j + 1]) @ trans[j].T
            beta[:, j] = b / b.sum(axis=1, keepdims=True)
        post = alpha * beta
        genoprob[chrom] = post / post.sum(axis=2, keepdims=True)
    return genoprob


def _sample_rows(prob: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    cum = np.cumsum(prob / prob.sum(axis=1, keepdims=True), axis=1)
    u = rng.random(prob.shape[0])[:, None]
    return np.minimum((u > cum).sum(axis=1), prob.shape[1] - 1)


def sim_geno(
    cross: Cross,
    n_draws: int = 16,
    error_prob: float = 1e-4,
    seed: Optional[int] = None,
) -> Dict[str, np.ndarray]:
    """
    Simulate genotype imputations by forward filtering, backward sampling.

    :param n_draws: Number of imputations
    :param seed: Seed for the random generator
    :return: {chromosome: int array (draws, samples, markers)} of genotype indices
    """
    if n_draws < 1:
        raise ValueError("n_draws must be at least 1.")
    logger.info(f"Simulating {n_draws} genotype imputations...")
    rng = np.random.default_rng(seed)
    draws = {}
    for chrom in cross.chromosomes:
        codes, trans, init, emit = _chrom_setup(cross, chrom, error_prob)
        alpha = _forward(codes, trans, init, emit)
        n, n_mar, _ = alpha.shape
        out = np.empty((n_draws, n, n_mar), dtype=np.int8)
        for d in range(n_draws):
            state = _sample_rows(alpha[:, -1], rng)
            out[d, :, -1] = state
            for j in range(n_mar - 2, -1, -1):
                state = _sample_rows(alpha[:, j] * trans[j][:, state].T, rng)
                out[d, :, j] = state
        draws[chrom] = out
    return draws
