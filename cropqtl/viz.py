import numpy as np
import pandas as pd
import matplotlib as mpl
mpl.use('Agg')
import matplotlib.pyplot as plt
from matplotlib import axes
from matplotlib.patches import RegularPolygon
from matplotlib.collections import PatchCollection
from typing import Dict, List, Optional, Sequence

from cropqtl.cross import natural_key
from cropqtl.log import logger


class Visualizer:
    def __init__(self):
        pass

    @staticmethod
    def split_chromosomes(chromosomes: Sequence[str], n_groups: int = 2) -> List[List[str]]:
        """Split chromosomes into consecutive, near-equal groups."""
        chromosomes = list(chromosomes)
        size = int(np.ceil(len(chromosomes) / n_groups)) or 1
        return [chromosomes[i:i + size] for i in range(0, len(chromosomes), size)]

    def plot_scan(
        self,
        scan_df: pd.DataFrame,
        thresholds: Optional[Dict[float, float]] = None,
        chr_groups: Optional[List[List[str]]] = None,
        chr_gap: float = 25.0,
        colors: Sequence[str] = ("#38638D", "#C05640"),
        title: Optional[str] = None,
        axes_pair=None,
    ):
        """
        Plot a LOD profile across two chromosome groups.

        :param scan_df: Scan result (columns: marker, chr, pos, lod)
        :param thresholds: {alpha: LOD} genome-wide thresholds drawn as horizontal lines
        :param chr_groups: Chromosomes of each panel; default splits the genome in half
        :param chr_gap: Gap between chromosomes (cM)
        :param axes_pair: Two Matplotlib Axes objects, one per panel
        """
        logger.info("Plotting LOD profile...")
        if axes_pair is None or len(axes_pair) != 2:
            raise ValueError("Please provide two Matplotlib Axes objects for plotting.")
        chromosomes = list(dict.fromkeys(scan_df["chr"].astype(str)))
        if chr_groups is None:
            chr_groups = self.split_chromosomes(chromosomes, 2)
        chr_groups = (list(chr_groups) + [[]])[:2]

        ymax = max(float(scan_df["lod"].max()), max((thresholds or {}).values(), default=0.0)) * 1.1 or 1.0
        line_styles = ["--", ":", "-."]
        for ax, group in zip(axes_pair, chr_groups):
            offset = 0.0
            centers = {}
            for i, chrom in enumerate(group):
                sub = scan_df[scan_df["chr"].astype(str) == str(chrom)]
                if sub.empty:
                    continue
                x = sub["pos"].values - sub["pos"].min() + offset
                ax.plot(x, sub["lod"].values, color=colors[i % len(colors)], linewidth=1.2)
                centers[chrom] = (x.min() + x.max()) / 2
                offset = x.max() + chr_gap
            for k, (alpha, value) in enumerate(sorted((thresholds or {}).items())):
                ax.axhline(value, color="gray", linestyle=line_styles[k % len(line_styles)], linewidth=1,
                           label=f"{100 * (1 - alpha):.0f}% threshold ({value:.2f})")
            ax.set_xticks(list(centers.values()), list(centers.keys()))
            ax.set_xlim(-chr_gap / 2, max(offset - chr_gap / 2, 1.0))
            ax.set_ylim(0, ymax)
            ax.set_xlabel("Chromosome")
            ax.set_ylabel("LOD")
            ax.spines[['top', 'right']].set_visible(False)
            if thresholds:
                ax.legend(loc="upper right", frameon=False, fontsize=8)
        if title is not None:
            axes_pair[0].set_title(title)

    def plot_rf(self, rf: pd.DataFrame, lod: pd.DataFrame, cmap: str = "RdYlBu", ax=None):
        """
        Plot recombination fractions (lower triangle) and linkage LOD (upper triangle).
        """
        logger.info("Plotting recombination fraction heatmap...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        n = rf.shape[0]
        # both triangles on a 0-1 scale where 1 means tight linkage
        lod_scaled = np.clip(np.nan_to_num(lod.values, nan=0.0) / 12.0, 0, 1)
        rf_scaled = 1 - np.clip(np.nan_to_num(rf.values, nan=0.5) * 2, 0, 1)
        mat = np.where(np.tril(np.ones((n, n), dtype=bool), k=-1), rf_scaled, lod_scaled)
        np.fill_diagonal(mat, np.nan)
        image = ax.imshow(mat, cmap=mpl.colormaps.get_cmap(cmap).reversed(), vmin=0, vmax=1, interpolation="nearest")
        ax.figure.colorbar(image, ax=ax, shrink=0.6, label="Linkage (LOD / 12 above, 1 - 2r below)")
        ax.set_xticks([])
        ax.set_yticks([])
        ax.set_xlabel("Markers")
        ax.set_ylabel("Markers")

    def plot_manhattan(self, df, point_size=5, chr_unit='mb', chr_gap=0, chr_colors=None,
                       sig_threshold=None, sig_line_style=None,
                       xlabel=None, ylabel=None, title=None, ax=None):
        """
        Plot Manhattan plot for GWAS summary statistics.

        :param df: DataFrame containing summary statistics (columns: chr, ps, p_wald)
        :param point_size: Point size for Manhattan plot
        :param chr_unit: Position unit, one of ['mb', 'kb', 'bp']
        :param chr_gap: Gap between chromosomes in the unit specified
        :param chr_colors: Colors cycled over chromosomes
        :param sig_threshold: Significance p-value threshold: float, list or {label: p}
        :param sig_line_style: Style of the significance line
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting Manhattan plot...")
        unit_factors = {'mb': 1e-6, 'kb': 1e-3, 'bp': 1}
        factor = unit_factors.get(chr_unit.lower(), 1e-6)

        df = df.dropna(subset=["p_wald"]).copy()
        df["plot_value"] = -np.log10(df["p_wald"].clip(lower=1e-300))
        df["chr"] = df["chr"].astype(str).str.replace("scaffold", "")
        df["ps"] = df["ps"] * factor
        chromosomes = sorted(df["chr"].unique(), key=natural_key)

        if chr_colors is None:
            chr_colors = ["#B8B0C3", "#38638D"]

        chrom_start = {}
        chrom_center = {}
        current_pos = 0
        for chrom in chromosomes:
            group = df[df["chr"] == chrom]
            chrom_start[chrom] = current_pos
            chrom_center[chrom] = current_pos + group["ps"].max() / 2
            current_pos += group["ps"].max() + chr_gap

        for i, chrom in enumerate(chromosomes):
            group = df[df["chr"] == chrom]
            ax.scatter(group["ps"] + chrom_start[chrom], group["plot_value"],
                       color=chr_colors[i % len(chr_colors)], s=point_size)

        line_params = {'color': 'gray', 'linestyle': '--', 'linewidth': 1}
        if sig_line_style:
            line_params.update(sig_line_style)

        if sig_threshold is not None:
            if isinstance(sig_threshold, dict):
                items = list(sig_threshold.items())
            elif isinstance(sig_threshold, (list, tuple)):
                items = [(f"Threshold {t:.2e}", t) for t in sig_threshold]
            else:
                items = [(f"Threshold {sig_threshold:.2e}", sig_threshold)]
            for label, threshold in items:
                ax.axhline(-np.log10(threshold), **line_params, label=label)
            ax.legend(loc="upper right", frameon=False)
        else:
            logger.info("No significance threshold provided; skipping threshold line.")

        ax.set_xticks(list(chrom_center.values()), list(chrom_center.keys()))
        ax.tick_params(axis='x', which='major', rotation=90)
        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel(xlabel if xlabel is not None else f"Chromosome Position ({chr_unit.upper()})")
        ax.set_ylabel(ylabel if ylabel is not None else r"$-\log_{10}(p)$")
        ax.set_xlim(0, current_pos)
        ax.set_ylim(0, ax.get_ylim()[1])
        ax.set_title(title if title is not None else "Manhattan Plot")

    def plot_qq(self, df, point_size=5, xlabel=None, ylabel=None, title=None, ax=None):
        """
        Plot QQ plot for GWAS summary statistics.

        :param df: DataFrame containing summary statistics (columns: p_wald).
        """
        logger.info("Plotting QQ plot...")
        pvalues = df["p_wald"].dropna().clip(lower=1e-300)
        observed = -np.log10(np.sort(pvalues))
        expected = -np.log10(np.linspace(1 / len(pvalues), 1, len(pvalues)))

        ax.scatter(expected, observed, s=point_size, color="#38638D")
        ax.plot([0, max(expected)], [0, max(expected)], color="gray", linestyle="--", linewidth=1)
        ax.set_xlabel(xlabel if xlabel is not None else r"Expected $-\log_{10}(p)$")
        ax.set_ylabel(ylabel if ylabel is not None else r"Observed $-\log_{10}(p)$")
        ax.set_title(title if title is not None else "QQ Plot")

    def plot_ld_heatmap(self, ld_df: pd.DataFrame, plot_value: bool = False, cmap=None, ax=None):
        """
        Plot a triangular LD heatmap.

        :param ld_df: LD table (columns: SNP_A, BP_A, SNP_B, BP_B, R2)
        :param plot_value: Whether to print r² values in the cells
        :param cmap: Colormap for LD heatmap
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting LD heatmap...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")

        snp_pos = pd.concat([
            ld_df[["SNP_A", "BP_A"]].set_axis(["snp", "bp"], axis=1),
            ld_df[["SNP_B", "BP_B"]].set_axis(["snp", "bp"], axis=1),
        ]).drop_duplicates("snp").sort_values("bp", kind="mergesort")
        snp_index = {snp: i for i, snp in enumerate(snp_pos["snp"])}
        n_snps = len(snp_index)

        ld_matrix = np.zeros((n_snps, n_snps))
        for snp_a, snp_b, r2 in zip(ld_df["SNP_A"], ld_df["SNP_B"], ld_df["R2"]):
            i, j = snp_index[snp_a], snp_index[snp_b]
            ld_matrix[i, j] = ld_matrix[j, i] = 0.0 if pd.isna(r2) else r2

        cmap = mpl.colormaps.get_cmap(cmap or 'Reds')
        norm = mpl.colors.Normalize(vmin=0, vmax=1)

        # one diamond per pair, rotated so the matrix diagonal lies along the x axis
        patches = []
        values = []
        for offset in range(1, n_snps):
            diag_values = np.diag(ld_matrix, -offset)
            values.extend(diag_values)
            for j in np.arange(0.5, len(diag_values) + 0.5):
                patches.append(RegularPolygon((j + offset * 0.5, (n_snps - offset) / 2), numVertices=4, radius=0.5))

        collection = PatchCollection(patches)
        collection.set_array(np.asarray(values))
        collection.set_cmap(cmap)
        collection.set_norm(norm)
        ax.add_collection(collection)
        ax.set_aspect('equal')
        ax.set_xlim(0.5, max(n_snps - 0.5, 1.0))
        ax.set_ylim(-0.1, n_snps / 2 + 0.1)
        ax.set_axis_off()

        cax = ax.inset_axes([0.85, 0.05, 0.03, 0.5])
        ax.figure.colorbar(mpl.cm.ScalarMappable(norm=norm, cmap=cmap), cax=cax, label=r"$r^2$")

        if plot_value:
            for patch, value in zip(patches, values):
                ax.text(patch.xy[0], patch.xy[1], f"{value:.2f}", ha="center", va="center", fontsize=6,
                        color="white" if value > 0.5 else "black")

        for snp, i in snp_index.items():
            ax.text(i + 0.5, n_snps / 2 + 0.05, snp, rotation=90, ha="center", va="bottom", fontsize=6)

    def plot_regional(
        self,
        gwas_df: pd.DataFrame,
        r2: pd.Series,
        lead: str,
        cmap: str = "viridis",
        point_size: float = 20,
        ax: axes.Axes = None,
    ):
        """
        Regional association plot coloured by LD with the lead SNP.

        :param gwas_df: GWAS table (columns: rs, chr, ps, p_wald) restricted to the region
        :param r2: r² of each SNP with the lead SNP, indexed by rs
        :param lead: Lead SNP ID
        """
        logger.info(f"Plotting regional association around {lead}...")
        df = gwas_df.copy()
        df["r2"] = df["rs"].map(r2)
        df["logp"] = -np.log10(df["p_wald"].clip(lower=1e-300))
        df["mb"] = df["ps"] / 1e6
        norm = mpl.colors.Normalize(vmin=0, vmax=1)

        other = df[df["rs"] != lead]
        points = ax.scatter(other["mb"], other["logp"], c=other["r2"].fillna(0), cmap=cmap, norm=norm,
                            s=point_size, edgecolors="none")
        lead_row = df[df["rs"] == lead]
        ax.scatter(lead_row["mb"], lead_row["logp"], marker="D", color="#C05640", s=point_size * 2, label=lead)
        ax.figure.colorbar(points, ax=ax, label=r"$r^2$ with lead SNP")
        chrom = df["chr"].iloc[0] if not df.empty else ""
        ax.set_xlabel(f"Chromosome {chrom} (Mb)")
        ax.set_ylabel(r"$-\log_{10}(p)$")
        ax.spines[['top', 'right']].set_visible(False)
        ax.legend(loc="upper right", frameon=False)

    def plot_ld_decay(self, decay_df: pd.DataFrame, r2_threshold: Optional[float] = None, ax=None):
        """
        Plot mean r² against physical distance.

        :param decay_df: Output of ld_decay (columns: bin_mid, mean_r2)
        """
        logger.info("Plotting LD decay...")
        kb = decay_df["bin_mid"] / 1e3
        ax.plot(kb, decay_df["mean_r2"], color="#38638D", marker="o", markersize=3, linewidth=1)
        if r2_threshold is not None:
            ax.axhline(r2_threshold, color="gray", linestyle="--", linewidth=1, label=f"$r^2$ = {r2_threshold}")
            ax.legend(loc="upper right", frameon=False)
        ax.set_xlabel("Distance (kb)")
        ax.set_ylabel(r"Mean $r^2$")
        ax.set_ylim(0, 1)
        ax.spines[['top', 'right']].set_visible(False)

    def plot_pcoa(self, coords: pd.DataFrame, explained: pd.Series, labels: Optional[pd.Series] = None,
                  point_size: float = 20, ax=None):
        """
        Scatter the first two principal coordinates, coloured by cluster.
        """
        logger.info("Plotting PCoA...")
        cols = list(coords.columns[:2])
        if labels is None:
            ax.scatter(coords[cols[0]], coords[cols[1]], s=point_size, color="#38638D")
        else:
            cmap = mpl.colormaps.get_cmap("tab10")
            for i, (label, idx) in enumerate(labels.groupby(labels).groups.items()):
                ax.scatter(coords.loc[idx, cols[0]], coords.loc[idx, cols[1]], s=point_size,
                           color=cmap(i % 10), label=f"Cluster {label}")
            ax.legend(loc="best", frameon=False, fontsize=8)
        ax.set_xlabel(f"{cols[0]} ({explained.iloc[0]:.1f}%)")
        ax.set_ylabel(f"{cols[1]} ({explained.iloc[1]:.1f}%)" if len(cols) > 1 else "")
        ax.spines[['top', 'right']].set_visible(False)

    def plot_bic(self, bic: pd.Series, chosen_k: Optional[int] = None, ax=None):
        """
        Plot BIC against the number of clusters.
        """
        logger.info("Plotting BIC curve...")
        ax.plot(bic.index, bic.values, color="#38638D", marker="o")
        if chosen_k is not None:
            ax.scatter([chosen_k], [bic.loc[chosen_k]], color="#C05640", zorder=5, label=f"K = {chosen_k}")
            ax.legend(loc="upper right", frameon=False)
        ax.set_xlabel("Number of clusters (K)")
        ax.set_ylabel("BIC")
        ax.spines[['top', 'right']].set_visible(False)


def save_figure(fig, path: str, dpi: int = 300):
    fig.tight_layout()
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Figure saved to {path}")
