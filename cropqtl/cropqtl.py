from cropqtl.cross import read_cross, read_cross_csv, read_map, CROSS_TYPES
from cropqtl.genmap import est_rf, form_linkage_groups, est_map
from cropqtl.genotype import read_genotypes
from cropqtl.gwas import GWAS, GWAS_METHODS
from cropqtl.ld import compute_ld, ld_decay, decay_distance, plot_ld, plot_regional, plot_decay, region_snps, save_ld
from cropqtl.qtl import TraitAnalysisRunner, DEFAULT_LOD_THRESHOLD, DEFAULT_N_PERM, DEFAULT_PERM_ALPHA
from cropqtl.report import safe_name, save_result, save_table, write_session_info
from cropqtl.scan import SCAN_METHODS, perm_threshold
from cropqtl.structure import genetic_distance, pcoa, find_clusters, plot_structure, save_structure, DISTANCE_METRICS
from cropqtl.viz import Visualizer, save_figure
from cropqtl.log import logger

import argparse
import os
import re
import sys
from typing import List, Optional

import pandas as pd
import matplotlib.pyplot as plt

__version__ = "1.0.0"


def parse_names(names_arg: Optional[str]) -> List[str]:
    """Names given as a comma-separated list or a file with one name per line."""
    if not names_arg:
        return []
    candidate = os.path.expanduser(names_arg)
    if os.path.isfile(candidate):
        with open(candidate, "r", encoding="utf-8") as handle:
            return [line.strip() for line in handle if line.strip()]
    return [part.strip() for part in names_arg.split(",") if part.strip()]


def load_cross(args):
    if args.cross:
        return read_cross_csv(args.cross, cross_type=args.cross_type)
    if not (args.geno and args.pheno):
        raise ValueError("Provide either --cross or both --geno and --pheno.")
    return read_cross(args.geno, args.pheno, args.map, cross_type=args.cross_type)


def run_map(args):
    """Estimate recombination fractions, form linkage groups and build a map."""
    logger.info("Initializing map construction...")
    cross = load_cross(args)
    rf, lod = est_rf(cross)
    groups = form_linkage_groups(rf, lod, max_rf=args.max_rf, min_lod=args.min_lod)
    mapped = est_map(cross, groups, rf=rf)

    prefix = os.path.join(args.out_dir, args.out_name)
    save_table(mapped.gmap.reset_index(), f"{prefix}.map.csv")
    save_table(groups.reset_index(), f"{prefix}.groups.csv")
    if args.plot_rf:
        order = mapped.markers
        fig, ax = plt.subplots(figsize=(args.width, args.height))
        Visualizer().plot_rf(rf.loc[order, order], lod.loc[order, order], ax=ax)
        save_figure(fig, f"{prefix}.rf.{args.format}")
    logger.info("Map construction completed!")


def run_scan(args):
    """Per-trait genome scan, permutation test and multi-locus model."""
    logger.info("Initializing QTL scan...")
    cross = load_cross(args)
    if args.map_cross:
        cross = cross.with_map(read_map(args.map_cross))
    traits = parse_names(args.traits) or cross.traits
    runner = TraitAnalysisRunner(
        cross,
        method=args.method,
        n_perm=args.n_perm,
        seed=args.seed,
        perm_alpha=args.perm_alpha,
        min_separation=args.min_separation,
        error_prob=args.error_prob,
        n_draws=args.n_draws,
        out_dir=args.out_dir,
        plot=not args.no_plot,
        fmt=args.format,
    )
    results = runner.analyze_many(traits, args.threshold, threads=args.threads)
    for trait, result in results.items():
        thresholds = perm_threshold(result.perms, runner.perm_alpha)
        save_result(result, out_dir=args.out_dir, out_name=f"{args.out_name}.{safe_name(trait)}",
                    thresholds=thresholds)
    n_full = sum(r.kind == "full" for r in results.values())
    logger.info(f"QTL scan completed: {n_full} of {len(results)} trait(s) with loci above LOD {args.threshold}.")


def run_gwas(args):
    """Run GWAS with the mixed or general linear model."""
    logger.info("Initializing GWAS analysis...")
    gwas = GWAS(method=args.method, n_pcs=args.n_pcs, maf=args.maf, impute=args.impute)
    genotype, phenotype = gwas.load(args.geno, args.phe, fmt=args.geno_format, map_file=args.map)
    traits = parse_names(args.traits) or list(phenotype.columns)
    for trait in traits:
        result = gwas.compute(genotype, phenotype, trait)
        gwas.persist(result, out_dir=args.out_dir, out_name=args.out_name)
        if not args.no_plot:
            gwas.visualize(result, out_dir=args.out_dir, out_name=args.out_name, fmt=args.format,
                           sig_threshold=args.sig_threshold, width=args.width, height=args.height)
    logger.info("GWAS analysis completed!")


def parse_region(region: str):
    match = re.fullmatch(r"\s*([^:\s]+):(\d+)-(\d+)\s*", region or "")
    if not match:
        raise ValueError(f"Invalid region '{region}'; expected chr:start-end.")
    chrom, start, end = match.group(1), int(match.group(2)), int(match.group(3))
    if start > end:
        raise ValueError(f"Invalid region '{region}': start is after end.")
    return chrom, start, end


def run_ld(args):
    """Pairwise LD among selected SNPs, regional association and LD decay."""
    logger.info("Initializing LD analysis...")
    genotype = read_genotypes(args.geno, fmt=args.geno_format, map_file=args.map)
    snps = parse_names(args.snps)
    if args.region:
        chrom, start, end = parse_region(args.region)
        snps = snps + region_snps(genotype, chrom, start, end)
    if not snps and not args.decay:
        raise ValueError("Provide --snps and/or --region, or request --decay.")

    # every requested SNP is validated before anything is written
    ld = compute_ld(genotype, snps) if snps else None
    if args.lead and args.lead not in genotype.snps.index:
        raise ValueError(f"Lead SNP '{args.lead}' not found in genotype data.")
    gwas_table = None
    if args.gwas:
        gwas_table = pd.read_csv(args.gwas, sep=None, engine="python", dtype={"chr": str, "rs": str})

    prefix = os.path.join(args.out_dir, args.out_name)
    if ld is not None:
        save_ld(ld, args.out_dir, args.out_name)
        plot_ld(ld, f"{prefix}.ld.{args.format}", plot_value=args.plot_value, cmap=args.cmap,
                width=args.width, height=args.height)
    if gwas_table is not None:
        lead = args.lead or gwas_table.loc[gwas_table["p_wald"].idxmin(), "rs"]
        plot_regional(gwas_table, genotype, lead, f"{prefix}.regional.{args.format}", flank=args.flank)
    if args.decay:
        decay = ld_decay(genotype, max_distance=args.max_distance, bin_size=args.bin_size)
        save_table(decay, f"{prefix}.decay.tsv")
        distance = decay_distance(decay, args.r2_threshold)
        logger.info(f"LD decay distance: {distance / 1e3:.1f} kb")
        plot_decay(decay, f"{prefix}.decay.{args.format}", r2_threshold=args.r2_threshold)
    logger.info("LD analysis completed!")


def run_structure(args):
    """Genetic distances, PCoA and k-means clustering."""
    logger.info("Initializing population structure analysis...")
    genotype = read_genotypes(args.geno, fmt=args.geno_format, map_file=args.map)
    if args.maf > 0:
        genotype = genotype.filter_maf(args.maf)
    distance = genetic_distance(genotype, metric=args.metric)
    coords, axes = pcoa(distance, n_axes=args.n_axes)
    clusters = find_clusters(genotype, max_k=args.max_k, n_pca=args.n_pca, seed=args.seed, n_clusters=args.k)
    save_structure(args.out_dir, args.out_name, distance, coords, axes, clusters)
    plot_structure(coords, axes, clusters, os.path.join(args.out_dir, f"{args.out_name}.structure.{args.format}"),
                   width=args.width, height=args.height)
    logger.info("Population structure analysis completed!")


def read_summary(path: str) -> pd.DataFrame:
    df = pd.read_csv(path, sep=None, engine="python", dtype={"chr": str})
    missing = {"chr", "ps", "p_wald"} - set(df.columns)
    if missing:
        raise ValueError(f"Summary file is missing required columns: {sorted(missing)}")
    return df


def plot_manhattan(args):
    """Manhattan plot, optionally with a QQ plot beside it."""
    logger.info("Starting manhattan plot subcommand...")
    visualizer = Visualizer()
    df = read_summary(args.summary)
    if args.qq:
        fig, (ax_m, ax_q) = plt.subplots(1, 2, figsize=(args.width, args.height),
                                         gridspec_kw={"width_ratios": [4, 1]})
        visualizer.plot_qq(df, point_size=args.point_size, ax=ax_q)
    else:
        fig, ax_m = plt.subplots(figsize=(args.width, args.height))
    visualizer.plot_manhattan(df, point_size=args.point_size, chr_unit=args.chr_unit,
                              chr_colors=args.chr_colors, sig_threshold=args.sig_threshold, ax=ax_m)
    save_figure(fig, os.path.join(args.out_dir, f"{args.out_name}.{args.format}"))
    logger.info("Plotting completed!")


def plot_qq(args):
    """QQ plot of GWAS p-values."""
    logger.info("Starting qq plot subcommand...")
    df = read_summary(args.summary)
    fig, ax = plt.subplots(figsize=(args.width, args.height))
    Visualizer().plot_qq(df, point_size=args.point_size, ax=ax)
    save_figure(fig, os.path.join(args.out_dir, f"{args.out_name}.{args.format}"))
    logger.info("Plotting completed!")


def add_output_args(parser, out_name="output", width=10.0, height=4.0):
    parser.add_argument("--width", type=float, default=width, help="Figure width (default: %(default)s)")
    parser.add_argument("--height", type=float, default=height, help="Figure height (default: %(default)s)")
    parser.add_argument("--format", type=str, default="png", help="Output format, e.g., pdf or png (default: %(default)s)")
    parser.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    parser.add_argument("--out_name", type=str, default=out_name, help="Output file name prefix (default: %(default)s)")


def add_cross_args(parser):
    parser.add_argument("--cross", type=str, help="Cross file in csv layout (header, chromosome and position rows)")
    parser.add_argument("--geno", type=str, help="Genotype table (sample x marker, first column sample IDs)")
    parser.add_argument("--pheno", type=str, help="Phenotype table (sample x trait, first column sample IDs)")
    parser.add_argument("--map", type=str, help="Marker map with columns marker, chr, pos")
    parser.add_argument("--cross_type", type=str, default="f2", choices=CROSS_TYPES, help="Cross type (default: %(default)s)")


def add_genotype_args(parser):
    parser.add_argument("--geno", type=str, required=True, help="Genotype file (HapMap, numeric or VCF)")
    parser.add_argument("--geno_format", type=str, default="auto", choices=["auto", "hapmap", "numeric", "vcf"],
                        help="Genotype file format (default: %(default)s)")
    parser.add_argument("--map", type=str, help="SNP map (rs, chr, ps) for numeric genotypes")


def build_parser() -> argparse.ArgumentParser:
    description = """
    cropqtl: QTL mapping in experimental crosses, GWAS, LD and population structure analysis.
    """

    epilog = """
    Example usage:
    cropqtl map --cross cross.csv --out_dir results --out_name maize
    cropqtl scan --cross cross.csv --traits height --n_perm 1000 --seed 1 --out_dir results
    cropqtl gwas --geno panel.hmp.txt --phe flowering.csv --method mlm --out_dir results
    """

    parser = argparse.ArgumentParser(
        description=description,
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # map subcommand
    map_parser = subparsers.add_parser("map", help="Form linkage groups and estimate a genetic map")
    add_cross_args(map_parser)
    map_parser.add_argument("--max_rf", type=float, default=0.35, help="Maximum recombination fraction to link markers (default: %(default)s)")
    map_parser.add_argument("--min_lod", type=float, default=6.0, help="Minimum LOD to link markers (default: %(default)s)")
    map_parser.add_argument("--plot_rf", action="store_true", help="Plot the recombination fraction / LOD heatmap")
    add_output_args(map_parser, out_name="cross", width=8, height=8)
    map_parser.set_defaults(func=run_map)

    # scan subcommand
    scan_parser = subparsers.add_parser("scan", help="Genome scan with permutation thresholds and QTL model fitting")
    add_cross_args(scan_parser)
    scan_parser.add_argument("--map_cross", type=str, help="Map estimated by the map subcommand (marker, chr, pos) to scan over")
    scan_parser.add_argument("--traits", type=str, help="Comma-separated traits or a file with one trait per line (default: all)")
    scan_parser.add_argument("--method", type=str, default="hk", choices=SCAN_METHODS, help="Scan method (default: %(default)s)")
    scan_parser.add_argument("--threshold", type=float, default=DEFAULT_LOD_THRESHOLD, help="LOD threshold for candidate loci (default: %(default)s)")
    scan_parser.add_argument("--n_perm", type=int, default=DEFAULT_N_PERM, help="Number of permutations (default: %(default)s)")
    scan_parser.add_argument("--perm_alpha", type=float, nargs="+", default=list(DEFAULT_PERM_ALPHA), help="Significance levels of permutation thresholds (default: %(default)s)")
    scan_parser.add_argument("--seed", type=int, help="Random seed for permutations and imputations")
    scan_parser.add_argument("--min_separation", type=float, default=10.0, help="Minimum distance (cM) between modelled peak loci; 0 keeps every peak (default: %(default)s)")
    scan_parser.add_argument("--error_prob", type=float, default=1e-4, help="Genotyping error probability, strictly between 0 and 1 (default: %(default)s)")
    scan_parser.add_argument("--n_draws", type=int, default=16, help="Imputations for the imp method (default: %(default)s)")
    scan_parser.add_argument("--threads", type=int, default=1, help="Number of processes, one trait per task (default: %(default)s)")
    scan_parser.add_argument("--no_plot", action="store_true", help="Skip LOD profile plots")
    add_output_args(scan_parser, out_name="qtl")
    scan_parser.set_defaults(func=run_scan)

    # gwas subcommand
    gwas_parser = subparsers.add_parser("gwas", help="Run GWAS with a mixed (P3D) or general linear model")
    add_genotype_args(gwas_parser)
    gwas_parser.add_argument("--phe", type=str, required=True, help="Phenotype table (sample column + trait columns)")
    gwas_parser.add_argument("--traits", type=str, help="Comma-separated traits or a file with one trait per line (default: all)")
    gwas_parser.add_argument("--method", type=str, default="mlm", choices=GWAS_METHODS, help="Association model (default: %(default)s)")
    gwas_parser.add_argument("--n_pcs", type=int, default=3, help="Principal components as covariates (default: %(default)s)")
    gwas_parser.add_argument("--maf", type=float, default=0.05, help="Minimum minor allele frequency (default: %(default)s)")
    gwas_parser.add_argument("--impute", type=str, default="middle", choices=["middle", "mean"], help="Missing genotype imputation (default: %(default)s)")
    gwas_parser.add_argument("--sig_threshold", type=float, help="P-value line on the Manhattan plot (default: Bonferroni 0.05)")
    gwas_parser.add_argument("--no_plot", action="store_true", help="Skip Manhattan and QQ plots")
    add_output_args(gwas_parser, out_name="gwas", width=12, height=3.5)
    gwas_parser.set_defaults(func=run_gwas)

    # ld subcommand
    ld_parser = subparsers.add_parser("ld", help="Pairwise LD, regional association and LD decay")
    add_genotype_args(ld_parser)
    ld_parser.add_argument("--snps", type=str, help="Comma-separated SNP IDs or a file with one SNP per line")
    ld_parser.add_argument("--region", type=str, help="Region chr:start-end whose SNPs are added")
    ld_parser.add_argument("--gwas", type=str, help="GWAS table (rs, chr, ps, p_wald) for a regional association plot")
    ld_parser.add_argument("--lead", type=str, help="Lead SNP of the regional plot (default: smallest p-value)")
    ld_parser.add_argument("--flank", type=int, default=500000, help="Regional plot flank in bp (default: %(default)s)")
    ld_parser.add_argument("--plot_value", action="store_true", help="Print r² values in the heatmap")
    ld_parser.add_argument("--cmap", type=str, default="Reds", help="Colormap for the LD heatmap (default: %(default)s)")
    ld_parser.add_argument("--decay", action="store_true", help="Compute and plot LD decay")
    ld_parser.add_argument("--max_distance", type=int, default=500000, help="Maximum pair distance for LD decay in bp (default: %(default)s)")
    ld_parser.add_argument("--bin_size", type=int, default=10000, help="LD decay bin size in bp (default: %(default)s)")
    ld_parser.add_argument("--r2_threshold", type=float, help="r² level for the decay distance (default: half the first-bin r²)")
    add_output_args(ld_parser, out_name="ld", width=8, height=5)
    ld_parser.set_defaults(func=run_ld)

    # structure subcommand
    structure_parser = subparsers.add_parser("structure", help="Genetic distance, PCoA and k-means clustering")
    add_genotype_args(structure_parser)
    structure_parser.add_argument("--metric", type=str, default="ibs", choices=DISTANCE_METRICS, help="Distance metric (default: %(default)s)")
    structure_parser.add_argument("--maf", type=float, default=0.0, help="Minimum minor allele frequency (default: %(default)s)")
    structure_parser.add_argument("--n_axes", type=int, default=10, help="Principal coordinates to keep (default: %(default)s)")
    structure_parser.add_argument("--max_k", type=int, default=10, help="Largest number of clusters tried (default: %(default)s)")
    structure_parser.add_argument("--n_pca", type=int, help="Principal components used for clustering (default: all)")
    structure_parser.add_argument("--k", type=int, help="Fixed number of clusters (default: lowest BIC)")
    structure_parser.add_argument("--seed", type=int, help="Random seed for k-means")
    add_output_args(structure_parser, out_name="structure")
    structure_parser.set_defaults(func=run_structure)

    # plot subcommand
    plot_parser = subparsers.add_parser("plot", help="Visualize GWAS summary statistics")
    plot_subparsers = plot_parser.add_subparsers(dest="plot_type", help="Plot types")

    manhattan_parser = plot_subparsers.add_parser("manhattan", help="Generate Manhattan (and QQ) plots")
    manhattan_parser.add_argument("--summary", type=str, required=True, help="Path to summary statistics file (chr, ps, p_wald)")
    manhattan_parser.add_argument("--chr_unit", type=str, default="mb", help="Unit for x-axis (default: %(default)s)")
    manhattan_parser.add_argument("--chr_colors", type=str, nargs="+", help="Colors for chromosomes")
    manhattan_parser.add_argument("--sig_threshold", type=float, help="Significance p-value threshold for line plot")
    manhattan_parser.add_argument("--point_size", type=float, default=5, help="Point size (default: %(default)s)")
    manhattan_parser.add_argument("--qq", action="store_true", help="Whether to add a QQ plot (default: %(default)s)")
    add_output_args(manhattan_parser, width=10, height=3)
    manhattan_parser.set_defaults(plot_func=plot_manhattan)

    qq_parser = plot_subparsers.add_parser("qq", help="Generate QQ plot")
    qq_parser.add_argument("--summary", type=str, required=True, help="Path to summary statistics file (p_wald)")
    qq_parser.add_argument("--point_size", type=float, default=5, help="Point size (default: %(default)s)")
    add_output_args(qq_parser, width=4, height=4)
    qq_parser.set_defaults(plot_func=plot_qq)

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command or (args.command == "plot" and not getattr(args, "plot_type", None)):
        parser.print_help()
        return
    # Create output directory if it doesn't exist
    os.makedirs(args.out_dir, exist_ok=True)
    if hasattr(args, "plot_func"):
        args.plot_func(args)
    else:
        args.func(args)
    write_session_info(args.out_dir, argv=sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    main()
