"""cropQTL package

Core modules:
- cropqtl.cross: Cross data (genotype codes, phenotypes, genetic map) and readers
- cropqtl.genmap: Recombination fractions, linkage groups and map estimation
- cropqtl.genoprob: Genotype probabilities and imputations
- cropqtl.scan: Single-QTL genome scans and permutation tests
- cropqtl.qtl: Per-trait analysis runner and multi-locus model fitting
- cropqtl.genotype: Diversity panel genotypes (HapMap, numeric, VCF)
- cropqtl.gwas: Mixed-model and general linear model GWAS
- cropqtl.ld: Linkage disequilibrium and LD decay
- cropqtl.structure: Genetic distance, PCoA and k-means clustering
- cropqtl.viz: Visualization utilities
- cropqtl.report: Result bundles and session information
- cropqtl.cropqtl: CLI entry point (main)
"""

__all__ = [
    "cross",
    "genmap",
    "genoprob",
    "scan",
    "qtl",
    "genotype",
    "gwas",
    "ld",
    "structure",
    "viz",
    "report",
    "cropqtl",
]
