"""
adsex_deg: Sex-stratified differential gene expression analysis of bulk
RNA-seq from an Alzheimer's disease cohort.

Analyses:
    1. sample_metadata    : Per-sample library sizes, sex and condition
    2. count_matrix       : Raw count matrix loading and gene annotation
    3. expression_filter  : filterByExpr-style filtering and TMM factors
    4. de_engine          : GLM fitting and contrast tests (edgeR / pyDESeq2)
    5. contrast_aggregator: Per-comparison BH correction and wide merge
    6. classifier         : Fold-change / FDR thresholding into gene sets
    7. pipeline           : End-to-end run with MDS, scatter, Venn and UpSet plots
"""

__version__ = "0.1.0"
