"""Run named contrasts against one fitted model and merge them per gene.

Default comparisons (one fitted model, four independent contrasts):

  female_AD_vs_ctrl :  female.AD − female.ctrl
  male_AD_vs_ctrl   :  male.AD − male.ctrl
  ctrl_vs_AD        :  ½(female.ctrl + male.ctrl) − ½(female.AD + male.AD)
  AD_vs_ctrl        :  ½(female.AD + male.AD) − ½(female.ctrl + male.ctrl)

Benjamini-Hochberg correction is applied within each comparison before the
merge. Per-comparison tables are never filtered before merging; all
thresholding happens once on the merged table (see classifier).
"""

import logging
from functools import reduce
from typing import Optional

import pandas as pd

from .de_engine import RESULT_COLUMNS, DEEngine, make_contrast
from .utils.stats import apply_bh_correction

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

DEFAULT_COMPARISONS = {
    "female_AD_vs_ctrl": {"female.AD": 1, "female.ctrl": -1},
    "male_AD_vs_ctrl": {"male.AD": 1, "male.ctrl": -1},
    "ctrl_vs_AD": {"female.ctrl": 0.5, "male.ctrl": 0.5, "female.AD": -0.5, "male.AD": -0.5},
    "AD_vs_ctrl": {"female.AD": 0.5, "male.AD": 0.5, "female.ctrl": -0.5, "male.ctrl": -0.5},
}

ANNOTATION_COLUMNS = ["gene_name", "chromosome", "start", "end"]
STAT_COLUMNS = RESULT_COLUMNS + ["FDR"]


def result_column(stat: str, comparison: str) -> str:
    """Column name of a statistic for one comparison in the merged table."""
    return f"{stat}_{comparison}"


def run_contrasts(
    engine: DEEngine,
    model,
    design: pd.DataFrame,
    comparisons: dict[str, dict[str, float]],
    fdr_threshold: float = 0.05,
) -> dict[str, pd.DataFrame]:
    """Test each comparison and add a per-comparison FDR column.

    Args:
        engine: Backend that produced model.
        model: Fitted model returned by engine.fit.
        design: Design matrix used for the fit.
        comparisons: Mapping of comparison name to group weights.
        fdr_threshold: Cutoff used only for the per-comparison log line.

    Returns:
        Dict of comparison name → DataFrame indexed by gene ID with columns
        logFC, stat, PValue and FDR.
    """
    if not comparisons:
        raise ValueError("No comparisons supplied.")
    results = {}
    for name, coefficients in comparisons.items():
        contrast = make_contrast(design, coefficients)
        table = engine.test(model, contrast)
        missing = set(RESULT_COLUMNS) - set(table.columns)
        if missing:
            raise ValueError(f"Engine result for '{name}' missing columns: {missing}")
        table = apply_bh_correction(table, pvalue_col="PValue", fdr_col="FDR")
        log.info(
            "%s: %d genes tested, %d with FDR < %g",
            name, len(table), int((table["FDR"] < fdr_threshold).sum()), fdr_threshold,
        )
        results[name] = table
    return results


def merge_contrast_results(
    results: dict[str, pd.DataFrame],
    annotation: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Full outer join of per-comparison tables on gene ID.

    Args:
        results: Output of run_contrasts.
        annotation: Optional per-gene annotation (gene_name, chromosome,
            start, end) indexed by gene ID, placed in front.

    Returns:
        One row per gene with columns '<stat>_<comparison>' for stat in
        logFC, stat, PValue, FDR.
    """
    if not results:
        raise ValueError("No contrast results to merge.")
    renamed = []
    for name, table in results.items():
        cols = [c for c in STAT_COLUMNS if c in table.columns]
        renamed.append(table[cols].rename(columns={c: result_column(c, name) for c in cols}))

    merged = reduce(
        lambda left, right: left.join(right, how="outer"),
        renamed,
    )
    merged.index.name = "gene_id"

    if annotation is not None:
        ann_cols = [c for c in ANNOTATION_COLUMNS if c in annotation.columns]
        merged = annotation[ann_cols].reindex(merged.index).join(merged)

    log.info("Merged %d comparisons over %d genes.", len(results), len(merged))
    return merged
