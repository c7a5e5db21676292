"""Fold-change / FDR thresholding of merged contrast results.

Thresholds:
  - fdr_threshold : a gene is significant in comparison C when FDR_C < fdr_threshold
  - fc_threshold  : a linear fold change (default 2). It is converted once to
                    the log2 scale, lfc_cutoff = log2(fc_threshold), and compared
                    against the log2 fold changes reported by the engine.

For each comparison C two independent booleans are added:

    up_C   = logFC_C >=  lfc_cutoff
    down_C = logFC_C <= -lfc_cutoff

A gene is retained as a DEG when it is significant in at least one
comparison AND passes the fold-change cutoff in at least one comparison.
"""

import logging
from typing import Iterable

import numpy as np
import pandas as pd

from .contrast_aggregator import result_column

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

DIRECTIONS = ("up", "down")


def lfc_cutoff(fc_threshold: float) -> float:
    """Convert a linear fold-change threshold to the log2 scale.

    Raises:
        ValueError: If fc_threshold is not greater than 1.
    """
    if fc_threshold <= 1:
        raise ValueError(f"fc_threshold must be a fold change > 1; got {fc_threshold}.")
    return float(np.log2(fc_threshold))


def _check_fdr(fdr_threshold: float) -> None:
    if not 0 < fdr_threshold <= 1:
        raise ValueError(f"fdr_threshold must be in (0, 1]; got {fdr_threshold}.")


def _require_columns(df: pd.DataFrame, comparisons: Iterable[str], stats: Iterable[str]) -> None:
    missing = [
        result_column(stat, c) for c in comparisons for stat in stats
        if result_column(stat, c) not in df.columns
    ]
    if missing:
        raise ValueError(f"Merged results missing columns: {missing}")


def classify_genes(
    merged: pd.DataFrame,
    comparisons: Iterable[str],
    fc_threshold: float = 2.0,
) -> pd.DataFrame:
    """Add 'up_<C>' and 'down_<C>' boolean columns for each comparison.

    Missing fold changes classify as neither up nor down.

    Args:
        merged: Output of contrast_aggregator.merge_contrast_results.
        comparisons: Comparison names to classify.
        fc_threshold: Linear fold-change threshold.

    Returns:
        Copy of merged with the boolean columns added (or overwritten).
    """
    comparisons = list(comparisons)
    cutoff = lfc_cutoff(fc_threshold)
    _require_columns(merged, comparisons, ["logFC"])

    out = merged.copy()
    for c in comparisons:
        lfc = out[result_column("logFC", c)]
        out[f"up_{c}"] = (lfc >= cutoff).fillna(False).astype(bool)
        out[f"down_{c}"] = (lfc <= -cutoff).fillna(False).astype(bool)
    return out


def deg_mask(
    merged: pd.DataFrame,
    comparisons: Iterable[str],
    fdr_threshold: float = 0.05,
    fc_threshold: float = 2.0,
) -> pd.Series:
    """Boolean mask of genes significant in any comparison and large in any comparison."""
    comparisons = list(comparisons)
    _check_fdr(fdr_threshold)
    cutoff = lfc_cutoff(fc_threshold)
    _require_columns(merged, comparisons, ["logFC", "FDR"])

    significant = pd.concat(
        [merged[result_column("FDR", c)] < fdr_threshold for c in comparisons], axis=1
    ).any(axis=1)
    large = pd.concat(
        [merged[result_column("logFC", c)].abs() >= cutoff for c in comparisons], axis=1
    ).any(axis=1)
    return significant & large


def filter_degs(
    merged: pd.DataFrame,
    comparisons: Iterable[str],
    fdr_threshold: float = 0.05,
    fc_threshold: float = 2.0,
) -> pd.DataFrame:
    """Classify genes and keep only DEGs.

    Args:
        merged: Merged contrast results.
        comparisons: Comparison names.
        fdr_threshold: FDR cutoff (strict <).
        fc_threshold: Linear fold-change threshold (inclusive >=).

    Returns:
        Classified DataFrame restricted to retained genes.
    """
    comparisons = list(comparisons)
    classified = classify_genes(merged, comparisons, fc_threshold=fc_threshold)
    mask = deg_mask(classified, comparisons, fdr_threshold, fc_threshold)
    log.info(
        "Retained %d of %d genes (FDR < %g in any, |log2FC| >= %.3g in any).",
        int(mask.sum()), len(mask), fdr_threshold, lfc_cutoff(fc_threshold),
    )
    return classified[mask]


def gene_sets(
    classified: pd.DataFrame,
    comparisons: Iterable[str],
    directions: Iterable[str] = DIRECTIONS,
) -> dict[str, set]:
    """Named gene-ID sets '<comparison>_<direction>' from classification columns."""
    sets = {}
    for c in comparisons:
        for direction in directions:
            if direction not in DIRECTIONS:
                raise ValueError(f"Unknown direction '{direction}'; choose from {DIRECTIONS}.")
            col = f"{direction}_{c}"
            if col not in classified.columns:
                raise ValueError(f"Column '{col}' not found; run classify_genes first.")
            sets[f"{c}_{direction}"] = set(classified.index[classified[col]])
    return sets


def summarize_classification(
    classified: pd.DataFrame,
    comparisons: Iterable[str],
) -> pd.DataFrame:
    """Count up- and down-regulated genes per comparison."""
    rows = []
    for c in comparisons:
        n_up = int(classified[f"up_{c}"].sum())
        n_down = int(classified[f"down_{c}"].sum())
        rows.append({"comparison": c, "n_up": n_up, "n_down": n_down, "n_total": n_up + n_down})
        log.info("%s: %d up, %d down", c, n_up, n_down)
    return pd.DataFrame(rows)
