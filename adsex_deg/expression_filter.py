"""Low-expression filtering and TMM library-size normalization.

Pipeline:
  1. Keep genes reaching min_count reads (as CPM in a median-sized library)
     in at least as many samples as the smallest sex × condition group,
     with a minimum total count across samples.
  2. Compute TMM normalization factors on the surviving genes, using the
     assignment-summary library sizes.

Both steps are delegated to the DE engine: the edgeR backend runs
edgeR::filterByExpr and calcNormFactors(method="TMM") in R. Without an
engine, or for backends without R, the equivalent helpers in utils.stats
are used.

The effective library size of each sample is libsize × norm_factor.
"""

import logging
from typing import Optional

import pandas as pd

from .de_engine import DEEngine
from .utils.stats import filter_and_tmm

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)


def filter_and_normalize(
    counts: pd.DataFrame,
    samples: pd.DataFrame,
    group_col: str = "group",
    libsize_col: Optional[str] = "libsize",
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: int = 10,
    min_prop: float = 0.7,
    engine: Optional[DEEngine] = None,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Filter lowly expressed genes and attach TMM factors to the metadata.

    Args:
        counts: Genes × samples raw count matrix.
        samples: Sample metadata indexed by sample, aligned to counts columns.
        group_col: Metadata column holding the experimental group.
        libsize_col: Metadata column with library sizes. None uses column
            sums of the unfiltered matrix.
        min_count: See utils.stats.filter_by_expr.
        min_total_count: See utils.stats.filter_by_expr.
        large_n: See utils.stats.filter_by_expr.
        min_prop: See utils.stats.filter_by_expr.
        engine: Backend whose normalize method computes the keep-mask and
            factors. None uses utils.stats.filter_and_tmm.

    Returns:
        Tuple (filtered_counts, samples) where samples is a copy with
        'norm_factors' and 'eff_libsize' columns added.

    Raises:
        ValueError: If required metadata columns are missing, samples are
            misaligned, or no gene passes the filter.
    """
    required = {group_col} | ({libsize_col} if libsize_col else set())
    missing = required - set(samples.columns)
    if missing:
        raise ValueError(f"Sample metadata missing columns: {missing}")
    if list(samples.index) != list(counts.columns):
        raise ValueError("Sample metadata is not aligned to count matrix columns.")

    lib_sizes = samples[libsize_col] if libsize_col else counts.sum(axis=0)
    normalize = engine.normalize if engine is not None else filter_and_tmm

    keep, norm_factors = normalize(
        counts,
        samples[group_col],
        lib_sizes=lib_sizes,
        min_count=min_count,
        min_total_count=min_total_count,
        large_n=large_n,
        min_prop=min_prop,
    )
    n_kept = int(keep.sum())
    log.info("Expression filter kept %d of %d genes.", n_kept, len(keep))
    if n_kept == 0:
        raise ValueError(
            "No genes passed the expression filter "
            f"(min_count={min_count}, min_total_count={min_total_count})."
        )

    filtered = counts.loc[keep.reindex(counts.index).to_numpy()]
    samples = samples.copy()
    samples["norm_factors"] = norm_factors.reindex(samples.index).to_numpy()
    samples["eff_libsize"] = lib_sizes.astype(float) * samples["norm_factors"]
    log.info(
        "TMM factors range %.3f to %.3f.",
        samples["norm_factors"].min(), samples["norm_factors"].max(),
    )
    return filtered, samples
