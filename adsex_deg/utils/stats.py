"""Shared statistical functions used across analysis modules.

The normalization helpers follow the edgeR conventions (filterByExpr,
calcNormFactors(method="TMM"), cpm(log=TRUE) and plotMDS) so that results
line up with the R scripts this package replaces.
"""

from typing import Optional
import numpy as np
import pandas as pd
from scipy.stats import rankdata
from statsmodels.stats.multitest import multipletests

_TOL = 1e-14


def apply_bh_correction(
    df: pd.DataFrame,
    pvalue_col: str = "PValue",
    fdr_col: str = "FDR",
) -> pd.DataFrame:
    """Apply Benjamini-Hochberg FDR correction to a p-value column.

    Correction is computed over the non-missing p-values of this table only;
    callers correct each contrast separately before merging. Rows with a
    missing p-value get a missing FDR.

    Args:
        df: DataFrame containing a column of p-values.
        pvalue_col: Name of the column containing raw p-values.
        fdr_col: Name of the column to write adjusted p-values to.

    Returns:
        Copy of df with the FDR column added.
    """
    if pvalue_col not in df.columns:
        raise ValueError(f"Column '{pvalue_col}' not found; cannot apply BH correction.")
    df = df.copy()
    pvals = df[pvalue_col]
    valid = pvals.notna()
    fdr = pd.Series(np.nan, index=df.index, dtype=float)
    if valid.any():
        _, adjusted, _, _ = multipletests(pvals[valid].to_numpy(dtype=float), method="fdr_bh")
        fdr[valid] = adjusted
    df[fdr_col] = fdr
    return df


def _lib_sizes(counts: pd.DataFrame, lib_sizes: Optional[pd.Series]) -> pd.Series:
    if lib_sizes is None:
        return counts.sum(axis=0).astype(float)
    if not isinstance(lib_sizes, pd.Series):
        return pd.Series(np.asarray(lib_sizes, dtype=float), index=counts.columns)
    lib = lib_sizes.astype(float)
    if not lib.index.equals(counts.columns):
        lib = lib.reindex(counts.columns)
    if lib.isna().any():
        missing = lib.index[lib.isna()].tolist()
        raise ValueError(f"Library sizes missing for samples: {missing}")
    return lib


def cpm(
    counts: pd.DataFrame,
    lib_sizes: Optional[pd.Series] = None,
    norm_factors: Optional[pd.Series] = None,
) -> pd.DataFrame:
    """Counts per million using (optionally normalized) library sizes."""
    lib = _lib_sizes(counts, lib_sizes)
    if norm_factors is not None:
        lib = lib * pd.Series(norm_factors, dtype=float).reindex(counts.columns)
    return counts.div(lib, axis=1) * 1e6


def log_cpm(
    counts: pd.DataFrame,
    lib_sizes: Optional[pd.Series] = None,
    norm_factors: Optional[pd.Series] = None,
    prior_count: float = 2.0,
) -> pd.DataFrame:
    """log2 counts per million with a library-size-scaled prior count.

    Matches edgeR's cpm(y, log=TRUE, prior.count=2): the prior added to each
    sample is proportional to its effective library size, and the library
    size is inflated by twice that prior.

    Args:
        counts: Genes × samples raw count matrix.
        lib_sizes: Per-sample library sizes (default: column sums).
        norm_factors: Per-sample normalization factors (default: 1).
        prior_count: Average prior count added to avoid log(0).

    Returns:
        Genes × samples log2-CPM matrix.
    """
    lib = _lib_sizes(counts, lib_sizes)
    if norm_factors is not None:
        lib = lib * pd.Series(norm_factors, dtype=float).reindex(counts.columns)
    prior = prior_count * lib / lib.mean()
    adj_lib = lib + 2 * prior
    return np.log2(counts.add(prior, axis=1).div(adj_lib, axis=1) * 1e6)


def filter_by_expr(
    counts: pd.DataFrame,
    groups: pd.Series,
    lib_sizes: Optional[pd.Series] = None,
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: int = 10,
    min_prop: float = 0.7,
) -> pd.Series:
    """Decide which genes have enough reads to be kept for DE testing.

    A gene is kept when its CPM reaches the cutoff in at least as many
    samples as the smallest experimental group, and its total count reaches
    min_total_count. The CPM cutoff corresponds to min_count reads in a
    library of median size. For groups larger than large_n the required
    sample count grows only by min_prop per extra sample.

    Args:
        counts: Genes × samples raw count matrix.
        groups: Group label per sample (index = sample IDs).
        lib_sizes: Per-sample library sizes (default: column sums).
        min_count: Minimum count in a median-sized library.
        min_total_count: Minimum total count across all samples.
        large_n: Group size beyond which min_prop scaling applies.
        min_prop: Fraction of samples beyond large_n that must pass.

    Returns:
        Boolean Series indexed by gene ID (True = keep).
    """
    lib = _lib_sizes(counts, lib_sizes)
    group_sizes = pd.Series(groups).value_counts()
    group_sizes = group_sizes[group_sizes > 0]
    if group_sizes.empty:
        raise ValueError("No sample groups supplied to filter_by_expr.")

    min_sample_size = float(group_sizes.min())
    if min_sample_size > large_n:
        min_sample_size = large_n + (min_sample_size - large_n) * min_prop

    cpm_cutoff = min_count / np.median(lib) * 1e6
    cpm_mat = cpm(counts, lib)
    keep_cpm = (cpm_mat >= cpm_cutoff).sum(axis=1) >= (min_sample_size - _TOL)
    keep_total = counts.sum(axis=1) >= (min_total_count - _TOL)
    return (keep_cpm & keep_total).rename("keep")


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float,
    sum_trim: float,
    a_cutoff: float,
) -> float:
    """Weighted trimmed mean of M-values of one sample against the reference."""
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        var = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    finite = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, var = log_r[finite], abs_e[finite], var[finite]
    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s
    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    f = np.sum(log_r[keep] / var[keep]) / np.sum(1.0 / var[keep])
    if np.isnan(f):
        f = 0.0
    return float(2 ** f)


def calc_norm_factors(
    counts: pd.DataFrame,
    lib_sizes: Optional[pd.Series] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    a_cutoff: float = -1e10,
) -> pd.Series:
    """Compute TMM normalization factors (trimmed mean of M-values).

    The reference sample is the one whose upper-quartile CPM is closest to
    the mean upper quartile. Each sample's factor is the precision-weighted
    mean log-ratio against the reference after trimming logratio_trim of
    the M-values and sum_trim of the A-values from each end. Factors are
    rescaled to a geometric mean of 1.

    Args:
        counts: Genes × samples raw count matrix (already filtered).
        lib_sizes: Per-sample library sizes (default: column sums).
        logratio_trim: Fraction of M-values trimmed from each tail.
        sum_trim: Fraction of A-values trimmed from each tail.
        a_cutoff: Minimum average log-expression for a gene to be used.

    Returns:
        Series of normalization factors indexed by sample.
    """
    lib = _lib_sizes(counts, lib_sizes).to_numpy()
    x = counts.to_numpy(dtype=float)
    x = x[(x > 0).any(axis=1)]
    if x.shape[0] == 0:
        raise ValueError("Cannot compute TMM factors: every gene has zero counts.")

    f75 = np.quantile(x / lib, 0.75, axis=0)
    if np.median(f75) < 1e-20:
        ref_col = int(np.argmax(np.sqrt(x).sum(axis=0)))
    else:
        ref_col = int(np.argmin(np.abs(f75 - f75.mean())))

    factors = np.array([
        _tmm_factor(
            x[:, i], x[:, ref_col], lib[i], lib[ref_col],
            logratio_trim, sum_trim, a_cutoff,
        )
        for i in range(x.shape[1])
    ])
    factors = factors / np.exp(np.mean(np.log(factors)))
    return pd.Series(factors, index=counts.columns, name="norm_factors")


def filter_and_tmm(
    counts: pd.DataFrame,
    groups: pd.Series,
    lib_sizes: Optional[pd.Series] = None,
    **filter_params,
) -> tuple[pd.Series, pd.Series]:
    """filter_by_expr keep-mask plus TMM factors computed on the kept genes.

    Returns:
        Tuple (keep, norm_factors). Factors are all 1 when no gene is kept.
    """
    keep = filter_by_expr(counts, groups, lib_sizes=lib_sizes, **filter_params)
    if not keep.any():
        return keep, pd.Series(1.0, index=counts.columns, name="norm_factors")
    return keep, calc_norm_factors(counts.loc[keep], lib_sizes=lib_sizes)


def mds_coordinates(
    logcpm: pd.DataFrame,
    top: int = 500,
    ndim: int = 2,
) -> pd.DataFrame:
    """Classical MDS on leading log-fold-change distances between samples.

    For every pair of samples the distance is the root-mean-square of the
    `top` largest squared log2-CPM differences (edgeR's plotMDS default).
    The resulting distance matrix is embedded with classical (Torgerson)
    scaling.

    Args:
        logcpm: Genes × samples log2-CPM matrix.
        top: Number of most-different genes used per pair.
        ndim: Number of MDS dimensions returned.

    Returns:
        DataFrame of shape (n_samples × ndim) with columns dim1..dimN. The
        fraction of variance per dimension is stored in ``attrs['var_explained']``.
    """
    x = logcpm.to_numpy(dtype=float)
    n_genes, n_samples = x.shape
    if n_samples < 3:
        raise ValueError(f"MDS needs at least 3 samples; got {n_samples}.")
    top = min(top, n_genes)

    dist = np.zeros((n_samples, n_samples))
    for i in range(1, n_samples):
        for j in range(i):
            d2 = (x[:, i] - x[:, j]) ** 2
            leading = np.partition(d2, n_genes - top)[n_genes - top:]
            dist[i, j] = dist[j, i] = np.sqrt(leading.mean())

    centering = np.eye(n_samples) - np.ones((n_samples, n_samples)) / n_samples
    b = -0.5 * centering @ (dist ** 2) @ centering
    eigvals, eigvecs = np.linalg.eigh(b)
    order = np.argsort(eigvals)[::-1]
    eigvals, eigvecs = eigvals[order], eigvecs[:, order]

    positive = np.clip(eigvals, 0, None)
    coords = eigvecs[:, :ndim] * np.sqrt(positive[:ndim])
    out = pd.DataFrame(
        coords,
        index=logcpm.columns,
        columns=[f"dim{k + 1}" for k in range(ndim)],
    )
    total = positive.sum()
    out.attrs["var_explained"] = (positive[:ndim] / total).tolist() if total > 0 else [0.0] * ndim
    return out
