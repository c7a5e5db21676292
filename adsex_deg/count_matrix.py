"""Raw count matrix loading, validation and gene annotation.

The count matrix is a featureCounts table: '#'-prefixed command header,
then a header row of Geneid, Chr, Start, End, Strand, Length followed by
one integer count column per aligned sample. Sample columns are named
after the BAM files, so a literal suffix marker is stripped to recover the
identifiers used in the sample metadata.

Gene annotation comes from a separate header-less table (gene ID, gene
name, chromosome, start, end) and is left-joined by gene ID. Genes without
an annotation row keep a null chromosome and coordinates and are labelled
'Unknown'.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from .sample_metadata import strip_sample_suffix
from .utils.io import load_annotation_table, load_featurecounts

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

UNKNOWN_GENE_NAME = "Unknown"


def validate_counts(counts: pd.DataFrame) -> pd.DataFrame:
    """Check that a genes × samples matrix holds unique, non-negative integer counts.

    Args:
        counts: Count matrix indexed by gene ID.

    Returns:
        The matrix cast to int64.

    Raises:
        ValueError: On an empty matrix, duplicate gene or sample IDs, or
            non-numeric, non-integer or negative counts.
    """
    if counts.shape[0] == 0 or counts.shape[1] == 0:
        raise ValueError(f"Count matrix is empty (shape {counts.shape}).")

    dup_genes = counts.index[counts.index.duplicated()].unique().tolist()
    if dup_genes:
        raise ValueError(f"Duplicate gene IDs in count matrix: {dup_genes[:10]}")
    dup_samples = counts.columns[counts.columns.duplicated()].unique().tolist()
    if dup_samples:
        raise ValueError(f"Duplicate sample columns in count matrix: {dup_samples}")

    numeric = counts.apply(pd.to_numeric, errors="coerce")
    bad = numeric.isna()
    if bad.any().any():
        cols = bad.columns[bad.any()].tolist()
        raise ValueError(f"Count matrix contains missing or non-numeric values in: {cols}")

    values = numeric.to_numpy(dtype=float)
    if (values < 0).any():
        raise ValueError("Count matrix contains negative values.")
    if not np.all(np.equal(np.mod(values, 1), 0)):
        raise ValueError("Count matrix contains non-integer values.")
    return numeric.astype("int64")


def load_count_matrix(
    path: str | Path,
    n_annotation_cols: int = 5,
    sample_suffix: Optional[str] = None,
) -> pd.DataFrame:
    """Load a featureCounts table as a validated genes × samples matrix.

    Args:
        path: Path to the tab-delimited count table.
        n_annotation_cols: Number of per-gene columns between the gene ID
            and the first sample column (5 for featureCounts: Chr, Start,
            End, Strand, Length).
        sample_suffix: Literal marker removed from sample column names.

    Returns:
        Integer DataFrame indexed by gene ID with one column per sample.
    """
    raw = load_featurecounts(path)
    if raw.shape[1] <= n_annotation_cols + 1:
        raise ValueError(
            f"Count matrix {path} has {raw.shape[1]} columns; expected a gene ID, "
            f"{n_annotation_cols} annotation columns and at least one sample."
        )

    id_col = raw.columns[0]
    counts = raw.set_index(id_col).iloc[:, n_annotation_cols:]
    counts.index = counts.index.astype(str)
    counts.index.name = "gene_id"
    counts.columns = [strip_sample_suffix(c, sample_suffix) for c in counts.columns]
    counts = validate_counts(counts)

    log.info("Loaded count matrix: %d genes × %d samples", *counts.shape)
    return counts


def load_annotation(
    path: str | Path,
    exclude_chromosomes: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """Load the gene annotation table indexed by gene ID.

    Args:
        path: Header-less annotation file (gene ID, name, chromosome, start, end).
        exclude_chromosomes: Chromosomes whose genes are removed before joining.

    Returns:
        DataFrame indexed by gene ID with 'gene_name', 'chromosome',
        'start' and 'end'.
    """
    ann = load_annotation_table(path)
    ann = ann.drop_duplicates(subset="gene_id", keep="first")
    if exclude_chromosomes:
        excluded = set(exclude_chromosomes)
        n_before = len(ann)
        ann = ann[~ann["chromosome"].isin(excluded)]
        log.info("Excluded %d annotated genes on %s", n_before - len(ann), sorted(excluded))
    return ann.set_index("gene_id")


def annotate_genes(counts: pd.DataFrame, annotation: pd.DataFrame) -> pd.DataFrame:
    """Left-join annotation onto the count matrix gene IDs.

    Args:
        counts: Genes × samples matrix indexed by gene ID.
        annotation: Output of load_annotation.

    Returns:
        DataFrame indexed by gene ID with 'gene_name', 'chromosome',
        'start', 'end'. Every gene of the matrix is present exactly once.
    """
    genes = pd.DataFrame(index=counts.index)
    genes = genes.join(annotation[["gene_name", "chromosome", "start", "end"]], how="left")
    n_unknown = genes["gene_name"].isna().sum()
    genes["gene_name"] = genes["gene_name"].fillna(UNKNOWN_GENE_NAME)
    if n_unknown:
        log.info("%d genes have no annotation; labelled '%s'.", n_unknown, UNKNOWN_GENE_NAME)
    return genes


def drop_excluded_chromosomes(
    counts: pd.DataFrame,
    annotation: pd.DataFrame,
    exclude_chromosomes: Iterable[str],
) -> pd.DataFrame:
    """Remove genes annotated to excluded chromosomes from the count matrix.

    Args:
        counts: Genes × samples matrix.
        annotation: Full (unfiltered) annotation indexed by gene ID.
        exclude_chromosomes: Chromosomes to drop (e.g. ['chrY']).

    Returns:
        Count matrix restricted to genes not on an excluded chromosome.
        Unannotated genes are kept.
    """
    excluded = set(exclude_chromosomes)
    chrom = annotation["chromosome"].reindex(counts.index)
    mask = ~chrom.isin(excluded)
    n_removed = (~mask).sum()
    if n_removed:
        log.info("Removed %d genes on %s from the count matrix.", n_removed, sorted(excluded))
    return counts[mask.to_numpy()]


def align_samples(counts: pd.DataFrame, samples: pd.DataFrame) -> pd.DataFrame:
    """Reorder sample metadata to the count matrix column order.

    Raises:
        ValueError: If the matrix and the metadata do not describe the same
            set of samples.
    """
    matrix_samples = set(counts.columns)
    meta_samples = set(samples.index)
    if matrix_samples != meta_samples:
        only_matrix = sorted(matrix_samples - meta_samples)
        only_meta = sorted(meta_samples - matrix_samples)
        raise ValueError(
            f"Sample mismatch between count matrix ({len(matrix_samples)}) and metadata "
            f"({len(meta_samples)}): only in matrix {only_matrix}, only in metadata {only_meta}."
        )
    return samples.loc[counts.columns]
