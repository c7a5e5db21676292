"""I/O helpers for loading and saving analysis data."""

from pathlib import Path
from typing import Optional
import pandas as pd
import yaml

SUMMARY_COLUMNS = ["sample", "status", "count"]
ANNOTATION_COLUMNS = ["gene_id", "gene_name", "chromosome", "start", "end"]
SAMPLE_SHEET_COLUMNS = ["sample", "sex", "condition"]


def _require_file(path: str | Path) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    return path


def load_alignment_summary(path: str | Path) -> pd.DataFrame:
    """Load a read-assignment summary as a long (sample, status, count) table.

    Two layouts are accepted:
      - long: three header-less tab-delimited columns (sample, status, count)
      - wide: the featureCounts ``.summary`` file, i.e. a 'Status' column
        followed by one column of counts per BAM/sample

    Args:
        path: Path to the summary file.

    Returns:
        DataFrame with columns ['sample', 'status', 'count'].

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the table has neither layout.
    """
    path = _require_file(path)
    df = pd.read_csv(path, sep="\t", header=None, dtype=str)
    if df.empty:
        raise ValueError(f"Alignment summary is empty: {path}")

    if df.iloc[0, 0] == "Status":
        wide = pd.read_csv(path, sep="\t")
        df = wide.melt(id_vars="Status", var_name="sample", value_name="count")
        df = df.rename(columns={"Status": "status"})[SUMMARY_COLUMNS]
    elif df.shape[1] == 3:
        df.columns = SUMMARY_COLUMNS
    else:
        raise ValueError(
            f"Alignment summary {path} must have 3 columns (sample, status, count) "
            f"or a featureCounts 'Status' header; found {df.shape[1]} columns."
        )

    df["count"] = pd.to_numeric(df["count"], errors="raise")
    return df


def load_featurecounts(path: str | Path) -> pd.DataFrame:
    """Load a raw featureCounts-style count table.

    Lines starting with '#' (the featureCounts command header) are skipped.
    The first remaining line is the column header.

    Args:
        path: Path to the tab-delimited count table.

    Returns:
        DataFrame with all columns as read (gene ID column first).
    """
    path = _require_file(path)
    return pd.read_csv(path, sep="\t", comment="#")


def load_annotation_table(path: str | Path) -> pd.DataFrame:
    """Load a header-less gene annotation table.

    Column order is the contract: gene ID, gene name, chromosome, start, end.

    Args:
        path: Path to the tab-delimited annotation file.

    Returns:
        DataFrame with columns ['gene_id', 'gene_name', 'chromosome',
        'start', 'end'].

    Raises:
        ValueError: If fewer than five columns are present.
    """
    path = _require_file(path)
    df = pd.read_csv(path, sep="\t", header=None, dtype={0: str, 1: str, 2: str})
    if df.shape[1] < len(ANNOTATION_COLUMNS):
        raise ValueError(
            f"Annotation table {path} needs {len(ANNOTATION_COLUMNS)} columns "
            f"({', '.join(ANNOTATION_COLUMNS)}); found {df.shape[1]}."
        )
    df = df.iloc[:, : len(ANNOTATION_COLUMNS)]
    df.columns = ANNOTATION_COLUMNS
    df["start"] = pd.to_numeric(df["start"], errors="coerce").astype("Int64")
    df["end"] = pd.to_numeric(df["end"], errors="coerce").astype("Int64")
    return df


def load_sample_sheet(path: str | Path) -> pd.DataFrame:
    """Load an explicit sample sheet (sample, sex, condition).

    Args:
        path: Path to a tab-delimited file with a header row.

    Returns:
        DataFrame indexed by sample with 'sex' and 'condition' columns.

    Raises:
        ValueError: If required columns are missing or samples repeat.
    """
    path = _require_file(path)
    df = pd.read_csv(path, sep="\t", dtype=str)
    missing = set(SAMPLE_SHEET_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"Sample sheet missing columns: {missing}")
    dupes = df["sample"][df["sample"].duplicated()].unique().tolist()
    if dupes:
        raise ValueError(f"Sample sheet lists samples more than once: {dupes}")
    return df.set_index("sample")[["sex", "condition"]]


def save_table(
    df: pd.DataFrame,
    path: str | Path,
    index: bool = True,
    index_label: Optional[str] = None,
) -> Path:
    """Save a DataFrame to CSV, creating parent directories.

    Args:
        df: Table to save.
        path: Output CSV path.
        index: Whether to write the index.
        index_label: Optional header for the index column.

    Returns:
        The output path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=index, index_label=index_label)
    return path


def load_config(path: str | Path) -> dict:
    """Load a YAML configuration file.

    Args:
        path: Path to a YAML config file.

    Returns:
        Dictionary of configuration parameters.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        return yaml.safe_load(f) or {}
