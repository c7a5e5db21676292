"""Per-sample metadata from read-assignment summaries.

Builds one row per sample from the featureCounts assignment summary:

    Assigned, Unassigned_Unmapped, Unassigned_NoFeatures   (pivoted from status)
    totalcounts = Assigned + Unassigned_Unmapped + Unassigned_NoFeatures
    libsize     = Assigned + Unassigned_NoFeatures

Sex and condition come from an explicit sample sheet when one is given.
Otherwise they are parsed from the sample identifier using the study's
naming convention ('_F_' / '_M_' for sex, 'Control' / 'AD' for condition).
Identifiers that match neither token of a pair, or both, raise ValueError.

Usage:
    python -m adsex_deg.sample_metadata --summary data/counts.summary \\
        --output samples.csv [--sample-sheet data/samples.tsv]
"""

import argparse
import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from .utils.io import load_alignment_summary, load_sample_sheet, save_table

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

STATUS_COLUMNS = ["Assigned", "Unassigned_Unmapped", "Unassigned_NoFeatures"]
SEX_LEVELS = ("female", "male")
CONDITION_LEVELS = ("ctrl", "AD")
GROUP_LEVELS = [f"{sex}.{cond}" for sex in SEX_LEVELS for cond in CONDITION_LEVELS]

# Case-sensitive identifier tokens
_SEX_TOKENS = {"_F_": "female", "_M_": "male"}
_CONDITION_TOKENS = {"Control": "ctrl", "AD": "AD"}


# ── Identifier parsing ────────────────────────────────────────────────────────

def strip_sample_suffix(name: str, suffix: Optional[str] = None) -> str:
    """Recover a bare sample ID from an alignment file name.

    Removes any directory prefix and the literal suffix marker
    (e.g. 'Aligned.sortedByCoord.out.bam').
    """
    name = Path(str(name)).name
    if suffix:
        name = name.replace(suffix, "")
    return name


def _match_token(sample: str, tokens: dict, what: str) -> str:
    hits = {value for token, value in tokens.items() if token in sample}
    if len(hits) != 1:
        found = "no" if not hits else "conflicting"
        raise ValueError(
            f"Cannot infer {what} from sample identifier '{sample}': {found} "
            f"tokens among {list(tokens)}. Provide an explicit sample sheet."
        )
    return hits.pop()


def parse_sample_identifier(sample: str) -> tuple[str, str]:
    """Infer (sex, condition) from a sample identifier.

    Examples:
        'AD_F_01'      -> ('female', 'AD')
        'Control_M_02' -> ('male', 'ctrl')

    Raises:
        ValueError: If the identifier lacks, or has conflicting, sex or
            condition tokens.
    """
    sex = _match_token(sample, _SEX_TOKENS, "sex")
    condition = _match_token(sample, _CONDITION_TOKENS, "condition")
    return sex, condition


def _validate_levels(values: pd.Series, allowed: tuple, what: str) -> None:
    bad = sorted(set(values.dropna()) - set(allowed))
    if bad or values.isna().any():
        raise ValueError(
            f"Invalid {what} values {bad or ['<missing>']}; expected one of {list(allowed)}."
        )


def assign_attributes(
    sample_ids: list[str],
    sample_sheet: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Assign sex, condition and group to each sample.

    Args:
        sample_ids: Sample identifiers in output order.
        sample_sheet: Optional DataFrame indexed by sample with 'sex' and
            'condition' columns. When given it is the sole source of truth.

    Returns:
        DataFrame indexed by sample with 'sex', 'stype' and 'group' columns.

    Raises:
        ValueError: If a sample is absent from the sheet, carries invalid
            levels, or its identifier cannot be parsed.
    """
    if sample_sheet is not None:
        missing = [s for s in sample_ids if s not in sample_sheet.index]
        if missing:
            raise ValueError(f"Samples missing from sample sheet: {missing}")
        attrs = sample_sheet.loc[sample_ids, ["sex", "condition"]].copy()
        _validate_levels(attrs["sex"], SEX_LEVELS, "sex")
        _validate_levels(attrs["condition"], CONDITION_LEVELS, "condition")
    else:
        parsed = [parse_sample_identifier(s) for s in sample_ids]
        attrs = pd.DataFrame(parsed, index=sample_ids, columns=["sex", "condition"])

    attrs = attrs.rename(columns={"condition": "stype"})
    attrs.index.name = "sample"
    attrs["group"] = attrs["sex"] + "." + attrs["stype"]
    return attrs


# ── Summary pivot ─────────────────────────────────────────────────────────────

def build_sample_metadata(
    summary: pd.DataFrame,
    sample_sheet: Optional[pd.DataFrame] = None,
    sample_suffix: Optional[str] = None,
) -> pd.DataFrame:
    """Build the per-sample metadata table from a long assignment summary.

    Args:
        summary: DataFrame with columns ['sample', 'status', 'count'].
        sample_sheet: Optional explicit sex/condition table (see
            assign_attributes).
        sample_suffix: Literal marker stripped from sample names so they
            match the count matrix columns.

    Returns:
        DataFrame indexed by sample with the three status columns,
        'totalcounts', 'libsize', 'sex', 'stype' and 'group'.

    Raises:
        ValueError: If required columns or status categories are missing.
    """
    missing = {"sample", "status", "count"} - set(summary.columns)
    if missing:
        raise ValueError(f"Alignment summary missing columns: {missing}")

    df = summary[summary["count"] != 0].copy()
    df["sample"] = df["sample"].map(lambda s: strip_sample_suffix(s, sample_suffix))

    wide = df.pivot_table(
        index="sample", columns="status", values="count", aggfunc="sum", fill_value=0
    )
    wide.columns.name = None
    if wide.empty:
        raise ValueError("Alignment summary has no non-zero counts.")

    # A status with zero reads in every sample disappears after dropping
    # zero rows; only statuses never reported at all are an error.
    reported = set(summary["status"])
    absent = [c for c in STATUS_COLUMNS if c not in reported]
    if absent:
        raise ValueError(f"Alignment summary missing status categories: {absent}")
    for col in STATUS_COLUMNS:
        if col not in wide.columns:
            wide[col] = 0

    meta = wide[STATUS_COLUMNS].astype("int64")
    meta["totalcounts"] = meta[STATUS_COLUMNS].sum(axis=1)
    meta["libsize"] = meta["Assigned"] + meta["Unassigned_NoFeatures"]

    attrs = assign_attributes(meta.index.tolist(), sample_sheet=sample_sheet)
    meta = meta.join(attrs)
    meta.index.name = "sample"

    log.info(
        "Built metadata for %d samples: %s",
        len(meta),
        ", ".join(f"{g}={n}" for g, n in meta["group"].value_counts().sort_index().items()),
    )
    return meta


def load_sample_metadata(
    summary_path: str | Path,
    sample_sheet_path: Optional[str | Path] = None,
    sample_suffix: Optional[str] = None,
) -> pd.DataFrame:
    """Load the assignment summary (and optional sheet) and build metadata."""
    summary = load_alignment_summary(summary_path)
    sheet = load_sample_sheet(sample_sheet_path) if sample_sheet_path else None
    return build_sample_metadata(summary, sample_sheet=sheet, sample_suffix=sample_suffix)


# ── CLI ───────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Build per-sample library-size and sex/condition metadata."
    )
    parser.add_argument("--summary", required=True, help="Alignment summary table.")
    parser.add_argument("--output", required=True, help="Output CSV path.")
    parser.add_argument("--sample-sheet", default=None, help="Explicit sample sheet TSV.")
    parser.add_argument("--sample-suffix", default=None, help="Suffix stripped from sample names.")
    args = parser.parse_args()

    meta = load_sample_metadata(args.summary, args.sample_sheet, args.sample_suffix)
    save_table(meta, args.output)
    log.info("Sample metadata saved: %s", args.output)


if __name__ == "__main__":
    main()
