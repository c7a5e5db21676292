"""End-to-end sex-stratified differential expression pipeline.

Steps:
  1. Build sample metadata (library sizes, sex, condition) from the
     read-assignment summary, or from an explicit sample sheet.
  2. Load the featureCounts matrix, optionally drop genes on excluded
     chromosomes, and join gene annotation.
  3. Filter lowly expressed genes and compute TMM normalization factors.
  4. Fit one GLM with a coefficient per sex × condition group.
  5. Test every configured comparison, BH-correct each one, merge per gene.
  6. Classify up/down genes and keep DEGs (FDR and fold change).
  7. Write tables and plots (MDS, position and fold-change scatters, Venn,
     UpSet).

Outputs in output_dir:
  sample_metadata.csv, deg_merged.csv, deg_filtered.csv, deg_summary.csv,
  plots/*.png (+ .svg)

Usage:
    python -m adsex_deg.pipeline --config configs/default_config.yaml \\
        --output-dir results/ [--engine pydeseq2]
"""

import argparse
import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from .classifier import (
    classify_genes,
    filter_degs,
    gene_sets,
    lfc_cutoff,
    summarize_classification,
)
from .contrast_aggregator import DEFAULT_COMPARISONS, merge_contrast_results, run_contrasts
from .count_matrix import (
    align_samples,
    annotate_genes,
    drop_excluded_chromosomes,
    load_annotation,
    load_count_matrix,
)
from .de_engine import DEEngine, build_design_matrix, get_engine
from .expression_filter import filter_and_normalize
from .sample_metadata import load_sample_metadata
from .utils.io import load_config, save_table
from .utils.plotting import (
    plot_lfc_scatter,
    plot_mds,
    plot_position_scatter,
    plot_upset,
    plot_venn,
)
from .utils.stats import log_cpm, mds_coordinates

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)


# ── Plots ─────────────────────────────────────────────────────────────────────

def render_plots(
    filtered_counts: pd.DataFrame,
    samples: pd.DataFrame,
    classified: pd.DataFrame,
    degs: pd.DataFrame,
    comparisons: list[str],
    plot_dir: str | Path,
    plots_cfg: Optional[dict] = None,
    fc_threshold: float = 2.0,
) -> list[Path]:
    """Render all configured figures.

    Args:
        filtered_counts: Filtered count matrix (for MDS).
        samples: Metadata with 'libsize' and 'norm_factors'.
        classified: All genes with classification columns.
        degs: Retained DEGs (used for gene sets).
        comparisons: Comparison names.
        plot_dir: Output directory for figures.
        plots_cfg: 'plots' section of the config. Keys: mds_top,
            position (comparison list), lfc_scatter (pair), venn (list of
            set-name lists), upset (set-name list).
        fc_threshold: Linear fold-change threshold (guides on scatters).

    Returns:
        Paths of the figures written.
    """
    cfg = plots_cfg or {}
    plot_dir = Path(plot_dir)
    cutoff = lfc_cutoff(fc_threshold)
    written = []

    logcpm = log_cpm(filtered_counts, samples["libsize"], samples["norm_factors"])
    if logcpm.shape[1] >= 3:
        coords = mds_coordinates(logcpm, top=cfg.get("mds_top", 500))
        written.append(plot_mds(coords, samples, plot_dir / "mds.png"))
    else:
        log.warning("Fewer than 3 samples; skipping MDS plot.")

    for comparison in cfg.get("position", comparisons):
        path = plot_position_scatter(
            classified, comparison, plot_dir / f"position_{comparison}.png", lfc_cutoff=cutoff
        )
        if path:
            written.append(path)

    pair = cfg.get("lfc_scatter")
    if pair:
        x_comp, y_comp = pair
        path = plot_lfc_scatter(
            classified, x_comp, y_comp,
            plot_dir / f"lfc_{y_comp}_vs_{x_comp}.png", lfc_cutoff=cutoff,
        )
        if path:
            written.append(path)

    sets = gene_sets(degs, comparisons)
    requested = [n for names in cfg.get("venn", []) for n in names] + list(cfg.get("upset", []))
    unknown = sorted(set(requested) - set(sets))
    if unknown:
        raise ValueError(f"Plot config refers to unknown gene sets {unknown}; available: {sorted(sets)}.")
    for names in cfg.get("venn", []):
        subset = {n: sets[n] for n in names}
        path = plot_venn(subset, plot_dir / f"venn_{'__'.join(names)}.png")
        if path:
            written.append(path)

    upset_names = cfg.get("upset", list(sets))
    if len(upset_names) >= 2:
        path = plot_upset({n: sets[n] for n in upset_names}, plot_dir / "upset.png")
        if path:
            written.append(path)

    log.info("Wrote %d figures to %s", len(written), plot_dir)
    return written


# ── Full pipeline ─────────────────────────────────────────────────────────────

def run_full_pipeline(
    counts_path: str | Path,
    summary_path: str | Path,
    annotation_path: str | Path,
    output_dir: str | Path,
    sample_sheet_path: Optional[str | Path] = None,
    sample_suffix: Optional[str] = None,
    n_annotation_cols: int = 5,
    exclude_chromosomes: Optional[list[str]] = None,
    filter_params: Optional[dict] = None,
    engine: DEEngine | str = "edger",
    engine_params: Optional[dict] = None,
    comparisons: Optional[dict[str, dict[str, float]]] = None,
    fdr_threshold: float = 0.05,
    fc_threshold: float = 2.0,
    plots_cfg: Optional[dict] = None,
    make_plots: bool = True,
) -> pd.DataFrame:
    """Run the complete pipeline from raw tables to DEG tables and figures.

    Args:
        counts_path: featureCounts matrix.
        summary_path: Read-assignment summary.
        annotation_path: Header-less gene annotation table.
        output_dir: Root output directory.
        sample_sheet_path: Optional explicit sample sheet (sample, sex, condition).
        sample_suffix: Literal marker stripped from sample names.
        n_annotation_cols: Per-gene columns between gene ID and samples.
        exclude_chromosomes: Chromosomes removed before analysis.
        filter_params: Keyword arguments for filter_and_normalize.
        engine: A DEEngine instance or backend name.
        engine_params: Keyword arguments for get_engine when engine is a name.
        comparisons: Comparison name → group weights. Defaults to the
            female, male and combined AD vs control contrasts.
        fdr_threshold: FDR cutoff for DEGs.
        fc_threshold: Linear fold-change cutoff for DEGs.
        plots_cfg: Plot configuration (see render_plots).
        make_plots: Whether to render figures.

    Returns:
        Merged, classified results for every tested gene.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    comparisons = comparisons or DEFAULT_COMPARISONS
    if isinstance(engine, str):
        engine = get_engine(engine, **(engine_params or {}))

    samples = load_sample_metadata(summary_path, sample_sheet_path, sample_suffix)
    counts = load_count_matrix(counts_path, n_annotation_cols, sample_suffix)
    samples = align_samples(counts, samples)

    annotation = load_annotation(annotation_path)
    if exclude_chromosomes:
        counts = drop_excluded_chromosomes(counts, annotation, exclude_chromosomes)
    genes = annotate_genes(counts, annotation)

    filtered, samples = filter_and_normalize(
        counts, samples, engine=engine, **(filter_params or {})
    )
    save_table(samples, output_dir / "sample_metadata.csv")

    design = build_design_matrix(samples)
    model = engine.fit(filtered, design, samples["libsize"], samples["norm_factors"])
    try:
        results = run_contrasts(engine, model, design, comparisons, fdr_threshold)
    finally:
        engine.cleanup(model)
    merged = merge_contrast_results(results, annotation=genes)

    names = list(comparisons)
    classified = classify_genes(merged, names, fc_threshold=fc_threshold)
    degs = filter_degs(merged, names, fdr_threshold=fdr_threshold, fc_threshold=fc_threshold)
    summary = summarize_classification(degs, names)

    save_table(classified, output_dir / "deg_merged.csv")
    save_table(degs, output_dir / "deg_filtered.csv")
    save_table(summary, output_dir / "deg_summary.csv", index=False)
    log.info("Results saved to %s (%d DEGs).", output_dir, len(degs))

    if make_plots:
        render_plots(
            filtered, samples, classified, degs, names,
            output_dir / "plots", plots_cfg, fc_threshold,
        )
    return classified


def engine_options(engine_cfg: dict, name: str) -> dict:
    """Constructor options for one backend from the 'engine' config section.

    Each backend reads only its own subsection, e.g.
    ``engine: {name: edger, edger: {timeout: 600}, pydeseq2: {n_cpus: 4}}``.

    Raises:
        ValueError: If the section holds options outside a backend subsection.
    """
    stray = sorted(
        k for k, v in engine_cfg.items() if k != "name" and not isinstance(v, dict)
    )
    if stray:
        raise ValueError(
            f"Engine options {stray} must sit under a backend subsection "
            "(engine.edger or engine.pydeseq2)."
        )
    return dict(engine_cfg.get(name.lower()) or {})


def run_from_config(cfg: dict, **overrides) -> pd.DataFrame:
    """Run the pipeline from a parsed config dict.

    Keyword overrides (output_dir, engine, counts_path, ...) take precedence
    over config values when not None. An engine given by name reads its
    options from the matching engine subsection; an engine instance is used
    as is.
    """
    inputs = cfg.get("inputs", {})
    cm_cfg = cfg.get("count_matrix", {})
    engine_cfg = cfg.get("engine") or {}
    thresholds = cfg.get("thresholds", {})

    engine = overrides.pop("engine", None) or engine_cfg.get("name", "edger")
    engine_params = engine_options(engine_cfg, engine) if isinstance(engine, str) else None
    params = dict(
        counts_path=inputs.get("counts"),
        summary_path=inputs.get("summary"),
        annotation_path=inputs.get("annotation"),
        sample_sheet_path=inputs.get("sample_sheet"),
        output_dir=cfg.get("output_dir", "results"),
        sample_suffix=cm_cfg.get("sample_suffix"),
        n_annotation_cols=cm_cfg.get("n_annotation_cols", 5),
        exclude_chromosomes=cm_cfg.get("exclude_chromosomes"),
        filter_params=cfg.get("expression_filter"),
        engine=engine,
        engine_params=engine_params,
        comparisons=cfg.get("comparisons"),
        fdr_threshold=thresholds.get("fdr", 0.05),
        fc_threshold=thresholds.get("fold_change", 2.0),
        plots_cfg=cfg.get("plots"),
    )
    params.update({k: v for k, v in overrides.items() if v is not None})

    missing = [k for k in ("counts_path", "summary_path", "annotation_path") if not params[k]]
    if missing:
        raise ValueError(f"Missing required inputs: {missing}")
    return run_full_pipeline(**params)


# ── CLI ───────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Sex-stratified AD differential expression: filter, fit, contrast, classify, plot."
    )
    parser.add_argument("--config", required=True, help="Path to YAML config file.")
    parser.add_argument("--counts", default=None, help="featureCounts matrix (overrides config).")
    parser.add_argument("--summary", default=None, help="Assignment summary (overrides config).")
    parser.add_argument("--annotation", default=None, help="Gene annotation (overrides config).")
    parser.add_argument("--sample-sheet", default=None, help="Explicit sample sheet TSV.")
    parser.add_argument("--output-dir", default=None, help="Output directory.")
    parser.add_argument("--engine", default=None, choices=["edger", "pydeseq2"])
    parser.add_argument("--fdr-threshold", type=float, default=None)
    parser.add_argument("--fc-threshold", type=float, default=None,
                        help="Linear fold-change threshold (2 = log2FC of 1).")
    parser.add_argument("--no-plots", action="store_true")
    args = parser.parse_args()

    cfg = load_config(args.config)
    run_from_config(
        cfg,
        counts_path=args.counts,
        summary_path=args.summary,
        annotation_path=args.annotation,
        sample_sheet_path=args.sample_sheet,
        output_dir=args.output_dir,
        engine=args.engine,
        fdr_threshold=args.fdr_threshold,
        fc_threshold=args.fc_threshold,
        make_plots=False if args.no_plots else None,
    )


if __name__ == "__main__":
    main()
