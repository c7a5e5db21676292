"""Shared visualization functions used across analysis modules.

All plot functions accept an output_path argument and save to disk (PNG plus
an SVG copy). They do not call plt.show(); call that explicitly if running
interactively.
"""

import logging
import re
from pathlib import Path
from typing import Optional
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from adjustText import adjust_text
from matplotlib_venn import venn2, venn3
from upsetplot import UpSet, from_contents

log = logging.getLogger(__name__)

GROUP_PALETTE = {
    "female.ctrl": "#f4a6a6",
    "female.AD": "#c0392b",
    "male.ctrl": "#a6c8f4",
    "male.AD": "#1f4e9c",
}


def _save(fig: plt.Figure, output_path: str | Path) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    fig.savefig(output_path.with_suffix(".svg"), bbox_inches="tight")
    plt.close(fig)
    return output_path


def _chrom_sort_key(chrom: str) -> tuple:
    name = re.sub(r"^chr", "", str(chrom))
    if name.isdigit():
        return (0, int(name), "")
    order = {"X": 1, "Y": 2, "M": 3, "MT": 3}
    return (1, order.get(name, 9), name)


def plot_mds(
    coords: pd.DataFrame,
    samples: pd.DataFrame,
    output_path: str | Path,
    hue_col: str = "group",
    style_col: str = "sex",
    label_samples: bool = False,
    title: str = "MDS of log-CPM",
    figsize: tuple = (7, 6),
) -> Path:
    """Scatter samples on the first two MDS dimensions.

    Args:
        coords: Output of utils.stats.mds_coordinates (samples × dims).
        samples: Sample metadata indexed by sample.
        output_path: Path to save the figure.
        hue_col: Metadata column used for colour.
        style_col: Metadata column used for marker style.
        label_samples: Whether to annotate each point with its sample ID.
        title: Figure title.
        figsize: Figure width × height in inches.
    """
    df = coords.join(samples[[c for c in (hue_col, style_col) if c in samples.columns]])
    var = coords.attrs.get("var_explained", [np.nan, np.nan])

    fig, ax = plt.subplots(figsize=figsize)
    sns.scatterplot(
        data=df,
        x="dim1",
        y="dim2",
        hue=hue_col if hue_col in df.columns else None,
        style=style_col if style_col in df.columns else None,
        palette=GROUP_PALETTE if hue_col == "group" else None,
        s=70,
        ax=ax,
    )
    if label_samples:
        texts = [ax.text(x, y, s, fontsize=7) for s, x, y in zip(df.index, df["dim1"], df["dim2"])]
        adjust_text(texts, ax=ax, arrowprops=dict(arrowstyle="-", color="lightgrey"))
    ax.set_xlabel(f"Leading logFC dim 1 ({var[0]:.0%})")
    ax.set_ylabel(f"Leading logFC dim 2 ({var[1]:.0%})")
    ax.set_title(title)
    ax.legend(bbox_to_anchor=(1.02, 1), loc="upper left", frameon=False)
    plt.tight_layout()
    return _save(fig, output_path)


def plot_position_scatter(
    merged: pd.DataFrame,
    comparison: str,
    output_path: str | Path,
    top_n: int = 10,
    lfc_cutoff: Optional[float] = None,
    figsize: tuple = (14, 5),
) -> Optional[Path]:
    """Plot log fold change against genomic position, chromosome by chromosome.

    Chromosomes are laid end to end in natural order (1..22, X, Y, M) with
    alternating colours. The top_n genes by absolute fold change are labelled.

    Args:
        merged: Merged results with 'chromosome', 'start', 'gene_name' and
            'logFC_<comparison>' columns.
        comparison: Comparison name to plot.
        output_path: Path to save the figure.
        top_n: Number of genes to label.
        lfc_cutoff: Optional log2 cutoff drawn as dashed lines.
        figsize: Figure dimensions.

    Returns:
        Saved path, or None when no positioned gene is available.
    """
    lfc_col = f"logFC_{comparison}"
    df = merged.dropna(subset=["chromosome", "start", lfc_col]).copy()
    if df.empty:
        log.warning("No genes with genomic positions for %s; skipping position plot.", comparison)
        return None

    chroms = sorted(df["chromosome"].unique(), key=_chrom_sort_key)
    offsets, ticks, pos = {}, [], 0.0
    for chrom in chroms:
        span = float(df.loc[df["chromosome"] == chrom, "start"].max())
        offsets[chrom] = pos
        ticks.append(pos + span / 2)
        pos += span
    df["x"] = df["start"].astype(float) + df["chromosome"].map(offsets)

    fig, ax = plt.subplots(figsize=figsize)
    colors = ["#4c72b0", "#9aa3b2"]
    for i, chrom in enumerate(chroms):
        sub = df[df["chromosome"] == chrom]
        ax.scatter(sub["x"], sub[lfc_col], s=4, color=colors[i % 2], alpha=0.7, linewidths=0)
    if lfc_cutoff is not None:
        for y in (lfc_cutoff, -lfc_cutoff):
            ax.axhline(y, color="grey", linestyle="--", linewidth=0.8)

    top = df.reindex(df[lfc_col].abs().sort_values(ascending=False).index[:top_n])
    label_col = "gene_name" if "gene_name" in df.columns else None
    texts = [
        ax.text(row["x"], row[lfc_col], row[label_col] if label_col else gid, fontsize=7)
        for gid, row in top.iterrows()
    ]
    if texts:
        adjust_text(texts, ax=ax, arrowprops=dict(arrowstyle="-", color="lightgrey"))

    ax.set_xticks(ticks)
    ax.set_xticklabels([re.sub(r"^chr", "", str(c)) for c in chroms], fontsize=7)
    ax.set_xlim(0, pos)
    ax.set_xlabel("Chromosome")
    ax.set_ylabel("log2 fold change")
    ax.set_title(comparison)
    plt.tight_layout()
    return _save(fig, output_path)


def plot_lfc_scatter(
    merged: pd.DataFrame,
    x_comparison: str,
    y_comparison: str,
    output_path: str | Path,
    lfc_cutoff: Optional[float] = None,
    figsize: tuple = (6, 6),
) -> Optional[Path]:
    """Compare log fold changes of two comparisons gene by gene.

    Used for the female vs male AD effect. Points are coloured by whether
    the gene passes the cutoff in neither, one, or both comparisons.

    Args:
        merged: Merged results with both 'logFC_<comparison>' columns.
        x_comparison: Comparison on the x-axis.
        y_comparison: Comparison on the y-axis.
        output_path: Path to save the figure.
        lfc_cutoff: Optional log2 cutoff used for colouring and guides.
        figsize: Figure dimensions.
    """
    x_col, y_col = f"logFC_{x_comparison}", f"logFC_{y_comparison}"
    df = merged[[x_col, y_col]].dropna()
    if df.empty:
        log.warning("No genes shared by %s and %s; skipping scatter.", x_comparison, y_comparison)
        return None

    if lfc_cutoff is not None:
        in_x = df[x_col].abs() >= lfc_cutoff
        in_y = df[y_col].abs() >= lfc_cutoff
        df["class"] = np.select(
            [in_x & in_y, in_x, in_y],
            ["both", x_comparison, y_comparison],
            default="neither",
        )
    else:
        df["class"] = "all"

    fig, ax = plt.subplots(figsize=figsize)
    sns.scatterplot(data=df, x=x_col, y=y_col, hue="class", s=8, linewidth=0, ax=ax)
    lim = float(np.nanmax(np.abs(df[[x_col, y_col]].to_numpy()))) * 1.05
    ax.plot([-lim, lim], [-lim, lim], color="lightgrey", linewidth=0.8, zorder=0)
    if lfc_cutoff is not None:
        for v in (lfc_cutoff, -lfc_cutoff):
            ax.axvline(v, color="grey", linestyle="--", linewidth=0.6)
            ax.axhline(v, color="grey", linestyle="--", linewidth=0.6)
    r = df[x_col].corr(df[y_col])
    ax.set_title(f"{y_comparison} vs {x_comparison} (r = {r:.2f})")
    ax.set_xlabel(f"log2FC {x_comparison}")
    ax.set_ylabel(f"log2FC {y_comparison}")
    plt.tight_layout()
    return _save(fig, output_path)


def plot_venn(
    sets: dict[str, set],
    output_path: str | Path,
    title: str = "",
    figsize: tuple = (6, 6),
) -> Optional[Path]:
    """Draw a Venn diagram of two or three named gene sets.

    Raises:
        ValueError: If fewer than two or more than three sets are given.
    """
    if len(sets) not in (2, 3):
        raise ValueError(f"Venn diagrams need 2 or 3 sets; got {len(sets)}.")
    if not any(sets.values()):
        log.warning("All gene sets empty; skipping Venn diagram %s.", output_path)
        return None

    labels = list(sets.keys())
    values = [set(v) for v in sets.values()]
    fig, ax = plt.subplots(figsize=figsize)
    if len(values) == 2:
        venn2(subsets=values, set_labels=labels, ax=ax)
    else:
        venn3(subsets=values, set_labels=labels, ax=ax)
    ax.set_title(title)
    plt.tight_layout()
    return _save(fig, output_path)


def plot_upset(
    sets: dict[str, set],
    output_path: str | Path,
    title: str = "",
    min_subset_size: int = 1,
    figsize: tuple = (10, 6),
) -> Optional[Path]:
    """Draw an UpSet plot of all intersections among named gene sets.

    Raises:
        ValueError: If fewer than two sets are given.
    """
    if len(sets) < 2:
        raise ValueError(f"UpSet plots need at least 2 sets; got {len(sets)}.")
    empty = [k for k, v in sets.items() if not v]
    sets = {k: v for k, v in sets.items() if v}
    if len(sets) < 2:
        log.warning("Fewer than 2 non-empty gene sets; skipping UpSet plot %s.", output_path)
        return None
    if empty:
        log.info("Leaving empty gene sets out of the UpSet plot: %s", empty)

    data = from_contents({k: sorted(v) for k, v in sets.items()})
    fig = plt.figure(figsize=figsize)
    UpSet(
        data,
        subset_size="count",
        show_counts=True,
        sort_by="cardinality",
        min_subset_size=min_subset_size,
    ).plot(fig=fig)
    fig.suptitle(title)
    return _save(fig, output_path)
