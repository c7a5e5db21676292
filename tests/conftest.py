"""Shared fixtures: synthetic cohort tables and an in-process DE engine."""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from adsex_deg.de_engine import DEEngine

SAMPLES = [
    "AD_F_01", "AD_F_02", "AD_F_03",
    "Control_F_01", "Control_F_02", "Control_F_03",
    "AD_M_01", "AD_M_02", "AD_M_03",
    "Control_M_01", "Control_M_02", "Control_M_03",
]
SUFFIX = "Aligned.sortedByCoord.out.bam"


def make_counts(n_genes=80, seed=0):
    """Poisson counts with a female-only AD effect on GENE0000-0004."""
    rng = np.random.RandomState(seed)
    base = rng.uniform(50, 500, size=n_genes)
    data = np.empty((n_genes, len(SAMPLES)), dtype=int)
    for j, s in enumerate(SAMPLES):
        lam = base.copy()
        if s.startswith("AD_F"):
            lam[:5] *= 6.0
            lam[5:8] /= 6.0
        data[:, j] = rng.poisson(lam)
    # two genes with essentially no expression
    data[-2:, :] = 0
    data[-1, 0] = 1
    genes = [f"GENE{i:04d}" for i in range(n_genes)]
    return pd.DataFrame(data, index=pd.Index(genes, name="gene_id"), columns=SAMPLES)


def make_summary(counts):
    """Long assignment summary consistent with the count matrix."""
    rows = []
    for s in counts.columns:
        assigned = int(counts[s].sum())
        rows += [
            (s + SUFFIX, "Assigned", assigned),
            (s + SUFFIX, "Unassigned_Unmapped", 500),
            (s + SUFFIX, "Unassigned_NoFeatures", 1000),
            (s + SUFFIX, "Unassigned_Ambiguity", 0),
        ]
    return pd.DataFrame(rows, columns=["sample", "status", "count"])


def write_featurecounts(counts, path):
    """Write counts in featureCounts layout (command header + 5 annotation columns)."""
    df = counts.copy()
    df.columns = [s + SUFFIX for s in counts.columns]
    meta = pd.DataFrame(
        {
            "Chr": "chr1",
            "Start": np.arange(len(df)) * 1000 + 1,
            "End": np.arange(len(df)) * 1000 + 500,
            "Strand": "+",
            "Length": 500,
        },
        index=df.index,
    )
    out = pd.concat([meta, df], axis=1)
    out.index.name = "Geneid"
    with open(path, "w") as fh:
        fh.write("# Program:featureCounts v2.0.1; Command:\"featureCounts\" -a genes.gtf\n")
        out.to_csv(fh, sep="\t")


def write_annotation(counts, path, n_missing=3):
    """Header-less annotation for all but the last n_missing genes."""
    genes = counts.index[: len(counts) - n_missing]
    chroms = ["chr1", "chr2", "chrX", "chrY"]
    rows = [
        (g, f"SYM{i}", chroms[i % len(chroms)], i * 1000 + 1, i * 1000 + 500)
        for i, g in enumerate(genes)
    ]
    pd.DataFrame(rows).to_csv(path, sep="\t", header=False, index=False)


class FakeEngine(DEEngine):
    """Deterministic engine: logFC from group means of log2 normalized counts."""

    name = "fake"

    def __init__(self):
        self.fit_calls = 0
        self.tested = []
        self.cleaned = 0

    def fit(self, counts, design, lib_sizes=None, norm_factors=None):
        self._check_inputs(counts, design)
        self.fit_calls += 1
        lib = counts.sum(axis=0) if lib_sizes is None else lib_sizes
        nf = 1.0 if norm_factors is None else norm_factors
        logc = np.log2(counts.div(lib * nf, axis=1) * 1e6 + 1)
        means = pd.DataFrame(
            {g: logc.loc[:, design[g] == 1].mean(axis=1) for g in design.columns}
        )
        return {"means": means, "columns": list(design.columns)}

    def test(self, model, contrast):
        vector = self._check_contrast(model["columns"], contrast)
        self.tested.append(vector)
        lfc = model["means"].to_numpy() @ vector
        pvals = np.clip(np.exp(-3 * np.abs(lfc)), 1e-12, 1.0)
        return pd.DataFrame(
            {"logFC": lfc, "stat": lfc * 10, "PValue": pvals},
            index=model["means"].index,
        )

    def cleanup(self, model):
        self.cleaned += 1


@pytest.fixture
def counts():
    return make_counts()


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def cohort_files(tmp_path, counts):
    """Write count matrix, summary and annotation files; return their paths."""
    counts_path = tmp_path / "gene_counts.txt"
    summary_path = tmp_path / "gene_counts.txt.summary"
    annotation_path = tmp_path / "annotation.tsv"
    write_featurecounts(counts, counts_path)
    make_summary(counts).to_csv(summary_path, sep="\t", header=False, index=False)
    write_annotation(counts, annotation_path)
    return {
        "counts": counts_path,
        "summary": summary_path,
        "annotation": annotation_path,
    }
