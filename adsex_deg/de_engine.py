"""Differential expression engines behind a narrow fit/test interface.

Every engine fits one GLM with a free coefficient per sex × condition group
(no intercept) across all genes, then tests linear combinations of the
group coefficients:

    model = engine.fit(counts, design, lib_sizes, norm_factors)
    table = engine.test(model, contrast)   # logFC, stat, PValue per gene

Engines also own expression filtering and library normalization:

    keep, norm_factors = engine.normalize(counts, groups, lib_sizes)

Backends:
  - edger    : edgeR quasi-likelihood pipeline (estimateDisp → glmQLFit →
               glmQLFTest) run through r/edger_qlf.R as an Rscript subprocess.
               The fitted object is kept on disk as RDS between calls.
               normalize calls edgeR filterByExpr and calcNormFactors(TMM).
  - pydeseq2 : DESeq2 Wald tests in Python via pydeseq2. pydeseq2 uses its
               own median-of-ratios size factors; TMM factors are ignored.

Contrasts are expressed in group space ({'female.AD': 1, 'female.ctrl': -1})
and converted to vectors aligned with the design columns by make_contrast.
"""

import logging
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np
import pandas as pd

from .sample_metadata import GROUP_LEVELS
from .utils.stats import filter_and_tmm

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

RESULT_COLUMNS = ["logFC", "stat", "PValue"]

_DEFAULT_R_SCRIPT = Path(__file__).parent / "r" / "edger_qlf.R"
_FILTER_PARAMS = ("min_count", "min_total_count", "large_n", "min_prop")


# ── Design and contrasts ──────────────────────────────────────────────────────

def build_design_matrix(
    samples: pd.DataFrame,
    group_col: str = "group",
    levels: Optional[list[str]] = None,
) -> pd.DataFrame:
    """Build a no-intercept indicator design (one column per group).

    Args:
        samples: Sample metadata indexed by sample.
        group_col: Column holding group labels such as 'female.AD'.
        levels: Column order. Defaults to female.ctrl, female.AD, male.ctrl,
            male.AD restricted to the groups present.

    Returns:
        Samples × groups DataFrame of 0/1 floats.

    Raises:
        ValueError: If a sample's group is not among the levels.
    """
    if group_col not in samples.columns:
        raise ValueError(f"Sample metadata missing column '{group_col}'.")
    groups = samples[group_col]
    if levels is None:
        present = set(groups)
        levels = [g for g in GROUP_LEVELS if g in present]
    unknown = sorted(set(groups) - set(levels))
    if unknown:
        raise ValueError(f"Groups {unknown} not among design levels {levels}.")

    design = pd.DataFrame(
        {level: (groups == level).astype(float) for level in levels},
        index=samples.index,
    )
    return design


def make_contrast(design: pd.DataFrame, coefficients: dict[str, float]) -> pd.Series:
    """Map group weights onto a contrast vector aligned with the design.

    Args:
        design: Design matrix from build_design_matrix.
        coefficients: Weight per group, e.g. {'female.AD': 1, 'female.ctrl': -1}.
            Groups not listed get weight 0.

    Returns:
        Series indexed by design column.

    Raises:
        ValueError: If a listed group is not a design column, or no weight
            is non-zero.
    """
    unknown = sorted(set(coefficients) - set(design.columns))
    if unknown:
        raise ValueError(f"Contrast refers to unknown groups {unknown}; design has {list(design.columns)}.")
    contrast = pd.Series(0.0, index=design.columns)
    for group, weight in coefficients.items():
        contrast[group] = float(weight)
    if not contrast.any():
        raise ValueError("Contrast has no non-zero weights.")
    if not np.isclose(contrast.sum(), 0.0):
        log.warning("Contrast %s does not sum to zero (sum=%.3g).", dict(coefficients), contrast.sum())
    return contrast


# ── Engine interface ──────────────────────────────────────────────────────────

class DEEngine(ABC):
    """Interface for GLM-based differential expression backends.

    Subclasses implement fit and test. normalize defaults to the Python
    filterByExpr / TMM helpers in utils.stats; backends with direct access to
    edgeR override it.
    """

    name = "base"

    @abstractmethod
    def fit(
        self,
        counts: pd.DataFrame,
        design: pd.DataFrame,
        lib_sizes: Optional[pd.Series] = None,
        norm_factors: Optional[pd.Series] = None,
    ) -> Any:
        """Fit one model across all genes."""

    @abstractmethod
    def test(self, model: Any, contrast: pd.Series) -> pd.DataFrame:
        """Test one contrast; return logFC, stat and PValue per gene."""

    def normalize(
        self,
        counts: pd.DataFrame,
        groups: pd.Series,
        lib_sizes: Optional[pd.Series] = None,
        **filter_params,
    ) -> tuple[pd.Series, pd.Series]:
        """Expression keep-mask over all genes and TMM factors of the kept genes.

        Returns:
            Tuple (keep, norm_factors). Factors are all 1 when no gene is kept.
        """
        return filter_and_tmm(counts, groups, lib_sizes=lib_sizes, **filter_params)

    def cleanup(self, model: Any) -> None:
        """Release resources held by a fitted model."""

    @staticmethod
    def _check_inputs(counts: pd.DataFrame, design: pd.DataFrame) -> None:
        if list(counts.columns) != list(design.index):
            raise ValueError("Design rows must match count matrix columns in order.")
        if counts.shape[0] == 0:
            raise ValueError("Cannot fit a model to an empty count matrix.")

    @staticmethod
    def _check_contrast(design_columns: list[str], contrast: pd.Series) -> np.ndarray:
        if len(contrast) != len(design_columns):
            raise ValueError(
                f"Contrast has {len(contrast)} entries; model has {len(design_columns)} groups."
            )
        if isinstance(contrast, pd.Series):
            contrast = contrast.reindex(design_columns)
            if contrast.isna().any():
                raise ValueError(f"Contrast index does not match design columns {design_columns}.")
        return np.asarray(contrast, dtype=float)


# ── edgeR (Rscript subprocess) ────────────────────────────────────────────────

@dataclass
class EdgeRFit:
    """Handle to an edgeR DGEGLM fit saved on disk by edger_qlf.R."""

    workdir: Path
    fit_path: Path
    genes: list[str]
    design_columns: list[str]
    stdout: str = ""


class EdgeRQLEngine(DEEngine):
    """edgeR quasi-likelihood F-tests via an Rscript subprocess.

    Args:
        rscript_path: Path to the Rscript binary.
        r_script: Path to edger_qlf.R.
        workdir: Directory for exchange files. A temporary directory is
            created when omitted.
        robust: Passed to estimateDisp and glmQLFit.
        timeout: Maximum run time per R call in seconds.
    """

    name = "edger"

    def __init__(
        self,
        rscript_path: str = "Rscript",
        r_script: str | Path = _DEFAULT_R_SCRIPT,
        workdir: Optional[str | Path] = None,
        robust: bool = True,
        timeout: int = 3600,
    ):
        self.rscript_path = rscript_path
        self.r_script = Path(r_script)
        self.workdir = Path(workdir) if workdir else None
        self.robust = robust
        self.timeout = timeout

    def _run_r(self, args: list[str]) -> str:
        cmd = [str(self.rscript_path), str(self.r_script), *args]
        log.info("Launching R: %s", " ".join(cmd))
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            raise RuntimeError(f"edger_qlf.R timed out after {self.timeout}s.")

        if proc.returncode != 0:
            log.error("R stderr:\n%s", stderr)
            raise RuntimeError(
                f"edger_qlf.R exited with code {proc.returncode}. "
                "See stderr above for details."
            )
        return stdout

    def normalize(
        self,
        counts: pd.DataFrame,
        groups: pd.Series,
        lib_sizes: Optional[pd.Series] = None,
        **filter_params,
    ) -> tuple[pd.Series, pd.Series]:
        """Run edgeR filterByExpr and calcNormFactors(method="TMM").

        Args:
            counts: Genes × samples raw count matrix.
            groups: Group label per sample.
            lib_sizes: Per-sample library sizes (default: column sums).
            **filter_params: min_count, min_total_count, large_n, min_prop.

        Returns:
            Tuple (keep, norm_factors) as in DEEngine.normalize.
        """
        samples = pd.DataFrame(index=counts.columns)
        samples["lib_size"] = (
            counts.sum(axis=0) if lib_sizes is None else pd.Series(lib_sizes).reindex(counts.columns)
        )
        samples["group"] = pd.Series(groups).reindex(counts.columns)
        if samples.isna().any().any():
            raise ValueError("Library sizes or groups missing for some count matrix samples.")

        unknown = sorted(set(filter_params) - set(_FILTER_PARAMS))
        if unknown:
            raise ValueError(f"Unknown expression filter parameters {unknown}; expected {list(_FILTER_PARAMS)}.")
        if self.workdir is not None:
            self.workdir.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="edger_norm_", dir=self.workdir) as tmp:
            tmp = Path(tmp)
            counts.to_csv(tmp / "counts.tsv", sep="\t", index_label="gene_id")
            samples.to_csv(tmp / "samples.tsv", sep="\t", index_label="sample")
            args = [
                "normalize",
                "--counts", str(tmp / "counts.tsv"),
                "--samples", str(tmp / "samples.tsv"),
                "--keep", str(tmp / "keep.tsv"),
                "--factors", str(tmp / "factors.tsv"),
            ]
            for key, value in filter_params.items():
                args += [f"--{key}", repr(float(value))]
            self._run_r(args)
            keep = pd.read_csv(tmp / "keep.tsv", sep="\t", index_col=0)["keep"]
            factors = pd.read_csv(tmp / "factors.tsv", sep="\t", index_col=0)["norm_factors"]

        keep.index = keep.index.astype(str)
        keep = keep.reindex(counts.index).fillna(False).astype(bool).rename("keep")
        factors.index = factors.index.astype(str)
        factors = factors.reindex(counts.columns).astype(float).rename("norm_factors")
        return keep, factors

    def fit(
        self,
        counts: pd.DataFrame,
        design: pd.DataFrame,
        lib_sizes: Optional[pd.Series] = None,
        norm_factors: Optional[pd.Series] = None,
    ) -> EdgeRFit:
        self._check_inputs(counts, design)
        workdir = self.workdir or Path(tempfile.mkdtemp(prefix="edger_"))
        workdir.mkdir(parents=True, exist_ok=True)

        samples = pd.DataFrame(index=counts.columns)
        samples["lib_size"] = (
            counts.sum(axis=0) if lib_sizes is None else pd.Series(lib_sizes).reindex(counts.columns)
        )
        samples["norm_factors"] = (
            1.0 if norm_factors is None else pd.Series(norm_factors).reindex(counts.columns)
        )

        counts_path = workdir / "counts.tsv"
        design_path = workdir / "design.tsv"
        samples_path = workdir / "samples.tsv"
        fit_path = workdir / "fit.rds"
        counts.to_csv(counts_path, sep="\t", index_label="gene_id")
        design.to_csv(design_path, sep="\t", index_label="sample")
        samples.to_csv(samples_path, sep="\t", index_label="sample")

        stdout = self._run_r([
            "fit",
            "--counts", str(counts_path),
            "--design", str(design_path),
            "--samples", str(samples_path),
            "--fit", str(fit_path),
            "--robust", "TRUE" if self.robust else "FALSE",
        ])
        log.info("edgeR model fitted: %d genes × %d groups.", counts.shape[0], design.shape[1])
        return EdgeRFit(
            workdir=workdir,
            fit_path=fit_path,
            genes=counts.index.tolist(),
            design_columns=design.columns.tolist(),
            stdout=stdout,
        )

    def test(self, model: EdgeRFit, contrast: pd.Series) -> pd.DataFrame:
        vector = self._check_contrast(model.design_columns, contrast)
        with tempfile.NamedTemporaryFile(
            "w", suffix=".tsv", dir=model.workdir, delete=False
        ) as fh:
            out_path = Path(fh.name)
        self._run_r([
            "test",
            "--fit", str(model.fit_path),
            "--contrast", ",".join(repr(float(v)) for v in vector),
            "--output", str(out_path),
        ])
        table = pd.read_csv(out_path, sep="\t", index_col=0)
        out_path.unlink()
        table.index = table.index.astype(str)
        table.index.name = "gene_id"
        table = table.rename(columns={"F": "stat"})
        return table[RESULT_COLUMNS].reindex(model.genes)

    def cleanup(self, model: EdgeRFit) -> None:
        """Remove the exchange directory of a fit created in a temp dir."""
        if self.workdir is None:
            shutil.rmtree(model.workdir, ignore_errors=True)


# ── pyDESeq2 ──────────────────────────────────────────────────────────────────

@dataclass
class PyDESeq2Fit:
    """Fitted pydeseq2 dataset plus the group → coefficient mapping."""

    dds: Any
    design_columns: list[str]
    group_to_coef: pd.DataFrame = field(repr=False)


class PyDESeq2Engine(DEEngine):
    """DESeq2 Wald tests via pydeseq2 with a '~group' design.

    Args:
        n_cpus: Number of CPUs for pydeseq2 inference.
        refit_cooks: Whether pydeseq2 refits Cook's outliers.
    """

    name = "pydeseq2"

    def __init__(self, n_cpus: int = 1, refit_cooks: bool = True):
        self.n_cpus = n_cpus
        self.refit_cooks = refit_cooks

    def fit(
        self,
        counts: pd.DataFrame,
        design: pd.DataFrame,
        lib_sizes: Optional[pd.Series] = None,
        norm_factors: Optional[pd.Series] = None,
    ) -> PyDESeq2Fit:
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.default_inference import DefaultInference

        self._check_inputs(counts, design)
        if norm_factors is not None:
            log.info("pydeseq2 estimates its own size factors; TMM factors are not used.")

        groups = design.idxmax(axis=1)
        metadata = pd.DataFrame({"group": groups.astype(str)}, index=design.index)
        inference = DefaultInference(n_cpus=self.n_cpus)
        dds = DeseqDataSet(
            counts=counts.T.astype(int),
            metadata=metadata,
            design="~group",
            refit_cooks=self.refit_cooks,
            inference=inference,
        )
        dds.deseq2()

        # Row of the pydeseq2 design for any sample of each group
        coef_design = pd.DataFrame(
            np.asarray(dds.obsm["design_matrix"], dtype=float),
            index=counts.columns,
        )
        group_to_coef = coef_design.groupby(groups.to_numpy()).first().reindex(design.columns)
        log.info("pydeseq2 model fitted: %d genes × %d groups.", counts.shape[0], design.shape[1])
        return PyDESeq2Fit(
            dds=dds,
            design_columns=design.columns.tolist(),
            group_to_coef=group_to_coef,
        )

    def test(self, model: PyDESeq2Fit, contrast: pd.Series) -> pd.DataFrame:
        from pydeseq2.default_inference import DefaultInference
        from pydeseq2.ds import DeseqStats

        vector = self._check_contrast(model.design_columns, contrast)
        # Group means are group_to_coef @ beta, so the coefficient-space
        # contrast is the weighted sum of group rows.
        coef_contrast = vector @ model.group_to_coef.to_numpy()
        stats = DeseqStats(
            model.dds,
            contrast=coef_contrast,
            inference=DefaultInference(n_cpus=self.n_cpus),
            quiet=True,
        )
        stats.summary()
        res = stats.results_df.rename(
            columns={"log2FoldChange": "logFC", "pvalue": "PValue"}
        )
        res.index = res.index.astype(str)
        res.index.name = "gene_id"
        return res[RESULT_COLUMNS]


# ── Engine registry ───────────────────────────────────────────────────────────

_ENGINES = {
    EdgeRQLEngine.name: EdgeRQLEngine,
    PyDESeq2Engine.name: PyDESeq2Engine,
}


def get_engine(name: str, **kwargs) -> DEEngine:
    """Instantiate a DE backend by name ('edger' or 'pydeseq2').

    Raises:
        ValueError: If the name is unknown.
    """
    key = name.lower()
    if key not in _ENGINES:
        raise ValueError(f"Unknown DE engine '{name}'. Choose: {', '.join(sorted(_ENGINES))}.")
    return _ENGINES[key](**kwargs)
