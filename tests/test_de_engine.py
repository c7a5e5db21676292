"""Tests for the design / contrast helpers and DE engine backends."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from adsex_deg.de_engine import (
    DEEngine,
    EdgeRFit,
    EdgeRQLEngine,
    PyDESeq2Engine,
    build_design_matrix,
    get_engine,
    make_contrast,
)
from adsex_deg.sample_metadata import GROUP_LEVELS, assign_attributes

from conftest import SAMPLES


def _make_design():
    return build_design_matrix(assign_attributes(SAMPLES))


class TestBuildDesignMatrix:

    def test_one_column_per_group(self):
        design = _make_design()
        assert list(design.columns) == GROUP_LEVELS
        assert (design.sum(axis=1) == 1).all()
        assert design.loc["AD_F_01", "female.AD"] == 1
        assert design.loc["Control_M_02", "male.ctrl"] == 1

    def test_only_present_groups(self):
        samples = assign_attributes(["AD_F_01", "Control_F_01"])
        design = build_design_matrix(samples)
        assert list(design.columns) == ["female.ctrl", "female.AD"]

    def test_unknown_group_raises(self):
        samples = pd.DataFrame({"group": ["female.AD", "other"]}, index=["a", "b"])
        with pytest.raises(ValueError, match="not among design levels"):
            build_design_matrix(samples)


class TestMakeContrast:

    def test_aligned_vector(self):
        contrast = make_contrast(_make_design(), {"female.AD": 1, "female.ctrl": -1})
        assert list(contrast) == [-1.0, 1.0, 0.0, 0.0]

    def test_unknown_group(self):
        with pytest.raises(ValueError, match="unknown groups"):
            make_contrast(_make_design(), {"female.MCI": 1})

    def test_all_zero(self):
        with pytest.raises(ValueError, match="no non-zero"):
            make_contrast(_make_design(), {"female.AD": 0})

    def test_non_zero_sum_warns(self, caplog):
        with caplog.at_level("WARNING"):
            make_contrast(_make_design(), {"female.AD": 1})
        assert "does not sum to zero" in caplog.text


class TestGetEngine:

    def test_known_names(self):
        assert isinstance(get_engine("edger"), EdgeRQLEngine)
        assert isinstance(get_engine("PyDESeq2", n_cpus=2), PyDESeq2Engine)

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown DE engine"):
            get_engine("limma")


class TestFakeEngineContract:

    def test_contrast_length_checked(self, fake_engine, counts):
        design = _make_design()
        model = fake_engine.fit(counts, design)
        with pytest.raises(ValueError, match="entries"):
            fake_engine.test(model, np.array([1.0, -1.0]))

    def test_misaligned_design(self, fake_engine, counts):
        design = _make_design().iloc[::-1]
        with pytest.raises(ValueError, match="Design rows"):
            fake_engine.fit(counts, design)


def _fake_popen(returncode=0, stdout="", stderr="", on_call=None):
    def factory(cmd, **kwargs):
        if on_call:
            on_call(cmd)
        proc = MagicMock()
        proc.communicate.return_value = (stdout, stderr)
        proc.returncode = returncode
        return proc
    return factory


class TestEdgeRQLEngine:

    def test_fit_writes_exchange_files(self, tmp_path, counts):
        engine = EdgeRQLEngine(workdir=tmp_path, rscript_path="/opt/R/bin/Rscript")
        design = _make_design()
        calls = []
        with patch("adsex_deg.de_engine.subprocess.Popen", side_effect=_fake_popen(on_call=calls.append)):
            model = engine.fit(counts, design, lib_sizes=counts.sum(axis=0))

        assert isinstance(model, EdgeRFit)
        assert calls[0][0] == "/opt/R/bin/Rscript"
        assert calls[0][2] == "fit"
        written = pd.read_csv(tmp_path / "counts.tsv", sep="\t", index_col=0)
        assert list(written.columns) == SAMPLES
        samples = pd.read_csv(tmp_path / "samples.tsv", sep="\t", index_col=0)
        assert (samples["norm_factors"] == 1.0).all()
        assert model.design_columns == GROUP_LEVELS

    def test_test_reads_results(self, tmp_path):
        model = EdgeRFit(
            workdir=tmp_path,
            fit_path=tmp_path / "fit.rds",
            genes=["G1", "G2", "G3"],
            design_columns=GROUP_LEVELS,
        )
        engine = EdgeRQLEngine()

        def write_output(cmd):
            out = Path(cmd[cmd.index("--output") + 1])
            out.write_text(
                "gene_id\tlogFC\tlogCPM\tF\tPValue\n"
                "G2\t-1.5\t5.0\t12.0\t0.001\n"
                "G1\t2.0\t6.0\t20.0\t0.0001\n"
            )
            assert cmd[cmd.index("--contrast") + 1] == "-1.0,1.0,0.0,0.0"

        contrast = pd.Series([-1.0, 1.0, 0.0, 0.0], index=GROUP_LEVELS)
        with patch("adsex_deg.de_engine.subprocess.Popen", side_effect=_fake_popen(on_call=write_output)):
            table = engine.test(model, contrast)

        assert list(table.columns) == ["logFC", "stat", "PValue"]
        assert list(table.index) == ["G1", "G2", "G3"]
        assert table.loc["G1", "stat"] == 20.0
        assert np.isnan(table.loc["G3", "logFC"])

    def test_nonzero_exit_raises(self, tmp_path, counts):
        engine = EdgeRQLEngine(workdir=tmp_path)
        with patch(
            "adsex_deg.de_engine.subprocess.Popen",
            side_effect=_fake_popen(returncode=1, stderr="Error: no package called 'edgeR'"),
        ):
            with pytest.raises(RuntimeError, match="exited with code 1"):
                engine.fit(counts, _make_design())

    def test_timeout_raises(self, tmp_path, counts):
        engine = EdgeRQLEngine(workdir=tmp_path, timeout=1)
        proc = MagicMock()
        proc.communicate.side_effect = subprocess.TimeoutExpired(cmd="Rscript", timeout=1)
        with patch("adsex_deg.de_engine.subprocess.Popen", return_value=proc):
            with pytest.raises(RuntimeError, match="timed out"):
                engine.fit(counts, _make_design())
        proc.kill.assert_called_once()


class TestPyDESeq2Engine:

    def test_female_effect_recovered(self, counts):
        pytest.importorskip("pydeseq2")
        design = _make_design()
        engine = PyDESeq2Engine()
        model = engine.fit(counts.iloc[:-2], design)
        contrast = make_contrast(design, {"female.AD": 1, "female.ctrl": -1})
        table = engine.test(model, contrast)

        assert list(table.columns) == ["logFC", "stat", "PValue"]
        assert (table.loc[[f"GENE{i:04d}" for i in range(5)], "logFC"] > 1.5).all()
        assert (table.loc[[f"GENE{i:04d}" for i in range(5, 8)], "logFC"] < -1.5).all()

        male = engine.test(model, make_contrast(design, {"male.AD": 1, "male.ctrl": -1}))
        assert male.loc["GENE0000", "logFC"] == pytest.approx(0.0, abs=1.0)


class TestEngineInterface:

    def test_incomplete_backend_cannot_be_instantiated(self):
        class FitOnly(DEEngine):
            def fit(self, counts, design, lib_sizes=None, norm_factors=None):
                return None

        with pytest.raises(TypeError):
            FitOnly()

    def test_default_normalize_uses_python_helpers(self, fake_engine, counts):
        groups = assign_attributes(SAMPLES)["group"]
        keep, factors = fake_engine.normalize(counts, groups)
        assert not keep["GENE0079"]
        assert keep.sum() == len(counts) - 2
        assert list(factors.index) == SAMPLES


class TestEdgeRNormalize:

    def _write_outputs(self, cmd):
        opts = dict(zip(cmd[3::2], cmd[4::2]))
        counts = pd.read_csv(opts["--counts"], sep="\t", index_col=0)
        samples = pd.read_csv(opts["--samples"], sep="\t", index_col=0)
        assert list(samples.columns) == ["lib_size", "group"]
        lines = ["gene_id\tkeep"] + [
            f"{g}\t{'FALSE' if g in ('GENE0078', 'GENE0079') else 'TRUE'}" for g in counts.index
        ]
        Path(opts["--keep"]).write_text("\n".join(lines) + "\n")
        factors = ["sample\tnorm_factors"] + [
            f"{s}\t{1.1 if s.startswith('AD') else 0.9}" for s in counts.columns
        ]
        Path(opts["--factors"]).write_text("\n".join(factors) + "\n")

    def test_reads_edger_keep_and_factors(self, tmp_path, counts):
        engine = EdgeRQLEngine(workdir=tmp_path / "work")
        groups = assign_attributes(SAMPLES)["group"]
        calls = []

        def on_call(cmd):
            calls.append(cmd)
            self._write_outputs(cmd)

        with patch("adsex_deg.de_engine.subprocess.Popen", side_effect=_fake_popen(on_call=on_call)):
            keep, factors = engine.normalize(counts, groups, min_count=10, min_prop=0.7)

        cmd = calls[0]
        assert cmd[2] == "normalize"
        assert cmd[cmd.index("--min_count") + 1] == "10.0"
        assert cmd[cmd.index("--min_prop") + 1] == "0.7"
        assert keep.dtype == bool
        assert list(keep.index) == list(counts.index)
        assert not keep["GENE0079"] and keep["GENE0000"]
        assert factors["AD_F_01"] == pytest.approx(1.1)
        assert factors["Control_M_03"] == pytest.approx(0.9)
        # exchange files live in a temporary subdirectory that is removed
        assert list((tmp_path / "work").iterdir()) == []

    def test_unknown_filter_parameter(self, counts):
        groups = assign_attributes(SAMPLES)["group"]
        with pytest.raises(ValueError, match="Unknown expression filter parameters"):
            EdgeRQLEngine().normalize(counts, groups, min_cpm=1)
