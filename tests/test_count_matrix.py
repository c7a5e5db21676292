"""Tests for count matrix loading and annotation."""

import pandas as pd
import pytest

from adsex_deg.count_matrix import (
    UNKNOWN_GENE_NAME,
    align_samples,
    annotate_genes,
    drop_excluded_chromosomes,
    load_annotation,
    load_count_matrix,
    validate_counts,
)

from conftest import SAMPLES, SUFFIX


class TestLoadCountMatrix:

    def test_loads_and_strips_suffix(self, cohort_files, counts):
        loaded = load_count_matrix(cohort_files["counts"], sample_suffix=SUFFIX)
        assert list(loaded.columns) == SAMPLES
        assert loaded.shape == counts.shape
        pd.testing.assert_frame_equal(loaded, counts.astype("int64"), check_names=False)

    def test_too_few_columns(self, tmp_path):
        path = tmp_path / "bad.txt"
        path.write_text("Geneid\tChr\tStart\nG1\tchr1\t1\n")
        with pytest.raises(ValueError, match="expected a gene ID"):
            load_count_matrix(path)

    def test_header_only_is_empty(self, tmp_path):
        path = tmp_path / "empty.txt"
        path.write_text("# comment\nGeneid\tChr\tStart\tEnd\tStrand\tLength\tS1\n")
        with pytest.raises(ValueError, match="empty"):
            load_count_matrix(path)


class TestValidateCounts:

    def test_duplicate_gene_ids(self):
        df = pd.DataFrame({"S1": [1, 2]}, index=["G1", "G1"])
        with pytest.raises(ValueError, match="Duplicate gene"):
            validate_counts(df)

    def test_duplicate_samples(self):
        df = pd.DataFrame([[1, 2]], index=["G1"], columns=["S1", "S1"])
        with pytest.raises(ValueError, match="Duplicate sample"):
            validate_counts(df)

    def test_negative_counts(self):
        df = pd.DataFrame({"S1": [1, -2]}, index=["G1", "G2"])
        with pytest.raises(ValueError, match="negative"):
            validate_counts(df)

    def test_non_integer_counts(self):
        df = pd.DataFrame({"S1": [1.5, 2.0]}, index=["G1", "G2"])
        with pytest.raises(ValueError, match="non-integer"):
            validate_counts(df)

    def test_non_numeric_counts(self):
        df = pd.DataFrame({"S1": ["1", "x"]}, index=["G1", "G2"])
        with pytest.raises(ValueError, match="non-numeric"):
            validate_counts(df)


class TestAnnotation:

    def test_left_join_fills_unknown(self, cohort_files, counts):
        ann = load_annotation(cohort_files["annotation"])
        genes = annotate_genes(counts, ann)
        assert list(genes.index) == list(counts.index)
        assert (genes["gene_name"].iloc[-3:] == UNKNOWN_GENE_NAME).all()
        assert genes["chromosome"].iloc[-3:].isna().all()
        assert genes.loc["GENE0001", "gene_name"] == "SYM1"
        assert genes.loc["GENE0001", "start"] == 1001

    def test_exclude_chromosomes(self, cohort_files):
        ann = load_annotation(cohort_files["annotation"], exclude_chromosomes=["chrY"])
        assert "chrY" not in set(ann["chromosome"])
        assert "chrX" in set(ann["chromosome"])

    def test_short_annotation_raises(self, tmp_path):
        path = tmp_path / "ann.tsv"
        path.write_text("G1\tA\tchr1\n")
        with pytest.raises(ValueError, match="needs 5 columns"):
            load_annotation(path)

    def test_drop_excluded_chromosomes(self, cohort_files, counts):
        ann = load_annotation(cohort_files["annotation"])
        kept = drop_excluded_chromosomes(counts, ann, ["chrY"])
        chrom = ann["chromosome"].reindex(kept.index)
        assert not (chrom == "chrY").any()
        # unannotated genes are kept
        assert set(counts.index[-3:]) <= set(kept.index)
        assert set(kept.index) <= set(counts.index)


class TestAlignSamples:

    def test_reorders_metadata(self, counts):
        meta = pd.DataFrame({"x": range(len(SAMPLES))}, index=SAMPLES[::-1])
        aligned = align_samples(counts, meta)
        assert list(aligned.index) == SAMPLES

    def test_mismatch_raises(self, counts):
        meta = pd.DataFrame({"x": range(3)}, index=SAMPLES[:2] + ["Other_F_AD"])
        with pytest.raises(ValueError, match="Sample mismatch"):
            align_samples(counts, meta)
