"""
T-ALL Report - Agent 1 (Dataset) Tests
"""
import gzip
import io
import json
import tarfile

import numpy as np
import pandas as pd
import pytest

from tall_report.agents import agent1_dataset
from tall_report.agents.agent1_dataset import (
    DatasetAgent,
    assign_conditions,
    clean_count_matrix,
    counts_from_archive,
    counts_from_table,
    parse_sample_id,
    read_count_table,
)

HTSEQ = (
    "ENSG00000148400.12\t1500\n"
    "ENSG00000114315.4\t820\n"
    "ENSG00000136997.21\t3100\n"
    "__no_feature\t120000\n"
    "__ambiguous\t3000\n"
)

FEATURECOUNTS = (
    "# Program:featureCounts v2.0.1; Command:...\n"
    "Geneid\tChr\tStart\tEnd\tStrand\tLength\tsample.bam\n"
    "ENSG00000148400\tchr9\t1\t100\t-\t9000\t40\n"
    "ENSG00000114315\tchr3\t1\t100\t-\t2000\t7\n"
)


def add_member(tar, name, payload: bytes):
    info = tarfile.TarInfo(name)
    info.size = len(payload)
    tar.addfile(info, io.BytesIO(payload))


def build_archive(path, samples):
    """GEO-style RAW tar: one gzipped HTSeq file per GSM plus a README."""
    with tarfile.open(path, "w") as tar:
        for gsm, scale in samples.items():
            lines = "".join(
                f"{gene}\t{int(count) * scale}\n"
                for gene, count in (line.split("\t") for line in HTSEQ.strip().split("\n"))
            )
            add_member(tar, f"{gsm}_CUTLL1_rep.counts.txt.gz", gzip.compress(lines.encode()))
        add_member(tar, "README.pdf", b"%PDF")
    return path


class TestCountParsing:
    """Per-sample count files and archives."""

    @pytest.mark.parametrize("name,expected", [
        ("GSM123456_CUTLL1_DMSO.txt.gz", "GSM123456"),
        ("raw/GSM9_counts.tsv", "GSM9"),
        ("sampleA.counts", "sampleA"),
        ("sampleB.csv.gz", "sampleB"),
    ])
    def test_parse_sample_id(self, name, expected):
        assert parse_sample_id(name) == expected

    def test_htseq(self):
        series = read_count_table(io.BytesIO(HTSEQ.encode()), "GSM1.txt")

        assert series.name == "GSM1"
        assert len(series) == 3
        assert series["ENSG00000136997.21"] == 3100
        assert not any(g.startswith("__") for g in series.index)

    def test_featurecounts_gzipped(self):
        payload = gzip.compress(FEATURECOUNTS.encode())
        series = read_count_table(io.BytesIO(payload), "GSM2_fc.txt.gz")

        assert series.name == "GSM2"
        assert series.to_dict() == {"ENSG00000148400": 40, "ENSG00000114315": 7}

    def test_archive(self, temp_dir):
        archive = build_archive(temp_dir / "GSE1_RAW.tar", {"GSM1": 1, "GSM2": 2})

        counts = counts_from_archive(archive)

        assert list(counts.columns) == ["GSM1", "GSM2"]
        assert counts.loc["ENSG00000148400.12", "GSM2"] == 3000

    def test_archive_without_counts(self, temp_dir):
        path = temp_dir / "empty.tar"
        with tarfile.open(path, "w") as tar:
            add_member(tar, "README.pdf", b"%PDF")
        with pytest.raises(ValueError):
            counts_from_archive(path)

    def test_combined_table(self, temp_dir):
        path = temp_dir / "GSE1_counts.txt"
        path.write_text(
            "gene_id\tsymbol\tLength\tGSM1\tGSM2\n"
            "ENSG00000148400\tNOTCH1\t9000\t10\t20\n"
            "ENSG00000114315\tHES1\t2000\t5\t0\n"
        )
        counts = counts_from_table(path)
        assert list(counts.columns) == ["GSM1", "GSM2"]
        assert counts.loc["ENSG00000114315", "GSM1"] == 5


class TestCleanCountMatrix:
    """Id normalization and integer checks."""

    def test_versions_stripped_and_summed(self):
        counts = pd.DataFrame(
            {"S1": [10, 5, 1], "S2": [0, 2, np.nan]},
            index=["ENSG00000000001.3", "ENSG00000000001.4", "ENSG00000000002.1"]
        )
        cleaned = clean_count_matrix(counts)

        assert cleaned.index.name == "gene_id"
        assert cleaned.loc["ENSG00000000001", "S1"] == 15
        assert cleaned.loc["ENSG00000000002", "S2"] == 0
        assert cleaned.dtypes.eq(np.int64).all()

    def test_par_y_kept_apart(self):
        counts = pd.DataFrame({"S1": [1, 2]}, index=["ENSG00000002586.20", "ENSG00000002586.20_PAR_Y"])
        assert len(clean_count_matrix(counts)) == 2

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            clean_count_matrix(pd.DataFrame({"S1": [1, -1]}, index=["A", "B"]))

    def test_non_integer_rounded(self):
        cleaned = clean_count_matrix(pd.DataFrame({"S1": [1.4, 2.6]}, index=["A", "B"]))
        assert cleaned["S1"].tolist() == [1, 3]


class TestAssignConditions:
    """Mapping, characteristics field, then title patterns."""

    @pytest.fixture
    def annotations(self):
        return pd.DataFrame({
            "sample_id": ["GSM1", "GSM2", "GSM3"],
            "title": ["CUTLL1 GSI rep1", "CUTLL1 DMSO rep1", "CUTLL1 untreated"],
            "treatment": ["GSI", "DMSO", "none"],
        })

    def test_explicit_mapping(self, annotations):
        result = assign_conditions(["GSM1", "GSM2", "GSM3"], annotations,
                                   sample_conditions={"GSM1": "treated", "GSM2": "control"})
        assert result["GSM1"] == "treated"
        assert pd.isna(result["GSM3"])

    def test_field(self, annotations):
        result = assign_conditions(["GSM2", "GSM1"], annotations, condition_field="Treatment")
        assert result.tolist() == ["DMSO", "GSI"]

    def test_missing_field(self, annotations):
        with pytest.raises(ValueError):
            assign_conditions(["GSM1"], annotations, condition_field="genotype")

    def test_title_patterns(self, annotations):
        result = assign_conditions(
            ["GSM1", "GSM2", "GSM3"], annotations,
            condition_patterns={"treated": r"\bGSI\b", "control": r"DMSO"}
        )
        assert result["GSM1"] == "treated"
        assert result["GSM2"] == "control"
        assert pd.isna(result["GSM3"])

    def test_no_rule(self, annotations):
        with pytest.raises(ValueError):
            assign_conditions(["GSM1"], annotations)


class TestDatasetAgent:
    """Local, archive and GEO modes."""

    def test_local_mode(self, input_dir, temp_dir, sample_config):
        agent = DatasetAgent(input_dir, temp_dir / "out", sample_config)
        results = agent.execute()

        assert results["source"] == "local"
        assert results["group_sizes"] == {"treated": 3, "control": 3}

        counts = pd.read_csv(temp_dir / "out" / "count_matrix.csv")
        assert counts.columns[0] == "gene_id"
        assert counts.shape == (200, 7)

        with open(temp_dir / "out" / "dataset_summary.json") as f:
            summary = json.load(f)
        assert summary["n_samples"] == 6
        assert set(summary["library_sizes"]) == set(summary["genes_detected"])
        assert (temp_dir / "out" / "meta_agent1_dataset.json").exists()
        assert (temp_dir / "out" / "log_agent1_dataset.txt").exists()

    def test_local_mode_drops_other_conditions(self, input_dir, temp_dir, sample_config):
        metadata = pd.read_csv(input_dir / "metadata.csv")
        metadata.loc[5, "condition"] = "washout"
        metadata.to_csv(input_dir / "metadata.csv", index=False)

        agent = DatasetAgent(input_dir, temp_dir / "out", sample_config)
        results = agent.execute()

        assert results["n_samples"] == 5
        saved = pd.read_csv(temp_dir / "out" / "metadata.csv")
        assert "washout" not in set(saved["condition"])

    def test_archive_mode(self, temp_dir, sample_config):
        archive = build_archive(temp_dir / "GSE1_RAW.tar", {"GSM1": 1, "GSM2": 2, "GSM3": 1, "GSM4": 3})
        config = {
            **sample_config,
            "archive_path": str(archive),
            "sample_conditions": {"GSM1": "control", "GSM2": "treated",
                                  "GSM3": "control", "GSM4": "treated"},
        }

        agent = DatasetAgent(temp_dir / "empty_input", temp_dir / "out", config)
        results = agent.execute()

        assert results["source"] == "archive"
        counts = pd.read_csv(temp_dir / "out" / "count_matrix.csv", index_col=0)
        assert "ENSG00000148400" in counts.index
        metadata = pd.read_csv(temp_dir / "out" / "metadata.csv")
        assert dict(zip(metadata["sample_id"], metadata["condition"]))["GSM4"] == "treated"

    def test_geo_mode(self, temp_dir, sample_config, monkeypatch):
        archive = build_archive(temp_dir / "GSE777_RAW.tar", {"GSM1": 1, "GSM2": 2, "GSM3": 1, "GSM4": 2})
        annotations = pd.DataFrame({
            "sample_id": ["GSM1", "GSM2", "GSM3", "GSM4"],
            "title": ["DMSO 1", "GSI 1", "DMSO 2", "GSI 2"],
            "source_name": ["CUTLL1"] * 4,
            "treatment": ["DMSO", "GSI", "DMSO", "GSI"],
        })
        requested = {}

        def fake_download(self, accession, dest_dir, filename=None):
            requested["accession"] = accession
            return archive

        monkeypatch.setattr(agent1_dataset.GEOClient, "download", fake_download)
        monkeypatch.setattr(agent1_dataset.GEOClient, "fetch_sample_annotations",
                            lambda self, accession, dest_dir: annotations)

        config = {**sample_config, "gse": "GSE777", "contrast": ["GSI", "DMSO"],
                  "condition_field": "treatment"}
        agent = DatasetAgent(temp_dir / "empty_input", temp_dir / "out", config)
        results = agent.execute()

        assert requested["accession"] == "GSE777"
        assert results["group_sizes"] == {"GSI": 2, "DMSO": 2}
        metadata = pd.read_csv(temp_dir / "out" / "metadata.csv")
        assert {"sample_id", "condition", "title", "treatment"} <= set(metadata.columns)

    def test_no_source(self, temp_dir, sample_config):
        agent = DatasetAgent(temp_dir / "empty_input", temp_dir / "out", sample_config)
        with pytest.raises(ValueError):
            agent.execute()

        with open(temp_dir / "out" / "meta_agent1_dataset.json") as f:
            meta = json.load(f)
        assert meta["success"] is False
        assert meta["errors"][0]["type"] == "ValueError"
        assert "input validation failed" in meta["errors"][0]["message"]
