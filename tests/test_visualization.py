"""
T-ALL Report - Agent 4 (Visualization) Tests
"""
import numpy as np
import pandas as pd
import pytest

from conftest import prerank_table
from tall_report.agents.agent3_pathway import standardize_gsea
from tall_report.agents.agent4_visualization import VisualizationAgent, truncate_label

ALL_FIGURES = [
    "volcano_plot", "ma_plot", "pca_plot", "sample_distance_heatmap",
    "heatmap_top_degs", "dispersion_plot", "pathway_barplot", "gsea_nes_barplot",
]


@pytest.fixture
def viz_input(temp_dir, sample_all_results, sample_deg_results, sample_metadata):
    path = temp_dir / "accumulated"
    path.mkdir()
    sample_all_results.to_csv(path / "deg_all_results.csv", index=False)
    sample_deg_results.to_csv(path / "deg_significant.csv", index=False)
    sample_metadata.to_csv(path / "metadata.csv", index=False)

    np.random.seed(3)
    genes = sample_all_results["gene_id"]
    samples = sample_metadata["sample_id"]
    vst = pd.DataFrame(np.random.normal(8, 1.5, (len(genes), len(samples))), columns=samples)
    vst.iloc[:6, :3] += 3
    vst.insert(0, "gene_id", genes.values)
    vst.to_csv(path / "vst_counts.csv", index=False)

    base_mean = sample_all_results["baseMean"].values
    fitted = 0.05 + 2.0 / base_mean
    pd.DataFrame({
        "gene_id": genes.values,
        "baseMean": base_mean,
        "genewise_dispersions": fitted * np.random.lognormal(0, 0.5, len(genes)),
        "fitted_dispersions": fitted,
        "dispersions": fitted * np.random.lognormal(0, 0.2, len(genes)),
    }).to_csv(path / "dispersions.csv", index=False)

    pd.DataFrame({
        "direction": ["up", "up", "down"],
        "database": ["MSigDB_Hallmark_2020", "KEGG_2021_Human", "MSigDB_Hallmark_2020"],
        "term_name": ["Notch Signaling", "Cell cycle", "Unfolded Protein Response"],
        "padj": [1e-6, 1e-3, 1e-4],
        "gene_count": [5, 3, 4],
        "genes": ["HES1;HES4;DTX1;NOTCH3;NRARP", "MYC;HES1;DTX1", "DDIT3;ATF3;TRIB3;CHAC1"],
    }).to_csv(path / "pathway_summary.csv", index=False)

    standardize_gsea(prerank_table()).to_csv(path / "gsea_results.csv", index=False)
    return path


class TestVisualizationAgent:

    def test_all_figures(self, viz_input, temp_dir, sample_config):
        agent = VisualizationAgent(viz_input, temp_dir / "viz", sample_config)
        results = agent.execute()

        figures_dir = temp_dir / "viz" / "figures"
        for name in ALL_FIGURES:
            assert (figures_dir / f"{name}.png").exists(), name
        assert results["failed_figures"] == []
        assert results["total_generated"] == len(ALL_FIGURES)

    def test_svg_format(self, viz_input, temp_dir, sample_config):
        config = {**sample_config, "figure_format": ["png", "svg"]}
        VisualizationAgent(viz_input, temp_dir / "viz", config).execute()
        assert (temp_dir / "viz" / "figures" / "volcano_plot.svg").exists()

    def test_missing_inputs_skip_figures(self, viz_input, temp_dir, sample_config):
        for filename in ["vst_counts.csv", "dispersions.csv", "pathway_summary.csv", "gsea_results.csv"]:
            (viz_input / filename).unlink()

        agent = VisualizationAgent(viz_input, temp_dir / "viz", sample_config)
        results = agent.execute()

        figures_dir = temp_dir / "viz" / "figures"
        assert (figures_dir / "volcano_plot.png").exists()
        assert (figures_dir / "ma_plot.png").exists()
        assert set(results["failed_figures"]) == {
            "pca_plot", "sample_distance_heatmap", "heatmap_top_degs",
            "dispersion_plot", "pathway_barplot", "gsea_nes_barplot",
        }

    def test_one_failure_does_not_stop_others(self, viz_input, temp_dir, sample_config):
        # Dispersion table without baseMean breaks only the dispersion plot
        dispersions = pd.read_csv(viz_input / "dispersions.csv").drop(columns=["baseMean"])
        dispersions.to_csv(viz_input / "dispersions.csv", index=False)

        agent = VisualizationAgent(viz_input, temp_dir / "viz", sample_config)
        results = agent.execute()

        assert results["failed_figures"] == ["dispersion_plot"]
        assert (temp_dir / "viz" / "figures" / "gsea_nes_barplot.png").exists()

    def test_no_deg_results(self, temp_dir, sample_config):
        (temp_dir / "empty").mkdir()
        agent = VisualizationAgent(temp_dir / "empty", temp_dir / "viz", sample_config)
        with pytest.raises(ValueError):
            agent.execute()


def test_truncate_label():
    assert truncate_label("short") == "short"
    assert truncate_label("x" * 60, width=10) == "x" * 10 + "..."
