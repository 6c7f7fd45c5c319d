"""
T-ALL Report - Test Configuration and Fixtures
"""
import json
import sys
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

TREATED = [f"GSI_{i}" for i in range(1, 4)]
CONTROL = [f"DMSO_{i}" for i in range(1, 4)]


@pytest.fixture
def temp_dir(tmp_path):
    """Per-test directory for inputs and outputs."""
    return tmp_path


@pytest.fixture
def sample_count_matrix():
    """Small synthetic count matrix: genes x samples, 3 treated vs 3 control."""
    np.random.seed(42)
    n_genes = 200

    genes = [f"GENE{i}" for i in range(n_genes)]
    samples = TREATED + CONTROL

    counts = np.random.negative_binomial(n=20, p=0.05, size=(n_genes, len(samples)))

    # First 20 genes up in treated, genes 20-40 down
    counts[:20, :3] = counts[:20, :3] * 4
    counts[20:40, :3] = counts[20:40, :3] // 4 + 1

    df = pd.DataFrame(counts, index=genes, columns=samples)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def sample_metadata():
    """Metadata matching sample_count_matrix."""
    return pd.DataFrame({
        "sample_id": TREATED + CONTROL,
        "condition": ["treated"] * 3 + ["control"] * 3,
        "title": [f"CUTLL1 GSI rep{i}" for i in range(1, 4)] + [f"CUTLL1 DMSO rep{i}" for i in range(1, 4)]
    })


@pytest.fixture
def sample_config():
    """Offline pipeline config."""
    return {
        "contrast": ["treated", "control"],
        "padj_cutoff": 0.05,
        "log2fc_cutoff": 1.0,
        "annotate_symbols": False,
        "use_lfc_shrinkage": False,
        "create_share_links": False,
        "gsea_permutations": 100,
        "cell_line": "CUTLL1",
    }


@pytest.fixture
def input_dir(temp_dir, sample_count_matrix, sample_metadata):
    """Input directory holding count_matrix.csv and metadata.csv."""
    path = temp_dir / "input"
    path.mkdir()
    sample_count_matrix.to_csv(path / "count_matrix.csv")
    sample_metadata.to_csv(path / "metadata.csv", index=False)
    return path


@pytest.fixture
def sample_deg_results():
    """Significant DEG table as written by the DEG agent."""
    np.random.seed(42)
    up = ["HES1", "HES4", "DTX1", "NOTCH3", "NRARP", "MYC"]
    down = ["DDIT3", "ATF3", "TRIB3", "CHAC1"]
    genes = up + down

    return pd.DataFrame({
        "gene_id": [f"ENSG{i:011d}" for i in range(len(genes))],
        "gene_symbol": genes,
        "baseMean": np.random.uniform(100, 10000, len(genes)),
        "log2FC": [3.0, 2.5, 2.2, 1.8, 1.5, 1.2, -2.8, -2.0, -1.6, -1.1],
        "padj": [1e-12, 1e-10, 1e-8, 1e-6, 1e-4, 1e-3, 1e-11, 1e-7, 1e-5, 1e-2],
        "direction": ["up"] * len(up) + ["down"] * len(down)
    })


@pytest.fixture
def sample_all_results(sample_deg_results):
    """Full DEG result table including non-significant genes."""
    np.random.seed(7)
    background = pd.DataFrame({
        "gene_id": [f"GENE{i}" for i in range(60)],
        "gene_symbol": [f"GENE{i}" for i in range(60)],
        "baseMean": np.random.uniform(10, 5000, 60),
        "log2FC": np.random.normal(0, 0.4, 60),
        "padj": np.random.uniform(0.1, 1.0, 60),
    })
    significant = sample_deg_results.drop(columns=["direction"])
    results = pd.concat([significant, background], ignore_index=True)
    results["lfcSE"] = 0.3
    results["stat"] = results["log2FC"] / results["lfcSE"]
    results["pvalue"] = results["padj"] / 2
    return results[["gene_id", "gene_symbol", "baseMean", "log2FC", "lfcSE", "stat", "pvalue", "padj"]]


def enrichr_table(genes, library):
    """gseapy.enrichr-style results for a gene list."""
    genes = list(genes)
    hits = ";".join(genes[:3])
    return pd.DataFrame({
        "Gene_set": [library, library],
        "Term": [f"{library} term A", f"{library} term B"],
        "Overlap": [f"{min(3, len(genes))}/50", "1/200"],
        "P-value": [1e-6, 0.02],
        "Adjusted P-value": [1e-4, 0.3],
        "Odds Ratio": [25.0, 2.0],
        "Combined Score": [300.0, 8.0],
        "Genes": [hits, genes[0]],
    })


def prerank_table():
    """gseapy.prerank-style res2d with library-prefixed terms."""
    return pd.DataFrame({
        "Name": ["prerank"] * 3,
        "Term": [
            "MSigDB_Hallmark_2020__Notch Signaling",
            "MSigDB_Hallmark_2020__Unfolded Protein Response",
            "KEGG_2021_Human__Ribosome",
        ],
        "ES": [0.8, -0.6, 0.2],
        "NES": [2.1, -1.7, 0.5],
        "NOM p-val": [0.0, 0.004, 0.6],
        "FDR q-val": [0.001, 0.02, 0.9],
        "FWER p-val": [0.0, 0.01, 1.0],
        "Tag %": ["5/20", "4/30", "2/40"],
        "Gene %": ["3.0%", "5.1%", "9.9%"],
        "Lead_genes": ["HES1;HES4;DTX1", "DDIT3;ATF3", "RPL3"],
    })


@pytest.fixture
def fake_gseapy(monkeypatch):
    """Replace gseapy.enrichr/prerank inside the pathway agent with offline fakes."""
    from tall_report.agents import agent3_pathway

    calls = {"enrichr": [], "prerank": []}

    def fake_enrichr(gene_list, gene_sets, **kwargs):
        calls["enrichr"].append((list(gene_list), gene_sets))
        return SimpleNamespace(results=enrichr_table(gene_list, gene_sets))

    def fake_prerank(rnk, gene_sets, **kwargs):
        calls["prerank"].append((rnk, gene_sets, kwargs))
        return SimpleNamespace(res2d=prerank_table())

    monkeypatch.setattr(agent3_pathway.gp, "enrichr", fake_enrichr)
    monkeypatch.setattr(agent3_pathway.gp, "prerank", fake_prerank)
    return calls


@pytest.fixture
def fake_mygene(monkeypatch):
    """
    Offline MyGene.info. Tests fill lookup["symbols"] (query id -> symbol)
    and optionally lookup["extra_hits"] (query id -> further symbols).
    """
    import mygene

    lookup = {"symbols": {}, "extra_hits": {}, "calls": []}

    def fake_querymany(self, qterms, scopes=None, fields=None, species=None, **kwargs):
        qterms = list(qterms)
        lookup["calls"].append({"ids": qterms, "scopes": scopes, "species": species})
        hits = []
        for query in qterms:
            if query not in lookup["symbols"]:
                hits.append({"query": query, "notfound": True})
                continue
            hits.append({"query": query, "_id": query, "symbol": lookup["symbols"][query]})
            for symbol in lookup["extra_hits"].get(query, []):
                hits.append({"query": query, "_id": f"{query}-alt", "symbol": symbol})
        return hits

    monkeypatch.setattr(mygene.MyGeneInfo, "querymany", fake_querymany)
    return lookup


def write_json(path, data):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f)
