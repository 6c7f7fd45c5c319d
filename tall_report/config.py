"""Configuration settings for the T-ALL RNA-seq report."""
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv

load_dotenv()

# Paths
BASE_DIR = Path(__file__).parent.parent
CACHE_DIR = Path(os.getenv("TALL_REPORT_CACHE_DIR", str(Path.home() / ".tall_report_cache")))

# External services
GEO_DOWNLOAD_URL = os.getenv("GEO_DOWNLOAD_URL", "https://www.ncbi.nlm.nih.gov/geo/download/")
ENRICHR_URL = os.getenv("ENRICHR_URL", "https://maayanlab.cloud/Enrichr")

# Enrichr libraries used for over-representation analysis
ORA_LIBRARIES = [
    "GO_Biological_Process_2023",
    "KEGG_2021_Human",
    "Reactome_2022",
    "MSigDB_Hallmark_2020",
]

# Gene set libraries used for GSEA prerank
GSEA_LIBRARIES = [
    "MSigDB_Hallmark_2020",
    "KEGG_2021_Human",
]

DEFAULT_CONFIG: Dict[str, Any] = {
    # Dataset
    "gse": None,                    # GEO series accession, e.g. "GSE12345"
    "archive_file": None,           # Supplementary file name; None = GSE*_RAW.tar
    "archive_path": None,           # Local archive used in place of a download
    "cell_line": "T-ALL cell line",
    "condition_column": "condition",
    "contrast": ["treated", "control"],  # [treatment, control]
    "sample_conditions": None,      # {"GSM1": "treated", ...}
    "condition_field": None,        # GEO characteristics key holding the condition
    "condition_patterns": None,     # {"treated": "regex", "control": "regex"} on titles

    # Differential expression
    "padj_cutoff": 0.05,
    "log2fc_cutoff": 1.0,
    "min_count_filter": 10,
    "use_lfc_shrinkage": True,
    "annotate_symbols": True,
    "species": "human",

    # Enrichment
    "ora_libraries": ORA_LIBRARIES,
    "gsea_libraries": GSEA_LIBRARIES,
    "gsea_min_size": 15,
    "gsea_max_size": 500,
    "gsea_permutations": 1000,
    "gsea_fdr_cutoff": 0.25,
    "seed": 42,
    "create_share_links": True,

    # Report
    "report_title": "T-ALL Cell Line RNA-seq Report",
}


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Merge defaults, an optional JSON config file and explicit overrides."""
    config = dict(DEFAULT_CONFIG)

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, 'r', encoding='utf-8') as f:
            config.update(json.load(f))

    # None means "not given on the command line"
    config.update({k: v for k, v in (overrides or {}).items() if v is not None})

    validate_config(config)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """Raise ValueError for settings no analysis could run with."""
    contrast = config.get("contrast") or []
    if len(contrast) != 2 or contrast[0] == contrast[1]:
        raise ValueError(f"Contrast must name two different levels, got {contrast}")

    padj = config.get("padj_cutoff", 0.05)
    if not 0 < padj <= 1:
        raise ValueError(f"padj_cutoff must be in (0, 1], got {padj}")

    if config.get("log2fc_cutoff", 0) < 0:
        raise ValueError("log2fc_cutoff must be non-negative")

    if config.get("gsea_min_size", 1) > config.get("gsea_max_size", 500):
        raise ValueError("gsea_min_size must not exceed gsea_max_size")
