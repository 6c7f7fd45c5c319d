"""
T-ALL RNA-seq Report Pipeline

A linear pipeline that turns a public leukemia cell line count dataset
into an annotated HTML report:
1. Dataset (GEO download, count matrix)
2. DEG Analysis (PyDESeq2)
3. Pathway Enrichment (Enrichr ORA + GSEA prerank)
4. Visualization
5. Report Generation

Each agent has clear input/output files and can be run independently.
"""

__version__ = "1.0.0"
__author__ = "T-ALL Report Authors"

from .orchestrator import ReportPipeline, create_sample_data

__all__ = ["ReportPipeline", "create_sample_data"]
