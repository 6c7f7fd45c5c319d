"""
Pipeline agents, run in order by the orchestrator.

1. DatasetAgent: GEO download and count matrix
2. DEGAgent: PyDESeq2 differential expression
3. PathwayAgent: Enrichr ORA, GSEA prerank, shareable links
4. VisualizationAgent: QC, DE and enrichment figures
5. ReportAgent: self-contained HTML report
"""

from .agent1_dataset import DatasetAgent
from .agent2_deg import DEGAgent
from .agent3_pathway import PathwayAgent
from .agent4_visualization import VisualizationAgent
from .agent5_report import ReportAgent

__all__ = [
    "DatasetAgent",
    "DEGAgent",
    "PathwayAgent",
    "VisualizationAgent",
    "ReportAgent",
]
