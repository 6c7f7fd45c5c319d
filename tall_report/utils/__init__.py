"""Utility modules for the T-ALL report pipeline."""

from .base_agent import BaseAgent, AgentResult, configure_logger
from .gene_ids import (
    add_symbol_column,
    detect_id_type,
    map_to_symbols,
    strip_version
)

__all__ = [
    "BaseAgent",
    "AgentResult",
    "configure_logger",
    "add_symbol_column",
    "detect_id_type",
    "map_to_symbols",
    "strip_version"
]
