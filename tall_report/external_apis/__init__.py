"""
External API clients.

- GEOClient: series archive download and sample annotations
- EnrichrClient: gene list upload and shareable enrichment links
"""

from .base_client import APIResponse, BaseAPIClient
from .enrichr_client import EnrichrClient
from .geo_client import GEOClient

__all__ = [
    "APIResponse",
    "BaseAPIClient",
    "EnrichrClient",
    "GEOClient",
]
