"""
Enrichr API Client

Uploads gene lists to Enrichr so the report can link to an interactive,
shareable enrichment page for each list.

API Documentation: https://maayanlab.cloud/Enrichr/help#api
"""

import logging
from typing import List, Optional

from ..config import ENRICHR_URL
from .base_client import BaseAPIClient, APIResponse

logger = logging.getLogger(__name__)


class EnrichrClient(BaseAPIClient):
    """Client for the Enrichr gene list API."""

    BASE_URL = ENRICHR_URL
    API_NAME = "Enrichr"
    RATE_LIMIT_DELAY = 1.0

    def add_list(self, genes: List[str], description: str = "") -> APIResponse:
        """
        Upload a gene list.

        Returns:
            APIResponse whose data is Enrichr's JSON answer,
            e.g. {"shortId": "5ab2b1a1c1", "userListId": 123456}
        """
        genes = [str(g).strip() for g in genes if str(g).strip()]
        if not genes:
            raise ValueError("Cannot upload an empty gene list to Enrichr")

        payload = {
            'list': (None, '\n'.join(genes)),
            'description': (None, description),
        }
        logger.info(f"Uploading {len(genes)} genes to Enrichr ({description or 'no description'})")
        response = self.post("addList", files=payload)

        if response.success and 'shortId' not in (response.data or {}):
            response.success = False
            response.error = "Enrichr response has no shortId"
        return response

    def view_list(self, user_list_id: int) -> APIResponse:
        """Fetch a previously uploaded list back from Enrichr."""
        return self.get("view", params={"userListId": user_list_id}, use_cache=False)

    def share_link(self, short_id: str) -> str:
        """Public URL of the enrichment page for an uploaded list."""
        return f"{self.BASE_URL}/enrich?dataset={short_id}"

    def create_share_link(self, genes: List[str], description: str = "") -> Optional[str]:
        """Upload a list and return its shareable link, or None on failure."""
        response = self.add_list(genes, description)
        if not response.success:
            logger.warning(f"Enrichr upload failed: {response.error}")
            return None
        return self.share_link(response.data['shortId'])
