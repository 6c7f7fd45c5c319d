"""
NCBI GEO Client

Downloads series supplementary files from the GEO download endpoint and
reads per-sample annotations from the SOFT family file.
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

import pandas as pd
from tqdm import tqdm

from ..config import GEO_DOWNLOAD_URL
from .base_client import BaseAPIClient

logger = logging.getLogger(__name__)


class GEOClient(BaseAPIClient):
    """Client for GEO series downloads."""

    BASE_URL = GEO_DOWNLOAD_URL.rstrip('/')
    API_NAME = "GEO"
    RATE_LIMIT_DELAY = 0.34  # NCBI allows ~3 requests/s without a key
    CHUNK_SIZE = 1 << 16

    def __init__(self, timeout: int = 300, **kwargs):
        kwargs.setdefault("enable_cache", False)
        super().__init__(timeout=timeout, **kwargs)

    @staticmethod
    def default_archive_name(accession: str) -> str:
        return f"{accession}_RAW.tar"

    def download_url(self, accession: str, filename: Optional[str] = None) -> str:
        """GEO download URL for the RAW archive or a named supplementary file."""
        params = {"acc": accession, "format": "file"}
        if filename:
            params["file"] = filename
        return f"{self.BASE_URL}/?{urlencode(params)}"

    def download(self, accession: str, dest_dir: Path,
                 filename: Optional[str] = None) -> Path:
        """
        Stream a series file to dest_dir.

        The file is written to a .part sibling and renamed when complete, so an
        interrupted download is never mistaken for a finished one.
        """
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)

        target = dest_dir / (filename or self.default_archive_name(accession))
        if target.exists():
            logger.info(f"Already downloaded: {target}")
            return target

        url = self.download_url(accession, filename)
        logger.info(f"Downloading {accession} from {url}")

        self._rate_limit()
        partial = target.with_name(target.name + ".part")
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            total = int(response.headers.get('content-length', 0)) or None

            with open(partial, 'wb') as f, tqdm(
                total=total, unit='B', unit_scale=True, desc=target.name
            ) as progress:
                for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                    f.write(chunk)
                    progress.update(len(chunk))

        partial.replace(target)
        logger.info(f"Downloaded: {target} ({target.stat().st_size:,} bytes)")
        return target

    def fetch_sample_annotations(self, accession: str, dest_dir: Path) -> pd.DataFrame:
        """
        One row per GSM: sample_id, title, source_name and every
        "key: value" entry of characteristics_ch1 as its own column.
        """
        import GEOparse

        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Fetching SOFT annotations for {accession}...")
        gse = GEOparse.get_GEO(geo=accession, destdir=str(dest_dir), silent=True)

        rows = []
        for gsm_name, gsm in gse.gsms.items():
            info = {
                'sample_id': gsm_name,
                'title': ' '.join(gsm.metadata.get('title', [])),
                'source_name': ' '.join(gsm.metadata.get('source_name_ch1', [])),
            }
            for char in gsm.metadata.get('characteristics_ch1', []):
                if ':' in char:
                    key, val = char.split(':', 1)
                    info[key.strip().lower()] = val.strip()
            rows.append(info)

        logger.info(f"Annotated {len(rows)} samples from {accession}")
        return pd.DataFrame(rows)
