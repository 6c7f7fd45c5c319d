"""
Base API Client with common functionality.

Provides:
- Rate limiting
- Retry logic
- Caching
- Error handling
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from ..config import CACHE_DIR

logger = logging.getLogger(__name__)


@dataclass
class APIResponse:
    """Standardized API response."""
    success: bool
    data: Any
    source: str
    query: str
    cached: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BaseAPIClient:
    """
    Base class for external API clients.

    Features:
    - Rate limiting to respect API limits
    - Automatic retry with exponential backoff
    - Local caching to reduce API calls
    """

    # Override in subclasses
    BASE_URL: str = ""
    API_NAME: str = "BaseAPI"
    RATE_LIMIT_DELAY: float = 0.5  # seconds between requests
    MAX_RETRIES: int = 3
    RETRY_STATUS = (429, 500, 502, 503, 504)

    def __init__(
        self,
        enable_cache: bool = True,
        cache_ttl: int = 86400,  # 24 hours
        timeout: int = 30,
        cache_dir: Optional[Path] = None,
        session: Optional[requests.Session] = None
    ):
        self.enable_cache = enable_cache
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self.cache_dir = Path(cache_dir) if cache_dir else CACHE_DIR
        self.session = session or requests.Session()
        self._last_request_time = 0.0

        # Initialize cache directory
        if enable_cache:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _rate_limit(self):
        """Enforce rate limiting."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self.RATE_LIMIT_DELAY:
            time.sleep(self.RATE_LIMIT_DELAY - elapsed)
        self._last_request_time = time.time()

    def _get_cache_key(self, endpoint: str, params: Dict) -> str:
        """Generate cache key from endpoint and params."""
        key_str = f"{self.API_NAME}:{endpoint}:{json.dumps(params, sort_keys=True)}"
        return hashlib.md5(key_str.encode()).hexdigest()

    def _get_cache_path(self, cache_key: str) -> Path:
        """Get cache file path."""
        return self.cache_dir / f"{self.API_NAME}_{cache_key}.json"

    def _read_cache(self, cache_key: str) -> Optional[Any]:
        """Read from cache if valid."""
        if not self.enable_cache:
            return None

        cache_path = self._get_cache_path(cache_key)
        if not cache_path.exists():
            return None

        try:
            with open(cache_path, 'r') as f:
                cached = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Cache read error: {e}")
            return None

        # Check TTL
        if time.time() - cached.get('timestamp', 0) > self.cache_ttl:
            cache_path.unlink()  # Remove expired cache
            return None

        return cached.get('data')

    def _write_cache(self, cache_key: str, data: Any):
        """Write to cache."""
        if not self.enable_cache:
            return

        cache_path = self._get_cache_path(cache_key)
        try:
            with open(cache_path, 'w') as f:
                json.dump({
                    'timestamp': time.time(),
                    'data': data
                }, f)
        except OSError as e:
            logger.warning(f"Cache write error: {e}")

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        data: Optional[Dict] = None,
        files: Optional[Dict] = None
    ) -> Optional[Any]:
        """Make HTTP request with retry logic. Returns parsed JSON or None."""
        url = f"{self.BASE_URL}/{endpoint}" if not endpoint.startswith("http") else endpoint

        for attempt in range(self.MAX_RETRIES):
            self._rate_limit()

            try:
                resp = self.session.request(
                    method.upper(), url,
                    params=params, data=data, files=files,
                    timeout=self.timeout
                )
                if resp.status_code == 200:
                    # Some services answer JSON with a text/plain content type
                    return json.loads(resp.text)
                elif resp.status_code in self.RETRY_STATUS:
                    logger.warning(f"{self.API_NAME} returned {resp.status_code} (attempt {attempt + 1})")
                else:
                    logger.warning(f"{self.API_NAME} request failed: {resp.status_code}")
                    return None

            except requests.Timeout:
                logger.warning(f"{self.API_NAME} timeout (attempt {attempt + 1})")
            except requests.ConnectionError as e:
                logger.warning(f"{self.API_NAME} connection error: {e}")
            except json.JSONDecodeError as e:
                logger.error(f"{self.API_NAME} returned invalid JSON: {e}")
                return None

            if attempt < self.MAX_RETRIES - 1:
                time.sleep(2 ** attempt)

        return None

    def get(
        self,
        endpoint: str,
        params: Optional[Dict] = None,
        use_cache: bool = True
    ) -> APIResponse:
        """GET request with caching."""
        params = params or {}
        cache_key = self._get_cache_key(endpoint, params)

        # Check cache
        if use_cache and self.enable_cache:
            cached_data = self._read_cache(cache_key)
            if cached_data is not None:
                return APIResponse(
                    success=True,
                    data=cached_data,
                    source=self.API_NAME,
                    query=endpoint,
                    cached=True
                )

        # Make request
        data = self._request("GET", endpoint, params=params)

        if data is not None:
            # Cache result
            if use_cache and self.enable_cache:
                self._write_cache(cache_key, data)

            return APIResponse(
                success=True,
                data=data,
                source=self.API_NAME,
                query=endpoint
            )

        return APIResponse(
            success=False,
            data=None,
            source=self.API_NAME,
            query=endpoint,
            error="Request failed"
        )

    def post(self, endpoint: str, files: Optional[Dict] = None,
             data: Optional[Dict] = None) -> APIResponse:
        """POST request (never cached)."""
        result = self._request("POST", endpoint, data=data, files=files)

        if result is not None:
            return APIResponse(success=True, data=result,
                               source=self.API_NAME, query=endpoint)

        return APIResponse(success=False, data=None, source=self.API_NAME,
                           query=endpoint, error="Request failed")
