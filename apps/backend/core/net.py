"""
HTTP client with retries, backoff and bounded timeouts.

Used by the HTML fetcher for job pages and by the vendor API fetchers for JSON.
"""
import os
import json
import time
import logging
from typing import Any, Dict, Optional, Tuple

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

logger = logging.getLogger(__name__)

DEFAULT_UA = "JobExtractorBot/1.0 (+contact@jobextractor.app)"
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 30.0
DEFAULT_MAX_REDIRECTS = 3
MAX_RETRIES = 2

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
JSON_ACCEPT = "application/json"

# Transport errors the callers treat as routine (expected, retryable) failures
TRANSPORT_ERRORS = (httpx.TimeoutException, httpx.TransportError, httpx.TooManyRedirects)


class HTTPClient:
    """Async HTTP client with separate connect/read timeouts and limited redirects"""

    def __init__(
        self,
        user_agent: Optional[str] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
    ):
        self.user_agent = user_agent or os.getenv("EXTRACTION_USER_AGENT", DEFAULT_UA)
        self.timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self.max_redirects = max_redirects
        self.request_count = 0

    @classmethod
    def from_config(cls, config) -> "HTTPClient":
        return cls(
            user_agent=config.user_agent,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            max_redirects=config.max_redirects,
        )

    def _get_headers(self, accept: str = HTML_ACCEPT, custom_headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": accept,
            "Accept-Language": "en-US,en;q=0.9",
        }
        if custom_headers:
            headers.update(custom_headers)
        return headers

    @retry(
        stop=stop_after_attempt(MAX_RETRIES + 1),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
        reraise=True
    )
    async def fetch(
        self,
        url: str,
        accept: str = HTML_ACCEPT,
        headers: Optional[Dict[str, str]] = None,
        max_size_kb: int = 4096,
    ) -> Tuple[int, Dict[str, str], str, int]:
        """
        GET a URL.

        Returns:
            (status_code, headers, body_text, content_length_bytes)

        Raises httpx transport errors (timeouts, connection failures, redirect
        loops) after retries are exhausted; non-2xx statuses are returned, not raised.
        """
        request_headers = self._get_headers(accept=accept, custom_headers=headers)
        self.request_count += 1

        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            max_redirects=self.max_redirects,
        ) as client:
            start_time = time.monotonic()
            try:
                response = await client.get(url, headers=request_headers)
            except httpx.TimeoutException as e:
                logger.warning(f"[net] Timeout fetching {url}: {e}")
                raise
            except httpx.ConnectError as e:
                logger.warning(f"[net] Connection error fetching {url}: {e}")
                raise

            elapsed_ms = int((time.monotonic() - start_time) * 1000)
            content_length = len(response.content)
            body = response.text
            if content_length > max_size_kb * 1024:
                logger.warning(f"[net] Content too large: {content_length} bytes (limit: {max_size_kb}KB) - {url}")
                body = body[:max_size_kb * 1024]

            logger.info(f"[net] GET {response.status_code} {url} ({content_length} bytes, {elapsed_ms}ms)")
            return response.status_code, dict(response.headers), body, content_length

    async def get_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> Tuple[int, Any]:
        """GET a JSON document. Returns (status_code, parsed_body or None)."""
        status, _, body, _ = await self.fetch(url, accept=JSON_ACCEPT, headers=headers)
        if status < 200 or status >= 300:
            return status, None
        try:
            return status, json.loads(body)
        except ValueError as e:
            logger.warning(f"[net] Invalid JSON from {url}: {e}")
            return status, None
