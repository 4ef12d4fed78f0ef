"""
HTML fetcher.

Fetch-or-reuse: a still-valid cache entry is returned without touching the
network; otherwise the page is fetched, cleaned and stored by content hash.
"""

import time
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from core.html_cleaner import HTMLCleaner
from core.net import HTTPClient, TRANSPORT_ERRORS
from core.notifier import ErrorNotifier
from .cache import HTMLCache
from .models import Attempt, CachedHTMLEntry, TargetRecord, utcnow

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Outcome of resolving HTML for a record."""
    success: bool
    raw_html: Optional[str] = None
    cleaned_html: Optional[str] = None
    from_cache: bool = False
    http_status: Optional[int] = None
    error: Optional[str] = None
    cache_entry: Optional[CachedHTMLEntry] = None
    duration_ms: int = 0

    @classmethod
    def failure(cls, error: str, http_status: Optional[int] = None, duration_ms: int = 0) -> "FetchResult":
        return cls(success=False, error=error, http_status=http_status, duration_ms=duration_ms)

    def summary(self) -> dict:
        return {
            "success": self.success,
            "from_cache": self.from_cache,
            "http_status": self.http_status,
            "html_size": len(self.raw_html.encode('utf-8')) if self.raw_html else 0,
            "cleaned_html_size": len(self.cleaned_html.encode('utf-8')) if self.cleaned_html else 0,
            "cache_entry_id": self.cache_entry.id if self.cache_entry else None,
            "error": self.error,
        }


class HTMLFetcher:
    """Resolves raw and cleaned HTML for a record, from cache or network."""

    def __init__(self, cache: HTMLCache, http_client: HTTPClient,
                 cleaner: Optional[HTMLCleaner] = None, notifier: Optional[ErrorNotifier] = None):
        self.cache = cache
        self.http_client = http_client
        self.cleaner = cleaner or HTMLCleaner()
        self.notifier = notifier or ErrorNotifier()

    async def fetch(self, record: TargetRecord, attempt: Optional[Attempt] = None,
                    use_cache: bool = True, url: Optional[str] = None,
                    fetch_mode: str = "direct") -> FetchResult:
        """
        Return HTML for the record's URL, or for ``url`` when a related page is
        needed. ``use_cache=False`` always goes to the network.

        Routine HTTP failures (non-2xx, timeouts, connection errors) come back as
        a failed FetchResult. Anything else is reported to the notifier and raised.
        """
        url = url or record.url
        if not url:
            return FetchResult.failure("URL is required")

        cached = self.cache.find_valid(record.id, url) if use_cache else None
        if cached:
            logger.info(
                f"[fetcher] Cache hit record={record.id} entry={cached.id} "
                f"valid_until={cached.valid_until.isoformat()}"
            )
            return FetchResult(
                success=True,
                raw_html=cached.raw_html,
                cleaned_html=cached.cleaned_html,
                from_cache=True,
                http_status=cached.http_status,
                cache_entry=cached,
            )

        return await self._fetch_from_network(record, attempt, url, fetch_mode)

    async def _fetch_from_network(self, record: TargetRecord, attempt: Optional[Attempt],
                                  url: str, fetch_mode: str) -> FetchResult:
        start = time.monotonic()
        try:
            status, headers, body, content_length = await self.http_client.fetch(url)
        except TRANSPORT_ERRORS as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            kind = "Request timeout" if isinstance(e, httpx.TimeoutException) else "Transport error"
            logger.warning(f"[fetcher] {kind} for {url}: {e}")
            return FetchResult.failure(f"{kind}: {e}", duration_ms=duration_ms)
        except Exception as e:
            self.notifier.notify(
                e, "html_fetch",
                url=url, record_id=record.id, attempt_id=attempt.id if attempt else None,
            )
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        if status < 200 or status >= 300:
            logger.warning(f"[fetcher] HTTP {status} for {url}")
            return FetchResult.failure(f"HTTP {status}: Failed to fetch HTML", http_status=status, duration_ms=duration_ms)

        try:
            cleaned = self.cleaner.clean(body)
            entry, _ = self.cache.store_html(
                record_id=record.id,
                url=url,
                raw_html=body,
                cleaned_html=cleaned,
                http_status=status,
                attempt_id=attempt.id if attempt else None,
                metadata={
                    "fetched_at": utcnow().isoformat(),
                    "fetched_via": "http",
                    "fetch_mode": fetch_mode,
                    "duration_ms": duration_ms,
                    "content_length": content_length,
                    "headers": {k: v for k, v in headers.items()
                                if k.lower() in ("content-type", "content-encoding", "last-modified")},
                },
            )
        except Exception as e:
            self.notifier.notify(
                e, "html_cache_store",
                url=url, record_id=record.id, attempt_id=attempt.id if attempt else None,
            )
            raise

        logger.info(f"[fetcher] Fetched {url} status={status} size={content_length} duration_ms={duration_ms}")
        return FetchResult(
            success=True,
            raw_html=entry.raw_html,
            cleaned_html=entry.cleaned_html,
            from_cache=False,
            http_status=status,
            cache_entry=entry,
            duration_ms=duration_ms,
        )
