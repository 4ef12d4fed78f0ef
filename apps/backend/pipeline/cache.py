"""
Content-addressed HTML cache.

Entries are keyed by (record, normalized URL, sha256 of the raw HTML) and stay
valid for a fixed window. Storing identical bytes twice returns the first entry,
with its window renewed when it had already expired.
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from core.url_normalizer import normalize_url
from .models import CachedHTMLEntry, utcnow
from .storage import PipelineStore

logger = logging.getLogger(__name__)

VALIDITY_PERIOD_DAYS = 30


def content_hash(html: str) -> str:
    return hashlib.sha256(html.encode('utf-8')).hexdigest()


class HTMLCache:
    """Lookup and idempotent creation of cached page content."""

    def __init__(self, store: PipelineStore, validity_days: int = VALIDITY_PERIOD_DAYS):
        self.store = store
        self.validity = timedelta(days=validity_days)

    def find_valid(self, record_id: str, url: str, now: Optional[datetime] = None) -> Optional[CachedHTMLEntry]:
        """Most recent still-valid entry for a record and URL, if any."""
        return self.store.find_valid_cache(record_id, normalize_url(url), now or utcnow())

    def store_html(
        self,
        record_id: str,
        url: str,
        raw_html: str,
        cleaned_html: str,
        http_status: Optional[int] = None,
        attempt_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[CachedHTMLEntry, bool]:
        """
        Create-or-find a cache entry for fetched HTML.

        Returns:
            (entry, created) - created is False when identical bytes were already cached
        """
        now = utcnow()
        entry = CachedHTMLEntry(
            record_id=record_id,
            normalized_url=normalize_url(url),
            content_hash=content_hash(raw_html),
            raw_html=raw_html,
            cleaned_html=cleaned_html,
            valid_until=now + self.validity,
            attempt_id=attempt_id,
            http_status=http_status,
            fetch_metadata=metadata or {},
            created_at=now,
        )
        stored, created = self.store.create_or_find_cache(entry)
        if created:
            logger.info(f"[cache] Stored {stored.normalized_url} hash={stored.content_hash[:12]} record={record_id}")
        else:
            logger.info(f"[cache] Reusing identical entry {stored.id} for {stored.normalized_url}")
        return stored, created

    def get(self, entry_id: str) -> Optional[CachedHTMLEntry]:
        return self.store.get_cache_entry(entry_id)

    def expire(self, entry_id: str) -> None:
        self.store.expire_cache_entry(entry_id, utcnow())
