"""
Persistence for job records, attempts, cached HTML, pipeline events and scraping logs.

Two backends share one interface: an in-process store (tests, single worker)
and PostgreSQL via psycopg2. Cache creation is create-or-find on the
(record, normalized URL, content hash) key in both.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import fields as dc_fields
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from core.url_normalizer import normalize_url
from .models import (
    Attempt,
    AttemptStatus,
    CachedHTMLEntry,
    EventStatus,
    PipelineEvent,
    RECORD_FIELDS,
    ScrapingLog,
    TargetRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

UPDATABLE_RECORD_FIELDS = frozenset(RECORD_FIELDS) | {'extraction_status'}


class RecordNotFound(LookupError):
    pass


class PipelineStore(ABC):
    """Storage interface used by every pipeline component."""

    # Records
    @abstractmethod
    def create_record(self, record: TargetRecord) -> TargetRecord: ...

    @abstractmethod
    def get_record(self, record_id: str) -> Optional[TargetRecord]: ...

    @abstractmethod
    def find_record_by_url(self, url: str) -> Optional[TargetRecord]: ...

    @abstractmethod
    def update_record_fields(self, record_id: str, updates: Dict[str, Any]) -> TargetRecord: ...

    def get_or_create_record(self, url: str) -> Tuple[TargetRecord, bool]:
        existing = self.find_record_by_url(url)
        if existing:
            return existing, False
        return self.create_record(TargetRecord(url=url)), True

    # Attempts
    @abstractmethod
    def create_attempt(self, attempt: Attempt) -> Attempt: ...

    @abstractmethod
    def get_attempt(self, attempt_id: str) -> Optional[Attempt]: ...

    @abstractmethod
    def save_attempt(self, attempt: Attempt) -> Attempt: ...

    @abstractmethod
    def list_attempts(self, record_id: str) -> List[Attempt]: ...

    def latest_attempt(self, record_id: str) -> Optional[Attempt]:
        attempts = self.list_attempts(record_id)
        return attempts[0] if attempts else None

    @abstractmethod
    def find_stuck_attempts(self, statuses: Iterable[AttemptStatus], older_than: datetime) -> List[Attempt]: ...

    # HTML cache
    @abstractmethod
    def find_valid_cache(self, record_id: str, normalized_url: str, now: datetime) -> Optional[CachedHTMLEntry]: ...

    @abstractmethod
    def create_or_find_cache(self, entry: CachedHTMLEntry) -> Tuple[CachedHTMLEntry, bool]: ...

    @abstractmethod
    def get_cache_entry(self, entry_id: str) -> Optional[CachedHTMLEntry]: ...

    @abstractmethod
    def expire_cache_entry(self, entry_id: str, now: datetime) -> None: ...

    @abstractmethod
    def count_cache_entries(self, record_id: str, normalized_url: str) -> int: ...

    # Events
    @abstractmethod
    def insert_event(self, event: PipelineEvent) -> PipelineEvent: ...

    @abstractmethod
    def update_event(self, event: PipelineEvent) -> PipelineEvent: ...

    @abstractmethod
    def list_events(self, attempt_id: str) -> List[PipelineEvent]: ...

    def max_step_order(self, attempt_id: str) -> int:
        events = self.list_events(attempt_id)
        return max((e.step_order for e in events), default=0)

    # Scraping logs
    @abstractmethod
    def insert_scraping_log(self, log: ScrapingLog) -> ScrapingLog: ...

    @abstractmethod
    def list_scraping_logs(self, attempt_id: str) -> List[ScrapingLog]: ...


class InMemoryStore(PipelineStore):
    """Thread-safe in-process store. Objects are copied in and out like a database would."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[str, TargetRecord] = {}
        self._attempts: Dict[str, Attempt] = {}
        self._cache: Dict[str, CachedHTMLEntry] = {}
        self._cache_keys: Dict[Tuple[str, str, str], str] = {}
        self._events: Dict[str, PipelineEvent] = {}
        self._logs: Dict[str, ScrapingLog] = {}

    def create_record(self, record: TargetRecord) -> TargetRecord:
        with self._lock:
            self._records[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def get_record(self, record_id: str) -> Optional[TargetRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record else None

    def find_record_by_url(self, url: str) -> Optional[TargetRecord]:
        target = normalize_url(url)
        with self._lock:
            for record in self._records.values():
                if normalize_url(record.url) == target:
                    return copy.deepcopy(record)
        return None

    def update_record_fields(self, record_id: str, updates: Dict[str, Any]) -> TargetRecord:
        unknown = set(updates) - UPDATABLE_RECORD_FIELDS
        if unknown:
            raise ValueError(f"Cannot update record fields: {sorted(unknown)}")
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFound(record_id)
            for name, value in updates.items():
                setattr(record, name, copy.deepcopy(value))
            record.updated_at = utcnow()
            return copy.deepcopy(record)

    def create_attempt(self, attempt: Attempt) -> Attempt:
        with self._lock:
            self._attempts[attempt.id] = copy.deepcopy(attempt)
            return attempt

    def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            return copy.deepcopy(attempt) if attempt else None

    def save_attempt(self, attempt: Attempt) -> Attempt:
        with self._lock:
            if attempt.id not in self._attempts:
                raise RecordNotFound(attempt.id)
            self._attempts[attempt.id] = copy.deepcopy(attempt)
            return attempt

    def list_attempts(self, record_id: str) -> List[Attempt]:
        with self._lock:
            attempts = [copy.deepcopy(a) for a in self._attempts.values() if a.record_id == record_id]
        return sorted(attempts, key=lambda a: a.created_at, reverse=True)

    def find_stuck_attempts(self, statuses: Iterable[AttemptStatus], older_than: datetime) -> List[Attempt]:
        wanted = set(statuses)
        with self._lock:
            stuck = [
                copy.deepcopy(a) for a in self._attempts.values()
                if a.status in wanted and a.updated_at < older_than
            ]
        return sorted(stuck, key=lambda a: a.updated_at)

    def find_valid_cache(self, record_id: str, normalized_url: str, now: datetime) -> Optional[CachedHTMLEntry]:
        with self._lock:
            candidates = [
                e for e in self._cache.values()
                if e.record_id == record_id and e.normalized_url == normalized_url and e.is_valid(now)
            ]
        if not candidates:
            return None
        return copy.deepcopy(max(candidates, key=lambda e: e.valid_until))

    def create_or_find_cache(self, entry: CachedHTMLEntry) -> Tuple[CachedHTMLEntry, bool]:
        with self._lock:
            existing_id = self._cache_keys.get(entry.key)
            if existing_id:
                existing = self._cache[existing_id]
                # identical bytes fetched again renew an expired window
                if not existing.is_valid(entry.created_at):
                    existing.valid_until = entry.valid_until
                return copy.deepcopy(existing), False
            self._cache[entry.id] = copy.deepcopy(entry)
            self._cache_keys[entry.key] = entry.id
            return copy.deepcopy(entry), True

    def get_cache_entry(self, entry_id: str) -> Optional[CachedHTMLEntry]:
        with self._lock:
            entry = self._cache.get(entry_id)
            return copy.deepcopy(entry) if entry else None

    def expire_cache_entry(self, entry_id: str, now: datetime) -> None:
        with self._lock:
            entry = self._cache.get(entry_id)
            if entry:
                entry.valid_until = now

    def count_cache_entries(self, record_id: str, normalized_url: str) -> int:
        with self._lock:
            return sum(
                1 for e in self._cache.values()
                if e.record_id == record_id and e.normalized_url == normalized_url
            )

    def insert_event(self, event: PipelineEvent) -> PipelineEvent:
        with self._lock:
            for existing in self._events.values():
                if existing.attempt_id == event.attempt_id and existing.step_order == event.step_order:
                    raise ValueError(
                        f"Duplicate step_order {event.step_order} for attempt {event.attempt_id}"
                    )
            self._events[event.id] = copy.deepcopy(event)
            return event

    def update_event(self, event: PipelineEvent) -> PipelineEvent:
        with self._lock:
            if event.id not in self._events:
                raise RecordNotFound(event.id)
            self._events[event.id] = copy.deepcopy(event)
            return event

    def list_events(self, attempt_id: str) -> List[PipelineEvent]:
        with self._lock:
            events = [copy.deepcopy(e) for e in self._events.values() if e.attempt_id == attempt_id]
        return sorted(events, key=lambda e: e.step_order)

    def insert_scraping_log(self, log: ScrapingLog) -> ScrapingLog:
        with self._lock:
            self._logs[log.id] = copy.deepcopy(log)
            return log

    def list_scraping_logs(self, attempt_id: str) -> List[ScrapingLog]:
        with self._lock:
            logs = [copy.deepcopy(l) for l in self._logs.values() if l.attempt_id == attempt_id]
        return sorted(logs, key=lambda l: l.created_at)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS job_listings (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    normalized_url TEXT NOT NULL,
    title TEXT,
    company_name TEXT,
    description TEXT,
    requirements TEXT,
    responsibilities TEXT,
    location TEXT,
    remote_type TEXT,
    salary_min NUMERIC,
    salary_max NUMERIC,
    salary_currency VARCHAR(3),
    benefits TEXT,
    about_company TEXT,
    company_culture TEXT,
    custom_sections JSONB NOT NULL DEFAULT '{}'::JSONB,
    extraction_status JSONB NOT NULL DEFAULT '{}'::JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_job_listings_normalized_url ON job_listings (normalized_url);

CREATE TABLE IF NOT EXISTS extraction_attempts (
    id TEXT PRIMARY KEY,
    record_id TEXT NOT NULL REFERENCES job_listings(id),
    url TEXT NOT NULL,
    domain TEXT NOT NULL,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    failed_step TEXT,
    error_message TEXT,
    extraction_method TEXT,
    provider TEXT,
    confidence DOUBLE PRECISION CHECK (confidence IS NULL OR (confidence >= 0 AND confidence <= 1)),
    duration_seconds DOUBLE PRECISION,
    cache_entry_id TEXT,
    response_metadata JSONB NOT NULL DEFAULT '{}'::JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_extraction_attempts_record ON extraction_attempts (record_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_extraction_attempts_status ON extraction_attempts (status, updated_at);

CREATE TABLE IF NOT EXISTS html_cache_entries (
    id TEXT PRIMARY KEY,
    record_id TEXT NOT NULL REFERENCES job_listings(id),
    attempt_id TEXT,
    normalized_url TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    raw_html TEXT NOT NULL,
    cleaned_html TEXT NOT NULL,
    http_status INTEGER,
    fetch_metadata JSONB NOT NULL DEFAULT '{}'::JSONB,
    valid_until TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (record_id, normalized_url, content_hash)
);

CREATE TABLE IF NOT EXISTS pipeline_events (
    id TEXT PRIMARY KEY,
    attempt_id TEXT NOT NULL REFERENCES extraction_attempts(id),
    record_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    step_order INTEGER NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    duration_ms INTEGER,
    input_payload JSONB NOT NULL DEFAULT '{}'::JSONB,
    output_payload JSONB NOT NULL DEFAULT '{}'::JSONB,
    metadata JSONB NOT NULL DEFAULT '{}'::JSONB,
    error_type TEXT,
    error_message TEXT,
    UNIQUE (attempt_id, step_order)
);

CREATE TABLE IF NOT EXISTS html_scraping_logs (
    id TEXT PRIMARY KEY,
    attempt_id TEXT,
    record_id TEXT,
    url TEXT NOT NULL,
    domain TEXT NOT NULL,
    extractor_kind TEXT NOT NULL,
    board_type TEXT,
    html_size INTEGER NOT NULL DEFAULT 0,
    cleaned_html_size INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    field_results JSONB NOT NULL DEFAULT '{}'::JSONB,
    selectors_tried JSONB NOT NULL DEFAULT '{}'::JSONB,
    error_type TEXT,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def _row_to(cls, row: Dict[str, Any]):
    names = {f.name for f in dc_fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in names})


def _jsonify(value: Any) -> Any:
    return Json(value) if isinstance(value, (dict, list)) else value


class PostgresStore(PipelineStore):
    """PostgreSQL-backed store. One short-lived connection per operation."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def _get_db_conn(self):
        """Get database connection"""
        return psycopg2.connect(self.db_url)

    def _execute(self, query: str, params: Tuple = (), fetch: str = "none"):
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                if fetch == "one":
                    result = cur.fetchone()
                elif fetch == "all":
                    result = cur.fetchall()
                else:
                    result = None
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        self._execute(SCHEMA_SQL)
        logger.info("[storage] Schema ensured")

    # Records

    def _record_from_row(self, row) -> Optional[TargetRecord]:
        if not row:
            return None
        data = dict(row)
        for money in ('salary_min', 'salary_max'):
            if data.get(money) is not None:
                data[money] = float(data[money])
        return _row_to(TargetRecord, data)

    def create_record(self, record: TargetRecord) -> TargetRecord:
        row = self._execute("""
            INSERT INTO job_listings (id, url, normalized_url, custom_sections, extraction_status, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """, (
            record.id, record.url, normalize_url(record.url),
            Json(record.custom_sections), Json(record.extraction_status),
            record.created_at, record.updated_at,
        ), fetch="one")
        created = self._record_from_row(row)
        # Optional fields supplied on creation
        initial = {name: getattr(record, name) for name in RECORD_FIELDS
                   if getattr(record, name) not in (None, {}) and name != 'custom_sections'}
        if initial:
            created = self.update_record_fields(record.id, initial)
        return created

    def get_record(self, record_id: str) -> Optional[TargetRecord]:
        row = self._execute("SELECT * FROM job_listings WHERE id = %s", (record_id,), fetch="one")
        return self._record_from_row(row)

    def find_record_by_url(self, url: str) -> Optional[TargetRecord]:
        row = self._execute("""
            SELECT * FROM job_listings WHERE normalized_url = %s
            ORDER BY created_at ASC LIMIT 1
        """, (normalize_url(url),), fetch="one")
        return self._record_from_row(row)

    def update_record_fields(self, record_id: str, updates: Dict[str, Any]) -> TargetRecord:
        unknown = set(updates) - UPDATABLE_RECORD_FIELDS
        if unknown:
            raise ValueError(f"Cannot update record fields: {sorted(unknown)}")
        if not updates:
            record = self.get_record(record_id)
            if record is None:
                raise RecordNotFound(record_id)
            return record

        # Column names come from the whitelist above
        assignments = ", ".join(f"{name} = %s" for name in updates)
        params = tuple(_jsonify(v) for v in updates.values()) + (record_id,)
        row = self._execute(
            f"UPDATE job_listings SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING *",
            params, fetch="one",
        )
        if not row:
            raise RecordNotFound(record_id)
        return self._record_from_row(row)

    # Attempts

    def _attempt_from_row(self, row) -> Optional[Attempt]:
        if not row:
            return None
        data = dict(row)
        data['status'] = AttemptStatus(data['status'])
        return _row_to(Attempt, data)

    def create_attempt(self, attempt: Attempt) -> Attempt:
        self._execute("""
            INSERT INTO extraction_attempts (
                id, record_id, url, domain, status, retry_count, failed_step, error_message,
                extraction_method, provider, confidence, duration_seconds, cache_entry_id,
                response_metadata, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            attempt.id, attempt.record_id, attempt.url, attempt.domain, attempt.status.value,
            attempt.retry_count, attempt.failed_step, attempt.error_message,
            attempt.extraction_method, attempt.provider, attempt.confidence,
            attempt.duration_seconds, attempt.cache_entry_id, Json(attempt.response_metadata),
            attempt.created_at, attempt.updated_at,
        ))
        return attempt

    def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        row = self._execute("SELECT * FROM extraction_attempts WHERE id = %s", (attempt_id,), fetch="one")
        return self._attempt_from_row(row)

    def save_attempt(self, attempt: Attempt) -> Attempt:
        row = self._execute("""
            UPDATE extraction_attempts SET
                status = %s, retry_count = %s, failed_step = %s, error_message = %s,
                extraction_method = %s, provider = %s, confidence = %s, duration_seconds = %s,
                cache_entry_id = %s, response_metadata = %s, updated_at = %s
            WHERE id = %s
            RETURNING id
        """, (
            attempt.status.value, attempt.retry_count, attempt.failed_step, attempt.error_message,
            attempt.extraction_method, attempt.provider, attempt.confidence, attempt.duration_seconds,
            attempt.cache_entry_id, Json(attempt.response_metadata), attempt.updated_at,
            attempt.id,
        ), fetch="one")
        if not row:
            raise RecordNotFound(attempt.id)
        return attempt

    def list_attempts(self, record_id: str) -> List[Attempt]:
        rows = self._execute("""
            SELECT * FROM extraction_attempts WHERE record_id = %s ORDER BY created_at DESC
        """, (record_id,), fetch="all")
        return [self._attempt_from_row(r) for r in rows]

    def latest_attempt(self, record_id: str) -> Optional[Attempt]:
        row = self._execute("""
            SELECT * FROM extraction_attempts WHERE record_id = %s ORDER BY created_at DESC LIMIT 1
        """, (record_id,), fetch="one")
        return self._attempt_from_row(row)

    def find_stuck_attempts(self, statuses: Iterable[AttemptStatus], older_than: datetime) -> List[Attempt]:
        status_values = [s.value for s in statuses]
        rows = self._execute("""
            SELECT * FROM extraction_attempts
            WHERE status = ANY(%s) AND updated_at < %s
            ORDER BY updated_at ASC
        """, (status_values, older_than), fetch="all")
        return [self._attempt_from_row(r) for r in rows]

    # HTML cache

    def find_valid_cache(self, record_id: str, normalized_url: str, now: datetime) -> Optional[CachedHTMLEntry]:
        row = self._execute("""
            SELECT * FROM html_cache_entries
            WHERE record_id = %s AND normalized_url = %s AND valid_until > %s
            ORDER BY valid_until DESC
            LIMIT 1
        """, (record_id, normalized_url, now), fetch="one")
        return _row_to(CachedHTMLEntry, row) if row else None

    def create_or_find_cache(self, entry: CachedHTMLEntry) -> Tuple[CachedHTMLEntry, bool]:
        row = self._execute("""
            INSERT INTO html_cache_entries (
                id, record_id, attempt_id, normalized_url, content_hash, raw_html, cleaned_html,
                http_status, fetch_metadata, valid_until, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (record_id, normalized_url, content_hash) DO UPDATE
                SET valid_until = EXCLUDED.valid_until
                WHERE html_cache_entries.valid_until <= EXCLUDED.created_at
            RETURNING *, (xmax = 0) AS inserted
        """, (
            entry.id, entry.record_id, entry.attempt_id, entry.normalized_url, entry.content_hash,
            entry.raw_html, entry.cleaned_html, entry.http_status, Json(entry.fetch_metadata),
            entry.valid_until, entry.created_at,
        ), fetch="one")
        if row:
            # xmax is 0 only for a freshly inserted row
            return _row_to(CachedHTMLEntry, row), bool(row["inserted"])

        row = self._execute("""
            SELECT * FROM html_cache_entries
            WHERE record_id = %s AND normalized_url = %s AND content_hash = %s
        """, (entry.record_id, entry.normalized_url, entry.content_hash), fetch="one")
        return _row_to(CachedHTMLEntry, row), False

    def get_cache_entry(self, entry_id: str) -> Optional[CachedHTMLEntry]:
        row = self._execute("SELECT * FROM html_cache_entries WHERE id = %s", (entry_id,), fetch="one")
        return _row_to(CachedHTMLEntry, row) if row else None

    def expire_cache_entry(self, entry_id: str, now: datetime) -> None:
        self._execute("UPDATE html_cache_entries SET valid_until = %s WHERE id = %s", (now, entry_id))

    def count_cache_entries(self, record_id: str, normalized_url: str) -> int:
        row = self._execute("""
            SELECT COUNT(*) AS n FROM html_cache_entries WHERE record_id = %s AND normalized_url = %s
        """, (record_id, normalized_url), fetch="one")
        return int(row['n']) if row else 0

    # Events

    def _event_from_row(self, row) -> PipelineEvent:
        data = dict(row)
        data['status'] = EventStatus(data['status'])
        return _row_to(PipelineEvent, data)

    def insert_event(self, event: PipelineEvent) -> PipelineEvent:
        self._execute("""
            INSERT INTO pipeline_events (
                id, attempt_id, record_id, event_type, step_order, status, started_at, completed_at,
                duration_ms, input_payload, output_payload, metadata, error_type, error_message
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            event.id, event.attempt_id, event.record_id, event.event_type, event.step_order,
            event.status.value, event.started_at, event.completed_at, event.duration_ms,
            Json(event.input_payload), Json(event.output_payload), Json(event.metadata),
            event.error_type, event.error_message,
        ))
        return event

    def update_event(self, event: PipelineEvent) -> PipelineEvent:
        self._execute("""
            UPDATE pipeline_events SET
                status = %s, completed_at = %s, duration_ms = %s, output_payload = %s,
                metadata = %s, error_type = %s, error_message = %s
            WHERE id = %s
        """, (
            event.status.value, event.completed_at, event.duration_ms, Json(event.output_payload),
            Json(event.metadata), event.error_type, event.error_message, event.id,
        ))
        return event

    def list_events(self, attempt_id: str) -> List[PipelineEvent]:
        rows = self._execute("""
            SELECT * FROM pipeline_events WHERE attempt_id = %s ORDER BY step_order ASC
        """, (attempt_id,), fetch="all")
        return [self._event_from_row(r) for r in rows]

    def max_step_order(self, attempt_id: str) -> int:
        row = self._execute("""
            SELECT COALESCE(MAX(step_order), 0) AS max_step FROM pipeline_events WHERE attempt_id = %s
        """, (attempt_id,), fetch="one")
        return int(row['max_step']) if row else 0

    # Scraping logs

    def insert_scraping_log(self, log: ScrapingLog) -> ScrapingLog:
        self._execute("""
            INSERT INTO html_scraping_logs (
                id, attempt_id, record_id, url, domain, extractor_kind, board_type, html_size,
                cleaned_html_size, duration_ms, field_results, selectors_tried, error_type,
                error_message, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            log.id, log.attempt_id, log.record_id, log.url, log.domain, log.extractor_kind,
            log.board_type, log.html_size, log.cleaned_html_size, log.duration_ms,
            Json(log.field_results), Json(log.selectors_tried), log.error_type,
            log.error_message, log.created_at,
        ))
        return log

    def list_scraping_logs(self, attempt_id: str) -> List[ScrapingLog]:
        rows = self._execute("""
            SELECT * FROM html_scraping_logs WHERE attempt_id = %s ORDER BY created_at ASC
        """, (attempt_id,), fetch="all")
        return [_row_to(ScrapingLog, dict(r)) for r in rows]
