"""
Pipeline data model: job records, extraction attempts, cached HTML and events.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AttemptStatus(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"
    MANUAL = "manual"


IN_PROGRESS_STATUSES = frozenset({
    AttemptStatus.PENDING,
    AttemptStatus.FETCHING,
    AttemptStatus.EXTRACTING,
    AttemptStatus.RETRYING,
})

TERMINAL_STATUSES = frozenset({
    AttemptStatus.COMPLETED,
    AttemptStatus.DEAD_LETTER,
    AttemptStatus.MANUAL,
})


class EventStatus(str, Enum):
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class EventType(str, Enum):
    HTML_FETCH = "html_fetch"
    EMBEDDED_JOB_BOARD_FETCH = "embedded_job_board_fetch"
    LIMITED_SOURCE_HANDLING = "limited_source_handling"
    HTML_SCRAPE = "html_scrape"
    API_EXTRACTION = "api_extraction"
    AI_EXTRACTION = "ai_extraction"
    DATA_UPDATE = "data_update"
    COMPLETION = "completion"
    FAILURE = "failure"


class FailedStep(str, Enum):
    HTML_FETCH = "html_fetch"
    API_EXTRACTION = "api_extraction"
    AI_EXTRACTION = "ai_extraction"
    ORCHESTRATION = "orchestration"


EXTRACTION_STEPS = frozenset({FailedStep.API_EXTRACTION.value, FailedStep.AI_EXTRACTION.value})

# Fields an extraction may write to a job record
RECORD_FIELDS = (
    'title',
    'company_name',
    'description',
    'requirements',
    'responsibilities',
    'location',
    'remote_type',
    'salary_min',
    'salary_max',
    'salary_currency',
    'benefits',
    'about_company',
    'company_culture',
    'custom_sections',
)


@dataclass
class TargetRecord:
    """The job listing being enriched."""
    url: str
    id: str = field(default_factory=new_id)
    title: Optional[str] = None
    company_name: Optional[str] = None
    description: Optional[str] = None
    requirements: Optional[str] = None
    responsibilities: Optional[str] = None
    location: Optional[str] = None
    remote_type: Optional[str] = None
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    salary_currency: Optional[str] = None
    benefits: Optional[str] = None
    about_company: Optional[str] = None
    company_culture: Optional[str] = None
    custom_sections: Dict[str, Any] = field(default_factory=dict)
    extraction_status: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Attempt:
    """One extraction run for a record and URL."""
    record_id: str
    url: str
    domain: str
    id: str = field(default_factory=new_id)
    status: AttemptStatus = AttemptStatus.PENDING
    retry_count: int = 0
    failed_step: Optional[str] = None
    error_message: Optional[str] = None
    extraction_method: Optional[str] = None
    provider: Optional[str] = None
    confidence: Optional[float] = None
    duration_seconds: Optional[float] = None
    cache_entry_id: Optional[str] = None
    response_metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_in_progress(self) -> bool:
        return self.status in IN_PROGRESS_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def failed_at_extraction(self) -> bool:
        return self.failed_step in EXTRACTION_STEPS

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data


@dataclass
class CachedHTMLEntry:
    """Fetched page content, unique per (record, normalized URL, content hash)."""
    record_id: str
    normalized_url: str
    content_hash: str
    raw_html: str
    cleaned_html: str
    valid_until: datetime
    id: str = field(default_factory=new_id)
    attempt_id: Optional[str] = None
    http_status: Optional[int] = None
    fetch_metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.valid_until > (now or utcnow())

    @property
    def key(self):
        return (self.record_id, self.normalized_url, self.content_hash)


@dataclass
class PipelineEvent:
    """One audited step of an attempt."""
    attempt_id: str
    record_id: str
    event_type: str
    step_order: int
    status: EventStatus = EventStatus.STARTED
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    input_payload: Dict[str, Any] = field(default_factory=dict)
    output_payload: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data


@dataclass
class ScrapingLog:
    """Per-field diagnostics from one heuristic extraction run."""
    attempt_id: Optional[str]
    record_id: Optional[str]
    url: str
    domain: str
    extractor_kind: str
    board_type: Optional[str] = None
    html_size: int = 0
    cleaned_html_size: int = 0
    duration_ms: int = 0
    field_results: Dict[str, Any] = field(default_factory=dict)
    selectors_tried: Dict[str, List[str]] = field(default_factory=dict)
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def extraction_rate(self) -> float:
        if not self.field_results:
            return 0.0
        successful = sum(1 for result in self.field_results.values() if result.get('success'))
        return successful / len(self.field_results)
