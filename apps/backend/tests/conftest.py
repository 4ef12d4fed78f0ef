"""
Shared fixtures: in-memory store, a fake HTTP client that never touches the
network, and stub extractors whose calls can be inspected.
"""

import asyncio
from typing import Dict, Optional, Tuple, Union
from unittest.mock import AsyncMock

import pytest

from core.config import PipelineConfig
from core.net import HTML_ACCEPT, HTTPClient
from core.notifier import ErrorNotifier
from pipeline.extractor import BaseExtractor, ExtractionInput, ExtractionOutcome
from pipeline.models import EventType, TargetRecord
from pipeline.storage import InMemoryStore
from pipeline.triggers import build_pipeline

JOB_URL = "https://careers.acme.com/jobs/123"
GREENHOUSE_URL = "https://boards.greenhouse.io/acme/jobs/4567"

JOB_PAGE_HTML = """
<html>
<head><title>Senior Data Engineer - Acme</title></head>
<body>
<nav>Home | Jobs | Contact</nav>
<main>
  <h1 class="job-title">Senior Data Engineer</h1>
  <div class="company-name">Acme Corp</div>
  <div class="location">Berlin, Germany</div>
  <div class="job-description">
    <p>We are looking for a senior data engineer to build and run our analytics platform.
    You will work with a small team of engineers and analysts on batch and streaming systems.</p>
  </div>
  <h2>Requirements</h2>
  <ul><li>5+ years of Python</li><li>Experience with PostgreSQL</li></ul>
  <h2>Responsibilities</h2>
  <ul><li>Design data pipelines</li><li>Mentor engineers</li></ul>
</main>
<footer>Copyright Acme</footer>
</body>
</html>
"""

SHALLOW_PAGE_HTML = "<html><body><h1>Office Manager</h1><p>Short page.</p></body></html>"

LINKEDIN_URL = "https://www.linkedin.com/jobs/view/3712345678/"

LINKEDIN_PAGE_HTML = """
<html>
<head>
<title>Backend Engineer at Globex | LinkedIn</title>
<meta property="og:title" content="Backend Engineer at Globex | LinkedIn">
<meta property="og:description" content="Globex is hiring a backend engineer to build its billing services.">
<meta property="og:site_name" content="LinkedIn">
<script type="application/ld+json">
{"@context": "https://schema.org", "@type": "JobPosting", "title": "Backend Engineer",
 "hiringOrganization": {"@type": "Organization", "name": "Globex"},
 "jobLocation": {"@type": "Place", "address": {"addressLocality": "Amsterdam"}}}
</script>
</head>
<body><p>Sign in to see the full job posting.</p></body>
</html>
"""

Response = Union[Tuple[int, str], Exception]


class FakeHTTPClient(HTTPClient):
    """Serves canned responses by URL and counts requests."""

    def __init__(self, pages: Optional[Dict[str, Response]] = None, delay: float = 0):
        super().__init__(user_agent="test-agent")
        self.pages: Dict[str, Response] = dict(pages or {})
        self.delay = delay
        self.requested = []

    def add(self, url: str, body: str, status: int = 200) -> None:
        self.pages[url] = (status, body)

    async def fetch(self, url, accept=HTML_ACCEPT, headers=None, max_size_kb=4096):
        self.request_count += 1
        self.requested.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.pages.get(url)
        if response is None:
            return 404, {}, "Not Found", 9
        if isinstance(response, Exception):
            raise response
        status, body = response
        return status, {"content-type": "text/html"}, body, len(body.encode('utf-8'))


class StubExtractor(BaseExtractor):
    """Cascade step with a canned outcome; ``calls`` is the AsyncMock behind extract."""

    def __init__(self, method: str, event_type: str, outcome: Optional[ExtractionOutcome] = None,
                 board_type: Optional[str] = None, skip_reason: Optional[str] = None):
        self.method = method
        self.event_type = event_type
        self.board_type = board_type
        self.skip_reason = skip_reason
        self.calls = AsyncMock(return_value=outcome)

    def applies_to(self, extraction_input: ExtractionInput) -> Optional[str]:
        return self.skip_reason

    async def extract(self, extraction_input: ExtractionInput) -> ExtractionOutcome:
        return await self.calls(extraction_input)


def ai_outcome(confidence: float, **fields) -> ExtractionOutcome:
    fields = fields or {
        'title': "Office Manager",
        'company_name': "Acme Corp",
        'description': "Run the Berlin office and coordinate facilities, travel and onboarding.",
    }
    return ExtractionOutcome(method="ai", provider="openrouter", model="test-model",
                             confidence=confidence, fields=fields, tokens_used=321)


def make_ai(outcome: Optional[ExtractionOutcome] = None, skip_reason: Optional[str] = None) -> StubExtractor:
    return StubExtractor("ai", EventType.AI_EXTRACTION.value, outcome=outcome, skip_reason=skip_reason)


def make_api(outcome: ExtractionOutcome, board_type: str = "greenhouse") -> StubExtractor:
    return StubExtractor("api", EventType.API_EXTRACTION.value, outcome=outcome, board_type=board_type)


@pytest.fixture
def config():
    return PipelineConfig(
        retry_budget=2,
        quick_timeout=5.0,
        followup_delay_seconds=0,
        internal_api_key="test-key",
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def http_client():
    return FakeHTTPClient({
        JOB_URL: (200, JOB_PAGE_HTML),
        GREENHOUSE_URL: (200, JOB_PAGE_HTML),
    })


@pytest.fixture
def notifier():
    return ErrorNotifier()


@pytest.fixture
def disabled_ai():
    return make_ai(skip_reason="AI extraction disabled: no API key")


@pytest.fixture
def make_pipeline(config, store, http_client, notifier, disabled_ai):
    """Factory for a pipeline wired to the fakes; override any component per test."""

    def factory(**overrides):
        kwargs = {
            'config': config,
            'store': store,
            'http_client': http_client,
            'notifier': notifier,
            'ai_extractor': disabled_ai,
            'api_fetchers': [],
        }
        kwargs.update(overrides)
        return build_pipeline(**kwargs)

    return factory


@pytest.fixture
def record(store):
    return store.create_record(TargetRecord(url=JOB_URL))
