"""
Structured ATS API fetchers.

Greenhouse and Lever expose public JSON for every posting. When the board
detector finds one of them with a company slug, the posting is read from the
vendor API and mapped into the common field shape. First-party structured data
is trusted with confidence 1.0.
"""

import html
import logging
from abc import abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from core.html_cleaner import normalize_whitespace
from core.net import HTTPClient, TRANSPORT_ERRORS
from core.notifier import ErrorNotifier
from .extractor import BaseExtractor, CONFIDENCE_SCORES, ExtractionInput, ExtractionOutcome
from .heuristics import SECTION_HEADINGS, section_by_heading
from .models import EventType

logger = logging.getLogger(__name__)


def strip_html(content: Optional[str]) -> Optional[str]:
    if not content:
        return None
    text = normalize_whitespace(BeautifulSoup(content, 'html.parser').get_text("\n"))
    return text or None


def _remote_type_from_text(text: Optional[str]) -> str:
    lowered = (text or '').lower()
    if 'remote' in lowered:
        return 'remote'
    if 'hybrid' in lowered:
        return 'hybrid'
    return 'on_site'


def _parse_timestamp(value: Any) -> Optional[str]:
    """ISO-8601 string for a vendor timestamp (ISO text or epoch milliseconds)."""
    if value in (None, ''):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
        return date_parser.isoparse(str(value)).isoformat()
    except (ValueError, OverflowError) as e:
        logger.debug(f"[api_fetchers] Unparseable timestamp {value!r}: {e}")
        return None


class BaseAPIFetcher(BaseExtractor):
    """Shared request/mapping flow for vendor posting APIs."""

    method = "api"
    event_type = EventType.API_EXTRACTION.value
    board_type = "unknown"
    requires_job_id = True

    def __init__(self, http_client: HTTPClient, enabled: bool = True,
                 notifier: Optional[ErrorNotifier] = None):
        self.http_client = http_client
        self.enabled = enabled
        self.notifier = notifier or ErrorNotifier()

    def applies_to(self, extraction_input: ExtractionInput) -> Optional[str]:
        board = extraction_input.board
        if board.board_type != self.board_type:
            return f"board type {board.board_type} is not {self.board_type}"
        if not self.enabled:
            return f"{self.board_type} API disabled"
        if not board.company_slug:
            return "company slug not found in URL"
        if self.requires_job_id and not board.job_id:
            return "job id not found in URL"
        return None

    @abstractmethod
    def api_url(self, company_slug: str, job_id: Optional[str]) -> str:
        ...

    @abstractmethod
    def parse(self, data: Any, extraction_input: ExtractionInput) -> Optional[Dict[str, Any]]:
        ...

    async def extract(self, extraction_input: ExtractionInput) -> ExtractionOutcome:
        skip_reason = self.applies_to(extraction_input)
        if skip_reason:
            return ExtractionOutcome.failed(self.method, skip_reason, provider=self.board_type)

        board = extraction_input.board
        api_url = self.api_url(board.company_slug, board.job_id)
        logger.info(
            f"[api_fetchers] {self.board_type} request company={board.company_slug} "
            f"job_id={board.job_id} url={extraction_input.url}"
        )

        try:
            status, data = await self.http_client.get_json(api_url)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"[api_fetchers] {self.board_type} transport error for {api_url}: {e}")
            return ExtractionOutcome.failed(self.method, f"API request failed: {e}", provider=self.board_type)
        except Exception as e:
            self.notifier.notify(
                e, f"{self.board_type}_api_fetch",
                url=extraction_input.url, company_slug=board.company_slug, job_id=board.job_id,
            )
            raise

        if status < 200 or status >= 300:
            logger.warning(f"[api_fetchers] {self.board_type} API returned {status} for {api_url}")
            return ExtractionOutcome.failed(
                self.method, f"API request failed: {status}",
                provider=self.board_type, metadata={"http_status": status},
            )
        if data is None:
            return ExtractionOutcome.failed(self.method, "API returned invalid JSON", provider=self.board_type)

        fields = self.parse(data, extraction_input)
        if not fields:
            return ExtractionOutcome.failed(self.method, "Job not found", provider=self.board_type)

        outcome = ExtractionOutcome(
            method=self.method,
            provider=self.board_type,
            confidence=CONFIDENCE_SCORES['api'],
            fields=fields,
            metadata={"api_url": api_url, "http_status": status},
        )
        logger.info(
            f"[api_fetchers] {self.board_type} extracted {len(outcome.produced_fields())} fields "
            f"confidence={outcome.confidence}"
        )
        return outcome


class GreenhouseFetcher(BaseAPIFetcher):
    """https://developers.greenhouse.io/job-board.html"""

    BASE_URL = "https://boards-api.greenhouse.io/v1/boards"
    board_type = "greenhouse"

    def api_url(self, company_slug: str, job_id: Optional[str]) -> str:
        return f"{self.BASE_URL}/{company_slug}/jobs/{job_id}"

    def parse(self, data: Any, extraction_input: ExtractionInput) -> Optional[Dict[str, Any]]:
        if not isinstance(data, dict):
            return None

        location_name = (data.get('location') or {}).get('name')
        # Greenhouse returns the posting body HTML-escaped
        content_html = html.unescape(data.get('content') or '')
        content_soup = BeautifulSoup(content_html, 'html.parser')

        return {
            'title': data.get('title'),
            'company_name': data.get('company_name'),
            'description': strip_html(content_html),
            'requirements': section_by_heading(content_soup, SECTION_HEADINGS['requirements']),
            'responsibilities': section_by_heading(content_soup, SECTION_HEADINGS['responsibilities']),
            'benefits': section_by_heading(content_soup, SECTION_HEADINGS['benefits']),
            'location': location_name,
            'remote_type': _remote_type_from_text(location_name),
            'custom_sections': self._custom_sections(data),
        }

    def _custom_sections(self, data: Dict[str, Any]) -> Dict[str, Any]:
        sections: Dict[str, Any] = {}
        departments = [d.get('name') for d in data.get('departments') or [] if d.get('name')]
        if departments:
            sections['departments'] = departments
        offices = [o.get('name') for o in data.get('offices') or [] if o.get('name')]
        if offices:
            sections['offices'] = offices
        updated_at = _parse_timestamp(data.get('updated_at'))
        if updated_at:
            sections['updated_at'] = updated_at
        if data.get('absolute_url'):
            sections['absolute_url'] = data['absolute_url']
        return sections


class LeverFetcher(BaseAPIFetcher):
    """https://github.com/lever/postings-api"""

    BASE_URL = "https://api.lever.co/v0/postings"
    board_type = "lever"
    # Without a posting id the company's full list is searched by hosted URL
    requires_job_id = False

    REQUIREMENT_KEYS = ('requirements', 'qualifications')
    RESPONSIBILITY_KEYS = ('responsibilities', 'role')
    CATEGORIZED_KEYS = ('requirement', 'responsibilit', 'qualif', 'role')

    def api_url(self, company_slug: str, job_id: Optional[str]) -> str:
        if job_id:
            return f"{self.BASE_URL}/{company_slug}/{job_id}"
        return f"{self.BASE_URL}/{company_slug}"

    def parse(self, data: Any, extraction_input: ExtractionInput) -> Optional[Dict[str, Any]]:
        if isinstance(data, list):
            data = next((p for p in data if isinstance(p, dict) and p.get('hostedUrl') == extraction_input.url), None)
        if not isinstance(data, dict):
            return None

        categories = data.get('categories') or {}
        workplace = data.get('workplaceType')
        description = data.get('descriptionPlain') or strip_html(data.get('description'))

        return {
            'title': data.get('text'),
            'description': description,
            'requirements': self._lists_matching(data.get('lists'), self.REQUIREMENT_KEYS),
            'responsibilities': self._lists_matching(data.get('lists'), self.RESPONSIBILITY_KEYS),
            'location': categories.get('location') or data.get('location'),
            'remote_type': workplace if workplace in ('remote', 'hybrid') else 'on_site',
            'custom_sections': self._custom_sections(data),
        }

    def _lists_matching(self, lists: Optional[List[Dict[str, Any]]], keys) -> Optional[str]:
        matching = [
            item for item in lists or []
            if any(key in str(item.get('text', '')).lower() for key in keys)
        ]
        if not matching:
            return None
        parts = []
        for item in matching:
            content = item.get('content')
            parts.append(strip_html(content) if isinstance(content, str) else str(content or ''))
        return "\n\n".join(part for part in parts if part) or None

    def _custom_sections(self, data: Dict[str, Any]) -> Dict[str, Any]:
        sections: Dict[str, Any] = {}
        categories = data.get('categories') or {}
        for key in ('team', 'department', 'commitment'):
            if categories.get(key):
                sections[key] = categories[key]
        if data.get('applyUrl'):
            sections['apply_url'] = data['applyUrl']
        if data.get('hostedUrl'):
            sections['hosted_url'] = data['hostedUrl']
        created_at = _parse_timestamp(data.get('createdAt'))
        if created_at:
            sections['created_at'] = created_at

        other_lists = [
            {"title": item.get('text'), "content": strip_html(item.get('content'))}
            for item in data.get('lists') or []
            if not any(key in str(item.get('text', '')).lower() for key in self.CATEGORIZED_KEYS)
        ]
        if other_lists:
            sections['additional_info'] = other_lists
        return sections


API_FETCHERS = {
    'greenhouse': GreenhouseFetcher,
    'lever': LeverFetcher,
}


def build_api_fetchers(http_client: HTTPClient, config, notifier: Optional[ErrorNotifier] = None) -> List[BaseAPIFetcher]:
    """One fetcher per supported vendor, enabled per configuration."""
    return [
        GreenhouseFetcher(http_client, enabled=config.greenhouse_enabled, notifier=notifier),
        LeverFetcher(http_client, enabled=config.lever_enabled, notifier=notifier),
    ]


def fetcher_for(board_type: Optional[str], fetchers: List[BaseAPIFetcher]) -> Optional[BaseAPIFetcher]:
    return next((f for f in fetchers if f.board_type == board_type), None)
