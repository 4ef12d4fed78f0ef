"""
Meta-tag extraction for boards with limited public access.

LinkedIn, Indeed and Glassdoor hide most of a posting behind a login, but the
page head usually still carries OpenGraph / Twitter card tags and sometimes a
schema.org JobPosting block. This extractor reads only those. Its result is a
cascade candidate with a low confidence; it is written to the record only when
the vendor threshold for that board is configured at or below it.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from core.html_cleaner import normalize_whitespace
from .board_detector import LIMITED_EXTRACTION_REASONS
from .extractor import BaseExtractor, CONFIDENCE_SCORES, ExtractionInput, ExtractionOutcome, has_value
from .models import EventType

logger = logging.getLogger(__name__)

SITE_SUFFIX_RE = re.compile(r'\s*\|\s*(?:LinkedIn|Indeed(?:\.com)?|Glassdoor)\s*$', re.I)


def clean_listing_title(title: Optional[str]) -> Optional[str]:
    """'Software Engineer at TechCorp | LinkedIn' -> 'Software Engineer'."""
    if not title or not title.strip():
        return None
    title = SITE_SUFFIX_RE.sub('', title.strip())
    for separator in (' at ', ' - '):
        if separator in title:
            title = title.split(separator)[0]
            break
    return title.strip() or None


def _meta(soup: BeautifulSoup, attr: str, name: str) -> Optional[str]:
    tag = soup.find('meta', attrs={attr: name})
    content = tag.get('content') if tag else None
    return content.strip() if content and content.strip() else None


def _flatten_jsonld(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        if isinstance(data.get('@graph'), list):
            return [item for item in data['@graph'] if isinstance(item, dict)]
        return [data]
    return []


def _is_job_posting(item: Dict[str, Any]) -> bool:
    item_type = item.get('@type', '')
    if isinstance(item_type, list):
        return any('JobPosting' in str(t) for t in item_type)
    return 'JobPosting' in str(item_type)


def job_posting_schema(soup: BeautifulSoup) -> Dict[str, Any]:
    """Fields from schema.org JobPosting blocks in JSON-LD scripts; the first value found wins."""
    result: Dict[str, Any] = {}
    for script in soup.find_all('script', type='application/ld+json'):
        try:
            data = json.loads(script.string or '')
        except (json.JSONDecodeError, TypeError) as e:
            logger.debug(f"[limited_sources] Skipping unparseable JSON-LD: {e}")
            continue

        for item in _flatten_jsonld(data):
            if not _is_job_posting(item):
                continue
            org = item.get('hiringOrganization')
            location = item.get('jobLocation')
            if isinstance(location, list):
                location = location[0] if location else None
            address = location.get('address') if isinstance(location, dict) else None
            salary = item.get('baseSalary') if isinstance(item.get('baseSalary'), dict) else {}
            value = salary.get('value') if isinstance(salary.get('value'), dict) else {}

            found = {
                'title': item.get('title'),
                'description': item.get('description'),
                'company_name': org.get('name') if isinstance(org, dict) else org,
                'location': address.get('addressLocality') if isinstance(address, dict) else None,
                'salary_min': value.get('minValue'),
                'salary_max': value.get('maxValue'),
                'salary_currency': salary.get('currency'),
            }
            for name, found_value in found.items():
                if name not in result and has_value(found_value):
                    result[name] = found_value
    return result


class MetaTagExtractor(BaseExtractor):
    """Head-of-page extraction for limited-access boards."""

    method = "heuristic"
    provider = "meta_tags"
    event_type = EventType.LIMITED_SOURCE_HANDLING.value
    confidence = CONFIDENCE_SCORES['meta']

    def applies_to(self, extraction_input: ExtractionInput) -> Optional[str]:
        if not extraction_input.board.limited_extraction:
            return f"board type {extraction_input.board.board_type} is not a limited source"
        if not extraction_input.raw_html:
            return "no HTML content"
        return None

    async def extract(self, extraction_input: ExtractionInput) -> ExtractionOutcome:
        board_type = extraction_input.board.board_type
        metadata = {
            "extraction_quality": "limited",
            "limited_extraction_reason": LIMITED_EXTRACTION_REASONS.get(board_type, "Source has limited public access"),
        }
        skip_reason = self.applies_to(extraction_input)
        if skip_reason:
            return ExtractionOutcome.failed(self.method, skip_reason, provider=self.provider, metadata=metadata)

        soup = BeautifulSoup(extraction_input.raw_html, 'html.parser')
        schema = job_posting_schema(soup)
        page_title = soup.title.get_text() if soup.title else None
        site_name = _meta(soup, 'property', 'og:site_name')
        if site_name and site_name.lower() == board_type:
            site_name = None

        description = (
            _meta(soup, 'property', 'og:description')
            or _meta(soup, 'name', 'twitter:description')
            or _meta(soup, 'name', 'description')
            or schema.get('description')
        )
        fields = {
            'title': clean_listing_title(
                _meta(soup, 'property', 'og:title') or _meta(soup, 'name', 'twitter:title')
                or page_title or schema.get('title')
            ),
            'company_name': schema.get('company_name') or site_name,
            'description': normalize_whitespace(BeautifulSoup(description, 'html.parser').get_text("\n"))
            if description else None,
            'location': schema.get('location'),
            'salary_min': schema.get('salary_min'),
            'salary_max': schema.get('salary_max'),
            'salary_currency': schema.get('salary_currency'),
        }
        fields = {name: value for name, value in fields.items() if has_value(value)}

        if not fields:
            logger.info(f"[limited_sources] No meta tags found on {board_type} page {extraction_input.url}")
            return ExtractionOutcome.failed(self.method, "No meta tags found", provider=self.provider,
                                            metadata=metadata)

        logger.info(f"[limited_sources] {board_type} meta extraction found {sorted(fields)}")
        return ExtractionOutcome(
            method=self.method,
            provider=self.provider,
            confidence=self.confidence,
            fields=fields,
            metadata=metadata,
        )
