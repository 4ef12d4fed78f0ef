"""
Heuristic extractor.

Selector cascades and text heuristics over the raw page. Cheap and always
available, so it runs on every attempt: first to fill blank record fields, then
as the floor result of the cascade when the API and AI steps come up short.
"""

import re
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from bs4 import BeautifulSoup

from core.config import ASHBY_SELECTORS, FIELD_SELECTORS
from core.html_cleaner import normalize_whitespace
from core.salary import compensation_candidate_text, extract_salary
from core.url_normalizer import extract_domain
from .extractor import (
    BaseExtractor,
    ExtractionInput,
    ExtractionOutcome,
    MISSING_REQUIRED_CAP,
    REQUIRED_FIELDS,
    has_value,
)
from .models import EventType, ScrapingLog
from .storage import PipelineStore

logger = logging.getLogger(__name__)

FIELD_WEIGHTS = {
    'title': 0.25,
    'company_name': 0.25,
    'description': 0.15,
    'location': 0.05,
    'requirements': 0.075,
    'responsibilities': 0.075,
    'benefits': 0.05,
    'about_company': 0.05,
    'company_culture': 0.05,
}

STRUCTURED_FIELDS = ('requirements', 'responsibilities')

COOKIE_TEXT_PATTERNS = (
    re.compile(r'select which cookies', re.I),
    re.compile(r'accept.*cookies', re.I),
    re.compile(r'cookie.*preferences', re.I),
    re.compile(r'manage.*cookies', re.I),
    re.compile(r'cookie.*consent', re.I),
)

COOKIE_BANNER_SELECTOR = (
    "div[id*='cookie'], div[class*='cookie'], div[id*='consent'], "
    "div[class*='consent'], div[id*='gdpr'], div[class*='gdpr']"
)

LOCATION_TEXT_PATTERNS = (
    re.compile(r'(?:Location|Location:)\s*([A-Z][^,\n]{2,50}(?:,\s*[A-Z]{2})?)', re.I),
    re.compile(r'([A-Z][^,\n]{2,50},\s*[A-Z]{2})'),
    re.compile(r'(Remote|Hybrid|On-site|Onsite)', re.I),
)

REMOTE_RE = re.compile(r'\b(?:remote|work from home|wfh|distributed|anywhere)\b', re.I)
HYBRID_RE = re.compile(r'\b(?:hybrid|flexible|partially remote)\b', re.I)
ON_SITE_RE = re.compile(r'\b(?:on.?site|on.?premise|in.?office|in.?person)\b', re.I)

# Heading text that introduces a section, per field
SECTION_HEADINGS: Mapping[str, re.Pattern] = {
    'about_company': re.compile(r'about\s+(?:the\s+)?company|about\s+us|who\s+we\s+are', re.I),
    'company_culture': re.compile(r'culture|values|mission|principles|how\s+we\s+work', re.I),
    'requirements': re.compile(r'requirements?|qualifications?|what\s+you.ll\s+(?:need|bring)|skills', re.I),
    'responsibilities': re.compile(r'responsibilit|what\s+you.ll\s+do|the\s+role|your\s+impact', re.I),
    'benefits': re.compile(r'benefits|perks|what\s+we\s+offer', re.I),
}

HEADING_TAGS = ["h1", "h2", "h3", "h4", "strong", "b"]
HEADING_NAME_RE = re.compile(r'^h[1-6]$', re.I)

TITLE_MIN_LENGTH = 3
TITLE_MAX_LENGTH = 200
LOCATION_MAX_LENGTH = 200
COMPANY_MAX_LENGTH = 100
DESCRIPTION_MAX_CHARS = 2000
SECTION_MAX_CHARS = 2000
LOG_VALUE_MAX_CHARS = 500
HEADING_MAX_LENGTH = 80


def _squish(value: Any) -> str:
    return re.sub(r'\s+', ' ', str(value or '')).strip()


def _truncate_for_log(value: Any) -> Any:
    if isinstance(value, str) and len(value) > LOG_VALUE_MAX_CHARS:
        return value[:LOG_VALUE_MAX_CHARS] + "..."
    if isinstance(value, dict):
        return {k: _truncate_for_log(v) for k, v in value.items()}
    return value


def section_by_heading(soup: BeautifulSoup, heading_re: re.Pattern,
                       max_chars: int = SECTION_MAX_CHARS) -> Optional[str]:
    """
    Text of the first section whose heading matches ``heading_re``.

    Collects the heading's following siblings up to the next h1-h6. A bold
    label wrapped alone in a paragraph (``<p><strong>Requirements</strong></p>``)
    is treated as a heading at the paragraph's level.
    """
    for heading in soup.find_all(HEADING_TAGS):
        label = _squish(heading.get_text(" "))
        if len(label) > HEADING_MAX_LENGTH or not heading_re.search(label):
            continue

        anchor = heading
        if heading.name in ('strong', 'b') and heading.parent is not None and heading.parent.name == 'p' \
                and _squish(heading.parent.get_text(" ")) == label:
            anchor = heading.parent

        chunks: List[str] = []
        for sibling in anchor.find_next_siblings():
            if HEADING_NAME_RE.match(sibling.name or ''):
                break
            if sibling.name in ('ul', 'ol'):
                items = [_squish(li.get_text(" ")) for li in sibling.find_all('li')]
                text = "\n".join(item for item in items if item)
            else:
                text = _squish(sibling.get_text(" "))
            if text:
                chunks.append(text)
            if len("\n\n".join(chunks)) >= max_chars:
                break

        combined = "\n\n".join(chunks).strip()
        if combined:
            return combined[:max_chars]
    return None


@dataclass
class ScrapeRun:
    """Per-run bookkeeping: which selectors were tried and what each field got."""
    soup: BeautifulSoup
    text: str
    selectors_tried: Dict[str, List[str]] = field(default_factory=dict)
    field_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def tried(self, field_name: str, selector: str) -> None:
        self.selectors_tried.setdefault(field_name, []).append(selector)

    def track(self, field_name: str, value: Any) -> Any:
        tried = self.selectors_tried.setdefault(field_name, [])
        result = {
            "success": has_value(value),
            "value": _truncate_for_log(value),
            "selectors_tried": list(tried),
        }
        if has_value(value) and tried:
            result["selector"] = tried[-1]
        self.field_results[field_name] = result
        return value


class HeuristicExtractor(BaseExtractor):
    """Generic selector-first extractor for arbitrary job pages."""

    method = "heuristic"
    event_type = EventType.HTML_SCRAPE.value
    extractor_kind = "generic_html_scraping"
    selectors: Mapping[str, Tuple[str, ...]] = FIELD_SELECTORS
    section_fields: Tuple[str, ...] = ('about_company', 'company_culture', 'requirements',
                                       'responsibilities', 'benefits')
    # Applied when no structured section was found, so shallow metadata alone escalates to AI
    shallow_cap = MISSING_REQUIRED_CAP

    def __init__(self, store: Optional[PipelineStore] = None):
        self.store = store

    async def extract(self, extraction_input: ExtractionInput) -> ExtractionOutcome:
        html = extraction_input.raw_html
        if not html or not html.strip():
            return ExtractionOutcome.failed(self.method, "No HTML provided", provider=self.extractor_kind)

        start = time.monotonic()
        fields, run = self.scrape(html)
        duration_ms = int(round((time.monotonic() - start) * 1000))
        confidence = self.confidence_for(fields)
        missing = [name for name in REQUIRED_FIELDS if not has_value(fields.get(name))]

        scraping_log = ScrapingLog(
            attempt_id=extraction_input.attempt.id if extraction_input.attempt else None,
            record_id=extraction_input.record.id,
            url=extraction_input.url,
            domain=extract_domain(extraction_input.url),
            extractor_kind=self.extractor_kind,
            board_type=extraction_input.board.board_type,
            html_size=len(html.encode('utf-8')),
            cleaned_html_size=len((extraction_input.cleaned_html or '').encode('utf-8')),
            duration_ms=duration_ms,
            field_results=run.field_results,
            selectors_tried=run.selectors_tried,
        )
        if self.store is not None:
            self.store.insert_scraping_log(scraping_log)

        logger.info(
            f"[heuristics] {self.extractor_kind} url={extraction_input.url} "
            f"fields={sorted(fields.keys())} rate={scraping_log.extraction_rate:.2f} "
            f"confidence={confidence:.3f} duration_ms={duration_ms}"
        )

        return ExtractionOutcome(
            method=self.method,
            provider=self.extractor_kind,
            confidence=confidence,
            fields=fields,
            error=None if fields else "No data extracted from HTML",
            metadata={
                "board_type": extraction_input.board.board_type,
                "missing_fields": missing,
                "extraction_rate": round(scraping_log.extraction_rate, 3),
                "scraping_log_id": scraping_log.id,
            },
        )

    def scrape(self, html: str) -> Tuple[Dict[str, Any], ScrapeRun]:
        """Run every field heuristic over the page. Returns (fields with values, run)."""
        soup = BeautifulSoup(html, 'html.parser')
        for banner in soup.select(COOKIE_BANNER_SELECTOR):
            banner.decompose()
        run = ScrapeRun(soup=soup, text=soup.get_text("\n"))

        fields: Dict[str, Any] = {
            'title': run.track('title', self.extract_title(run)),
            'location': run.track('location', self.extract_location(run)),
            'remote_type': run.track('remote_type', self.extract_remote_type(run)),
            'description': run.track('description', self.extract_description(run)),
            'company_name': run.track('company_name', self.extract_company_name(run)),
        }
        for section in self.section_fields:
            fields[section] = run.track(section, self.extract_section(run, section))

        salary = run.track('salary', self.extract_salary_data(run))
        if salary:
            fields['salary_min'] = salary['min']
            fields['salary_max'] = salary['max']
            fields['salary_currency'] = salary['currency']

        return {name: value for name, value in fields.items() if has_value(value)}, run

    def confidence_for(self, fields: Dict[str, Any]) -> float:
        score = sum(weight for name, weight in FIELD_WEIGHTS.items() if has_value(fields.get(name)))
        if any(not has_value(fields.get(name)) for name in REQUIRED_FIELDS):
            score = min(score, MISSING_REQUIRED_CAP)
        if not any(has_value(fields.get(name)) for name in STRUCTURED_FIELDS):
            score = min(score, self.shallow_cap)
        return max(0.0, min(1.0, round(score, 4)))

    # Field heuristics

    def _selectors_for(self, field_name: str) -> Tuple[str, ...]:
        return tuple(self.selectors.get(field_name, ()))

    def _node_text(self, field_name: str, selector: str, node) -> Optional[str]:
        raw = node.get('content') or node.get('alt') or node.get('aria-label') or node.get('title') or node.get_text(" ")
        text = _squish(raw)
        return text or None

    def pick_text(self, run: ScrapeRun, field_name: str) -> Optional[str]:
        for selector in self._selectors_for(field_name):
            run.tried(field_name, selector)
            node = run.soup.select_one(selector)
            if node is None:
                continue
            text = self._node_text(field_name, selector, node)
            if text and self.accept(field_name, text):
                return text
        return None

    def accept(self, field_name: str, text: str) -> bool:
        """Field-specific sanity filter."""
        if field_name == 'title':
            if any(pattern.search(text) for pattern in COOKIE_TEXT_PATTERNS):
                return False
            return TITLE_MIN_LENGTH < len(text) < TITLE_MAX_LENGTH
        if field_name == 'location':
            return len(text) < LOCATION_MAX_LENGTH
        if field_name == 'company_name':
            return len(text) < COMPANY_MAX_LENGTH
        return True

    def extract_title(self, run: ScrapeRun) -> Optional[str]:
        return self.pick_text(run, 'title')

    def extract_location(self, run: ScrapeRun) -> Optional[str]:
        location = self.pick_text(run, 'location')
        if location:
            return location

        run.tried('location', 'text_pattern_search')
        for pattern in LOCATION_TEXT_PATTERNS:
            match = pattern.search(run.text)
            if match and match.group(1):
                return match.group(1).strip()
        return None

    def extract_remote_type(self, run: ScrapeRun) -> Optional[str]:
        run.tried('remote_type', 'text_pattern_search')
        if REMOTE_RE.search(run.text):
            return 'remote'
        if HYBRID_RE.search(run.text):
            return 'hybrid'
        if ON_SITE_RE.search(run.text):
            return 'on_site'
        return None

    def extract_description(self, run: ScrapeRun) -> Optional[str]:
        for selector in self._selectors_for('description'):
            run.tried('description', selector)
            nodes = run.soup.select(selector)
            if not nodes:
                continue
            text = "\n\n".join(normalize_whitespace(node.get_text("\n")) for node in nodes[:3]).strip()
            if text:
                return text[:DESCRIPTION_MAX_CHARS]
        return None

    def extract_company_name(self, run: ScrapeRun) -> Optional[str]:
        name = self.pick_text(run, 'company_name')
        if name:
            return name

        run.tried('company_name', 'meta_tags')
        meta = run.soup.select_one("meta[property='og:site_name'], meta[name='company']")
        if meta is not None:
            content = _squish(meta.get('content') or meta.get('value'))
            if content:
                return content
        return None

    def extract_section(self, run: ScrapeRun, field_name: str) -> Optional[str]:
        for selector in self._selectors_for(field_name):
            run.tried(field_name, selector)
            node = run.soup.select_one(selector)
            if node is None:
                continue
            text = _squish(node.get_text(" "))
            if text:
                return text[:SECTION_MAX_CHARS]

        heading_re = SECTION_HEADINGS.get(field_name)
        if heading_re is None:
            return None
        run.tried(field_name, 'heading_section_search')
        return section_by_heading(run.soup, heading_re)

    def extract_salary_data(self, run: ScrapeRun) -> Optional[Dict[str, Any]]:
        salary_text = None
        for selector in self._selectors_for('salary'):
            run.tried('salary', selector)
            node = run.soup.select_one(selector)
            if node is not None:
                salary_text = node.get_text(" ")
                break

        if salary_text is None:
            run.tried('salary', 'text_pattern_search')
            salary_text = compensation_candidate_text(run.text)

        if not salary_text or not salary_text.strip():
            return None

        result = extract_salary(salary_text, context_text=salary_text)
        if result is None:
            return None
        return {"min": result.min, "max": result.max, "currency": result.currency}


class AshbyHeuristicExtractor(HeuristicExtractor):
    """
    Ashby pages (jobs.ashbyhq.com).

    Only metadata is reliable through CSS here; requirements, responsibilities
    and company sections live inside the description body and are left to AI
    extraction.
    """

    extractor_kind = "job_board_selectors"
    selectors = ASHBY_SELECTORS
    section_fields = ('about_company', 'company_culture', 'requirements', 'responsibilities')
    shallow_cap = 0.65

    DESCRIPTION_MIN_LENGTH = 50

    def _node_text(self, field_name: str, selector: str, node) -> Optional[str]:
        if field_name == 'company_name' and selector == 'title':
            # "Job Title @ Company"
            title_text = node.get_text()
            if '@' in title_text:
                company = title_text.split('@')[-1].strip()
                return company or None
            return None
        if node.name == 'img' and node.get('alt'):
            return node['alt'].strip() or None
        return super()._node_text(field_name, selector, node)

    def accept(self, field_name: str, text: str) -> bool:
        if field_name == 'description':
            return len(text) >= self.DESCRIPTION_MIN_LENGTH
        return bool(text)

    def extract_description(self, run: ScrapeRun) -> Optional[str]:
        description = self.pick_text(run, 'description')
        return description[:DESCRIPTION_MAX_CHARS] if description else None

    def extract_section(self, run: ScrapeRun, field_name: str) -> Optional[str]:
        # Empty selector lists: record the field as tried, nothing else
        run.selectors_tried.setdefault(field_name, [])
        return None


HEURISTIC_EXTRACTORS = {
    'ashbyhq': AshbyHeuristicExtractor,
}


def heuristic_extractor_for(board_type: Optional[str], store: Optional[PipelineStore] = None) -> HeuristicExtractor:
    """Vendor-specific extractor when one exists, else the generic one."""
    extractor_class = HEURISTIC_EXTRACTORS.get(board_type or '', HeuristicExtractor)
    return extractor_class(store=store)
