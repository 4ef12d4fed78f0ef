"""
Tests for meta-tag extraction on limited-access boards.
"""

import pytest
from bs4 import BeautifulSoup

from pipeline.board_detector import detect_board
from pipeline.extractor import ExtractionInput
from pipeline.limited_sources import MetaTagExtractor, clean_listing_title, job_posting_schema
from pipeline.models import TargetRecord

from conftest import JOB_PAGE_HTML, JOB_URL, LINKEDIN_PAGE_HTML, LINKEDIN_URL


def _input(url, html):
    return ExtractionInput(record=TargetRecord(url=url), url=url, board=detect_board(url),
                           raw_html=html, cleaned_html=html)


@pytest.mark.parametrize("raw,expected", [
    ("Backend Engineer at Globex | LinkedIn", "Backend Engineer"),
    ("Data Analyst - Initech | Indeed.com", "Data Analyst"),
    ("Product Designer | Glassdoor", "Product Designer"),
    ("Staff Engineer", "Staff Engineer"),
    ("   ", None),
    (None, None),
])
def test_clean_listing_title(raw, expected):
    assert clean_listing_title(raw) == expected


def test_schema_first_value_wins():
    soup = BeautifulSoup("""
    <script type="application/ld+json">not json</script>
    <script type="application/ld+json">
      {"@graph": [{"@type": "Organization", "name": "Ignored"},
                  {"@type": "JobPosting", "title": "Analyst",
                   "baseSalary": {"currency": "EUR", "value": {"minValue": 50000, "maxValue": 60000}}}]}
    </script>
    <script type="application/ld+json">{"@type": ["JobPosting"], "title": "Second", "description": "Later"}</script>
    """, 'html.parser')

    schema = job_posting_schema(soup)

    assert schema["title"] == "Analyst"
    assert schema["description"] == "Later"
    assert (schema["salary_min"], schema["salary_max"], schema["salary_currency"]) == (50000, 60000, "EUR")


class TestMetaTagExtractor:

    @pytest.mark.asyncio
    async def test_linkedin_head_tags(self):
        outcome = await MetaTagExtractor().extract(_input(LINKEDIN_URL, LINKEDIN_PAGE_HTML))

        assert outcome.success
        assert outcome.provider == "meta_tags"
        assert outcome.confidence == 0.5
        assert outcome.fields["title"] == "Backend Engineer"
        assert outcome.fields["company_name"] == "Globex"
        assert outcome.fields["description"] == "Globex is hiring a backend engineer to build its billing services."
        assert outcome.fields["location"] == "Amsterdam"
        assert outcome.metadata["extraction_quality"] == "limited"
        assert "authentication" in outcome.metadata["limited_extraction_reason"]

    @pytest.mark.asyncio
    async def test_site_name_is_not_a_company(self):
        html = """<html><head>
        <meta name="twitter:title" content="Nurse - St. Mary | Indeed.com">
        <meta property="og:site_name" content="Indeed">
        </head></html>"""

        outcome = await MetaTagExtractor().extract(_input("https://www.indeed.com/viewjob?jk=abc", html))

        assert outcome.fields == {"title": "Nurse"}

    @pytest.mark.asyncio
    async def test_no_tags(self):
        outcome = await MetaTagExtractor().extract(
            _input(LINKEDIN_URL, "<html><body><p>Sign in</p></body></html>"))

        assert not outcome.success
        assert outcome.error == "No meta tags found"
        assert outcome.metadata["extraction_quality"] == "limited"

    def test_only_limited_boards(self):
        extractor = MetaTagExtractor()
        assert extractor.applies_to(_input(JOB_URL, JOB_PAGE_HTML)) == "board type unknown is not a limited source"
        assert extractor.applies_to(_input(LINKEDIN_URL, "")) == "no HTML content"
        assert extractor.applies_to(_input(LINKEDIN_URL, LINKEDIN_PAGE_HTML)) is None
