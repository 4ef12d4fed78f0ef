"""
Tests for job board detection.
"""

import pytest

from pipeline.board_detector import (
    detect_board,
    greenhouse_embed_key,
    greenhouse_embed_url,
    query_param,
    resolve_embedded_board,
)


class TestDetectBoard:

    def test_greenhouse_board_url(self):
        info = detect_board("https://boards.greenhouse.io/acme/jobs/4567")
        assert info.board_type == "greenhouse"
        assert info.company_slug == "acme"
        assert info.job_id == "4567"
        assert info.api_supported
        assert info.can_use_api

    def test_greenhouse_job_boards_host(self):
        info = detect_board("https://job-boards.greenhouse.io/globex/jobs/998877")
        assert (info.board_type, info.company_slug, info.job_id) == ("greenhouse", "globex", "998877")

    def test_gh_jid_on_company_domain(self):
        """Embedded Greenhouse boards are recognized, but there is no slug to call the API with."""
        info = detect_board("https://www.acme.com/careers?gh_jid=456")
        assert info.board_type == "greenhouse"
        assert info.job_id == "456"
        assert info.company_slug is None
        assert not info.can_use_api

    def test_lever(self):
        info = detect_board("https://jobs.lever.co/acme/2f1c9e1a-aaaa-bbbb-cccc-1234567890ab")
        assert info.board_type == "lever"
        assert info.company_slug == "acme"
        assert info.job_id == "2f1c9e1a-aaaa-bbbb-cccc-1234567890ab"

    def test_ashby(self):
        info = detect_board("https://jobs.ashbyhq.com/lumon/1234-abcd")
        assert (info.board_type, info.company_slug, info.job_id) == ("ashbyhq", "lumon", "1234-abcd")
        assert not info.api_supported

    @pytest.mark.parametrize("url,job_id", [
        ("https://www.linkedin.com/jobs/view/3712345678/", "3712345678"),
        ("https://www.linkedin.com/jobs/search/?currentJobId=3799999999", "3799999999"),
    ])
    def test_linkedin_is_limited(self, url, job_id):
        info = detect_board(url)
        assert info.board_type == "linkedin"
        assert info.job_id == job_id
        assert info.limited_extraction

    def test_unknown_board_generic_job_id(self):
        info = detect_board("https://careers.acme.com/jobs/123")
        assert info.board_type == "unknown"
        assert info.job_id == "123"
        assert not info.api_supported

    @pytest.mark.parametrize("url", ["", None, "http://[::1", "not a url"])
    def test_malformed_never_raises(self, url):
        assert detect_board(url).board_type == "unknown"

    def test_to_dict(self):
        data = detect_board("https://www.indeed.com/viewjob?jk=abc").to_dict()
        assert data["board_type"] == "indeed"
        assert data["limited_extraction"] is True
        assert data["api_supported"] is False


EMBED_SCRIPT = '<script src="https://boards.greenhouse.io/embed/job_board/js?for=acme"></script>'


class TestEmbeddedGreenhouse:

    def test_query_param(self):
        assert query_param("https://www.acme.com/careers?gh_jid=456&gh_src=abc", "gh_src") == "abc"
        assert query_param("https://www.acme.com/careers", "gh_jid") is None
        assert query_param(None, "gh_jid") is None

    def test_embed_key_from_script_tag(self):
        assert greenhouse_embed_key(f"<html><head>{EMBED_SCRIPT}</head></html>") == "acme"
        assert greenhouse_embed_key("<html><body>No board here</body></html>") is None
        assert greenhouse_embed_key(None) is None

    def test_embed_url_keeps_source(self):
        assert greenhouse_embed_url("acme", "456") == \
            "https://job-boards.greenhouse.io/embed/job_board?for=acme&gh_jid=456"
        assert greenhouse_embed_url("acme", "456", "x1") == \
            "https://job-boards.greenhouse.io/embed/job_board?for=acme&gh_jid=456&gh_src=x1"

    def test_resolves_slug_from_page(self):
        url = "https://www.acme.com/careers?gh_jid=456"
        resolved = resolve_embedded_board(detect_board(url), url, EMBED_SCRIPT)
        assert (resolved.board_type, resolved.company_slug, resolved.job_id) == ("greenhouse", "acme", "456")
        assert resolved.can_use_api

    def test_slug_from_url_wins(self):
        url = "https://boards.greenhouse.io/globex/jobs/4567?gh_jid=4567"
        resolved = resolve_embedded_board(detect_board(url), url, EMBED_SCRIPT)
        assert resolved.company_slug == "globex"

    @pytest.mark.parametrize("url,html", [
        ("https://www.acme.com/careers?gh_jid=456", "<html><body>Careers</body></html>"),
        ("https://boards.greenhouse.io/acme/jobs/4567", EMBED_SCRIPT),
        ("https://careers.acme.com/jobs/123", EMBED_SCRIPT),
    ])
    def test_not_an_embed(self, url, html):
        assert resolve_embedded_board(detect_board(url), url, html) is None
