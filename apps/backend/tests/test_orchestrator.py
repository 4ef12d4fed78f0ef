"""
Tests for the extraction orchestrator cascade.
"""

import json
from dataclasses import replace

import pytest

from pipeline.api_fetchers import GreenhouseFetcher
from pipeline.extractor import ExtractionOutcome
from pipeline.models import Attempt, AttemptStatus, EventStatus, TargetRecord
from pipeline.storage import RecordNotFound

from conftest import (
    GREENHOUSE_URL,
    JOB_URL,
    LINKEDIN_PAGE_HTML,
    LINKEDIN_URL,
    SHALLOW_PAGE_HTML,
    ai_outcome,
    make_ai,
    make_api,
)


def _events(store, attempt_id):
    return [(e.step_order, e.event_type, e.status) for e in store.list_events(attempt_id)]


class TestCascade:

    @pytest.mark.asyncio
    async def test_heuristic_floor_completes(self, make_pipeline, store, record):
        pipeline = make_pipeline()

        result = await pipeline.orchestrator.run(record.id)

        assert result.success
        assert result.outcome.method == "heuristic"
        assert result.outcome.confidence >= 0.7
        assert _events(store, result.attempt.id) == [
            (1, "html_fetch", EventStatus.SUCCESS),
            (2, "html_scrape", EventStatus.SUCCESS),
            (3, "ai_extraction", EventStatus.SKIPPED),
            (4, "data_update", EventStatus.SUCCESS),
            (5, "completion", EventStatus.SUCCESS),
        ]

        saved = store.get_attempt(result.attempt.id)
        assert saved.status == AttemptStatus.COMPLETED
        assert saved.extraction_method == "heuristic"
        assert saved.cache_entry_id is not None

        updated = store.get_record(record.id)
        assert updated.title == "Senior Data Engineer"
        assert updated.company_name == "Acme Corp"
        assert updated.extraction_status["method"] == "heuristic"
        assert updated.extraction_status["attempt_id"] == saved.id
        assert updated.extraction_status["retried"] is False

    @pytest.mark.asyncio
    async def test_api_result_skips_ai(self, make_pipeline, store):
        record = store.create_record(TargetRecord(url=GREENHOUSE_URL))
        api_result = ExtractionOutcome(method="api", provider="greenhouse", confidence=0.95, fields={
            'title': "Platform Engineer",
            'company_name': "Acme",
            'description': "Scale our infrastructure.",
        })
        api = make_api(api_result)
        ai = make_ai(ai_outcome(0.9))
        pipeline = make_pipeline(api_fetchers=[api], ai_extractor=ai)

        result = await pipeline.orchestrator.run(record.id)

        assert result.success
        assert result.outcome.method == "api"
        api.calls.assert_awaited_once()
        ai.calls.assert_not_awaited()
        assert [e[1] for e in _events(store, result.attempt.id)] == [
            "html_fetch", "html_scrape", "api_extraction", "data_update", "completion",
        ]
        assert store.get_record(record.id).title == "Platform Engineer"
        assert store.get_attempt(result.attempt.id).provider == "greenhouse"

    @pytest.mark.asyncio
    async def test_ai_used_when_api_below_threshold(self, make_pipeline, store):
        record = store.create_record(TargetRecord(url=GREENHOUSE_URL))
        api = make_api(ExtractionOutcome(method="api", confidence=0.4, fields={'title': "Engineer"}))
        ai = make_ai(ai_outcome(0.82))
        pipeline = make_pipeline(api_fetchers=[api], ai_extractor=ai)

        result = await pipeline.orchestrator.run(record.id)

        assert result.outcome.method == "ai"
        ai.calls.assert_awaited_once()
        assert store.get_record(record.id).title == "Office Manager"
        attempt = store.get_attempt(result.attempt.id)
        assert attempt.response_metadata["tokens_used"] == 321
        assert attempt.response_metadata["model"] == "test-model"

    @pytest.mark.asyncio
    async def test_low_confidence_fails_without_overwriting(self, make_pipeline, store, http_client):
        http_client.add(JOB_URL, SHALLOW_PAGE_HTML)
        record = store.create_record(TargetRecord(url=JOB_URL, title="Existing Title"))
        ai = make_ai(ai_outcome(0.5))
        pipeline = make_pipeline(ai_extractor=ai)

        result = await pipeline.orchestrator.run(record.id)

        assert not result.success
        assert result.error == "Low confidence: 0.50 (best method: ai)"
        attempt = store.get_attempt(result.attempt.id)
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.failed_step == "ai_extraction"
        assert attempt.confidence == 0.5
        assert store.get_record(record.id).title == "Existing Title"

        failure = store.list_events(attempt.id)[-1]
        assert failure.event_type == "failure"
        assert failure.error_type == "LowConfidence"
        assert failure.output_payload["threshold"] == 0.7
        assert [o["method"] for o in failure.output_payload["outcomes"]] == ["ai", "heuristic"]

    @pytest.mark.asyncio
    async def test_failed_attempt_leaves_blank_record_untouched(self, make_pipeline, store, http_client):
        http_client.add(JOB_URL, SHALLOW_PAGE_HTML)
        record = store.create_record(TargetRecord(url=JOB_URL))
        pipeline = make_pipeline(ai_extractor=make_ai(ai_outcome(0.5)))

        result = await pipeline.orchestrator.run(record.id)

        assert result.attempt.status == AttemptStatus.FAILED
        scrape = store.list_events(result.attempt.id)[1]
        assert scrape.event_type == "html_scrape"
        assert scrape.output_payload["fields_extracted"] == ["title"]

        untouched = store.get_record(record.id)
        assert untouched.title is None
        assert untouched.extraction_status == {}
        assert untouched.updated_at == record.updated_at

    @pytest.mark.asyncio
    async def test_vendor_threshold_applies(self, make_pipeline, store, config):
        strict = replace(config, vendor_thresholds={"greenhouse": 0.99})
        record = store.create_record(TargetRecord(url=GREENHOUSE_URL))
        api = make_api(ExtractionOutcome(method="api", confidence=0.95, fields={'title': "Engineer"}))
        pipeline = make_pipeline(config=strict, api_fetchers=[api])

        result = await pipeline.orchestrator.run(record.id)

        assert result.attempt.status == AttemptStatus.FAILED

    @pytest.mark.asyncio
    async def test_invalid_salary_dropped(self, make_pipeline, store, record):
        ai = make_ai(ai_outcome(
            0.9,
            title="Senior Data Engineer",
            company_name="Acme Corp",
            description="Build data pipelines.",
            salary_min=200000,
            salary_max=100000,
            salary_currency="USD",
        ))
        pipeline = make_pipeline(ai_extractor=ai)

        result = await pipeline.orchestrator.run(record.id)

        assert result.success
        updated = store.get_record(record.id)
        assert updated.salary_min is None
        assert updated.salary_max is None
        assert "salary_min" not in result.updated_fields


EMBED_SHELL_URL = "https://www.acme.com/careers?gh_jid=456&gh_src=news"
EMBED_URL = "https://job-boards.greenhouse.io/embed/job_board?for=acme&gh_jid=456&gh_src=news"
EMBED_API_URL = "https://boards-api.greenhouse.io/v1/boards/acme/jobs/456"

EMBED_SHELL_HTML = """
<html><body>
<h1>Careers at Acme</h1>
<div id="grnhse_app"></div>
<script src="https://boards.greenhouse.io/embed/job_board/js?for=acme"></script>
</body></html>
"""

EMBED_PAGE_HTML = (
    "<html><body><h1 class='job-title'>Payments Engineer</h1><div class='job-description'>"
    + "<p>Build and operate the systems that move money for our customers.</p>" * 20
    + "</div></body></html>"
)

EMBED_API_PAYLOAD = {
    "title": "Payments Engineer",
    "company_name": "Acme",
    "content": "&lt;p&gt;Build and operate payment systems.&lt;/p&gt;",
    "location": {"name": "Remote"},
}


class TestEmbeddedBoard:

    @pytest.fixture
    def embed_pipeline(self, make_pipeline, http_client):
        http_client.add(EMBED_SHELL_URL, EMBED_SHELL_HTML)
        http_client.add(EMBED_API_URL, json.dumps(EMBED_API_PAYLOAD))
        return make_pipeline(api_fetchers=[GreenhouseFetcher(http_client)])

    @pytest.mark.asyncio
    async def test_board_key_unlocks_api(self, embed_pipeline, store, http_client):
        http_client.add(EMBED_URL, EMBED_PAGE_HTML)
        record = store.create_record(TargetRecord(url=EMBED_SHELL_URL))

        result = await embed_pipeline.orchestrator.run(record.id)

        assert result.success
        assert result.outcome.provider == "greenhouse"
        assert http_client.requested == [EMBED_SHELL_URL, EMBED_URL, EMBED_API_URL]
        assert [e[1] for e in _events(store, result.attempt.id)] == [
            "html_fetch", "embedded_job_board_fetch", "html_scrape", "api_extraction", "data_update", "completion",
        ]

        embed_event = store.list_events(result.attempt.id)[1]
        assert embed_event.input_payload["board_key"] == "acme"
        assert embed_event.input_payload["embed_url"] == EMBED_URL
        assert embed_event.output_payload["fetch_mode"] == "greenhouse_embed"

        attempt = store.get_attempt(result.attempt.id)
        assert attempt.response_metadata["fetch_mode"] == "greenhouse_embed"
        assert store.get_record(record.id).title == "Payments Engineer"

    @pytest.mark.asyncio
    async def test_short_embed_keeps_original_page(self, embed_pipeline, store, http_client):
        http_client.add(EMBED_URL, "<html><body><p>Loading</p></body></html>")
        record = store.create_record(TargetRecord(url=EMBED_SHELL_URL))

        result = await embed_pipeline.orchestrator.run(record.id)

        assert result.success
        assert EMBED_API_URL in http_client.requested
        assert "fetch_mode" not in store.get_attempt(result.attempt.id).response_metadata
        scrape = store.list_events(result.attempt.id)[2]
        assert scrape.event_type == "html_scrape"
        assert scrape.status == EventStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_failed_embed_fetch_is_recorded(self, embed_pipeline, store):
        record = store.create_record(TargetRecord(url=EMBED_SHELL_URL))

        result = await embed_pipeline.orchestrator.run(record.id)

        assert result.success
        embed_event = store.list_events(result.attempt.id)[1]
        assert embed_event.event_type == "embedded_job_board_fetch"
        assert embed_event.status == EventStatus.FAILED


class TestLimitedSources:

    @pytest.mark.asyncio
    async def test_meta_tags_below_default_threshold(self, make_pipeline, store, http_client):
        http_client.add(LINKEDIN_URL, LINKEDIN_PAGE_HTML)
        record = store.create_record(TargetRecord(url=LINKEDIN_URL))

        result = await make_pipeline().orchestrator.run(record.id)

        assert result.attempt.status == AttemptStatus.FAILED
        assert [e[1] for e in _events(store, result.attempt.id)] == [
            "html_fetch", "limited_source_handling", "html_scrape", "ai_extraction", "failure",
        ]
        failure = store.list_events(result.attempt.id)[-1]
        assert failure.output_payload["outcomes"][-1]["provider"] == "meta_tags"
        assert failure.output_payload["outcomes"][-1]["confidence"] == 0.5

        untouched = store.get_record(record.id)
        assert untouched.title is None
        assert untouched.company_name is None

    @pytest.mark.asyncio
    async def test_vendor_threshold_accepts_meta_tags(self, make_pipeline, store, http_client, config):
        http_client.add(LINKEDIN_URL, LINKEDIN_PAGE_HTML)
        record = store.create_record(TargetRecord(url=LINKEDIN_URL))
        pipeline = make_pipeline(config=replace(config, vendor_thresholds={"linkedin": 0.5}))

        result = await pipeline.orchestrator.run(record.id)

        assert result.success
        assert result.outcome.provider == "meta_tags"
        updated = store.get_record(record.id)
        assert updated.title == "Backend Engineer"
        assert updated.company_name == "Globex"
        assert updated.location == "Amsterdam"


class TestFailures:

    @pytest.mark.asyncio
    async def test_fetch_failure(self, make_pipeline, store):
        record = store.create_record(TargetRecord(url="https://careers.acme.com/jobs/missing"))
        ai = make_ai(ai_outcome(0.9))
        pipeline = make_pipeline(ai_extractor=ai)

        result = await pipeline.orchestrator.run(record.id)

        attempt = store.get_attempt(result.attempt.id)
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.failed_step == "html_fetch"
        assert "HTTP 404" in attempt.error_message
        ai.calls.assert_not_awaited()
        assert _events(store, attempt.id) == [
            (1, "html_fetch", EventStatus.FAILED),
            (2, "failure", EventStatus.FAILED),
        ]

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_at_orchestration(self, make_pipeline, store, record, notifier):
        ai = make_ai()
        ai.calls.side_effect = RuntimeError("provider exploded")
        pipeline = make_pipeline(ai_extractor=ai)

        with pytest.raises(RuntimeError):
            await pipeline.orchestrator.run(record.id)

        attempt = store.latest_attempt(record.id)
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.failed_step == "orchestration"
        assert attempt.error_message == "RuntimeError: provider exploded"

        events = store.list_events(attempt.id)
        assert events[-2].event_type == "ai_extraction"
        assert events[-2].status == EventStatus.FAILED
        assert events[-1].event_type == "failure"
        assert events[-1].output_payload == {"step": "ai_extraction"}

        assert notifier.recent[-1]["context"] == "extraction_orchestrator"
        assert notifier.recent[-1]["attempt_id"] == attempt.id

    @pytest.mark.asyncio
    async def test_unknown_record(self, make_pipeline):
        with pytest.raises(RecordNotFound):
            await make_pipeline().orchestrator.run("no-such-record")


class TestDeduplication:

    @pytest.mark.asyncio
    async def test_in_flight_attempt_is_reused(self, make_pipeline, store, record, http_client):
        in_flight = store.create_attempt(Attempt(record_id=record.id, url=record.url, domain="careers.acme.com",
                                                 status=AttemptStatus.FETCHING))
        pipeline = make_pipeline()

        result = await pipeline.orchestrator.run(record.id)

        assert result.deduplicated
        assert result.attempt.id == in_flight.id
        assert result.to_dict()["status"] == "deduplicated"
        assert http_client.request_count == 0
        assert len(store.list_attempts(record.id)) == 1

    @pytest.mark.asyncio
    async def test_force_starts_new_attempt(self, make_pipeline, store, record):
        store.create_attempt(Attempt(record_id=record.id, url=record.url, domain="careers.acme.com",
                                     status=AttemptStatus.FETCHING))
        pipeline = make_pipeline()

        result = await pipeline.orchestrator.run(record.id, force=True)

        assert result.success
        assert len(store.list_attempts(record.id)) == 2

    @pytest.mark.asyncio
    async def test_second_run_uses_cache(self, make_pipeline, record, http_client):
        pipeline = make_pipeline()

        first = await pipeline.orchestrator.run(record.id)
        second = await pipeline.orchestrator.run(record.id)

        assert first.attempt.id != second.attempt.id
        assert second.from_cache
        assert http_client.request_count == 1
