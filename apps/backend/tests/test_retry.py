"""
Tests for step-level retries of failed attempts.
"""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from pipeline import state_machine
from pipeline.models import Attempt, AttemptStatus, TargetRecord
from pipeline.retry import RetryResult
from pipeline.storage import RecordNotFound

from conftest import JOB_PAGE_HTML, JOB_URL, SHALLOW_PAGE_HTML, ai_outcome, make_ai

MISSING_URL = "https://careers.acme.com/jobs/404"


@pytest.fixture
def flaky_ai():
    """Below threshold on the first call, accepted on the second."""
    ai = make_ai()
    ai.calls.side_effect = [ai_outcome(0.5), ai_outcome(0.9)]
    return ai


@pytest_asyncio.fixture
async def failed_extraction(make_pipeline, store, http_client, flaky_ai):
    """A pipeline plus an attempt that failed on low confidence with its HTML cached."""
    http_client.add(JOB_URL, SHALLOW_PAGE_HTML)
    record = store.create_record(TargetRecord(url=JOB_URL))
    pipeline = make_pipeline(ai_extractor=flaky_ai)
    result = await pipeline.orchestrator.run(record.id)
    assert result.attempt.failed_step == "ai_extraction"
    http_client.request_count = 0
    return pipeline, store.get_attempt(result.attempt.id)


@pytest_asyncio.fixture
async def failed_fetch(make_pipeline, store):
    record = store.create_record(TargetRecord(url=MISSING_URL))
    pipeline = make_pipeline()
    result = await pipeline.orchestrator.run(record.id)
    assert result.attempt.failed_step == "html_fetch"
    return pipeline, store.get_attempt(result.attempt.id)


class TestRetryHtmlFetch:

    @pytest.mark.asyncio
    async def test_reuses_valid_cache(self, failed_extraction, store, http_client):
        pipeline, attempt = failed_extraction

        with patch.object(state_machine, "start_fetch", wraps=state_machine.start_fetch) as start_fetch:
            result = await pipeline.retry_service.retry_html_fetch(attempt.id)

        assert result.success
        start_fetch.assert_called_once()
        assert http_client.request_count == 0

        saved = store.get_attempt(attempt.id)
        assert saved.status == AttemptStatus.COMPLETED
        assert saved.retry_count == 1

        events = store.list_events(attempt.id)
        assert [e.step_order for e in events] == list(range(1, len(events) + 1))
        retry_events = [e.event_type for e in events[4:]]
        assert retry_events[0] == "html_fetch"
        assert events[4].output_payload["from_cache"] is True
        assert retry_events[-1] == "completion"
        assert store.get_record(saved.record_id).extraction_status["retried"] is True

    @pytest.mark.asyncio
    async def test_fetch_failure_can_recover(self, failed_fetch, http_client, store):
        pipeline, attempt = failed_fetch
        http_client.add(MISSING_URL, JOB_PAGE_HTML)

        result = await pipeline.retry_service.retry_html_fetch(attempt)

        assert result.success
        assert http_client.request_count == 2
        assert store.get_attempt(attempt.id).status == AttemptStatus.COMPLETED


class TestRetryExtraction:

    @pytest.mark.asyncio
    async def test_uses_cached_html_only(self, failed_extraction, store, http_client, flaky_ai):
        pipeline, attempt = failed_extraction

        result = await pipeline.retry_service.retry_extraction(attempt.id)

        assert result.success
        assert result.message == "Extraction retry succeeded"
        assert http_client.request_count == 0
        assert flaky_ai.calls.await_count == 2

        events = store.list_events(attempt.id)
        assert [e.step_order for e in events] == list(range(1, 9))
        assert [e.event_type for e in events[4:]] == ["html_scrape", "ai_extraction", "data_update", "completion"]
        assert result.to_dict()["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_cache_miss_routes_back_to_fetch(self, failed_extraction, store, flaky_ai):
        pipeline, attempt = failed_extraction
        pipeline.cache.expire(attempt.cache_entry_id)

        result = await pipeline.retry_service.retry_extraction(attempt.id)

        assert not result.success
        assert result.error_type == "CacheMissError"
        assert flaky_ai.calls.await_count == 1

        saved = store.get_attempt(attempt.id)
        assert saved.status == AttemptStatus.FAILED
        assert saved.failed_step == "html_fetch"
        assert saved.retry_count == 0
        assert store.list_events(attempt.id)[-1].error_type == "CacheMissError"

    @pytest.mark.asyncio
    async def test_rejects_fetch_failures(self, failed_fetch, store):
        pipeline, attempt = failed_fetch

        result = await pipeline.retry_service.retry_extraction(attempt.id)

        assert not result.success
        assert result.error == "Attempt failed at html_fetch, not at extraction"
        assert store.get_attempt(attempt.id).retry_count == 0


class TestRetryFull:

    @pytest.mark.asyncio
    async def test_goes_to_network(self, failed_extraction, store, http_client):
        pipeline, attempt = failed_extraction

        result = await pipeline.retry_service.retry_full(attempt.id)

        assert result.success
        assert http_client.request_count == 1
        events = store.list_events(attempt.id)
        assert events[4].event_type == "html_fetch"
        assert events[4].output_payload["from_cache"] is False


class TestRetryDispatch:

    @pytest.mark.asyncio
    async def test_completed_attempt_rejected(self, make_pipeline, record):
        pipeline = make_pipeline()
        run = await pipeline.orchestrator.run(record.id)

        result = await pipeline.retry_service.retry_html_fetch(run.attempt.id)

        assert not result.success
        assert result.error == "Attempt is not in a retryable state"
        assert result.attempt.status == AttemptStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_dispatch_by_failed_step(self, failed_fetch):
        pipeline, attempt = failed_fetch
        service = pipeline.retry_service
        done = RetryResult(success=True, attempt=attempt)

        with patch.object(service, "retry_html_fetch", new=AsyncMock(return_value=done)) as html_fetch:
            await service.retry(attempt)
        html_fetch.assert_awaited_once()

        attempt.failed_step = "api_extraction"
        with patch.object(service, "retry_extraction", new=AsyncMock(return_value=done)) as extraction:
            await service.retry(attempt)
        extraction.assert_awaited_once()

        attempt.failed_step = "orchestration"
        with patch.object(service, "retry_full", new=AsyncMock(return_value=done)) as full:
            await service.retry(attempt)
        full.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_attempt(self, make_pipeline):
        with pytest.raises(RecordNotFound):
            await make_pipeline().retry_service.retry("missing")

    def test_result_to_dict(self):
        attempt = Attempt(record_id="r1", url=JOB_URL, domain="careers.acme.com",
                          status=AttemptStatus.FAILED, retry_count=2)
        data = RetryResult.rejected("nope", attempt, error_type="CacheMissError").to_dict()
        assert data == {
            "success": False,
            "message": None,
            "error": "nope",
            "error_type": "CacheMissError",
            "attempt_id": attempt.id,
            "attempt_status": "failed",
            "retry_count": 2,
        }
