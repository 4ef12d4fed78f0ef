"""
Retry service.

Resumes a failed Attempt from the step that broke, on the same attempt and
through the same state machine as a first run:

- retry_html_fetch: fetch again (a still-valid cache entry is reused), then extract
- retry_extraction: extraction only, from cached HTML; refuses to run without it
- retry_full: the whole cascade with a fresh network fetch
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from . import state_machine
from .cache import HTMLCache
from .fetcher import FetchResult
from .models import Attempt, AttemptStatus, CachedHTMLEntry, FailedStep, TargetRecord
from .orchestrator import ExtractionOrchestrator, RunResult
from .storage import PipelineStore, RecordNotFound

logger = logging.getLogger(__name__)


class CacheMissError(LookupError):
    """retry_extraction was asked to run without valid cached HTML."""


@dataclass
class RetryResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempt: Optional[Attempt] = None
    run_result: Optional[RunResult] = None

    @classmethod
    def from_run(cls, run_result: RunResult, label: str) -> "RetryResult":
        if run_result.success:
            return cls(success=True, message=f"{label} succeeded", attempt=run_result.attempt, run_result=run_result)
        return cls(success=False, error=run_result.error or f"{label} failed",
                   attempt=run_result.attempt, run_result=run_result)

    @classmethod
    def rejected(cls, error: str, attempt: Optional[Attempt] = None, error_type: Optional[str] = None) -> "RetryResult":
        return cls(success=False, error=error, error_type=error_type, attempt=attempt)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "error_type": self.error_type,
            "attempt_id": self.attempt.id if self.attempt else None,
            "attempt_status": self.attempt.status.value if self.attempt else None,
            "retry_count": self.attempt.retry_count if self.attempt else None,
        }


class RetryService:
    """Step-level retries for failed attempts."""

    def __init__(self, store: PipelineStore, orchestrator: ExtractionOrchestrator, cache: HTMLCache):
        self.store = store
        self.orchestrator = orchestrator
        self.cache = cache

    async def retry_html_fetch(self, attempt: Union[str, Attempt]) -> RetryResult:
        attempt = self._load(attempt)
        if not state_machine.is_retryable(attempt):
            return RetryResult.rejected("Attempt is not in a retryable state", attempt)

        self._begin_retry(attempt, "html_fetch")
        run_result = await self.orchestrator.resume(attempt, use_cache=True)
        return RetryResult.from_run(run_result, "HTML fetch retry")

    async def retry_extraction(self, attempt: Union[str, Attempt]) -> RetryResult:
        attempt = self._load(attempt)
        if not state_machine.is_retryable(attempt):
            return RetryResult.rejected("Attempt is not in a retryable state", attempt)
        if not attempt.failed_at_extraction:
            return RetryResult.rejected(
                f"Attempt failed at {attempt.failed_step}, not at extraction", attempt,
            )

        record = self._record(attempt)
        try:
            entry = self.require_cache(attempt, record)
        except CacheMissError as e:
            return self._cache_miss(attempt, record, str(e))

        self._begin_retry(attempt, "extraction")
        run = self.orchestrator.open_run(record, attempt)
        run.from_cache = True
        try:
            state_machine.start_extract(attempt)
            attempt.cache_entry_id = entry.id
            self.orchestrator.save(run)
            fetch_result = FetchResult(
                success=True,
                raw_html=entry.raw_html,
                cleaned_html=entry.cleaned_html,
                from_cache=True,
                http_status=entry.http_status,
                cache_entry=entry,
            )
            run_result = await self.orchestrator.extract(run, fetch_result)
        except Exception as e:
            self.orchestrator.fail_unexpected(run, e)
            raise
        return RetryResult.from_run(run_result, "Extraction retry")

    async def retry_full(self, attempt: Union[str, Attempt]) -> RetryResult:
        attempt = self._load(attempt)
        if not state_machine.is_retryable(attempt):
            return RetryResult.rejected("Attempt is not in a retryable state", attempt)

        self._begin_retry(attempt, "full")
        run_result = await self.orchestrator.resume(attempt, use_cache=False)
        return RetryResult.from_run(run_result, "Full retry")

    async def retry(self, attempt: Union[str, Attempt]) -> RetryResult:
        """Pick the retry path from where the attempt failed."""
        attempt = self._load(attempt)
        if attempt.failed_step == FailedStep.HTML_FETCH.value:
            return await self.retry_html_fetch(attempt)
        if attempt.failed_at_extraction:
            return await self.retry_extraction(attempt)
        return await self.retry_full(attempt)

    def require_cache(self, attempt: Attempt, record: TargetRecord) -> CachedHTMLEntry:
        """Valid cached HTML for the attempt, preferring the entry it already used."""
        if attempt.cache_entry_id:
            entry = self.cache.get(attempt.cache_entry_id)
            if entry is not None and entry.is_valid():
                return entry
        entry = self.cache.find_valid(record.id, attempt.url)
        if entry is None:
            raise CacheMissError(f"No cached HTML available for retry of attempt {attempt.id}")
        return entry

    def _begin_retry(self, attempt: Attempt, kind: str) -> None:
        if attempt.status == AttemptStatus.FAILED:
            state_machine.retry_attempt(attempt)
        self.store.save_attempt(attempt)
        logger.info(f"[retry] {kind} retry attempt={attempt.id} retry_count={attempt.retry_count}")

    def _cache_miss(self, attempt: Attempt, record: TargetRecord, message: str) -> RetryResult:
        """
        Route the attempt back to the fetch step; the next retry re-fetches.

        A cache miss does not consume a retry.
        """
        logger.warning(f"[retry] {message}")
        run = self.orchestrator.open_run(record, attempt)
        if attempt.status == AttemptStatus.RETRYING:
            self.orchestrator.fail_attempt(run, FailedStep.HTML_FETCH.value, message, CacheMissError.__name__)
        else:
            run.recorder.record_failure(message, CacheMissError.__name__,
                                        details={"failed_step": FailedStep.HTML_FETCH.value})
            attempt.failed_step = FailedStep.HTML_FETCH.value
            attempt.error_message = message
            self.store.save_attempt(attempt)
        return RetryResult.rejected(message, attempt, error_type=CacheMissError.__name__)

    def _load(self, attempt: Union[str, Attempt]) -> Attempt:
        if isinstance(attempt, Attempt):
            return attempt
        found = self.store.get_attempt(attempt)
        if found is None:
            raise RecordNotFound(attempt)
        return found

    def _record(self, attempt: Attempt) -> TargetRecord:
        record = self.store.get_record(attempt.record_id)
        if record is None:
            raise RecordNotFound(attempt.record_id)
        return record
